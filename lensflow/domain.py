"""Core data structures for the LensFlow laboratory order system."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """Lifecycle stages for a lens production order."""

    PENDING = "pending"
    IN_PRODUCTION = "in_production"
    READY = "ready"
    REWORK = "rework"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    PARTIAL = "partial"


class Role(str, Enum):
    """Top-level actor groups."""

    DOCTOR = "doctor"
    OPTIC = "optic"
    LABORATORY = "laboratory"


class SubRole(str, Enum):
    """Fine-grained permission tags within a role."""

    LAB_HEAD = "lab_head"
    LAB_ADMIN = "lab_admin"
    LAB_ACCOUNTANT = "lab_accountant"
    LAB_ENGINEER = "lab_engineer"
    LAB_QUALITY = "lab_quality"
    LAB_LOGISTICS = "lab_logistics"
    OPTIC_MANAGER = "optic_manager"
    OPTIC_DOCTOR = "optic_doctor"
    OPTIC_ACCOUNTANT = "optic_accountant"
    DOCTOR = "doctor"

    @property
    def role(self) -> Role:
        if self.value.startswith("lab_"):
            return Role.LABORATORY
        if self.value.startswith("optic_"):
            return Role.OPTIC
        return Role.DOCTOR


class OrganizationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OrderSource(str, Enum):
    INTERNAL = "internal"
    PARTNER = "partner"


class LensCharacteristic(str, Enum):
    """Lens designs that drive catalog pricing."""

    TORIC = "toric"
    SPHERICAL = "spherical"
    RGP = "rgp"


@dataclass(slots=True)
class Organization:
    """A clinic or optic as seen by the laboratory (a counterparty)."""

    id: str
    name: str
    city: str = ""
    status: OrganizationStatus = OrganizationStatus.ACTIVE
    discount_percent: float = 0.0


@dataclass(slots=True)
class User:
    id: str
    email: str
    full_name: str
    sub_role: SubRole
    organization_id: Optional[str] = None
    phone: str = ""
    discount_percent: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def role(self) -> Role:
        return self.sub_role.role


@dataclass(slots=True)
class Product:
    """Catalog entry. Lens products are priced per unit by characteristic."""

    sku: str
    name: str
    price: float
    characteristic: Optional[LensCharacteristic] = None
    category: str = "lens"


@dataclass(slots=True)
class Patient:
    name: str
    phone: str = ""
    email: Optional[str] = None
    notes: Optional[str] = None


@dataclass(slots=True)
class Defect:
    """A rework record attached to an order during production."""

    id: str
    qty: int
    created_at: datetime
    note: Optional[str] = None
    archived: bool = False


@dataclass(slots=True)
class OrderMeta:
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Order:
    """A lens production order addressed by its human-facing order number."""

    id: str
    order_number: str
    patient: Patient
    config: Dict[str, Any]
    status: OrderStatus = OrderStatus.PENDING
    organization_id: Optional[str] = None
    created_by_id: Optional[str] = None
    optic_name: str = ""
    doctor_name: str = ""
    doctor_email: Optional[str] = None
    company: Optional[str] = None
    inn: Optional[str] = None
    delivery_method: Optional[str] = None
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    is_urgent: bool = False
    edit_deadline: Optional[datetime] = None
    tracking_number: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    total_price: float = 0.0
    discount_percent: float = 0.0
    defects: List[Defect] = field(default_factory=list)
    production_started_at: Optional[datetime] = None
    production_completed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    meta: OrderMeta = field(default_factory=OrderMeta)
    external_id: Optional[str] = None
    source: OrderSource = OrderSource.INTERNAL

    def find_defect(self, defect_id: str) -> Optional[Defect]:
        for defect in self.defects:
            if defect.id == defect_id:
                return defect
        return None


# Status reached -> lifecycle timestamp attribute stamped on first entry.
MILESTONE_FIELDS: Dict[OrderStatus, str] = {
    OrderStatus.IN_PRODUCTION: "production_started_at",
    OrderStatus.READY: "production_completed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
}

DEFECT_STATUSES = frozenset(
    {OrderStatus.IN_PRODUCTION, OrderStatus.READY, OrderStatus.REWORK}
)

ALLOWED_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.IN_PRODUCTION, OrderStatus.CANCELLED}),
    OrderStatus.IN_PRODUCTION: frozenset(
        {OrderStatus.READY, OrderStatus.REWORK, OrderStatus.CANCELLED}
    ),
    OrderStatus.READY: frozenset({OrderStatus.SHIPPED, OrderStatus.REWORK}),
    OrderStatus.REWORK: frozenset({OrderStatus.IN_PRODUCTION}),
    OrderStatus.SHIPPED: frozenset(
        {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED}
    ),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


__all__ = [
    "OrderStatus",
    "PaymentStatus",
    "Role",
    "SubRole",
    "OrganizationStatus",
    "OrderSource",
    "LensCharacteristic",
    "Organization",
    "User",
    "Product",
    "Patient",
    "Defect",
    "OrderMeta",
    "Order",
    "MILESTONE_FIELDS",
    "DEFECT_STATUSES",
    "ALLOWED_TRANSITIONS",
    "utcnow",
]
