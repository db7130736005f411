"""Request bodies and JSON renderings for the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..domain import (
    Defect,
    LensCharacteristic,
    Order,
    OrderStatus,
    Organization,
    Patient,
    PaymentStatus,
    Product,
    SubRole,
    User,
)
from ..partner import partner_status


# ==================== Requests ====================
class StatusUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class DefectCreate(BaseModel):
    qty: int = Field(..., ge=1)
    note: Optional[str] = None


class DefectArchive(BaseModel):
    archived: Optional[bool] = None


class PaymentUpdate(BaseModel):
    payment_status: PaymentStatus


class EyeParams(BaseModel):
    """Per-eye lens parameters; fitting values beyond these pass through as-is."""

    model_config = ConfigDict(extra="allow")

    characteristic: Optional[LensCharacteristic] = None
    qty: int = Field(1, ge=1, le=100)


class LensEyes(BaseModel):
    od: Optional[EyeParams] = None
    os: Optional[EyeParams] = None


class LensConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    eyes: LensEyes

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class PatientIn(BaseModel):
    name: str = Field(..., min_length=2)
    phone: str = ""
    email: Optional[str] = None
    notes: Optional[str] = None

    def to_domain(self) -> Patient:
        return Patient(name=self.name, phone=self.phone, email=self.email, notes=self.notes)


class OrderCreate(BaseModel):
    patient: PatientIn
    config: LensConfig
    is_urgent: bool = False
    notes: Optional[str] = None
    delivery_method: Optional[str] = None
    delivery_address: Optional[str] = None
    company: Optional[str] = None
    inn: Optional[str] = None
    doctor_email: Optional[str] = None


class OrderEdit(BaseModel):
    patient: Optional[PatientIn] = None
    config: Optional[LensConfig] = None
    notes: Optional[str] = None
    delivery_method: Optional[str] = None
    delivery_address: Optional[str] = None
    company: Optional[str] = None
    inn: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        changes = self.model_dump(exclude_unset=True, exclude={"patient", "config"})
        if self.patient is not None:
            changes["patient"] = self.patient.to_domain()
        if self.config is not None:
            changes["config"] = self.config.to_dict()
        return changes


class PartnerOrderCreate(BaseModel):
    partner_order_id: Optional[str] = None
    creator_name: str = ""
    creator_email: Optional[str] = None
    clinic_name: str = ""
    patient: PatientIn
    config: LensConfig
    is_urgent: bool = False
    delivery_method: Optional[str] = None
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    company: Optional[str] = None


class StaffCreate(BaseModel):
    email: str = Field(..., min_length=3)
    full_name: str = Field(..., min_length=1)
    sub_role: SubRole
    phone: str = ""


class ClinicStaffUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    sub_role: Optional[SubRole] = None


class DiscountUpdate(BaseModel):
    discount_percent: float


class ProductCreate(BaseModel):
    sku: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    characteristic: Optional[LensCharacteristic] = None
    category: str = "lens"


# ==================== Responses ====================
def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def defect_to_dict(defect: Defect) -> Dict[str, Any]:
    return {
        "id": defect.id,
        "qty": defect.qty,
        "date": _iso(defect.created_at),
        "note": defect.note,
        "archived": defect.archived,
    }


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "order_id": order.order_number,
        "meta": {
            "optic_id": order.organization_id or "",
            "optic_name": order.optic_name,
            "doctor": order.doctor_name,
            "created_at": _iso(order.meta.created_at),
            "updated_at": _iso(order.meta.updated_at),
        },
        "patient": {
            "name": order.patient.name,
            "phone": order.patient.phone,
            "email": order.patient.email,
            "notes": order.patient.notes,
        },
        "config": order.config,
        "company": order.company,
        "inn": order.inn,
        "delivery_method": order.delivery_method,
        "delivery_address": order.delivery_address,
        "doctor_email": order.doctor_email,
        "status": order.status.value,
        "is_urgent": order.is_urgent,
        "edit_deadline": _iso(order.edit_deadline),
        "tracking_number": order.tracking_number,
        "production_started_at": _iso(order.production_started_at),
        "production_completed_at": _iso(order.production_completed_at),
        "shipped_at": _iso(order.shipped_at),
        "delivered_at": _iso(order.delivered_at),
        "notes": order.notes,
        "payment_status": order.payment_status.value,
        "total_price": order.total_price,
        "discount_percent": order.discount_percent,
        "defects": [defect_to_dict(defect) for defect in order.defects],
    }


def partner_order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "lensflow_order_id": order.order_number,
        "partner_order_id": order.external_id,
        "status": partner_status(order.status),
        "payment_status": order.payment_status.value,
        "patient": {
            "name": order.patient.name,
            "phone": order.patient.phone,
            "email": order.patient.email,
        },
        "clinic_name": order.optic_name,
        "doctor_name": order.doctor_name,
        "is_urgent": order.is_urgent,
        "total_price": order.total_price,
        "tracking_number": order.tracking_number,
        "created_at": _iso(order.meta.created_at),
        "updated_at": _iso(order.meta.updated_at),
    }


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "phone": user.phone,
        "role": user.role.value,
        "sub_role": user.sub_role.value,
        "organization_id": user.organization_id,
        "discount_percent": user.discount_percent,
        "created_at": _iso(user.created_at),
    }


def organization_to_dict(organization: Organization) -> Dict[str, Any]:
    return {
        "id": organization.id,
        "name": organization.name,
        "city": organization.city,
        "status": organization.status.value,
        "discount_percent": organization.discount_percent,
    }


def product_to_dict(product: Product, *, hide_price: bool = False) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "sku": product.sku,
        "name": product.name,
        "category": product.category,
        "characteristic": product.characteristic.value if product.characteristic else None,
    }
    if not hide_price:
        payload["price"] = product.price
    return payload
