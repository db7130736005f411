"""Service layer that implements the LensFlow order lifecycle."""

from __future__ import annotations

import logging
import math
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from .domain import (
    ALLOWED_TRANSITIONS,
    DEFECT_STATUSES,
    MILESTONE_FIELDS,
    Defect,
    LensCharacteristic,
    Order,
    OrderMeta,
    OrderSource,
    OrderStatus,
    Organization,
    OrganizationStatus,
    Patient,
    PaymentStatus,
    Product,
    Role,
    SubRole,
    User,
    utcnow,
)
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .partner import StatusMirror
from .policy import (
    Action,
    can_view_order,
    edit_deadline_for,
    require,
    require_not_self,
    require_order_edit,
)
from .repository import InMemoryRepository, select

logger = logging.getLogger(__name__)

EDITABLE_ORDER_FIELDS = frozenset(
    {"notes", "delivery_method", "delivery_address", "company", "inn", "config", "patient"}
)
LAB_SUB_ROLES = frozenset(role for role in SubRole if role.role is Role.LABORATORY)
CLINIC_SUB_ROLES = frozenset(role for role in SubRole if role.role is Role.OPTIC)
PARTNER_ORDER_LIMIT = 100
MAX_LENS_QTY = 100


@dataclass(slots=True)
class OrderPolicyOptions:
    """Tunable rules for order intake, pricing and transitions."""

    edit_window_minutes: int = 120
    default_discount_percent: float = 5.0
    urgent_surcharge_percent: float = 25.0
    strict_transitions: bool = False
    serialize_order_mutations: bool = False

    @classmethod
    def from_settings(cls, settings: Any) -> "OrderPolicyOptions":
        return cls(
            edit_window_minutes=settings.EDIT_WINDOW_MINUTES,
            default_discount_percent=settings.DEFAULT_DISCOUNT_PERCENT,
            urgent_surcharge_percent=settings.URGENT_SURCHARGE_PERCENT,
            strict_transitions=settings.STRICT_TRANSITIONS,
            serialize_order_mutations=settings.SERIALIZE_ORDER_MUTATIONS,
        )


@dataclass(slots=True)
class PriceQuote:
    base_price: float
    discount_percent: float
    urgent_surcharge: float
    total_price: float


def _coerce_status(value: Any) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown order status {value!r}") from exc


def _lens_eyes(config: Any) -> Dict[str, Dict[str, Any]]:
    """Validate ``config.eyes`` and return the present eyes keyed by side."""

    if not isinstance(config, Mapping) or not config.get("eyes"):
        raise ValidationError("config.eyes is required")
    eyes = config["eyes"]
    if not isinstance(eyes, Mapping):
        raise ValidationError("config.eyes must be an object")
    present: Dict[str, Dict[str, Any]] = {}
    for side in ("od", "os"):
        params = eyes.get(side)
        if params is None:
            continue
        if not isinstance(params, Mapping):
            raise ValidationError(f"config.eyes.{side} must be an object")
        characteristic = params.get("characteristic")
        if characteristic is not None:
            try:
                LensCharacteristic(characteristic)
            except ValueError as exc:
                raise ValidationError(
                    f"Unknown lens characteristic {characteristic!r}"
                ) from exc
        qty = params.get("qty", 1)
        if isinstance(qty, bool) or not isinstance(qty, int) or not 1 <= qty <= MAX_LENS_QTY:
            raise ValidationError(
                f"config.eyes.{side}.qty must be an integer between 1 and {MAX_LENS_QTY}"
            )
        present[side] = dict(params)
    if not present:
        raise ValidationError("config.eyes needs at least one of od, os")
    return present


def _validate_percent(value: Any) -> float:
    try:
        percent = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Discount must be a number") from exc
    if math.isnan(percent) or percent < 0 or percent > 100:
        raise ValidationError("Discount must be between 0 and 100")
    return percent


class LensFlowService:
    """Facade that exposes the laboratory order use-cases to clients."""

    def __init__(
        self,
        order_repo: Optional[InMemoryRepository[Order]] = None,
        user_repo: Optional[InMemoryRepository[User]] = None,
        organization_repo: Optional[InMemoryRepository[Organization]] = None,
        product_repo: Optional[InMemoryRepository[Product]] = None,
        *,
        mirror: Optional[StatusMirror] = None,
        options: Optional[OrderPolicyOptions] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.orders = order_repo if order_repo is not None else InMemoryRepository()
        self.users = user_repo if user_repo is not None else InMemoryRepository()
        self.organizations = (
            organization_repo if organization_repo is not None else InMemoryRepository()
        )
        self.products = product_repo if product_repo is not None else InMemoryRepository()
        self.mirror = mirror or StatusMirror()
        self.options = options or OrderPolicyOptions()
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def _order_guard(self, order_number: str) -> ContextManager[Any]:
        if not self.options.serialize_order_mutations:
            return nullcontext()
        if order_number not in self.orders:
            raise NotFoundError(f"Order {order_number!r} not found")
        with self._locks_guard:
            return self._locks.setdefault(order_number, threading.Lock())

    # ------------------------------------------------------------------
    # Master data
    # ------------------------------------------------------------------
    def create_organization(
        self,
        name: str,
        *,
        city: str = "",
        discount_percent: float = 0.0,
        status: OrganizationStatus = OrganizationStatus.ACTIVE,
    ) -> Organization:
        organization = Organization(
            id=str(uuid4()),
            name=name,
            city=city,
            status=status,
            discount_percent=_validate_percent(discount_percent),
        )
        self.organizations.add(organization.id, organization)
        return organization

    def register_user(
        self,
        email: str,
        full_name: str,
        sub_role: SubRole,
        *,
        organization_id: Optional[str] = None,
        phone: str = "",
        discount_percent: Optional[float] = None,
    ) -> User:
        normalized = email.strip().lower()
        if select(self.users, lambda user: user.email == normalized):
            raise ConflictError(f"User with email {normalized!r} already exists")
        if organization_id is not None and organization_id not in self.organizations:
            raise NotFoundError(f"Organization {organization_id!r} does not exist")
        if sub_role.role is Role.OPTIC and organization_id is None:
            raise ValidationError(f"{sub_role.value} users must belong to an organization")
        user = User(
            id=str(uuid4()),
            email=normalized,
            full_name=full_name,
            sub_role=sub_role,
            organization_id=organization_id,
            phone=phone,
            discount_percent=discount_percent,
            created_at=self.now(),
        )
        self.users.add(user.id, user)
        return user

    def get_user(self, user_id: str) -> User:
        return self.users.get(user_id)

    # ------------------------------------------------------------------
    # Catalog and pricing
    # ------------------------------------------------------------------
    def add_product(
        self,
        sku: str,
        name: str,
        price: float,
        *,
        characteristic: Optional[LensCharacteristic] = None,
        category: str = "lens",
        actor: Optional[User] = None,
    ) -> Product:
        if actor is not None:
            require(actor, Action.MUTATE_CATALOG)
        if price < 0:
            raise ValidationError("Price must not be negative")
        product = Product(
            sku=sku, name=name, price=price, characteristic=characteristic, category=category
        )
        self.products.add(sku, product)
        return product

    def list_catalog(self, actor: User) -> List[Product]:
        require(actor, Action.VIEW_CATALOG)
        return sorted(self.products.list(), key=lambda product: product.name)

    def _lens_prices(self) -> Dict[str, float]:
        prices: Dict[str, float] = {}
        for product in self.products.list():
            if product.category == "lens" and product.characteristic is not None:
                prices.setdefault(product.characteristic.value, product.price)
        return prices

    def _discount_for(
        self, organization_id: Optional[str], doctor: Optional[User]
    ) -> float:
        if organization_id is not None:
            organization = self.organizations.find(organization_id)
            if organization is not None:
                return organization.discount_percent
        if doctor is not None and doctor.discount_percent is not None:
            return doctor.discount_percent
        return self.options.default_discount_percent

    def quote_price(
        self,
        config: Mapping[str, Any],
        *,
        organization_id: Optional[str] = None,
        doctor: Optional[User] = None,
        is_urgent: bool = False,
    ) -> PriceQuote:
        prices = self._lens_prices()
        base_price = 0.0
        for params in _lens_eyes(config).values():
            characteristic = params.get("characteristic")
            if characteristic is None:
                continue
            base_price += prices.get(characteristic, 0.0) * params.get("qty", 1)

        discount_percent = self._discount_for(organization_id, doctor)
        discounted = base_price - round(base_price * discount_percent / 100)
        surcharge = (
            round(discounted * self.options.urgent_surcharge_percent / 100)
            if is_urgent
            else 0
        )
        return PriceQuote(
            base_price=base_price,
            discount_percent=discount_percent,
            urgent_surcharge=surcharge,
            total_price=discounted + surcharge,
        )

    # ------------------------------------------------------------------
    # Order intake and lookup
    # ------------------------------------------------------------------
    def _next_order_number(self) -> str:
        while True:
            candidate = f"LX-{uuid4().hex[:10].upper()}"
            if candidate not in self.orders:
                return candidate

    def create_order(
        self,
        patient: Patient,
        config: Dict[str, Any],
        *,
        actor: Optional[User] = None,
        organization_id: Optional[str] = None,
        optic_name: str = "",
        doctor_name: str = "",
        doctor_email: Optional[str] = None,
        is_urgent: bool = False,
        notes: Optional[str] = None,
        delivery_method: Optional[str] = None,
        delivery_address: Optional[str] = None,
        company: Optional[str] = None,
        inn: Optional[str] = None,
        external_id: Optional[str] = None,
        source: OrderSource = OrderSource.INTERNAL,
    ) -> Order:
        if not patient.name:
            raise ValidationError("patient.name is required")
        _lens_eyes(config)

        doctor: Optional[User] = None
        if actor is not None:
            if actor.role is Role.LABORATORY:
                raise ForbiddenError("Laboratory users cannot place orders")
            organization_id = actor.organization_id
            doctor = actor
            doctor_name = doctor_name or actor.full_name
            doctor_email = doctor_email or actor.email
        organization = (
            self.organizations.find(organization_id) if organization_id else None
        )
        if organization is not None:
            optic_name = optic_name or organization.name

        quote = self.quote_price(
            config, organization_id=organization_id, doctor=doctor, is_urgent=is_urgent
        )
        now = self.now()
        order = Order(
            id=str(uuid4()),
            order_number=self._next_order_number(),
            patient=patient,
            config=config,
            organization_id=organization_id,
            created_by_id=actor.id if actor is not None else None,
            optic_name=optic_name,
            doctor_name=doctor_name,
            doctor_email=doctor_email,
            company=company,
            inn=inn,
            delivery_method=delivery_method,
            delivery_address=delivery_address,
            notes=notes,
            is_urgent=is_urgent,
            edit_deadline=edit_deadline_for(
                now, is_urgent, self.options.edit_window_minutes
            ),
            total_price=quote.total_price,
            discount_percent=quote.discount_percent,
            meta=OrderMeta(created_at=now, updated_at=now),
            external_id=external_id,
            source=source,
        )
        self.orders.add(order.order_number, order)
        logger.info("Created order %s (source=%s)", order.order_number, source.value)
        return order

    def create_partner_order(
        self,
        patient: Patient,
        config: Dict[str, Any],
        *,
        partner_order_id: Optional[str] = None,
        clinic_name: str = "",
        creator_name: str = "",
        creator_email: Optional[str] = None,
        is_urgent: bool = False,
        notes: Optional[str] = None,
        delivery_method: Optional[str] = None,
        delivery_address: Optional[str] = None,
        company: Optional[str] = None,
    ) -> Order:
        """Create an order submitted by the partner system.

        The clinic is linked by a case-insensitive substring match on its name;
        unmatched clinics still get an order, priced with the default discount.
        """

        organization_id = None
        if clinic_name:
            needle = clinic_name.lower()
            for organization in self.organizations.list():
                if needle in organization.name.lower():
                    organization_id = organization.id
                    break
        return self.create_order(
            patient,
            config,
            organization_id=organization_id,
            optic_name=clinic_name,
            doctor_name=creator_name,
            doctor_email=creator_email,
            is_urgent=is_urgent,
            notes=f"[Partner] {notes}" if notes else "[Partner order]",
            delivery_method=delivery_method,
            delivery_address=delivery_address,
            company=company,
            external_id=partner_order_id,
            source=OrderSource.PARTNER,
        )

    def get_order(self, order_number: str, actor: Optional[User] = None) -> Order:
        order = self.orders.find(order_number)
        if order is None or (actor is not None and not can_view_order(actor, order)):
            raise NotFoundError(f"Order {order_number!r} not found")
        return order

    def list_orders(
        self, actor: User, *, status: Optional[OrderStatus] = None
    ) -> List[Order]:
        orders = select(
            self.orders,
            lambda order: can_view_order(actor, order)
            and (status is None or order.status is status),
        )
        orders.sort(key=lambda order: order.meta.created_at, reverse=True)
        return orders

    def list_partner_orders(
        self,
        *,
        partner_order_id: Optional[str] = None,
        order_number: Optional[str] = None,
        clinic_name: Optional[str] = None,
        status: Optional[OrderStatus] = None,
    ) -> List[Order]:
        """Orders as seen by the partner; partner-sourced only unless an id is given."""

        matches = []
        for order in self.orders.list():
            if partner_order_id and order.external_id != partner_order_id:
                continue
            if order_number and order.order_number != order_number:
                continue
            if clinic_name and clinic_name.lower() not in order.optic_name.lower():
                continue
            if status is not None and order.status is not status:
                continue
            if not partner_order_id and not order_number and order.source is not OrderSource.PARTNER:
                continue
            matches.append(order)
        matches.sort(key=lambda order: order.meta.created_at, reverse=True)
        return matches[:PARTNER_ORDER_LIMIT]

    def edit_order(
        self, order_number: str, changes: Mapping[str, Any], *, actor: User
    ) -> Order:
        unknown = set(changes) - EDITABLE_ORDER_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        if "patient" in changes and not isinstance(changes["patient"], Patient):
            raise ValidationError("patient must be provided")
        if "config" in changes:
            _lens_eyes(changes["config"])
        with self._order_guard(order_number):
            order = self.get_order(order_number, actor)
            require_order_edit(actor, order, self.now())
            for name, value in changes.items():
                setattr(order, name, value)
            order.meta.updated_at = self.now()
            self.orders.upsert(order.order_number, order)
        return order

    # ------------------------------------------------------------------
    # Status state machine
    # ------------------------------------------------------------------
    def transition(
        self,
        order_number: str,
        status: Any,
        notes: Optional[str] = None,
        *,
        actor: Optional[User] = None,
    ) -> Order:
        """Move an order to ``status`` and mirror the change to the partner.

        Each milestone timestamp is stamped on the first entry into its status
        only. Without strict transitions any status may follow any other.
        The partner push happens after the local write and cannot fail it.
        """

        new_status = _coerce_status(status)
        with self._order_guard(order_number):
            order = self.get_order(order_number, actor)
            if actor is not None:
                require(actor, Action.CHANGE_ORDER_STATUS)
            if (
                self.options.strict_transitions
                and new_status not in ALLOWED_TRANSITIONS[order.status]
            ):
                raise InvalidStateError(
                    f"Cannot move order {order_number} from {order.status.value} to {new_status.value}"
                )

            now = self.now()
            previous = order.status
            order.status = new_status
            milestone = MILESTONE_FIELDS.get(new_status)
            if milestone is not None and getattr(order, milestone) is None:
                setattr(order, milestone, now)
            order.meta.updated_at = now
            if notes:
                order.notes = notes
            self.orders.upsert(order.order_number, order)

        logger.info(
            "Order %s moved %s -> %s", order.order_number, previous.value, new_status.value
        )
        result = self.mirror.notify(order)
        if not result.ok:
            logger.debug("Order %s kept local status despite sync failure", order.order_number)
        return order

    # ------------------------------------------------------------------
    # Defects
    # ------------------------------------------------------------------
    def add_defect(
        self,
        order_number: str,
        qty: int,
        note: Optional[str] = None,
        *,
        actor: Optional[User] = None,
    ) -> Tuple[Defect, Order]:
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise ValidationError("Defect quantity must be a positive integer")
        with self._order_guard(order_number):
            order = self.get_order(order_number, actor)
            if actor is not None:
                require(actor, Action.ADD_DEFECT)
            if order.status not in DEFECT_STATUSES:
                raise InvalidStateError(
                    "Defects can only be added during production, ready, or rework stage"
                )
            now = self.now()
            defect = Defect(
                id=f"DEF-{uuid4().hex[:8].upper()}",
                qty=qty,
                created_at=now,
                note=note or None,
            )
            order.defects.append(defect)
            order.meta.updated_at = now
            self.orders.upsert(order.order_number, order)
        logger.info("Recorded defect %s (qty=%d) on order %s", defect.id, qty, order_number)
        return defect, order

    def set_defect_archived(
        self,
        order_number: str,
        defect_id: str,
        archived: Optional[bool] = None,
        *,
        actor: Optional[User] = None,
    ) -> Tuple[Defect, Order]:
        """Set the archived flag, or toggle it when ``archived`` is None."""

        with self._order_guard(order_number):
            order = self.get_order(order_number, actor)
            defect = order.find_defect(defect_id)
            if defect is None:
                raise NotFoundError(f"Defect {defect_id!r} not found")
            defect.archived = (not defect.archived) if archived is None else archived
            order.meta.updated_at = self.now()
            self.orders.upsert(order.order_number, order)
        return defect, order

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------
    def set_payment_status(
        self, order_number: str, payment_status: Any, *, actor: User
    ) -> Order:
        require(actor, Action.CHANGE_PAYMENT_STATUS)
        try:
            status = PaymentStatus(payment_status)
        except ValueError as exc:
            raise ValidationError("Invalid payment status") from exc
        with self._order_guard(order_number):
            order = self.get_order(order_number, actor)
            order.payment_status = status
            order.meta.updated_at = self.now()
            self.orders.upsert(order.order_number, order)
        return order

    # ------------------------------------------------------------------
    # Staff
    # ------------------------------------------------------------------
    def list_lab_staff(self, actor: User) -> List[User]:
        require(actor, Action.MANAGE_LAB_STAFF)
        staff = select(self.users, lambda user: user.role is Role.LABORATORY)
        return sorted(staff, key=lambda user: user.created_at)

    def create_lab_staff(
        self, email: str, full_name: str, sub_role: SubRole, *, actor: User, phone: str = ""
    ) -> User:
        require(actor, Action.MANAGE_LAB_STAFF)
        if sub_role not in LAB_SUB_ROLES:
            raise ValidationError(f"{sub_role.value} is not a laboratory sub-role")
        return self.register_user(email, full_name, sub_role, phone=phone)

    def delete_lab_staff(self, user_id: str, *, actor: User) -> None:
        require(actor, Action.MANAGE_LAB_STAFF)
        require_not_self(actor, user_id)
        target = self.users.find(user_id)
        if target is None or target.role is not Role.LABORATORY:
            raise NotFoundError("User not found")
        self.users.remove(user_id)
        logger.info("Laboratory user %s deleted by %s", user_id, actor.id)

    def list_clinic_staff(self, actor: User) -> List[User]:
        require(actor, Action.MANAGE_CLINIC_STAFF)
        if actor.organization_id is None:
            return []
        staff = select(self.users, lambda user: user.organization_id == actor.organization_id)
        return sorted(staff, key=lambda user: user.created_at)

    def create_clinic_staff(
        self, email: str, full_name: str, sub_role: SubRole, *, actor: User, phone: str = ""
    ) -> User:
        require(actor, Action.MANAGE_CLINIC_STAFF)
        if sub_role not in CLINIC_SUB_ROLES:
            raise ValidationError(f"{sub_role.value} is not a clinic sub-role")
        return self.register_user(
            email, full_name, sub_role, organization_id=actor.organization_id, phone=phone
        )

    def _clinic_staff_target(self, actor: User, user_id: str) -> User:
        require(actor, Action.MANAGE_CLINIC_STAFF)
        target = self.users.find(user_id)
        if target is None or target.organization_id is None:
            raise NotFoundError("User not found")
        require(actor, Action.MANAGE_CLINIC_STAFF, target.organization_id)
        return target

    def update_clinic_staff(
        self,
        user_id: str,
        *,
        actor: User,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        sub_role: Optional[SubRole] = None,
    ) -> User:
        target = self._clinic_staff_target(actor, user_id)
        if full_name is None and phone is None and sub_role is None:
            raise ValidationError("Nothing to update")
        if sub_role is not None and sub_role not in CLINIC_SUB_ROLES:
            raise ValidationError(f"{sub_role.value} is not a clinic sub-role")
        if full_name is not None:
            target.full_name = full_name
        if phone is not None:
            target.phone = phone
        if sub_role is not None:
            target.sub_role = sub_role
        self.users.upsert(target.id, target)
        return target

    def delete_clinic_staff(self, user_id: str, *, actor: User) -> None:
        require(actor, Action.MANAGE_CLINIC_STAFF)
        require_not_self(actor, user_id)
        self._clinic_staff_target(actor, user_id)
        self.users.remove(user_id)
        logger.info("Clinic user %s deleted by %s", user_id, actor.id)

    # ------------------------------------------------------------------
    # Counterparties
    # ------------------------------------------------------------------
    def list_counterparties(self, actor: User) -> List[Organization]:
        if actor.role is not Role.LABORATORY:
            raise ForbiddenError("Only laboratory users can view counterparties")
        return sorted(self.organizations.list(), key=lambda org: org.name)

    def list_active_counterparties(self) -> List[Organization]:
        active = select(
            self.organizations, lambda org: org.status is OrganizationStatus.ACTIVE
        )
        return sorted(active, key=lambda org: org.name)

    def set_organization_discount(
        self, organization_id: str, discount_percent: Any, *, actor: User
    ) -> Organization:
        require(actor, Action.CHANGE_DISCOUNT)
        percent = _validate_percent(discount_percent)
        organization = self.organizations.get(organization_id)
        organization.discount_percent = percent
        self.organizations.upsert(organization.id, organization)
        logger.info("Discount for %s set to %.1f%%", organization.name, percent)
        return organization

    def set_user_discount(self, user_id: str, discount_percent: Any, *, actor: User) -> User:
        require(actor, Action.CHANGE_DISCOUNT)
        percent = _validate_percent(discount_percent)
        user = self.users.get(user_id)
        user.discount_percent = percent
        self.users.upsert(user.id, user)
        return user


__all__ = ["LensFlowService", "OrderPolicyOptions", "PriceQuote"]
