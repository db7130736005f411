"""Role matrix and edit-window rules.

Everything here is pure: callers pass in the user, order and clock value and
get a decision (or an exception from the ``require_*`` helpers) back.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .domain import Order, OrderStatus, Role, SubRole, User, utcnow
from .errors import ForbiddenError, NotFoundError


class Action(str, Enum):
    VIEW_CATALOG = "view_catalog"
    MUTATE_CATALOG = "mutate_catalog"
    MANAGE_LAB_STAFF = "manage_lab_staff"
    MANAGE_CLINIC_STAFF = "manage_clinic_staff"
    CHANGE_PAYMENT_STATUS = "change_payment_status"
    CHANGE_DISCOUNT = "change_discount"
    EDIT_ORDER = "edit_order"
    CHANGE_ORDER_STATUS = "change_order_status"
    ADD_DEFECT = "add_defect"


_ANY = frozenset(SubRole)

ACTION_SUB_ROLES: Dict[Action, FrozenSet[SubRole]] = {
    Action.VIEW_CATALOG: _ANY,
    Action.MUTATE_CATALOG: frozenset({SubRole.LAB_HEAD, SubRole.LAB_ADMIN}),
    Action.MANAGE_LAB_STAFF: frozenset({SubRole.LAB_HEAD, SubRole.LAB_ADMIN}),
    Action.MANAGE_CLINIC_STAFF: frozenset({SubRole.OPTIC_MANAGER}),
    Action.CHANGE_PAYMENT_STATUS: frozenset({SubRole.LAB_ACCOUNTANT}),
    Action.CHANGE_DISCOUNT: frozenset({SubRole.LAB_HEAD}),
    # Ownership and the edit window are checked by ``require_order_edit``.
    Action.EDIT_ORDER: _ANY,
    Action.CHANGE_ORDER_STATUS: _ANY,
    Action.ADD_DEFECT: _ANY,
}

# Actions whose target must belong to the caller's own organization.
ORGANIZATION_SCOPED: FrozenSet[Action] = frozenset({Action.MANAGE_CLINIC_STAFF})

PRICE_HIDDEN_SUB_ROLES: FrozenSet[SubRole] = frozenset(
    {SubRole.DOCTOR, SubRole.OPTIC_DOCTOR}
)

EDITABLE_STATUSES: FrozenSet[OrderStatus] = frozenset({OrderStatus.PENDING})


def _permits(sub_role: SubRole, action: Action) -> bool:
    return sub_role in ACTION_SUB_ROLES.get(action, frozenset())


def is_authorized(
    role: Role,
    sub_role: SubRole,
    action: Action,
    resource_org_id: Optional[str] = None,
    caller_org_id: Optional[str] = None,
) -> bool:
    """Return whether ``sub_role`` may perform ``action`` on the given resource."""

    if sub_role.role is not role:
        return False
    if not _permits(sub_role, action):
        return False
    if action in ORGANIZATION_SCOPED and resource_org_id is not None:
        return caller_org_id is not None and resource_org_id == caller_org_id
    return True


def require(user: User, action: Action, resource_org_id: Optional[str] = None) -> None:
    """Raise unless ``user`` may perform ``action``.

    A role that lacks the permission gets ``ForbiddenError``. A permitted role
    aimed at another organization's resource gets ``NotFoundError`` so the
    resource's existence is not revealed.
    """

    if not _permits(user.sub_role, action):
        raise ForbiddenError(f"{user.sub_role.value} may not {action.value}")
    if not is_authorized(
        user.role, user.sub_role, action, resource_org_id, user.organization_id
    ):
        raise NotFoundError("Resource not found")


def require_not_self(caller: User, target_id: str) -> None:
    if caller.id == target_id:
        raise ForbiddenError("Users cannot delete themselves")


def hides_prices(sub_role: SubRole) -> bool:
    return sub_role in PRICE_HIDDEN_SUB_ROLES


def can_view_order(user: User, order: Order) -> bool:
    if user.role is Role.LABORATORY:
        return True
    if user.role is Role.OPTIC:
        return (
            user.organization_id is not None
            and order.organization_id == user.organization_id
        )
    return order.created_by_id == user.id


def edit_deadline_for(
    created_at: datetime, is_urgent: bool, window_minutes: int
) -> datetime:
    """Urgent orders go straight to production and are never editable."""

    if is_urgent:
        return created_at
    return created_at + timedelta(minutes=window_minutes)


def can_edit_order(order: Order, now: Optional[datetime] = None) -> bool:
    if order.status not in EDITABLE_STATUSES:
        return False
    if order.edit_deadline is None:
        return True
    return (now or utcnow()) < order.edit_deadline


def require_order_edit(user: User, order: Order, now: Optional[datetime] = None) -> None:
    if order.created_by_id != user.id:
        raise ForbiddenError("Only the order creator may edit the order")
    if not can_edit_order(order, now):
        raise ForbiddenError("Order is no longer editable")


__all__ = [
    "Action",
    "ACTION_SUB_ROLES",
    "is_authorized",
    "require",
    "require_not_self",
    "hides_prices",
    "can_view_order",
    "edit_deadline_for",
    "can_edit_order",
    "require_order_edit",
]
