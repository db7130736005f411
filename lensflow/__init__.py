"""Order management for an orthokeratology lens laboratory.

This package provides the order model, the status state machine with defect
tracking, the role-based access policy, in-memory and SQLite persistence, and a
best-effort status mirror towards the partner system that submits orders.
"""

from .domain import (
    Defect,
    Order,
    OrderStatus,
    Organization,
    Patient,
    PaymentStatus,
    Role,
    SubRole,
    User,
)
from .partner import StatusMirror
from .services import LensFlowService, OrderPolicyOptions

__all__ = [
    "Defect",
    "Order",
    "OrderStatus",
    "Organization",
    "Patient",
    "PaymentStatus",
    "Role",
    "SubRole",
    "User",
    "StatusMirror",
    "LensFlowService",
    "OrderPolicyOptions",
]
