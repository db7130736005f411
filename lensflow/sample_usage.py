"""Demonstration script for the LensFlow order lifecycle."""

from __future__ import annotations

import logging
from pprint import pprint

from . import LensFlowService, OrderStatus, Patient, SubRole
from .domain import LensCharacteristic
from .errors import InvalidStateError
from .web.schemas import order_to_dict


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    lab = LensFlowService()

    # Master data
    clinic = lab.create_organization("Vision Clinic", city="Moscow", discount_percent=10)
    doctor = lab.register_user(
        "doctor@vision.example",
        "Dmitry Kuznetsov",
        SubRole.OPTIC_DOCTOR,
        organization_id=clinic.id,
    )
    accountant = lab.register_user("books@lab.example", "Olga Nikitina", SubRole.LAB_ACCOUNTANT)
    lab.add_product("ML-TOR", "MediLens toric", 9500, characteristic=LensCharacteristic.TORIC)
    lab.add_product(
        "ML-SPH", "MediLens spherical", 8200, characteristic=LensCharacteristic.SPHERICAL
    )

    order = lab.create_order(
        Patient(name="Ivan Petrov", phone="+7 900 000-00-01"),
        {
            "type": "medilens",
            "eyes": {
                "od": {"characteristic": "toric", "qty": 1},
                "os": {"characteristic": "spherical", "qty": 1},
            },
        },
        actor=doctor,
    )
    print(f"Created {order.order_number}, total {order.total_price:.0f}")

    try:
        lab.add_defect(order.order_number, 3)
    except InvalidStateError as exc:
        print(f"Rejected defect on pending order: {exc}")

    for status in (
        OrderStatus.IN_PRODUCTION,
        OrderStatus.READY,
        OrderStatus.REWORK,
        OrderStatus.IN_PRODUCTION,
        OrderStatus.READY,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    ):
        lab.transition(order.order_number, status)
        if status is OrderStatus.READY and not order.defects:
            lab.add_defect(order.order_number, 1, "Scratch found at final inspection")

    lab.set_payment_status(order.order_number, "paid", actor=accountant)
    pprint(order_to_dict(lab.get_order(order.order_number)))


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
