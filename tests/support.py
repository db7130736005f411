"""Shared fixtures for the LensFlow tests."""

from datetime import datetime, timedelta, timezone

from lensflow.domain import LensCharacteristic, Patient, SubRole
from lensflow.errors import ExternalSyncFailure
from lensflow.partner import StatusMirror
from lensflow.services import LensFlowService, OrderPolicyOptions

LENS_CONFIG = {
    "type": "medilens",
    "eyes": {
        "od": {"characteristic": "toric", "qty": 1},
        "os": {"characteristic": "spherical", "qty": 2},
    },
}


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingPartnerClient:
    def __init__(self):
        self.calls = []

    def push_order_status(self, partner_order_id, status, order_number=""):
        self.calls.append((partner_order_id, status, order_number))

    def close(self):
        pass


class ExplodingPartnerClient(RecordingPartnerClient):
    def push_order_status(self, partner_order_id, status, order_number=""):
        self.calls.append((partner_order_id, status, order_number))
        raise ExternalSyncFailure("partner unavailable")


def build_service(clock=None, partner_client=None, **options):
    """Service with two clinics, lab staff, a solo doctor and a lens catalog."""

    service = LensFlowService(
        mirror=StatusMirror(partner_client),
        options=OrderPolicyOptions(**options),
        clock=clock or FakeClock(),
    )
    service.clinic_a = service.create_organization("Vision Clinic", city="Moscow", discount_percent=10)
    service.clinic_b = service.create_organization("OrthoK Center", city="Kazan", discount_percent=0)
    service.lab_head = service.register_user("head@lab.example", "Irina Volkova", SubRole.LAB_HEAD)
    service.lab_admin = service.register_user("admin@lab.example", "Pavel Orlov", SubRole.LAB_ADMIN)
    service.accountant = service.register_user(
        "books@lab.example", "Olga Nikitina", SubRole.LAB_ACCOUNTANT
    )
    service.engineer = service.register_user(
        "engineer@lab.example", "Sergey Lebedev", SubRole.LAB_ENGINEER
    )
    service.manager_a = service.register_user(
        "manager@vision.example", "Anna Smirnova", SubRole.OPTIC_MANAGER,
        organization_id=service.clinic_a.id,
    )
    service.doctor_a = service.register_user(
        "doctor@vision.example", "Dmitry Kuznetsov", SubRole.OPTIC_DOCTOR,
        organization_id=service.clinic_a.id,
    )
    service.manager_b = service.register_user(
        "manager@orthok.example", "Elena Popova", SubRole.OPTIC_MANAGER,
        organization_id=service.clinic_b.id,
    )
    service.doctor_b = service.register_user(
        "doctor@orthok.example", "Igor Morozov", SubRole.OPTIC_DOCTOR,
        organization_id=service.clinic_b.id,
    )
    service.solo_doctor = service.register_user(
        "solo@doctor.example", "Maria Sokolova", SubRole.DOCTOR, discount_percent=3
    )
    service.add_product("ML-TOR", "MediLens toric", 10000, characteristic=LensCharacteristic.TORIC)
    service.add_product(
        "ML-SPH", "MediLens spherical", 5000, characteristic=LensCharacteristic.SPHERICAL
    )
    return service


def place_order(service, actor=None, config=None, **kwargs):
    return service.create_order(
        Patient(name="Ivan Petrov", phone="+7 900 000-00-01"),
        dict(LENS_CONFIG) if config is None else config,
        actor=actor or service.doctor_a,
        **kwargs,
    )
