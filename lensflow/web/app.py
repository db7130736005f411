"""FastAPI-based HTTP interface for LensFlow."""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..domain import LensCharacteristic, OrderStatus, Patient, SubRole, User
from ..errors import AuthenticationError, ConfigurationError, LensFlowError
from ..partner import PartnerClient, StatusMirror
from ..policy import hides_prices
from ..repository import InMemoryDatabase
from ..services import LensFlowService, OrderPolicyOptions
from ..storage import LensFlowDatabase
from .schemas import (
    ClinicStaffUpdate,
    DefectArchive,
    DefectCreate,
    DiscountUpdate,
    OrderCreate,
    OrderEdit,
    PartnerOrderCreate,
    PaymentUpdate,
    ProductCreate,
    StaffCreate,
    StatusUpdate,
    defect_to_dict,
    order_to_dict,
    organization_to_dict,
    partner_order_to_dict,
    product_to_dict,
    user_to_dict,
)

logger = logging.getLogger(__name__)

Database = Union[InMemoryDatabase, LensFlowDatabase]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_mirror(settings: Settings) -> StatusMirror:
    if not settings.PARTNER_API_URL:
        logger.info("PARTNER_API_URL not set, partner status mirror disabled")
        return StatusMirror()
    client = PartnerClient(
        settings.PARTNER_API_URL,
        token=settings.PARTNER_API_TOKEN,
        timeout=settings.PARTNER_TIMEOUT_SECONDS,
    )
    return StatusMirror(client)


def open_database(settings: Settings) -> Database:
    if settings.DATABASE_PATH:
        return LensFlowDatabase(settings.DATABASE_PATH)
    return InMemoryDatabase()


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------
def get_service(request: Request) -> LensFlowService:
    return request.app.state.lensflow_service


def current_user(
    request: Request, x_user_id: Optional[str] = Header(default=None)
) -> User:
    """Resolve the caller from ``X-User-Id``. Token issuance happens upstream."""

    if not x_user_id:
        raise AuthenticationError("Unauthorized")
    service: LensFlowService = request.app.state.lensflow_service
    user = service.users.find(x_user_id)
    if user is None:
        raise AuthenticationError("Unauthorized")
    return user


def require_partner_key(request: Request) -> None:
    """Check the shared secret presented by the partner on /api/external/*."""

    settings: Settings = request.app.state.settings
    presented = request.headers.get("x-api-key")
    if not presented:
        authorization = request.headers.get("authorization", "")
        if authorization.startswith("Bearer "):
            presented = authorization[len("Bearer "):]
    expected = settings.EXTERNAL_API_KEY
    if not expected:
        logger.error("EXTERNAL_API_KEY is not set")
        raise ConfigurationError("Server configuration error")
    if not presented or not secrets.compare_digest(
        presented.encode("utf-8"), expected.encode("utf-8")
    ):
        raise AuthenticationError("Invalid or missing API key")


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    mirror: Optional[StatusMirror] = None,
    service: Optional[LensFlowService] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    if service is None:
        database = database or open_database(settings)
        service = LensFlowService(
            order_repo=database.orders,
            user_repo=database.users,
            organization_repo=database.organizations,
            product_repo=database.products,
            mirror=mirror or build_mirror(settings),
            options=OrderPolicyOptions.from_settings(settings),
        )
    if settings.SEED_DEMO_DATA:
        ensure_demo_data(service)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        service.mirror.close()
        if database is not None:
            database.close()

    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
    app.state.lensflow_service = service
    app.state.settings = settings
    app.state.database = database

    @app.exception_handler(LensFlowError)
    async def lensflow_error_handler(request: Request, exc: LensFlowError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400, content={"error": "Validation error", "details": details}
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("%s %s failed", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    @app.get("/api/orders")
    def list_orders(
        status: Optional[OrderStatus] = None,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        return [order_to_dict(order) for order in service.list_orders(user, status=status)]

    @app.post("/api/orders", status_code=201)
    def create_order(
        body: OrderCreate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        order = service.create_order(
            body.patient.to_domain(),
            body.config.to_dict(),
            actor=user,
            doctor_email=body.doctor_email,
            is_urgent=body.is_urgent,
            notes=body.notes,
            delivery_method=body.delivery_method,
            delivery_address=body.delivery_address,
            company=body.company,
            inn=body.inn,
        )
        return order_to_dict(order)

    @app.get("/api/orders/{order_number}")
    def get_order(
        order_number: str,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        return order_to_dict(service.get_order(order_number, user))

    @app.patch("/api/orders/{order_number}")
    def edit_order(
        order_number: str,
        body: OrderEdit,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        order = service.edit_order(order_number, body.changes(), actor=user)
        return order_to_dict(order)

    @app.patch("/api/orders/{order_number}/status")
    def update_order_status(
        order_number: str,
        body: StatusUpdate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        order = service.transition(order_number, body.status, body.notes, actor=user)
        return order_to_dict(order)

    @app.patch("/api/orders/{order_number}/payment")
    def update_payment_status(
        order_number: str,
        body: PaymentUpdate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        order = service.set_payment_status(order_number, body.payment_status, actor=user)
        return order_to_dict(order)

    @app.post("/api/orders/{order_number}/defects", status_code=201)
    def add_defect(
        order_number: str,
        body: DefectCreate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        defect, order = service.add_defect(order_number, body.qty, body.note, actor=user)
        return {"defect": defect_to_dict(defect), "order": order_to_dict(order)}

    @app.patch("/api/orders/{order_number}/defects/{defect_id}/archive")
    def archive_defect(
        order_number: str,
        defect_id: str,
        body: Optional[DefectArchive] = None,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        archived = body.archived if body is not None else None
        defect, _ = service.set_defect_archived(order_number, defect_id, archived, actor=user)
        return {"defect": defect_to_dict(defect)}

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    @app.get("/api/catalog")
    def list_catalog(
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        hide_price = hides_prices(user.sub_role)
        return [
            product_to_dict(product, hide_price=hide_price)
            for product in service.list_catalog(user)
        ]

    @app.post("/api/catalog", status_code=201)
    def add_product(
        body: ProductCreate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        product = service.add_product(
            body.sku,
            body.name,
            body.price,
            characteristic=body.characteristic,
            category=body.category,
            actor=user,
        )
        return product_to_dict(product)

    # ------------------------------------------------------------------
    # Staff
    # ------------------------------------------------------------------
    @app.get("/api/staff")
    def list_lab_staff(
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        return [user_to_dict(member) for member in service.list_lab_staff(user)]

    @app.post("/api/staff", status_code=201)
    def create_lab_staff(
        body: StaffCreate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        member = service.create_lab_staff(
            body.email, body.full_name, body.sub_role, actor=user, phone=body.phone
        )
        return user_to_dict(member)

    @app.delete("/api/staff/{user_id}")
    def delete_lab_staff(
        user_id: str,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        service.delete_lab_staff(user_id, actor=user)
        return {"success": True}

    @app.get("/api/clinic-staff")
    def list_clinic_staff(
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        return [user_to_dict(member) for member in service.list_clinic_staff(user)]

    @app.post("/api/clinic-staff", status_code=201)
    def create_clinic_staff(
        body: StaffCreate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        member = service.create_clinic_staff(
            body.email, body.full_name, body.sub_role, actor=user, phone=body.phone
        )
        return user_to_dict(member)

    @app.patch("/api/clinic-staff/{user_id}")
    def update_clinic_staff(
        user_id: str,
        body: ClinicStaffUpdate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        member = service.update_clinic_staff(
            user_id,
            actor=user,
            full_name=body.full_name,
            phone=body.phone,
            sub_role=body.sub_role,
        )
        return user_to_dict(member)

    @app.delete("/api/clinic-staff/{user_id}")
    def delete_clinic_staff(
        user_id: str,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        service.delete_clinic_staff(user_id, actor=user)
        return {"success": True}

    # ------------------------------------------------------------------
    # Counterparties
    # ------------------------------------------------------------------
    @app.get("/api/counterparties")
    def list_counterparties(
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        return [organization_to_dict(org) for org in service.list_counterparties(user)]

    @app.patch("/api/counterparties/{organization_id}/discount")
    def update_counterparty_discount(
        organization_id: str,
        body: DiscountUpdate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        organization = service.set_organization_discount(
            organization_id, body.discount_percent, actor=user
        )
        return organization_to_dict(organization)

    @app.patch("/api/users/{user_id}/discount")
    def update_user_discount(
        user_id: str,
        body: DiscountUpdate,
        user: User = Depends(current_user),
        service: LensFlowService = Depends(get_service),
    ):
        member = service.set_user_discount(user_id, body.discount_percent, actor=user)
        return user_to_dict(member)

    # ------------------------------------------------------------------
    # Partner API
    # ------------------------------------------------------------------
    @app.get("/api/external/counterparties", dependencies=[Depends(require_partner_key)])
    def external_counterparties(service: LensFlowService = Depends(get_service)):
        counterparties = [
            {
                "id": org.id,
                "name": org.name,
                "city": org.city,
                "discount_percent": org.discount_percent,
            }
            for org in service.list_active_counterparties()
        ]
        return {"counterparties": counterparties, "count": len(counterparties)}

    @app.post(
        "/api/external/orders",
        status_code=201,
        dependencies=[Depends(require_partner_key)],
    )
    def external_create_order(
        body: PartnerOrderCreate, service: LensFlowService = Depends(get_service)
    ):
        order = service.create_partner_order(
            body.patient.to_domain(),
            body.config.to_dict(),
            partner_order_id=body.partner_order_id,
            clinic_name=body.clinic_name,
            creator_name=body.creator_name,
            creator_email=body.creator_email,
            is_urgent=body.is_urgent,
            notes=body.notes,
            delivery_method=body.delivery_method,
            delivery_address=body.delivery_address,
            company=body.company,
        )
        return {
            "success": True,
            "lensflow_order_id": order.order_number,
            "partner_order_id": order.external_id,
            "status": "new",
            "total_price": order.total_price,
            "edit_deadline": order.edit_deadline.isoformat() if order.edit_deadline else None,
            "created_at": order.meta.created_at.isoformat(),
        }

    @app.get("/api/external/orders", dependencies=[Depends(require_partner_key)])
    def external_list_orders(
        clinic_name: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        partner_order_id: Optional[str] = None,
        order_id: Optional[str] = None,
        service: LensFlowService = Depends(get_service),
    ):
        orders = service.list_partner_orders(
            partner_order_id=partner_order_id,
            order_number=order_id,
            clinic_name=clinic_name,
            status=status,
        )
        result = [partner_order_to_dict(order) for order in orders]
        return {"orders": result, "count": len(result)}

    return app


def ensure_demo_data(service: LensFlowService) -> Dict[str, Any]:
    """Seed a small laboratory, two clinics, a catalog and a few orders."""

    if len(service.organizations) > 0:
        return {}

    vision = service.create_organization("Vision Clinic", city="Moscow", discount_percent=10)
    ortho = service.create_organization("OrthoK Center", city="Kazan", discount_percent=7)

    head = service.register_user("head@lab.example", "Irina Volkova", SubRole.LAB_HEAD)
    service.register_user("admin@lab.example", "Pavel Orlov", SubRole.LAB_ADMIN)
    service.register_user("books@lab.example", "Olga Nikitina", SubRole.LAB_ACCOUNTANT)
    service.register_user("engineer@lab.example", "Sergey Lebedev", SubRole.LAB_ENGINEER)
    manager = service.register_user(
        "manager@vision.example", "Anna Smirnova", SubRole.OPTIC_MANAGER,
        organization_id=vision.id,
    )
    optic_doctor = service.register_user(
        "doctor@vision.example", "Dmitry Kuznetsov", SubRole.OPTIC_DOCTOR,
        organization_id=vision.id,
    )
    service.register_user(
        "manager@orthok.example", "Elena Popova", SubRole.OPTIC_MANAGER,
        organization_id=ortho.id,
    )
    service.register_user(
        "solo@doctor.example", "Maria Sokolova", SubRole.DOCTOR, discount_percent=3
    )

    service.add_product("ML-TOR", "MediLens toric", 9500, characteristic=LensCharacteristic.TORIC)
    service.add_product(
        "ML-SPH", "MediLens spherical", 8200, characteristic=LensCharacteristic.SPHERICAL
    )
    service.add_product("ML-RGP", "MediLens RGP", 7000, characteristic=LensCharacteristic.RGP)
    service.add_product("CASE-01", "Lens case", 350, category="accessory")

    config = {
        "type": "medilens",
        "eyes": {
            "od": {"characteristic": "toric", "km": 43.5, "dia": 10.6, "qty": 1},
            "os": {"characteristic": "spherical", "km": 43.0, "dia": 10.6, "qty": 1},
        },
    }
    pending = service.create_order(
        Patient(name="Ivan Petrov", phone="+7 900 000-00-01"), config, actor=optic_doctor
    )
    in_work = service.create_order(
        Patient(name="Olga Ivanova", phone="+7 900 000-00-02"), config, actor=manager
    )
    service.transition(in_work.order_number, OrderStatus.IN_PRODUCTION)
    service.add_defect(in_work.order_number, 1, "Edge chipped during polishing")
    return {
        "lab_head": head.id,
        "optic_manager": manager.id,
        "optic_doctor": optic_doctor.id,
        "orders": [pending.order_number, in_work.order_number],
    }


__all__ = ["create_app", "ensure_demo_data", "current_user", "require_partner_key"]
