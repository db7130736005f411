"""Access matrix and edit-window tests."""

import unittest
from datetime import timedelta

from lensflow.domain import OrderStatus, Role, SubRole
from lensflow.errors import ForbiddenError, NotFoundError
from lensflow.policy import (
    Action,
    can_edit_order,
    can_view_order,
    edit_deadline_for,
    hides_prices,
    is_authorized,
    require,
    require_order_edit,
)

from support import FakeClock, build_service, place_order


def allowed(sub_role, action, **scope):
    return is_authorized(sub_role.role, sub_role, action, **scope)


class TestRoleMatrix(unittest.TestCase):

    def test_catalog_visible_to_everyone(self):
        for sub_role in SubRole:
            self.assertTrue(allowed(sub_role, Action.VIEW_CATALOG))

    def test_prices_hidden_for_doctors_only(self):
        hidden = {role for role in SubRole if hides_prices(role)}
        self.assertEqual(hidden, {SubRole.DOCTOR, SubRole.OPTIC_DOCTOR})

    def test_lab_head_and_admin_manage_catalog_and_lab_staff(self):
        for action in (Action.MUTATE_CATALOG, Action.MANAGE_LAB_STAFF):
            permitted = {role for role in SubRole if allowed(role, action)}
            self.assertEqual(permitted, {SubRole.LAB_HEAD, SubRole.LAB_ADMIN})

    def test_single_role_actions(self):
        cases = {
            Action.CHANGE_PAYMENT_STATUS: SubRole.LAB_ACCOUNTANT,
            Action.CHANGE_DISCOUNT: SubRole.LAB_HEAD,
            Action.MANAGE_CLINIC_STAFF: SubRole.OPTIC_MANAGER,
        }
        for action, only in cases.items():
            permitted = {role for role in SubRole if allowed(role, action)}
            self.assertEqual(permitted, {only}, action)

    def test_status_and_defects_open_to_all_roles(self):
        for sub_role in SubRole:
            self.assertTrue(allowed(sub_role, Action.CHANGE_ORDER_STATUS))
            self.assertTrue(allowed(sub_role, Action.ADD_DEFECT))

    def test_clinic_staff_scoped_to_own_organization(self):
        self.assertTrue(
            allowed(
                SubRole.OPTIC_MANAGER,
                Action.MANAGE_CLINIC_STAFF,
                resource_org_id="org-a",
                caller_org_id="org-a",
            )
        )
        self.assertFalse(
            allowed(
                SubRole.OPTIC_MANAGER,
                Action.MANAGE_CLINIC_STAFF,
                resource_org_id="org-b",
                caller_org_id="org-a",
            )
        )

    def test_mismatched_role_and_sub_role_denied(self):
        self.assertFalse(
            is_authorized(Role.OPTIC, SubRole.LAB_HEAD, Action.CHANGE_DISCOUNT)
        )


class TestRequire(unittest.TestCase):

    def setUp(self):
        self.service = build_service()

    def test_missing_permission_is_forbidden(self):
        with self.assertRaises(ForbiddenError):
            require(self.service.lab_admin, Action.CHANGE_DISCOUNT)

    def test_cross_organization_is_not_found(self):
        with self.assertRaises(NotFoundError):
            require(
                self.service.manager_a,
                Action.MANAGE_CLINIC_STAFF,
                self.service.clinic_b.id,
            )

    def test_order_visibility(self):
        service = self.service
        order = place_order(service, actor=service.doctor_a)
        solo_order = place_order(service, actor=service.solo_doctor)

        self.assertTrue(can_view_order(service.engineer, order))
        self.assertTrue(can_view_order(service.manager_a, order))
        self.assertFalse(can_view_order(service.manager_b, order))
        self.assertTrue(can_view_order(service.solo_doctor, solo_order))
        self.assertFalse(can_view_order(service.solo_doctor, order))


class TestEditWindow(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.service = build_service(clock=self.clock, edit_window_minutes=120)
        self.order = place_order(self.service)

    def test_deadline_from_creation(self):
        self.assertEqual(
            self.order.edit_deadline, self.order.meta.created_at + timedelta(minutes=120)
        )
        self.assertEqual(
            edit_deadline_for(self.clock.current, True, 120), self.clock.current
        )

    def test_editable_until_deadline(self):
        self.assertTrue(can_edit_order(self.order, self.clock.advance(minutes=119)))
        self.assertFalse(can_edit_order(self.order, self.clock.advance(minutes=1)))

    def test_urgent_orders_never_editable(self):
        urgent = place_order(self.service, is_urgent=True)
        self.assertFalse(can_edit_order(urgent, self.clock.current))

    def test_closed_outside_pending(self):
        self.order.status = OrderStatus.IN_PRODUCTION
        self.assertFalse(can_edit_order(self.order, self.clock.current))

    def test_only_creator_may_edit(self):
        require_order_edit(self.service.doctor_a, self.order, self.clock.current)
        with self.assertRaises(ForbiddenError):
            require_order_edit(self.service.manager_a, self.order, self.clock.current)

    def test_service_edit_applies_changes(self):
        order = self.service.edit_order(
            self.order.order_number,
            {"notes": "Patient prefers blue", "delivery_method": "courier"},
            actor=self.service.doctor_a,
        )
        self.assertEqual(order.notes, "Patient prefers blue")
        self.assertEqual(order.delivery_method, "courier")

    def test_service_edit_forbidden_after_window(self):
        self.clock.advance(hours=3)
        with self.assertRaises(ForbiddenError):
            self.service.edit_order(
                self.order.order_number, {"notes": "late"}, actor=self.service.doctor_a
            )

    def test_service_edit_forbidden_after_production_start(self):
        self.service.transition(self.order.order_number, OrderStatus.IN_PRODUCTION)
        with self.assertRaises(ForbiddenError):
            self.service.edit_order(
                self.order.order_number, {"notes": "late"}, actor=self.service.doctor_a
            )


if __name__ == "__main__":
    unittest.main()
