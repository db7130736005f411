"""Staff, counterparty, payment, catalog and pricing use-cases."""

import unittest

from lensflow.domain import OrganizationStatus, PaymentStatus, SubRole, User
from lensflow.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError

from support import LENS_CONFIG, build_service, place_order


class TestClinicStaff(unittest.TestCase):

    def setUp(self):
        self.service = build_service()

    def test_manager_creates_staff_in_own_organization(self):
        member = self.service.create_clinic_staff(
            "nurse@vision.example", "Nina Orlova", SubRole.OPTIC_ACCOUNTANT,
            actor=self.service.manager_a,
        )
        self.assertEqual(member.organization_id, self.service.clinic_a.id)
        listed = self.service.list_clinic_staff(self.service.manager_a)
        self.assertIn(member.id, [user.id for user in listed])
        self.assertNotIn(
            self.service.manager_b.id, [user.id for user in listed]
        )

    def test_clinic_sub_roles_require_organization(self):
        with self.assertRaises(ValidationError):
            self.service.register_user(
                "loose.example", "Loose Manager", SubRole.OPTIC_MANAGER
            )

    def test_manager_without_organization_sees_no_staff(self):
        orphan = User(
            id="orphan", email="orphan.example", full_name="Orphan",
            sub_role=SubRole.OPTIC_MANAGER,
        )
        self.service.users.add(orphan.id, orphan)
        self.assertEqual(self.service.list_clinic_staff(orphan), [])

    def test_lab_sub_role_rejected_for_clinic(self):
        with self.assertRaises(ValidationError):
            self.service.create_clinic_staff(
                "x@vision.example", "X", SubRole.LAB_HEAD, actor=self.service.manager_a
            )

    def test_cross_organization_target_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.service.delete_clinic_staff(
                self.service.doctor_b.id, actor=self.service.manager_a
            )
        with self.assertRaises(NotFoundError):
            self.service.update_clinic_staff(
                self.service.doctor_b.id, actor=self.service.manager_a, full_name="Hacked"
            )
        self.assertEqual(self.service.doctor_b.full_name, "Igor Morozov")
        self.assertIn(self.service.doctor_b.id, self.service.users)

    def test_self_deletion_rejected(self):
        with self.assertRaises(ForbiddenError):
            self.service.delete_clinic_staff(
                self.service.manager_a.id, actor=self.service.manager_a
            )
        with self.assertRaises(ForbiddenError):
            self.service.delete_lab_staff(
                self.service.lab_head.id, actor=self.service.lab_head
            )

    def test_non_manager_forbidden(self):
        with self.assertRaises(ForbiddenError):
            self.service.delete_clinic_staff(
                self.service.manager_a.id, actor=self.service.doctor_a
            )

    def test_update_and_delete_own_staff(self):
        member = self.service.update_clinic_staff(
            self.service.doctor_a.id, actor=self.service.manager_a, phone="+7 999"
        )
        self.assertEqual(member.phone, "+7 999")
        self.service.delete_clinic_staff(member.id, actor=self.service.manager_a)
        self.assertNotIn(member.id, self.service.users)

    def test_update_requires_changes(self):
        with self.assertRaises(ValidationError):
            self.service.update_clinic_staff(
                self.service.doctor_a.id, actor=self.service.manager_a
            )


class TestLabStaff(unittest.TestCase):

    def setUp(self):
        self.service = build_service()

    def test_admin_creates_and_deletes_lab_staff(self):
        member = self.service.create_lab_staff(
            "qc@lab.example", "Quality", SubRole.LAB_QUALITY, actor=self.service.lab_admin
        )
        self.service.delete_lab_staff(member.id, actor=self.service.lab_admin)
        self.assertNotIn(member.id, self.service.users)

    def test_duplicate_email_conflicts(self):
        with self.assertRaises(ConflictError):
            self.service.create_lab_staff(
                "HEAD@lab.example", "Copy", SubRole.LAB_ENGINEER, actor=self.service.lab_admin
            )

    def test_clinic_user_is_not_lab_staff(self):
        with self.assertRaises(NotFoundError):
            self.service.delete_lab_staff(
                self.service.doctor_a.id, actor=self.service.lab_head
            )

    def test_engineer_cannot_manage_staff(self):
        with self.assertRaises(ForbiddenError):
            self.service.list_lab_staff(self.service.engineer)


class TestCounterparties(unittest.TestCase):

    def setUp(self):
        self.service = build_service()

    def test_only_lab_head_changes_discount(self):
        org = self.service.set_organization_discount(
            self.service.clinic_b.id, 12.5, actor=self.service.lab_head
        )
        self.assertEqual(org.discount_percent, 12.5)
        with self.assertRaises(ForbiddenError):
            self.service.set_organization_discount(
                self.service.clinic_b.id, 50, actor=self.service.lab_admin
            )

    def test_discount_bounds(self):
        for value in (-1, 101, "abc", float("nan")):
            with self.assertRaises(ValidationError):
                self.service.set_organization_discount(
                    self.service.clinic_a.id, value, actor=self.service.lab_head
                )

    def test_personal_discount(self):
        user = self.service.set_user_discount(
            self.service.solo_doctor.id, 8, actor=self.service.lab_head
        )
        self.assertEqual(user.discount_percent, 8)

    def test_active_listing_sorted_by_name(self):
        closed = self.service.create_organization(
            "Aardvark Optics", status=OrganizationStatus.INACTIVE
        )
        names = [org.name for org in self.service.list_active_counterparties()]
        self.assertEqual(names, ["OrthoK Center", "Vision Clinic"])
        self.assertNotIn(closed.name, names)

    def test_counterparties_hidden_from_clinics(self):
        with self.assertRaises(ForbiddenError):
            self.service.list_counterparties(self.service.manager_a)


class TestPaymentStatus(unittest.TestCase):

    def setUp(self):
        self.service = build_service()
        self.order = place_order(self.service)

    def test_accountant_only(self):
        order = self.service.set_payment_status(
            self.order.order_number, "partial", actor=self.service.accountant
        )
        self.assertIs(order.payment_status, PaymentStatus.PARTIAL)
        with self.assertRaises(ForbiddenError):
            self.service.set_payment_status(
                self.order.order_number, "paid", actor=self.service.lab_head
            )

    def test_invalid_value(self):
        with self.assertRaises(ValidationError):
            self.service.set_payment_status(
                self.order.order_number, "refunded", actor=self.service.accountant
            )


class TestPricing(unittest.TestCase):

    def setUp(self):
        self.service = build_service()

    def test_clinic_discount_applied(self):
        # 1 x toric (10000) + 2 x spherical (5000) = 20000, minus 10%
        order = place_order(self.service, actor=self.service.doctor_a)
        self.assertEqual(order.discount_percent, 10)
        self.assertEqual(order.total_price, 18000)

    def test_personal_discount_for_independent_doctor(self):
        order = place_order(self.service, actor=self.service.solo_doctor)
        self.assertEqual(order.discount_percent, 3)
        self.assertEqual(order.total_price, 19400)

    def test_default_discount_and_urgent_surcharge(self):
        quote = self.service.quote_price(LENS_CONFIG, is_urgent=True)
        self.assertEqual(quote.discount_percent, 5)
        self.assertEqual(quote.base_price, 20000)
        self.assertEqual(quote.urgent_surcharge, 4750)
        self.assertEqual(quote.total_price, 23750)

    def test_quote_rejects_out_of_range_quantity(self):
        for qty in (-5, 0, 101, 1.5, True, "2"):
            config = {"eyes": {"od": {"characteristic": "toric", "qty": qty}}}
            with self.assertRaises(ValidationError):
                self.service.quote_price(config)

    def test_malformed_eyes_rejected_before_order_is_stored(self):
        for config in (
            {"eyes": {"od": "toric"}},
            {"eyes": ["od"]},
            {"eyes": {"left": {"qty": 1}}},
            {"eyes": {"od": {"characteristic": "hexagonal"}}},
        ):
            with self.assertRaises(ValidationError):
                place_order(self.service, config=config)
        self.assertEqual(len(self.service.orders), 0)

    def test_lab_cannot_place_orders(self):
        with self.assertRaises(ForbiddenError):
            place_order(self.service, actor=self.service.engineer)


class TestOrderEdit(unittest.TestCase):

    def setUp(self):
        self.service = build_service()
        self.order = place_order(self.service)

    def test_required_fields_cannot_be_cleared(self):
        for changes in ({"config": None}, {"patient": None}, {"config": {"eyes": {"od": "x"}}}):
            with self.assertRaises(ValidationError):
                self.service.edit_order(
                    self.order.order_number, changes, actor=self.service.doctor_a
                )
        self.assertEqual(self.order.config, LENS_CONFIG)
        self.assertEqual(self.order.patient.name, "Ivan Petrov")

    def test_optional_notes_can_be_cleared(self):
        self.service.edit_order(
            self.order.order_number, {"notes": "x"}, actor=self.service.doctor_a
        )
        order = self.service.edit_order(
            self.order.order_number, {"notes": None}, actor=self.service.doctor_a
        )
        self.assertIsNone(order.notes)


class TestCatalog(unittest.TestCase):

    def setUp(self):
        self.service = build_service()

    def test_duplicate_sku_conflicts(self):
        with self.assertRaises(ConflictError):
            self.service.add_product("ML-TOR", "Copy", 1, actor=self.service.lab_admin)

    def test_mutation_requires_lab_head_or_admin(self):
        with self.assertRaises(ForbiddenError):
            self.service.add_product("NEW", "New lens", 1, actor=self.service.manager_a)
        product = self.service.add_product("NEW", "New lens", 1, actor=self.service.lab_head)
        self.assertIn(product, self.service.list_catalog(self.service.doctor_a))


if __name__ == "__main__":
    unittest.main()
