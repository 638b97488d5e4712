import uuid
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings

from backend.apps.accounts.models import User
from backend.apps.payments.gateways import GatewayError, hmac_sha256_hex
from backend.apps.payments.models import Payment, Plan, Promotion, Referral, StudentSubscription
from backend.apps.payments.services import (
    VERIFIED_BY_API,
    complete_by_order_id,
    confirm_gateway_payment,
    initiate_payment,
    verify_payment,
    verify_payment_signature,
)
from backend.core.results import (
    CONTEXT_MISSING,
    GATEWAY_ERROR,
    GATEWAY_NOT_CONFIGURED,
    INVALID_STATE,
    NOT_FOUND,
    VERIFICATION_FAILED,
)
from tests.factories import (
    BranchFactory,
    GatewayPaymentFactory,
    OwnerFactory,
    PaymentFactory,
    PlanFactory,
    PromotionFactory,
    ReferralFactory,
    StaffFactory,
    SubscriptionFactory,
    UserFactory,
)

RECEIPT_SENDER = "backend.apps.payments.tasks.send_receipt_email"


class InitiatePaymentTests(TestCase):

    def setUp(self):
        self.student = UserFactory()
        self.library = self.student.library
        self.branch = BranchFactory(library=self.library)
        self.plan = PlanFactory(library=self.library, branch=self.branch, price=Decimal("500"))

    def _initiate(self, **kwargs):
        params = {
            "student": self.student,
            "amount": Decimal("500"),
            "type": Payment.Type.SUBSCRIPTION,
            "related_id": self.plan.id,
            "description": "Test",
            "gateway_provider": Payment.Method.FRONT_DESK,
            "branch_id": self.branch.id,
        }
        params.update(kwargs)
        return initiate_payment(**params)

    def test_manual_payment_waits_for_verification(self):
        result = self._initiate()

        self.assertTrue(result["success"])
        payment = Payment.objects.get(pk=result["payment_id"])
        self.assertEqual(payment.status, Payment.Status.PENDING_VERIFICATION)
        self.assertEqual(payment.amount, Decimal("500.00"))
        self.assertEqual(payment.library_id, self.library.id)
        self.assertEqual(payment.currency, "INR")
        self.assertIsNone(payment.gateway_order_id)

    def test_upi_payment_requires_proof(self):
        result = self._initiate(gateway_provider=Payment.Method.UPI_APP)
        self.assertFalse(result["success"])
        self.assertFalse(Payment.objects.exists())

        result = self._initiate(
            gateway_provider=Payment.Method.UPI_APP,
            manual_payment_data={"transaction_id": "UPI123"},
        )
        self.assertTrue(result["success"])
        self.assertEqual(Payment.objects.get().transaction_id, "UPI123")

    def test_missing_branch(self):
        result = self._initiate(branch_id=None)
        self.assertEqual(result["code"], CONTEXT_MISSING)

    def test_branch_of_another_library(self):
        result = self._initiate(branch_id=BranchFactory().id)
        self.assertEqual(result["code"], CONTEXT_MISSING)

    def test_unknown_plan(self):
        result = self._initiate(related_id=uuid.uuid4())
        self.assertEqual(result["code"], NOT_FOUND)

    def test_non_positive_amount(self):
        self.assertFalse(self._initiate(amount=Decimal("0"))["success"])
        self.assertFalse(self._initiate(amount="abc")["success"])

    def test_coupon_is_applied_and_recorded(self):
        promo = PromotionFactory(library=self.library, code="SAVE10", value=Decimal("10"))

        result = self._initiate(coupon_code="save10")

        payment = Payment.objects.get(pk=result["payment_id"])
        self.assertEqual(payment.amount, Decimal("450.00"))
        self.assertEqual(payment.discount_amount, Decimal("50.00"))
        self.assertEqual(payment.promotion, promo)
        self.assertEqual(payment.description, "Test (Coupon: SAVE10)")

    def test_invalid_coupon_creates_nothing(self):
        result = self._initiate(coupon_code="MISSING")
        self.assertEqual(result["error"], "Invalid coupon code")
        self.assertFalse(Payment.objects.exists())

    def test_pending_referee_gets_referral_discount(self):
        ReferralFactory(referee=self.student, library=self.library, referrer=UserFactory(library=self.library))
        self.library.referral_settings = {"refereeReward": {"value": 100, "type": "fixed"}}
        self.library.save()

        result = self._initiate()

        payment = Payment.objects.get(pk=result["payment_id"])
        self.assertEqual(payment.amount, Decimal("400.00"))
        self.assertEqual(payment.description, "Test (Referral Discount)")

    def test_coupon_beats_referral_discount(self):
        ReferralFactory(referee=self.student, library=self.library, referrer=UserFactory(library=self.library))
        self.library.referral_settings = {"refereeReward": {"value": 100, "type": "fixed"}}
        self.library.save()
        PromotionFactory(library=self.library, code="SAVE10", value=Decimal("10"))

        result = self._initiate(amount=Decimal("1000"), coupon_code="SAVE10")

        self.assertEqual(result["discount_amount"], Decimal("100.00"))
        self.assertEqual(result["amount"], Decimal("900.00"))

    @patch("backend.apps.payments.gateways.RazorpayProvider.create_order")
    def test_gateway_payment_gets_remote_order(self, mock_create_order):
        mock_create_order.return_value = {"order_id": "order_RZP1", "key": "rzp_test_key"}

        result = self._initiate(gateway_provider=Payment.Method.RAZORPAY)

        self.assertTrue(result["success"])
        self.assertEqual(result["order_id"], "order_RZP1")
        self.assertEqual(result["key"], "rzp_test_key")
        payment = Payment.objects.get(pk=result["payment_id"])
        self.assertEqual(payment.status, Payment.Status.PENDING)
        self.assertEqual(payment.gateway_order_id, "order_RZP1")
        self.assertEqual(payment.gateway_provider, "razorpay")

    @patch("backend.apps.payments.gateways.RazorpayProvider.create_order")
    def test_gateway_failure_leaves_payment_pending(self, mock_create_order):
        mock_create_order.side_effect = GatewayError("timeout")

        result = self._initiate(gateway_provider=Payment.Method.RAZORPAY)

        self.assertEqual(result["code"], GATEWAY_ERROR)
        payment = Payment.objects.get(pk=result["payment_id"])
        self.assertEqual(payment.status, Payment.Status.PENDING)
        self.assertTrue(payment.gateway_order_id.startswith("tmp_"))

    @override_settings(CASHFREE_APP_ID="", CASHFREE_SECRET_KEY="")
    def test_unconfigured_gateway(self):
        result = self._initiate(gateway_provider=Payment.Method.CASHFREE)
        self.assertEqual(result["code"], GATEWAY_NOT_CONFIGURED)
        self.assertFalse(Payment.objects.exists())


class VerifyPaymentSignatureTests(TestCase):

    def setUp(self):
        self.student = UserFactory()
        self.branch = BranchFactory(library=self.student.library)
        self.plan = PlanFactory(library=self.student.library, branch=self.branch)
        self.payment = GatewayPaymentFactory(
            student=self.student,
            branch=self.branch,
            related_id=self.plan.id,
            gateway_order_id="order_1",
        )
        self.signature = hmac_sha256_hex("s3cret", "order_1|pay_1")

    def test_valid_signature_completes_and_activates(self):
        with patch(RECEIPT_SENDER, return_value={"success": True, "error": None}):
            with self.captureOnCommitCallbacks(execute=True):
                result = verify_payment_signature(self.payment.id, "pay_1", self.signature)

        self.assertTrue(result["success"])
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.COMPLETED)
        self.assertEqual(self.payment.gateway_payment_id, "pay_1")
        self.assertIsNotNone(self.payment.invoice_no)
        self.assertIsNotNone(self.payment.completed_at)
        subscription = StudentSubscription.objects.get(pk=result["subscription_id"])
        self.assertEqual(subscription.status, StudentSubscription.Status.ACTIVE)

    def test_mismatch_leaves_payment_pending(self):
        tampered = self.signature[:-1] + ("0" if self.signature[-1] != "0" else "1")

        result = verify_payment_signature(self.payment.id, "pay_1", tampered)

        self.assertEqual(result["code"], VERIFICATION_FAILED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.PENDING)
        self.assertFalse(StudentSubscription.objects.exists())

    def test_double_verification_sends_one_receipt(self):
        with patch(RECEIPT_SENDER, return_value={"success": True, "error": None}) as mock_send:
            with self.captureOnCommitCallbacks(execute=True):
                first = verify_payment_signature(self.payment.id, "pay_1", self.signature)
            with self.captureOnCommitCallbacks(execute=True):
                second = verify_payment_signature(self.payment.id, "pay_1", self.signature)

        self.assertTrue(first["success"])
        self.assertTrue(second["success"])
        self.assertTrue(second["already_completed"])
        self.assertEqual(mock_send.call_count, 1)
        self.assertEqual(StudentSubscription.objects.count(), 1)

    def test_manual_payment_is_rejected(self):
        payment = PaymentFactory(student=self.student)
        result = verify_payment_signature(payment.id, "pay_1", self.signature)
        self.assertEqual(result["code"], INVALID_STATE)

    def test_failed_payment_cannot_complete(self):
        Payment.objects.filter(pk=self.payment.pk).update(status=Payment.Status.FAILED)
        result = verify_payment_signature(self.payment.id, "pay_1", self.signature)
        self.assertEqual(result["code"], INVALID_STATE)

    def test_complete_by_order_id(self):
        result = complete_by_order_id("order_1", gateway_payment_id="pay_9")
        self.assertTrue(result["success"])
        self.assertEqual(complete_by_order_id("order_missing")["code"], NOT_FOUND)


class ConfirmGatewayPaymentTests(TestCase):

    def setUp(self):
        self.payment = GatewayPaymentFactory(
            method=Payment.Method.CASHFREE,
            gateway_provider="cashfree",
            gateway_order_id="order_cf",
            type=Payment.Type.FEE,
        )

    @patch("backend.apps.payments.gateways.CashfreeProvider.fetch_payments_for_order")
    def test_successful_transaction_completes(self, mock_fetch):
        mock_fetch.return_value = [
            {"status": "FAILED", "provider_payment_id": "cf_1"},
            {"status": "SUCCESS", "provider_payment_id": "cf_2"},
        ]

        result = confirm_gateway_payment(self.payment.id)

        self.assertTrue(result["success"])
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.COMPLETED)
        self.assertEqual(self.payment.gateway_payment_id, "cf_2")
        self.assertEqual(self.payment.gateway_signature, VERIFIED_BY_API)

    @patch("backend.apps.payments.gateways.CashfreeProvider.fetch_payments_for_order")
    def test_no_success_keeps_pending(self, mock_fetch):
        mock_fetch.return_value = [{"status": "PENDING", "provider_payment_id": "cf_1"}]

        result = confirm_gateway_payment(self.payment.id)

        self.assertEqual(result["code"], VERIFICATION_FAILED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.PENDING)

    @patch("backend.apps.payments.gateways.CashfreeProvider.fetch_payments_for_order")
    def test_signature_claims_are_ignored_for_status_fetch(self, mock_fetch):
        mock_fetch.return_value = [{"status": "SUCCESS", "provider_payment_id": "cf_real"}]

        result = verify_payment_signature(self.payment.id, "client_claimed", "whatever")

        self.assertTrue(result["success"])
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.gateway_payment_id, "cf_real")

    @patch("backend.apps.payments.gateways.CashfreeProvider.fetch_payments_for_order")
    def test_gateway_error(self, mock_fetch):
        mock_fetch.side_effect = GatewayError("down")
        self.assertEqual(confirm_gateway_payment(self.payment.id)["code"], GATEWAY_ERROR)


class VerifyPaymentTests(TestCase):

    def setUp(self):
        self.student = UserFactory()
        self.library = self.student.library
        self.branch = BranchFactory(library=self.library)
        self.plan = PlanFactory(library=self.library)
        self.owner = OwnerFactory(library=self.library)

    def test_front_desk_round_trip(self):
        initiated = initiate_payment(
            student=self.student,
            amount=Decimal("500"),
            type=Payment.Type.SUBSCRIPTION,
            related_id=self.plan.id,
            description="Test",
            gateway_provider=Payment.Method.FRONT_DESK,
            branch_id=self.branch.id,
        )
        self.assertEqual(initiated["status"], Payment.Status.PENDING_VERIFICATION)

        with patch(RECEIPT_SENDER, return_value={"success": True, "error": None}) as mock_send:
            with self.captureOnCommitCallbacks(execute=True):
                result = verify_payment(initiated["payment_id"], "approve", self.owner)

        self.assertTrue(result["success"])
        payment = Payment.objects.get(pk=initiated["payment_id"])
        self.assertEqual(payment.status, Payment.Status.COMPLETED)
        self.assertEqual(payment.collected_by, self.owner)
        self.assertEqual(payment.verified_by, self.owner)
        self.assertEqual(payment.verifier_role, User.Role.OWNER)
        self.assertTrue(payment.transaction_id.startswith("DESK-"))
        self.assertRegex(payment.invoice_no, r"^INV-\d{8}-[0-9A-F]{6}$")
        subscription = StudentSubscription.objects.get(student=self.student)
        self.assertEqual(subscription.status, StudentSubscription.Status.ACTIVE)
        self.assertEqual(subscription.plan, self.plan)
        self.assertEqual(subscription.branch, self.branch)
        self.assertEqual(mock_send.call_count, 1)

    def test_approving_twice_is_idempotent(self):
        payment = PaymentFactory(student=self.student, branch=self.branch, related_id=self.plan.id)
        with patch(RECEIPT_SENDER, return_value={"success": True, "error": None}) as mock_send:
            with self.captureOnCommitCallbacks(execute=True):
                verify_payment(payment.id, "approve", self.owner)
            with self.captureOnCommitCallbacks(execute=True):
                second = verify_payment(payment.id, "approve", self.owner)

        self.assertTrue(second["already_completed"])
        self.assertEqual(mock_send.call_count, 1)
        self.assertEqual(StudentSubscription.objects.count(), 1)

    def test_existing_collector_is_kept(self):
        staff = StaffFactory(library=self.library)
        payment = PaymentFactory(student=self.student, branch=self.branch, collected_by=staff, type=Payment.Type.FEE)

        verify_payment(payment.id, "approve", self.owner)

        payment.refresh_from_db()
        self.assertEqual(payment.collected_by, staff)
        self.assertEqual(payment.verified_by, self.owner)

    @patch.object(Plan, "period_end", side_effect=lambda start: start)
    def test_plan_with_empty_period_still_completes_payment(self, mock_period_end):
        payment = PaymentFactory(student=self.student, branch=self.branch, related_id=self.plan.id)

        with patch(RECEIPT_SENDER, return_value={"success": True, "error": None}):
            with self.captureOnCommitCallbacks(execute=True):
                result = verify_payment(payment.id, "approve", self.owner)

        self.assertTrue(result["success"])
        self.assertIsNone(result["subscription_id"])
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.COMPLETED)
        self.assertFalse(StudentSubscription.objects.exists())

    def test_reject_marks_failed_and_deactivates_subscription(self):
        subscription = SubscriptionFactory(student=self.student, branch=self.branch, plan=self.plan)
        payment = PaymentFactory(student=self.student, branch=self.branch, subscription=subscription)

        result = verify_payment(payment.id, "reject", self.owner)

        self.assertTrue(result["success"])
        payment.refresh_from_db()
        subscription.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.FAILED)
        self.assertEqual(subscription.status, StudentSubscription.Status.INACTIVE)

    def test_rejecting_a_completed_payment_fails(self):
        payment = PaymentFactory(student=self.student, status=Payment.Status.COMPLETED, type=Payment.Type.FEE)
        self.assertEqual(verify_payment(payment.id, "reject", self.owner)["code"], INVALID_STATE)

    def test_upi_payment_without_proof_cannot_be_approved(self):
        payment = PaymentFactory(student=self.student, method=Payment.Method.UPI_APP)
        result = verify_payment(payment.id, "approve", self.owner)
        self.assertFalse(result["success"])
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.PENDING_VERIFICATION)

    def test_other_library_payment_is_not_found(self):
        payment = PaymentFactory()
        self.assertEqual(verify_payment(payment.id, "approve", self.owner)["code"], NOT_FOUND)

    def test_students_cannot_verify(self):
        payment = PaymentFactory(student=self.student)
        self.assertFalse(verify_payment(payment.id, "approve", self.student)["success"])

    def test_unknown_action(self):
        payment = PaymentFactory(student=self.student)
        self.assertFalse(verify_payment(payment.id, "maybe", self.owner)["success"])


class ReferralScenarioTests(TestCase):
    """Referee pays for a subscription; the referrer gets exactly one reward."""

    def test_reward_issued_once_after_payment(self):
        referral = ReferralFactory(referrer__name="Asha")
        library = referral.library
        library.referral_settings = {"all": {"enabled": True, "referrerReward": {"value": 100, "type": "fixed"}}}
        library.save()
        branch = BranchFactory(library=library)
        plan = PlanFactory(library=library, branch=branch)
        payment = GatewayPaymentFactory(
            student=referral.referee, branch=branch, related_id=plan.id, gateway_order_id="order_ref"
        )
        signature = hmac_sha256_hex("s3cret", "order_ref|pay_ref")

        with patch(RECEIPT_SENDER, return_value={"success": True, "error": None}):
            for _attempt in range(2):
                with self.captureOnCommitCallbacks(execute=True):
                    verify_payment_signature(payment.id, "pay_ref", signature)

        referral.refresh_from_db()
        self.assertEqual(referral.status, Referral.Status.COMPLETED)
        promotion = Promotion.objects.get()
        self.assertEqual(referral.coupon, promotion)
        self.assertRegex(promotion.code, r"REF-[A-Z]{1,4}-\d{4,}")
        self.assertEqual(promotion.usage_limit, 1)
