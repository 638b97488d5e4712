import re
from decimal import Decimal
from unittest.mock import patch

from django.test import SimpleTestCase, TestCase

from backend.apps.payments.discounts import FIXED, PERCENTAGE
from backend.apps.payments.models import Payment, Promotion, Referral
from backend.apps.payments.referrals import (
    REFEREE,
    REFERRER,
    generate_reward_code,
    process_referral_rewards,
    reward_rule,
)
from tests.factories import LibraryFactory, PaymentFactory, PromotionFactory, ReferralFactory, UserFactory


class RewardRuleTests(SimpleTestCase):

    def test_nested_reward_object(self):
        rule = reward_rule({"all": {"enabled": True, "referrerReward": {"value": 10, "type": "percentage"}}}, REFERRER)
        self.assertEqual(rule.discount_type, PERCENTAGE)
        self.assertEqual(rule.value, Decimal("10.00"))

    def test_flat_keys(self):
        rule = reward_rule({"enabled": True, "refereeDiscountValue": "150", "refereeDiscountType": "fixed"}, REFEREE)
        self.assertEqual(rule.discount_type, FIXED)
        self.assertEqual(rule.value, Decimal("150.00"))

    def test_nested_values_win_over_top_level(self):
        settings = {
            "referrerReward": {"value": 50, "type": "fixed"},
            "all": {"referrerReward": {"value": 75, "type": "fixed"}},
        }
        self.assertEqual(reward_rule(settings, REFERRER).value, Decimal("75.00"))

    def test_explicitly_disabled(self):
        self.assertIsNone(reward_rule({"all": {"enabled": False, "referrerReward": {"value": 10}}}, REFERRER))

    def test_missing_flag_with_value_counts_as_enabled(self):
        self.assertIsNotNone(reward_rule({"referrerReward": {"value": 100}}, REFERRER))

    def test_type_defaults_to_fixed(self):
        self.assertEqual(reward_rule({"referrerReward": {"value": 100}}, REFERRER).discount_type, FIXED)

    def test_missing_zero_or_malformed_values(self):
        self.assertIsNone(reward_rule({}, REFERRER))
        self.assertIsNone(reward_rule({"referrerReward": {"value": 0}}, REFERRER))
        self.assertIsNone(reward_rule({"referrerDiscountValue": "abc"}, REFERRER))
        self.assertIsNone(reward_rule(None, REFERRER))


class ProcessReferralRewardsTests(TestCase):

    def setUp(self):
        self.referral = ReferralFactory(referrer__name="Asha Patel")
        library = self.referral.library
        library.referral_settings = {"all": {"enabled": True, "referrerReward": {"value": 100, "type": "fixed"}}}
        library.save()
        self.payment = PaymentFactory(
            student=self.referral.referee,
            status=Payment.Status.COMPLETED,
        )

    def test_issues_one_promotion_and_completes_referral(self):
        result = process_referral_rewards(self.payment.id)

        self.assertTrue(result["success"])
        self.assertTrue(result["issued"])
        promotion = Promotion.objects.get(pk=result["promotion_id"])
        self.assertRegex(promotion.code, r"^REF-[A-Z]{1,4}-\d{4,}$")
        self.assertTrue(promotion.code.startswith("REF-ASHA-"))
        self.assertEqual(promotion.usage_limit, 1)
        self.assertEqual(promotion.per_user_limit, 1)
        self.assertEqual(promotion.value, Decimal("100.00"))
        self.assertEqual(promotion.library_id, self.referral.library_id)

        self.referral.refresh_from_db()
        self.assertEqual(self.referral.status, Referral.Status.COMPLETED)
        self.assertEqual(self.referral.coupon_id, promotion.id)
        self.assertIsNotNone(self.referral.completed_at)

    def test_second_invocation_issues_nothing(self):
        process_referral_rewards(self.payment.id)
        second = process_referral_rewards(self.payment.id)

        self.assertTrue(second["success"])
        self.assertFalse(second["issued"])
        self.assertEqual(Promotion.objects.count(), 1)

    def test_fee_payments_do_not_reward(self):
        self.payment.type = Payment.Type.FEE
        self.payment.save()
        self.assertFalse(process_referral_rewards(self.payment.id)["issued"])
        self.assertFalse(Promotion.objects.exists())

    def test_disabled_programme_leaves_referral_pending(self):
        library = self.referral.library
        library.referral_settings = {"all": {"enabled": False}}
        library.save()

        self.assertFalse(process_referral_rewards(self.payment.id)["issued"])
        self.referral.refresh_from_db()
        self.assertEqual(self.referral.status, Referral.Status.PENDING)

    def test_reward_follows_the_paying_library(self):
        paying_library = LibraryFactory(
            referral_settings={"referrerReward": {"value": 10, "type": "percentage"}}
        )
        payment = PaymentFactory(
            student=self.referral.referee,
            library=paying_library,
            status=Payment.Status.COMPLETED,
        )

        result = process_referral_rewards(payment.id)

        promotion = Promotion.objects.get(pk=result["promotion_id"])
        self.assertEqual(promotion.library, paying_library)
        self.assertEqual(promotion.discount_type, PERCENTAGE)
        self.assertEqual(promotion.value, Decimal("10.00"))

    def test_payer_without_referral(self):
        payment = PaymentFactory(status=Payment.Status.COMPLETED)
        self.assertFalse(process_referral_rewards(payment.id)["issued"])


class GenerateRewardCodeTests(TestCase):

    def test_prefix_from_referrer_name(self):
        code = generate_reward_code(UserFactory(name="Li 9"))
        self.assertTrue(re.match(r"^REF-LI-\d{4}$", code))

    def test_falls_back_to_user_prefix(self):
        self.assertTrue(generate_reward_code(UserFactory(name="123")).startswith("REF-USER-"))

    @patch("backend.apps.payments.referrals.secrets.randbelow", return_value=234)
    def test_collisions_fall_back_to_timestamp(self, mock_randbelow):
        PromotionFactory(code="REF-ASHA-1234")
        code = generate_reward_code(UserFactory(name="Asha"))
        self.assertEqual(mock_randbelow.call_count, 3)
        self.assertRegex(code, r"^REF-ASHA-\d{4,}$")
        self.assertNotEqual(code, "REF-ASHA-1234")
