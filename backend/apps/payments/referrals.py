"""
Referral settings and reward issuance.

A library's ``referral_settings`` come in two shapes: keys nested under
``"all"``, or the same keys at the top level. Nested values win.
"""
import logging
import re
import secrets
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from backend.core.results import NOT_FOUND, fail, ok

from .discounts import FIXED, PERCENTAGE, DiscountRule
from .models import Payment, Promotion, Referral

logger = logging.getLogger(__name__)

REFERRER = "referrer"
REFEREE = "referee"

CODE_ATTEMPTS = 3


def _setting(referral_settings, key):
    nested = referral_settings.get("all")
    if isinstance(nested, dict) and key in nested:
        return nested[key]
    return referral_settings.get(key)


def reward_rule(referral_settings, party):
    """
    The ``referrer`` or ``referee`` reward as a DiscountRule, or None.

    Accepts ``{party}Reward: {value, type}`` or flat
    ``{party}DiscountValue`` / ``{party}DiscountType``. An explicit
    ``enabled: false`` turns the programme off; a missing flag counts as
    enabled when a value is configured.
    """
    if not isinstance(referral_settings, dict):
        return None
    if _setting(referral_settings, "enabled") is False:
        return None

    reward = _setting(referral_settings, f"{party}Reward")
    if isinstance(reward, dict):
        value, discount_type = reward.get("value"), reward.get("type")
    else:
        value = _setting(referral_settings, f"{party}DiscountValue")
        discount_type = _setting(referral_settings, f"{party}DiscountType")

    try:
        value = Decimal(str(value)) if value not in (None, "") else None
    except InvalidOperation:
        logger.warning(f"Ignoring malformed {party} reward value: {value!r}")
        return None
    if value is None or value <= 0:
        return None

    if discount_type not in (PERCENTAGE, FIXED):
        discount_type = FIXED
    return DiscountRule(discount_type, value)


def generate_reward_code(referrer):
    """``REF-<prefix>-<4 digits>``, falling back to a timestamp suffix after repeated collisions."""
    prefix = re.sub(r"[^A-Za-z]", "", referrer.name or "")[:4].upper() or "USER"
    for _attempt in range(CODE_ATTEMPTS):
        code = f"REF-{prefix}-{secrets.randbelow(9000) + 1000}"
        if not Promotion.objects.filter(code=code).exists():
            return code
    return f"REF-{prefix}-{timezone.now():%y%m%d%H%M%S%f}"


def process_referral_rewards(payment_id):
    """
    Issue the referrer's reward once the referee has paid for a subscription.

    No-op unless the payment is a completed subscription payment and the
    payer is the referee of a pending referral. The referral row is locked
    and re-checked, so concurrent or repeated calls issue one promotion.
    """
    payment = Payment.objects.filter(pk=payment_id).first()
    if payment is None:
        return fail("Payment not found", NOT_FOUND)
    if payment.status != Payment.Status.COMPLETED or payment.type != Payment.Type.SUBSCRIPTION:
        return ok(issued=False)

    try:
        with transaction.atomic():
            referral = (
                Referral.objects
                .select_for_update()
                .filter(referee_id=payment.student_id, status=Referral.Status.PENDING)
                .first()
            )
            if referral is None:
                return ok(issued=False)

            rule = reward_rule(payment.library.referral_settings, REFERRER)
            if rule is None:
                logger.info(f"Referral rewards disabled for library {payment.library_id}")
                return ok(issued=False)

            now = timezone.now()
            promotion = Promotion.objects.create(
                library_id=payment.library_id,
                code=generate_reward_code(referral.referrer),
                description=f"Referral Reward for referring {referral.referee.get_full_name()}",
                discount_type=rule.discount_type,
                value=rule.value,
                usage_limit=1,
                per_user_limit=1,
                min_order_value=Decimal("0.00"),
                start_date=now,
                end_date=now + timedelta(days=settings.REFERRAL_REWARD_VALIDITY_DAYS),
                is_active=True,
            )
            referral.status = Referral.Status.COMPLETED
            referral.coupon = promotion
            referral.completed_at = now
            referral.save(update_fields=["status", "coupon", "completed_at"])
    except DatabaseError:
        logger.exception(f"Failed to issue referral reward for payment {payment_id}")
        return fail("Could not issue referral reward")

    logger.info(f"Referral {referral.id} completed; reward {promotion.code} issued to {referral.referrer_id}")
    return ok(issued=True, promotion_id=promotion.id, code=promotion.code)
