"""
Coupon validation: the read path that decides whether a code may be redeemed.
"""
import logging

from django.db import DatabaseError
from django.utils import timezone

from backend.core.results import fail, ok

from .discounts import apply_rule, to_money
from .models import Promotion

logger = logging.getLogger(__name__)


def _format_amount(amount):
    amount = to_money(amount)
    return f"{amount:.0f}" if amount == amount.to_integral_value() else f"{amount:.2f}"


def validate_coupon(code, amount, student=None, plan_id=None, branch_id=None, library=None, for_update=False):
    """
    Check a coupon code against ``amount`` and the optional scope.

    Checks run in a fixed order and stop at the first failure. ``student`` is
    the acting student; per-user limits are only enforced when one is known.
    With ``for_update`` the promotion row is locked, which needs an open
    transaction.
    """
    if not code or not code.strip():
        return fail("Invalid coupon code")

    try:
        qs = Promotion.objects.all()
        if for_update:
            qs = qs.select_for_update()
        if library is not None:
            qs = qs.filter(library=library)
        promotion = qs.filter(code=code.strip().upper()).first()
        if promotion is None:
            return fail("Invalid coupon code")

        if not promotion.is_active:
            return fail("This coupon is no longer active")

        now = timezone.now()
        if promotion.start_date and now < promotion.start_date:
            return fail("This coupon is not valid yet")
        if promotion.end_date and now > promotion.end_date:
            return fail("This coupon has expired")

        if promotion.branch_id and branch_id and str(promotion.branch_id) != str(branch_id):
            return fail("This coupon is not valid for this branch")
        if promotion.plan_id and plan_id and str(promotion.plan_id) != str(plan_id):
            return fail("This coupon is not valid for this plan")

        if promotion.usage_limit is not None and promotion.completed_uses() >= promotion.usage_limit:
            return fail("Coupon usage limit reached")

        if (
            student is not None
            and promotion.per_user_limit is not None
            and promotion.completed_uses(student=student) >= promotion.per_user_limit
        ):
            return fail("You have already used this coupon the maximum number of times")

        if promotion.min_order_value is not None and to_money(amount) < promotion.min_order_value:
            return fail(
                f"Minimum order of ₹{_format_amount(promotion.min_order_value)} required to use this coupon"
            )

        discount, final_amount = apply_rule(amount, promotion.rule)
    except DatabaseError:
        logger.exception(f"Coupon validation failed for code {code}")
        return fail("Error validating coupon")

    return ok(discount=discount, final_amount=final_amount, promo=promotion)
