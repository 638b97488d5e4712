"""
Discount engine.

Pure arithmetic over Decimal amounts: no database access, no I/O.
A coupon always wins over a referral discount; the two never stack.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

PERCENTAGE = "percentage"
FIXED = "fixed"

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Coerce ints, floats, strings and Decimals to a 2-place Decimal."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class DiscountRule:
    """A percentage or fixed discount, optionally capped."""
    discount_type: str
    value: Decimal
    max_discount: Optional[Decimal] = None

    def __post_init__(self):
        if self.discount_type not in (PERCENTAGE, FIXED):
            raise ValueError(f"Unknown discount type: {self.discount_type}")
        object.__setattr__(self, "value", to_money(self.value))
        if self.max_discount is not None:
            object.__setattr__(self, "max_discount", to_money(self.max_discount))

    @classmethod
    def from_promotion(cls, promotion):
        return cls(promotion.discount_type, promotion.value, promotion.max_discount)

    def amount_off(self, base_amount) -> Decimal:
        """Discount for ``base_amount`` before it is clamped to the base."""
        base_amount = to_money(base_amount)
        if self.discount_type == PERCENTAGE:
            discount = to_money(base_amount * self.value / Decimal(100))
            if self.max_discount is not None:
                discount = min(discount, self.max_discount)
            return discount
        return self.value


def apply_rule(base_amount, rule: DiscountRule):
    """Return ``(discount_amount, final_amount)``; the discount never exceeds the base."""
    base_amount = to_money(base_amount)
    discount = min(max(rule.amount_off(base_amount), ZERO), base_amount)
    return discount, to_money(max(ZERO, base_amount - discount))


def compute_amount(base_amount, coupon_rule: Optional[DiscountRule] = None,
                   coupon_code: Optional[str] = None,
                   referral_rule: Optional[DiscountRule] = None,
                   description: str = ""):
    """
    Compute what the payer owes.

    A coupon applies only when both the rule and the code are given. The
    referral rule is considered only when no coupon applies. Returns a dict
    with ``final_amount``, ``discount_amount`` and ``updated_description``.
    """
    base_amount = to_money(base_amount)
    if base_amount < ZERO:
        raise ValueError("Base amount cannot be negative")

    description = description or ""

    if coupon_rule is not None and coupon_code:
        discount, final = apply_rule(base_amount, coupon_rule)
        code = coupon_code.upper()
        updated = f"{description} (Coupon: {code})" if description else f"Coupon: {code}"
    elif referral_rule is not None:
        discount, final = apply_rule(base_amount, referral_rule)
        updated = f"{description} (Referral Discount)" if description else "Referral Discount Applied"
    else:
        discount, final, updated = ZERO, base_amount, description

    return {
        "final_amount": final,
        "discount_amount": discount,
        "updated_description": updated,
    }
