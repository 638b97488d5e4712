"""
Payments models for the study-space payments service.
"""
import uuid
import hashlib
from datetime import timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from django.core.validators import MinValueValidator
from django.core.exceptions import ValidationError
from django.db import models, transaction
from django.db.models import Q, F
from django.utils import timezone
from django.utils.translation import gettext_lazy as _
from django.conf import settings

from .discounts import DiscountRule, apply_rule


# ----------------------------------------------------------------------
# AUDIT LOG – one row per gateway webhook delivery
# ----------------------------------------------------------------------

class GatewayEventLog(models.Model):
    """
    Immutable log of payment gateway webhook events.
    Used for audit, replay detection, and reconciliation.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    gateway = models.CharField(max_length=20, db_index=True)
    event_type = models.CharField(max_length=50, db_index=True, blank=True, null=True)
    reference = models.CharField(max_length=255, db_index=True, blank=True, null=True)
    payload = models.JSONField(default=dict)             # Masked, parsed payload
    raw_payload = models.TextField(blank=True)
    status_code = models.PositiveSmallIntegerField(default=200)
    error_message = models.TextField(blank=True)
    correlation_id = models.CharField(max_length=64, blank=True, db_index=True)
    payload_hash = models.CharField(max_length=64, unique=True, blank=True, null=True, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = _("gateway event log")
        verbose_name_plural = _("gateway event logs")
        indexes = [
            models.Index(fields=["gateway", "-created_at"]),
            models.Index(fields=["reference", "gateway"]),
        ]
        ordering = ["-created_at"]

    def save(self, *args, **kwargs):
        # Hash of the raw payload for deduplication of repeated deliveries
        if not self.payload_hash and self.raw_payload:
            self.payload_hash = hashlib.sha256(self.raw_payload.encode()).hexdigest()
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.gateway} {self.event_type} {self.reference or ''}"


# ----------------------------------------------------------------------
# CATALOGUE – plans and one-off fees
# ----------------------------------------------------------------------

class Plan(models.Model):
    """A purchasable occupancy plan (e.g. "Full day, 1 month")."""

    class DurationUnit(models.TextChoices):
        DAYS = "days", _("Days")
        WEEKS = "weeks", _("Weeks")
        MONTHS = "months", _("Months")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    library = models.ForeignKey("libraries.Library", on_delete=models.CASCADE, related_name="plans")
    branch = models.ForeignKey(
        "libraries.Branch",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="plans",
        help_text=_("Leave empty for plans offered at every branch")
    )
    name = models.CharField(_("name"), max_length=100)
    plan_type = models.CharField(_("plan type"), max_length=50, blank=True)
    description = models.TextField(_("description"), blank=True)
    price = models.DecimalField(_("price"), max_digits=10, decimal_places=2, default=Decimal("0.00"))
    duration = models.PositiveIntegerField(_("duration"), default=1, validators=[MinValueValidator(1)])
    duration_unit = models.CharField(
        _("duration unit"),
        max_length=10,
        choices=DurationUnit.choices,
        default=DurationUnit.MONTHS
    )
    hours = models.CharField(_("hours"), max_length=50, blank=True, help_text=_("e.g. '6', '12', '24'"))
    is_active = models.BooleanField(_("active"), default=True)

    created_at = models.DateTimeField(_("created at"), auto_now_add=True)
    updated_at = models.DateTimeField(_("updated at"), auto_now=True)

    class Meta:
        verbose_name = _("plan")
        verbose_name_plural = _("plans")
        ordering = ["price"]
        constraints = [
            models.CheckConstraint(condition=Q(duration__gte=1), name="plan_duration_positive"),
        ]

    def __str__(self):
        return f"{self.name} ({self.duration} {self.duration_unit})"

    @property
    def duration_label(self):
        return f"{self.duration} {self.get_duration_unit_display()}"

    def period_end(self, start):
        """End of a period of this plan starting at ``start``."""
        if self.duration_unit == self.DurationUnit.MONTHS:
            return start + relativedelta(months=self.duration)
        if self.duration_unit == self.DurationUnit.WEEKS:
            return start + timedelta(weeks=self.duration)
        return start + timedelta(days=self.duration)


class AdditionalFee(models.Model):
    """One-off charge such as a locker or registration fee."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    library = models.ForeignKey("libraries.Library", on_delete=models.CASCADE, related_name="fees")
    branch = models.ForeignKey(
        "libraries.Branch",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="fees"
    )
    name = models.CharField(_("name"), max_length=100)
    amount = models.DecimalField(_("amount"), max_digits=10, decimal_places=2)
    is_active = models.BooleanField(_("active"), default=True)
    created_at = models.DateTimeField(_("created at"), auto_now_add=True)

    class Meta:
        verbose_name = _("additional fee")
        verbose_name_plural = _("additional fees")

    def __str__(self):
        return f"{self.name} ({self.amount})"


# ----------------------------------------------------------------------
# STUDENT SUBSCRIPTION
# ----------------------------------------------------------------------

class StudentSubscription(models.Model):
    """
    One purchased occupancy grant: plan, optional seat and branch over a time window.
    Future-dated rows are queued plans; queue order is start_date.
    """

    class Status(models.TextChoices):
        PENDING = "pending", _("Pending")
        ACTIVE = "active", _("Active")
        EXPIRED = "expired", _("Expired")
        INACTIVE = "inactive", _("Inactive")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="subscriptions"
    )
    library = models.ForeignKey("libraries.Library", on_delete=models.CASCADE, related_name="subscriptions")
    branch = models.ForeignKey("libraries.Branch", on_delete=models.PROTECT, related_name="subscriptions")
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="subscriptions")
    seat = models.ForeignKey(
        "libraries.Seat",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscriptions"
    )
    start_date = models.DateTimeField(_("start date"))
    end_date = models.DateTimeField(_("end date"))
    status = models.CharField(
        _("status"),
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    amount = models.DecimalField(_("amount"), max_digits=10, decimal_places=2, default=Decimal("0.00"))
    has_locker = models.BooleanField(_("has locker"), default=False)

    created_at = models.DateTimeField(_("created at"), auto_now_add=True)
    updated_at = models.DateTimeField(_("updated at"), auto_now=True)

    class Meta:
        verbose_name = _("student subscription")
        verbose_name_plural = _("student subscriptions")
        ordering = ["start_date"]
        indexes = [
            models.Index(fields=["student", "branch", "status"]),
            models.Index(fields=["student", "-created_at"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_date__gt=F("start_date")),
                name="subscription_end_after_start"
            ),
        ]

    def __str__(self):
        return f"{self.student} – {self.plan.name} ({self.status})"

    def clean(self):
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValidationError(_("End date must be after start date."))


# ----------------------------------------------------------------------
# PROMOTIONS AND REFERRALS
# ----------------------------------------------------------------------

class Promotion(models.Model):
    """
    A discount code: a library's coupon or a referral reward.
    Usage is counted from completed payments, never from a stored counter.
    """

    class DiscountType(models.TextChoices):
        PERCENTAGE = "percentage", _("Percentage")
        FIXED = "fixed", _("Fixed amount")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    library = models.ForeignKey("libraries.Library", on_delete=models.CASCADE, related_name="promotions")
    code = models.CharField(_("code"), max_length=50, unique=True, db_index=True)
    description = models.TextField(_("description"), blank=True)

    discount_type = models.CharField(
        _("discount type"),
        max_length=20,
        choices=DiscountType.choices,
        default=DiscountType.PERCENTAGE
    )
    value = models.DecimalField(_("value"), max_digits=10, decimal_places=2)
    max_discount = models.DecimalField(
        _("max discount"),
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text=_("Cap for percentage discounts")
    )
    min_order_value = models.DecimalField(_("minimum order value"), max_digits=10, decimal_places=2, null=True, blank=True)
    usage_limit = models.PositiveIntegerField(_("usage limit"), null=True, blank=True)
    per_user_limit = models.PositiveIntegerField(_("per-user limit"), null=True, blank=True)

    start_date = models.DateTimeField(_("valid from"), null=True, blank=True)
    end_date = models.DateTimeField(_("valid until"), null=True, blank=True)

    # Optional scope
    branch = models.ForeignKey(
        "libraries.Branch",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="promotions"
    )
    plan = models.ForeignKey(Plan, on_delete=models.CASCADE, null=True, blank=True, related_name="promotions")

    is_active = models.BooleanField(_("active"), default=True)
    created_at = models.DateTimeField(_("created at"), auto_now_add=True)
    updated_at = models.DateTimeField(_("updated at"), auto_now=True)

    class Meta:
        verbose_name = _("promotion")
        verbose_name_plural = _("promotions")
        indexes = [
            models.Index(fields=["code", "is_active"]),
        ]

    def __str__(self):
        return f"Promotion: {self.code}"

    def save(self, *args, **kwargs):
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    @property
    def rule(self):
        return DiscountRule.from_promotion(self)

    def calculate_discount(self, amount):
        """Discount for a purchase of ``amount``; never more than the amount."""
        discount, _final = apply_rule(amount, self.rule)
        return discount

    def completed_uses(self, student=None):
        qs = self.payments.filter(status=Payment.Status.COMPLETED)
        if student is not None:
            qs = qs.filter(student=student)
        return qs.count()


class Referral(models.Model):
    """Links a referring student to the student they brought in."""

    class Status(models.TextChoices):
        PENDING = "pending", _("Pending")
        COMPLETED = "completed", _("Completed")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    library = models.ForeignKey("libraries.Library", on_delete=models.CASCADE, related_name="referrals")
    referrer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="referrals_made"
    )
    referee = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="referrals_received"
    )
    status = models.CharField(
        _("status"),
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    coupon = models.ForeignKey(
        Promotion,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="referrals"
    )
    created_at = models.DateTimeField(_("created at"), auto_now_add=True)
    completed_at = models.DateTimeField(_("completed at"), null=True, blank=True)

    class Meta:
        verbose_name = _("referral")
        verbose_name_plural = _("referrals")
        constraints = [
            models.UniqueConstraint(fields=["referee"], name="one_referral_per_referee"),
        ]

    def __str__(self):
        return f"{self.referrer} → {self.referee} ({self.status})"


# ----------------------------------------------------------------------
# PAYMENT – the ledger
# ----------------------------------------------------------------------

class Payment(models.Model):
    """One attempted or completed monetary transaction."""

    class Status(models.TextChoices):
        PENDING = "pending", _("Pending")
        PENDING_VERIFICATION = "pending_verification", _("Pending verification")
        COMPLETED = "completed", _("Completed")
        FAILED = "failed", _("Failed")

    class Method(models.TextChoices):
        RAZORPAY = "razorpay", _("Razorpay")
        CASHFREE = "cashfree", _("Cashfree")
        UPI_APP = "upi_app", _("UPI app")
        QR_CODE = "qr_code", _("QR code")
        FRONT_DESK = "front_desk", _("Front desk")

    class Type(models.TextChoices):
        SUBSCRIPTION = "subscription", _("Subscription")
        FEE = "fee", _("Fee")
        OTHER = "other", _("Other")

    MANUAL_METHODS = (Method.UPI_APP, Method.QR_CODE, Method.FRONT_DESK)
    GATEWAY_METHODS = (Method.RAZORPAY, Method.CASHFREE)

    # Allowed state transitions; completed and failed are terminal
    _STATUS_TRANSITIONS = {
        Status.PENDING: [Status.COMPLETED, Status.FAILED],
        Status.PENDING_VERIFICATION: [Status.COMPLETED, Status.FAILED],
        Status.COMPLETED: [],
        Status.FAILED: [],
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    library = models.ForeignKey("libraries.Library", on_delete=models.PROTECT, related_name="payments")
    branch = models.ForeignKey(
        "libraries.Branch",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payments"
    )
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payments"
    )

    amount = models.DecimalField(_("amount"), max_digits=10, decimal_places=2)
    discount_amount = models.DecimalField(_("discount amount"), max_digits=10, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(_("currency"), max_length=3, default="INR")
    method = models.CharField(_("method"), max_length=20, choices=Method.choices)
    status = models.CharField(
        _("status"),
        max_length=30,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    type = models.CharField(_("type"), max_length=20, choices=Type.choices, default=Type.SUBSCRIPTION)
    # Plan id for subscription payments, AdditionalFee id for fee payments
    related_id = models.UUIDField(_("related id"), null=True, blank=True)
    description = models.CharField(_("description"), max_length=255, blank=True)

    subscription = models.ForeignKey(
        StudentSubscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments"
    )
    promotion = models.ForeignKey(
        Promotion,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments"
    )

    # Manual payment evidence
    transaction_id = models.CharField(_("transaction ID"), max_length=255, blank=True)
    proof_url = models.URLField(_("proof URL"), max_length=500, blank=True)

    # Gateway references
    gateway_provider = models.CharField(_("gateway provider"), max_length=20, blank=True)
    gateway_order_id = models.CharField(
        _("gateway order ID"),
        max_length=255,
        unique=True,
        null=True,      # NULL for manual payments
        blank=True
    )
    gateway_payment_id = models.CharField(_("gateway payment ID"), max_length=255, blank=True)
    gateway_signature = models.CharField(_("gateway signature"), max_length=255, blank=True)

    invoice_no = models.CharField(_("invoice number"), max_length=50, unique=True, null=True, blank=True)

    # Verification trail
    verified_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="verified_payments"
    )
    verifier_role = models.CharField(_("verifier role"), max_length=20, blank=True)
    verified_at = models.DateTimeField(_("verified at"), null=True, blank=True)
    collected_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="collected_payments"
    )

    created_at = models.DateTimeField(_("created at"), auto_now_add=True)
    updated_at = models.DateTimeField(_("updated at"), auto_now=True)
    completed_at = models.DateTimeField(_("completed at"), null=True, blank=True)

    class Meta:
        verbose_name = _("payment")
        verbose_name_plural = _("payments")
        indexes = [
            models.Index(fields=["student", "status"]),
            models.Index(fields=["library", "status"]),
            models.Index(fields=["promotion", "status"]),
            models.Index(fields=["status", "created_at"]),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gte=0), name="payment_amount_non_negative"),
        ]
        ordering = ["-created_at"]

    def __str__(self):
        return f"Payment {self.id} - {self.amount} {self.currency}"

    @property
    def is_completed(self):
        return self.status == self.Status.COMPLETED

    @property
    def is_manual(self):
        return self.method in self.MANUAL_METHODS

    @property
    def has_proof(self):
        return bool(self.transaction_id or self.proof_url)

    @transaction.atomic
    def mark_completed(self, **fields):
        """
        Mark payment as completed and stamp ``fields`` (gateway ids, verifier...).

        Row-locked. Returns False without writing anything when the payment is
        already completed, so a second completion is a no-op.
        """
        payment = Payment.objects.select_for_update().get(pk=self.pk)
        if payment.status == self.Status.COMPLETED:
            self.refresh_from_db()
            return False
        if self.Status.COMPLETED not in self._STATUS_TRANSITIONS.get(payment.status, []):
            raise ValidationError(f"Cannot transition from {payment.status} to {self.Status.COMPLETED}")

        for name, value in fields.items():
            setattr(payment, name, value)
        payment.status = self.Status.COMPLETED
        payment.completed_at = timezone.now()
        if not payment.invoice_no:
            payment.invoice_no = generate_invoice_no()
        payment.save(update_fields=["status", "completed_at", "invoice_no", "updated_at", *fields.keys()])
        self.refresh_from_db()
        return True

    @transaction.atomic
    def mark_failed(self, **fields):
        """Mark payment as failed. Row-locked; raises if the payment is already terminal."""
        payment = Payment.objects.select_for_update().get(pk=self.pk)
        if self.Status.FAILED not in self._STATUS_TRANSITIONS.get(payment.status, []):
            raise ValidationError(f"Cannot transition from {payment.status} to {self.Status.FAILED}")
        for name, value in fields.items():
            setattr(payment, name, value)
        payment.status = self.Status.FAILED
        payment.save(update_fields=["status", "updated_at", *fields.keys()])
        self.refresh_from_db()
        return True

    def save(self, *args, **kwargs):
        """
        Validate status transition to prevent invalid state jumps.
        Skips the DB lookup for new instances to avoid an extra query.
        """
        if self.gateway_order_id == "":
            self.gateway_order_id = None

        if not self._state.adding:
            old_status = Payment.objects.filter(pk=self.pk).values_list("status", flat=True).first()
            if old_status is not None and old_status != self.status:
                allowed = self._STATUS_TRANSITIONS.get(old_status, [])
                if self.status not in allowed:
                    raise ValidationError(
                        _("Cannot transition payment from %(old)s to %(new)s") %
                        {"old": old_status, "new": self.status}
                    )
        super().save(*args, **kwargs)


def generate_invoice_no():
    return f"INV-{timezone.now():%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"
