"""
Payment ledger operations.

Every function here returns a result dict (see ``backend.core.results``) and
keeps expected failures inside it. Anything that can move a payment to
``completed`` locks the row and treats an already-completed payment as
success without repeating side effects.
"""
import logging
import uuid
from decimal import InvalidOperation

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from backend.apps.accounts.models import User
from backend.apps.libraries.models import Branch
from backend.core.results import (
    CONTEXT_MISSING,
    GATEWAY_ERROR,
    GATEWAY_NOT_CONFIGURED,
    INVALID_STATE,
    NOT_FOUND,
    VALIDATION_ERROR,
    VERIFICATION_FAILED,
    fail,
    ok,
)

from .activation import activate_subscription
from .coupons import validate_coupon
from .discounts import ZERO, compute_amount, to_money
from .gateways import STATUS_FETCH, GatewayError, GatewayNotConfigured, get_provider
from .models import AdditionalFee, Payment, Plan, Referral, StudentSubscription
from .referrals import REFEREE, reward_rule

logger = logging.getLogger(__name__)

VERIFIED_BY_API = "verified_by_api"
APPROVE = "approve"
REJECT = "reject"
VERIFIER_ROLES = (User.Role.OWNER, User.Role.STAFF, User.Role.ADMIN)
PROOF_REQUIRED_METHODS = (Payment.Method.UPI_APP, Payment.Method.QR_CODE)


# ----------------------------------------------------------------------
# Side effects – run after commit, never unwind the caller
# ----------------------------------------------------------------------

def _safe_delay(task, payment_id):
    try:
        task.delay(payment_id)
    except Exception:
        logger.exception(f"Could not queue {task.name} for payment {payment_id}")


def dispatch_completion_side_effects(payment):
    """Queue the referral reward (subscriptions only), then the receipt, once the transaction commits."""
    from .tasks import issue_referral_reward, send_payment_receipt

    payment_id = str(payment.id)
    if payment.type == Payment.Type.SUBSCRIPTION:
        transaction.on_commit(lambda: _safe_delay(issue_referral_reward, payment_id))
    transaction.on_commit(lambda: _safe_delay(send_payment_receipt, payment_id))


# ----------------------------------------------------------------------
# Initiation
# ----------------------------------------------------------------------

def _resolve_related(payment_type, related_id):
    if not related_id:
        return None
    if payment_type == Payment.Type.SUBSCRIPTION:
        return Plan.objects.select_related("library").filter(pk=related_id).first()
    if payment_type == Payment.Type.FEE:
        return AdditionalFee.objects.select_related("library").filter(pk=related_id).first()
    return None


def _resolve_library(student, related):
    if related is not None:
        return related.library
    subscription = (
        StudentSubscription.objects
        .select_related("library")
        .filter(student=student)
        .order_by("-created_at")
        .first()
    )
    return subscription.library if subscription else None


def _referee_rule(student, library):
    has_pending_referral = Referral.objects.filter(
        referee=student, library=library, status=Referral.Status.PENDING
    ).exists()
    if not has_pending_referral:
        return None
    return reward_rule(library.referral_settings, REFEREE)


def initiate_payment(*, student, amount, type, related_id, description, gateway_provider, branch_id,
                     coupon_code=None, manual_payment_data=None, subscription_id=None, collected_by=None):
    """
    Create a Payment for ``student``.

    Manual methods (``upi_app``, ``qr_code``, ``front_desk``) land in
    ``pending_verification`` and wait for staff. Gateway methods land in
    ``pending`` and get a remote order; if the provider call fails the
    payment stays pending and the caller may start a fresh attempt.
    """
    manual_payment_data = manual_payment_data or {}

    try:
        base_amount = to_money(amount)
    except (InvalidOperation, TypeError, ValueError):
        return fail("Invalid amount")
    if base_amount <= ZERO:
        return fail("Amount must be greater than zero")

    if not branch_id:
        return fail("Branch is required", CONTEXT_MISSING)

    if type not in Payment.Type.values:
        return fail(f"Unsupported payment type: {type}")

    is_manual = gateway_provider in Payment.MANUAL_METHODS
    provider = None
    if not is_manual:
        if gateway_provider not in Payment.GATEWAY_METHODS:
            return fail(f"Unsupported payment method: {gateway_provider}")
        provider = get_provider(gateway_provider)
        if not provider.is_configured:
            logger.warning(f"Payment attempted with unconfigured gateway {gateway_provider}")
            return fail("Gateway not connected yet", GATEWAY_NOT_CONFIGURED)

    related = _resolve_related(type, related_id)
    if related_id and related is None:
        return fail("Plan or fee not found", NOT_FOUND)

    library = _resolve_library(student, related)
    if library is None:
        return fail("Could not determine the library for this payment", CONTEXT_MISSING)

    branch = Branch.objects.filter(pk=branch_id, library=library).first()
    if branch is None:
        return fail("Branch not found for this library", CONTEXT_MISSING)

    transaction_id = (manual_payment_data.get("transaction_id") or "").strip()
    proof_url = (manual_payment_data.get("proof_url") or "").strip()
    if gateway_provider in PROOF_REQUIRED_METHODS and not (transaction_id or proof_url):
        return fail("Payment proof is required (transaction ID or screenshot)")

    with transaction.atomic():
        promotion = None
        coupon_rule = None
        referral_rule = None
        if coupon_code:
            coupon = validate_coupon(
                coupon_code,
                base_amount,
                student=student,
                plan_id=related_id if type == Payment.Type.SUBSCRIPTION else None,
                branch_id=branch.id,
                library=library,
                for_update=True,
            )
            if not coupon["success"]:
                return coupon
            promotion = coupon["promo"]
            coupon_rule = promotion.rule
        else:
            referral_rule = _referee_rule(student, library)

        priced = compute_amount(
            base_amount,
            coupon_rule=coupon_rule,
            coupon_code=promotion.code if promotion else None,
            referral_rule=referral_rule,
            description=description,
        )
        final_amount = priced["final_amount"]
        if not is_manual and final_amount <= ZERO:
            return fail("Online payments need an amount above zero; use a manual method")

        subscription = None
        if subscription_id:
            subscription = StudentSubscription.objects.filter(pk=subscription_id, student=student).first()
            if subscription is None:
                return fail("Subscription not found", NOT_FOUND)

        payment = Payment.objects.create(
            library=library,
            branch=branch,
            student=student,
            amount=final_amount,
            discount_amount=priced["discount_amount"],
            currency=settings.PAYMENT_CURRENCY,
            method=gateway_provider,
            status=Payment.Status.PENDING_VERIFICATION if is_manual else Payment.Status.PENDING,
            type=type,
            related_id=related_id or None,
            description=priced["updated_description"][:255],
            subscription=subscription,
            promotion=promotion,
            transaction_id=transaction_id,
            proof_url=proof_url,
            gateway_provider="" if is_manual else gateway_provider,
            gateway_order_id=None if is_manual else f"tmp_{uuid.uuid4().hex}",
            collected_by=collected_by if is_manual else None,
        )

    logger.info(f"Payment {payment.id} initiated: {payment.amount} via {payment.method} ({payment.status})")
    summary = {
        "payment_id": payment.id,
        "status": payment.status,
        "amount": payment.amount,
        "discount_amount": payment.discount_amount,
        "currency": payment.currency,
        "description": payment.description,
    }
    if is_manual:
        return ok(**summary)

    receipt_id = f"order_{payment.id.hex}"
    try:
        order = provider.create_order(
            payment.amount,
            payment.currency,
            receipt_id,
            {
                "payment_id": payment.id,
                "student_id": student.id,
                "email": student.email,
                "phone": student.phone,
                "description": payment.description,
                "return_url": f"{settings.FRONTEND_URL}/payments/{payment.id}/return",
            },
        )
    except GatewayNotConfigured:
        return fail("Gateway not connected yet", GATEWAY_NOT_CONFIGURED, payment_id=payment.id)
    except GatewayError:
        logger.exception(f"Gateway order creation failed for payment {payment.id}")
        return fail("Payment gateway error, please try again.", GATEWAY_ERROR, payment_id=payment.id)

    payment.gateway_order_id = order["order_id"]
    payment.save(update_fields=["gateway_order_id", "updated_at"])
    extra = {k: v for k, v in order.items() if k != "order_id"}
    return ok(**summary, order_id=payment.gateway_order_id, provider=provider.name, **extra)


# ----------------------------------------------------------------------
# Gateway verification
# ----------------------------------------------------------------------

def complete_gateway_payment(payment_id, **gateway_fields):
    """
    Mark a verified gateway payment completed and activate what it paid for.

    Completion and activation commit together; the referral reward and the
    receipt are queued for after the commit.
    """
    with transaction.atomic():
        payment = Payment.objects.select_for_update().filter(pk=payment_id).first()
        if payment is None:
            return fail("Payment not found", NOT_FOUND)
        if payment.is_completed:
            return ok(payment_id=payment.id, status=payment.status, already_completed=True,
                      subscription_id=payment.subscription_id)
        if payment.status != Payment.Status.PENDING:
            return fail(f"Payment already {payment.status}", INVALID_STATE)

        payment.mark_completed(**gateway_fields)
        activation = activate_subscription(payment.id)
        dispatch_completion_side_effects(payment)

    logger.info(f"Payment {payment.id} completed via {payment.gateway_provider}")
    return ok(payment_id=payment.id, status=Payment.Status.COMPLETED, already_completed=False,
              subscription_id=activation["subscription_id"])


def _load_gateway_payment(payment_id):
    payment = Payment.objects.filter(pk=payment_id).first()
    if payment is None:
        return None, fail("Payment not found", NOT_FOUND)
    if payment.method not in Payment.GATEWAY_METHODS:
        return None, fail("Payment was not made through a gateway", INVALID_STATE)
    return payment, None


def verify_payment_signature(payment_id, gateway_payment_id, signature):
    """
    Verify a client's completion claim for an HMAC-signature gateway payment.

    A mismatch leaves the payment pending so the payer can retry. Status-fetch
    providers ignore the claimed values and go through confirm_gateway_payment.
    """
    payment, error = _load_gateway_payment(payment_id)
    if error:
        return error
    if payment.is_completed:
        return ok(payment_id=payment.id, status=payment.status, already_completed=True,
                  subscription_id=payment.subscription_id)

    provider = get_provider(payment.gateway_provider)
    if provider.verification == STATUS_FETCH:
        return confirm_gateway_payment(payment.id)

    try:
        valid = provider.verify_signature(payment.gateway_order_id, gateway_payment_id, signature)
    except GatewayNotConfigured:
        return fail("Gateway not connected yet", GATEWAY_NOT_CONFIGURED)
    if not valid:
        logger.warning(f"Signature mismatch for payment {payment.id} (order {payment.gateway_order_id})")
        return fail("Payment verification failed", VERIFICATION_FAILED)

    return complete_gateway_payment(payment.id, gateway_payment_id=gateway_payment_id, gateway_signature=signature)


def confirm_gateway_payment(payment_id):
    """
    Ask a status-fetch gateway whether the payment's order was paid.

    The provider's own transaction id becomes the canonical gateway payment id.
    """
    payment, error = _load_gateway_payment(payment_id)
    if error:
        return error
    if payment.is_completed:
        return ok(payment_id=payment.id, status=payment.status, already_completed=True,
                  subscription_id=payment.subscription_id)

    provider = get_provider(payment.gateway_provider)
    if provider.verification != STATUS_FETCH:
        return fail("This gateway requires signature verification", INVALID_STATE)

    try:
        entries = provider.fetch_payments_for_order(payment.gateway_order_id)
    except GatewayNotConfigured:
        return fail("Gateway not connected yet", GATEWAY_NOT_CONFIGURED)
    except GatewayError:
        logger.exception(f"Status fetch failed for payment {payment.id}")
        return fail("Could not confirm payment with the gateway", GATEWAY_ERROR)

    succeeded = next((entry for entry in entries if entry["status"] == "SUCCESS"), None)
    if succeeded is None:
        logger.info(f"No successful transaction yet for payment {payment.id}")
        return fail("Payment verification failed", VERIFICATION_FAILED)

    return complete_gateway_payment(
        payment.id,
        gateway_payment_id=succeeded["provider_payment_id"],
        gateway_signature=VERIFIED_BY_API,
    )


def complete_by_order_id(order_id, **gateway_fields):
    """Webhook entry point: complete the payment owning ``order_id``."""
    payment = Payment.objects.filter(gateway_order_id=order_id).first()
    if payment is None:
        return fail("Payment not found", NOT_FOUND)
    return complete_gateway_payment(payment.id, **gateway_fields)


# ----------------------------------------------------------------------
# Manual verification
# ----------------------------------------------------------------------

def verify_payment(payment_id, action, verifier):
    """
    Approve or reject a payment on behalf of an owner or staff member.

    Approving an already-completed payment succeeds without side effects.
    Approval stamps the verifier (and the collector, when none is set),
    activates the subscription and queues the receipt.
    """
    if action not in (APPROVE, REJECT):
        return fail("Action must be 'approve' or 'reject'")
    if getattr(verifier, "role", None) not in VERIFIER_ROLES:
        return fail("Only owners and staff can verify payments", INVALID_STATE)

    with transaction.atomic():
        payment = Payment.objects.select_for_update().filter(pk=payment_id).first()
        if payment is None or (verifier.role != User.Role.ADMIN and payment.library_id != verifier.library_id):
            return fail("Payment not found", NOT_FOUND)

        if payment.is_completed:
            if action == APPROVE:
                return ok(payment_id=payment.id, status=payment.status, already_completed=True,
                          subscription_id=payment.subscription_id)
            return fail("Payment already completed", INVALID_STATE)
        if payment.status == Payment.Status.FAILED:
            if action == REJECT:
                return ok(payment_id=payment.id, status=payment.status, already_completed=False)
            return fail("Payment already failed", INVALID_STATE)

        stamp = {
            "verified_by": verifier,
            "verifier_role": verifier.role,
            "verified_at": timezone.now(),
        }
        if payment.collected_by_id is None:
            stamp["collected_by"] = verifier

        if action == REJECT:
            payment.mark_failed(**stamp)
            if payment.subscription_id:
                StudentSubscription.objects.filter(
                    pk=payment.subscription_id, status=StudentSubscription.Status.PENDING
                ).update(status=StudentSubscription.Status.INACTIVE, updated_at=timezone.now())
            logger.info(f"Payment {payment.id} rejected by {verifier.id} ({verifier.role})")
            return ok(payment_id=payment.id, status=Payment.Status.FAILED, already_completed=False)

        if payment.method in PROOF_REQUIRED_METHODS and not payment.has_proof:
            return fail("Payment proof is required before verification")
        if payment.method == Payment.Method.FRONT_DESK and not payment.has_proof:
            # Cash taken at the desk; the verifier's receipt reference is the proof
            stamp["transaction_id"] = f"DESK-{payment.id.hex[:12].upper()}"

        payment.mark_completed(**stamp)
        activation = activate_subscription(payment.id, prefer_payment_branch=True)
        dispatch_completion_side_effects(payment)

    logger.info(f"Payment {payment.id} approved by {verifier.id} ({verifier.role})")
    return ok(payment_id=payment.id, status=Payment.Status.COMPLETED, already_completed=False,
              subscription_id=activation["subscription_id"])
