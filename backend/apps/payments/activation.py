"""
Subscription activation for completed subscription payments.

Resolution order, first match wins:

1. the subscription the payment is already linked to is set active;
2. otherwise a pending subscription for the same student and branch is
   converted into the paid grant;
3. otherwise a new active subscription is created.

Paths 2 and 3 backfill ``Payment.subscription`` so a repeated call takes
path 1 and never creates a second row.
"""
import logging

from django.db import transaction
from django.utils import timezone

from backend.core.results import ok

from .models import Payment, Plan, StudentSubscription

logger = logging.getLogger(__name__)

LINKED = "linked"
CONVERTED = "converted"
CREATED = "created"
SKIPPED = "skipped"


def resolve_branch_id(payment, plan, prefer_payment_branch=False):
    """
    Branch the new grant belongs to.

    Gateway completions follow plan branch, then the student's latest
    subscription, with the payment's own branch as a last resort. Manual
    verification trusts the branch recorded on the payment first.
    """
    if prefer_payment_branch and payment.branch_id:
        return payment.branch_id
    if plan.branch_id:
        return plan.branch_id
    latest_branch_id = (
        StudentSubscription.objects
        .filter(student_id=payment.student_id)
        .order_by("-created_at")
        .values_list("branch_id", flat=True)
        .first()
    )
    return latest_branch_id or payment.branch_id


@transaction.atomic
def activate_subscription(payment_id, prefer_payment_branch=False):
    """
    Activate the subscription paid for by ``payment_id``.

    A no-op unless the payment is a completed subscription payment.
    Returns ``ok(path=..., subscription_id=...)``.
    """
    payment = Payment.objects.select_for_update().get(pk=payment_id)
    if payment.status != Payment.Status.COMPLETED or payment.type != Payment.Type.SUBSCRIPTION:
        return ok(path=SKIPPED, subscription_id=None)

    if payment.subscription_id:
        subscription = StudentSubscription.objects.select_for_update().get(pk=payment.subscription_id)
        if subscription.status != StudentSubscription.Status.ACTIVE:
            subscription.status = StudentSubscription.Status.ACTIVE
            subscription.save(update_fields=["status", "updated_at"])
        logger.info(f"Activated linked subscription {subscription.id} for payment {payment.id}")
        return ok(path=LINKED, subscription_id=subscription.id)

    plan = Plan.objects.filter(pk=payment.related_id).first() if payment.related_id else None
    if plan is None:
        logger.warning(f"Payment {payment.id} has no plan to activate")
        return ok(path=SKIPPED, subscription_id=None)

    branch_id = resolve_branch_id(payment, plan, prefer_payment_branch=prefer_payment_branch)
    if not branch_id:
        logger.warning(f"No branch could be resolved for payment {payment.id}; subscription not activated")
        return ok(path=SKIPPED, subscription_id=None)

    start = timezone.now()
    end = plan.period_end(start)
    if end <= start:
        logger.warning(f"Plan {plan.id} has an empty period; subscription for payment {payment.id} not activated")
        return ok(path=SKIPPED, subscription_id=None)

    subscription = (
        StudentSubscription.objects
        .select_for_update()
        .filter(student_id=payment.student_id, branch_id=branch_id, status=StudentSubscription.Status.PENDING)
        .order_by("created_at")
        .first()
    )
    if subscription is not None:
        subscription.plan = plan
        subscription.start_date = start
        subscription.end_date = end
        subscription.status = StudentSubscription.Status.ACTIVE
        subscription.save(update_fields=["plan", "start_date", "end_date", "status", "updated_at"])
        path = CONVERTED
    else:
        subscription = StudentSubscription.objects.create(
            student_id=payment.student_id,
            library_id=payment.library_id,
            branch_id=branch_id,
            plan=plan,
            start_date=start,
            end_date=end,
            status=StudentSubscription.Status.ACTIVE,
            amount=payment.amount,
        )
        path = CREATED

    payment.subscription = subscription
    payment.save(update_fields=["subscription", "updated_at"])
    logger.info(f"Subscription {subscription.id} {path} for payment {payment.id}")
    return ok(path=path, subscription_id=subscription.id)
