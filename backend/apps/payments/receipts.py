"""
Receipt payload: the flat dict handed to the notification sender.
"""
from django.utils import timezone

from .models import AdditionalFee, Payment, Plan


def _money(value):
    return f"{value:.2f}" if value is not None else None


def _date(value):
    return timezone.localtime(value).strftime("%d %b %Y") if value else None


def build_receipt_payload(payment):
    student = payment.student
    subscription = payment.subscription
    branch = payment.branch or (subscription.branch if subscription else None)

    plan = None
    fee = None
    if subscription is not None:
        plan = subscription.plan
    elif payment.type == Payment.Type.SUBSCRIPTION and payment.related_id:
        plan = Plan.objects.filter(pk=payment.related_id).first()
    if payment.type == Payment.Type.FEE and payment.related_id:
        fee = AdditionalFee.objects.filter(pk=payment.related_id).first()

    if plan is not None:
        items = [{"description": f"Plan: {plan.name}", "amount": _money(plan.price)}]
    elif fee is not None:
        items = [{"description": fee.name, "amount": _money(fee.amount)}]
    else:
        items = [{"description": payment.description or "Payment", "amount": _money(payment.amount + payment.discount_amount)}]

    return {
        "invoice_no": payment.invoice_no or payment.id.hex[:8].upper(),
        "date": _date(payment.completed_at or payment.created_at),
        "student_name": student.get_full_name(),
        "student_email": student.email,
        "student_phone": student.phone,
        "branch_name": branch.name if branch else "",
        "branch_address": branch.full_address if branch else "",
        "plan_name": plan.name if plan else "",
        "plan_type": plan.plan_type if plan else "",
        "plan_duration": plan.duration_label if plan else "",
        "plan_hours": plan.hours if plan else "",
        "seat_number": subscription.seat.number if subscription and subscription.seat else "",
        "start_date": _date(subscription.start_date) if subscription else None,
        "end_date": _date(subscription.end_date) if subscription else None,
        "amount": _money(payment.amount),
        "payment_method": payment.get_method_display(),
        "sub_total": _money(payment.amount + payment.discount_amount),
        "discount": _money(payment.discount_amount),
        "currency": payment.currency,
        "items": items,
    }
