import logging

from celery import shared_task

from backend.apps.accounts.tasks import BaseEmailTask
from backend.apps.notifications.services import send_receipt_email

from .models import Payment
from .receipts import build_receipt_payload
from .referrals import process_referral_rewards

logger = logging.getLogger(__name__)


@shared_task(base=BaseEmailTask)
def send_payment_receipt(payment_id):
    """
    Email the receipt for a completed payment. Failures are logged, never raised.
    """
    payment = (
        Payment.objects
        .select_related("student", "branch", "subscription__plan", "subscription__seat", "subscription__branch")
        .filter(pk=payment_id)
        .first()
    )
    if payment is None:
        logger.error(f"Payment {payment_id} not found for receipt email")
        return {'status': 'error', 'message': 'Payment not found'}
    if not payment.is_completed:
        return {'status': 'skipped', 'message': f'Payment is {payment.status}'}

    payload = build_receipt_payload(payment)
    result = send_receipt_email(payload)
    if not result['success']:
        logger.error(f"Receipt email for payment {payment_id} failed: {result['error']}")
        return {'status': 'error', 'message': result['error']}

    logger.info(f"Receipt {payload['invoice_no']} sent to {payload['student_email']}")
    return {
        'status': 'success',
        'payment_id': str(payment.id),
        'email': payload['student_email'],
    }


@shared_task
def issue_referral_reward(payment_id):
    """Best-effort referral reward issuance after a subscription payment completes."""
    result = process_referral_rewards(payment_id)
    if not result['success']:
        logger.error(f"Referral reward for payment {payment_id} failed: {result['error']}")
        return {'status': 'error', 'message': result['error']}
    if not result['issued']:
        return {'status': 'skipped'}
    return {'status': 'success', 'code': result['code']}
