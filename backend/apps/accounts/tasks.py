# FILE: /backend/apps/accounts/tasks.py
import logging
from celery import shared_task, Task
from django.conf import settings

from backend.apps.notifications.services import send_password_reset_email as send_reset_notification
from backend.apps.notifications.services import send_welcome_email as send_welcome_notification

logger = logging.getLogger(__name__)


class BaseEmailTask(Task):
    """
    Base task class for email operations with retry logic.
    """
    max_retries = 3
    default_retry_delay = 60  # 1 minute

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Handle task failure."""
        logger.error(f"Task {task_id} failed: {exc}")
        super().on_failure(exc, task_id, args, kwargs, einfo)


@shared_task(base=BaseEmailTask)
def send_welcome_email(user_id):
    """
    Send the welcome email to a newly registered student.
    """
    from .models import User

    user = User.objects.select_related("library").filter(id=user_id).first()
    if user is None:
        logger.error(f"User {user_id} not found for welcome email")
        return {'status': 'error', 'message': 'User not found'}
    if not user.is_active:
        return {'status': 'skipped', 'message': 'User not active'}

    result = send_welcome_notification(
        user.email,
        user.get_full_name(),
        library_name=user.library.name if user.library else "",
        referral_code=user.referral_code or "",
    )
    if not result['success']:
        logger.error(f"Failed to send welcome email: {result['error']}")
        return {'status': 'error', 'message': result['error']}

    logger.info(f"Welcome email sent to {user.email}")
    return {
        'status': 'success',
        'message': f"Welcome email sent to {user.email}",
        'user_id': str(user.id),
    }


@shared_task(base=BaseEmailTask)
def send_password_reset_email(user_id, token):
    """
    Send password reset link.
    """
    from .models import User

    user = User.objects.filter(id=user_id).first()
    if user is None:
        logger.error(f"User {user_id} not found for password reset email")
        return {'status': 'error', 'message': 'User not found'}

    reset_url = f"{settings.FRONTEND_URL}/reset-password/{token}"
    result = send_reset_notification(user.email, user.get_full_name(), reset_url)
    if not result['success']:
        logger.error(f"Failed to send password reset email: {result['error']}")
        return {'status': 'error', 'message': result['error']}

    logger.info(f"Password reset email sent to {user.email}")
    return {
        'status': 'success',
        'message': f"Password reset email sent to {user.email}",
        'user_id': str(user.id),
    }
