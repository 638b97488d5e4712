# FILE: backend/apps/notifications/services.py
import logging
from smtplib import SMTPException

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string
from django.utils import timezone

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Transactional email sender.

    Every method returns ``{"success": bool, "error": str | None}``; callers
    treat a failure as non-fatal.
    Usage:
        NotificationService.send_receipt_email(build_receipt_payload(payment))
    """

    @classmethod
    def _send(cls, template, subject, recipient, context):
        if not recipient:
            logger.warning(f"Cannot send '{template}' email: missing recipient.")
            return {"success": False, "error": "No recipient email"}

        context = {
            **context,
            "support_email": settings.SUPPORT_EMAIL,
            "frontend_url": settings.FRONTEND_URL,
            "current_year": timezone.now().year,
        }
        html_content = render_to_string(f"notifications/email/{template}.html", context)
        text_content = render_to_string(f"notifications/email/{template}.txt", context)

        email = EmailMultiAlternatives(
            subject=subject,
            body=text_content,
            from_email=settings.DEFAULT_FROM_EMAIL,
            to=[recipient],
            reply_to=[settings.SUPPORT_EMAIL],
        )
        email.attach_alternative(html_content, "text/html")
        try:
            email.send(fail_silently=False)
        except (SMTPException, OSError) as e:
            logger.exception(f"Failed to send '{template}' email to {recipient}")
            return {"success": False, "error": str(e)}

        logger.info(f"'{template}' email sent to {recipient}")
        return {"success": True, "error": None}

    @classmethod
    def send_receipt_email(cls, payload):
        """``payload`` is the flat receipt dict built by the payments app."""
        subject = f"Payment receipt {payload.get('invoice_no', '')}".strip()
        return cls._send("receipt", subject, payload.get("student_email"), {"receipt": payload})

    @classmethod
    def send_welcome_email(cls, email, name, library_name="", referral_code=""):
        return cls._send("welcome", f"Welcome to {library_name or 'your library'}", email, {
            "name": name,
            "library_name": library_name,
            "referral_code": referral_code,
        })

    @classmethod
    def send_password_reset_email(cls, email, name, reset_url):
        return cls._send("password_reset", "Reset your password", email, {
            "name": name,
            "reset_url": reset_url,
            "expiry_hours": 24,
        })


send_receipt_email = NotificationService.send_receipt_email
send_welcome_email = NotificationService.send_welcome_email
send_password_reset_email = NotificationService.send_password_reset_email
