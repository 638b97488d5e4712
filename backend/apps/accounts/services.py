"""
Student registration.
"""
import logging
import re
import secrets

from django.db import IntegrityError, transaction

from backend.apps.payments.models import Referral
from backend.core.results import VALIDATION_ERROR, fail, ok

from .models import User

logger = logging.getLogger(__name__)

REFERRAL_CODE_ATTEMPTS = 5


def generate_referral_code(name):
    """First four letters of the name (non-letters become X, padded with X) plus four random digits."""
    prefix = re.sub(r"[^A-Z]", "X", (name or "").upper()[:4]).ljust(4, "X")
    for _attempt in range(REFERRAL_CODE_ATTEMPTS):
        code = f"{prefix}{secrets.randbelow(9000) + 1000}"
        if not User.objects.filter(referral_code=code).exists():
            return code
    return f"{prefix}{secrets.token_hex(3).upper()}"


@transaction.atomic
def register_student(*, name, email, password, phone="", referral_code=None):
    """
    Create a student account.

    A referral code belonging to a student of some library records a pending
    Referral and enrolls the new student in that library. Unknown codes are
    ignored rather than failing the signup.
    """
    if User.objects.filter(email__iexact=email).exists():
        return fail("A user with this email already exists.", VALIDATION_ERROR)

    referrer = None
    if referral_code:
        referrer = (
            User.objects
            .select_related("library")
            .filter(referral_code=referral_code.strip().upper(), library__isnull=False)
            .first()
        )
        if referrer is None:
            logger.info(f"Ignoring unknown referral code {referral_code!r} at signup")

    try:
        student = User.objects.create_user(
            email=email,
            password=password,
            name=name,
            phone=phone,
            role=User.Role.STUDENT,
            library=referrer.library if referrer else None,
            referral_code=generate_referral_code(name),
        )
    except IntegrityError:
        logger.exception(f"Registration failed for {email}")
        return fail("A user with this email already exists.", VALIDATION_ERROR)

    referral = None
    if referrer is not None:
        referral = Referral.objects.create(
            library=referrer.library,
            referrer=referrer,
            referee=student,
            status=Referral.Status.PENDING,
        )
        logger.info(f"Referral {referral.id} recorded: {referrer.id} referred {student.id}")

    from .tasks import send_welcome_email
    student_id = str(student.id)
    transaction.on_commit(lambda: send_welcome_email.delay(student_id))

    return ok(student=student, referral_id=referral.id if referral else None)
