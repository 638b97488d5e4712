"""
Payment proof uploads (UPI / QR screenshots).
"""
import logging
import os
import uuid

from django.conf import settings
from django.core.files.storage import default_storage
from django.utils import timezone

from backend.core.results import fail, ok

logger = logging.getLogger(__name__)


def upload_payment_proof(file, request=None):
    """Store ``file`` and return ``{"success", "url"}``; only the URL is kept on the payment."""
    if file is None:
        return fail("No file provided")
    if file.size > settings.PAYMENT_PROOF_MAX_SIZE:
        return fail("File is too large")
    content_type = getattr(file, "content_type", "")
    if content_type not in settings.PAYMENT_PROOF_CONTENT_TYPES:
        return fail("Unsupported file type")

    extension = os.path.splitext(file.name)[1].lower()[:10]
    name = f"payment_proofs/{timezone.now():%Y/%m}/{uuid.uuid4().hex}{extension}"
    try:
        stored = default_storage.save(name, file)
    except OSError as e:
        logger.exception(f"Failed to store payment proof: {e}")
        return fail("Upload failed")

    url = default_storage.url(stored)
    if request is not None and url.startswith("/"):
        url = request.build_absolute_uri(url)
    logger.info(f"Payment proof stored at {stored}")
    return ok(url=url)
