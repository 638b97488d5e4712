"""
Testing settings.
"""
from .base import *

DEBUG = False


class DisableMigrations:
    """Build the test schema straight from the models."""

    def __contains__(self, item):
        return True

    def __getitem__(self, item):
        return None


MIGRATION_MODULES = DisableMigrations()

# Use in-memory database for testing
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

# Disable password validation for testing
AUTH_PASSWORD_VALIDATORS = []

# Faster password hashing for testing
PASSWORD_HASHERS = [
    "django.contrib.auth.hashers.MD5PasswordHasher",
]

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.dummy.DummyCache",
    }
}

# Disable email sending
EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"

# Run tasks inline
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

CORS_ALLOW_ALL_ORIGINS = True

REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []

# Gateway credentials for adapter tests; network calls are always mocked
RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "s3cret"
RAZORPAY_WEBHOOK_SECRET = "whsec_test"
CASHFREE_APP_ID = "cf_test_app"
CASHFREE_SECRET_KEY = "cf_test_secret"
CASHFREE_WEBHOOK_SECRET = "cf_test_secret"

MEDIA_ROOT = str(BASE_DIR / "test_media")

LOGGING["handlers"]["console"]["level"] = "WARNING"

TEST_RUNNER = "django.test.runner.DiscoverRunner"
