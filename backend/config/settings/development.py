"""
Development settings.
"""
from .base import *

DEBUG = True

ALLOWED_HOSTS = ["localhost", "127.0.0.1", "0.0.0.0"]

SECURE_SSL_REDIRECT = False
SESSION_COOKIE_SECURE = False
CSRF_COOKIE_SECURE = False

CORS_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
]

EMAIL_BACKEND = "django.core.mail.backends.console.EmailBackend"

LOGGING["loggers"]["django"]["level"] = "DEBUG"
LOGGING["loggers"]["backend"]["level"] = "DEBUG"
LOGGING["handlers"]["console"]["level"] = "DEBUG"

DATABASES["default"]["CONN_MAX_AGE"] = 0  # Disable persistent connections
