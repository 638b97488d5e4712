"""
Django configuration package for the study-space payments service.
Loads the Celery app when Django starts so shared tasks bind to it.
"""
from .celery import app as celery_app

__all__ = ('celery_app',)
