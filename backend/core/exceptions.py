"""
Custom exceptions and DRF exception handler for the study-space payments service.
"""
import logging

from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status

logger = logging.getLogger(__name__)


def custom_exception_handler(exc, context):
    """
    Custom exception handler for DRF.
    Standardizes all API error responses into a consistent format.
    """
    # Call REST framework's default exception handler first
    response = exception_handler(exc, context)

    if response is not None:
        # response.data may be a dict, list, or string; we preserve it in 'details'
        if isinstance(response.data, dict) and 'detail' in response.data:
            message = response.data['detail']
        elif isinstance(response.data, dict):
            message = 'Invalid request.'
        else:
            message = str(response.data)

        response.data = {
            'error': True,
            'code': response.status_code,
            'message': message,
            'details': response.data
        }
    else:
        view = context.get('view')
        logger.exception(f"Unhandled error in {view.__class__.__name__ if view else 'unknown view'}: {exc}")
        response = Response({
            'error': True,
            'code': status.HTTP_500_INTERNAL_SERVER_ERROR,
            'message': 'Internal server error',
            'details': None
        }, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return response
