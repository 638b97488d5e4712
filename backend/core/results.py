"""
Uniform result dicts returned by service functions, and their HTTP mapping.

Services never raise for expected conditions; they return
``{"success": True, ...}`` or ``{"success": False, "error": ..., "code": ...}``.
"""
from rest_framework import status
from rest_framework.response import Response

GATEWAY_NOT_CONFIGURED = "GATEWAY_NOT_CONFIGURED"
CONTEXT_MISSING = "CONTEXT_MISSING"
VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
VERIFICATION_FAILED = "VERIFICATION_FAILED"
INVALID_STATE = "INVALID_STATE"
GATEWAY_ERROR = "GATEWAY_ERROR"

CODE_TO_STATUS = {
    CONTEXT_MISSING: status.HTTP_400_BAD_REQUEST,
    VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    VERIFICATION_FAILED: status.HTTP_402_PAYMENT_REQUIRED,
    NOT_FOUND: status.HTTP_404_NOT_FOUND,
    INVALID_STATE: status.HTTP_409_CONFLICT,
    GATEWAY_ERROR: status.HTTP_502_BAD_GATEWAY,
    GATEWAY_NOT_CONFIGURED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def ok(**data):
    return {"success": True, **data}


def fail(error, code=VALIDATION_ERROR, **data):
    return {"success": False, "error": error, "code": code, **data}


def to_response(result, success_status=status.HTTP_200_OK):
    """Render a service result as a DRF response, keeping the result dict as the body."""
    if result.get("success"):
        return Response(result, status=success_status)
    code = result.get("code", VALIDATION_ERROR)
    return Response(result, status=CODE_TO_STATUS.get(code, status.HTTP_400_BAD_REQUEST))
