"""
Custom DRF exception handler for consistent API error responses.

Every error response has the shape:
{
    "success": false,
    "error": "Human-readable error message",
    // optional field-level errors for validation
    "errors": { "field_name": ["..."] }
}

Hotspot domain errors are mapped to HTTP statuses here so views stay thin.
"""

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from .exceptions import (
    HotspotError,
    InvalidTransition,
    DeviceInUse,
    VoucherNotFound,
    DeviceNotFound,
    CustomerNotFound,
    PaymentNotFound,
    PaymentNotCompleted,
    UnknownPackage,
    RouterError,
)

logger = logging.getLogger(__name__)

DOMAIN_STATUS = [
    ((VoucherNotFound, DeviceNotFound, CustomerNotFound, PaymentNotFound), status.HTTP_404_NOT_FOUND),
    ((InvalidTransition, DeviceInUse), status.HTTP_409_CONFLICT),
    ((PaymentNotCompleted,), status.HTTP_402_PAYMENT_REQUIRED),
    ((UnknownPackage,), status.HTTP_400_BAD_REQUEST),
    ((RouterError,), status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _domain_response(exc):
    if isinstance(exc, DjangoValidationError):
        messages = exc.messages
        return Response(
            {"success": False, "error": "; ".join(messages), "errors": messages},
            status=status.HTTP_400_BAD_REQUEST,
        )
    if not isinstance(exc, HotspotError):
        return None
    for classes, code in DOMAIN_STATUS:
        if isinstance(exc, classes):
            break
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    if code >= 500:
        logger.error(f"Unhandled hotspot error: {exc}")
    payload = {"success": False, "error": str(exc)}
    if isinstance(exc, InvalidTransition):
        payload["current_status"] = exc.current_status
    return Response(payload, status=code)


def custom_exception_handler(exc, context):
    """
    Wrap the default DRF exception handler to produce consistent
    { success, error, errors? } responses.
    """
    domain = _domain_response(exc)
    if domain is not None:
        return domain

    response = drf_exception_handler(exc, context)

    if response is None:
        # DRF didn't handle it (e.g. unhandled server error)
        return response

    data = response.data

    # DRF returns `{"detail": "..."}` for auth/permission/throttle errors
    if isinstance(data, dict) and "detail" in data:
        response.data = {
            "success": False,
            "error": str(data["detail"]),
        }

    # DRF validation: `{"field": ["msg", ...], ...}` (no "detail" key)
    elif isinstance(data, dict) and "success" not in data:
        error_messages = []
        for field, msgs in data.items():
            if isinstance(msgs, list):
                for msg in msgs:
                    error_messages.append(f"{field}: {msg}")
            else:
                error_messages.append(f"{field}: {msgs}")

        response.data = {
            "success": False,
            "error": (
                "; ".join(error_messages) if error_messages else "Validation error"
            ),
            "errors": data,
        }

    elif isinstance(data, list):
        response.data = {
            "success": False,
            "error": "; ".join(str(e) for e in data),
        }

    return response
