"""
Exception Handler Module
Off-ramp exception hierarchy and the HTTP mapping for it
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from models import OfframpErrorCode

logger = logging.getLogger(__name__)

_LOCATION_PREFIXES = ("body", "query", "path", "header")


class OfframpError(Exception):
    """Base error: every failure carries a stable code and a human message"""

    code = OfframpErrorCode.INTERNAL_ERROR
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            },
        }


class ValidationError(OfframpError):
    """Bad input; never retried"""
    code = OfframpErrorCode.VALIDATION_ERROR
    http_status = 400


class UpstreamUnavailable(OfframpError):
    """Pricing, bank, wallet or settlement provider is down or timed out"""
    code = OfframpErrorCode.UPSTREAM_UNAVAILABLE
    http_status = 503


class BelowMinimumValue(OfframpError):
    code = OfframpErrorCode.BELOW_MINIMUM_VALUE
    http_status = 400


class InvalidTransition(OfframpError):
    code = OfframpErrorCode.INVALID_TRANSITION
    http_status = 409


class InvalidOrderStatus(OfframpError):
    code = OfframpErrorCode.INVALID_ORDER_STATUS
    http_status = 400


class OrderNotFound(OfframpError):
    code = OfframpErrorCode.ORDER_NOT_FOUND
    http_status = 404


class RetryNotAllowed(OfframpError):
    code = OfframpErrorCode.RETRY_NOT_ALLOWED
    http_status = 400


class RetryExhausted(RetryNotAllowed):
    """Retry budget used up; no further automatic action"""
    code = OfframpErrorCode.RETRY_EXHAUSTED


class BankVerificationFailed(OfframpError):
    code = OfframpErrorCode.BANK_VERIFICATION_FAILED
    http_status = 400


class WebhookDeliveryFailed(OfframpError):
    """Recorded on the order only; never raised to the transitioning caller"""
    code = OfframpErrorCode.WEBHOOK_DELIVERY_FAILED
    http_status = 502


class DuplicateOrderReference(OfframpError):
    code = OfframpErrorCode.DUPLICATE_ORDER_REFERENCE
    http_status = 409


class InvalidWebhookSignature(OfframpError):
    code = OfframpErrorCode.INVALID_WEBHOOK_SIGNATURE
    http_status = 401


class OptimisticLockConflict(OfframpError):
    """Version kept moving under a read-modify-write"""
    code = OfframpErrorCode.CONCURRENT_MODIFICATION
    http_status = 409


async def offramp_error_handler(request: Request, exc: OfframpError) -> JSONResponse:
    """FastAPI exception handler: maps OfframpError onto its HTTP status"""
    if exc.http_status >= 500:
        logger.error(f"❌ {exc.code.value}: {request.method} {request.url.path} - {exc.message}")
    else:
        logger.warning(f"⚠️ {exc.code.value}: {request.method} {request.url.path} - {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Framework-level parameter errors rendered in the same envelope as ValidationError"""
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part not in _LOCATION_PREFIXES),
            "message": error.get("msg"),
        }
        for error in exc.errors()
    ]
    error = ValidationError("Invalid request parameters", {"errors": errors})
    logger.warning(f"⚠️ {error.code.value}: {request.method} {request.url.path} - {errors}")
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


def internal_error_response(request: Request, exc: Exception) -> JSONResponse:
    """Anything that escaped the OfframpError hierarchy; details stay in the log"""
    logger.error(f"❌ INTERNAL_ERROR: {request.method} {request.url.path} - {type(exc).__name__}: {exc}", exc_info=exc)
    error = OfframpError("Internal server error")
    return JSONResponse(status_code=error.http_status, content=error.to_dict())
