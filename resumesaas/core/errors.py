"""Error normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from resumesaas.core.logging import get_request_id

GENERIC_RETRY_MESSAGE = "Temporarily unavailable. Please try again."


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class PlanNotFoundError(NotFoundError):
    """Unknown plan id requested from the catalog."""


class PaymentRequiredError(AppError):
    """Access denied by plan entitlement, balance or subscription status."""
    code = "payment_required"
    status_code = 402


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class ConcurrencyConflictError(AppError):
    """Debit lost the optimistic-concurrency race more times than allowed."""
    code = "concurrency_conflict"
    status_code = 503


class StorageUnavailableError(AppError):
    """The ledger store could not be reached. Never treated as 'allow'."""
    code = "storage_unavailable"
    status_code = 503


class InvalidWebhookSignatureError(AppError):
    code = "invalid_webhook_signature"
    status_code = 400


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class FeatureExecutionError(AppError):
    """Downstream generation failed after the debit; credits were refunded."""
    code = "feature_failed"
    status_code = 502


class CatalogConfigurationError(RuntimeError):
    """Plan ids referenced by the ledger are missing from the catalog."""


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    payload = {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }
    if details:
        payload["error"]["details"] = details
        for key, value in details.items():
            payload.setdefault(key, value)
    return payload


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger = logging.getLogger("resumesaas")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    # Transient failures are reported generically; the cause stays in the logs.
    message = GENERIC_RETRY_MESSAGE if exc.status_code in (500, 503) else exc.message
    payload = _error_payload(exc.code, message, rid, exc.details)
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if exc.status_code == 503:
        response.headers["retry-after"] = "1"
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("resumesaas")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("resumesaas")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
