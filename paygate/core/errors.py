"""Error taxonomy and FastAPI handlers.

Every error leaves the service as ``{"error": <message>, "code": <code>,
"request_id": <rid>}`` with the request id echoed in ``x-request-id``.
"""

import logging
from typing import Dict, Optional
from uuid import uuid4

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from paygate.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(AppError, ValueError):
    """Malformed or out-of-range input. Never retried automatically."""
    code = "validation_error"
    status_code = 400

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str = "Too many requests. Please try again later.", *, retry_after: Optional[int] = None, limit: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.limit = limit

    def headers(self) -> Dict[str, str]:
        headers = {"X-RateLimit-Remaining": "0"}
        if self.limit is not None:
            headers["X-RateLimit-Limit"] = str(self.limit)
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
            headers["X-RateLimit-Reset"] = str(self.retry_after)
        return headers


class PaymentProviderError(AppError):
    """Upstream payment provider failure; status_code carries the mapped HTTP status."""
    code = "payment_provider_error"
    status_code = 502


class DatabaseError(AppError):
    """Store unavailable or write failed. On the webhook path this must surface as 5xx."""
    code = "database_error"
    status_code = 500


class WebhookError(AppError):
    """Missing/invalid signature or an unusable event payload."""
    code = "webhook_error"
    status_code = 400


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {"error": message, "code": code, "request_id": request_id}


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("paygate")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers())
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, str(message), rid)
    logger = logging.getLogger("paygate")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_error_handler(request: Request, exc: Exception):
    """Body-shape errors from FastAPI/pydantic share the 400 validation contract."""
    rid = _extract_request_id(request)
    errors = getattr(exc, "errors", lambda: [])()
    message = "Invalid request body"
    if errors:
        first = errors[0]
        loc = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid field {loc}: {first.get('msg', 'invalid')}" if loc else first.get("msg", message)
    logging.getLogger("paygate").warning(
        "request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400}
    )
    response = JSONResponse(status_code=400, content=_error_payload("validation_error", message, rid))
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("paygate")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "An unexpected error occurred", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
