import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware

from paygate.core.logging import latency_bucket_ms
from paygate.core.metrics import http_requests_total, normalize_path, payment_errors_total

PAYMENTS_PREFIX = "/api/payments"

logger = logging.getLogger("paygate")


def is_payment_error(path: str, status: int) -> bool:
    """Throttled or failed responses on the payments surface."""
    if not path.startswith(PAYMENTS_PREFIX):
        return False
    return status == 429 or status >= 500


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests per route and status, and flag payment failures."""

    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        path = normalize_path(request.url.path)
        status = response.status_code
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "path": path,
            "status": str(status),
        })

        if is_payment_error(path, status):
            payment_errors_total.inc(labels={"path": path, "status": str(status)})
            logger.warning(
                "payment.response_error",
                extra={
                    "request_id": getattr(request.state, "request_id", None) or response.headers.get("x-request-id"),
                    "path": path,
                    "status": status,
                    "latency_bucket": latency_bucket_ms(duration_ms),
                },
            )
        return response
