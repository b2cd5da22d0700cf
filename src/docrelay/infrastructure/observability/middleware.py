"""Request/response logging middleware."""

import logging
import time
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from docrelay.domain.value_objects import is_well_formed_token
from docrelay.infrastructure.observability.logging import (
    get_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


# Hey future me, access tokens live in the URL path (/api/workflow/<token>)! They are
# bearer credentials, so the logged path gets the token segment masked. Don't log
# request bodies here either - form data can contain patient information.
def _loggable_path(path: str) -> str:
    parts = path.split("/")
    for i, part in enumerate(parts[:-1]):
        if part == "workflow" and is_well_formed_token(parts[i + 1]):
            parts[i + 1] = parts[i + 1][:6] + "..."
            break
    return "/".join(parts)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and stamps the correlation id on the response."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        set_correlation_id(request.headers.get(CORRELATION_HEADER))

        method = request.method
        path = _loggable_path(request.url.path)
        client_ip = request.client.host if request.client else "unknown"

        logger.info(
            "→ %s %s",
            method,
            path,
            extra={"method": method, "path": path, "client_ip": client_ip},
        )

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(
                "Request failed: %s %s",
                method,
                path,
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": int((time.perf_counter() - start_time) * 1000),
                    "error_type": type(e).__name__,
                },
            )
            raise

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        status_mark = "✓" if response.status_code < 400 else "✗"
        logger.info(
            "%s %s %s → %d (%dms)",
            status_mark,
            method,
            path,
            response.status_code,
            duration_ms,
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        response.headers[CORRELATION_HEADER] = get_correlation_id()
        return response
