"""HTTP middleware: request correlation and logging context."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from subscription_core.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)

USER_HEADER = "X-User-Id"
REQUEST_ID_HEADER = "X-Request-ID"

# Polled by load balancers; logged at debug only
QUIET_PATHS = frozenset({"/health"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Correlates and logs every request.

    The request id is taken from the X-Request-ID header when the caller
    (gateway or billing provider) sends one, and generated otherwise. It is
    bound to the logging context and echoed back in the response.

    Client errors log at warning, server errors at error.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        bind_context(request_id=request_id)

        path = request.url.path
        log = logger.debug if path in QUIET_PATHS else logger.info
        details = {}
        if self.include_request_details:
            details = {
                "client_host": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
            }
        log("request_started", method=request.method, path=path, **details)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                duration_ms=_elapsed_ms(started),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise
        else:
            if response.status_code >= 500:
                log = logger.error
            elif response.status_code >= 400:
                log = logger.warning
            log(
                "request_completed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=_elapsed_ms(started),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_context()


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class ContextMiddleware(BaseHTTPMiddleware):
    """Middleware binding business context to the logging context.

    - user_id from the X-User-Id header (set by the upstream auth layer)
    - tier_id from /subscriptions/{tier_id} paths
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        user_id = request.headers.get(USER_HEADER)
        if user_id:
            bind_context(user_id=user_id)

        parts = [part for part in request.url.path.split("/") if part]
        if len(parts) >= 2 and parts[0] == "subscriptions" and parts[1] != "me":
            bind_context(tier_id=parts[1])

        return await call_next(request)
