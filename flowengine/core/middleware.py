"""HTTP middleware: request ids, engine error translation and request timing."""

import logging
import re
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..models.core import utcnow
from .exceptions import WorkflowEngineError, create_error_response, http_status_for_error
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_EXECUTION_PATH = re.compile(r"/executions/([^/]+)")
# Clients poll these every few hundred milliseconds
_POLLING_PATH = re.compile(r"/executions/[^/]+/status$")


def _elapsed(start: float) -> float:
    return time.monotonic() - start


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and turns engine errors escaping a route into JSON.

    The error body has the same ``{"detail": {...}}`` shape the routes use
    for the errors they translate themselves.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        path = request.url.path
        start = time.monotonic()

        context = {"request_id": request_id, "method": request.method, "path": path}
        match = _EXECUTION_PATH.search(path)
        if match and match.group(1) not in ("stats", "latest"):
            context["execution_id"] = match.group(1)
        set_logging_context(**context)
        level = logging.DEBUG if _POLLING_PATH.search(path) else logging.INFO

        try:
            response = await call_next(request)
            logger.log(level, f"{request.method} {path} -> {response.status_code} ({_elapsed(start):.3f}s)")
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        except WorkflowEngineError as e:
            logger.warning(f"{request.method} {path} failed with {e.error_code} ({_elapsed(start):.3f}s)",
                           extra={"extra_fields": {"error_details": e.to_dict()}})
            return JSONResponse(
                status_code=http_status_for_error(e),
                content={"detail": create_error_response(e)},
                headers={REQUEST_ID_HEADER: request_id}
            )

        except Exception as e:
            logger.error(f"{request.method} {path} raised {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": {
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {"error_type": type(e).__name__, "timestamp": utcnow().isoformat()},
                    "context": {"request_id": request_id}
                }},
                headers={REQUEST_ID_HEADER: request_id}
            )

        finally:
            clear_logging_context()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Debug-level request and response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.monotonic()
        logger.debug(f"Request {request.method} {request.url.path} query={dict(request.query_params)}")
        response = await call_next(request)
        logger.debug(f"Response {response.status_code} after {_elapsed(start):.3f}s")
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Warns about slow requests and adds an ``X-Response-Time`` header."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        duration = _elapsed(start)

        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {duration:.3f}s "
                f"(threshold {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
