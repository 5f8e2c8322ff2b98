"""
Challenge Deployer - Error Handler Middleware
Consistent error response format
"""

import traceback
from typing import Any, Callable, Dict

import structlog
from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.core.config import Settings
from app.core.exceptions import DeploymentError, ProvisioningError, RouteConflictError

logger = structlog.get_logger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred"


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Global error handler middleware.

    Domain errors are rendered with their error code and status; anything
    else becomes a generic 500. Stack traces are only included outside
    production.
    """

    def __init__(self, app: ASGIApp, settings: Settings):
        super().__init__(app)
        self._include_trace = not settings.is_production

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        """
        Process request and handle any exceptions.

        Args:
            request: Incoming request
            call_next: Next middleware/handler

        Returns:
            Response or error response
        """
        try:
            return await call_next(request)

        except Exception as exc:
            request_id = getattr(request.state, "request_id", None)
            error_code, status_code, detail = self._classify_error(exc)

            log = logger.warning if status_code < 500 else logger.error
            log(
                "Request failed" if isinstance(exc, DeploymentError) else "Unhandled exception",
                error=str(exc),
                error_type=type(exc).__name__,
                error_code=error_code,
                path=request.url.path,
                method=request.method,
                request_id=request_id,
                traceback=traceback.format_exc() if status_code >= 500 else None,
            )

            content: Dict[str, Any] = {
                "error": error_code,
                "detail": detail,
                "request_id": request_id,
            }
            if isinstance(exc, ProvisioningError):
                content["cause"] = exc.cause_code
            if isinstance(exc, RouteConflictError):
                content["host"] = exc.host
            if self._include_trace and status_code >= 500:
                content["trace"] = traceback.format_exc()

            return JSONResponse(status_code=status_code, content=content)

    def _classify_error(self, exc: Exception) -> tuple[str, int, str]:
        """
        Classify exception and return error details.

        Args:
            exc: The exception to classify

        Returns:
            Tuple of (error_code, status_code, detail)
        """
        if isinstance(exc, DeploymentError):
            return exc.code, exc.status_code, exc.message

        # Default: internal server error
        return "INTERNAL_ERROR", 500, GENERIC_ERROR_MESSAGE


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Render request body/path validation failures as 400s."""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    detail = "; ".join(messages) or "Invalid request"

    logger.info("Request validation failed", path=request.url.path, detail=detail)
    return JSONResponse(
        status_code=400,
        content={
            "error": "VALIDATION_ERROR",
            "detail": detail,
            "request_id": getattr(request.state, "request_id", None),
        },
    )
