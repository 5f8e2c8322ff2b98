"""
Challenge Deployer - Request Context Middleware
Request IDs bound into the structlog context
"""

import uuid
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "request-id"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assigns every request an ID.

    The caller's ``request-id`` header is reused when present; otherwise a
    UUID is generated. The ID is bound to the logger context and echoed back
    as ``X-Request-ID``.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        return response
