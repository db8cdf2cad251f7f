"""Request ID middleware: generates or propagates X-Request-Id."""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

_MAX_REQUEST_ID_LENGTH = 128


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Ensure every request has a unique X-Request-Id header."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Bind the request id (and device id, if sent) to the structlog context and echo it back."""
        request_id = request.headers.get("X-Request-Id", "")[:_MAX_REQUEST_ID_LENGTH] or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        device_id = request.headers.get("X-Device-Id")
        if device_id:
            structlog.contextvars.bind_contextvars(device_id=device_id[:64])
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
