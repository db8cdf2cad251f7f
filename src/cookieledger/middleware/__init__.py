"""Middleware registration."""

from fastapi import FastAPI

from cookieledger.config import Settings
from cookieledger.middleware.error_handler import setup_error_handlers
from cookieledger.middleware.logging import setup_logging
from cookieledger.middleware.rate_limit import RateLimitMiddleware
from cookieledger.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    Starlette executes middleware in reverse-add order (last added = outermost).
    Request ids are outermost so 429 responses and their log lines carry one.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
