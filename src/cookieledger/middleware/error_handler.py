"""Global error handlers: consistent JSON error responses."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cookieledger.ledger.errors import CooldownActive, LedgerError

logger = structlog.get_logger()


def ledger_error_content(exc: LedgerError) -> dict[str, object]:
    """Body for a ledger failure: the fixed user message, never the raw cause."""
    content: dict[str, object] = {"detail": exc.user_message, "code": exc.code}
    if isinstance(exc, CooldownActive):
        content["available_at"] = exc.available_at.isoformat()
    if exc.transient:
        content["retryable"] = True
    return content


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
        """Map each ledger error kind to its status code and fixed message."""
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "ledger_error",
            path=request.url.path,
            code=exc.code,
            detail=exc.detail,
            cause=repr(exc.__cause__) if exc.__cause__ else None,
        )
        return JSONResponse(status_code=exc.status_code, content=ledger_error_content(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with consistent JSON format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle validation errors with consistent JSON format."""
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; always return JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Something went wrong. Please try again.", "code": "unknown"},
        )
