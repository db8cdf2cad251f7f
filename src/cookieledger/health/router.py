"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Request
from sqlalchemy import text

from cookieledger.config import get_settings
from cookieledger.database import get_session_factory
from cookieledger.redis_client import get_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: returns 200 if the process is alive."""
    return {"status": "healthy"}


async def _check_database() -> str:
    try:
        async with get_session_factory()() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
    except Exception as exc:  # noqa: BLE001
        return f"error: {exc}"
    return "ok"


async def _check_redis() -> str:
    try:
        await get_redis().ping()
    except Exception as exc:  # noqa: BLE001
        return f"error: {exc}"
    return "ok"


@router.get("/ready")
async def readiness(request: Request) -> dict[str, object]:
    """Readiness probe: ledger database and the shared key-value store."""
    checks: dict[str, object] = {
        "database": await _check_database(),
        "redis": await _check_redis(),
        "wake_scheduler": "ok" if getattr(request.app.state, "wake_scheduler", None) else "disabled",
    }
    all_ok = checks["database"] == "ok" and checks["redis"] == "ok"
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    """Return API version and environment."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
