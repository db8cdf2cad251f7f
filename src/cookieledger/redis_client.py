"""Redis connection pool shared by the API process and the arq worker."""

import redis.asyncio as redis

_pool: redis.Redis | None = None


def connect(url: str, *, max_connections: int = 50) -> redis.Redis:
    """Build a text-mode Redis client; values are stored as UTF-8 strings."""
    return redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
    )


async def init_redis(url: str) -> None:
    """Initialize the process-wide Redis pool."""
    global _pool  # noqa: PLW0603
    _pool = connect(url)


async def close_redis() -> None:
    """Close the process-wide Redis pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the Redis client (FastAPI dependency)."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool
