"""arq worker for background lock refreshes.

Runs as a separate process. Each ``refresh_lock_state`` job recomputes one
device's lock state from the shared key-value store and re-applies the
restriction, then schedules the next wake while the device stays unlocked.
A cron sweep refreshes every known device once per minimum interval so a lost
wake never leaves a device unlocked for longer than that.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from arq import cron
from arq.connections import RedisSettings

from cookieledger.allowance import scheduling
from cookieledger.allowance.keyvalue import OBSERVED_STATE_KEY, RedisKeyValueStore
from cookieledger.allowance.restriction import KeyValueRestrictionGateway, RestrictionAdapter, SelectionStore
from cookieledger.allowance.sessions import UsageSessionRecorder
from cookieledger.config import get_settings
from cookieledger.database import close_db, get_session_factory, init_db
from cookieledger.ledger.redemption import wait_for_pending_log_writes
from cookieledger.ledger.sql_store import SqlLedgerStore
from cookieledger.redis_client import connect

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize the ledger store and key-value client on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)

    ctx["kv_redis"] = connect(settings.redis_url, max_connections=20)
    ctx["store"] = SqlLedgerStore(get_session_factory(), max_attempts=settings.store_max_attempts)
    # arq puts its own pool in ctx["redis"]; wakes are enqueued through it
    ctx["scheduler"] = scheduling.ArqWakeScheduler(ctx["redis"])
    ctx["minimum_interval"] = timedelta(seconds=settings.min_schedule_interval_seconds)
    logger.info("Lock worker started (namespace=%s)", settings.kv_namespace)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    await wait_for_pending_log_writes()
    kv_redis = ctx.get("kv_redis")
    if kv_redis:
        await kv_redis.aclose()
    await close_db()
    logger.info("Lock worker shut down")


async def refresh_lock_state(ctx: dict, namespace: str) -> bool:  # type: ignore[type-arg]
    """Recompute and enforce one device's lock state. Returns ``unlock_active``."""
    kv = RedisKeyValueStore(ctx["kv_redis"], namespace)
    adapter = RestrictionAdapter(KeyValueRestrictionGateway(kv), SelectionStore(kv))
    snapshot = await scheduling.refresh_lock_state(
        kv,
        adapter,
        ctx["scheduler"],
        listeners=[adapter, UsageSessionRecorder(kv, ctx["store"])],
        minimum_interval=ctx["minimum_interval"],
    )
    logger.info(
        "Refreshed lock state (namespace=%s, unlocked=%s, remaining=%ds)",
        namespace,
        snapshot.unlock_active,
        snapshot.remaining_seconds,
    )
    return snapshot.unlock_active


async def refresh_all_devices(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic sweep over every device that has ever been observed."""
    settings = get_settings()
    suffix = f":{OBSERVED_STATE_KEY}"
    refreshed = 0
    async for key in ctx["kv_redis"].scan_iter(match=f"{settings.kv_namespace}:*{suffix}"):
        key_str = key if isinstance(key, str) else key.decode()
        try:
            await refresh_lock_state(ctx, key_str[: -len(suffix)])
        except Exception:
            logger.exception("Lock refresh failed for %s", key_str)
            continue
        refreshed += 1
    if refreshed:
        logger.info("Swept %d devices", refreshed)
    return refreshed


class WorkerSettings:
    """arq worker settings for the lock refresher."""

    functions = [refresh_lock_state]
    cron_jobs = [
        cron(refresh_all_devices, minute={0, 15, 30, 45}, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 20
    job_timeout = 60
