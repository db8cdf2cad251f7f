"""Wake scheduling for the background lock refresh.

The external scheduler cannot fire sooner than ``minimum_interval`` from now.
When the deadline is closer than that, the interval is stretched to the
minimum and a warning offset is computed so the warning callback still lands
on the true deadline::

    now            end_at                 interval_end
     |--------------|-----------------------|
                     <--- warning_offset --->
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Protocol

import structlog
from arq.connections import ArqRedis

from cookieledger.ledger.redemption import as_utc

if TYPE_CHECKING:
    from cookieledger.allowance.keyvalue import KeyValueStore
    from cookieledger.allowance.machine import AllowanceSnapshot, TransitionListener
    from cookieledger.allowance.restriction import RestrictionAdapter

logger = structlog.get_logger()

MINIMUM_INTERVAL = timedelta(minutes=15)
REFRESH_JOB_NAME = "refresh_lock_state"


@dataclass(frozen=True)
class WakePlan:
    interval_start: datetime
    interval_end: datetime
    warning_offset: timedelta

    @property
    def wake_at(self) -> datetime:
        """Instant the enforcement callback fires (the true deadline)."""
        return self.interval_end - self.warning_offset


def plan_wake(
    end_at: datetime | None,
    now: datetime,
    minimum_interval: timedelta = MINIMUM_INTERVAL,
) -> WakePlan | None:
    """Plan the next enforcement wake, or ``None`` if nothing is pending."""
    if end_at is None:
        return None
    now = as_utc(now)
    end_at = as_utc(end_at)
    if end_at <= now:
        return None
    if end_at - now >= minimum_interval:
        return WakePlan(interval_start=now, interval_end=end_at, warning_offset=timedelta(0))

    interval_end = now + minimum_interval
    warning_seconds = max(1, math.ceil((interval_end - end_at).total_seconds()))
    return WakePlan(
        interval_start=now,
        interval_end=interval_end,
        warning_offset=timedelta(seconds=warning_seconds),
    )


class WakeScheduler(Protocol):
    async def schedule(self, namespace: str, plan: WakePlan) -> None: ...


class ArqWakeScheduler:
    """Defers a ``refresh_lock_state`` arq job to the planned wake instant.

    Job ids are derived from the device namespace and wake second, so planning
    the same deadline twice enqueues one job.
    """

    def __init__(self, pool: ArqRedis) -> None:
        self._pool = pool

    @staticmethod
    def job_id(namespace: str, plan: WakePlan) -> str:
        return f"{REFRESH_JOB_NAME}:{namespace}:{int(plan.wake_at.timestamp())}"

    async def schedule(self, namespace: str, plan: WakePlan) -> None:
        job = await self._pool.enqueue_job(
            REFRESH_JOB_NAME,
            namespace,
            _job_id=self.job_id(namespace, plan),
            _defer_until=plan.wake_at,
        )
        logger.info(
            "lock_refresh_scheduled",
            namespace=namespace,
            wake_at=plan.wake_at.isoformat(),
            duplicate=job is None,
        )


async def refresh_lock_state(
    kv: KeyValueStore,
    adapter: RestrictionAdapter,
    scheduler: WakeScheduler | None,
    *,
    now: datetime | None = None,
    listeners: Iterable[TransitionListener] = (),
    minimum_interval: timedelta = MINIMUM_INTERVAL,
) -> AllowanceSnapshot:
    """Recompute lock state from persisted values and re-apply the restriction.

    This is what every background wake runs. It reads nothing from memory, so a
    missed or duplicated wake only delays enforcement until the next one.
    """
    from cookieledger.allowance.machine import AllowanceMachine

    if now is None:
        now = datetime.now(timezone.utc)
    machine = AllowanceMachine(
        kv,
        listeners=list(listeners),
        scheduler=scheduler,
        minimum_interval=minimum_interval,
    )
    snapshot = await machine.recompute(now)
    await adapter.sync(snapshot.unlock_active)
    return snapshot
