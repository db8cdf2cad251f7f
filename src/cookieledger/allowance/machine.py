"""Allowance state machine.

The only persisted value is the unlock deadline ``end_at``. Whether the device
is unlocked, and for how long, is recomputed from ``(end_at, now)`` on every
observation and never counted down in memory, so the answer stays right after
the process was suspended, killed or never running at all.

Slots in the key-value store:

- ``allowanceEndDate.<accountId>``: deadline of a signed-in account
- ``allowanceEndDate.pending``: minutes earned before anyone signed in
- ``lastAccountId``: which account slot is active
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import structlog

from cookieledger.allowance.keyvalue import (
    LAST_ACCOUNT_KEY,
    OBSERVED_STATE_KEY,
    PENDING_END_DATE_KEY,
    SESSION_TOTAL_KEY,
    KeyValueStore,
    end_date_key,
)
from cookieledger.allowance.scheduling import MINIMUM_INTERVAL, WakeScheduler, plan_wake
from cookieledger.ledger.redemption import as_utc

logger = structlog.get_logger()

UNLOCKED = "unlocked"
LOCKED = "locked"


@dataclass(frozen=True)
class AllowanceSnapshot:
    end_at: datetime | None
    remaining_seconds: int
    unlock_active: bool
    observed_at: datetime
    session_total_seconds: int = 0


@dataclass(frozen=True)
class AllowanceState:
    end_at: datetime | None = None

    def recompute(self, now: datetime) -> AllowanceSnapshot:
        """Derive remaining time and lock state; pure."""
        now = as_utc(now)
        remaining = 0
        if self.end_at is not None:
            remaining = max(0, math.floor((as_utc(self.end_at) - now).total_seconds()))
        return AllowanceSnapshot(
            end_at=self.end_at,
            remaining_seconds=remaining,
            unlock_active=remaining > 0,
            observed_at=now,
        )

    def extended(self, minutes: int, now: datetime) -> AllowanceState:
        """Stack ``minutes`` onto a running deadline, or start a new one."""
        now = as_utc(now)
        delta = timedelta(minutes=minutes)
        if self.end_at is not None and as_utc(self.end_at) > now:
            return AllowanceState(as_utc(self.end_at) + delta)
        return AllowanceState(now + delta)


class TransitionListener(Protocol):
    async def on_transition(self, account_id: str | None, snapshot: AllowanceSnapshot) -> None: ...


def _parse_datetime(raw: str | None, key: str) -> datetime | None:
    if raw is None:
        return None
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        logger.warning("allowance_value_corrupt", key=key, value=raw)
        return None


def _parse_seconds(raw: str | None, key: str) -> int:
    if raw is None:
        return 0
    try:
        return int(raw)
    except ValueError:
        logger.warning("allowance_value_corrupt", key=key, value=raw)
        return 0


class AllowanceMachine:
    """Reads and writes allowance state for one device.

    Every method reloads persisted state before acting and persists before
    returning; instances hold no state worth sharing and are cheap to build
    per request or per wake.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        listeners: Iterable[TransitionListener] = (),
        scheduler: WakeScheduler | None = None,
        minimum_interval: timedelta = MINIMUM_INTERVAL,
    ) -> None:
        self.kv = kv
        self.listeners = list(listeners)
        self.scheduler = scheduler
        self.minimum_interval = minimum_interval

    async def current_account(self) -> str | None:
        return await self.kv.get(LAST_ACCOUNT_KEY)

    async def _active_slot(self) -> str:
        account_id = await self.current_account()
        return end_date_key(account_id) if account_id else PENDING_END_DATE_KEY

    async def load_state(self) -> AllowanceState:
        slot = await self._active_slot()
        return AllowanceState(_parse_datetime(await self.kv.get(slot), slot))

    async def restore(self, now: datetime | None = None) -> AllowanceSnapshot:
        """First observation in a fresh process: always notify listeners."""
        return await self.recompute(now, force_notify=True)

    async def add_minutes(
        self,
        minutes: int,
        now: datetime | None = None,
        *,
        account_id: str | None = None,
    ) -> AllowanceSnapshot:
        """Credit minutes to the active slot, or to ``account_id``'s slot when given."""
        if minutes <= 0:
            msg = f"minutes must be positive, got {minutes}"
            raise ValueError(msg)
        if now is None:
            now = datetime.now(timezone.utc)
        slot = end_date_key(account_id) if account_id else await self._active_slot()
        state = AllowanceState(_parse_datetime(await self.kv.get(slot), slot))
        extended = state.extended(minutes, now)
        await self.kv.set(slot, extended.end_at.isoformat())
        logger.info("allowance_extended", slot=slot, minutes=minutes, end_at=extended.end_at.isoformat())
        return await self.recompute(now)

    async def set_account(self, account_id: str | None, now: datetime | None = None) -> AllowanceSnapshot:
        """Switch the active slot on sign-in or sign-out.

        Sign-out wipes all allowance state so nothing leaks into the next
        account. Sign-in to a new account loads that account's saved deadline,
        or adopts the pending one; the pending slot is cleared either way.
        """
        current = await self.current_account()
        if account_id is None:
            keys = [PENDING_END_DATE_KEY, LAST_ACCOUNT_KEY, SESSION_TOTAL_KEY]
            if current:
                keys.append(end_date_key(current))
            await self.kv.delete(*keys)
            logger.info("allowance_signed_out", previous_account=current)
        elif account_id != current:
            slot = end_date_key(account_id)
            pending = await self.kv.get(PENDING_END_DATE_KEY)
            if await self.kv.get(slot) is None and pending is not None:
                await self.kv.set(slot, pending)
            await self.kv.delete(PENDING_END_DATE_KEY, SESSION_TOTAL_KEY)
            await self.kv.set(LAST_ACCOUNT_KEY, account_id)
            logger.info("allowance_account_switched", account_id=account_id, adopted_pending=pending is not None)
        return await self.recompute(now)

    async def recompute(self, now: datetime | None = None, *, force_notify: bool = False) -> AllowanceSnapshot:
        """Recompute lock state from the persisted deadline.

        Listeners hear about a change of lock state once, whichever process
        observes it first. While unlocked, the next enforcement wake is
        (re)scheduled.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        state = await self.load_state()
        snapshot = state.recompute(now)

        raw_total = await self.kv.get(SESSION_TOTAL_KEY)
        stored_total = _parse_seconds(raw_total, SESSION_TOTAL_KEY)
        if snapshot.unlock_active:
            total = max(stored_total, snapshot.remaining_seconds)
            if str(total) != raw_total:
                await self.kv.set(SESSION_TOTAL_KEY, str(total))
        else:
            total = 0
            if raw_total is not None:
                await self.kv.delete(SESSION_TOTAL_KEY)
        snapshot = AllowanceSnapshot(
            end_at=snapshot.end_at,
            remaining_seconds=snapshot.remaining_seconds,
            unlock_active=snapshot.unlock_active,
            observed_at=snapshot.observed_at,
            session_total_seconds=total,
        )

        observed = UNLOCKED if snapshot.unlock_active else LOCKED
        previous = await self.kv.get(OBSERVED_STATE_KEY)
        if previous != observed or force_notify:
            await self.kv.set(OBSERVED_STATE_KEY, observed)
            logger.info("allowance_transition", previous=previous, current=observed)
            account_id = await self.current_account()
            for listener in self.listeners:
                await listener.on_transition(account_id, snapshot)

        if self.scheduler is not None and snapshot.unlock_active:
            plan = plan_wake(snapshot.end_at, now, self.minimum_interval)
            if plan is not None:
                await self.scheduler.schedule(self.kv.namespace, plan)
        return snapshot
