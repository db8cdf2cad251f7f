"""Redemption ledger: converting a claimed token into unlock minutes.

Rules:
- A token can be redeemed once per window; windows start every day at a fixed
  UTC hour (02:00), not 24h after the previous redemption, so redeeming
  earlier each day never shifts the window
- The minute value comes from the account's per-type cookie values (default 30)
- The caller gets an answer within a fixed deadline; the transaction is not
  cancelled when the deadline wins, so a retry after a timeout re-reads the
  token and reports ``AlreadyRedeemed`` if the first attempt did commit
- Every committed redemption appends one log entry, best effort, off the
  caller's path
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone

import structlog
from pydantic import ValidationError

from cookieledger.ledger.errors import AlreadyRedeemed, LedgerTimeout, TokenNotFound
from cookieledger.ledger.schemas import (
    DEFAULT_MINUTES_PER_TOKEN,
    AccountProfile,
    AccountToken,
    Redemption,
)
from cookieledger.ledger.store import (
    LedgerStore,
    Transaction,
    account_collection,
    account_ref,
    account_token_ref,
)

logger = structlog.get_logger()

RESET_HOUR_UTC = 2
REDEEM_TIMEOUT_SECONDS = 10.0

_pending_log_writes: set[asyncio.Task[None]] = set()


def as_utc(dt: datetime) -> datetime:
    """Aware UTC copy of ``dt``; naive values are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def redemption_window_start(now: datetime, reset_hour: int = RESET_HOUR_UTC) -> datetime:
    """Start of the dedup window containing ``now``.

    The most recent ``reset_hour``:00 UTC at or before ``now``. Naive datetimes
    are taken to be UTC.
    """
    now = as_utc(now)
    todays_reset = datetime.combine(now.date(), time(hour=reset_hour), tzinfo=timezone.utc)
    if now >= todays_reset:
        return todays_reset
    return todays_reset - timedelta(days=1)


@dataclass(frozen=True)
class _Committed:
    minutes_value: int
    cookie_type: str
    redeemed_at: datetime


async def redeem(
    store: LedgerStore,
    token_id: str,
    account_id: str,
    *,
    now: datetime | None = None,
    timeout: float | None = REDEEM_TIMEOUT_SECONDS,
    reset_hour: int = RESET_HOUR_UTC,
    default_minutes: int = DEFAULT_MINUTES_PER_TOKEN,
) -> int:
    """Redeem ``token_id`` for ``account_id``; returns the minutes earned.

    Raises:
        TokenNotFound: the account does not hold this token.
        AlreadyRedeemed: the token was redeemed in the current window.
        LedgerTimeout: no answer within ``timeout`` seconds.
    """
    try:
        token_ref = account_token_ref(account_id, token_id)
    except ValueError:
        raise TokenNotFound(f"malformed token id {token_id!r}") from None
    profile_ref = account_ref(account_id)

    async def _redeem(tx: Transaction) -> _Committed:
        raw_token = await tx.get(token_ref)
        if raw_token is None:
            raise TokenNotFound(f"account {account_id} does not hold token {token_id}")
        try:
            token = AccountToken.from_document(raw_token)
        except ValidationError as exc:
            raise TokenNotFound(f"corrupt account token {token_id}") from exc

        raw_profile = await tx.get(profile_ref)
        profile = AccountProfile.from_document(raw_profile or {})
        minutes_value = profile.minutes_for(token.type.value, default_minutes)

        redeemed_at = as_utc(now) if now is not None else datetime.now(timezone.utc)
        window_start = redemption_window_start(redeemed_at, reset_hour)
        last_redeemed_at = as_utc(token.last_redeemed_at) if token.last_redeemed_at is not None else None
        if last_redeemed_at is not None and last_redeemed_at >= window_start:
            raise AlreadyRedeemed(f"token {token_id} already redeemed at {last_redeemed_at.isoformat()}")

        tx.update(token_ref, {
            "last_redeemed_at": redeemed_at.isoformat(),
            "last_redeemed_by": account_id,
        })
        return _Committed(minutes_value, token.type.value, redeemed_at)

    async def _redeem_and_log() -> _Committed:
        committed = await store.run_transaction(_redeem)
        logger.info(
            "redemption_committed",
            account_id=account_id,
            token_id=token_id,
            minutes_value=committed.minutes_value,
        )
        _schedule_log_write(store, token_id, account_id, committed)
        return committed

    attempt = asyncio.ensure_future(_redeem_and_log())
    try:
        committed = await asyncio.wait_for(asyncio.shield(attempt), timeout)
    except asyncio.TimeoutError:
        attempt.add_done_callback(_report_late_outcome)
        logger.warning("redemption_timeout", account_id=account_id, token_id=token_id, timeout=timeout)
        raise LedgerTimeout() from None
    return committed.minutes_value


def _report_late_outcome(task: asyncio.Future[_Committed]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("late_redemption_failed", error=type(exc).__name__)
    else:
        logger.info("late_redemption_committed", minutes_value=task.result().minutes_value)


def _schedule_log_write(store: LedgerStore, token_id: str, account_id: str, committed: _Committed) -> None:
    entry = Redemption(
        token_id=token_id,
        account_id=account_id,
        minutes_value=committed.minutes_value,
        cookie_type=committed.cookie_type,
        redeemed_at=committed.redeemed_at,
    )
    task = asyncio.ensure_future(_append_log(store, account_id, entry))
    _pending_log_writes.add(task)
    task.add_done_callback(_pending_log_writes.discard)


async def _append_log(store: LedgerStore, account_id: str, entry: Redemption) -> None:
    try:
        await store.add(account_collection(account_id, "redemptions"), entry.to_document())
    except Exception as exc:  # noqa: BLE001
        logger.warning("redemption_log_failed", account_id=account_id, token_id=entry.token_id, error=str(exc))


async def wait_for_pending_log_writes() -> None:
    """Block until every scheduled redemption log write has finished."""
    while _pending_log_writes:
        await asyncio.gather(*list(_pending_log_writes), return_exceptions=True)


async def list_redemptions(store: LedgerStore, account_id: str, limit: int = 50) -> list[Redemption]:
    """Most recent redemption log entries, newest first."""
    docs = await store.list_documents(account_collection(account_id, "redemptions"))
    entries = [Redemption.from_document(data) for _, data in docs]
    entries.sort(key=lambda e: e.redeemed_at, reverse=True)
    return entries[:limit]
