"""Usage session recording.

A session opens when the device unlocks and closes when it locks again; each
closed session is appended to ``accounts/{id}/sessions``. Recording is best
effort and never interferes with the lock state.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from cookieledger.allowance.keyvalue import SESSION_START_KEY, KeyValueStore
from cookieledger.allowance.machine import AllowanceSnapshot
from cookieledger.ledger.redemption import as_utc
from cookieledger.ledger.schemas import UsageSession
from cookieledger.ledger.store import LedgerStore, account_collection

logger = structlog.get_logger()


class UsageSessionRecorder:
    def __init__(self, kv: KeyValueStore, store: LedgerStore) -> None:
        self.kv = kv
        self.store = store

    async def on_transition(self, account_id: str | None, snapshot: AllowanceSnapshot) -> None:
        if snapshot.unlock_active:
            if await self.kv.get(SESSION_START_KEY) is None:
                await self.kv.set(SESSION_START_KEY, snapshot.observed_at.isoformat())
            return

        raw_start = await self.kv.get(SESSION_START_KEY)
        if raw_start is None:
            return
        await self.kv.delete(SESSION_START_KEY)
        if account_id is None:
            return

        try:
            start_at = as_utc(datetime.fromisoformat(raw_start))
        except ValueError:
            logger.warning("session_start_corrupt", value=raw_start)
            return
        # The lock took effect at the deadline even if it was observed later.
        end_at = snapshot.observed_at
        if snapshot.end_at is not None and as_utc(snapshot.end_at) < end_at:
            end_at = as_utc(snapshot.end_at)
        end_at = max(end_at, start_at)

        session = UsageSession(
            start_at=start_at,
            end_at=end_at,
            duration_seconds=int((end_at - start_at).total_seconds()),
        )
        try:
            await self.store.add(account_collection(account_id, "sessions"), session.to_document())
        except Exception as exc:  # noqa: BLE001
            logger.warning("usage_session_write_failed", account_id=account_id, error=str(exc))
            return
        logger.info("usage_session_recorded", account_id=account_id, duration_seconds=session.duration_seconds)
