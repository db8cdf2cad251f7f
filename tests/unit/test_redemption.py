"""Tests for the redemption ledger and its daily window."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import TypeVar

import pytest

from cookieledger.ledger.errors import AlreadyRedeemed, LedgerTimeout, TokenNotFound
from cookieledger.ledger.packs import claim_pack
from cookieledger.ledger.profile import update_cookie_values
from cookieledger.ledger.redemption import (
    list_redemptions,
    redeem,
    redemption_window_start,
    wait_for_pending_log_writes,
)
from cookieledger.ledger.registry import create_pack
from cookieledger.ledger.store import DocumentRef, InMemoryLedgerStore, Transaction, account_token_ref

T = TypeVar("T")

UTC = timezone.utc


def at(text: str) -> datetime:
    return datetime.fromisoformat(text).replace(tzinfo=UTC)


@pytest.fixture
async def claimed(store: InMemoryLedgerStore) -> InMemoryLedgerStore:
    await create_pack(store, ["t1", "t2", "t3", "t4"], now=at("2023-12-31T00:00:00"))
    await claim_pack(store, "t1", "u1", now=at("2023-12-31T00:00:00"))
    return store


class TestRedemptionWindowStart:
    def test_after_reset_is_today(self) -> None:
        assert redemption_window_start(at("2024-01-01T03:00:00")) == at("2024-01-01T02:00:00")

    def test_before_reset_is_yesterday(self) -> None:
        assert redemption_window_start(at("2024-01-01T01:59:59")) == at("2023-12-31T02:00:00")

    def test_exactly_at_reset(self) -> None:
        now = at("2024-01-01T02:00:00")
        assert redemption_window_start(now) == now

    def test_idempotent(self) -> None:
        now = at("2024-03-10T17:45:12")
        assert redemption_window_start(now) == redemption_window_start(now)
        start = redemption_window_start(now)
        assert redemption_window_start(start) == start

    def test_monotonic(self) -> None:
        instants = [at("2024-01-01T00:00:00") + timedelta(minutes=37 * i) for i in range(200)]
        starts = [redemption_window_start(i) for i in instants]
        assert starts == sorted(starts)

    def test_non_utc_input_normalized(self) -> None:
        paris = timezone(timedelta(hours=1))
        now = datetime(2024, 1, 1, 3, 30, tzinfo=paris)  # 02:30 UTC
        assert redemption_window_start(now) == at("2024-01-01T02:00:00")

    def test_naive_input_taken_as_utc(self) -> None:
        assert redemption_window_start(datetime(2024, 1, 1, 1, 0)) == at("2023-12-31T02:00:00")


class TestRedeem:
    async def test_documented_scenario(self, claimed: InMemoryLedgerStore) -> None:
        """Redeem after reset, blocked later that day, allowed after the next reset."""
        assert await redeem(claimed, "t1", "u1", now=at("2024-01-01T03:00:00")) == 30
        with pytest.raises(AlreadyRedeemed):
            await redeem(claimed, "t1", "u1", now=at("2024-01-01T10:00:00"))
        assert await redeem(claimed, "t1", "u1", now=at("2024-01-02T02:30:00")) == 30

    async def test_early_redemption_does_not_shift_window(self, claimed: InMemoryLedgerStore) -> None:
        await redeem(claimed, "t1", "u1", now=at("2024-01-01T02:00:00"))
        with pytest.raises(AlreadyRedeemed):
            await redeem(claimed, "t1", "u1", now=at("2024-01-02T01:59:59"))
        assert await redeem(claimed, "t1", "u1", now=at("2024-01-02T02:00:00")) == 30

    async def test_records_last_redeemed(self, claimed: InMemoryLedgerStore) -> None:
        await redeem(claimed, "t1", "u1", now=at("2024-01-01T03:00:00"))
        record = await claimed.get(account_token_ref("u1", "t1"))
        assert datetime.fromisoformat(record["last_redeemed_at"]) == at("2024-01-01T03:00:00")
        assert record["last_redeemed_by"] == "u1"

    async def test_other_tokens_independent(self, claimed: InMemoryLedgerStore) -> None:
        await redeem(claimed, "t1", "u1", now=at("2024-01-01T03:00:00"))
        assert await redeem(claimed, "t2", "u1", now=at("2024-01-01T03:05:00")) == 30

    async def test_unheld_token(self, claimed: InMemoryLedgerStore) -> None:
        with pytest.raises(TokenNotFound):
            await redeem(claimed, "t1", "u2", now=at("2024-01-01T03:00:00"))

    async def test_malformed_token_id(self, claimed: InMemoryLedgerStore) -> None:
        with pytest.raises(TokenNotFound):
            await redeem(claimed, "a/b", "u1")

    async def test_uses_account_minutes(self, claimed: InMemoryLedgerStore) -> None:
        await update_cookie_values(claimed, "u1", {"cookie": 45})
        assert await redeem(claimed, "t1", "u1", now=at("2024-01-01T03:00:00")) == 45

    async def test_naive_stored_timestamp_read_as_utc(self, claimed: InMemoryLedgerStore) -> None:
        ref = account_token_ref("u1", "t1")

        async def _store_naive(tx: Transaction) -> None:
            await tx.get(ref)
            tx.update(ref, {"last_redeemed_at": "2023-12-31T03:00:00"})

        await claimed.run_transaction(_store_naive)
        assert await redeem(claimed, "t1", "u1", now=at("2024-01-01T03:00:00")) == 30
        with pytest.raises(AlreadyRedeemed):
            await redeem(claimed, "t1", "u1", now=at("2024-01-01T04:00:00"))


class TestRedemptionLog:
    async def test_log_entry_appended(self, claimed: InMemoryLedgerStore) -> None:
        await redeem(claimed, "t1", "u1", now=at("2024-01-01T03:00:00"))
        await redeem(claimed, "t2", "u1", now=at("2024-01-01T04:00:00"))
        await wait_for_pending_log_writes()

        entries = await list_redemptions(claimed, "u1")
        assert [e.token_id for e in entries] == ["t2", "t1"]
        assert entries[0].minutes_value == 30
        assert entries[0].cookie_type == "cookie"

    async def test_log_failure_does_not_fail_redemption(self, claimed: InMemoryLedgerStore) -> None:
        async def _broken_add(collection: str, fields: dict) -> DocumentRef:  # type: ignore[type-arg]
            raise ConnectionError("log sink down")

        claimed.add = _broken_add  # type: ignore[method-assign]
        assert await redeem(claimed, "t1", "u1", now=at("2024-01-01T03:00:00")) == 30
        await wait_for_pending_log_writes()
        assert await list_redemptions(claimed, "u1") == []


class _SlowStore(InMemoryLedgerStore):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    async def _run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        await asyncio.sleep(self.delay)
        return await super()._run_transaction(fn)


class TestRedeemTimeout:
    async def test_timeout_then_retry_sees_committed_redemption(self) -> None:
        store = _SlowStore(delay=0)
        await create_pack(store, ["t1", "t2", "t3", "t4"])
        await claim_pack(store, "t1", "u1")
        store.delay = 0.2
        now = at("2024-01-01T03:00:00")

        with pytest.raises(LedgerTimeout):
            await redeem(store, "t1", "u1", now=now, timeout=0.05)

        # The transaction was not cancelled and commits after the deadline
        await asyncio.sleep(0.3)
        await wait_for_pending_log_writes()
        store.delay = 0
        with pytest.raises(AlreadyRedeemed):
            await redeem(store, "t1", "u1", now=now + timedelta(minutes=1))
        assert len(await list_redemptions(store, "u1")) == 1
