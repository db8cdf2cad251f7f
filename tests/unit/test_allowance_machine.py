"""Tests for the allowance state machine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from cookieledger.allowance.keyvalue import (
    LAST_ACCOUNT_KEY,
    PENDING_END_DATE_KEY,
    SESSION_TOTAL_KEY,
    InMemoryKeyValueStore,
    end_date_key,
)
from cookieledger.allowance.machine import AllowanceMachine, AllowanceSnapshot, AllowanceState

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class _Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[str | None, bool]] = []

    async def on_transition(self, account_id: str | None, snapshot: AllowanceSnapshot) -> None:
        self.calls.append((account_id, snapshot.unlock_active))


@pytest.fixture
def recorder() -> _Recorder:
    return _Recorder()


@pytest.fixture
def machine(kv: InMemoryKeyValueStore, recorder: _Recorder) -> AllowanceMachine:
    return AllowanceMachine(kv, listeners=[recorder])


class TestAllowanceState:
    """The pure value object."""

    def test_no_deadline_is_locked(self) -> None:
        snapshot = AllowanceState().recompute(T0)
        assert snapshot.remaining_seconds == 0
        assert snapshot.unlock_active is False

    def test_remaining_is_floored(self) -> None:
        state = AllowanceState(T0 + timedelta(seconds=90, milliseconds=900))
        assert state.recompute(T0).remaining_seconds == 90

    def test_deadline_in_past_is_locked(self) -> None:
        snapshot = AllowanceState(T0).recompute(T0 + timedelta(seconds=1))
        assert snapshot.remaining_seconds == 0
        assert snapshot.unlock_active is False

    def test_extend_running_deadline_stacks(self) -> None:
        state = AllowanceState(T0 + timedelta(minutes=10))
        assert state.extended(30, T0).end_at == T0 + timedelta(minutes=40)

    def test_extend_expired_deadline_restarts(self) -> None:
        state = AllowanceState(T0 - timedelta(hours=1))
        assert state.extended(30, T0).end_at == T0 + timedelta(minutes=30)

    def test_recompute_is_pure(self) -> None:
        state = AllowanceState(T0 + timedelta(minutes=5))
        assert state.recompute(T0) == state.recompute(T0)


class TestAddMinutes:
    async def test_fresh_state(self, machine: AllowanceMachine) -> None:
        snapshot = await machine.add_minutes(30, now=T0)
        assert snapshot.remaining_seconds == 1800
        assert snapshot.unlock_active is True

        later = await machine.recompute(T0 + timedelta(seconds=1800))
        assert later.unlock_active is False
        assert later.remaining_seconds == 0

    async def test_stacks_while_unlocked(self, machine: AllowanceMachine) -> None:
        await machine.add_minutes(30, now=T0)
        snapshot = await machine.add_minutes(30, now=T0 + timedelta(minutes=10))
        assert snapshot.end_at == T0 + timedelta(minutes=60)
        assert snapshot.remaining_seconds == 50 * 60

    async def test_persists_before_returning(self, machine: AllowanceMachine, kv: InMemoryKeyValueStore) -> None:
        await machine.add_minutes(15, now=T0)
        assert kv.values[PENDING_END_DATE_KEY] == (T0 + timedelta(minutes=15)).isoformat()

    async def test_state_survives_a_new_instance(self, machine: AllowanceMachine, kv: InMemoryKeyValueStore) -> None:
        await machine.add_minutes(30, now=T0)
        other_process = AllowanceMachine(kv)
        snapshot = await other_process.recompute(T0 + timedelta(minutes=20))
        assert snapshot.remaining_seconds == 600

    async def test_rejects_non_positive(self, machine: AllowanceMachine) -> None:
        with pytest.raises(ValueError):
            await machine.add_minutes(0, now=T0)

    async def test_session_total_tracks_largest_remaining(self, machine: AllowanceMachine) -> None:
        await machine.add_minutes(30, now=T0)
        snapshot = await machine.recompute(T0 + timedelta(minutes=10))
        assert snapshot.session_total_seconds == 1800
        snapshot = await machine.add_minutes(30, now=T0 + timedelta(minutes=10))
        assert snapshot.session_total_seconds == 50 * 60
        snapshot = await machine.recompute(T0 + timedelta(hours=2))
        assert snapshot.session_total_seconds == 0

    async def test_explicit_account_slot_ignores_device_switch(
        self, machine: AllowanceMachine, kv: InMemoryKeyValueStore
    ) -> None:
        await machine.set_account("u1", now=T0)
        await machine.set_account("u2", now=T0)

        await machine.add_minutes(30, now=T0, account_id="u1")

        assert kv.values[end_date_key("u1")] == (T0 + timedelta(minutes=30)).isoformat()
        assert end_date_key("u2") not in kv.values


class TestSetAccount:
    async def test_adopts_pending_once(self, machine: AllowanceMachine, kv: InMemoryKeyValueStore) -> None:
        await machine.add_minutes(30, now=T0)

        snapshot = await machine.set_account("u1", now=T0)

        assert snapshot.end_at == T0 + timedelta(minutes=30)
        assert PENDING_END_DATE_KEY not in kv.values
        assert kv.values[end_date_key("u1")] == (T0 + timedelta(minutes=30)).isoformat()

        # Switching away and back does not adopt anything again
        await machine.set_account("u2", now=T0)
        assert (await machine.recompute(T0)).unlock_active is False
        snapshot = await machine.set_account("u1", now=T0)
        assert snapshot.end_at == T0 + timedelta(minutes=30)

    async def test_saved_slot_wins_over_pending(self, machine: AllowanceMachine, kv: InMemoryKeyValueStore) -> None:
        kv.values[end_date_key("u1")] = (T0 + timedelta(minutes=5)).isoformat()
        kv.values[PENDING_END_DATE_KEY] = (T0 + timedelta(minutes=50)).isoformat()

        snapshot = await machine.set_account("u1", now=T0)

        assert snapshot.remaining_seconds == 300
        assert PENDING_END_DATE_KEY not in kv.values

    async def test_same_account_is_noop(self, machine: AllowanceMachine, kv: InMemoryKeyValueStore) -> None:
        await machine.set_account("u1", now=T0)
        await machine.add_minutes(30, now=T0)
        kv.values[PENDING_END_DATE_KEY] = (T0 + timedelta(hours=5)).isoformat()

        snapshot = await machine.set_account("u1", now=T0)

        assert snapshot.remaining_seconds == 1800
        assert PENDING_END_DATE_KEY in kv.values

    async def test_sign_out_clears_everything(self, machine: AllowanceMachine, kv: InMemoryKeyValueStore) -> None:
        await machine.set_account("u1", now=T0)
        await machine.add_minutes(30, now=T0)

        snapshot = await machine.set_account(None, now=T0)

        assert snapshot.unlock_active is False
        assert end_date_key("u1") not in kv.values
        assert LAST_ACCOUNT_KEY not in kv.values
        assert PENDING_END_DATE_KEY not in kv.values
        # Signing back in does not resurrect the old deadline
        assert (await machine.set_account("u1", now=T0)).unlock_active is False

    async def test_accounts_do_not_share_allowance(self, machine: AllowanceMachine) -> None:
        await machine.set_account("u1", now=T0)
        await machine.add_minutes(30, now=T0)
        snapshot = await machine.set_account("u2", now=T0)
        assert snapshot.unlock_active is False


class TestTransitions:
    async def test_first_observation_notifies(self, machine: AllowanceMachine, recorder: _Recorder) -> None:
        await machine.recompute(T0)
        assert recorder.calls == [(None, False)]

    async def test_notifies_only_on_change(self, machine: AllowanceMachine, recorder: _Recorder) -> None:
        await machine.recompute(T0)
        await machine.add_minutes(30, now=T0)
        await machine.recompute(T0 + timedelta(minutes=1))
        await machine.recompute(T0 + timedelta(minutes=2))
        await machine.recompute(T0 + timedelta(minutes=31))
        assert recorder.calls == [(None, False), (None, True), (None, False)]

    async def test_transition_seen_once_across_processes(
        self, kv: InMemoryKeyValueStore, recorder: _Recorder
    ) -> None:
        foreground = AllowanceMachine(kv, listeners=[recorder])
        background_recorder = _Recorder()
        background = AllowanceMachine(kv, listeners=[background_recorder])

        await foreground.add_minutes(30, now=T0)
        await background.recompute(T0 + timedelta(minutes=31))
        await foreground.recompute(T0 + timedelta(minutes=32))

        assert recorder.calls == [(None, True)]
        assert background_recorder.calls == [(None, False)]

    async def test_restore_always_notifies(self, machine: AllowanceMachine, recorder: _Recorder) -> None:
        await machine.recompute(T0)
        await machine.restore(T0)
        assert recorder.calls == [(None, False), (None, False)]

    async def test_corrupt_deadline_treated_as_none(self, kv: InMemoryKeyValueStore) -> None:
        kv.values[PENDING_END_DATE_KEY] = "not-a-date"
        snapshot = await AllowanceMachine(kv).recompute(T0)
        assert snapshot.unlock_active is False

    async def test_corrupt_session_total_treated_as_zero(self, kv: InMemoryKeyValueStore) -> None:
        kv.values[SESSION_TOTAL_KEY] = "garbage"
        snapshot = await AllowanceMachine(kv).recompute(T0)
        assert snapshot.session_total_seconds == 0
        assert SESSION_TOTAL_KEY not in kv.values

    async def test_corrupt_session_total_replaced_while_unlocked(self, kv: InMemoryKeyValueStore) -> None:
        kv.values[SESSION_TOTAL_KEY] = "garbage"
        snapshot = await AllowanceMachine(kv).add_minutes(30, now=T0)
        assert snapshot.session_total_seconds == 1800
        assert kv.values[SESSION_TOTAL_KEY] == "1800"


class TestWakeScheduling:
    async def test_schedules_while_unlocked(self, kv: InMemoryKeyValueStore) -> None:
        scheduler = AsyncMock()
        machine = AllowanceMachine(kv, scheduler=scheduler)

        await machine.add_minutes(30, now=T0)

        scheduler.schedule.assert_awaited_once()
        namespace, plan = scheduler.schedule.await_args.args
        assert namespace == kv.namespace
        assert plan.wake_at == T0 + timedelta(minutes=30)

    async def test_nothing_scheduled_while_locked(self, kv: InMemoryKeyValueStore) -> None:
        scheduler = AsyncMock()
        await AllowanceMachine(kv, scheduler=scheduler).recompute(T0)
        scheduler.schedule.assert_not_awaited()
