"""Shared FastAPI dependencies."""

from __future__ import annotations

from datetime import timedelta

from fastapi import Depends, Header, Request

from cookieledger.allowance.keyvalue import KeyValueStore, RedisKeyValueStore
from cookieledger.allowance.machine import AllowanceMachine
from cookieledger.allowance.restriction import KeyValueRestrictionGateway, RestrictionAdapter, SelectionStore
from cookieledger.allowance.scheduling import WakeScheduler
from cookieledger.allowance.sessions import UsageSessionRecorder
from cookieledger.config import get_settings
from cookieledger.ledger.store import LedgerStore
from cookieledger.redis_client import get_redis

DEFAULT_DEVICE_ID = "default"


def get_ledger_store(request: Request) -> LedgerStore:
    """The process-wide ledger store created in the app lifespan."""
    return request.app.state.ledger_store


def get_wake_scheduler(request: Request) -> WakeScheduler | None:
    return getattr(request.app.state, "wake_scheduler", None)


def get_key_value_store(
    x_device_id: str = Header(DEFAULT_DEVICE_ID, max_length=64),
) -> KeyValueStore:
    """Key-value namespace of the calling device."""
    settings = get_settings()
    return RedisKeyValueStore(get_redis(), f"{settings.kv_namespace}:{x_device_id}")


def get_restriction_adapter(kv: KeyValueStore = Depends(get_key_value_store)) -> RestrictionAdapter:
    return RestrictionAdapter(KeyValueRestrictionGateway(kv), SelectionStore(kv))


def get_allowance_machine(
    kv: KeyValueStore = Depends(get_key_value_store),
    store: LedgerStore = Depends(get_ledger_store),
    adapter: RestrictionAdapter = Depends(get_restriction_adapter),
    scheduler: WakeScheduler | None = Depends(get_wake_scheduler),
) -> AllowanceMachine:
    """Allowance machine for the calling device, wired to its gateway and session log."""
    settings = get_settings()
    return AllowanceMachine(
        kv,
        listeners=[adapter, UsageSessionRecorder(kv, store)],
        scheduler=scheduler,
        minimum_interval=timedelta(seconds=settings.min_schedule_interval_seconds),
    )
