"""Allowance router: device lock state, refresh and blocked selection."""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends

from cookieledger.allowance.keyvalue import KeyValueStore
from cookieledger.allowance.machine import AllowanceMachine
from cookieledger.allowance.restriction import RestrictionAdapter
from cookieledger.allowance.scheduling import WakeScheduler, refresh_lock_state
from cookieledger.allowance.schemas import SelectionRequest, SelectionResponse
from cookieledger.allowance.sessions import UsageSessionRecorder
from cookieledger.auth.dependencies import get_current_account
from cookieledger.config import get_settings
from cookieledger.dependencies import (
    get_allowance_machine,
    get_key_value_store,
    get_ledger_store,
    get_restriction_adapter,
    get_wake_scheduler,
)
from cookieledger.ledger.router import allowance_response
from cookieledger.ledger.schemas import AllowanceResponse
from cookieledger.ledger.store import LedgerStore

router = APIRouter(prefix="/api/v1/allowance", tags=["Allowance"])


@router.get("", response_model=AllowanceResponse)
async def get_allowance(
    account_id: str = Depends(get_current_account),
    machine: AllowanceMachine = Depends(get_allowance_machine),
) -> AllowanceResponse:
    """Current lock state of the calling device, recomputed now."""
    snapshot = await machine.set_account(account_id)
    return allowance_response(snapshot)


@router.post("/refresh", response_model=AllowanceResponse)
async def refresh_allowance(
    _account_id: str = Depends(get_current_account),
    kv: KeyValueStore = Depends(get_key_value_store),
    store: LedgerStore = Depends(get_ledger_store),
    adapter: RestrictionAdapter = Depends(get_restriction_adapter),
    scheduler: WakeScheduler | None = Depends(get_wake_scheduler),
) -> AllowanceResponse:
    """Recompute and re-apply the restriction, as a background wake would."""
    settings = get_settings()
    snapshot = await refresh_lock_state(
        kv,
        adapter,
        scheduler,
        listeners=[adapter, UsageSessionRecorder(kv, store)],
        minimum_interval=timedelta(seconds=settings.min_schedule_interval_seconds),
    )
    return allowance_response(snapshot)


@router.get("/selection", response_model=SelectionResponse)
async def get_selection(
    _account_id: str = Depends(get_current_account),
    adapter: RestrictionAdapter = Depends(get_restriction_adapter),
) -> SelectionResponse:
    selection = await adapter.selections.load()
    return SelectionResponse(resources=sorted(selection))


@router.put("/selection", response_model=SelectionResponse)
async def put_selection(
    body: SelectionRequest,
    _account_id: str = Depends(get_current_account),
    machine: AllowanceMachine = Depends(get_allowance_machine),
    adapter: RestrictionAdapter = Depends(get_restriction_adapter),
) -> SelectionResponse:
    """Replace the blocked selection and re-apply it at the current lock state."""
    selection = frozenset(body.resources)
    await adapter.selections.save(selection)
    snapshot = await machine.recompute()
    await adapter.sync(snapshot.unlock_active)
    return SelectionResponse(resources=sorted(selection))
