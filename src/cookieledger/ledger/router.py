"""Ledger router: packs, redemptions, emergency unlock and the account profile."""

from __future__ import annotations

from datetime import timedelta

import structlog
from fastapi import APIRouter, Depends, Query

from cookieledger.allowance.machine import AllowanceMachine, AllowanceSnapshot
from cookieledger.allowance.restriction import RestrictionAdapter
from cookieledger.auth.dependencies import get_current_account, require_admin
from cookieledger.config import get_settings
from cookieledger.dependencies import get_allowance_machine, get_ledger_store, get_restriction_adapter
from cookieledger.ledger.emergency import can_use_emergency_unlock, next_emergency_unlock_at, use_emergency_unlock
from cookieledger.ledger.packs import claim_pack
from cookieledger.ledger.profile import (
    delete_account_data,
    get_profile,
    list_account_tokens,
    mark_onboarding_complete,
    update_cookie_values,
)
from cookieledger.ledger.redemption import list_redemptions, redeem
from cookieledger.ledger.registry import create_pack
from cookieledger.ledger.scan import normalize_token
from cookieledger.ledger.schemas import (
    AccountTokenResponse,
    AllowanceResponse,
    ClaimPackResponse,
    CookieValuesRequest,
    CreatePackRequest,
    CreatePackResponse,
    EmergencyUnlockResponse,
    ProfileResponse,
    RedeemResponse,
    RedemptionListResponse,
    RedemptionResponse,
    ScannedTokenRequest,
)
from cookieledger.ledger.store import LedgerStore

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["Ledger"])


def allowance_response(snapshot: AllowanceSnapshot) -> AllowanceResponse:
    return AllowanceResponse(
        end_at=snapshot.end_at if snapshot.unlock_active else None,
        remaining_seconds=snapshot.remaining_seconds,
        unlock_active=snapshot.unlock_active,
        session_total_seconds=snapshot.session_total_seconds,
    )


# ---------------------------------------------------------------------------
# Packs
# ---------------------------------------------------------------------------


@router.post("/packs", response_model=CreatePackResponse, status_code=201)
async def create_pack_endpoint(
    body: CreatePackRequest,
    _admin: str = Depends(require_admin),
    store: LedgerStore = Depends(get_ledger_store),
) -> CreatePackResponse:
    """Provision a pack of tokens (admin only)."""
    settings = get_settings()
    token_ids = [normalize_token(raw, settings.token_scheme_prefix) for raw in body.token_ids]
    pack_id = await create_pack(store, token_ids, body.type, pack_size=settings.pack_size)
    return CreatePackResponse(pack_id=pack_id, token_ids=token_ids, type=body.type)


@router.post("/packs/claim", response_model=ClaimPackResponse)
async def claim_pack_endpoint(
    body: ScannedTokenRequest,
    account_id: str = Depends(get_current_account),
    store: LedgerStore = Depends(get_ledger_store),
) -> ClaimPackResponse:
    """Claim the pack the scanned token belongs to."""
    settings = get_settings()
    token_id = normalize_token(body.raw, settings.token_scheme_prefix)
    result = await claim_pack(store, token_id, account_id, pack_size=settings.pack_size)
    return ClaimPackResponse(
        pack_id=result.pack_id,
        token_ids=list(result.token_ids),
        type=result.cookie_type,
        already_claimed=result.already_claimed,
    )


# ---------------------------------------------------------------------------
# Redemption
# ---------------------------------------------------------------------------


@router.post("/tokens/redeem", response_model=RedeemResponse)
async def redeem_endpoint(
    body: ScannedTokenRequest,
    account_id: str = Depends(get_current_account),
    store: LedgerStore = Depends(get_ledger_store),
    machine: AllowanceMachine = Depends(get_allowance_machine),
) -> RedeemResponse:
    """Redeem a scanned token and credit the minutes to the device allowance."""
    settings = get_settings()
    token_id = normalize_token(body.raw, settings.token_scheme_prefix)
    minutes = await redeem(
        store,
        token_id,
        account_id,
        timeout=settings.redemption_timeout_seconds,
        reset_hour=settings.redemption_reset_hour_utc,
        default_minutes=settings.default_minutes_per_token,
    )
    await machine.set_account(account_id)
    snapshot = await machine.add_minutes(minutes, account_id=account_id)
    return RedeemResponse(token_id=token_id, minutes_value=minutes, allowance=allowance_response(snapshot))


@router.post("/emergency-unlock", response_model=EmergencyUnlockResponse)
async def emergency_unlock_endpoint(
    account_id: str = Depends(get_current_account),
    store: LedgerStore = Depends(get_ledger_store),
    machine: AllowanceMachine = Depends(get_allowance_machine),
) -> EmergencyUnlockResponse:
    """Use the weekly emergency unlock."""
    settings = get_settings()
    grant = await use_emergency_unlock(
        store,
        account_id,
        cooldown=timedelta(days=settings.emergency_cooldown_days),
        default_minutes=settings.default_minutes_per_token,
    )
    # The cooldown is already consumed; crediting is local and not rolled back.
    await machine.set_account(account_id)
    snapshot = await machine.add_minutes(grant.minutes_value, account_id=account_id)
    return EmergencyUnlockResponse(
        minutes_value=grant.minutes_value,
        used_at=grant.used_at,
        next_available_at=grant.next_available_at,
        allowance=allowance_response(snapshot),
    )


@router.get("/tokens", response_model=list[AccountTokenResponse])
async def list_tokens_endpoint(
    account_id: str = Depends(get_current_account),
    store: LedgerStore = Depends(get_ledger_store),
) -> list[AccountTokenResponse]:
    tokens = await list_account_tokens(store, account_id)
    return [
        AccountTokenResponse(
            token_id=t.token_id,
            type=t.type,
            pack_id=t.pack_id,
            assigned_at=t.assigned_at,
            last_redeemed_at=t.last_redeemed_at,
        )
        for t in tokens
    ]


@router.get("/redemptions", response_model=RedemptionListResponse)
async def list_redemptions_endpoint(
    limit: int = Query(50, ge=1, le=200),
    account_id: str = Depends(get_current_account),
    store: LedgerStore = Depends(get_ledger_store),
) -> RedemptionListResponse:
    """Recent redemptions, newest first."""
    entries = await list_redemptions(store, account_id, limit=limit)
    return RedemptionListResponse(
        redemptions=[
            RedemptionResponse(
                token_id=e.token_id,
                minutes_value=e.minutes_value,
                cookie_type=e.cookie_type,
                redeemed_at=e.redeemed_at,
            )
            for e in entries
        ],
        total=len(entries),
    )


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


async def _profile_response(store: LedgerStore, account_id: str) -> ProfileResponse:
    settings = get_settings()
    cooldown = timedelta(days=settings.emergency_cooldown_days)
    profile = await get_profile(store, account_id)
    return ProfileResponse(
        account_id=account_id,
        onboarding_complete=profile.onboarding_complete,
        cookie_values=profile.cookie_values,
        last_emergency_unlock_at=profile.last_emergency_unlock_at,
        next_emergency_unlock_at=next_emergency_unlock_at(profile, cooldown),
        can_use_emergency_unlock=can_use_emergency_unlock(profile, cooldown=cooldown),
    )


@router.get("/profile", response_model=ProfileResponse)
async def get_profile_endpoint(
    account_id: str = Depends(get_current_account),
    store: LedgerStore = Depends(get_ledger_store),
) -> ProfileResponse:
    return await _profile_response(store, account_id)


@router.put("/profile/cookie-values", response_model=ProfileResponse)
async def update_cookie_values_endpoint(
    body: CookieValuesRequest,
    account_id: str = Depends(get_current_account),
    store: LedgerStore = Depends(get_ledger_store),
) -> ProfileResponse:
    """Set the minutes granted per redeemed token type."""
    settings = get_settings()
    await update_cookie_values(
        store,
        account_id,
        body.values,
        minimum=settings.min_minutes_per_token,
        maximum=settings.max_minutes_per_token,
        step=settings.minutes_step,
    )
    return await _profile_response(store, account_id)


@router.post("/profile/onboarding-complete", response_model=ProfileResponse)
async def onboarding_complete_endpoint(
    account_id: str = Depends(get_current_account),
    store: LedgerStore = Depends(get_ledger_store),
) -> ProfileResponse:
    await mark_onboarding_complete(store, account_id)
    return await _profile_response(store, account_id)


@router.delete("/profile", status_code=204)
async def delete_profile_endpoint(
    account_id: str = Depends(get_current_account),
    store: LedgerStore = Depends(get_ledger_store),
    machine: AllowanceMachine = Depends(get_allowance_machine),
    adapter: RestrictionAdapter = Depends(get_restriction_adapter),
) -> None:
    """Delete the account's ledger data and sign the device out."""
    await delete_account_data(store, account_id)
    await machine.set_account(None)
    await adapter.reset()
    logger.info("account_deleted", account_id=account_id)
