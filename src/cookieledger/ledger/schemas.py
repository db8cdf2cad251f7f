"""Pydantic schemas for ledger documents and ledger endpoints."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class CookieType(str, Enum):
    COOKIE = "cookie"


class PackStatus(str, Enum):
    AVAILABLE = "available"
    CLAIMED = "claimed"


DEFAULT_MINUTES_PER_TOKEN = 30


class LedgerModel(BaseModel):
    """Document stored in the ledger; round-trips through plain JSON."""

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, data: dict[str, Any]):  # noqa: ANN206
        return cls.model_validate(data)


# --- Documents ---


class RegistryEntry(LedgerModel):
    """``tokenRegistry/{tokenId}``: which pack a token was provisioned into."""

    pack_id: str
    type: CookieType
    registered_at: datetime


class PackToken(BaseModel):
    id: str
    type: CookieType


class Pack(LedgerModel):
    """``packs/{packId}``."""

    id: str
    type: CookieType
    tokens: list[PackToken]
    status: PackStatus = PackStatus.AVAILABLE
    created_at: datetime
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    claim_token: str | None = None

    @property
    def token_ids(self) -> list[str]:
        return [t.id for t in self.tokens]


class AccountToken(LedgerModel):
    """``accounts/{accountId}/tokens/{tokenId}``: the account's copy of a claimed token."""

    token_id: str
    type: CookieType
    pack_id: str
    assigned_at: datetime
    last_redeemed_at: datetime | None = None
    last_redeemed_by: str | None = None


class Redemption(LedgerModel):
    """``accounts/{accountId}/redemptions/{auto}``: append-only redemption log."""

    token_id: str
    account_id: str
    minutes_value: int
    cookie_type: str
    redeemed_at: datetime


class UsageSession(LedgerModel):
    """``accounts/{accountId}/sessions/{auto}``: one completed unlock session."""

    start_at: datetime
    end_at: datetime
    duration_seconds: int


class AccountProfile(LedgerModel):
    """``accounts/{accountId}``: fields the ledger reads and writes."""

    onboarding_complete: bool = False
    onboarded_at: datetime | None = None
    cookie_values: dict[str, int] = Field(
        default_factory=lambda: {CookieType.COOKIE.value: DEFAULT_MINUTES_PER_TOKEN}
    )
    last_emergency_unlock_at: datetime | None = None

    def minutes_for(self, cookie_type: str, default: int = DEFAULT_MINUTES_PER_TOKEN) -> int:
        """Minutes granted per redeemed token of ``cookie_type``."""
        return self.cookie_values.get(cookie_type, default)


# --- Requests ---


class CreatePackRequest(BaseModel):
    token_ids: list[str] = Field(..., min_length=1, max_length=16)
    type: CookieType = CookieType.COOKIE


class ScannedTokenRequest(BaseModel):
    """Raw payload read from a physical token (scheme prefix optional)."""

    raw: str = Field(..., min_length=1, max_length=256)


class CookieValuesRequest(BaseModel):
    values: dict[str, int]


# --- Responses ---


class CreatePackResponse(BaseModel):
    pack_id: str
    token_ids: list[str]
    type: CookieType


class ClaimPackResponse(BaseModel):
    pack_id: str
    token_ids: list[str]
    type: CookieType
    already_claimed: bool


class AllowanceResponse(BaseModel):
    end_at: datetime | None = None
    remaining_seconds: int
    unlock_active: bool
    session_total_seconds: int = 0


class RedeemResponse(BaseModel):
    token_id: str
    minutes_value: int
    allowance: AllowanceResponse


class EmergencyUnlockResponse(BaseModel):
    minutes_value: int
    used_at: datetime
    next_available_at: datetime
    allowance: AllowanceResponse


class ProfileResponse(BaseModel):
    account_id: str
    onboarding_complete: bool
    cookie_values: dict[str, int]
    last_emergency_unlock_at: datetime | None = None
    next_emergency_unlock_at: datetime | None = None
    can_use_emergency_unlock: bool


class AccountTokenResponse(BaseModel):
    token_id: str
    type: CookieType
    pack_id: str
    assigned_at: datetime
    last_redeemed_at: datetime | None = None


class RedemptionResponse(BaseModel):
    token_id: str
    minutes_value: int
    cookie_type: str
    redeemed_at: datetime


class RedemptionListResponse(BaseModel):
    redemptions: list[RedemptionResponse]
    total: int
