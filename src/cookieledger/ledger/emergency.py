"""Emergency unlock: one grant per account per cooldown period (7 days).

The cooldown write is the only thing that happens in the transaction. The
caller credits ``EmergencyGrant.minutes_value`` into the local allowance
afterwards; that credit is not durable, so a crash in between consumes the
cooldown without granting minutes (accepted at-most-once risk).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from cookieledger.ledger.errors import CooldownActive
from cookieledger.ledger.redemption import as_utc
from cookieledger.ledger.schemas import DEFAULT_MINUTES_PER_TOKEN, AccountProfile, CookieType
from cookieledger.ledger.store import LedgerStore, Transaction, account_ref

logger = structlog.get_logger()

EMERGENCY_COOLDOWN = timedelta(days=7)


@dataclass(frozen=True)
class EmergencyGrant:
    minutes_value: int
    used_at: datetime
    next_available_at: datetime


def next_emergency_unlock_at(
    profile: AccountProfile,
    cooldown: timedelta = EMERGENCY_COOLDOWN,
) -> datetime | None:
    """When the next emergency unlock becomes available (``None`` if never used)."""
    if profile.last_emergency_unlock_at is None:
        return None
    return as_utc(profile.last_emergency_unlock_at) + cooldown


def can_use_emergency_unlock(
    profile: AccountProfile,
    now: datetime | None = None,
    cooldown: timedelta = EMERGENCY_COOLDOWN,
) -> bool:
    available_at = next_emergency_unlock_at(profile, cooldown)
    if available_at is None:
        return True
    if now is None:
        now = datetime.now(timezone.utc)
    return as_utc(now) >= available_at


async def use_emergency_unlock(
    store: LedgerStore,
    account_id: str,
    *,
    now: datetime | None = None,
    cooldown: timedelta = EMERGENCY_COOLDOWN,
    default_minutes: int = DEFAULT_MINUTES_PER_TOKEN,
) -> EmergencyGrant:
    """Consume the account's emergency unlock.

    Raises:
        CooldownActive: the previous use was less than ``cooldown`` ago.
    """
    ref = account_ref(account_id)

    async def _use(tx: Transaction) -> EmergencyGrant:
        raw = await tx.get(ref)
        profile = AccountProfile.from_document(raw or {})
        used_at = as_utc(now) if now is not None else datetime.now(timezone.utc)

        available_at = next_emergency_unlock_at(profile, cooldown)
        if available_at is not None and used_at < available_at:
            raise CooldownActive(available_at)

        if raw is None:
            tx.set(ref, {"last_emergency_unlock_at": used_at.isoformat()})
        else:
            tx.update(ref, {"last_emergency_unlock_at": used_at.isoformat()})
        return EmergencyGrant(
            minutes_value=profile.minutes_for(CookieType.COOKIE.value, default_minutes),
            used_at=used_at,
            next_available_at=used_at + cooldown,
        )

    grant = await store.run_transaction(_use)
    logger.info("emergency_unlock_used", account_id=account_id, minutes_value=grant.minutes_value)
    return grant
