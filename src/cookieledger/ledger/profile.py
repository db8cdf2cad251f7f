"""Account profile reads and writes, and account data deletion."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from cookieledger.ledger.errors import InvalidProfileUpdate
from cookieledger.ledger.schemas import AccountProfile, AccountToken, CookieType
from cookieledger.ledger.store import LedgerStore, Transaction, account_collection, account_ref

logger = structlog.get_logger()

MIN_MINUTES = 15
MAX_MINUTES = 120
MINUTES_STEP = 5

ACCOUNT_SUBCOLLECTIONS = ("tokens", "redemptions", "sessions")


async def get_profile(store: LedgerStore, account_id: str) -> AccountProfile:
    """Load the profile, filling defaults for a never-written account."""
    raw = await store.get(account_ref(account_id))
    return AccountProfile.from_document(raw or {})


async def _merge_profile(store: LedgerStore, account_id: str, fields: dict[str, object]) -> None:
    ref = account_ref(account_id)

    async def _merge(tx: Transaction) -> None:
        if await tx.get(ref) is None:
            tx.set(ref, fields)
        else:
            tx.update(ref, fields)

    await store.run_transaction(_merge)


async def mark_onboarding_complete(
    store: LedgerStore,
    account_id: str,
    *,
    now: datetime | None = None,
) -> None:
    if now is None:
        now = datetime.now(timezone.utc)
    await _merge_profile(store, account_id, {"onboarding_complete": True, "onboarded_at": now.isoformat()})
    logger.info("onboarding_completed", account_id=account_id)


def validate_cookie_values(
    values: dict[str, int],
    *,
    minimum: int = MIN_MINUTES,
    maximum: int = MAX_MINUTES,
    step: int = MINUTES_STEP,
) -> dict[str, int]:
    """Reject unknown types and minute values off the allowed grid."""
    if not values:
        raise InvalidProfileUpdate("no cookie values given")
    known = {t.value for t in CookieType}
    for cookie_type, minutes in values.items():
        if cookie_type not in known:
            raise InvalidProfileUpdate(f"unknown cookie type {cookie_type!r}")
        if not minimum <= minutes <= maximum or minutes % step:
            raise InvalidProfileUpdate(f"{minutes} minutes is outside {minimum}..{maximum} step {step}")
    return dict(values)


async def update_cookie_values(
    store: LedgerStore,
    account_id: str,
    values: dict[str, int],
    *,
    minimum: int = MIN_MINUTES,
    maximum: int = MAX_MINUTES,
    step: int = MINUTES_STEP,
) -> dict[str, int]:
    """Replace the account's minutes-per-token table."""
    cleaned = validate_cookie_values(values, minimum=minimum, maximum=maximum, step=step)
    await _merge_profile(store, account_id, {"cookie_values": cleaned})
    logger.info("cookie_values_updated", account_id=account_id, values=cleaned)
    return cleaned


async def list_account_tokens(store: LedgerStore, account_id: str) -> list[AccountToken]:
    docs = await store.list_documents(account_collection(account_id, "tokens"))
    tokens = [AccountToken.from_document(data) for _, data in docs]
    tokens.sort(key=lambda t: (t.assigned_at, t.token_id))
    return tokens


async def delete_account_data(store: LedgerStore, account_id: str) -> dict[str, int]:
    """Delete the account's sub-collections, then the account document.

    Returns the number of documents removed per sub-collection. Packs stay
    claimed; token registrations are permanent.
    """
    removed: dict[str, int] = {}
    for name in ACCOUNT_SUBCOLLECTIONS:
        removed[name] = await store.delete_collection(account_collection(account_id, name))

    ref = account_ref(account_id)

    async def _delete(tx: Transaction) -> None:
        if await tx.get(ref) is not None:
            tx.delete(ref)

    await store.run_transaction(_delete)
    logger.info("account_data_deleted", account_id=account_id, **removed)
    return removed
