"""Pack ledger: claiming a pack for an account.

A claim touches two document trees (the registry and pack, then the account's
token collection), so it runs as two transactions:

- Phase A resolves the scanned token to its pack and marks the pack claimed.
  Re-claim by the same account is a no-op success; claim by anyone else fails.
- Phase B creates the account's token records. Records that already exist and
  match the pack are treated as applied, so a retried claim after a failed
  Phase B finishes the job without error.

Both phases are idempotent on their own, so the whole claim can be retried
end-to-end with exactly-once effect.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from pydantic import ValidationError

from cookieledger.ledger.errors import (
    InvalidPack,
    PackAlreadyClaimed,
    PackNotFound,
    TokenAlreadyRegistered,
)
from cookieledger.ledger.registry import PACK_SIZE, validate_pack_tokens
from cookieledger.ledger.schemas import AccountToken, CookieType, Pack, PackStatus, RegistryEntry
from cookieledger.ledger.store import (
    LedgerStore,
    Transaction,
    account_token_ref,
    pack_ref,
    registry_ref,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class ClaimResult:
    pack_id: str
    token_ids: tuple[str, ...]
    cookie_type: CookieType
    already_claimed: bool


async def claim_pack(
    store: LedgerStore,
    token_id: str,
    account_id: str,
    *,
    now: datetime | None = None,
    pack_size: int = PACK_SIZE,
) -> ClaimResult:
    """Claim the pack that ``token_id`` belongs to for ``account_id``."""
    if now is None:
        now = datetime.now(timezone.utc)
    try:
        entry_ref = registry_ref(token_id)
    except ValueError:
        raise PackNotFound(f"malformed token id {token_id!r}") from None

    async def _phase_a(tx: Transaction) -> ClaimResult:
        raw_entry = await tx.get(entry_ref)
        if raw_entry is None:
            raise PackNotFound(f"token {token_id} is not registered")
        try:
            entry = RegistryEntry.from_document(raw_entry)
        except ValidationError as exc:
            raise PackNotFound(f"corrupt registry entry for {token_id}") from exc

        ref = pack_ref(entry.pack_id)
        raw_pack = await tx.get(ref)
        if raw_pack is None:
            raise PackNotFound(f"pack {entry.pack_id} does not exist")
        try:
            pack = Pack.from_document(raw_pack)
        except ValidationError as exc:
            raise InvalidPack(f"pack {entry.pack_id} failed validation") from exc
        kind = validate_pack_tokens(pack.tokens, pack_size)

        if pack.status == PackStatus.CLAIMED:
            if pack.claimed_by == account_id:
                return ClaimResult(pack.id, tuple(pack.token_ids), kind, already_claimed=True)
            raise PackAlreadyClaimed(f"pack {pack.id} is claimed by another account")

        for pack_token_id in pack.token_ids:
            if await tx.get(account_token_ref(account_id, pack_token_id)) is not None:
                raise TokenAlreadyRegistered(f"account already holds token {pack_token_id}")

        tx.update(ref, {
            "status": PackStatus.CLAIMED.value,
            "claimed_by": account_id,
            "claimed_at": now.isoformat(),
            "claim_token": token_id,
        })
        return ClaimResult(pack.id, tuple(pack.token_ids), kind, already_claimed=False)

    result = await store.run_transaction(_phase_a)

    async def _phase_b(tx: Transaction) -> int:
        refs = [account_token_ref(account_id, t) for t in result.token_ids]
        existing = [await tx.get(ref) for ref in refs]
        created = 0
        for ref, raw in zip(refs, existing):
            if raw is not None:
                if raw.get("pack_id") == result.pack_id and raw.get("type") == result.cookie_type.value:
                    continue
                raise TokenAlreadyRegistered(f"account token {ref.id} belongs to another pack")
            record = AccountToken(
                token_id=ref.id,
                type=result.cookie_type,
                pack_id=result.pack_id,
                assigned_at=now,
            )
            tx.set(ref, record.to_document())
            created += 1
        return created

    created = await store.run_transaction(_phase_b)
    logger.info(
        "pack_claimed",
        pack_id=result.pack_id,
        account_id=account_id,
        already_claimed=result.already_claimed,
        tokens_created=created,
    )
    return result
