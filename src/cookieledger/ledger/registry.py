"""Token registry: provisions packs of tokens.

Rules:
- A pack holds exactly ``PACK_SIZE`` distinct token ids of one type
- A token id is registered once, globally, and never re-registered
- The pack document and every registry entry are written in one transaction,
  so a partially registered pack is never observable
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

import structlog

from cookieledger.ledger.errors import InvalidPack, TokenAlreadyRegistered
from cookieledger.ledger.schemas import CookieType, Pack, PackStatus, PackToken, RegistryEntry
from cookieledger.ledger.store import LedgerStore, Transaction, new_document_id, pack_ref, registry_ref

logger = structlog.get_logger()

PACK_SIZE = 4


def validate_pack_tokens(tokens: Sequence[PackToken], pack_size: int = PACK_SIZE) -> CookieType:
    """Check the exactly-N, distinct, uniform-type invariant; returns the pack type."""
    ids = [t.id for t in tokens]
    if len(ids) != pack_size or len(set(ids)) != len(ids) or any(not i for i in ids):
        raise InvalidPack(f"expected {pack_size} distinct token ids, got {ids!r}")
    types = {t.type for t in tokens}
    if len(types) != 1:
        raise InvalidPack(f"mixed token types {sorted(t.value for t in types)}")
    return tokens[0].type


async def create_pack(
    store: LedgerStore,
    token_ids: Sequence[str],
    cookie_type: CookieType | str = CookieType.COOKIE,
    *,
    now: datetime | None = None,
    pack_size: int = PACK_SIZE,
) -> str:
    """Register a new pack and its tokens. Returns the new pack id."""
    try:
        kind = CookieType(cookie_type)
    except ValueError:
        raise InvalidPack(f"unknown token type {cookie_type!r}") from None
    tokens = [PackToken(id=token_id, type=kind) for token_id in token_ids]
    validate_pack_tokens(tokens, pack_size)
    try:
        refs = [registry_ref(t.id) for t in tokens]
    except ValueError as exc:
        raise InvalidPack(str(exc)) from exc

    if now is None:
        now = datetime.now(timezone.utc)
    pack_id = new_document_id()

    async def _create(tx: Transaction) -> None:
        for ref in refs:
            if await tx.get(ref) is not None:
                raise TokenAlreadyRegistered(f"token {ref.id} is already registered")

        pack = Pack(id=pack_id, type=kind, tokens=tokens, status=PackStatus.AVAILABLE, created_at=now)
        tx.set(pack_ref(pack_id), pack.to_document())
        for ref in refs:
            entry = RegistryEntry(pack_id=pack_id, type=kind, registered_at=now)
            tx.set(ref, entry.to_document())

    await store.run_transaction(_create)
    logger.info("pack_created", pack_id=pack_id, type=kind.value, token_ids=list(token_ids))
    return pack_id
