"""Ledger store backed by SQLAlchemy (PostgreSQL in production).

Each transaction runs in its own session with ``SELECT ... FOR UPDATE`` on every
document it reads, so two transactions gating on the same document serialize.
Two transactions racing to create the same missing document collide on the
primary key; that ``IntegrityError`` and PostgreSQL serialization/deadlock
failures are retried here, so callers see either a clean result or the
domain error the retried read discovers.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cookieledger.db.models import LedgerDocument
from cookieledger.ledger.errors import StoreUnavailable
from cookieledger.ledger.store import (
    Document,
    DocumentRef,
    LedgerStore,
    Transaction,
    apply_write,
    new_document_id,
)

logger = structlog.get_logger()

T = TypeVar("T")

_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})  # serialization_failure, deadlock_detected


def _is_conflict(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return True
    orig = exc.orig
    state = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return state in _RETRYABLE_SQLSTATES


@asynccontextmanager
async def _store_errors() -> AsyncIterator[None]:
    try:
        yield
    except (DBAPIError, OSError) as exc:
        logger.warning("ledger_store_unavailable", error=str(exc))
        raise StoreUnavailable() from exc


class SqlLedgerStore(LedgerStore):
    """Document store over the ``ledger_documents`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
        retry_delay: float = 0.05,
    ) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    async def _run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._session_factory() as session, session.begin():
                    tx = _SqlTransaction(session)
                    result = await fn(tx)
                    await tx.flush_writes()
                return result
            except DBAPIError as exc:
                if _is_conflict(exc) and attempt < self._max_attempts:
                    logger.info("ledger_transaction_retry", attempt=attempt, error=str(exc.orig))
                    await asyncio.sleep(self._retry_delay * attempt)
                    continue
                logger.warning("ledger_store_unavailable", attempt=attempt, error=str(exc))
                raise StoreUnavailable() from exc
            except OSError as exc:
                logger.warning("ledger_store_unavailable", attempt=attempt, error=str(exc))
                raise StoreUnavailable() from exc

    async def get(self, ref: DocumentRef) -> Document | None:
        async with _store_errors(), self._session_factory() as session:
            row = await session.get(LedgerDocument, ref.path)
            return dict(row.data) if row is not None else None

    async def add(self, collection: str, fields: Document) -> DocumentRef:
        ref = DocumentRef(f"{collection}/{new_document_id()}")
        async with _store_errors(), self._session_factory() as session, session.begin():
            session.add(LedgerDocument(path=ref.path, collection=collection, data=dict(fields)))
        return ref

    async def list_documents(self, collection: str) -> list[tuple[DocumentRef, Document]]:
        async with _store_errors(), self._session_factory() as session:
            result = await session.execute(
                select(LedgerDocument)
                .where(LedgerDocument.collection == collection)
                .order_by(LedgerDocument.created_at, LedgerDocument.path)
            )
            return [(DocumentRef(row.path), dict(row.data)) for row in result.scalars()]

    async def delete_collection(self, collection: str) -> int:
        async with _store_errors(), self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(LedgerDocument).where(LedgerDocument.collection == collection)
            )
            return result.rowcount or 0


class _SqlTransaction(Transaction):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__()
        self._session = session
        self._rows: dict[str, LedgerDocument | None] = {}

    async def _row(self, path: str) -> LedgerDocument | None:
        if path not in self._rows:
            self._rows[path] = await self._session.get(LedgerDocument, path, with_for_update=True)
        return self._rows[path]

    async def _load(self, ref: DocumentRef) -> Document | None:
        row = await self._row(ref.path)
        return row.data if row is not None else None

    async def flush_writes(self) -> None:
        for write in self.writes:
            path = write.ref.path
            row = await self._row(path)
            value = apply_write(row.data if row is not None else None, write)
            if value is None:
                if row is not None:
                    await self._session.delete(row)
                self._rows[path] = None
            elif row is None:
                row = LedgerDocument(path=path, collection=write.ref.collection, data=value)
                self._session.add(row)
                self._rows[path] = row
            else:
                row.data = value
        await self._session.flush()
