"""Ledger store contract and the in-process implementation.

A store holds JSON-like documents addressed by slash-separated paths
(``packs/{id}``, ``accounts/{id}/tokens/{tokenId}``, ...). The only way to make
a gated write is ``run_transaction``: the callback reads the documents that
gate the write through the transaction handle, then stages writes. The store
applies the staged writes atomically, isolated from concurrent transactions
touching the same documents, and retries on conflict where its backend can
detect one.

Reads must precede writes inside one transaction, so every gating value is
read before anything is staged.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import structlog

from cookieledger.ledger.errors import LedgerError, UnknownLedgerError

logger = structlog.get_logger()

T = TypeVar("T")
Document = dict[str, Any]


# ---------------------------------------------------------------------------
# Document paths
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentRef:
    """Address of a single document."""

    path: str

    @property
    def collection(self) -> str:
        return self.path.rsplit("/", 1)[0]

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[1]


def _check_segment(segment: str) -> str:
    if not segment or "/" in segment:
        msg = f"Invalid document path segment: {segment!r}"
        raise ValueError(msg)
    return segment


def document(*segments: str) -> DocumentRef:
    """Build a document reference from alternating collection/id segments."""
    if len(segments) < 2 or len(segments) % 2:
        msg = "A document path needs an even number of segments"
        raise ValueError(msg)
    return DocumentRef("/".join(_check_segment(s) for s in segments))


def new_document_id() -> str:
    """Random id for auto-keyed documents (log entries, packs)."""
    return uuid.uuid4().hex


def account_ref(account_id: str) -> DocumentRef:
    return document("accounts", account_id)


def account_token_ref(account_id: str, token_id: str) -> DocumentRef:
    return document("accounts", account_id, "tokens", token_id)


def account_collection(account_id: str, name: str) -> str:
    """Path of a sub-collection under an account (tokens, redemptions, sessions)."""
    return f"{account_ref(account_id).path}/{_check_segment(name)}"


def pack_ref(pack_id: str) -> DocumentRef:
    return document("packs", pack_id)


def registry_ref(token_id: str) -> DocumentRef:
    return document("tokenRegistry", token_id)


# ---------------------------------------------------------------------------
# Transaction handle
# ---------------------------------------------------------------------------


WriteKind = Literal["set", "update", "delete"]


@dataclass
class StagedWrite:
    kind: WriteKind
    ref: DocumentRef
    fields: Document | None = None


class Transaction(ABC):
    """Handle passed to a transaction callback.

    Subclasses supply ``_load``; writes are buffered here and handed back to the
    owning store on commit.
    """

    def __init__(self) -> None:
        self.writes: list[StagedWrite] = []

    async def get(self, ref: DocumentRef) -> Document | None:
        """Read a document (``None`` when it does not exist)."""
        if self.writes:
            msg = "Transactions must perform all reads before any writes"
            raise RuntimeError(msg)
        data = await self._load(ref)
        return copy.deepcopy(data) if data is not None else None

    def set(self, ref: DocumentRef, fields: Document) -> None:
        """Create or overwrite a document."""
        self.writes.append(StagedWrite("set", ref, copy.deepcopy(fields)))

    def update(self, ref: DocumentRef, fields: Document) -> None:
        """Merge fields into an existing document."""
        self.writes.append(StagedWrite("update", ref, copy.deepcopy(fields)))

    def delete(self, ref: DocumentRef) -> None:
        self.writes.append(StagedWrite("delete", ref))

    @abstractmethod
    async def _load(self, ref: DocumentRef) -> Document | None: ...


def apply_write(current: Document | None, write: StagedWrite) -> Document | None:
    """Result of applying one staged write to a document's current value."""
    if write.kind == "delete":
        return None
    if write.kind == "set":
        return copy.deepcopy(write.fields or {})
    if current is None:
        msg = f"Cannot update missing document {write.ref.path}"
        raise UnknownLedgerError(msg)
    return {**current, **copy.deepcopy(write.fields or {})}


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class LedgerStore(ABC):
    """Transactional document store consumed by the ledger."""

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` atomically; ledger errors raised by ``fn`` abort and propagate."""
        try:
            return await self._run_transaction(fn)
        except LedgerError:
            raise
        except Exception as exc:
            logger.error("ledger_transaction_failed", error=str(exc), exc_info=exc)
            raise UnknownLedgerError(str(exc)) from exc

    @abstractmethod
    async def _run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T: ...

    @abstractmethod
    async def get(self, ref: DocumentRef) -> Document | None:
        """Non-transactional single read."""

    @abstractmethod
    async def add(self, collection: str, fields: Document) -> DocumentRef:
        """Append a document with a generated id (no read gates the write)."""

    @abstractmethod
    async def list_documents(self, collection: str) -> list[tuple[DocumentRef, Document]]:
        """All documents directly inside ``collection``."""

    @abstractmethod
    async def delete_collection(self, collection: str) -> int:
        """Delete every document directly inside ``collection``; returns the count."""


class InMemoryLedgerStore(LedgerStore):
    """Single-process store; transactions are serialized by one lock.

    Used by tests and by local development without a database.
    """

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._lock = asyncio.Lock()

    async def _run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self._lock:
            tx = _MemoryTransaction(self._documents)
            result = await fn(tx)
            staged = dict(self._documents)
            for write in tx.writes:
                value = apply_write(staged.get(write.ref.path), write)
                if value is None:
                    staged.pop(write.ref.path, None)
                else:
                    staged[write.ref.path] = value
            self._documents.clear()
            self._documents.update(staged)
            return result

    async def get(self, ref: DocumentRef) -> Document | None:
        data = self._documents.get(ref.path)
        return copy.deepcopy(data) if data is not None else None

    async def add(self, collection: str, fields: Document) -> DocumentRef:
        ref = DocumentRef(f"{collection}/{new_document_id()}")
        async with self._lock:
            self._documents[ref.path] = copy.deepcopy(fields)
        return ref

    async def list_documents(self, collection: str) -> list[tuple[DocumentRef, Document]]:
        return [
            (DocumentRef(path), copy.deepcopy(data))
            for path, data in self._documents.items()
            if DocumentRef(path).collection == collection
        ]

    async def delete_collection(self, collection: str) -> int:
        async with self._lock:
            doomed = [p for p in self._documents if DocumentRef(p).collection == collection]
            for path in doomed:
                del self._documents[path]
        return len(doomed)


class _MemoryTransaction(Transaction):
    def __init__(self, documents: dict[str, Document]) -> None:
        super().__init__()
        self._documents = documents

    async def _load(self, ref: DocumentRef) -> Document | None:
        return self._documents.get(ref.path)
