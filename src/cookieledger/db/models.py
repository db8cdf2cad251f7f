"""ORM models backing the ledger document store.

Every ledger document (accounts, per-account tokens, redemption and session logs,
packs, registry entries) is a row keyed by its slash-separated path. The
``collection`` column holds the parent path so sub-collections can be listed
and purged without scanning the whole table.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from cookieledger.db.base import Base

DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


class LedgerDocument(Base):
    """One document in the ledger store."""

    __tablename__ = "ledger_documents"
    __table_args__ = (Index("ix_ledger_documents_collection", "collection"),)

    path: Mapped[str] = mapped_column(String(512), primary_key=True)
    collection: Mapped[str] = mapped_column(String(512), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(DocumentJSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
