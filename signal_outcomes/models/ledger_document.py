"""LedgerDocument model — the signal history JSON document with its version token."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class LedgerDocument(SQLModel, table=True):
    __tablename__ = "ledger_document"

    name: str = Field(default="signal-history", primary_key=True)
    content: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    etag: str = Field(index=True)  # SHA-256 of the canonical JSON content
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
