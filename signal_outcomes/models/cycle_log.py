"""CycleLog model — one row per outcome resolution cycle."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class CycleLog(SQLModel, table=True):
    __tablename__ = "cycle_log"

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    status: str  # "success", "error", "skipped"
    trigger: str = "scheduler"  # "scheduler", "api", "cli"
    checked_count: int = 0
    correct_count: int = 0
    skipped_count: int = 0
    purged_count: int = 0
    saved: bool = False
    attempts: int = 0
    price: float | None = None
    price_source: str | None = None
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
