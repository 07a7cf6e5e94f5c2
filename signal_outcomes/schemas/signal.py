"""Pydantic schemas for calls, statistics and the ledger document.

JSON keys are camelCase to stay compatible with the published
``signal-history.json`` document. Legacy keys (``timestamp``,
``priceAtSignal``) are accepted on input.
"""

from datetime import datetime, timezone
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

Direction = Literal["up", "down", "neutral"]

_DIRECTION_ALIASES = {
    "up": "up",
    "bullish": "up",
    "long": "up",
    "down": "down",
    "bearish": "down",
    "short": "down",
    "neutral": "neutral",
    "sideways": "neutral",
}


def _normalize_direction(value):
    if isinstance(value, str):
        return _DIRECTION_ALIASES.get(value.strip().lower(), value)
    return value


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_confidence(value):
    # Publishers log confidence as a percentage (e.g. 72) as often as a ratio
    if isinstance(value, (int, float)) and 1 < value <= 100:
        return value / 100.0
    return value


class Call(BaseModel):
    """A directional prediction awaiting (or past) judgment."""

    id: str = Field(min_length=1)
    created_at: datetime = Field(
        validation_alias=AliasChoices("createdAt", "created_at", "timestamp"),
        serialization_alias="createdAt",
    )
    entry_price: float | None = Field(
        default=None,
        validation_alias=AliasChoices("entryPrice", "entry_price", "priceAtSignal"),
        serialization_alias="entryPrice",
    )
    direction: Direction
    confidence: float = Field(default=0.0, ge=0, le=1)
    target: float | None = None
    stop_loss: float | None = Field(default=None, alias="stopLoss")

    checked: bool = False
    correct: bool | None = None
    price_after_24h: float | None = Field(default=None, alias="priceAfter24h")
    resolved_price: float | None = Field(default=None, alias="resolvedPrice")
    resolved_at: datetime | None = Field(default=None, alias="resolvedAt")
    resolution: str | None = None  # "24h", "catch_up", "stop_hit", "target_hit", "expired"

    model_config = {"populate_by_name": True}

    @field_validator("direction", mode="before")
    @classmethod
    def _direction_alias(cls, value):
        return _normalize_direction(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_scale(cls, value):
        if value is None:
            return 0.0
        return _normalize_confidence(value)

    @field_validator("created_at", "resolved_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def _unchecked_has_no_verdict(self):
        if not self.checked:
            self.correct = None
        return self

    @property
    def is_pending(self) -> bool:
        return not self.checked

    def mark_resolved(
        self,
        correct: bool,
        price: float,
        reason: str,
        resolved_at: datetime,
        price_after_24h: float | None = None,
    ):
        """Record the final verdict. Resolution is final; a checked call cannot be re-judged."""
        if self.checked:
            raise ValueError(f"Call {self.id} is already resolved")
        self.checked = True
        self.correct = correct
        self.resolved_price = price
        self.resolved_at = resolved_at
        self.resolution = reason
        if price_after_24h is not None:
            self.price_after_24h = price_after_24h

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StatsSnapshot(BaseModel):
    """Rolling accuracy figures derived from checked calls. Always recomputed, never patched."""

    total: int = 0
    correct: int = 0
    accuracy_7d: float = Field(default=0.0, alias="accuracy7d")
    accuracy_30d: float = Field(default=0.0, alias="accuracy30d")
    accuracy_all: float = Field(default=0.0, alias="accuracyAll")
    avg_confidence: float = Field(default=0.0, alias="avgConfidence")
    streak_current: int = Field(default=0, alias="streakCurrent")
    streak_best: int = Field(default=0, alias="streakBest")
    last_updated: datetime | None = Field(default=None, alias="lastUpdated")

    model_config = {"populate_by_name": True}

    def same_figures(self, other: "StatsSnapshot") -> bool:
        """Compare everything except the timestamp."""
        exclude = {"last_updated"}
        return self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SignalHistory(BaseModel):
    """The ledger document: ``{lastUpdated, signals, stats}``."""

    last_updated: datetime | None = Field(default=None, alias="lastUpdated")
    signals: list[Call] = Field(default_factory=list)
    stats: StatsSnapshot = Field(default_factory=StatsSnapshot)

    model_config = {"populate_by_name": True}


class CallCreate(BaseModel):
    """Request body for recording a new call."""

    id: str | None = Field(default=None, min_length=1, max_length=120)
    created_at: datetime | None = Field(default=None, alias="createdAt")
    entry_price: float = Field(gt=0, alias="entryPrice")
    direction: Direction
    confidence: float = Field(ge=0, le=1)
    target: float | None = Field(default=None, gt=0)
    stop_loss: float | None = Field(default=None, gt=0, alias="stopLoss")

    model_config = {"populate_by_name": True}

    @field_validator("direction", mode="before")
    @classmethod
    def _direction_alias(cls, value):
        return _normalize_direction(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_scale(cls, value):
        return _normalize_confidence(value)

    @model_validator(mode="after")
    def _validate_levels(self):
        if self.direction == "neutral":
            if self.target is not None or self.stop_loss is not None:
                raise ValueError("neutral calls carry no target or stopLoss")
            return self
        favorable = 1 if self.direction == "up" else -1
        if self.target is not None and (self.target - self.entry_price) * favorable <= 0:
            raise ValueError(f"target must be on the {self.direction} side of entryPrice")
        if self.stop_loss is not None and (self.stop_loss - self.entry_price) * favorable >= 0:
            raise ValueError("stopLoss must be on the adverse side of entryPrice")
        return self

    def to_call(self, now: datetime) -> Call:
        created_at = _as_utc(self.created_at) or now
        # Hour-granular ids, e.g. "2026-10-18-05", match the publisher's scheme
        call_id = self.id or created_at.strftime("%Y-%m-%d-%H")
        return Call(
            id=call_id,
            created_at=created_at,
            entry_price=self.entry_price,
            direction=self.direction,
            confidence=self.confidence,
            target=self.target,
            stop_loss=self.stop_loss,
        )
