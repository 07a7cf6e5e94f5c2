"""Retention: calls older than the window are purged, resolved or not."""

import logging
from datetime import datetime, timedelta, timezone

from pydantic import TypeAdapter, ValidationError

from signal_outcomes.schemas.signal import Call
from signal_outcomes.utils.constants import RETENTION_WINDOW

logger = logging.getLogger(__name__)

_DATETIME = TypeAdapter(datetime)
_CREATED_KEYS = ("createdAt", "created_at", "timestamp")


def apply_retention(
    calls: list[Call],
    now: datetime,
    window: timedelta = RETENTION_WINDOW,
) -> tuple[list[Call], list[Call]]:
    """Split calls into (kept, purged); a call is kept while ``now - createdAt <= window``."""
    kept = []
    purged = []
    for call in calls:
        if now - call.created_at <= window:
            kept.append(call)
        else:
            purged.append(call)

    if purged:
        logger.info(f"Purged {len(purged)} call(s) older than {window.days} days")
    return kept, purged


def record_created_at(record) -> datetime | None:
    """Best-effort creation time of a raw ledger record (ISO string or epoch s/ms)."""
    if not isinstance(record, dict):
        return None
    for key in _CREATED_KEYS:
        value = record.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            created_at = _DATETIME.validate_python(value)
        except ValidationError:
            continue
        if created_at.tzinfo is None:
            return created_at.replace(tzinfo=timezone.utc)
        return created_at
    return None


def apply_retention_raw(
    records: list,
    now: datetime,
    window: timedelta = RETENTION_WINDOW,
) -> tuple[list, list]:
    """Retention for records that failed validation.

    Records whose age cannot be read are kept.
    """
    kept = []
    purged = []
    for record in records:
        created_at = record_created_at(record)
        if created_at is not None and now - created_at > window:
            purged.append(record)
        else:
            kept.append(record)

    if purged:
        logger.info(f"Purged {len(purged)} malformed record(s) older than {window.days} days")
    return kept, purged
