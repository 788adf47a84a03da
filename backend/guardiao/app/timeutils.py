"""Timezone helpers."""
from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Treat naive datetimes coming back from SQLite as UTC."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    aware = ensure_aware(value)
    return aware.isoformat() if aware is not None else None


__all__ = ["ensure_aware", "isoformat", "utcnow"]
