"""Small helpers shared by the service layer."""

from __future__ import annotations

import enum
from datetime import datetime


def status_str(value: enum.Enum | str | None) -> str | None:
    """Return the plain string of an enum column (SQLite may hand back raw strings)."""
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return value.value
    return str(value)


def iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None
