"""Time helpers shared by models, crud and services."""

from __future__ import annotations

from datetime import date, datetime


def utc_now_iso() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def today() -> date:
    return datetime.utcnow().date()


def as_date(value: date | datetime | str | None) -> date | None:
    """Coerce ``value`` to a bare date, dropping any time component."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return date.fromisoformat(text[:10])
