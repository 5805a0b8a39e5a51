"""
UTC timestamp helpers.

Every timestamp persisted by the risk gate is a UTC instant written in one
text form: ``2025-11-21T02:56:03.685Z`` (millisecond precision, ``Z``
suffix). Window queries compare these strings directly, so a row written
with a local offset (``+08:00``) or in SQLite's ``YYYY-MM-DD HH:MM:SS``
shape silently falls outside its window. ``parse_utc`` accepts all of those
shapes so maintenance can rewrite them.
"""
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_iso(dt: datetime) -> str:
    """Format a datetime in the canonical persisted form."""
    return ensure_utc(dt).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_utc(value) -> datetime:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings with ``Z`` or numeric offsets,
    naive strings (taken as UTC) and the space-separated SQLite form.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if value is None:
        raise ValueError("timestamp is missing")

    text = str(value).strip()
    if not text:
        raise ValueError("timestamp is empty")
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"

    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError as e:
        raise ValueError(f"unrecognised timestamp {value!r}") from e


def is_canonical(value) -> bool:
    """True if ``value`` is already in the canonical persisted form."""
    if not isinstance(value, str):
        return False
    try:
        return to_utc_iso(parse_utc(value)) == value
    except ValueError:
        return False
