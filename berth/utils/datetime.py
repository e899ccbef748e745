"""Datetime helpers.

Provides UTC timestamp helpers without using deprecated ``datetime.utcnow()``.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime.

    Session activity timestamps are compared as naive UTC values, so every
    timestamp produced by Berth goes through this helper.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def parse_runtime_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp reported by a container runtime.

    Docker reports nanosecond precision (``2024-01-01T10:00:00.123456789Z``),
    which ``datetime.fromisoformat`` does not accept, so the fraction is cut
    to microseconds first. Returns a naive UTC datetime, or None when the
    value is missing or unparseable.
    """
    if not value:
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        tz = rest[len(digits):]
        text = f"{head}.{digits[:6].ljust(6, '0')}{tz}"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed
