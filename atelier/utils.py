from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def parse_ts(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp (or epoch seconds); `None` on anything else.

    Naive timestamps are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def excerpt(text: str | None, limit: int = 1000) -> str:
    return (text or "")[:limit]


def output_text(output: Any, sep: str = "") -> str:
    """Flatten a prediction `output` (string or streamed token list) to text."""
    if output is None:
        return ""
    if isinstance(output, (list, tuple)):
        return sep.join(str(part) for part in output if part is not None)
    return str(output)


__all__ = [
    "utcnow",
    "to_iso",
    "parse_ts",
    "round_half_up",
    "excerpt",
    "output_text",
]
