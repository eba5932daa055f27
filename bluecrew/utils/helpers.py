"""Shared coercion helpers used by the pricing rules, entities and blueprints.

coerce_number:  lenient numeric parsing (bad input → default, never raises)
utcnow:         timezone-aware "now" used for every audit timestamp
iso:            datetime → ISO string (None-safe) for to_dict() payloads
"""
from __future__ import annotations

import math
from datetime import datetime, timezone


def coerce_number(value, default: float = 0.0) -> float:
    """Parse a quantity, price or amount leniently.

    Returns ``default`` for None, empty strings, unparsable text, NaN and
    infinities. Supports:
    - int / float
    - numeric strings with surrounding whitespace ("  12.5 ")

    Form fields arrive as free text, so a malformed value must degrade to the
    default rather than fail the whole calculation.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return default
        try:
            number = float(text)
        except ValueError:
            return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
