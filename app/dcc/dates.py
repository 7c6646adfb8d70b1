# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Timestamp parsing for condition and credential date fields.

Condition timestamps are strict: they must carry a zone offset.
Credential dates are lenient and fall back from a zoned timestamp to a
local timestamp to a plain date, the latter two taken as UTC.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from app.dcc.exceptions import InvalidConditionsError

__all__ = ["parse_condition_timestamp", "to_utc_datetime"]


def parse_condition_timestamp(field: str, value: Optional[str]) -> datetime:
    """Parse a zoned ISO-8601 condition timestamp.

    Raises
    ------
    InvalidConditionsError
        If *value* is missing, unparseable or carries no zone offset.
    """
    if not value:
        raise InvalidConditionsError.missing(field)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise InvalidConditionsError.unparseable(field, value) from None
    if parsed.tzinfo is None:
        raise InvalidConditionsError.unparseable(field, value)
    return parsed


def to_utc_datetime(value: Optional[str]) -> Optional[datetime]:
    """Resolve a credential date string to an aware UTC datetime.

    Tries, in order: zoned timestamp (normalized to UTC), local
    timestamp (taken as UTC), calendar date (start of day UTC).
    Returns ``None`` when *value* is empty or matches none of them.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        parsed = None
    if parsed is not None and "T" in value:
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    try:
        day = date.fromisoformat(value)
    except ValueError:
        return None
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
