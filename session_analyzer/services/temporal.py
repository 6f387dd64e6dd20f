"""
Date normalization for generated aggregation pipelines.

The LLM is told to write dates as plain ISO-8601 strings because it cannot emit
BSON dates. MongoDB compares dates against strings by type, not by value, so
every such string has to become a datetime before the pipeline reaches the
driver.

Only full UTC timestamps are recognised: "2025-01-01T00:00:00Z" and
"2025-01-01T00:00:00.000Z". Bare dates ("2025-01-01") and explicit offsets
("+05:30") stay strings.
"""
import re
from datetime import datetime, timezone
from typing import Any, Optional

ISO_DATETIME_RE = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z")

# Single-key wrappers the LLM sometimes produces despite instructions.
DATE_WRAPPER_KEYS = ("$date", "dateValue")


def is_iso_datetime(text: Any) -> bool:
    return isinstance(text, str) and ISO_DATETIME_RE.fullmatch(text) is not None


def _parse_iso(text: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _unwrap_date(value: dict) -> Optional[datetime]:
    if len(value) != 1:
        return None
    key, inner = next(iter(value.items()))
    if key not in DATE_WRAPPER_KEYS or not isinstance(inner, str):
        return None
    return _parse_iso(inner.strip())


def normalize_dates(value: Any) -> Any:
    """Return a copy of value with every date-shaped string replaced by a datetime.

    The input is never mutated. Strings that match the pattern but name an
    impossible instant (month 13, hour 25) are kept as strings.
    """
    if isinstance(value, str):
        if ISO_DATETIME_RE.fullmatch(value):
            parsed = _parse_iso(value)
            return parsed if parsed is not None else value
        return value
    if isinstance(value, dict):
        unwrapped = _unwrap_date(value)
        if unwrapped is not None:
            return unwrapped
        return {key: normalize_dates(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_dates(item) for item in value]
    return value


def dates_to_iso(value: Any) -> Any:
    """Inverse rendering used when a pipeline is shown back to the LLM."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        text = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
        return text.replace("+00:00", "Z")
    if isinstance(value, dict):
        return {key: dates_to_iso(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [dates_to_iso(item) for item in value]
    return value
