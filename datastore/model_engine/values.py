"""
Value classification and coercion.

Filter operands and input payloads arrive untyped (decoded JSON). This
module gives them a small closed set of shapes so the filter compilers can
match on a ValueKind instead of probing types ad hoc, and it owns the two
coercion paths:

- to_calculated_value: operands of ordering comparisons
- coerce_field_value: input values written to a typed field

Invariants:
    - The strings "NULL", "Null" and "null" denote an explicit null
    - Timestamps produced here are naive and expressed in UTC
    - coerce_field_value never raises; it returns the raw value instead
    - to_calculated_value falls back to "now" for unparseable strings
      unless strict mode is requested

How to change safely:
    - Append timestamp formats at the end of TIMESTAMP_FORMATS; order matters
    - Keep the now() fallback unless every caller opts into strict mode
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from .errors import CoercionError

logger = logging.getLogger(__name__)

NULL_SENTINELS = frozenset({"NULL", "Null", "null"})

_NUMERIC_RE = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")

# Tried in order. Zone-less formats are read as UTC.
TIMESTAMP_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S%z",
    "%a, %d %b %Y %H:%M:%S %Z",  # RFC 1123
    "%a, %d %b %Y %H:%M:%S %z",  # RFC 1123 with numeric zone
    "%d %b %y %H:%M %Z",  # RFC 822
    "%d %b %y %H:%M %z",
    "%A, %d-%b-%y %H:%M:%S %Z",  # RFC 850
    "%a %b %d %H:%M:%S %Z %Y",  # Unix date
    "%a %b %d %H:%M:%S %Y",  # ANSI C
    "%H:%M:%S",
)


class ValueKind(Enum):
    """Closed set of shapes an untyped value can take."""

    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    LIST = "list"
    MAP = "map"
    # Already typed by a driver or by coercion (datetime, native ids, bytes)
    OPAQUE = "opaque"


def classify(value: Any) -> ValueKind:
    """Classify a value, treating null sentinels as NULL.

    Example:
        >>> classify("null")
        <ValueKind.NULL: 'null'>
        >>> classify([1, 2])
        <ValueKind.LIST: 'list'>
    """
    if value is None or is_null_sentinel(value):
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple, set, frozenset)):
        return ValueKind.LIST
    if isinstance(value, dict):
        return ValueKind.MAP
    return ValueKind.OPAQUE


def is_null_sentinel(value: Any) -> bool:
    return isinstance(value, str) and value in NULL_SENTINELS


def normalize_null(value: Any) -> Any:
    """Replace a null sentinel with None, recursing into lists."""
    if is_null_sentinel(value):
        return None
    if isinstance(value, (list, tuple)):
        return [normalize_null(v) for v in value]
    return value


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(text: str) -> Optional[datetime]:
    """Parse a timestamp string against TIMESTAMP_FORMATS.

    Args:
        text: Candidate timestamp

    Returns:
        Naive UTC datetime, or None if no format matches
    """
    candidate = text.strip()
    if not candidate:
        return None
    for fmt in TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(candidate, fmt)
        except ValueError:
            continue
        return to_naive_utc(parsed)
    # fromisoformat covers offsets like +03:00 on every supported interpreter
    try:
        return to_naive_utc(datetime.fromisoformat(candidate))
    except ValueError:
        return None


def to_calculated_value(value: Any, strict: bool = False) -> Any:
    """Normalize an operand used in an ordering comparison.

    Numbers and datetimes pass through, numeric strings become floats and
    every other string is parsed as a timestamp. A string that matches no
    timestamp format becomes the current time; with ``strict=True`` it
    raises CoercionError instead.

    Args:
        value: Raw operand
        strict: Raise instead of substituting now()

    Returns:
        Coerced operand

    Raises:
        CoercionError: Unparseable string in strict mode
    """
    kind = classify(value)
    if kind in (ValueKind.NULL, ValueKind.BOOL, ValueKind.NUMBER):
        return None if kind == ValueKind.NULL else value
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if kind != ValueKind.STRING:
        return value

    if _NUMERIC_RE.match(value):
        return float(value)

    parsed = parse_timestamp(value)
    if parsed is not None:
        return parsed

    if strict:
        raise CoercionError(value)
    logger.warning(
        f"Operand {value!r} is neither numeric nor a timestamp; using current time",
        extra={"operand": value},
    )
    return utc_now()


def coerce_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off", ""):
            return False
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return value


def coerce_int(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return value


def coerce_float(value: Any) -> Any:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return value


def coerce_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        parsed = parse_timestamp(value)
        return parsed if parsed is not None else value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch seconds, or milliseconds when the magnitude says so
        seconds = value / 1000 if abs(value) > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    return value


_FIELD_COERCERS = {
    "date": coerce_datetime,
    "number": coerce_int,
    "float": coerce_float,
    "bool": coerce_bool,
}


def coerce_field_value(kind: str, value: Any) -> Any:
    """Best-effort coercion of an input value to a field kind.

    Identifier kinds are handled by the backend (native id type), so only
    date, number, float and bool are converted here. Anything that cannot
    be converted is returned unchanged.

    Args:
        kind: FieldKind value ("date", "number", ...)
        value: Raw input value

    Returns:
        Coerced value or the original value
    """
    if value is None or is_null_sentinel(value):
        return None
    coercer = _FIELD_COERCERS.get(kind)
    if coercer is None:
        return value
    return coercer(value)


def format_date_pattern(value: datetime, pattern: str) -> str:
    """Format a datetime with document-store ``$dateToString`` tokens.

    Supported tokens: %Y %m %d %H %M %S %L %j %V %G %u %w %%. Unknown
    tokens are copied through. ISO week tokens are computed here so the
    result does not depend on the platform strftime.
    """
    iso_year, iso_week, iso_weekday = value.isocalendar()
    tokens = {
        "Y": f"{value.year:04d}",
        "m": f"{value.month:02d}",
        "d": f"{value.day:02d}",
        "H": f"{value.hour:02d}",
        "M": f"{value.minute:02d}",
        "S": f"{value.second:02d}",
        "L": f"{value.microsecond // 1000:03d}",
        "j": f"{value.timetuple().tm_yday:03d}",
        "V": f"{iso_week:02d}",
        "G": f"{iso_year:04d}",
        "u": str(iso_weekday),
        "w": str(iso_weekday % 7 + 1),
        "%": "%",
    }
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "%" and i + 1 < len(pattern):
            token = pattern[i + 1]
            out.append(tokens.get(token, "%" + token))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)
