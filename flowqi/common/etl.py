"""
Shared ETL utilities for data transformation and extraction.

Provides parsing and coercion helpers used by the Exact Online sync jobs
and the Excel importer.
"""

import logging
import math
import re
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

logger = logging.getLogger(__name__)

_ODATA_DATE_RE = re.compile(r"/Date\((-?\d+)([+-]\d+)?\)/")

_TRUE_VALUES = {"1", "true", "ja", "yes", "y", "j", "waar"}
_FALSE_VALUES = {"0", "false", "nee", "no", "n", "onwaar", ""}


def parse_odata_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an Exact Online OData date.

    Exact returns dates as "/Date(milliseconds)/" in UTC. ISO strings are
    accepted too, since some endpoints already return them.

    Examples:
        >>> parse_odata_date("/Date(1704067200000)/")
        datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
    """
    if not value or not isinstance(value, str):
        return None

    match = _ODATA_DATE_RE.match(value)
    if match:
        milliseconds = int(match.group(1))
        return datetime.fromtimestamp(milliseconds / 1000, tz=UTC)

    return parse_date(value)


def parse_date(date_str: str) -> Optional[datetime]:
    """
    Parse date string supporting common API date formats.

    Supports both ISO 8601 and YYYY-MM-DD formats.

    Args:
        date_str: Date string to parse

    Returns:
        Parsed datetime object, None if parsing fails
    """
    if not date_str or not isinstance(date_str, str):
        return None

    try:
        if "T" in date_str:
            date_str = date_str.replace("Z", "+00:00")
            return datetime.fromisoformat(date_str)
        else:
            return datetime.strptime(date_str, "%Y-%m-%d")
    except (ValueError, TypeError):
        try:
            return datetime.strptime(date_str, "%Y-%m-%d %H:%M:%S")
        except (ValueError, TypeError):
            logger.warning(f"Could not parse date string: {date_str}")
            return None


def parse_iso_date(value: Any) -> date:
    """
    Parse a required YYYY-MM-DD (or full ISO timestamp) value into a date.

    Raises:
        ValueError: If the value is empty or not a date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    parsed = parse_date(value) if isinstance(value, str) else None
    if parsed is None:
        raise ValueError(f"Invalid date: {value!r}")
    return parsed.date()


def is_blank(value: Any) -> bool:
    """True for None, NaN and whitespace-only strings (empty spreadsheet cells)."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def clean_cell(value: Any) -> Any:
    """Return None for blank cells and stripped text for strings."""
    if is_blank(value):
        return None
    if isinstance(value, str):
        return value.strip()
    return value


def coerce_decimal(value: Any) -> Optional[Decimal]:
    """
    Safely coerce value to Decimal.

    Examples:
        >>> coerce_decimal("-125.50")
        Decimal('-125.50')
        >>> coerce_decimal(None)
        None
    """
    if is_blank(value):
        return None

    try:
        # str() first so floats keep their printed precision
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning(f"Could not coerce to decimal: {value!r}")
        return None


def coerce_bool(value: Any, default: bool = False) -> bool:
    """Interpret spreadsheet and API flags ("ja", "nee", 1, True, ...)."""
    if isinstance(value, bool):
        return value
    if is_blank(value):
        return default
    if isinstance(value, (int, float)):
        return value != 0

    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return default


def coerce_int(value: Any) -> Optional[int]:
    """
    Safely coerce value to integer.

    Examples:
        >>> coerce_int("95.0")
        95
        >>> coerce_int("invalid")
        None
    """
    if value is None:
        return None

    try:
        if isinstance(value, str):
            if "." in value:
                return int(float(value))
            return int(value)

        if isinstance(value, (int, float)):
            return int(value)

        return None
    except (ValueError, TypeError):
        return None
