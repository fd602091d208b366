"""Shared parsing helpers for request payloads.

parse_date_input:  strict date parsing (raises ValueError on bad input)
parse_int:         strict integer parsing with optional bounds
clean_str:         strip a value, mapping blanks to None
"""
import logging
from datetime import date, datetime

logger = logging.getLogger(__name__)


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, YYYY-MM-DDTHH:MM:SS, DD.MM.YYYY, date objects.
    Returns None for empty input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(text, "%d.%m.%Y").date()
    except ValueError as exc:
        raise ValueError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
        ) from exc


def parse_int(value, *, minimum=None, maximum=None):
    """Parse an integer, raising ValueError when out of range or malformed.

    Booleans are rejected even though they are ints in Python.
    """
    if isinstance(value, bool):
        raise ValueError("Expected an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("Expected an integer") from exc
    if isinstance(value, float) and value != number:
        raise ValueError("Expected an integer")
    if minimum is not None and number < minimum:
        raise ValueError(f"Must be >= {minimum}")
    if maximum is not None and number > maximum:
        raise ValueError(f"Must be <= {maximum}")
    return number


def clean_str(value):
    """Return the stripped string, or None for missing/blank input."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None
