"""Shared parsing helpers for blueprints and services."""
from datetime import date, datetime

from agencyops.core.exceptions import ValidationError


def parse_date(value):
    """Parse a date string (ISO or DD/MM/YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD/MM/YYYY (the format the portals display)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d/%m/%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value, field: str = "date"):
    """Parse a date, raising ValidationError on bad input.

    Same as parse_date() but a non-empty unparseable value is an error
    rather than None.
    """
    if value in (None, ""):
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(
            f"Invalid {field}. Use YYYY-MM-DD or DD/MM/YYYY.",
            details={field: "invalid date"},
        )
    return parsed


def parse_positive_int(value, field: str, default: int | None = None) -> int:
    """Coerce to int ≥ 1 or raise ValidationError."""
    if value in (None, ""):
        if default is not None:
            return default
        raise ValidationError(f"{field} is required", details={field: "required"})
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: "not an integer"})
    if number < 1:
        raise ValidationError(f"{field} must be at least 1", details={field: "must be ≥ 1"})
    return number


def clean_text(value) -> str:
    """Strip a free-text input; None becomes ''."""
    if value is None:
        return ""
    return str(value).strip()
