"""Parsing and display helpers for lots and history records."""

from datetime import date, datetime
from typing import Optional, Union

from dateutil import parser
from dateutil.relativedelta import relativedelta

_RELATIVE_DAYS = {"today": 0, "tomorrow": 1, "yesterday": -1}
_UNITS = {"day": "days", "week": "weeks", "month": "months", "year": "years"}


def _relative_offset(words: list[str]) -> Optional[relativedelta]:
    """Turn ["3", "weeks"] into relativedelta(weeks=3)."""
    if len(words) < 2:
        return None
    try:
        amount = int(words[0])
    except ValueError:
        return None
    unit = _UNITS.get(words[1].rstrip("s"))
    if unit is None:
        return None
    return relativedelta(**{unit: amount})


def parse_expiry_date(value: Union[str, date, None], dayfirst: bool = False) -> Optional[date]:
    """
    Parse a lot expiry date given as a date or a free-form string.

    Supports:
    - ISO format: "2025-02-15", "2025/02/15"
    - Relative terms: "today", "tomorrow", "next week", "next month"
    - Offsets: "in 3 days", "6 months from now"
    - Month/Day: "April 15" (rolls to next year once the day has passed)
    - Day-first dates such as "15/02/2025" when ``dayfirst`` is set

    Args:
        value: Date or string to parse
        dayfirst: Read ambiguous numeric dates as DD/MM/YYYY

    Returns:
        date object if parsing succeeds, None if invalid

    Examples:
        >>> parse_expiry_date("2025-02-15")
        date(2025, 2, 15)

        >>> parse_expiry_date("15/02/2025", dayfirst=True)
        date(2025, 2, 15)

        >>> parse_expiry_date("soon")
        None
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value or not value.strip():
        return None

    text = value.strip()
    lower = text.lower()
    today = datetime.now().date()

    if lower in _RELATIVE_DAYS:
        return today + relativedelta(days=_RELATIVE_DAYS[lower])
    if lower.startswith("next ") and lower[5:] in _UNITS:
        return today + relativedelta(**{_UNITS[lower[5:]]: 1})

    offset = None
    if lower.startswith("in "):
        offset = _relative_offset(lower[3:].split())
    elif lower.endswith(" from now"):
        offset = _relative_offset(lower[: -len(" from now")].split())
    if offset is not None:
        return today + offset

    try:
        parsed = parser.parse(text, dayfirst=dayfirst, default=datetime(today.year, today.month, today.day))
    except (ValueError, OverflowError, parser.ParserError):
        return None
    result = parsed.date()
    # No year given and the day already passed this year
    if result < today and str(parsed.year) not in text:
        result = result.replace(year=today.year + 1)
    return result


_ACTION_LABELS = {
    "created": "Created",
    "deleted": "Removed",
    "updated": "Updated",
    "product_details_updated": "Details updated",
    "quantity_changed": "Quantity changed",
    "lote_created": "Lot created",
    "lote_updated": "Lot updated",
    "lote_deleted": "Lot removed",
    "product_batch_context": "Batch summary",
    "add": "Added",
    "remove": "Removed",
    "update": "Updated",
}

_POSITIVE_ACTIONS = {"created", "add", "lote_created"}
_NEGATIVE_ACTIONS = {"deleted", "remove", "lote_deleted"}
_UPDATE_ACTIONS = {"updated", "update", "product_details_updated", "lote_updated"}


def format_action_name(action: str) -> str:
    """Human-readable label for an action tag; unknown tags get underscores replaced."""
    return _ACTION_LABELS.get(action, action.replace("_", " "))


def action_tone(action: str) -> str:
    """Classify an action as "positive", "negative", "update" or "neutral"."""
    if action in _POSITIVE_ACTIONS:
        return "positive"
    if action in _NEGATIVE_ACTIONS:
        return "negative"
    if action in _UPDATE_ACTIONS:
        return "update"
    return "neutral"


def format_quantity_change(change: Optional[float], unit: str = "") -> str:
    """Signed quantity with optional unit, e.g. "+30 L", "-20 kg", "0"."""
    if change is None:
        return "-"
    number = f"{change:+g}" if change else "0"
    return f"{number} {unit}".strip()


def format_id(entity_id: str, max_length: int = 6) -> str:
    """Shorten a UUID for display."""
    if not entity_id or len(entity_id) <= max_length:
        return entity_id
    return entity_id[:max_length]
