"""
Date handling for values coming from the external ledger.

The ledger mixes three encodings: the legacy "/Date(1700000000000+0000)/"
form, ISO-8601 strings and bare epoch milliseconds. normalize_ledger_date is
the one place they are parsed.
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

_LEGACY_DATE = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_epoch_ms(ms: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_legacy(value: str) -> Optional[datetime]:
    match = _LEGACY_DATE.match(value)
    if not match:
        return None
    # The millisecond part is already UTC; the offset is informational.
    return _from_epoch_ms(int(match.group(1)))


def _parse_iso(value: str) -> Optional[datetime]:
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_ledger_date(value: Any) -> Optional[datetime]:
    """
    Parse a ledger date into an aware UTC datetime.

    Order of attempts: datetime/date objects, legacy /Date(ms)/ strings,
    ISO-8601 strings, epoch milliseconds (number or digit string).
    Returns None for anything unparseable; never raises.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        return _from_epoch_ms(value)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        parsed = _parse_legacy(text) or _parse_iso(text)
        if parsed is None and re.fullmatch(r"-?\d+", text):
            parsed = _from_epoch_ms(int(text))
        if parsed is None:
            logger.debug(f"Unparseable ledger date: {value!r}")
        return parsed

    return None


def ledger_date_filter(since: date) -> str:
    """Build the ledger's where-clause for invoices dated on or after `since`."""
    return f"Date>=DateTime({since.year},{since.month:02d},{since.day:02d})"


def days_ago(days: int) -> date:
    return (utcnow() - timedelta(days=days)).date()


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
