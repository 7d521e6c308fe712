"""Shared timestamp and reporting-period helpers.

Snapshot versions are calendar dates (``YYYY-MM-DD``), reconciliation target
periods are calendar months (``YYYY-MM``), and every persisted instant is an
ISO-8601 string in UTC. The helpers here are the only place those
conversions happen.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any

UTC = timezone.utc

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")
_SECONDS_PER_DAY = 86400.0


def coerce_timestamp(value: Any, *, index: int | None = None) -> datetime:
    """Convert *value* to a timezone-aware UTC datetime.

    Parameters
    ----------
    value:
        The value to convert.  Accepted types:

        * ``datetime`` – returned as-is (made tz-aware if naive).
        * ``date`` – interpreted as midnight UTC.
        * ``str`` – parsed via ``datetime.fromisoformat`` with ``Z``-suffix
          handling.  A bare ``YYYY-MM-DD`` string is treated as midnight UTC.
        * Objects with a ``to_pydatetime()`` method (e.g. pandas Timestamp)
          are converted first.

    index:
        Optional positional index for richer error messages when processing
        sequences of records.

    Returns
    -------
    datetime
        A timezone-aware ``datetime`` in UTC.

    Raises
    ------
    TypeError | ValueError
        If *value* cannot be interpreted as a timestamp.
    """
    if hasattr(value, "to_pydatetime"):
        value = value.to_pydatetime()

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            _raise(ValueError, "timestamp string cannot be empty", index)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            _raise(ValueError, f"Invalid timestamp '{value}'", index)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)

    _raise(TypeError, f"Unsupported timestamp type {type(value)}", index)
    raise AssertionError("unreachable")


def coerce_date(value: Any) -> date:
    """Return the calendar date for a date, datetime, or ISO string."""

    if isinstance(value, datetime):
        return coerce_timestamp(value).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value.strip()) == 10:
        return date.fromisoformat(value.strip())
    return coerce_timestamp(value).date()


def iso_date(value: Any) -> str:
    return coerce_date(value).isoformat()


def now_utc() -> datetime:
    return datetime.now(UTC)


def now_iso(ts: datetime | None = None) -> str:
    value = ts or now_utc()
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_period(period: str) -> tuple[int, int]:
    """Split a ``YYYY-MM`` period into ``(year, month)``."""

    match = _PERIOD_RE.match(str(period or ""))
    if not match:
        raise ValueError(f"Invalid target period '{period}'; expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid target period '{period}'; month out of range")
    return year, month


def period_of(value: Any) -> str:
    """Return the ``YYYY-MM`` period that contains *value*."""

    day = coerce_date(value)
    return f"{day.year:04d}-{day.month:02d}"


def month_end(period_or_date: Any) -> date:
    """Last calendar day of a ``YYYY-MM`` period or of the month containing a date."""

    if isinstance(period_or_date, str) and _PERIOD_RE.match(period_or_date):
        year, month = parse_period(period_or_date)
    else:
        day = coerce_date(period_or_date)
        year, month = day.year, day.month
    return date(year, month, calendar.monthrange(year, month)[1])


def resolve_logical_date(
    data_as_of_date: Any,
    *,
    is_closing_period_data: bool = False,
) -> str:
    """Resolve the logical date a snapshot should be filed under.

    Closing-period data describes the prior month even though it is fetched
    in the following one, so the logical date is the last day of the month
    of ``data_as_of_date``. Outside the closing period the logical date and
    the as-of date coincide.
    """

    if is_closing_period_data:
        return month_end(data_as_of_date).isoformat()
    return iso_date(data_as_of_date)


def days_between(start: Any, end: Any) -> float:
    """Fractional days elapsed from *start* to *end*."""

    delta = coerce_timestamp(end) - coerce_timestamp(start)
    return delta.total_seconds() / _SECONDS_PER_DAY


def add_days(value: Any, days: float) -> datetime:
    return coerce_timestamp(value) + timedelta(days=days)


def _raise(
    exc_type: type[Exception],
    message: str,
    index: int | None,
) -> None:
    position = f" at index {index}" if index is not None else ""
    raise exc_type(f"{message}{position}")


__all__ = [
    "UTC",
    "add_days",
    "coerce_date",
    "coerce_timestamp",
    "days_between",
    "iso_date",
    "month_end",
    "now_iso",
    "now_utc",
    "parse_period",
    "period_of",
    "resolve_logical_date",
]
