from __future__ import annotations

import calendar
import datetime as dt
from typing import Any

UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def utcfromtimestamp(ts: float) -> dt.datetime:
    return dt.datetime.fromtimestamp(ts, UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_api_time(value: Any) -> str:
    """
    Render a window bound as the export API expects it: UTC `YYYY-MM-DDTHH:MM:SSZ`.

    Strings pass through untouched; dates are taken as midnight UTC.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, dt.datetime):
        return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, dt.date):
        return dt.datetime(value.year, value.month, value.day, tzinfo=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    return str(value)


def shift_months(value: dt.datetime, months: int) -> dt.datetime:
    # Clamp to the last day of the target month (e.g. May 31 - 3 months -> Feb 28/29).
    total = value.year * 12 + (value.month - 1) + int(months)
    year, month0 = divmod(total, 12)
    month = month0 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def shift_years(value: dt.datetime, years: int) -> dt.datetime:
    return shift_months(value, 12 * int(years))


def parse_datetime(value: Any) -> dt.datetime | None:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        # Support "Z" suffix.
        s = s.replace("Z", "+00:00")
        try:
            return dt.datetime.fromisoformat(s)
        except Exception:
            return None
    return None
