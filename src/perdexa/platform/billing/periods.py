"""Calendar helpers for billing periods. All months are UTC months."""

import calendar
import re
from datetime import UTC, datetime, timedelta

MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")


def month_start(year: int, month: int) -> datetime:
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1..12, got {month}")
    return datetime(year, month, 1, tzinfo=UTC)


def next_month_start(year: int, month: int) -> datetime:
    if month == 12:
        return month_start(year + 1, 1)
    return month_start(year, month + 1)


def month_end(year: int, month: int) -> datetime:
    """Last second of the month."""
    return next_month_start(year, month) - timedelta(seconds=1)


def period_key(year: int, month: int) -> str:
    month_start(year, month)
    return f"{year:04d}-{month:02d}"


def parse_month_key(value: str) -> tuple[int, int]:
    """Parse ``YYYY-MM``; raises ValueError on anything else."""
    match = MONTH_KEY_RE.match(value.strip())
    if not match:
        raise ValueError(f"invalid month key: {value!r}")
    year, month = int(match.group(1)), int(match.group(2))
    month_start(year, month)
    return year, month


def add_months(value: datetime, months: int) -> datetime:
    """Same day ``months`` later, clamped to the last day of the target month."""
    index = value.month - 1 + months
    year = value.year + index // 12
    month = index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
