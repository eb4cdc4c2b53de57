"""UTC calendar helpers: month/day keys, ISO parsing, anniversary dates."""

import calendar
from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into aware UTC. Raises ValueError if malformed."""
    if not isinstance(value, str) or not value:
        raise ValueError("timestamp must be an ISO-8601 string")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


def month_key(moment: datetime) -> str:
    """'YYYY-MM' of a UTC moment."""
    return as_utc(moment).strftime("%Y-%m")


def day_key(moment: datetime) -> str:
    """'YYYY-MM-DD' of a UTC moment."""
    return as_utc(moment).strftime("%Y-%m-%d")


def parse_month(month: str) -> tuple[int, int]:
    """Split 'YYYY-MM' into (year, month). Raises ValueError if malformed."""
    try:
        year_text, month_text = month.split("-")
        year, mon = int(year_text), int(month_text)
    except (AttributeError, ValueError):
        raise ValueError(f"month must be YYYY-MM, got {month!r}")
    if not 1 <= mon <= 12 or len(year_text) != 4:
        raise ValueError(f"month must be YYYY-MM, got {month!r}")
    return year, mon


def shift_month(month: str, delta: int) -> str:
    year, mon = parse_month(month)
    index = year * 12 + (mon - 1) + delta
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def month_bounds(month: str) -> tuple[datetime, datetime]:
    """``[start, end)`` of a 'YYYY-MM' month in UTC."""
    year, mon = parse_month(month)
    next_year, next_mon = parse_month(shift_month(month, 1))
    return (
        datetime(year, mon, 1, tzinfo=timezone.utc),
        datetime(next_year, next_mon, 1, tzinfo=timezone.utc),
    )


def month_start(moment: datetime) -> datetime:
    moment = as_utc(moment)
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def effective_anniversary(anniversary_day: int, year: int, month: int) -> int:
    """Anniversary day clamped to the month's length (day 31 bills on the 30th in April)."""
    return min(anniversary_day, days_in_month(year, month))


def next_billing_date(anniversary_day: int, today: date) -> date:
    """Anniversary day in the month after ``today``, clamped to that month's last day."""
    year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
    return date(year, month, effective_anniversary(anniversary_day, year, month))


def due_date(moment: datetime, days: int) -> datetime:
    return as_utc(moment) + timedelta(days=days)


def upcoming_billing_date(anniversary_day: int, today: date) -> date:
    """This month's anniversary while it is still ahead of ``today``, otherwise next month's."""
    this_month = effective_anniversary(anniversary_day, today.year, today.month)
    if today.day < this_month:
        return date(today.year, today.month, this_month)
    return next_billing_date(anniversary_day, today)
