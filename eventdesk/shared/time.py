from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, matching stored columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def fmt_long_date(value: datetime | date | None) -> str:
    """Render dates as 'January 15, 2025'."""
    if not value:
        return ""
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def fmt_date_range(start: datetime | date | None, end: datetime | date | None) -> str:
    if not start and not end:
        return ""
    start = start or end
    end = end or start
    start_day = start.date() if isinstance(start, datetime) else start
    end_day = end.date() if isinstance(end, datetime) else end
    if start_day == end_day:
        return fmt_long_date(start_day)
    return f"{fmt_long_date(start_day)} - {fmt_long_date(end_day)}"
