from __future__ import annotations
from datetime import date, datetime, timedelta, timezone

DAY_S = 86_400


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def parse_day(s: str | date) -> date:
    if isinstance(s, date):
        return s
    return date.fromisoformat(s)


def day_bounds(d: str | date) -> tuple[int, int]:
    """[start, end) unix seconds of a UTC day."""
    d = parse_day(d)
    start = int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp())
    return start, start + DAY_S


def days(start: str | date, end: str | date) -> list[date]:
    a, b = parse_day(start), parse_day(end)
    return [a + timedelta(days=i) for i in range((b - a).days + 1)]


def format_units(amount: int, decimals: int) -> str:
    neg = amount < 0
    q, r = divmod(abs(amount), 10 ** decimals)
    s = f"{q}.{r:0{decimals}d}".rstrip("0").rstrip(".") if decimals else str(q)
    return "-" + s if neg else s
