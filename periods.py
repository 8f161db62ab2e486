from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime
    end_inclusive: bool = False


def month_period(now: datetime) -> Period:
    """Calendar month holding ``now``: first instant up to the next month's first."""
    first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period("this_month", first, next_month)


def trailing_period(now: datetime, days: int, *, slug: Optional[str] = None) -> Period:
    if days <= 0:
        raise ValueError("Trailing window must cover at least one day")
    return Period(
        slug or f"last_{days}_days",
        now - timedelta(days=days),
        now,
        end_inclusive=True,
    )
