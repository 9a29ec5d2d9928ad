import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%m/%d/%Y", "%Y/%m/%d")


class SystemClock:
    def now(self) -> datetime:
        return datetime.now()


@dataclass(frozen=True)
class FixedClock:
    """Clock pinned to one moment, for reproducible week and month windows."""

    moment: datetime

    def now(self) -> datetime:
        return self.moment


def as_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def day_of(value: date | datetime | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_naive(value).date()
    return value


def week_window(now: datetime) -> tuple[datetime, datetime]:
    """Monday 00:00 through Sunday 23:59:59.999999 of the week holding ``now``."""
    today = day_of(now)
    monday = today - timedelta(days=today.weekday())
    start = datetime.combine(monday, time.min)
    end = datetime.combine(monday + timedelta(days=6), time.max)
    return start, end


def month_window(year: int, month: int) -> tuple[date, date]:
    start = date(year, month, 1)
    end_day = calendar.monthrange(year, month)[1]
    return start, date(year, month, end_day)


def parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_naive(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    raw = str(value).strip()
    if not raw:
        return None

    try:
        return as_naive(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    return None
