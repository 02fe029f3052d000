from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterator, Optional
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_today(tz_name: str, clock: Optional[Clock] = None) -> date:
    if clock is not None:
        # Clocks report naive UTC.
        now = clock().replace(tzinfo=timezone.utc)
        return now.astimezone(ZoneInfo(tz_name)).date()
    return datetime.now(ZoneInfo(tz_name)).date()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    return datetime.combine(day, time.min), datetime.combine(day, time.max)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)


ALL_TIME_START = date(1970, 1, 1)


def last_n_days(days: int, *, today: Optional[date] = None) -> Period:
    today = today or date.today()
    if days < 1:
        raise ValueError("Day count must be positive")
    return Period(f"last_{days}_days", today - timedelta(days=days - 1), today)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        if start or end:
            return resolve_period(
                "custom",
                start or ALL_TIME_START.isoformat(),
                end or today.isoformat(),
                today=today,
            )
        return Period("all", ALL_TIME_START, today)
    if period == "last_7_days":
        return last_n_days(7, today=today)
    if period == "last_30_days":
        return last_n_days(30, today=today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period != "this_month":
        raise ValueError(f"Unknown period: {period}")

    first = today.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    end_this = next_month - date.resolution
    return Period("this_month", first, end_this)
