from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import NamedTuple, Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings

DayLike = Union[date, datetime, str, None]

END_OF_DAY = time(23, 59, 59, 999000)
NAMED_PERIODS = ("week", "month", "year")
GRANULARITIES = ("day", "week", "month", "year")

_WEEK = timedelta(days=7)


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


class Bucket(NamedTuple):
    sort_key: tuple[int, ...]
    label: str


def local_now() -> datetime:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def to_local_naive(moment: datetime) -> datetime:
    """Wall-clock time in the configured timezone; naive values pass through."""
    if moment.tzinfo is None:
        return moment
    tz = ZoneInfo(get_settings().timezone)
    return moment.astimezone(tz).replace(tzinfo=None)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, END_OF_DAY)


def start_of_week(moment: datetime) -> datetime:
    """Sunday 00:00 of the week containing ``moment``."""
    days_since_sunday = (moment.weekday() + 1) % 7
    return start_of_day(moment.date() - timedelta(days=days_since_sunday))


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def subtract_months(moment: datetime, months: int) -> datetime:
    month_index = (moment.year * 12) + (moment.month - 1) - months
    year = month_index // 12
    month = (month_index % 12) + 1
    day = min(moment.day, days_in_month(year, month))
    return moment.replace(year=year, month=month, day=day)


def _named_range(slug: str, now: datetime) -> Period:
    if slug == "week":
        start = start_of_week(now)
        end = end_of_day(start.date() + timedelta(days=6))
        return Period("week", start, end)
    if slug == "year":
        return Period(
            "year",
            datetime(now.year, 1, 1),
            end_of_day(date(now.year, 12, 31)),
        )
    last_day = days_in_month(now.year, now.month)
    return Period(
        "month",
        datetime(now.year, now.month, 1),
        end_of_day(date(now.year, now.month, last_day)),
    )


def _parse_day(value: DayLike) -> Optional[Union[date, datetime]]:
    if value is None or value == "":
        return None
    if isinstance(value, (date, datetime)):
        return value
    if "T" in value or " " in value:
        return datetime.fromisoformat(value)
    return date.fromisoformat(value)


def _apply_bounds(period: Period, start: DayLike, end: DayLike) -> Period:
    start_value = _parse_day(start)
    end_value = _parse_day(end)
    if start_value is None and end_value is None:
        return period

    if isinstance(start_value, datetime):
        start_at = start_value
    elif start_value is not None:
        start_at = start_of_day(start_value)
    else:
        start_at = period.start

    if end_value is not None:
        end_day = end_value.date() if isinstance(end_value, datetime) else end_value
        end_at = end_of_day(end_day)
    else:
        end_at = period.end

    if start_at > end_at:
        raise ValueError("Start date must be before end date")
    return Period(period.slug, start_at, end_at)


def resolve_period(
    period: Optional[str],
    start: DayLike = None,
    end: DayLike = None,
    *,
    now: Optional[datetime] = None,
) -> Period:
    """Resolve a summary window.

    ``week``, ``month`` and ``year`` are calendar windows around ``now``; any
    other name falls back to ``month``. Explicit ``start``/``end`` bounds
    override the named window, with ``end`` stretched to the last millisecond
    of its day.
    """
    now = now or local_now()
    slug = period if period in NAMED_PERIODS else "month"
    return _apply_bounds(_named_range(slug, now), start, end)


def resolve_trend_range(
    period: Optional[str],
    start: DayLike = None,
    end: DayLike = None,
    *,
    now: Optional[datetime] = None,
) -> Period:
    now = now or local_now()
    slug = period if period in NAMED_PERIODS else "month"
    if slug == "week":
        base = Period("week", now - 12 * _WEEK, now)
    elif slug == "year":
        base = Period("year", subtract_months(now, 5 * 12), now)
    else:
        base = Period("month", subtract_months(now, 12), now)
    return _apply_bounds(base, start, end)


def week_number(moment: datetime) -> int:
    micros = (moment - datetime(moment.year, 1, 1)) // timedelta(microseconds=1)
    week_micros = _WEEK // timedelta(microseconds=1)
    # Ceiling division; the first instant of the year counts as week 1.
    weeks = -(-micros // week_micros)
    return max(1, weeks)


def bucket_for(moment: datetime, granularity: str) -> Bucket:
    if granularity == "day":
        return Bucket(
            (moment.year, moment.month, moment.day), moment.date().isoformat()
        )
    if granularity == "week":
        week = week_number(moment)
        return Bucket((moment.year, week), f"{moment.year:04d}-W{week:02d}")
    if granularity == "month":
        return Bucket((moment.year, moment.month), f"{moment.year:04d}-{moment.month:02d}")
    if granularity == "year":
        return Bucket((moment.year,), f"{moment.year:04d}")
    raise ValueError(f"Unknown granularity: {granularity}")
