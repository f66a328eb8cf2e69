from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class Month:
    year: int
    month: int

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def label(self) -> str:
        return self.start.strftime("%b %Y")

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return add_months(self.start, 1) - date.resolution

    def contains(self, day: date) -> bool:
        return day.year == self.year and day.month == self.month


def month_of(day: date) -> Month:
    return Month(day.year, day.month)


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def trailing_months(today: date, count: int) -> list[Month]:
    """Return ``count`` calendar months ending with the month of ``today``, oldest first."""
    first = today.replace(day=1)
    return [month_of(add_months(first, -offset)) for offset in range(count - 1, -1, -1)]


def trailing_days(today: date, count: int) -> list[date]:
    return [today - timedelta(days=offset) for offset in range(count - 1, -1, -1)]


def to_local_naive(value: datetime, timezone: str) -> datetime:
    """Wall-clock time in ``timezone`` without tzinfo, as stored in the database."""
    if value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(timezone)).replace(tzinfo=None)
    return value.replace(microsecond=0)


def local_now(timezone: str) -> datetime:
    return to_local_naive(datetime.now(ZoneInfo(timezone)), timezone)


def local_today(timezone: str) -> date:
    return local_now(timezone).date()
