import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

_MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class MonthPeriod:
    key: str
    start: date
    end: date

    @property
    def year(self) -> int:
        return self.start.year

    @property
    def month(self) -> int:
        return self.start.month


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def resolve_month(key: Optional[str], *, today: Optional[date] = None) -> MonthPeriod:
    """Parse a ``yyyy-mm`` key. An empty key means the month containing ``today``."""
    if not key:
        today = today or date.today()
        key = month_key(today)
    match = _MONTH_KEY_RE.match(key.strip())
    if not match:
        raise ValueError(f"Invalid month key: {key!r}")
    year = int(match.group(1))
    month = int(match.group(2))
    if not 1 <= month <= 12 or year < 1970:
        raise ValueError(f"Invalid month key: {key!r}")
    return MonthPeriod(f"{year:04d}-{month:02d}", date(year, month, 1), _month_end(year, month))


def previous_month(period: MonthPeriod) -> MonthPeriod:
    last_of_previous = period.start - date.resolution
    return resolve_month(month_key(last_of_previous))
