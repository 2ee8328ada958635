from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import LedgerInvariantError


@dataclass(frozen=True, order=True)
class MonthOfYear:
    """A calendar month, ordered by (year, month)."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    def next(self) -> "MonthOfYear":
        if self.month == 12:
            return MonthOfYear(self.year + 1, 1)
        return MonthOfYear(self.year, self.month + 1)

    def previous(self) -> "MonthOfYear":
        if self.month == 1:
            return MonthOfYear(self.year - 1, 12)
        return MonthOfYear(self.year, self.month - 1)

    def is_valid(self) -> bool:
        return 2000 <= self.year <= 2100

    @classmethod
    def from_instant(cls, instant: datetime, zone: ZoneInfo) -> "MonthOfYear":
        local = _as_utc(instant).astimezone(zone)
        return cls(local.year, local.month)

    def start_instant(self, zone: ZoneInfo) -> datetime:
        """First instant of the month in `zone`, as naive UTC."""
        local = datetime(self.year, self.month, 1, tzinfo=zone)
        return local.astimezone(timezone.utc).replace(tzinfo=None)

    def end_instant(self, zone: ZoneInfo) -> datetime:
        """Exclusive upper bound: the first instant of the following month."""
        return self.next().start_instant(zone)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def months_between(start: MonthOfYear, end: MonthOfYear) -> Iterator[MonthOfYear]:
    current = start
    while current <= end:
        yield current
        current = current.next()


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def to_utc_naive(instant: datetime) -> datetime:
    return _as_utc(instant).replace(tzinfo=None)


def resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise LedgerInvariantError(f"Unknown time zone: {name!r}") from exc
