from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from errors import LedgerInvariantError
from months import MonthOfYear, months_between, resolve_zone, to_utc_naive


def test_next_and_previous_wrap_year_boundaries() -> None:
    assert MonthOfYear(2024, 12).next() == MonthOfYear(2025, 1)
    assert MonthOfYear(2025, 1).previous() == MonthOfYear(2024, 12)
    assert MonthOfYear(2024, 6).next() == MonthOfYear(2024, 7)


def test_months_order_by_year_then_month() -> None:
    assert MonthOfYear(2023, 12) < MonthOfYear(2024, 1)
    assert MonthOfYear(2024, 2) > MonthOfYear(2024, 1)
    assert min(MonthOfYear(2024, 3), MonthOfYear(2023, 11)) == MonthOfYear(2023, 11)


def test_invalid_month_is_rejected() -> None:
    with pytest.raises(ValueError):
        MonthOfYear(2024, 13)
    assert not MonthOfYear(1999, 5).is_valid()
    assert MonthOfYear(2024, 5).is_valid()


def test_months_between_is_inclusive_and_empty_when_reversed() -> None:
    months = list(months_between(MonthOfYear(2024, 11), MonthOfYear(2025, 2)))
    assert [str(m) for m in months] == ["2024-11", "2024-12", "2025-01", "2025-02"]
    assert list(months_between(MonthOfYear(2024, 3), MonthOfYear(2024, 1))) == []


def test_from_instant_uses_budget_zone() -> None:
    berlin = ZoneInfo("Europe/Berlin")
    late_january_utc = datetime(2024, 1, 31, 23, 30)
    assert MonthOfYear.from_instant(late_january_utc, berlin) == MonthOfYear(2024, 2)
    assert MonthOfYear.from_instant(late_january_utc, ZoneInfo("UTC")) == MonthOfYear(
        2024, 1
    )


def test_month_bounds_are_naive_utc() -> None:
    berlin = ZoneInfo("Europe/Berlin")
    march = MonthOfYear(2024, 3)
    assert march.start_instant(berlin) == datetime(2024, 2, 29, 23, 0)
    # daylight saving starts on the last Sunday of March
    assert march.end_instant(berlin) == datetime(2024, 3, 31, 22, 0)


def test_to_utc_naive_converts_aware_instants() -> None:
    aware = datetime(2024, 5, 1, 2, 0, tzinfo=ZoneInfo("Europe/Berlin"))
    assert to_utc_naive(aware) == datetime(2024, 5, 1, 0, 0)
    naive = datetime(2024, 5, 1, 2, 0)
    assert to_utc_naive(naive) == naive
    assert to_utc_naive(datetime(2024, 5, 1, tzinfo=timezone.utc)) == datetime(
        2024, 5, 1
    )


def test_unknown_zone_is_an_invariant_error() -> None:
    with pytest.raises(LedgerInvariantError):
        resolve_zone("Nowhere/Atlantis")
