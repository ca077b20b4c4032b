from datetime import date

import pytest

from app.modules.reporting.domain.periods import MAX_DAYS, previous_month, resolve_period
from app.schemas.costs import ExportSource

TODAY = date(2026, 3, 15)


def test_mtd():
    period = resolve_period("mtd", today=TODAY)

    assert (period.start, period.end) == (date(2026, 3, 1), TODAY)
    assert period.source == ExportSource.DAILY
    assert (period.comparison_start, period.comparison_end) == (date(2026, 2, 1), date(2026, 2, 28))


def test_last_month_uses_monthly_exports():
    period = resolve_period("LastMonth", today=TODAY)

    assert period.key == "lastmonth"
    assert (period.start, period.end) == (date(2026, 2, 1), date(2026, 2, 28))
    assert period.source == ExportSource.MONTHLY


@pytest.mark.parametrize("key,days,expected_start", [
    ("last30", None, date(2026, 2, 14)),
    ("last60", None, date(2026, 1, 15)),
    ("last90", None, date(2025, 12, 16)),
    (None, 7, date(2026, 3, 9)),
    (None, None, date(2026, 2, 14)),
])
def test_rolling_windows(key, days, expected_start):
    period = resolve_period(key, days, TODAY)

    assert period.start == expected_start
    assert period.end == TODAY
    assert period.source == ExportSource.DAILY


@pytest.mark.parametrize("key,days,expected_days", [("last30", None, 30), ("last90", None, 90), (None, 1, 1)])
def test_rolling_window_covers_exactly_n_days(key, days, expected_days):
    period = resolve_period(key, days, TODAY)

    assert (period.end - period.start).days + 1 == expected_days


def test_days_are_clamped():
    assert resolve_period(None, 10_000, TODAY).key == f"last{MAX_DAYS}"
    assert resolve_period(None, 0, TODAY).key == "last30"


def test_previous_month_across_year_boundary():
    assert previous_month(date(2026, 1, 10)) == (date(2025, 12, 1), date(2025, 12, 31))


def test_previous_month_leap_february():
    assert previous_month(date(2024, 3, 31)) == (date(2024, 2, 1), date(2024, 2, 29))
