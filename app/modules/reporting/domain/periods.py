"""
Reporting period resolution.

Every period carries the export type that backs it and the previous
calendar month, which is always loaded separately for comparison.
"""

from datetime import date, timedelta
from typing import Optional, Tuple

from app.schemas.costs import ExportSource, ReportingPeriod

DEFAULT_DAYS = 30
MAX_DAYS = 365

ROLLING_ALIASES = {
    "last30": 30,
    "last60": 60,
    "last90": 90,
}


def month_start(day: date) -> date:
    return day.replace(day=1)


def previous_month(day: date) -> Tuple[date, date]:
    """First and last day of the calendar month before `day`."""
    last = month_start(day) - timedelta(days=1)
    return last.replace(day=1), last


def resolve_period(period: Optional[str] = None, days: Optional[int] = None, today: Optional[date] = None) -> ReportingPeriod:
    """
    Resolve a period key into a concrete window.

    - "mtd": first of the current month to today (daily exports)
    - "lastmonth": the previous calendar month (monthly exports)
    - "last30"/"last60"/"last90" or `days`: rolling window ending today (daily exports)
    """
    today = today or date.today()
    comparison_start, comparison_end = previous_month(today)
    key = (period or "").strip().lower()

    if key == "mtd":
        return ReportingPeriod(
            key="mtd",
            start=month_start(today),
            end=today,
            source=ExportSource.DAILY,
            comparison_start=comparison_start,
            comparison_end=comparison_end,
        )

    if key == "lastmonth":
        return ReportingPeriod(
            key="lastmonth",
            start=comparison_start,
            end=comparison_end,
            source=ExportSource.MONTHLY,
            comparison_start=comparison_start,
            comparison_end=comparison_end,
        )

    window = ROLLING_ALIASES.get(key) or days or DEFAULT_DAYS
    window = max(1, min(MAX_DAYS, window))
    return ReportingPeriod(
        key=f"last{window}",
        # inclusive of today, so the window covers exactly `window` days
        start=today - timedelta(days=window - 1),
        end=today,
        source=ExportSource.DAILY,
        comparison_start=comparison_start,
        comparison_end=comparison_end,
    )
