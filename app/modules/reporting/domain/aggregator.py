from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from app.schemas.costs import (
    AuditResourceEntry,
    CostAnalysis,
    CostBreakdownEntry,
    CostRecord,
    DailyCost,
    ExportSource,
    LastMonthSource,
    ReportingPeriod,
    ResourceCostEntry,
)
from app.modules.reporting.domain.periods import month_start

logger = structlog.get_logger()

TWO_PLACES = Decimal("0.01")

# Top-N limits per breakdown. None keeps every entry.
TOP_SERVICES = 10
TOP_RESOURCE_GROUPS = 10
TOP_RESOURCES = 20
TOP_AUDIT_RESOURCES = 500
TOP_WEEKLY_RESOURCE_GROUPS = 10


def round_cost(value: Decimal) -> float:
    """Round for output only; sums keep full precision until here."""
    return float(value.quantize(TWO_PLACES, rounding=ROUND_HALF_EVEN))


def week_start(day: date) -> date:
    """Weeks start on Sunday."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def filter_to_period(records: Sequence[CostRecord], start: date, end: date) -> List[CostRecord]:
    return [r for r in records if start <= r.date <= end]


def _sum(records: Sequence[CostRecord]) -> Decimal:
    return sum((r.billed_cost for r in records), Decimal(0))


def _ranked(totals: Dict, limit: Optional[int]) -> List[Tuple]:
    # sorted() is stable, so ties keep first-encountered order
    ranked = sorted(totals.items(), key=lambda kv: kv[1][0], reverse=True)
    return ranked[:limit] if limit else ranked


class CostAggregator:
    """Rolls deduplicated export records into the cost analysis view."""

    @staticmethod
    def breakdown(
        records: Sequence[CostRecord],
        key: Callable[[CostRecord], str],
        limit: Optional[int] = None,
        empty_label: Optional[str] = "Other"
    ) -> List[CostBreakdownEntry]:
        """
        Sum cost and count per key, descending by cost.
        Records whose key is empty go to `empty_label`, or are dropped when it is None.
        """
        totals: Dict[str, list] = {}
        for r in records:
            name = key(r) or empty_label
            if not name:
                continue
            bucket = totals.setdefault(name, [Decimal(0), 0])
            bucket[0] += r.billed_cost
            bucket[1] += 1

        return [
            CostBreakdownEntry(name=name, cost=round_cost(cost), count=count)
            for name, (cost, count) in _ranked(totals, limit)
        ]

    @staticmethod
    def top_resources(records: Sequence[CostRecord], limit: int = TOP_RESOURCES) -> List[ResourceCostEntry]:
        totals: Dict[str, list] = {}
        for r in records:
            name = r.resource_name or "Unknown"
            bucket = totals.setdefault(name, [Decimal(0), 0, r.resource_type, r.resource_group])
            bucket[0] += r.billed_cost
            bucket[1] += 1

        return [
            ResourceCostEntry(
                name=name,
                resource_type=rtype,
                resource_group=rgroup,
                cost=round_cost(cost),
                count=count
            )
            for name, (cost, count, rtype, rgroup) in _ranked(totals, limit)
        ]

    @staticmethod
    def audit_resources(records: Sequence[CostRecord], limit: int = TOP_AUDIT_RESOURCES) -> List[AuditResourceEntry]:
        """Full resource-level list grouped by every descriptive dimension."""
        totals: Dict[tuple, list] = {}
        for r in records:
            key = (
                r.resource_name, r.resource_type, r.resource_group, r.service_name,
                r.service_category, r.subscription_name, r.region,
            )
            bucket = totals.setdefault(key, [Decimal(0), 0])
            bucket[0] += r.billed_cost
            bucket[1] += 1

        return [
            AuditResourceEntry(
                resource_name=key[0],
                resource_type=key[1],
                resource_group=key[2],
                service_name=key[3],
                service_category=key[4],
                subscription_name=key[5],
                region=key[6],
                cost=round_cost(cost),
                count=count
            )
            for key, (cost, count) in _ranked(totals, limit)
        ]

    @staticmethod
    def daily_trend(records: Sequence[CostRecord]) -> List[DailyCost]:
        totals: Dict[date, Decimal] = {}
        for r in records:
            totals[r.date] = totals.get(r.date, Decimal(0)) + r.billed_cost
        return [DailyCost(date=day, cost=round_cost(totals[day])) for day in sorted(totals)]

    @staticmethod
    def last_month_costs(
        comparison_records: Sequence[CostRecord],
        fallback_records: Sequence[CostRecord],
        period: ReportingPeriod,
        today: date
    ) -> Tuple[Decimal, Decimal, LastMonthSource]:
        """
        Last calendar month total and the same day-of-month slice of it.

        Monthly (finalized) records are authoritative. Without them the figure
        is approximated from daily records and labelled as such.
        """
        lm_start, lm_end = period.comparison_start, period.comparison_end
        # Clamp so e.g. the 31st never reaches past a 30-day month
        same_period_end = min(lm_start + timedelta(days=today.day - 1), lm_end)

        if comparison_records:
            source: LastMonthSource = "monthly_export"
            scoped = list(comparison_records)
        else:
            scoped = filter_to_period(fallback_records, lm_start, lm_end)
            source = "daily_export_fallback" if scoped else "none"

        same_period = [r for r in scoped if lm_start <= r.date <= same_period_end]
        return _sum(scoped), _sum(same_period), source

    @staticmethod
    def summarize(
        customer_id: str,
        period: ReportingPeriod,
        records: Sequence[CostRecord],
        comparison_records: Sequence[CostRecord] = (),
        fallback_records: Optional[Sequence[CostRecord]] = None,
        today: Optional[date] = None
    ) -> CostAnalysis:
        """
        Build the full cost analysis.

        `records` are deduplicated and already filtered to the period window.
        `comparison_records` come from last month's monthly exports only.
        `fallback_records` is the wider deduplicated daily set used for
        month-to-date, the last-month fallback and the week-over-week view
        (defaults to `records`).
        """
        today = today or date.today()
        fallback = records if fallback_records is None else fallback_records

        this_month = Decimal(0)
        if period.source == ExportSource.DAILY:
            # Month-to-date regardless of how short the requested window is
            this_month = _sum(filter_to_period(fallback, month_start(today), today))

        last_month, same_period, source = CostAggregator.last_month_costs(
            comparison_records, fallback, period, today
        )

        this_week_start = week_start(today)
        last_week_start = this_week_start - timedelta(days=7)
        weekly_base = fallback if period.source == ExportSource.DAILY else records
        this_week = [r for r in weekly_base if r.date >= this_week_start]
        last_week = [r for r in weekly_base if last_week_start <= r.date < this_week_start]

        by_category = lambda r: r.service_category
        by_group = lambda r: r.resource_group

        analysis = CostAnalysis(
            customer_id=customer_id,
            period=period.key,
            has_data=bool(records),
            total_cost=round_cost(_sum(records)),
            this_month_cost=round_cost(this_month),
            last_month_cost=round_cost(last_month),
            last_month_same_period_cost=round_cost(same_period),
            last_month_source=source,
            start_date=period.start,
            end_date=period.end,
            record_count=len(records),
            daily_trend=CostAggregator.daily_trend(records),
            top_services=CostAggregator.breakdown(records, lambda r: r.service_name, TOP_SERVICES),
            top_resource_groups=CostAggregator.breakdown(records, by_group, TOP_RESOURCE_GROUPS),
            top_resources=CostAggregator.top_resources(records),
            all_resources=CostAggregator.audit_resources(records),
            by_region=CostAggregator.breakdown(records, lambda r: r.region, empty_label="Unknown"),
            by_subscription=CostAggregator.breakdown(
                records, lambda r: r.subscription_name or r.subscription_id, empty_label=None
            ),
            by_service_category=CostAggregator.breakdown(records, by_category),
            unique_resource_count=len({r.resource_name for r in records if r.resource_name}),
            unique_resource_types=len({r.resource_type for r in records if r.resource_type}),
            unique_resource_groups=len({r.resource_group for r in records if r.resource_group}),
            this_week_by_category=CostAggregator.breakdown(this_week, by_category),
            last_week_by_category=CostAggregator.breakdown(last_week, by_category),
            this_week_by_resource_group=CostAggregator.breakdown(this_week, by_group, TOP_WEEKLY_RESOURCE_GROUPS),
            last_week_by_resource_group=CostAggregator.breakdown(last_week, by_group, TOP_WEEKLY_RESOURCE_GROUPS),
        )

        logger.info(
            "cost_analysis_aggregated",
            customer_id=customer_id,
            period=period.key,
            records=len(records),
            last_month_source=source
        )
        return analysis
