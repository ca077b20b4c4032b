from typing import List, Sequence, Set

import structlog

from app.schemas.reservations import (
    EXPIRY_WINDOW_DAYS,
    InsightPriority,
    PurchaseRecommendation,
    Reservation,
    ReservationInsight,
)

logger = structlog.get_logger()

URGENT_EXPIRY_DAYS = 30
RENEW_UTILIZATION = 95.0
HEALTHY_UTILIZATION = 80.0
# Rough RI-vs-PAYG breakeven used to decide between "switch" and "monitor"
LOW_UTILIZATION_BREAKEVEN = 65.0
MIN_PURCHASE_SAVINGS = 100.0
HIGH_PURCHASE_SAVINGS = 1000.0
TOP_PURCHASE_RECOMMENDATIONS = 5


class InsightGenerator:
    """
    Turns analyzed reservations and purchase recommendations into a
    prioritized insight list.

    Each reservation lands in at most one utilization bucket; rules run in
    order and record what they have claimed.
    """

    def __init__(self, currency_symbol: str = "£"):
        self.currency = currency_symbol

    def generate(
        self,
        reservations: Sequence[Reservation],
        purchase_recommendations: Sequence[PurchaseRecommendation]
    ) -> List[ReservationInsight]:
        active = [r for r in reservations if r.is_active]
        processed: Set[str] = set()
        insights: List[ReservationInsight] = []

        insights.extend(self._zero_utilization(active, processed))
        insights.extend(self._expiring_high_utilization(active, processed))
        insights.extend(self._expiring_low_utilization(active, processed))
        insights.extend(self._expiring_unknown_utilization(active, processed))
        insights.extend(self._low_utilization(active, processed))
        insights.extend(self._purchase_opportunities(purchase_recommendations))

        healthy = self._healthy_summary(active)
        if healthy:
            insights.append(healthy)

        missing = [r for r in active if not r.has_utilization_data]
        if missing and len(missing) == len(active):
            insights.insert(0, self._no_utilization_data(len(missing)))

        # sorted() is stable: equal priorities keep generation order
        ranked = sorted(insights, key=lambda i: i.priority.rank)
        logger.info("reservation_insights_generated", count=len(ranked), active=len(active))
        return ranked

    def _unclaimed(self, active: Sequence[Reservation], processed: Set[str]) -> List[Reservation]:
        return [r for r in active if r.reservation_id not in processed]

    def _zero_utilization(self, active, processed) -> List[ReservationInsight]:
        insights = []
        for res in self._unclaimed(active, processed):
            if not (res.has_utilization_data and res.utilization_30_day == 0):
                continue
            processed.add(res.reservation_id)
            insights.append(ReservationInsight(
                priority=InsightPriority.CRITICAL,
                type="ZeroUtilization",
                icon="\U0001F6A8",
                title=f"{res.display_name} has 0% utilization",
                description="This reservation is completely unused. You're paying for capacity that isn't being used.",
                recommendation="Exchange or cancel this reservation immediately. Consider if the workload was decommissioned or moved.",
                action="Exchange/Cancel",
                reservation_id=res.reservation_id,
            ))
        return insights

    def _expiring_high_utilization(self, active, processed) -> List[ReservationInsight]:
        insights = []
        for res in self._unclaimed(active, processed):
            if not (res.is_expiring_soon and res.has_utilization_data
                    and (res.utilization_30_day or 0) >= RENEW_UTILIZATION):
                continue
            processed.add(res.reservation_id)
            util = res.utilization_30_day or 0
            insights.append(ReservationInsight(
                priority=InsightPriority.HIGH,
                type="RenewHighUtilization",
                icon="✅",
                title=f"{res.display_name} expires in {res.days_to_expiry} days - {util:.0f}% utilized",
                description=(
                    "This reservation is well utilized and expiring soon. "
                    + ("Auto-renew is ON." if res.renew else "Auto-renew is OFF!")
                ),
                recommendation=(
                    "Review renewal terms to ensure best pricing." if res.renew
                    else "ENABLE AUTO-RENEW or manually renew to maintain savings."
                ),
                action="Review" if res.renew else "Enable Auto-Renew",
                reservation_id=res.reservation_id,
            ))
        return insights

    def _expiring_low_utilization(self, active, processed) -> List[ReservationInsight]:
        insights = []
        for res in self._unclaimed(active, processed):
            util = res.utilization_30_day
            if not (res.is_expiring_soon and util is not None and 0 < util < HEALTHY_UTILIZATION):
                continue
            processed.add(res.reservation_id)
            insights.append(ReservationInsight(
                priority=InsightPriority.HIGH if res.renew else InsightPriority.MEDIUM,
                type="DontRenew",
                icon="\U0001F6AB",
                title=f"{res.display_name} expires in {res.days_to_expiry} days - only {util:.0f}% used",
                description=(
                    "Low utilization means renewal would waste money. "
                    + ("WARNING: Auto-renew is ON!" if res.renew else "Auto-renew is off.")
                ),
                recommendation=(
                    "DISABLE AUTO-RENEW immediately to avoid wasting money." if res.renew
                    else "Do not renew. Switch to PAYG or right-size first."
                ),
                action="Disable Auto-Renew" if res.renew else "Let Expire",
                reservation_id=res.reservation_id,
                waste_percent=round(100 - util),
            ))
        return insights

    def _expiring_unknown_utilization(self, active, processed) -> List[ReservationInsight]:
        insights = []
        for res in self._unclaimed(active, processed):
            if not (res.is_expiring_soon and not res.has_utilization_data):
                continue
            processed.add(res.reservation_id)
            days = res.days_to_expiry
            insights.append(ReservationInsight(
                priority=InsightPriority.HIGH if days <= URGENT_EXPIRY_DAYS else InsightPriority.MEDIUM,
                type="ExpiringNoUtilization",
                icon="⚠️",
                title=f"{res.display_name} expires in {days} days - utilization unknown",
                description=(
                    "This reservation is expiring soon but utilization data is not available. "
                    + ("Auto-renew is ON." if res.renew else "Auto-renew is OFF.")
                ),
                recommendation=(
                    "Review actual usage in Azure Portal before deciding whether to renew. "
                    "Check Cost Analysis to see if this reservation is being used."
                ),
                action="Review in Azure Portal",
                reservation_id=res.reservation_id,
            ))
        return insights

    def _low_utilization(self, active, processed) -> List[ReservationInsight]:
        insights = []
        for res in self._unclaimed(active, processed):
            util = res.utilization_30_day
            if not (util is not None and 0 < util < HEALTHY_UTILIZATION):
                continue
            processed.add(res.reservation_id)
            should_switch = util < LOW_UTILIZATION_BREAKEVEN
            insights.append(ReservationInsight(
                priority=InsightPriority.HIGH if should_switch else InsightPriority.MEDIUM,
                type="LowUtilization",
                icon="⚠️",
                title=f"{res.display_name} only {util:.0f}% utilized",
                description=(
                    f"At {util:.0f}% utilization, you're wasting ~{100 - util:.0f}% of this reservation's value. "
                    + ("PAYG would likely be cheaper." if should_switch
                       else "Consider right-sizing or consolidating workloads.")
                ),
                recommendation=(
                    "Consider exchanging for smaller reservation or switching to PAYG for this workload."
                    if should_switch
                    else "Monitor utilization. Consider exchanging for a different SKU if workload has changed."
                ),
                action="Exchange to PAYG" if should_switch else "Monitor",
                reservation_id=res.reservation_id,
                waste_percent=round(100 - util),
            ))
        return insights

    def _purchase_opportunities(self, recommendations: Sequence[PurchaseRecommendation]) -> List[ReservationInsight]:
        insights = []
        top = sorted(recommendations, key=lambda r: r.annual_savings, reverse=True)[:TOP_PURCHASE_RECOMMENDATIONS]
        for rec in top:
            savings = rec.annual_savings
            if savings <= MIN_PURCHASE_SAVINGS:
                continue
            insights.append(ReservationInsight(
                priority=InsightPriority.HIGH if savings > HIGH_PURCHASE_SAVINGS else InsightPriority.MEDIUM,
                type="PurchaseRecommendation",
                icon="\U0001F4B0",
                title=f"Buy {rec.sku_name} reservation - save {self.currency}{savings:,.0f}/year",
                description=(
                    f"Azure recommends purchasing {rec.quantity:g} x {rec.sku_name} ({rec.term}) based on your usage. "
                    f"This would save {rec.savings_percent}% vs PAYG."
                ),
                recommendation=(
                    "Review workload stability before purchasing. "
                    "1-year term recommended if uncertain about long-term need."
                ),
                action="Purchase RI",
                annual_savings=savings,
            ))
        return insights

    def _healthy_summary(self, active: Sequence[Reservation]) -> ReservationInsight | None:
        healthy = [
            r for r in active
            if r.has_utilization_data
            and (r.utilization_30_day or 0) >= HEALTHY_UTILIZATION
            and r.days_to_expiry is not None and r.days_to_expiry > EXPIRY_WINDOW_DAYS
        ]
        if not healthy:
            return None
        return ReservationInsight(
            priority=InsightPriority.INFO,
            type="HealthySummary",
            icon="\U0001F7E2",
            title=f"{len(healthy)} reservation(s) are healthy",
            description="These reservations have good utilization (>80%) and aren't expiring soon.",
            recommendation="No action needed. Continue monitoring utilization.",
            action="None",
        )

    def _no_utilization_data(self, count: int) -> ReservationInsight:
        return ReservationInsight(
            priority=InsightPriority.MEDIUM,
            type="NoUtilizationData",
            icon="ℹ️",
            title="Utilization data not available",
            description=(
                f"Could not retrieve utilization data for {count} reservation(s). The Service Principal may "
                "need additional permissions or the data may take 24-48 hours to populate for new reservations."
            ),
            recommendation=(
                "Check that the Service Principal has 'Reservations Reader' role at tenant root or billing "
                "account level. Utilization data updates daily."
            ),
            action="Check Permissions",
        )
