"""
Reservation Cost-Benefit Analyzer

Estimates whether a reservation beats pay-as-you-go at its observed
utilization. Discounts and PAYG unit costs are rough heuristics, not
price-sheet figures; every number here is an approximation.
"""

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Tuple

from app.schemas.reservations import InsightPriority, Reservation

# Assumed discount vs. PAYG by term
DEFAULT_DISCOUNT_BY_TERM: Mapping[str, float] = {
    "P1Y": 35.0,
    "P3Y": 55.0,
}
DEFAULT_DISCOUNT_PERCENT = 35.0

# Monthly PAYG cost per unit, matched by case-insensitive substring of the resource type
DEFAULT_PAYG_BY_RESOURCE_TYPE: Sequence[Tuple[str, float]] = (
    ("VirtualMachines", 150.0),
    ("SqlDatabase", 200.0),
    ("Storage", 50.0),
)
DEFAULT_PAYG_PER_UNIT = 100.0

OPTIMIZE_THRESHOLD = 80.0
GOOD_THRESHOLD = 95.0


@dataclass(frozen=True)
class CostBenefit:
    discount_percent: float
    breakeven_utilization: float
    monthly_payg_cost: float
    monthly_ri_cost: float
    net_monthly_savings: float
    estimated_monthly_savings: float
    monthly_waste: float
    effective_savings_percent: float
    is_beneficial: bool
    recommendation: str
    severity: InsightPriority


class CostBenefitAnalyzer:
    """Scores reservations against PAYG using injected heuristic tables."""

    def __init__(
        self,
        discount_by_term: Mapping[str, float] = DEFAULT_DISCOUNT_BY_TERM,
        default_discount: float = DEFAULT_DISCOUNT_PERCENT,
        payg_by_resource_type: Sequence[Tuple[str, float]] = DEFAULT_PAYG_BY_RESOURCE_TYPE,
        default_payg_per_unit: float = DEFAULT_PAYG_PER_UNIT,
        currency_symbol: str = "£"
    ):
        self.discount_by_term = discount_by_term
        self.default_discount = default_discount
        self.payg_by_resource_type = payg_by_resource_type
        self.default_payg_per_unit = default_payg_per_unit
        self.currency = currency_symbol

    def discount_for(self, term: str) -> float:
        return self.discount_by_term.get(term, self.default_discount)

    def payg_per_unit(self, resource_type: str) -> float:
        lowered = (resource_type or "").lower()
        for fragment, cost in self.payg_by_resource_type:
            if fragment.lower() in lowered:
                return cost
        return self.default_payg_per_unit

    def evaluate(self, utilization: float, term: str, quantity: float, resource_type: str) -> CostBenefit:
        discount = self.discount_for(term)
        breakeven = 100.0 - discount
        payg = self.payg_per_unit(resource_type) * quantity
        ri_cost = payg * (1 - discount / 100)
        payg_for_used = payg * (utilization / 100)
        net = payg_for_used - ri_cost
        is_beneficial = utilization >= breakeven
        effective = (net / payg_for_used * 100) if payg_for_used > 0 else 0.0

        recommendation, severity = self.recommend(utilization, breakeven, net, payg - ri_cost)
        return CostBenefit(
            discount_percent=discount,
            breakeven_utilization=round(breakeven, 1),
            monthly_payg_cost=round(payg, 2),
            monthly_ri_cost=round(ri_cost, 2),
            net_monthly_savings=round(net, 2),
            estimated_monthly_savings=round(max(net, 0.0), 2),
            monthly_waste=0.0 if is_beneficial else round(abs(net), 2),
            effective_savings_percent=round(effective, 1),
            is_beneficial=is_beneficial,
            recommendation=recommendation,
            severity=severity,
        )

    def recommend(self, utilization: float, breakeven: float, net: float, max_savings: float) -> Tuple[str, InsightPriority]:
        """Thresholds from most to least severe; severity never rises with utilization."""
        c = self.currency
        if utilization <= 0:
            return (
                "CANCEL - Zero utilization. This RI is completely wasted. Exchange or cancel immediately.",
                InsightPriority.CRITICAL,
            )
        if utilization < breakeven:
            return (
                f"CONSIDER PAYG - At {utilization:.0f}% utilization, you're losing ~{c}{abs(net):.0f}/month "
                f"vs PAYG. Breakeven is {breakeven:.0f}%.",
                InsightPriority.HIGH,
            )
        if utilization < OPTIMIZE_THRESHOLD:
            return (
                f"OPTIMIZE - RI is saving money but could save more. At {utilization:.0f}% util, you save "
                f"{c}{net:.0f}/month. At 100% you'd save {c}{max_savings:.0f}/month.",
                InsightPriority.MEDIUM,
            )
        if utilization < GOOD_THRESHOLD:
            return (
                f"GOOD - RI is working well at {utilization:.0f}% utilization. Saving ~{c}{net:.0f}/month vs PAYG.",
                InsightPriority.LOW,
            )
        return (
            f"EXCELLENT - Fully utilized at {utilization:.0f}%. Maximum savings of ~{c}{net:.0f}/month vs PAYG.",
            InsightPriority.INFO,
        )

    def analyze(self, reservation: Reservation) -> Reservation:
        """
        Attach economics to a reservation in place.

        Without utilization data the economics are still shown, but savings
        and waste are left at zero and the recommendation asks for a review.
        """
        utilization: Optional[float] = reservation.utilization_30_day
        result = self.evaluate(
            utilization or 0.0, reservation.term, reservation.quantity, reservation.resource_type
        )

        reservation.discount_percent = result.discount_percent
        reservation.breakeven_utilization = result.breakeven_utilization
        reservation.monthly_payg_cost = result.monthly_payg_cost
        reservation.monthly_ri_cost = result.monthly_ri_cost

        if utilization is None:
            reservation.estimated_monthly_savings = 0.0
            reservation.monthly_waste = 0.0
            reservation.effective_savings_percent = None
            reservation.is_beneficial = None
            reservation.recommendation = (
                "REVIEW - Utilization data unavailable. Check usage in the Azure Portal before renewing or exchanging."
            )
            reservation.recommendation_severity = InsightPriority.MEDIUM
            return reservation

        reservation.estimated_monthly_savings = result.estimated_monthly_savings
        reservation.monthly_waste = result.monthly_waste
        reservation.effective_savings_percent = result.effective_savings_percent
        reservation.is_beneficial = result.is_beneficial
        reservation.recommendation = result.recommendation
        reservation.recommendation_severity = result.severity
        return reservation
