"""
Reservation, Utilization and Insight Schemas

Reservation state is rebuilt from the Azure APIs on every refresh and
cached as JSON. All models serialize with camelCase keys.
"""

import datetime as dt
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID
from pydantic import Field

from app.schemas.costs import CamelModel

ACTIVE_STATUSES = {"Succeeded", "Expiring"}
EXPIRY_WINDOW_DAYS = 90

TERM_DISPLAY = {
    "P1Y": "1 Year",
    "P3Y": "3 Years",
    "P5Y": "5 Years",
}


class InsightPriority(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"

    @property
    def rank(self) -> int:
        return {"Critical": 0, "High": 1, "Medium": 2}.get(self.value, 3)


class DailyUtilization(CamelModel):
    date: dt.date
    used_hours: float = 0.0
    reserved_hours: float = 0.0
    utilization_percent: float = 0.0
    used_quantity: float = 0.0
    reserved_quantity: float = 0.0


class CoveredResource(CamelModel):
    """A workload consuming a reservation over the usage window."""
    resource_name: str
    resource_id: str = ""
    total_used_hours: float = 0.0
    days_used: int = 0
    avg_hours_per_day: float = 0.0


class Reservation(CamelModel):
    """One reservation with its utilization and computed economics."""
    reservation_id: str
    order_id: str
    display_name: str = ""
    status: str = ""
    sku_name: str = ""
    resource_type: str = ""
    term: str = ""
    term_display: str = ""
    quantity: float = 0.0
    location: str = ""
    applied_scope_type: str = ""
    applied_scopes: List[str] = Field(default_factory=list)
    billing_plan: str = ""
    renew: bool = False
    purchase_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    effective_date: Optional[datetime] = None
    benefit_start_time: Optional[datetime] = None
    days_to_expiry: Optional[int] = None
    months_owned: Optional[int] = None

    # Utilization, ascending by date
    daily_utilization: List[DailyUtilization] = Field(default_factory=list)
    utilization_30_day: Optional[float] = None
    utilization_7_day: Optional[float] = None
    utilization_1_day: Optional[float] = None
    min_utilization: Optional[float] = None
    max_utilization: Optional[float] = None
    utilization_error: Optional[str] = None
    covered_resources: List[CoveredResource] = Field(default_factory=list)

    # Economics
    discount_percent: Optional[float] = None
    breakeven_utilization: Optional[float] = None
    monthly_payg_cost: Optional[float] = None
    monthly_ri_cost: Optional[float] = None
    estimated_monthly_savings: Optional[float] = None
    monthly_waste: Optional[float] = None
    effective_savings_percent: Optional[float] = None
    is_beneficial: Optional[bool] = None
    recommendation: Optional[str] = None
    recommendation_severity: Optional[InsightPriority] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def has_utilization_data(self) -> bool:
        return (
            self.utilization_30_day is not None
            or self.utilization_7_day is not None
            or self.utilization_1_day is not None
        )

    @property
    def is_expiring_soon(self) -> bool:
        return self.days_to_expiry is not None and 0 <= self.days_to_expiry <= EXPIRY_WINDOW_DAYS


class PurchaseRecommendation(CamelModel):
    """An Azure-suggested reservation purchase. Numeric fields default to zero."""
    subscription_name: str = ""
    subscription_id: str = ""
    sku_name: str = ""
    location: str = ""
    resource_type: str = ""
    term: str = ""
    quantity: float = 0.0
    look_back_period: str = ""
    monthly_savings: float = 0.0
    annual_savings: float = 0.0
    cost_with_ri: float = Field(default=0.0, alias="costWithRI")
    cost_without_ri: float = Field(default=0.0, alias="costWithoutRI")
    savings_percent: float = 0.0


class ReservationInsight(CamelModel):
    priority: InsightPriority
    type: str
    icon: str = ""
    title: str
    description: str
    recommendation: str
    action: str
    reservation_id: Optional[str] = None
    waste_percent: Optional[float] = None
    annual_savings: Optional[float] = None


class ReservationSummary(CamelModel):
    total_reservations: int = 0
    active_reservations: int = 0
    expiring_soon: int = 0
    low_utilization: int = 0
    full_utilization: int = 0
    zero_utilization: int = 0
    purchase_recommendations: int = 0
    potential_annual_savings: float = 0.0
    estimated_monthly_savings: float = 0.0
    monthly_waste: float = 0.0


class ReservationSnapshot(CamelModel):
    """The complete output of one refresh, persisted as separate JSON blobs."""
    summary: ReservationSummary = Field(default_factory=ReservationSummary)
    reservations: List[Reservation] = Field(default_factory=list)
    insights: List[ReservationInsight] = Field(default_factory=list)
    purchase_recommendations: List[PurchaseRecommendation] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class ReservationDataResponse(CamelModel):
    status: str
    has_data: bool = False
    last_refreshed: Optional[datetime] = None
    message: Optional[str] = None
    error_message: Optional[str] = None
    summary: Optional[ReservationSummary] = None
    reservations: List[Reservation] = Field(default_factory=list)
    insights: List[ReservationInsight] = Field(default_factory=list)
    purchase_recommendations: List[PurchaseRecommendation] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class RefreshTicket(CamelModel):
    """Acknowledgement returned by a refresh trigger."""
    accepted: bool
    status: str
    message: str
    job_id: Optional[UUID] = None
