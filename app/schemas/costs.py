"""
FOCUS Cost Export Schemas - Normalization Layer
"""

import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Response models serialize with camelCase keys for the dashboard."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def extract_resource_group(resource_id: str) -> str:
    """
    Pull the resource group name out of an ARM resource id.

    /subscriptions/x/resourceGroups/rg-app/providers/... -> "rg-app"
    Missing or malformed ids yield an empty string.
    """
    if not resource_id:
        return ""
    marker = "/resourcegroups/"
    idx = resource_id.lower().find(marker)
    if idx < 0:
        return ""
    start = idx + len(marker)
    end = resource_id.find("/", start)
    return resource_id[start:] if end < 0 else resource_id[start:end]


class CostRecord(BaseModel):
    """One normalized line item from a billing export. Never persisted."""
    model_config = ConfigDict(frozen=True)

    billed_cost: Decimal
    service_name: str = ""
    service_category: str = ""
    resource_name: str = ""
    resource_type: str = ""
    resource_id: str = ""
    region: str = ""
    subscription_name: str = ""
    subscription_id: str = ""
    date: dt.date

    @property
    def resource_group(self) -> str:
        return extract_resource_group(self.resource_id)

    @property
    def dedup_key(self) -> tuple:
        return (self.date, self.subscription_id, self.resource_name, self.service_name, self.billed_cost)


class ExportFile(BaseModel):
    """A catalogued FOCUS export object whose name parsed successfully."""
    model_config = ConfigDict(frozen=True)

    path: str
    last_modified: Optional[datetime] = None
    date_range_key: str
    folder_start: date
    folder_end: date
    export_timestamp: str
    export_timestamp_date: str
    is_monthly: bool


class ExportSource(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class ReportingPeriod(BaseModel):
    """A resolved reporting window plus the export type that backs it."""
    model_config = ConfigDict(frozen=True)

    key: str
    start: date
    end: date
    source: ExportSource
    comparison_start: date
    comparison_end: date


# --- Response models ---

class DailyCost(CamelModel):
    date: dt.date
    cost: float


class CostBreakdownEntry(CamelModel):
    name: str
    cost: float
    count: int


class ResourceCostEntry(CamelModel):
    name: str
    resource_type: str
    resource_group: str
    cost: float
    count: int


class AuditResourceEntry(CamelModel):
    resource_name: str
    resource_type: str
    resource_group: str
    service_name: str
    service_category: str
    subscription_name: str
    region: str
    cost: float
    count: int


LastMonthSource = Literal["monthly_export", "daily_export_fallback", "none"]


class SasTokenInfo(CamelModel):
    """What the SAS grants. Never carries the signature."""
    permissions: Optional[str] = None
    expires: Optional[str] = None
    is_expired: Optional[bool] = None


class CostAnalysisDiagnostics(CamelModel):
    total_files_found: int = 0
    daily_files_selected: int = 0
    monthly_files_selected: int = 0
    files_processed: int = 0
    files_failed: List[str] = Field(default_factory=list)
    records_extracted: int = 0
    duplicates_removed: int = 0
    comparison_records_extracted: int = 0
    comparison_duplicates_removed: int = 0
    date_ranges_in_storage: List[str] = Field(default_factory=list)
    selected_folders: List[str] = Field(default_factory=list)
    available_columns: List[str] = Field(default_factory=list)
    sas_token: Optional[SasTokenInfo] = None
    listing_errors: List[str] = Field(default_factory=list)


class CostAnalysis(CamelModel):
    """Aggregated cost view for one customer and reporting period."""
    customer_id: str
    period: str
    has_data: bool = True
    message: Optional[str] = None
    total_cost: float = 0.0
    this_month_cost: float = 0.0
    last_month_cost: float = 0.0
    last_month_same_period_cost: float = 0.0
    last_month_source: LastMonthSource = "none"
    start_date: date
    end_date: date
    record_count: int = 0
    daily_trend: List[DailyCost] = Field(default_factory=list)
    top_services: List[CostBreakdownEntry] = Field(default_factory=list)
    top_resource_groups: List[CostBreakdownEntry] = Field(default_factory=list)
    top_resources: List[ResourceCostEntry] = Field(default_factory=list)
    all_resources: List[AuditResourceEntry] = Field(default_factory=list)
    by_region: List[CostBreakdownEntry] = Field(default_factory=list)
    by_subscription: List[CostBreakdownEntry] = Field(default_factory=list)
    by_service_category: List[CostBreakdownEntry] = Field(default_factory=list)
    unique_resource_count: int = 0
    unique_resource_types: int = 0
    unique_resource_groups: int = 0
    this_week_by_category: List[CostBreakdownEntry] = Field(default_factory=list)
    last_week_by_category: List[CostBreakdownEntry] = Field(default_factory=list)
    this_week_by_resource_group: List[CostBreakdownEntry] = Field(default_factory=list)
    last_week_by_resource_group: List[CostBreakdownEntry] = Field(default_factory=list)
    diagnostics: CostAnalysisDiagnostics = Field(default_factory=CostAnalysisDiagnostics)


class ExportRunResult(CamelModel):
    triggered: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    subscriptions_checked: int = 0
