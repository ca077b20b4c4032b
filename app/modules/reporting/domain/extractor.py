"""
FOCUS Record Extractor

Turns one parquet billing export into normalized CostRecords. Column names
drift between export versions (FOCUS 1.0 vs. legacy actual-cost exports), so
every logical field is resolved through an ordered alias list.
"""

import io
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd
import structlog

from app.schemas.costs import CostRecord

logger = structlog.get_logger()

# Ordered aliases, lowercase. The first column present in the file wins.
COLUMN_ALIASES: Dict[str, Sequence[str]] = {
    "billed_cost": ("billedcost", "effectivecost", "cost"),
    "service_name": ("servicename", "metercategory", "service"),
    "service_category": ("servicecategory", "consumedservice", "category"),
    "resource_name": ("resourcename", "resourceid", "resource"),
    "resource_type": ("resourcetype", "metersubcategory"),
    "resource_id": ("resourceid",),
    "region": ("regionname", "region", "resourcelocation", "location"),
    "subscription_name": ("subaccountname", "subscriptionname", "subscription"),
    "subscription_id": ("subaccountid", "subscriptionid"),
    "date": ("chargeperiodstart", "billingperiodstartdate", "usagedatetime", "date"),
}


@dataclass
class ExtractionResult:
    records: List[CostRecord] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    rows_read: int = 0
    rows_skipped: int = 0
    failed: bool = False
    error: Optional[str] = None


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _to_str(value: Any) -> str:
    return "" if _is_missing(value) else str(value)


def _to_decimal(value: Any) -> Decimal:
    if _is_missing(value):
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"unparseable cost {value!r}") from e


def _to_date(value: Any, today: date) -> date:
    """Charge dates that are missing or unparseable fall back to today."""
    if _is_missing(value):
        return today
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        parsed = pd.to_datetime(str(value))
    except (ValueError, TypeError, OverflowError):
        return today
    return today if _is_missing(parsed) else parsed.date()


class FocusRecordExtractor:
    """
    Parses parquet cost exports.

    A malformed row is skipped; a file that cannot be read at all yields an
    empty, failed result instead of raising so one bad blob never aborts a batch.
    """

    def __init__(self, aliases: Mapping[str, Sequence[str]] = COLUMN_ALIASES):
        self.aliases = aliases

    def resolve_columns(self, columns: Sequence[str]) -> Dict[str, str]:
        """Map logical field -> actual column name, case-insensitively."""
        by_lower: Dict[str, str] = {}
        for col in columns:
            by_lower.setdefault(str(col).lower(), col)

        resolved = {}
        for logical, candidates in self.aliases.items():
            for candidate in candidates:
                if candidate in by_lower:
                    resolved[logical] = by_lower[candidate]
                    break
        return resolved

    def extract(self, content: bytes, source: str = "", today: Optional[date] = None) -> ExtractionResult:
        today = today or date.today()
        try:
            df = pd.read_parquet(io.BytesIO(content))
        except Exception as e:
            logger.error("focus_parquet_read_failed", source=source, error=str(e))
            return ExtractionResult(failed=True, error=str(e))

        return self.extract_frame(df, source=source, today=today)

    def extract_frame(self, df: pd.DataFrame, source: str = "", today: Optional[date] = None) -> ExtractionResult:
        today = today or date.today()
        columns = [str(c) for c in df.columns]
        resolved = self.resolve_columns(df.columns)
        result = ExtractionResult(columns=columns, rows_read=len(df))

        if "billed_cost" not in resolved:
            logger.warning("focus_cost_column_missing", source=source, columns=columns[:20])
            return result

        subset = df[list(dict.fromkeys(resolved.values()))]
        for row in subset.to_dict("records"):
            try:
                record = self._build_record(row, resolved, today)
            except (ValueError, TypeError, ArithmeticError):
                result.rows_skipped += 1
                continue
            if record is not None:
                result.records.append(record)

        logger.debug(
            "focus_parquet_extracted",
            source=source,
            rows=result.rows_read,
            records=len(result.records),
            skipped=result.rows_skipped
        )
        return result

    def _build_record(self, row: Dict[str, Any], resolved: Dict[str, str], today: date) -> Optional[CostRecord]:
        def value(logical: str) -> Any:
            col = resolved.get(logical)
            return row.get(col) if col is not None else None

        cost = _to_decimal(value("billed_cost"))
        if cost == 0:
            return None

        return CostRecord(
            billed_cost=cost,
            service_name=_to_str(value("service_name")),
            service_category=_to_str(value("service_category")),
            resource_name=_to_str(value("resource_name")),
            resource_type=_to_str(value("resource_type")),
            resource_id=_to_str(value("resource_id")),
            region=_to_str(value("region")),
            subscription_name=_to_str(value("subscription_name")),
            subscription_id=_to_str(value("subscription_id")),
            date=_to_date(value("date"), today),
        )
