"""
Typed decoding of Capacity/Consumption API payloads.

Field names differ across API versions (sku as a string or an object,
recommendedQuantity vs. quantity, ...). Each decoder reads every field
independently so one malformed value only loses that field.
"""

import re
from collections import OrderedDict
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from app.schemas.reservations import (
    TERM_DISPLAY,
    CoveredResource,
    DailyUtilization,
    PurchaseRecommendation,
    Reservation,
)

# Azure emits 7 fractional digits; fromisoformat accepts at most 6
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def _first(source: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = source.get(key)
        if value is not None:
            return value
    return None


def get_str(source: Mapping[str, Any], *keys: str) -> str:
    value = _first(source, *keys)
    if isinstance(value, dict):
        value = value.get("name")
    return "" if value is None else str(value)


def get_float(source: Mapping[str, Any], *keys: str) -> Optional[float]:
    value = _first(source, *keys)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def get_datetime(source: Mapping[str, Any], *keys: str) -> Optional[datetime]:
    value = _first(source, *keys)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(_EXCESS_FRACTION.sub(r"\1", value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _whole_days(delta_seconds: float) -> int:
    # truncation toward zero
    return int(delta_seconds / 86400)


def parse_reservation(raw: Mapping[str, Any], order: Mapping[str, Any], now: Optional[datetime] = None) -> Reservation:
    now = now or datetime.now(timezone.utc)
    props = raw.get("properties") or {}
    if not isinstance(props, dict):
        props = {}

    term = get_str(props, "term")
    purchase_date = get_datetime(props, "purchaseDate", "purchaseDateTime")
    expiry_date = get_datetime(props, "expiryDateTime", "expiryDate")
    scopes = props.get("appliedScopes")
    applied_scopes = [str(s) for s in scopes if s] if isinstance(scopes, list) else []

    return Reservation(
        reservation_id=get_str(raw, "name"),
        order_id=get_str(order, "name"),
        display_name=get_str(props, "displayName"),
        status=get_str(props, "provisioningState"),
        sku_name=get_str(raw, "sku"),
        resource_type=get_str(props, "reservedResourceType"),
        term=term,
        term_display=TERM_DISPLAY.get(term, term),
        quantity=get_float(props, "quantity") or 0.0,
        location=get_str(props, "location") or get_str(raw, "location"),
        applied_scope_type=get_str(props, "appliedScopeType"),
        applied_scopes=applied_scopes,
        billing_plan=get_str(props, "billingPlan"),
        renew=props.get("renew") is True,
        purchase_date=purchase_date,
        expiry_date=expiry_date,
        effective_date=get_datetime(props, "effectiveDateTime"),
        benefit_start_time=get_datetime(props, "benefitStartTime"),
        days_to_expiry=_whole_days((expiry_date - now).total_seconds()) if expiry_date else None,
        months_owned=int((now - purchase_date).total_seconds() / 86400 / 30) if purchase_date else None,
    )


def parse_utilization(summaries: Iterable[Mapping[str, Any]]) -> List[DailyUtilization]:
    """Daily utilization points, ascending by date. Rows without a usable date are dropped."""
    points: Dict[date, DailyUtilization] = {}
    for item in summaries:
        props = item.get("properties") or {}
        usage_date = get_datetime(props, "usageDate")
        if usage_date is None:
            continue
        used = get_float(props, "usedHours") or 0.0
        reserved = get_float(props, "reservedHours") or 0.0
        percent = get_float(props, "avgUtilizationPercentage")
        if percent is None:
            percent = used / reserved * 100 if reserved > 0 else 0.0

        day = usage_date.date()
        if day in points:
            continue
        points[day] = DailyUtilization(
            date=day,
            used_hours=used,
            reserved_hours=reserved,
            utilization_percent=percent,
            used_quantity=get_float(props, "usedQuantity") or 0.0,
            reserved_quantity=get_float(props, "reservedQuantity") or 0.0,
        )
    return [points[d] for d in sorted(points)]


def apply_utilization(reservation: Reservation, daily: List[DailyUtilization]) -> Reservation:
    """Attach the series and its 30/7/1-day aggregates (1 decimal)."""
    reservation.daily_utilization = daily
    if not daily:
        return reservation

    percents = [p.utilization_percent for p in daily]
    recent = percents[-7:]
    reservation.utilization_30_day = round(sum(percents) / len(percents), 1)
    reservation.utilization_7_day = round(sum(recent) / len(recent), 1)
    reservation.utilization_1_day = round(percents[-1], 1)
    reservation.min_utilization = round(min(percents), 1)
    reservation.max_utilization = round(max(percents), 1)
    return reservation


def parse_covered_resources(details: Iterable[Mapping[str, Any]]) -> List[CoveredResource]:
    """Aggregate reservation usage details per instance, busiest first."""
    usage: "OrderedDict[str, list]" = OrderedDict()
    for item in details:
        props = item.get("properties") or {}
        instance_id = get_str(props, "instanceId")
        instance_name = get_str(props, "instanceName")
        if not instance_name and instance_id:
            instance_name = instance_id.rstrip("/").split("/")[-1]
        key = instance_id or instance_name
        if not key:
            continue
        hours = get_float(props, "usedHours") or 0.0
        if key in usage:
            usage[key][2] += hours
            usage[key][3] += 1
        else:
            usage[key] = [instance_name, instance_id, hours, 1]

    ranked = sorted(usage.values(), key=lambda u: u[2], reverse=True)
    return [
        CoveredResource(
            resource_name=name,
            resource_id=rid,
            total_used_hours=round(hours, 2),
            days_used=days,
            avg_hours_per_day=round(hours / max(days, 1), 2),
        )
        for name, rid, hours, days in ranked
    ]


def parse_purchase_recommendation(
    raw: Mapping[str, Any], subscription_name: str, subscription_id: str = ""
) -> PurchaseRecommendation:
    props = raw.get("properties") or {}
    if not isinstance(props, dict):
        props = {}

    net_savings = get_float(props, "netSavings") or 0.0
    cost_without = get_float(props, "costWithNoReservedInstances") or 0.0
    cost_with = get_float(props, "totalCostWithReservedInstances") or 0.0
    savings_percent = round(net_savings / cost_without * 100, 1) if cost_without > 0 else 0.0

    return PurchaseRecommendation(
        subscription_name=subscription_name,
        subscription_id=subscription_id,
        sku_name=get_str(raw, "sku") or get_str(props, "normalizedSize", "skuName"),
        location=get_str(raw, "location") or get_str(props, "location"),
        resource_type=get_str(props, "resourceType"),
        term=get_str(props, "term"),
        quantity=get_float(props, "recommendedQuantity", "quantity") or 0.0,
        look_back_period=get_str(props, "lookBackPeriod"),
        monthly_savings=round(net_savings, 2),
        annual_savings=round(net_savings * 12, 2),
        cost_with_ri=round(cost_with, 2),
        cost_without_ri=round(cost_without, 2),
        savings_percent=savings_percent,
    )
