from datetime import date, datetime, timezone

from app.modules.reservations.domain.parsers import (
    apply_utilization,
    get_datetime,
    get_float,
    get_str,
    parse_covered_resources,
    parse_purchase_recommendation,
    parse_reservation,
    parse_utilization,
)

NOW = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)

ORDER = {"name": "order-1", "properties": {"displayName": "Order"}}


def raw_reservation(**props):
    base = {
        "displayName": "VM_RI_01",
        "provisioningState": "Succeeded",
        "reservedResourceType": "VirtualMachines",
        "term": "P1Y",
        "quantity": 2,
        "appliedScopeType": "Shared",
        "billingPlan": "Monthly",
        "renew": True,
        "purchaseDate": "2025-03-20T00:00:00Z",
        "expiryDateTime": "2026-03-01T12:00:00.1234567Z",
    }
    base.update(props)
    return {"name": "res-1", "sku": {"name": "Standard_D2s_v3"}, "location": "uksouth", "properties": base}


def util_row(day, percent=None, used=None, reserved=None):
    props = {"usageDate": f"{day.isoformat()}T00:00:00Z"}
    if percent is not None:
        props["avgUtilizationPercentage"] = percent
    if used is not None:
        props["usedHours"] = used
    if reserved is not None:
        props["reservedHours"] = reserved
    return {"properties": props}


class TestFieldReaders:
    def test_get_str_reads_name_from_objects(self):
        assert get_str({"sku": {"name": "D2"}}, "sku") == "D2"
        assert get_str({"sku": "D2"}, "sku") == "D2"
        assert get_str({}, "sku") == ""

    def test_get_float_tolerates_bad_values(self):
        assert get_float({"a": "1.5"}, "a") == 1.5
        assert get_float({"a": "x"}, "a") is None
        assert get_float({"a": True}, "a") is None
        assert get_float({"b": 2}, "a", "b") == 2.0

    def test_get_datetime_handles_seven_fraction_digits(self):
        parsed = get_datetime({"d": "2026-03-01T12:00:00.1234567Z"}, "d")

        assert parsed == datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)

    def test_get_datetime_assumes_utc(self):
        assert get_datetime({"d": "2026-03-01T00:00:00"}, "d").tzinfo == timezone.utc
        assert get_datetime({"d": "garbage"}, "d") is None


def test_parse_reservation():
    res = parse_reservation(raw_reservation(), ORDER, now=NOW)

    assert res.reservation_id == "res-1"
    assert res.order_id == "order-1"
    assert res.sku_name == "Standard_D2s_v3"
    assert res.term_display == "1 Year"
    assert res.quantity == 2.0
    assert res.location == "uksouth"
    assert res.renew is True
    assert res.days_to_expiry == 40
    assert res.months_owned == 10
    assert res.is_active
    assert res.is_expiring_soon


def test_parse_reservation_tolerates_missing_fields():
    res = parse_reservation({"name": "res-2"}, {"name": "order-2"}, now=NOW)

    assert res.reservation_id == "res-2"
    assert res.days_to_expiry is None
    assert res.months_owned is None
    assert res.quantity == 0.0
    assert not res.is_active


def test_parse_reservation_with_bad_date_keeps_other_fields():
    res = parse_reservation(raw_reservation(expiryDateTime="soon"), ORDER, now=NOW)

    assert res.expiry_date is None
    assert res.days_to_expiry is None
    assert res.display_name == "VM_RI_01"


def test_days_to_expiry_is_negative_after_expiry():
    res = parse_reservation(raw_reservation(expiryDateTime="2026-01-10T00:00:00Z"), ORDER, now=NOW)

    assert res.days_to_expiry == -10
    assert not res.is_expiring_soon


def test_parse_utilization_sorts_ascending_and_derives_percent():
    rows = [
        util_row(date(2026, 1, 3), percent=50),
        util_row(date(2026, 1, 1), used=12, reserved=24),
        util_row(date(2026, 1, 2), used=0, reserved=0),
        {"properties": {"avgUtilizationPercentage": 10}},
    ]

    points = parse_utilization(rows)

    assert [p.date for p in points] == [date(2026, 1, 1), date(2026, 1, 2), date(2026, 1, 3)]
    assert [p.utilization_percent for p in points] == [50.0, 0.0, 50.0]


def test_apply_utilization_aggregates():
    res = parse_reservation(raw_reservation(), ORDER, now=NOW)
    points = parse_utilization(util_row(date(2026, 1, d), percent=p) for d, p in [
        (1, 10), (2, 20), (3, 30), (4, 40), (5, 50), (6, 60), (7, 70), (8, 80), (9, 90.06),
    ])

    apply_utilization(res, points)

    assert res.utilization_30_day == 50.0
    # last seven points: 30..90.06
    assert res.utilization_7_day == 60.0
    assert res.utilization_1_day == 90.1
    assert res.min_utilization == 10.0
    assert res.max_utilization == 90.1
    assert res.has_utilization_data


def test_apply_utilization_without_points_leaves_aggregates_unset():
    res = apply_utilization(parse_reservation(raw_reservation(), ORDER, now=NOW), [])

    assert res.utilization_30_day is None
    assert not res.has_utilization_data


def test_covered_resources_are_aggregated_busiest_first():
    details = [
        {"properties": {"instanceId": "/subscriptions/s/vm-a", "usedHours": 10}},
        {"properties": {"instanceId": "/subscriptions/s/vm-b", "instanceName": "vm-b", "usedHours": 24}},
        {"properties": {"instanceId": "/subscriptions/s/vm-a", "usedHours": 20}},
        {"properties": {"usedHours": 5}},
    ]

    covered = parse_covered_resources(details)

    assert [c.resource_name for c in covered] == ["vm-a", "vm-b"]
    assert covered[0].total_used_hours == 30.0
    assert covered[0].days_used == 2
    assert covered[0].avg_hours_per_day == 15.0


def test_parse_purchase_recommendation():
    raw = {
        "sku": "Standard_D4s_v3",
        "location": "uksouth",
        "properties": {
            "resourceType": "virtualmachines",
            "term": "P3Y",
            "recommendedQuantity": 3,
            "lookBackPeriod": "Last30Days",
            "netSavings": 250.456,
            "costWithNoReservedInstances": 1000,
            "totalCostWithReservedInstances": 749.544,
        },
    }

    rec = parse_purchase_recommendation(raw, "Production", "sub-1")

    assert rec.sku_name == "Standard_D4s_v3"
    assert rec.quantity == 3.0
    assert rec.monthly_savings == 250.46
    assert rec.annual_savings == 3005.47
    assert rec.savings_percent == 25.0
    assert rec.model_dump(by_alias=True)["costWithRI"] == 749.54


def test_purchase_recommendation_defaults_to_zero():
    rec = parse_purchase_recommendation({"properties": {"netSavings": "n/a"}}, "Production")

    assert rec.annual_savings == 0.0
    assert rec.savings_percent == 0.0
    assert rec.quantity == 0.0
