import pytest
from datetime import date
from decimal import Decimal

import pandas as pd

from app.modules.reporting.domain.extractor import FocusRecordExtractor, COLUMN_ALIASES
from conftest import focus_row, make_parquet

TODAY = date(2026, 1, 20)


@pytest.fixture
def extractor():
    return FocusRecordExtractor()


def test_zero_cost_rows_are_dropped(extractor):
    rows = [focus_row(0.0, date(2026, 1, 5), resource=f"vm-{i}") for i in range(100)]
    rows += [focus_row(1.5, date(2026, 1, 5), resource=f"vm-paid-{i}") for i in range(20)]

    result = extractor.extract(make_parquet(rows), source="part_0.parquet", today=TODAY)

    assert result.rows_read == 120
    assert len(result.records) == 20
    assert not result.failed
    assert all(r.billed_cost == Decimal("1.5") for r in result.records)


def test_focus_columns_are_normalized(extractor):
    result = extractor.extract(make_parquet([focus_row(12.34, date(2026, 1, 3))]), today=TODAY)

    record = result.records[0]
    assert record.service_name == "Virtual Machines"
    assert record.service_category == "Compute"
    assert record.resource_name == "vm-web-01"
    assert record.region == "uksouth"
    assert record.subscription_name == "Production"
    assert record.subscription_id == "sub-1"
    assert record.resource_group == "rg-app"
    assert record.date == date(2026, 1, 3)


def test_legacy_column_aliases(extractor):
    df = pd.DataFrame([{
        "Cost": 7.0,
        "MeterCategory": "Storage",
        "ConsumedService": "Microsoft.Storage",
        "ResourceId": "/subscriptions/s/resourceGroups/rg-data/providers/Microsoft.Storage/storageAccounts/st1",
        "ResourceLocation": "westeurope",
        "SubscriptionName": "Legacy",
        "SubscriptionId": "s",
        "Date": "2026-01-02",
    }])

    result = extractor.extract_frame(df, today=TODAY)

    record = result.records[0]
    assert record.billed_cost == Decimal("7.0")
    assert record.service_name == "Storage"
    assert record.service_category == "Microsoft.Storage"
    # resourceName falls back to the resource id
    assert record.resource_name.endswith("/st1")
    assert record.resource_group == "rg-data"
    assert record.region == "westeurope"
    assert record.date == date(2026, 1, 2)


def test_first_alias_wins_when_several_present(extractor):
    df = pd.DataFrame([{"BilledCost": 3.0, "EffectiveCost": 99.0, "ChargePeriodStart": "2026-01-02"}])

    result = extractor.extract_frame(df, today=TODAY)

    assert result.records[0].billed_cost == Decimal("3.0")


def test_missing_or_bad_date_falls_back_to_today(extractor):
    df = pd.DataFrame([
        {"BilledCost": 1.0, "ChargePeriodStart": None},
        {"BilledCost": 2.0, "ChargePeriodStart": "not a date"},
    ])

    result = extractor.extract_frame(df, today=TODAY)

    assert [r.date for r in result.records] == [TODAY, TODAY]


def test_malformed_cost_row_is_skipped(extractor):
    df = pd.DataFrame([
        {"BilledCost": "abc", "ChargePeriodStart": "2026-01-02"},
        {"BilledCost": "4.25", "ChargePeriodStart": "2026-01-02"},
    ])

    result = extractor.extract_frame(df, today=TODAY)

    assert result.rows_skipped == 1
    assert [r.billed_cost for r in result.records] == [Decimal("4.25")]


def test_file_without_cost_column_yields_nothing(extractor):
    df = pd.DataFrame([{"ServiceName": "x", "ChargePeriodStart": "2026-01-02"}])

    result = extractor.extract_frame(df, today=TODAY)

    assert result.records == []
    assert result.columns == ["ServiceName", "ChargePeriodStart"]
    assert not result.failed


def test_unreadable_file_is_reported_not_raised(extractor):
    result = extractor.extract(b"definitely not parquet", source="broken.parquet", today=TODAY)

    assert result.failed
    assert result.records == []
    assert result.error


def test_resolve_columns_is_case_insensitive(extractor):
    resolved = extractor.resolve_columns(["billedcost", "SERVICENAME", "x"])

    assert resolved["billed_cost"] == "billedcost"
    assert resolved["service_name"] == "SERVICENAME"
    assert "region" not in resolved


def test_aliases_can_be_injected():
    extractor = FocusRecordExtractor(aliases={**COLUMN_ALIASES, "billed_cost": ("amount",)})
    df = pd.DataFrame([{"Amount": 5, "BilledCost": 1, "ChargePeriodStart": "2026-01-02"}])

    result = extractor.extract_frame(df, today=TODAY)

    assert result.records[0].billed_cost == Decimal("5")
