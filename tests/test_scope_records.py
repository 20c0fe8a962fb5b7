from datetime import datetime, timezone

import pytest

from models.scope_records import (
    EmissionValues,
    Measurement,
    ProcessNodeRecord,
    ScopeInstance,
    number_or_none,
    parse_timestamp,
    resolve_custom_values,
)


def test_scope_aliases_resolved_once():
    scope = ScopeInstance.from_dict({
        "_id": "abc",
        "scopeIdentifier": "  Diesel ",
        "scopeType": "Scope 1",
        "customValue": {"AssestLifeTime": "12", "T&DLossFactor": 0.05, "toDisposal": None},
        "previousScopeIdentifier": "Old_Diesel",
        "notes": "keep me",
    })

    assert scope.scope_uid == "abc"
    assert scope.name == "Diesel"
    assert scope.custom_values == {"assetLifetime": 12.0, "TDLossFactor": 0.05}
    assert scope.rename_hints == ("Old_Diesel",)
    assert scope.extra == {"notes": "keep me"}


def test_absent_allocation_defaults_to_100():
    scope = ScopeInstance.from_dict({"scopeIdentifier": "Grid"})
    assert scope.allocation_pct is None
    assert scope.effective_allocation_pct == 100.0

    explicit = ScopeInstance.from_dict({"scopeIdentifier": "Grid", "allocationPct": 0})
    assert explicit.effective_allocation_pct == 0.0


def test_top_level_custom_factor_moves_into_factor_values():
    scope = ScopeInstance.from_dict({
        "scopeIdentifier": "Refrigerant",
        "customEmissionFactor": {"CO2e": 1.5},
    })
    assert scope.emission_factor_values == {"customEmissionFactor": {"CO2e": 1.5}}
    assert "customEmissionFactor" not in scope.to_dict()


def test_node_round_trip_keeps_unknown_details():
    raw = {
        "id": "n1",
        "label": "Boiler House",
        "details": {
            "department": "Utilities",
            "location": "Plant A",
            "nodeType": "process",
            "owner": "ops",
            "scopeDetails": [{"scopeIdentifier": "Gas", "allocationPct": 40}],
        },
    }
    record = ProcessNodeRecord.from_dict(raw)

    assert record.department == "Utilities"
    assert record.scopes[0].allocation_pct == 40.0
    assert record.to_dict()["details"]["owner"] == "ops"
    assert record.to_dict()["details"]["scopeDetails"] == [{"scopeIdentifier": "Gas", "allocationPct": 40.0}]


def test_display_label_falls_back_to_type_then_id():
    assert ProcessNodeRecord(id="n1", node_type="meter").display_label == "meter"
    assert ProcessNodeRecord(id="n1").display_label == "n1"


def test_calculated_emissions_read_incoming_only():
    values = EmissionValues.from_calculated_emissions({
        "incoming": {
            "fuel": {"CO2e": 2.0, "CO2": 1.8, "CH4": 0.1},
            "extra": {"emission": 1.0},
        },
        "cumulative": {"fuel": {"CO2e": 999.0}},
    })
    assert values.co2e == pytest.approx(3.0)
    assert values.co2 == pytest.approx(1.8)
    assert values.ch4 == pytest.approx(0.1)


def test_measurement_from_dict():
    m = Measurement.from_dict({
        "scopeIdentifier": "Grid",
        "calculatedEmissions": {"incoming": {"grid": {"CO2e": 5}}},
        "inputType": "API",
        "_id": "e1",
    })
    assert m.values.co2e == 5.0
    assert m.input_type == "API"
    assert m.entry_id == "e1"


def test_number_or_none_rejects_garbage():
    assert number_or_none("3.5") == 3.5
    assert number_or_none("") is None
    assert number_or_none("n/a") is None
    assert number_or_none(True) is None
    assert resolve_custom_values(None) == {}


def test_parse_timestamp_normalizes_to_naive_utc():
    assert parse_timestamp("2024-03-15T10:00:00") == datetime(2024, 3, 15, 10)
    assert parse_timestamp("2024-03-15T10:00:00Z") == datetime(2024, 3, 15, 10)
    assert parse_timestamp("2024-03-15T12:00:00+02:00") == datetime(2024, 3, 15, 10)
    assert parse_timestamp(datetime(2024, 3, 15, 10, tzinfo=timezone.utc)) == datetime(2024, 3, 15, 10)
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    with pytest.raises(ValueError):
        parse_timestamp(1710496800)


def test_measurement_timestamp_is_parsed():
    m = Measurement.from_dict({"scopeIdentifier": "Grid", "CO2e": 1, "timestamp": "2024-03-15T00:00:00Z"})
    assert m.timestamp == datetime(2024, 3, 15)
    assert m.timestamp.tzinfo is None
