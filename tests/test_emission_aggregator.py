from datetime import datetime

import pytest

from engine.allocation_index import build_allocation_index
from engine.emission_aggregator import (
    AllocationWeightedAggregator,
    calculate_process_emission_summary,
    empty_summary,
)
from engine.reporting_period import build_date_range
from models.scope_records import EmissionValues, Measurement, nodes_from_dicts


@pytest.fixture
def nodes():
    return nodes_from_dicts([
        {
            "id": "A",
            "label": "Assembly",
            "details": {
                "department": "Production",
                "location": "Plant 1",
                "scopeDetails": [
                    {"scopeIdentifier": "Grid", "scopeType": "Scope 2",
                     "categoryName": "Purchased Electricity", "activity": "Power", "allocationPct": 30},
                    {"scopeIdentifier": "Diesel", "scopeType": "Scope 1",
                     "categoryName": "Stationary Combustion", "activity": "Generator"},
                ],
            },
        },
        {
            "id": "B",
            "label": "Packing",
            "details": {
                "department": "Logistics",
                "location": "Plant 2",
                "scopeDetails": [
                    {"scopeIdentifier": "Grid", "scopeType": "Scope 2",
                     "categoryName": "Purchased Electricity", "activity": "Power", "allocationPct": 70},
                ],
            },
        },
    ])


@pytest.fixture
def period():
    return build_date_range("monthly", 2024, 3)


def _m(sid, co2e, entry_id=None, when=datetime(2024, 3, 15), **extra):
    return Measurement(
        scope_identifier=sid,
        values=EmissionValues(co2e=co2e, co2=co2e * 0.9),
        timestamp=when,
        input_type=extra.get("input_type", "manual"),
        emission_factor=extra.get("emission_factor", "DEFRA"),
        entry_id=entry_id,
    )


def test_shared_scope_split_by_allocation(nodes, period):
    summary = AllocationWeightedAggregator().aggregate([_m("Grid", 100.0, "e1")], build_allocation_index(nodes), period)

    assert summary["byNode"]["A"]["CO2e"] == pytest.approx(30.0)
    assert summary["byNode"]["B"]["CO2e"] == pytest.approx(70.0)
    assert summary["totalEmissions"]["CO2e"] == pytest.approx(100.0)
    assert summary["byScope"]["Scope 2"]["CO2e"] == pytest.approx(100.0)
    assert summary["byDepartment"]["Production"]["CO2e"] == pytest.approx(30.0)
    assert summary["byLocation"]["Plant 2"]["CO2e"] == pytest.approx(70.0)
    assert summary["byInputType"]["manual"]["CO2e"] == pytest.approx(100.0)
    assert summary["byEmissionFactor"]["DEFRA"]["scopeTypes"]["Scope 2"] == 2

    meta = summary["metadata"]
    assert meta["measurementsIncluded"] == 1
    assert meta["totalDataPoints"] == 2
    assert meta["sharedScopeIdentifiers"] == 1
    assert meta["dataEntriesIncluded"] == ["e1"]
    assert meta["isComplete"] and not meta["hasErrors"]


def test_valid_allocation_conserves_emissions(nodes, period):
    measurements = [_m("Grid", 12.5), _m("Grid", 7.25), _m("Diesel", 3.0)]
    summary = AllocationWeightedAggregator().aggregate(measurements, build_allocation_index(nodes), period)

    node_total = sum(n["CO2e"] for n in summary["byNode"].values())
    assert node_total == pytest.approx(22.75)
    assert summary["totalEmissions"]["CO2e"] == pytest.approx(22.75)
    grid = summary["byScopeIdentifier"]["Grid"]
    assert grid["rawEmissions"]["CO2e"] == pytest.approx(19.75)
    assert grid["CO2e"] == pytest.approx(19.75)


def test_category_and_activity_buckets(nodes, period):
    summary = AllocationWeightedAggregator().aggregate(
        [_m("Grid", 10.0), _m("Diesel", 4.0)], build_allocation_index(nodes), period
    )
    assert summary["byCategory"]["Purchased Electricity"]["activities"]["Power"]["CO2e"] == pytest.approx(10.0)
    assert summary["byActivity"]["Generator"]["categoryName"] == "Stationary Combustion"
    assert summary["byScope"]["Scope 1"]["CO2e"] == pytest.approx(4.0)


def test_unknown_identifier_and_out_of_period_are_filtered(nodes, period):
    measurements = [
        _m("Steam", 50.0),
        _m("Grid", 50.0, when=datetime(2024, 4, 1)),
        _m("Grid", 0.0),
    ]
    summary = AllocationWeightedAggregator().aggregate(measurements, build_allocation_index(nodes), period)

    meta = summary["metadata"]
    assert meta["filteredDataPoints"] == 2
    assert meta["zeroValueDataPoints"] == 1
    assert meta["measurementsIncluded"] == 0
    assert summary["totalEmissions"]["CO2e"] == 0.0


def test_near_zero_contribution_kept_in_totals_only(nodes, period):
    summary = AllocationWeightedAggregator().aggregate(
        [_m("Grid", 0.0002)], build_allocation_index(nodes), period
    )

    # 30% of 0.0002 falls under the detail threshold, 70% does not.
    assert "A" not in summary["byNode"]
    assert summary["byNode"]["B"]["CO2e"] == pytest.approx(0.00014)
    assert summary["totalEmissions"]["CO2e"] == pytest.approx(0.0002)
    assert summary["byDepartment"]["Production"]["CO2e"] == pytest.approx(0.00006)
    assert summary["metadata"]["detailContributionsDropped"] == 1


def test_unallocated_share_is_reported():
    nodes = nodes_from_dicts([
        {"id": "A", "details": {"scopeDetails": [{"scopeIdentifier": "Gas", "allocationPct": 40}]}},
    ])
    summary = AllocationWeightedAggregator().aggregate([_m("Gas", 10.0)], build_allocation_index(nodes))

    breakdown = summary["byScopeIdentifier"]["Gas"]["allocationBreakdown"]
    assert breakdown["rawEmissions"]["CO2e"] == 10.0
    assert breakdown["allocatedEmissions"]["total"]["CO2e"] == 4.0
    assert breakdown["unallocatedEmissions"]["unallocatedPct"] == 60.0
    assert breakdown["unallocatedEmissions"]["emissions"]["CO2e"] == 6.0
    assert breakdown["unallocatedEmissions"]["hasUnallocated"] is True
    assert len(summary["metadata"]["allocationWarnings"]) == 1


def test_shared_count_comes_from_index_not_measurements(nodes, period):
    summary = AllocationWeightedAggregator().aggregate([_m("Diesel", 1.0)], build_allocation_index(nodes), period)
    assert summary["metadata"]["sharedScopeIdentifiers"] == 1
    assert "Grid" not in summary["byScopeIdentifier"]


def test_aggregation_failure_returns_degraded_summary(nodes, period):
    def broken():
        yield _m("Grid", 1.0)
        raise RuntimeError("connection reset")

    summary = AllocationWeightedAggregator().aggregate(broken(), build_allocation_index(nodes), period)

    meta = summary["metadata"]
    assert meta["isComplete"] is False
    assert meta["hasErrors"] is True
    assert "connection reset" in meta["errors"][0]
    assert summary["totalEmissions"]["CO2e"] == 0.0


def test_calculate_summary_without_nodes(period):
    summary = calculate_process_emission_summary(lambda: [], lambda p: [], period)
    assert summary["metadata"]["errors"] == ["No process flowchart nodes found"]
    assert summary["metadata"]["isComplete"] is True


def test_calculate_summary_without_scopes(period):
    nodes = nodes_from_dicts([{"id": "A", "details": {"scopeDetails": []}}])
    summary = calculate_process_emission_summary(lambda: nodes, lambda p: [], period)
    assert summary["metadata"]["errors"] == ["No valid scopes in process flowchart"]


def test_calculate_summary_loader_failure(nodes, period):
    def load_measurements(p):
        raise RuntimeError("store unavailable")

    summary = calculate_process_emission_summary(lambda: nodes, load_measurements, period)
    assert summary["metadata"]["isComplete"] is False
    assert summary["metadata"]["hasErrors"] is True


def test_calculate_summary_passes_period_to_loader(nodes, period):
    seen = []

    def load_measurements(p):
        seen.append(p)
        return [_m("Grid", 10.0)]

    summary = calculate_process_emission_summary(lambda: nodes, load_measurements, period, calculated_by="u1")
    assert seen == [period]
    assert summary["period"]["type"] == "monthly"
    assert summary["metadata"]["calculatedBy"] == "u1"
    assert summary["totalEmissions"]["CO2e"] == pytest.approx(10.0)


def test_empty_summary_shape():
    summary = empty_summary()
    assert set(summary["byScope"]) == {"Scope 1", "Scope 2", "Scope 3"}
    assert set(summary["byInputType"]) == {"manual", "API", "IOT"}
    assert summary["metadata"]["allocationApplied"] is True


@pytest.mark.parametrize("stamp", ["2024-03-15T00:00:00", "2024-03-15T00:00:00Z", "2024-03-15T02:00:00+02:00"])
def test_iso_string_timestamps_fall_inside_period(nodes, period, stamp):
    measurement = Measurement.from_dict({"scopeIdentifier": "Grid", "CO2e": 10, "timestamp": stamp})
    summary = AllocationWeightedAggregator().aggregate([measurement], build_allocation_index(nodes), period)

    assert summary["metadata"]["isComplete"] is True
    assert summary["totalEmissions"]["CO2e"] == pytest.approx(10.0)
