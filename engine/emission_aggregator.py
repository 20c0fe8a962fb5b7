"""
Allocation-Weighted Emission Aggregator
=======================================
Rolls already-computed measurements up into a multi-dimensional summary,
splitting every measurement across the nodes that share its scopeIdentifier.

For a measurement tagged ``sid`` the index yields one entry per referencing
node.  Each entry receives ``value * allocationPct / 100`` in every applicable
bucket: total, scope tier, category, activity, node, department, location,
input type, emission factor source and scope identifier.  When a shared
group's allocations are valid, the node contributions of one measurement add
back up to the measurement itself.

Contributions below ``MIN_DETAIL_CONTRIBUTION`` tCO2e are kept in the totals
but left out of the per-node and per-scopeIdentifier detail.

The aggregator never raises: a failure while loading or summing produces a
zeroed summary flagged ``isComplete=False`` / ``hasErrors=True``.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from engine.allocation_index import (
    ALLOCATION_SUM_TOLERANCE,
    AllocationEntry,
    AllocationIndex,
    build_allocation_index,
)
from engine.reporting_period import ReportingPeriod
from models.scope_records import (
    INPUT_TYPES,
    SCOPE_TYPES,
    EmissionValues,
    Measurement,
    ProcessNodeRecord,
)

logger = logging.getLogger(__name__)

MIN_DETAIL_CONTRIBUTION = 0.0001
SUMMARY_VERSION = 1

_GASES = ("CO2e", "CO2", "CH4", "N2O", "uncertainty")


def _bucket(**extra: Any) -> Dict[str, Any]:
    bucket: Dict[str, Any] = {gas: 0.0 for gas in _GASES}
    bucket["dataPointCount"] = 0
    bucket.update(extra)
    return bucket


def _tier_buckets() -> Dict[str, Dict[str, Any]]:
    return {tier: _bucket() for tier in SCOPE_TYPES}


def _add(bucket: Dict[str, Any], values: EmissionValues, count: bool = True) -> None:
    for gas, amount in values.to_dict().items():
        bucket[gas] += amount
    if count:
        bucket["dataPointCount"] += 1


def _rounded(values: EmissionValues) -> Dict[str, float]:
    return {gas: round(amount, 4) for gas, amount in values.to_dict().items()}


def empty_summary(
    period: Optional[ReportingPeriod] = None,
    error: Optional[str] = None,
    complete: bool = True,
    calculated_by: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "period": period.to_dict() if period else None,
        "totalEmissions": {gas: 0.0 for gas in _GASES},
        "byScope": _tier_buckets(),
        "byCategory": {},
        "byActivity": {},
        "byNode": {},
        "byScopeIdentifier": {},
        "byDepartment": {},
        "byLocation": {},
        "byInputType": {input_type: _bucket() for input_type in INPUT_TYPES},
        "byEmissionFactor": {},
        "metadata": {
            "totalDataPoints": 0,
            "measurementsIncluded": 0,
            "filteredDataPoints": 0,
            "zeroValueDataPoints": 0,
            "detailContributionsDropped": 0,
            "dataEntriesIncluded": [],
            "lastCalculated": datetime.utcnow().isoformat() + "Z",
            "calculatedBy": calculated_by,
            "version": SUMMARY_VERSION,
            "isComplete": complete,
            "hasErrors": error is not None,
            "errors": [error] if error else [],
            "calculationDuration": 0.0,
            "allocationApplied": complete and error is None,
            "sharedScopeIdentifiers": 0,
            "allocationWarnings": [],
        },
    }


class AllocationWeightedAggregator:
    """
    Produces one aggregate summary per call.  Holds no state between calls.
    """

    def __init__(self, min_detail_contribution: float = MIN_DETAIL_CONTRIBUTION):
        self.min_detail_contribution = min_detail_contribution

    def aggregate(
        self,
        measurements: Iterable[Measurement],
        index: AllocationIndex,
        period: Optional[ReportingPeriod] = None,
        calculated_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        t0 = time.perf_counter()
        try:
            summary = self._aggregate(measurements, index, period, calculated_by)
        except Exception as exc:
            logger.exception("Process emission aggregation failed")
            summary = empty_summary(period, error=f"Error: {exc}", complete=False, calculated_by=calculated_by)
        summary["metadata"]["calculationDuration"] = (time.perf_counter() - t0) * 1000
        return summary

    def _aggregate(
        self,
        measurements: Iterable[Measurement],
        index: AllocationIndex,
        period: Optional[ReportingPeriod],
        calculated_by: Optional[str],
    ) -> Dict[str, Any]:
        summary = empty_summary(period, calculated_by=calculated_by)
        meta = summary["metadata"]
        shared = set(index.shared_identifiers())
        seen_entries = set()

        for measurement in measurements:
            sid = (measurement.scope_identifier or "").strip()
            entries = index.get(sid) if sid else None
            out_of_period = (
                period is not None
                and measurement.timestamp is not None
                and not period.contains(measurement.timestamp)
            )
            if not entries or out_of_period:
                meta["filteredDataPoints"] += 1
                continue
            if measurement.values.is_zero():
                meta["zeroValueDataPoints"] += 1
                continue

            meta["measurementsIncluded"] += 1
            sid_bucket = self._scope_identifier_bucket(summary, sid, entries[0], measurement, sid in shared)
            _add(sid_bucket["rawEmissions"], measurement.values, count=False)

            for entry in entries:
                allocated = measurement.values.scaled(entry.allocation_pct / 100.0)
                if allocated.is_zero():
                    continue
                meta["totalDataPoints"] += 1
                self._add_contribution(summary, sid, entry, measurement, allocated, sid in shared)

            if measurement.entry_id is not None and measurement.entry_id not in seen_entries:
                seen_entries.add(measurement.entry_id)
                meta["dataEntriesIncluded"].append(measurement.entry_id)

        meta["sharedScopeIdentifiers"] = len(shared)
        meta["allocationWarnings"] = self._finalize_breakdowns(summary["byScopeIdentifier"], index)

        logger.info(
            "Process summary: %d allocated contributions, %d filtered, %d shared scopeIdentifiers",
            meta["totalDataPoints"], meta["filteredDataPoints"], meta["sharedScopeIdentifiers"],
        )
        return summary

    def _scope_type(self, entry: AllocationEntry, measurement: Measurement) -> str:
        return measurement.scope_type or entry.scope_type or "Unknown"

    def _scope_identifier_bucket(
        self,
        summary: Dict[str, Any],
        sid: str,
        entry: AllocationEntry,
        measurement: Measurement,
        is_shared: bool,
    ) -> Dict[str, Any]:
        by_sid = summary["byScopeIdentifier"]
        if sid not in by_sid:
            by_sid[sid] = _bucket(
                scopeType=self._scope_type(entry, measurement),
                categoryName=entry.category_name or "Unknown Category",
                activity=entry.activity or sid,
                isShared=is_shared,
                rawEmissions={gas: 0.0 for gas in _GASES},
                nodes={},
            )
        return by_sid[sid]

    def _add_contribution(
        self,
        summary: Dict[str, Any],
        sid: str,
        entry: AllocationEntry,
        measurement: Measurement,
        allocated: EmissionValues,
        is_shared: bool,
    ) -> None:
        meta = summary["metadata"]
        scope_type = self._scope_type(entry, measurement)
        category = entry.category_name or "Unknown Category"
        activity = entry.activity or sid
        department = entry.department or "Unknown"
        location = entry.location or "Unknown"
        input_type = measurement.input_type or "Unknown"
        emission_factor = measurement.emission_factor or "Unknown"

        _add(summary["totalEmissions"], allocated, count=False)
        _add(summary["byScope"].setdefault(scope_type, _bucket()), allocated)

        cat = summary["byCategory"].setdefault(category, _bucket(scopeType=scope_type, activities={}))
        _add(cat, allocated)
        _add(cat["activities"].setdefault(activity, _bucket()), allocated)

        act = summary["byActivity"].setdefault(
            activity, _bucket(scopeType=scope_type, categoryName=category)
        )
        _add(act, allocated)

        _add(summary["byDepartment"].setdefault(department, _bucket()), allocated)
        _add(summary["byLocation"].setdefault(location, _bucket()), allocated)
        _add(summary["byInputType"].setdefault(input_type, _bucket()), allocated)

        eff = summary["byEmissionFactor"].setdefault(
            emission_factor, _bucket(scopeTypes={tier: 0 for tier in SCOPE_TYPES})
        )
        _add(eff, allocated)
        eff["scopeTypes"][scope_type] = eff["scopeTypes"].get(scope_type, 0) + 1

        if abs(allocated.co2e) < self.min_detail_contribution:
            meta["detailContributionsDropped"] += 1
            return

        node = summary["byNode"].setdefault(entry.node_id, _bucket(
            nodeLabel=entry.node_label,
            department=department,
            location=location,
            byScope=_tier_buckets(),
            scopeIdentifiers={},
        ))
        _add(node, allocated)
        _add(node["byScope"].setdefault(scope_type, _bucket()), allocated)
        node_sid = node["scopeIdentifiers"].setdefault(sid, _bucket(
            allocationPct=entry.allocation_pct,
            isShared=is_shared,
        ))
        _add(node_sid, allocated)

        sid_bucket = summary["byScopeIdentifier"][sid]
        _add(sid_bucket, allocated)
        node_in_sid = sid_bucket["nodes"].setdefault(entry.node_id, _bucket(
            nodeLabel=entry.node_label,
            department=department,
            location=location,
            allocationPct=entry.allocation_pct,
        ))
        _add(node_in_sid, allocated)

    def _finalize_breakdowns(self, by_sid: Dict[str, Dict[str, Any]], index: AllocationIndex) -> List[str]:
        """
        Attach the raw / allocated / unallocated split to every
        scopeIdentifier bucket and collect a warning for each identifier that
        leaves part of its emissions unattributed.
        """
        warnings: List[str] = []
        for sid, bucket in by_sid.items():
            raw = EmissionValues.from_dict(bucket["rawEmissions"])
            total_pct = index.total_pct(sid)
            unallocated_pct = max(0.0, 100.0 - total_pct)
            unallocated = raw.scaled(unallocated_pct / 100.0)
            allocated_total = EmissionValues.from_dict(bucket)

            bucket["totalAllocatedPct"] = round(total_pct, 2)
            bucket["allocationBreakdown"] = {
                "rawEmissions": _rounded(raw),
                "allocatedEmissions": {
                    "totalAllocatedPct": round(total_pct, 2),
                    "total": _rounded(allocated_total),
                    "allocations": [
                        {
                            "nodeId": node_id,
                            "nodeLabel": node["nodeLabel"],
                            "department": node["department"],
                            "location": node["location"],
                            "allocationPct": node["allocationPct"],
                            "allocatedEmissions": _rounded(EmissionValues.from_dict(node)),
                            "dataPointCount": node["dataPointCount"],
                        }
                        for node_id, node in bucket["nodes"].items()
                    ],
                },
                "unallocatedEmissions": {
                    "unallocatedPct": round(unallocated_pct, 2),
                    "emissions": _rounded(unallocated),
                    "hasUnallocated": unallocated_pct > ALLOCATION_SUM_TOLERANCE,
                },
            }
            if unallocated_pct > ALLOCATION_SUM_TOLERANCE:
                warnings.append(
                    f'ScopeIdentifier "{sid}" has {unallocated_pct:.2f}% unallocated emissions '
                    f"(CO2e: {unallocated.co2e:.4f} tCO2e)"
                )
        return warnings


MeasurementLoader = Callable[[ReportingPeriod], Sequence[Measurement]]
NodeLoader = Callable[[], Sequence[ProcessNodeRecord]]


def calculate_process_emission_summary(
    load_nodes: NodeLoader,
    load_measurements: MeasurementLoader,
    period: ReportingPeriod,
    calculated_by: Optional[str] = None,
    aggregator: Optional[AllocationWeightedAggregator] = None,
) -> Dict[str, Any]:
    """
    Load the node graph and the period's measurements through the supplied
    providers, build a fresh allocation index and aggregate.  Provider
    failures come back as a degraded summary.
    """
    aggregator = aggregator or AllocationWeightedAggregator()
    t0 = time.perf_counter()
    try:
        nodes = load_nodes()
        if not nodes:
            return empty_summary(period, error="No process flowchart nodes found", calculated_by=calculated_by)

        index = build_allocation_index(nodes)
        if len(index) == 0:
            return empty_summary(period, error="No valid scopes in process flowchart", calculated_by=calculated_by)

        measurements = load_measurements(period)
    except Exception as exc:
        logger.exception("Failed to load process graph or measurements")
        summary = empty_summary(period, error=f"Error: {exc}", complete=False, calculated_by=calculated_by)
        summary["metadata"]["calculationDuration"] = (time.perf_counter() - t0) * 1000
        return summary

    return aggregator.aggregate(measurements, index, period=period, calculated_by=calculated_by)
