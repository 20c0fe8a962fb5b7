from typing import List, Optional, Dict, Any, Sequence, Tuple, Union
import logging

import networkx as nx
from sqlalchemy.orm import Session

from engine.allocation_index import ALLOCATION_SUM_TOLERANCE, AllocationIndex, build_allocation_index
from engine.allocation_validator import AllocationValidationResult, is_balanced, validate_allocations
from engine.auto_distribution import AutoDistributionResult, auto_distribute_allocation
from engine.errors import AllocationPatchError, NotFoundError
from engine.reporting_period import ReportingPeriod
from engine.scope_reconciler import check_scope_names, reconcile_scopes
from models.emission_data import EmissionDataEntry
from models.process_graph import ProcessEdge, ProcessFlowchart, ProcessNode
from models.scope_records import (
    DEFAULT_ALLOCATION_PCT,
    Measurement,
    ProcessNodeRecord,
    ScopeInstance,
)

logger = logging.getLogger(__name__)

NodeInput = Union[ProcessNodeRecord, Dict[str, Any]]


class ProcessGraphManager:
    """
    Loads and persists a client's process flowchart.

    Every write follows read-validate-write: the edit is applied to an
    in-memory copy of the whole node graph, the allocation validator runs
    against that copy, and only a passing verdict is committed.
    """
    def __init__(self, session: Session, tolerance: float = ALLOCATION_SUM_TOLERANCE):
        self.session = session
        self.tolerance = tolerance

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------
    def get_flowchart(self, client_id: str) -> Optional[ProcessFlowchart]:
        return (
            self.session.query(ProcessFlowchart)
            .filter(ProcessFlowchart.client_id == client_id, ProcessFlowchart.is_deleted.is_(False))
            .first()
        )

    def load_nodes(self, client_id: str) -> List[ProcessNodeRecord]:
        flowchart = self.get_flowchart(client_id)
        if not flowchart:
            return []
        return [row.to_record() for row in flowchart.nodes]

    def build_index(self, client_id: str) -> AllocationIndex:
        return build_allocation_index(self.load_nodes(client_id))

    def load_measurements(self, client_id: str, period: ReportingPeriod) -> List[Measurement]:
        rows = (
            self.session.query(EmissionDataEntry)
            .filter(
                EmissionDataEntry.client_id == client_id,
                EmissionDataEntry.processing_status == "processed",
                EmissionDataEntry.timestamp >= period.start,
                EmissionDataEntry.timestamp <= period.end,
            )
            .order_by(EmissionDataEntry.timestamp)
            .all()
        )
        return [row.to_measurement() for row in rows]

    def graph(self, client_id: str) -> nx.MultiDiGraph:
        """
        NetworkX view of the flowchart.  Edges are keyed by their row id so
        parallel edges between the same pair of nodes survive.
        """
        G = nx.MultiDiGraph()
        flowchart = self.get_flowchart(client_id)
        if not flowchart:
            return G
        for n in flowchart.nodes:
            G.add_node(n.id, label=n.label, is_deleted=n.is_deleted)
        for e in flowchart.edges:
            G.add_edge(e.source_node_id, e.target_node_id, key=e.id)
        return G

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def save_flowchart(
        self,
        client_id: str,
        nodes: Sequence[NodeInput],
        edges: Optional[Sequence[Dict[str, Any]]] = None,
        user_id: Optional[str] = None,
    ) -> Tuple[ProcessFlowchart, AllocationValidationResult]:
        """Replace the whole graph.  Creates the flowchart on first save."""
        records = [self._normalize_node(n) for n in nodes]
        validation = self._validate(records)

        flowchart = self.get_flowchart(client_id)
        if flowchart is None:
            flowchart = ProcessFlowchart(client_id=client_id, version=1, created_by=user_id)
            self.session.add(flowchart)
        else:
            flowchart.version = (flowchart.version or 0) + 1

        flowchart.nodes = [self._new_row(record, position) for position, record in enumerate(records)]
        flowchart.edges = [
            ProcessEdge(
                source_node_id=str(e["source"]),
                target_node_id=str(e["target"]),
                edge_metadata={k: v for k, v in e.items() if k not in ("id", "source", "target")} or None,
            )
            for e in edges or []
        ]
        flowchart.last_modified_by = user_id
        self.session.commit()
        logger.info(
            "Saved flowchart for client %s (version %d, %d nodes)",
            client_id, flowchart.version, len(records),
        )
        return flowchart, validation

    def update_node(
        self,
        client_id: str,
        node_id: str,
        node_data: Dict[str, Any],
        user_id: Optional[str] = None,
    ) -> Tuple[ProcessNodeRecord, AllocationValidationResult]:
        flowchart = self._require_flowchart(client_id)
        row = self._require_node(flowchart, node_id)
        existing = row.to_record()

        merged = self._merge_node(existing, node_data or {})
        records = [merged if n.id == node_id else n.to_record() for n in flowchart.nodes]
        validation = self._validate(records)

        row.apply_record(merged)
        self._touch(flowchart, user_id)
        self.session.commit()
        return merged, validation

    def delete_node(self, client_id: str, node_id: str, user_id: Optional[str] = None) -> int:
        """Remove a node and every edge touching it.  Returns the number of edges removed."""
        flowchart = self._require_flowchart(client_id)
        row = self._require_node(flowchart, node_id)

        remaining = [n.to_record() for n in flowchart.nodes if n.id != node_id]
        self._validate(remaining)

        G = self.graph(client_id)
        incident = {key for _, _, key in G.in_edges(node_id, keys=True)}
        incident |= {key for _, _, key in G.out_edges(node_id, keys=True)}

        flowchart.nodes.remove(row)
        flowchart.edges = [e for e in flowchart.edges if e.id not in incident]
        self._touch(flowchart, user_id)
        self.session.commit()
        logger.info("Deleted node %s from client %s with %d edge(s)", node_id, client_id, len(incident))
        return len(incident)

    def hard_delete_scope(
        self,
        client_id: str,
        node_id: str,
        scope_identifier: Optional[str] = None,
        scope_uid: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ScopeInstance:
        flowchart = self._require_flowchart(client_id)
        row = self._require_node(flowchart, node_id)
        record = row.to_record()

        position = next(
            (
                i for i, s in enumerate(record.scopes)
                if (scope_uid and s.scope_uid == scope_uid)
                or (scope_identifier and s.scope_identifier == scope_identifier)
            ),
            None,
        )
        if position is None:
            raise NotFoundError(f"Scope detail {scope_uid or scope_identifier} not found on node {node_id}")

        removed = record.scopes.pop(position)
        records = [record if n.id == node_id else n.to_record() for n in flowchart.nodes]
        self._validate(records)

        row.apply_record(record)
        self._touch(flowchart, user_id)
        self.session.commit()
        logger.info("Hard-deleted scope %s from node %s", removed.scope_identifier, node_id)
        return removed

    def update_allocations(
        self,
        client_id: str,
        allocations: Sequence[Dict[str, Any]],
        user_id: Optional[str] = None,
    ) -> Tuple[int, AllocationIndex, AllocationValidationResult]:
        """
        Allocation-only patch::

            [{"scopeIdentifier": "Electricity_Main",
              "nodeAllocations": [{"nodeId": "n1", "allocationPct": 30},
                                  {"nodeId": "n2", "allocationPct": 70}]}]
        """
        if not allocations:
            raise AllocationPatchError([{"error": 'Request must contain an "allocations" array'}])

        updates = self._check_allocation_patch(allocations)
        flowchart = self._require_flowchart(client_id)
        records = {n.id: n.to_record() for n in flowchart.nodes}

        updated = 0
        for sid, node_id, pct in updates:
            record = records.get(node_id)
            if record is None:
                continue
            for scope in record.scopes:
                if scope.scope_identifier == sid and not scope.is_deleted:
                    scope.allocation_pct = pct
                    updated += 1

        ordered = [records[n.id] for n in flowchart.nodes]
        validation = self._validate(ordered)

        for row in flowchart.nodes:
            row.apply_record(records[row.id])
        self._touch(flowchart, user_id)
        self.session.commit()
        return updated, build_allocation_index(ordered), validation

    def auto_distribute(
        self,
        client_id: str,
        scope_identifier: str,
        user_id: Optional[str] = None,
    ) -> AutoDistributionResult:
        flowchart = self._require_flowchart(client_id)
        records = [n.to_record() for n in flowchart.nodes]
        result = auto_distribute_allocation(records, scope_identifier)
        if not result.distributed:
            return result

        self._validate(records)
        for row, record in zip(flowchart.nodes, records):
            row.apply_record(record)
        self._touch(flowchart, user_id)
        self.session.commit()
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _validate(self, records: Sequence[ProcessNodeRecord]) -> AllocationValidationResult:
        """Raises AllocationValidationError (fail-closed) when any shared group is off 100%."""
        return validate_allocations(records, tolerance=self.tolerance).ensure_valid()

    def _require_flowchart(self, client_id: str) -> ProcessFlowchart:
        flowchart = self.get_flowchart(client_id)
        if not flowchart:
            raise NotFoundError(f"Process flowchart for client {client_id} not found")
        return flowchart

    def _require_node(self, flowchart: ProcessFlowchart, node_id: str) -> ProcessNode:
        row = next((n for n in flowchart.nodes if n.id == node_id), None)
        if row is None:
            raise NotFoundError(f"Node {node_id} not found")
        return row

    def _touch(self, flowchart: ProcessFlowchart, user_id: Optional[str]) -> None:
        flowchart.version = (flowchart.version or 0) + 1
        flowchart.last_modified_by = user_id

    def _new_row(self, record: ProcessNodeRecord, position: int) -> ProcessNode:
        row = ProcessNode(id=record.id, position=position)
        row.apply_record(record)
        return row

    def _normalize_node(self, node: NodeInput) -> ProcessNodeRecord:
        record = node if isinstance(node, ProcessNodeRecord) else ProcessNodeRecord.from_dict(node)
        for scope in record.scopes:
            if scope.allocation_pct is None:
                scope.allocation_pct = DEFAULT_ALLOCATION_PCT
        # An empty previous list still mints uids and enforces unique names.
        record.scopes = reconcile_scopes([], record.scopes) if record.scopes else []
        return record

    def _merge_node(self, existing: ProcessNodeRecord, node_data: Dict[str, Any]) -> ProcessNodeRecord:
        raw = existing.to_dict()
        details = raw["details"]
        incoming_details = node_data.get("details") or {}
        for key, value in incoming_details.items():
            if key != "scopeDetails" and value is not None:
                details[key] = value
        for key, value in node_data.items():
            if key not in ("id", "details") and value is not None:
                raw[key] = value
        raw["id"] = existing.id
        raw["details"] = details

        merged = ProcessNodeRecord.from_dict(raw)
        incoming_scopes = incoming_details.get("scopeDetails")
        if incoming_scopes is not None:
            merged.scopes = reconcile_scopes(
                existing.scopes,
                [ScopeInstance.from_dict(s) for s in incoming_scopes],
            )
        else:
            check_scope_names(merged.scopes)
        return merged

    def _check_allocation_patch(self, allocations: Sequence[Dict[str, Any]]) -> List[Tuple[str, str, float]]:
        errors: List[Dict[str, Any]] = []
        updates: List[Tuple[str, str, float]] = []

        for alloc in allocations:
            sid = alloc.get("scopeIdentifier")
            node_allocations = alloc.get("nodeAllocations")
            if not sid or not isinstance(node_allocations, list):
                errors.append({
                    "scopeIdentifier": sid or "UNKNOWN",
                    "error": "Invalid allocation format: must have scopeIdentifier and nodeAllocations array",
                })
                continue

            total = sum(float(na.get("allocationPct") or 0) for na in node_allocations)
            if not is_balanced(total, self.tolerance):
                errors.append({
                    "scopeIdentifier": sid,
                    "error": f"Allocations must sum to 100%, got {total:.2f}%",
                    "nodeAllocations": node_allocations,
                })
                continue

            for na in node_allocations:
                pct = float(na.get("allocationPct") or 0)
                if not na.get("nodeId"):
                    errors.append({"scopeIdentifier": sid, "error": "Each nodeAllocation must have a nodeId"})
                elif pct < 0 or pct > 100:
                    errors.append({
                        "scopeIdentifier": sid,
                        "nodeId": na["nodeId"],
                        "error": f"allocationPct must be between 0 and 100, got {pct:g}",
                    })
                else:
                    updates.append((sid, str(na["nodeId"]), pct))

        if errors:
            raise AllocationPatchError(errors)
        return updates
