"""
Process Allocation API Layer
=============================
Audited facade over the allocation engine.  **Every public method**:

  1. Resolves the current algorithm version for the operation.
  2. Delegates to the graph manager / engine.
  3. Wraps the result in an :class:`ApiResponse`.
  4. Appends an AuditLogEntry, including for rejected and failed calls.

A write that breaks an allocation rule never reaches the database; the caller
gets a ``rejected`` envelope whose ``data`` is the structured validation
report.

Public endpoints
~~~~~~~~~~~~~~~~
  - ``save_flowchart``            – replace the whole node graph.
  - ``update_node``               – partial node edit with scope reconciliation.
  - ``delete_node``               – remove a node and its edges.
  - ``delete_scope``              – permanently remove one scope from a node.
  - ``get_allocations``           – allocation summary and validation verdict.
  - ``update_allocations``        – allocation-only patch.
  - ``auto_distribute``           – equal split for a shared scope.
  - ``calculate_process_summary`` – allocation-weighted emission rollup.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from engine.allocation_validator import AllocationValidationResult, validate_allocation_index
from engine.emission_aggregator import AllocationWeightedAggregator, calculate_process_emission_summary
from engine.errors import (
    AllocationPatchError,
    AllocationValidationError,
    DuplicateOrMissingNameError,
    NotFoundError,
)
from engine.process_graph_manager import ProcessGraphManager
from engine.reporting_period import build_date_range

from api.algorithm_registry import get_current_version
from api.audit_log import AuditLogger
from api.response_envelope import (
    STATUS_ERROR,
    STATUS_REJECTED,
    ApiResponse,
    error_envelope,
    rejected_envelope,
    success_envelope,
)
from api.settings import ProcessAllocationSettings

logger = logging.getLogger(__name__)

ALLOCATION_HINT = (
    "When a scopeIdentifier appears in multiple nodes, the sum of allocationPct "
    "across all nodes must equal 100%"
)

# (data, message, warnings)
Outcome = Tuple[Any, str, List[Dict[str, Any]]]


class ProcessAllocationAPI:
    def __init__(
        self,
        session: Session,
        caller_identity: Optional[str] = None,
        settings: Optional[ProcessAllocationSettings] = None,
    ):
        self.session = session
        self.caller_identity = caller_identity
        self.settings = settings or ProcessAllocationSettings()

        self._graph = ProcessGraphManager(session, tolerance=self.settings.sum_tolerance)
        self._aggregator = AllocationWeightedAggregator(self.settings.min_detail_contribution)
        self._audit = AuditLogger(session)

    # =====================================================================
    #  Writes
    # =====================================================================
    def save_flowchart(
        self,
        client_id: str,
        nodes: List[Dict[str, Any]],
        edges: Optional[List[Dict[str, Any]]] = None,
    ) -> ApiResponse:
        def action() -> Outcome:
            flowchart, validation = self._graph.save_flowchart(
                client_id, nodes, edges, user_id=self.caller_identity
            )
            data = {
                "client_id": flowchart.client_id,
                "version": flowchart.version,
                "nodes": [n.to_record().to_dict() for n in flowchart.nodes],
                "edges": [
                    {"id": e.id, "source": e.source_node_id, "target": e.target_node_id}
                    for e in flowchart.edges
                ],
            }
            message = (
                f"Process flowchart saved (version {flowchart.version}) with "
                f"{len(flowchart.nodes)} node(s) and {len(flowchart.edges)} edge(s)."
            )
            return data, message, self._warnings(validation)

        return self._run("save_flowchart", client_id, {"nodes": nodes, "edges": edges}, action)

    def update_node(self, client_id: str, node_id: str, node_data: Dict[str, Any]) -> ApiResponse:
        def action() -> Outcome:
            node, validation = self._graph.update_node(
                client_id, node_id, node_data, user_id=self.caller_identity
            )
            return {"node": node.to_dict()}, f"Node '{node_id}' updated successfully.", self._warnings(validation)

        return self._run(
            "update_node", client_id, {"node_id": node_id, "node_data": node_data}, action
        )

    def delete_node(self, client_id: str, node_id: str) -> ApiResponse:
        def action() -> Outcome:
            removed_edges = self._graph.delete_node(client_id, node_id, user_id=self.caller_identity)
            data = {"node_id": node_id, "edges_removed": removed_edges}
            return data, f"Node '{node_id}' and {removed_edges} associated edge(s) deleted.", []

        return self._run("delete_node", client_id, {"node_id": node_id}, action)

    def delete_scope(
        self,
        client_id: str,
        node_id: str,
        scope_identifier: Optional[str] = None,
        scope_uid: Optional[str] = None,
    ) -> ApiResponse:
        def action() -> Outcome:
            removed = self._graph.hard_delete_scope(
                client_id, node_id,
                scope_identifier=scope_identifier,
                scope_uid=scope_uid,
                user_id=self.caller_identity,
            )
            data = {
                "node_id": node_id,
                "scope": {"scopeIdentifier": removed.scope_identifier, "scopeUid": removed.scope_uid},
            }
            return data, f"Scope '{removed.scope_identifier}' permanently deleted from node '{node_id}'.", []

        request = {"node_id": node_id, "scope_identifier": scope_identifier, "scope_uid": scope_uid}
        return self._run("delete_scope", client_id, request, action)

    def update_allocations(self, client_id: str, allocations: List[Dict[str, Any]]) -> ApiResponse:
        def action() -> Outcome:
            updated, index, validation = self._graph.update_allocations(
                client_id, allocations, user_id=self.caller_identity
            )
            data = {
                "updated_count": updated,
                "allocations": index.summary(),
                "validation": validation.to_dict(),
            }
            return data, f"Updated {updated} allocation(s).", self._warnings(validation)

        return self._run("update_allocations", client_id, {"allocations": allocations}, action)

    def auto_distribute(self, client_id: str, scope_identifier: str) -> ApiResponse:
        def action() -> Outcome:
            result = self._graph.auto_distribute(client_id, scope_identifier, user_id=self.caller_identity)
            if result.distributed:
                message = f"'{result.scope_identifier}' split equally across {result.node_count} node(s)."
            else:
                message = f"'{result.scope_identifier}': {result.reason}, nothing to do."
            return result.to_dict(), message, []

        return self._run("auto_distribute", client_id, {"scope_identifier": scope_identifier}, action)

    # =====================================================================
    #  Reads
    # =====================================================================
    def get_allocations(self, client_id: str) -> ApiResponse:
        def action() -> Outcome:
            if self._graph.get_flowchart(client_id) is None:
                raise NotFoundError(f"Process flowchart for client {client_id} not found")
            index = self._graph.build_index(client_id)
            validation = validate_allocation_index(index, tolerance=self.settings.sum_tolerance)
            data = {"allocations": index.summary(), "validation": validation.to_dict()}
            verdict = "valid" if validation.is_valid else "invalid"
            return data, f"{len(index)} scopeIdentifier(s), allocations {verdict}.", self._warnings(validation)

        return self._run("get_allocations", client_id, {}, action)

    def calculate_process_summary(
        self,
        client_id: str,
        period_type: str,
        year: Optional[int] = None,
        month: Optional[int] = None,
        week: Optional[int] = None,
        day: Optional[int] = None,
    ) -> ApiResponse:
        def action() -> Outcome:
            period = build_date_range(period_type, year, month, week, day)
            summary = calculate_process_emission_summary(
                load_nodes=lambda: self._graph.load_nodes(client_id),
                load_measurements=lambda p: self._graph.load_measurements(client_id, p),
                period=period,
                calculated_by=self.caller_identity,
                aggregator=self._aggregator,
            )
            meta = summary["metadata"]
            if meta["hasErrors"]:
                message = f"Process emission summary degraded: {'; '.join(meta['errors'])}"
            else:
                message = (
                    f"Process emission summary for {period_type} period: "
                    f"{summary['totalEmissions']['CO2e']:.4f} tCO2e from "
                    f"{meta['measurementsIncluded']} data entr(ies)."
                )
            return summary, message, []

        request = {"period_type": period_type, "year": year, "month": month, "week": week, "day": day}
        return self._run("calculate_process_summary", client_id, request, action)

    def query_audit_log(
        self,
        operation: Optional[str] = None,
        client_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        entries = self._audit.entries(operation=operation, client_id=client_id, since=since, limit=limit)
        return [e.to_dict() for e in entries]

    # =====================================================================
    #  Internal helpers
    # =====================================================================
    def _warnings(self, validation: AllocationValidationResult) -> List[Dict[str, Any]]:
        return [w.to_dict() for w in validation.warnings]

    def _run(
        self,
        operation: str,
        client_id: str,
        request_payload: Dict[str, Any],
        action: Callable[[], Outcome],
    ) -> ApiResponse:
        ver = get_current_version(operation)
        t0 = time.perf_counter()
        request_payload = {"client_id": client_id, **request_payload}

        try:
            data, message, warnings = action()
        except AllocationValidationError as exc:
            self.session.rollback()
            payload = {
                "code": "ALLOCATION_VALIDATION_FAILED",
                "details": exc.to_payload(),
                "hint": ALLOCATION_HINT,
            }
            return self._reject(operation, ver.version, client_id, request_payload, payload, t0,
                                "Allocation validation failed")
        except DuplicateOrMissingNameError as exc:
            self.session.rollback()
            payload = {"code": "DUPLICATE_OR_MISSING_NAME", "scopeIdentifier": exc.scope_identifier}
            return self._reject(operation, ver.version, client_id, request_payload, payload, t0, str(exc))
        except AllocationPatchError as exc:
            self.session.rollback()
            payload = {"code": "ALLOCATION_PATCH_INVALID", "errors": exc.errors}
            return self._reject(operation, ver.version, client_id, request_payload, payload, t0,
                                "Allocation validation errors")
        except NotFoundError as exc:
            self.session.rollback()
            return self._fail(operation, ver.version, client_id, request_payload, t0, exc, "NOT_FOUND")
        except ValueError as exc:
            self.session.rollback()
            return self._fail(operation, ver.version, client_id, request_payload, t0, exc, "INVALID_REQUEST")
        except Exception as exc:
            logger.exception("%s failed for client %s", operation, client_id)
            self.session.rollback()
            return self._fail(operation, ver.version, client_id, request_payload, t0, exc, "INTERNAL_ERROR")

        degraded = isinstance(data, dict) and data.get("metadata", {}).get("isComplete") is False
        audit = self._audit.record(
            operation=operation,
            algorithm_version=ver.version,
            client_id=client_id,
            request_payload=request_payload,
            response_payload=data,
            duration_ms=(time.perf_counter() - t0) * 1000,
            caller_identity=self.caller_identity,
            status="error" if degraded else "success",
            error_detail=message if degraded else None,
        )
        return success_envelope(operation, ver.version, data, message, audit.id, warnings)

    def _reject(
        self,
        operation: str,
        version: str,
        client_id: str,
        request_payload: Dict[str, Any],
        payload: Dict[str, Any],
        t0: float,
        message: str,
    ) -> ApiResponse:
        logger.info("%s rejected for client %s: %s", operation, client_id, message)
        audit = self._audit.record(
            operation=operation,
            algorithm_version=version,
            client_id=client_id,
            request_payload=request_payload,
            response_payload=payload,
            duration_ms=(time.perf_counter() - t0) * 1000,
            caller_identity=self.caller_identity,
            status=STATUS_REJECTED,
            error_detail=message,
        )
        return rejected_envelope(operation, version, payload, message, audit.id)

    def _fail(
        self,
        operation: str,
        version: str,
        client_id: str,
        request_payload: Dict[str, Any],
        t0: float,
        exc: Exception,
        code: str,
    ) -> ApiResponse:
        audit = self._audit.record(
            operation=operation,
            algorithm_version=version,
            client_id=client_id,
            request_payload=request_payload,
            response_payload={"code": code},
            duration_ms=(time.perf_counter() - t0) * 1000,
            caller_identity=self.caller_identity,
            status=STATUS_ERROR,
            error_detail=str(exc),
        )
        response = error_envelope(operation, version, str(exc), audit.id)
        response.data = {"code": code}
        return response
