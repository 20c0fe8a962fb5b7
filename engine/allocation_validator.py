"""
Allocation Validator
====================
Certifies that every scopeIdentifier shared by more than one node splits its
emissions exactly once: the allocation percentages of the group must sum to
100 within ``ALLOCATION_SUM_TOLERANCE``.

Errors block a write.  Warnings never do; they are logged and surfaced to the
caller:

  - ``DEFAULT_ALLOCATION_IN_SHARED`` – a shared group still holds an untouched
    100% member, a likely double count.
  - ``STALE_SINGLE_ALLOCATION``      – a scope referenced by a single node
    stores something other than 100%, so only part of its emissions will be
    reported.  Reported, never corrected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from engine.allocation_index import (
    ALLOCATION_SUM_TOLERANCE,
    AllocationIndex,
    build_allocation_index,
)
from engine.errors import AllocationValidationError
from models.scope_records import DEFAULT_ALLOCATION_PCT, ProcessNodeRecord

logger = logging.getLogger(__name__)

ALLOCATION_SUM_MISMATCH = "ALLOCATION_SUM_MISMATCH"
DEFAULT_ALLOCATION_IN_SHARED = "DEFAULT_ALLOCATION_IN_SHARED"
STALE_SINGLE_ALLOCATION = "STALE_SINGLE_ALLOCATION"


@dataclass(frozen=True)
class AllocationError:
    scope_identifier: str
    current_sum: float
    entries: tuple
    expected_sum: float = 100.0
    type: str = ALLOCATION_SUM_MISMATCH

    @property
    def message(self) -> str:
        return (
            f'Allocation for "{self.scope_identifier}" sums to {self.current_sum:.2f}%, '
            f"expected {self.expected_sum:g}%"
        )

    def node_payload(self) -> List[Dict[str, Any]]:
        return [
            {"nodeId": e.node_id, "nodeLabel": e.node_label, "allocationPct": e.allocation_pct}
            for e in self.entries
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scopeIdentifier": self.scope_identifier,
            "type": self.type,
            "currentSum": self.current_sum,
            "expectedSum": self.expected_sum,
            "message": self.message,
            "nodes": self.node_payload(),
        }


@dataclass(frozen=True)
class AllocationWarning:
    scope_identifier: str
    type: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scopeIdentifier": self.scope_identifier,
            "type": self.type,
            "message": self.message,
        }


@dataclass
class AllocationValidationResult:
    errors: List[AllocationError] = field(default_factory=list)
    warnings: List[AllocationWarning] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errorCount": len(self.errors),
            "warningCount": len(self.warnings),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }

    def to_error_payload(self) -> Dict[str, Any]:
        """Caller-facing shape for a rejected write."""
        return {
            "isValid": self.is_valid,
            "errorCount": len(self.errors),
            "warningCount": len(self.warnings),
            "errors": [
                {
                    "scopeIdentifier": e.scope_identifier,
                    "currentSum": e.current_sum,
                    "message": e.message,
                    "nodes": e.node_payload(),
                }
                for e in self.errors
            ],
            "warnings": [w.to_dict() for w in self.warnings],
        }

    def ensure_valid(self) -> "AllocationValidationResult":
        if not self.is_valid:
            raise AllocationValidationError(self)
        return self


def is_balanced(total_pct: float, tolerance: float = ALLOCATION_SUM_TOLERANCE) -> bool:
    return abs(total_pct - 100.0) <= tolerance


def _check_group(sid: str, entries: tuple, result: AllocationValidationResult, tolerance: float) -> None:
    if len(entries) == 1:
        pct = entries[0].allocation_pct
        if pct != DEFAULT_ALLOCATION_PCT:
            result.warnings.append(AllocationWarning(
                scope_identifier=sid,
                type=STALE_SINGLE_ALLOCATION,
                message=(
                    f'scopeIdentifier "{sid}" is used by a single node but stores '
                    f"{pct:g}% allocation - only that share of its emissions will be reported"
                ),
            ))
        return

    total = sum(e.allocation_pct for e in entries)
    if not is_balanced(total, tolerance):
        result.errors.append(AllocationError(scope_identifier=sid, current_sum=total, entries=entries))

    if any(e.allocation_pct == DEFAULT_ALLOCATION_PCT for e in entries):
        result.warnings.append(AllocationWarning(
            scope_identifier=sid,
            type=DEFAULT_ALLOCATION_IN_SHARED,
            message=(
                f'Shared scopeIdentifier "{sid}" has default 100% allocation - '
                "may cause double counting"
            ),
        ))


def validate_allocation_index(
    index: AllocationIndex,
    tolerance: float = ALLOCATION_SUM_TOLERANCE,
) -> AllocationValidationResult:
    result = AllocationValidationResult()
    for sid, entries in index.items():
        _check_group(sid, entries, result, tolerance)

    if result.warnings:
        logger.warning(
            "Allocation warnings: %s",
            "; ".join(w.message for w in result.warnings),
        )
    return result


def validate_allocations(
    nodes: Iterable[ProcessNodeRecord],
    include_deleted: bool = False,
    include_from_other_chart: bool = False,
    tolerance: float = ALLOCATION_SUM_TOLERANCE,
) -> AllocationValidationResult:
    index = build_allocation_index(
        nodes,
        include_deleted=include_deleted,
        include_from_other_chart=include_from_other_chart,
    )
    return validate_allocation_index(index, tolerance=tolerance)
