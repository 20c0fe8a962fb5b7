from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from models.scope_records import ProcessNodeRecord

ALLOCATION_SUM_TOLERANCE = 0.01


@dataclass(frozen=True)
class AllocationEntry:
    node_id: str
    node_label: str
    allocation_pct: float
    scope_type: Optional[str] = None
    category_name: Optional[str] = None
    activity: Optional[str] = None
    department: Optional[str] = None
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "nodeLabel": self.node_label,
            "allocationPct": self.allocation_pct,
            "scopeType": self.scope_type,
            "categoryName": self.category_name,
        }


class AllocationIndex(Mapping):
    """
    Read-only map of scopeIdentifier -> tuple of AllocationEntry.

    Entries are value copies; nothing in the index points back into the node
    graph it was built from.
    """

    def __init__(self, groups: Optional[Dict[str, Tuple[AllocationEntry, ...]]] = None):
        self._groups: Dict[str, Tuple[AllocationEntry, ...]] = dict(groups or {})

    def __getitem__(self, scope_identifier: str) -> Tuple[AllocationEntry, ...]:
        return self._groups[scope_identifier]

    def __iter__(self) -> Iterator[str]:
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def __repr__(self) -> str:
        return f"<AllocationIndex(identifiers={len(self._groups)}, shared={len(self.shared_identifiers())})>"

    def shared_identifiers(self) -> Tuple[str, ...]:
        return tuple(sid for sid, entries in self._groups.items() if len(entries) > 1)

    def total_pct(self, scope_identifier: str) -> float:
        return sum(e.allocation_pct for e in self._groups.get(scope_identifier, ()))

    def summary(self) -> Dict[str, Any]:
        details: List[Dict[str, Any]] = []
        for sid, entries in self._groups.items():
            is_shared = len(entries) > 1
            total = sum(e.allocation_pct for e in entries)
            details.append({
                "scopeIdentifier": sid,
                "isShared": is_shared,
                "nodeCount": len(entries),
                "totalAllocation": total,
                "isValid": not is_shared or abs(total - 100) <= ALLOCATION_SUM_TOLERANCE,
                "nodes": [
                    {"nodeId": e.node_id, "nodeLabel": e.node_label, "allocationPct": e.allocation_pct}
                    for e in entries
                ],
            })
        shared = len(self.shared_identifiers())
        return {
            "totalScopeIdentifiers": len(self._groups),
            "sharedScopeIdentifiers": shared,
            "uniqueScopeIdentifiers": len(self._groups) - shared,
            "details": details,
        }


def build_allocation_index(
    nodes: Iterable[ProcessNodeRecord],
    include_deleted: bool = False,
    include_from_other_chart: bool = False,
) -> AllocationIndex:
    """
    Scan nodes in order, then scopes in order, grouping by trimmed
    scopeIdentifier.  Blank identifiers are ignored.
    """
    groups: Dict[str, List[AllocationEntry]] = {}
    for node in nodes or ():
        if node.is_deleted and not include_deleted:
            continue
        for scope in node.scopes:
            if scope.is_deleted and not include_deleted:
                continue
            if scope.from_other_chart and not include_from_other_chart:
                continue
            sid = scope.name
            if not sid:
                continue
            groups.setdefault(sid, []).append(AllocationEntry(
                node_id=node.id,
                node_label=node.display_label,
                allocation_pct=scope.effective_allocation_pct,
                scope_type=scope.scope_type,
                category_name=scope.category_name,
                activity=scope.activity,
                department=node.department,
                location=node.location,
            ))
    return AllocationIndex({sid: tuple(entries) for sid, entries in groups.items()})
