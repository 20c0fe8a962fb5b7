from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from models.scope_records import ProcessNodeRecord

logger = logging.getLogger(__name__)


@dataclass
class AutoDistributionResult:
    distributed: bool
    scope_identifier: str
    allocations: List[Dict[str, Any]] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def node_count(self) -> int:
        return len(self.allocations)

    def to_dict(self) -> Dict[str, Any]:
        if not self.distributed:
            return {"distributed": False, "scopeIdentifier": self.scope_identifier, "reason": self.reason}
        return {
            "distributed": True,
            "scopeIdentifier": self.scope_identifier,
            "nodeCount": self.node_count,
            "allocations": list(self.allocations),
        }


def auto_distribute_allocation(
    nodes: Sequence[ProcessNodeRecord],
    scope_identifier: str,
) -> AutoDistributionResult:
    """
    Split a shared scope evenly across the nodes that reference it.

    Each share is rounded down to two decimals and the last node in scan order
    absorbs the non-negative remainder, so the group always sums to exactly 100.
    The matched scopes are updated in place; persisting them is up to the
    caller.
    """
    target = (scope_identifier or "").strip()
    matches = []
    for node in nodes:
        if node.is_deleted:
            continue
        scope = next(
            (s for s in node.scopes if s.name == target and s.is_active),
            None,
        )
        if scope is not None:
            matches.append((node, scope))

    if len(matches) <= 1:
        return AutoDistributionResult(
            distributed=False,
            scope_identifier=target,
            reason="Not a shared scopeIdentifier",
        )

    count = len(matches)
    equal_pct = math.floor(10000 / count) / 100
    last_pct = round(100.0 - equal_pct * (count - 1), 2)

    allocations = []
    for position, (node, scope) in enumerate(matches):
        scope.allocation_pct = last_pct if position == count - 1 else equal_pct
        allocations.append({"nodeId": node.id, "allocationPct": scope.allocation_pct})

    logger.info("Auto-distributed '%s' across %d nodes", target, count)
    return AutoDistributionResult(
        distributed=True,
        scope_identifier=target,
        allocations=allocations,
    )
