"""
Algorithm Version Registry
===========================
Maps each API operation to the versioned rule set that serves it, so every
audit record can name the exact validation / aggregation rules in force when
it was produced.

The newest non-deprecated version whose ``effective_from`` has passed is the
active one.  Versions scheduled in the future stay dormant until then.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional


@dataclass(frozen=True)
class AlgorithmVersion:
    version: str
    description: str
    effective_from: datetime = field(default_factory=datetime.utcnow)
    deprecated_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.deprecated_at is None and self.effective_from <= now


_RULES_V1 = {
    "save_flowchart": "Full-graph replace gated on shared-scope allocations summing to 100 +/- 0.01.",
    "update_node": (
        "Scope reconciliation (uid > name > rename hint > type/category/activity) "
        "followed by the fail-closed allocation gate."
    ),
    "delete_node": "Node removal with incident-edge cascade, gated on allocations.",
    "delete_scope": "Permanent scope removal by uid or identifier, gated on allocations.",
    "get_allocations": "Allocation index summary plus validation verdict.",
    "update_allocations": "Allocation-only patch; each group must sum to 100, each share within 0-100.",
    "auto_distribute": "Equal two-decimal split, remainder on the last node in scan order.",
    "calculate_process_summary": (
        "Allocation-weighted rollup over processed data entries with "
        "per-scopeIdentifier unallocated breakdown."
    ),
    "query_audit_log": "Filtered, newest-first audit ledger read.",
}

_REGISTRY: Dict[str, List[AlgorithmVersion]] = {
    operation: [AlgorithmVersion(version="1.0.0", description=description)]
    for operation, description in _RULES_V1.items()
}


def get_current_version(operation: str) -> AlgorithmVersion:
    if operation not in _REGISTRY:
        raise KeyError(f"Unknown operation: {operation}")

    now = datetime.utcnow()
    active = [v for v in _REGISTRY[operation] if v.is_active(now)]
    if not active:
        raise RuntimeError(f"No active algorithm version for operation '{operation}'")
    return max(active, key=lambda v: v.effective_from)


def register_version(
    operation: str,
    version: str,
    description: str,
    effective_from: Optional[datetime] = None,
) -> AlgorithmVersion:
    entry = AlgorithmVersion(
        version=version,
        description=description,
        effective_from=effective_from or datetime.utcnow(),
    )
    _REGISTRY.setdefault(operation, []).append(entry)
    return entry


def deprecate_version(operation: str, version: str) -> None:
    versions = _REGISTRY.get(operation, [])
    for position, entry in enumerate(versions):
        if entry.version == version and entry.deprecated_at is None:
            versions[position] = replace(entry, deprecated_at=datetime.utcnow())
            return
    raise KeyError(f"Active version '{version}' not found for operation '{operation}'")


def list_versions(operation: str) -> List[AlgorithmVersion]:
    return list(_REGISTRY.get(operation, []))
