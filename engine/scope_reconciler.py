"""
Scope Reconciler
================
Merges an incoming list of scope edits into a node's existing scope list while
keeping every scope's ``scopeUid`` stable across renames and partial updates.

Each incoming edit is paired with at most one existing scope.  Matching runs
through ``MATCH_STRATEGIES`` in order and the first strategy that selects a
candidate wins:

  1. ``scope_uid``           – same stable uid.
  2. ``scope_identifier``    – same current name.
  3. ``previous_name_hint``  – a rename hint naming a current scope.
  4. ``classification``      – an unclaimed scope with the same scope type,
                               category and activity.

The first three are resolved for every edit before any edit falls back to
classification, and a scope claimed by one edit is invisible to the rest.

Edits that match nothing become new scopes with a freshly minted uid.
Existing scopes that no edit touched are carried over unchanged.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from engine.errors import DuplicateOrMissingNameError
from models.scope_records import DEFAULT_ALLOCATION_PCT, ScopeInstance

logger = logging.getLogger(__name__)

_TEXT_FIELDS = ("scope_type", "input_type", "category_name", "activity", "emission_factor")
_FLAG_FIELDS = ("is_deleted", "from_other_chart")


@dataclass(frozen=True)
class MatchStrategy:
    name: str
    applies: Callable[[ScopeInstance], bool]
    select: Callable[[ScopeInstance, Sequence[ScopeInstance], Set[str]], Optional[ScopeInstance]]


def _unclaimed(previous, consumed):
    return (s for s in previous if s.scope_uid not in consumed)


def _by_uid(incoming, previous, consumed):
    return next((s for s in _unclaimed(previous, consumed) if s.scope_uid == incoming.scope_uid), None)


def _by_name(incoming, previous, consumed):
    return next((s for s in _unclaimed(previous, consumed) if s.name == incoming.name), None)


def _by_rename_hint(incoming, previous, consumed):
    for hint in incoming.rename_hints:
        match = next((s for s in _unclaimed(previous, consumed) if s.name == hint.strip()), None)
        if match is not None:
            return match
    return None


def _classification_key(scope: ScopeInstance) -> Tuple[str, str, str]:
    return (scope.scope_type or "", scope.category_name or "", scope.activity or "")


def _by_classification(incoming, previous, consumed):
    key = _classification_key(incoming)
    return next((s for s in _unclaimed(previous, consumed) if _classification_key(s) == key), None)


MATCH_STRATEGIES: Tuple[MatchStrategy, ...] = (
    MatchStrategy("scope_uid", lambda inc: bool(inc.scope_uid), _by_uid),
    MatchStrategy("scope_identifier", lambda inc: bool(inc.name), _by_name),
    MatchStrategy("previous_name_hint", lambda inc: bool(inc.rename_hints), _by_rename_hint),
    MatchStrategy("classification", lambda inc: True, _by_classification),
)

# Explicit references are resolved for every edit before the heuristic runs.
EXPLICIT_STRATEGIES = MATCH_STRATEGIES[:3]
FALLBACK_STRATEGIES = MATCH_STRATEGIES[3:]


def match_existing(
    incoming: ScopeInstance,
    previous: Sequence[ScopeInstance],
    consumed: Optional[Set[str]] = None,
    strategies: Sequence[MatchStrategy] = MATCH_STRATEGIES,
) -> Tuple[Optional[str], Optional[ScopeInstance]]:
    """Return ``(strategy_name, existing_scope)`` or ``(None, None)``."""
    consumed = consumed if consumed is not None else set()
    for strategy in strategies:
        if not strategy.applies(incoming):
            continue
        candidate = strategy.select(incoming, previous, consumed)
        if candidate is not None:
            return strategy.name, candidate
    return None, None


def merge_emission_factor_values(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """Per-source merge: nested blocks are combined key by key, incoming wins per key."""
    merged: Dict[str, Any] = copy.deepcopy(existing or {})
    for key, value in (incoming or {}).items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            block = dict(current)
            block.update(copy.deepcopy(value))
            merged[key] = block
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def merge_scope(existing: Optional[ScopeInstance], incoming: ScopeInstance) -> ScopeInstance:
    base = copy.deepcopy(existing) if existing is not None else ScopeInstance()

    for attr in _TEXT_FIELDS:
        value = getattr(incoming, attr)
        if value not in (None, ""):
            setattr(base, attr, value)
    for attr in _FLAG_FIELDS:
        value = getattr(incoming, attr)
        if value is not None:
            setattr(base, attr, value)

    if incoming.allocation_pct is not None:
        base.allocation_pct = incoming.allocation_pct
    elif base.allocation_pct is None:
        base.allocation_pct = DEFAULT_ALLOCATION_PCT

    base.emission_factor_values = merge_emission_factor_values(
        base.emission_factor_values, incoming.emission_factor_values
    )

    custom_values = dict(base.custom_values)
    custom_values.update(incoming.custom_values)
    base.custom_values = custom_values

    extra = dict(base.extra)
    extra.update({k: copy.deepcopy(v) for k, v in incoming.extra.items() if v is not None})
    base.extra = extra

    base.scope_uid = incoming.scope_uid or base.scope_uid or str(uuid.uuid4())
    if incoming.name:
        base.scope_identifier = incoming.scope_identifier
    base.rename_hints = ()
    return base


def check_scope_names(scopes: Sequence[ScopeInstance]) -> None:
    seen: Set[str] = set()
    for scope in scopes:
        name = scope.name
        if not name or name in seen:
            raise DuplicateOrMissingNameError(name)
        seen.add(name)


def reconcile_scopes(
    previous: Sequence[ScopeInstance],
    incoming: Sequence[ScopeInstance],
) -> List[ScopeInstance]:
    """
    Produce the merged scope list for one node.

    Every edit is first resolved against explicit references (uid, name,
    rename hint); the classification fallback only sees existing scopes that
    no edit claimed explicitly.  Each existing scope is claimed at most once
    and every uid in the result is distinct.

    Neither input list is mutated.  Raises DuplicateOrMissingNameError when the
    merged list would contain a blank or repeated scopeIdentifier.
    """
    prior = [copy.deepcopy(s) for s in previous]
    for scope in prior:
        if not scope.scope_uid:
            scope.scope_uid = str(uuid.uuid4())

    prior_uids = {s.scope_uid for s in prior}
    consumed: Set[str] = set()
    matches: List[Tuple[Optional[str], Optional[ScopeInstance]]] = [(None, None)] * len(incoming)

    for strategies in (EXPLICIT_STRATEGIES, FALLBACK_STRATEGIES):
        for position, edit in enumerate(incoming):
            if matches[position][1] is not None:
                continue
            strategy, existing = match_existing(edit, prior, consumed, strategies)
            if existing is not None:
                consumed.add(existing.scope_uid)
                matches[position] = (strategy, existing)

    merged: List[ScopeInstance] = []
    used_uids: Set[str] = set()
    for edit, (strategy, existing) in zip(incoming, matches):
        if existing is not None:
            logger.debug(
                "Scope edit '%s' matched '%s' via %s",
                edit.scope_identifier, existing.scope_identifier, strategy,
            )
        scope = merge_scope(existing, edit)
        own_uid = existing.scope_uid if existing is not None else None
        # An edit may not carry away the uid of another existing scope.
        if scope.scope_uid in used_uids or (scope.scope_uid in prior_uids and scope.scope_uid != own_uid):
            scope.scope_uid = own_uid or str(uuid.uuid4())
        used_uids.add(scope.scope_uid)
        merged.append(scope)

    for leftover in prior:
        if leftover.scope_uid not in consumed and leftover.scope_uid not in used_uids:
            merged.append(leftover)

    check_scope_names(merged)
    return merged
