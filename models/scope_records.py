"""
Strict Record Types for the Process Graph
=========================================
In-memory records the allocation engine operates on:

  - ``ScopeInstance``      – one emission-producing activity declared in a node.
  - ``ProcessNodeRecord``  – one node of the process flowchart.
  - ``EmissionValues``     – the four gas components plus uncertainty.
  - ``Measurement``        – an already-computed emission tuple for one
                              scope identifier at one point in time.

Raw payloads arrive as loosely-typed dicts in which the same logical field can
show up under several historical names.  Those names are resolved exactly once,
here, through ``SCOPE_FIELD_ALIASES`` and ``CUSTOM_VALUE_ALIASES``.  Nothing past
this module looks at an alias.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


DEFAULT_ALLOCATION_PCT = 100.0

SCOPE_TYPES: Tuple[str, ...] = ("Scope 1", "Scope 2", "Scope 3")
INPUT_TYPES: Tuple[str, ...] = ("manual", "API", "IOT")

EMISSION_FACTOR_BLOCKS: Tuple[str, ...] = (
    "defraData",
    "ipccData",
    "epaData",
    "countryData",
    "emissionFactorHubData",
    "customEmissionFactor",
)

# Raw key -> canonical attribute.  First alias present in a payload wins.
SCOPE_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "scope_uid": ("scopeUid", "uid", "_id"),
    "scope_identifier": ("scopeIdentifier",),
    "scope_type": ("scopeType",),
    "input_type": ("inputType",),
    "category_name": ("categoryName",),
    "activity": ("activity",),
    "allocation_pct": ("allocationPct",),
    "is_deleted": ("isDeleted",),
    "from_other_chart": ("fromOtherChart",),
    "emission_factor": ("emissionFactor",),
    "emission_factor_values": ("emissionFactorValues",),
    "custom_values": ("customValues", "customValue"),
}

RENAME_HINT_KEYS: Tuple[str, ...] = (
    "previousScopeIdentifier",
    "oldScopeIdentifier",
    "originalScopeIdentifier",
)

# Canonical custom value -> every name it has been stored under.
CUSTOM_VALUE_ALIASES: Dict[str, Tuple[str, ...]] = {
    "assetLifetime": ("assetLifetime", "AssetLifeTime", "AssestLifeTime", "assetLifeTime"),
    "TDLossFactor": ("TDLossFactor", "T&DLossFactor", "TAndDLossFactor"),
    "defaultRecyclingRate": ("defaultRecyclingRate", "defaultRecylingRate", "defaultRecycleRate"),
    "equitySharePercentage": ("equitySharePercentage", "EquitySharePercentage"),
    "averageLifetimeEnergyConsumption": (
        "averageLifetimeEnergyConsumption",
        "AverageLifetimeEnergyConsumption",
    ),
    "usePattern": ("usePattern", "UsePattern"),
    "energyEfficiency": ("energyEfficiency", "EnergyEfficiency"),
    "toIncineration": ("toIncineration", "ToIncineration"),
    "toLandfill": ("toLandfill", "ToLandfill"),
    "toDisposal": ("toDisposal", "ToRecycling"),
}

_KNOWN_SCOPE_KEYS = {
    alias for aliases in SCOPE_FIELD_ALIASES.values() for alias in aliases
} | set(RENAME_HINT_KEYS) | {"customEmissionFactor"}


def _first_present(raw: Mapping[str, Any], aliases: Iterable[str]) -> Any:
    for alias in aliases:
        value = raw.get(alias)
        if value is not None:
            return value
    return None


def number_or_none(value: Any) -> Optional[float]:
    """Coerce a loosely-typed numeric field; blanks and garbage become ``None``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Normalize a timestamp to a naive UTC datetime.  ISO-8601 strings
    (including a trailing ``Z``) are parsed; aware datetimes are converted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if not isinstance(value, datetime):
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def resolve_custom_values(raw: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    """Map every known alias onto its canonical name, dropping nulls."""
    if not raw:
        return {}
    resolved: Dict[str, float] = {}
    for canonical, aliases in CUSTOM_VALUE_ALIASES.items():
        for alias in aliases:
            number = number_or_none(raw.get(alias))
            if number is not None:
                resolved[canonical] = number
                break
    return resolved


@dataclass
class ScopeInstance:
    """
    One node's reference to a scope identifier.

    Optional attributes left as ``None`` were simply not supplied; the
    reconciler relies on that to tell "absent" from "explicitly set".
    """

    scope_identifier: str = ""
    scope_uid: Optional[str] = None
    scope_type: Optional[str] = None
    input_type: Optional[str] = None
    category_name: Optional[str] = None
    activity: Optional[str] = None
    allocation_pct: Optional[float] = None
    is_deleted: Optional[bool] = None
    from_other_chart: Optional[bool] = None
    emission_factor: Optional[str] = None
    emission_factor_values: Dict[str, Any] = field(default_factory=dict)
    custom_values: Dict[str, float] = field(default_factory=dict)
    rename_hints: Tuple[str, ...] = ()
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def effective_allocation_pct(self) -> float:
        if self.allocation_pct is None:
            return DEFAULT_ALLOCATION_PCT
        return float(self.allocation_pct)

    @property
    def name(self) -> str:
        return (self.scope_identifier or "").strip()

    @property
    def is_active(self) -> bool:
        return not self.is_deleted and not self.from_other_chart

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ScopeInstance":
        values = {
            attr: _first_present(raw, aliases)
            for attr, aliases in SCOPE_FIELD_ALIASES.items()
        }

        ef_values = copy.deepcopy(values["emission_factor_values"] or {})
        top_level_cef = raw.get("customEmissionFactor")
        if top_level_cef and not ef_values.get("customEmissionFactor"):
            ef_values["customEmissionFactor"] = copy.deepcopy(top_level_cef)

        hints = tuple(
            str(raw[key]) for key in RENAME_HINT_KEYS if raw.get(key)
        )
        extra = {
            key: copy.deepcopy(value)
            for key, value in raw.items()
            if key not in _KNOWN_SCOPE_KEYS
        }

        return cls(
            scope_identifier=str(values["scope_identifier"] or ""),
            scope_uid=str(values["scope_uid"]) if values["scope_uid"] is not None else None,
            scope_type=values["scope_type"],
            input_type=values["input_type"],
            category_name=values["category_name"],
            activity=values["activity"],
            allocation_pct=number_or_none(values["allocation_pct"]),
            is_deleted=bool(values["is_deleted"]) if values["is_deleted"] is not None else None,
            from_other_chart=(
                bool(values["from_other_chart"]) if values["from_other_chart"] is not None else None
            ),
            emission_factor=values["emission_factor"],
            emission_factor_values=ef_values,
            custom_values=resolve_custom_values(values["custom_values"]),
            rename_hints=hints,
            extra=extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(copy.deepcopy(self.extra))
        payload["scopeIdentifier"] = self.scope_identifier
        optional = {
            "scopeUid": self.scope_uid,
            "scopeType": self.scope_type,
            "inputType": self.input_type,
            "categoryName": self.category_name,
            "activity": self.activity,
            "allocationPct": self.allocation_pct,
            "isDeleted": self.is_deleted,
            "fromOtherChart": self.from_other_chart,
            "emissionFactor": self.emission_factor,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        if self.emission_factor_values:
            payload["emissionFactorValues"] = copy.deepcopy(self.emission_factor_values)
        if self.custom_values:
            payload["customValues"] = dict(self.custom_values)
        return payload


@dataclass
class ProcessNodeRecord:
    """A node of the process flowchart with its ordered scope instances."""

    id: str
    label: Optional[str] = None
    department: Optional[str] = None
    location: Optional[str] = None
    coordinates: Optional[Dict[str, Any]] = None
    node_type: Optional[str] = None
    scopes: List[ScopeInstance] = field(default_factory=list)
    is_deleted: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_label(self) -> str:
        return self.label or self.node_type or self.id

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ProcessNodeRecord":
        details = dict(raw.get("details") or {})
        scopes = [ScopeInstance.from_dict(s) for s in details.pop("scopeDetails", None) or []]
        return cls(
            id=str(raw["id"]),
            label=raw.get("label"),
            department=details.pop("department", None),
            location=details.pop("location", None),
            coordinates=details.pop("coordinates", None),
            node_type=details.pop("nodeType", None),
            scopes=scopes,
            is_deleted=bool(raw.get("isDeleted", False)),
            details=details,
        )

    def details_dict(self) -> Dict[str, Any]:
        details: Dict[str, Any] = copy.deepcopy(self.details)
        for key, value in (
            ("department", self.department),
            ("location", self.location),
            ("coordinates", self.coordinates),
            ("nodeType", self.node_type),
        ):
            if value is not None:
                details[key] = copy.deepcopy(value)
        details["scopeDetails"] = [s.to_dict() for s in self.scopes]
        return details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "isDeleted": self.is_deleted,
            "details": self.details_dict(),
        }


@dataclass(frozen=True)
class EmissionValues:
    co2e: float = 0.0
    co2: float = 0.0
    ch4: float = 0.0
    n2o: float = 0.0
    uncertainty: float = 0.0

    def scaled(self, factor: float) -> "EmissionValues":
        return EmissionValues(
            co2e=self.co2e * factor,
            co2=self.co2 * factor,
            ch4=self.ch4 * factor,
            n2o=self.n2o * factor,
            uncertainty=self.uncertainty * factor,
        )

    def is_zero(self) -> bool:
        return not any((self.co2e, self.co2, self.ch4, self.n2o, self.uncertainty))

    def to_dict(self) -> Dict[str, float]:
        return {
            "CO2e": self.co2e,
            "CO2": self.co2,
            "CH4": self.ch4,
            "N2O": self.n2o,
            "uncertainty": self.uncertainty,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "EmissionValues":
        raw = raw or {}
        return cls(
            co2e=number_or_none(raw.get("CO2e")) or 0.0,
            co2=number_or_none(raw.get("CO2")) or 0.0,
            ch4=number_or_none(raw.get("CH4")) or 0.0,
            n2o=number_or_none(raw.get("N2O")) or 0.0,
            uncertainty=number_or_none(raw.get("uncertainty")) or 0.0,
        )

    @classmethod
    def from_calculated_emissions(cls, calculated: Optional[Mapping[str, Any]]) -> "EmissionValues":
        """
        Sum the ``incoming`` buckets of a stored calculation result.

        Only incoming buckets are read; ``cumulative`` holds running history
        and adding it would double count.
        """
        totals = {"co2e": 0.0, "co2": 0.0, "ch4": 0.0, "n2o": 0.0, "uncertainty": 0.0}
        incoming = (calculated or {}).get("incoming") or {}
        if not isinstance(incoming, Mapping):
            return cls()

        for bucket in incoming.values():
            if not isinstance(bucket, Mapping):
                continue
            co2e = _first_present(
                bucket, ("CO2e", "emission", "CO2eWithUncertainty", "emissionWithUncertainty")
            )
            totals["co2e"] += number_or_none(co2e) or 0.0
            totals["co2"] += number_or_none(bucket.get("CO2")) or 0.0
            totals["ch4"] += number_or_none(bucket.get("CH4")) or 0.0
            totals["n2o"] += number_or_none(bucket.get("N2O")) or 0.0
            totals["uncertainty"] += number_or_none(bucket.get("uncertainty")) or 0.0
        return cls(**totals)


@dataclass(frozen=True)
class Measurement:
    scope_identifier: str
    values: EmissionValues
    timestamp: Optional[datetime] = None
    scope_type: Optional[str] = None
    input_type: Optional[str] = None
    emission_factor: Optional[str] = None
    entry_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "timestamp", parse_timestamp(self.timestamp))

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Measurement":
        if "calculatedEmissions" in raw:
            values = EmissionValues.from_calculated_emissions(raw.get("calculatedEmissions"))
        else:
            values = EmissionValues.from_dict(raw.get("emissions") or raw)
        return cls(
            scope_identifier=str(raw.get("scopeIdentifier") or ""),
            values=values,
            timestamp=raw.get("timestamp"),
            scope_type=raw.get("scopeType"),
            input_type=raw.get("inputType"),
            emission_factor=raw.get("emissionFactor"),
            entry_id=raw.get("id") or raw.get("_id"),
        )


def nodes_from_dicts(raw_nodes: Iterable[Mapping[str, Any]]) -> List[ProcessNodeRecord]:
    return [ProcessNodeRecord.from_dict(n) for n in raw_nodes]
