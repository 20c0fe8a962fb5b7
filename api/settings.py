"""
Service Settings
================
Runtime configuration, overridable through environment variables with the
``PROCESS_ALLOC_`` prefix:

  - ``PROCESS_ALLOC_DB_URL``            – SQLAlchemy database URL.
  - ``PROCESS_ALLOC_SUM_TOLERANCE``     – allowed deviation from 100% for a
                                          shared scope's allocations.
  - ``PROCESS_ALLOC_MIN_CONTRIBUTION``  – smallest allocated tCO2e kept in
                                          per-node / per-scopeIdentifier detail.
  - ``PROCESS_ALLOC_LOG_LEVEL``         – standard logging level name.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from engine.allocation_index import ALLOCATION_SUM_TOLERANCE
from engine.emission_aggregator import MIN_DETAIL_CONTRIBUTION

logger = logging.getLogger(__name__)

_ENV_PREFIX = "PROCESS_ALLOC_"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(_ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s%s=%r, using %s", _ENV_PREFIX, name, raw, default)
        return default


@dataclass(frozen=True)
class ProcessAllocationSettings:
    database_url: str = "sqlite:///process_allocation.db"
    sum_tolerance: float = ALLOCATION_SUM_TOLERANCE
    min_detail_contribution: float = MIN_DETAIL_CONTRIBUTION
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ProcessAllocationSettings":
        return cls(
            database_url=os.getenv(_ENV_PREFIX + "DB_URL", cls.database_url),
            sum_tolerance=_env_float("SUM_TOLERANCE", cls.sum_tolerance),
            min_detail_contribution=_env_float("MIN_CONTRIBUTION", cls.min_detail_contribution),
            log_level=os.getenv(_ENV_PREFIX + "LOG_LEVEL", cls.log_level).upper(),
        )


def configure_logging(settings: ProcessAllocationSettings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
