"""
Structured Response Envelope
=============================
Every API response carries:

  - ``operation`` / ``api_version`` – what ran and under which rule version.
  - ``status``   – ``"ok"``, ``"rejected"`` (a rule blocked the write) or
                   ``"error"`` (missing record, malformed input, failure).
  - ``data``     – the payload; for rejected writes, the validation report.
  - ``message``  – one-line human-readable outcome.
  - ``warnings`` – non-blocking allocation warnings.
  - ``audit_id`` – the audit ledger record for this call.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

STATUS_OK = "ok"
STATUS_REJECTED = "rejected"
STATUS_ERROR = "error"


@dataclass
class ApiResponse:
    operation: str
    api_version: str
    status: str
    data: Any
    message: str
    audit_id: str
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "api_version": self.api_version,
            "status": self.status,
            "data": self.data,
            "message": self.message,
            "warnings": self.warnings,
            "audit_id": self.audit_id,
            "timestamp": self.timestamp,
        }


def success_envelope(
    operation: str,
    api_version: str,
    data: Any,
    message: str,
    audit_id: str,
    warnings: Optional[List[Dict[str, Any]]] = None,
) -> ApiResponse:
    return ApiResponse(operation, api_version, STATUS_OK, data, message, audit_id, warnings or [])


def rejected_envelope(
    operation: str,
    api_version: str,
    data: Any,
    message: str,
    audit_id: str,
) -> ApiResponse:
    return ApiResponse(operation, api_version, STATUS_REJECTED, data, message, audit_id)


def error_envelope(
    operation: str,
    api_version: str,
    error_message: str,
    audit_id: str,
) -> ApiResponse:
    return ApiResponse(operation, api_version, STATUS_ERROR, None, error_message, audit_id)
