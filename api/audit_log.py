"""
Allocation Audit Ledger
=======================
Every flowchart write and every emission summary computed through the API is
appended to an audit ledger.  A record captures:
  - the operation and the algorithm version that served it,
  - the client whose flowchart was touched,
  - request and response payloads (JSON),
  - outcome (``success`` / ``rejected`` / ``error``) and detail,
  - wall-clock timing and the requesting identity.

Rejected writes are recorded too, so a blocked allocation change leaves a
trace even though nothing was persisted to the flowchart.
"""

from datetime import datetime
import json
import uuid
from typing import Any, List, Optional

from sqlalchemy import Column, String, Float, DateTime, Text
from sqlalchemy.orm import Session

from models.base import Base


class AuditLogEntry(Base):
    __tablename__ = "allocation_audit_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    operation = Column(String, nullable=False, index=True)
    algorithm_version = Column(String, nullable=False)
    client_id = Column(String, nullable=True, index=True)
    request_payload = Column(Text, nullable=False)  # JSON
    response_payload = Column(Text, nullable=False)  # JSON
    duration_ms = Column(Float, nullable=False)
    caller_identity = Column(String, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    status = Column(String, nullable=False, default="success")  # success | rejected | error
    error_detail = Column(Text, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "operation": self.operation,
            "algorithm_version": self.algorithm_version,
            "client_id": self.client_id,
            "caller_identity": self.caller_identity,
            "status": self.status,
            "error_detail": self.error_detail,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "request": json.loads(self.request_payload),
        }

    def __repr__(self) -> str:
        return f"<AuditLogEntry(op={self.operation}, client={self.client_id}, status={self.status})>"


class AuditLogger:
    def __init__(self, session: Session):
        self.session = session

    def record(
        self,
        operation: str,
        algorithm_version: str,
        client_id: Optional[str],
        request_payload: Any,
        response_payload: Any,
        duration_ms: float,
        caller_identity: Optional[str] = None,
        status: str = "success",
        error_detail: Optional[str] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            operation=operation,
            algorithm_version=algorithm_version,
            client_id=client_id,
            request_payload=json.dumps(request_payload, default=str),
            response_payload=json.dumps(response_payload, default=str),
            duration_ms=duration_ms,
            caller_identity=caller_identity,
            status=status,
            error_detail=error_detail,
        )
        self.session.add(entry)
        self.session.commit()
        return entry

    def entries(
        self,
        operation: Optional[str] = None,
        client_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[AuditLogEntry]:
        q = self.session.query(AuditLogEntry)
        if operation:
            q = q.filter(AuditLogEntry.operation == operation)
        if client_id:
            q = q.filter(AuditLogEntry.client_id == client_id)
        if since:
            q = q.filter(AuditLogEntry.timestamp >= since)
        return q.order_by(AuditLogEntry.timestamp.desc()).limit(limit).all()
