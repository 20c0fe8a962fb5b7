from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from api.allocation_api import ProcessAllocationAPI
from api.audit_log import AuditLogEntry  # noqa: F401
from api.response_envelope import STATUS_ERROR, STATUS_REJECTED, ApiResponse
from api.settings import ProcessAllocationSettings, configure_logging
from models.base import Base
from models.emission_data import EmissionDataEntry  # noqa: F401
from models.process_graph import ProcessFlowchart  # noqa: F401


SETTINGS = ProcessAllocationSettings.from_env()
configure_logging(SETTINGS)

_engine = create_engine(
    SETTINGS.database_url,
    connect_args={"check_same_thread": False} if SETTINGS.database_url.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)


def init_db() -> None:
    Base.metadata.create_all(bind=_engine)


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class SaveFlowchartRequest(BaseModel):
    client_id: str
    nodes: List[Dict[str, Any]]
    edges: Optional[List[Dict[str, Any]]] = None
    caller_identity: Optional[str] = None


class UpdateNodeRequest(BaseModel):
    node_data: Dict[str, Any]
    caller_identity: Optional[str] = None


class AllocationPatch(BaseModel):
    scopeIdentifier: str
    nodeAllocations: List[Dict[str, Any]]


class UpdateAllocationsRequest(BaseModel):
    allocations: List[AllocationPatch]
    caller_identity: Optional[str] = None


class AutoDistributeRequest(BaseModel):
    scope_identifier: str
    caller_identity: Optional[str] = None


class EmissionSummaryRequest(BaseModel):
    period_type: str = "monthly"
    year: Optional[int] = None
    month: Optional[int] = Field(default=None, ge=1, le=12)
    week: Optional[int] = Field(default=None, ge=1, le=53)
    day: Optional[int] = Field(default=None, ge=1, le=31)
    caller_identity: Optional[str] = None


class AuditQueryRequest(BaseModel):
    operation: Optional[str] = None
    client_id: Optional[str] = None
    since: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
    caller_identity: Optional[str] = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Process Allocation API",
    version="1.0.0",
    description=(
        "Process flowchart editing with scope reconciliation, shared-scope allocation "
        "validation, equal auto-distribution and allocation-weighted emission summaries."
    ),
    lifespan=lifespan,
)


def _service(db: Session, caller_identity: Optional[str]) -> ProcessAllocationAPI:
    return ProcessAllocationAPI(session=db, caller_identity=caller_identity, settings=SETTINGS)


def _respond(response: ApiResponse) -> JSONResponse:
    status_code = 200
    if response.status == STATUS_REJECTED:
        status_code = 400
    elif response.status == STATUS_ERROR:
        code = (response.data or {}).get("code")
        status_code = {"NOT_FOUND": 404, "INVALID_REQUEST": 400}.get(code, 500)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(response.to_dict()))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/flowcharts")
def save_flowchart(payload: SaveFlowchartRequest, db: Session = Depends(get_db)) -> JSONResponse:
    service = _service(db, payload.caller_identity)
    return _respond(service.save_flowchart(payload.client_id, payload.nodes, payload.edges))


@app.patch("/v1/flowcharts/{client_id}/nodes/{node_id}")
def update_node(
    client_id: str, node_id: str, payload: UpdateNodeRequest, db: Session = Depends(get_db)
) -> JSONResponse:
    service = _service(db, payload.caller_identity)
    return _respond(service.update_node(client_id, node_id, payload.node_data))


@app.delete("/v1/flowcharts/{client_id}/nodes/{node_id}")
def delete_node(
    client_id: str, node_id: str, caller_identity: Optional[str] = None, db: Session = Depends(get_db)
) -> JSONResponse:
    service = _service(db, caller_identity)
    return _respond(service.delete_node(client_id, node_id))


@app.delete("/v1/flowcharts/{client_id}/nodes/{node_id}/scopes/{scope_identifier}")
def delete_scope(
    client_id: str,
    node_id: str,
    scope_identifier: str,
    scope_uid: Optional[str] = None,
    caller_identity: Optional[str] = None,
    db: Session = Depends(get_db),
) -> JSONResponse:
    service = _service(db, caller_identity)
    return _respond(
        service.delete_scope(client_id, node_id, scope_identifier=scope_identifier, scope_uid=scope_uid)
    )


@app.get("/v1/flowcharts/{client_id}/allocations")
def get_allocations(
    client_id: str, caller_identity: Optional[str] = None, db: Session = Depends(get_db)
) -> JSONResponse:
    service = _service(db, caller_identity)
    return _respond(service.get_allocations(client_id))


@app.patch("/v1/flowcharts/{client_id}/allocations")
def update_allocations(
    client_id: str, payload: UpdateAllocationsRequest, db: Session = Depends(get_db)
) -> JSONResponse:
    service = _service(db, payload.caller_identity)
    allocations = [a.model_dump() for a in payload.allocations]
    return _respond(service.update_allocations(client_id, allocations))


@app.post("/v1/flowcharts/{client_id}/allocations/auto-distribute")
def auto_distribute(
    client_id: str, payload: AutoDistributeRequest, db: Session = Depends(get_db)
) -> JSONResponse:
    service = _service(db, payload.caller_identity)
    return _respond(service.auto_distribute(client_id, payload.scope_identifier))


@app.post("/v1/flowcharts/{client_id}/emission-summary")
def emission_summary(
    client_id: str, payload: EmissionSummaryRequest, db: Session = Depends(get_db)
) -> JSONResponse:
    service = _service(db, payload.caller_identity)
    response = service.calculate_process_summary(
        client_id,
        period_type=payload.period_type,
        year=payload.year,
        month=payload.month,
        week=payload.week,
        day=payload.day,
    )
    return _respond(response)


@app.post("/v1/audit-log")
def query_audit_log(payload: AuditQueryRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    service = _service(db, payload.caller_identity)
    records = service.query_audit_log(
        operation=payload.operation, client_id=payload.client_id, since=payload.since, limit=payload.limit
    )
    return {"status": "ok", "records": records}
