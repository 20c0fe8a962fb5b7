from datetime import datetime

import pytest

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.http_server import app, get_db
from models.base import Base
from models.emission_data import EmissionDataEntry


def _client_and_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    def override_get_db():
        try:
            yield session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    return client, session


FLOWCHART = {
    "client_id": "acme",
    "caller_identity": "http-test",
    "nodes": [
        {"id": "boiler", "label": "Boiler", "details": {"scopeDetails": [
            {"scopeIdentifier": "Grid", "scopeType": "Scope 2", "allocationPct": 30},
            {"scopeIdentifier": "Gas", "scopeType": "Scope 1"},
        ]}},
        {"id": "press", "label": "Press", "details": {"scopeDetails": [
            {"scopeIdentifier": "Grid", "scopeType": "Scope 2", "allocationPct": 70},
        ]}},
        {"id": "store", "label": "Store", "details": {"scopeDetails": [
            {"scopeIdentifier": "Grid", "scopeType": "Scope 2", "allocationPct": 0},
        ]}},
    ],
    "edges": [{"source": "boiler", "target": "press"}],
}


def test_http_end_to_end_flow():
    client, session = _client_and_session()

    assert client.get("/health").json() == {"status": "ok"}

    saved = client.post("/v1/flowcharts", json=FLOWCHART)
    saved_payload = saved.json()
    assert saved.status_code == 200
    assert saved_payload["status"] == "ok"
    assert saved_payload["api_version"]
    assert saved_payload["audit_id"]

    allocations = client.get("/v1/flowcharts/acme/allocations")
    assert allocations.status_code == 200
    assert allocations.json()["data"]["validation"]["isValid"] is True

    patched = client.patch(
        "/v1/flowcharts/acme/allocations",
        json={"allocations": [{"scopeIdentifier": "Grid", "nodeAllocations": [
            {"nodeId": "boiler", "allocationPct": 50},
            {"nodeId": "press", "allocationPct": 50},
            {"nodeId": "store", "allocationPct": 0},
        ]}]},
    )
    assert patched.status_code == 200
    assert patched.json()["data"]["updated_count"] == 3

    renamed = client.patch(
        "/v1/flowcharts/acme/nodes/boiler",
        json={"node_data": {"details": {"scopeDetails": [
            {"scopeIdentifier": "Natural_Gas", "previousScopeIdentifier": "Gas"},
        ]}}},
    )
    assert renamed.status_code == 200

    distributed = client.post(
        "/v1/flowcharts/acme/allocations/auto-distribute",
        json={"scope_identifier": "Grid"},
    )
    assert distributed.status_code == 200
    assert [a["allocationPct"] for a in distributed.json()["data"]["allocations"]] == [33.33, 33.33, 33.34]

    session.add(EmissionDataEntry(
        client_id="acme",
        scope_identifier="Grid",
        timestamp=datetime(2024, 5, 20),
        calculated_emissions={"incoming": {"grid": {"CO2e": 300.0}}},
    ))
    session.commit()

    summary = client.post(
        "/v1/flowcharts/acme/emission-summary",
        json={"period_type": "monthly", "year": 2024, "month": 5},
    )
    summary_payload = summary.json()
    assert summary.status_code == 200
    assert summary_payload["data"]["totalEmissions"]["CO2e"] == pytest.approx(300.0)
    assert set(summary_payload["data"]["byNode"]) == {"boiler", "press", "store"}

    removed_scope = client.delete("/v1/flowcharts/acme/nodes/boiler/scopes/Natural_Gas")
    assert removed_scope.status_code == 200

    log = client.post("/v1/audit-log", json={"client_id": "acme", "limit": 20})
    log_payload = log.json()
    assert log.status_code == 200
    assert any(entry["operation"] == "auto_distribute" for entry in log_payload["records"])


def test_http_rule_violation_maps_to_400():
    client, _ = _client_and_session()
    client.post("/v1/flowcharts", json=FLOWCHART)

    bad = client.patch(
        "/v1/flowcharts/acme/nodes/press",
        json={"node_data": {"details": {"scopeDetails": [{"scopeIdentifier": "Grid", "allocationPct": 20}]}}},
    )
    payload = bad.json()
    assert bad.status_code == 400
    assert payload["status"] == "rejected"
    assert payload["data"]["details"]["errors"][0]["currentSum"] == 50.0
    assert payload["audit_id"]

    gated = client.delete("/v1/flowcharts/acme/nodes/press")
    assert gated.status_code == 400


def test_http_missing_records_map_to_404():
    client, _ = _client_and_session()
    missing = client.delete("/v1/flowcharts/ghost/nodes/n1")
    payload = missing.json()
    assert missing.status_code == 404
    assert payload["status"] == "error"
    assert payload["audit_id"]


def test_http_bad_period_maps_to_400():
    client, _ = _client_and_session()
    client.post("/v1/flowcharts", json=FLOWCHART)
    bad = client.post("/v1/flowcharts/acme/emission-summary", json={"period_type": "monthly", "year": 2024})
    assert bad.status_code == 400
