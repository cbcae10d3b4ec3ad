from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from wizard_engine.api.main import create_app
from wizard_engine.config import EngineSettings

PREFIX = "/v1/api/wizard"


@pytest.fixture
def client(amount_metadata, fast_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/records":
            return httpx.Response(500, json={"error": "down"})
        return httpx.Response(404, json={"error": "not found"})

    outbound = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    app = create_app(fast_settings, http_client=outbound)
    with TestClient(app) as c:
        yield c


def _create(client: TestClient, metadata: List[Dict[str, Any]], **extra: Any) -> Dict[str, Any]:
    r = client.post(f"{PREFIX}/sessions", json={"metadata": metadata, **extra})
    assert r.status_code == 201, r.text
    return r.json()


def test_health(client, amount_metadata):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["service"] == "form-wizard-engine"
    assert body["schemaVersion"] == "1"
    assert body["activeSessions"] == 0

    _create(client, amount_metadata)
    assert client.get("/health").json()["activeSessions"] == 1


def test_schema_endpoint(client):
    body = client.get(f"{PREFIX}/schema").json()
    assert body["schemaVersion"] == "1"
    assert "FieldConfig" in body["schema"]["$defs"]


def test_wizard_flow_over_http(client, amount_metadata):
    metadata = amount_metadata + [
        {"type": "section", "id": "review", "title": "Review", "order": 2},
        {"id": "comment", "sectionId": "review"},
    ]
    created = _create(client, metadata)
    assert created["schemaErrors"] == []
    session = created["session"]
    sid = session["sessionId"]
    assert session["formData"] == {"surcharge": 0}
    assert [s["sectionId"] for s in session["steps"]] == ["main", "review"]

    r = client.post(f"{PREFIX}/sessions/{sid}/next")
    assert r.status_code == 409
    assert r.json()["error"] == "validation_failed"
    assert r.json()["errors"] == {"amount": "Amount is required"}

    r = client.patch(f"{PREFIX}/sessions/{sid}/fields", json={"values": {"amount": 200}})
    assert r.status_code == 200
    assert r.json()["changes"] == {"amount": 200, "surcharge": 20}
    assert r.json()["session"]["errors"] == {}

    r = client.post(f"{PREFIX}/sessions/{sid}/next")
    assert r.status_code == 200
    assert r.json()["navigation"]["currentStep"] == 1
    assert r.json()["session"]["completedSteps"] == [0]

    assert client.post(f"{PREFIX}/sessions/{sid}/previous").json()["session"]["currentStep"] == 0
    r = client.post(f"{PREFIX}/sessions/{sid}/previous")
    assert r.status_code == 409
    assert r.json()["error"] == "navigation_rejected"

    r = client.post(f"{PREFIX}/sessions/{sid}/jump", json={"step": 1})
    assert r.status_code == 409
    assert r.json()["message"] == "Complete the current step before moving ahead"
    r = client.post(f"{PREFIX}/sessions/{sid}/jump", json={"step": 9})
    assert r.status_code == 409
    assert r.json()["message"] == "Step 10 does not exist"


def test_save_failure_is_a_502_envelope(client, amount_metadata):
    created = _create(client, amount_metadata, persistence={"create": {"url": "/records"}})
    sid = created["session"]["sessionId"]
    r = client.post(f"{PREFIX}/sessions/{sid}/save")
    assert r.status_code == 502
    body = r.json()
    assert body["ok"] is False
    assert body["error"] == "persistence_failed"
    assert body["mode"] == "create"
    assert body["requestId"]


def test_unknown_and_deleted_sessions_are_404(client, amount_metadata):
    r = client.get(f"{PREFIX}/sessions/nope")
    assert r.status_code == 404
    assert r.json()["error"] == "session_not_found"

    sid = _create(client, amount_metadata)["session"]["sessionId"]
    assert client.delete(f"{PREFIX}/sessions/{sid}").json() == {"ok": True, "removed": True}
    assert client.get(f"{PREFIX}/sessions/{sid}").status_code == 404


def test_malformed_request_body_is_a_422_envelope(client):
    r = client.post(f"{PREFIX}/sessions", json={"metadata": 5})
    assert r.status_code == 422
    assert r.json()["error"] == "validation_error"


def test_schema_problems_are_reported_but_not_fatal(client):
    created = _create(client, [{"id": 5}, {"id": "ok", "label": "Fine"}])
    assert any(e.startswith("0/id") for e in created["schemaErrors"])
    assert "ok" in created["session"]["visibleFields"]


def test_http_logging_redacts_sensitive_values(caplog):
    settings = EngineSettings(http_log=True, validation_debounce_ms=5, broadcast_debounce_ms=5)
    outbound = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)), base_url="http://test")
    caplog.set_level(logging.INFO, logger="wizard_engine.http")
    metadata = [{"id": "password", "type": "password"}]
    with TestClient(create_app(settings, http_client=outbound)) as c:
        sid = c.post(f"{PREFIX}/sessions", json={"metadata": metadata}).json()["session"]["sessionId"]
        c.patch(f"{PREFIX}/sessions/{sid}/fields", json={"values": {"password": "Hunter2Hunter2"}})

    records = [json.loads(r.getMessage()) for r in caplog.records if r.name == "wizard_engine.http"]
    patch = next(r for r in records if r["method"] == "PATCH")
    assert patch["status"] == 200
    assert patch["request"]["body"] == {"values": {"password": "***"}}
    assert "Hunter2Hunter2" not in caplog.text
