from __future__ import annotations

import json
from typing import List

import anyio
import httpx
import pytest

from wizard_engine.form_engine.errors import PersistenceError
from wizard_engine.form_engine.records import (
    PersistenceConfig,
    RecordPersistence,
    initial_values,
    load_record,
    resolve_record_id,
    resolve_url_template,
)


def test_url_templates_resolve_or_refuse():
    assert resolve_url_template("/records/{id}", {"id": 42}) == "/records/42"
    assert resolve_url_template("/records/{id}", {}) is None
    assert resolve_url_template("/records/{id}", {"id": ""}) is None
    assert resolve_url_template("/static", {}) == "/static"


def test_initial_values_read_nested_paths():
    record = {"name": "Ada", "address": {"city": "London"}}
    values = initial_values(record, ["name", "address.city", "missing"])
    assert values["address.city"] == "London"
    assert values["name"] == "Ada"
    assert "missing" not in values


def test_record_id_is_found_in_common_places():
    assert resolve_record_id({"id": 7}) == "7"
    assert resolve_record_id({"_id": "abc"}) == "abc"
    assert resolve_record_id({"data": {"recordId": "r1"}}) == "r1"
    assert resolve_record_id({"ok": True}) is None


def test_load_record_unwraps_and_degrades(mock_client):
    calls: List[str] = []
    client = mock_client({"/records/5": {"formData": {"name": "Ada"}}, "/records/6": 500}, calls)

    async def main():
        ok = await load_record(client, "/records/{id}", {"id": 5})
        failed = await load_record(client, "/records/{id}", {"id": 6})
        unresolved = await load_record(client, "/records/{id}", {})
        return ok, failed, unresolved

    ok, failed, unresolved = anyio.run(main)
    assert ok == {"name": "Ada"}
    assert failed == {}
    assert unresolved == {}
    assert calls == ["/records/5", "/records/6"]


def _persistence_client(mock_client, seen: List[httpx.Request], create_response=None):
    def create(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json=create_response if create_response is not None else {"data": {"id": "new-1"}})

    def update(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    return mock_client({"/records": create, "/records/new-1": update, "/records/broken": 503})


def test_create_then_update_uses_the_returned_id(mock_client):
    seen: List[httpx.Request] = []
    client = _persistence_client(mock_client, seen)
    config = PersistenceConfig.model_validate(
        {"create": {"url": "/records"}, "update": {"url": "/records/{id}", "method": "put"}}
    )
    persistence = RecordPersistence(client, config)

    async def main():
        await persistence.save({"name": "Ada"})
        await persistence.save({"name": "Ada L."})

    anyio.run(main)
    assert persistence.record_id == "new-1"
    assert [(r.method, r.url.path) for r in seen] == [("POST", "/records"), ("PUT", "/records/new-1")]
    assert json.loads(seen[1].content) == {"name": "Ada L."}


def test_failures_raise_with_the_configured_message(mock_client):
    seen: List[httpx.Request] = []
    client = _persistence_client(mock_client, seen, create_response={"ok": True})
    config = PersistenceConfig.model_validate(
        {
            "create": {"url": "/records"},
            "progress": {"url": "/records/{id}", "method": "PATCH"},
            "errorMessages": {"progress": "Could not save your progress"},
        }
    )

    async def main():
        persistence = RecordPersistence(client, config)
        with pytest.raises(PersistenceError, match="did not return a record identifier"):
            await persistence.save({})
        with pytest.raises(PersistenceError) as info:
            await RecordPersistence(client, config, record_id="broken").save({}, mode="progress")
        assert info.value.message == "Could not save your progress"
        assert info.value.status_code == 503
        with pytest.raises(PersistenceError, match="No update endpoint"):
            await RecordPersistence(client, config, record_id="x").save({})

    anyio.run(main)


def test_unknown_http_method_is_rejected():
    with pytest.raises(ValueError):
        PersistenceConfig.model_validate({"create": {"url": "/x", "method": "DELETE"}})
