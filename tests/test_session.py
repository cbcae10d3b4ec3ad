from __future__ import annotations

import json
from typing import Any, Dict, List

import anyio
import httpx

from wizard_engine.form_engine.records import PersistenceConfig
from wizard_engine.form_engine.session import FormSession


def test_calculated_field_follows_its_inputs(amount_metadata, fast_settings, mock_client):
    session = FormSession(amount_metadata, client=mock_client({}), settings=fast_settings)
    assert session.state["surcharge"] == 0

    assert session.set_field("amount", 200) == {"amount": 200, "surcharge": 20}
    assert session.state["surcharge"] == 20
    # Writes to calculated fields are ignored.
    assert session.set_field("surcharge", 5) == {}
    # Writing the same value again is not a change.
    assert session.set_field("amount", 200) == {}


def test_debounced_broadcast_and_validation(amount_metadata, fast_settings, mock_client):
    events: List[Dict[str, Any]] = []

    async def main() -> FormSession:
        async with FormSession(amount_metadata, client=mock_client({}), settings=fast_settings) as session:
            session.events.subscribe(lambda e: events.append(e.changes), "form_data_changed")
            session.set_field("amount", 100)
            session.set_field("amount", 200)
            await anyio.sleep(0.15)
            assert session.validation.errors == {}

            session.set_field("amount", "")
            await anyio.sleep(0.15)
            assert session.validation.errors == {"amount": "Amount is required"}
        return session

    session = anyio.run(main)
    assert events[0] == {"amount": 200, "surcharge": 20}
    assert events[-1] == {"amount": "", "surcharge": 0}
    assert session.disposed
    assert session.set_field("amount", 1) == {}
    assert session.state["amount"] == ""


def test_changing_a_parent_clears_and_reloads_its_children(fast_settings, mock_client):
    calls: List[str] = []
    routes = {
        "/countries": [{"code": "NZ", "name": "New Zealand"}, {"code": "AU", "name": "Australia"}],
        "/cities/NZ": [{"id": "akl", "name": "Auckland"}],
        "/cities/AU": [{"id": "syd", "name": "Sydney"}],
    }
    metadata = [
        {"type": "section", "id": "where"},
        {"id": "country", "type": "select", "sectionId": "where", "optionsUrl": "/countries", "optionsValueField": "code"},
        {"id": "city", "type": "select", "sectionId": "where", "dependsOn": "country", "dependentOptionsUrl": "/cities/{parentValue}"},
    ]

    async def main() -> FormSession:
        session = await FormSession.create(
            metadata,
            client=mock_client(routes, calls),
            settings=fast_settings,
            record={"country": "NZ", "city": "akl"},
        )
        assert [o.value for o in session.options.options["city"]] == ["akl"]
        changes = await session.update({"country": "AU"})
        assert changes == {"country": "AU", "city": None}
        await session.aclose()
        return session

    session = anyio.run(main)
    assert [o.label for o in session.options.options["country"]] == ["New Zealand", "Australia"]
    assert [o.value for o in session.options.options["city"]] == ["syd"]
    assert calls == ["/countries", "/cities/NZ", "/cities/AU"]


def test_record_is_loaded_from_a_templated_url(fast_settings, mock_client):
    calls: List[str] = []
    metadata = [
        {"type": "section", "id": "s"},
        {"id": "name", "sectionId": "s"},
        {"id": "country", "sectionId": "s"},
        {"id": "currency", "sectionId": "s"},
        {"type": "smartDefault", "field": "currency", "value": "NZD", "when": {"field": "country", "equals": "NZ"}},
    ]

    async def main() -> FormSession:
        return await FormSession.create(
            metadata,
            client=mock_client({"/records/5": {"data": {"name": "Ada", "country": "NZ"}}}, calls),
            settings=fast_settings,
            data_url="/records/{id}",
            context={"id": 5},
        )

    session = anyio.run(main)
    assert calls == ["/records/5"]
    assert session.state == {"name": "Ada", "country": "NZ", "currency": "NZD"}


def test_lazy_section_loads_once_and_extends_the_wizard(fast_settings, mock_client):
    calls: List[str] = []
    payload = {
        "type": "section",
        "id": "extra",
        "groups": [{"id": "eg", "fields": [{"id": "notes", "defaultValue": "n/a"}]}],
    }
    metadata = [
        {"type": "section", "id": "main", "order": 1},
        {"id": "name", "sectionId": "main"},
        {"type": "section", "id": "extra", "order": 2, "sectionOptionsUrl": "/sections/{sectionId}"},
        {"type": "section", "id": "broken", "order": 3, "sectionOptionsUrl": "/sections/{sectionId}"},
    ]
    routes = {"/sections/extra": payload, "/sections/broken": 500}

    async def main() -> FormSession:
        session = FormSession(metadata, client=mock_client(routes, calls), settings=fast_settings)
        state = await session.load_section("extra")
        assert state.status == "loaded"
        await session.load_section("extra")

        failed = await session.load_section("broken")
        assert failed.status == "error"
        await session.load_section("broken", force=True)
        return session

    session = anyio.run(main)
    assert calls == ["/sections/extra", "/sections/broken", "/sections/broken"]
    assert session.state["notes"] == "n/a"
    assert [s.field_ids for s in session.wizard.steps] == [["name"], ["notes"], []]
    assert session.snapshot()["sections"]["broken"]["status"] == "error"


def test_save_creates_then_reports_the_record_id(amount_metadata, fast_settings, mock_client):
    seen: List[Dict[str, Any]] = []

    def create(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(201, json={"id": "r9"})

    async def main() -> FormSession:
        session = FormSession(
            amount_metadata,
            client=mock_client({"/records": create}),
            settings=fast_settings,
            persistence=PersistenceConfig.model_validate({"create": {"url": "/records"}}),
        )
        session.set_field("amount", 10)
        await session.save()
        return session

    session = anyio.run(main)
    assert session.snapshot()["recordId"] == "r9"
    assert seen[0]["formData"] == {"amount": 10, "surcharge": 1}
    assert seen[0]["currentStep"] == 0


def test_reset_starts_over(amount_metadata, fast_settings, mock_client):
    session = FormSession(amount_metadata, client=mock_client({}), settings=fast_settings)
    session.set_field("amount", 50)
    session.analysis.record("resp-1", step="analyze")
    assert session.analysis.previous_response_id == "resp-1"

    session.reset()
    assert session.state == {"surcharge": 0}
    assert session.analysis.previous_response_id is None
    assert session.wizard.current == 0


def test_amount_and_surcharge_scenario(amount_metadata, fast_settings, mock_client):
    session = FormSession(amount_metadata, client=mock_client({}), settings=fast_settings)

    session.set_field("amount", 200)
    result = session.validation.validate_section("main")
    assert session.state["surcharge"] == 20
    assert result.errors == {}

    session.set_field("amount", None)
    result = session.validation.validate_section("main")
    assert session.state["surcharge"] == 0
    assert result.errors == {"amount": "Amount is required"}


def test_results_landing_after_close_are_discarded(fast_settings, mock_client):
    release = anyio.Event()
    arrived: List[str] = []
    both_arrived = anyio.Event()

    def gated(body: Any):
        async def handler(request: httpx.Request) -> httpx.Response:
            arrived.append(request.url.path)
            if len(arrived) == 2:
                both_arrived.set()
            await release.wait()
            return httpx.Response(200, json=body)

        return handler

    routes = {
        "/colors": gated(["red", "blue"]),
        "/sections/extra": gated(
            {"type": "section", "id": "extra", "groups": [{"id": "eg", "fields": [{"id": "notes", "defaultValue": "n/a"}]}]}
        ),
    }
    metadata = [
        {"type": "section", "id": "main", "order": 1},
        {"id": "color", "type": "select", "sectionId": "main", "optionsUrl": "/colors"},
        {"type": "section", "id": "extra", "order": 2, "sectionOptionsUrl": "/sections/{sectionId}"},
    ]

    async def main() -> FormSession:
        session = FormSession(metadata, client=mock_client(routes), settings=fast_settings)
        state_before = dict(session.state)
        fields_before = list(session.index.fields)
        async with anyio.create_task_group() as tg:
            tg.start_soon(session.load_section, "extra")
            tg.start_soon(session.load_options)
            await both_arrived.wait()
            await session.aclose()
            release.set()
        assert session.state == state_before
        assert list(session.index.fields) == fields_before
        return session

    session = anyio.run(main)
    assert session.options.options == {}
    assert "notes" not in session.state
    assert [s.field_ids for s in session.wizard.steps] == [["color"], []]
