from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List

import httpx
import pytest


_REPO_ROOT = Path(__file__).resolve().parents[1]
_SRC = _REPO_ROOT / "src"
if _SRC.exists():
    sys.path.insert(0, str(_SRC))

from wizard_engine.config import EngineSettings  # noqa: E402
from wizard_engine.form_engine.remote import HttpJsonClient  # noqa: E402


AMOUNT_METADATA: List[Dict[str, Any]] = [
    {"type": "section", "id": "main", "title": "Main", "order": 1},
    {"type": "group", "id": "g1", "sectionId": "main", "order": 1},
    {"id": "amount", "type": "number", "label": "Amount", "required": True, "groupId": "g1", "sectionId": "main"},
    {
        "id": "surcharge",
        "type": "number",
        "label": "Surcharge",
        "calculated": True,
        "formula": "amount * 0.1",
        "groupId": "g1",
        "sectionId": "main",
    },
]


@pytest.fixture
def amount_metadata() -> List[Dict[str, Any]]:
    return [dict(item) for item in AMOUNT_METADATA]


@pytest.fixture
def fast_settings() -> EngineSettings:
    return EngineSettings(validation_debounce_ms=20, broadcast_debounce_ms=5)


@pytest.fixture
def mock_client() -> Callable[..., HttpJsonClient]:
    """
    Build an HttpJsonClient over httpx.MockTransport.

    `routes` maps a path to a JSON body, an int status, or a callable(request) -> httpx.Response.
    Every request path is appended to `calls` when given.
    """

    def _make(routes: Dict[str, Any], calls: List[str] | None = None) -> HttpJsonClient:
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if calls is not None:
                calls.append(path if not request.url.query else f"{path}?{request.url.query.decode()}")
            route = routes.get(path)
            if route is None:
                return httpx.Response(404, json={"error": "not found"})
            if callable(route):
                return route(request)
            if isinstance(route, int):
                return httpx.Response(route, json={"error": "boom"})
            return httpx.Response(200, json=route)

        return HttpJsonClient(httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test"))

    return _make
