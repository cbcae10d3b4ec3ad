from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse
from starlette.status import HTTP_201_CREATED, HTTP_409_CONFLICT

from wizard_engine.api.models import CreateSessionRequest, JumpRequest, LoadSectionRequest, SaveRequest, UpdateFieldsRequest
from wizard_engine.api.registry import SessionRegistry
from wizard_engine.contract import metadata_json_schema, schema_version, validate_metadata_document
from wizard_engine.form_engine.errors import FieldValidationError
from wizard_engine.form_engine.session import FormSession
from wizard_engine.form_engine.wizard import NavigationResult

logger = logging.getLogger("wizard_engine.api")

router = APIRouter(prefix="/api/wizard", tags=["wizard"])


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _navigation_response(session: FormSession, result: NavigationResult) -> Any:
    if result.ok:
        return {"ok": True, "navigation": result.model_dump(by_alias=True), "session": session.snapshot()}
    if result.errors:
        raise FieldValidationError(result.message or "Step has invalid fields", result.errors)
    return JSONResponse(
        status_code=HTTP_409_CONFLICT,
        content={
            "ok": False,
            "error": "navigation_rejected",
            "message": result.message,
            "navigation": result.model_dump(by_alias=True),
        },
    )


@router.get("/schema")
async def get_schema() -> Dict[str, Any]:
    return {"ok": True, "schemaVersion": schema_version(), "schema": metadata_json_schema()}


@router.post("/sessions", status_code=HTTP_201_CREATED)
async def create_session(request: Request, body: CreateSessionRequest = Body(...)) -> Dict[str, Any]:
    # Schema problems are reported, not fatal: the parser degrades per item.
    schema_errors = validate_metadata_document(body.metadata)
    session = await FormSession.create(
        body.metadata,
        client=request.app.state.http,
        settings=request.app.state.settings,
        data_url=body.data_url,
        context=body.context,
        record=body.record,
        record_id=body.record_id,
        persistence=body.persistence,
    )
    await _registry(request).add(session)
    logger.info("session %s created (%d fields, %d issues)", session.id, len(session.index.fields), len(session.index.issues))
    return {"ok": True, "schemaErrors": schema_errors, "session": session.snapshot()}


@router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: str) -> Dict[str, Any]:
    session = await _registry(request).get(session_id)
    return {"ok": True, "session": session.snapshot()}


@router.patch("/sessions/{session_id}/fields")
async def update_fields(request: Request, session_id: str, body: UpdateFieldsRequest = Body(...)) -> Dict[str, Any]:
    session = await _registry(request).get(session_id)
    changes = await session.update(body.values)
    # Settle debounced validation so the response reflects this edit.
    await session.flush()
    return {"ok": True, "changes": changes, "session": session.snapshot()}


@router.post("/sessions/{session_id}/next")
async def next_step(request: Request, session_id: str) -> Any:
    session = await _registry(request).get(session_id)
    await session.flush()
    return _navigation_response(session, session.next_step())


@router.post("/sessions/{session_id}/previous")
async def previous_step(request: Request, session_id: str) -> Any:
    session = await _registry(request).get(session_id)
    return _navigation_response(session, session.previous_step())


@router.post("/sessions/{session_id}/jump")
async def jump(request: Request, session_id: str, body: JumpRequest = Body(...)) -> Any:
    session = await _registry(request).get(session_id)
    return _navigation_response(session, session.jump_to(body.step))


@router.post("/sessions/{session_id}/sections/{section_id}/load")
async def load_section(request: Request, session_id: str, section_id: str, body: Optional[LoadSectionRequest] = Body(default=None)) -> Dict[str, Any]:
    session = await _registry(request).get(session_id)
    state = await session.load_section(section_id, force=bool(body and body.force))
    return {"ok": state.status != "error", "section": state.model_dump(), "session": session.snapshot()}


@router.post("/sessions/{session_id}/options/{field_id}/retry")
async def retry_options(request: Request, session_id: str, field_id: str) -> Dict[str, Any]:
    session = await _registry(request).get(session_id)
    await session.retry_options(field_id)
    return {
        "ok": field_id not in session.options.errors,
        "options": [o.model_dump() for o in session.options.options.get(field_id, [])],
        "session": session.snapshot(),
    }


@router.post("/sessions/{session_id}/save")
async def save(request: Request, session_id: str, body: Optional[SaveRequest] = Body(default=None)) -> Dict[str, Any]:
    session = await _registry(request).get(session_id)
    await session.flush()
    result = await session.save(mode=body.mode if body else None)
    return {"ok": True, "result": result, "session": session.snapshot()}


@router.delete("/sessions/{session_id}")
async def delete_session(request: Request, session_id: str) -> Dict[str, Any]:
    removed = await _registry(request).remove(session_id)
    return {"ok": True, "removed": removed}
