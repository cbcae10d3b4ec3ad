from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import anyio
import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
)

from wizard_engine import __version__
from wizard_engine.api.http_logging import install_http_logging
from wizard_engine.api.registry import SessionNotFoundError, SessionRegistry
from wizard_engine.api.routes.health import router as health_router
from wizard_engine.api.routes.wizard import router as wizard_router
from wizard_engine.config import EngineSettings, load_settings
from wizard_engine.form_engine.errors import FieldValidationError, PersistenceError
from wizard_engine.form_engine.remote import HttpJsonClient

logger = logging.getLogger("wizard_engine.api")


def _repo_root() -> Path:
    # src/wizard_engine/api/main.py -> repo root
    return Path(__file__).resolve().parents[3]


def _request_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _envelope(status_code: int, error: str, message: str, request_id: str, **extra: Any) -> JSONResponse:
    content: Dict[str, Any] = {"ok": False, "error": error, "message": message, "requestId": request_id}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def create_app(settings: Optional[EngineSettings] = None, *, http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    """
    Build the service. `http_client` replaces the outbound client (tests pass one with a mock transport).
    """
    if settings is None:
        # Load `.env` + `.env.local` when present (local dev convenience).
        load_dotenv(_repo_root() / ".env", override=False)
        load_dotenv(_repo_root() / ".env.local", override=False)
        settings = load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owns_client = http_client is None
        client = http_client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.http_timeout_s,
            headers=settings.request_headers(),
        )
        app.state.http = HttpJsonClient(client)
        registry = SessionRegistry(ttl_s=settings.session_ttl_s, max_sessions=settings.max_sessions)
        app.state.registry = registry
        try:
            async with anyio.create_task_group() as tg:
                registry.attach(tg)
                try:
                    yield
                finally:
                    await registry.close_all()
                    tg.cancel_scope.cancel()
        finally:
            if owns_client:
                await client.aclose()

    app = FastAPI(title="form-wizard-engine", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    install_http_logging(app, settings)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = _request_id("val")
        logger.warning("422 validation_error requestId=%s path=%s errors=%s", request_id, request.url.path, exc.errors())
        return _envelope(
            HTTP_422_UNPROCESSABLE_ENTITY,
            "validation_error",
            "Request body did not match expected schema.",
            request_id,
            details=exc.errors(),
        )

    @app.exception_handler(SessionNotFoundError)
    async def _session_not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:
        return _envelope(HTTP_404_NOT_FOUND, "session_not_found", str(exc), _request_id("nf"))

    @app.exception_handler(FieldValidationError)
    async def _field_validation_handler(request: Request, exc: FieldValidationError) -> JSONResponse:
        return _envelope(HTTP_409_CONFLICT, "validation_failed", str(exc), _request_id("step"), errors=exc.errors)

    @app.exception_handler(PersistenceError)
    async def _persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        request_id = _request_id("save")
        logger.warning("502 persistence_failed requestId=%s mode=%s message=%s", request_id, exc.mode, exc.message)
        return _envelope(HTTP_502_BAD_GATEWAY, "persistence_failed", exc.message, request_id, mode=exc.mode)

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = _request_id("err")
        logger.exception("500 internal_error requestId=%s path=%s", request_id, request.url.path)
        return _envelope(HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "Unhandled server error.", request_id)

    # Unversioned health is convenient for deployments and uptime checks.
    app.include_router(health_router)
    app.include_router(wizard_router, prefix="/v1")
    return app


app = create_app()
