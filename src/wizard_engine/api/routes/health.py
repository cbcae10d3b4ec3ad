from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from wizard_engine import __version__
from wizard_engine.contract import schema_version

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    """Liveness plus the engine build and how many wizard sessions are held in memory."""
    registry = getattr(request.app.state, "registry", None)
    return {
        "ok": True,
        "service": "form-wizard-engine",
        "version": __version__,
        "schemaVersion": schema_version(),
        "activeSessions": len(registry) if registry is not None else 0,
    }
