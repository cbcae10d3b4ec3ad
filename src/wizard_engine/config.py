from __future__ import annotations

import os
from typing import Dict, Optional

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    if not v:
        return default
    return v in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class EngineSettings(BaseModel):
    """Runtime knobs. Read from `WIZARD_*` environment variables by `load_settings()`."""

    validation_debounce_ms: int = 300
    broadcast_debounce_ms: int = 16
    http_timeout_s: float = 10.0
    base_url: str = ""
    auth_token: str = ""
    session_ttl_s: int = 3600
    max_sessions: int = 500
    http_log: bool = False
    http_log_headers: bool = False
    http_log_body_max_bytes: int = 4096
    extra_headers: Dict[str, str] = Field(default_factory=dict)

    @property
    def validation_delay_s(self) -> float:
        return max(0, self.validation_debounce_ms) / 1000.0

    @property
    def broadcast_delay_s(self) -> float:
        return max(0, self.broadcast_debounce_ms) / 1000.0

    def request_headers(self) -> Optional[Dict[str, str]]:
        headers = dict(self.extra_headers)
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers or None


def load_settings() -> EngineSettings:
    return EngineSettings(
        validation_debounce_ms=_env_int("WIZARD_VALIDATION_DEBOUNCE_MS", 300),
        broadcast_debounce_ms=_env_int("WIZARD_BROADCAST_DEBOUNCE_MS", 16),
        http_timeout_s=_env_float("WIZARD_HTTP_TIMEOUT_S", 10.0),
        base_url=(os.getenv("WIZARD_BASE_URL") or "").strip(),
        auth_token=(os.getenv("WIZARD_HTTP_AUTH_TOKEN") or "").strip(),
        session_ttl_s=max(60, _env_int("WIZARD_SESSION_TTL_S", 3600)),
        max_sessions=max(1, _env_int("WIZARD_MAX_SESSIONS", 500)),
        http_log=_env_bool("WIZARD_HTTP_LOG", default=False),
        http_log_headers=_env_bool("WIZARD_HTTP_LOG_HEADERS", default=False),
        http_log_body_max_bytes=_env_int("WIZARD_HTTP_LOG_BODY_MAX_BYTES", 4096),
    )
