from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from wizard_engine.config import EngineSettings

logger = logging.getLogger("wizard_engine.http")

Headers = Iterable[Tuple[bytes, bytes]]

_SENSITIVE_KEYS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "token",
    "secret",
    "password",
    "ssn",
}


def redact(value: Any) -> Any:
    """Mask secrets in nested JSON-ish payloads (form data often carries passwords)."""
    if isinstance(value, dict):
        return {k: ("***" if str(k).lower() in _SENSITIVE_KEYS else redact(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def _header_map(headers: Optional[Headers]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in headers or []:
        key = k.decode("latin-1").lower()
        out[key] = "***" if key in _SENSITIVE_KEYS else v.decode("latin-1", errors="replace")
    return out


def _header(headers: Optional[Headers], name: bytes) -> str:
    for k, v in headers or []:
        if k.lower() == name:
            return v.decode("latin-1", errors="replace")
    return ""


def _render_body(content_type: str, body: bytes) -> Any:
    ct = content_type.lower()
    if not body:
        return ""
    if "application/json" in ct:
        try:
            return redact(json.loads(body.decode("utf-8", errors="replace")))
        except ValueError:
            return body.decode("utf-8", errors="replace")
    if ct.startswith("text/"):
        return body.decode("utf-8", errors="replace")
    return "<binary>"


class _Capture:
    """First `limit` bytes of a streamed body."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.buf = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        if not chunk or self.limit <= 0 or self.truncated:
            return
        room = self.limit - len(self.buf)
        if room > 0:
            self.buf.extend(chunk[:room])
        if len(chunk) > room:
            self.truncated = True


class HttpLoggingMiddleware:
    """Logs one JSON line per HTTP exchange: method, path, status, duration, redacted bodies."""

    def __init__(self, app: ASGIApp, *, log_headers: bool, max_body_bytes: int) -> None:
        self.app = app
        self.log_headers = log_headers
        self.max_body_bytes = max(0, max_body_bytes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        req_headers: List[Tuple[bytes, bytes]] = list(scope.get("headers") or [])
        request_id = _header(req_headers, b"x-request-id") or uuid.uuid4().hex[:12]
        req_body = _Capture(self.max_body_bytes)
        res_body = _Capture(self.max_body_bytes)
        res_headers: List[Tuple[bytes, bytes]] = []
        status: Optional[int] = None

        async def receive_logged() -> Message:
            message = await receive()
            if message.get("type") == "http.request":
                req_body.feed(message.get("body") or b"")
            return message

        async def send_logged(message: Message) -> None:
            nonlocal status, res_headers
            if message.get("type") == "http.response.start":
                status = int(message.get("status") or 0)
                res_headers = list(message.get("headers") or [])
            elif message.get("type") == "http.response.body":
                res_body.feed(message.get("body") or b"")
            await send(message)

        error: Optional[BaseException] = None
        try:
            await self.app(scope, receive_logged, send_logged)
        except BaseException as e:  # noqa: BLE001 - logged, then re-raised
            error = e
            raise
        finally:
            record: Dict[str, Any] = {
                "id": request_id,
                "method": str(scope.get("method") or "").upper(),
                "path": str(scope.get("path") or ""),
                "query": (scope.get("query_string") or b"").decode("latin-1", errors="ignore"),
                "status": status,
                "dur_ms": int((time.perf_counter() - started) * 1000),
                "request": {
                    "headers": _header_map(req_headers) if self.log_headers else {},
                    "body": _render_body(_header(req_headers, b"content-type"), bytes(req_body.buf)),
                    "body_truncated": req_body.truncated,
                },
                "response": {
                    "headers": _header_map(res_headers) if self.log_headers else {},
                    "body": _render_body(_header(res_headers, b"content-type"), bytes(res_body.buf)),
                    "body_truncated": res_body.truncated,
                },
            }
            if error is not None:
                record["error"] = {"type": type(error).__name__, "message": str(error)}
            logger.info(json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str))


def install_http_logging(app: Any, settings: EngineSettings) -> None:
    """
    Enable request/response logging from settings.

    - `WIZARD_HTTP_LOG=1` enables the middleware
    - `WIZARD_HTTP_LOG_HEADERS=1` also logs headers (redacted)
    - `WIZARD_HTTP_LOG_BODY_MAX_BYTES=4096` caps captured body bytes per direction
    """
    if not settings.http_log:
        return
    app.add_middleware(
        HttpLoggingMiddleware,
        log_headers=settings.http_log_headers,
        max_body_bytes=settings.http_log_body_max_bytes,
    )
