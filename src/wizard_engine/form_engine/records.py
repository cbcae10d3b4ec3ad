from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wizard_engine.form_engine.errors import PersistenceError, RemoteFetchError
from wizard_engine.form_engine.remote import ALLOWED_WRITE_METHODS, HttpJsonClient

logger = logging.getLogger("wizard_engine.records")

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
SAVE_MODES = ("create", "update", "progress")


def resolve_url_template(template: str, context: Mapping[str, Any]) -> Optional[str]:
    """
    Replace `{name}` placeholders from the navigation context.

    Returns None when any placeholder is left unresolved; such URLs must not be fetched.
    """
    if not template:
        return None

    def _sub(m: "re.Match[str]") -> str:
        v = context.get(m.group(1))
        return m.group(0) if v is None or v == "" else str(v)

    url = _PLACEHOLDER_RE.sub(_sub, template)
    if "{" in url:
        return None
    return url


def extract_record(payload: Any) -> Dict[str, Any]:
    """`{formData: {...}}`, `{data: {...}}`, or the bare object."""
    if not isinstance(payload, dict):
        return {}
    if isinstance(payload.get("formData"), dict):
        return dict(payload["formData"])
    if isinstance(payload.get("data"), dict):
        return dict(payload["data"])
    return dict(payload)


def read_path(record: Mapping[str, Any], path: str) -> Any:
    if path in record:
        return record[path]
    cur: Any = record
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return None
        cur = cur[part]
    return cur


def initial_values(record: Mapping[str, Any], field_ids: Iterable[str]) -> Dict[str, Any]:
    """Record values for known field ids (dot-path ids read nested objects), plus any top-level extras."""
    out: Dict[str, Any] = dict(record)
    for fid in field_ids:
        if fid in out:
            continue
        v = read_path(record, fid)
        if v is not None:
            out[fid] = v
    return out


async def load_record(client: HttpJsonClient, data_url: Optional[str], context: Mapping[str, Any]) -> Dict[str, Any]:
    """Fetch the record to edit. Unresolvable URLs and failed fetches yield an empty record."""
    if not data_url:
        return {}
    url = resolve_url_template(data_url, context)
    if url is None:
        logger.info("record URL %s has unresolved placeholders; starting empty", data_url)
        return {}
    try:
        payload = await client.get_json(url)
    except RemoteFetchError as e:
        logger.warning("record load failed: %s", e)
        return {}
    return extract_record(payload)


def resolve_record_id(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("id", "_id", "recordId"):
        if payload.get(key) not in (None, ""):
            return str(payload[key])
    data = payload.get("data")
    if isinstance(data, dict):
        return resolve_record_id(data)
    return None


def apply_record_id(url: str, record_id: Optional[str]) -> str:
    if not record_id:
        return url
    return url.replace("{id}", record_id).replace(":id", record_id)


class PersistenceEndpoint(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    url: str
    method: str = "POST"

    @field_validator("method", mode="before")
    @classmethod
    def _known_method(cls, v: Any) -> str:
        m = str(v or "POST").upper()
        if m not in ALLOWED_WRITE_METHODS:
            raise ValueError(f"unsupported HTTP method {m!r}")
        return m


class PersistenceConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    create: Optional[PersistenceEndpoint] = None
    update: Optional[PersistenceEndpoint] = None
    progress: Optional[PersistenceEndpoint] = None
    error_messages: Dict[str, str] = Field(default_factory=dict, alias="errorMessages")


class RecordPersistence:
    """
    Create/update/progress saves against configured endpoints.

    The mode defaults to update when a record id is known, create otherwise. Failures raise
    PersistenceError with a user-facing message; callers keep their state for a retry.
    """

    def __init__(self, client: HttpJsonClient, config: PersistenceConfig, *, record_id: Optional[str] = None) -> None:
        self._client = client
        self.config = config
        self.record_id = record_id
        self.saving = False

    def resolve_mode(self, mode: Optional[str], record_id: Optional[str] = None) -> str:
        if mode:
            if mode not in SAVE_MODES:
                raise PersistenceError(f"Unknown save mode {mode!r}", mode=str(mode))
            return mode
        return "update" if (record_id or self.record_id) else "create"

    def _fail(self, mode: str, default: str, status_code: Optional[int] = None) -> PersistenceError:
        return PersistenceError(self.config.error_messages.get(mode) or default, mode=mode, status_code=status_code)

    async def save(self, payload: Mapping[str, Any], *, mode: Optional[str] = None, record_id: Optional[str] = None) -> Any:
        resolved = self.resolve_mode(mode, record_id)
        target = record_id or self.record_id
        endpoint: Optional[PersistenceEndpoint] = getattr(self.config, resolved)
        if endpoint is None:
            raise self._fail(resolved, f"No {resolved} endpoint is configured")
        if resolved in {"update", "progress"} and not target:
            raise self._fail(resolved, f"Cannot {resolved} a record without an identifier")

        url = apply_record_id(endpoint.url, target)
        self.saving = True
        try:
            result = await self._client.send_json(endpoint.method, url, dict(payload))
        except RemoteFetchError as e:
            logger.warning("%s save failed: %s", resolved, e)
            raise self._fail(resolved, f"Saving failed: {e}", e.status_code) from e
        finally:
            self.saving = False

        if resolved == "create":
            new_id = resolve_record_id(result)
            if not new_id:
                raise self._fail(resolved, "The server did not return a record identifier")
            self.record_id = new_id
        elif target:
            self.record_id = target
        return result
