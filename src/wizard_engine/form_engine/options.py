from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple
from urllib.parse import quote

import anyio

from wizard_engine.form_engine.errors import RemoteFetchError
from wizard_engine.form_engine.remote import HttpJsonClient
from wizard_engine.form_engine.visibility import normalize_token
from wizard_engine.schemas.metadata import FieldConfig, OptionItem

logger = logging.getLogger("wizard_engine.options")

_LABEL_TOKEN_RE = re.compile(r"\{([^{}]+)\}")
_VALUE_KEYS = ("id", "_id", "value", "code")
_LABEL_KEYS = ("name", "label", "title", "description")


def extract_rows(payload: Any, options_path: Optional[str] = None) -> List[Any]:
    """Raw array, `{data: [...]}`, `{options: [...]}`, or a dot path into the response."""
    data = payload
    if options_path:
        for part in options_path.split("."):
            data = data.get(part) if isinstance(data, dict) else None
    elif isinstance(payload, dict):
        if isinstance(payload.get("data"), list):
            data = payload["data"]
        elif isinstance(payload.get("options"), list):
            data = payload["options"]
    return data if isinstance(data, list) else []


def _pick(row: Mapping[str, Any], key: Optional[str], fallbacks: Tuple[str, ...]) -> Any:
    if key and row.get(key) is not None:
        return row.get(key)
    for k in fallbacks:
        if row.get(k) is not None:
            return row.get(k)
    return None


def format_label(template: str, row: Mapping[str, Any]) -> str:
    """`"{firstName} {lastName}"` -> `"Ada Lovelace"`. Missing tokens render empty."""
    out = _LABEL_TOKEN_RE.sub(lambda m: normalize_token(row.get(m.group(1).strip())), template)
    return re.sub(r"\s+", " ", out).strip()


def map_option_rows(rows: Iterable[Any], value_field: Optional[str] = None, label_field: Optional[str] = None) -> List[OptionItem]:
    out: List[OptionItem] = []
    for row in rows:
        if not isinstance(row, dict):
            if row is None:
                continue
            out.append(OptionItem(label=normalize_token(row), value=normalize_token(row)))
            continue
        value = normalize_token(_pick(row, value_field, _VALUE_KEYS))
        if label_field and "{" in label_field:
            label = format_label(label_field, row)
        else:
            label = normalize_token(_pick(row, label_field, _LABEL_KEYS))
        out.append(OptionItem(label=label or value, value=value))
    return out


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def parent_token(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        return ",".join(normalize_token(v) for v in value)
    return normalize_token(value)


def dependent_request(field: FieldConfig, parent_value: Any) -> Optional[Tuple[str, Optional[Dict[str, str]]]]:
    """
    URL (and query params) for a dependent field given its parent's value.

    Order: `dependentOptionsUrl` with `{parentValue}` substituted, then `optionsUrl` filtered by
    `filterBy=<value>`, then `optionsUrl` filtered by the parent field id.
    """
    token = parent_token(parent_value)
    if field.dependent_options_url:
        return field.dependent_options_url.replace("{parentValue}", quote(token, safe="")), None
    base = field.remote_options_url
    if not base:
        return None
    if field.filter_by:
        return base, {field.filter_by: token}
    if field.depends_on:
        return base, {field.depends_on: token}
    return None


class DependentOptionLoader:
    """
    Remote option lists for select-like fields.

    Independent fields are fetched once per field; dependent fields once per (field, parent value).
    Concurrent callers for the same key share one request. Results of a load round are applied to
    `options` in one write. A failed key yields `[]`, is recorded in `errors`, and stays failed until
    `retry()`.
    """

    def __init__(self, client: HttpJsonClient) -> None:
        self._client = client
        self.options: Dict[str, List[OptionItem]] = {}
        self.loading: Dict[str, bool] = {}
        self.errors: Dict[str, str] = {}
        self._cache: Dict[Tuple[str, str], List[OptionItem]] = {}
        self._failed: Set[Tuple[str, str]] = set()
        self._inflight: Dict[Tuple[str, str], anyio.Event] = {}
        # dependent field id -> parent token its options must match; None once cleared
        self._parent_of: Dict[str, Optional[str]] = {}
        self._closed = False
        self.fetch_count = 0

    def options_for(self, field: FieldConfig) -> List[OptionItem]:
        if field.id in self.options:
            return self.options[field.id]
        return list(field.options)

    async def _fetch(self, field: FieldConfig, parent_value: Any = None) -> List[OptionItem]:
        key = (field.id, parent_token(parent_value) if field.depends_on else "")
        if key in self._cache:
            return self._cache[key]
        if key in self._failed:
            return []
        pending = self._inflight.get(key)
        if pending is not None:
            await pending.wait()
            return self._cache.get(key, [])

        if field.depends_on:
            req = dependent_request(field, parent_value)
        else:
            req = (field.remote_options_url, None) if field.remote_options_url else None
        if req is None:
            logger.warning("no options URL could be built for %s", field.id)
            return []

        done = anyio.Event()
        self._inflight[key] = done
        self.loading[field.id] = True
        items: List[OptionItem] = []
        try:
            self.fetch_count += 1
            payload = await self._client.get_json(req[0], params=req[1])
            items = map_option_rows(extract_rows(payload, field.options_path), field.options_value_field, field.options_label_field)
            self._cache[key] = items
            self.errors.pop(field.id, None)
        except RemoteFetchError as e:
            logger.warning("failed to load options for %s: %s", field.id, e)
            self._failed.add(key)
            self.errors[field.id] = str(e)
        finally:
            self.loading[field.id] = False
            self._inflight.pop(key, None)
            done.set()
        return items

    async def _gather(self, jobs: List[Tuple[FieldConfig, Any]]) -> Dict[str, List[OptionItem]]:
        results: Dict[str, List[OptionItem]] = {}

        async def _one(field: FieldConfig, parent_value: Any) -> None:
            results[field.id] = await self._fetch(field, parent_value)

        async with anyio.create_task_group() as tg:
            for field, parent_value in jobs:
                tg.start_soon(_one, field, parent_value)
        return results

    def _apply(self, results: Dict[str, List[OptionItem]]) -> Dict[str, List[OptionItem]]:
        if self._closed:
            return {}
        self.options.update(results)
        return results

    async def load_independent(self, fields: Iterable[FieldConfig]) -> Dict[str, List[OptionItem]]:
        jobs = [(f, None) for f in fields if f.remote_options_url and not f.depends_on]
        if not jobs:
            return {}
        return self._apply(await self._gather(jobs))

    async def load_dependents(self, children: Iterable[FieldConfig], parent_value: Any) -> Dict[str, List[OptionItem]]:
        """
        Refresh every child of one parent. An empty parent clears the children's options.

        A result that lands after the parent has moved on (another value, or cleared) is cached but
        not applied.
        """
        kids = [c for c in children if c.depends_on]
        if not kids:
            return {}
        if is_empty_value(parent_value):
            for c in kids:
                self._parent_of[c.id] = None
            return self._apply({c.id: [] for c in kids})
        token = parent_token(parent_value)
        for c in kids:
            self._parent_of[c.id] = token
        results = await self._gather([(c, parent_value) for c in kids])
        current = {fid: items for fid, items in results.items() if self._parent_of.get(fid) == token}
        if len(current) < len(results):
            logger.debug("dropping stale options for parent value %r: %s", token, sorted(set(results) - set(current)))
        return self._apply(current)

    def retry(self, field_id: str) -> None:
        """Forget failures (every parent value) for a field so the next load requests it again."""
        self._failed = {k for k in self._failed if k[0] != field_id}
        self.errors.pop(field_id, None)

    def close(self) -> None:
        self._closed = True
