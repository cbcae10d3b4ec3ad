from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Set

import anyio
from pydantic import BaseModel, ConfigDict

from wizard_engine.config import EngineSettings, load_settings
from wizard_engine.form_engine.debounce import KeyedDebouncer
from wizard_engine.form_engine.errors import PersistenceError, RemoteFetchError
from wizard_engine.form_engine.events import EventBus, FormDataChanged
from wizard_engine.form_engine.formula import FormulaEngine
from wizard_engine.form_engine.options import DependentOptionLoader, is_empty_value
from wizard_engine.form_engine.parser import FormIndex, MetadataParser, flatten_section_payload
from wizard_engine.form_engine.records import (
    PersistenceConfig,
    RecordPersistence,
    initial_values,
    load_record,
    resolve_url_template,
)
from wizard_engine.form_engine.remote import HttpJsonClient
from wizard_engine.form_engine.smart_defaults import SmartDefaultResolver, SmartDefaultRule, rule_from_spec
from wizard_engine.form_engine.validation import ValidationEngine, ValidatorRegistry
from wizard_engine.form_engine.wizard import NavigationResult, WizardStateMachine

logger = logging.getLogger("wizard_engine.session")


class SectionLoadState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["idle", "loading", "loaded", "error"] = "idle"
    error: Optional[str] = None


class AnalysisContext:
    """
    Chaining state for AI-analysis calls made on behalf of one workflow.

    Owned by the session; `reset()` runs whenever the workflow is reset so a new run never chains
    onto a previous run's response.
    """

    def __init__(self) -> None:
        self.previous_response_id: Optional[str] = None
        self.calls: List[Dict[str, Any]] = []

    def record(self, response_id: Optional[str], *, step: Optional[str] = None) -> None:
        self.calls.append({"responseId": response_id, "previousResponseId": self.previous_response_id, "step": step})
        if response_id:
            self.previous_response_id = response_id

    def reset(self) -> None:
        self.previous_response_id = None
        self.calls = []


class FormSession:
    """
    One running form/wizard workflow: metadata indices, FormState, and every component wired to them.

    Mutations go through `set_fields` (sync) or `update` (also refreshes cascaded options). Debounced
    work (validation, change broadcast) runs in `run()`; use `async with session:` or start `run()`
    in a task group. After `aclose()` the session refuses writes and drops late results.
    """

    def __init__(
        self,
        metadata: Iterable[Any],
        *,
        client: Optional[HttpJsonClient] = None,
        settings: Optional[EngineSettings] = None,
        record: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None,
        persistence: Optional[PersistenceConfig] = None,
        record_id: Optional[str] = None,
        smart_default_rules: Iterable[SmartDefaultRule] = (),
        registry: Optional[ValidatorRegistry] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.settings = settings or load_settings()
        self.context: Dict[str, Any] = dict(context or {})
        self.created_at = time.time()
        self.touched_at = self.created_at

        self._owns_client = client is None
        self.client = client or HttpJsonClient(
            base_url=self.settings.base_url,
            timeout_s=self.settings.http_timeout_s,
            headers=self.settings.request_headers(),
        )

        self.parser = MetadataParser()
        self.index: FormIndex = self.parser.parse(metadata)
        self.state: Dict[str, Any] = {}
        self.events = EventBus()
        self.analysis = AnalysisContext()
        self.options = DependentOptionLoader(self.client)
        self.formulas = FormulaEngine(self.index.fields)
        self.validation = ValidationEngine(
            self.index,
            lambda: self.state,
            delay_s=self.settings.validation_delay_s,
            registry=registry,
            options_lookup=self.options.options_for,
        )
        self.wizard = WizardStateMachine(self.index, self.validation, lambda: self.state, self.events)
        self.broadcaster = KeyedDebouncer(self.settings.broadcast_delay_s, self._broadcast, name="broadcast")
        self.persistence = RecordPersistence(self.client, persistence, record_id=record_id) if persistence else None

        self._code_rules: List[SmartDefaultRule] = list(smart_default_rules)
        self.smart_defaults = self._build_resolver()
        self.section_status: Dict[str, SectionLoadState] = {}
        self._section_events: Dict[str, anyio.Event] = {}
        self._dirty_parents: Set[str] = set()
        self._cancel_scope: Optional[anyio.CancelScope] = None
        self._task_group: Optional[Any] = None
        self.disposed = False

        self._seed(record)

    @classmethod
    async def create(
        cls,
        metadata: Iterable[Any],
        *,
        client: Optional[HttpJsonClient] = None,
        data_url: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> "FormSession":
        """Build a session, loading the record at `data_url` (placeholders from `context`) and remote options."""
        settings = kwargs.get("settings") or load_settings()
        kwargs["settings"] = settings
        owns = client is None
        http = client or HttpJsonClient(
            base_url=settings.base_url, timeout_s=settings.http_timeout_s, headers=settings.request_headers()
        )
        record = kwargs.pop("record", None)
        if data_url:
            record = await load_record(http, data_url, context or {}) or record
        session = cls(metadata, client=http, record=record, context=context, **kwargs)
        session._owns_client = owns
        await session.load_options()
        return session

    # -- state -----------------------------------------------------------------

    def _build_resolver(self) -> SmartDefaultResolver:
        calculated = [f.id for f in self.index.calculated_fields()]
        rules = [rule_from_spec(s) for s in self.index.smart_defaults] + self._code_rules
        return SmartDefaultResolver(rules, calculated=calculated)

    def _seed(self, record: Optional[Mapping[str, Any]]) -> None:
        if record:
            self.state = initial_values(record, self.index.fields.keys())
        else:
            self.state = {}
        self._seed_defaults(self.index.fields.keys())
        self.state.update(self._settle(set()))

    def _seed_defaults(self, field_ids: Iterable[str]) -> None:
        for fid in field_ids:
            f = self.index.fields.get(fid)
            if f is None or f.is_calculated or f.default_value is None:
                continue
            if self.state.get(fid) is None:
                self.state[fid] = f.default_value

    def _clear_cascade(self, changed: Iterable[str], keep: Set[str]) -> Dict[str, Any]:
        """Clear dependents of changed parents (transitively), except fields written in the same batch."""
        cleared: Dict[str, Any] = {}
        queue = list(changed)
        while queue:
            parent = queue.pop(0)
            children = self.index.cascade_children.get(parent) or []
            if children:
                self._dirty_parents.add(parent)
            for child in children:
                if child in keep or child in cleared:
                    continue
                if not is_empty_value(self.state.get(child)):
                    self.state[child] = None
                    cleared[child] = None
                    queue.append(child)
        return cleared

    def _settle(self, keep: Set[str]) -> Dict[str, Any]:
        """Recompute formulas and fill smart defaults until neither writes anything."""
        out: Dict[str, Any] = {}
        limit = len(self.smart_defaults.targets) + 2
        for _ in range(limit):
            computed = self.formulas.recompute(self.state)
            self.state.update(computed)
            out.update(computed)
            out.update(self._clear_cascade(computed, keep))
            defaults = self.smart_defaults.apply(self.state)
            if not defaults:
                break
            out.update(defaults)
            out.update(self._clear_cascade(defaults, keep))
        else:
            logger.warning("smart defaults did not settle after %d passes", limit)
        return out

    def set_fields(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Apply user edits as one batch. Returns every value that changed, including derived ones.

        Writes to calculated fields are ignored. A changed cascade parent clears its dependents' values.
        """
        if self.disposed:
            logger.warning("session %s is disposed; ignoring write to %s", self.id, sorted(values))
            return {}
        self.touched_at = time.time()
        changes: Dict[str, Any] = {}
        for fid, value in values.items():
            f = self.index.fields.get(fid)
            if f is not None and f.is_calculated:
                logger.warning("ignoring write to calculated field %s", fid)
                continue
            if fid in self.state and self.state[fid] == value and type(self.state[fid]) is type(value):
                continue
            self.state[fid] = value
            changes[fid] = value
        if not changes:
            return {}

        keep = set(changes)
        changes.update(self._clear_cascade(list(changes), keep))
        changes.update(self._settle(keep))

        for fid in changes:
            self.validation.schedule(fid)
            self.broadcaster.push(fid)
        return changes

    def set_field(self, field_id: str, value: Any) -> Dict[str, Any]:
        return self.set_fields({field_id: value})

    async def update(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        changes = self.set_fields(values)
        await self.refresh_dependent_options()
        return changes

    def is_visible(self, field_id: str) -> bool:
        return self.index.is_shown(field_id, self.state)

    def visible_fields(self) -> List[str]:
        return [fid for fid in self.index.fields if self.index.is_shown(fid, self.state)]

    def _broadcast(self, batch: Dict[str, Any]) -> None:
        if self.disposed:
            return
        changes = {fid: self.state.get(fid) for fid in batch}
        self.events.emit(FormDataChanged(changes=changes, formData=dict(self.state)))

    # -- options ---------------------------------------------------------------

    async def load_options(self) -> None:
        """Independent remote options, then dependents of every parent that already has a value."""
        await self.options.load_independent(self.index.fields.values())
        self._dirty_parents.update(p for p in self.index.cascade_children if not is_empty_value(self.state.get(p)))
        await self.refresh_dependent_options()

    async def refresh_dependent_options(self) -> None:
        parents = sorted(self._dirty_parents)
        self._dirty_parents.clear()
        if not parents or self.disposed:
            return

        async def _one(parent: str) -> None:
            children = [self.index.fields[c] for c in self.index.cascade_children.get(parent) or [] if c in self.index.fields]
            await self.options.load_dependents(children, self.state.get(parent))

        async with anyio.create_task_group() as tg:
            for p in parents:
                tg.start_soon(_one, p)

    async def retry_options(self, field_id: str) -> None:
        f = self.index.fields.get(field_id)
        if f is None:
            return
        self.options.retry(field_id)
        if f.depends_on:
            await self.options.load_dependents([f], self.state.get(f.depends_on))
        else:
            await self.options.load_independent([f])

    # -- lazy sections -----------------------------------------------------------

    def merge_metadata(self, items: Iterable[Any]) -> None:
        """Merge late metadata (e.g. a lazily loaded section) and re-derive everything built from it."""
        before = set(self.index.fields)
        self.parser.merge(self.index, items)
        self.formulas.rebuild(self.index.fields)
        self.smart_defaults = self._build_resolver()
        self.wizard.rebuild_steps(self.index)
        added = [fid for fid in self.index.fields if fid not in before]
        self._seed_defaults(added)
        changes = self._settle(set())
        for fid in list(added) + list(changes):
            self.broadcaster.push(fid)

    async def load_section(self, section_id: str, *, force: bool = False) -> SectionLoadState:
        section = self.index.sections.get(section_id)
        if section is None or not section.section_options_url:
            return self.section_status.setdefault(section_id, SectionLoadState(status="loaded"))
        current = self.section_status.get(section_id)
        if current is not None and current.status == "loading":
            await self._section_events[section_id].wait()
            return self.section_status[section_id]
        if current is not None and current.status in {"loaded", "error"} and not force:
            return current

        url = resolve_url_template(section.section_options_url, {**self.context, "sectionId": section_id})
        if url is None:
            state = SectionLoadState(status="error", error="Section URL has unresolved placeholders")
            self.section_status[section_id] = state
            return state

        done = anyio.Event()
        self._section_events[section_id] = done
        self.section_status[section_id] = SectionLoadState(status="loading")
        try:
            payload = await self.client.get_json(url)
            if self.disposed:
                return self.section_status[section_id]
            items = [
                dict(i, sectionId=i.get("sectionId") or section_id) if isinstance(i, dict) and str(i.get("type") or "").lower() == "group" else i
                for i in flatten_section_payload(payload)
            ]
            self.merge_metadata(items)
            await self.options.load_independent(self.index.fields_for_section(section_id))
            self.section_status[section_id] = SectionLoadState(status="loaded")
        except RemoteFetchError as e:
            logger.warning("section %s failed to load: %s", section_id, e)
            self.section_status[section_id] = SectionLoadState(status="error", error=str(e))
        finally:
            if self.section_status[section_id].status == "loading":
                self.section_status[section_id] = SectionLoadState(status="error", error="Section load was interrupted")
            done.set()
        return self.section_status[section_id]

    # -- wizard ------------------------------------------------------------------

    def next_step(self) -> NavigationResult:
        self.touched_at = time.time()
        return self.wizard.next()

    def previous_step(self) -> NavigationResult:
        self.touched_at = time.time()
        return self.wizard.previous()

    def jump_to(self, index: int) -> NavigationResult:
        self.touched_at = time.time()
        return self.wizard.jump_to(index)

    # -- persistence ---------------------------------------------------------------

    def save_payload(self) -> Dict[str, Any]:
        return {
            "formData": dict(self.state),
            "currentStep": self.wizard.current,
            "completedSteps": sorted(self.wizard.completed),
            "isComplete": self.wizard.is_complete,
        }

    async def save(self, mode: Optional[str] = None) -> Any:
        """Persist through the configured endpoints. On failure FormState is untouched and PersistenceError propagates."""
        if self.persistence is None:
            raise PersistenceError("No persistence endpoints are configured", mode=mode or "")
        return await self.persistence.save(self.save_payload(), mode=mode)

    # -- lifecycle -------------------------------------------------------------------

    def reset(self, record: Optional[Mapping[str, Any]] = None) -> None:
        """Start the workflow over: fresh state, wizard, validation and analysis chain."""
        self.validation.errors.clear()
        self.validation.warnings.clear()
        self.analysis.reset()
        self.wizard = WizardStateMachine(self.index, self.validation, lambda: self.state, self.events)
        self._seed(record)

    async def flush(self) -> None:
        """Run pending debounced work now."""
        await self.validation.debouncer.flush()
        await self.broadcaster.flush()

    async def run(self) -> None:
        """Debounce consumers. Returns once `aclose()` closes them."""
        async with anyio.create_task_group() as tg:
            self._cancel_scope = tg.cancel_scope
            tg.start_soon(self.validation.debouncer.run)
            tg.start_soon(self.broadcaster.run)

    async def aclose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self.options.close()
        await self.validation.debouncer.aclose()
        await self.broadcaster.aclose()
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
        if self._owns_client:
            await self.client.aclose()
        logger.debug("session %s disposed", self.id)

    async def __aenter__(self) -> "FormSession":
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self.run)
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> Optional[bool]:
        await self.aclose()
        tg, self._task_group = self._task_group, None
        if tg is None:
            return None
        return await tg.__aexit__(exc_type, exc, tb)

    # -- views -------------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        step = self.wizard.current_step
        return {
            "sessionId": self.id,
            "formData": dict(self.state),
            "visibleFields": self.visible_fields(),
            "errors": dict(self.validation.errors),
            "warnings": dict(self.validation.warnings),
            "currentStep": self.wizard.current,
            "currentSectionId": step.section_id if step else None,
            "steps": [s.model_dump(by_alias=True) for s in self.wizard.steps],
            "completedSteps": sorted(self.wizard.completed),
            "isComplete": self.wizard.is_complete,
            "progress": self.wizard.progress(),
            "history": list(self.wizard.history),
            "options": {fid: [o.model_dump() for o in opts] for fid, opts in self.options.options.items()},
            "optionErrors": dict(self.options.errors),
            "sections": {sid: s.model_dump() for sid, s in self.section_status.items()},
            "issues": [{"kind": i.kind, "itemId": i.item_id, "message": i.message} for i in self.index.issues],
            "recordId": self.persistence.record_id if self.persistence else None,
        }
