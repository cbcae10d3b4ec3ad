from __future__ import annotations

import logging
from dataclasses import dataclass, field as dc_field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from wizard_engine.form_engine.errors import MetadataError
from wizard_engine.form_engine.visibility import VisibilityGraph, ambiguous_watch_fields, is_visible
from wizard_engine.schemas.metadata import FieldConfig, FormGroup, FormSection, SmartDefaultSpec

logger = logging.getLogger("wizard_engine.parser")

_SMART_DEFAULT_TYPES = {"smartdefault", "smart-default", "smart_default"}


@dataclass(frozen=True)
class MetadataIssue:
    kind: str
    item_id: Optional[str]
    message: str


def _item_kind(item: Mapping[str, Any]) -> str:
    t = str(item.get("type") or "").strip().lower()
    if t == "section":
        return "section"
    if t == "group":
        return "group"
    if t in _SMART_DEFAULT_TYPES:
        return "smart_default"
    return "field"


def flatten_section_payload(payload: Any) -> List[Dict[str, Any]]:
    """
    Normalize a remote section payload into flat metadata items.

    Accepts a flat list, `{items: [...]}`, `{data: [...]}`, or the nested shape
    `{type: "section", id, groups: [{id, fields: [...]}]}` (also inside a list).
    Nested children inherit `sectionId` / `groupId` from their parents.
    """
    if isinstance(payload, dict):
        if isinstance(payload.get("items"), list):
            return flatten_section_payload(payload["items"])
        if isinstance(payload.get("data"), list):
            return flatten_section_payload(payload["data"])
        payload = [payload]
    if not isinstance(payload, list):
        return []

    out: List[Dict[str, Any]] = []
    for item in payload:
        if not isinstance(item, dict):
            out.append(item)
            continue
        groups = item.get("groups")
        if _item_kind(item) == "section" and isinstance(groups, list):
            section = {k: v for k, v in item.items() if k != "groups"}
            out.append(section)
            sid = section.get("id")
            for g in groups:
                if not isinstance(g, dict):
                    out.append(g)
                    continue
                group = {k: v for k, v in g.items() if k != "fields"}
                group.setdefault("type", "group")
                group.setdefault("sectionId", sid)
                out.append(group)
                for f in g.get("fields") or []:
                    if isinstance(f, dict):
                        f = dict(f)
                        f.setdefault("groupId", group.get("id"))
                        f.setdefault("sectionId", sid)
                    out.append(f)
            continue
        out.append(item)
    return out


@dataclass
class FormIndex:
    """
    Parsed metadata. The five lookup indices plus the dependency graphs derived from them.

    Raw declarations are kept so a re-declared id can be updated key-by-key on merge.
    """

    sections: Dict[str, FormSection] = dc_field(default_factory=dict)
    groups: Dict[str, FormGroup] = dc_field(default_factory=dict)
    fields: Dict[str, FieldConfig] = dc_field(default_factory=dict)
    section_groups: Dict[str, List[str]] = dc_field(default_factory=dict)
    group_fields: Dict[str, List[str]] = dc_field(default_factory=dict)
    smart_defaults: List[SmartDefaultSpec] = dc_field(default_factory=list)
    issues: List[MetadataIssue] = dc_field(default_factory=list)
    visibility: VisibilityGraph = dc_field(default_factory=VisibilityGraph)
    cascade_children: Dict[str, List[str]] = dc_field(default_factory=dict)

    _raw_sections: Dict[str, Dict[str, Any]] = dc_field(default_factory=dict, repr=False)
    _raw_groups: Dict[str, Dict[str, Any]] = dc_field(default_factory=dict, repr=False)
    _raw_fields: Dict[str, Dict[str, Any]] = dc_field(default_factory=dict, repr=False)
    _group_seq: Dict[str, int] = dc_field(default_factory=dict, repr=False)
    _field_seq: Dict[str, int] = dc_field(default_factory=dict, repr=False)
    _section_seq: Dict[str, int] = dc_field(default_factory=dict, repr=False)
    _malformed: List[MetadataIssue] = dc_field(default_factory=list, repr=False)

    def ordered_sections(self) -> List[FormSection]:
        return sorted(self.sections.values(), key=lambda s: (s.order, self._section_seq.get(s.id, 0)))

    def groups_for_section(self, section_id: str) -> List[FormGroup]:
        """Resolved groups of a section, in display order. Unknown ids are omitted."""
        return [self.groups[g] for g in self.section_groups.get(section_id) or [] if g in self.groups]

    def fields_for_group(self, group_id: str) -> List[FieldConfig]:
        return [self.fields[f] for f in self.group_fields.get(group_id) or [] if f in self.fields]

    def fields_for_section(self, section_id: str) -> List[FieldConfig]:
        out: List[FieldConfig] = []
        for group in self.groups_for_section(section_id):
            out.extend(self.fields_for_group(group.id))
        # Fields attached straight to a section (no group) render after grouped ones.
        for f in self.fields.values():
            if f.section_id == section_id and not f.group_id:
                out.append(f)
        return out

    def locate(self, field_id: str) -> Tuple[Optional[str], Optional[str]]:
        f = self.fields.get(field_id)
        if f is None:
            return None, None
        gid = f.group_id if f.group_id in self.groups else None
        sid = f.section_id
        if gid is not None and self.groups[gid].section_id:
            sid = self.groups[gid].section_id
        return (sid if sid in self.sections else None), gid

    def is_shown(self, field_id: str, state: Mapping[str, Any]) -> bool:
        """Field predicate passes and its group (when resolved) is visible."""
        f = self.fields.get(field_id)
        if f is None:
            return False
        if not is_visible(f, state):
            return False
        group = self.groups.get(f.group_id or "")
        if group is not None and not is_visible(group, state):
            return False
        return True

    def calculated_fields(self) -> List[FieldConfig]:
        return [f for f in self.fields.values() if f.is_calculated]


class MetadataParser:
    """Builds and incrementally augments a `FormIndex` from flat metadata items."""

    def parse(self, items: Iterable[Any]) -> FormIndex:
        index = FormIndex()
        self.merge(index, items)
        return index

    def merge(self, index: FormIndex, items: Iterable[Any]) -> FormIndex:
        for item in flatten_section_payload(list(items or [])):
            try:
                self._merge_item(index, item)
            except MetadataError as e:
                issue = MetadataIssue("malformed", e.item_id, str(e))
                index._malformed.append(issue)
                logger.warning("skipping malformed metadata item %s: %s", e.item_id or "?", e)
        self._rebuild_links(index)
        return index

    def _merge_item(self, index: FormIndex, item: Any) -> None:
        if not isinstance(item, dict):
            raise MetadataError(f"expected an object, got {type(item).__name__}")
        kind = _item_kind(item)
        if kind == "smart_default":
            try:
                index.smart_defaults.append(SmartDefaultSpec.model_validate(item))
            except ValidationError as e:
                raise MetadataError(f"invalid smart default: {e.errors()[0].get('msg')}") from e
            return

        item_id = str(item.get("id") or "").strip()
        if not item_id:
            raise MetadataError(f"{kind} without an id")

        if kind == "section":
            raw, model, store, seq = index._raw_sections, FormSection, index.sections, index._section_seq
        elif kind == "group":
            raw, model, store, seq = index._raw_groups, FormGroup, index.groups, index._group_seq
        else:
            raw, model, store, seq = index._raw_fields, FieldConfig, index.fields, index._field_seq

        merged = dict(raw.get(item_id) or {})
        merged.update(item)
        merged["id"] = item_id
        try:
            obj = model.model_validate(merged)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            loc = ".".join(str(p) for p in first.get("loc") or ())
            raise MetadataError(f"invalid {kind} ({loc}): {first.get('msg')}", item_id=item_id) from e

        if item_id not in seq:
            seq[item_id] = len(seq)
        raw[item_id] = merged
        store[item_id] = obj

    def _rebuild_links(self, index: FormIndex) -> None:
        section_groups: Dict[str, List[str]] = {}
        for gid in sorted(index.groups, key=lambda g: (index.groups[g].order, index._group_seq.get(g, 0))):
            sid = index.groups[gid].section_id
            if sid:
                section_groups.setdefault(sid, []).append(gid)

        group_fields: Dict[str, List[str]] = {}
        for fid in sorted(index.fields, key=lambda f: index._field_seq.get(f, 0)):
            gid = index.fields[fid].group_id
            if gid:
                group_fields.setdefault(gid, []).append(fid)

        index.section_groups = section_groups
        index.group_fields = group_fields

        cascade: Dict[str, List[str]] = {}
        for fid, f in index.fields.items():
            if f.depends_on:
                cascade.setdefault(f.depends_on, []).append(fid)
        index.cascade_children = cascade

        index.visibility = VisibilityGraph.build(index.fields, index.groups, group_fields)
        index.issues = list(index._malformed) + self._reference_issues(index)

    def _reference_issues(self, index: FormIndex) -> List[MetadataIssue]:
        issues: List[MetadataIssue] = []
        for gid, group in index.groups.items():
            if group.section_id and group.section_id not in index.sections:
                issues.append(
                    MetadataIssue("unresolved_section", gid, f"group '{gid}' references unknown section '{group.section_id}'")
                )
            for watch in ambiguous_watch_fields(group):
                logger.warning("group %s has contradictory predicates on %s; treating them as OR", gid, watch)
                issues.append(
                    MetadataIssue("ambiguous_visibility", gid, f"group '{gid}' has disjoint showWhen sets for '{watch}'")
                )
        for fid, f in index.fields.items():
            if f.group_id and f.group_id not in index.groups:
                issues.append(MetadataIssue("unresolved_group", fid, f"field '{fid}' references unknown group '{f.group_id}'"))
            elif not f.group_id and f.section_id and f.section_id not in index.sections:
                issues.append(
                    MetadataIssue("unresolved_section", fid, f"field '{fid}' references unknown section '{f.section_id}'")
                )
            if f.depends_on and f.depends_on not in index.fields:
                issues.append(MetadataIssue("unresolved_field", fid, f"field '{fid}' depends on unknown field '{f.depends_on}'"))
        return issues
