from __future__ import annotations

import logging
from collections import deque
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from wizard_engine.schemas.metadata import FieldConfig, FormGroup, VisibilityRule

logger = logging.getLogger("wizard_engine.visibility")


def normalize_token(value: Any) -> str:
    """Text form used for every visibility comparison (`True` and `"true"` compare equal)."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def show_when_set(show_when: Any) -> List[str]:
    """
    `showWhen` may be a scalar, a list, or a comma-separated string; all mean "any of these".
    """
    if show_when is None:
        return []
    if isinstance(show_when, (list, tuple, set)):
        raw: Iterable[Any] = show_when
    elif isinstance(show_when, str):
        raw = show_when.split(",")
    else:
        raw = [show_when]
    return [normalize_token(v) for v in raw]


def rule_matches(rule: VisibilityRule, state: Mapping[str, Any]) -> bool:
    expected = set(show_when_set(rule.show_when))
    value = state.get(rule.watch_field)
    if isinstance(value, (list, tuple, set)):
        matched = any(normalize_token(v) in expected for v in value)
    else:
        matched = normalize_token(value) in expected
    return matched if rule.show_on_match else not matched


def _rules_for(config: Union[FieldConfig, FormGroup]) -> List[VisibilityRule]:
    if isinstance(config, FormGroup):
        return config.predicates()
    own = config.own_predicate()
    return [own] if own is not None else []


def is_visible(config: Union[FieldConfig, FormGroup], state: Mapping[str, Any]) -> bool:
    """
    Pure visibility check for a field or group against the current form state.

    No predicate means visible. A group with several predicates is visible when any of them passes.
    """
    rules = _rules_for(config)
    if not rules:
        return True
    return any(rule_matches(r, state) for r in rules)


def ambiguous_watch_fields(group: FormGroup) -> List[str]:
    """
    Watch fields for which a group declares positive predicates with disjoint `showWhen` sets.

    Under OR semantics such a group is visible for either set, which is rarely what the author meant.
    """
    by_field: Dict[str, List[set]] = {}
    for rule in group.predicates():
        if not rule.show_on_match:
            continue
        by_field.setdefault(rule.watch_field, []).append(set(show_when_set(rule.show_when)))
    out: List[str] = []
    for watch, sets in by_field.items():
        if len(sets) < 2:
            continue
        for i, a in enumerate(sets):
            if any(not (a & b) for b in sets[i + 1 :]):
                out.append(watch)
                break
    return out


class VisibilityGraph:
    """watchField -> ids of fields whose visibility depends on it. Built once per parse/merge."""

    def __init__(self, edges: Optional[Dict[str, List[str]]] = None) -> None:
        self._edges: Dict[str, List[str]] = edges or {}

    @classmethod
    def build(
        cls,
        fields: Mapping[str, FieldConfig],
        groups: Mapping[str, FormGroup],
        group_fields: Mapping[str, List[str]],
    ) -> "VisibilityGraph":
        edges: Dict[str, List[str]] = {}

        def _add(watch: str, target: str) -> None:
            bucket = edges.setdefault(watch, [])
            if target not in bucket:
                bucket.append(target)

        for fid, field in fields.items():
            own = field.own_predicate()
            if own is not None:
                _add(own.watch_field, fid)
        for gid, group in groups.items():
            members = group_fields.get(gid) or []
            for rule in group.predicates():
                for fid in members:
                    _add(rule.watch_field, fid)
        logger.debug("visibility graph built: %d watched fields", len(edges))
        return cls(edges)

    def watchers(self, field_id: str) -> List[str]:
        return list(self._edges.get(field_id) or [])

    def dependents_of(self, field_id: str) -> List[str]:
        """Every field whose visibility may change when `field_id` changes, transitively."""
        seen = {field_id}
        out: List[str] = []
        queue = deque(self._edges.get(field_id) or [])
        while queue:
            fid = queue.popleft()
            if fid in seen:
                continue
            seen.add(fid)
            out.append(fid)
            queue.extend(self._edges.get(fid) or [])
        return out

    @property
    def watched_fields(self) -> List[str]:
        return list(self._edges.keys())
