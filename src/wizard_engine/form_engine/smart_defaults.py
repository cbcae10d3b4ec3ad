from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Set

from wizard_engine.form_engine.options import is_empty_value
from wizard_engine.form_engine.visibility import normalize_token
from wizard_engine.schemas.metadata import DefaultCondition, SmartDefaultSpec

logger = logging.getLogger("wizard_engine.smart_defaults")

Rule = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True)
class SmartDefaultRule:
    """`rule(state)` returns the value to fill into `field_id`, or None when it does not apply."""

    field_id: str
    rule: Rule
    priority: int = 0
    name: str = ""


def condition_holds(cond: DefaultCondition, state: Mapping[str, Any]) -> bool:
    value = state.get(cond.field)
    token = normalize_token(value)
    if cond.non_empty is not None and is_empty_value(value) == bool(cond.non_empty):
        return False
    if cond.in_ is not None and token not in {normalize_token(v) for v in cond.in_}:
        return False
    if cond.not_in is not None and token in {normalize_token(v) for v in cond.not_in}:
        return False
    if "equals" in cond.model_fields_set and token != normalize_token(cond.equals):
        return False
    return True


def rule_from_spec(spec: SmartDefaultSpec) -> SmartDefaultRule:
    conditions: List[DefaultCondition] = list(spec.when_all)
    if spec.when is not None:
        conditions.insert(0, spec.when)
    value = spec.value

    def _rule(state: Mapping[str, Any]) -> Any:
        if all(condition_holds(c, state) for c in conditions):
            return value
        return None

    return SmartDefaultRule(field_id=spec.field, rule=_rule, priority=spec.priority, name=spec.name or f"default:{spec.field}")


class SmartDefaultResolver:
    """
    Priority-ordered default rules. Higher priority is consulted first; ties keep registration order.

    Only unset fields (absent or None) are filled, the first applicable rule per field wins, and
    calculated fields are never targeted. Applying twice changes nothing the second time.
    """

    def __init__(self, rules: Iterable[SmartDefaultRule] = (), *, calculated: Iterable[str] = ()) -> None:
        self._rules: List[SmartDefaultRule] = []
        self._calculated: Set[str] = set(calculated)
        for r in rules:
            self.add(r)

    def add(self, rule: SmartDefaultRule) -> None:
        if rule.field_id in self._calculated:
            logger.warning("ignoring smart default %s: %s is a calculated field", rule.name or "?", rule.field_id)
            return
        self._rules.append(rule)
        self._rules.sort(key=lambda r: -r.priority)

    @property
    def rules(self) -> List[SmartDefaultRule]:
        return list(self._rules)

    @property
    def targets(self) -> Set[str]:
        return {r.field_id for r in self._rules}

    def resolve(self, state: Mapping[str, Any]) -> Dict[str, Any]:
        """Defaults that apply to the current state, computed against that state only."""
        batch: Dict[str, Any] = {}
        for r in self._rules:
            if r.field_id in batch or state.get(r.field_id) is not None:
                continue
            try:
                value = r.rule(state)
            except Exception:
                logger.exception("smart default rule %s failed", r.name or r.field_id)
                continue
            if value is not None:
                batch[r.field_id] = value
        return batch

    def apply(self, state: MutableMapping[str, Any]) -> Dict[str, Any]:
        batch = self.resolve(state)
        if batch:
            state.update(batch)
            logger.debug("applied smart defaults %s", sorted(batch))
        return batch
