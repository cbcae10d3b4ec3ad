from __future__ import annotations

from typing import Any, Dict

from wizard_engine.form_engine.smart_defaults import SmartDefaultResolver, SmartDefaultRule, condition_holds, rule_from_spec
from wizard_engine.schemas.metadata import DefaultCondition, SmartDefaultSpec


def _spec(**kw) -> SmartDefaultSpec:
    return SmartDefaultSpec.model_validate({"type": "smartDefault", **kw})


def test_conditions():
    assert condition_holds(DefaultCondition(field="a", equals="x"), {"a": "x"})
    assert not condition_holds(DefaultCondition(field="a", equals="x"), {"a": "y"})
    assert condition_holds(DefaultCondition.model_validate({"field": "a", "in": ["x", "y"]}), {"a": "y"})
    assert not condition_holds(DefaultCondition.model_validate({"field": "a", "notIn": ["y"]}), {"a": "y"})
    assert condition_holds(DefaultCondition.model_validate({"field": "a", "nonEmpty": True}), {"a": "v"})
    assert not condition_holds(DefaultCondition.model_validate({"field": "a", "nonEmpty": True}), {})
    # No constraint at all always holds; `equals: null` is an explicit constraint.
    assert condition_holds(DefaultCondition(field="a"), {"a": "anything"})
    assert condition_holds(DefaultCondition(field="a", equals=None), {})


def test_higher_priority_wins_and_only_unset_fields_are_filled():
    resolver = SmartDefaultResolver(
        [
            rule_from_spec(_spec(field="unit", value="km")),
            rule_from_spec(_spec(field="unit", value="mi", priority=10, when={"field": "country", "equals": "US"})),
            rule_from_spec(_spec(field="speed", value=50)),
        ]
    )
    assert resolver.resolve({"country": "US"}) == {"unit": "mi", "speed": 50}
    assert resolver.resolve({"country": "NZ"}) == {"unit": "km", "speed": 50}
    assert resolver.resolve({"country": "US", "unit": "ft", "speed": 0}) == {}


def test_apply_is_idempotent():
    resolver = SmartDefaultResolver([rule_from_spec(_spec(field="status", value="draft"))])
    state: Dict[str, Any] = {"status": None}
    assert resolver.apply(state) == {"status": "draft"}
    assert resolver.apply(state) == {}
    assert state == {"status": "draft"}


def test_calculated_targets_are_ignored_and_failing_rules_skipped():
    def boom(state):
        raise KeyError("nope")

    resolver = SmartDefaultResolver(
        [
            SmartDefaultRule("total", lambda s: 1, name="bad-target"),
            SmartDefaultRule("a", boom, priority=5, name="broken"),
            SmartDefaultRule("a", lambda s: "fallback"),
        ],
        calculated={"total"},
    )
    assert resolver.targets == {"a"}
    assert resolver.resolve({}) == {"a": "fallback"}


def test_rules_see_the_state_they_were_given_not_each_other():
    resolver = SmartDefaultResolver(
        [
            rule_from_spec(_spec(field="b", value="on", when={"field": "a", "equals": "set"})),
            rule_from_spec(_spec(field="a", value="set")),
        ]
    )
    assert resolver.resolve({}) == {"a": "set"}
    state: Dict[str, Any] = {}
    resolver.apply(state)
    assert resolver.apply(state) == {"b": "on"}
