from __future__ import annotations

from typing import Any, Dict, List

from wizard_engine.form_engine.events import EventBus
from wizard_engine.form_engine.parser import MetadataParser
from wizard_engine.form_engine.validation import ValidationEngine, ValidatorRegistry
from wizard_engine.form_engine.wizard import WizardStateMachine

METADATA = [
    {"type": "section", "id": "about", "title": "About you", "order": 1},
    {"type": "section", "id": "extras", "title": "Extras", "order": 2},
    {"type": "section", "id": "confirm", "title": "Confirm", "order": 3},
    {"id": "name", "sectionId": "about", "label": "Name", "required": True},
    {"id": "notes", "sectionId": "extras"},
    {"id": "agree", "type": "checkbox", "sectionId": "confirm", "label": "Agreement", "required": True},
]


def _machine(state: Dict[str, Any], events: EventBus | None = None) -> WizardStateMachine:
    index = MetadataParser().parse(METADATA)
    validation = ValidationEngine(index, lambda: state, registry=ValidatorRegistry())
    return WizardStateMachine(index, validation, lambda: state, events)


def test_next_is_blocked_by_errors_on_the_current_step():
    events = EventBus()
    seen: List[str] = []
    events.subscribe(lambda e: seen.append(e.type))
    state: Dict[str, Any] = {}
    wizard = _machine(state, events)

    result = wizard.next()
    assert not result.ok
    assert result.current_step == 0
    assert result.errors == {"name": "Name is required"}
    assert wizard.steps[0].errors == {"name": "Name is required"}
    assert seen == ["validation_failed"]

    state["name"] = "Ada"
    result = wizard.next()
    assert result.ok
    assert wizard.current == 1
    assert wizard.steps[0].completed and wizard.steps[0].errors == {}
    assert seen[1:] == ["step_completed", "step_navigation"]
    assert wizard.progress() == 33.33


def test_previous_and_jump_rules():
    state: Dict[str, Any] = {"name": "Ada"}
    wizard = _machine(state)

    assert wizard.previous().message == "Already at the first step"
    assert wizard.jump_to(2).message == "Complete the current step before moving ahead"
    assert wizard.jump_to(7).message == "Step 8 does not exist"

    wizard.next()
    wizard.next()
    assert wizard.current == 2
    assert wizard.jump_to(0).ok
    # Step 1 was completed earlier, so moving ahead to it is allowed.
    assert wizard.jump_to(1).ok
    # Step 2 was reached but never completed.
    assert not wizard.jump_to(2).ok
    assert wizard.history == [0, 1, 2, 0, 1]


def test_last_step_marks_the_wizard_complete():
    state: Dict[str, Any] = {"name": "Ada"}
    wizard = _machine(state)
    wizard.next()
    wizard.next()
    assert not wizard.next().ok
    state["agree"] = True
    result = wizard.next()
    assert result.ok and result.completed
    assert wizard.is_complete
    assert wizard.current == 2
    assert wizard.progress() == 100.0


def test_rebuild_keeps_the_active_section_and_completed_steps():
    state: Dict[str, Any] = {"name": "Ada"}
    parser = MetadataParser()
    index = parser.parse(METADATA)
    validation = ValidationEngine(index, lambda: state, registry=ValidatorRegistry())
    wizard = WizardStateMachine(index, validation, lambda: state)
    wizard.next()
    assert wizard.steps[wizard.current].section_id == "extras"

    parser.merge(index, [{"type": "section", "id": "intro", "order": 0}])
    wizard.rebuild_steps(index)
    assert [s.section_id for s in wizard.steps] == ["intro", "about", "extras", "confirm"]
    assert wizard.steps[wizard.current].section_id == "extras"
    assert wizard.completed == {1}


def test_jump_ahead_of_completed_steps_is_rejected():
    metadata = [{"type": "section", "id": f"s{i}", "order": i} for i in range(4)]
    index = MetadataParser().parse(metadata)
    state: Dict[str, Any] = {}
    wizard = WizardStateMachine(index, ValidationEngine(index, lambda: state, registry=ValidatorRegistry()), lambda: state)
    wizard.next()
    wizard.next()
    wizard.previous()
    assert (wizard.current, wizard.completed) == (1, {0, 1})

    result = wizard.jump_to(3)
    assert not result.ok
    assert (wizard.current, wizard.completed, wizard.history) == (1, {0, 1}, [0, 1, 2, 1])
    assert wizard.jump_to(0).ok
    assert wizard.current == 0


def test_required_field_watching_without_values_still_blocks_next():
    metadata = [
        {"type": "section", "id": "only"},
        {"id": "kind", "sectionId": "only"},
        {"id": "notes", "sectionId": "only", "label": "Notes", "required": True, "watchField": "kind"},
    ]
    index = MetadataParser().parse(metadata)
    state: Dict[str, Any] = {"kind": "x"}
    wizard = WizardStateMachine(index, ValidationEngine(index, lambda: state, registry=ValidatorRegistry()), lambda: state)

    result = wizard.next()
    assert not result.ok
    assert result.errors == {"notes": "Notes is required"}
    assert not wizard.is_complete


def test_one_missing_required_field_is_one_error():
    metadata = METADATA + [{"id": "nickname", "sectionId": "about", "label": "Nickname"}]
    index = MetadataParser().parse(metadata)
    state: Dict[str, Any] = {"nickname": "A"}
    wizard = WizardStateMachine(index, ValidationEngine(index, lambda: state, registry=ValidatorRegistry()), lambda: state)
    wizard.next()
    assert wizard.current == 0
    assert len(wizard.steps[0].errors) == 1
