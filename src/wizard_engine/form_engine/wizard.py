from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from wizard_engine.form_engine.events import EventBus, StepCompleted, StepNavigation, ValidationFailed
from wizard_engine.form_engine.parser import FormIndex
from wizard_engine.form_engine.validation import ValidationEngine

logger = logging.getLogger("wizard_engine.wizard")


class WizardStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    index: int
    section_id: str = Field(alias="sectionId")
    title: Optional[str] = None
    field_ids: List[str] = Field(default_factory=list, alias="fieldIds")
    completed: bool = False
    errors: Dict[str, str] = Field(default_factory=dict)


class NavigationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    action: Literal["next", "previous", "jump"]
    from_step: int = Field(alias="fromStep")
    current_step: int = Field(alias="currentStep")
    completed: bool = False
    errors: Dict[str, str] = Field(default_factory=dict)
    message: Optional[str] = None


def build_steps(index: FormIndex) -> List[WizardStep]:
    """One step per section, ordered by `order` then declaration."""
    return [
        WizardStep(
            index=i,
            sectionId=section.id,
            title=section.title,
            fieldIds=[f.id for f in index.fields_for_section(section.id)],
        )
        for i, section in enumerate(index.ordered_sections())
    ]


class WizardStateMachine:
    """
    Steps 0..N-1 plus a terminal completed state.

    Forward moves are gated by validation of the active step's visible fields. Backward moves are
    always allowed (except from step 0). Jumps may only target a step at or before the current one,
    or a step already completed.
    """

    def __init__(
        self,
        index: FormIndex,
        validation: ValidationEngine,
        state: Callable[[], Mapping[str, Any]],
        events: Optional[EventBus] = None,
    ) -> None:
        self.index = index
        self.validation = validation
        self._state = state
        self.events = events or EventBus()
        self.steps: List[WizardStep] = build_steps(index)
        self.current = 0
        self.completed: Set[int] = set()
        self.is_complete = False
        self.history: List[int] = [0]

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def current_step(self) -> Optional[WizardStep]:
        if not self.steps:
            return None
        return self.steps[self.current]

    def progress(self) -> float:
        """Percentage of steps completed (0-100)."""
        if not self.steps:
            return 0.0
        return round(100.0 * len(self.completed) / len(self.steps), 2)

    def _result(self, ok: bool, action: str, from_step: int, *, message: Optional[str] = None, errors: Optional[Dict[str, str]] = None) -> NavigationResult:
        return NavigationResult(
            ok=ok,
            action=action,
            fromStep=from_step,
            currentStep=self.current,
            completed=self.is_complete,
            errors=dict(errors or {}),
            message=message,
        )

    def _move(self, to: int, direction: str) -> NavigationResult:
        from_step = self.current
        self.current = to
        self.history.append(to)
        self.events.emit(StepNavigation(fromStep=from_step, toStep=to, direction=direction))
        return self._result(True, direction, from_step)

    def next(self) -> NavigationResult:
        if not self.steps:
            return self._result(False, "next", 0, message="This form has no steps")
        step = self.steps[self.current]
        result = self.validation.validate_section(step.section_id)
        if not result.is_valid:
            step.errors = dict(result.errors)
            self.events.emit(ValidationFailed(stepIndex=step.index, sectionId=step.section_id, errors=result.errors))
            logger.debug("step %s blocked by %d errors", step.section_id, len(result.errors))
            return self._result(
                False,
                "next",
                self.current,
                message="Please fix the highlighted fields before continuing",
                errors=result.errors,
            )

        step.errors = {}
        step.completed = True
        self.completed.add(step.index)
        state = self._state()
        step_data = {fid: state.get(fid) for fid in step.field_ids if fid in state}
        self.events.emit(StepCompleted(stepIndex=step.index, sectionId=step.section_id, stepData=step_data))

        if self.current >= len(self.steps) - 1:
            self.is_complete = True
            return self._result(True, "next", self.current)
        return self._move(self.current + 1, "next")

    def previous(self) -> NavigationResult:
        if self.current <= 0:
            return self._result(False, "previous", self.current, message="Already at the first step")
        return self._move(self.current - 1, "previous")

    def jump_to(self, target: int) -> NavigationResult:
        if not (0 <= target < len(self.steps)):
            return self._result(False, "jump", self.current, message=f"Step {target + 1} does not exist")
        if target == self.current:
            return self._result(True, "jump", self.current)
        if target < self.current or target in self.completed:
            return self._move(target, "jump")
        return self._result(False, "jump", self.current, message="Complete the current step before moving ahead")

    def rebuild_steps(self, index: Optional[FormIndex] = None) -> None:
        """Re-derive steps after metadata merge, keeping the active section and completed sections."""
        if index is not None:
            self.index = index
        active = self.steps[self.current].section_id if self.steps else None
        done = {self.steps[i].section_id for i in self.completed if i < len(self.steps)}
        errors = {s.section_id: s.errors for s in self.steps}

        self.steps = build_steps(self.index)
        self.completed = set()
        self.current = 0
        for step in self.steps:
            if step.section_id in done:
                step.completed = True
                self.completed.add(step.index)
            step.errors = errors.get(step.section_id) or {}
            if step.section_id == active:
                self.current = step.index
