from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("wizard_engine.events")


class FormDataChanged(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["form_data_changed"] = "form_data_changed"
    changes: Dict[str, Any] = Field(default_factory=dict)
    form_data: Dict[str, Any] = Field(default_factory=dict, alias="formData")


class StepCompleted(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["step_completed"] = "step_completed"
    step_index: int = Field(alias="stepIndex")
    section_id: str = Field(alias="sectionId")
    step_data: Dict[str, Any] = Field(default_factory=dict, alias="stepData")


class StepNavigation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["step_navigation"] = "step_navigation"
    from_step: int = Field(alias="fromStep")
    to_step: int = Field(alias="toStep")
    direction: Literal["next", "previous", "jump"] = "next"


class ValidationFailed(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["validation_failed"] = "validation_failed"
    step_index: int = Field(alias="stepIndex")
    section_id: str = Field(alias="sectionId")
    errors: Dict[str, str] = Field(default_factory=dict)


WizardEvent = Union[FormDataChanged, StepCompleted, StepNavigation, ValidationFailed]
Handler = Callable[[WizardEvent], None]


class EventBus:
    """Synchronous fan-out. A failing handler is logged and does not stop the others."""

    def __init__(self) -> None:
        self._handlers: List[tuple[Optional[str], Handler]] = []
        self.history: List[WizardEvent] = []
        self.keep_history = False

    def subscribe(self, handler: Handler, event_type: Optional[str] = None) -> Callable[[], None]:
        entry = (event_type, handler)
        self._handlers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return _unsubscribe

    def emit(self, event: WizardEvent) -> None:
        if self.keep_history:
            self.history.append(event)
        for event_type, handler in list(self._handlers):
            if event_type is not None and event_type != event.type:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("event handler failed for %s", event.type)
