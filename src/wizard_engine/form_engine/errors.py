from __future__ import annotations

from typing import Dict, Optional


class WizardEngineError(Exception):
    """Base class for engine failures. None of these are fatal to the process."""


class MetadataError(WizardEngineError):
    """A metadata item could not be understood (captured as an issue during parse)."""

    def __init__(self, message: str, *, item_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class FieldValidationError(WizardEngineError):
    """
    Field-level validation failure for a step.

    Named to avoid shadowing `pydantic.ValidationError`, which the API layer also handles.
    """

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.errors: Dict[str, str] = dict(errors or {})


class RemoteFetchError(WizardEngineError):
    def __init__(self, message: str, *, url: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class FormulaEvaluationError(WizardEngineError):
    pass


class PersistenceError(WizardEngineError):
    """Save failed. `message` is safe to show to the user; form state is untouched."""

    def __init__(self, message: str, *, mode: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.mode = mode
        self.status_code = status_code
