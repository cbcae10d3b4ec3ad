from __future__ import annotations

from .metadata import (
    FieldConfig,
    FieldKind,
    FormGroup,
    FormSection,
    OptionItem,
    SmartDefaultSpec,
    ValueKind,
    VisibilityRule,
)
from .results import ValidationResult

__all__ = [
    "FieldConfig",
    "FieldKind",
    "FormGroup",
    "FormSection",
    "OptionItem",
    "SmartDefaultSpec",
    "ValidationResult",
    "ValueKind",
    "VisibilityRule",
]
