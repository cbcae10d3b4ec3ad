from __future__ import annotations

from .errors import (
    FieldValidationError,
    FormulaEvaluationError,
    MetadataError,
    PersistenceError,
    RemoteFetchError,
    WizardEngineError,
)
from .formula import FormulaEngine, evaluate
from .parser import FormIndex, MetadataIssue, MetadataParser
from .session import AnalysisContext, FormSession
from .visibility import VisibilityGraph, is_visible
from .wizard import NavigationResult, WizardStateMachine, WizardStep

__all__ = [
    "AnalysisContext",
    "FieldValidationError",
    "FormIndex",
    "FormSession",
    "FormulaEngine",
    "FormulaEvaluationError",
    "MetadataError",
    "MetadataIssue",
    "MetadataParser",
    "NavigationResult",
    "PersistenceError",
    "RemoteFetchError",
    "VisibilityGraph",
    "WizardEngineError",
    "WizardStateMachine",
    "WizardStep",
    "evaluate",
    "is_visible",
]
