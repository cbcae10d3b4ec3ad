from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ValidationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(default=True, alias="isValid")
    errors: Dict[str, str] = Field(default_factory=dict)
    warnings: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def build(cls, errors: Optional[Dict[str, str]] = None, warnings: Optional[Dict[str, str]] = None) -> "ValidationResult":
        errs = dict(errors or {})
        return cls(isValid=not errs, errors=errs, warnings=dict(warnings or {}))
