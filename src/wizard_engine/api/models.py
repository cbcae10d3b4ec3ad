from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from wizard_engine.form_engine.records import PersistenceConfig


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    metadata: List[Any] = Field(default_factory=list)
    data_url: Optional[str] = Field(default=None, alias="dataUrl")
    context: Dict[str, Any] = Field(default_factory=dict)
    record: Optional[Dict[str, Any]] = None
    record_id: Optional[str] = Field(default=None, alias="recordId")
    persistence: Optional[PersistenceConfig] = None


class UpdateFieldsRequest(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    values: Dict[str, Any] = Field(default_factory=dict)


class JumpRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step: int


class SaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: Optional[Literal["create", "update", "progress"]] = None


class LoadSectionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    force: bool = False
