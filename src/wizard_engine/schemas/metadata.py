from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MIN_SIZE = 1
MAX_SIZE = 24


class FieldKind(str, Enum):
    """Closed widget catalog. Anything unrecognised parses to UNKNOWN and renders as plain text."""

    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    EMAIL = "email"
    URL = "url"
    PHONE = "phone"
    PASSWORD = "password"
    SELECT = "select"
    MULTISELECT = "multiselect"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    SWITCH = "switch"
    DATE = "date"
    DATETIME = "datetime"
    TIME = "time"
    SLIDER = "slider"
    RATING = "rating"
    FILE = "file"
    CALCULATED = "calculated"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> "FieldKind":
        t = str(raw or "").strip().lower().replace("_", "-")
        if not t:
            return cls.TEXT
        t = _KIND_ALIASES.get(t, t)
        try:
            return cls(t)
        except ValueError:
            return cls.UNKNOWN


_KIND_ALIASES: Dict[str, str] = {
    "tel": "phone",
    "telephone": "phone",
    "dropdown": "select",
    "multi-select": "multiselect",
    "checkbox-group": "multiselect",
    "toggle": "switch",
    "boolean": "checkbox",
    "integer": "number",
    "currency": "number",
    "decimal": "number",
    "percent": "number",
    "date-time": "datetime",
    "upload": "file",
    "formula": "calculated",
    "text-area": "textarea",
}


class ValueKind(str, Enum):
    NUMBER = "number"
    TEXT = "text"
    BOOLEAN = "boolean"
    LIST = "list"
    ANY = "any"


VALUE_KINDS: Dict[FieldKind, ValueKind] = {
    FieldKind.TEXT: ValueKind.TEXT,
    FieldKind.TEXTAREA: ValueKind.TEXT,
    FieldKind.NUMBER: ValueKind.NUMBER,
    FieldKind.EMAIL: ValueKind.TEXT,
    FieldKind.URL: ValueKind.TEXT,
    FieldKind.PHONE: ValueKind.TEXT,
    FieldKind.PASSWORD: ValueKind.TEXT,
    FieldKind.SELECT: ValueKind.ANY,
    FieldKind.MULTISELECT: ValueKind.LIST,
    FieldKind.RADIO: ValueKind.ANY,
    FieldKind.CHECKBOX: ValueKind.BOOLEAN,
    FieldKind.SWITCH: ValueKind.BOOLEAN,
    FieldKind.DATE: ValueKind.TEXT,
    FieldKind.DATETIME: ValueKind.TEXT,
    FieldKind.TIME: ValueKind.TEXT,
    FieldKind.SLIDER: ValueKind.NUMBER,
    FieldKind.RATING: ValueKind.NUMBER,
    FieldKind.FILE: ValueKind.ANY,
    FieldKind.CALCULATED: ValueKind.NUMBER,
    FieldKind.UNKNOWN: ValueKind.TEXT,
}

_unmapped = [k.value for k in FieldKind if k not in VALUE_KINDS]
if _unmapped:
    raise RuntimeError(f"FieldKind values without a ValueKind: {', '.join(_unmapped)}")

OPTION_KINDS = frozenset({FieldKind.SELECT, FieldKind.MULTISELECT, FieldKind.RADIO})


def typed_zero(kind: ValueKind) -> Any:
    if kind == ValueKind.TEXT:
        return ""
    if kind == ValueKind.BOOLEAN:
        return False
    if kind == ValueKind.LIST:
        return []
    return 0


def _clamp_size(v: Any) -> int:
    try:
        n = int(v)
    except (TypeError, ValueError):
        return MAX_SIZE
    return max(MIN_SIZE, min(MAX_SIZE, n))


class VisibilityRule(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    watch_field: str = Field(alias="watchField")
    show_when: Any = Field(default=None, alias="showWhen")
    show_on_match: bool = Field(default=True, alias="showOnMatch")


class OptionItem(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    label: str = ""
    value: Any = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_scalar(cls, data: Any) -> Any:
        # Inline options are often authored as bare strings: ["Yes", "No"].
        if isinstance(data, (str, int, float, bool)):
            return {"label": str(data), "value": data}
        if isinstance(data, dict) and "label" not in data and "value" in data:
            out = dict(data)
            out["label"] = str(out.get("value"))
            return out
        return data


class _PredicateMixin(BaseModel):
    watch_field: Optional[str] = Field(default=None, alias="watchField")
    show_when: Any = Field(default=None, alias="showWhen")
    show_on_match: bool = Field(default=True, alias="showOnMatch")

    def own_predicate(self) -> Optional[VisibilityRule]:
        """None unless both `watchField` and `showWhen` are set; a watch without values never hides."""
        if not self.watch_field or self.show_when is None:
            return None
        return VisibilityRule(watchField=self.watch_field, showWhen=self.show_when, showOnMatch=self.show_on_match)


class FieldConfig(_PredicateMixin):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    type: str = "text"
    label: Optional[str] = None
    placeholder: Optional[str] = None
    required: bool = False
    size: int = MAX_SIZE
    section_id: Optional[str] = Field(default=None, alias="sectionId")
    group_id: Optional[str] = Field(default=None, alias="groupId")

    options: List[OptionItem] = Field(default_factory=list)
    options_url: Optional[str] = Field(default=None, alias="optionsUrl")
    options_datasource_url: Optional[str] = Field(default=None, alias="optionsDatasourceUrl")
    options_value_field: Optional[str] = Field(default=None, alias="optionsValueField")
    options_label_field: Optional[str] = Field(default=None, alias="optionsLabelField")
    options_path: Optional[str] = Field(default=None, alias="optionsPath")

    depends_on: Optional[str] = Field(default=None, alias="dependsOn")
    dependent_options_url: Optional[str] = Field(default=None, alias="dependentOptionsUrl")
    filter_by: Optional[str] = Field(default=None, alias="filterBy")

    default_value: Any = Field(default=None, alias="defaultValue")
    calculated: bool = False
    formula: Optional[str] = None
    value_type: Optional[str] = Field(default=None, alias="valueType")

    disabled: bool = False
    read_only: bool = Field(default=False, alias="readOnly")
    props: Dict[str, Any] = Field(default_factory=dict)

    validator: Optional[str] = None
    min_value: Optional[float] = Field(default=None, alias="min")
    max_value: Optional[float] = Field(default=None, alias="max")
    min_length: Optional[int] = Field(default=None, alias="minLength")
    max_length: Optional[int] = Field(default=None, alias="maxLength")
    pattern: Optional[str] = None
    pattern_message: Optional[str] = Field(default=None, alias="patternMessage")

    @field_validator("size", mode="before")
    @classmethod
    def _size_in_grid(cls, v: Any) -> int:
        return _clamp_size(v)

    @field_validator("options", mode="before")
    @classmethod
    def _options_list(cls, v: Any) -> Any:
        if v is None:
            return []
        return v

    @property
    def kind(self) -> FieldKind:
        if self.calculated and FieldKind.parse(self.type) == FieldKind.UNKNOWN:
            return FieldKind.CALCULATED
        return FieldKind.parse(self.type)

    @property
    def is_calculated(self) -> bool:
        return bool(self.formula) and (self.calculated or self.kind == FieldKind.CALCULATED)

    @property
    def value_kind(self) -> ValueKind:
        if self.value_type:
            try:
                return ValueKind(str(self.value_type).strip().lower())
            except ValueError:
                pass
        return VALUE_KINDS[self.kind]

    @property
    def remote_options_url(self) -> Optional[str]:
        return self.options_url or self.options_datasource_url

    @property
    def is_dependent(self) -> bool:
        return bool(self.depends_on) and bool(self.dependent_options_url or self.remote_options_url)

    @property
    def display_label(self) -> str:
        return self.label or "This field"


class FormGroup(_PredicateMixin):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    title: Optional[str] = None
    section_id: Optional[str] = Field(default=None, alias="sectionId")
    order: float = 0
    size: int = MAX_SIZE
    collapsible: bool = False
    default_collapsed: bool = Field(default=False, alias="defaultCollapsed")
    conditions: List[VisibilityRule] = Field(default_factory=list)

    @field_validator("size", mode="before")
    @classmethod
    def _size_in_grid(cls, v: Any) -> int:
        return _clamp_size(v)

    @field_validator("order", mode="before")
    @classmethod
    def _order_number(cls, v: Any) -> float:
        try:
            return float(v)
        except (TypeError, ValueError):
            return 0

    def predicates(self) -> List[VisibilityRule]:
        out: List[VisibilityRule] = []
        own = self.own_predicate()
        if own is not None:
            out.append(own)
        out.extend(c for c in self.conditions if c.show_when is not None)
        return out


class FormSection(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    order: float = 0
    size: int = MAX_SIZE
    section_options_url: Optional[str] = Field(default=None, alias="sectionOptionsUrl")

    @field_validator("size", mode="before")
    @classmethod
    def _size_in_grid(cls, v: Any) -> int:
        return _clamp_size(v)

    @field_validator("order", mode="before")
    @classmethod
    def _order_number(cls, v: Any) -> float:
        try:
            return float(v)
        except (TypeError, ValueError):
            return 0


class DefaultCondition(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    field: str
    equals: Any = None
    in_: Optional[List[Any]] = Field(default=None, alias="in")
    not_in: Optional[List[Any]] = Field(default=None, alias="notIn")
    non_empty: Optional[bool] = Field(default=None, alias="nonEmpty")


class SmartDefaultSpec(BaseModel):
    """Declarative smart default: `{type: "smartDefault", field, value, when?, whenAll?, priority?}`."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = "smartDefault"
    field: str
    value: Any = None
    name: Optional[str] = None
    priority: int = 0
    when: Optional[DefaultCondition] = None
    when_all: List[DefaultCondition] = Field(default_factory=list, alias="whenAll")


class SectionItem(FormSection):
    type: str = "section"


class GroupItem(FormGroup):
    type: str = "group"


MetadataItem = Union[SectionItem, GroupItem, SmartDefaultSpec, FieldConfig]
