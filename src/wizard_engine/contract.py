from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Dict, List

import jsonschema
from pydantic.json_schema import models_json_schema

from wizard_engine.schemas.metadata import FieldConfig, GroupItem, SectionItem, SmartDefaultSpec

SCHEMA_VERSION = "1"


def schema_version() -> str:
    # Env override is useful when a client pins an older contract.
    v = (os.getenv("WIZARD_SCHEMA_VERSION") or "").strip()
    return v or SCHEMA_VERSION


def _dispatch(type_value: str, ref: str, otherwise: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "if": {"type": "object", "properties": {"type": {"const": type_value}}, "required": ["type"]},
        "then": {"$ref": ref},
        "else": otherwise,
    }


@lru_cache(maxsize=1)
def metadata_json_schema() -> Dict[str, Any]:
    """
    JSON schema for a metadata document: an array of section / group / smartDefault / field items.

    Items are told apart by `type`; anything that is not a section, group or smartDefault is a field.
    """
    _, defs = models_json_schema(
        [(SectionItem, "validation"), (GroupItem, "validation"), (SmartDefaultSpec, "validation"), (FieldConfig, "validation")],
        ref_template="#/$defs/{model}",
    )
    all_defs: Dict[str, Any] = defs.get("$defs") or {}
    # Inline options may be bare scalars ("Yes"); the parser turns them into {label, value}.
    options_prop = ((all_defs.get("FieldConfig") or {}).get("properties") or {}).get("options")
    if isinstance(options_prop, dict):
        options_prop["items"] = {"anyOf": [{"$ref": "#/$defs/OptionItem"}, {"type": ["string", "number", "boolean"]}]}
    item = _dispatch(
        "section",
        "#/$defs/SectionItem",
        _dispatch("group", "#/$defs/GroupItem", _dispatch("smartDefault", "#/$defs/SmartDefaultSpec", {"$ref": "#/$defs/FieldConfig"})),
    )
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "FormMetadata",
        "description": "Flat list of form sections, groups, fields and smart defaults.",
        "schemaVersion": schema_version(),
        "type": "array",
        "items": item,
        "$defs": all_defs,
    }


@lru_cache(maxsize=1)
def _validator() -> jsonschema.Draft202012Validator:
    schema = metadata_json_schema()
    jsonschema.Draft202012Validator.check_schema(schema)
    return jsonschema.Draft202012Validator(schema)


def validate_metadata_document(items: Any) -> List[str]:
    """Schema errors as `"<path>: <message>"` strings; empty when the document conforms."""
    out: List[str] = []
    for err in sorted(_validator().iter_errors(items), key=lambda e: list(e.absolute_path)):
        path = "/".join(str(p) for p in err.absolute_path) or "<root>"
        out.append(f"{path}: {err.message}")
    return out
