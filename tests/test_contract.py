from __future__ import annotations

from wizard_engine.contract import metadata_json_schema, validate_metadata_document


def test_schema_describes_every_item_kind():
    schema = metadata_json_schema()
    defs = schema["$defs"]
    for name in ("SectionItem", "GroupItem", "SmartDefaultSpec", "FieldConfig", "OptionItem"):
        assert name in defs
    props = defs["FieldConfig"]["properties"]
    assert "watchField" in props
    assert "optionsUrl" in props
    assert "min" in props


def test_valid_document_has_no_errors(amount_metadata):
    doc = amount_metadata + [
        {"id": "color", "type": "select", "options": ["red", {"label": "Blue", "value": "blue"}]},
        {"type": "smartDefault", "field": "color", "value": "red"},
    ]
    assert validate_metadata_document(doc) == []


def test_errors_point_at_the_offending_item():
    errors = validate_metadata_document([{"type": "group"}, {"id": "x", "required": "sometimes"}])
    assert any(e.startswith("0:") and "'id' is a required property" in e for e in errors)
    assert any(e.startswith("1/required") for e in errors)
    assert validate_metadata_document({"not": "a list"})
