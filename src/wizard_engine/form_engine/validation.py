from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from wizard_engine.form_engine.debounce import KeyedDebouncer
from wizard_engine.form_engine.options import is_empty_value
from wizard_engine.form_engine.parser import FormIndex
from wizard_engine.form_engine.visibility import normalize_token
from wizard_engine.schemas.metadata import OPTION_KINDS, FieldConfig, FieldKind, OptionItem, ValueKind
from wizard_engine.schemas.results import ValidationResult

logger = logging.getLogger("wizard_engine.validation")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{0,15}$")
URL_RE = re.compile(r"^https?://[^\s/?#]+\S*$", re.IGNORECASE)
_PHONE_FORMATTING_RE = re.compile(r"[\s\-().]")

PASSWORD_MIN_LENGTH = 8

CustomValidator = Callable[[Any, FieldConfig], Optional[str]]


class ValidatorRegistry:
    """Named custom validators referenced from metadata via `validator: "<name>"`."""

    def __init__(self) -> None:
        self._validators: Dict[str, CustomValidator] = {}

    def register(self, name: str, fn: CustomValidator) -> None:
        self._validators[str(name)] = fn

    def get(self, name: str) -> Optional[CustomValidator]:
        return self._validators.get(str(name))

    def __contains__(self, name: object) -> bool:
        return name in self._validators


default_registry = ValidatorRegistry()


def _fmt_number(n: float) -> str:
    return str(int(n)) if float(n).is_integer() else str(n)


def _missing(config: FieldConfig, value: Any) -> bool:
    if is_empty_value(value):
        return True
    return value is False and config.value_kind == ValueKind.BOOLEAN


def _check_number(config: FieldConfig, value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "Please enter a valid number"
    try:
        n = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return "Please enter a valid number"
    if config.min_value is not None and n < config.min_value:
        return f"Value must be at least {_fmt_number(config.min_value)}"
    if config.max_value is not None and n > config.max_value:
        return f"Value must be at most {_fmt_number(config.max_value)}"
    return None


def _check_password(value: str) -> Optional[str]:
    missing: List[str] = []
    if len(value) < PASSWORD_MIN_LENGTH:
        missing.append(f"At least {PASSWORD_MIN_LENGTH} characters")
    if not re.search(r"[A-Z]", value):
        missing.append("One uppercase letter")
    if not re.search(r"[a-z]", value):
        missing.append("One lowercase letter")
    if not re.search(r"\d", value):
        missing.append("One number")
    if missing:
        return f"Password must contain: {', '.join(missing)}"
    return None


def _check_text(config: FieldConfig, value: Any) -> Optional[str]:
    s = str(value)
    if config.min_length is not None and len(s) < config.min_length:
        return f"Must be at least {config.min_length} characters"
    if config.max_length is not None and len(s) > config.max_length:
        return f"Must be at most {config.max_length} characters"
    if config.pattern:
        try:
            if not re.search(config.pattern, s):
                return config.pattern_message or "Invalid format"
        except re.error:
            logger.warning("field %s has an invalid pattern %r; skipping", config.id, config.pattern)
    return None


def type_check(config: FieldConfig, value: Any) -> Optional[str]:
    kind = config.kind
    if kind == FieldKind.EMAIL:
        return None if EMAIL_RE.match(str(value).strip()) else "Please enter a valid email address"
    if kind == FieldKind.PHONE:
        cleaned = _PHONE_FORMATTING_RE.sub("", str(value))
        return None if PHONE_RE.match(cleaned) else "Please enter a valid phone number"
    if kind == FieldKind.URL:
        return None if URL_RE.match(str(value).strip()) else "Please enter a valid URL"
    if kind == FieldKind.PASSWORD:
        return _check_password(str(value))
    if config.value_kind == ValueKind.NUMBER and not config.is_calculated:
        return _check_number(config, value)
    if config.value_kind == ValueKind.TEXT:
        return _check_text(config, value)
    return None


def validate_field(
    field_id: str,
    config: FieldConfig,
    value: Any,
    *,
    registry: Optional[ValidatorRegistry] = None,
) -> Optional[str]:
    """
    Required -> type -> custom validator. Returns the first error message, or None.

    Empty values skip the type and custom checks.
    """
    if config.required and _missing(config, value):
        return f"{config.display_label} is required"
    if is_empty_value(value):
        return None
    msg = type_check(config, value)
    if msg:
        return msg
    if config.validator:
        fn = (registry or default_registry).get(config.validator)
        if fn is None:
            logger.warning("field %s references unknown validator %r", field_id, config.validator)
            return None
        try:
            return fn(value, config)
        except Exception:
            logger.exception("custom validator %r failed for %s", config.validator, field_id)
            return f"{config.display_label} could not be validated"
    return None


def option_warning(config: FieldConfig, value: Any, options: List[OptionItem]) -> Optional[str]:
    if config.kind not in OPTION_KINDS or is_empty_value(value) or not options:
        return None
    allowed = {normalize_token(o.value) for o in options}
    values = value if isinstance(value, (list, tuple, set)) else [value]
    unknown = [v for v in values if normalize_token(v) not in allowed]
    if unknown:
        return f"{config.display_label}: '{normalize_token(unknown[0])}' is not one of the available options"
    return None


class ValidationEngine:
    """
    Debounced incremental validation over a FormIndex.

    `schedule(field_id)` coalesces edits per field; when the timer fires the edited field and every
    field whose visibility depends on it are revalidated. Hidden fields never carry errors.
    """

    def __init__(
        self,
        index: FormIndex,
        state: Callable[[], Mapping[str, Any]],
        *,
        delay_s: float = 0.3,
        registry: Optional[ValidatorRegistry] = None,
        options_lookup: Optional[Callable[[FieldConfig], List[OptionItem]]] = None,
    ) -> None:
        self.index = index
        self._state = state
        self.registry = registry or default_registry
        self._options_lookup = options_lookup
        self.errors: Dict[str, str] = {}
        self.warnings: Dict[str, str] = {}
        self.debouncer = KeyedDebouncer(delay_s, self._on_fire, name="validation")

    def schedule(self, field_id: str) -> None:
        self.debouncer.push(field_id)

    def _on_fire(self, batch: Dict[str, Any]) -> None:
        targets: List[str] = []
        for fid in batch:
            for t in [fid] + self.index.visibility.dependents_of(fid):
                if t not in targets:
                    targets.append(t)
        state = self._state()
        for fid in targets:
            self.validate_one(fid, state)
        logger.debug("revalidated %s", targets)

    def validate_one(self, field_id: str, state: Mapping[str, Any]) -> Optional[str]:
        config = self.index.fields.get(field_id)
        if config is None or not self.index.is_shown(field_id, state):
            self.errors.pop(field_id, None)
            self.warnings.pop(field_id, None)
            return None
        value = state.get(field_id)
        msg = validate_field(field_id, config, value, registry=self.registry)
        if msg:
            self.errors[field_id] = msg
        else:
            self.errors.pop(field_id, None)
        options = self._options_lookup(config) if self._options_lookup else list(config.options)
        warning = option_warning(config, value, options)
        if warning:
            self.warnings[field_id] = warning
        else:
            self.warnings.pop(field_id, None)
        return msg

    def validate_fields(self, field_ids: Iterable[str], state: Optional[Mapping[str, Any]] = None) -> ValidationResult:
        """Validate now (no debounce). Only shown fields contribute to the result."""
        st = self._state() if state is None else state
        errors: Dict[str, str] = {}
        warnings: Dict[str, str] = {}
        for fid in field_ids:
            self.debouncer.cancel(fid)
            msg = self.validate_one(fid, st)
            if msg:
                errors[fid] = msg
            if fid in self.warnings:
                warnings[fid] = self.warnings[fid]
        return ValidationResult.build(errors, warnings)

    def validate_section(self, section_id: str, state: Optional[Mapping[str, Any]] = None) -> ValidationResult:
        return self.validate_fields([f.id for f in self.index.fields_for_section(section_id)], state)

    def validate_all(self, state: Optional[Mapping[str, Any]] = None) -> ValidationResult:
        return self.validate_fields(list(self.index.fields.keys()), state)

    def result(self) -> ValidationResult:
        return ValidationResult.build(self.errors, self.warnings)
