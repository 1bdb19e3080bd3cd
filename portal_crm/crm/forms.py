from __future__ import annotations

import math
import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from portal_crm.crm.schemas import FieldDefinitionRead, FieldValue, FormControl


FIELD_CONTROLS: dict[str, str] = {
    "text": "input",
    "textarea": "textarea",
    "number": "number",
    "boolean": "switch",
    "select": "select",
}

_TRUE_STRINGS = {"true", "on", "1", "yes"}
_FALSE_STRINGS = {"false", "off", "0", "no"}


class UnsupportedFieldTypeError(ValueError):
    def __init__(self, field_type: str) -> None:
        super().__init__(f"no form control for field type '{field_type}'")
        self.field_type = field_type


class FieldCoercionError(ValueError):
    def __init__(self, field_id: uuid.UUID, message: str) -> None:
        super().__init__(message)
        self.field_id = field_id
        self.message = message


class FormValidationError(ValueError):
    """Carries inline errors keyed by field id."""

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("invalid form fields")
        self.errors = errors


def control_for(field_type: str) -> str:
    control = FIELD_CONTROLS.get(field_type)
    if control is None:
        raise UnsupportedFieldTypeError(field_type)
    return control


def build_form(
    definitions: Iterable[FieldDefinitionRead],
    values: Mapping[uuid.UUID, FieldValue],
) -> list[FormControl]:
    """Pair each definition, in display order, with its control and current value."""

    ordered = sorted(definitions, key=lambda item: (item.order_index, item.created_at))
    controls: list[FormControl] = []
    for definition in ordered:
        current = values.get(definition.id)
        controls.append(
            FormControl(
                field_id=definition.id,
                name=definition.name,
                description=definition.description,
                control=control_for(definition.field_type),
                required=definition.is_required,
                options=definition.options if definition.field_type == "select" else None,
                value=current.value if current is not None else None,
            )
        )
    return controls


def coerce_submission(definition: FieldDefinitionRead, raw: Any) -> Any:
    """Turn raw form input into the plain value the field's type stores.

    Returns ``None`` for blank input, which clears the field.
    """

    control_for(definition.field_type)
    if isinstance(raw, str):
        raw = raw.strip()
        if raw == "":
            return None
    if raw is None:
        return None

    field_type = definition.field_type
    if field_type in {"text", "textarea"}:
        if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
            raise FieldCoercionError(definition.id, f"{definition.name} must be text")
        return str(raw)

    if field_type == "number":
        if isinstance(raw, bool):
            raise FieldCoercionError(definition.id, f"{definition.name} must be a number")
        if isinstance(raw, (int, float, str)):
            try:
                number = float(raw)
            except OverflowError:
                number = math.inf
            except ValueError:
                raise FieldCoercionError(definition.id, f"{definition.name} must be a number")
        else:
            raise FieldCoercionError(definition.id, f"{definition.name} must be a number")
        if not math.isfinite(number):
            raise FieldCoercionError(definition.id, f"{definition.name} must be a finite number")
        return number

    if field_type == "boolean":
        if isinstance(raw, bool):
            return raw
        token = str(raw).lower()
        if token in _TRUE_STRINGS:
            return True
        if token in _FALSE_STRINGS:
            return False
        raise FieldCoercionError(definition.id, f"{definition.name} must be true or false")

    if not isinstance(raw, str) or raw not in (definition.options or []):
        raise FieldCoercionError(
            definition.id,
            f"{definition.name} must be one of: {', '.join(definition.options or [])}",
        )
    return raw
