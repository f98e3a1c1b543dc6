from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import ValidationError
from .field_schema import CategoryField

TRUTHY = {"1", "true", "yes", "y", "on"}
FALSY = {"0", "false", "no", "n", "off", ""}
DATE_INPUT_FORMATS = ("%Y-%m-%d", "%d/%m/%Y")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FieldValue:
    """A product attribute value tagged with the field type it was coerced for."""

    field_type: str
    key: str
    value: Any

    def to_json(self) -> Any:
        if self.field_type == "number":
            number = self.value
            return int(number) if number == number.to_integral_value() else float(number)
        if self.field_type in {"repeater", "group"}:
            if isinstance(self.value, list):
                return [{key: item.to_json() for key, item in row.items()} for row in self.value]
            return {key: item.to_json() for key, item in self.value.items()}
        return self.value


def _is_empty(raw: Any) -> bool:
    return raw is None or raw == "" or raw == [] or raw == {}


def _short_key(parent: CategoryField, child: CategoryField) -> str:
    prefix = f"{parent.key}_"
    return child.key[len(prefix):] if child.key.startswith(prefix) else child.key


def _coerce_number(field: CategoryField, raw: Any) -> Decimal:
    if isinstance(raw, bool):
        raise ValidationError(f"{field.name} must be a number", details={"key": field.key})
    try:
        number = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"{field.name} must be a number", details={"key": field.key}) from exc
    if not number.is_finite():
        raise ValidationError(f"{field.name} must be a finite number", details={"key": field.key})
    return number


def _coerce_checkbox(field: CategoryField, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    token = str(raw).strip().lower()
    if token in TRUTHY:
        return True
    if token in FALSY:
        return False
    raise ValidationError(f"{field.name} must be true or false", details={"key": field.key})


def _coerce_date(field: CategoryField, raw: Any) -> str:
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    text = str(raw).strip()
    for pattern in DATE_INPUT_FORMATS:
        try:
            return datetime.strptime(text, pattern).date().isoformat()
        except ValueError:
            continue
    raise ValidationError(f"{field.name} must be a date (YYYY-MM-DD)", details={"key": field.key})


def _coerce_select(field: CategoryField, raw: Any) -> str | list[str]:
    values = [str(item) for item in raw] if isinstance(raw, (list, tuple)) else [str(raw)]
    if field.options:
        invalid = [item for item in values if item not in field.options]
        if invalid:
            raise ValidationError(
                f"{field.name} has an invalid option",
                details={"key": field.key, "invalid": invalid, "options": field.options},
            )
    if field.is_multi:
        return values
    if len(values) != 1:
        raise ValidationError(f"{field.name} accepts a single option", details={"key": field.key})
    return values[0]


def _coerce_row(field: CategoryField, raw: Any) -> dict[str, FieldValue]:
    if not isinstance(raw, dict):
        raise ValidationError(f"{field.name} must be an object", details={"key": field.key})
    row: dict[str, FieldValue] = {}
    for child in field.children:
        short = _short_key(field, child)
        child_raw = raw.get(child.key, raw.get(short))
        if _is_empty(child_raw):
            if child.is_required:
                raise ValidationError(f"Missing required field: {child.name}", details={"key": child.key})
            continue
        row[child.key] = coerce_field_value(child, child_raw)
    return row


def coerce_field_value(field: CategoryField, raw: Any) -> FieldValue:
    field_type = field.field_type
    if field_type == "number":
        value: Any = _coerce_number(field, raw)
    elif field_type == "checkbox":
        value = _coerce_checkbox(field, raw)
    elif field_type == "date":
        value = _coerce_date(field, raw)
    elif field_type == "select":
        value = _coerce_select(field, raw)
    elif field_type == "repeater":
        if not isinstance(raw, list):
            raise ValidationError(f"{field.name} must be a list", details={"key": field.key})
        value = [_coerce_row(field, item) for item in raw]
    elif field_type == "group":
        value = _coerce_row(field, raw)
    else:
        if isinstance(raw, (dict, list)):
            raise ValidationError(f"{field.name} must be text", details={"key": field.key})
        value = str(raw)
    return FieldValue(field_type=field_type, key=field.key, value=value)


def validate_product_fields(fields: list[CategoryField], product_fields: dict[str, Any] | None) -> dict[str, Any]:
    """Coerce a product's attribute bag against the category field tree.

    ``fields`` is the top level of ``FieldSchemaStore.field_tree``. Values come back
    JSON-ready; keys that match no field are kept verbatim.
    """
    if product_fields is None:
        product_fields = {}
    if not isinstance(product_fields, dict):
        raise ValidationError("product_fields must be an object")

    cleaned: dict[str, Any] = {}
    known = {field.key: field for field in fields}
    for field in fields:
        raw = product_fields.get(field.key)
        if _is_empty(raw):
            if field.is_required:
                raise ValidationError(f"Missing required field: {field.name}", details={"key": field.key})
            continue
        cleaned[field.key] = coerce_field_value(field, raw).to_json()

    for key, raw in product_fields.items():
        if key in known:
            continue
        logger.warning("unknown_product_field_key", extra={"key": key})
        cleaned[key] = raw
    return cleaned
