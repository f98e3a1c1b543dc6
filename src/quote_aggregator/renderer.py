from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from urllib.parse import urlparse

from .field_schema import CategoryField
from .field_values import FALSY

TEXT_TYPES = {"text", "textarea", "number", "select"}


@dataclass(slots=True)
class RenderedField:
    key: str
    label: str
    kind: str
    value: Any
    raw: Any = None
    children: list[RenderedField] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = {"key": self.key, "label": self.label, "kind": self.kind, "value": self.value}
        if self.raw is not None:
            payload["raw"] = self.raw
        if self.children:
            payload["children"] = [child.to_dict() for child in self.children]
        return payload


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _is_checked(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSY
    return bool(value)


def _is_http_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def format_display_date(value: Any) -> str:
    """Render an ISO date as ``DD/MM/YYYY``; anything unparseable is returned as given."""
    if isinstance(value, (date, datetime)):
        return value.strftime("%d/%m/%Y")
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return text
    return parsed.strftime("%d/%m/%Y")


def _child_lookup(parent: CategoryField, child: CategoryField, values: dict[str, Any]) -> Any:
    if child.key in values:
        return values[child.key]
    prefix = f"{parent.key}_"
    if child.key.startswith(prefix):
        return values.get(child.key[len(prefix):])
    return None


def _render_repeater_item(field: CategoryField, item: Any) -> str:
    if not isinstance(item, dict):
        return str(item)
    if not field.children:
        return ", ".join(f"{key}: {value}" for key, value in item.items() if not _is_empty(value))
    parts = []
    for child in field.children:
        value = _child_lookup(field, child, item)
        if _is_empty(value):
            continue
        rendered = render_field(child, value)
        if rendered is not None and not isinstance(rendered.value, list):
            parts.append(f"{child.name}: {rendered.value}")
        elif rendered is not None:
            parts.append(f"{child.name}: {', '.join(str(entry) for entry in rendered.value)}")
    return ", ".join(parts)


def render_field(field: CategoryField, value: Any) -> RenderedField | None:
    if _is_empty(value):
        return None

    field_type = field.field_type
    if field_type in TEXT_TYPES:
        if field_type == "select" and field.is_multi and isinstance(value, list):
            return RenderedField(field.key, field.name, "list", [str(item) for item in value])
        return RenderedField(field.key, field.name, "text", str(value))

    if field_type == "image":
        if not _is_http_url(value):
            return RenderedField(field.key, field.name, "error", "Invalid image URL", raw=value)
        return RenderedField(field.key, field.name, "image", value.strip())

    if field_type == "checkbox":
        return RenderedField(field.key, field.name, "text", "Yes" if _is_checked(value) else "No")

    if field_type == "date":
        return RenderedField(field.key, field.name, "date", format_display_date(value), raw=value)

    if field_type == "repeater":
        if not isinstance(value, list) or not value:
            return None
        items = [_render_repeater_item(field, item) for item in value]
        return RenderedField(field.key, field.name, "list", [item for item in items if item])

    if field_type == "group":
        if not isinstance(value, dict):
            return RenderedField(field.key, field.name, "text", str(value))
        children = []
        for child in field.children:
            rendered = render_field(child, _child_lookup(field, child, value))
            if rendered is not None:
                children.append(rendered)
        if not children:
            return None
        return RenderedField(field.key, field.name, "group", None, children=children)

    return RenderedField(field.key, field.name, "text", str(value))


def render_product_fields(fields: list[CategoryField], product_fields: dict[str, Any] | None) -> list[RenderedField]:
    values = product_fields or {}
    rendered = []
    for item in sorted(fields, key=lambda candidate: (candidate.display_order, candidate.field_id)):
        if item.parent_field_id is not None:
            continue
        result = render_field(item, values.get(item.key))
        if result is not None:
            rendered.append(result)
    return rendered
