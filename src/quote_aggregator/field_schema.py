from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable

from .db import json_dumps, json_loads
from .errors import ConflictError, DuplicateKeyError, NotFoundError, ValidationError

FIELD_TYPES = ("text", "number", "textarea", "image", "repeater", "select", "checkbox", "date", "group")
CONTAINER_TYPES = {"group", "repeater"}
FIELD_GROUP_TYPES = {"group", "repeater", "group_child", "repeater_child"}
REQUIRED_FIELD_ATTRIBUTES = ("service_category_id", "name", "key", "field_type")
MUTABLE_ATTRIBUTES = ("name", "is_required", "is_multi", "display_format", "options", "help_text", "display_order")

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_UNDERSCORE_RUN = re.compile(r"_+")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CategoryField:
    field_id: int
    service_category_id: int
    name: str
    key: str
    field_type: str
    is_required: bool = False
    is_multi: bool = False
    display_order: int = 0
    display_format: str = "default"
    options: list[str] | None = None
    parent_field_id: int | None = None
    field_group_type: str | None = None
    help_text: str | None = None
    version: int = 1
    children: list[CategoryField] = field(default_factory=list)

    @property
    def is_container(self) -> bool:
        return self.field_type in CONTAINER_TYPES

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> CategoryField:
        return cls(
            field_id=int(row["field_id"]),
            service_category_id=int(row["service_category_id"]),
            name=row["name"],
            key=row["key"],
            field_type=row["field_type"],
            is_required=bool(row["is_required"]),
            is_multi=bool(row["is_multi"]),
            display_order=int(row["display_order"]),
            display_format=row["display_format"],
            options=json_loads(row["options"]),
            parent_field_id=row["parent_field_id"],
            field_group_type=row["field_group_type"],
            help_text=row["help_text"],
            version=int(row["version"]),
        )

    def to_dict(self, include_children: bool = False) -> dict[str, Any]:
        payload = {
            "field_id": self.field_id,
            "service_category_id": self.service_category_id,
            "name": self.name,
            "key": self.key,
            "field_type": self.field_type,
            "is_required": self.is_required,
            "is_multi": self.is_multi,
            "display_order": self.display_order,
            "display_format": self.display_format,
            "options": self.options,
            "parent_field_id": self.parent_field_id,
            "field_group_type": self.field_group_type,
            "help_text": self.help_text,
            "version": self.version,
        }
        if include_children:
            payload["children"] = [child.to_dict(include_children=True) for child in self.children]
        return payload


def slugify_key(name: str) -> str:
    collapsed = _UNDERSCORE_RUN.sub("_", _NON_ALNUM.sub("_", str(name).lower()))
    return collapsed.strip("_")


def _normalize_options(raw: Any) -> list[str] | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        values = [item.strip() for item in raw.split(",")]
    elif isinstance(raw, (list, tuple, set)):
        values = [str(item).strip() for item in raw]
    else:
        raise ValidationError("options must be a list of strings")
    return [value for value in dict.fromkeys(values) if value] or None


def _require_field_type(field_type: Any) -> str:
    candidate = str(field_type or "").strip()
    if candidate not in FIELD_TYPES:
        raise ValidationError(f"unsupported field_type: {candidate or '<empty>'}")
    return candidate


class CompensationLog:
    """Undo actions for a multi-step write, replayed newest first on failure."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self._actions: list[tuple[str, Callable[[], None]]] = []

    def record(self, description: str, action: Callable[[], None]) -> None:
        self._actions.append((description, action))

    def unwind(self) -> None:
        while self._actions:
            description, action = self._actions.pop()
            try:
                action()
            except sqlite3.Error:
                logger.exception(
                    "field_hierarchy_compensation_failed",
                    extra={"operation": self.operation, "compensation": description},
                )
            else:
                logger.warning(
                    "field_hierarchy_compensated",
                    extra={"operation": self.operation, "compensation": description},
                )


@dataclass(slots=True)
class _PlannedChild:
    temp_id: str
    row: dict[str, Any]
    grandchildren: list[dict[str, Any]]


class FieldSchemaStore:
    """Persists the category field hierarchy (parent -> child -> grandchild)."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # reads

    def list_fields(self, category_id: int, top_level_only: bool = False) -> list[CategoryField]:
        query = "SELECT * FROM category_fields WHERE service_category_id = ?"
        if top_level_only:
            query += " AND parent_field_id IS NULL"
        rows = self.conn.execute(query + " ORDER BY display_order, field_id", (category_id,)).fetchall()
        return [CategoryField.from_row(row) for row in rows]

    def get_field(self, field_id: int) -> CategoryField:
        row = self.conn.execute("SELECT * FROM category_fields WHERE field_id = ?", (field_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"field {field_id} not found")
        return CategoryField.from_row(row)

    def field_tree(self, category_id: int) -> list[CategoryField]:
        fields = self.list_fields(category_id)
        by_id = {item.field_id: item for item in fields}
        roots: list[CategoryField] = []
        for item in fields:
            parent = by_id.get(item.parent_field_id) if item.parent_field_id is not None else None
            if parent is None:
                if item.parent_field_id is None:
                    roots.append(item)
                continue
            parent.children.append(item)
        return roots

    def descendant_ids(self, field_id: int) -> tuple[list[int], list[int]]:
        children = [
            int(row["field_id"])
            for row in self.conn.execute("SELECT field_id FROM category_fields WHERE parent_field_id = ?", (field_id,))
        ]
        grandchildren: list[int] = []
        if children:
            placeholders = ",".join("?" for _ in children)
            grandchildren = [
                int(row["field_id"])
                for row in self.conn.execute(
                    f"SELECT field_id FROM category_fields WHERE parent_field_id IN ({placeholders})",
                    children,
                )
            ]
        return children, grandchildren

    # flat CRUD

    def create_field(self, data: dict[str, Any]) -> CategoryField:
        missing = [name for name in REQUIRED_FIELD_ATTRIBUTES if not data.get(name)]
        if missing:
            raise ValidationError(f"Missing required field: {missing[0]}", details={"missing": missing})

        category_id = int(data["service_category_id"])
        key = str(data["key"]).strip()
        self._ensure_key_available(category_id, key)
        row = self._field_row(data, category_id=category_id, key=key)
        created = self._insert_rows([row])[0]
        logger.info("field_created", extra={"field_id": created.field_id, "key": created.key})
        return created

    def update_field(
        self,
        field_id: int,
        data: dict[str, Any],
        expected_version: int | None = None,
    ) -> CategoryField:
        existing = self.get_field(field_id)
        if "key" in data and data["key"] not in (None, existing.key):
            raise ValidationError("key is immutable once a field is created")
        if "field_type" in data and data["field_type"] not in (None, existing.field_type):
            raise ValidationError("field_type is immutable once a field is created")

        values = {
            "name": str(data.get("name") or existing.name).strip(),
            "is_required": 1 if data.get("is_required", existing.is_required) else 0,
            "is_multi": 1 if data.get("is_multi", existing.is_multi) else 0,
            "display_format": str(data.get("display_format") or existing.display_format),
            "options": _normalize_options(data["options"]) if "options" in data else existing.options,
            "help_text": data.get("help_text", existing.help_text),
            "display_order": int(data.get("display_order", existing.display_order)),
        }
        if existing.is_container:
            values["is_multi"] = 0
            values["options"] = None

        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE category_fields
                SET name = ?, is_required = ?, is_multi = ?, display_format = ?, options = ?,
                    help_text = ?, display_order = ?, version = version + 1, updated_at = CURRENT_TIMESTAMP
                WHERE field_id = ? AND (? IS NULL OR version = ?)
                """,
                (
                    values["name"],
                    values["is_required"],
                    values["is_multi"],
                    values["display_format"],
                    json_dumps(values["options"]) if values["options"] is not None else None,
                    values["help_text"],
                    values["display_order"],
                    field_id,
                    expected_version,
                    expected_version,
                ),
            )
        if cursor.rowcount == 0:
            raise ConflictError(
                f"field {field_id} was modified concurrently",
                details={"expected_version": expected_version, "current_version": existing.version},
            )
        logger.info("field_updated", extra={"field_id": field_id})
        return self.get_field(field_id)

    def delete_field(self, field_id: int, cascade: bool = False) -> list[int]:
        self.get_field(field_id)
        deleted = [field_id]
        with self.conn:
            if cascade:
                children, grandchildren = self.descendant_ids(field_id)
                self._delete_ids(grandchildren)
                self._delete_ids(children)
                deleted = grandchildren + children + deleted
            self._delete_ids([field_id])
        logger.info("field_deleted", extra={"field_id": field_id, "deleted_ids": deleted, "cascade": cascade})
        return deleted

    def reorder_fields(self, updates: list[dict[str, Any]]) -> None:
        if not isinstance(updates, list) or not updates:
            raise ValidationError("Updates array is required")
        rows = []
        for update in updates:
            try:
                rows.append((int(update["display_order"]), int(update["field_id"])))
            except (KeyError, TypeError, ValueError) as exc:
                raise ValidationError("each update needs field_id and display_order") from exc
        with self.conn:
            self.conn.executemany(
                "UPDATE category_fields SET display_order = ?, updated_at = CURRENT_TIMESTAMP WHERE field_id = ?",
                rows,
            )

    # nested hierarchy

    def create_field_with_children(
        self,
        parent: dict[str, Any] | None,
        children: list[dict[str, Any]] | None,
    ) -> dict[str, Any]:
        if not parent or any(not parent.get(name) for name in REQUIRED_FIELD_ATTRIBUTES):
            raise ValidationError("Missing required parent field data")
        if not children or not isinstance(children, list):
            raise ValidationError("At least one child field is required")

        category_id = int(parent["service_category_id"])
        parent_key = str(parent["key"]).strip()
        field_type = _require_field_type(parent["field_type"])
        if field_type not in CONTAINER_TYPES:
            raise ValidationError("only group and repeater fields can have child fields")
        self._ensure_key_available(category_id, parent_key)
        planned = self._plan_children(category_id, parent_key, field_type, children)

        parent_row = self._field_row(
            {
                **parent,
                "is_multi": False,
                "options": None,
                "help_text": None,
                "field_group_type": parent.get("field_group_type") or ("group" if field_type == "group" else "repeater"),
            },
            category_id=category_id,
            key=parent_key,
            parent_field_id=None,
        )

        compensation = CompensationLog("create_field_with_children")
        parent_field = self._insert_rows([parent_row])[0]
        compensation.record(
            f"delete parent {parent_field.field_id}",
            lambda: self._delete_committed([parent_field.field_id]),
        )

        try:
            created_children, created_grandchildren = self._insert_tree(parent_field.field_id, planned, compensation)
        except Exception:
            compensation.unwind()
            raise

        logger.info(
            "field_hierarchy_created",
            extra={
                "field_id": parent_field.field_id,
                "key": parent_key,
                "children": len(created_children),
                "grandchildren": len(created_grandchildren),
            },
        )
        return {
            "parent": parent_field,
            "children": created_children,
            "grandchildren": created_grandchildren,
            "message": (
                f"Created {field_type} with {len(created_children)} child fields "
                f"and {len(created_grandchildren)} nested fields"
            ),
        }

    def update_field_with_children(
        self,
        field_id: int,
        parent: dict[str, Any] | None,
        children: list[dict[str, Any]] | None,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        if not field_id or not parent:
            raise ValidationError("Field ID and parent data are required")

        existing = self.get_field(field_id)
        if children and not existing.is_container:
            raise ValidationError("only group and repeater fields can have child fields")
        planned = self._plan_children(existing.service_category_id, existing.key, existing.field_type, children or [])
        updated_parent = self.update_field(
            field_id,
            {name: parent[name] for name in MUTABLE_ATTRIBUTES if name in parent},
            expected_version=expected_version,
        )

        child_ids, grandchild_ids = self.descendant_ids(field_id)
        snapshot = self._snapshot_rows(grandchild_ids + child_ids)
        compensation = CompensationLog("update_field_with_children")
        with self.conn:
            self._delete_ids(grandchild_ids)
            self._delete_ids(child_ids)
        if snapshot:
            compensation.record(
                f"restore {len(snapshot)} previous descendants of {field_id}",
                lambda: self._restore_rows(snapshot),
            )

        try:
            created_children, created_grandchildren = self._insert_tree(field_id, planned, compensation)
        except Exception:
            compensation.unwind()
            raise

        logger.info(
            "field_hierarchy_replaced",
            extra={
                "field_id": field_id,
                "removed": len(child_ids) + len(grandchild_ids),
                "children": len(created_children),
                "grandchildren": len(created_grandchildren),
            },
        )
        return {
            "parent": updated_parent,
            "children": created_children,
            "grandchildren": created_grandchildren,
        }

    # internals

    def _ensure_key_available(self, category_id: int, key: str) -> None:
        existing = self.conn.execute(
            "SELECT field_id FROM category_fields WHERE service_category_id = ? AND key = ?",
            (category_id, key),
        ).fetchone()
        if existing is not None:
            raise DuplicateKeyError(
                "A field with this key already exists for this category",
                details={"key": key, "field_id": existing["field_id"]},
            )

    def _field_row(
        self,
        data: dict[str, Any],
        *,
        category_id: int,
        key: str,
        parent_field_id: int | None = None,
    ) -> dict[str, Any]:
        field_type = _require_field_type(data.get("field_type"))
        is_container = field_type in CONTAINER_TYPES
        field_group_type = data.get("field_group_type")
        if field_group_type is not None and field_group_type not in FIELD_GROUP_TYPES:
            raise ValidationError(f"unsupported field_group_type: {field_group_type}")
        if field_group_type is None and is_container and parent_field_id is None:
            field_group_type = field_type
        options = None if is_container else _normalize_options(data.get("options"))
        return {
            "service_category_id": category_id,
            "name": str(data["name"]).strip(),
            "key": key,
            "field_type": field_type,
            "is_required": 1 if data.get("is_required") else 0,
            "is_multi": 0 if is_container else (1 if data.get("is_multi") else 0),
            "display_order": int(data.get("display_order") or 0),
            "display_format": str(data.get("display_format") or "default"),
            "options": json_dumps(options) if options is not None else None,
            "parent_field_id": parent_field_id,
            "field_group_type": field_group_type,
            "help_text": data.get("help_text") or None,
        }

    def _plan_children(
        self,
        category_id: int,
        parent_key: str,
        parent_type: str,
        children: list[dict[str, Any]],
    ) -> list[_PlannedChild]:
        child_group_type = "group_child" if parent_type == "group" else "repeater_child"
        planned: list[_PlannedChild] = []
        seen_keys: set[str] = set()

        for index, child in enumerate(children):
            if not child.get("name") or not child.get("field_type"):
                raise ValidationError(f"Child field {index + 1} is missing required data")
            child_key = str(child.get("key") or slugify_key(child["name"]))
            full_key = f"{parent_key}_{child_key}"
            if full_key in seen_keys:
                raise DuplicateKeyError(f"Duplicate child key: {full_key}", details={"key": full_key})
            seen_keys.add(full_key)

            row = self._field_row(
                {
                    **child,
                    "display_order": index + 1,
                    "display_format": "default",
                    "field_group_type": child_group_type,
                },
                category_id=category_id,
                key=full_key,
            )

            nested = child.get("childFields") or []
            if nested and child["field_type"] not in CONTAINER_TYPES:
                raise ValidationError(
                    f"Child field {index + 1} is a {child['field_type']} field and cannot have nested fields"
                )
            grandchild_group_type = "group_child" if child["field_type"] == "group" else "repeater_child"
            grandchildren: list[dict[str, Any]] = []
            for grandchild_index, grandchild in enumerate(nested):
                if not grandchild.get("name") or not grandchild.get("field_type"):
                    raise ValidationError(
                        f"Nested field {grandchild_index + 1} in child {index + 1} is missing required data"
                    )
                if grandchild["field_type"] in CONTAINER_TYPES:
                    raise ValidationError("field hierarchies are limited to three levels")
                grandchild_key = str(grandchild.get("key") or slugify_key(grandchild["name"]))
                nested_key = f"{parent_key}_{child_key}_{grandchild_key}"
                if nested_key in seen_keys:
                    raise DuplicateKeyError(f"Duplicate nested key: {nested_key}", details={"key": nested_key})
                seen_keys.add(nested_key)
                grandchildren.append(
                    self._field_row(
                        {
                            **grandchild,
                            "display_order": grandchild_index + 1,
                            "display_format": "default",
                            "field_group_type": grandchild_group_type,
                        },
                        category_id=category_id,
                        key=nested_key,
                    )
                )

            planned.append(_PlannedChild(temp_id=f"temp_child_{index}", row=row, grandchildren=grandchildren))
        return planned

    def _insert_tree(
        self,
        parent_id: int,
        planned: list[_PlannedChild],
        compensation: CompensationLog,
    ) -> tuple[list[CategoryField], list[CategoryField]]:
        if not planned:
            return [], []

        created_children = self._insert_rows([{**item.row, "parent_field_id": parent_id} for item in planned])
        child_ids = [child.field_id for child in created_children]
        compensation.record(f"delete children {child_ids}", lambda: self._delete_committed(child_ids))

        real_ids = {item.temp_id: child.field_id for item, child in zip(planned, created_children, strict=True)}
        grandchild_rows = [
            {**grandchild, "parent_field_id": real_ids[item.temp_id]}
            for item in planned
            for grandchild in item.grandchildren
        ]
        created_grandchildren: list[CategoryField] = []
        if grandchild_rows:
            created_grandchildren = self._insert_rows(grandchild_rows)
        return created_children, created_grandchildren

    def _insert_rows(self, rows: list[dict[str, Any]]) -> list[CategoryField]:
        """Insert ``rows`` as one batch; either every row lands or none does."""
        inserted_ids: list[int] = []
        with self.conn:
            for row in rows:
                cursor = self.conn.execute(
                    """
                    INSERT INTO category_fields(
                        service_category_id, name, key, field_type, is_required, is_multi, display_order,
                        display_format, options, parent_field_id, field_group_type, help_text
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        row["service_category_id"],
                        row["name"],
                        row["key"],
                        row["field_type"],
                        row["is_required"],
                        row["is_multi"],
                        row["display_order"],
                        row["display_format"],
                        row["options"],
                        row["parent_field_id"],
                        row["field_group_type"],
                        row["help_text"],
                    ),
                )
                inserted_ids.append(int(cursor.lastrowid))
        return [self.get_field(field_id) for field_id in inserted_ids]

    def _delete_ids(self, field_ids: list[int]) -> None:
        if field_ids:
            self.conn.executemany("DELETE FROM category_fields WHERE field_id = ?", [(item,) for item in field_ids])

    def _delete_committed(self, field_ids: list[int]) -> None:
        with self.conn:
            self._delete_ids(field_ids)

    def _snapshot_rows(self, field_ids: list[int]) -> list[dict[str, Any]]:
        if not field_ids:
            return []
        placeholders = ",".join("?" for _ in field_ids)
        rows = self.conn.execute(
            f"SELECT * FROM category_fields WHERE field_id IN ({placeholders}) ORDER BY field_id",
            field_ids,
        ).fetchall()
        return [dict(row) for row in rows]

    def _restore_rows(self, rows: list[dict[str, Any]]) -> None:
        columns = list(rows[0].keys())
        placeholders = ",".join("?" for _ in columns)
        with self.conn:
            self.conn.executemany(
                f"INSERT INTO category_fields({','.join(columns)}) VALUES ({placeholders})",
                [tuple(row[column] for column in columns) for row in rows],
            )
