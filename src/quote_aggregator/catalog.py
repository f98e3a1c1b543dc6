from __future__ import annotations

import logging
import sqlite3
from typing import Any

from .db import json_dumps, row_to_dict
from .errors import DuplicateKeyError, NotFoundError, TenantMismatchError, ValidationError
from .field_schema import FieldSchemaStore, slugify_key
from .field_values import validate_product_fields
from .pricing import price_bundle, to_money, validate_discount

PRODUCT_JSON_COLUMNS = ("specifications", "product_fields")
PRODUCT_LIST_LAYOUTS = ("default", "card", "feature")

logger = logging.getLogger(__name__)


def get_category_by_slug(conn: sqlite3.Connection, slug: str | None) -> dict[str, Any]:
    row = conn.execute("SELECT * FROM service_categories WHERE slug = ?", (slug or "",)).fetchone()
    if row is None:
        raise NotFoundError("Category not found", details={"slug": slug})
    return dict(row)


def get_category(conn: sqlite3.Connection, category_id: int) -> dict[str, Any]:
    row = conn.execute("SELECT * FROM service_categories WHERE service_category_id = ?", (category_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"service category {category_id} not found")
    return dict(row)


def update_category_layout(conn: sqlite3.Connection, category_id: int, layout: Any) -> dict[str, Any]:
    if layout not in PRODUCT_LIST_LAYOUTS:
        raise ValidationError(
            f"unsupported products_list_layout: {layout}",
            details={"allowed": list(PRODUCT_LIST_LAYOUTS)},
        )
    get_category(conn, category_id)
    with conn:
        conn.execute(
            "UPDATE service_categories SET products_list_layout = ? WHERE service_category_id = ?",
            (layout, category_id),
        )
    logger.info("category_layout_updated", extra={"service_category_id": category_id, "layout": layout})
    return get_category(conn, category_id)


def _product_dict(row: sqlite3.Row) -> dict[str, Any]:
    product = row_to_dict(row, PRODUCT_JSON_COLUMNS)
    product["is_active"] = bool(product["is_active"])
    product["is_featured"] = bool(product["is_featured"])
    return product


def _partner_scope(partner_id: int | None) -> tuple[str, tuple[Any, ...]]:
    if partner_id is None:
        return " AND partner_id IS NULL", ()
    return " AND (partner_id IS NULL OR partner_id = ?)", (partner_id,)


def list_active_products(
    conn: sqlite3.Connection,
    category_id: int,
    partner_id: int | None = None,
) -> list[dict[str, Any]]:
    scope, params = _partner_scope(partner_id)
    rows = conn.execute(
        "SELECT * FROM products WHERE service_category_id = ? AND is_active = 1"
        + scope
        + " ORDER BY is_featured DESC, product_id",
        (category_id, *params),
    ).fetchall()
    return [_product_dict(row) for row in rows]


def get_product(conn: sqlite3.Connection, product_id: int) -> dict[str, Any]:
    row = conn.execute("SELECT * FROM products WHERE product_id = ?", (product_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"product {product_id} not found")
    return _product_dict(row)


def get_product_by_slug(
    conn: sqlite3.Connection,
    category_id: int,
    slug: str,
    partner_id: int | None = None,
) -> dict[str, Any]:
    scope, params = _partner_scope(partner_id)
    row = conn.execute(
        "SELECT * FROM products WHERE service_category_id = ? AND slug = ? AND is_active = 1"
        + scope
        + " ORDER BY partner_id IS NULL LIMIT 1",
        (category_id, slug, *params),
    ).fetchone()
    if row is None:
        raise NotFoundError("Product not found", details={"slug": slug})
    return _product_dict(row)


def _product_values(conn: sqlite3.Connection, data: dict[str, Any], category_id: int) -> dict[str, Any]:
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValidationError("Missing required field: name")
    specifications = data.get("specifications") or {}
    if not isinstance(specifications, dict):
        raise ValidationError("specifications must be an object")
    tree = FieldSchemaStore(conn).field_tree(category_id)
    price = data.get("price")
    return {
        "name": name,
        "slug": str(data.get("slug") or slugify_key(name).replace("_", "-")),
        "description": str(data.get("description") or ""),
        "price": None if price in (None, "") else str(to_money(price)),
        "image_url": data.get("image_url") or None,
        "specifications": json_dumps(specifications),
        "product_fields": json_dumps(validate_product_fields(tree, data.get("product_fields"))),
        "is_active": 0 if data.get("is_active") is False else 1,
        "is_featured": 1 if data.get("is_featured") else 0,
    }


def _ensure_slug_available(
    conn: sqlite3.Connection,
    category_id: int,
    partner_id: int | None,
    slug: str,
    exclude_id: int | None = None,
) -> None:
    row = conn.execute(
        """
        SELECT product_id FROM products
        WHERE service_category_id = ? AND IFNULL(partner_id, 0) = ? AND slug = ? AND product_id != ?
        """,
        (category_id, partner_id or 0, slug, exclude_id or 0),
    ).fetchone()
    if row is not None:
        raise DuplicateKeyError(
            "A product with this slug already exists for this category",
            details={"slug": slug, "product_id": row["product_id"]},
        )


def create_product(conn: sqlite3.Connection, data: dict[str, Any]) -> dict[str, Any]:
    if not data.get("service_category_id"):
        raise ValidationError("Missing required field: service_category_id")
    category_id = int(data["service_category_id"])
    partner_id = int(data["partner_id"]) if data.get("partner_id") else None
    values = _product_values(conn, data, category_id)
    _ensure_slug_available(conn, category_id, partner_id, values["slug"])
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO products(
                service_category_id, partner_id, name, slug, description, price, image_url,
                specifications, product_fields, is_active, is_featured
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (category_id, partner_id, *values.values()),
        )
    logger.info("product_created", extra={"product_id": cursor.lastrowid, "slug": values["slug"]})
    return get_product(conn, int(cursor.lastrowid))


def update_product(conn: sqlite3.Connection, product_id: int, data: dict[str, Any]) -> dict[str, Any]:
    existing = get_product(conn, product_id)
    category_id = int(existing["service_category_id"])
    merged = {
        "name": existing["name"],
        "slug": existing["slug"],
        "description": existing["description"],
        "price": existing["price"],
        "image_url": existing["image_url"],
        "specifications": existing["specifications"],
        "product_fields": existing["product_fields"],
        "is_active": existing["is_active"],
        "is_featured": existing["is_featured"],
        **data,
    }
    values = _product_values(conn, merged, category_id)
    _ensure_slug_available(conn, category_id, existing["partner_id"], values["slug"], exclude_id=product_id)
    assignments = ", ".join(f"{column} = ?" for column in values)
    with conn:
        conn.execute(
            f"UPDATE products SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE product_id = ?",
            (*values.values(), product_id),
        )
    return get_product(conn, product_id)


# addons and bundles


def create_addon(conn: sqlite3.Connection, data: dict[str, Any]) -> dict[str, Any]:
    for name in ("service_category_id", "title", "price"):
        if data.get(name) in (None, ""):
            raise ValidationError(f"Missing required field: {name}")
    price = to_money(data["price"])
    if price < 0:
        raise ValidationError("price must not be negative")
    max_count = data.get("max_count")
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO addons(
                service_category_id, partner_id, title, description, price, addon_type, allow_multiple, max_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(data["service_category_id"]),
                int(data["partner_id"]) if data.get("partner_id") else None,
                str(data["title"]).strip(),
                str(data.get("description") or ""),
                str(price),
                int(data.get("addon_type") or 0),
                1 if data.get("allow_multiple") else 0,
                int(max_count) if max_count not in (None, "") else None,
            ),
        )
    row = conn.execute("SELECT * FROM addons WHERE addon_id = ?", (cursor.lastrowid,)).fetchone()
    return dict(row)


def list_addons(conn: sqlite3.Connection, category_id: int, partner_id: int | None = None) -> list[dict[str, Any]]:
    scope, params = _partner_scope(partner_id)
    rows = conn.execute(
        "SELECT * FROM addons WHERE service_category_id = ?" + scope + " ORDER BY addon_type, addon_id",
        (category_id, *params),
    ).fetchall()
    return [dict(row) for row in rows]


def create_bundle(conn: sqlite3.Connection, data: dict[str, Any]) -> dict[str, Any]:
    title = str(data.get("title") or "").strip()
    if not title:
        raise ValidationError("Missing required field: title")
    discount_type, discount_value = validate_discount(data.get("discount_type"), data.get("discount_value"))
    items = data.get("items") or []
    if not isinstance(items, list) or not items:
        raise ValidationError("a bundle needs at least one addon item")

    addon_ids = []
    for item in items:
        try:
            addon_ids.append((int(item["addon_id"]), int(item.get("quantity", 1))))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("bundle items need addon_id and quantity") from exc
    for addon_id, quantity in addon_ids:
        if quantity <= 0:
            raise ValidationError("bundle item quantity must be positive")
        if conn.execute("SELECT 1 FROM addons WHERE addon_id = ?", (addon_id,)).fetchone() is None:
            raise NotFoundError(f"addon {addon_id} not found")

    with conn:
        cursor = conn.execute(
            """
            INSERT INTO bundles(service_category_id, partner_id, title, description, discount_type, discount_value)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                int(data["service_category_id"]) if data.get("service_category_id") else None,
                int(data["partner_id"]) if data.get("partner_id") else None,
                title,
                data.get("description"),
                discount_type,
                str(discount_value),
            ),
        )
        bundle_id = int(cursor.lastrowid)
        conn.executemany(
            "INSERT INTO bundle_addons(bundle_id, addon_id, quantity) VALUES (?, ?, ?)",
            [(bundle_id, addon_id, quantity) for addon_id, quantity in addon_ids],
        )
    return get_bundle(conn, bundle_id)


def get_bundle(conn: sqlite3.Connection, bundle_id: int) -> dict[str, Any]:
    row = conn.execute("SELECT * FROM bundles WHERE bundle_id = ?", (bundle_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"bundle {bundle_id} not found")
    bundle = dict(row)
    bundle["items"] = [
        dict(item)
        for item in conn.execute(
            """
            SELECT bundle_addons.addon_id, bundle_addons.quantity, addons.title, addons.price
            FROM bundle_addons JOIN addons ON addons.addon_id = bundle_addons.addon_id
            WHERE bundle_addons.bundle_id = ?
            ORDER BY bundle_addons.bundle_addon_id
            """,
            (bundle_id,),
        )
    ]
    bundle["pricing"] = price_bundle(bundle).to_dict()
    return bundle


def list_bundles(conn: sqlite3.Connection, category_id: int, partner_id: int | None = None) -> list[dict[str, Any]]:
    scope, params = _partner_scope(partner_id)
    rows = conn.execute(
        "SELECT bundle_id FROM bundles WHERE service_category_id = ?" + scope + " ORDER BY bundle_id",
        (category_id, *params),
    ).fetchall()
    return [get_bundle(conn, int(row["bundle_id"])) for row in rows]


# checkout


def _check_visible(kind: str, item_id: int, row: sqlite3.Row | None, category_id: int, partner_id: int | None) -> None:
    if row is None or row["service_category_id"] != category_id:
        raise NotFoundError(f"{kind} {item_id} not found", details={"service_category_id": category_id})
    owner = row["partner_id"]
    if owner is not None and owner != partner_id:
        raise TenantMismatchError(f"{kind} {item_id} belongs to another partner")


def get_checkout_product(conn: sqlite3.Connection, product_id: int, partner_id: int | None = None) -> dict[str, Any]:
    product = get_product(conn, product_id)
    if not product["is_active"]:
        raise NotFoundError(f"product {product_id} not found")
    if product["partner_id"] is not None and product["partner_id"] != partner_id:
        raise TenantMismatchError(f"product {product_id} belongs to another partner")
    return product


def checkout_lines(
    conn: sqlite3.Connection,
    product: dict[str, Any],
    addons: list[tuple[int, int]],
    bundles: list[tuple[int, int]],
    partner_id: int | None = None,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Resolve addon and bundle selections to priced lines in the product's category."""
    category_id = int(product["service_category_id"])
    addon_lines = []
    for addon_id, quantity in addons:
        row = conn.execute(
            "SELECT service_category_id, partner_id, price FROM addons WHERE addon_id = ?",
            (addon_id,),
        ).fetchone()
        _check_visible("addon", addon_id, row, category_id, partner_id)
        addon_lines.append({"price": row["price"], "quantity": quantity})

    bundle_lines = []
    for bundle_id, quantity in bundles:
        row = conn.execute(
            "SELECT service_category_id, partner_id FROM bundles WHERE bundle_id = ?",
            (bundle_id,),
        ).fetchone()
        _check_visible("bundle", bundle_id, row, category_id, partner_id)
        bundle_lines.append({"unit_price": get_bundle(conn, bundle_id)["pricing"]["unit_price"], "quantity": quantity})
    return addon_lines, bundle_lines
