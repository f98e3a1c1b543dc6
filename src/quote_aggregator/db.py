from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

SCHEMA = """
CREATE TABLE IF NOT EXISTS service_categories (
    service_category_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    products_list_layout TEXT NOT NULL DEFAULT 'default',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS category_fields (
    field_id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_category_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    key TEXT NOT NULL,
    field_type TEXT NOT NULL,
    is_required INTEGER NOT NULL DEFAULT 0,
    is_multi INTEGER NOT NULL DEFAULT 0,
    display_order INTEGER NOT NULL DEFAULT 0,
    display_format TEXT NOT NULL DEFAULT 'default',
    options TEXT,
    parent_field_id INTEGER,
    field_group_type TEXT,
    help_text TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (service_category_id) REFERENCES service_categories(service_category_id),
    FOREIGN KEY (parent_field_id) REFERENCES category_fields(field_id)
);

CREATE TABLE IF NOT EXISTS products (
    product_id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_category_id INTEGER NOT NULL,
    partner_id INTEGER,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    price TEXT,
    image_url TEXT,
    specifications TEXT NOT NULL DEFAULT '{}',
    product_fields TEXT NOT NULL DEFAULT '{}',
    is_active INTEGER NOT NULL DEFAULT 1,
    is_featured INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (service_category_id) REFERENCES service_categories(service_category_id)
);

CREATE TABLE IF NOT EXISTS form_questions (
    question_id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_category_id INTEGER NOT NULL,
    question_text TEXT NOT NULL,
    helper_text TEXT,
    step_number INTEGER NOT NULL DEFAULT 1,
    display_order_in_step INTEGER NOT NULL DEFAULT 0,
    is_multiple_choice INTEGER NOT NULL DEFAULT 0,
    allow_multiple_selections INTEGER NOT NULL DEFAULT 0,
    is_required INTEGER NOT NULL DEFAULT 0,
    answer_options TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    is_deleted INTEGER NOT NULL DEFAULT 0,
    conditional_display TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (service_category_id) REFERENCES service_categories(service_category_id)
);

CREATE TABLE IF NOT EXISTS partners (
    partner_id INTEGER PRIMARY KEY AUTOINCREMENT,
    company_name TEXT NOT NULL,
    contact_person TEXT NOT NULL DEFAULT '',
    subdomain TEXT UNIQUE,
    custom_domain TEXT,
    domain_verified INTEGER,
    status TEXT NOT NULL DEFAULT 'active',
    company_color TEXT,
    logo_url TEXT,
    otp INTEGER NOT NULL DEFAULT 0,
    header_code TEXT,
    body_code TEXT,
    footer_code TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS partner_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    partner_id INTEGER NOT NULL,
    service_category_id INTEGER NOT NULL,
    apr_settings TEXT NOT NULL DEFAULT '{}',
    is_stripe_enabled INTEGER NOT NULL DEFAULT 0,
    is_kanda_enabled INTEGER NOT NULL DEFAULT 0,
    is_monthly_payment_enabled INTEGER NOT NULL DEFAULT 0,
    is_pay_after_installation_enabled INTEGER NOT NULL DEFAULT 0,
    calendar_settings TEXT NOT NULL DEFAULT '{}',
    gtm_event_name TEXT,
    admin_email TEXT,
    main_page_url TEXT,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (partner_id) REFERENCES partners(partner_id),
    FOREIGN KEY (service_category_id) REFERENCES service_categories(service_category_id)
);

CREATE TABLE IF NOT EXISTS quote_submissions (
    submission_id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_category_id INTEGER NOT NULL,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    email TEXT NOT NULL,
    phone TEXT,
    city TEXT,
    postcode TEXT NOT NULL,
    address_line_1 TEXT,
    address_line_2 TEXT,
    street_name TEXT,
    street_number TEXT,
    building_name TEXT,
    sub_building TEXT,
    county TEXT,
    country TEXT,
    address_type TEXT,
    formatted_address TEXT,
    form_answers TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'new',
    progress_step TEXT NOT NULL DEFAULT 'quote',
    assigned_partner_id INTEGER,
    selected_product_id INTEGER,
    selected_addons TEXT NOT NULL DEFAULT '{}',
    ip_address TEXT,
    user_agent TEXT,
    referral_source TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (service_category_id) REFERENCES service_categories(service_category_id),
    FOREIGN KEY (assigned_partner_id) REFERENCES partners(partner_id)
);

CREATE TABLE IF NOT EXISTS submission_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    submission_id INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (submission_id) REFERENCES quote_submissions(submission_id)
);

CREATE TABLE IF NOT EXISTS addons (
    addon_id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_category_id INTEGER NOT NULL,
    partner_id INTEGER,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    price TEXT NOT NULL,
    addon_type INTEGER NOT NULL DEFAULT 0,
    allow_multiple INTEGER NOT NULL DEFAULT 0,
    max_count INTEGER,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (service_category_id) REFERENCES service_categories(service_category_id)
);

CREATE TABLE IF NOT EXISTS bundles (
    bundle_id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_category_id INTEGER,
    partner_id INTEGER,
    title TEXT NOT NULL,
    description TEXT,
    discount_type TEXT NOT NULL DEFAULT 'fixed',
    discount_value TEXT NOT NULL DEFAULT '0',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS bundle_addons (
    bundle_addon_id INTEGER PRIMARY KEY AUTOINCREMENT,
    bundle_id INTEGER NOT NULL,
    addon_id INTEGER NOT NULL,
    quantity INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (bundle_id) REFERENCES bundles(bundle_id),
    FOREIGN KEY (addon_id) REFERENCES addons(addon_id)
);
"""


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    with conn:
        conn.executescript(SCHEMA)
        migrate_field_schema(conn)
        migrate_catalog_schema(conn)
        migrate_submission_schema(conn)
        seed_default_category(conn)
    conn.close()


def migrate_field_schema(conn: sqlite3.Connection) -> None:
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(category_fields)").fetchall()}
    if "version" not in columns:
        conn.execute("ALTER TABLE category_fields ADD COLUMN version INTEGER NOT NULL DEFAULT 1")
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_category_fields_top_level_key
        ON category_fields(service_category_id, key)
        WHERE parent_field_id IS NULL
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_category_fields_child_key
        ON category_fields(parent_field_id, key)
        WHERE parent_field_id IS NOT NULL
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_category_fields_order
        ON category_fields(service_category_id, parent_field_id, display_order)
        """
    )


def migrate_catalog_schema(conn: sqlite3.Connection) -> None:
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(service_categories)").fetchall()}
    if "products_list_layout" not in columns:
        conn.execute("ALTER TABLE service_categories ADD COLUMN products_list_layout TEXT NOT NULL DEFAULT 'default'")
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_products_slug
        ON products(service_category_id, IFNULL(partner_id, 0), slug)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_form_questions_order
        ON form_questions(service_category_id, step_number, display_order_in_step)
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_partner_settings_scope
        ON partner_settings(partner_id, service_category_id)
        """
    )


def migrate_submission_schema(conn: sqlite3.Connection) -> None:
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(quote_submissions)").fetchall()}
    if "version" not in columns:
        conn.execute("ALTER TABLE quote_submissions ADD COLUMN version INTEGER NOT NULL DEFAULT 1")
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_submission_events_lookup
        ON submission_events(submission_id, id)
        """
    )


def seed_default_category(conn: sqlite3.Connection) -> None:
    row = conn.execute("SELECT service_category_id FROM service_categories LIMIT 1").fetchone()
    if row is not None:
        return

    conn.execute(
        "INSERT INTO service_categories(name, slug, description) VALUES (?, ?, ?)",
        ("Boilers", "boiler", "Boiler replacement and installation quotes."),
    )


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def json_loads(raw: str | None, default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


def row_to_dict(row: sqlite3.Row | None, json_columns: tuple[str, ...] = ()) -> dict[str, Any] | None:
    if row is None:
        return None
    item = dict(row)
    for column in json_columns:
        if column in item:
            item[column] = json_loads(item[column])
    return item
