from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from .db import json_dumps, json_loads
from .errors import NotFoundError, ValidationError
from .pricing import validate_finance_terms

DEFAULT_COMPANY_COLOR = "#3B82F6"
IGNORED_SUBDOMAINS = {"www", "localhost"}
PAYMENT_FLAGS = {
    "is_stripe_enabled": "stripe",
    "is_kanda_enabled": "kanda",
    "is_monthly_payment_enabled": "monthly",
    "is_pay_after_installation_enabled": "pay_after_installation",
}
DEFAULT_APR_SETTINGS: dict[str, Any] = {"apr": 0, "months": [12, 24, 36, 48, 60], "deposit_percentage": 0}
DEFAULT_CALENDAR_SETTINGS: dict[str, Any] = {"enabled": False}
SETTINGS_TEXT_COLUMNS = ("gtm_event_name", "admin_email", "main_page_url")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TenantContext:
    partner_id: int
    company_name: str
    subdomain: str | None = None
    custom_domain: str | None = None
    branding: dict[str, Any] = field(default_factory=dict)


def normalize_host(raw_host: str | None) -> str:
    return (raw_host or "").strip().lower().split(":")[0]


def resolve_partner_by_host(
    conn: sqlite3.Connection,
    host: str | None,
    platform_domain: str = "localhost",
) -> dict[str, Any] | None:
    """Find the active partner serving ``host``.

    An exact custom-domain match wins (verified or not yet verified); otherwise the
    first host label is treated as a platform subdomain.
    """
    hostname = normalize_host(host)
    if not hostname:
        return None

    row = conn.execute(
        """
        SELECT * FROM partners
        WHERE status = 'active' AND custom_domain = ? AND (domain_verified = 1 OR domain_verified IS NULL)
        ORDER BY partner_id
        LIMIT 1
        """,
        (hostname,),
    ).fetchone()
    if row is not None:
        return dict(row)

    if hostname == normalize_host(platform_domain):
        return None
    first_label = hostname.split(".")[0]
    if not first_label or first_label in IGNORED_SUBDOMAINS:
        return None
    row = conn.execute(
        "SELECT * FROM partners WHERE status = 'active' AND subdomain = ? LIMIT 1",
        (first_label,),
    ).fetchone()
    return dict(row) if row is not None else None


def category_settings(conn: sqlite3.Connection, partner_id: int, category_id: int) -> dict[str, Any]:
    partner = conn.execute(
        "SELECT otp, company_color FROM partners WHERE partner_id = ?",
        (partner_id,),
    ).fetchone()
    if partner is None:
        raise NotFoundError(f"partner {partner_id} not found")
    row = conn.execute(
        "SELECT * FROM partner_settings WHERE partner_id = ? AND service_category_id = ?",
        (partner_id, category_id),
    ).fetchone()
    stored = dict(row) if row is not None else {}

    settings: dict[str, Any] = {
        "partner_id": partner_id,
        "service_category_id": category_id,
        "apr_settings": {**DEFAULT_APR_SETTINGS, **json_loads(stored.get("apr_settings"), {})},
        "calendar_settings": {**DEFAULT_CALENDAR_SETTINGS, **json_loads(stored.get("calendar_settings"), {})},
        "otp_enabled": bool(partner["otp"]),
        "company_color": partner["company_color"] or None,
    }
    for column in PAYMENT_FLAGS:
        settings[column] = bool(stored.get(column))
    for column in SETTINGS_TEXT_COLUMNS:
        settings[column] = stored.get(column) or None
    settings["enabled_payment_methods"] = [name for column, name in PAYMENT_FLAGS.items() if settings[column]]
    return settings


def save_category_settings(
    conn: sqlite3.Connection,
    partner_id: int,
    category_id: int,
    data: dict[str, Any],
) -> dict[str, Any]:
    for name in ("apr_settings", "calendar_settings"):
        if name in data and data[name] is not None and not isinstance(data[name], dict):
            raise ValidationError(f"{name} must be an object")
    current = category_settings(conn, partner_id, category_id)
    apr_settings = validate_finance_terms(data.get("apr_settings") or current["apr_settings"])

    values = {
        "apr_settings": json_dumps(apr_settings),
        "calendar_settings": json_dumps(data.get("calendar_settings") or current["calendar_settings"]),
    }
    for column in PAYMENT_FLAGS:
        values[column] = 1 if data.get(column, current[column]) else 0
    for column in SETTINGS_TEXT_COLUMNS:
        values[column] = data.get(column, current[column])

    columns = list(values)
    with conn:
        conn.execute(
            f"""
            INSERT INTO partner_settings(partner_id, service_category_id, {", ".join(columns)})
            VALUES (?, ?, {", ".join("?" for _ in columns)})
            ON CONFLICT(partner_id, service_category_id) DO UPDATE SET
                {", ".join(f"{column} = excluded.{column}" for column in columns)},
                updated_at = CURRENT_TIMESTAMP
            """,
            (partner_id, category_id, *values.values()),
        )
        if "otp_enabled" in data or "company_color" in data:
            conn.execute(
                "UPDATE partners SET otp = ?, company_color = ? WHERE partner_id = ?",
                (
                    1 if data.get("otp_enabled", current["otp_enabled"]) else 0,
                    data.get("company_color", current["company_color"]),
                    partner_id,
                ),
            )
    logger.info("partner_settings_saved", extra={"partner_id": partner_id, "service_category_id": category_id})
    return category_settings(conn, partner_id, category_id)


def resolve_tenant(
    conn: sqlite3.Connection,
    host: str | None,
    platform_domain: str = "localhost",
) -> TenantContext | None:
    partner = resolve_partner_by_host(conn, host, platform_domain)
    if partner is None:
        return None
    tenant = TenantContext(
        partner_id=int(partner["partner_id"]),
        company_name=partner["company_name"],
        subdomain=partner["subdomain"],
        custom_domain=partner["custom_domain"],
        branding={
            "company_color": partner["company_color"] or DEFAULT_COMPANY_COLOR,
            "logo_url": partner["logo_url"],
        },
    )
    logger.info("tenant_resolved", extra={"host": normalize_host(host), "partner_id": tenant.partner_id})
    return tenant


def injected_code(conn: sqlite3.Connection, host: str | None, platform_domain: str = "localhost") -> dict[str, str]:
    """Partner header/body/footer snippets; any lookup failure yields empty snippets."""
    empty = {"header_code": "", "body_code": "", "footer_code": "", "company_color": DEFAULT_COMPANY_COLOR}
    try:
        partner = resolve_partner_by_host(conn, host, platform_domain)
    except sqlite3.Error:
        logger.exception("injected_code_lookup_failed", extra={"host": normalize_host(host)})
        return empty
    if partner is None:
        return empty
    return {
        "header_code": partner["header_code"] or "",
        "body_code": partner["body_code"] or "",
        "footer_code": partner["footer_code"] or "",
        "company_color": partner["company_color"] or DEFAULT_COMPANY_COLOR,
    }
