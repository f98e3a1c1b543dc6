import sqlite3

import pytest

from quote_aggregator import tenancy
from quote_aggregator.db import connect, init_db
from quote_aggregator.errors import NotFoundError, ValidationError
from quote_aggregator.tenancy import (
    category_settings,
    injected_code,
    normalize_host,
    resolve_partner_by_host,
    resolve_tenant,
    save_category_settings,
)


def seed_partners(tmp_path):
    db = tmp_path / "quotes.db"
    init_db(db)
    conn = connect(db)
    with conn:
        conn.execute(
            """
            INSERT INTO partners(company_name, subdomain, custom_domain, domain_verified, company_color, header_code)
            VALUES ('Acme Heating', 'acme', 'quotes.acme.co.uk', 1, '#112233', '<script>gtm()</script>')
            """
        )
        conn.execute(
            "INSERT INTO partners(company_name, subdomain, custom_domain, domain_verified) "
            "VALUES ('Pending Ltd', 'pending', 'pending.example', NULL)"
        )
        conn.execute(
            "INSERT INTO partners(company_name, subdomain, custom_domain, domain_verified) "
            "VALUES ('Rejected Ltd', 'rejected', 'quotes.rejected.example', 0)"
        )
        conn.execute("INSERT INTO partners(company_name, subdomain, status) VALUES ('Gone Ltd', 'gone', 'inactive')")
    return conn


def test_normalize_host_strips_port_and_case() -> None:
    assert normalize_host("Acme.Platform.io:8443") == "acme.platform.io"
    assert normalize_host(None) == ""


def test_custom_domain_wins_over_subdomain(tmp_path) -> None:
    conn = seed_partners(tmp_path)
    assert resolve_partner_by_host(conn, "quotes.acme.co.uk:443")["company_name"] == "Acme Heating"
    assert resolve_partner_by_host(conn, "pending.example")["company_name"] == "Pending Ltd"
    assert resolve_partner_by_host(conn, "quotes.rejected.example") is None


def test_subdomain_fallback_skips_reserved_labels(tmp_path) -> None:
    conn = seed_partners(tmp_path)
    assert resolve_partner_by_host(conn, "acme.platform.io", "platform.io")["partner_id"] == 1
    assert resolve_partner_by_host(conn, "www.platform.io", "platform.io") is None
    assert resolve_partner_by_host(conn, "localhost:5000") is None
    assert resolve_partner_by_host(conn, "gone.platform.io", "platform.io") is None


def test_resolve_tenant_builds_context(tmp_path) -> None:
    conn = seed_partners(tmp_path)
    tenant = resolve_tenant(conn, "acme.platform.io", platform_domain="platform.io")
    assert tenant.partner_id == 1
    assert tenant.subdomain == "acme"
    assert tenant.branding == {"company_color": "#112233", "logo_url": None}
    assert category_settings(conn, tenant.partner_id, 1)["enabled_payment_methods"] == []
    assert resolve_tenant(conn, "nobody.platform.io", platform_domain="platform.io") is None


def test_settings_merge_defaults_and_payment_flags(tmp_path) -> None:
    conn = seed_partners(tmp_path)
    saved = save_category_settings(
        conn,
        1,
        1,
        {
            "apr_settings": {"apr": 9.9},
            "is_stripe_enabled": True,
            "is_monthly_payment_enabled": True,
            "gtm_event_name": "acme_quote",
            "otp_enabled": True,
        },
    )
    assert saved["apr_settings"]["apr"] == 9.9
    assert saved["apr_settings"]["months"] == [12, 24, 36, 48, 60]
    assert saved["enabled_payment_methods"] == ["stripe", "monthly"]
    assert saved["otp_enabled"] is True

    again = save_category_settings(conn, 1, 1, {"is_stripe_enabled": False})
    assert again["enabled_payment_methods"] == ["monthly"]
    assert again["gtm_event_name"] == "acme_quote"
    assert conn.execute("SELECT COUNT(*) FROM partner_settings").fetchone()[0] == 1

    with pytest.raises(ValidationError):
        save_category_settings(conn, 1, 1, {"apr_settings": "9.9"})
    with pytest.raises(ValidationError, match="apr"):
        save_category_settings(conn, 1, 1, {"apr_settings": {"apr": "nine"}})
    assert category_settings(conn, 1, 1)["apr_settings"]["apr"] == 9.9
    with pytest.raises(NotFoundError):
        category_settings(conn, 99, 1)


def test_injected_code_soft_fails(tmp_path, monkeypatch) -> None:
    conn = seed_partners(tmp_path)
    snippets = injected_code(conn, "acme.platform.io", "platform.io")
    assert snippets["header_code"] == "<script>gtm()</script>"
    assert snippets["footer_code"] == ""

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("no such table: partners")

    monkeypatch.setattr(tenancy, "resolve_partner_by_host", broken)
    assert injected_code(conn, "acme.platform.io")["body_code"] == ""
