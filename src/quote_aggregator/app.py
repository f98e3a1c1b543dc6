from __future__ import annotations

import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .catalog import (
    checkout_lines,
    create_addon,
    create_bundle,
    create_product,
    get_category_by_slug,
    get_checkout_product,
    get_product_by_slug,
    list_addons,
    list_bundles,
    update_category_layout,
    update_product,
)
from .db import connect, init_db
from .errors import NotFoundError, QuoteAggregatorError, ValidationError
from .field_schema import FieldSchemaStore
from .matching import get_recommended_products, parse_filter_list
from .pricing import monthly_payment, order_total
from .questions import (
    create_question,
    form_steps,
    list_questions,
    soft_delete_question,
    update_question,
    visible_questions,
)
from .renderer import render_product_fields
from .submissions import (
    create_submission,
    get_submission,
    select_addons,
    select_product,
    update_address,
    update_status,
)
from .tenancy import TenantContext, category_settings, injected_code, resolve_tenant, save_category_settings


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_app(app: Flask, app_name: str, database_path: str | None) -> None:
    app.config["APP_NAME"] = app_name
    app.config["DATABASE_PATH"] = database_path or os.environ.get("QUOTES_DB_PATH", "./quotes.db")
    app.config["PLATFORM_DOMAIN"] = os.environ.get("PLATFORM_DOMAIN", "localhost")
    app.config["UPSTREAM_TIMEOUT_SECONDS"] = float(os.environ.get("UPSTREAM_TIMEOUT_SECONDS", "10"))
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    init_db(_db_path(app))

    @app.teardown_appcontext
    def close_connection(_error: BaseException | None) -> None:
        conn = g.pop("conn", None)
        if conn is not None:
            conn.close()

    @app.get("/healthz")
    def healthz() -> Any:
        _conn(app).execute("SELECT 1").fetchone()
        return jsonify({"status": "ok", "service": app_name})


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(QuoteAggregatorError)
    def handle_domain_error(error: QuoteAggregatorError) -> Any:
        app.logger.warning(
            "request_rejected",
            extra={
                "path": request.path,
                "method": request.method,
                "status_code": error.status_code,
                "error": error.message,
            },
        )
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        return jsonify({"error": "invalid request payload"}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        return jsonify({"error": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        return jsonify({"error": "internal server error"}), 500


def _conn(app: Flask) -> sqlite3.Connection:
    if "conn" not in g:
        g.conn = connect(_db_path(app))
    return g.conn


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False) or {}
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _int_arg(name: str, *aliases: str, required: bool = True) -> int | None:
    for key in (name, *aliases):
        raw = request.args.get(key)
        if raw not in (None, ""):
            try:
                return int(raw)
            except ValueError as exc:
                raise ValidationError(f"{key} must be an integer") from exc
    if required:
        raise ValidationError(f"{name} is required")
    return None


def _int_field(body: dict[str, Any], name: str, *aliases: str) -> int:
    for key in (name, *aliases):
        if body.get(key) not in (None, ""):
            try:
                return int(body[key])
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"{key} must be an integer") from exc
    raise ValidationError(f"{name} is required")


def _expected_version(body: dict[str, Any]) -> int | None:
    raw = body.get("expected_version")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError("expected_version must be an integer") from exc


def _selection(body: dict[str, Any], name: str) -> list[tuple[int, int]]:
    raw = body.get(name) or {}
    if not isinstance(raw, dict):
        raise ValidationError(f"{name} must be an object keyed by id")
    try:
        return [(int(key), int(quantity)) for key, quantity in raw.items()]
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} ids and quantities must be integers") from exc


def _tenant() -> TenantContext | None:
    return g.get("tenant")


def _tenant_partner_id() -> int | None:
    tenant = _tenant()
    return tenant.partner_id if tenant else None


def _field_payload(result: dict[str, Any]) -> dict[str, Any]:
    payload = {
        "parent": result["parent"].to_dict(),
        "children": [item.to_dict() for item in result["children"]],
        "grandchildren": [item.to_dict() for item in result["grandchildren"]],
    }
    if "message" in result:
        payload["message"] = result["message"]
    return payload


def create_admin_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure_app(app, "admin", database_path)
    _configure_error_handlers(app)

    @app.get("/api/category-fields/simplified")
    def list_category_fields() -> Any:
        category_id = _int_arg("categoryId", "category_id")
        fields = FieldSchemaStore(_conn(app)).list_fields(category_id)
        return jsonify([item.to_dict() for item in fields])

    @app.post("/api/category-fields/simplified")
    def create_category_field() -> Any:
        body = _json_body()
        created = FieldSchemaStore(_conn(app)).create_field(body)
        return jsonify(created.to_dict()), 201

    @app.patch("/api/category-fields/simplified")
    def update_category_field() -> Any:
        body = _json_body()
        field_id = _int_field(body, "fieldId", "field_id")
        changes = {key: value for key, value in body.items() if key not in {"fieldId", "field_id", "expected_version"}}
        updated = FieldSchemaStore(_conn(app)).update_field(field_id, changes, _expected_version(body))
        return jsonify(updated.to_dict())

    @app.delete("/api/category-fields/simplified")
    def delete_category_field() -> Any:
        field_id = _int_arg("fieldId", "field_id")
        cascade = request.args.get("cascade", "").lower() in {"1", "true", "yes"}
        deleted = FieldSchemaStore(_conn(app)).delete_field(field_id, cascade=cascade)
        return jsonify({"success": True, "deleted_ids": deleted})

    @app.get("/api/category-fields/tree")
    def category_field_tree() -> Any:
        category_id = _int_arg("categoryId", "category_id")
        tree = FieldSchemaStore(_conn(app)).field_tree(category_id)
        return jsonify([item.to_dict(include_children=True) for item in tree])

    @app.patch("/api/category-fields/reorder")
    def reorder_category_fields() -> Any:
        body = _json_body()
        FieldSchemaStore(_conn(app)).reorder_fields(body.get("updates"))
        return jsonify({"success": True})

    @app.post("/api/category-fields/create-with-children")
    def create_category_field_tree() -> Any:
        body = _json_body()
        result = FieldSchemaStore(_conn(app)).create_field_with_children(body.get("parent"), body.get("children"))
        app.logger.info("field_hierarchy_request_completed", extra={"field_id": result["parent"].field_id})
        return jsonify({"success": True, **_field_payload(result)}), 201

    @app.patch("/api/category-fields/update-with-children")
    def update_category_field_tree() -> Any:
        body = _json_body()
        if not body.get("fieldId") or not body.get("parent"):
            raise ValidationError("Field ID and parent data are required")
        result = FieldSchemaStore(_conn(app)).update_field_with_children(
            _int_field(body, "fieldId"),
            body.get("parent"),
            body.get("children"),
            _expected_version(body),
        )
        return jsonify({"success": True, **_field_payload(result)})

    @app.get("/api/form-questions")
    def admin_list_questions() -> Any:
        category_id = _int_arg("category_id", "categoryId")
        questions = list_questions(_conn(app), category_id, include_inactive=True)
        return jsonify([item.to_dict() for item in questions])

    @app.post("/api/form-questions")
    def admin_create_question() -> Any:
        question = create_question(_conn(app), _json_body())
        return jsonify(question.to_dict()), 201

    @app.patch("/api/form-questions/<int:question_id>")
    def admin_update_question(question_id: int) -> Any:
        question = update_question(_conn(app), question_id, _json_body())
        return jsonify(question.to_dict())

    @app.delete("/api/form-questions/<int:question_id>")
    def admin_delete_question(question_id: int) -> Any:
        soft_delete_question(_conn(app), question_id)
        return jsonify({"status": "deleted"})

    @app.patch("/api/service-categories/<int:category_id>/layout")
    def admin_update_category_layout(category_id: int) -> Any:
        body = _json_body()
        return jsonify(update_category_layout(_conn(app), category_id, body.get("products_list_layout")))

    @app.post("/api/products")
    def admin_create_product() -> Any:
        product = create_product(_conn(app), _json_body())
        return jsonify(product), 201

    @app.put("/api/products/<int:product_id>")
    def admin_update_product(product_id: int) -> Any:
        product = update_product(_conn(app), product_id, _json_body())
        return jsonify(product)

    @app.post("/api/addons")
    def admin_create_addon() -> Any:
        return jsonify(create_addon(_conn(app), _json_body())), 201

    @app.post("/api/bundles")
    def admin_create_bundle() -> Any:
        return jsonify(create_bundle(_conn(app), _json_body())), 201

    @app.put("/api/partner-settings")
    def admin_save_partner_settings() -> Any:
        body = _json_body()
        settings = save_category_settings(
            _conn(app),
            _int_field(body, "partner_id"),
            _int_field(body, "service_category_id"),
            body,
        )
        return jsonify({"data": settings})

    @app.put("/api/quote-submissions/<int:submission_id>/status")
    def admin_update_submission_status(submission_id: int) -> Any:
        body = _json_body()
        submission = update_status(
            _conn(app),
            submission_id,
            str(body.get("status") or ""),
            _expected_version(body),
        )
        return jsonify(submission)

    return app


def create_quote_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure_app(app, "quote", database_path)
    _configure_error_handlers(app)

    @app.before_request
    def resolve_request_tenant() -> None:
        g.tenant = resolve_tenant(_conn(app), request.host, platform_domain=app.config["PLATFORM_DOMAIN"])

    @app.get("/api/form-questions")
    def quote_form_questions() -> Any:
        category_id = _int_arg("category_id", "categoryId")
        raw_answers = request.args.get("answers")
        try:
            answers = json.loads(raw_answers) if raw_answers else {}
        except json.JSONDecodeError as exc:
            raise ValidationError("answers must be a JSON object") from exc
        if not isinstance(answers, dict):
            raise ValidationError("answers must be a JSON object")
        questions = list_questions(_conn(app), category_id)
        steps = form_steps(questions, answers)
        return jsonify(
            {
                "questions": [item.to_dict() for item in visible_questions(questions, answers)],
                "steps": [
                    {"step_number": step["step_number"], "questions": [item.to_dict() for item in step["questions"]]}
                    for step in steps
                ],
            }
        )

    @app.post("/api/quote-submissions")
    def quote_create_submission() -> Any:
        body = _json_body()
        result = create_submission(
            _conn(app),
            body,
            tenant=_tenant(),
            request_meta={
                "ip_address": request.headers.get("X-Forwarded-For", request.remote_addr),
                "user_agent": request.headers.get("User-Agent"),
                "referral_source": body.get("referral_source") or request.headers.get("Referer"),
            },
        )
        return jsonify(result), 201

    @app.get("/api/products")
    def quote_recommended_products() -> Any:
        submission_id = request.args.get("submission_id")
        if not submission_id:
            raise ValidationError("No submission ID provided")
        try:
            submission_key = int(submission_id)
        except ValueError as exc:
            raise ValidationError("submission_id must be an integer") from exc
        result = get_recommended_products(
            _conn(app),
            request.args.get("category"),
            submission_key,
            filters={
                "boiler_types": parse_filter_list(request.args.get("boilerTypes")),
                "fuel_types": parse_filter_list(request.args.get("fuelTypes")),
                "property_sizes": parse_filter_list(request.args.get("propertySizes")),
            },
            partner_id=_tenant_partner_id(),
        )
        return jsonify(result)

    @app.get("/api/products/<slug>")
    def quote_product_detail(slug: str) -> Any:
        conn = _conn(app)
        category = get_category_by_slug(conn, request.args.get("category"))
        category_id = int(category["service_category_id"])
        product = get_product_by_slug(conn, category_id, slug, _tenant_partner_id())
        tree = FieldSchemaStore(conn).field_tree(category_id)
        rendered = render_product_fields(tree, product["product_fields"])
        return jsonify({**product, "rendered_fields": [item.to_dict() for item in rendered]})

    @app.get("/api/addons")
    def quote_addons() -> Any:
        conn = _conn(app)
        category = get_category_by_slug(conn, request.args.get("category"))
        category_id = int(category["service_category_id"])
        partner_id = _tenant_partner_id()
        return jsonify(
            {
                "addons": list_addons(conn, category_id, partner_id),
                "bundles": list_bundles(conn, category_id, partner_id),
            }
        )

    @app.post("/api/checkout/price")
    def quote_checkout_price() -> Any:
        body = _json_body()
        conn = _conn(app)
        partner_id = _tenant_partner_id()
        product = get_checkout_product(conn, _int_field(body, "product_id"), partner_id)
        addon_lines, bundle_lines = checkout_lines(
            conn,
            product,
            _selection(body, "addons"),
            _selection(body, "bundles"),
            partner_id,
        )
        totals = order_total(product["price"], addon_lines, bundle_lines)
        payload: dict[str, Any] = {"totals": totals.to_dict()}

        tenant = _tenant()
        if tenant is not None and body.get("months"):
            settings = category_settings(conn, tenant.partner_id, int(product["service_category_id"]))
            if settings["is_monthly_payment_enabled"]:
                apr = settings["apr_settings"]
                payload["monthly_payment"] = str(
                    monthly_payment(totals.total, _int_field(body, "months"), apr.get("apr"), apr.get("deposit_percentage"))
                )
        return jsonify(payload)

    @app.put("/api/partner-leads/update-address")
    def quote_update_address() -> Any:
        body = _json_body()
        submission = update_address(
            _conn(app),
            _int_field(body, "submissionId", "submission_id"),
            body.get("addressData"),
            progress_step=body.get("progressStep") or "enquiry",
            tenant=_tenant(),
        )
        return jsonify(
            {
                "success": True,
                "data": {
                    "submission_id": submission["submission_id"],
                    "address_saved": True,
                    "progress_step": submission["progress_step"],
                },
            }
        )

    @app.put("/api/partner-leads/select-product")
    def quote_select_product() -> Any:
        body = _json_body()
        submission = select_product(
            _conn(app),
            _int_field(body, "submissionId", "submission_id"),
            _int_field(body, "productId", "product_id"),
            tenant=_tenant(),
        )
        return jsonify({"success": True, "data": submission})

    @app.put("/api/partner-leads/select-addons")
    def quote_select_addons() -> Any:
        body = _json_body()
        submission = select_addons(
            _conn(app),
            _int_field(body, "submissionId", "submission_id"),
            body.get("addons"),
            body.get("bundles"),
            tenant=_tenant(),
        )
        return jsonify({"success": True, "data": submission})

    @app.get("/api/partner-settings")
    def quote_partner_settings() -> Any:
        tenant = _tenant()
        if tenant is None:
            raise NotFoundError("No partner is configured for this host")
        category_id = _int_arg("service_category_id")
        conn = _conn(app)
        settings = category_settings(conn, tenant.partner_id, category_id)
        snippets = injected_code(conn, request.host, app.config["PLATFORM_DOMAIN"])
        return jsonify({"data": {**settings, "branding": tenant.branding, "code": snippets}})

    @app.get("/api/quote-submissions/<int:submission_id>")
    def quote_get_submission(submission_id: int) -> Any:
        submission = get_submission(_conn(app), submission_id)
        partner_id = _tenant_partner_id()
        if partner_id is not None and submission["assigned_partner_id"] not in (None, partner_id):
            raise NotFoundError(f"submission {submission_id} not found")
        return jsonify(submission)

    return app
