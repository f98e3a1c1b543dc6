from __future__ import annotations

import logging
import re
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .db import json_dumps, row_to_dict
from .errors import ConflictError, NotFoundError, TenantMismatchError, ValidationError
from .questions import filter_answers, list_questions, validate_required_answers
from .tenancy import TenantContext, category_settings

REQUIRED_SUBMISSION_FIELDS = ("service_category_id", "first_name", "last_name", "email", "postcode", "form_answers")
SUBMISSION_STATUSES = ("new", "processed", "qualified", "disqualified")
PROGRESS_RANK = {
    "quote": 0,
    "products": 1,
    "addons": 2,
    "checkout": 3,
    "enquiry": 3,
    "survey": 3,
    "booked": 4,
    "paid": 4,
}
ADDRESS_COLUMNS = (
    "address_line_1",
    "address_line_2",
    "street_name",
    "street_number",
    "building_name",
    "sub_building",
    "county",
    "formatted_address",
)
JSON_COLUMNS = ("form_answers", "selected_addons")
UNKNOWN_QUESTION = "Unknown Question"
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

logger = logging.getLogger(__name__)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_submission_payload(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError("submission payload must be an object")
    for name in REQUIRED_SUBMISSION_FIELDS:
        if _is_missing(payload.get(name)):
            raise ValidationError(f"Missing required field: {name}", details={"field": name})
    if not isinstance(payload["form_answers"], dict):
        raise ValidationError("form_answers must be an object keyed by question id")
    if not EMAIL_PATTERN.match(str(payload["email"]).strip()):
        raise ValidationError("email is not a valid address", details={"field": "email"})
    try:
        int(payload["service_category_id"])
    except (TypeError, ValueError) as exc:
        raise ValidationError("service_category_id must be an integer") from exc
    return payload


def normalize_answers(
    conn: sqlite3.Connection,
    category_id: int,
    raw_answers: dict[Any, Any],
) -> list[dict[str, Any]]:
    """Turn ``{question_id: answer}`` into ``[{question_id, question_text, answer}]``.

    Known questions of ``category_id`` come first in form order. Any other id, including
    another category's or a deleted question, keeps its input order and is labelled
    "Unknown Question".
    """
    if not raw_answers:
        return []
    numeric_ids = []
    for key in raw_answers:
        try:
            numeric_ids.append(int(key))
        except (TypeError, ValueError):
            continue

    known: dict[str, tuple[tuple[int, int, int], str]] = {}
    if numeric_ids:
        placeholders = ",".join("?" for _ in numeric_ids)
        rows = conn.execute(
            f"""
            SELECT question_id, question_text, step_number, display_order_in_step
            FROM form_questions
            WHERE service_category_id = ? AND is_deleted = 0 AND question_id IN ({placeholders})
            """,
            (category_id, *numeric_ids),
        ).fetchall()
        known = {
            str(row["question_id"]): (
                (row["step_number"], row["display_order_in_step"], row["question_id"]),
                row["question_text"],
            )
            for row in rows
        }

    ordered_known = sorted((key for key in map(str, raw_answers) if key in known), key=lambda key: known[key][0])
    unknown = [key for key in map(str, raw_answers) if key not in known]
    lookup = {str(key): value for key, value in raw_answers.items()}
    return [
        {"question_id": key, "question_text": known[key][1], "answer": lookup[key]} for key in ordered_known
    ] + [{"question_id": key, "question_text": UNKNOWN_QUESTION, "answer": lookup[key]} for key in unknown]


def answer_list(form_answers: Any) -> list[dict[str, Any]]:
    if isinstance(form_answers, dict):
        return list(form_answers.get("answers") or [])
    return list(form_answers or [])


def _record_event(conn: sqlite3.Connection, submission_id: int, event_type: str, payload: dict[str, Any]) -> None:
    conn.execute(
        "INSERT INTO submission_events(submission_id, event_type, payload) VALUES (?, ?, ?)",
        (submission_id, event_type, json_dumps(payload)),
    )


def get_submission(conn: sqlite3.Connection, submission_id: int) -> dict[str, Any]:
    row = conn.execute("SELECT * FROM quote_submissions WHERE submission_id = ?", (submission_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"submission {submission_id} not found")
    return row_to_dict(row, JSON_COLUMNS)


def list_events(conn: sqlite3.Connection, submission_id: int) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM submission_events WHERE submission_id = ? ORDER BY id",
        (submission_id,),
    ).fetchall()
    return [row_to_dict(row, ("payload",)) for row in rows]


def _check_tenant(submission: dict[str, Any], tenant: TenantContext | None) -> None:
    if tenant is None:
        return
    owner = submission.get("assigned_partner_id")
    if owner is not None and int(owner) != tenant.partner_id:
        raise TenantMismatchError(
            "submission belongs to another partner",
            details={"submission_id": submission["submission_id"]},
        )


def _apply_update(
    conn: sqlite3.Connection,
    submission_id: int,
    assignments: dict[str, Any],
    event_type: str,
    event_payload: dict[str, Any],
    expected_version: int | None = None,
) -> dict[str, Any]:
    columns = ", ".join(f"{column} = ?" for column in assignments)
    with conn:
        cursor = conn.execute(
            f"""
            UPDATE quote_submissions
            SET {columns}, version = version + 1, updated_at = CURRENT_TIMESTAMP
            WHERE submission_id = ? AND (? IS NULL OR version = ?)
            """,
            (*assignments.values(), submission_id, expected_version, expected_version),
        )
        if cursor.rowcount == 0:
            raise ConflictError(
                f"submission {submission_id} was modified concurrently",
                details={"expected_version": expected_version},
            )
        _record_event(conn, submission_id, event_type, event_payload)
    logger.info("submission_updated", extra={"submission_id": submission_id, "event_type": event_type})
    return get_submission(conn, submission_id)


def create_submission(
    conn: sqlite3.Connection,
    payload: dict[str, Any],
    tenant: TenantContext | None = None,
    request_meta: dict[str, Any] | None = None,
) -> dict[str, Any]:
    validate_submission_payload(payload)
    category_id = int(payload["service_category_id"])
    category = conn.execute(
        "SELECT service_category_id FROM service_categories WHERE service_category_id = ?",
        (category_id,),
    ).fetchone()
    if category is None:
        raise NotFoundError(f"service category {category_id} not found")

    questions = list_questions(conn, category_id, include_inactive=True)
    answers = filter_answers(questions, payload["form_answers"])
    validate_required_answers(questions, answers)
    normalized = normalize_answers(conn, category_id, answers)

    meta = request_meta or {}
    partner_id = tenant.partner_id if tenant else None
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO quote_submissions(
                service_category_id, first_name, last_name, email, phone, city, postcode, form_answers,
                assigned_partner_id, ip_address, user_agent, referral_source
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                category_id,
                str(payload["first_name"]).strip(),
                str(payload["last_name"]).strip(),
                str(payload["email"]).strip().lower(),
                payload.get("phone") or None,
                payload.get("city") or None,
                str(payload["postcode"]).strip().upper(),
                json_dumps(normalized),
                partner_id,
                meta.get("ip_address"),
                meta.get("user_agent"),
                meta.get("referral_source"),
            ),
        )
        submission_id = int(cursor.lastrowid)
        _record_event(
            conn,
            submission_id,
            "created",
            {"answer_count": len(normalized), "assigned_partner_id": partner_id},
        )

    gtm_event_name = None
    if partner_id is not None:
        gtm_event_name = category_settings(conn, partner_id, category_id)["gtm_event_name"]
    logger.info(
        "submission_created",
        extra={"submission_id": submission_id, "service_category_id": category_id, "partner_id": partner_id},
    )
    return {"submission": get_submission(conn, submission_id), "gtm_event_name": gtm_event_name}


def update_status(
    conn: sqlite3.Connection,
    submission_id: int,
    status: str,
    expected_version: int | None = None,
) -> dict[str, Any]:
    if status not in SUBMISSION_STATUSES:
        raise ValidationError(f"unsupported status: {status}", details={"allowed": list(SUBMISSION_STATUSES)})
    current = get_submission(conn, submission_id)
    return _apply_update(
        conn,
        submission_id,
        {"status": status},
        "status_changed",
        {"from": current["status"], "to": status},
        expected_version,
    )


def advance_progress(
    conn: sqlite3.Connection,
    submission_id: int,
    step: str,
    tenant: TenantContext | None = None,
    expected_version: int | None = None,
) -> dict[str, Any]:
    if step not in PROGRESS_RANK:
        raise ValidationError(f"unsupported progress step: {step}")
    current = get_submission(conn, submission_id)
    _check_tenant(current, tenant)
    if PROGRESS_RANK[step] < PROGRESS_RANK[current["progress_step"]]:
        raise ValidationError(
            f"cannot move progress back from {current['progress_step']} to {step}",
            details={"current": current["progress_step"], "requested": step},
        )
    return _apply_update(
        conn,
        submission_id,
        {"progress_step": step},
        "progress_advanced",
        {"from": current["progress_step"], "to": step},
        expected_version,
    )


def update_address(
    conn: sqlite3.Connection,
    submission_id: int,
    address_data: dict[str, Any] | None,
    progress_step: str = "enquiry",
    tenant: TenantContext | None = None,
) -> dict[str, Any]:
    if not address_data or not isinstance(address_data, dict):
        raise ValidationError("Address data is required")
    if progress_step not in PROGRESS_RANK:
        raise ValidationError(f"unsupported progress step: {progress_step}")
    current = get_submission(conn, submission_id)
    _check_tenant(current, tenant)

    country = address_data.get("country") or "United Kingdom"
    address_type = address_data.get("address_type") or "residential"
    address_details = {column: address_data.get(column) for column in ADDRESS_COLUMNS}
    address_details.update(
        {
            "town_or_city": address_data.get("town_or_city"),
            "postcode": address_data.get("postcode"),
            "country": country,
            "address_type": address_type,
            "selected_at": datetime.now(timezone.utc).isoformat(),
        }
    )
    form_answers = {"answers": answer_list(current["form_answers"]), "address_details": address_details}

    step = current["progress_step"]
    if PROGRESS_RANK[progress_step] >= PROGRESS_RANK[step]:
        step = progress_step

    assignments: dict[str, Any] = {column: address_data.get(column) for column in ADDRESS_COLUMNS}
    assignments.update(
        {
            "city": address_data.get("town_or_city") or current["city"],
            "postcode": address_data.get("postcode") or current["postcode"],
            "country": country,
            "address_type": address_type,
            "form_answers": json_dumps(form_answers),
            "progress_step": step,
        }
    )
    return _apply_update(
        conn,
        submission_id,
        assignments,
        "address_updated",
        {"postcode": assignments["postcode"], "progress_step": step},
    )


def select_product(
    conn: sqlite3.Connection,
    submission_id: int,
    product_id: int,
    tenant: TenantContext | None = None,
) -> dict[str, Any]:
    current = get_submission(conn, submission_id)
    _check_tenant(current, tenant)
    product = conn.execute(
        "SELECT product_id, service_category_id, is_active FROM products WHERE product_id = ?",
        (product_id,),
    ).fetchone()
    if product is None or not product["is_active"]:
        raise NotFoundError(f"product {product_id} not found")
    if int(product["service_category_id"]) != int(current["service_category_id"]):
        raise ValidationError("product does not belong to the submission's category")

    step = current["progress_step"]
    if PROGRESS_RANK[step] < PROGRESS_RANK["addons"]:
        step = "addons"
    return _apply_update(
        conn,
        submission_id,
        {"selected_product_id": product_id, "progress_step": step},
        "product_selected",
        {"product_id": product_id},
    )


def select_addons(
    conn: sqlite3.Connection,
    submission_id: int,
    addons: dict[str, Any] | None,
    bundles: dict[str, Any] | None = None,
    tenant: TenantContext | None = None,
) -> dict[str, Any]:
    """Persist addon/bundle quantities keyed by id and move the lead to checkout."""
    current = get_submission(conn, submission_id)
    _check_tenant(current, tenant)
    selection = {"addons": _quantities(addons, "addon"), "bundles": _quantities(bundles, "bundle")}

    step = current["progress_step"]
    if PROGRESS_RANK[step] < PROGRESS_RANK["checkout"]:
        step = "checkout"
    return _apply_update(
        conn,
        submission_id,
        {"selected_addons": json_dumps(selection), "progress_step": step},
        "addons_selected",
        selection,
    )


def _quantities(raw: dict[str, Any] | None, label: str) -> dict[str, int]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(f"{label} selection must be an object keyed by id")
    cleaned: dict[str, int] = {}
    for key, value in raw.items():
        try:
            quantity = int(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{label} {key} quantity must be an integer") from exc
        if quantity < 0:
            raise ValidationError(f"{label} {key} quantity must not be negative")
        if quantity:
            cleaned[str(key)] = quantity
    return cleaned

