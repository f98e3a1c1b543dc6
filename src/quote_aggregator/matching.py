from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable, Iterable

from .catalog import get_category_by_slug, list_active_products
from .submissions import answer_list, get_submission

Ranker = Callable[[list[dict[str, Any]]], list[dict[str, Any]]]

BOILER_TYPE = "Boiler Type"
FUEL_TYPE = "Fuel Type"
PROPERTY_SIZE = "Property Size"
NOT_SPECIFIED = "Not specified"
CUSTOMER_DETAIL_FIELDS = ("first_name", "last_name", "email", "phone", "city", "postcode")

logger = logging.getLogger(__name__)


def _as_values(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return [str(value)]


def _display(value: Any) -> str:
    return ", ".join(_as_values(value))


def _any_equal(left: Iterable[str], right: Iterable[str]) -> bool:
    wanted = {item.strip().lower() for item in right}
    return any(item.strip().lower() in wanted for item in left)


def fuel_type(product_fields: dict[str, Any]) -> Any:
    return product_fields.get("fuel_type") or product_fields.get("fule_type")


def _mapped_details(
    product_fields: dict[str, Any],
    answers: list[dict[str, Any]],
    match_mappings: dict[str, Any],
) -> list[dict[str, Any]]:
    by_question = {str(answer.get("question_id")): answer for answer in answers}
    details = []
    for field_key, question_id in match_mappings.items():
        answer = by_question.get(str(question_id))
        if answer is None:
            continue
        product_value = product_fields.get(field_key)
        details.append(
            {
                "type": field_key.replace("_", " ").title(),
                "userAnswer": _display(answer.get("answer")),
                "productValue": _display(product_value) or NOT_SPECIFIED,
                "matches": _any_equal(_as_values(answer.get("answer")), _as_values(product_value)),
            }
        )
    return details


def compute_match_details(
    product: dict[str, Any],
    form_answers: Any,
    match_mappings: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """Explain how a product lines up with a customer's answers.

    Explicit ``match_mappings`` (product field key -> question id) are checked first.
    Question-text keywords cover the boiler type, fuel and bedroom fields that are not
    mapped explicitly.
    """
    product_fields = product.get("product_fields") or {}
    answers = answer_list(form_answers)
    mappings = match_mappings or {}
    details = _mapped_details(product_fields, answers, mappings)

    for answer in answers:
        question = str(answer.get("question_text") or "").lower()
        selected = _as_values(answer.get("answer"))
        user_answer = _display(answer.get("answer"))

        if "type of boiler" in question and "boiler_type" not in mappings and product_fields.get("boiler_type"):
            boiler_type = product_fields["boiler_type"]
            details.append(
                {
                    "type": BOILER_TYPE,
                    "userAnswer": user_answer,
                    "productValue": _display(boiler_type),
                    "matches": _any_equal(selected, _as_values(boiler_type)),
                }
            )

        if "fuel" in question and "fuel_type" not in mappings and "fule_type" not in mappings:
            product_fuel = fuel_type(product_fields)
            details.append(
                {
                    "type": FUEL_TYPE,
                    "userAnswer": user_answer,
                    "productValue": _display(product_fuel) or NOT_SPECIFIED,
                    "matches": _any_equal(selected, _as_values(product_fuel)),
                }
            )

        if "bedroom" in question and "bedroom_size" not in mappings:
            sizes = _as_values(product_fields.get("bedroom_size"))
            details.append(
                {
                    "type": PROPERTY_SIZE,
                    "userAnswer": user_answer,
                    "productValue": f"Suitable for {', '.join(sizes)} bedrooms" if sizes else NOT_SPECIFIED,
                    "matches": _any_equal(selected, sizes),
                }
            )
    return details


def annotate_products(
    products: list[dict[str, Any]],
    form_answers: Any,
    match_mappings: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    return [
        {**product, "matchDetails": compute_match_details(product, form_answers, match_mappings)}
        for product in products
    ]


def apply_catalog_filters(
    products: list[dict[str, Any]],
    boiler_types: list[str] | None = None,
    fuel_types: list[str] | None = None,
    property_sizes: list[str] | None = None,
) -> list[dict[str, Any]]:
    boiler_types = [item for item in boiler_types or [] if item]
    fuel_types = [item for item in fuel_types or [] if item]
    property_sizes = [item for item in property_sizes or [] if item]

    def keep(product: dict[str, Any]) -> bool:
        fields = product.get("product_fields") or {}
        if boiler_types and not set(_as_values(fields.get("boiler_type"))) & set(boiler_types):
            return False
        if fuel_types:
            values = set(_as_values(fields.get("fuel_type"))) | set(_as_values(fields.get("fule_type")))
            if not values & set(fuel_types):
                return False
        if property_sizes and not set(_as_values(fields.get("bedroom_size"))) & set(property_sizes):
            return False
        return True

    return [product for product in products if keep(product)]


def flag_popular(products: list[dict[str, Any]], ranker: Ranker | None = None) -> list[dict[str, Any]]:
    ranked = ranker(list(products)) if ranker is not None else list(products)
    return [{**product, "is_popular": index == 0} for index, product in enumerate(ranked)]


def parse_filter_list(raw: str | None) -> list[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def get_recommended_products(
    conn: sqlite3.Connection,
    category_slug: str | None,
    submission_id: int,
    filters: dict[str, list[str]] | None = None,
    match_mappings: dict[str, Any] | None = None,
    partner_id: int | None = None,
    ranker: Ranker | None = None,
) -> dict[str, Any]:
    submission = get_submission(conn, submission_id)
    category = get_category_by_slug(conn, category_slug)
    catalog = list_active_products(conn, int(category["service_category_id"]), partner_id)
    filters = filters or {}

    try:
        filtered = apply_catalog_filters(
            catalog,
            filters.get("boiler_types"),
            filters.get("fuel_types"),
            filters.get("property_sizes"),
        )
        products = annotate_products(filtered, submission["form_answers"], match_mappings)
    except Exception:
        logger.exception(
            "recommendation_fallback",
            extra={"submission_id": submission_id, "category": category_slug, "catalog_size": len(catalog)},
        )
        products = [{**product, "matchDetails": []} for product in catalog]

    customer_details = {name: submission.get(name) for name in CUSTOMER_DETAIL_FIELDS}
    customer_details["form_answers"] = answer_list(submission["form_answers"])
    return {
        "products": flag_popular(products, ranker),
        "customerDetails": customer_details,
        "layout": category.get("products_list_layout") or "default",
    }
