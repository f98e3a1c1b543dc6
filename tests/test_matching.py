import pytest

from quote_aggregator import matching
from quote_aggregator.catalog import create_product
from quote_aggregator.db import connect, init_db
from quote_aggregator.errors import NotFoundError
from quote_aggregator.field_schema import FieldSchemaStore
from quote_aggregator.matching import (
    annotate_products,
    apply_catalog_filters,
    compute_match_details,
    flag_popular,
    get_recommended_products,
)
from quote_aggregator.questions import create_question
from quote_aggregator.submissions import create_submission


def boiler_answer(answer: str = "Combi") -> dict:
    return {"question_id": "1", "question_text": "What type of boiler do you have?", "answer": answer}


def seed_catalog(tmp_path):
    db = tmp_path / "quotes.db"
    init_db(db)
    conn = connect(db)
    FieldSchemaStore(conn).create_field(
        {
            "service_category_id": 1,
            "name": "Boiler Type",
            "key": "boiler_type",
            "field_type": "select",
            "options": ["Combi", "System"],
        }
    )
    create_product(
        conn,
        {"service_category_id": 1, "name": "Worcester 8000", "price": "2499", "product_fields": {"boiler_type": "Combi"}},
    )
    create_product(
        conn,
        {
            "service_category_id": 1,
            "name": "Vaillant System",
            "price": "2899",
            "product_fields": {"boiler_type": "System", "fule_type": "Gas", "bedroom_size": [3, 4]},
        },
    )
    boiler = create_question(conn, {"service_category_id": 1, "question_text": "What type of boiler do you have?"})
    submission = create_submission(
        conn,
        {
            "service_category_id": 1,
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "postcode": "N1 9GU",
            "form_answers": {str(boiler.question_id): "Combi"},
        },
    )["submission"]
    return conn, submission


def test_boiler_type_match_is_reported() -> None:
    product = {"product_fields": {"boiler_type": "Combi"}}
    details = compute_match_details(product, [boiler_answer("combi")])
    assert details == [{"type": "Boiler Type", "userAnswer": "combi", "productValue": "Combi", "matches": True}]


def test_fuel_alias_and_bedroom_arrays() -> None:
    product = {"product_fields": {"fule_type": "LPG", "bedroom_size": [2, 3]}}
    answers = [
        {"question_id": "2", "question_text": "Which fuel powers your heating?", "answer": "lpg"},
        {"question_id": "3", "question_text": "How many bedrooms?", "answer": "3"},
    ]
    fuel, bedrooms = compute_match_details(product, answers)
    assert fuel["type"] == "Fuel Type"
    assert fuel["productValue"] == "LPG"
    assert fuel["matches"] is True
    assert bedrooms["productValue"] == "Suitable for 2, 3 bedrooms"
    assert bedrooms["matches"] is True


def test_list_answers_match_any_selected_value() -> None:
    product = {"product_fields": {"fuel_type": "Oil"}}
    answers = [{"question_id": "2", "question_text": "Fuel type?", "answer": ["Gas", "Oil"]}]
    assert compute_match_details(product, answers)[0]["matches"] is True


def test_explicit_mapping_takes_priority() -> None:
    product = {"product_fields": {"boiler_type": "System"}}
    answers = [{"question_id": "9", "question_text": "What type of boiler do you have?", "answer": "System"}]
    details = compute_match_details(product, answers, match_mappings={"boiler_type": "9"})
    assert details == [{"type": "Boiler Type", "userAnswer": "System", "productValue": "System", "matches": True}]


def test_annotation_never_drops_products() -> None:
    products = [{"name": "A", "product_fields": {}}, {"name": "B", "product_fields": {"boiler_type": "System"}}]
    annotated = annotate_products(products, {"answers": [boiler_answer()], "address_details": {}})
    assert [item["name"] for item in annotated] == ["A", "B"]
    assert annotated[0]["matchDetails"] == []
    assert annotated[1]["matchDetails"][0]["matches"] is False


def test_catalog_filters_are_strict() -> None:
    products = [
        {"name": "gas combi", "product_fields": {"boiler_type": "Combi", "fuel_type": "Gas", "bedroom_size": ["2", "3"]}},
        {"name": "lpg system", "product_fields": {"boiler_type": "System", "fule_type": "LPG", "bedroom_size": "4"}},
    ]
    assert [item["name"] for item in apply_catalog_filters(products, fuel_types=["LPG"])] == ["lpg system"]
    assert [item["name"] for item in apply_catalog_filters(products, property_sizes=["3"])] == ["gas combi"]
    assert apply_catalog_filters(products, boiler_types=["Combi"], fuel_types=["LPG"]) == []
    assert len(apply_catalog_filters(products)) == 2


def test_flag_popular_uses_ranker() -> None:
    products = [{"name": "cheap", "price": "1"}, {"name": "dear", "price": "9"}]
    assert [item["is_popular"] for item in flag_popular(products)] == [True, False]
    ranked = flag_popular(products, ranker=lambda items: sorted(items, key=lambda item: item["price"], reverse=True))
    assert ranked[0]["name"] == "dear"
    assert ranked[0]["is_popular"] is True


def test_recommendations_include_match_details(tmp_path) -> None:
    conn, submission = seed_catalog(tmp_path)
    result = get_recommended_products(conn, "boiler", submission["submission_id"])

    by_name = {item["name"]: item for item in result["products"]}
    assert by_name["Worcester 8000"]["matchDetails"][0] == {
        "type": "Boiler Type",
        "userAnswer": "Combi",
        "productValue": "Combi",
        "matches": True,
    }
    assert result["customerDetails"]["first_name"] == "Ada"
    assert result["customerDetails"]["form_answers"][0]["answer"] == "Combi"


def test_recommendations_fall_back_to_full_catalog(tmp_path, monkeypatch) -> None:
    conn, submission = seed_catalog(tmp_path)

    def broken(*args, **kwargs):
        raise ValueError("malformed product_fields")

    monkeypatch.setattr(matching, "annotate_products", broken)
    result = get_recommended_products(
        conn,
        "boiler",
        submission["submission_id"],
        filters={"boiler_types": ["Heat Pump"]},
    )

    assert len(result["products"]) == 2
    assert all(item["matchDetails"] == [] for item in result["products"])
    assert result["products"][0]["is_popular"] is True


def test_recommendations_require_known_category(tmp_path) -> None:
    conn, submission = seed_catalog(tmp_path)
    with pytest.raises(NotFoundError):
        get_recommended_products(conn, "solar", submission["submission_id"])
