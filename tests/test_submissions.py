import pytest

from quote_aggregator.db import connect, init_db
from quote_aggregator.errors import ConflictError, NotFoundError, TenantMismatchError, ValidationError
from quote_aggregator.questions import create_question, soft_delete_question
from quote_aggregator.submissions import (
    advance_progress,
    create_submission,
    get_submission,
    list_events,
    normalize_answers,
    select_addons,
    update_address,
    update_status,
    validate_submission_payload,
)
from quote_aggregator.tenancy import TenantContext


def setup_db(tmp_path):
    db = tmp_path / "quotes.db"
    init_db(db)
    conn = connect(db)
    with conn:
        conn.execute("INSERT INTO partners(company_name, subdomain) VALUES ('Acme Heating', 'acme')")
        conn.execute("INSERT INTO partners(company_name, subdomain) VALUES ('Boiler Bros', 'bros')")
    return conn


def base_payload(**overrides) -> dict:
    payload = {
        "service_category_id": 1,
        "first_name": "Sam",
        "last_name": "Jones",
        "email": "Sam@Example.com",
        "postcode": "sw1a 1aa",
        "form_answers": {},
    }
    payload.update(overrides)
    return payload


@pytest.mark.parametrize("missing", ["service_category_id", "first_name", "last_name", "email", "postcode", "form_answers"])
def test_missing_required_field_is_named(missing) -> None:
    payload = base_payload()
    payload.pop(missing)
    with pytest.raises(ValidationError, match=missing):
        validate_submission_payload(payload)


def test_form_answers_must_be_keyed_object() -> None:
    with pytest.raises(ValidationError):
        validate_submission_payload(base_payload(form_answers=[{"question_id": 1, "answer": "Gas"}]))


def test_normalize_answers_uses_form_order_and_labels_unknown(tmp_path) -> None:
    conn = setup_db(tmp_path)
    later = create_question(conn, {"service_category_id": 1, "question_text": "How many bedrooms?", "step_number": 2})
    first = create_question(conn, {"service_category_id": 1, "question_text": "What fuel do you use?"})

    normalized = normalize_answers(conn, 1, {"777": "?", str(later.question_id): "3", str(first.question_id): "Gas"})
    assert normalized == [
        {"question_id": str(first.question_id), "question_text": "What fuel do you use?", "answer": "Gas"},
        {"question_id": str(later.question_id), "question_text": "How many bedrooms?", "answer": "3"},
        {"question_id": "777", "question_text": "Unknown Question", "answer": "?"},
    ]


def test_create_submission_refilters_and_records_event(tmp_path) -> None:
    conn = setup_db(tmp_path)
    fuel = create_question(conn, {"service_category_id": 1, "question_text": "What fuel do you use?"})
    meter = create_question(
        conn,
        {
            "service_category_id": 1,
            "question_text": "Where is the gas meter?",
            "display_order_in_step": 1,
            "conditional_display": {"dependent_on_question_id": fuel.question_id, "show_when_answer_equals": ["Gas"]},
        },
    )
    tenant = TenantContext(partner_id=1, company_name="Acme Heating", subdomain="acme")

    result = create_submission(
        conn,
        base_payload(form_answers={str(fuel.question_id): "Oil", str(meter.question_id): "Outside"}),
        tenant=tenant,
        request_meta={"ip_address": "203.0.113.9"},
    )

    submission = result["submission"]
    assert submission["status"] == "new"
    assert submission["progress_step"] == "quote"
    assert submission["assigned_partner_id"] == 1
    assert submission["email"] == "sam@example.com"
    assert submission["postcode"] == "SW1A 1AA"
    assert [answer["question_id"] for answer in submission["form_answers"]] == [str(fuel.question_id)]
    assert result["gtm_event_name"] is None
    assert [event["event_type"] for event in list_events(conn, submission["submission_id"])] == ["created"]


def test_create_submission_rejects_unknown_category(tmp_path) -> None:
    conn = setup_db(tmp_path)
    with pytest.raises(NotFoundError):
        create_submission(conn, base_payload(service_category_id=99))
    assert conn.execute("SELECT COUNT(*) FROM quote_submissions").fetchone()[0] == 0


def test_progress_only_moves_forward(tmp_path) -> None:
    conn = setup_db(tmp_path)
    submission_id = create_submission(conn, base_payload())["submission"]["submission_id"]

    advance_progress(conn, submission_id, "addons")
    with pytest.raises(ValidationError, match="cannot move progress back"):
        advance_progress(conn, submission_id, "products")
    assert advance_progress(conn, submission_id, "paid")["progress_step"] == "paid"

    with pytest.raises(ValidationError):
        advance_progress(conn, submission_id, "teleported")


def test_update_status_checks_version(tmp_path) -> None:
    conn = setup_db(tmp_path)
    submission = create_submission(conn, base_payload())["submission"]

    updated = update_status(conn, submission["submission_id"], "qualified", expected_version=submission["version"])
    assert updated["status"] == "qualified"
    assert updated["version"] == submission["version"] + 1

    with pytest.raises(ConflictError):
        update_status(conn, submission["submission_id"], "processed", expected_version=submission["version"])
    with pytest.raises(ValidationError):
        update_status(conn, submission["submission_id"], "archived")


def test_update_address_merges_into_form_answers(tmp_path) -> None:
    conn = setup_db(tmp_path)
    question = create_question(conn, {"service_category_id": 1, "question_text": "What fuel do you use?"})
    submission_id = create_submission(conn, base_payload(form_answers={str(question.question_id): "Gas"}))[
        "submission"
    ]["submission_id"]

    updated = update_address(
        conn,
        submission_id,
        {"address_line_1": "10 Downing Street", "town_or_city": "London", "postcode": "SW1A 2AA"},
    )

    assert updated["city"] == "London"
    assert updated["postcode"] == "SW1A 2AA"
    assert updated["country"] == "United Kingdom"
    assert updated["address_type"] == "residential"
    assert updated["progress_step"] == "enquiry"
    assert updated["form_answers"]["answers"][0]["answer"] == "Gas"
    assert updated["form_answers"]["address_details"]["address_line_1"] == "10 Downing Street"
    assert [event["event_type"] for event in list_events(conn, submission_id)] == ["created", "address_updated"]

    with pytest.raises(ValidationError):
        update_address(conn, submission_id, {})


def test_cross_tenant_mutation_is_rejected(tmp_path) -> None:
    conn = setup_db(tmp_path)
    owner = TenantContext(partner_id=1, company_name="Acme Heating")
    intruder = TenantContext(partner_id=2, company_name="Boiler Bros")
    submission_id = create_submission(conn, base_payload(), tenant=owner)["submission"]["submission_id"]

    with pytest.raises(TenantMismatchError):
        update_address(conn, submission_id, {"town_or_city": "Leeds"}, tenant=intruder)
    with pytest.raises(TenantMismatchError):
        select_addons(conn, submission_id, {"1": 1}, tenant=intruder)
    assert get_submission(conn, submission_id)["city"] is None


def test_select_addons_persists_quantities(tmp_path) -> None:
    conn = setup_db(tmp_path)
    submission_id = create_submission(conn, base_payload())["submission"]["submission_id"]

    updated = select_addons(conn, submission_id, {"4": 2, "5": 0}, {"1": 1})
    assert updated["selected_addons"] == {"addons": {"4": 2}, "bundles": {"1": 1}}
    assert updated["progress_step"] == "checkout"

    with pytest.raises(ValidationError):
        select_addons(conn, submission_id, {"4": -1})


def test_normalize_answers_ignores_other_categories_and_deleted_questions(tmp_path) -> None:
    conn = setup_db(tmp_path)
    with conn:
        conn.execute("INSERT INTO service_categories(name, slug) VALUES ('Solar', 'solar')")
    foreign = create_question(conn, {"service_category_id": 2, "question_text": "What fuel do you use?"})
    retired = create_question(conn, {"service_category_id": 1, "question_text": "Which boiler brand?"})
    soft_delete_question(conn, retired.question_id)

    normalized = normalize_answers(conn, 1, {str(foreign.question_id): "Gas", str(retired.question_id): "Ideal"})
    assert [item["question_text"] for item in normalized] == ["Unknown Question", "Unknown Question"]

    stored = create_submission(conn, base_payload(form_answers={str(foreign.question_id): "Gas"}))["submission"]
    assert stored["form_answers"] == [
        {"question_id": str(foreign.question_id), "question_text": "Unknown Question", "answer": "Gas"}
    ]
