from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from itertools import groupby
from typing import Any

from .db import json_dumps, json_loads
from .errors import NotFoundError, ValidationError

LOGICAL_OPERATORS = {"AND", "OR"}
QUESTION_STATUSES = {"active", "inactive"}

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConditionalDisplay:
    dependent_on_question_id: int
    show_when_answer_equals: tuple[str, ...]
    logical_operator: str = "OR"

    @classmethod
    def parse(cls, raw: Any) -> ConditionalDisplay | None:
        if not raw:
            return None
        if not isinstance(raw, dict):
            raise ValidationError("conditional_display must be an object")
        try:
            dependent_on = int(raw["dependent_on_question_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("conditional_display needs dependent_on_question_id") from exc
        expected = raw.get("show_when_answer_equals") or []
        if not isinstance(expected, (list, tuple)):
            expected = [expected]
        operator = str(raw.get("logical_operator") or "OR").upper()
        if operator not in LOGICAL_OPERATORS:
            raise ValidationError(f"unsupported logical_operator: {operator}")
        return cls(dependent_on, tuple(str(item) for item in expected), operator)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dependent_on_question_id": self.dependent_on_question_id,
            "show_when_answer_equals": list(self.show_when_answer_equals),
            "logical_operator": self.logical_operator,
        }


@dataclass(slots=True)
class FormQuestion:
    question_id: int
    service_category_id: int
    question_text: str
    step_number: int = 1
    display_order_in_step: int = 0
    helper_text: str | None = None
    is_multiple_choice: bool = False
    allow_multiple_selections: bool = False
    is_required: bool = False
    answer_options: list[Any] | None = None
    status: str = "active"
    is_deleted: bool = False
    conditional_display: ConditionalDisplay | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FormQuestion:
        return cls(
            question_id=int(row["question_id"]),
            service_category_id=int(row["service_category_id"]),
            question_text=row["question_text"],
            step_number=int(row["step_number"]),
            display_order_in_step=int(row["display_order_in_step"]),
            helper_text=row["helper_text"],
            is_multiple_choice=bool(row["is_multiple_choice"]),
            allow_multiple_selections=bool(row["allow_multiple_selections"]),
            is_required=bool(row["is_required"]),
            answer_options=json_loads(row["answer_options"]),
            status=row["status"],
            is_deleted=bool(row["is_deleted"]),
            conditional_display=ConditionalDisplay.parse(json_loads(row["conditional_display"])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "question_id": self.question_id,
            "service_category_id": self.service_category_id,
            "question_text": self.question_text,
            "helper_text": self.helper_text,
            "step_number": self.step_number,
            "display_order_in_step": self.display_order_in_step,
            "is_multiple_choice": self.is_multiple_choice,
            "allow_multiple_selections": self.allow_multiple_selections,
            "is_required": self.is_required,
            "answer_options": self.answer_options,
            "status": self.status,
            "is_deleted": self.is_deleted,
            "conditional_display": self.conditional_display.to_dict() if self.conditional_display else None,
        }


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value]
    return [str(value)]


def _has_answer(value: Any) -> bool:
    return value not in (None, "", [], ())


def _answer_for(answers: dict[Any, Any], question_id: int) -> Any:
    if question_id in answers:
        return answers[question_id]
    return answers.get(str(question_id))


def is_question_visible(question: FormQuestion, answers: dict[Any, Any]) -> bool:
    condition = question.conditional_display
    if condition is None:
        return True

    dependent_answer = _answer_for(answers, condition.dependent_on_question_id)
    if not _has_answer(dependent_answer):
        return False

    selected = set(_as_list(dependent_answer))
    expected = condition.show_when_answer_equals
    if condition.logical_operator == "AND":
        return all(value in selected for value in expected)
    return any(value in selected for value in expected)


def active_questions(questions: list[FormQuestion]) -> list[FormQuestion]:
    active = [item for item in questions if item.status == "active" and not item.is_deleted]
    return sorted(active, key=lambda item: (item.step_number, item.display_order_in_step, item.question_id))


def visible_questions(questions: list[FormQuestion], answers: dict[Any, Any]) -> list[FormQuestion]:
    """Active questions whose display condition holds.

    Answers belonging to hidden questions do not count towards other conditions,
    so hiding a question also hides anything chained off it.
    """
    candidates = active_questions(questions)
    effective = dict(answers)
    while True:
        visible = [item for item in candidates if is_question_visible(item, effective)]
        visible_ids = {item.question_id for item in visible}
        hidden = [item.question_id for item in questions if item.question_id not in visible_ids]
        stale = [
            key for key in effective if any(str(key) == str(question_id) for question_id in hidden)
        ]
        if not stale:
            return visible
        for key in stale:
            effective.pop(key)


def form_steps(questions: list[FormQuestion], answers: dict[Any, Any]) -> list[dict[str, Any]]:
    visible = visible_questions(questions, answers)
    return [
        {"step_number": step_number, "questions": list(items)}
        for step_number, items in groupby(visible, key=lambda item: item.step_number)
    ]


def filter_answers(questions: list[FormQuestion], answers: dict[Any, Any]) -> dict[str, Any]:
    """Drop answers to known questions that are hidden for this answer set.

    Ids that match no question are left for the caller to label.
    """
    known_ids = {str(item.question_id) for item in questions}
    visible_ids = {str(item.question_id) for item in visible_questions(questions, answers)}
    hidden_ids = known_ids - visible_ids
    kept = {str(key): value for key, value in answers.items() if str(key) not in hidden_ids}
    dropped = sorted(str(key) for key in answers if str(key) in hidden_ids)
    if dropped:
        logger.info("stale_answers_dropped", extra={"question_ids": dropped})
    return kept


def validate_required_answers(questions: list[FormQuestion], answers: dict[Any, Any]) -> None:
    missing = [
        item
        for item in visible_questions(questions, answers)
        if item.is_required and not _has_answer(_answer_for(answers, item.question_id))
    ]
    if missing:
        raise ValidationError(
            f"Answer required: {missing[0].question_text}",
            details={"question_ids": [item.question_id for item in missing]},
        )


# storage


def list_questions(conn: sqlite3.Connection, category_id: int, include_inactive: bool = False) -> list[FormQuestion]:
    query = "SELECT * FROM form_questions WHERE service_category_id = ?"
    if not include_inactive:
        query += " AND status = 'active' AND is_deleted = 0"
    rows = conn.execute(
        query + " ORDER BY step_number, display_order_in_step, question_id",
        (category_id,),
    ).fetchall()
    return [FormQuestion.from_row(row) for row in rows]


def get_question(conn: sqlite3.Connection, question_id: int) -> FormQuestion:
    row = conn.execute("SELECT * FROM form_questions WHERE question_id = ?", (question_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"question {question_id} not found")
    return FormQuestion.from_row(row)


def _question_values(data: dict[str, Any], existing: FormQuestion | None = None) -> dict[str, Any]:
    def pick(name: str, default: Any) -> Any:
        return data[name] if name in data else default

    question_text = str(pick("question_text", existing.question_text if existing else "") or "").strip()
    if not question_text:
        raise ValidationError("Missing required field: question_text")
    status = str(pick("status", existing.status if existing else "active"))
    if status not in QUESTION_STATUSES:
        raise ValidationError(f"unsupported status: {status}")
    answer_options = pick("answer_options", existing.answer_options if existing else None)
    if answer_options is not None and not isinstance(answer_options, list):
        raise ValidationError("answer_options must be a list")

    if "conditional_display" in data:
        condition = ConditionalDisplay.parse(data["conditional_display"])
    else:
        condition = existing.conditional_display if existing else None
    if condition is not None and existing is not None and condition.dependent_on_question_id == existing.question_id:
        raise ValidationError("a question cannot depend on itself")

    try:
        step_number = int(pick("step_number", existing.step_number if existing else 1))
        display_order = int(pick("display_order_in_step", existing.display_order_in_step if existing else 0))
    except (TypeError, ValueError) as exc:
        raise ValidationError("step_number and display_order_in_step must be integers") from exc

    return {
        "question_text": question_text,
        "helper_text": pick("helper_text", existing.helper_text if existing else None),
        "step_number": step_number,
        "display_order_in_step": display_order,
        "is_multiple_choice": 1 if pick("is_multiple_choice", existing.is_multiple_choice if existing else False) else 0,
        "allow_multiple_selections": 1
        if pick("allow_multiple_selections", existing.allow_multiple_selections if existing else False)
        else 0,
        "is_required": 1 if pick("is_required", existing.is_required if existing else False) else 0,
        "answer_options": json_dumps(answer_options) if answer_options is not None else None,
        "status": status,
        "conditional_display": json_dumps(condition.to_dict()) if condition else None,
    }


def create_question(conn: sqlite3.Connection, data: dict[str, Any]) -> FormQuestion:
    if not data.get("service_category_id"):
        raise ValidationError("Missing required field: service_category_id")
    values = _question_values(data)
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO form_questions(
                service_category_id, question_text, helper_text, step_number, display_order_in_step,
                is_multiple_choice, allow_multiple_selections, is_required, answer_options, status,
                conditional_display
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(data["service_category_id"]),
                values["question_text"],
                values["helper_text"],
                values["step_number"],
                values["display_order_in_step"],
                values["is_multiple_choice"],
                values["allow_multiple_selections"],
                values["is_required"],
                values["answer_options"],
                values["status"],
                values["conditional_display"],
            ),
        )
    logger.info("question_created", extra={"question_id": cursor.lastrowid})
    return get_question(conn, int(cursor.lastrowid))


def update_question(conn: sqlite3.Connection, question_id: int, data: dict[str, Any]) -> FormQuestion:
    existing = get_question(conn, question_id)
    values = _question_values(data, existing)
    with conn:
        conn.execute(
            """
            UPDATE form_questions
            SET question_text = ?, helper_text = ?, step_number = ?, display_order_in_step = ?,
                is_multiple_choice = ?, allow_multiple_selections = ?, is_required = ?, answer_options = ?,
                status = ?, conditional_display = ?, updated_at = CURRENT_TIMESTAMP
            WHERE question_id = ?
            """,
            (
                values["question_text"],
                values["helper_text"],
                values["step_number"],
                values["display_order_in_step"],
                values["is_multiple_choice"],
                values["allow_multiple_selections"],
                values["is_required"],
                values["answer_options"],
                values["status"],
                values["conditional_display"],
                question_id,
            ),
        )
    return get_question(conn, question_id)


def soft_delete_question(conn: sqlite3.Connection, question_id: int) -> None:
    get_question(conn, question_id)
    with conn:
        conn.execute(
            "UPDATE form_questions SET is_deleted = 1, updated_at = CURRENT_TIMESTAMP WHERE question_id = ?",
            (question_id,),
        )
    logger.info("question_soft_deleted", extra={"question_id": question_id})
