from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fitsheets.errors import SchemaViolationError
from fitsheets.schemas import (
    TABLES,
    format_row,
    get_schema,
    is_id_column,
    new_record_id,
    parse_row,
    validate_record,
)


def test_known_tables_all_have_id_column() -> None:
    assert len(TABLES) == 10
    for schema in TABLES.values():
        assert schema.columns[0] == "id"
    assert get_schema("weight_history").has_tenant
    assert not get_schema("profiles").has_tenant


def test_unknown_table_is_rejected() -> None:
    with pytest.raises(SchemaViolationError):
        get_schema("payments")


def test_parse_row_coerces_declared_types() -> None:
    schema = get_schema("profiles")
    headers = ["id", "first_name", "weight_kg", "age", "locomotion_days", "email"]
    raw = ["'1234567890", "Ana", "72,5", "31", '["mon", "wed"]']

    record = parse_row(schema, headers, raw)

    assert record["id"] == "1234567890"
    assert record["first_name"] == "Ana"
    assert record["weight_kg"] == 72.5
    assert record["age"] == 31
    assert record["locomotion_days"] == ["mon", "wed"]
    assert record["email"] is None
    assert record["routine"] is None


def test_parse_row_accepts_comma_separated_lists() -> None:
    schema = get_schema("profiles")
    record = parse_row(schema, ["id", "locomotion_days"], ["u1", "mon, fri"])
    assert record["locomotion_days"] == ["mon", "fri"]


def test_parse_row_rejects_rows_without_id_or_bad_numbers() -> None:
    schema = get_schema("weight_history")
    with pytest.raises(SchemaViolationError):
        parse_row(schema, ["id", "user_id", "weight_kg"], ["", "u1", "80"])
    with pytest.raises(SchemaViolationError):
        parse_row(schema, ["id", "user_id", "weight_kg"], ["w1", "u1", "heavy"])


def test_numeric_ids_are_kept_as_text() -> None:
    schema = get_schema("weight_history")
    record = parse_row(schema, ["id", "user_id"], ["17", "108234567890123456789.0"])
    assert record["id"] == "17"
    assert record["user_id"] == "108234567890123456789"
    assert is_id_column("diet_plan_id")
    assert not is_id_column("identity")


def test_format_row_follows_header_order_and_encodes_values() -> None:
    schema = get_schema("workouts")
    headers = ["name", "id", "exercises", "created_at", "user_id"]
    created = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    row = format_row(
        schema,
        headers,
        {"id": "w1", "user_id": "u1", "name": "Legs", "exercises": [{"name": "Squat"}], "created_at": created},
    )

    assert row == ["Legs", "w1", '[{"name": "Squat"}]', "2024-03-01T12:00:00.000Z", "u1"]


def test_validate_record_rejects_unknown_columns_and_bad_values() -> None:
    schema = get_schema("weight_history")
    with pytest.raises(SchemaViolationError):
        validate_record(schema, {"user_id": "u1", "mood": "great"})
    with pytest.raises(SchemaViolationError):
        validate_record(schema, {"user_id": "u1", "weight_kg": "a lot"})
    assert validate_record(schema, {"user_id": "'u1", "weight_kg": 80}) == {"user_id": "u1", "weight_kg": 80}


def test_new_record_ids_are_unique() -> None:
    ids = {new_record_id() for _ in range(50)}
    assert len(ids) == 50
