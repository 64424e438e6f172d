"""Table schemas and value conversion for the APP_DB spreadsheet.

Each worksheet of the spreadsheet is a table whose first row holds the column
headers.  Cells come back from the Sheets API as strings; :func:`parse_row`
turns a raw row into a typed record and :func:`format_row` turns a record back
into the list of cell values written with ``valueInputOption=RAW``.

Identifier columns (``id`` and every ``*_id`` column) are always text.  Older
rows written with ``USER_ENTERED`` carry a leading apostrophe that forced the
text format; it is stripped on read.
"""
from __future__ import annotations

import json
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from fitsheets.errors import SchemaViolationError

Record = Dict[str, Any]

ID_COLUMN = "id"
TENANT_COLUMN = "user_id"


class ColumnType(Enum):
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    INTEGER = "INTEGER"
    BOOLEAN = "BOOLEAN"
    JSON = "JSON"
    DATETIME = "DATETIME"


@dataclass(frozen=True)
class TableSchema:
    name: str
    columns: Tuple[str, ...]
    types: Mapping[str, ColumnType]

    def column_type(self, column: str) -> ColumnType:
        return self.types.get(column, ColumnType.TEXT)

    @property
    def has_tenant(self) -> bool:
        return TENANT_COLUMN in self.columns


_N = ColumnType.NUMBER
_I = ColumnType.INTEGER
_J = ColumnType.JSON
_D = ColumnType.DATETIME

_LOCOMOTION_TYPES = {
    "height_cm": _N,
    "weight_kg": _N,
    "age": _I,
    "locomotion_distance_km": _N,
    "locomotion_time_minutes": _N,
    "locomotion_days": _J,
}


def _schema(name: str, columns: Sequence[str], types: Optional[Mapping[str, ColumnType]] = None) -> TableSchema:
    return TableSchema(name=name, columns=tuple(columns), types=dict(types or {}))


TABLES: Dict[str, TableSchema] = {
    schema.name: schema
    for schema in (
        _schema(
            "profiles",
            [
                "id", "first_name", "last_name", "role", "email", "height_cm", "weight_kg", "sex", "age",
                "routine", "locomotion_type", "locomotion_distance_km", "locomotion_time_minutes",
                "locomotion_days",
            ],
            _LOCOMOTION_TYPES,
        ),
        _schema(
            "profile_history",
            [
                "id", "user_id", "height_cm", "weight_kg", "sex", "age", "routine", "locomotion_type",
                "locomotion_distance_km", "locomotion_time_minutes", "locomotion_days", "created_at",
            ],
            {**_LOCOMOTION_TYPES, "created_at": _D},
        ),
        _schema("weight_history", ["id", "user_id", "weight_kg", "created_at"], {"weight_kg": _N, "created_at": _D}),
        _schema(
            "bioimpedance_records",
            [
                "id", "user_id", "record_date", "weight_kg", "body_fat_percentage", "muscle_mass_kg",
                "water_percentage", "notes", "created_at", "waist_cm", "hip_cm", "glutes_cm", "thigh_cm",
                "calf_cm", "biceps_cm", "forearm_cm", "chest_cm", "shoulders_cm", "bmi", "fat_mass_kg",
                "lean_mass_kg", "segmental_muscle_mass_arms_kg", "segmental_muscle_mass_legs_kg",
                "segmental_muscle_mass_trunk_kg", "total_body_water_percentage",
                "intracellular_water_percentage", "extracellular_water_percentage",
                "basal_metabolic_rate_kcal", "visceral_fat_level", "metabolic_age",
            ],
            {
                "created_at": _D,
                "visceral_fat_level": _N,
                "metabolic_age": _I,
                **{
                    column: _N
                    for column in (
                        "weight_kg", "body_fat_percentage", "muscle_mass_kg", "water_percentage", "waist_cm",
                        "hip_cm", "glutes_cm", "thigh_cm", "calf_cm", "biceps_cm", "forearm_cm", "chest_cm",
                        "shoulders_cm", "bmi", "fat_mass_kg", "lean_mass_kg", "segmental_muscle_mass_arms_kg",
                        "segmental_muscle_mass_legs_kg", "segmental_muscle_mass_trunk_kg",
                        "total_body_water_percentage", "intracellular_water_percentage",
                        "extracellular_water_percentage", "basal_metabolic_rate_kcal",
                    )
                },
            },
        ),
        _schema(
            "diet_plans",
            ["id", "user_id", "meal", "description", "scheduled_time", "calories", "protein_g", "carbs_g", "fat_g"],
            {"calories": _N, "protein_g": _N, "carbs_g": _N, "fat_g": _N},
        ),
        _schema("diet_logs", ["id", "user_id", "diet_plan_id", "logged_at"], {"logged_at": _D}),
        _schema(
            "workouts",
            ["id", "user_id", "name", "muscle_group", "exercises", "created_at"],
            {"exercises": _J, "created_at": _D},
        ),
        _schema(
            "workout_logs",
            ["id", "user_id", "exercise_name", "log_date", "performance"],
            {"performance": _J},
        ),
        _schema(
            "daily_nutrition_logs",
            [
                "id", "user_id", "log_date", "total_calories", "total_protein_g", "total_carbs_g", "total_fat_g",
                "created_at",
            ],
            {"total_calories": _N, "total_protein_g": _N, "total_carbs_g": _N, "total_fat_g": _N, "created_at": _D},
        ),
        _schema(
            "personal_records",
            ["id", "user_id", "exercise_name", "pr_weight", "achieved_at"],
            {"pr_weight": _N, "achieved_at": _D},
        ),
    )
}


def get_schema(table: str) -> TableSchema:
    try:
        return TABLES[table]
    except KeyError:
        raise SchemaViolationError(f"Unknown table: {table}") from None


def is_id_column(column: str) -> bool:
    return column == ID_COLUMN or column.endswith("_id")


def new_record_id() -> str:
    """Return a fresh record id: millisecond timestamp plus a random suffix."""

    return f"{int(time.time() * 1000)}{uuid.uuid4().hex[:9]}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Sheet -> record
# ---------------------------------------------------------------------------
def _clean_id(value: Any) -> str:
    text = str(value).strip()
    if text.startswith("'"):
        text = text[1:]
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    return text


def _parse_number(value: Any) -> float:
    number = float(str(value).strip().replace(",", "."))
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"{value!r} is not a finite number")
    return number


def _number_or_int(number: float) -> Any:
    return int(number) if number.is_integer() else number


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "y"}:
        return True
    if lowered in {"0", "false", "no", "n"}:
        return False
    raise ValueError(f"{value!r} is not a boolean")


def _parse_json(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return value
    text = str(value).strip()
    if text[:1] in {"[", "{"}:
        return json.loads(text)
    return [part.strip() for part in text.split(",") if part.strip()]


def _loose_value(value: Any) -> Any:
    # Columns without a declared type keep the inference of the web client.
    text = str(value)
    lowered = text.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    try:
        return _number_or_int(_parse_number(text))
    except ValueError:
        return text


def coerce_from_sheet(schema: TableSchema, column: str, value: Any) -> Any:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    if is_id_column(column):
        return _clean_id(value)
    if column not in schema.types:
        return _loose_value(value) if column not in schema.columns else str(value)
    column_type = schema.types[column]
    try:
        if column_type is ColumnType.NUMBER:
            return _number_or_int(_parse_number(value))
        if column_type is ColumnType.INTEGER:
            return int(round(_parse_number(value)))
        if column_type is ColumnType.BOOLEAN:
            return _parse_bool(value)
        if column_type is ColumnType.JSON:
            return _parse_json(value)
    except (TypeError, ValueError) as exc:
        raise SchemaViolationError(
            f"{schema.name}.{column}: cannot read {value!r} as {column_type.value}"
        ) from exc
    return str(value)


def parse_row(schema: TableSchema, headers: Sequence[str], raw: Sequence[Any]) -> Record:
    """Return the typed record for one raw sheet row.

    Columns missing from the sheet but declared by the schema are present with
    ``None``.  Rows without an ``id`` are rejected.
    """

    record: Record = {column: None for column in schema.columns}
    for index, header in enumerate(headers):
        header = (header or "").strip()
        if not header:
            continue
        cell = raw[index] if index < len(raw) else ""
        record[header] = coerce_from_sheet(schema, header, cell)
    if record.get(ID_COLUMN) in (None, ""):
        raise SchemaViolationError(f"{schema.name}: row has no id")
    return record


def salvage_row(schema: TableSchema, headers: Sequence[str], raw: Sequence[Any]) -> Tuple[Record, List[str]]:
    """Read a row for matching even when some cells do not parse.

    Unreadable cells keep their raw text and their columns are returned
    alongside the record.  Unlike :func:`parse_row` a missing ``id`` is allowed.
    """

    record: Record = {column: None for column in schema.columns}
    unreadable: List[str] = []
    for index, header in enumerate(headers):
        header = (header or "").strip()
        if not header:
            continue
        cell = raw[index] if index < len(raw) else ""
        try:
            record[header] = coerce_from_sheet(schema, header, cell)
        except SchemaViolationError:
            record[header] = str(cell)
            unreadable.append(header)
    return record, unreadable


# ---------------------------------------------------------------------------
# Record -> sheet
# ---------------------------------------------------------------------------
def coerce_for_sheet(schema: TableSchema, column: str, value: Any) -> Any:
    if value is None:
        return ""
    if is_id_column(column):
        return _clean_id(value)
    column_type = schema.column_type(column)
    try:
        if column_type is ColumnType.NUMBER:
            if value == "":
                return ""
            return _number_or_int(_parse_number(value))
        if column_type is ColumnType.INTEGER:
            if value == "":
                return ""
            return int(round(_parse_number(value)))
        if column_type is ColumnType.BOOLEAN:
            return _parse_bool(value) if value != "" else ""
        if column_type is ColumnType.DATETIME and isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    except (TypeError, ValueError) as exc:
        raise SchemaViolationError(
            f"{schema.name}.{column}: cannot write {value!r} as {column_type.value}"
        ) from exc
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value
    return str(value)


def format_row(schema: TableSchema, headers: Sequence[str], record: Mapping[str, Any]) -> List[Any]:
    """Return cell values for ``record`` in ``headers`` order."""

    return [coerce_for_sheet(schema, header, record.get(header)) for header in headers]


def validate_record(schema: TableSchema, record: Mapping[str, Any]) -> Record:
    """Return a normalised copy of an outgoing record, raising on bad values."""

    unknown = [column for column in record if column not in schema.columns]
    if unknown:
        raise SchemaViolationError(f"{schema.name}: unknown columns {', '.join(sorted(unknown))}")
    normalised: Record = {}
    for column, value in record.items():
        coerce_for_sheet(schema, column, value)
        if is_id_column(column) and value is not None:
            normalised[column] = _clean_id(value)
        else:
            normalised[column] = value
    return normalised


__all__ = [
    "ColumnType",
    "ID_COLUMN",
    "Record",
    "TABLES",
    "TENANT_COLUMN",
    "TableSchema",
    "coerce_for_sheet",
    "coerce_from_sheet",
    "format_row",
    "get_schema",
    "is_id_column",
    "new_record_id",
    "parse_row",
    "salvage_row",
    "utc_now_iso",
    "validate_record",
]
