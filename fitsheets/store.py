"""Typed record store over the APP_DB Google spreadsheet.

The store gives the application database-like operations on top of a
spreadsheet whose worksheets act as tables:

``select``
    Read a table, parse every row against its schema and apply equality,
    range and ordering constraints in memory.

``insert``
    Append validated records.  Missing ids are generated; duplicates are not
    detected.

``update``
    Merge a partial record into every row matching an equality filter.  A miss
    is the soft "not found" outcome and returns ``0``.

``delete``
    Remove every row matching an equality filter.

Every operation requires the store to be ``READY``.  Readiness follows
``UNINITIALIZED -> INITIALIZING -> READY`` and drops to ``ERROR`` when the
credentials stop working; leaving ``ERROR`` needs an explicit
:meth:`RecordStore.initialize`.  The store does not retry at the policy
level: callers wrap operations in :class:`fitsheets.retry.RetryExecutor`.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from fitsheets import drive_api
from fitsheets.errors import (
    CredentialsRevokedError,
    NotFoundError,
    NotReadyError,
    PermissionDeniedError,
    RemoteUnavailableError,
    SchemaViolationError,
    StoreError,
)
from fitsheets.schemas import (
    ID_COLUMN,
    TABLES,
    TENANT_COLUMN,
    Record,
    TableSchema,
    format_row,
    get_schema,
    new_record_id,
    parse_row,
    salvage_row,
    validate_record,
)
from fitsheets.sheets_backend import SheetsBackend

logger = logging.getLogger(__name__)

SPREADSHEET_NAME = "APP_DB"


class StoreState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class Filter:
    column: str
    value: Any


@dataclass(frozen=True)
class Order:
    column: str
    ascending: bool = True


# ---------------------------------------------------------------------------
# In-memory query helpers
# ---------------------------------------------------------------------------
def _text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def matches(value: Any, expected: Any) -> bool:
    """Equality used by filters: typed first, then by text form."""

    if value == expected and type(value) is type(expected):
        return True
    if value is None or expected is None:
        return value is None and expected is None
    return _text(value) == _text(expected)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _comparable(values: Sequence[Any]) -> bool:
    return all(_is_number(value) for value in values)


def _compare_key(numeric: bool):
    if numeric:
        return lambda value: float(value)
    return _text


def _in_range(value: Any, bound: Any, *, lower: bool) -> bool:
    if value is None:
        return False
    key = _compare_key(_comparable([value, bound]))
    if lower:
        return key(value) >= key(bound)
    return key(value) < key(bound)


def apply_query(
    records: Sequence[Record],
    *,
    eq: Optional[Filter] = None,
    order: Optional[Order] = None,
    gte: Optional[Filter] = None,
    lt: Optional[Filter] = None,
) -> List[Record]:
    result = list(records)
    if eq is not None:
        result = [record for record in result if matches(record.get(eq.column), eq.value)]
    if gte is not None:
        result = [record for record in result if _in_range(record.get(gte.column), gte.value, lower=True)]
    if lt is not None:
        result = [record for record in result if _in_range(record.get(lt.column), lt.value, lower=False)]
    if order is not None:
        present = [record for record in result if record.get(order.column) is not None]
        missing = [record for record in result if record.get(order.column) is None]
        key = _compare_key(_comparable([record[order.column] for record in present]))
        present.sort(key=lambda record: key(record[order.column]), reverse=not order.ascending)
        result = present + missing
    return result


def normalise_headers(existing: Sequence[str], required: Sequence[str]) -> List[str]:
    """Keep the sheet's own header order and append missing schema columns."""

    headers: List[str] = []
    for header in existing:
        header = (header or "").strip()
        if header and header not in headers:
            headers.append(header)
    headers.extend(column for column in required if column not in headers)
    return headers


def _blank(raw: Sequence[Any]) -> bool:
    return all(str(cell).strip() == "" for cell in raw)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class RecordStore:
    """CRUD facade over one user's APP_DB spreadsheet (or one shared with them)."""

    def __init__(
        self,
        sheets_service,
        drive_service,
        user_email: str,
        *,
        spreadsheet_name: str = SPREADSHEET_NAME,
        backend: Optional[SheetsBackend] = None,
    ) -> None:
        self._drive = drive_service
        self._backend = backend or SheetsBackend(sheets_service)
        self._user_email = user_email
        self._spreadsheet_name = spreadsheet_name
        self._lock = threading.Lock()
        self._state = StoreState.UNINITIALIZED
        self._error: Optional[str] = None
        self._spreadsheet_id: Optional[str] = None
        self._original_spreadsheet_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------
    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def initialized(self) -> bool:
        return self._state is StoreState.READY

    @property
    def loading(self) -> bool:
        return self._state is StoreState.INITIALIZING

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def spreadsheet_id(self) -> Optional[str]:
        return self._spreadsheet_id

    @property
    def original_spreadsheet_id(self) -> Optional[str]:
        return self._original_spreadsheet_id

    @property
    def spreadsheet_name(self) -> str:
        return self._spreadsheet_name

    @property
    def user_email(self) -> str:
        return self._user_email

    @property
    def is_viewing_shared(self) -> bool:
        return bool(
            self._spreadsheet_id
            and self._original_spreadsheet_id
            and self._spreadsheet_id != self._original_spreadsheet_id
        )

    def _fail(self, exc: StoreError) -> None:
        with self._lock:
            self._state = StoreState.ERROR
            self._error = str(exc)
        logger.error("Record store entered ERROR state: %s", exc)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except CredentialsRevokedError as exc:
            self._fail(exc)
            raise

    def _require_ready(self) -> str:
        if self._state is not StoreState.READY or not self._spreadsheet_id:
            raise NotReadyError(f"Database not initialized (state: {self._state.value})")
        return self._spreadsheet_id

    def initialize(self) -> str:
        """Locate or create the caller's spreadsheet and move to ``READY``."""

        with self._lock:
            if self._state is StoreState.READY and self._spreadsheet_id:
                return self._spreadsheet_id
            if self._state is StoreState.INITIALIZING:
                raise NotReadyError("Database initialization already in progress")
            self._state = StoreState.INITIALIZING
            self._error = None

        try:
            spreadsheet_id = self._find_or_create()
        except StoreError as exc:
            self._fail(exc)
            raise

        with self._lock:
            self._original_spreadsheet_id = spreadsheet_id
            self._spreadsheet_id = spreadsheet_id
            self._state = StoreState.READY
        logger.info("Record store ready on spreadsheet %s", spreadsheet_id)
        return spreadsheet_id

    def _find_or_create(self) -> str:
        existing: Optional[str] = None
        try:
            existing = drive_api.find_owned_spreadsheet(self._drive, self._spreadsheet_name, self._user_email)
        except PermissionDeniedError as exc:
            if isinstance(exc, CredentialsRevokedError):
                raise
            logger.info("Cannot list Drive files (%s); creating a new spreadsheet", exc)

        if existing:
            logger.info("Found existing spreadsheet owned by %s: %s", self._user_email, existing)
            self.ensure_structure(existing)
            return existing

        spreadsheet_id = self._backend.create_spreadsheet(self._spreadsheet_name, list(TABLES))
        self._backend.write_headers(
            spreadsheet_id, {name: list(schema.columns) for name, schema in TABLES.items()}
        )
        return spreadsheet_id

    def ensure_structure(self, spreadsheet_id: str) -> None:
        """Add missing worksheets and header columns; rate limiting is tolerated."""

        try:
            existing = self._backend.worksheet_ids(spreadsheet_id)
            missing = [name for name in TABLES if name not in existing]
            if missing:
                logger.warning("Missing worksheets in %s: %s. Recreating...", spreadsheet_id, ", ".join(missing))
                self._backend.add_worksheets(spreadsheet_id, missing)

            current = self._backend.read_headers(spreadsheet_id, list(TABLES))
            updates: Dict[str, List[str]] = {}
            for name, schema in TABLES.items():
                header_row = current.get(name, [])
                headers = normalise_headers(header_row, schema.columns)
                if headers != header_row:
                    updates[name] = headers
            if updates:
                self._backend.write_headers(spreadsheet_id, updates)
                logger.info("Headers updated for %s", ", ".join(sorted(updates)))
        except RemoteUnavailableError as exc:
            logger.warning("Could not validate spreadsheet %s structure: %s. Continuing anyway.", spreadsheet_id, exc)

    def switch_to_spreadsheet(self, spreadsheet_id: Optional[str]) -> str:
        """Address another spreadsheet (``None`` returns to the caller's own)."""

        self._require_ready()
        target = spreadsheet_id or self._original_spreadsheet_id
        if not target:
            raise NotReadyError("No spreadsheet available")
        with self._guard():
            self.ensure_structure(target)
        with self._lock:
            self._spreadsheet_id = target
        logger.info("Switched to spreadsheet %s", target)
        return target

    # ------------------------------------------------------------------
    # Internal table access
    # ------------------------------------------------------------------
    def _read(
        self, spreadsheet_id: str, schema: TableSchema, *, strict: bool
    ) -> Tuple[List[str], List[Tuple[int, Record]]]:
        tab = self._backend.read_table(spreadsheet_id, schema.name)
        rows: List[Tuple[int, Record]] = []
        for offset, raw in enumerate(tab.rows):
            if _blank(raw):
                continue
            row_number = offset + 2
            try:
                rows.append((row_number, parse_row(schema, tab.headers, raw)))
            except SchemaViolationError as exc:
                if strict:
                    raise
                logger.warning("Skipping malformed row %d in %s: %s", row_number, schema.name, exc)
        return tab.headers, rows

    def _read_for_write(
        self, spreadsheet_id: str, schema: TableSchema
    ) -> Tuple[List[str], List[Tuple[int, Record, List[str]]]]:
        # Malformed rows stay reachable so they can be repaired or removed.
        tab = self._backend.read_table(spreadsheet_id, schema.name)
        rows: List[Tuple[int, Record, List[str]]] = []
        for offset, raw in enumerate(tab.rows):
            if not _blank(raw):
                record, unreadable = salvage_row(schema, tab.headers, raw)
                rows.append((offset + 2, record, unreadable))
        return tab.headers, rows


    def _writable_headers(self, spreadsheet_id: str, schema: TableSchema, header_row: Sequence[str]) -> List[str]:
        headers = normalise_headers(header_row, schema.columns)
        if headers != list(header_row):
            self._backend.write_headers(spreadsheet_id, {schema.name: headers})
        return headers

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def select(
        self,
        table: str,
        *,
        eq: Optional[Filter] = None,
        order: Optional[Order] = None,
        gte: Optional[Filter] = None,
        lt: Optional[Filter] = None,
        strict: bool = False,
        spreadsheet_id: Optional[str] = None,
    ) -> List[Record]:
        active = self._require_ready()
        schema = get_schema(table)
        with self._guard():
            _, rows = self._read(spreadsheet_id or active, schema, strict=strict)
        return apply_query([record for _, record in rows], eq=eq, order=order, gte=gte, lt=lt)

    def get(self, table: str, record_id: str) -> Record:
        rows = self.select(table, eq=Filter(ID_COLUMN, record_id))
        if not rows:
            raise NotFoundError(f"{table} has no record with id {record_id!r}")
        return rows[-1]

    def insert(self, table: str, records: Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]) -> List[Record]:
        spreadsheet_id = self._require_ready()
        schema = get_schema(table)
        batch = [records] if isinstance(records, Mapping) else list(records)
        if not batch:
            return []

        prepared: List[Record] = []
        for record in batch:
            normalised = validate_record(schema, record)
            if not normalised.get(ID_COLUMN):
                normalised[ID_COLUMN] = new_record_id()
            prepared.append(normalised)

        tenants = {str(record[TENANT_COLUMN]) for record in prepared if record.get(TENANT_COLUMN) not in (None, "")}
        if len(tenants) > 1:
            raise SchemaViolationError(f"{table}: one write cannot mix tenant ids ({', '.join(sorted(tenants))})")

        with self._guard():
            header_row = self._backend.read_header(spreadsheet_id, table)
            headers = self._writable_headers(spreadsheet_id, schema, header_row)
            self._backend.append_rows(spreadsheet_id, table, [format_row(schema, headers, record) for record in prepared])
        logger.debug("Inserted %d row(s) into %s", len(prepared), table)
        return [{**{column: None for column in schema.columns}, **record} for record in prepared]

    def update(self, table: str, changes: Mapping[str, Any], where: Filter) -> int:
        """Merge ``changes`` into matching rows and return how many changed."""

        spreadsheet_id = self._require_ready()
        schema = get_schema(table)
        normalised = validate_record(schema, changes)
        if not normalised:
            return 0

        with self._guard():
            header_row, rows = self._read_for_write(spreadsheet_id, schema)
            matched: List[Tuple[int, Record]] = []
            for number, record, unreadable in rows:
                if not matches(record.get(where.column), where.value):
                    continue
                broken = [column for column in unreadable if column not in normalised]
                if broken:
                    logger.warning(
                        "Row %d in %s has unreadable %s; not rewriting it", number, table, ", ".join(broken)
                    )
                    continue
                matched.append((number, record))
            if not matched:
                logger.info("No %s row matches %s=%r; nothing updated", table, where.column, where.value)
                return 0
            headers = self._writable_headers(spreadsheet_id, schema, header_row)
            payload = {
                number: format_row(schema, headers, {**record, **normalised})
                for number, record in matched
            }
            self._backend.update_rows(spreadsheet_id, table, payload)
        logger.debug("Updated %d row(s) in %s where %s=%r", len(matched), table, where.column, where.value)
        return len(matched)

    def delete(self, table: str, where: Filter) -> int:
        spreadsheet_id = self._require_ready()
        schema = get_schema(table)
        with self._guard():
            _, rows = self._read_for_write(spreadsheet_id, schema)
            numbers = [number for number, record, _ in rows if matches(record.get(where.column), where.value)]
            if not numbers:
                logger.info("No %s row matches %s=%r; nothing deleted", table, where.column, where.value)
                return 0
            sheet_id = self._backend.worksheet_ids(spreadsheet_id).get(table)
            if sheet_id is None:
                raise NotFoundError(f"Worksheet {table} not found")
            self._backend.delete_rows(spreadsheet_id, sheet_id, numbers)
        logger.debug("Deleted %d row(s) from %s where %s=%r", len(numbers), table, where.column, where.value)
        return len(numbers)


__all__ = [
    "Filter",
    "Order",
    "RecordStore",
    "SPREADSHEET_NAME",
    "StoreState",
    "apply_query",
    "matches",
    "normalise_headers",
]
