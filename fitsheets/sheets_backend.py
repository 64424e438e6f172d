"""Google Sheets transport used by the record store.

This module centralises every direct interaction with the Sheets v4 API.  It
knows about A1 ranges, worksheet ids and request bodies but nothing about
records, tenants or schemas; :mod:`fitsheets.store` builds on top of it.

Rate limiting (HTTP 429) and transient server errors are retried here with a
short capped exponential backoff.  Appends are not idempotent, so they are
only retried after HTTP 429.  When the retries run out, or for any other
failure, the Google exception is converted into the :mod:`fitsheets.errors`
taxonomy so nothing from ``googleapiclient`` leaks upwards.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, MutableSequence, Sequence

import httplib2
from google.auth import exceptions as auth_exceptions
from googleapiclient.errors import HttpError

from fitsheets.errors import BackendRejectedError, http_status, is_retriable, translate_error

logger = logging.getLogger(__name__)

MAX_TRANSPORT_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 5.0
READ_COLUMNS = "ZZ"

_GOOGLE_FAILURES = (HttpError, auth_exceptions.GoogleAuthError, httplib2.HttpLib2Error, OSError)


@dataclass
class SheetTabData:
    """Raw values of one worksheet, split into header row and data rows."""

    title: str
    headers: List[str]
    rows: List[List[str]]


def _should_retry(exc: BaseException, replay_safe: bool) -> bool:
    if replay_safe:
        return is_retriable(exc)
    # Only a rate-limited append is known not to have landed.
    return isinstance(exc, HttpError) and http_status(exc) == 429


def column_letter(index: int) -> str:
    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def quote_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if not safe:
        raise ValueError("Worksheet title must not be empty")
    return "'" + safe.replace("'", "''") + "'"


def a1_range(title: str, range_spec: str) -> str:
    return f"{quote_title(title)}!{range_spec}"


def a1_row_range(title: str, row_number: int, *, columns: int) -> str:
    if row_number < 1:
        raise ValueError("Row number must be >= 1")
    return a1_range(title, f"A{row_number}:{column_letter(max(1, columns))}{row_number}")


class SheetsBackend:
    """Thin wrapper around a ``sheets`` v4 service object."""

    def __init__(
        self,
        service,
        *,
        max_attempts: int = MAX_TRANSPORT_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._service = service
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Request execution
    # ------------------------------------------------------------------
    def _backoff(self, attempt: int) -> float:
        return min(BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)), BACKOFF_MAX_SECONDS)

    def _execute(self, request, description: str, *, replay_safe: bool = True) -> Dict[str, Any]:
        attempt = 1
        while True:
            try:
                result = request.execute()
            except _GOOGLE_FAILURES as exc:
                if _should_retry(exc, replay_safe) and attempt < self._max_attempts:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Sheets API %s failed (%s). Retrying in %.1fs (%d/%d)",
                        description,
                        exc,
                        delay,
                        attempt + 1,
                        self._max_attempts,
                    )
                    self._sleep(delay)
                    attempt += 1
                    continue
                raise translate_error(exc, f"Sheets {description}") from exc
            return result if isinstance(result, dict) else {}

    # ------------------------------------------------------------------
    # Spreadsheet structure
    # ------------------------------------------------------------------
    def worksheet_ids(self, spreadsheet_id: str) -> Dict[str, int]:
        """Return ``{title: sheetId}`` for every worksheet of the spreadsheet."""

        request = self._service.spreadsheets().get(
            spreadsheetId=spreadsheet_id,
            includeGridData=False,
            fields="sheets(properties(sheetId,title))",
        )
        result = self._execute(request, "spreadsheets.get")
        titles: Dict[str, int] = {}
        for sheet in result.get("sheets", []):
            properties = sheet.get("properties", {})
            title = properties.get("title")
            if title:
                titles[str(title)] = int(properties.get("sheetId", 0))
        return titles

    def create_spreadsheet(self, title: str, worksheet_titles: Sequence[str] = ()) -> str:
        body: Dict[str, Any] = {"properties": {"title": title}}
        if worksheet_titles:
            body["sheets"] = [{"properties": {"title": name}} for name in worksheet_titles]
        request = self._service.spreadsheets().create(body=body, fields="spreadsheetId")
        result = self._execute(request, "spreadsheets.create")
        spreadsheet_id = result.get("spreadsheetId")
        if not spreadsheet_id:
            raise BackendRejectedError("Sheets spreadsheets.create returned no spreadsheet id")
        logger.info("Created spreadsheet %s (%s)", title, spreadsheet_id)
        return str(spreadsheet_id)

    def add_worksheets(self, spreadsheet_id: str, titles: Sequence[str]) -> None:
        if not titles:
            return
        requests = [{"addSheet": {"properties": {"title": title}}} for title in titles]
        request = self._service.spreadsheets().batchUpdate(
            spreadsheetId=spreadsheet_id,
            body={"requests": requests},
        )
        self._execute(request, "spreadsheets.batchUpdate(addSheet)")
        logger.info("Added worksheets to %s: %s", spreadsheet_id, ", ".join(titles))

    def read_headers(self, spreadsheet_id: str, titles: Sequence[str]) -> Dict[str, List[str]]:
        """Return the header row of every worksheet in ``titles`` in one ``batchGet``."""

        if not titles:
            return {}
        request = self._service.spreadsheets().values().batchGet(
            spreadsheetId=spreadsheet_id,
            ranges=[a1_range(title, "1:1") for title in titles],
            majorDimension="ROWS",
        )
        result = self._execute(request, "values.batchGet(headers)")
        headers: Dict[str, List[str]] = {}
        value_ranges = result.get("valueRanges", [])
        for index, title in enumerate(titles):
            payload = value_ranges[index] if index < len(value_ranges) else {}
            values = payload.get("values", [])
            headers[title] = [str(cell) for cell in values[0]] if values else []
        return headers

    def write_headers(self, spreadsheet_id: str, headers: Mapping[str, Sequence[str]]) -> None:
        if not headers:
            return
        data = [
            {
                "range": a1_range(title, f"A1:{column_letter(max(1, len(row)))}1"),
                "values": [list(row)],
            }
            for title, row in headers.items()
        ]
        request = self._service.spreadsheets().values().batchUpdate(
            spreadsheetId=spreadsheet_id,
            body={"valueInputOption": "RAW", "data": data},
        )
        self._execute(request, "values.batchUpdate(headers)")

    def read_header(self, spreadsheet_id: str, title: str) -> List[str]:
        request = self._service.spreadsheets().values().get(
            spreadsheetId=spreadsheet_id,
            range=a1_range(title, "1:1"),
        )
        result = self._execute(request, "values.get(header)")
        values = result.get("values", [])
        return [str(cell) for cell in values[0]] if values else []

    # ------------------------------------------------------------------
    # Row level operations
    # ------------------------------------------------------------------
    def read_table(self, spreadsheet_id: str, title: str) -> SheetTabData:
        request = self._service.spreadsheets().values().get(
            spreadsheetId=spreadsheet_id,
            range=a1_range(title, f"A1:{READ_COLUMNS}"),
            majorDimension="ROWS",
        )
        result = self._execute(request, "values.get")
        values = [[str(cell) for cell in row] for row in result.get("values", [])]
        if not values:
            return SheetTabData(title=title, headers=[], rows=[])
        return SheetTabData(title=title, headers=values[0], rows=values[1:])

    def append_rows(self, spreadsheet_id: str, title: str, rows: Sequence[Sequence[Any]]) -> None:
        if not rows:
            return
        request = self._service.spreadsheets().values().append(
            spreadsheetId=spreadsheet_id,
            range=a1_range(title, "A1"),
            valueInputOption="RAW",
            insertDataOption="INSERT_ROWS",
            body={"values": [list(row) for row in rows]},
        )
        self._execute(request, "values.append", replay_safe=False)

    def update_rows(
        self,
        spreadsheet_id: str,
        title: str,
        rows: Mapping[int, Sequence[Any]],
    ) -> None:
        """Overwrite whole rows, keyed by 1-based sheet row number."""

        if not rows:
            return
        data = [
            {"range": a1_row_range(title, row_number, columns=len(values)), "values": [list(values)]}
            for row_number, values in sorted(rows.items())
        ]
        request = self._service.spreadsheets().values().batchUpdate(
            spreadsheetId=spreadsheet_id,
            body={"valueInputOption": "RAW", "data": data},
        )
        self._execute(request, "values.batchUpdate")

    def delete_rows(self, spreadsheet_id: str, sheet_id: int, row_numbers: Sequence[int]) -> None:
        """Delete rows by 1-based sheet row number, bottom-up so indexes stay valid."""

        if not row_numbers:
            return
        requests = [
            {
                "deleteDimension": {
                    "range": {
                        "sheetId": sheet_id,
                        "dimension": "ROWS",
                        "startIndex": row_number - 1,
                        "endIndex": row_number,
                    }
                }
            }
            for row_number in sorted(set(row_numbers), reverse=True)
        ]
        request = self._service.spreadsheets().batchUpdate(
            spreadsheetId=spreadsheet_id,
            body={"requests": requests},
        )
        self._execute(request, "spreadsheets.batchUpdate(deleteDimension)")


__all__ = [
    "SheetTabData",
    "SheetsBackend",
    "a1_range",
    "a1_row_range",
    "column_letter",
    "quote_title",
]
