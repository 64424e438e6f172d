from __future__ import annotations

import json
import re
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import httplib2
import pytest
from googleapiclient.errors import HttpError

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fitsheets.sheets_backend import SheetsBackend  # noqa: E402
from fitsheets.store import RecordStore  # noqa: E402

OWNER_EMAIL = "coach@example.com"


def http_error(status: int, message: str = "error") -> HttpError:
    content = json.dumps({"error": {"code": status, "message": message}}).encode("utf-8")
    return HttpError(httplib2.Response({"status": status}), content)


def _cell(value: Any) -> str:
    # Sheets hands values back as their formatted text.
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return "" if value is None else str(value)


def _column_index(letters: str) -> int:
    index = 0
    for char in letters:
        index = index * 26 + (ord(char) - 64)
    return index - 1


def _trim(row: List[str]) -> List[str]:
    end = len(row)
    while end and row[end - 1] == "":
        end -= 1
    return row[:end]


class _FakeRequest:
    def __init__(self, world: "FakeGoogle", name: str, callback: Callable[[], Any]) -> None:
        self._world = world
        self._name = name
        self._callback = callback

    def execute(self):
        self._world.calls.append(self._name)
        queued = self._world.failures.get(self._name)
        if queued:
            raise queued.pop(0)
        return self._callback()


class _FakeSheet:
    def __init__(self, sheet_id: int, title: str) -> None:
        self.sheet_id = sheet_id
        self.title = title
        self.rows: List[List[str]] = []

    def trimmed(self) -> List[List[str]]:
        rows = [_trim(list(row)) for row in self.rows]
        while rows and not rows[-1]:
            rows.pop()
        return rows

    def write(self, row_index: int, col_index: int, values: List[List[Any]]) -> None:
        for offset, row in enumerate(values):
            target = row_index + offset
            while len(self.rows) <= target:
                self.rows.append([])
            current = self.rows[target]
            needed = col_index + len(row)
            if len(current) < needed:
                current.extend([""] * (needed - len(current)))
            for column, value in enumerate(row):
                current[col_index + column] = _cell(value)


class _FakeBook:
    def __init__(self, spreadsheet_id: str, title: str) -> None:
        self.id = spreadsheet_id
        self.title = title
        self.sheets: Dict[str, _FakeSheet] = {}
        self._next_sheet_id = 0

    def add_sheet(self, title: str) -> _FakeSheet:
        sheet = _FakeSheet(self._next_sheet_id, title)
        self._next_sheet_id += 1
        self.sheets[title] = sheet
        return sheet


class _FakeValues:
    def __init__(self, world: "FakeGoogle") -> None:
        self._world = world

    def get(self, spreadsheetId: str, range: str, majorDimension: str = "ROWS"):  # noqa: N803 - API compatibility
        return _FakeRequest(self._world, "values.get", lambda: self._world._get_range(spreadsheetId, range))

    def batchGet(self, spreadsheetId: str, ranges: List[str], majorDimension: str = "ROWS"):  # noqa: N802,N803
        def run():
            return {"valueRanges": [self._world._get_range(spreadsheetId, cells) for cells in ranges]}

        return _FakeRequest(self._world, "values.batchGet", run)

    def append(self, spreadsheetId, range, valueInputOption, insertDataOption, body):  # noqa: N803
        def run():
            sheet, _ = self._world._resolve(spreadsheetId, range)
            sheet.write(len(sheet.trimmed()), 0, body.get("values", []))
            return {"updates": {"updatedRows": len(body.get("values", []))}}

        return _FakeRequest(self._world, "values.append", run)

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):  # noqa: N802,N803
        def run():
            self._world.value_writes.append(body)
            for entry in body.get("data", []):
                sheet, cells = self._world._resolve(spreadsheetId, entry["range"])
                match = re.match(r"([A-Z]+)(\d+)", cells)
                assert match, cells
                sheet.write(int(match.group(2)) - 1, _column_index(match.group(1)), entry.get("values", []))
            return {}

        return _FakeRequest(self._world, "values.batchUpdate", run)


class _FakeSpreadsheets:
    def __init__(self, world: "FakeGoogle") -> None:
        self._world = world

    def values(self) -> _FakeValues:
        return _FakeValues(self._world)

    def get(self, spreadsheetId: str, includeGridData: bool = False, fields: Optional[str] = None):  # noqa: N803
        def run():
            book = self._world._book(spreadsheetId)
            return {
                "sheets": [
                    {"properties": {"sheetId": sheet.sheet_id, "title": sheet.title}}
                    for sheet in book.sheets.values()
                ]
            }

        return _FakeRequest(self._world, "spreadsheets.get", run)

    def create(self, body: Dict[str, Any], fields: Optional[str] = None):
        def run():
            title = body["properties"]["title"]
            book = self._world.add_spreadsheet(title, owner=self._world.me)
            for entry in body.get("sheets", []):
                book.add_sheet(entry["properties"]["title"])
            if not book.sheets:
                book.add_sheet("Sheet1")
            return {"spreadsheetId": book.id}

        return _FakeRequest(self._world, "spreadsheets.create", run)

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):  # noqa: N802,N803
        def run():
            book = self._world._book(spreadsheetId)
            for request in body.get("requests", []):
                if "addSheet" in request:
                    book.add_sheet(request["addSheet"]["properties"]["title"])
                elif "deleteDimension" in request:
                    span = request["deleteDimension"]["range"]
                    sheet = next(s for s in book.sheets.values() if s.sheet_id == span["sheetId"])
                    del sheet.rows[span["startIndex"]:span["endIndex"]]
            return {"replies": []}

        return _FakeRequest(self._world, "spreadsheets.batchUpdate", run)


class FakeSheetsService:
    def __init__(self, world: "FakeGoogle") -> None:
        self._world = world

    def spreadsheets(self) -> _FakeSpreadsheets:
        return _FakeSpreadsheets(self._world)


class _FakeFiles:
    def __init__(self, world: "FakeGoogle") -> None:
        self._world = world

    def list(self, q: str, spaces: str = "drive", fields: str = "", pageToken: Optional[str] = None, **kwargs):  # noqa: N803
        def run():
            self._world.list_queries.append(q)
            name = re.search(r"name = '([^']*)'", q).group(1)
            shared = "'me' in writers" in q
            matches = []
            for entry in self._world.files:
                if entry["name"] != name:
                    continue
                if shared and self._world.me not in entry["writers"]:
                    continue
                matches.append({"id": entry["id"], "name": entry["name"], "owners": entry["owners"]})
            start = int(pageToken or 0)
            page = matches[start:start + self._world.page_size]
            response: Dict[str, Any] = {"files": page}
            if start + self._world.page_size < len(matches):
                response["nextPageToken"] = str(start + self._world.page_size)
            return response

        return _FakeRequest(self._world, "files.list", run)


class _FakePermissions:
    def __init__(self, world: "FakeGoogle") -> None:
        self._world = world

    def list(self, fileId: str, fields: str = ""):  # noqa: N803
        def run():
            return {"permissions": [dict(entry) for entry in self._world._acl(fileId)]}

        return _FakeRequest(self._world, "permissions.list", run)

    def create(self, fileId: str, body: Dict[str, Any], sendNotificationEmail: bool = True, fields: str = ""):  # noqa: N803
        def run():
            self._world.notifications.append((body["emailAddress"], sendNotificationEmail))
            self._world._next_permission += 1
            entry = {
                "id": f"perm-{self._world._next_permission}",
                "emailAddress": body["emailAddress"],
                "role": body["role"],
                "type": body.get("type", "user"),
                "displayName": body["emailAddress"].split("@")[0].title(),
            }
            self._world._acl(fileId).append(entry)
            return dict(entry)

        return _FakeRequest(self._world, "permissions.create", run)

    def update(self, fileId: str, permissionId: str, body: Dict[str, Any], fields: str = ""):  # noqa: N803
        def run():
            for entry in self._world._acl(fileId):
                if entry["id"] == permissionId:
                    entry.update(body)
                    return dict(entry)
            raise http_error(404, "Permission not found")

        return _FakeRequest(self._world, "permissions.update", run)

    def delete(self, fileId: str, permissionId: str):  # noqa: N803
        def run():
            acl = self._world._acl(fileId)
            for entry in list(acl):
                if entry["id"] == permissionId:
                    acl.remove(entry)
                    return ""
            raise http_error(404, "Permission not found")

        return _FakeRequest(self._world, "permissions.delete", run)


class FakeDriveService:
    def __init__(self, world: "FakeGoogle") -> None:
        self._world = world

    def files(self) -> _FakeFiles:
        return _FakeFiles(self._world)

    def permissions(self) -> _FakePermissions:
        return _FakePermissions(self._world)


class FakeGoogle:
    """In-memory Sheets and Drive sharing one set of spreadsheets."""

    def __init__(self, me: str = OWNER_EMAIL) -> None:
        self.me = me
        self.books: Dict[str, _FakeBook] = {}
        self.files: List[Dict[str, Any]] = []
        self.acls: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.value_writes: List[Dict[str, Any]] = []
        self.list_queries: List[str] = []
        self.notifications: List[Tuple[str, bool]] = []
        self.page_size = 100
        self._next_permission = 0
        self.sheets = FakeSheetsService(self)
        self.drive = FakeDriveService(self)

    # Setup helpers ------------------------------------------------------
    def add_spreadsheet(self, title: str, *, owner: str, owner_name: str = "", writers: Optional[List[str]] = None) -> _FakeBook:
        spreadsheet_id = f"sheet-{len(self.books) + 1}"
        book = _FakeBook(spreadsheet_id, title)
        self.books[spreadsheet_id] = book
        self.files.append(
            {
                "id": spreadsheet_id,
                "name": title,
                "owners": [{"emailAddress": owner, "displayName": owner_name or owner}],
                "writers": [owner] + list(writers or []),
            }
        )
        self.acls[spreadsheet_id] = [
            {"id": f"owner-{spreadsheet_id}", "emailAddress": owner, "role": "owner", "type": "user", "displayName": owner_name or owner}
        ]
        for email in writers or []:
            self._next_permission += 1
            self.acls[spreadsheet_id].append(
                {"id": f"perm-{self._next_permission}", "emailAddress": email, "role": "writer", "type": "user", "displayName": email}
            )
        return book

    def fill(self, spreadsheet_id: str, title: str, rows: List[List[Any]]) -> None:
        book = self._book(spreadsheet_id)
        sheet = book.sheets.get(title) or book.add_sheet(title)
        sheet.rows = []
        sheet.write(0, 0, rows)

    def rows(self, spreadsheet_id: str, title: str) -> List[List[str]]:
        return self._book(spreadsheet_id).sheets[title].trimmed()

    def fail(self, name: str, *errors: Exception) -> None:
        self.failures.setdefault(name, []).extend(errors)

    def count(self, name: str) -> int:
        return self.calls.count(name)

    # Internal -----------------------------------------------------------
    def _book(self, spreadsheet_id: str) -> _FakeBook:
        try:
            return self.books[spreadsheet_id]
        except KeyError:
            raise http_error(404, "Requested entity was not found.") from None

    def _acl(self, file_id: str) -> List[Dict[str, Any]]:
        if file_id not in self.acls:
            raise http_error(404, "File not found")
        return self.acls[file_id]

    def _resolve(self, spreadsheet_id: str, range_spec: str) -> Tuple[_FakeSheet, str]:
        title, cells = range_spec.split("!", 1)
        if title.startswith("'") and title.endswith("'"):
            title = title[1:-1].replace("''", "'")
        book = self._book(spreadsheet_id)
        if title not in book.sheets:
            raise http_error(400, f"Unable to parse range: {range_spec}")
        return book.sheets[title], cells

    def _get_range(self, spreadsheet_id: str, range_spec: str) -> Dict[str, Any]:
        sheet, cells = self._resolve(spreadsheet_id, range_spec)
        rows = sheet.trimmed()
        if cells == "1:1":
            rows = rows[:1]
        payload: Dict[str, Any] = {"range": range_spec, "majorDimension": "ROWS"}
        if rows and any(rows):
            payload["values"] = rows
        return payload


@pytest.fixture
def google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
def no_sleep() -> List[float]:
    return []


@pytest.fixture
def store(google: FakeGoogle, no_sleep: List[float]) -> RecordStore:
    backend = SheetsBackend(google.sheets, sleep=no_sleep.append)
    record_store = RecordStore(google.sheets, google.drive, google.me, backend=backend)
    record_store.initialize()
    return record_store
