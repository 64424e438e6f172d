"""Google Drive API helpers: locating APP_DB spreadsheets and managing their ACLs."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httplib2
from google.auth import exceptions as auth_exceptions
from googleapiclient.errors import HttpError

from fitsheets.errors import translate_error

logger = logging.getLogger(__name__)

SPREADSHEET_MIME_TYPE = "application/vnd.google-apps.spreadsheet"

_GOOGLE_FAILURES = (HttpError, auth_exceptions.GoogleAuthError, httplib2.HttpLib2Error, OSError)


def _execute(request, description: str) -> Dict[str, Any]:
    try:
        result = request.execute()
    except _GOOGLE_FAILURES as exc:
        raise translate_error(exc, f"Drive {description}") from exc
    return result if isinstance(result, dict) else {}


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def spreadsheet_query(name: str, *, shared_as_writer: bool = False) -> str:
    parts = [
        f"name = '{_escape(name)}'",
        f"mimeType = '{SPREADSHEET_MIME_TYPE}'",
        "trashed = false",
    ]
    if shared_as_writer:
        parts.append("'me' in writers")
    return " and ".join(parts)


def owner_email(file_payload: Dict[str, Any]) -> Optional[str]:
    owners = file_payload.get("owners") or []
    if not owners:
        return None
    return owners[0].get("emailAddress") or None


def find_spreadsheets(service, name: str, *, shared_as_writer: bool = False) -> List[Dict[str, Any]]:
    """Return every non-trashed spreadsheet called ``name`` visible to the caller."""

    files: List[Dict[str, Any]] = []
    page_token: Optional[str] = None
    while True:
        kwargs: Dict[str, Any] = {
            "q": spreadsheet_query(name, shared_as_writer=shared_as_writer),
            "spaces": "drive",
            "fields": "nextPageToken, files(id, name, owners(emailAddress, displayName))",
            "pageToken": page_token,
        }
        if shared_as_writer:
            kwargs.update(includeItemsFromAllDrives=True, supportsAllDrives=True, corpora="allDrives")
        response = _execute(service.files().list(**kwargs), "files.list")
        files.extend(response.get("files", []))
        page_token = response.get("nextPageToken")
        if not page_token:
            break
    return files


def find_owned_spreadsheet(service, name: str, email: str) -> Optional[str]:
    """Return the id of the caller-owned spreadsheet called ``name``, if any."""

    for file_payload in find_spreadsheets(service, name):
        owners = file_payload.get("owners") or []
        if any(owner.get("emailAddress") == email for owner in owners):
            return file_payload.get("id")
    return None


def list_permissions(service, file_id: str) -> List[Dict[str, Any]]:
    response = _execute(
        service.permissions().list(
            fileId=file_id,
            fields="permissions(id, emailAddress, role, displayName, type)",
        ),
        "permissions.list",
    )
    return list(response.get("permissions", []))


def create_permission(
    service,
    file_id: str,
    email: str,
    role: str,
    *,
    notify: bool = True,
) -> Dict[str, Any]:
    body = {"role": role, "type": "user", "emailAddress": email}
    return _execute(
        service.permissions().create(
            fileId=file_id,
            body=body,
            sendNotificationEmail=notify,
            fields="id, emailAddress, role, displayName",
        ),
        "permissions.create",
    )


def update_permission_role(service, file_id: str, permission_id: str, role: str) -> Dict[str, Any]:
    return _execute(
        service.permissions().update(
            fileId=file_id,
            permissionId=permission_id,
            body={"role": role},
            fields="id, emailAddress, role, displayName",
        ),
        "permissions.update",
    )


def delete_permission(service, file_id: str, permission_id: str) -> None:
    _execute(
        service.permissions().delete(fileId=file_id, permissionId=permission_id),
        "permissions.delete",
    )


__all__ = [
    "SPREADSHEET_MIME_TYPE",
    "create_permission",
    "delete_permission",
    "find_owned_spreadsheet",
    "find_spreadsheets",
    "list_permissions",
    "owner_email",
    "spreadsheet_query",
    "update_permission_role",
]
