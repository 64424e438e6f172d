"""Sharing of the APP_DB spreadsheet through Drive permissions.

A student grants their personal trainer ``writer`` access to their own
spreadsheet; the trainer then finds it through :meth:`PermissionRegistry.list_students`.
Drive throttles permission listing, so a listing issued shortly after a grant
or revoke first waits out the remainder of ``settle_delay``.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional

from fitsheets import drive_api
from fitsheets.errors import CredentialsRevokedError, NotFoundError, NotReadyError, SchemaViolationError, StoreError
from fitsheets.events import Event, EventBus
from fitsheets.store import Filter, RecordStore

logger = logging.getLogger(__name__)

ROLES = ("reader", "writer")
DEFAULT_SETTLE_SECONDS = 1.5


@dataclass(frozen=True)
class PermissionGrant:
    id: str
    email_address: str
    role: str
    display_name: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "PermissionGrant":
        return cls(
            id=str(payload.get("id") or ""),
            email_address=str(payload.get("emailAddress") or ""),
            role=str(payload.get("role") or ""),
            display_name=payload.get("displayName") or None,
        )


@dataclass(frozen=True)
class SharedSpreadsheet:
    id: str
    name: str
    owner_email: Optional[str]
    owner_name: Optional[str]


def _same_email(left: Optional[str], right: Optional[str]) -> bool:
    return bool(left and right) and left.strip().lower() == right.strip().lower()


class PermissionRegistry:
    """List, grant and revoke access to the spreadsheet the store is using."""

    def __init__(
        self,
        drive_service,
        store: RecordStore,
        bus: Optional[EventBus] = None,
        *,
        settle_delay: float = DEFAULT_SETTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._drive = drive_service
        self._store = store
        self._bus = bus
        self._settle_delay = max(0.0, settle_delay)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_mutation: Optional[float] = None

    def _file_id(self) -> str:
        spreadsheet_id = self._store.spreadsheet_id
        if not self._store.initialized or not spreadsheet_id:
            raise NotReadyError("Database not initialized")
        return spreadsheet_id

    def _settle(self) -> None:
        with self._lock:
            last = self._last_mutation
        if last is None:
            return
        remaining = self._settle_delay - (self._clock() - last)
        if remaining > 0:
            logger.debug("Waiting %.2fs for permissions to settle", remaining)
            self._sleep(remaining)

    def _mutated(self) -> None:
        with self._lock:
            self._last_mutation = self._clock()
        if self._bus is not None:
            self._bus.publish(Event.PERMISSIONS_UPDATED)

    def list_permissions(self) -> List[PermissionGrant]:
        """Return every grant on the active spreadsheet except the owner's."""

        file_id = self._file_id()
        self._settle()
        grants = [
            PermissionGrant.from_api(payload)
            for payload in drive_api.list_permissions(self._drive, file_id)
            if payload.get("role") != "owner"
        ]
        logger.debug("Spreadsheet %s has %d grant(s)", file_id, len(grants))
        return grants

    def grant_access(self, email: str, role: str = "writer") -> PermissionGrant:
        """Share the active spreadsheet with ``email``.

        An email that already holds a grant keeps it: the same role returns the
        existing grant, a different role is changed in place.
        """

        email = (email or "").strip()
        if "@" not in email:
            raise SchemaViolationError(f"Invalid email address: {email!r}")
        if role not in ROLES:
            raise SchemaViolationError(f"Unsupported role {role!r}; expected one of {', '.join(ROLES)}")
        file_id = self._file_id()

        existing = next(
            (grant for grant in self.list_permissions() if _same_email(grant.email_address, email)),
            None,
        )
        if existing is not None and existing.role == role:
            logger.info("%s already has %s access to %s", email, role, file_id)
            return existing
        if existing is not None:
            payload = drive_api.update_permission_role(self._drive, file_id, existing.id, role)
            logger.info("Changed %s access to %s from %s to %s", email, file_id, existing.role, role)
        else:
            payload = drive_api.create_permission(self._drive, file_id, email, role, notify=True)
            logger.info("Granted %s access to %s for %s", role, file_id, email)

        grant = PermissionGrant.from_api(payload)
        if not grant.email_address:
            grant = PermissionGrant(grant.id, email, grant.role or role, grant.display_name)
        self._mutated()
        return grant

    def revoke_permission(self, permission_id: str) -> None:
        """Remove a grant; an id Drive no longer knows is treated as revoked."""

        file_id = self._file_id()
        try:
            drive_api.delete_permission(self._drive, file_id, permission_id)
        except NotFoundError:
            logger.info("Permission %s was already absent from %s", permission_id, file_id)
        else:
            logger.info("Revoked permission %s on %s", permission_id, file_id)
        self._mutated()

    def list_students(self) -> List[SharedSpreadsheet]:
        """Return spreadsheets other users share with the caller as writer."""

        if not self._store.initialized:
            raise NotReadyError("Database not initialized")
        own_email = self._store.user_email
        files = drive_api.find_spreadsheets(self._drive, self._store.spreadsheet_name, shared_as_writer=True)
        students: List[SharedSpreadsheet] = []
        for payload in files:
            owner = drive_api.owner_email(payload)
            if not owner or _same_email(owner, own_email):
                continue
            students.append(
                SharedSpreadsheet(
                    id=str(payload.get("id")),
                    name=str(payload.get("name") or ""),
                    owner_email=owner,
                    owner_name=self._owner_name(str(payload.get("id")), owner),
                )
            )
        logger.info("Found %d shared spreadsheet(s)", len(students))
        return students

    def _owner_name(self, spreadsheet_id: str, owner: str) -> str:
        fallback = owner.split("@")[0]
        try:
            profiles = self._store.select("profiles", eq=Filter("email", owner), spreadsheet_id=spreadsheet_id)
        except CredentialsRevokedError:
            raise
        except StoreError as exc:
            logger.info("Could not read owner name from %s: %s", spreadsheet_id, exc)
            return fallback
        for record in profiles:
            name = f"{record.get('first_name') or ''} {record.get('last_name') or ''}".strip()
            if name:
                return name
        return fallback


__all__ = ["PermissionGrant", "PermissionRegistry", "ROLES", "SharedSpreadsheet"]
