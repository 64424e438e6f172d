"""Error taxonomy shared by the FitSheets data layer.

Every public store, registry and synchroniser operation either returns a
result or raises a subclass of :class:`StoreError`.  Raw ``HttpError``,
transport and credential exceptions from the Google client libraries are
converted by :func:`translate_error` before they reach callers.
"""
from __future__ import annotations

import httplib2
from google.auth import exceptions as auth_exceptions
from googleapiclient.errors import HttpError

RETRIABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class StoreError(Exception):
    """Base error raised by the FitSheets data layer."""


class NotReadyError(StoreError):
    """Raised when an operation is attempted before the store is ready."""


class RemoteUnavailableError(StoreError):
    """Raised when the backing spreadsheet cannot be reached."""


class NotFoundError(StoreError):
    """Raised when a record or grant addressed by id does not exist."""


class PermissionDeniedError(StoreError):
    """Raised when Google rejects the credentials or the caller lacks access."""


class BackendRejectedError(PermissionDeniedError):
    """Raised when Google rejects a request for any other client-side reason."""


class CredentialsRevokedError(PermissionDeniedError):
    """Raised when the credentials can no longer be used at all."""


class SchemaViolationError(StoreError):
    """Raised when a row or record does not match its table schema."""


def http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is not None:
        try:
            return int(status)
        except (TypeError, ValueError):
            return 0
    resp = getattr(exc, "resp", None)
    if resp is not None:
        try:
            return int(getattr(resp, "status", 0))
        except (TypeError, ValueError):
            return 0
    return 0


def is_retriable(exc: BaseException) -> bool:
    """Return ``True`` for rate limiting, server errors and transport failures."""

    if isinstance(exc, HttpError):
        return http_status(exc) in RETRIABLE_STATUSES
    return isinstance(exc, (auth_exceptions.TransportError, httplib2.HttpLib2Error, OSError))


def translate_error(exc: BaseException, description: str = "request") -> StoreError:
    """Return the :class:`StoreError` matching a Google client failure."""

    if isinstance(exc, StoreError):
        return exc
    if isinstance(exc, HttpError):
        status = http_status(exc)
        reason = _reason(exc)
        message = f"{description} failed with HTTP {status}: {reason}"
        if status in RETRIABLE_STATUSES:
            return RemoteUnavailableError(message)
        if status == 401:
            return CredentialsRevokedError(message)
        if status == 403:
            return PermissionDeniedError(message)
        if status == 404:
            return NotFoundError(message)
        return BackendRejectedError(message)
    if isinstance(exc, auth_exceptions.RefreshError):
        return CredentialsRevokedError(f"{description} failed: credentials expired or revoked ({exc})")
    if isinstance(exc, (auth_exceptions.TransportError, httplib2.HttpLib2Error, OSError)):
        return RemoteUnavailableError(f"{description} failed: {exc}")
    return RemoteUnavailableError(f"{description} failed unexpectedly: {exc!r}")


def _reason(exc: HttpError) -> str:
    reason = getattr(exc, "reason", None)
    return (reason or str(exc)).strip()


__all__ = [
    "BackendRejectedError",
    "CredentialsRevokedError",
    "NotFoundError",
    "NotReadyError",
    "PermissionDeniedError",
    "RemoteUnavailableError",
    "RETRIABLE_STATUSES",
    "SchemaViolationError",
    "StoreError",
    "http_status",
    "is_retriable",
    "translate_error",
]
