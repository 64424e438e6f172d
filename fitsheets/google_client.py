"""OAuth bootstrap and service construction for the Google APIs FitSheets uses."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import httplib2
from google.auth import exceptions as auth_exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from fitsheets.errors import translate_error
from fitsheets.models import GoogleUser

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "openid",
]


@dataclass
class GoogleServices:
    sheets: object
    drive: object
    oauth2: object


def load_credentials(
    secret_path: str,
    token_path: str,
    scopes: Optional[List[str]] = None,
) -> Credentials:
    """Return user credentials, running the desktop OAuth flow when needed."""

    scopes = scopes or DEFAULT_SCOPES
    credentials = None
    if token_path and os.path.exists(token_path):
        credentials = Credentials.from_authorized_user_file(token_path, scopes)

    if credentials and credentials.valid:
        return credentials

    if credentials and credentials.expired and credentials.refresh_token:
        try:
            credentials.refresh(Request())
        except auth_exceptions.RefreshError as exc:
            raise translate_error(exc, "Token refresh") from exc
        logger.info("Refreshed cached Google credentials")
    else:
        if not os.path.exists(secret_path):
            raise FileNotFoundError(f"Client secret file not found: {secret_path}")
        flow = InstalledAppFlow.from_client_secrets_file(secret_path, scopes)
        credentials = flow.run_local_server(port=0)
        logger.info("Obtained new Google credentials")

    if token_path:
        os.makedirs(os.path.dirname(token_path) or ".", exist_ok=True)
        with open(token_path, "w", encoding="utf-8") as handle:
            handle.write(credentials.to_json())
    return credentials


def build_services(credentials) -> GoogleServices:
    return GoogleServices(
        sheets=build("sheets", "v4", credentials=credentials, cache_discovery=False),
        drive=build("drive", "v3", credentials=credentials, cache_discovery=False),
        oauth2=build("oauth2", "v2", credentials=credentials, cache_discovery=False),
    )


def fetch_user(oauth2_service) -> GoogleUser:
    """Return the signed-in Google account."""

    try:
        payload = oauth2_service.userinfo().get().execute()
    except (HttpError, auth_exceptions.GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
        raise translate_error(exc, "OAuth2 userinfo.get") from exc
    return GoogleUser.from_userinfo(payload or {})


__all__ = ["DEFAULT_SCOPES", "GoogleServices", "build_services", "fetch_user", "load_credentials"]
