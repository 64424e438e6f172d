"""Application configuration helpers for FitSheets."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)


def _app_dir() -> Path:
    override = os.getenv("FITSHEETS_HOME")
    if override:
        return Path(override).expanduser()
    for env_var in ("LOCALAPPDATA", "APPDATA"):
        value = os.environ.get(env_var)
        if value:
            return Path(value).expanduser() / "FitSheets"
    return Path.home() / ".fitsheets"


APP_DIR = _app_dir()
LOGS_DIR = APP_DIR / "logs"

DEFAULT_SETTINGS_PATH = str(APP_DIR / "settings.json")

DEFAULT_SPREADSHEET_NAME = os.getenv("FITSHEETS_SPREADSHEET_NAME", "APP_DB")
DEFAULT_CLIENT_SECRET_PATH = os.getenv(
    "FITSHEETS_CLIENT_SECRET",
    str(APP_DIR / "client_secret.json"),
)
DEFAULT_TOKEN_PATH = os.getenv(
    "FITSHEETS_TOKEN_PATH",
    str(APP_DIR / "tokens" / "token.json"),
)


@dataclass
class DatabaseSettings:
    spreadsheet_name: str = DEFAULT_SPREADSHEET_NAME
    client_secret_path: str = DEFAULT_CLIENT_SECRET_PATH
    token_path: str = DEFAULT_TOKEN_PATH
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    permission_settle_seconds: float = 1.5

    def to_json(self) -> Dict[str, object]:
        return asdict(self)


def _default_payload() -> Dict[str, object]:
    return DatabaseSettings().to_json()


def _ensure_settings(path: str) -> Dict[str, object]:
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        payload = _default_payload()
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        return payload
    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        logger.warning("Ignoring malformed settings file %s", path)
        return {}
    return data


def _clamped_int(value: object, default: int, low: int, high: int) -> int:
    try:
        return max(low, min(high, int(value)))
    except (TypeError, ValueError):
        return default


def _clamped_float(value: object, default: float, low: float, high: float) -> float:
    try:
        return max(low, min(high, float(value)))
    except (TypeError, ValueError):
        return default


def load_database_settings(path: str = DEFAULT_SETTINGS_PATH) -> DatabaseSettings:
    data = _ensure_settings(path)
    defaults = DatabaseSettings()
    merged = DatabaseSettings()
    for key in ("spreadsheet_name", "client_secret_path", "token_path"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            setattr(merged, key, value.strip())
    merged.retry_attempts = _clamped_int(data.get("retry_attempts"), defaults.retry_attempts, 1, 10)
    merged.retry_delay_seconds = _clamped_float(
        data.get("retry_delay_seconds"), defaults.retry_delay_seconds, 0.0, 30.0
    )
    merged.permission_settle_seconds = _clamped_float(
        data.get("permission_settle_seconds"), defaults.permission_settle_seconds, 0.0, 30.0
    )
    return merged


def save_database_settings(settings: DatabaseSettings, path: str = DEFAULT_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "APP_DIR",
    "DEFAULT_CLIENT_SECRET_PATH",
    "DEFAULT_SETTINGS_PATH",
    "DEFAULT_SPREADSHEET_NAME",
    "DEFAULT_TOKEN_PATH",
    "DatabaseSettings",
    "LOGS_DIR",
    "load_database_settings",
    "save_database_settings",
]
