from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fitsheets.errors import NotReadyError
from fitsheets.identity import resolve_tenant_id
from fitsheets.models import GoogleUser, Profile

COACH = GoogleUser(id="108000000000000000001", email="coach@example.com", name="Carla Coach")
STUDENT_PROFILE = Profile(id="108000000000000000002", first_name="Bia", email="bia@example.com")


def test_own_spreadsheet_resolves_to_caller() -> None:
    assert resolve_tenant_id(COACH, STUDENT_PROFILE, "sheet-own", "sheet-own") == COACH.id


def test_shared_spreadsheet_resolves_to_loaded_profile() -> None:
    assert resolve_tenant_id(COACH, STUDENT_PROFILE, "sheet-student", "sheet-own") == STUDENT_PROFILE.id


def test_unknown_own_spreadsheet_is_not_ready() -> None:
    with pytest.raises(NotReadyError):
        resolve_tenant_id(COACH, STUDENT_PROFILE, "sheet-student", None)


def test_shared_spreadsheet_without_profile_never_falls_back_to_caller() -> None:
    with pytest.raises(NotReadyError):
        resolve_tenant_id(COACH, None, "sheet-student", "sheet-own")
