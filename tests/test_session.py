from __future__ import annotations

import sys
from pathlib import Path
from typing import List

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from conftest import FakeGoogle, http_error

from fitsheets.errors import NotReadyError
from fitsheets.events import Event
from fitsheets.models import GoogleUser
from fitsheets.retry import RetryExecutor
from fitsheets.session import Session
from fitsheets.sheets_backend import SheetsBackend
from fitsheets.store import Filter, RecordStore

USER = GoogleUser(
    id="108000000000000000001",
    email="coach@example.com",
    name="Carla Maria Coach",
    given_name="Carla",
    family_name="Coach",
)


@pytest.fixture
def fresh_store(google: FakeGoogle) -> RecordStore:
    return RecordStore(google.sheets, google.drive, google.me, backend=SheetsBackend(google.sheets, sleep=lambda _: None))


@pytest.fixture
def session(fresh_store: RecordStore) -> Session:
    with Session(fresh_store, USER, retry=RetryExecutor(sleep=lambda _: None)) as active:
        yield active


def test_start_without_profile_builds_unsaved_basic_profile(session: Session, fresh_store: RecordStore) -> None:
    seen: List[Event] = []
    session.bus.subscribe(Event.DATABASE_INITIALIZED, seen.append)

    profile = session.start()

    assert seen == [Event.DATABASE_INITIALIZED]
    assert profile is not None
    assert (profile.id, profile.first_name, profile.last_name, profile.role) == (USER.id, "Carla", "Coach", "student")
    assert fresh_store.select("profiles") == []


def test_profile_found_by_email_uses_last_duplicate(session: Session, fresh_store: RecordStore) -> None:
    fresh_store.initialize()
    fresh_store.insert("profiles", {"id": "old", "first_name": "Old", "email": USER.email, "role": "personal"})
    fresh_store.insert("profiles", {"id": "new", "first_name": "New", "email": USER.email, "role": "personal"})

    profile = session.load_profile(force=True)

    assert profile.id == "new"
    assert profile.role == "personal"
    assert profile.last_name == "Coach"


def test_temporary_profile_is_migrated_to_google_id(session: Session, fresh_store: RecordStore) -> None:
    fresh_store.initialize()
    fresh_store.insert("profiles", {"id": "temp_42", "first_name": "C.", "email": USER.email, "role": "personal"})

    profile = session.load_profile(force=True)

    assert profile.id == USER.id
    assert profile.first_name == "Carla"
    assert profile.role == "personal"
    rows = fresh_store.select("profiles")
    assert [row["id"] for row in rows] == [USER.id]


def test_profile_loading_is_bounded_by_attempt_budget(session: Session, fresh_store: RecordStore, google: FakeGoogle) -> None:
    fresh_store.initialize()
    google.fail("values.get", *[http_error(503)] * 9)

    for _ in range(3):
        assert session.load_profile() is None
    assert session.budget.exhausted
    calls = google.count("values.get")

    assert session.load_profile() is None
    assert google.count("values.get") == calls

    profile = session.load_profile(force=True)
    assert profile is not None and profile.id == USER.id
    assert session.budget.used == 0


def test_load_profile_requires_ready_store(session: Session) -> None:
    with pytest.raises(NotReadyError):
        session.load_profile()


def test_record_weight_on_own_spreadsheet_uses_caller_id(session: Session, fresh_store: RecordStore) -> None:
    session.start()

    result = session.record_weight(80)

    assert result.entry.user_id == USER.id
    stored = fresh_store.get("profiles", USER.id)
    assert stored["weight_kg"] == 80
    assert stored["email"] == USER.email
    # The session reloads its profile when the projection changes.
    assert session.profile.weight_kg == 80
    summary = session.latest_weight()
    assert (summary.latest, summary.previous) == (80, None)


def test_viewing_student_writes_under_student_id(session: Session, fresh_store: RecordStore, google: FakeGoogle) -> None:
    session.start()
    shared = google.add_spreadsheet("APP_DB", owner="bia@example.com", writers=[google.me])
    google.fill(
        shared.id,
        "profiles",
        [["id", "first_name", "email", "weight_kg"], ["s-owner", "Bia", "bia@example.com", "61"]],
    )
    switched: List[Event] = []
    session.bus.subscribe(Event.SPREADSHEET_SWITCHED, switched.append)

    profile = session.view_student(shared.id, "BIA@example.com")

    assert profile.id == "s-owner"
    assert session.tenant_id() == "s-owner"
    session.record_weight(60)
    weights = fresh_store.select("weight_history", eq=Filter("user_id", "s-owner"))
    assert [row["weight_kg"] for row in weights] == [60]
    assert fresh_store.get("profiles", "s-owner")["weight_kg"] == 60
    assert session.profile.id == "s-owner"

    own = session.view_own()
    assert own.id == USER.id
    assert session.tenant_id() == USER.id
    assert fresh_store.select("weight_history") == []
    assert switched == [Event.SPREADSHEET_SWITCHED, Event.SPREADSHEET_SWITCHED]


def test_close_cancels_profile_listener(fresh_store: RecordStore) -> None:
    session = Session(fresh_store, USER)
    assert session.bus.subscriber_count(Event.PROFILE_UPDATED) == 1

    session.close()

    assert session.bus.subscriber_count(Event.PROFILE_UPDATED) == 0


def test_viewing_student_without_email_keeps_student_tenant(session: Session, fresh_store: RecordStore, google: FakeGoogle) -> None:
    session.start()
    shared = google.add_spreadsheet("APP_DB", owner="bia@example.com", writers=[google.me])
    google.fill(
        shared.id,
        "profiles",
        [["id", "first_name", "email", "weight_kg"], ["s-owner", "Bia", "bia@example.com", "61"]],
    )

    profile = session.view_student(shared.id)
    assert profile.id == "s-owner"

    # Each write reloads the profile; the reload must stay on the student's row.
    session.record_weight(60)
    session.record_weight(59)

    weights = fresh_store.select("weight_history")
    assert {row["user_id"] for row in weights} == {"s-owner"}
    assert [row["id"] for row in fresh_store.select("profiles")] == ["s-owner"]
    assert session.tenant_id() == "s-owner"
