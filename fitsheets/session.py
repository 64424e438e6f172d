"""Per-user session: the signed-in Google user, their profile and the active spreadsheet."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from fitsheets.dual_write import DualWriteSynchronizer, ProfileWrite, WeightSummary, WeightWrite
from fitsheets.errors import NotFoundError, NotReadyError, RemoteUnavailableError, StoreError
from fitsheets.events import Event, EventBus, Subscription
from fitsheets.identity import resolve_tenant_id
from fitsheets.models import ROLE_STUDENT, GoogleUser, Profile, WeightEntry
from fitsheets.retry import AttemptBudget, RetryExecutor
from fitsheets.schemas import ID_COLUMN, Record
from fitsheets.store import Filter, RecordStore

logger = logging.getLogger(__name__)

MAX_PROFILE_LOAD_RETRIES = 3
TEMP_PROFILE_PREFIX = "temp_"


def _is_temporary(record: Mapping[str, Any]) -> bool:
    # Trainers register students before their first sign-in under a temp_ id.
    return str(record.get(ID_COLUMN) or "").startswith(TEMP_PROFILE_PREFIX)


class Session:
    def __init__(
        self,
        store: RecordStore,
        user: GoogleUser,
        bus: Optional[EventBus] = None,
        retry: Optional[RetryExecutor] = None,
        *,
        max_profile_loads: int = MAX_PROFILE_LOAD_RETRIES,
    ) -> None:
        self.store = store
        self.user = user
        self.bus = bus or EventBus()
        self.retry = retry or RetryExecutor()
        self.synchronizer = DualWriteSynchronizer(store, self.bus, self.retry)
        self.profile: Optional[Profile] = None
        self._student_email: Optional[str] = None
        self._budget = AttemptBudget(limit=max_profile_loads)
        self._subscriptions: List[Subscription] = [
            self.bus.subscribe(Event.PROFILE_UPDATED, self._on_profile_updated),
        ]

    @property
    def budget(self) -> AttemptBudget:
        return self._budget

    def start(self) -> Optional[Profile]:
        """Initialise the store, announce it and load the caller's profile."""

        self.store.initialize()
        self.bus.publish(Event.DATABASE_INITIALIZED)
        return self.load_profile(force=True)

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _on_profile_updated(self, event: Event) -> None:
        try:
            self.load_profile(force=True)
        except StoreError as exc:
            logger.warning("Could not reload profile after %s: %s", event.value, exc)

    # ------------------------------------------------------------------
    # Profile loading
    # ------------------------------------------------------------------
    def load_profile(self, force: bool = False) -> Optional[Profile]:
        """Load the profile for the active spreadsheet.

        Loading the caller's own profile is bounded by an attempt budget: once
        ``max_profile_loads`` consecutive loads failed, further calls return
        the current profile until ``force`` resets the budget.
        """

        if not self.store.initialized:
            raise NotReadyError("Database not initialized")
        if self.store.is_viewing_shared:
            self.profile = self._load_student_profile(self._student_email)
            return self.profile

        if force:
            self._budget = self._budget.reset()
        elif self._budget.exhausted:
            logger.warning("Profile load attempts exhausted (%d); keeping current profile", self._budget.limit)
            return self.profile

        self._budget = self._budget.consume()
        try:
            profile = self._load_own_profile()
        except RemoteUnavailableError as exc:
            logger.warning(
                "Could not load profile (attempt %d/%d): %s", self._budget.used, self._budget.limit, exc
            )
            return self.profile
        self._budget = self._budget.reset()
        self.profile = profile
        return profile

    def _load_own_profile(self) -> Profile:
        user = self.user
        profiles = self.store.select("profiles", eq=Filter(ID_COLUMN, user.id))
        temporary: Optional[Record] = None
        if not profiles and user.email:
            by_email = self.store.select("profiles", eq=Filter("email", user.email))
            profiles = [record for record in by_email if not _is_temporary(record)]
            temporary = next((record for record in by_email if _is_temporary(record)), None)
        if profiles:
            # Duplicate rows: the last one appended wins.
            return self._complete(profiles[-1])

        parts = user.name_parts()
        if temporary is not None:
            migrated = {
                ID_COLUMN: user.id,
                "first_name": user.given_name or temporary.get("first_name") or (parts[0] if parts else ""),
                "last_name": user.family_name or temporary.get("last_name") or " ".join(parts[1:]),
                "role": temporary.get("role") or ROLE_STUDENT,
                "email": user.email or None,
            }
            try:
                self.store.delete("profiles", Filter(ID_COLUMN, temporary[ID_COLUMN]))
            except (RemoteUnavailableError, NotFoundError) as exc:
                logger.error("Could not delete temporary profile %s: %s", temporary[ID_COLUMN], exc)
            self.store.insert("profiles", migrated)
            logger.info("Migrated temporary profile %s to %s", temporary[ID_COLUMN], user.id)
            return Profile.from_record(migrated)

        logger.info("No profile for %s yet; it is created on first save", user.email or user.id)
        return Profile(
            id=user.id,
            first_name=user.given_name or (parts[0] if parts else ""),
            last_name=user.family_name or " ".join(parts[1:]),
            role=ROLE_STUDENT,
            email=user.email or None,
        )

    def _complete(self, record: Mapping[str, Any]) -> Profile:
        user = self.user
        merged: Dict[str, Any] = dict(record)
        merged["first_name"] = record.get("first_name") or user.given_name
        merged["last_name"] = record.get("last_name") or user.family_name
        merged["role"] = record.get("role") or ROLE_STUDENT
        merged["email"] = record.get("email") or user.email or None
        return Profile.from_record(merged, fallback_id=user.id)

    def _load_student_profile(self, student_email: Optional[str]) -> Profile:
        records = self.store.select("profiles")
        if not records:
            raise NotFoundError(f"Shared spreadsheet {self.store.spreadsheet_id} has no profile")
        wanted = (student_email or "").strip().lower()
        match = None
        if wanted:
            match = next((r for r in records if str(r.get("email") or "").lower() == wanted), None)
            if match is None:
                match = next((r for r in records if wanted in str(r.get("email") or "").lower()), None)
        if match is None:
            logger.info("No profile matches %r; using the first profile of the spreadsheet", student_email)
            match = records[0]
        return Profile.from_record(match)

    # ------------------------------------------------------------------
    # Spreadsheet switching
    # ------------------------------------------------------------------
    def view_student(self, spreadsheet_id: str, student_email: Optional[str] = None) -> Profile:
        """Work on a student's shared spreadsheet as that student.

        Without an email the first profile of the spreadsheet is the student.
        """

        self.store.switch_to_spreadsheet(spreadsheet_id)
        self._student_email = (student_email or "").strip() or None
        # Never leave the caller's own profile in place for a shared view.
        self.profile = None
        self.profile = self._load_student_profile(student_email)
        self.bus.publish(Event.SPREADSHEET_SWITCHED)
        return self.profile

    def view_own(self) -> Optional[Profile]:
        self.store.switch_to_spreadsheet(None)
        self._student_email = None
        self.profile = None
        profile = self.load_profile(force=True)
        self.bus.publish(Event.SPREADSHEET_SWITCHED)
        return profile

    # ------------------------------------------------------------------
    # Writes and reads for the effective tenant
    # ------------------------------------------------------------------
    def tenant_id(self) -> str:
        return resolve_tenant_id(
            self.user,
            self.profile,
            self.store.spreadsheet_id,
            self.store.original_spreadsheet_id,
        )

    def _defaults(self) -> Dict[str, Any]:
        if self.profile is None:
            return {}
        defaults = self.profile.projection_defaults()
        if not defaults.get("email") and not self.store.is_viewing_shared:
            defaults["email"] = self.user.email or None
        return defaults

    def record_weight(self, weight_kg: float, *, recorded_at: Optional[str] = None) -> WeightWrite:
        return self.synchronizer.record_weight(
            self.tenant_id(), weight_kg, defaults=self._defaults(), recorded_at=recorded_at
        )

    def latest_weight(self) -> WeightSummary:
        return self.synchronizer.latest_weight(self.tenant_id(), self.profile)

    def weight_history(self) -> List[WeightEntry]:
        return self.synchronizer.weight_history(self.tenant_id())

    def update_weight(self, entry_id: str, weight_kg: float) -> WeightWrite:
        return self.synchronizer.update_weight(self.tenant_id(), entry_id, weight_kg)

    def delete_weight(self, entry_id: str) -> int:
        return self.synchronizer.delete_weight(self.tenant_id(), entry_id)

    def save_profile(self, changes: Mapping[str, Any]) -> ProfileWrite:
        return self.synchronizer.record_profile(self.tenant_id(), changes, defaults=self._defaults())


__all__ = ["MAX_PROFILE_LOAD_RETRIES", "Session"]
