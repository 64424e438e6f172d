"""History writes that also refresh the ``profiles`` projection.

Weight samples and profile edits are appended to their history tables first.
That primary write is the only guaranteed part: once it succeeds the tenant's
``profiles`` row is updated in place, or created from the supplied defaults
when missing, on a best-effort basis.  A projection failure is logged and
reported on the returned result; the history row is never rolled back.

Editing or deleting the newest weight sample re-projects the weight that is
newest afterwards, and the last remaining sample of a tenant cannot be deleted.

The lookup and the update-or-insert are two separate requests, so two writers
can both miss the row and both insert one.  That race is accepted.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from fitsheets.errors import NotFoundError, RemoteUnavailableError, SchemaViolationError, StoreError
from fitsheets.events import Event, EventBus
from fitsheets.models import Profile, WeightEntry
from fitsheets.retry import RetryExecutor
from fitsheets.schemas import ID_COLUMN, TENANT_COLUMN, Record, get_schema, new_record_id, utc_now_iso
from fitsheets.store import Filter, Order, RecordStore

logger = logging.getLogger(__name__)

PROFILES = "profiles"
PROFILE_HISTORY = "profile_history"
WEIGHT_HISTORY = "weight_history"

SOURCE_PROFILE = "profile"
SOURCE_HISTORY = "history"
SOURCE_NONE = "none"


@dataclass(frozen=True)
class WeightWrite:
    entry: WeightEntry
    projection_synced: bool
    projection_created: bool = False


@dataclass(frozen=True)
class ProfileWrite:
    history: Record
    projection_synced: bool
    projection_created: bool = False
    weight_entry: Optional[WeightEntry] = None


class LastWeightEntryError(SchemaViolationError):
    """Raised when deleting the only weight sample a tenant has left."""


@dataclass(frozen=True)
class WeightSummary:
    latest: Optional[float]
    previous: Optional[float]
    source: str = SOURCE_NONE

    @property
    def difference(self) -> Optional[float]:
        if self.latest is None or self.previous is None:
            return None
        return round(self.latest - self.previous, 2)


def _weight_value(weight_kg: Any) -> float:
    try:
        weight = float(weight_kg)
    except (TypeError, ValueError) as exc:
        raise SchemaViolationError(f"Invalid weight: {weight_kg!r}") from exc
    if weight <= 0:
        raise SchemaViolationError("Weight must be positive")
    return weight


def _projection_defaults(defaults: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    columns = get_schema(PROFILES).columns
    return {
        key: value
        for key, value in (defaults or {}).items()
        if key in columns and key != ID_COLUMN and value is not None
    }


class DualWriteSynchronizer:
    def __init__(self, store: RecordStore, bus: Optional[EventBus] = None, retry: Optional[RetryExecutor] = None) -> None:
        self._store = store
        self._bus = bus
        self._retry = retry or RetryExecutor()

    def _publish(self, *events: Event) -> None:
        if self._bus is None:
            return
        for event in events:
            self._bus.publish(event)

    def _primary(self, table: str, record: Mapping[str, Any]) -> Record:
        row = {**record, ID_COLUMN: record.get(ID_COLUMN) or new_record_id()}
        attempted: List[bool] = []

        def write() -> List[Record]:
            if attempted:
                # A failed append may still have landed; look for it by id first.
                landed = self._store.select(table, eq=Filter(ID_COLUMN, row[ID_COLUMN]))
                if landed:
                    logger.info("%s row %s was already written", table, row[ID_COLUMN])
                    return landed
            attempted.append(True)
            return self._store.insert(table, row)

        inserted = self._retry.retry(write)
        if not inserted:
            raise RemoteUnavailableError(f"Could not write to {table}; the spreadsheet is unavailable")
        return inserted[0]

    def _project(self, tenant_id: str, changes: Mapping[str, Any], defaults: Mapping[str, Any]) -> Optional[bool]:
        """Apply ``changes`` to the tenant's profile row.

        Returns ``True`` when a row was created, ``False`` when one was updated
        and ``None`` when the projection could not be synchronised.
        """

        try:
            existing = self._retry.retry(
                lambda: self._store.select(PROFILES, eq=Filter(ID_COLUMN, tenant_id))
            )
            if existing is None:
                logger.warning("Could not look up profile %s; projection left stale", tenant_id)
                return None
            if existing:
                self._store.update(PROFILES, changes, Filter(ID_COLUMN, tenant_id))
                logger.info("Profile %s updated from history write", tenant_id)
                return False
            self._store.insert(PROFILES, {**defaults, **changes, ID_COLUMN: tenant_id})
            logger.info("Profile %s created from history write", tenant_id)
            return True
        except StoreError as exc:
            logger.error("Failed to update profile %s after history write: %s", tenant_id, exc)
            return None

    def record_weight(
        self,
        tenant_id: str,
        weight_kg: float,
        *,
        defaults: Optional[Mapping[str, Any]] = None,
        recorded_at: Optional[str] = None,
    ) -> WeightWrite:
        """Append a weight sample and mirror it onto ``profiles.weight_kg``."""

        if not tenant_id:
            raise SchemaViolationError("A weight sample needs a tenant id")
        weight = _weight_value(weight_kg)

        record = self._primary(
            WEIGHT_HISTORY,
            {TENANT_COLUMN: tenant_id, "weight_kg": weight, "created_at": recorded_at or utc_now_iso()},
        )
        entry = WeightEntry.from_record(record)

        created = self._project(tenant_id, {"weight_kg": weight}, _projection_defaults(defaults))
        if created is None:
            return WeightWrite(entry=entry, projection_synced=False)
        self._publish(Event.PROFILE_UPDATED, Event.WEIGHT_ADDED)
        return WeightWrite(entry=entry, projection_synced=True, projection_created=created)

    def record_profile(
        self,
        tenant_id: str,
        changes: Mapping[str, Any],
        *,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> ProfileWrite:
        """Snapshot profile changes into ``profile_history`` and apply them to ``profiles``.

        A change that carries ``weight_kg`` also appends a weight sample, so the
        weight history stays in step with the profile.
        """

        if not tenant_id:
            raise SchemaViolationError("A profile change needs a tenant id")
        profile_columns = get_schema(PROFILES).columns
        unknown = sorted(key for key in changes if key not in profile_columns)
        if unknown:
            raise SchemaViolationError(f"{PROFILES}: unknown columns {', '.join(unknown)}")
        projected = {key: value for key, value in changes.items() if key != ID_COLUMN}
        weight = projected.get("weight_kg")
        if weight is not None:
            weight = projected["weight_kg"] = _weight_value(weight)

        created_at = utc_now_iso()
        history_columns = get_schema(PROFILE_HISTORY).columns
        snapshot = {
            key: value
            for key, value in projected.items()
            if key in history_columns and key not in (ID_COLUMN, TENANT_COLUMN, "created_at")
        }
        history = self._primary(PROFILE_HISTORY, {**snapshot, TENANT_COLUMN: tenant_id, "created_at": created_at})

        weight_entry: Optional[WeightEntry] = None
        if weight is not None:
            try:
                sample = self._primary(
                    WEIGHT_HISTORY, {TENANT_COLUMN: tenant_id, "weight_kg": weight, "created_at": created_at}
                )
                weight_entry = WeightEntry.from_record(sample)
            except StoreError as exc:
                logger.error("Profile change for %s saved without its weight sample: %s", tenant_id, exc)

        if not projected:
            return ProfileWrite(history=history, projection_synced=True)
        created = self._project(tenant_id, projected, _projection_defaults(defaults))
        if created is None:
            return ProfileWrite(history=history, projection_synced=False, weight_entry=weight_entry)
        self._publish(Event.PROFILE_UPDATED)
        if weight_entry is not None:
            self._publish(Event.WEIGHT_ADDED)
        return ProfileWrite(
            history=history, projection_synced=True, projection_created=created, weight_entry=weight_entry
        )

    def weight_history(self, tenant_id: str) -> List[WeightEntry]:
        """Return the tenant's weight samples, newest first."""

        rows = self._store.select(
            WEIGHT_HISTORY,
            eq=Filter(TENANT_COLUMN, tenant_id),
            order=Order("created_at", ascending=False),
        )
        entries: List[WeightEntry] = []
        for row in rows:
            try:
                entries.append(WeightEntry.from_record(row))
            except SchemaViolationError as exc:
                logger.warning("Ignoring weight row: %s", exc)
        return entries

    def _find_entry(self, tenant_id: str, entry_id: str) -> Tuple[List[WeightEntry], int]:
        history = self.weight_history(tenant_id)
        for index, entry in enumerate(history):
            if entry.id == str(entry_id):
                return history, index
        raise NotFoundError(f"{WEIGHT_HISTORY} has no entry {entry_id!r} for {tenant_id}")

    def _reproject_weight(self, tenant_id: str, weight: float) -> bool:
        if self._project(tenant_id, {"weight_kg": weight}, {}) is None:
            return False
        self._publish(Event.PROFILE_UPDATED)
        return True

    def update_weight(self, tenant_id: str, entry_id: str, weight_kg: float) -> WeightWrite:
        """Correct one weight sample; the newest one is mirrored onto the profile."""

        weight = _weight_value(weight_kg)
        history, index = self._find_entry(tenant_id, entry_id)
        self._store.update(WEIGHT_HISTORY, {"weight_kg": weight}, Filter(ID_COLUMN, entry_id))
        entry = replace(history[index], weight_kg=weight)

        synced = True
        if index == 0:
            synced = self._reproject_weight(tenant_id, weight)
        self._publish(Event.WEIGHT_ADDED)
        return WeightWrite(entry=entry, projection_synced=synced)

    def delete_weight(self, tenant_id: str, entry_id: str) -> int:
        """Remove one weight sample and return the number of rows removed.

        Raises :class:`LastWeightEntryError` for the tenant's only sample.
        """

        history, index = self._find_entry(tenant_id, entry_id)
        if len(history) == 1:
            raise LastWeightEntryError(f"Cannot delete the last weight entry of {tenant_id}")
        removed = self._store.delete(WEIGHT_HISTORY, Filter(ID_COLUMN, entry_id))
        if index == 0:
            self._reproject_weight(tenant_id, history[1].weight_kg)
        self._publish(Event.WEIGHT_ADDED)
        return removed

    def latest_weight(self, tenant_id: str, profile: Optional[Profile] = None) -> WeightSummary:
        """Return the current and previous weight of a tenant.

        The profile's ``weight_kg`` is the projection and wins for ``latest``;
        history supplies ``previous``.  When history cannot be read the profile
        weight is returned on its own.
        """

        profile_weight = profile.weight_kg if profile is not None else None
        rows = self._retry.retry(
            lambda: self._store.select(
                WEIGHT_HISTORY,
                eq=Filter(TENANT_COLUMN, tenant_id),
                order=Order("created_at", ascending=False),
            )
        )
        if rows is None:
            logger.warning("Weight history for %s unavailable; using profile weight", tenant_id)
            return WeightSummary(profile_weight, None, SOURCE_PROFILE if profile_weight is not None else SOURCE_NONE)

        weights: List[float] = []
        for row in rows:
            try:
                weights.append(WeightEntry.from_record(row).weight_kg)
            except SchemaViolationError as exc:
                logger.warning("Ignoring weight row: %s", exc)

        previous = weights[1] if len(weights) > 1 else None
        if profile_weight is not None:
            return WeightSummary(float(profile_weight), previous, SOURCE_PROFILE)
        if weights:
            return WeightSummary(weights[0], previous, SOURCE_HISTORY)
        return WeightSummary(None, None, SOURCE_NONE)


__all__ = [
    "DualWriteSynchronizer",
    "LastWeightEntryError",
    "ProfileWrite",
    "WeightSummary",
    "WeightWrite",
]
