"""Typed views over the records the data layer itself reasons about."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from fitsheets.errors import SchemaViolationError

ROLE_STUDENT = "student"
ROLE_PERSONAL = "personal"


@dataclass
class GoogleUser:
    id: str
    email: str
    name: str = ""
    given_name: str = ""
    family_name: str = ""
    picture: Optional[str] = None

    @classmethod
    def from_userinfo(cls, payload: Mapping[str, Any]) -> "GoogleUser":
        user_id = str(payload.get("id") or "").strip()
        if not user_id:
            raise SchemaViolationError("userinfo response has no id")
        return cls(
            id=user_id,
            email=str(payload.get("email") or ""),
            name=str(payload.get("name") or ""),
            given_name=str(payload.get("given_name") or ""),
            family_name=str(payload.get("family_name") or ""),
            picture=payload.get("picture"),
        )

    def name_parts(self) -> List[str]:
        return self.name.split() if self.name else []


@dataclass
class Profile:
    id: str
    first_name: str = ""
    last_name: str = ""
    role: str = ROLE_STUDENT
    email: Optional[str] = None
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    sex: Optional[str] = None
    age: Optional[int] = None
    routine: Optional[str] = None
    locomotion_type: Optional[str] = None
    locomotion_distance_km: Optional[float] = None
    locomotion_time_minutes: Optional[float] = None
    locomotion_days: List[str] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Mapping[str, Any], *, fallback_id: Optional[str] = None) -> "Profile":
        profile_id = record.get("id") or fallback_id
        if not profile_id:
            raise SchemaViolationError("profile record has no id")
        days = record.get("locomotion_days") or []
        return cls(
            id=str(profile_id),
            first_name=str(record.get("first_name") or ""),
            last_name=str(record.get("last_name") or ""),
            role=str(record.get("role") or ROLE_STUDENT),
            email=record.get("email") or None,
            height_cm=record.get("height_cm"),
            weight_kg=record.get("weight_kg"),
            sex=record.get("sex"),
            age=record.get("age"),
            routine=record.get("routine"),
            locomotion_type=record.get("locomotion_type"),
            locomotion_distance_km=record.get("locomotion_distance_km"),
            locomotion_time_minutes=record.get("locomotion_time_minutes"),
            locomotion_days=list(days) if isinstance(days, (list, tuple)) else [],
        )

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def projection_defaults(self) -> Dict[str, Any]:
        """Fields used to seed a new ``profiles`` row for this person."""

        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role or ROLE_STUDENT,
            "email": self.email,
        }


@dataclass(frozen=True)
class WeightEntry:
    id: str
    user_id: str
    weight_kg: float
    created_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "WeightEntry":
        weight = record.get("weight_kg")
        if weight is None or not record.get("user_id"):
            raise SchemaViolationError(f"weight_history row {record.get('id')!r} is incomplete")
        return cls(
            id=str(record["id"]),
            user_id=str(record["user_id"]),
            weight_kg=float(weight),
            created_at=record.get("created_at"),
        )


__all__ = ["GoogleUser", "Profile", "ROLE_PERSONAL", "ROLE_STUDENT", "WeightEntry"]
