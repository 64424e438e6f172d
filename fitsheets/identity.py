"""Effective tenant id for the spreadsheet currently in use."""
from __future__ import annotations

from typing import Optional

from fitsheets.errors import NotReadyError
from fitsheets.models import GoogleUser, Profile


def resolve_tenant_id(
    current_user: Optional[GoogleUser],
    current_profile: Optional[Profile],
    active_store_id: Optional[str],
    owned_store_id: Optional[str],
) -> str:
    """Return the id that owns records written to ``active_store_id``.

    On the caller's own spreadsheet that is the caller's Google id.  On a
    spreadsheet shared by a student it is the id of the loaded student
    profile; the caller's id is never substituted for it.
    """

    if not owned_store_id:
        raise NotReadyError("Own spreadsheet is not known yet")
    if not active_store_id or active_store_id == owned_store_id:
        if current_user is None or not current_user.id:
            raise NotReadyError("No signed-in user")
        return current_user.id
    if current_profile is None or not current_profile.id:
        raise NotReadyError(f"No profile loaded for shared spreadsheet {active_store_id}")
    return current_profile.id


__all__ = ["resolve_tenant_id"]
