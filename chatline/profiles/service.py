"""Identity Directory: read access to public profiles.

Profiles are consumed by the chat core for display only, so a missing
profile is reported as ``None`` and the caller picks a placeholder.
"""

import logging
from typing import Iterable, Optional

from supabase import Client

from chatline.core.errors import InvalidArgument, NotFound
from .schemas import Profile

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = "id, username, display_name, avatar_url, created_at, updated_at"
SEARCH_LIMIT = 20


def get_profile(client: Client, user_id: str) -> Optional[Profile]:
    response = (
        client.table("profiles")
        .select(PROFILE_COLUMNS)
        .eq("id", str(user_id))
        .limit(1)
        .execute()
    )

    if not response.data:
        return None

    return Profile(**response.data[0])


def get_profiles(client: Client, user_ids: Iterable[str]) -> dict[str, Profile]:
    """Batch lookup keyed by profile id; unknown ids are simply absent."""
    ids = sorted({str(user_id) for user_id in user_ids})
    if not ids:
        return {}

    response = (
        client.table("profiles").select(PROFILE_COLUMNS).in_("id", ids).execute()
    )

    return {row["id"]: Profile(**row) for row in response.data or []}


def search_profiles(
    client: Client, viewer_id: str, query: str, limit: int = SEARCH_LIMIT
) -> list[Profile]:
    """Case-insensitive username substring search, excluding the viewer."""
    query = query.strip()
    if not query:
        return []

    response = (
        client.table("profiles")
        .select(PROFILE_COLUMNS)
        .ilike("username", f"%{query}%")
        .neq("id", str(viewer_id))
        .order("username")
        .limit(limit)
        .execute()
    )

    return [Profile(**row) for row in response.data or []]


def update_own_profile(
    client: Client,
    principal_id: str,
    display_name: Optional[str] = None,
    avatar_url: Optional[str] = None,
) -> Profile:
    # The filter is always the caller's own id; nobody edits another profile.
    changes = {}
    if display_name is not None:
        changes["display_name"] = display_name
    if avatar_url is not None:
        changes["avatar_url"] = avatar_url or None

    if not changes:
        raise InvalidArgument("Nothing to update.")

    response = (
        client.table("profiles").update(changes).eq("id", str(principal_id)).execute()
    )

    if not response.data:
        raise NotFound("Profile not found.")

    logger.info(f"profile_updated user_id={principal_id} fields={sorted(changes)}")
    return Profile(**response.data[0])
