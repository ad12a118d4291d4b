"""Conversation Registry.

Creates Direct and Group conversations, finds the existing Direct
conversation for a pair of principals, and derives the per-viewer display
name and avatar.

Direct conversations are deduplicated by scanning the caller's Direct
memberships. The scan and the insert are not atomic, so two concurrent
first messages between the same pair can both create a conversation. That
race is a known limitation of the schema (there is no uniqueness
constraint on the unordered member pair); when duplicates exist they are
reported and the earliest one is used consistently.
"""

import logging
from collections import defaultdict
from typing import Iterable, Optional

from supabase import Client

from chatline.core.errors import (
    InvalidArgument,
    NotFound,
    OrphanedConversation,
)
from chatline.profiles import service as profiles
from chatline.profiles.schemas import Profile
from . import membership
from .schemas import (
    Conversation,
    ConversationKind,
    GROUP_NAME_PLACEHOLDER,
    UNKNOWN_USER,
    UNNAMED_GROUP,
)

logger = logging.getLogger(__name__)

CHAT_COLUMNS = "id, type, name, avatar_url, created_by, created_at, updated_at"


def find_direct(client: Client, self_id: str, other_id: str) -> Optional[str]:
    """Id of the Direct conversation whose members are exactly the pair."""
    self_id, other_id = str(self_id), str(other_id)

    chat_ids = membership.chat_ids_for(client, self_id)
    if not chat_ids:
        return None

    direct_chats = (
        client.table("chats")
        .select(CHAT_COLUMNS)
        .in_("id", chat_ids)
        .eq("type", ConversationKind.DIRECT.value)
        .execute()
    ).data or []

    if not direct_chats:
        return None

    rows = (
        client.table("chat_members")
        .select("chat_id, user_id")
        .in_("chat_id", [chat["id"] for chat in direct_chats])
        .execute()
    ).data or []

    members = defaultdict(set)
    for row in rows:
        members[row["chat_id"]].add(row["user_id"])

    pair = {self_id, other_id}
    matches = sorted(
        (Conversation(**chat) for chat in direct_chats if members[chat["id"]] == pair),
        key=lambda conversation: (conversation.created_at, conversation.id),
    )

    if not matches:
        return None

    if len(matches) > 1:
        logger.warning(
            f"duplicate_direct_conversations users={sorted(pair)} "
            f"chat_ids={[conversation.id for conversation in matches]} "
            f"using={matches[0].id}"
        )

    return matches[0].id


def find_or_create_direct(
    client: Client, self_id: str, other_id: str
) -> tuple[str, bool]:
    """
    Return ``(chat_id, is_new)`` for the Direct conversation between two users.

    Calling it twice for the same pair (without a concurrent race) returns
    the same id both times.
    """
    self_id, other_id = str(self_id), str(other_id)

    if self_id == other_id:
        raise InvalidArgument("Cannot start a direct conversation with yourself.")

    existing = find_direct(client, self_id, other_id)
    if existing:
        return existing, False

    if profiles.get_profile(client, other_id) is None:
        raise NotFound("User not found.")

    chat_id = _create_chat(client, self_id, ConversationKind.DIRECT)
    _add_initial_members(client, chat_id, self_id, [self_id, other_id])

    logger.info(f"direct_conversation_created chat_id={chat_id}")
    return chat_id, True


def create_group(
    client: Client,
    self_id: str,
    member_ids: Iterable[str],
    name: Optional[str] = None,
) -> str:
    self_id = str(self_id)
    member_ids = {str(member_id) for member_id in member_ids}

    if not member_ids:
        raise InvalidArgument("Please select at least one user.")

    _require_profiles(client, member_ids - {self_id})

    name = (name or "").strip() or GROUP_NAME_PLACEHOLDER

    everyone = member_ids | {self_id}
    chat_id = _create_chat(client, self_id, ConversationKind.GROUP, name=name)
    _add_initial_members(client, chat_id, self_id, everyone)

    logger.info(f"group_conversation_created chat_id={chat_id} size={len(everyone)}")
    return chat_id


def add_group_members(
    client: Client, chat_id: str, caller_id: str, member_ids: Iterable[str]
) -> list[str]:
    """Grow a Group conversation; only its creator may do this."""
    member_ids = {str(member_id) for member_id in member_ids}
    if not member_ids:
        raise InvalidArgument("Please select at least one user.")

    membership.require_member(client, chat_id, caller_id)
    _require_profiles(client, member_ids)

    added = membership.add(client, chat_id, member_ids, caller_id)
    return [row.user_id for row in added]


def get_conversation(client: Client, chat_id: str, viewer_id: str) -> Conversation:
    membership.require_member(client, chat_id, viewer_id)

    response = (
        client.table("chats")
        .select(CHAT_COLUMNS)
        .eq("id", str(chat_id))
        .limit(1)
        .execute()
    )

    if not response.data:
        raise NotFound("Conversation not found.")

    return Conversation(**response.data[0])


def counterpart_of(
    client: Client, conversation: Conversation, viewer_id: str
) -> Optional[Profile]:
    """The other participant of a Direct conversation, if it can be resolved."""
    if conversation.kind != ConversationKind.DIRECT:
        return None

    try:
        others = sorted(membership.members_of(client, conversation.id) - {str(viewer_id)})
        if not others:
            return None
        return profiles.get_profile(client, others[0])

    except Exception:
        logger.warning(
            f"counterpart_lookup_failed chat_id={conversation.id}", exc_info=True
        )
        return None


def display_name_for(
    conversation: Conversation, viewer_id: str, counterpart: Optional[Profile] = None
) -> str:
    if conversation.kind == ConversationKind.GROUP:
        return conversation.name or UNNAMED_GROUP

    if counterpart is None or counterpart.id == str(viewer_id):
        return UNKNOWN_USER

    return counterpart.display_name or UNKNOWN_USER


def display_avatar_for(
    conversation: Conversation, viewer_id: str, counterpart: Optional[Profile] = None
) -> Optional[str]:
    if conversation.kind == ConversationKind.GROUP:
        return conversation.avatar_url

    if counterpart is None or counterpart.id == str(viewer_id):
        return None

    return counterpart.avatar_url


def _require_profiles(client: Client, user_ids: set[str]) -> None:
    if not user_ids:
        return

    missing = user_ids - set(profiles.get_profiles(client, user_ids))
    if missing:
        raise NotFound(f"Unknown users: {', '.join(sorted(missing))}")


def _create_chat(
    client: Client,
    creator_id: str,
    kind: ConversationKind,
    name: Optional[str] = None,
) -> str:
    response = (
        client.table("chats")
        .insert({"type": kind.value, "name": name, "created_by": creator_id})
        .execute()
    )

    return response.data[0]["id"]


def _add_initial_members(
    client: Client, chat_id: str, creator_id: str, member_ids: Iterable[str]
) -> None:
    try:
        membership.add(client, chat_id, member_ids, creator_id, creating=True)

    except Exception:
        logger.exception(f"member_insert_failed chat_id={chat_id}")
        raise OrphanedConversation(chat_id, cleaned_up=_discard_chat(client, chat_id))


def _discard_chat(client: Client, chat_id: str) -> bool:
    try:
        client.table("chats").delete().eq("id", chat_id).execute()
        return True

    except Exception:
        logger.error(f"orphaned_conversation chat_id={chat_id}", exc_info=True)
        return False
