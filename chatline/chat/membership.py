"""Membership Store.

The ``chat_members`` relation is the only authorization boundary of the
chat core: a principal may read or write a conversation if and only if a
row for the pair exists. The service talks to Supabase with the
service-role key, which bypasses row-level security, so these checks are
enforced here rather than trusted from the caller.
"""

import logging
from typing import Iterable

from supabase import Client

from chatline.core.errors import Forbidden, InvalidArgument, NotFound
from .schemas import ConversationKind, Membership

logger = logging.getLogger(__name__)


def is_member(client: Client, chat_id: str, principal_id: str) -> bool:
    response = (
        client.table("chat_members")
        .select("id")
        .eq("chat_id", str(chat_id))
        .eq("user_id", str(principal_id))
        .limit(1)
        .execute()
    )

    return bool(response.data)


def require_member(client: Client, chat_id: str, principal_id: str) -> None:
    if not is_member(client, chat_id, principal_id):
        logger.info(f"membership_denied chat_id={chat_id} user_id={principal_id}")
        raise Forbidden()


def members_of(client: Client, chat_id: str) -> set[str]:
    response = (
        client.table("chat_members")
        .select("user_id")
        .eq("chat_id", str(chat_id))
        .execute()
    )

    return {row["user_id"] for row in response.data or []}


def chat_ids_for(client: Client, principal_id: str) -> list[str]:
    """Conversations the principal belongs to, in store enumeration order."""
    response = (
        client.table("chat_members")
        .select("chat_id")
        .eq("user_id", str(principal_id))
        .execute()
    )

    return [row["chat_id"] for row in response.data or []]


def add(
    client: Client,
    chat_id: str,
    principal_ids: Iterable[str],
    caller_id: str,
    creating: bool = False,
) -> list[Membership]:
    """
    Add principals to a conversation.

    Allowed when the caller created the conversation, or when the call is
    part of creating it and only adds the caller. A Direct conversation is
    fixed to its two members once created. Principals who are already
    members are skipped; the returned list holds only the new rows.
    """
    requested = {str(principal_id) for principal_id in principal_ids}
    if not requested:
        raise InvalidArgument("No members to add.")

    chat = (
        client.table("chats")
        .select("id, type, created_by")
        .eq("id", str(chat_id))
        .limit(1)
        .execute()
    )

    if not chat.data:
        raise NotFound("Conversation not found.")

    row = chat.data[0]
    is_creator = row.get("created_by") == str(caller_id)
    adds_only_self = requested == {str(caller_id)}

    if not (is_creator or (creating and adds_only_self)):
        raise Forbidden("Only the conversation creator can add members.")

    if row["type"] == ConversationKind.DIRECT.value and not creating:
        raise Forbidden("Direct conversations cannot gain members.")

    new_ids = sorted(requested - members_of(client, chat_id))
    if not new_ids:
        return []

    response = (
        client.table("chat_members")
        .insert([{"chat_id": str(chat_id), "user_id": user_id} for user_id in new_ids])
        .execute()
    )

    logger.info(f"members_added chat_id={chat_id} count={len(new_ids)}")

    return [Membership(**member) for member in response.data or []]
