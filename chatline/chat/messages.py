"""Message Log: append-only, ordered message history per conversation."""

import logging
from datetime import datetime
from typing import Iterable, Optional

from supabase import Client

from chatline.core.errors import InvalidArgument
from chatline.profiles import service as profiles
from . import membership
from .schemas import ChatMessage, Message, SenderInfo

logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = "id, chat_id, sender_id, content, created_at"


def append(client: Client, chat_id: str, sender_id: str, content: str) -> Message:
    """Store a message from ``sender_id``; id and timestamp come from the store."""
    if content is not None and not isinstance(content, str):
        raise InvalidArgument("Message content must be text.")

    content = (content or "").strip()
    if not content:
        raise InvalidArgument("Message content cannot be empty.")

    membership.require_member(client, chat_id, sender_id)

    response = (
        client.table("messages")
        .insert(
            {
                "chat_id": str(chat_id),
                "sender_id": str(sender_id),
                "content": content,
            }
        )
        .execute()
    )

    message = Message(**response.data[0])
    logger.info(f"message_sent chat_id={chat_id} message_id={message.id}")
    return message


def history(client: Client, chat_id: str, principal_id: str) -> list[Message]:
    """Full history, oldest first. Non-members get ``Forbidden``."""
    membership.require_member(client, chat_id, principal_id)

    response = (
        client.table("messages")
        .select(MESSAGE_COLUMNS)
        .eq("chat_id", str(chat_id))
        .order("created_at", desc=False)
        .order("id", desc=False)
        .execute()
    )

    return [Message(**row) for row in response.data or []]


def history_since(
    client: Client, chat_id: str, principal_id: str, since: datetime
) -> list[Message]:
    """Messages at or after ``since``; callers deduplicate by id."""
    membership.require_member(client, chat_id, principal_id)

    response = (
        client.table("messages")
        .select(MESSAGE_COLUMNS)
        .eq("chat_id", str(chat_id))
        .gte("created_at", since.isoformat())
        .order("created_at", desc=False)
        .order("id", desc=False)
        .execute()
    )

    return [Message(**row) for row in response.data or []]


def last_message(client: Client, chat_id: str) -> Optional[Message]:
    # Callers have already checked membership for chat_id.
    response = (
        client.table("messages")
        .select(MESSAGE_COLUMNS)
        .eq("chat_id", str(chat_id))
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )

    if not response.data:
        return None

    return Message(**response.data[0])


def enrich(client: Client, messages: Iterable[Message]) -> list[ChatMessage]:
    """
    Attach sender identity to each message.

    A sender whose profile cannot be resolved, or a failed lookup, still
    yields the message with the raw ``sender_id`` and empty name fields.
    """
    messages = list(messages)

    try:
        senders = profiles.get_profiles(client, {m.sender_id for m in messages})
    except Exception:
        logger.warning("sender_lookup_failed", exc_info=True)
        senders = {}

    return [
        ChatMessage(**message.model_dump(), sender=sender_info(message.sender_id, senders))
        for message in messages
    ]


def sender_info(sender_id: str, senders: dict) -> SenderInfo:
    profile = senders.get(sender_id)
    if profile is None:
        return SenderInfo(id=sender_id)

    return SenderInfo(
        id=sender_id,
        username=profile.username,
        display_name=profile.display_name,
        avatar_url=profile.avatar_url,
    )
