"""List Aggregator: the conversation list shown to a principal."""

import logging

from supabase import Client

from . import conversations, membership, messages
from .schemas import ChatSummary, Conversation, LastMessage

logger = logging.getLogger(__name__)


def list_chats(
    client: Client, principal_id: str, sort_by_activity: bool = True
) -> list[ChatSummary]:
    """
    Every conversation the principal belongs to, with its last message and,
    for Direct conversations, the counterpart profile.

    A failed lookup for one conversation degrades that entry to placeholder
    data instead of failing the whole list. With ``sort_by_activity`` the
    list is ordered by most recent activity (last message, else creation
    time); otherwise it keeps the membership enumeration order.
    """
    chat_ids = membership.chat_ids_for(client, principal_id)
    if not chat_ids:
        return []

    rows = (
        client.table("chats")
        .select(conversations.CHAT_COLUMNS)
        .in_("id", chat_ids)
        .execute()
    ).data or []

    by_id = {row["id"]: Conversation(**row) for row in rows}

    summaries = [
        _summarize(client, by_id[chat_id], principal_id)
        for chat_id in chat_ids
        if chat_id in by_id
    ]

    if sort_by_activity:
        summaries.sort(key=_last_activity, reverse=True)

    return summaries


def _summarize(client: Client, conversation: Conversation, viewer_id: str) -> ChatSummary:
    try:
        last = messages.last_message(client, conversation.id)
    except Exception:
        logger.warning(f"last_message_lookup_failed chat_id={conversation.id}", exc_info=True)
        last = None

    counterpart = conversations.counterpart_of(client, conversation, viewer_id)

    return ChatSummary(
        id=conversation.id,
        kind=conversation.kind,
        name=conversation.name,
        avatar_url=conversation.avatar_url,
        display_name=conversations.display_name_for(conversation, viewer_id, counterpart),
        display_avatar=conversations.display_avatar_for(conversation, viewer_id, counterpart),
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        last_message=(
            LastMessage(content=last.content, created_at=last.created_at) if last else None
        ),
        other_user=counterpart,
    )


def _last_activity(summary: ChatSummary):
    if summary.last_message:
        return summary.last_message.created_at
    return summary.created_at
