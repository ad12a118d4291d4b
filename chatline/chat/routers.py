import json
import asyncio
import logging

from fastapi import (
    APIRouter,
    HTTPException,
    Depends,
    Query,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.concurrency import run_in_threadpool
from supabase import Client

from chatline.auth.schemas import Principal
from chatline.core.errors import ChatError, Forbidden, SubscriptionError, Unauthenticated
from chatline.core.supabase_client import get_supabase
from chatline.core.realtime import get_message_feed
from chatline.core.dependencies import get_current_principal, principal_from_token
from chatline.utils.env_helper import env_number

from . import chat_list, conversations, membership, messages
from .live_sync import LiveConversation
from .schemas import (
    AddMembersModel,
    ConversationDetailResponseModel,
    CreateDirectConversationModel,
    CreateDirectConversationResponseModel,
    CreateGroupConversationModel,
    CreateGroupConversationResponseModel,
    GetConversationsResponseModel,
    GetMessagesResponseModel,
    MembersResponseModel,
    Message,
    SendMessageModel,
)
from chatline.profiles import service as profiles


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/conversations/direct",
    response_model=CreateDirectConversationResponseModel,
    status_code=200,
)
def get_or_create_direct_conversation(
    data: CreateDirectConversationModel,
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Get or create a direct (1-on-1) conversation with another user.

    If a direct conversation whose members are exactly the caller and the
    other user already exists, it is returned. Otherwise a new one is
    created and both users are added as members.

    **Input**
    - `other_user_id`: id of the user to message

    **Returns**
    - `conversation_id`: id of the direct conversation
    - `is_new`: whether the conversation was newly created

    **Errors**
    - 400: Messaging yourself
    - 401: Unauthorized
    - 404: Other user does not exist
    - 500: Database error, or members could not be added
    """
    try:
        conversation_id, is_new = conversations.find_or_create_direct(
            client, principal.id, data.other_user_id
        )
        return {"conversation_id": conversation_id, "is_new": is_new}

    except ChatError as error:
        raise error.to_http()
    except Exception:
        logger.exception("direct_conversation_failed")
        raise HTTPException(
            status_code=500,
            detail="Failed to create or fetch conversation.",
        )


@router.post(
    "/conversations/group",
    response_model=CreateGroupConversationResponseModel,
    status_code=201,
)
def create_group_conversation(
    data: CreateGroupConversationModel,
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Create a group conversation.

    The caller is always a member. Duplicate ids are collapsed and an empty
    name falls back to "New Group".

    **Input**
    - `member_ids`: at least one user id
    - `name`: optional group name

    **Errors**
    - 400/422: No members selected
    - 401: Unauthorized
    - 404: A member id does not exist
    - 500: Database error, or members could not be added
    """
    try:
        conversation_id = conversations.create_group(
            client, principal.id, data.member_ids, data.name
        )
        return {"conversation_id": conversation_id}

    except ChatError as error:
        raise error.to_http()
    except Exception:
        logger.exception("group_conversation_failed")
        raise HTTPException(status_code=500, detail="Failed to create group.")


@router.get(
    "/conversations",
    response_model=GetConversationsResponseModel,
    status_code=200,
)
def get_conversations(
    sort: str = Query("activity", pattern="^(activity|membership)$"),
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Retrieve all conversations for the authenticated user.

    Membership in `chat_members` decides which conversations are listed.
    Each entry carries its display name and avatar for this user, the last
    message (if any) and, for direct conversations, the other user's
    profile. An entry whose details cannot be loaded is still listed with
    placeholder values.

    **Query**
    - `sort`: `activity` (most recent first, default) or `membership`

    **Errors**
    - 401: Invalid or expired JWT
    - 500: Database or unexpected server error
    """
    try:
        chats = chat_list.list_chats(
            client, principal.id, sort_by_activity=sort == "activity"
        )
        return {"chats": chats}

    except Exception:
        logger.exception("conversation_list_failed")
        raise HTTPException(status_code=500, detail="Failed to fetch conversations")


@router.get(
    "/conversations/{conversation_id}",
    response_model=ConversationDetailResponseModel,
    status_code=200,
)
def get_conversation(
    conversation_id: str,
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Conversation header for the chat screen: display name and avatar as
    seen by the caller, plus the other user for direct conversations.

    **Errors**
    - 401: Unauthorized
    - 403: Not a member of the conversation, or no such conversation
    - 500: Database error
    """
    try:
        conversation = conversations.get_conversation(
            client, conversation_id, principal.id
        )
        counterpart = conversations.counterpart_of(client, conversation, principal.id)

        return {
            "id": conversation.id,
            "kind": conversation.kind,
            "name": conversation.name,
            "display_name": conversations.display_name_for(
                conversation, principal.id, counterpart
            ),
            "display_avatar": conversations.display_avatar_for(
                conversation, principal.id, counterpart
            ),
            "created_by": conversation.created_by,
            "created_at": conversation.created_at,
            "other_user": counterpart,
        }

    except ChatError as error:
        raise error.to_http()
    except Exception:
        logger.exception("conversation_lookup_failed")
        raise HTTPException(status_code=500, detail="Failed to load conversation.")


@router.get(
    "/conversations/{conversation_id}/members",
    response_model=MembersResponseModel,
    status_code=200,
)
def get_conversation_members(
    conversation_id: str,
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """Profiles of every member; ids without a profile are listed separately."""
    try:
        membership.require_member(client, conversation_id, principal.id)
        member_ids = membership.members_of(client, conversation_id)
        found = profiles.get_profiles(client, member_ids)

        return {
            "conversation_id": conversation_id,
            "members": [found[user_id] for user_id in sorted(found)],
            "unresolved_member_ids": sorted(member_ids - set(found)),
        }

    except ChatError as error:
        raise error.to_http()
    except Exception:
        logger.exception("member_list_failed")
        raise HTTPException(status_code=500, detail="Failed to load members.")


@router.post(
    "/conversations/{conversation_id}/members",
    response_model=MembersResponseModel,
    status_code=200,
)
def add_conversation_members(
    conversation_id: str,
    data: AddMembersModel,
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Add members to a group conversation.

    Only the group's creator may add members, and direct conversations
    never gain members.

    **Errors**
    - 400: No members given
    - 401: Unauthorized
    - 403: Not the creator, or a direct conversation
    - 404: A member id does not exist
    - 500: Database error
    """
    try:
        conversations.add_group_members(
            client, conversation_id, principal.id, data.member_ids
        )

    except ChatError as error:
        raise error.to_http()
    except Exception:
        logger.exception("member_add_failed")
        raise HTTPException(status_code=500, detail="Failed to add members.")

    return get_conversation_members(conversation_id, principal, client)


@router.post(
    "/messages",
    response_model=Message,
    status_code=201,
)
def send_message(
    data: SendMessageModel,
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Send a message to a conversation the caller is a member of.

    Messages are always sent to conversations, never directly to users.
    Surrounding whitespace is trimmed before storing.

    **Errors**
    - 400: Empty message
    - 401: Unauthorized
    - 403: Not a member of the conversation
    - 500: Database error
    """
    try:
        return messages.append(client, data.conversation_id, principal.id, data.content)

    except ChatError as error:
        raise error.to_http()
    except Exception:
        logger.exception("send_message_failed")
        raise HTTPException(status_code=500, detail="Failed to send message.")


@router.get(
    "/messages/{conversation_id}",
    response_model=GetMessagesResponseModel,
    status_code=200,
)
def get_messages(
    conversation_id: str,
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Retrieve the full message history of a conversation, oldest first.

    Each message carries its sender's username, display name and avatar.
    A sender without a resolvable profile is returned with empty name
    fields rather than failing the request.

    **Errors**
    - 401: Invalid or expired authentication token
    - 403: Not a member of the conversation
    - 500: Database or unexpected server error
    """
    try:
        history = messages.history(client, conversation_id, principal.id)
        return {"messages": messages.enrich(client, history)}

    except ChatError as error:
        raise error.to_http()
    except Exception:
        logger.exception("message_history_failed")
        raise HTTPException(status_code=500, detail="Failed to retrieve messages")


@router.websocket("/ws/{conversation_id}")
async def conversation_feed(
    websocket: WebSocket,
    conversation_id: str,
    token: str | None = Query(None),
    client: Client = Depends(get_supabase),
    feed=Depends(get_message_feed),
):
    """
    Live view of one conversation.

    Frames sent to the client:
    - `{"type": "history", "messages": [...]}` once, after subscribing
    - `{"type": "message", "message": {...}}` for each new message
    - `{"type": "status", "state": "..."}` on feed state changes
    - `{"type": "error", "status": ..., "detail": "..."}` for a rejected send

    Frames accepted: `{"content": "..."}` to send a message.

    Close codes: 4401 unauthenticated, 4403 not a member, 1011 feed unavailable.
    """
    try:
        principal = principal_from_token(token)
    except Unauthenticated:
        await websocket.close(code=4401)
        return

    await websocket.accept()

    view = LiveConversation(
        client,
        feed,
        principal.id,
        conversation_id,
        max_retries=int(env_number("REALTIME_MAX_RETRIES", 5)),
        retry_delay=env_number("REALTIME_RETRY_DELAY", 0.5),
    )

    try:
        async with view:
            await websocket.send_json(
                {
                    "type": "history",
                    "messages": [m.model_dump(mode="json") for m in view.messages],
                }
            )
            await _serve_view(websocket, view, client, principal)

    except Forbidden:
        await websocket.close(code=4403)
    except SubscriptionError as error:
        await websocket.close(code=1011, reason=error.detail)
    except WebSocketDisconnect:
        logger.info(f"live_client_disconnected chat_id={conversation_id}")


async def _serve_view(
    websocket: WebSocket, view: LiveConversation, client: Client, principal: Principal
):
    tasks = {
        asyncio.create_task(_forward_updates(websocket, view)),
        asyncio.create_task(_receive_messages(websocket, view, client, principal)),
    }

    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    for task in done:
        task.result()


async def _forward_updates(websocket: WebSocket, view: LiveConversation):
    async for event in view.updates():
        await websocket.send_json(event.model_dump(mode="json", exclude_none=True))


async def _receive_messages(
    websocket: WebSocket, view: LiveConversation, client: Client, principal: Principal
):
    while True:
        raw = await websocket.receive_text()

        try:
            data = json.loads(raw)
        except ValueError:
            await websocket.send_json(
                {"type": "error", "status": 400, "detail": "Frames must be JSON objects."}
            )
            continue

        content = data.get("content") if isinstance(data, dict) else None

        try:
            await run_in_threadpool(
                messages.append, client, view.chat_id, principal.id, content
            )
        except ChatError as error:
            await websocket.send_json(
                {"type": "error", "status": error.status_code, "detail": error.detail}
            )
        except Exception:
            # A failed send is reported on the socket; the view stays open.
            logger.exception(f"live_send_failed chat_id={view.chat_id}")
            await websocket.send_json(
                {"type": "error", "status": 500, "detail": "Failed to send message"}
            )
