from enum import Enum
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import List, Optional

from chatline.profiles.schemas import Profile


GROUP_NAME_PLACEHOLDER = "New Group"
UNNAMED_GROUP = "Unnamed Group"
UNKNOWN_USER = "Unknown User"


class ConversationKind(str, Enum):
    DIRECT = "dm"
    GROUP = "group"


class Conversation(BaseModel):
    id: str
    kind: ConversationKind = Field(alias="type")
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"populate_by_name": True}


class Membership(BaseModel):
    id: Optional[str] = None
    chat_id: str
    user_id: str
    joined_at: Optional[datetime] = None


class Message(BaseModel):
    id: str
    chat_id: str
    sender_id: str
    content: str
    created_at: datetime


class SenderInfo(BaseModel):
    """Sender identity attached to a message; names are empty when unresolved."""

    id: str
    username: str = ""
    display_name: str = ""
    avatar_url: Optional[str] = None


class ChatMessage(Message):
    sender: SenderInfo


class LastMessage(BaseModel):
    content: str
    created_at: datetime


class ChatSummary(BaseModel):
    id: str
    kind: ConversationKind
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    display_name: str
    display_avatar: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_message: Optional[LastMessage] = None
    other_user: Optional[Profile] = None


# Direct conversations
class CreateDirectConversationModel(BaseModel):
    other_user_id: str


class CreateDirectConversationResponseModel(BaseModel):
    conversation_id: str
    is_new: bool


# Group conversations
class CreateGroupConversationModel(BaseModel):
    member_ids: List[str]
    name: Optional[str] = None

    @field_validator("member_ids")
    @classmethod
    def validate_member_ids(cls, member_ids: List[str]) -> List[str]:
        if not member_ids:
            raise ValueError("Please select at least one user.")
        return member_ids


class CreateGroupConversationResponseModel(BaseModel):
    conversation_id: str


class AddMembersModel(BaseModel):
    member_ids: List[str]


class MembersResponseModel(BaseModel):
    conversation_id: str
    members: List[Profile]
    unresolved_member_ids: List[str] = []


# Get conversations
class GetConversationsResponseModel(BaseModel):
    chats: List[ChatSummary]


class ConversationDetailResponseModel(BaseModel):
    id: str
    kind: ConversationKind
    name: Optional[str] = None
    display_name: str
    display_avatar: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    other_user: Optional[Profile] = None


# Send messages
class SendMessageModel(BaseModel):
    conversation_id: str
    content: str


# Get messages
class GetMessagesResponseModel(BaseModel):
    messages: List[ChatMessage]
