from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    display_name: str = "User"
    photo_url: str | None = None


class LastMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str
    sender_id: str
    created_at: datetime | str | None = None


class Conversation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    participant_ids: list[str] = Field(min_length=2, max_length=2)
    last_message: LastMessage | None = None
    last_message_at: datetime | None = None
    created_at: datetime | None = None
    unread_count: int = 0

    def other_participant(self, user_id: str) -> str | None:
        return next((pid for pid in self.participant_ids if pid != user_id), None)

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> "Conversation":
        return cls.model_validate({**data, "id": doc_id})


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    text: str
    sender_id: str
    sender_name: str = "User"
    created_at: datetime | None = None
    read_by: list[str] = Field(default_factory=list)

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by


class ConversationSummary(BaseModel):
    conversation_id: str
    other_user: UserProfile
    preview: str
    unread_count: int = 0
    is_active: bool = False


class ConversationListView(BaseModel):
    conversations: list[ConversationSummary]


class MessageView(BaseModel):
    message_id: str
    text: str
    sender_id: str
    sender_name: str
    created_at: datetime | None = None
    read_by: list[str]
    is_mine: bool


class MessageThreadView(BaseModel):
    conversation_id: str
    messages: list[MessageView]
    scroll_to_bottom: bool = True
