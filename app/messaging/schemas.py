from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field

from app.crm.schemas import CamelModel, UserSummary


class ConversationCreate(CamelModel):
    participant_ids: list[UUID] = Field(default_factory=list)
    name: str | None = None
    type: str | None = None


class ConversationUpdate(CamelModel):
    name: str | None = None


class MessageCreate(CamelModel):
    content: str | None = None


class MessageRead(CamelModel):
    id: UUID
    conversation_id: UUID
    sender_id: UUID | None
    content: str
    created_at: datetime
    sender: UserSummary | None


class LastMessageRead(CamelModel):
    id: UUID
    content: str
    sender: UserSummary | None
    created_at: datetime


class ConversationSummary(CamelModel):
    id: UUID
    name: str
    type: str
    unread_count: int
    last_message: LastMessageRead | None
    participants: list[UserSummary]
    updated_at: datetime


class ConversationRead(CamelModel):
    id: UUID
    type: str
    name: str | None
    participants: list[UserSummary]
    existing: bool = False


class MessagePagination(CamelModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class MessageListRead(CamelModel):
    messages: list[MessageRead]
    pagination: MessagePagination
