from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.accounts.models import User
from app.core.auth import ActorUser
from app.crm.schemas import UserSummary
from app.messaging.models import Conversation, ConversationParticipant, ConversationType, Message
from app.messaging.schemas import (
    ConversationCreate,
    ConversationRead,
    ConversationSummary,
    ConversationUpdate,
    LastMessageRead,
    MessageCreate,
    MessageListRead,
    MessagePagination,
    MessageRead,
)

logger = logging.getLogger("app.messaging")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def display_name(conversation: Conversation, viewer_id: uuid.UUID) -> str:
    if conversation.type == ConversationType.DIRECT.value:
        others = [item.user for item in conversation.participants if item.user_id != viewer_id]
        if not others:
            return "Unknown"
        return others[0].name or others[0].email
    return conversation.name or "Group Chat"


class MessagingService:
    entity_type = "messaging.conversation"

    def _require_participant(
        self,
        session: Session,
        actor_user: ActorUser,
        conversation_id: uuid.UUID,
    ) -> ConversationParticipant:
        participant = session.scalar(
            select(ConversationParticipant).where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == actor_user.user_id,
            )
        )
        if participant is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Conversation not found or access denied",
            )
        return participant

    def _unread_count(self, session: Session, conversation_id: uuid.UUID, viewer_id: uuid.UUID, last_read_at: datetime | None) -> int:
        stmt = (
            select(func.count(Message.id))
            .where(Message.conversation_id == conversation_id)
            .where((Message.sender_id.is_(None)) | (Message.sender_id != viewer_id))
        )
        if last_read_at is not None:
            stmt = stmt.where(Message.created_at > last_read_at)
        return session.scalar(stmt) or 0

    def list_conversations(self, session: Session, actor_user: ActorUser) -> list[ConversationSummary]:
        conversations = session.scalars(
            select(Conversation)
            .join(ConversationParticipant)
            .where(ConversationParticipant.user_id == actor_user.user_id)
            .options(selectinload(Conversation.participants).selectinload(ConversationParticipant.user))
            .order_by(Conversation.updated_at.desc())
        ).all()

        summaries: list[ConversationSummary] = []
        for conversation in conversations:
            mine = next(item for item in conversation.participants if item.user_id == actor_user.user_id)
            latest = session.scalar(
                select(Message)
                .where(Message.conversation_id == conversation.id)
                .order_by(Message.created_at.desc())
                .limit(1)
            )
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    name=display_name(conversation, actor_user.user_id),
                    type=conversation.type,
                    unread_count=self._unread_count(session, conversation.id, actor_user.user_id, mine.last_read_at),
                    last_message=LastMessageRead.model_validate(latest) if latest else None,
                    participants=[UserSummary.model_validate(item.user) for item in conversation.participants],
                    updated_at=conversation.updated_at,
                )
            )
        return summaries

    def _find_direct(self, session: Session, user_a: uuid.UUID, user_b: uuid.UUID) -> Conversation | None:
        candidates = session.scalars(
            select(Conversation)
            .join(ConversationParticipant)
            .where(
                Conversation.type == ConversationType.DIRECT.value,
                ConversationParticipant.user_id == user_a,
            )
            .options(selectinload(Conversation.participants))
        ).all()
        for conversation in candidates:
            if {item.user_id for item in conversation.participants} == {user_a, user_b}:
                return conversation
        return None

    def _to_read(self, conversation: Conversation, *, existing: bool = False) -> ConversationRead:
        return ConversationRead(
            id=conversation.id,
            type=conversation.type,
            name=conversation.name,
            participants=[UserSummary.model_validate(item.user) for item in conversation.participants],
            existing=existing,
        )

    def create_conversation(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: ConversationCreate,
    ) -> tuple[ConversationRead, bool]:
        participant_ids = list(dict.fromkeys(item for item in dto.participant_ids if item != actor_user.user_id))
        if not participant_ids:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least one participant is required")
        found = session.scalar(select(func.count(User.id)).where(User.id.in_(participant_ids))) or 0
        if found != len(participant_ids):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="One or more participants not found")

        is_group = dto.type == ConversationType.GROUP.value or len(participant_ids) > 1
        if not is_group:
            existing = self._find_direct(session, actor_user.user_id, participant_ids[0])
            if existing is not None:
                return self._to_read(existing, existing=True), False

        conversation = Conversation(
            type=ConversationType.GROUP.value if is_group else ConversationType.DIRECT.value,
            name=(dto.name or "").strip() or None if is_group else None,
        )
        conversation.participants = [
            ConversationParticipant(user_id=user_id) for user_id in [actor_user.user_id, *participant_ids]
        ]
        session.add(conversation)
        session.flush()
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(conversation.id),
            action="create",
            before=None,
            after={"type": conversation.type, "participants": [str(item) for item in participant_ids]},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(conversation)
        logger.info("conversation_created", extra={"user_id": str(actor_user.user_id), "count": len(participant_ids)})
        return self._to_read(conversation), True

    def list_messages(
        self,
        session: Session,
        actor_user: ActorUser,
        conversation_id: uuid.UUID,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> MessageListRead:
        self._require_participant(session, actor_user, conversation_id)
        messages = session.scalars(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .options(selectinload(Message.sender))
            .order_by(Message.created_at.asc())
            .limit(limit)
            .offset(offset)
        ).all()
        total = session.scalar(select(func.count(Message.id)).where(Message.conversation_id == conversation_id)) or 0
        return MessageListRead(
            messages=[MessageRead.model_validate(item) for item in messages],
            pagination=MessagePagination(total=total, limit=limit, offset=offset, has_more=offset + limit < total),
        )

    def rename_conversation(
        self,
        session: Session,
        actor_user: ActorUser,
        conversation_id: uuid.UUID,
        dto: ConversationUpdate,
    ) -> dict[str, Any]:
        participant = self._require_participant(session, actor_user, conversation_id)
        conversation = participant.conversation
        if conversation.type != ConversationType.GROUP.value:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot rename a direct message conversation",
            )
        before = conversation.name
        conversation.name = (dto.name or "").strip() or None
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(conversation.id),
            action="rename",
            before={"name": before},
            after={"name": conversation.name},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return {"id": str(conversation.id), "name": conversation.name}

    def send_message(
        self,
        session: Session,
        actor_user: ActorUser,
        conversation_id: uuid.UUID,
        dto: MessageCreate,
    ) -> MessageRead:
        content = (dto.content or "").strip()
        if not content:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message content is required")
        participant = self._require_participant(session, actor_user, conversation_id)

        now = utcnow()
        message = Message(conversation_id=conversation_id, sender_id=actor_user.user_id, content=content, created_at=now)
        session.add(message)
        participant.conversation.updated_at = now
        session.flush()
        envelope = events.build_envelope(
            "messaging.message.sent",
            str(actor_user.user_id),
            {"conversation_id": str(conversation_id), "message_id": str(message.id)},
        )
        session.commit()
        events.publish(envelope)
        return MessageRead.model_validate(session.get(Message, message.id))

    def mark_read(self, session: Session, actor_user: ActorUser, conversation_id: uuid.UUID) -> dict[str, Any]:
        participant = self._require_participant(session, actor_user, conversation_id)
        participant.last_read_at = utcnow()
        session.commit()
        return {"success": True, "message": "Conversation marked as read"}
