from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import error_response, get_current_user
from app.core.auth import ActorUser
from app.core.database import get_db
from app.messaging.schemas import (
    ConversationCreate,
    ConversationRead,
    ConversationSummary,
    ConversationUpdate,
    MessageCreate,
    MessageListRead,
    MessageRead,
)
from app.messaging.service import MessagingService

router = APIRouter(prefix="/api/messages", tags=["messaging"])

messaging_service = MessagingService()


@router.get("", response_model=list[ConversationSummary])
def list_conversations(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ConversationSummary]:
    return messaging_service.list_conversations(db, user)


@router.post("", response_model=ConversationRead, status_code=status.HTTP_201_CREATED)
def create_conversation(
    request: Request,
    response: Response,
    dto: ConversationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ConversationRead | JSONResponse:
    try:
        conversation, created = messaging_service.create_conversation(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_conversation_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    if not created:
        response.status_code = status.HTTP_200_OK
    return conversation


@router.get("/{conversation_id}", response_model=MessageListRead)
def list_messages(
    request: Request,
    conversation_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageListRead | JSONResponse:
    try:
        return messaging_service.list_messages(db, user, conversation_id, limit=limit, offset=offset)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_messages_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.patch("/{conversation_id}", response_model=None)
def rename_conversation(
    request: Request,
    conversation_id: uuid.UUID,
    dto: ConversationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return messaging_service.rename_conversation(db, user, conversation_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_conversation_rename_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/{conversation_id}", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
def send_message(
    request: Request,
    conversation_id: uuid.UUID,
    dto: MessageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageRead | JSONResponse:
    try:
        return messaging_service.send_message(db, user, conversation_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_message_send_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.api_route("/{conversation_id}/read", methods=["POST", "PATCH"], response_model=None)
def mark_read(
    request: Request,
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return messaging_service.mark_read(db, user, conversation_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_mark_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
