from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app import audit
from app.accounts.models import PasswordResetToken, User, UserInvitation
from app.accounts.schemas import (
    InvitationAccept,
    InvitationCreate,
    InvitationInfo,
    InvitationRead,
    LoginRequest,
    PasswordResetAccept,
    PasswordResetCreate,
    PasswordResetInfo,
    PasswordResetRead,
    SalesRepRead,
    TokenRead,
    UserRead,
)
from app.core.auth import ActorUser, create_access_token, hash_password, verify_password
from app.core.config import get_settings
from app.core.rbac import UserRole, require_admin
from app.crm.models import (
    Appointment,
    CalendarReminder,
    CrewMember,
    JobCrewAssignment,
    Lead,
    LeadNote,
    Notification,
    Quote,
    QuoteFile,
    Task,
)
from app.messaging.models import ConversationParticipant, Message

logger = logging.getLogger("app.accounts")

MIN_PASSWORD_LENGTH = 6


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_password(password: str | None) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
        )
    return password


def _record(actor_user_id: str, entity_type: str, entity_id: Any, action: str, after: dict[str, Any] | None) -> None:
    audit.record(
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        before=None,
        after=after,
    )


class AuthService:
    def login(self, session: Session, dto: LoginRequest) -> TokenRead:
        user = session.scalar(select(User).where(func.lower(User.email) == str(dto.email).lower()))
        if user is None or not verify_password(dto.password, user.password_hash):
            logger.info("login_failed", extra={"email": str(dto.email)})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

        token = create_access_token(str(user.id), user.role)
        logger.info("login_succeeded", extra={"user_id": str(user.id)})
        return TokenRead(access_token=token, user=UserRead.model_validate(user))

    def me(self, session: Session, actor_user: ActorUser) -> UserRead:
        user = session.get(User, actor_user.user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        return UserRead.model_validate(user)


class UserService:
    entity_type = "accounts.user"

    def list_sales_reps(self, session: Session) -> list[SalesRepRead]:
        users = session.scalars(
            select(User).where(User.role == UserRole.SALES_REP.value).order_by(User.name.asc())
        ).all()
        return [SalesRepRead.model_validate(user) for user in users]

    def delete_user(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> dict[str, Any]:
        require_admin(actor_user.role, detail="Only admins can delete users")
        if user_id == actor_user.user_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot delete your own account")
        user = session.get(User, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

        # Mirrors the ON DELETE rules for engines that do not enforce foreign keys.
        for column in (
            Lead.assigned_sales_rep_id,
            Lead.created_by,
            LeadNote.created_by,
            Appointment.sales_rep_id,
            Quote.sales_rep_id,
            QuoteFile.uploaded_by_user_id,
            JobCrewAssignment.assigned_by,
            CalendarReminder.assigned_user_id,
            Message.sender_id,
            UserInvitation.created_by,
        ):
            session.execute(update(column.class_).where(column == user_id).values({column.key: None}))
        for column in (
            Notification.user_id,
            Task.user_id,
            CrewMember.user_id,
            CalendarReminder.user_id,
            ConversationParticipant.user_id,
            PasswordResetToken.user_id,
        ):
            session.execute(delete(column.class_).where(column == user_id))

        session.delete(user)
        _record(str(actor_user.user_id), self.entity_type, user_id, "delete", None)
        session.commit()
        logger.info("user_deleted", extra={"user_id": str(user_id)})
        return {"message": "User deleted successfully"}


class PasswordResetService:
    entity_type = "accounts.password_reset"

    def _require_valid(self, session: Session, token: str) -> PasswordResetToken:
        reset_token = session.scalar(select(PasswordResetToken).where(PasswordResetToken.token == token))
        if reset_token is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid reset token")
        if reset_token.used:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This reset token has already been used")
        if utcnow() > _as_utc(reset_token.expires_at):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This reset token has expired")
        return reset_token

    def create(self, session: Session, actor_user: ActorUser, dto: PasswordResetCreate) -> PasswordResetRead:
        require_admin(actor_user.role)
        user = session.get(User, dto.user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

        now = utcnow()
        session.execute(
            update(PasswordResetToken)
            .where(
                PasswordResetToken.user_id == user.id,
                PasswordResetToken.used.is_(False),
                PasswordResetToken.expires_at > now,
            )
            .values(used=True)
        )
        settings = get_settings()
        reset_token = PasswordResetToken(
            user_id=user.id,
            token=secrets.token_hex(32),
            expires_at=now + timedelta(hours=settings.password_reset_ttl_hours),
        )
        session.add(reset_token)
        session.flush()
        _record(str(actor_user.user_id), self.entity_type, reset_token.id, "create", {"user_id": str(user.id)})
        session.commit()
        logger.info("password_reset_created", extra={"user_id": str(user.id)})
        return PasswordResetRead(
            id=reset_token.id,
            user_id=user.id,
            email=user.email,
            expires_at=reset_token.expires_at,
            reset_url=f"{settings.base_url}/auth/reset-password/{reset_token.token}",
        )

    def inspect(self, session: Session, token: str) -> PasswordResetInfo:
        reset_token = self._require_valid(session, token)
        user = session.get(User, reset_token.user_id)
        return PasswordResetInfo(email=user.email, name=user.name)

    def accept(self, session: Session, token: str, dto: PasswordResetAccept) -> dict[str, Any]:
        password = _check_password(dto.password)
        reset_token = self._require_valid(session, token)
        user = session.get(User, reset_token.user_id)
        user.password_hash = hash_password(password)
        reset_token.used = True
        _record(str(user.id), self.entity_type, reset_token.id, "accept", {"user_id": str(user.id)})
        session.commit()
        logger.info("password_reset_accepted", extra={"user_id": str(user.id)})
        return {"message": "Password reset successfully"}


class InvitationService:
    entity_type = "accounts.invitation"

    def _require_valid(self, session: Session, token: str) -> UserInvitation:
        invitation = session.scalar(select(UserInvitation).where(UserInvitation.token == token))
        if invitation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid invitation token")
        if invitation.used:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This invitation has already been used")
        if utcnow() > _as_utc(invitation.expires_at):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This invitation has expired")
        return invitation

    def create(self, session: Session, actor_user: ActorUser, dto: InvitationCreate) -> InvitationRead:
        require_admin(actor_user.role)
        if dto.role not in {role.value for role in UserRole}:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid role")
        email = str(dto.email).lower()
        if session.scalar(select(User.id).where(User.email == email)) is not None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User with this email already exists")

        now = utcnow()
        active = session.scalar(
            select(UserInvitation.id).where(
                UserInvitation.email == email,
                UserInvitation.used.is_(False),
                UserInvitation.expires_at > now,
            )
        )
        if active is not None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="An active invitation already exists for this email",
            )

        settings = get_settings()
        invitation = UserInvitation(
            email=email,
            role=dto.role,
            token=secrets.token_hex(32),
            expires_at=now + timedelta(days=settings.invitation_ttl_days),
            created_by=actor_user.user_id,
        )
        session.add(invitation)
        session.flush()
        _record(str(actor_user.user_id), self.entity_type, invitation.id, "create", {"role": dto.role})
        session.commit()
        logger.info("invitation_created", extra={"user_id": str(actor_user.user_id), "email": invitation.email})
        return InvitationRead(
            id=invitation.id,
            email=invitation.email,
            role=invitation.role,
            expires_at=invitation.expires_at,
            invitation_url=f"{settings.base_url}/auth/invite/{invitation.token}",
        )

    def inspect(self, session: Session, token: str) -> InvitationInfo:
        invitation = self._require_valid(session, token)
        return InvitationInfo(email=invitation.email, role=invitation.role)

    def accept(self, session: Session, token: str, dto: InvitationAccept) -> UserRead:
        password = _check_password(dto.password)
        invitation = self._require_valid(session, token)
        if session.scalar(select(User.id).where(User.email == invitation.email)) is not None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User with this email already exists")

        user = User(
            email=invitation.email,
            name=(dto.name or "").strip() or None,
            role=invitation.role,
            password_hash=hash_password(password),
        )
        session.add(user)
        invitation.used = True
        session.flush()
        _record(str(user.id), self.entity_type, invitation.id, "accept", {"user_id": str(user.id)})
        session.commit()
        logger.info("invitation_accepted", extra={"user_id": str(user.id)})
        return UserRead.model_validate(user)
