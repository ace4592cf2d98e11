from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import EmailStr

from app.crm.schemas import CamelModel


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class UserRead(CamelModel):
    id: UUID
    name: str | None
    email: str
    role: str


class TokenRead(CamelModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


class SalesRepRead(CamelModel):
    id: UUID
    name: str | None
    email: str


class PasswordResetCreate(CamelModel):
    user_id: UUID


class PasswordResetRead(CamelModel):
    id: UUID
    user_id: UUID
    email: str
    expires_at: datetime
    reset_url: str


class PasswordResetInfo(CamelModel):
    email: str
    name: str | None


class PasswordResetAccept(CamelModel):
    password: str


class InvitationCreate(CamelModel):
    email: EmailStr
    role: str
    name: str | None = None


class InvitationRead(CamelModel):
    id: UUID
    email: str
    role: str
    expires_at: datetime
    invitation_url: str


class InvitationInfo(CamelModel):
    email: str
    role: str


class InvitationAccept(CamelModel):
    password: str
    name: str | None = None
