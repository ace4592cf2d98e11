from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

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
from app.accounts.service import AuthService, InvitationService, PasswordResetService, UserService
from app.api.deps import error_response, get_current_user
from app.core.auth import ACCESS_TOKEN_COOKIE, ActorUser
from app.core.config import get_settings
from app.core.database import get_db

auth_router = APIRouter(prefix="/api", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["accounts.users"])
password_reset_router = APIRouter(prefix="/api/password-reset", tags=["accounts.password_reset"])
invitations_router = APIRouter(prefix="/api/invitations", tags=["accounts.invitations"])

auth_service = AuthService()
user_service = UserService()
password_reset_service = PasswordResetService()
invitation_service = InvitationService()


@auth_router.post("/auth/login", response_model=TokenRead)
def login(
    request: Request,
    response: Response,
    dto: LoginRequest,
    db: Session = Depends(get_db),
) -> TokenRead | JSONResponse:
    try:
        token = auth_service.login(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="auth_login_failed",
            message=str(exc.detail),
            details=exc.detail,
        )

    settings = get_settings()
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        token.access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        httponly=True,
        samesite="lax",
        secure=settings.app_env.lower() in {"prod", "production"},
    )
    return token


@auth_router.post("/auth/logout")
def logout(response: Response) -> dict[str, str]:
    response.delete_cookie(ACCESS_TOKEN_COOKIE)
    return {"message": "Logged out"}


@auth_router.get("/me", response_model=UserRead)
def me(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return auth_service.me(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="auth_me_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.get("", response_model=list[SalesRepRead])
def list_users(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SalesRepRead]:
    return user_service.list_sales_reps(db)


@users_router.delete("/{user_id}", response_model=None)
def delete_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return user_service.delete_user(db, user, user_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="accounts_user_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@password_reset_router.post("", response_model=PasswordResetRead, status_code=status.HTTP_201_CREATED)
def create_password_reset(
    request: Request,
    dto: PasswordResetCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PasswordResetRead | JSONResponse:
    try:
        return password_reset_service.create(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="accounts_password_reset_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@password_reset_router.get("/{token}", response_model=PasswordResetInfo)
def get_password_reset(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
) -> PasswordResetInfo | JSONResponse:
    try:
        return password_reset_service.inspect(db, token)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="accounts_password_reset_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@password_reset_router.post("/{token}/accept", response_model=None)
def accept_password_reset(
    request: Request,
    token: str,
    dto: PasswordResetAccept,
    db: Session = Depends(get_db),
) -> Any:
    try:
        return password_reset_service.accept(db, token, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="accounts_password_reset_accept_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@invitations_router.post("", response_model=InvitationRead, status_code=status.HTTP_201_CREATED)
def create_invitation(
    request: Request,
    dto: InvitationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvitationRead | JSONResponse:
    try:
        return invitation_service.create(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="accounts_invitation_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@invitations_router.get("/{token}", response_model=InvitationInfo)
def get_invitation(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
) -> InvitationInfo | JSONResponse:
    try:
        return invitation_service.inspect(db, token)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="accounts_invitation_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@invitations_router.post("/{token}/accept", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def accept_invitation(
    request: Request,
    token: str,
    dto: InvitationAccept,
    db: Session = Depends(get_db),
) -> UserRead | JSONResponse:
    try:
        return invitation_service.accept(db, token, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="accounts_invitation_accept_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
