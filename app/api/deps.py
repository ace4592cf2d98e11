from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.accounts.models import User
from app.context import get_correlation_id
from app.core.auth import ActorUser, AuthUser, get_auth_user
from app.core.database import get_db


@dataclass
class ErrorEnvelope:
    error: str
    code: str
    details: Any
    correlation_id: str | None


def _request_correlation_id(request: Request) -> str | None:
    return get_correlation_id() or getattr(request.state, "correlation_id", None)


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        error=message,
        code=code,
        details=details,
        correlation_id=_request_correlation_id(request),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__, headers=headers)


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    try:
        user_id = uuid.UUID(auth_user.sub)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized") from exc

    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return ActorUser(
        user_id=user.id,
        role=user.role,
        email=user.email,
        name=user.name,
        correlation_id=_request_correlation_id(request),
    )
