import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings
from app.core.rbac import UserRole

ACCESS_TOKEN_COOKIE = "access_token"
BCRYPT_ROUNDS = 10


@dataclass
class AuthUser:
    sub: str
    role: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(subject: str, role: str, *, expires_in: timedelta | None = None) -> str:
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    ttl = expires_in if expires_in is not None else timedelta(minutes=settings.access_token_ttl_minutes)
    claims = {
        "sub": subject,
        "role": role,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + ttl).timestamp()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def extract_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.replace("Bearer ", "", 1)
    return request.cookies.get(ACCESS_TOKEN_COOKIE, "")


def decode_access_token(token: str) -> AuthUser | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    role = payload.get("role")
    if not isinstance(subject, str) or not isinstance(role, str):
        return None
    return AuthUser(sub=subject, role=role)


async def get_auth_user(request: Request) -> AuthUser:
    token = extract_token(request)
    auth_user = decode_access_token(token) if token else None
    if auth_user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = auth_user.sub
    return auth_user


@dataclass
class ActorUser:
    user_id: uuid.UUID
    role: str
    email: str = ""
    name: str | None = None
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_sales_rep(self) -> bool:
        return self.role == UserRole.SALES_REP.value

    @property
    def is_concierge(self) -> bool:
        return self.role == UserRole.CONCIERGE.value

    @property
    def is_field_role(self) -> bool:
        return self.role in {UserRole.SALES_REP.value, UserRole.CONCIERGE.value}
