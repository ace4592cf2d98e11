from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import decode_access_token, extract_token
from app.core.config import get_settings


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, user_id: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (user_id, route_group)

        with self._lock:
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


@dataclass
class _WindowState:
    count: int
    reset_at: float


class FixedWindowLimiter:
    """Counts hits per key inside a window that starts at the first hit."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: dict[str, _WindowState] = {}

    def hit(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        now = time.monotonic()
        with self._lock:
            for stale_key in [item for item, state in self._windows.items() if state.reset_at <= now]:
                del self._windows[stale_key]

            state = self._windows.get(key)
            if state is None:
                self._windows[key] = _WindowState(count=1, reset_at=now + window_seconds)
                return True, 0

            if state.count >= limit:
                return False, max(1, math.ceil(state.reset_at - now))

            state.count += 1
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


_limiter = _TokenBucketLimiter()
public_lead_limiter = FixedWindowLimiter()


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PATCH", "DELETE"}
    exempt_prefixes = ("/api/public", "/api/cron", "/api/auth")

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if (
            not path.startswith("/api")
            or path.startswith(self.exempt_prefixes)
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        user_id = _resolve_user_id(request)
        route_group = _resolve_route_group(path)
        allowed, retry_after = _limiter.take(
            user_id=user_id,
            route_group=route_group,
            capacity=settings.rate_limit_mutations_per_minute,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "error": "Too many requests",
                "code": "RATE_LIMITED",
                "details": None,
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if len(parts) < 2:
        return "api"
    return parts[1]


def _resolve_user_id(request: Request) -> str:
    token = extract_token(request)
    auth_user = decode_access_token(token) if token else None
    if auth_user is None:
        return "anonymous"
    return auth_user.sub


def resolve_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value
    if request.client is not None:
        return request.client.host
    return "unknown"


def reset_rate_limiter() -> None:
    _limiter.clear()
    public_lead_limiter.clear()
