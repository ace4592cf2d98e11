from collections.abc import Callable
from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from sqlalchemy.orm import Session

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.events import InternalEvent, event_bus
from app.core.database import SessionLocal, get_db
from app.crm.followups import notify_admin_comment, notify_calendar_assignment
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import MutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import instrument_app, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")

_notification_handlers: dict[str, Callable[[Session, dict[str, Any]], Any]] = {
    "crm.lead.note_added": notify_admin_comment,
    "crm.calendar.reminder_assigned": notify_calendar_assignment,
}


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_notification_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    handler = _notification_handlers.get(event.name)
    if handler is None:
        return
    try:
        with _session_scope() as session:
            handler(session, event.payload)
    except Exception as exc:
        logger.exception("notification_handler_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in _notification_handlers:
        event_bus.subscribe(event_name, _on_notification_event)
    event_bus.publish("system.started", {"service": "api"})
    yield
    for event_name in _notification_handlers:
        event_bus.unsubscribe(event_name, _on_notification_event)
    event_bus.unsubscribe("system.started", _on_system_started)


app = FastAPI(title="HomePro CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

instrument_app(app)
