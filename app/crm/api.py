from __future__ import annotations

import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import error_response, get_current_user
from app.core.auth import ActorUser
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.analytics import AnalyticsService, DashboardService
from app.crm.followups import FollowUpService, NotificationService, TaskService, inactivity_sweep
from app.crm.schemas import (
    AppointmentCreate,
    AppointmentRead,
    AppointmentUpdate,
    CalendarEventsRead,
    CalendarReminderCreate,
    CalendarReminderRead,
    CalendarReminderUpdate,
    ClosedDealRead,
    CrewCreate,
    CrewRead,
    CrewUpdate,
    CustomerLookupRead,
    CustomerSearchResult,
    DashboardRead,
    FollowUpsRead,
    JobCrewAssignRequest,
    JobCrewRead,
    JobRead,
    LeadCloseRequest,
    LeadCreate,
    LeadCreationRead,
    LeadNoteRead,
    LeadUpdate,
    LossReasonsRead,
    NoteCreate,
    NotificationListRead,
    NotificationRead,
    PublicLeadCreate,
    QuoteCreate,
    QuoteFileCreate,
    QuoteFileRead,
    QuoteRead,
    QuoteUpdate,
    ReadAllResponse,
    SweepResult,
    TaskListRead,
    TeamPerformanceRead,
    WinRateRead,
)
from app.crm.service import (
    AppointmentService,
    CalendarReminderService,
    CrewService,
    JobService,
    LeadService,
    NoteService,
    QuoteService,
    customer_service,
)
from app.metrics import observe_public_lead_rate_limited
from app.middleware.rate_limit import public_lead_limiter, resolve_client_ip

logger = logging.getLogger("app.crm.api")

leads_router = APIRouter(prefix="/api/leads", tags=["crm.leads"])
public_router = APIRouter(prefix="/api/public", tags=["crm.public"])
appointments_router = APIRouter(prefix="/api/appointments", tags=["crm.appointments"])
quotes_router = APIRouter(prefix="/api/quotes", tags=["crm.quotes"])
crews_router = APIRouter(prefix="/api/crews", tags=["crm.crews"])
jobs_router = APIRouter(prefix="/api/jobs", tags=["crm.jobs"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crm.tasks"])
notifications_router = APIRouter(prefix="/api/notifications", tags=["crm.notifications"])
cron_router = APIRouter(prefix="/api/cron", tags=["crm.cron"])
admin_router = APIRouter(prefix="/api/admin", tags=["crm.admin"])
dashboard_router = APIRouter(prefix="/api/dashboard", tags=["crm.dashboard"])
analytics_router = APIRouter(prefix="/api/analytics", tags=["crm.analytics"])
search_router = APIRouter(prefix="/api", tags=["crm.search"])
calendar_router = APIRouter(prefix="/api/calendar", tags=["crm.calendar"])

lead_service = LeadService()
note_service = NoteService()
appointment_service = AppointmentService()
quote_service = QuoteService()
crew_service = CrewService()
job_service = JobService()
calendar_service = CalendarReminderService()
task_service = TaskService()
notification_service = NotificationService()
follow_up_service = FollowUpService()
dashboard_service = DashboardService()
analytics_service = AnalyticsService()


def _parse_datetime_param(value: str | None, name: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {name}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@leads_router.post("", status_code=status.HTTP_201_CREATED, response_model=None)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("", response_model=None)
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    my_leads: bool = Query(default=False, alias="myLeads"),
    unassigned: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return lead_service.list_leads(
            db,
            user,
            status_filter=status_filter,
            my_leads=my_leads,
            unassigned=unassigned,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


def _closed_deal_filters(
    search: str | None,
    lead_type: str | None,
    rep_id: uuid.UUID | None,
    start_date: str | None,
    end_date: str | None,
) -> dict[str, Any]:
    return {
        "search": search,
        "lead_type": lead_type,
        "rep_id": rep_id,
        "start_date": _parse_datetime_param(start_date, "startDate"),
        "end_date": _parse_datetime_param(end_date, "endDate"),
    }


@leads_router.get("/won", response_model=list[ClosedDealRead])
def list_won_leads(
    request: Request,
    search: str | None = Query(default=None),
    lead_type: str | None = Query(default=None, alias="leadType"),
    rep_id: uuid.UUID | None = Query(default=None, alias="repId"),
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    sort: str = Query(default="date"),
    direction: str = Query(default="desc"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClosedDealRead] | JSONResponse:
    try:
        filters = _closed_deal_filters(search, lead_type, rep_id, start_date, end_date)
        return lead_service.list_won(db, user, sort=sort, direction=direction, **filters)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_won_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/lost", response_model=list[ClosedDealRead])
def list_lost_leads(
    request: Request,
    search: str | None = Query(default=None),
    lead_type: str | None = Query(default=None, alias="leadType"),
    rep_id: uuid.UUID | None = Query(default=None, alias="repId"),
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    sort: str = Query(default="date"),
    direction: str = Query(default="desc"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClosedDealRead] | JSONResponse:
    try:
        filters = _closed_deal_filters(search, lead_type, rep_id, start_date, end_date)
        return lead_service.list_lost(db, user, sort=sort, direction=direction, **filters)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_lost_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/{lead_id}", response_model=None)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.patch("/{lead_id}", response_model=None)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.delete("/{lead_id}", response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return lead_service.delete_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.patch("/{lead_id}/close", response_model=None)
def close_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadCloseRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return lead_service.close_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_close_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/{lead_id}/notes", response_model=list[LeadNoteRead])
def list_lead_notes(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadNoteRead] | JSONResponse:
    try:
        return note_service.list_notes(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_note_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/notes", response_model=LeadNoteRead, status_code=status.HTTP_201_CREATED)
def create_lead_note(
    request: Request,
    lead_id: uuid.UUID,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadNoteRead | JSONResponse:
    try:
        return note_service.create_note(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_note_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@public_router.post("/leads", status_code=status.HTTP_201_CREATED, response_model=None)
def create_public_lead(
    request: Request,
    dto: PublicLeadCreate,
    db: Session = Depends(get_db),
) -> Any:
    settings = get_settings()
    client_ip = resolve_client_ip(request)
    allowed, retry_after = public_lead_limiter.hit(
        client_ip,
        settings.public_lead_rate_limit,
        settings.public_lead_rate_window_seconds,
    )
    if not allowed:
        observe_public_lead_rate_limited()
        logger.info("public_lead_rate_limited", extra={"client_ip": client_ip})
        return error_response(
            request,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            code="RATE_LIMITED",
            message="Too many requests. Please try again later.",
            details={"retryAfter": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    try:
        return lead_service.create_public_lead(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_public_lead_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@appointments_router.post("", response_model=AppointmentRead, status_code=status.HTTP_201_CREATED)
def create_appointment(
    request: Request,
    dto: AppointmentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AppointmentRead | JSONResponse:
    try:
        return appointment_service.create_appointment(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_appointment_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@appointments_router.get("", response_model=list[AppointmentRead])
def list_appointments(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None, alias="leadId"),
    status_filter: str | None = Query(default=None, alias="status"),
    upcoming: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AppointmentRead] | JSONResponse:
    try:
        return appointment_service.list_appointments(
            db,
            user,
            lead_id=lead_id,
            status_filter=status_filter,
            upcoming=upcoming,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_appointment_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@appointments_router.get("/{appointment_id}", response_model=None)
def get_appointment(
    request: Request,
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return appointment_service.get_appointment(db, user, appointment_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_appointment_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@appointments_router.patch("/{appointment_id}", response_model=AppointmentRead)
def patch_appointment(
    request: Request,
    appointment_id: uuid.UUID,
    dto: AppointmentUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AppointmentRead | JSONResponse:
    try:
        return appointment_service.update_appointment(db, user, appointment_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_appointment_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.post("", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def create_quote(
    request: Request,
    dto: QuoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteRead | JSONResponse:
    try:
        return quote_service.create_quote(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.get("", response_model=list[QuoteRead])
def list_quotes(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None, alias="leadId"),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[QuoteRead] | JSONResponse:
    try:
        return quote_service.list_quotes(db, user, lead_id=lead_id, status_filter=status_filter)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.get("/{quote_id}", response_model=QuoteRead)
def get_quote(
    request: Request,
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteRead | JSONResponse:
    try:
        return quote_service.get_quote(db, user, quote_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.patch("/{quote_id}", response_model=QuoteRead)
def patch_quote(
    request: Request,
    quote_id: uuid.UUID,
    dto: QuoteUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteRead | JSONResponse:
    try:
        return quote_service.update_quote(db, user, quote_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.delete("/{quote_id}", response_model=None)
def delete_quote(
    request: Request,
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return quote_service.delete_quote(db, user, quote_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.post("/{quote_id}/send", response_model=QuoteRead)
def send_quote(
    request: Request,
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteRead | JSONResponse:
    try:
        return quote_service.send_quote(db, user, quote_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_send_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.get("/{quote_id}/files", response_model=list[QuoteFileRead])
def list_quote_files(
    request: Request,
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[QuoteFileRead] | JSONResponse:
    try:
        return quote_service.list_files(db, user, quote_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_file_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.post("/{quote_id}/files", response_model=QuoteFileRead, status_code=status.HTTP_201_CREATED)
def add_quote_file(
    request: Request,
    quote_id: uuid.UUID,
    dto: QuoteFileCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteFileRead | JSONResponse:
    try:
        return quote_service.add_file(db, user, quote_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_file_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.delete("/{quote_id}/files/{file_id}", response_model=None)
def delete_quote_file(
    request: Request,
    quote_id: uuid.UUID,
    file_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return quote_service.delete_file(db, user, quote_id, file_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_quote_file_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.post("/{quote_id}/profit-loss", response_model=QuoteFileRead, status_code=status.HTTP_201_CREATED)
def upload_profit_loss(
    request: Request,
    quote_id: uuid.UUID,
    dto: QuoteFileCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteFileRead | JSONResponse:
    try:
        return quote_service.upload_profit_loss(db, user, quote_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_profit_loss_upload_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.get("/{quote_id}/profit-loss", response_model=QuoteFileRead | None)
def get_profit_loss(
    request: Request,
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteFileRead | None | JSONResponse:
    try:
        return quote_service.get_profit_loss(db, user, quote_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_profit_loss_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotes_router.delete("/{quote_id}/profit-loss", response_model=None)
def delete_profit_loss(
    request: Request,
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return quote_service.delete_profit_loss(db, user, quote_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_profit_loss_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@crews_router.get("", response_model=list[CrewRead])
def list_crews(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CrewRead] | JSONResponse:
    try:
        return crew_service.list_crews(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_crew_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@crews_router.post("", response_model=CrewRead, status_code=status.HTTP_201_CREATED)
def create_crew(
    request: Request,
    dto: CrewCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CrewRead | JSONResponse:
    try:
        return crew_service.create_crew(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_crew_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@crews_router.get("/{crew_id}", response_model=CrewRead)
def get_crew(
    request: Request,
    crew_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CrewRead | JSONResponse:
    try:
        return crew_service.get_crew(db, user, crew_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_crew_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@crews_router.patch("/{crew_id}", response_model=CrewRead)
def patch_crew(
    request: Request,
    crew_id: uuid.UUID,
    dto: CrewUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CrewRead | JSONResponse:
    try:
        return crew_service.update_crew(db, user, crew_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_crew_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@crews_router.delete("/{crew_id}", response_model=None)
def delete_crew(
    request: Request,
    crew_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return crew_service.delete_crew(db, user, crew_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_crew_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.get("", response_model=list[JobRead])
def list_jobs(
    request: Request,
    job_status: str | None = Query(default=None, alias="jobStatus"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[JobRead] | JSONResponse:
    try:
        return job_service.list_jobs(db, user, job_status)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_job_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.get("/{lead_id}/crews", response_model=list[JobCrewRead])
def list_job_crews(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[JobCrewRead] | JSONResponse:
    try:
        return job_service.list_job_crews(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_job_crew_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.post("/{lead_id}/crews", response_model=JobCrewRead, status_code=status.HTTP_201_CREATED)
def assign_job_crew(
    request: Request,
    lead_id: uuid.UUID,
    dto: JobCrewAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> JobCrewRead | JSONResponse:
    try:
        return job_service.assign_crew(db, user, lead_id, dto.crew_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_job_crew_assign_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.delete("/{lead_id}/crews", response_model=None)
def unassign_job_crew(
    request: Request,
    lead_id: uuid.UUID,
    crew_id: uuid.UUID | None = Query(default=None, alias="crewId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return job_service.unassign_crew(db, user, lead_id, crew_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_job_crew_unassign_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.get("", response_model=TaskListRead)
def list_tasks(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    user_id: str | None = Query(default=None, alias="userId"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskListRead | JSONResponse:
    try:
        return task_service.list_tasks(
            db,
            user,
            status_filter=status_filter,
            user_id=user_id,
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/{task_id}/acknowledge", response_model=None)
def acknowledge_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return task_service.acknowledge_task(db, user, task_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_acknowledge_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/{task_id}/resolve", response_model=None)
def resolve_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return task_service.resolve_task(db, user, task_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_resolve_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.delete("/{task_id}", response_model=None)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return task_service.delete_task(db, user, task_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.get("", response_model=NotificationListRead)
def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    unacknowledged_only: bool = Query(default=False, alias="unacknowledgedOnly"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationListRead | JSONResponse:
    try:
        return notification_service.list_notifications(
            db,
            user,
            unread_only=unread_only,
            unacknowledged_only=unacknowledged_only,
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.post("/read-all", response_model=ReadAllResponse)
def mark_all_notifications_read(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReadAllResponse | JSONResponse:
    try:
        return notification_service.mark_all_read(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_read_all_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    try:
        return notification_service.mark_read(db, user, notification_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.post("/{notification_id}/acknowledge", response_model=None)
def acknowledge_notification(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return notification_service.acknowledge(db, user, notification_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_acknowledge_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@cron_router.post("/check-inactivity", response_model=SweepResult, response_model_exclude_none=True)
def check_inactivity(
    request: Request,
    cron_secret: str | None = Header(default=None, alias="X-Cron-Secret"),
    db: Session = Depends(get_db),
) -> SweepResult | JSONResponse:
    expected = get_settings().cron_secret
    if not expected:
        logger.error("cron_secret_missing")
        return error_response(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="crm_cron_not_configured",
            message="Cron secret not configured",
        )
    if not cron_secret or not hmac.compare_digest(cron_secret, expected):
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="crm_cron_unauthorized",
            message="Unauthorized",
        )
    return inactivity_sweep.run(db, trigger="cron")


@admin_router.get("/follow-ups", response_model=FollowUpsRead)
def list_follow_ups(
    request: Request,
    sales_rep_id: uuid.UUID | None = Query(default=None, alias="salesRepId"),
    hours_min: float | None = Query(default=None, alias="hoursMin"),
    hours_max: float | None = Query(default=None, alias="hoursMax"),
    task_status: str | None = Query(default=None, alias="taskStatus"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FollowUpsRead | JSONResponse:
    try:
        return follow_up_service.list_follow_ups(
            db,
            user,
            sales_rep_id=sales_rep_id,
            hours_min=hours_min,
            hours_max=hours_max,
            task_status=task_status,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_follow_up_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@dashboard_router.get("/stats", response_model=DashboardRead, response_model_exclude_none=True)
def dashboard_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DashboardRead | JSONResponse:
    try:
        return dashboard_service.stats(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_dashboard_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/team-performance", response_model=TeamPerformanceRead)
def team_performance(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TeamPerformanceRead | JSONResponse:
    try:
        return analytics_service.team_performance(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_team_performance_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/win-rate", response_model=WinRateRead)
def win_rate(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WinRateRead | JSONResponse:
    try:
        return analytics_service.win_rate(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_win_rate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/loss-reasons", response_model=LossReasonsRead)
def loss_reasons(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LossReasonsRead | JSONResponse:
    try:
        return analytics_service.loss_reasons(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_loss_reasons_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/lead-creation", response_model=LeadCreationRead)
def lead_creation(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadCreationRead | JSONResponse:
    try:
        return analytics_service.lead_creation(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_creation_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@search_router.get("/search", response_model=list[CustomerSearchResult])
def search_customers(
    q: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CustomerSearchResult]:
    return customer_service.search(db, q)


@search_router.get("/customers/search", response_model=CustomerLookupRead)
def lookup_customer(
    request: Request,
    phone: str | None = Query(default=None),
    email: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomerLookupRead | JSONResponse:
    try:
        return customer_service.lookup(db, phone, email)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_customer_lookup_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@search_router.get("/referrers/search", response_model=CustomerLookupRead)
def lookup_referrer(
    request: Request,
    phone: str | None = Query(default=None),
    email: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomerLookupRead | JSONResponse:
    try:
        return customer_service.lookup(db, phone, email)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_referrer_lookup_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@calendar_router.get("/reminders", response_model=list[CalendarReminderRead])
def list_reminders(
    request: Request,
    start: str | None = Query(default=None),
    end: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CalendarReminderRead] | JSONResponse:
    try:
        return calendar_service.list_reminders(
            db,
            user,
            start=_parse_datetime_param(start, "start"),
            end=_parse_datetime_param(end, "end"),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_reminder_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@calendar_router.post("/reminders", response_model=CalendarReminderRead, status_code=status.HTTP_201_CREATED)
def create_reminder(
    request: Request,
    dto: CalendarReminderCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CalendarReminderRead | JSONResponse:
    try:
        return calendar_service.create_reminder(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_reminder_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@calendar_router.patch("/reminders/{reminder_id}", response_model=CalendarReminderRead)
def patch_reminder(
    request: Request,
    reminder_id: uuid.UUID,
    dto: CalendarReminderUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CalendarReminderRead | JSONResponse:
    try:
        return calendar_service.update_reminder(db, user, reminder_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_reminder_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@calendar_router.delete("/reminders/{reminder_id}", response_model=None)
def delete_reminder(
    request: Request,
    reminder_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return calendar_service.delete_reminder(db, user, reminder_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_reminder_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@calendar_router.get("/events", response_model=CalendarEventsRead)
def list_calendar_events(
    request: Request,
    start: str | None = Query(default=None),
    end: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CalendarEventsRead | JSONResponse:
    try:
        return calendar_service.list_events(
            db,
            user,
            start=_parse_datetime_param(start, "start"),
            end=_parse_datetime_param(end, "end"),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_calendar_events_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@calendar_router.get("/assigned-tasks", response_model=list[CalendarReminderRead])
def list_assigned_reminders(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CalendarReminderRead]:
    return calendar_service.list_assigned(db, user)
