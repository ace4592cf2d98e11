from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class UserSummary(CamelModel):
    id: UUID
    name: str | None
    email: str


class CustomerFields(CamelModel):
    phone: str | None = None
    email: EmailStr | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _normalize_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class CustomerRead(CamelModel):
    id: UUID
    first_name: str
    last_name: str
    phone: str | None
    email: str | None
    address_line1: str | None
    address_line2: str | None
    city: str | None
    state: str | None
    zip: str | None
    source_type: str
    created_at: datetime
    updated_at: datetime


class CustomerSummary(CamelModel):
    id: UUID
    first_name: str
    last_name: str


class LeadCreate(CustomerFields):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    source_type: str = Field(min_length=1)
    lead_types: list[str] = Field(default_factory=list)
    description: str | None = None
    referrer_first_name: str | None = None
    referrer_last_name: str | None = None
    referrer_phone: str | None = None
    referrer_email: EmailStr | None = None
    is_military_first_responder: bool = False
    is_contractor: bool = False
    contractor_license_number: str | None = None
    hear_about_us: str | None = None
    hear_about_us_other: str | None = None

    @field_validator("referrer_email", "referrer_phone", mode="before")
    @classmethod
    def _normalize_referrer_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class PublicLeadCreate(CustomerFields):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    is_military_first_responder: bool = False
    lead_types: list[str] = Field(default_factory=list)
    description: str | None = None
    hear_about_us: str | None = None
    hear_about_us_other: str | None = None


class LeadUpdate(CustomerFields):
    first_name: str | None = None
    last_name: str | None = None
    source_type: str | None = None
    status: str | None = None
    assigned_sales_rep_id: UUID | None = None
    lead_types: list[str] | None = None
    description: str | None = None
    job_status: str | None = None
    job_scheduled_date: datetime | None = None
    is_military_first_responder: bool | None = None
    is_contractor: bool | None = None
    contractor_license_number: str | None = None
    hear_about_us: str | None = None
    hear_about_us_other: str | None = None


class LeadCloseRequest(CamelModel):
    status: str
    reason: str | None = None
    job_status: str | None = None
    job_scheduled_date: str | None = None
    job_completed_date: str | None = None


class LeadRead(CamelModel):
    id: UUID
    customer_id: UUID
    customer_number: str | None
    lead_types: list[str]
    description: str | None
    status: str
    assigned_sales_rep_id: UUID | None
    created_by: UUID | None
    is_military_first_responder: bool
    is_contractor: bool
    contractor_license_number: str | None
    hear_about_us: str | None
    hear_about_us_other: str | None
    closed_date: datetime | None
    job_status: str | None
    job_scheduled_date: datetime | None
    job_completed_date: datetime | None
    created_at: datetime
    updated_at: datetime
    customer: CustomerRead
    assigned_sales_rep: UserSummary | None
    creator: UserSummary | None


class ReferrerRead(CamelModel):
    referrer_first_name: str | None
    referrer_last_name: str | None
    referrer_phone: str | None
    referrer_email: str | None
    referrer_customer_id: UUID | None
    referrer_is_customer: bool


class NoteCreate(CamelModel):
    content: str


class LeadNoteRead(CamelModel):
    id: UUID
    lead_id: UUID
    content: str
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime
    author: UserSummary | None


class AppointmentCreate(CamelModel):
    lead_id: UUID
    sales_rep_id: UUID
    scheduled_for: datetime
    site_address_line1: str | None = None
    site_address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    notes: str | None = None


class AppointmentUpdate(CamelModel):
    scheduled_for: datetime | None = None
    status: str | None = None
    site_address_line1: str | None = None
    site_address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    notes: str | None = None


class AppointmentLeadRead(CamelModel):
    id: UUID
    status: str
    customer: CustomerRead


class AppointmentRead(CamelModel):
    id: UUID
    lead_id: UUID
    sales_rep_id: UUID | None
    scheduled_for: datetime
    site_address_line1: str | None
    site_address_line2: str | None
    city: str | None
    state: str | None
    zip: str | None
    status: str
    notes: str | None
    created_at: datetime
    updated_at: datetime
    sales_rep: UserSummary | None
    lead: AppointmentLeadRead


class QuoteCreate(CamelModel):
    lead_id: UUID
    amount: float = Field(ge=0)
    currency: str = "USD"
    appointment_id: UUID | None = None
    expires_at: datetime | None = None
    quote_number: str | None = None
    status: str | None = None


class QuoteUpdate(CamelModel):
    amount: float | None = Field(default=None, ge=0)
    expires_at: datetime | None = None
    status: str | None = None
    sent_at: datetime | None = None
    quote_number: str | None = None


class QuoteFileCreate(CamelModel):
    file_url: str = Field(min_length=1)
    file_type: str | None = None


class QuoteFileRead(CamelModel):
    id: UUID
    quote_id: UUID
    file_url: str
    file_type: str | None
    is_profit_loss: bool
    uploaded_by_user_id: UUID | None
    uploaded_at: datetime
    uploaded_by: UserSummary | None


class QuoteLeadRead(CamelModel):
    id: UUID
    status: str
    customer_number: str | None
    customer: CustomerSummary


class QuoteRead(CamelModel):
    id: UUID
    lead_id: UUID
    appointment_id: UUID | None
    sales_rep_id: UUID | None
    quote_number: str | None
    amount: float
    currency: str
    sent_at: datetime | None
    expires_at: datetime | None
    status: str
    created_at: datetime
    updated_at: datetime
    sales_rep: UserSummary | None
    lead: QuoteLeadRead
    files: list[QuoteFileRead] = Field(default_factory=list)


class LeadQuoteRead(CamelModel):
    id: UUID
    quote_number: str | None
    amount: float
    currency: str
    status: str
    sent_at: datetime | None
    expires_at: datetime | None
    created_at: datetime
    sales_rep: UserSummary | None


class LeadAppointmentRead(CamelModel):
    id: UUID
    scheduled_for: datetime
    status: str
    notes: str | None
    created_at: datetime
    sales_rep: UserSummary | None


class CrewCreate(CamelModel):
    name: str
    description: str | None = None
    member_names: list[str] = Field(default_factory=list)
    user_member_ids: list[UUID] = Field(default_factory=list)


class CrewUpdate(CamelModel):
    name: str | None = None
    description: str | None = None
    member_names: list[str] | None = None
    user_member_ids: list[UUID] | None = None


class CrewMemberEntry(CamelModel):
    name: str
    type: str


class CrewRead(CamelModel):
    id: UUID
    name: str
    description: str | None
    member_names: list[str]
    user_members: list[UserSummary]
    all_members: list[CrewMemberEntry]
    job_assignment_count: int
    created_at: datetime
    updated_at: datetime


class JobCrewAssignRequest(CamelModel):
    crew_id: UUID


class JobCrewRead(CamelModel):
    id: UUID
    lead_id: UUID
    crew_id: UUID
    assigned_at: datetime
    assigned_by: UUID | None
    crew: CrewRead


class JobCrewRef(CamelModel):
    id: UUID
    name: str


class JobQuoteRef(CamelModel):
    id: UUID
    quote_number: str | None
    status: str


class JobRead(CamelModel):
    id: UUID
    customer_number: str | None
    status: str
    description: str | None
    job_status: str | None
    job_scheduled_date: datetime | None
    job_completed_date: datetime | None
    closed_date: datetime | None
    created_at: datetime
    lead_types: list[str]
    customer: CustomerRead
    assigned_sales_rep: UserSummary | None
    quotes: list[JobQuoteRef]
    has_profit_loss_file: bool
    crews: list[JobCrewRef]


class ClosedDealRead(CamelModel):
    id: UUID
    customer_number: str | None
    status: str
    lead_types: list[str]
    closed_date: datetime | None
    created_at: datetime
    job_status: str | None
    customer: CustomerRead
    assigned_sales_rep: UserSummary | None
    deal_value: float
    days_to_close: int | None
    loss_reason: str | None = None


class TaskRead(CamelModel):
    id: UUID
    user_id: UUID
    type: str
    status: str
    lead_id: UUID
    created_at: datetime
    acknowledged_at: datetime | None
    resolved_at: datetime | None
    hours_inactive: int | None
    last_activity: datetime | None
    lead: QuoteLeadRead
    user: UserSummary


class PaginationRead(CamelModel):
    total: int
    limit: int
    offset: int


class TaskCounts(CamelModel):
    pending: int
    acknowledged: int


class TaskListRead(CamelModel):
    tasks: list[TaskRead]
    pagination: PaginationRead
    counts: TaskCounts


class NotificationRead(CamelModel):
    id: UUID
    user_id: UUID
    type: str
    read: bool
    read_at: datetime | None
    acknowledged: bool
    acknowledged_at: datetime | None
    lead_id: UUID | None
    note_id: UUID | None
    task_id: UUID | None
    calendar_reminder_id: UUID | None
    created_at: datetime
    lead: QuoteLeadRead | None
    note: LeadNoteRead | None = None


class NotificationCounts(CamelModel):
    unread: int
    unacknowledged: int


class NotificationListRead(CamelModel):
    notifications: list[NotificationRead]
    pagination: PaginationRead
    counts: NotificationCounts


class ReadAllResponse(CamelModel):
    count: int
    message: str


class SweepResult(CamelModel):
    success: bool
    processed: int
    notifications_created: int
    tasks_created: int
    errors: list[str] | None = None


class FollowUpTaskRead(CamelModel):
    id: UUID
    status: str
    created_at: datetime
    acknowledged_at: datetime | None


class FollowUpLeadRead(CamelModel):
    lead_id: UUID
    customer: CustomerSummary
    sales_rep: UserSummary
    last_activity: datetime
    hours_inactive: int
    task: FollowUpTaskRead | None


class FollowUpRepStats(CamelModel):
    id: UUID
    name: str | None
    email: str
    inactive_count: int
    total_hours_inactive: float
    unacknowledged_tasks: int
    average_hours_inactive: int


class FollowUpSummary(CamelModel):
    total_inactive_leads: int
    total_unacknowledged_tasks: int
    sales_rep_stats: list[FollowUpRepStats]


class FollowUpsRead(CamelModel):
    summary: FollowUpSummary
    inactive_leads: list[FollowUpLeadRead]


class CalendarReminderCreate(CamelModel):
    title: str = Field(min_length=1)
    description: str | None = None
    scheduled_for: datetime
    assigned_user_id: UUID | None = None


class CalendarReminderUpdate(CamelModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    scheduled_for: datetime | None = None
    assigned_user_id: UUID | None = None


class CalendarReminderRead(CamelModel):
    id: UUID
    title: str
    description: str | None
    scheduled_for: datetime
    user_id: UUID
    assigned_user_id: UUID | None
    created_at: datetime
    updated_at: datetime
    user: UserSummary
    assigned_user: UserSummary | None


class CalendarEventRead(CamelModel):
    id: str
    type: str
    title: str
    start: datetime
    original_id: UUID
    lead_id: UUID | None = None
    customer_name: str | None = None
    sales_rep_id: UUID | None = None
    sales_rep_name: str | None = None
    status: str | None = None
    address: str | None = None
    notes: str | None = None
    lead_types: list[str] | None = None
    description: str | None = None
    created_by: str | None = None
    assigned_user_id: UUID | None = None
    assigned_user_name: str | None = None


class CalendarEventsRead(CamelModel):
    start: datetime
    end: datetime
    events: list[CalendarEventRead]


class SearchLeadRead(CamelModel):
    id: UUID
    customer_number: str | None
    status: str
    lead_types: list[str]
    created_at: datetime


class CustomerSearchResult(CamelModel):
    id: UUID
    first_name: str
    last_name: str
    phone: str | None
    email: str | None
    address_line1: str | None
    city: str | None
    state: str | None
    zip: str | None
    created_at: datetime
    most_recent_lead: SearchLeadRead | None


class CustomerLookupRead(CamelModel):
    found: bool
    is_customer: bool
    customer: CustomerRead | None = None


class DashboardStats(CamelModel):
    total_leads: int
    appointment_set_leads: int
    new_leads: int
    assigned_leads: int
    quoted_leads: int
    won_leads: int
    total_appointments: int
    scheduled_appointments: int
    past_due_appointments: int
    lead_to_appointment_rate: float
    win_rate: float
    unassigned_leads: int | None = None
    overdue_follow_ups: int | None = None
    jobs_pending_financials: int | None = None
    leads_with_appointments: int | None = None


class DashboardRead(CamelModel):
    stats: DashboardStats


class TeamPerformanceStat(CamelModel):
    user_id: UUID
    user_name: str | None
    user_email: str
    user_role: str
    total_leads: int
    won_leads: int
    win_rate: float
    appointment_set_leads: int
    conversion_rate: float
    total_appointments: int
    overdue_follow_ups: int


class TeamPerformanceRead(CamelModel):
    stats: list[TeamPerformanceStat]


class WinRateSummary(CamelModel):
    won_count_month: int
    won_value_month: float
    lost_count_month: int
    lost_value_month: float
    win_rate_percent: float
    avg_days_to_close: float | None


class LeadTypeWinRate(CamelModel):
    lead_type: str
    win_count: int
    lost_count: int
    win_rate_percent: float


class WinRateRead(CamelModel):
    summary: WinRateSummary
    win_rate_by_service: list[LeadTypeWinRate]


class LossReasonCount(CamelModel):
    reason: str
    count: int


class LossReasonsRead(CamelModel):
    reasons: list[LossReasonCount]


class LeadCreationStat(CamelModel):
    user_id: UUID
    user_name: str | None
    user_email: str
    user_role: str
    lead_count: int


class LeadCreationRead(CamelModel):
    stats: list[LeadCreationStat]
