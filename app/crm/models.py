from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.accounts.models import User
from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceType(StrEnum):
    CALL_IN = "CALL_IN"
    WALK_IN = "WALK_IN"
    REFERRAL = "REFERRAL"


class LeadType(StrEnum):
    FLOOR = "FLOOR"
    KITCHEN = "KITCHEN"
    BATH = "BATH"
    CARPET = "CARPET"
    PAINTING = "PAINTING"
    LANDSCAPING = "LANDSCAPING"
    MONTHLY_YARD_MAINTENANCE = "MONTHLY_YARD_MAINTENANCE"
    ROOFING = "ROOFING"
    STUCCO = "STUCCO"
    ADUS = "ADUS"
    OTHER = "OTHER"


class LeadStatus(StrEnum):
    NEW = "NEW"
    ASSIGNED = "ASSIGNED"
    APPOINTMENT_SET = "APPOINTMENT_SET"
    QUOTED = "QUOTED"
    WON = "WON"
    LOST = "LOST"


CLOSED_LEAD_STATUSES = {LeadStatus.WON.value, LeadStatus.LOST.value}


class JobStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class AppointmentStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class QuoteStatus(StrEnum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class TaskType(StrEnum):
    LEAD_INACTIVITY = "LEAD_INACTIVITY"


class TaskStatus(StrEnum):
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class NotificationType(StrEnum):
    LEAD_INACTIVITY = "LEAD_INACTIVITY"
    ADMIN_COMMENT = "ADMIN_COMMENT"
    CALENDAR_TASK = "CALENDAR_TASK"


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_line1: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_line2: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[str | None] = mapped_column(Text, nullable=True)
    zip: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    leads: Mapped[list[Lead]] = relationship(
        "Lead",
        back_populates="customer",
        foreign_keys="Lead.customer_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Lead.created_at.desc()",
    )

    __table_args__ = (
        Index("ix_customers_phone", "phone"),
        Index("ix_customers_email", "email"),
    )


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
    )
    customer_number: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    lead_types: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=LeadStatus.NEW.value,
        server_default=LeadStatus.NEW.value,
    )
    assigned_sales_rep_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    referrer_first_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer_last_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer_phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer_customer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
    )
    referrer_is_customer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_military_first_responder: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    is_contractor: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    contractor_license_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    hear_about_us: Mapped[str | None] = mapped_column(Text, nullable=True)
    hear_about_us_other: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    job_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    job_scheduled_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    job_completed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    customer: Mapped[Customer] = relationship("Customer", back_populates="leads", foreign_keys=[customer_id])
    referrer_customer: Mapped[Customer | None] = relationship("Customer", foreign_keys=[referrer_customer_id])
    assigned_sales_rep: Mapped[User | None] = relationship("User", foreign_keys=[assigned_sales_rep_id])
    creator: Mapped[User | None] = relationship("User", foreign_keys=[created_by])
    notes: Mapped[list[LeadNote]] = relationship(
        "LeadNote",
        back_populates="lead",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="LeadNote.created_at.desc()",
    )
    appointments: Mapped[list[Appointment]] = relationship(
        "Appointment",
        back_populates="lead",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Appointment.scheduled_for",
    )
    quotes: Mapped[list[Quote]] = relationship(
        "Quote",
        back_populates="lead",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Quote.created_at.desc()",
    )
    tasks: Mapped[list[Task]] = relationship(
        "Task",
        back_populates="lead",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    notifications: Mapped[list[Notification]] = relationship(
        "Notification",
        back_populates="lead",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    crew_assignments: Mapped[list[JobCrewAssignment]] = relationship(
        "JobCrewAssignment",
        back_populates="lead",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_leads_status", "status"),
        Index("ix_leads_assigned_sales_rep_id", "assigned_sales_rep_id"),
        Index("ix_leads_created_at", "created_at"),
    )


class LeadNote(Base):
    __tablename__ = "lead_notes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    lead: Mapped[Lead] = relationship("Lead", back_populates="notes")
    author: Mapped[User | None] = relationship("User", foreign_keys=[created_by])

    __table_args__ = (Index("ix_lead_notes_lead_id", "lead_id"),)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    sales_rep_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    site_address_line1: Mapped[str | None] = mapped_column(Text, nullable=True)
    site_address_line2: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[str | None] = mapped_column(Text, nullable=True)
    zip: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AppointmentStatus.SCHEDULED.value,
        server_default=AppointmentStatus.SCHEDULED.value,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    lead: Mapped[Lead] = relationship("Lead", back_populates="appointments")
    sales_rep: Mapped[User | None] = relationship("User", foreign_keys=[sales_rep_id])

    __table_args__ = (
        Index("ix_appointments_sales_rep_id", "sales_rep_id"),
        Index("ix_appointments_scheduled_for", "scheduled_for"),
    )


class Quote(Base):
    __tablename__ = "quotes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
    )
    sales_rep_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    quote_number: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD", server_default="USD")
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=QuoteStatus.DRAFT.value,
        server_default=QuoteStatus.DRAFT.value,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    lead: Mapped[Lead] = relationship("Lead", back_populates="quotes")
    sales_rep: Mapped[User | None] = relationship("User", foreign_keys=[sales_rep_id])
    appointment: Mapped[Appointment | None] = relationship("Appointment")
    files: Mapped[list[QuoteFile]] = relationship(
        "QuoteFile",
        back_populates="quote",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="QuoteFile.uploaded_at.desc()",
    )

    __table_args__ = (
        Index("ix_quotes_lead_id", "lead_id"),
        Index("ix_quotes_sales_rep_id", "sales_rep_id"),
    )


class QuoteFile(Base):
    __tablename__ = "quote_files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("quotes.id", ondelete="CASCADE"),
        nullable=False,
    )
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_profit_loss: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    uploaded_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    quote: Mapped[Quote] = relationship("Quote", back_populates="files")
    uploaded_by: Mapped[User | None] = relationship("User", foreign_keys=[uploaded_by_user_id])


class Crew(Base):
    __tablename__ = "crews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    member_names: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    members: Mapped[list[CrewMember]] = relationship(
        "CrewMember",
        back_populates="crew",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    assignments: Mapped[list[JobCrewAssignment]] = relationship(
        "JobCrewAssignment",
        back_populates="crew",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class CrewMember(Base):
    __tablename__ = "crew_members"

    crew_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crews.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )

    crew: Mapped[Crew] = relationship("Crew", back_populates="members")
    user: Mapped[User] = relationship("User")


class JobCrewAssignment(Base):
    __tablename__ = "job_crew_assignments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    crew_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crews.id", ondelete="CASCADE"),
        nullable=False,
    )
    assigned_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lead: Mapped[Lead] = relationship("Lead", back_populates="crew_assignments")
    crew: Mapped[Crew] = relationship("Crew", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("lead_id", "crew_id", name="uq_job_crew_assignments_lead_crew"),
    )


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=TaskStatus.PENDING.value,
        server_default=TaskStatus.PENDING.value,
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    lead: Mapped[Lead] = relationship("Lead", back_populates="tasks")
    user: Mapped[User] = relationship("User")
    notifications: Mapped[list[Notification]] = relationship(
        "Notification",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("lead_id", "type", name="uq_tasks_lead_type"),
        Index("ix_tasks_user_status", "user_id", "status"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=True,
    )
    note_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("lead_notes.id", ondelete="SET NULL"),
        nullable=True,
    )
    task_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=True,
    )
    calendar_reminder_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("calendar_reminders.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lead: Mapped[Lead | None] = relationship("Lead", back_populates="notifications")
    task: Mapped[Task | None] = relationship("Task", back_populates="notifications")
    note: Mapped[LeadNote | None] = relationship("LeadNote")
    calendar_reminder: Mapped[CalendarReminder | None] = relationship(
        "CalendarReminder",
        back_populates="notifications",
    )

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "read"),
        Index("ix_notifications_user_acknowledged", "user_id", "acknowledged"),
        Index("ix_notifications_lead_id", "lead_id"),
        Index("ix_notifications_task_id", "task_id"),
    )


class CalendarReminder(Base):
    __tablename__ = "calendar_reminders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    assigned_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    user: Mapped[User] = relationship("User", foreign_keys=[user_id])
    assigned_user: Mapped[User | None] = relationship("User", foreign_keys=[assigned_user_id])
    notifications: Mapped[list[Notification]] = relationship(
        "Notification",
        back_populates="calendar_reminder",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_calendar_reminders_scheduled_for", "scheduled_for"),)
