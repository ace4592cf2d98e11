from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.accounts.models import User
from app.core.auth import ActorUser
from app.core.rbac import ASSIGNABLE_ROLES, UserRole, require_admin
from app.crm import views
from app.crm.activity import as_utc, utcnow
from app.crm.models import (
    CLOSED_LEAD_STATUSES,
    Appointment,
    AppointmentStatus,
    Crew,
    CrewMember,
    Customer,
    JobCrewAssignment,
    JobStatus,
    Lead,
    LeadNote,
    LeadStatus,
    LeadType,
    Notification,
    Quote,
    QuoteFile,
    QuoteStatus,
    SourceType,
    CalendarReminder,
)
from app.crm.numbering import insert_lead_with_customer_number
from app.crm.schemas import (
    AppointmentCreate,
    AppointmentRead,
    AppointmentUpdate,
    CalendarEventRead,
    CalendarEventsRead,
    CalendarReminderCreate,
    CalendarReminderRead,
    CalendarReminderUpdate,
    ClosedDealRead,
    CrewCreate,
    CrewMemberEntry,
    CrewRead,
    CrewUpdate,
    CustomerLookupRead,
    CustomerRead,
    CustomerSearchResult,
    JobCrewRead,
    JobCrewRef,
    JobQuoteRef,
    JobRead,
    LeadCloseRequest,
    LeadCreate,
    LeadNoteRead,
    LeadUpdate,
    NoteCreate,
    PublicLeadCreate,
    QuoteCreate,
    QuoteFileCreate,
    QuoteFileRead,
    QuoteRead,
    QuoteUpdate,
    SearchLeadRead,
    UserSummary,
)

logger = logging.getLogger("app.crm.service")

LOST_NOTE_PREFIX = "Lead marked as lost. Reason:"
WON_NOTE = "Lead marked as won."
CUSTOMER_FIELDS = ("phone", "email", "address_line1", "address_line2", "city", "state", "zip")


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def _forbidden(detail: str = "Forbidden") -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _require_lead(session: Session, lead_id: uuid.UUID) -> Lead:
    lead = session.get(Lead, lead_id)
    if lead is None:
        raise _not_found("Lead not found")
    return lead


def _validate_lead_types(values: list[str]) -> list[str]:
    allowed = {item.value for item in LeadType}
    invalid = [value for value in values if value not in allowed]
    if invalid:
        raise _bad_request(f"Invalid lead types: {', '.join(invalid)}")
    return list(values)


def parse_date_only(value: str) -> datetime:
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise _bad_request("Invalid date format. Use YYYY-MM-DD") from exc
    return parsed.replace(tzinfo=timezone.utc)


def _record(actor_user: ActorUser | None, entity_type: str, entity_id: Any, action: str, before: Any, after: Any) -> None:
    audit.record(
        actor_user_id=str(actor_user.user_id) if actor_user else "public",
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        before=before,
        after=after,
        correlation_id=actor_user.correlation_id if actor_user else None,
    )


def _publish(event_type: str, actor_user: ActorUser | None, payload: dict[str, Any]) -> None:
    envelope = events.build_envelope(event_type, str(actor_user.user_id) if actor_user else None, payload)
    if actor_user is not None and actor_user.correlation_id:
        envelope["correlation_id"] = actor_user.correlation_id
    events.publish(envelope)


def _lead_snapshot(lead: Lead) -> dict[str, Any]:
    return {
        "status": lead.status,
        "assigned_sales_rep_id": str(lead.assigned_sales_rep_id) if lead.assigned_sales_rep_id else None,
        "lead_types": list(lead.lead_types or []),
        "job_status": lead.job_status,
        "customer_number": lead.customer_number,
    }


class CustomerService:
    def find_by_contact(self, session: Session, phone: str | None, email: str | None) -> Customer | None:
        conditions = []
        if phone:
            conditions.append(Customer.phone == phone)
        if email:
            conditions.append(Customer.email == email)
        if not conditions:
            return None
        return session.scalar(select(Customer).where(or_(*conditions)).order_by(Customer.created_at.asc()).limit(1))

    def upsert_from_intake(
        self,
        session: Session,
        *,
        first_name: str,
        last_name: str,
        fields: dict[str, Any],
        source_type: str,
        keep_existing_source: bool = False,
    ) -> Customer:
        customer = self.find_by_contact(session, fields.get("phone"), fields.get("email"))
        if customer is None:
            customer = Customer(
                first_name=first_name,
                last_name=last_name,
                source_type=source_type,
                **{name: fields.get(name) or None for name in CUSTOMER_FIELDS},
            )
            session.add(customer)
            session.flush()
            return customer

        customer.first_name = first_name or customer.first_name
        customer.last_name = last_name or customer.last_name
        for name in CUSTOMER_FIELDS:
            setattr(customer, name, fields.get(name) or getattr(customer, name))
        if not keep_existing_source:
            customer.source_type = source_type or customer.source_type
        session.flush()
        return customer

    def search(self, session: Session, query: str | None) -> list[CustomerSearchResult]:
        term = (query or "").strip()
        if len(term) < 2:
            return []

        pattern = f"%{term}%"
        conditions = [
            Customer.first_name.ilike(pattern),
            Customer.last_name.ilike(pattern),
            Customer.phone.ilike(pattern),
            Customer.email.ilike(pattern),
        ]
        words = term.split()
        if len(words) >= 2:
            first, second = f"%{words[0]}%", f"%{words[1]}%"
            conditions.append(
                and_(
                    or_(Customer.first_name.ilike(first), Customer.last_name.ilike(first)),
                    or_(Customer.first_name.ilike(second), Customer.last_name.ilike(second)),
                )
            )

        customers = session.scalars(
            select(Customer)
            .where(or_(*conditions))
            .options(selectinload(Customer.leads))
            .order_by(Customer.created_at.desc())
            .limit(10)
        ).all()

        results: list[CustomerSearchResult] = []
        for customer in customers:
            latest = customer.leads[0] if customer.leads else None
            results.append(
                CustomerSearchResult(
                    id=customer.id,
                    first_name=customer.first_name,
                    last_name=customer.last_name,
                    phone=customer.phone,
                    email=customer.email,
                    address_line1=customer.address_line1,
                    city=customer.city,
                    state=customer.state,
                    zip=customer.zip,
                    created_at=customer.created_at,
                    most_recent_lead=SearchLeadRead.model_validate(latest) if latest else None,
                )
            )
        return results

    def lookup(self, session: Session, phone: str | None, email: str | None) -> CustomerLookupRead:
        if not phone and not email:
            raise _bad_request("Phone or email is required")
        customer = self.find_by_contact(session, phone, email)
        if customer is None:
            return CustomerLookupRead(found=False, is_customer=False)
        return CustomerLookupRead(found=True, is_customer=True, customer=CustomerRead.model_validate(customer))


customer_service = CustomerService()


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> dict[str, Any]:
        if not dto.lead_types:
            raise _bad_request("Missing required fields")
        if dto.source_type not in {item.value for item in SourceType}:
            raise _bad_request("Invalid source type")
        lead_types = _validate_lead_types(dto.lead_types)
        if LeadType.OTHER.value in lead_types and not (dto.description or "").strip():
            raise _bad_request("Description is required when 'Other' is selected")
        license_number = (dto.contractor_license_number or "").strip()
        if dto.is_contractor and not license_number:
            raise _bad_request("Contractor License Number is required when 'Contractor' is selected")

        customer = customer_service.upsert_from_intake(
            session,
            first_name=dto.first_name,
            last_name=dto.last_name,
            fields=dto.model_dump(include=set(CUSTOMER_FIELDS)),
            source_type=dto.source_type,
        )

        is_referral = dto.source_type == SourceType.REFERRAL.value
        referrer = None
        if is_referral and (dto.referrer_phone or dto.referrer_email):
            referrer = customer_service.find_by_contact(session, dto.referrer_phone, dto.referrer_email)

        auto_assign = actor_user.role in {UserRole.SALES_REP.value, UserRole.ADMIN.value}
        lead = Lead(
            customer_id=customer.id,
            lead_types=lead_types,
            description=dto.description or None,
            status=LeadStatus.ASSIGNED.value if auto_assign else LeadStatus.NEW.value,
            assigned_sales_rep_id=actor_user.user_id if auto_assign else None,
            created_by=actor_user.user_id,
            referrer_first_name=dto.referrer_first_name or None if is_referral else None,
            referrer_last_name=dto.referrer_last_name or None if is_referral else None,
            referrer_phone=dto.referrer_phone if is_referral else None,
            referrer_email=str(dto.referrer_email) if is_referral and dto.referrer_email else None,
            referrer_customer_id=referrer.id if referrer else None,
            referrer_is_customer=referrer is not None,
            is_military_first_responder=dto.is_military_first_responder,
            is_contractor=dto.is_contractor,
            contractor_license_number=license_number if dto.is_contractor else None,
            hear_about_us=dto.hear_about_us or None,
            hear_about_us_other=(
                (dto.hear_about_us_other or "").strip() or None if dto.hear_about_us == "OTHER" else None
            ),
        )
        insert_lead_with_customer_number(session, lead)

        _record(actor_user, self.entity_type, lead.id, "create", None, _lead_snapshot(lead))
        _publish(
            "crm.lead.created",
            actor_user,
            {"lead_id": str(lead.id), "customer_id": str(customer.id), "status": lead.status},
        )
        session.commit()
        logger.info("lead_created", extra={"lead_id": str(lead.id), "customer_number": lead.customer_number})
        return views.lead_full(session.get(Lead, lead.id))

    def create_public_lead(self, session: Session, dto: PublicLeadCreate) -> dict[str, Any]:
        if not dto.lead_types:
            raise _bad_request("Missing required fields: firstName, lastName, and at least one leadType")
        lead_types = _validate_lead_types(dto.lead_types)
        if LeadType.OTHER.value in lead_types and not (dto.description or "").strip():
            raise _bad_request("Description is required when 'Other' is selected")

        customer = customer_service.upsert_from_intake(
            session,
            first_name=dto.first_name,
            last_name=dto.last_name,
            fields=dto.model_dump(include=set(CUSTOMER_FIELDS)),
            source_type=SourceType.CALL_IN.value,
            keep_existing_source=True,
        )
        lead = Lead(
            customer_id=customer.id,
            lead_types=lead_types,
            description=dto.description or None,
            status=LeadStatus.NEW.value,
            is_military_first_responder=dto.is_military_first_responder,
            hear_about_us=dto.hear_about_us or None,
            hear_about_us_other=(
                (dto.hear_about_us_other or "").strip() or None if dto.hear_about_us == "OTHER" else None
            ),
        )
        insert_lead_with_customer_number(session, lead)

        _record(None, self.entity_type, lead.id, "create", None, _lead_snapshot(lead))
        _publish("crm.lead.created", None, {"lead_id": str(lead.id), "customer_id": str(customer.id), "public": True})
        session.commit()
        logger.info("public_lead_created", extra={"lead_id": str(lead.id), "customer_number": lead.customer_number})
        created = session.get(Lead, lead.id)
        return {
            "success": True,
            "lead": {
                "id": str(created.id),
                "customerNumber": created.customer_number,
                "status": created.status,
            },
        }

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        status_filter: str | None = None,
        my_leads: bool = False,
        unassigned: bool = False,
    ) -> list[dict[str, Any]]:
        stmt = select(Lead).options(
            selectinload(Lead.customer),
            selectinload(Lead.assigned_sales_rep),
            selectinload(Lead.creator),
        )
        if status_filter:
            stmt = stmt.where(Lead.status == status_filter)
        if unassigned:
            stmt = stmt.where(Lead.assigned_sales_rep_id.is_(None))
        elif my_leads and actor_user.is_sales_rep:
            stmt = stmt.where(Lead.assigned_sales_rep_id == actor_user.user_id)

        leads = session.scalars(stmt.order_by(Lead.created_at.desc())).all()
        return [views.lead_list_item(lead, actor_user, my_leads=my_leads, unassigned=unassigned) for lead in leads]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> dict[str, Any]:
        lead = _require_lead(session, lead_id)
        return views.lead_detail(lead, actor_user)

    def update_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
    ) -> dict[str, Any]:
        lead = _require_lead(session, lead_id)
        if actor_user.is_field_role and lead.assigned_sales_rep_id != actor_user.user_id:
            raise _forbidden()

        provided = dto.model_fields_set
        if (
            "assigned_sales_rep_id" in provided
            and dto.assigned_sales_rep_id != lead.assigned_sales_rep_id
            and not actor_user.is_admin
        ):
            raise _forbidden("Only admins can assign sales reps")
        if dto.status in CLOSED_LEAD_STATUSES and not actor_user.is_admin:
            raise _forbidden("Only admins can set lead status to Lost or Won")
        if dto.status and dto.status not in {item.value for item in LeadStatus}:
            raise _bad_request("Invalid lead status")

        if "job_status" in provided:
            resulting_status = dto.status or lead.status
            if resulting_status != LeadStatus.WON.value:
                raise _bad_request("Job status can only be set for leads with WON status")
            if dto.job_status and dto.job_status not in {item.value for item in JobStatus}:
                raise _bad_request("Invalid job status. Must be SCHEDULED, IN_PROGRESS, or DONE")

        if dto.assigned_sales_rep_id is not None:
            assignee = session.get(User, dto.assigned_sales_rep_id)
            if assignee is None or assignee.role not in ASSIGNABLE_ROLES:
                raise _bad_request("Invalid user - can only assign to Admin, Sales Rep, or Concierge users")

        lead_types = _validate_lead_types(dto.lead_types) if dto.lead_types is not None else None
        if (dto.first_name or dto.last_name) and not (dto.first_name and dto.last_name):
            raise _bad_request("Both first name and last name are required")
        if dto.source_type and dto.source_type not in {item.value for item in SourceType}:
            raise _bad_request("Invalid source type")

        before = _lead_snapshot(lead)
        if dto.status:
            lead.status = dto.status
        if "assigned_sales_rep_id" in provided:
            lead.assigned_sales_rep_id = dto.assigned_sales_rep_id
        if "description" in provided:
            lead.description = dto.description or None
        if lead_types is not None:
            lead.lead_types = lead_types
        if "job_status" in provided:
            lead.job_status = dto.job_status or None
        if "job_scheduled_date" in provided:
            lead.job_scheduled_date = dto.job_scheduled_date
        for flag in ("is_military_first_responder", "is_contractor"):
            if getattr(dto, flag) is not None:
                setattr(lead, flag, getattr(dto, flag))
        if "contractor_license_number" in provided:
            lead.contractor_license_number = (dto.contractor_license_number or "").strip() or None
        if "hear_about_us" in provided:
            lead.hear_about_us = dto.hear_about_us or None
        if "hear_about_us_other" in provided:
            lead.hear_about_us_other = (dto.hear_about_us_other or "").strip() or None

        customer = lead.customer
        if dto.first_name and dto.last_name:
            customer.first_name = dto.first_name
            customer.last_name = dto.last_name
        for name in CUSTOMER_FIELDS:
            if name in provided:
                value = getattr(dto, name)
                setattr(customer, name, str(value) if value else None)
        if dto.source_type:
            customer.source_type = dto.source_type
        lead.updated_at = utcnow()

        after = _lead_snapshot(lead)
        _record(actor_user, self.entity_type, lead.id, "update", before, after)
        _publish("crm.lead.updated", actor_user, {"lead_id": str(lead.id), "before": before, "after": after})
        session.commit()
        logger.info("lead_updated", extra={"lead_id": str(lead.id), "user_id": str(actor_user.user_id)})
        return views.lead_full(session.get(Lead, lead.id))

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> dict[str, Any]:
        lead = _require_lead(session, lead_id)
        require_admin(actor_user.role, "Only admins can delete leads")
        before = _lead_snapshot(lead)
        session.delete(lead)
        _record(actor_user, self.entity_type, lead_id, "delete", before, None)
        _publish("crm.lead.deleted", actor_user, {"lead_id": str(lead_id)})
        session.commit()
        return {"message": "Lead deleted successfully"}

    def close_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadCloseRequest,
    ) -> dict[str, Any]:
        if dto.status not in CLOSED_LEAD_STATUSES:
            raise _bad_request("Status must be WON or LOST")
        reason = (dto.reason or "").strip()
        if dto.status == LeadStatus.LOST.value and not reason:
            raise _bad_request("Loss reason is required when marking a lead as lost")

        lead = _require_lead(session, lead_id)
        if actor_user.is_field_role and lead.assigned_sales_rep_id != actor_user.user_id:
            raise _forbidden()
        if dto.job_status and dto.job_status not in {item.value for item in JobStatus}:
            raise _bad_request("Invalid job status. Must be SCHEDULED, IN_PROGRESS, or DONE")

        before = _lead_snapshot(lead)
        previous_status = lead.status
        now = utcnow()
        lead.status = dto.status
        lead.closed_date = now
        lead.updated_at = now

        if dto.status == LeadStatus.WON.value and dto.job_status is not None:
            lead.job_status = dto.job_status
            if dto.job_status == JobStatus.DONE.value and dto.job_completed_date:
                lead.job_completed_date = parse_date_only(dto.job_completed_date)
            elif dto.job_status != JobStatus.DONE.value:
                lead.job_completed_date = None
            if dto.job_scheduled_date:
                lead.job_scheduled_date = parse_date_only(dto.job_scheduled_date)

        note_content = None
        if dto.status == LeadStatus.LOST.value:
            note_content = f"{LOST_NOTE_PREFIX} {reason}"
        elif previous_status != LeadStatus.WON.value:
            note_content = WON_NOTE
        if note_content:
            session.add(LeadNote(lead_id=lead.id, content=note_content, created_by=actor_user.user_id))

        after = _lead_snapshot(lead)
        _record(actor_user, self.entity_type, lead.id, "close", before, after)
        _publish(
            "crm.lead.closed",
            actor_user,
            {"lead_id": str(lead.id), "status": lead.status, "reason": reason or None},
        )
        session.commit()
        logger.info("lead_closed", extra={"lead_id": str(lead.id), "status": lead.status})
        return views.lead_full(session.get(Lead, lead.id))

    def _closed_deals(
        self,
        session: Session,
        lead_status: str,
        *,
        search: str | None,
        lead_type: str | None,
        rep_id: uuid.UUID | None,
        start_date: datetime | None,
        end_date: datetime | None,
    ) -> list[Lead]:
        stmt = (
            select(Lead)
            .join(Lead.customer)
            .where(Lead.status == lead_status)
            .options(
                selectinload(Lead.customer),
                selectinload(Lead.assigned_sales_rep),
                selectinload(Lead.quotes),
                selectinload(Lead.notes),
            )
            .order_by(Lead.closed_date.desc())
        )
        if rep_id is not None:
            stmt = stmt.where(Lead.assigned_sales_rep_id == rep_id)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(or_(Customer.first_name.ilike(pattern), Customer.last_name.ilike(pattern)))

        leads = session.scalars(stmt).all()
        if lead_type:
            leads = [lead for lead in leads if lead_type in (lead.lead_types or [])]
        if start_date or end_date:
            leads = [lead for lead in leads if _within(lead.closed_date or lead.created_at, start_date, end_date)]
        return list(leads)

    def list_won(self, session: Session, actor_user: ActorUser, *, sort: str = "date", direction: str = "desc", **filters: Any) -> list[ClosedDealRead]:
        require_admin(actor_user.role)
        rows = [
            _closed_deal(lead, deal_value=max_quote_amount(lead, accepted_only=True), days_to_close=days_to_close(lead))
            for lead in self._closed_deals(session, LeadStatus.WON.value, **filters)
        ]
        return _sort_deals(rows, sort, direction)

    def list_lost(self, session: Session, actor_user: ActorUser, *, sort: str = "date", direction: str = "desc", **filters: Any) -> list[ClosedDealRead]:
        require_admin(actor_user.role)
        rows = []
        for lead in self._closed_deals(session, LeadStatus.LOST.value, **filters):
            row = _closed_deal(lead, deal_value=max_quote_amount(lead, accepted_only=False), days_to_close=None)
            row.loss_reason = loss_reason_for(lead)
            rows.append(row)
        return _sort_deals(rows, sort if sort != "daysToClose" else "date", direction)


def _within(value: datetime | None, start: datetime | None, end: datetime | None) -> bool:
    if value is None:
        return False
    value = as_utc(value)
    if start is not None and value < as_utc(start):
        return False
    if end is not None and value > as_utc(end):
        return False
    return True


def max_quote_amount(lead: Lead, *, accepted_only: bool) -> float:
    amounts = [
        quote.amount
        for quote in lead.quotes
        if quote.amount is not None and (not accepted_only or quote.status == QuoteStatus.ACCEPTED.value)
    ]
    return max(amounts) if amounts else 0.0


def days_to_close(lead: Lead) -> int | None:
    if lead.closed_date is None:
        return None
    elapsed = as_utc(lead.closed_date) - as_utc(lead.created_at)
    return max(0, math.ceil(elapsed.total_seconds() / 86400))


def extract_loss_reason(content: str | None) -> str | None:
    if not content:
        return None
    index = content.lower().find(LOST_NOTE_PREFIX.lower())
    if index == -1:
        return None
    return content[index + len(LOST_NOTE_PREFIX):].strip() or None


def loss_reason_for(lead: Lead) -> str | None:
    for note in lead.notes:
        reason = extract_loss_reason(note.content)
        if reason:
            return reason
    return None


def _closed_deal(lead: Lead, *, deal_value: float, days_to_close: int | None) -> ClosedDealRead:
    return ClosedDealRead(
        id=lead.id,
        customer_number=lead.customer_number,
        status=lead.status,
        lead_types=list(lead.lead_types or []),
        closed_date=lead.closed_date,
        created_at=lead.created_at,
        job_status=lead.job_status,
        customer=CustomerRead.model_validate(lead.customer),
        assigned_sales_rep=UserSummary.model_validate(lead.assigned_sales_rep) if lead.assigned_sales_rep else None,
        deal_value=deal_value,
        days_to_close=days_to_close,
    )


def _sort_deals(rows: list[ClosedDealRead], sort: str, direction: str) -> list[ClosedDealRead]:
    reverse = direction != "asc"
    if sort == "value":
        return sorted(rows, key=lambda row: row.deal_value, reverse=reverse)
    if sort == "daysToClose":
        return sorted(rows, key=lambda row: row.days_to_close or 0, reverse=reverse)
    return sorted(rows, key=lambda row: as_utc(row.closed_date or row.created_at), reverse=reverse)


class NoteService:
    entity_type = "crm.lead_note"

    def _ensure_access(self, lead: Lead, actor_user: ActorUser) -> None:
        if actor_user.is_sales_rep and lead.assigned_sales_rep_id != actor_user.user_id:
            raise _forbidden()

    def list_notes(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[LeadNoteRead]:
        lead = _require_lead(session, lead_id)
        self._ensure_access(lead, actor_user)
        notes = session.scalars(
            select(LeadNote)
            .where(LeadNote.lead_id == lead_id)
            .options(selectinload(LeadNote.author))
            .order_by(LeadNote.created_at.desc())
        ).all()
        return [LeadNoteRead.model_validate(note) for note in notes]

    def create_note(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: NoteCreate) -> LeadNoteRead:
        content = (dto.content or "").strip()
        if not content:
            raise _bad_request("Note content is required")
        lead = _require_lead(session, lead_id)
        self._ensure_access(lead, actor_user)

        note = LeadNote(lead_id=lead.id, content=content, created_by=actor_user.user_id)
        session.add(note)
        lead.updated_at = utcnow()
        session.flush()

        note_read = LeadNoteRead.model_validate(note)
        _record(actor_user, self.entity_type, note.id, "create", None, {"lead_id": str(lead.id), "content": content})
        session.commit()

        # handlers open their own session, so the note must be committed first
        if (
            actor_user.is_admin
            and lead.assigned_sales_rep_id is not None
            and lead.assigned_sales_rep_id != actor_user.user_id
        ):
            _publish(
                "crm.lead.note_added",
                actor_user,
                {
                    "lead_id": str(lead.id),
                    "note_id": str(note.id),
                    "recipient_user_id": str(lead.assigned_sales_rep_id),
                },
            )
        return note_read


class AppointmentService:
    entity_type = "crm.appointment"

    def _require(self, session: Session, appointment_id: uuid.UUID) -> Appointment:
        appointment = session.get(Appointment, appointment_id)
        if appointment is None:
            raise _not_found("Appointment not found")
        return appointment

    def create_appointment(self, session: Session, actor_user: ActorUser, dto: AppointmentCreate) -> AppointmentRead:
        lead = _require_lead(session, dto.lead_id)
        sales_rep = session.get(User, dto.sales_rep_id)
        if sales_rep is None or sales_rep.role != UserRole.SALES_REP.value:
            raise _bad_request("Invalid sales rep")
        if actor_user.is_sales_rep and lead.assigned_sales_rep_id != actor_user.user_id:
            raise _forbidden("You can only create appointments for your assigned leads")

        appointment = Appointment(
            lead_id=lead.id,
            sales_rep_id=sales_rep.id,
            scheduled_for=dto.scheduled_for,
            site_address_line1=dto.site_address_line1 or None,
            site_address_line2=dto.site_address_line2 or None,
            city=dto.city or None,
            state=dto.state or None,
            zip=dto.zip or None,
            status=AppointmentStatus.SCHEDULED.value,
            notes=dto.notes or None,
        )
        session.add(appointment)
        if lead.status != LeadStatus.APPOINTMENT_SET.value:
            lead.status = LeadStatus.APPOINTMENT_SET.value
        lead.updated_at = utcnow()
        session.flush()

        _record(
            actor_user,
            self.entity_type,
            appointment.id,
            "create",
            None,
            {"lead_id": str(lead.id), "sales_rep_id": str(sales_rep.id), "scheduled_for": dto.scheduled_for.isoformat()},
        )
        _publish("crm.appointment.created", actor_user, {"appointment_id": str(appointment.id), "lead_id": str(lead.id)})
        session.commit()
        return AppointmentRead.model_validate(self._require(session, appointment.id))

    def list_appointments(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        lead_id: uuid.UUID | None = None,
        status_filter: str | None = None,
        upcoming: bool = False,
    ) -> list[AppointmentRead]:
        stmt = select(Appointment).options(
            selectinload(Appointment.lead).selectinload(Lead.customer),
            selectinload(Appointment.sales_rep),
        )
        if lead_id is not None:
            stmt = stmt.where(Appointment.lead_id == lead_id)
        if status_filter:
            stmt = stmt.where(Appointment.status == status_filter)
        if actor_user.is_sales_rep:
            stmt = stmt.where(Appointment.sales_rep_id == actor_user.user_id)
        if upcoming:
            stmt = stmt.where(Appointment.scheduled_for >= utcnow())
        rows = session.scalars(stmt.order_by(Appointment.scheduled_for.asc())).all()
        return [AppointmentRead.model_validate(row) for row in rows]

    def get_appointment(self, session: Session, actor_user: ActorUser, appointment_id: uuid.UUID) -> dict[str, Any]:
        return views.appointment_detail(self._require(session, appointment_id), actor_user)

    def update_appointment(
        self,
        session: Session,
        actor_user: ActorUser,
        appointment_id: uuid.UUID,
        dto: AppointmentUpdate,
    ) -> AppointmentRead:
        appointment = self._require(session, appointment_id)
        if actor_user.is_sales_rep and appointment.sales_rep_id != actor_user.user_id:
            raise _forbidden()
        if dto.status and dto.status not in {item.value for item in AppointmentStatus}:
            raise _bad_request("Invalid appointment status")

        before = {"status": appointment.status, "scheduled_for": appointment.scheduled_for.isoformat()}
        provided = dto.model_fields_set
        if dto.status:
            appointment.status = dto.status
        if dto.scheduled_for is not None:
            appointment.scheduled_for = dto.scheduled_for
        for name in ("notes", "site_address_line1", "site_address_line2", "city", "state", "zip"):
            if name in provided:
                setattr(appointment, name, getattr(dto, name) or None)
        session.flush()

        after = {"status": appointment.status, "scheduled_for": as_utc(appointment.scheduled_for).isoformat()}
        _record(actor_user, self.entity_type, appointment.id, "update", before, after)
        _publish("crm.appointment.updated", actor_user, {"appointment_id": str(appointment.id), "status": appointment.status})
        session.commit()
        return AppointmentRead.model_validate(self._require(session, appointment.id))


class QuoteService:
    entity_type = "crm.quote"

    def _require(self, session: Session, quote_id: uuid.UUID) -> Quote:
        quote = session.get(Quote, quote_id)
        if quote is None:
            raise _not_found("Quote not found")
        return quote

    def _ensure_unique_number(self, session: Session, quote_number: str | None, quote_id: uuid.UUID | None = None) -> None:
        if not quote_number:
            return
        stmt = select(Quote.id).where(Quote.quote_number == quote_number)
        if quote_id is not None:
            stmt = stmt.where(Quote.id != quote_id)
        if session.scalar(stmt) is not None:
            raise _bad_request("Quote number already exists")

    def create_quote(self, session: Session, actor_user: ActorUser, dto: QuoteCreate) -> QuoteRead:
        lead = _require_lead(session, dto.lead_id)
        if dto.appointment_id is not None and session.get(Appointment, dto.appointment_id) is None:
            raise _not_found("Appointment not found")

        if actor_user.is_sales_rep and lead.assigned_sales_rep_id != actor_user.user_id:
            raise _forbidden("You can only create quotes for your assigned leads")
        sales_rep_id = lead.assigned_sales_rep_id or (actor_user.user_id if actor_user.is_sales_rep else None)
        if sales_rep_id is None:
            raise _bad_request("No sales rep assigned to this lead")
        if dto.status and dto.status not in {item.value for item in QuoteStatus}:
            raise _bad_request("Invalid quote status")
        self._ensure_unique_number(session, dto.quote_number)

        quote = Quote(
            lead_id=lead.id,
            appointment_id=dto.appointment_id,
            sales_rep_id=sales_rep_id,
            quote_number=dto.quote_number or None,
            amount=dto.amount,
            currency=dto.currency or "USD",
            expires_at=dto.expires_at,
            status=dto.status or QuoteStatus.DRAFT.value,
        )
        session.add(quote)
        if lead.status not in {LeadStatus.QUOTED.value, *CLOSED_LEAD_STATUSES}:
            lead.status = LeadStatus.QUOTED.value
        lead.updated_at = utcnow()
        session.flush()

        _record(
            actor_user,
            self.entity_type,
            quote.id,
            "create",
            None,
            {"lead_id": str(lead.id), "amount": quote.amount, "status": quote.status},
        )
        _publish("crm.quote.created", actor_user, {"quote_id": str(quote.id), "lead_id": str(lead.id)})
        session.commit()
        return QuoteRead.model_validate(self._require(session, quote.id))

    def list_quotes(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        lead_id: uuid.UUID | None = None,
        status_filter: str | None = None,
    ) -> list[QuoteRead]:
        stmt = select(Quote).options(
            selectinload(Quote.lead).selectinload(Lead.customer),
            selectinload(Quote.sales_rep),
            selectinload(Quote.files).selectinload(QuoteFile.uploaded_by),
        )
        if lead_id is not None:
            stmt = stmt.where(Quote.lead_id == lead_id)
        if status_filter:
            stmt = stmt.where(Quote.status == status_filter)
        if actor_user.is_sales_rep:
            stmt = stmt.where(Quote.sales_rep_id == actor_user.user_id)
        rows = session.scalars(stmt.order_by(Quote.created_at.desc())).all()
        return [QuoteRead.model_validate(row) for row in rows]

    def get_quote(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID) -> QuoteRead:
        quote = self._require(session, quote_id)
        if actor_user.is_sales_rep and quote.sales_rep_id != actor_user.user_id:
            raise _forbidden()
        return QuoteRead.model_validate(quote)

    def update_quote(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID, dto: QuoteUpdate) -> QuoteRead:
        quote = self._require(session, quote_id)
        provided = dto.model_fields_set
        if ({"amount", "expires_at"} & provided) and not actor_user.is_admin:
            raise _forbidden()
        if "status" in provided and actor_user.is_sales_rep and quote.sales_rep_id != actor_user.user_id:
            raise _forbidden()
        if dto.status and dto.status not in {item.value for item in QuoteStatus}:
            raise _bad_request("Invalid quote status")
        if "quote_number" in provided:
            self._ensure_unique_number(session, dto.quote_number, quote.id)

        before = {"amount": quote.amount, "status": quote.status}
        if dto.status:
            quote.status = dto.status
        if dto.amount is not None:
            quote.amount = dto.amount
        if "expires_at" in provided:
            quote.expires_at = dto.expires_at
        if "sent_at" in provided:
            quote.sent_at = dto.sent_at
        if "quote_number" in provided:
            quote.quote_number = dto.quote_number or None
        session.flush()

        after = {"amount": quote.amount, "status": quote.status}
        _record(actor_user, self.entity_type, quote.id, "update", before, after)
        _publish("crm.quote.updated", actor_user, {"quote_id": str(quote.id), "status": quote.status})
        session.commit()
        return QuoteRead.model_validate(self._require(session, quote.id))

    def delete_quote(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID) -> dict[str, Any]:
        require_admin(actor_user.role)
        quote = self._require(session, quote_id)
        before = {"lead_id": str(quote.lead_id), "amount": quote.amount, "status": quote.status}
        session.delete(quote)
        _record(actor_user, self.entity_type, quote_id, "delete", before, None)
        _publish("crm.quote.deleted", actor_user, {"quote_id": str(quote_id)})
        session.commit()
        return {"message": "Quote deleted successfully"}

    def send_quote(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID) -> QuoteRead:
        quote = self._require(session, quote_id)
        if actor_user.is_field_role and quote.sales_rep_id != actor_user.user_id:
            raise _forbidden()
        before = {"status": quote.status}
        quote.sent_at = utcnow()
        quote.status = QuoteStatus.SENT.value
        session.flush()
        _record(actor_user, self.entity_type, quote.id, "send", before, {"status": quote.status})
        _publish("crm.quote.sent", actor_user, {"quote_id": str(quote.id), "lead_id": str(quote.lead_id)})
        session.commit()
        return QuoteRead.model_validate(self._require(session, quote.id))

    def _ensure_file_access(self, quote: Quote, actor_user: ActorUser) -> None:
        if actor_user.is_sales_rep and quote.sales_rep_id != actor_user.user_id:
            raise _forbidden()

    def list_files(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID) -> list[QuoteFileRead]:
        quote = self._require(session, quote_id)
        self._ensure_file_access(quote, actor_user)
        return [QuoteFileRead.model_validate(item) for item in quote.files]

    def add_file(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID, dto: QuoteFileCreate) -> QuoteFileRead:
        quote = self._require(session, quote_id)
        self._ensure_file_access(quote, actor_user)
        quote_file = QuoteFile(
            quote_id=quote.id,
            file_url=dto.file_url,
            file_type=dto.file_type,
            is_profit_loss=False,
            uploaded_by_user_id=actor_user.user_id,
        )
        session.add(quote_file)
        session.flush()
        _record(actor_user, "crm.quote_file", quote_file.id, "create", None, {"quote_id": str(quote.id), "file_url": dto.file_url})
        session.commit()
        return QuoteFileRead.model_validate(session.get(QuoteFile, quote_file.id))

    def delete_file(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID, file_id: uuid.UUID) -> dict[str, Any]:
        self._require(session, quote_id)
        quote_file = session.scalar(select(QuoteFile).where(QuoteFile.id == file_id, QuoteFile.quote_id == quote_id))
        if quote_file is None:
            raise _not_found("File not found")
        if not actor_user.is_admin and quote_file.uploaded_by_user_id != actor_user.user_id:
            raise _forbidden()
        session.delete(quote_file)
        _record(actor_user, "crm.quote_file", file_id, "delete", {"file_url": quote_file.file_url}, None)
        session.commit()
        return {"message": "File deleted successfully"}

    def upload_profit_loss(
        self,
        session: Session,
        actor_user: ActorUser,
        quote_id: uuid.UUID,
        dto: QuoteFileCreate,
    ) -> QuoteFileRead:
        require_admin(actor_user.role)
        quote = self._require(session, quote_id)
        if quote.status != QuoteStatus.ACCEPTED.value or quote.lead.job_status != JobStatus.DONE.value:
            raise _bad_request("P&L files can only be uploaded for accepted quotes with completed jobs")

        for existing in [item for item in quote.files if item.is_profit_loss]:
            session.delete(existing)
        quote_file = QuoteFile(
            quote_id=quote.id,
            file_url=dto.file_url,
            file_type=dto.file_type,
            is_profit_loss=True,
            uploaded_by_user_id=actor_user.user_id,
        )
        session.add(quote_file)
        session.flush()
        _record(actor_user, "crm.quote_file", quote_file.id, "profit_loss", None, {"quote_id": str(quote.id)})
        session.commit()
        return QuoteFileRead.model_validate(session.get(QuoteFile, quote_file.id))

    def get_profit_loss(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID) -> QuoteFileRead | None:
        require_admin(actor_user.role)
        quote = self._require(session, quote_id)
        for item in quote.files:
            if item.is_profit_loss:
                return QuoteFileRead.model_validate(item)
        return None

    def delete_profit_loss(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID) -> dict[str, Any]:
        require_admin(actor_user.role)
        quote = self._require(session, quote_id)
        existing = [item for item in quote.files if item.is_profit_loss]
        if not existing:
            raise _not_found("P&L file not found")
        for item in existing:
            session.delete(item)
        _record(actor_user, "crm.quote_file", quote.id, "profit_loss_delete", None, None)
        session.commit()
        return {"message": "P&L file deleted successfully"}


def crew_read(crew: Crew) -> CrewRead:
    user_members = [UserSummary.model_validate(member.user) for member in crew.members]
    all_members = [CrewMemberEntry(name=name, type="name") for name in crew.member_names or []]
    all_members.extend(CrewMemberEntry(name=user.name or user.email, type="user") for user in user_members)
    return CrewRead(
        id=crew.id,
        name=crew.name,
        description=crew.description,
        member_names=list(crew.member_names or []),
        user_members=user_members,
        all_members=all_members,
        job_assignment_count=len(crew.assignments),
        created_at=crew.created_at,
        updated_at=crew.updated_at,
    )


class CrewService:
    entity_type = "crm.crew"

    def _require(self, session: Session, crew_id: uuid.UUID) -> Crew:
        crew = session.get(Crew, crew_id)
        if crew is None:
            raise _not_found("Crew not found")
        return crew

    def _set_members(self, session: Session, crew: Crew, user_ids: list[uuid.UUID]) -> None:
        crew.members.clear()
        session.flush()
        for user_id in dict.fromkeys(user_ids):
            if session.get(User, user_id) is None:
                raise _bad_request(f"User not found: {user_id}")
            crew.members.append(CrewMember(user_id=user_id))

    def list_crews(self, session: Session, actor_user: ActorUser) -> list[CrewRead]:
        require_admin(actor_user.role)
        crews = session.scalars(
            select(Crew)
            .options(selectinload(Crew.members).selectinload(CrewMember.user), selectinload(Crew.assignments))
            .order_by(Crew.name.asc())
        ).all()
        return [crew_read(crew) for crew in crews]

    def get_crew(self, session: Session, actor_user: ActorUser, crew_id: uuid.UUID) -> CrewRead:
        require_admin(actor_user.role)
        return crew_read(self._require(session, crew_id))

    def create_crew(self, session: Session, actor_user: ActorUser, dto: CrewCreate) -> CrewRead:
        require_admin(actor_user.role)
        name = (dto.name or "").strip()
        if not name:
            raise _bad_request("Crew name is required")
        crew = Crew(
            name=name,
            description=(dto.description or "").strip() or None,
            member_names=[item.strip() for item in dto.member_names if item.strip()],
        )
        session.add(crew)
        session.flush()
        self._set_members(session, crew, dto.user_member_ids)
        session.flush()

        _record(actor_user, self.entity_type, crew.id, "create", None, {"name": crew.name})
        session.commit()
        return crew_read(self._require(session, crew.id))

    def update_crew(self, session: Session, actor_user: ActorUser, crew_id: uuid.UUID, dto: CrewUpdate) -> CrewRead:
        require_admin(actor_user.role)
        crew = self._require(session, crew_id)
        before = {"name": crew.name, "member_names": list(crew.member_names or [])}
        if dto.name is not None:
            name = dto.name.strip()
            if not name:
                raise _bad_request("Crew name cannot be empty")
            crew.name = name
        if "description" in dto.model_fields_set:
            crew.description = (dto.description or "").strip() or None
        if dto.member_names is not None:
            crew.member_names = [item.strip() for item in dto.member_names if item.strip()]
        if dto.user_member_ids is not None:
            self._set_members(session, crew, dto.user_member_ids)
        crew.updated_at = utcnow()
        session.flush()

        _record(actor_user, self.entity_type, crew.id, "update", before, {"name": crew.name})
        session.commit()
        return crew_read(self._require(session, crew.id))

    def delete_crew(self, session: Session, actor_user: ActorUser, crew_id: uuid.UUID) -> dict[str, Any]:
        require_admin(actor_user.role)
        crew = self._require(session, crew_id)
        if crew.assignments:
            raise _bad_request("Cannot delete crew with active job assignments. Please unassign all jobs first.")
        session.delete(crew)
        _record(actor_user, self.entity_type, crew_id, "delete", {"name": crew.name}, None)
        session.commit()
        return {"message": "Crew deleted successfully"}


class JobService:
    entity_type = "crm.job"

    def _require_job(self, session: Session, lead_id: uuid.UUID) -> Lead:
        lead = session.get(Lead, lead_id)
        if lead is None or lead.status != LeadStatus.WON.value:
            raise _not_found("Job not found")
        return lead

    def list_jobs(self, session: Session, actor_user: ActorUser, job_status: str | None = None) -> list[JobRead]:
        require_admin(actor_user.role)
        stmt = (
            select(Lead)
            .where(Lead.status == LeadStatus.WON.value)
            .options(
                selectinload(Lead.customer),
                selectinload(Lead.assigned_sales_rep),
                selectinload(Lead.quotes).selectinload(Quote.files),
                selectinload(Lead.crew_assignments).selectinload(JobCrewAssignment.crew),
            )
            .order_by(Lead.closed_date.desc())
        )
        if job_status and job_status != "all":
            if job_status == "not_set":
                stmt = stmt.where(Lead.job_status.is_(None))
            else:
                stmt = stmt.where(Lead.job_status == job_status)
        return [self._to_read(lead) for lead in session.scalars(stmt).all()]

    def _to_read(self, lead: Lead) -> JobRead:
        accepted = [quote for quote in lead.quotes if quote.status == QuoteStatus.ACCEPTED.value]
        return JobRead(
            id=lead.id,
            customer_number=lead.customer_number,
            status=lead.status,
            description=lead.description,
            job_status=lead.job_status,
            job_scheduled_date=lead.job_scheduled_date,
            job_completed_date=lead.job_completed_date,
            closed_date=lead.closed_date,
            created_at=lead.created_at,
            lead_types=list(lead.lead_types or []),
            customer=CustomerRead.model_validate(lead.customer),
            assigned_sales_rep=UserSummary.model_validate(lead.assigned_sales_rep) if lead.assigned_sales_rep else None,
            quotes=[JobQuoteRef.model_validate(quote) for quote in accepted],
            has_profit_loss_file=any(item.is_profit_loss for quote in accepted for item in quote.files),
            crews=[JobCrewRef.model_validate(item.crew) for item in lead.crew_assignments],
        )

    def list_job_crews(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[JobCrewRead]:
        require_admin(actor_user.role)
        self._require_job(session, lead_id)
        assignments = session.scalars(
            select(JobCrewAssignment)
            .where(JobCrewAssignment.lead_id == lead_id)
            .order_by(JobCrewAssignment.assigned_at.asc())
        ).all()
        return [self._assignment_read(item) for item in assignments]

    def _assignment_read(self, assignment: JobCrewAssignment) -> JobCrewRead:
        return JobCrewRead(
            id=assignment.id,
            lead_id=assignment.lead_id,
            crew_id=assignment.crew_id,
            assigned_at=assignment.assigned_at,
            assigned_by=assignment.assigned_by,
            crew=crew_read(assignment.crew),
        )

    def assign_crew(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, crew_id: uuid.UUID) -> JobCrewRead:
        require_admin(actor_user.role)
        self._require_job(session, lead_id)
        if session.get(Crew, crew_id) is None:
            raise _not_found("Crew not found")
        existing = session.scalar(
            select(JobCrewAssignment).where(
                JobCrewAssignment.lead_id == lead_id,
                JobCrewAssignment.crew_id == crew_id,
            )
        )
        if existing is not None:
            raise _bad_request("Crew is already assigned to this job")

        assignment = JobCrewAssignment(lead_id=lead_id, crew_id=crew_id, assigned_by=actor_user.user_id)
        session.add(assignment)
        session.flush()
        _record(actor_user, self.entity_type, lead_id, "assign_crew", None, {"crew_id": str(crew_id)})
        _publish("crm.job.crew_assigned", actor_user, {"lead_id": str(lead_id), "crew_id": str(crew_id)})
        session.commit()
        return self._assignment_read(session.get(JobCrewAssignment, assignment.id))

    def unassign_crew(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        crew_id: uuid.UUID | None,
    ) -> dict[str, Any]:
        require_admin(actor_user.role)
        if crew_id is None:
            raise _bad_request("crewId query parameter is required")
        assignment = session.scalar(
            select(JobCrewAssignment).where(
                JobCrewAssignment.lead_id == lead_id,
                JobCrewAssignment.crew_id == crew_id,
            )
        )
        if assignment is None:
            raise _not_found("Crew assignment not found")
        session.delete(assignment)
        _record(actor_user, self.entity_type, lead_id, "unassign_crew", {"crew_id": str(crew_id)}, None)
        session.commit()
        return {"message": "Crew unassigned successfully"}


def _customer_name(lead: Lead) -> str:
    return f"{lead.customer.first_name} {lead.customer.last_name}"


def _user_label(user: User | None) -> str | None:
    if user is None:
        return None
    return user.name or user.email


class CalendarReminderService:
    entity_type = "crm.calendar_reminder"

    def _require(self, session: Session, reminder_id: uuid.UUID) -> CalendarReminder:
        reminder = session.get(CalendarReminder, reminder_id)
        if reminder is None:
            raise _not_found("Reminder not found")
        return reminder

    def _check_assignee(self, session: Session, user_id: uuid.UUID | None) -> None:
        if user_id is not None and session.get(User, user_id) is None:
            raise _bad_request("Assigned user not found")

    def _announce(self, actor_user: ActorUser, reminder: CalendarReminder) -> None:
        if reminder.assigned_user_id is None:
            return
        _publish(
            "crm.calendar.reminder_assigned",
            actor_user,
            {"reminder_id": str(reminder.id), "assigned_user_id": str(reminder.assigned_user_id)},
        )

    def list_reminders(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CalendarReminderRead]:
        require_admin(actor_user.role)
        stmt = select(CalendarReminder).options(
            selectinload(CalendarReminder.user),
            selectinload(CalendarReminder.assigned_user),
        )
        if start is not None:
            stmt = stmt.where(CalendarReminder.scheduled_for >= start)
        if end is not None:
            stmt = stmt.where(CalendarReminder.scheduled_for <= end)
        rows = session.scalars(stmt.order_by(CalendarReminder.scheduled_for.asc())).all()
        return [CalendarReminderRead.model_validate(row) for row in rows]

    def list_events(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        now: datetime | None = None,
    ) -> CalendarEventsRead:
        """Appointments, scheduled job starts and reminders in one window, ordered by start.

        Without bounds the window is the current UTC calendar month.
        """

        require_admin(actor_user.role)
        reference = now or utcnow()
        month_start = reference.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        next_month = (month_start + timedelta(days=32)).replace(day=1)
        start = start or month_start
        end = end or next_month - timedelta(seconds=1)

        events: list[CalendarEventRead] = []
        appointments = session.scalars(
            select(Appointment)
            .where(Appointment.scheduled_for >= start, Appointment.scheduled_for <= end)
            .options(selectinload(Appointment.lead).selectinload(Lead.customer), selectinload(Appointment.sales_rep))
        ).all()
        for appointment in appointments:
            customer_name = _customer_name(appointment.lead)
            address = None
            if appointment.site_address_line1:
                address = appointment.site_address_line1
                if appointment.city:
                    address = f"{address}, {appointment.city}"
            events.append(
                CalendarEventRead(
                    id=f"appointment-{appointment.id}",
                    type="appointment",
                    title=f"Appointment: {customer_name}",
                    start=appointment.scheduled_for,
                    original_id=appointment.id,
                    lead_id=appointment.lead_id,
                    customer_name=customer_name,
                    sales_rep_id=appointment.sales_rep_id,
                    sales_rep_name=_user_label(appointment.sales_rep) or "Unassigned",
                    status=appointment.status,
                    address=address,
                    notes=appointment.notes,
                )
            )

        jobs = session.scalars(
            select(Lead)
            .where(
                Lead.status == LeadStatus.WON.value,
                Lead.job_scheduled_date.is_not(None),
                Lead.job_scheduled_date >= start,
                Lead.job_scheduled_date <= end,
            )
            .options(selectinload(Lead.customer), selectinload(Lead.assigned_sales_rep))
        ).all()
        for job in jobs:
            customer_name = _customer_name(job)
            events.append(
                CalendarEventRead(
                    id=f"job-{job.id}",
                    type="job",
                    title=f"Job Start: {customer_name}",
                    start=job.job_scheduled_date,
                    original_id=job.id,
                    lead_id=job.id,
                    customer_name=customer_name,
                    sales_rep_id=job.assigned_sales_rep_id,
                    sales_rep_name=_user_label(job.assigned_sales_rep) or "Unassigned",
                    lead_types=list(job.lead_types or []),
                )
            )

        reminders = session.scalars(
            select(CalendarReminder)
            .where(CalendarReminder.scheduled_for >= start, CalendarReminder.scheduled_for <= end)
            .options(selectinload(CalendarReminder.user), selectinload(CalendarReminder.assigned_user))
        ).all()
        for reminder in reminders:
            assignee_name = _user_label(reminder.assigned_user)
            events.append(
                CalendarEventRead(
                    id=f"reminder-{reminder.id}",
                    type="reminder",
                    title=f"{reminder.title} (Assigned to {assignee_name})" if assignee_name else reminder.title,
                    start=reminder.scheduled_for,
                    original_id=reminder.id,
                    description=reminder.description,
                    created_by=_user_label(reminder.user),
                    assigned_user_id=reminder.assigned_user_id,
                    assigned_user_name=assignee_name,
                )
            )

        events.sort(key=lambda event: as_utc(event.start))
        return CalendarEventsRead(start=start, end=end, events=events)

    def list_assigned(self, session: Session, actor_user: ActorUser) -> list[CalendarReminderRead]:
        rows = session.scalars(
            select(CalendarReminder)
            .where(CalendarReminder.assigned_user_id == actor_user.user_id)
            .order_by(CalendarReminder.scheduled_for.asc())
        ).all()
        return [CalendarReminderRead.model_validate(row) for row in rows]

    def create_reminder(self, session: Session, actor_user: ActorUser, dto: CalendarReminderCreate) -> CalendarReminderRead:
        require_admin(actor_user.role)
        title = dto.title.strip()
        if not title:
            raise _bad_request("Missing required fields: title, scheduledFor")
        self._check_assignee(session, dto.assigned_user_id)
        reminder = CalendarReminder(
            title=title,
            description=(dto.description or "").strip() or None,
            scheduled_for=dto.scheduled_for,
            user_id=actor_user.user_id,
            assigned_user_id=dto.assigned_user_id,
        )
        session.add(reminder)
        session.flush()
        _record(actor_user, self.entity_type, reminder.id, "create", None, {"title": title})
        session.commit()
        self._announce(actor_user, reminder)
        return CalendarReminderRead.model_validate(self._require(session, reminder.id))

    def update_reminder(
        self,
        session: Session,
        actor_user: ActorUser,
        reminder_id: uuid.UUID,
        dto: CalendarReminderUpdate,
    ) -> CalendarReminderRead:
        require_admin(actor_user.role)
        reminder = self._require(session, reminder_id)
        provided = dto.model_fields_set
        previous_assignee = reminder.assigned_user_id
        if dto.title is not None:
            title = dto.title.strip()
            if not title:
                raise _bad_request("Title cannot be empty")
            reminder.title = title
        if "description" in provided:
            reminder.description = (dto.description or "").strip() or None
        if dto.scheduled_for is not None:
            reminder.scheduled_for = dto.scheduled_for
        if "assigned_user_id" in provided:
            self._check_assignee(session, dto.assigned_user_id)
            reminder.assigned_user_id = dto.assigned_user_id
            if dto.assigned_user_id is None:
                stale = session.scalar(select(Notification).where(Notification.calendar_reminder_id == reminder.id))
                if stale is not None:
                    session.delete(stale)
        reminder.updated_at = utcnow()
        session.flush()

        _record(actor_user, self.entity_type, reminder.id, "update", None, {"title": reminder.title})
        session.commit()
        if reminder.assigned_user_id != previous_assignee:
            self._announce(actor_user, reminder)
        return CalendarReminderRead.model_validate(self._require(session, reminder.id))

    def delete_reminder(self, session: Session, actor_user: ActorUser, reminder_id: uuid.UUID) -> dict[str, Any]:
        require_admin(actor_user.role)
        reminder = self._require(session, reminder_id)
        session.delete(reminder)
        _record(actor_user, self.entity_type, reminder_id, "delete", {"title": reminder.title}, None)
        session.commit()
        return {"message": "Reminder deleted successfully"}
