from __future__ import annotations

from typing import Any

from app.accounts.models import User
from app.core.auth import ActorUser
from app.crm.models import Appointment, Lead, Quote
from app.crm.schemas import (
    AppointmentRead,
    CustomerSummary,
    LeadAppointmentRead,
    LeadNoteRead,
    LeadQuoteRead,
    LeadRead,
    QuoteRead,
    ReferrerRead,
    UserSummary,
)

READ_ONLY_FLAG = "_readOnly"


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def user_summary(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return _dump(UserSummary.model_validate(user))


def customer_summary(lead: Lead) -> dict[str, Any]:
    return _dump(CustomerSummary.model_validate(lead.customer))


def lead_full(lead: Lead, *, include_referrer: bool = True) -> dict[str, Any]:
    payload = _dump(LeadRead.model_validate(lead))
    if include_referrer:
        payload.update(_dump(ReferrerRead.model_validate(lead)))
    return payload


def lead_limited(lead: Lead) -> dict[str, Any]:
    return {
        "id": str(lead.id),
        "customer": customer_summary(lead),
        "assignedSalesRep": user_summary(lead.assigned_sales_rep),
        "status": lead.status,
        "createdAt": lead.created_at.isoformat(),
    }


def lead_list_item(lead: Lead, viewer: ActorUser, *, my_leads: bool, unassigned: bool) -> dict[str, Any]:
    scoped_listing = my_leads or unassigned
    if viewer.is_sales_rep and not scoped_listing:
        return lead_limited(lead)
    return lead_full(lead, include_referrer=viewer.is_admin or (viewer.is_sales_rep and scoped_listing))


def can_edit_lead(lead: Lead, viewer: ActorUser) -> bool:
    if viewer.is_admin:
        return True
    return lead.assigned_sales_rep_id == viewer.user_id


def lead_detail(lead: Lead, viewer: ActorUser) -> dict[str, Any]:
    if viewer.is_field_role and lead.assigned_sales_rep_id != viewer.user_id:
        payload = lead_limited(lead)
        payload["assignedSalesRepId"] = str(lead.assigned_sales_rep_id) if lead.assigned_sales_rep_id else None
        payload[READ_ONLY_FLAG] = True
        return payload

    payload = lead_full(lead)
    payload["notes"] = [_dump(LeadNoteRead.model_validate(note)) for note in lead.notes]
    payload["appointments"] = [_dump(LeadAppointmentRead.model_validate(item)) for item in lead.appointments]
    payload["quotes"] = [_dump(LeadQuoteRead.model_validate(item)) for item in lead.quotes]
    return payload


def appointment_full(appointment: Appointment) -> dict[str, Any]:
    return _dump(AppointmentRead.model_validate(appointment))


def appointment_limited(appointment: Appointment) -> dict[str, Any]:
    return {
        "id": str(appointment.id),
        "salesRepId": str(appointment.sales_rep_id) if appointment.sales_rep_id else None,
        "scheduledFor": appointment.scheduled_for.isoformat(),
        "status": appointment.status,
        "lead": {
            "id": str(appointment.lead.id),
            "customer": customer_summary(appointment.lead),
        },
        "salesRep": user_summary(appointment.sales_rep),
        READ_ONLY_FLAG: True,
    }


def appointment_detail(appointment: Appointment, viewer: ActorUser) -> dict[str, Any]:
    if viewer.is_sales_rep and appointment.sales_rep_id != viewer.user_id:
        return appointment_limited(appointment)
    return appointment_full(appointment)


def quote_full(quote: Quote) -> dict[str, Any]:
    return _dump(QuoteRead.model_validate(quote))
