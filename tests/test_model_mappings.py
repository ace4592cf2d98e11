from __future__ import annotations

from sqlalchemy.orm import configure_mappers

from app.models import CalendarReminder, Customer, Lead, Notification


def test_all_mappers_configure() -> None:
    configure_mappers()


def test_customer_leads_join_on_customer_id_only() -> None:
    configure_mappers()
    pairs = Customer.leads.property.local_remote_pairs
    assert [(local.name, remote.name) for local, remote in pairs] == [("id", "customer_id")]
    assert Lead.referrer_customer.property.direction.name == "MANYTOONE"


def test_reminder_notifications_join_on_reminder_id() -> None:
    configure_mappers()
    pairs = CalendarReminder.notifications.property.local_remote_pairs
    assert [(local.table.name, remote.table.name) for local, remote in pairs] == [
        ("calendar_reminders", Notification.__tablename__)
    ]
