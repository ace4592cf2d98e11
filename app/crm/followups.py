from __future__ import annotations

import logging
import math
import time
import uuid
from datetime import datetime
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session, selectinload

from app import audit
from app.accounts.models import User
from app.core.auth import ActorUser
from app.core.rbac import UserRole, require_admin
from app.crm.activity import get_last_activity, hours_since, inactivity_threshold_hours, utcnow
from app.crm.models import (
    CLOSED_LEAD_STATUSES,
    CalendarReminder,
    Lead,
    LeadNote,
    Notification,
    NotificationType,
    Task,
    TaskStatus,
    TaskType,
)
from app.crm.schemas import (
    CustomerSummary,
    FollowUpLeadRead,
    FollowUpRepStats,
    FollowUpSummary,
    FollowUpTaskRead,
    FollowUpsRead,
    NotificationCounts,
    NotificationListRead,
    NotificationRead,
    PaginationRead,
    QuoteLeadRead,
    ReadAllResponse,
    SweepResult,
    TaskCounts,
    TaskListRead,
    TaskRead,
    UserSummary,
)
from app.metrics import observe_inactivity_sweep, observe_notification_created, observe_task_created

logger = logging.getLogger("app.crm.sweep")
tracer = trace.get_tracer("app.crm.sweep")


def _uuid_or_none(value: Any) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class TaskService:
    entity_type = "crm.task"

    def _require_owned(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
        if task.user_id != actor_user.user_id and not actor_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return task

    def list_tasks(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        status_filter: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TaskListRead:
        conditions = []
        if not actor_user.is_admin:
            conditions.append(Task.user_id == actor_user.user_id)
        elif user_id and user_id != "all":
            target_user_id = _uuid_or_none(user_id)
            if target_user_id is None:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid userId")
            conditions.append(Task.user_id == target_user_id)

        listed = list(conditions)
        if status_filter:
            listed.append(Task.status == status_filter)

        tasks = session.scalars(
            select(Task)
            .where(*listed)
            .options(selectinload(Task.lead).selectinload(Lead.customer), selectinload(Task.user))
            .order_by(Task.status.asc(), Task.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).all()

        now = utcnow()
        rows: list[TaskRead] = []
        for task in tasks:
            last_activity = get_last_activity(session, task.lead_id)
            rows.append(
                TaskRead(
                    id=task.id,
                    user_id=task.user_id,
                    type=task.type,
                    status=task.status,
                    lead_id=task.lead_id,
                    created_at=task.created_at,
                    acknowledged_at=task.acknowledged_at,
                    resolved_at=task.resolved_at,
                    hours_inactive=math.floor(hours_since(last_activity, now)) if last_activity else 0,
                    last_activity=last_activity,
                    lead=QuoteLeadRead.model_validate(task.lead),
                    user=UserSummary.model_validate(task.user),
                )
            )

        def _count(*extra: Any) -> int:
            return session.scalar(select(func.count(Task.id)).where(*conditions, *extra)) or 0

        return TaskListRead(
            tasks=rows,
            pagination=PaginationRead(
                total=_count(Task.status == status_filter) if status_filter else _count(),
                limit=limit,
                offset=offset,
            ),
            counts=TaskCounts(
                pending=_count(Task.status == TaskStatus.PENDING.value),
                acknowledged=_count(Task.status == TaskStatus.ACKNOWLEDGED.value),
            ),
        )

    def acknowledge_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> dict[str, Any]:
        task = self._require_owned(session, actor_user, task_id)
        before = {"status": task.status, "lead_id": str(task.lead_id)}
        task.notifications.clear()
        session.delete(task)
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(task_id),
            action="acknowledge",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return {"message": "Task acknowledged and removed"}

    def resolve_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> dict[str, Any]:
        task = self._require_owned(session, actor_user, task_id)
        before = {"status": task.status}
        task.status = TaskStatus.RESOLVED.value
        task.resolved_at = utcnow()
        task.notifications.clear()
        session.flush()
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(task.id),
            action="resolve",
            before=before,
            after={"status": task.status},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return {
            "id": str(task.id),
            "status": task.status,
            "resolvedAt": task.resolved_at.isoformat() if task.resolved_at else None,
        }

    def delete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> dict[str, Any]:
        task = self._require_owned(session, actor_user, task_id)
        if task.status != TaskStatus.RESOLVED.value:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only resolved tasks can be deleted")
        session.delete(task)
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(task_id),
            action="delete",
            before={"status": TaskStatus.RESOLVED.value},
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return {"message": "Task deleted successfully"}


class NotificationService:
    entity_type = "crm.notification"

    def _require_owned(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> Notification:
        notification = session.get(Notification, notification_id)
        if notification is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
        if notification.user_id != actor_user.user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return notification

    def list_notifications(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        unread_only: bool = False,
        unacknowledged_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> NotificationListRead:
        conditions = [Notification.user_id == actor_user.user_id]
        if unread_only:
            conditions.append(Notification.read.is_(False))
        if unacknowledged_only:
            conditions.append(Notification.acknowledged.is_(False))

        rows = session.scalars(
            select(Notification)
            .where(*conditions)
            .options(
                selectinload(Notification.lead).selectinload(Lead.customer),
                selectinload(Notification.note).selectinload(LeadNote.author),
            )
            .order_by(Notification.acknowledged.asc(), Notification.read.asc(), Notification.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).all()

        def _count(*extra: Any) -> int:
            return (
                session.scalar(
                    select(func.count(Notification.id)).where(Notification.user_id == actor_user.user_id, *extra)
                )
                or 0
            )

        return NotificationListRead(
            notifications=[NotificationRead.model_validate(row) for row in rows],
            pagination=PaginationRead(total=len(rows), limit=limit, offset=offset),
            counts=NotificationCounts(
                unread=_count(Notification.read.is_(False)),
                unacknowledged=_count(Notification.acknowledged.is_(False)),
            ),
        )

    def mark_read(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> NotificationRead:
        notification = self._require_owned(session, actor_user, notification_id)
        if not notification.read:
            notification.read = True
            notification.read_at = utcnow()
            session.commit()
        return NotificationRead.model_validate(notification)

    def acknowledge(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> dict[str, Any]:
        notification = self._require_owned(session, actor_user, notification_id)
        task = notification.task
        if task is not None:
            task.notifications.clear()
            session.delete(task)
        else:
            session.delete(notification)
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(notification_id),
            action="acknowledge",
            before={"task_id": str(task.id) if task else None},
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return {"message": "Notification acknowledged and removed"}

    def mark_all_read(self, session: Session, actor_user: ActorUser) -> ReadAllResponse:
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == actor_user.user_id, Notification.read.is_(False))
            .values(read=True, read_at=utcnow())
        )
        session.commit()
        return ReadAllResponse(count=result.rowcount or 0, message="All notifications marked as read")


def _has_open_notification(session: Session, user_id: uuid.UUID, lead_id: uuid.UUID) -> bool:
    existing = session.scalar(
        select(Notification.id).where(
            and_(
                Notification.user_id == user_id,
                Notification.lead_id == lead_id,
                Notification.type == NotificationType.LEAD_INACTIVITY.value,
                Notification.acknowledged.is_(False),
            )
        )
    )
    return existing is not None


class InactivitySweep:
    """Raise follow-up tasks for assigned open leads that have gone quiet.

    Each lead is processed in its own savepoint; a failure is reported in
    ``errors`` and the sweep moves on to the next lead.
    """

    def run(self, session: Session, *, trigger: str = "cron") -> SweepResult:
        threshold = inactivity_threshold_hours()
        started = time.perf_counter()
        final_status = "failed"
        tasks_created = 0
        notifications_created = 0
        errors: list[str] = []

        with tracer.start_as_current_span("crm.inactivity_sweep") as span:
            span.set_attribute("trigger", trigger)
            span.set_attribute("threshold_hours", threshold)
            try:
                leads = session.execute(
                    select(Lead.id, Lead.assigned_sales_rep_id).where(
                        Lead.assigned_sales_rep_id.is_not(None),
                        Lead.status.not_in(CLOSED_LEAD_STATUSES),
                    )
                ).all()
                admin_ids = session.scalars(select(User.id).where(User.role == UserRole.ADMIN.value)).all()
                now = utcnow()

                for lead_id, assignee_id in leads:
                    savepoint = session.begin_nested()
                    try:
                        created = self._process_lead(session, lead_id, assignee_id, admin_ids, threshold, now)
                    except Exception as exc:
                        savepoint.rollback()
                        errors.append(f"Error processing lead {lead_id}: {exc}")
                        logger.warning("inactivity_sweep_lead_failed", extra={"lead_id": str(lead_id), "error": str(exc)[:500]})
                        continue
                    savepoint.commit()
                    if created is not None:
                        tasks_created += 1
                        notifications_created += created

                session.commit()
                final_status = "succeeded" if not errors else "partial"
                span.set_attribute("processed", len(leads))
                span.set_attribute("tasks_created", tasks_created)
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise
            finally:
                duration = time.perf_counter() - started
                observe_inactivity_sweep(trigger=trigger, status=final_status, duration=duration)

        observe_task_created(TaskType.LEAD_INACTIVITY.value, tasks_created)
        observe_notification_created(NotificationType.LEAD_INACTIVITY.value, notifications_created)
        logger.info(
            "inactivity_sweep_finished",
            extra={
                "trigger": trigger,
                "status": final_status,
                "processed": len(leads),
                "tasks_created": tasks_created,
                "notifications_created": notifications_created,
                "error_count": len(errors),
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return SweepResult(
            success=True,
            processed=len(leads),
            notifications_created=notifications_created,
            tasks_created=tasks_created,
            errors=errors or None,
        )

    def _process_lead(
        self,
        session: Session,
        lead_id: uuid.UUID,
        assignee_id: uuid.UUID,
        admin_ids: list[uuid.UUID],
        threshold: float,
        now: datetime,
    ) -> int | None:
        """Returns the number of notifications created, or None when no task was created."""

        last_activity = get_last_activity(session, lead_id)
        if last_activity is None or hours_since(last_activity, now) <= threshold:
            return None

        existing = session.scalar(
            select(Task.id).where(Task.lead_id == lead_id, Task.type == TaskType.LEAD_INACTIVITY.value)
        )
        if existing is not None:
            return None

        task = Task(
            user_id=assignee_id,
            lead_id=lead_id,
            type=TaskType.LEAD_INACTIVITY.value,
            status=TaskStatus.PENDING.value,
        )
        session.add(task)
        session.flush()

        created = 0
        for recipient_id in [assignee_id, *admin_ids]:
            if _has_open_notification(session, recipient_id, lead_id):
                continue
            session.add(
                Notification(
                    user_id=recipient_id,
                    lead_id=lead_id,
                    type=NotificationType.LEAD_INACTIVITY.value,
                    task_id=task.id,
                )
            )
            session.flush()
            created += 1
        return created


inactivity_sweep = InactivitySweep()


class FollowUpService:
    def list_follow_ups(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        sales_rep_id: uuid.UUID | None = None,
        hours_min: float | None = None,
        hours_max: float | None = None,
        task_status: str | None = None,
    ) -> FollowUpsRead:
        require_admin(actor_user.role)
        minimum = inactivity_threshold_hours() if hours_min is None else hours_min

        stmt = (
            select(Lead)
            .where(Lead.assigned_sales_rep_id.is_not(None), Lead.status.not_in(CLOSED_LEAD_STATUSES))
            .options(
                selectinload(Lead.customer),
                selectinload(Lead.assigned_sales_rep),
                selectinload(Lead.tasks),
            )
        )
        if sales_rep_id is not None:
            stmt = stmt.where(Lead.assigned_sales_rep_id == sales_rep_id)

        now = utcnow()
        inactive: list[FollowUpLeadRead] = []
        stats: dict[uuid.UUID, dict[str, Any]] = {}
        for lead in session.scalars(stmt).all():
            if lead.assigned_sales_rep is None:
                continue
            last_activity = get_last_activity(session, lead.id)
            if last_activity is None:
                continue
            hours_inactive = hours_since(last_activity, now)
            if hours_inactive < minimum:
                continue
            if hours_max and hours_inactive > hours_max:
                continue

            tasks = [
                task
                for task in lead.tasks
                if task.type == TaskType.LEAD_INACTIVITY.value and (not task_status or task.status == task_status)
            ]
            if task_status and not tasks:
                continue

            rep = lead.assigned_sales_rep
            entry = stats.setdefault(
                rep.id,
                {"id": rep.id, "name": rep.name, "email": rep.email, "inactive_count": 0, "total": 0.0, "pending": 0},
            )
            entry["inactive_count"] += 1
            entry["total"] += hours_inactive
            if any(task.status == TaskStatus.PENDING.value for task in tasks):
                entry["pending"] += 1

            inactive.append(
                FollowUpLeadRead(
                    lead_id=lead.id,
                    customer=CustomerSummary.model_validate(lead.customer),
                    sales_rep=UserSummary.model_validate(rep),
                    last_activity=last_activity,
                    hours_inactive=math.floor(hours_inactive),
                    task=FollowUpTaskRead.model_validate(tasks[0]) if tasks else None,
                )
            )

        rep_stats = [
            FollowUpRepStats(
                id=entry["id"],
                name=entry["name"],
                email=entry["email"],
                inactive_count=entry["inactive_count"],
                total_hours_inactive=entry["total"],
                unacknowledged_tasks=entry["pending"],
                average_hours_inactive=math.floor(entry["total"] / entry["inactive_count"]) if entry["inactive_count"] else 0,
            )
            for entry in stats.values()
        ]
        return FollowUpsRead(
            summary=FollowUpSummary(
                total_inactive_leads=len(inactive),
                total_unacknowledged_tasks=sum(
                    1 for item in inactive if item.task and item.task.status == TaskStatus.PENDING.value
                ),
                sales_rep_stats=rep_stats,
            ),
            inactive_leads=inactive,
        )


def notify_admin_comment(session: Session, envelope: dict[str, Any]) -> Notification | None:
    payload = envelope.get("payload") or {}
    recipient_id = _uuid_or_none(payload.get("recipient_user_id"))
    lead_id = _uuid_or_none(payload.get("lead_id"))
    note_id = _uuid_or_none(payload.get("note_id"))
    if recipient_id is None or lead_id is None:
        return None

    notification = Notification(
        user_id=recipient_id,
        type=NotificationType.ADMIN_COMMENT.value,
        lead_id=lead_id,
        note_id=note_id,
    )
    session.add(notification)
    session.commit()
    observe_notification_created(NotificationType.ADMIN_COMMENT.value)
    logger.info("admin_comment_notified", extra={"lead_id": str(lead_id), "user_id": str(recipient_id)})
    return notification


def notify_calendar_assignment(session: Session, envelope: dict[str, Any]) -> Notification | None:
    payload = envelope.get("payload") or {}
    reminder_id = _uuid_or_none(payload.get("reminder_id"))
    assignee_id = _uuid_or_none(payload.get("assigned_user_id"))
    if reminder_id is None or assignee_id is None or session.get(CalendarReminder, reminder_id) is None:
        return None

    notification = session.scalar(select(Notification).where(Notification.calendar_reminder_id == reminder_id))
    if notification is None:
        notification = Notification(calendar_reminder_id=reminder_id, type=NotificationType.CALENDAR_TASK.value)
        session.add(notification)
    notification.user_id = assignee_id
    notification.read = False
    notification.read_at = None
    notification.acknowledged = False
    notification.acknowledged_at = None
    session.commit()
    observe_notification_created(NotificationType.CALENDAR_TASK.value)
    logger.info("calendar_task_notified", extra={"user_id": str(assignee_id)})
    return notification
