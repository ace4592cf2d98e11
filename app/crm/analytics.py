from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime

from sqlalchemy import and_, exists, func, select
from sqlalchemy.orm import Session, selectinload

from app.accounts.models import User
from app.core.auth import ActorUser
from app.core.rbac import FIELD_ROLES, require_admin
from app.crm.activity import as_utc, get_last_activity, hours_since, inactivity_threshold_hours, utcnow
from app.crm.models import (
    CLOSED_LEAD_STATUSES,
    Appointment,
    AppointmentStatus,
    JobStatus,
    Lead,
    LeadNote,
    LeadStatus,
    Quote,
    QuoteFile,
    QuoteStatus,
)
from app.crm.schemas import (
    DashboardRead,
    DashboardStats,
    LeadCreationRead,
    LeadCreationStat,
    LeadTypeWinRate,
    LossReasonCount,
    LossReasonsRead,
    TeamPerformanceRead,
    TeamPerformanceStat,
    WinRateRead,
    WinRateSummary,
)
from app.crm.service import LOST_NOTE_PREFIX, days_to_close, extract_loss_reason, max_quote_amount

logger = logging.getLogger("app.crm.analytics")


def percentage(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(part / total * 100, 1)


def _count(session: Session, model, *conditions) -> int:
    return session.scalar(select(func.count()).select_from(model).where(*conditions)) or 0


def count_overdue_leads(session: Session, lead_ids: list, *, now: datetime | None = None) -> int:
    threshold = inactivity_threshold_hours()
    reference = now or utcnow()
    overdue = 0
    for lead_id in lead_ids:
        last_activity = get_last_activity(session, lead_id)
        if last_activity is not None and hours_since(last_activity, reference) > threshold:
            overdue += 1
    return overdue


class DashboardService:
    def stats(self, session: Session, actor_user: ActorUser) -> DashboardRead:
        if actor_user.is_admin:
            return DashboardRead(stats=self._admin_stats(session))
        return DashboardRead(stats=self._rep_stats(session, actor_user))

    def _lead_counts(self, session: Session, *scope) -> dict[str, int]:
        def by_status(lead_status: LeadStatus) -> int:
            return _count(session, Lead, Lead.status == lead_status.value, *scope)

        return {
            "total_leads": _count(session, Lead, *scope),
            "appointment_set_leads": by_status(LeadStatus.APPOINTMENT_SET),
            "new_leads": by_status(LeadStatus.NEW),
            "assigned_leads": by_status(LeadStatus.ASSIGNED),
            "quoted_leads": by_status(LeadStatus.QUOTED),
            "won_leads": by_status(LeadStatus.WON),
        }

    def _appointment_counts(self, session: Session, now: datetime, *scope) -> dict[str, int]:
        scheduled = Appointment.status == AppointmentStatus.SCHEDULED.value
        return {
            "total_appointments": _count(session, Appointment, *scope),
            "scheduled_appointments": _count(session, Appointment, scheduled, Appointment.scheduled_for >= now, *scope),
            "past_due_appointments": _count(session, Appointment, scheduled, Appointment.scheduled_for < now, *scope),
        }

    def _admin_stats(self, session: Session) -> DashboardStats:
        now = utcnow()
        leads = self._lead_counts(session)
        appointments = self._appointment_counts(session, now)
        open_lead = Lead.status.not_in(CLOSED_LEAD_STATUSES)

        unassigned = _count(session, Lead, Lead.assigned_sales_rep_id.is_(None), open_lead)
        active_ids = session.scalars(
            select(Lead.id).where(Lead.assigned_sales_rep_id.is_not(None), open_lead)
        ).all()
        has_profit_loss = exists().where(and_(QuoteFile.quote_id == Quote.id, QuoteFile.is_profit_loss.is_(True)))
        pending_financials = (
            session.scalar(
                select(func.count(Quote.id))
                .join(Quote.lead)
                .where(
                    Quote.status == QuoteStatus.ACCEPTED.value,
                    Lead.job_status == JobStatus.DONE.value,
                    ~has_profit_loss,
                )
            )
            or 0
        )

        return DashboardStats(
            **leads,
            **appointments,
            unassigned_leads=unassigned,
            overdue_follow_ups=count_overdue_leads(session, list(active_ids), now=now),
            jobs_pending_financials=pending_financials,
            lead_to_appointment_rate=percentage(leads["appointment_set_leads"], leads["total_leads"]),
            win_rate=percentage(leads["won_leads"], leads["total_leads"]),
        )

    def _rep_stats(self, session: Session, actor_user: ActorUser) -> DashboardStats:
        now = utcnow()
        mine = Lead.assigned_sales_rep_id == actor_user.user_id
        leads = self._lead_counts(session, mine)
        appointments = self._appointment_counts(session, now, Appointment.sales_rep_id == actor_user.user_id)
        with_appointments = (
            session.scalar(
                select(func.count(Lead.id)).where(mine, exists().where(Appointment.lead_id == Lead.id))
            )
            or 0
        )

        return DashboardStats(
            **leads,
            **appointments,
            leads_with_appointments=with_appointments,
            lead_to_appointment_rate=percentage(with_appointments, leads["total_leads"]),
            win_rate=percentage(leads["won_leads"], leads["total_leads"]),
        )


class AnalyticsService:
    def team_performance(self, session: Session, actor_user: ActorUser) -> TeamPerformanceRead:
        stmt = select(User).order_by(User.name.asc())
        if not actor_user.is_admin:
            stmt = stmt.where(User.role.in_([role.value for role in FIELD_ROLES]))
        users = session.scalars(stmt).all()

        now = utcnow()
        stats: list[TeamPerformanceStat] = []
        for user in users:
            assigned = Lead.assigned_sales_rep_id == user.id
            total = _count(session, Lead, assigned)
            won = _count(session, Lead, assigned, Lead.status == LeadStatus.WON.value)
            appointment_set = _count(session, Lead, assigned, Lead.status == LeadStatus.APPOINTMENT_SET.value)
            active_ids = session.scalars(
                select(Lead.id).where(assigned, Lead.status.not_in(CLOSED_LEAD_STATUSES))
            ).all()
            stats.append(
                TeamPerformanceStat(
                    user_id=user.id,
                    user_name=user.name,
                    user_email=user.email,
                    user_role=user.role,
                    total_leads=total,
                    won_leads=won,
                    win_rate=percentage(won, total),
                    appointment_set_leads=appointment_set,
                    conversion_rate=percentage(appointment_set, total),
                    total_appointments=_count(session, Appointment, Appointment.sales_rep_id == user.id),
                    overdue_follow_ups=count_overdue_leads(session, list(active_ids), now=now),
                )
            )

        stats.sort(key=lambda item: item.won_leads, reverse=True)
        logger.info("team_performance_computed", extra={"user_id": str(actor_user.user_id), "count": len(stats)})
        return TeamPerformanceRead(stats=stats)

    def win_rate(self, session: Session, actor_user: ActorUser, *, now: datetime | None = None) -> WinRateRead:
        reference = as_utc(now or utcnow())
        month_start = reference.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        def closed(lead_status: LeadStatus) -> list[Lead]:
            return list(
                session.scalars(
                    select(Lead).where(Lead.status == lead_status.value).options(selectinload(Lead.quotes))
                ).all()
            )

        won_leads = closed(LeadStatus.WON)
        lost_leads = closed(LeadStatus.LOST)

        def this_month(leads: list[Lead]) -> list[Lead]:
            return [lead for lead in leads if as_utc(lead.closed_date or lead.created_at) >= month_start]

        won_month = this_month(won_leads)
        lost_month = this_month(lost_leads)

        durations = [value for value in (days_to_close(lead) for lead in won_leads) if value is not None]
        average_days = round(sum(durations) / len(durations), 1) if durations else None

        per_type: dict[str, Counter] = {}
        for outcome, leads in (("won", won_leads), ("lost", lost_leads)):
            for lead in leads:
                for lead_type in lead.lead_types or []:
                    per_type.setdefault(lead_type, Counter())[outcome] += 1

        by_service = [
            LeadTypeWinRate(
                lead_type=lead_type,
                win_count=counts["won"],
                lost_count=counts["lost"],
                win_rate_percent=percentage(counts["won"], counts["won"] + counts["lost"]),
            )
            for lead_type, counts in per_type.items()
        ]

        logger.info("win_rate_computed", extra={"user_id": str(actor_user.user_id)})
        return WinRateRead(
            summary=WinRateSummary(
                won_count_month=len(won_month),
                won_value_month=sum(max_quote_amount(lead, accepted_only=False) for lead in won_month),
                lost_count_month=len(lost_month),
                lost_value_month=sum(max_quote_amount(lead, accepted_only=False) for lead in lost_month),
                win_rate_percent=percentage(len(won_leads), len(won_leads) + len(lost_leads)),
                avg_days_to_close=average_days,
            ),
            win_rate_by_service=by_service,
        )

    def loss_reasons(self, session: Session, actor_user: ActorUser) -> LossReasonsRead:
        contents = session.scalars(
            select(LeadNote.content)
            .join(LeadNote.lead)
            .where(
                Lead.status == LeadStatus.LOST.value,
                LeadNote.content.ilike(f"%{LOST_NOTE_PREFIX}%"),
            )
        ).all()
        counts = Counter(reason for reason in (extract_loss_reason(content) for content in contents) if reason)
        reasons = [LossReasonCount(reason=reason, count=count) for reason, count in counts.most_common()]
        logger.info("loss_reasons_computed", extra={"user_id": str(actor_user.user_id), "count": len(reasons)})
        return LossReasonsRead(reasons=reasons)

    def lead_creation(self, session: Session, actor_user: ActorUser) -> LeadCreationRead:
        require_admin(actor_user.role)
        rows = session.execute(
            select(User, func.count(Lead.id).label("lead_count"))
            .join(Lead, Lead.created_by == User.id)
            .group_by(User.id)
        ).all()
        stats = [
            LeadCreationStat(
                user_id=user.id,
                user_name=user.name,
                user_email=user.email,
                user_role=user.role,
                lead_count=lead_count,
            )
            for user, lead_count in rows
        ]
        stats.sort(key=lambda item: item.lead_count, reverse=True)
        logger.info("lead_creation_computed", extra={"user_id": str(actor_user.user_id), "count": len(stats)})
        return LeadCreationRead(stats=stats)
