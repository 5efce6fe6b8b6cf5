"""
Sales performance report: headline KPIs for a branch and date range, each compared with
the period of the same length just before it, plus a ranked table per sales rep.
"""
from __future__ import annotations

import calendar
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.dms.constants import CLOSED_STAGES

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

SALES_ROLES = ("sales_rep", "sales_manager")


@dataclass(frozen=True)
class ReportPeriod:
    start: date
    end: date

    @classmethod
    def resolve(cls, start: date | None, end: date | None, today: date | None = None) -> "ReportPeriod":
        """Missing bounds fall back to the calendar month of `today`."""
        today = today or date.today()
        start = start or today.replace(day=1)
        end = end or today.replace(day=calendar.monthrange(today.year, today.month)[1])
        if end < start:
            start, end = end, start
        return cls(start, end)

    @property
    def previous(self) -> "ReportPeriod":
        length = (self.end - self.start).days
        return ReportPeriod(self.start - timedelta(days=length), self.start - timedelta(days=1))

    @property
    def bounds(self) -> tuple[datetime, datetime]:
        return datetime.combine(self.start, time.min), datetime.combine(self.end, time.max)


@dataclass(frozen=True)
class Kpi:
    key: str
    label: str
    current: float
    previous: float
    target: float
    unit: str = ""
    lower_is_better: bool = False

    @property
    def trend(self) -> str:
        if self.lower_is_better:
            return "up" if self.current <= self.previous else "down"
        return "up" if self.current >= self.previous else "down"

    @property
    def on_target(self) -> bool:
        return self.current <= self.target if self.lower_is_better else self.current >= self.target

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d.update(trend=self.trend, on_target=self.on_target)
        return d


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _between(q, column, period: ReportPeriod):
    start, end = period.bounds
    return q.filter(column >= start, column <= end)


def _branch(q, model, branch_id: int | None):
    return q.filter(model.branch_id == branch_id) if branch_id else q


def _lead_conversion(s: "Session", period: ReportPeriod, branch_id: int | None) -> float:
    from app.dms.modules.leads.models import Lead

    q = _between(_branch(s.query(Lead).filter(Lead.deleted_at.is_(None)), Lead, branch_id), Lead.created_at, period)
    return _rate(q.filter(Lead.status == "qualified").count(), q.count())


def _test_drive_completion(s: "Session", period: ReportPeriod, branch_id: int | None) -> tuple[float, int]:
    from app.dms.modules.test_drives.models import TestDrive

    q = _between(
        _branch(s.query(TestDrive).filter(TestDrive.deleted_at.is_(None)), TestDrive, branch_id), TestDrive.created_at, period
    )
    completed = q.filter(TestDrive.status == "completed").count()
    return _rate(completed, q.count()), completed


def _satisfaction(s: "Session", period: ReportPeriod, branch_id: int | None, rep_id: int | None = None) -> float:
    from app.dms.modules.customers.models import Customer, CustomerSurvey

    q = s.query(func.avg(CustomerSurvey.overall_rating)).select_from(CustomerSurvey).filter(
        CustomerSurvey.status == "completed", CustomerSurvey.overall_rating.isnot(None)
    )
    q = _between(_branch(q, CustomerSurvey, branch_id), CustomerSurvey.created_at, period)
    if rep_id is not None:
        q = q.join(Customer, CustomerSurvey.customer_id == Customer.id).filter(Customer.assigned_to == rep_id)
    avg = q.scalar()
    return round(float(avg), 1) if avg is not None else 0.0


def _closed_pipelines(s: "Session", period: ReportPeriod, branch_id: int | None):
    from app.dms.modules.pipelines.models import Pipeline

    q = _branch(s.query(Pipeline).filter(Pipeline.deleted_at.is_(None)), Pipeline, branch_id)
    return _between(q, Pipeline.created_at, period).filter(Pipeline.current_stage.in_(CLOSED_STAGES)).all()


def _avg_duration_days(pipelines) -> float:
    days = [(p.updated_at - p.created_at).days for p in pipelines if p.updated_at and p.created_at]
    return round(sum(days) / len(days), 1) if days else 0.0


def _win_rate(pipelines) -> float:
    return _rate(sum(1 for p in pipelines if p.current_stage == "won"), len(pipelines))


def _active_pipelines(s: "Session", branch_id: int | None, period: ReportPeriod | None = None) -> int:
    from app.dms.modules.pipelines.models import Pipeline

    q = _branch(s.query(Pipeline).filter(Pipeline.deleted_at.is_(None)), Pipeline, branch_id)
    q = q.filter(Pipeline.current_stage.notin_(CLOSED_STAGES))
    if period is not None:
        q = _between(q, Pipeline.created_at, period)
    return q.count()


def performance_kpis(s: "Session", period: ReportPeriod, branch_id: int | None = None) -> dict[str, Any]:
    """Summary counts and the six KPI cards.

    Active pipelines is a live count; its comparison value is the number of still-open
    pipelines that were created during the previous period.
    """
    from app.dms.modules.leads.models import Lead

    prev = period.previous
    leads = _between(_branch(s.query(Lead).filter(Lead.deleted_at.is_(None)), Lead, branch_id), Lead.created_at, period)
    td_rate, td_completed = _test_drive_completion(s, period, branch_id)
    closed, prev_closed = _closed_pipelines(s, period, branch_id), _closed_pipelines(s, prev, branch_id)
    active = _active_pipelines(s, branch_id)

    metrics = [
        Kpi("lead_conversion_rate", "Lead Conversion Rate",
            _lead_conversion(s, period, branch_id), _lead_conversion(s, prev, branch_id), 25.0, "%"),
        Kpi("active_pipelines", "Active Pipelines", active, _active_pipelines(s, branch_id, prev), 50),
        Kpi("test_drive_completion_rate", "Test Drive Completion Rate",
            td_rate, _test_drive_completion(s, prev, branch_id)[0], 80.0, "%"),
        Kpi("customer_satisfaction", "Customer Satisfaction",
            _satisfaction(s, period, branch_id), _satisfaction(s, prev, branch_id), 4.5, "/5"),
        Kpi("avg_pipeline_duration", "Average Pipeline Duration",
            _avg_duration_days(closed), _avg_duration_days(prev_closed), 14.0, " days", lower_is_better=True),
        Kpi("pipeline_win_rate", "Pipeline Win Rate", _win_rate(closed), _win_rate(prev_closed), 30.0, "%"),
    ]
    return {
        "period": {"start": period.start, "end": period.end, "previous_start": prev.start, "previous_end": prev.end},
        "summary": {"total_leads": leads.count(), "active_pipelines": active, "completed_test_drives": td_completed},
        "metrics": metrics,
    }


def sales_rep_performance(s: "Session", period: ReportPeriod, branch_id: int | None = None) -> list[dict[str, Any]]:
    """One row per active sales rep or manager, ranked by lead conversion rate."""
    from app.dms.models import Role, User
    from app.dms.modules.leads.models import Lead
    from app.dms.modules.pipelines.models import Pipeline
    from app.dms.modules.test_drives.models import TestDrive

    reps = (
        s.query(User)
        .filter(User.deleted_at.is_(None), User.is_active.is_(True), User.roles.any(Role.key.in_(SALES_ROLES)))
        .order_by(User.id)
    )
    if branch_id:
        reps = reps.filter(User.branch_id == branch_id)

    rows = []
    for rep in reps.all():
        leads = _between(s.query(Lead).filter(Lead.deleted_at.is_(None), Lead.assigned_to == rep.id), Lead.created_at, period)
        assigned = leads.count()
        converted = leads.filter(Lead.status == "qualified").count()
        pipelines = _between(
            s.query(Pipeline).filter(Pipeline.deleted_at.is_(None), Pipeline.sales_rep_id == rep.id), Pipeline.created_at, period
        )
        open_value = (
            s.query(func.coalesce(func.sum(Pipeline.quote_amount), 0))
            .filter(
                Pipeline.deleted_at.is_(None),
                Pipeline.sales_rep_id == rep.id,
                Pipeline.current_stage.notin_(CLOSED_STAGES),
            )
            .scalar()
        )
        drives = _between(
            s.query(TestDrive).filter(TestDrive.deleted_at.is_(None), TestDrive.assigned_user_id == rep.id),
            TestDrive.created_at,
            period,
        )
        rows.append(
            {
                "user_id": rep.id,
                "rep_name": rep.display_name,
                "leads_assigned": assigned,
                "leads_converted": converted,
                "conversion_rate": _rate(converted, assigned),
                "pipelines_managed": pipelines.count(),
                "pipelines_won": pipelines.filter(Pipeline.current_stage == "won").count(),
                "pipeline_value": open_value,
                "test_drives_conducted": drives.count(),
                "customer_satisfaction": _satisfaction(s, period, None, rep.id),
            }
        )

    # stable sort keeps user id order among ties
    rows.sort(key=lambda r: r["conversion_rate"], reverse=True)
    for rank, row in enumerate(rows, start=1):
        row["rank"] = rank
    return rows
