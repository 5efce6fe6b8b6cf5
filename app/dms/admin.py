import csv
import io
import os
from datetime import date, datetime, time, timedelta
from typing import Any

from flask import Blueprint, abort, flash, g, render_template, request, send_file, url_for
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.dms.db import db_session
from app.dms.models import ActivityLog, User
from app.dms.rbac import live, require_permission, scope_to_branch, user_has_permission
from app.dms.utils import page_arg, paginate, parse_date
from app.dms.views import Column, FormField, Related, choices, current_filters, render_detail, render_list, render_report, table_rows

bp = Blueprint("admin", __name__)

LOG_FILTERS = ("q", "module", "action", "causer_email", "status", "date_from", "date_to")

LOG_COLUMNS = [
    Column("When", "created_at"),
    Column("Action", "action"),
    Column("Description", "description"),
    Column("User", "causer_email"),
    Column("Subject", "subject_type"),
    Column("Status", "status"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def dashboard_stats(s, user: User | None) -> dict[str, Any]:
    """Headline counts for the dashboard and /api/dashboard/stats, limited to what the user may view."""
    from app.dms.modules.compliance.models import ComplianceReminder
    from app.dms.modules.leads.models import Lead
    from app.dms.modules.pipelines.models import Pipeline
    from app.dms.modules.vehicles.models import VehicleUnit
    from app.dms.modules.warranty.models import WarrantyClaim
    from app.dms.modules.work_orders.models import WorkOrder

    def scoped(model):
        return scope_to_branch(live(s.query(model), model), model, user)

    stats: dict[str, Any] = {}
    if user_has_permission(user, "leads.view"):
        leads = scoped(Lead)
        stats["leads"] = {"total": leads.count(), "new": leads.filter(Lead.status == "new").count(), "hot": leads.filter(Lead.status == "hot").count()}
    if user_has_permission(user, "pipelines.view"):
        pipelines = scoped(Pipeline)
        stats["pipelines"] = {
            "open": pipelines.filter(Pipeline.current_stage.notin_(("won", "lost"))).count(),
            "won": pipelines.filter(Pipeline.current_stage == "won").count(),
        }
    if user_has_permission(user, "vehicles.view"):
        units = scoped(VehicleUnit)
        stats["vehicle_units"] = {
            "in_stock": units.filter(VehicleUnit.status == "in_stock").count(),
            "reserved": units.filter(VehicleUnit.status == "reserved").count(),
        }
    if user_has_permission(user, "work_orders.view"):
        stats["work_orders"] = {"open": scoped(WorkOrder).filter(WorkOrder.status.notin_(("completed", "cancelled"))).count()}
    if user_has_permission(user, "warranty.view"):
        stats["warranty_claims"] = {
            "pending_decision": scoped(WarrantyClaim).filter(WarrantyClaim.status.in_(("submitted", "under_review"))).count()
        }
    if user_has_permission(user, "compliance.view"):
        stats["compliance"] = {
            "due_reminders": scoped(ComplianceReminder)
            .filter(ComplianceReminder.status.in_(("scheduled", "pending")), ComplianceReminder.remind_at <= datetime.utcnow())
            .count()
        }
    return stats


CALENDAR_DAYS = 14


def calendar_events(s, user: User | None, start: date | None = None, days: int = CALENDAR_DAYS) -> list[dict[str, Any]]:
    """Test drives and work orders falling in the `days` after `start`, in date then time order.

    A work order sits on its scheduled day, or on its due date while it has no schedule.
    """
    from sqlalchemy import and_, or_

    from app.dms.modules.test_drives.models import TestDrive
    from app.dms.modules.work_orders.models import WorkOrder

    start = start or date.today()
    end = start + timedelta(days=days)
    events: list[dict[str, Any]] = []
    if user_has_permission(user, "test_drives.view"):
        drives = scope_to_branch(live(s.query(TestDrive), TestDrive), TestDrive, user).filter(
            TestDrive.scheduled_date >= start, TestDrive.scheduled_date <= end
        )
        for td in drives:
            events.append(
                {
                    "type": "test_drive",
                    "title": f"{td.customer_name} - {td.vehicle_details}",
                    "date": td.scheduled_date,
                    "time": td.scheduled_time,
                    "status": td.status,
                    "branch_id": td.branch_id,
                    "reference": td.reservation_id,
                    "meta": {"reservation_id": td.reservation_id, "vehicle_vin": td.vehicle_vin},
                }
            )
    if user_has_permission(user, "work_orders.view"):
        orders = scope_to_branch(live(s.query(WorkOrder), WorkOrder), WorkOrder, user).filter(
            or_(
                and_(
                    WorkOrder.scheduled_at >= datetime.combine(start, time.min),
                    WorkOrder.scheduled_at <= datetime.combine(end, time.max),
                ),
                and_(WorkOrder.scheduled_at.is_(None), WorkOrder.due_date >= start, WorkOrder.due_date <= end),
            )
        )
        for wo in orders:
            events.append(
                {
                    "type": "pms",
                    "title": wo.service_type.name if wo.service_type else "PMS Work Order",
                    "date": wo.scheduled_at.date() if wo.scheduled_at else wo.due_date,
                    "time": wo.scheduled_at.time().replace(second=0, microsecond=0) if wo.scheduled_at else None,
                    "status": wo.status,
                    "branch_id": wo.branch_id,
                    "reference": wo.work_order_number,
                    "meta": {
                        "work_order_number": wo.work_order_number,
                        "vehicle": wo.vehicle_unit.stock_number if wo.vehicle_unit else wo.vehicle_vin,
                    },
                }
            )
    events.sort(key=lambda e: (e["date"], e["time"] or time.min))
    return events


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    status = {
        "env": (os.environ.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "storage_backend": None,
        "storage_configured": False,
        "storage_error": None,
    }

    # DB connectivity (lightweight)
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except SQLAlchemyError as e:
        status["db_error"] = str(e)

    # Storage config (no network calls)
    storage_backend = os.environ.get("STORAGE_BACKEND", "local").strip().lower()
    status["storage_backend"] = storage_backend or "local"
    if storage_backend == "s3":
        missing = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not os.environ.get(k)]
        status["storage_configured"] = not missing
        if missing:
            status["storage_error"] = f"Missing: {', '.join(missing)}"
    else:
        status["storage_configured"] = True

    user = _current_user()
    return render_template(
        "admin/index.html",
        system_status=status,
        stats=dashboard_stats(s, user),
        upcoming=calendar_events(s, user)[:5],
    )



CALENDAR_COLUMNS = [
    Column("Date", "date"),
    Column("Time", "time", lambda v: v.strftime("%H:%M") if v else "—"),
    Column("Type", "type", lambda v: "Test drive" if v == "test_drive" else "Work order"),
    Column("Title", "title"),
    Column("Status", "status"),
    Column("Reference", "reference"),
]


@bp.get("/calendar")
@require_permission("admin.view")
def calendar_view():
    filters = current_filters(("start",))
    try:
        start = parse_date(filters["start"])
    except ValueError:
        flash("Dates must be YYYY-MM-DD.", "danger")
        start = None
    start = start or date.today()
    events = calendar_events(db_session(), _current_user(), start)
    return render_report(
        title="Calendar",
        list_endpoint="admin.calendar_view",
        filters=filters,
        filter_fields=[FormField("start", "From", "date")],
        stats={
            "test_drives": sum(1 for e in events if e["type"] == "test_drive"),
            "work_orders": sum(1 for e in events if e["type"] == "pms"),
        },
        period=f"{start} to {start + timedelta(days=CALENDAR_DAYS)}",
        related=[Related("Upcoming", CALENDAR_COLUMNS, table_rows(events, CALENDAR_COLUMNS))],
    )


@bp.get("/me")
@require_permission("admin.view")
def me():
    user = _current_user()
    role_keys = user.role_keys
    perm_keys = sorted({p.key for r in (user.roles or []) for p in (r.permissions or [])})
    return render_template("admin/me.html", user=user, role_keys=role_keys, perm_keys=perm_keys)


# ---- Activity logs ----

def _log_query(filters: dict[str, str]):
    """Filtered activity log query; raises ValueError on a malformed date."""
    s = db_session()
    q = s.query(ActivityLog)
    if filters.get("q"):
        q = q.filter(ActivityLog.description.ilike(f"%{filters['q']}%"))
    if filters.get("module"):
        q = q.filter(ActivityLog.module == filters["module"])
    if filters.get("action"):
        q = q.filter(ActivityLog.action.ilike(f"%{filters['action']}%"))
    if filters.get("causer_email"):
        q = q.filter(ActivityLog.causer_email.ilike(f"%{filters['causer_email'].lower()}%"))
    if filters.get("status"):
        q = q.filter(ActivityLog.status == filters["status"])
    date_from = parse_date(filters.get("date_from"))
    date_to = parse_date(filters.get("date_to"))
    if date_from:
        q = q.filter(ActivityLog.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(ActivityLog.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    return q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())


def activity_log_stats(today: date | None = None) -> dict[str, int]:
    s = db_session()
    today = today or date.today()
    start = datetime.combine(today, time.min)
    return {
        "total": s.query(ActivityLog).count(),
        "today": s.query(ActivityLog).filter(ActivityLog.created_at >= start).count(),
        "failed": s.query(ActivityLog).filter(ActivityLog.status == "failed").count(),
    }


@bp.get("/activity-logs")
@require_permission("activity_logs.view")
def activity_logs_list():
    s = db_session()
    filters = current_filters(LOG_FILTERS)
    try:
        q = _log_query(filters)
    except ValueError:
        flash("Dates must be YYYY-MM-DD.", "danger")
        filters["date_from"] = filters["date_to"] = ""
        q = _log_query(filters)
    modules = sorted(m for (m,) in s.query(ActivityLog.module).distinct().all() if m)
    export_url = None
    if user_has_permission(_current_user(), "activity_logs.export"):
        export_url = url_for("admin.activity_logs_export", **{k: v for k, v in filters.items() if v})
    return render_list(
        title="Activity Logs",
        page=paginate(q, page_arg(request.args.get("page")), 25),
        columns=LOG_COLUMNS,
        list_endpoint="admin.activity_logs_list",
        detail_endpoint="admin.activity_log_detail",
        id_arg="log_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("module", "Module", "select", tuple((m, m) for m in modules)),
            FormField("action", "Action contains"),
            FormField("causer_email", "User email"),
            FormField("status", "Status", "select", choices(("success", "failed"))),
            FormField("date_from", "From", "date"),
            FormField("date_to", "To", "date"),
        ],
        export_url=export_url,
        stats=activity_log_stats(),
    )


@bp.get("/activity-logs/<int:log_id>")
@require_permission("activity_logs.view")
def activity_log_detail(log_id: int):
    log = db_session().get(ActivityLog, log_id)
    if not log:
        abort(404)
    return render_detail(
        title=f"Activity #{log.id}",
        obj=log,
        fields=[
            ("When", log.created_at),
            ("Action", log.action),
            ("Module", log.module),
            ("Event", log.event),
            ("Log", log.log_name),
            ("Status", log.status),
            ("Description", log.description),
            ("Reason", log.reason),
            ("Subject", f"{log.subject_type} #{log.subject_id}" if log.subject_type else None),
            ("User", log.causer_email),
            ("IP address", log.ip_address),
            ("User agent", log.user_agent),
            ("Request ID", log.request_id),
            ("Properties", log.properties_json),
        ],
        back_url=url_for("admin.activity_logs_list"),
    )


@bp.get("/activity-logs/export")
@require_permission("activity_logs.export")
def activity_logs_export():
    filters = current_filters(LOG_FILTERS)
    try:
        logs = _log_query(filters).all()
    except ValueError:
        abort(400)
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["Created At", "Action", "Module", "Event", "Status", "Description", "Subject Type", "Subject ID", "User", "IP Address", "Request ID", "Properties"])
    for log in logs:
        w.writerow(
            [
                log.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                log.action,
                log.module or "",
                log.event or "",
                log.status,
                log.description or "",
                log.subject_type or "",
                log.subject_id or "",
                log.causer_email or "",
                log.ip_address or "",
                log.request_id or "",
                log.properties_json or "",
            ]
        )
    return send_file(
        io.BytesIO(buf.getvalue().encode("utf-8")),
        mimetype="text/csv",
        as_attachment=True,
        download_name=f"activity_logs_{datetime.utcnow():%Y%m%d_%H%M%S}.csv",
        max_age=0,
    )
