from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, request, url_for

from app.dms.constants import FOLLOW_UP_FREQUENCIES, PIPELINE_STAGES, PRIORITIES
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.pipelines.models import Pipeline, PipelineStageLog
from app.dms.modules.pipelines.performance import ReportPeriod, performance_kpis, sales_rep_performance
from app.dms.modules.pipelines.service import (
    auto_logging_stats,
    create_pipeline,
    delete_pipeline,
    detect_inactive_pipelines,
    restore_pipeline,
    stage_counts,
    stage_progress,
    update_pipeline,
    validate_pipeline_payload,
)
from app.dms.rbac import default_branch_id, ensure_branch_access, is_elevated, live, require_permission, scope_to_branch
from app.dms.utils import BusinessRuleError, page_arg, paginate, parse_bool, parse_date, parse_int
from app.dms.views import (
    Action,
    Column,
    FormField,
    Related,
    choices,
    current_filters,
    form_payload,
    form_values,
    render_detail,
    render_form,
    render_list,
    render_report,
    table_rows,
)

bp = Blueprint("pipelines", __name__)

LIST_COLUMNS = [
    Column("Pipeline", "pipeline_id"),
    Column("Customer", "customer_name"),
    Column("Vehicle", "vehicle_label"),
    Column("Stage", "current_stage"),
    Column("Progress", "current_stage", lambda v: f"{stage_progress(v)}%"),
    Column("Probability", "probability", lambda v: f"{v or 0}%"),
    Column("Priority", "priority"),
    Column("Last activity", "last_activity_at"),
]

FORM_FIELDS = [
    FormField("customer_name", "Customer name", required=True),
    FormField("customer_phone", "Customer phone"),
    FormField("customer_email", "Customer email", "email"),
    FormField("lead_id", "Lead (internal ID)", "number"),
    FormField("sales_rep_id", "Sales rep user ID", "number"),
    FormField("vehicle_interest", "Vehicle interest"),
    FormField("vehicle_year", "Vehicle year", "number"),
    FormField("vehicle_make", "Vehicle make"),
    FormField("vehicle_model", "Vehicle model"),
    FormField("quote_amount", "Quote amount", "number", help="Setting a quote while qualified advances to Quote Sent"),
    FormField("current_stage", "Stage", "select", choices(PIPELINE_STAGES)),
    FormField("probability", "Probability (%)", "number"),
    FormField("priority", "Priority", "select", choices(PRIORITIES)),
    FormField("next_action", "Next action"),
    FormField("next_action_due", "Next action due", "datetime-local"),
    FormField("follow_up_frequency", "Follow-up frequency", "select", choices(FOLLOW_UP_FREQUENCIES)),
    FormField("auto_progression_enabled", "Auto progression", "checkbox"),
    FormField("auto_loss_rule_enabled", "Auto-loss after 7 days inactive", "checkbox"),
    FormField("tags", "Tags", help="Comma separated"),
    FormField("notes", "Notes", "textarea"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]

LOG_COLUMNS = [
    Column("Stage", "stage"),
    Column("From", "previous_stage"),
    Column("Entered", "entry_timestamp"),
    Column("Exited", "exit_timestamp"),
    Column("Hours", "duration_hours"),
    Column("Trigger", "trigger_type"),
    Column("System", "trigger_system"),
    Column("Event", "trigger_event"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_pipeline(pipeline_id: int, include_deleted: bool = False) -> Pipeline:
    p = db_session().get(Pipeline, pipeline_id)
    if not p or (p.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(p, _current_user(), "You can only access pipelines from your branch.")
    return p


@bp.get("/pipelines")
@require_permission("pipelines.view")
def pipelines_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "stage", "priority", "sales_rep_id", "include_deleted"))
    base = scope_to_branch(live(s.query(Pipeline), Pipeline), Pipeline, u)
    q = scope_to_branch(live(s.query(Pipeline), Pipeline, parse_bool(filters["include_deleted"])), Pipeline, u)
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(
            Pipeline.pipeline_id.ilike(like)
            | Pipeline.customer_name.ilike(like)
            | Pipeline.customer_phone.ilike(like)
            | Pipeline.customer_email.ilike(like)
            | Pipeline.vehicle_interest.ilike(like)
        )
    if filters["stage"]:
        q = q.filter(Pipeline.current_stage == filters["stage"])
    if filters["priority"]:
        q = q.filter(Pipeline.priority == filters["priority"])
    if parse_int(filters["sales_rep_id"]):
        q = q.filter(Pipeline.sales_rep_id == parse_int(filters["sales_rep_id"]))
    page = paginate(q.order_by(Pipeline.updated_at.desc(), Pipeline.id.desc()), page_arg(request.args.get("page")), 15)

    stats = {f"stage: {k}": v for k, v in stage_counts(base).items()}
    stats.update(auto_logging_stats(s, u))
    extra = [Action("Performance", url_for("pipelines.performance_metrics"))]
    if is_elevated(u):
        extra.append(Action("Run auto-loss check", url_for("pipelines.pipelines_detect_inactive"), "post", "warning", "Mark pipelines inactive for 7+ days as lost?"))
    return render_list(
        title="Sales Pipelines",
        page=page,
        columns=LIST_COLUMNS,
        list_endpoint="pipelines.pipelines_list",
        detail_endpoint="pipelines.pipeline_detail",
        id_arg="pipeline_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("stage", "Stage", "select", choices(PIPELINE_STAGES)),
            FormField("priority", "Priority", "select", choices(PRIORITIES)),
            FormField("sales_rep_id", "Sales rep ID", "number"),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("pipelines.pipelines_new_get"),
        stats=stats,
        extra_actions=extra,
    )


@bp.post("/pipelines/detect-inactive")
@require_permission("pipelines.edit")
def pipelines_detect_inactive():
    if not is_elevated(_current_user()):
        g.missing_permission = "role:admin|auditor"
        abort(403)
    s = db_session()
    count, _details = detect_inactive_pipelines(s)
    s.commit()
    flash(f"{count} inactive pipeline(s) marked as lost.", "success")
    return redirect(url_for("pipelines.pipelines_list"))


# ---- Performance ----

KPI_COLUMNS = [
    Column("Metric", "label"),
    Column("Current", "current"),
    Column("Previous period", "previous"),
    Column("Target", "target"),
    Column("Trend", "trend"),
    Column("On target", "on_target"),
]

REP_COLUMNS = [
    Column("Rank", "rank"),
    Column("Sales rep", "rep_name"),
    Column("Leads", "leads_assigned"),
    Column("Converted", "leads_converted"),
    Column("Conversion", "conversion_rate", lambda v: f"{v}%"),
    Column("Pipelines", "pipelines_managed"),
    Column("Won", "pipelines_won"),
    Column("Open value", "pipeline_value"),
    Column("Test drives", "test_drives_conducted"),
    Column("Satisfaction", "customer_satisfaction"),
]


def _kpi_row(kpi) -> dict:
    return {
        "label": kpi.label,
        "current": f"{kpi.current}{kpi.unit}",
        "previous": f"{kpi.previous}{kpi.unit}",
        "target": f"{kpi.target}{kpi.unit}",
        "trend": kpi.trend,
        "on_target": kpi.on_target,
    }


@bp.get("/pipelines/performance")
@require_permission("pipelines.view")
def performance_metrics():
    s = db_session()
    u = _current_user()
    filters = current_filters(("branch_id", "start_date", "end_date"))
    try:
        period = ReportPeriod.resolve(parse_date(filters["start_date"]), parse_date(filters["end_date"]))
    except ValueError:
        flash("Dates must be YYYY-MM-DD.", "danger")
        period = ReportPeriod.resolve(None, None)
    # non-elevated users always see their own branch
    branch_id = parse_int(filters["branch_id"]) if is_elevated(u) else u.branch_id
    kpis = performance_kpis(s, period, branch_id)
    filter_fields = [FormField("start_date", "From", "date"), FormField("end_date", "To", "date")]
    if is_elevated(u):
        filter_fields.insert(0, FormField("branch_id", "Branch ID", "number"))
    prev = period.previous
    return render_report(
        title="Sales Performance",
        list_endpoint="pipelines.performance_metrics",
        filters=filters,
        filter_fields=filter_fields,
        stats=kpis["summary"],
        period=f"{period.start} to {period.end}, compared with {prev.start} to {prev.end}",
        related=[
            Related("Key metrics", KPI_COLUMNS, table_rows([_kpi_row(k) for k in kpis["metrics"]], KPI_COLUMNS)),
            Related("Sales reps", REP_COLUMNS, table_rows(sales_rep_performance(s, period, branch_id), REP_COLUMNS)),
        ],
        extra_actions=[Action("Pipelines", url_for("pipelines.pipelines_list"))],
    )


@bp.get("/pipelines/new")
@require_permission("pipelines.create")
def pipelines_new_get():
    return render_form(
        title="New Pipeline",
        fields=FORM_FIELDS,
        values={"current_stage": "lead", "priority": "medium", "auto_progression_enabled": True, "auto_loss_rule_enabled": True},
        action_url=url_for("pipelines.pipelines_new_post"),
        cancel_url=url_for("pipelines.pipelines_list"),
    )


@bp.post("/pipelines/new")
@require_permission("pipelines.create")
def pipelines_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(FORM_FIELDS)
    errors = validate_pipeline_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("pipelines.pipelines_new_get"))
    pipeline = create_pipeline(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash(f"Pipeline {pipeline.pipeline_id} created.", "success")
    return redirect(url_for("pipelines.pipeline_detail", pipeline_id=pipeline.id))


@bp.get("/pipelines/<int:pipeline_id>")
@require_permission("pipelines.view")
def pipeline_detail(pipeline_id: int):
    p = _get_pipeline(pipeline_id, include_deleted=True)
    logs = (
        db_session()
        .query(PipelineStageLog)
        .filter(PipelineStageLog.pipeline_id == p.id)
        .order_by(PipelineStageLog.entry_timestamp.asc(), PipelineStageLog.id.asc())
        .all()
    )
    if p.deleted_at:
        actions = [Action("Restore", url_for("pipelines.pipeline_restore", pipeline_id=p.id), "post", "success")]
    else:
        actions = [
            Action("Edit", url_for("pipelines.pipeline_edit_get", pipeline_id=p.id)),
            Action("Delete", url_for("pipelines.pipeline_delete", pipeline_id=p.id), "post", "danger", "Delete this pipeline?"),
        ]
    return render_detail(
        title=f"Pipeline {p.pipeline_id}",
        obj=p,
        fields=[
            ("Customer", p.customer_name),
            ("Phone", p.customer_phone),
            ("Email", p.customer_email),
            ("Lead", p.lead.lead_id if p.lead else None),
            ("Sales rep", p.sales_rep.display_name if p.sales_rep else None),
            ("Vehicle", p.vehicle_label),
            ("Quote amount", p.quote_amount),
            ("Stage", p.current_stage),
            ("Previous stage", p.previous_stage),
            ("Progress", f"{stage_progress(p.current_stage)}%"),
            ("In stage since", p.stage_entry_timestamp),
            ("Previous stage duration (h)", p.stage_duration_hours),
            ("Probability", f"{p.probability}%"),
            ("Priority", p.priority),
            ("Lead score", p.lead_score),
            ("Next action", p.next_action),
            ("Next action due", p.next_action_due),
            ("Follow-up frequency", p.follow_up_frequency),
            ("Auto progression", p.auto_progression_enabled),
            ("Auto-loss rule", p.auto_loss_rule_enabled),
            ("Auto-logged events", p.auto_logged_events_count),
            ("Last activity", p.last_activity_at),
            ("Tags", p.tags),
            ("Notes", p.notes),
            ("Deleted at", p.deleted_at),
        ],
        actions=actions,
        related=[Related("Stage history", LOG_COLUMNS, table_rows(logs, LOG_COLUMNS))],
        back_url=url_for("pipelines.pipelines_list"),
    )


@bp.get("/pipelines/<int:pipeline_id>/edit")
@require_permission("pipelines.edit")
def pipeline_edit_get(pipeline_id: int):
    p = _get_pipeline(pipeline_id)
    return render_form(
        title=f"Edit Pipeline {p.pipeline_id}",
        fields=FORM_FIELDS,
        values=form_values(p, FORM_FIELDS),
        action_url=url_for("pipelines.pipeline_edit_post", pipeline_id=p.id),
        cancel_url=url_for("pipelines.pipeline_detail", pipeline_id=p.id),
    )


@bp.post("/pipelines/<int:pipeline_id>/edit")
@require_permission("pipelines.edit")
def pipeline_edit_post(pipeline_id: int):
    s = db_session()
    p = _get_pipeline(pipeline_id)
    payload = form_payload(FORM_FIELDS)
    errors = validate_pipeline_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("pipelines.pipeline_edit_get", pipeline_id=p.id))
    update_pipeline(s, p, payload, _current_user())
    s.commit()
    flash("Pipeline updated.", "success")
    return redirect(url_for("pipelines.pipeline_detail", pipeline_id=p.id))


@bp.post("/pipelines/<int:pipeline_id>/delete")
@require_permission("pipelines.delete")
def pipeline_delete(pipeline_id: int):
    s = db_session()
    p = _get_pipeline(pipeline_id)
    delete_pipeline(s, p, _current_user())
    s.commit()
    flash(f"Pipeline {p.pipeline_id} deleted.", "success")
    return redirect(url_for("pipelines.pipelines_list"))


@bp.post("/pipelines/<int:pipeline_id>/restore")
@require_permission("pipelines.delete")
def pipeline_restore(pipeline_id: int):
    s = db_session()
    p = _get_pipeline(pipeline_id, include_deleted=True)
    try:
        restore_pipeline(s, p, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("pipelines.pipeline_detail", pipeline_id=p.id))
    s.commit()
    flash(f"Pipeline {p.pipeline_id} restored.", "success")
    return redirect(url_for("pipelines.pipeline_detail", pipeline_id=p.id))
