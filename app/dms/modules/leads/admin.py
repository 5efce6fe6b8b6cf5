from __future__ import annotations

import io
from datetime import datetime

from flask import Blueprint, abort, flash, g, redirect, request, send_file, url_for

from app.dms.constants import LEAD_SOURCES, LEAD_STATUSES, LEADS_PER_PAGE, PRIORITIES, PURCHASE_TIMELINES
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.leads.models import Lead
from app.dms.modules.leads.service import (
    create_lead,
    export_leads_csv,
    import_leads_csv,
    lead_csv_template,
    lead_stats,
    query_leads,
    restore_lead,
    soft_delete_lead,
    update_lead,
    upcoming_followups,
    validate_lead_payload,
)
from app.dms.modules.pipelines.service import stage_progress
from app.dms.rbac import default_branch_id, ensure_branch_access, require_permission
from app.dms.utils import BusinessRuleError, page_arg, paginate
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
    table_rows,
)

bp = Blueprint("leads", __name__)

FILTER_NAMES = ("q", "status", "source", "priority", "score", "suspicious", "include_deleted")

LIST_COLUMNS = [
    Column("Lead ID", "lead_id"),
    Column("Name", "name"),
    Column("Phone", "phone"),
    Column("Source", "source"),
    Column("Status", "status"),
    Column("Score", "lead_score"),
    Column("Conversion %", "conversion_probability"),
    Column("Fake score", "fake_lead_score"),
]

FORM_FIELDS = [
    FormField("name", "Name", required=True),
    FormField("email", "Email", "email"),
    FormField("phone", "Phone"),
    FormField("location", "Location"),
    FormField("source", "Source", "select", choices(LEAD_SOURCES), required=True),
    FormField("status", "Status", "select", choices(LEAD_STATUSES)),
    FormField("priority", "Priority", "select", choices(PRIORITIES)),
    FormField("vehicle_interest", "Vehicle interest"),
    FormField("vehicle_variant", "Variant"),
    FormField("budget_min", "Budget min", "number"),
    FormField("budget_max", "Budget max", "number"),
    FormField("purchase_timeline", "Purchase timeline", "select", choices(PURCHASE_TIMELINES)),
    FormField("next_followup_at", "Next follow-up", "datetime-local"),
    FormField("contact_method", "Contact method"),
    FormField("assigned_to", "Assigned user ID", "number"),
    FormField("tags", "Tags", help="Comma separated; each tag adds to the lead score"),
    FormField("notes", "Notes", "textarea"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]

FOLLOWUP_COLUMNS = [
    Column("Lead ID", "lead_id"),
    Column("Name", "name"),
    Column("Phone", "phone"),
    Column("Follow-up", "next_followup_at"),
    Column("Status", "status"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_lead(lead_id: int, include_deleted: bool = False) -> Lead:
    lead = db_session().get(Lead, lead_id)
    if not lead or (lead.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(lead, _current_user(), "You can only access leads from your branch.")
    return lead


@bp.get("/leads")
@require_permission("leads.view")
def leads_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(FILTER_NAMES)
    page = paginate(query_leads(s, u, filters), page_arg(request.args.get("page")), LEADS_PER_PAGE)
    return render_list(
        title="Leads",
        page=page,
        columns=LIST_COLUMNS,
        list_endpoint="leads.leads_list",
        detail_endpoint="leads.lead_detail",
        id_arg="lead_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("status", "Status", "select", choices(LEAD_STATUSES)),
            FormField("source", "Source", "select", choices(LEAD_SOURCES)),
            FormField("priority", "Priority", "select", choices(PRIORITIES)),
            FormField("score", "Score", "select", (("high", "High (80+)"), ("medium", "Medium (60-79)"), ("low", "Low (<60)"))),
            FormField("suspicious", "Suspicious only", "checkbox"),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("leads.leads_new_get"),
        export_url=url_for("leads.leads_export", **{k: v for k, v in filters.items() if v}),
        stats=lead_stats(s, u),
        extra_actions=[
            Action("Import CSV", url_for("leads.leads_import_get")),
            Action("Follow-ups", url_for("leads.leads_followups")),
        ],
    )


@bp.get("/leads/followups")
@require_permission("leads.view")
def leads_followups():
    days = page_arg(request.args.get("days") or 7)
    leads = upcoming_followups(db_session(), _current_user(), days=days)
    return render_detail(
        title=f"Follow-ups due in the next {days} day(s)",
        obj=None,
        fields=[("Leads", len(leads))],
        related=[Related("Upcoming follow-ups", FOLLOWUP_COLUMNS, table_rows(leads, FOLLOWUP_COLUMNS, "leads.lead_detail", "lead_id"))],
        back_url=url_for("leads.leads_list"),
    )


@bp.get("/leads/export")
@require_permission("leads.export")
def leads_export():
    filters = current_filters(FILTER_NAMES)
    leads = query_leads(db_session(), _current_user(), filters).all()
    return send_file(
        io.BytesIO(export_leads_csv(leads)),
        mimetype="text/csv",
        as_attachment=True,
        download_name=f"leads_{datetime.utcnow():%Y%m%d_%H%M%S}.csv",
        max_age=0,
    )


@bp.get("/leads/import/template")
@require_permission("leads.import")
def leads_import_template():
    return send_file(
        io.BytesIO(lead_csv_template()),
        mimetype="text/csv",
        as_attachment=True,
        download_name="leads_import_template.csv",
        max_age=0,
    )


@bp.get("/leads/import")
@require_permission("leads.import")
def leads_import_get():
    return render_form(
        title="Import Leads (CSV)",
        fields=[FormField("file", "CSV file", "file", required=True, help="Download the template for the expected columns")],
        action_url=url_for("leads.leads_import_post"),
        cancel_url=url_for("leads.leads_list"),
        template_url=url_for("leads.leads_import_template"),
    )


@bp.post("/leads/import")
@require_permission("leads.import")
def leads_import_post():
    s = db_session()
    u = _current_user()
    f = request.files.get("file")
    if not f or not f.filename:
        flash("Choose a CSV file to import.", "danger")
        return redirect(url_for("leads.leads_import_get"))
    if not f.filename.lower().endswith((".csv", ".txt")):
        flash("File must be a CSV.", "danger")
        return redirect(url_for("leads.leads_import_get"))

    created, errors = import_leads_csv(s, f.read(), u, u.branch_id, request.remote_addr)
    s.commit()
    for e in errors[:20]:
        flash(e, "danger")
    if len(errors) > 20:
        flash(f"... and {len(errors) - 20} more error(s).", "danger")
    flash(f"Imported {created} lead(s).", "success" if created else "warning")
    return redirect(url_for("leads.leads_list"))


@bp.get("/leads/new")
@require_permission("leads.create")
def leads_new_get():
    return render_form(
        title="New Lead",
        fields=FORM_FIELDS,
        values={"status": "new", "priority": "medium", "source": "walk_in"},
        action_url=url_for("leads.leads_new_post"),
        cancel_url=url_for("leads.leads_list"),
    )


@bp.post("/leads/new")
@require_permission("leads.create")
def leads_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(FORM_FIELDS)
    errors = validate_lead_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("leads.leads_new_get"))
    lead = create_lead(s, payload, u, default_branch_id(payload.get("branch_id"), u), request.remote_addr)
    s.commit()
    flash(f"Lead {lead.lead_id} created.", "success")
    if lead.is_suspicious:
        flash(f"Lead looks suspicious ({', '.join(lead.duplicate_flags or [])}).", "warning")
    return redirect(url_for("leads.lead_detail", lead_id=lead.id))


@bp.get("/leads/<int:lead_id>")
@require_permission("leads.view")
def lead_detail(lead_id: int):
    lead = _get_lead(lead_id, include_deleted=True)
    if lead.deleted_at:
        actions = [Action("Restore", url_for("leads.lead_restore", lead_id=lead.id), "post", "success")]
    else:
        actions = [
            Action("Edit", url_for("leads.lead_edit_get", lead_id=lead.id)),
            Action("Delete", url_for("leads.lead_delete", lead_id=lead.id), "post", "danger", "Delete this lead?"),
        ]
    pipeline_cols = [Column("Pipeline", "pipeline_id"), Column("Stage", "current_stage"), Column("Progress", "current_stage", lambda v: f"{stage_progress(v)}%")]
    return render_detail(
        title=f"Lead {lead.lead_id}",
        obj=lead,
        fields=[
            ("Name", lead.name),
            ("Email", lead.email),
            ("Phone", lead.phone),
            ("Location", lead.location),
            ("Source", lead.source),
            ("Status", lead.status),
            ("Priority", lead.priority),
            ("Vehicle interest", " ".join(p for p in (lead.vehicle_interest, lead.vehicle_variant) if p)),
            ("Budget", f"{lead.budget_min or '-'} to {lead.budget_max or '-'}"),
            ("Purchase timeline", lead.purchase_timeline),
            ("Lead score", f"{lead.lead_score} ({lead.score_band})"),
            ("Conversion probability", f"{lead.conversion_probability}%"),
            ("Fake lead score", lead.fake_lead_score),
            ("Flags", lead.duplicate_flags),
            ("IP address", lead.ip_address),
            ("Assigned to", lead.assignee.display_name if lead.assignee else None),
            ("Last contact", lead.last_contact_at),
            ("Next follow-up", lead.next_followup_at),
            ("Tags", lead.tags),
            ("Notes", lead.notes),
            ("Deleted at", lead.deleted_at),
        ],
        actions=actions,
        related=[Related("Pipelines", pipeline_cols, table_rows(lead.pipelines, pipeline_cols, "pipelines.pipeline_detail", "pipeline_id"))],
        back_url=url_for("leads.leads_list"),
    )


@bp.get("/leads/<int:lead_id>/edit")
@require_permission("leads.edit")
def lead_edit_get(lead_id: int):
    lead = _get_lead(lead_id)
    return render_form(
        title=f"Edit Lead {lead.lead_id}",
        fields=FORM_FIELDS,
        values=form_values(lead, FORM_FIELDS),
        action_url=url_for("leads.lead_edit_post", lead_id=lead.id),
        cancel_url=url_for("leads.lead_detail", lead_id=lead.id),
    )


@bp.post("/leads/<int:lead_id>/edit")
@require_permission("leads.edit")
def lead_edit_post(lead_id: int):
    s = db_session()
    lead = _get_lead(lead_id)
    payload = form_payload(FORM_FIELDS)
    errors = validate_lead_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("leads.lead_edit_get", lead_id=lead.id))
    had_pipeline = bool(lead.pipelines)
    update_lead(s, lead, payload, _current_user())
    s.commit()
    flash("Lead updated.", "success")
    if not had_pipeline and lead.pipelines:
        flash(f"Pipeline {lead.pipelines[0].pipeline_id} created from qualified lead.", "success")
    return redirect(url_for("leads.lead_detail", lead_id=lead.id))


@bp.post("/leads/<int:lead_id>/delete")
@require_permission("leads.delete")
def lead_delete(lead_id: int):
    s = db_session()
    lead = _get_lead(lead_id)
    soft_delete_lead(s, lead, _current_user())
    s.commit()
    flash(f"Lead {lead.lead_id} deleted.", "success")
    return redirect(url_for("leads.leads_list"))


@bp.post("/leads/<int:lead_id>/restore")
@require_permission("leads.delete")
def lead_restore(lead_id: int):
    s = db_session()
    lead = _get_lead(lead_id, include_deleted=True)
    try:
        restore_lead(s, lead, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("leads.lead_detail", lead_id=lead.id))
    s.commit()
    flash(f"Lead {lead.lead_id} restored.", "success")
    return redirect(url_for("leads.lead_detail", lead_id=lead.id))
