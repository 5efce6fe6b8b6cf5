from __future__ import annotations

from datetime import datetime, time

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for

from app.dms.constants import (
    CHECKLIST_STATUSES,
    CUSTOM_FREQUENCY_UNITS,
    FREQUENCY_TYPES,
    PRIORITIES,
    REMINDER_STATUSES,
    REMINDER_TYPES,
    ROLES,
)
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.compliance.models import (
    ComplianceChecklist,
    ComplianceChecklistAssignment,
    ComplianceChecklistAssignmentItem,
    ComplianceReminder,
)
from app.dms.modules.compliance.service import (
    DELIVERY_CHANNELS,
    assignments_for_user,
    cancel_reminder,
    checklist_stats,
    complete_checklist,
    create_checklist,
    create_reminder,
    delete_checklist,
    delete_reminder,
    items_text,
    parse_items_text,
    parse_triggers_text,
    process_due_reminders,
    reminder_stats,
    reminders_for_user,
    restore_checklist,
    restore_reminder,
    toggle_assignment_item,
    tracked_items,
    triggers_text,
    update_checklist,
    update_reminder,
    validate_checklist_payload,
    validate_reminder_payload,
)
from app.dms.rbac import default_branch_id, ensure_branch_access, live, require_permission, scope_to_branch
from app.dms.utils import BusinessRuleError, page_arg, paginate, parse_bool, parse_date
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

bp = Blueprint("compliance", __name__)

CHECKLIST_COLUMNS = [
    Column("Code", "code"),
    Column("Title", "title"),
    Column("Category", "category"),
    Column("Frequency", "frequency_type"),
    Column("Next due", "next_due_at"),
    Column("Assigned", "assigned_user.display_name"),
    Column("Status", "status"),
]

CHECKLIST_FIELDS = [
    FormField("title", "Title", required=True),
    FormField("code", "Code", required=True, help="Unique; stored uppercase"),
    FormField("description", "Description", "textarea"),
    FormField("category", "Category", "select", choices(("safety", "inventory", "environmental", "data_protection", "quality", "custom"))),
    FormField("status", "Status", "select", choices(CHECKLIST_STATUSES)),
    FormField("frequency_type", "Frequency", "select", choices(FREQUENCY_TYPES), required=True),
    FormField("frequency_interval", "Every N periods", "number"),
    FormField("custom_frequency_unit", "Custom unit", "select", choices(CUSTOM_FREQUENCY_UNITS)),
    FormField("custom_frequency_value", "Custom value", "number"),
    FormField("start_date", "Start date", "date"),
    FormField("due_time", "Due time", "time"),
    FormField("is_recurring", "Recurring", "checkbox"),
    FormField("assigned_user_id", "Assigned user ID", "number"),
    FormField("assigned_role", "Assigned role", "select", tuple(ROLES.items())),
    FormField("escalate_to_user_id", "Escalate to user ID", "number"),
    FormField("escalation_offset_hours", "Escalation offset (hours)", "number"),
    FormField("advance_reminder_offsets", "Advance reminders (hours)", help="Comma separated, e.g. 72, 24"),
    FormField("requires_acknowledgement", "Requires acknowledgement", "checkbox"),
    FormField("items", "Items", "textarea", help="One per line; prefix with ? for optional items"),
    FormField("triggers", "Triggers", "textarea", help="One per line: type:offset_hours:channels, e.g. advance:24:email"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]

ITEM_COLUMNS = [Column("#", "sort_order"), Column("Item", "title"), Column("Required", "is_required"), Column("Active", "is_active")]
TRIGGER_COLUMNS = [Column("Type", "trigger_type"), Column("Offset (h)", "offset_hours"), Column("Channels", "channels"), Column("Active", "is_active")]

REMINDER_COLUMNS = [
    Column("Title", "title"),
    Column("Checklist", "checklist.code"),
    Column("Type", "reminder_type"),
    Column("Remind at", "remind_at"),
    Column("Due", "due_at"),
    Column("Channel", "delivery_channel"),
    Column("Sent", "sent_count"),
    Column("Status", "status"),
]

REMINDER_FIELDS = [
    FormField("title", "Title", required=True),
    FormField("description", "Description", "textarea"),
    FormField("compliance_checklist_id", "Checklist ID", "number"),
    FormField("reminder_type", "Type", "select", choices(REMINDER_TYPES)),
    FormField("priority", "Priority", "select", choices(PRIORITIES)),
    FormField("delivery_channel", "Channel", "select", choices(DELIVERY_CHANNELS)),
    FormField("remind_at", "Remind at", "datetime-local", required=True),
    FormField("due_at", "Due at", "datetime-local"),
    FormField("escalate_at", "Escalate at", "datetime-local"),
    FormField("status", "Status", "select", choices(REMINDER_STATUSES)),
    FormField("assigned_user_id", "Assigned user ID", "number"),
    FormField("assigned_role", "Assigned role", "select", tuple(ROLES.items())),
    FormField("auto_escalate", "Auto escalate", "checkbox"),
    FormField("escalate_to_user_id", "Escalate to user ID", "number"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]

EVENT_COLUMNS = [
    Column("When", "processed_at"),
    Column("Event", "event_type"),
    Column("Channel", "channel"),
    Column("Status", "status"),
    Column("Message", "message"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_checklist(checklist_id: int, include_deleted: bool = False) -> ComplianceChecklist:
    checklist = db_session().get(ComplianceChecklist, checklist_id)
    if not checklist or (checklist.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(checklist, _current_user(), "You can only access checklists from your branch.")
    return checklist


def _get_reminder(reminder_id: int, include_deleted: bool = False) -> ComplianceReminder:
    reminder = db_session().get(ComplianceReminder, reminder_id)
    if not reminder or (reminder.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(reminder, _current_user(), "You can only access reminders from your branch.")
    return reminder


def _flash_errors(errors: list[str]) -> None:
    for e in errors:
        flash(e, "danger")


# ---- Checklists ----

@bp.get("/compliance/checklists")
@require_permission("compliance.view")
def checklists_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "status", "frequency_type", "include_deleted"))
    base = scope_to_branch(live(s.query(ComplianceChecklist), ComplianceChecklist), ComplianceChecklist, u)
    q = scope_to_branch(
        live(s.query(ComplianceChecklist), ComplianceChecklist, parse_bool(filters["include_deleted"])), ComplianceChecklist, u
    )
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(ComplianceChecklist.title.ilike(like) | ComplianceChecklist.code.ilike(like))
    if filters["status"]:
        q = q.filter(ComplianceChecklist.status == filters["status"])
    if filters["frequency_type"]:
        q = q.filter(ComplianceChecklist.frequency_type == filters["frequency_type"])
    page = paginate(
        q.order_by(ComplianceChecklist.next_due_at.is_(None), ComplianceChecklist.next_due_at.asc(), ComplianceChecklist.id.desc()),
        page_arg(request.args.get("page")),
        15,
    )
    return render_list(
        title="Compliance Checklists",
        page=page,
        columns=CHECKLIST_COLUMNS,
        list_endpoint="compliance.checklists_list",
        detail_endpoint="compliance.checklist_detail",
        id_arg="checklist_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("status", "Status", "select", choices(CHECKLIST_STATUSES)),
            FormField("frequency_type", "Frequency", "select", choices(FREQUENCY_TYPES)),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("compliance.checklists_new_get"),
        stats=checklist_stats(base),
        extra_actions=[Action("Reminders", url_for("compliance.reminders_list"))],
    )


@bp.get("/compliance/checklists/new")
@require_permission("compliance.create")
def checklists_new_get():
    return render_form(
        title="New Compliance Checklist",
        fields=CHECKLIST_FIELDS,
        values={"status": "draft", "frequency_type": "monthly", "frequency_interval": "1", "is_recurring": True},
        action_url=url_for("compliance.checklists_new_post"),
        cancel_url=url_for("compliance.checklists_list"),
    )


@bp.post("/compliance/checklists/new")
@require_permission("compliance.create")
def checklists_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(CHECKLIST_FIELDS)
    items = parse_items_text(payload.get("items"))
    triggers = parse_triggers_text(payload.get("triggers"))
    errors = validate_checklist_payload(s, payload, items, triggers)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("compliance.checklists_new_get"))
    checklist = create_checklist(s, payload, items, triggers, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash(f"Checklist {checklist.code} created.", "success")
    return redirect(url_for("compliance.checklist_detail", checklist_id=checklist.id))


@bp.get("/compliance/checklists/<int:checklist_id>")
@require_permission("compliance.view")
def checklist_detail(checklist_id: int):
    c = _get_checklist(checklist_id, include_deleted=True)
    if c.deleted_at:
        actions = [Action("Restore", url_for("compliance.checklist_restore", checklist_id=c.id), "post", "success")]
    else:
        actions = [Action("Edit", url_for("compliance.checklist_edit_get", checklist_id=c.id))]
        if c.status == "active":
            actions.append(Action("Mark completed", url_for("compliance.checklist_complete", checklist_id=c.id), "post", "primary"))
        actions.append(Action("Delete", url_for("compliance.checklist_delete", checklist_id=c.id), "post", "danger", "Delete this checklist?"))
    reminders = sorted((r for r in c.reminders if r.deleted_at is None), key=lambda r: r.remind_at, reverse=True)
    frequency = c.frequency_type
    if frequency == "custom":
        frequency = f"every {c.custom_frequency_value} {c.custom_frequency_unit}"
    elif (c.frequency_interval or 1) > 1:
        frequency = f"{frequency} x{c.frequency_interval}"
    return render_detail(
        title=f"Checklist {c.code}: {c.title}",
        obj=c,
        fields=[
            ("Status", c.status),
            ("Category", c.category),
            ("Description", c.description),
            ("Frequency", frequency),
            ("Recurring", c.is_recurring),
            ("Start", f"{c.start_date or '-'} {c.due_time or ''}".strip()),
            ("Next due", c.next_due_at),
            ("Last triggered", c.last_triggered_at),
            ("Last completed", c.last_completed_at),
            ("Assigned user", c.assigned_user.display_name if c.assigned_user else None),
            ("Assigned role", c.assigned_role),
            ("Escalate to", c.escalation_user.display_name if c.escalation_user else None),
            ("Escalation offset (h)", c.escalation_offset_hours),
            ("Advance reminders (h)", c.advance_reminder_offsets),
            ("Requires acknowledgement", c.requires_acknowledgement),
            ("Deleted at", c.deleted_at),
        ],
        actions=actions,
        related=[
            Related("Items", ITEM_COLUMNS, table_rows(c.items, ITEM_COLUMNS)),
            Related("Triggers", TRIGGER_COLUMNS, table_rows(c.triggers, TRIGGER_COLUMNS)),
            Related("Reminders", REMINDER_COLUMNS, table_rows(reminders, REMINDER_COLUMNS, "compliance.reminder_detail", "reminder_id")),
        ],
        back_url=url_for("compliance.checklists_list"),
    )


@bp.get("/compliance/checklists/<int:checklist_id>/edit")
@require_permission("compliance.edit")
def checklist_edit_get(checklist_id: int):
    c = _get_checklist(checklist_id)
    values = form_values(c, CHECKLIST_FIELDS)
    values["items"] = items_text(c)
    values["triggers"] = triggers_text(c)
    values["due_time"] = c.due_time.strftime("%H:%M") if c.due_time else ""
    return render_form(
        title=f"Edit {c.code}",
        fields=CHECKLIST_FIELDS,
        values=values,
        action_url=url_for("compliance.checklist_edit_post", checklist_id=c.id),
        cancel_url=url_for("compliance.checklist_detail", checklist_id=c.id),
    )


@bp.post("/compliance/checklists/<int:checklist_id>/edit")
@require_permission("compliance.edit")
def checklist_edit_post(checklist_id: int):
    s = db_session()
    c = _get_checklist(checklist_id)
    payload = form_payload(CHECKLIST_FIELDS)
    items = parse_items_text(payload.get("items"))
    triggers = parse_triggers_text(payload.get("triggers"))
    errors = validate_checklist_payload(s, payload, items, triggers, checklist_id=c.id)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("compliance.checklist_edit_get", checklist_id=c.id))
    update_checklist(s, c, payload, items, triggers, _current_user())
    s.commit()
    flash("Checklist updated.", "success")
    return redirect(url_for("compliance.checklist_detail", checklist_id=c.id))


@bp.post("/compliance/checklists/<int:checklist_id>/complete")
@require_permission("compliance.edit")
def checklist_complete(checklist_id: int):
    s = db_session()
    c = _get_checklist(checklist_id)
    try:
        complete_checklist(s, c, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("compliance.checklist_detail", checklist_id=c.id))
    s.commit()
    flash(f"Checklist {c.code} completed. Next due {c.next_due_at or 'n/a'}.", "success")
    return redirect(url_for("compliance.checklist_detail", checklist_id=c.id))


@bp.post("/compliance/checklists/<int:checklist_id>/delete")
@require_permission("compliance.delete")
def checklist_delete(checklist_id: int):
    s = db_session()
    c = _get_checklist(checklist_id)
    delete_checklist(s, c, _current_user())
    s.commit()
    flash(f"Checklist {c.code} deleted.", "success")
    return redirect(url_for("compliance.checklists_list"))


@bp.post("/compliance/checklists/<int:checklist_id>/restore")
@require_permission("compliance.delete")
def checklist_restore(checklist_id: int):
    s = db_session()
    c = _get_checklist(checklist_id, include_deleted=True)
    try:
        restore_checklist(s, c, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("compliance.checklist_detail", checklist_id=c.id))
    s.commit()
    flash(f"Checklist {c.code} restored.", "success")
    return redirect(url_for("compliance.checklist_detail", checklist_id=c.id))


# ---- Reminders ----

@bp.get("/compliance/reminders")
@require_permission("compliance.view")
def reminders_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "status", "reminder_type", "date_from", "date_to", "include_deleted"))
    base = scope_to_branch(live(s.query(ComplianceReminder), ComplianceReminder), ComplianceReminder, u)
    q = scope_to_branch(
        live(s.query(ComplianceReminder), ComplianceReminder, parse_bool(filters["include_deleted"])), ComplianceReminder, u
    )
    if filters["q"]:
        q = q.filter(ComplianceReminder.title.ilike(f"%{filters['q']}%"))
    if filters["status"]:
        q = q.filter(ComplianceReminder.status == filters["status"])
    if filters["reminder_type"]:
        q = q.filter(ComplianceReminder.reminder_type == filters["reminder_type"])
    try:
        if filters["date_from"]:
            q = q.filter(ComplianceReminder.remind_at >= datetime.combine(parse_date(filters["date_from"]), time.min))
        if filters["date_to"]:
            q = q.filter(ComplianceReminder.remind_at <= datetime.combine(parse_date(filters["date_to"]), time.max))
    except ValueError:
        flash("Invalid date filter.", "danger")
    page = paginate(q.order_by(ComplianceReminder.remind_at.asc(), ComplianceReminder.id.asc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Compliance Reminders",
        page=page,
        columns=REMINDER_COLUMNS,
        list_endpoint="compliance.reminders_list",
        detail_endpoint="compliance.reminder_detail",
        id_arg="reminder_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("status", "Status", "select", choices(REMINDER_STATUSES)),
            FormField("reminder_type", "Type", "select", choices(REMINDER_TYPES)),
            FormField("date_from", "From", "date"),
            FormField("date_to", "To", "date"),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("compliance.reminders_new_get"),
        stats=reminder_stats(base),
        extra_actions=[
            Action("Process due now", url_for("compliance.reminders_process"), "post", "warning", "Send every reminder that is due?"),
            Action("Checklists", url_for("compliance.checklists_list")),
        ],
    )


@bp.post("/compliance/reminders/process")
@require_permission("compliance.reminders")
def reminders_process():
    s = db_session()
    result = process_due_reminders(s, dry_run=parse_bool(request.form.get("dry_run")))
    s.commit()
    verb = "would be processed" if result.dry_run else "processed"
    flash(f"{result.processed} reminder(s) {verb}, {result.escalated} escalated.", "success")
    return redirect(url_for("compliance.reminders_list"))


@bp.get("/compliance/reminders/new")
@require_permission("compliance.reminders")
def reminders_new_get():
    return render_form(
        title="New Compliance Reminder",
        fields=REMINDER_FIELDS,
        values={"reminder_type": "custom", "priority": "medium", "delivery_channel": "email", "status": "scheduled"},
        action_url=url_for("compliance.reminders_new_post"),
        cancel_url=url_for("compliance.reminders_list"),
    )


@bp.post("/compliance/reminders/new")
@require_permission("compliance.reminders")
def reminders_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(REMINDER_FIELDS)
    errors = validate_reminder_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("compliance.reminders_new_get"))
    reminder = create_reminder(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash("Reminder created.", "success")
    return redirect(url_for("compliance.reminder_detail", reminder_id=reminder.id))


@bp.get("/compliance/reminders/<int:reminder_id>")
@require_permission("compliance.view")
def reminder_detail(reminder_id: int):
    r = _get_reminder(reminder_id, include_deleted=True)
    if r.deleted_at:
        actions = [Action("Restore", url_for("compliance.reminder_restore", reminder_id=r.id), "post", "success")]
    else:
        actions = [Action("Edit", url_for("compliance.reminder_edit_get", reminder_id=r.id))]
        if r.status not in ("cancelled", "sent", "escalated"):
            actions.append(Action("Cancel", url_for("compliance.reminder_cancel", reminder_id=r.id), "post", "warning", "Cancel this reminder?"))
        actions.append(Action("Delete", url_for("compliance.reminder_delete", reminder_id=r.id), "post", "danger", "Delete this reminder?"))
    back = url_for("compliance.checklist_detail", checklist_id=r.compliance_checklist_id) if r.compliance_checklist_id else url_for("compliance.reminders_list")
    return render_detail(
        title=f"Reminder: {r.title}",
        obj=r,
        fields=[
            ("Checklist", f"{r.checklist.code}: {r.checklist.title}" if r.checklist else None),
            ("Type", r.reminder_type),
            ("Status", r.status),
            ("Priority", r.priority),
            ("Channel", r.delivery_channel),
            ("Remind at", r.remind_at),
            ("Due at", r.due_at),
            ("Escalate at", r.escalate_at),
            ("Auto escalate", r.auto_escalate),
            ("Assigned user", r.assigned_user.display_name if r.assigned_user else None),
            ("Assigned role", r.assigned_role),
            ("Sent count", r.sent_count),
            ("Last sent", r.last_sent_at),
            ("Last escalated", r.last_escalated_at),
            ("Description", r.description),
            ("Deleted at", r.deleted_at),
        ],
        actions=actions,
        related=[Related("Events", EVENT_COLUMNS, table_rows(r.events, EVENT_COLUMNS))],
        back_url=back,
    )


@bp.get("/compliance/reminders/<int:reminder_id>/edit")
@require_permission("compliance.reminders")
def reminder_edit_get(reminder_id: int):
    r = _get_reminder(reminder_id)
    return render_form(
        title=f"Edit reminder: {r.title}",
        fields=REMINDER_FIELDS,
        values=form_values(r, REMINDER_FIELDS),
        action_url=url_for("compliance.reminder_edit_post", reminder_id=r.id),
        cancel_url=url_for("compliance.reminder_detail", reminder_id=r.id),
    )


@bp.post("/compliance/reminders/<int:reminder_id>/edit")
@require_permission("compliance.reminders")
def reminder_edit_post(reminder_id: int):
    s = db_session()
    r = _get_reminder(reminder_id)
    payload = form_payload(REMINDER_FIELDS)
    errors = validate_reminder_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("compliance.reminder_edit_get", reminder_id=r.id))
    update_reminder(s, r, payload, _current_user())
    s.commit()
    flash("Reminder updated.", "success")
    return redirect(url_for("compliance.reminder_detail", reminder_id=r.id))


@bp.post("/compliance/reminders/<int:reminder_id>/cancel")
@require_permission("compliance.reminders")
def reminder_cancel(reminder_id: int):
    s = db_session()
    r = _get_reminder(reminder_id)
    try:
        cancel_reminder(s, r, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("compliance.reminder_detail", reminder_id=r.id))
    s.commit()
    flash("Reminder cancelled.", "success")
    return redirect(url_for("compliance.reminder_detail", reminder_id=r.id))


@bp.post("/compliance/reminders/<int:reminder_id>/delete")
@require_permission("compliance.reminders")
def reminder_delete(reminder_id: int):
    s = db_session()
    r = _get_reminder(reminder_id)
    delete_reminder(s, r, _current_user())
    s.commit()
    flash("Reminder deleted.", "success")
    return redirect(url_for("compliance.reminders_list"))


@bp.post("/compliance/reminders/<int:reminder_id>/restore")
@require_permission("compliance.reminders")
def reminder_restore(reminder_id: int):
    s = db_session()
    r = _get_reminder(reminder_id, include_deleted=True)
    try:
        restore_reminder(s, r, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("compliance.reminder_detail", reminder_id=r.id))
    s.commit()
    flash("Reminder restored.", "success")
    return redirect(url_for("compliance.reminder_detail", reminder_id=r.id))


# ---- My checklists ----

MY_REMINDER_COLUMNS = [
    Column("Title", "title"),
    Column("Checklist", "checklist.title"),
    Column("Type", "reminder_type"),
    Column("Priority", "priority"),
    Column("Remind at", "remind_at"),
    Column("Due", "due_at"),
    Column("Channel", "delivery_channel"),
    Column("Status", "status"),
]


@bp.get("/compliance/my-checklists")
@require_permission("admin.view")
def my_checklists():
    s = db_session()
    u = _current_user()
    assignments = assignments_for_user(s, u)
    reminders = reminders_for_user(s, u)
    s.commit()
    return render_template(
        "admin/compliance/my_checklists.html",
        title="My Checklists & Reminders",
        assignments=[(a, tracked_items(a)) for a in assignments],
        reminder_columns=MY_REMINDER_COLUMNS,
        reminder_rows=table_rows(reminders, MY_REMINDER_COLUMNS),
    )


@bp.post("/compliance/assignments/<int:assignment_id>/items/<int:item_id>/toggle")
@require_permission("admin.view")
def assignment_item_toggle(assignment_id: int, item_id: int):
    s = db_session()
    u = _current_user()
    assignment = s.get(ComplianceChecklistAssignment, assignment_id)
    if not assignment:
        abort(404)
    if assignment.user_id != u.id:
        g.missing_permission = "assignment_owner"
        g.forbidden_message = "You can only update checklists assigned to you."
        abort(403)
    item = s.get(ComplianceChecklistAssignmentItem, item_id)
    if not item or item.assignment_id != assignment.id:
        abort(404)
    body = (request.get_json(silent=True) or {}) if request.is_json else request.form
    try:
        result = toggle_assignment_item(s, item, u, parse_bool(body.get("is_completed")), body.get("notes"))
    except BusinessRuleError as e:
        if request.is_json:
            return jsonify({"success": False, "message": e.message}), 422
        flash(e.message, "danger")
        return redirect(url_for("compliance.my_checklists"))
    s.commit()
    if request.is_json:
        return jsonify({"success": True, "data": result})
    flash(f"{assignment.checklist.title}: {result['progress_percentage']}% complete.", "success")
    return redirect(url_for("compliance.my_checklists"))
