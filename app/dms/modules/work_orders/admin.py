from __future__ import annotations

from datetime import datetime, time

from flask import Blueprint, abort, current_app, flash, g, redirect, request, send_file, url_for

from app.dms.constants import WORK_ORDER_PRIORITIES, WORK_ORDER_STATUSES
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.work_orders.models import WorkOrder, WorkOrderPhoto
from app.dms.modules.work_orders.reports import pms_compliance, repeat_repairs, resolve_window
from app.dms.modules.work_orders.service import (
    add_photo,
    create_work_order,
    delete_photo,
    delete_work_order,
    restore_work_order,
    set_status,
    update_work_order,
    validate_work_order_payload,
    work_order_stats,
)
from app.dms.rbac import default_branch_id, ensure_branch_access, is_elevated, live, require_permission, scope_to_branch
from app.dms.storage import StorageError, storage_from_config
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

bp = Blueprint("work_orders", __name__)

LIST_COLUMNS = [
    Column("WO #", "work_order_number"),
    Column("Customer", "customer_name"),
    Column("Vehicle", "vehicle_label"),
    Column("Service", "service_type.name"),
    Column("Scheduled", "scheduled_at"),
    Column("Priority", "priority"),
    Column("Status", "status"),
    Column("Done %", "completion_percentage"),
]

FORM_FIELDS = [
    FormField("customer_id", "Customer ID", "number", help="Fills name and contact details when blank"),
    FormField("customer_name", "Customer name"),
    FormField("customer_phone", "Customer phone"),
    FormField("customer_email", "Customer email", "email"),
    FormField("vehicle_unit_id", "Vehicle unit ID", "number"),
    FormField("vehicle_vin", "VIN"),
    FormField("vehicle_make", "Make"),
    FormField("vehicle_model", "Model"),
    FormField("vehicle_year", "Year", "number"),
    FormField("current_mileage", "Current mileage (km)", "number"),
    FormField("service_type_id", "Service type ID", "number"),
    FormField("status", "Status", "select", choices(WORK_ORDER_STATUSES)),
    FormField("priority", "Priority", "select", choices(WORK_ORDER_PRIORITIES)),
    FormField("scheduled_at", "Scheduled at", "datetime-local"),
    FormField("due_date", "Due date", "date"),
    FormField("estimated_hours", "Estimated hours", "number"),
    FormField("actual_hours", "Actual hours", "number"),
    FormField("estimated_cost", "Estimated cost", "number"),
    FormField("actual_cost", "Actual cost", "number"),
    FormField("completion_percentage", "Completion %", "number"),
    FormField("assigned_technician_id", "Technician user ID", "number"),
    FormField("pms_interval_km", "PMS interval (km)", "number"),
    FormField("is_warranty_claim", "Warranty claim", "checkbox"),
    FormField("customer_concerns", "Customer concerns", "textarea"),
    FormField("diagnosis", "Diagnosis", "textarea"),
    FormField("work_performed", "Work performed", "textarea"),
    FormField("notes", "Notes", "textarea"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]

PHOTO_FIELDS = [
    FormField("photos", "Photos", "file", required=True, help="JPEG, PNG or WebP; 10 MB max each"),
    FormField("photo_type", "Photo type", "select", choices(("before", "during", "after", "damage", "other"))),
    FormField("caption", "Caption"),
    FormField("notes", "Notes", "textarea"),
]

PHOTO_COLUMNS = [
    Column("File", "file_name"),
    Column("Type", "photo_type"),
    Column("Caption", "caption"),
    Column("Size", "file_size"),
    Column("Uploaded", "created_at"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_work_order(work_order_id: int, include_deleted: bool = False) -> WorkOrder:
    wo = db_session().get(WorkOrder, work_order_id)
    if not wo or (wo.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(wo, _current_user(), "You can only access work orders from your branch.")
    return wo


def _get_photo(work_order_id: int, photo_id: int) -> WorkOrderPhoto:
    wo = _get_work_order(work_order_id)
    photo = db_session().get(WorkOrderPhoto, photo_id)
    if not photo or photo.work_order_id != wo.id:
        abort(404)
    return photo


@bp.get("/work-orders")
@require_permission("work_orders.view")
def work_orders_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "status", "priority", "date_from", "date_to", "include_deleted"))
    q = scope_to_branch(live(s.query(WorkOrder), WorkOrder, parse_bool(filters["include_deleted"])), WorkOrder, u)
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(
            WorkOrder.work_order_number.ilike(like)
            | WorkOrder.customer_name.ilike(like)
            | WorkOrder.vehicle_vin.ilike(like)
        )
    if filters["status"]:
        q = q.filter(WorkOrder.status == filters["status"])
    if filters["priority"]:
        q = q.filter(WorkOrder.priority == filters["priority"])
    try:
        if filters["date_from"]:
            q = q.filter(WorkOrder.created_at >= datetime.combine(parse_date(filters["date_from"]), time.min))
        if filters["date_to"]:
            q = q.filter(WorkOrder.created_at <= datetime.combine(parse_date(filters["date_to"]), time.max))
    except ValueError:
        flash("Invalid date filter.", "danger")
    page = paginate(q.order_by(WorkOrder.created_at.desc(), WorkOrder.id.desc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Work Orders",
        page=page,
        columns=LIST_COLUMNS,
        list_endpoint="work_orders.work_orders_list",
        detail_endpoint="work_orders.work_order_detail",
        id_arg="work_order_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("status", "Status", "select", choices(WORK_ORDER_STATUSES)),
            FormField("priority", "Priority", "select", choices(WORK_ORDER_PRIORITIES)),
            FormField("date_from", "From", "date"),
            FormField("date_to", "To", "date"),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("work_orders.work_orders_new_get"),
        stats=work_order_stats(scope_to_branch(live(s.query(WorkOrder), WorkOrder), WorkOrder, u)),
        extra_actions=[Action("Aftersales report", url_for("work_orders.aftersales_report"))],
    )


# ---- Aftersales report ----

REPEAT_COLUMNS = [
    Column("Stock #", "stock_number"),
    Column("VIN", "vin"),
    Column("Branch", "branch"),
    Column("Visits", "count"),
    Column("Last service", "last_service_date"),
    Column("Last issue", "last_issue"),
    Column("Services", "service_types"),
]


@bp.get("/work-orders/aftersales")
@require_permission("work_orders.view")
def aftersales_report():
    s = db_session()
    u = _current_user()
    filters = current_filters(("branch_id", "start_date", "end_date"))
    try:
        start, end = resolve_window(parse_date(filters["start_date"]), parse_date(filters["end_date"]))
    except ValueError:
        flash("Dates must be YYYY-MM-DD.", "danger")
        start, end = resolve_window(None, None)
    branch_id = parse_int(filters["branch_id"]) if is_elevated(u) else u.branch_id
    filter_fields = [FormField("start_date", "From", "date"), FormField("end_date", "To", "date")]
    if is_elevated(u):
        filter_fields.insert(0, FormField("branch_id", "Branch ID", "number"))
    pms = pms_compliance(s, start, end, branch_id)
    return render_report(
        title="Aftersales Report",
        list_endpoint="work_orders.aftersales_report",
        filters=filters,
        filter_fields=filter_fields,
        stats={**pms, "compliance_rate": f"{pms['compliance_rate']}%"},
        period=f"PMS due {start} to {end}",
        related=[Related("Repeat repairs", REPEAT_COLUMNS, table_rows(repeat_repairs(s, start, end, branch_id), REPEAT_COLUMNS))],
        extra_actions=[Action("Work orders", url_for("work_orders.work_orders_list"))],
    )


@bp.get("/work-orders/new")
@require_permission("work_orders.create")
def work_orders_new_get():
    return render_form(
        title="New Work Order",
        fields=FORM_FIELDS,
        values={"status": "draft", "priority": "normal", "completion_percentage": "0"},
        action_url=url_for("work_orders.work_orders_new_post"),
        cancel_url=url_for("work_orders.work_orders_list"),
    )


@bp.post("/work-orders/new")
@require_permission("work_orders.create")
def work_orders_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(FORM_FIELDS)
    errors = validate_work_order_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("work_orders.work_orders_new_get"))
    wo = create_work_order(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash(f"Work order {wo.work_order_number} created.", "success")
    return redirect(url_for("work_orders.work_order_detail", work_order_id=wo.id))


@bp.get("/work-orders/<int:work_order_id>")
@require_permission("work_orders.view")
def work_order_detail(work_order_id: int):
    wo = _get_work_order(work_order_id, include_deleted=True)
    if wo.deleted_at:
        actions = [Action("Restore", url_for("work_orders.work_order_restore", work_order_id=wo.id), "post", "success")]
    else:
        actions = [Action("Edit", url_for("work_orders.work_order_edit_get", work_order_id=wo.id))]
        if wo.status not in ("in_progress", "completed", "cancelled"):
            actions.append(Action("Start", url_for("work_orders.work_order_status", work_order_id=wo.id, status="in_progress"), "post", "primary"))
        if wo.status == "in_progress":
            actions.append(Action("Complete", url_for("work_orders.work_order_status", work_order_id=wo.id, status="completed"), "post", "success"))
        actions += [
            Action("Upload photos", url_for("work_orders.work_order_photos_get", work_order_id=wo.id)),
            Action("Delete", url_for("work_orders.work_order_delete", work_order_id=wo.id), "post", "danger", "Delete this work order?"),
        ]
    photo_rows = table_rows(wo.photos, PHOTO_COLUMNS)
    for row, p in zip(photo_rows, wo.photos):
        row["url"] = url_for("work_orders.work_order_photo_download", work_order_id=wo.id, photo_id=p.id)
        if not wo.deleted_at:
            row["delete_url"] = url_for("work_orders.work_order_photo_delete", work_order_id=wo.id, photo_id=p.id)
    return render_detail(
        title=f"Work Order {wo.work_order_number}",
        obj=wo,
        fields=[
            ("Customer", wo.customer_name),
            ("Phone", wo.customer_phone),
            ("Email", wo.customer_email),
            ("Vehicle", wo.vehicle_label),
            ("VIN", wo.vehicle_vin),
            ("Mileage (km)", wo.current_mileage),
            ("Service type", wo.service_type.name if wo.service_type else None),
            ("Status", wo.status),
            ("Priority", wo.priority),
            ("Scheduled", wo.scheduled_at),
            ("Due", wo.due_date),
            ("Started", wo.started_at),
            ("Completed", wo.completed_at),
            ("Completion %", wo.completion_percentage),
            ("Estimated hours / cost", f"{wo.estimated_hours or '-'} h / {wo.estimated_cost or '-'}"),
            ("Actual hours / cost", f"{wo.actual_hours or '-'} h / {wo.actual_cost or '-'}"),
            ("Technician", wo.technician.display_name if wo.technician else None),
            ("PMS interval (km)", wo.pms_interval_km),
            ("Next PMS due (km)", wo.next_pms_due_km),
            ("Warranty claim", wo.is_warranty_claim),
            ("Customer concerns", wo.customer_concerns),
            ("Diagnosis", wo.diagnosis),
            ("Work performed", wo.work_performed),
            ("Notes", wo.notes),
            ("Deleted at", wo.deleted_at),
        ],
        actions=actions,
        related=[Related("Photos", PHOTO_COLUMNS, photo_rows)],
        back_url=url_for("work_orders.work_orders_list"),
    )


@bp.get("/work-orders/<int:work_order_id>/edit")
@require_permission("work_orders.edit")
def work_order_edit_get(work_order_id: int):
    wo = _get_work_order(work_order_id)
    return render_form(
        title=f"Edit {wo.work_order_number}",
        fields=FORM_FIELDS,
        values=form_values(wo, FORM_FIELDS),
        action_url=url_for("work_orders.work_order_edit_post", work_order_id=wo.id),
        cancel_url=url_for("work_orders.work_order_detail", work_order_id=wo.id),
    )


@bp.post("/work-orders/<int:work_order_id>/edit")
@require_permission("work_orders.edit")
def work_order_edit_post(work_order_id: int):
    s = db_session()
    wo = _get_work_order(work_order_id)
    payload = form_payload(FORM_FIELDS)
    errors = validate_work_order_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("work_orders.work_order_edit_get", work_order_id=wo.id))
    update_work_order(s, wo, payload, _current_user())
    s.commit()
    flash("Work order updated.", "success")
    return redirect(url_for("work_orders.work_order_detail", work_order_id=wo.id))


@bp.post("/work-orders/<int:work_order_id>/status/<status>")
@require_permission("work_orders.edit")
def work_order_status(work_order_id: int, status: str):
    s = db_session()
    wo = _get_work_order(work_order_id)
    try:
        set_status(s, wo, status, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("work_orders.work_order_detail", work_order_id=wo.id))
    s.commit()
    flash(f"Work order {wo.work_order_number} is now {wo.status}.", "success")
    return redirect(url_for("work_orders.work_order_detail", work_order_id=wo.id))


@bp.post("/work-orders/<int:work_order_id>/delete")
@require_permission("work_orders.delete")
def work_order_delete(work_order_id: int):
    s = db_session()
    wo = _get_work_order(work_order_id)
    try:
        delete_work_order(s, wo, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("work_orders.work_order_detail", work_order_id=wo.id))
    s.commit()
    flash(f"Work order {wo.work_order_number} deleted.", "success")
    return redirect(url_for("work_orders.work_orders_list"))


@bp.post("/work-orders/<int:work_order_id>/restore")
@require_permission("work_orders.delete")
def work_order_restore(work_order_id: int):
    s = db_session()
    wo = _get_work_order(work_order_id, include_deleted=True)
    try:
        restore_work_order(s, wo, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("work_orders.work_order_detail", work_order_id=wo.id))
    s.commit()
    flash(f"Work order {wo.work_order_number} restored.", "success")
    return redirect(url_for("work_orders.work_order_detail", work_order_id=wo.id))


# ---- Photos ----

@bp.get("/work-orders/<int:work_order_id>/photos")
@require_permission("work_orders.upload")
def work_order_photos_get(work_order_id: int):
    wo = _get_work_order(work_order_id)
    return render_form(
        title=f"Upload photos: {wo.work_order_number}",
        fields=PHOTO_FIELDS,
        action_url=url_for("work_orders.work_order_photos_post", work_order_id=wo.id),
        cancel_url=url_for("work_orders.work_order_detail", work_order_id=wo.id),
    )


@bp.post("/work-orders/<int:work_order_id>/photos")
@require_permission("work_orders.upload")
def work_order_photos_post(work_order_id: int):
    s = db_session()
    u = _current_user()
    wo = _get_work_order(work_order_id)
    files = [f for f in request.files.getlist("photos") if f and f.filename]
    if not files:
        flash("Choose at least one photo to upload.", "danger")
        return redirect(url_for("work_orders.work_order_photos_get", work_order_id=wo.id))

    storage = storage_from_config(current_app.config)
    uploaded = 0
    for f in files:
        try:
            add_photo(
                s,
                storage,
                wo,
                filename=f.filename,
                data=f.read(),
                content_type=f.mimetype,
                user=u,
                photo_type=request.form.get("photo_type"),
                caption=request.form.get("caption"),
                notes=request.form.get("notes"),
                ip_address=request.remote_addr,
                user_agent=request.user_agent.string if request.user_agent else None,
            )
        except BusinessRuleError as e:
            flash(e.message, "danger")
            continue
        uploaded += 1
    s.commit()
    if uploaded:
        flash(f"{uploaded} photo(s) uploaded.", "success")
    return redirect(url_for("work_orders.work_order_detail", work_order_id=wo.id))


@bp.get("/work-orders/<int:work_order_id>/photos/<int:photo_id>")
@require_permission("work_orders.view")
def work_order_photo_download(work_order_id: int, photo_id: int):
    photo = _get_photo(work_order_id, photo_id)
    storage = storage_from_config(current_app.config)
    try:
        fh = storage.open(photo.file_path)
    except (FileNotFoundError, StorageError):
        abort(404)
    return send_file(fh, mimetype=photo.mime_type, as_attachment=False, download_name=photo.file_name, max_age=0)


@bp.post("/work-orders/<int:work_order_id>/photos/<int:photo_id>/delete")
@require_permission("work_orders.upload")
def work_order_photo_delete(work_order_id: int, photo_id: int):
    s = db_session()
    photo = _get_photo(work_order_id, photo_id)
    delete_photo(s, storage_from_config(current_app.config), photo, _current_user())
    s.commit()
    flash("Photo deleted.", "success")
    return redirect(url_for("work_orders.work_order_detail", work_order_id=work_order_id))
