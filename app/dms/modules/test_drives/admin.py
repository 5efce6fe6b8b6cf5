from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, request, url_for

from app.dms.constants import ESIGNATURE_STATUSES, TEST_DRIVE_STATUSES, TEST_DRIVE_TYPES
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.test_drives.models import TestDrive
from app.dms.modules.test_drives.service import (
    create_test_drive,
    delete_test_drive,
    restore_test_drive,
    update_test_drive,
    validate_test_drive_payload,
)
from app.dms.rbac import default_branch_id, ensure_branch_access, live, require_permission, scope_to_branch
from app.dms.utils import BusinessRuleError, page_arg, paginate, parse_bool, parse_date
from app.dms.views import (
    Action,
    Column,
    FormField,
    choices,
    current_filters,
    form_payload,
    form_values,
    render_detail,
    render_form,
    render_list,
)

bp = Blueprint("test_drives", __name__)

LIST_COLUMNS = [
    Column("Reservation", "reservation_id"),
    Column("Customer", "customer_name"),
    Column("Phone", "customer_phone"),
    Column("Vehicle", "vehicle_details"),
    Column("Date", "scheduled_date"),
    Column("Time", "scheduled_time"),
    Column("Type", "reservation_type"),
    Column("Status", "status"),
]

FORM_FIELDS = [
    FormField("customer_name", "Customer name", required=True),
    FormField("customer_phone", "Customer phone", required=True),
    FormField("customer_email", "Customer email", "email"),
    FormField("vehicle_vin", "Vehicle VIN", required=True, help="17 characters"),
    FormField("vehicle_details", "Vehicle details", required=True),
    FormField("scheduled_date", "Date", "date", required=True),
    FormField("scheduled_time", "Time", "time", required=True),
    FormField("duration_minutes", "Duration (minutes)", "number", required=True),
    FormField("reservation_type", "Type", "select", choices(TEST_DRIVE_TYPES), required=True),
    FormField("status", "Status", "select", choices(TEST_DRIVE_STATUSES)),
    FormField("esignature_status", "E-signature", "select", choices(ESIGNATURE_STATUSES)),
    FormField("assigned_user_id", "Assigned user ID", "number"),
    FormField("route_distance_km", "Route distance (km)", "number"),
    FormField("max_speed_kmh", "Max speed (km/h)", "number"),
    FormField("insurance_verified", "Insurance verified", "checkbox"),
    FormField("license_verified", "License verified", "checkbox"),
    FormField("deposit_amount", "Deposit", "number"),
    FormField("notes", "Notes", "textarea"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_test_drive(test_drive_id: int, include_deleted: bool = False) -> TestDrive:
    td = db_session().get(TestDrive, test_drive_id)
    if not td or (td.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(td, _current_user(), "You can only access test drives from your branch.")
    return td


@bp.get("/test-drives")
@require_permission("test_drives.view")
def test_drives_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "status", "reservation_type", "date_from", "date_to", "include_deleted"))
    q = scope_to_branch(live(s.query(TestDrive), TestDrive, parse_bool(filters["include_deleted"])), TestDrive, u)
    stats_q = scope_to_branch(live(s.query(TestDrive), TestDrive), TestDrive, u)
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(
            TestDrive.reservation_id.ilike(like)
            | TestDrive.customer_name.ilike(like)
            | TestDrive.customer_phone.ilike(like)
            | TestDrive.vehicle_vin.ilike(like)
        )
    if filters["status"]:
        q = q.filter(TestDrive.status == filters["status"])
    if filters["reservation_type"]:
        q = q.filter(TestDrive.reservation_type == filters["reservation_type"])
    try:
        if filters["date_from"]:
            q = q.filter(TestDrive.scheduled_date >= parse_date(filters["date_from"]))
        if filters["date_to"]:
            q = q.filter(TestDrive.scheduled_date <= parse_date(filters["date_to"]))
    except ValueError:
        flash("Invalid date filter.", "danger")
    page = paginate(q.order_by(TestDrive.scheduled_date.desc(), TestDrive.scheduled_time.desc()), page_arg(request.args.get("page")), 15)
    total = stats_q.count()
    return render_list(
        title="Test Drives",
        page=page,
        columns=LIST_COLUMNS,
        list_endpoint="test_drives.test_drives_list",
        detail_endpoint="test_drives.test_drive_detail",
        id_arg="test_drive_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("status", "Status", "select", choices(TEST_DRIVE_STATUSES)),
            FormField("reservation_type", "Type", "select", choices(TEST_DRIVE_TYPES)),
            FormField("date_from", "From", "date"),
            FormField("date_to", "To", "date"),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("test_drives.test_drives_new_get"),
        stats={
            "total": total,
            "confirmed": stats_q.filter(TestDrive.status == "confirmed").count(),
            "completed": stats_q.filter(TestDrive.status == "completed").count(),
            "walk-in %": round(stats_q.filter(TestDrive.reservation_type == "walk_in").count() / total * 100) if total else 0,
        },
    )


@bp.get("/test-drives/new")
@require_permission("test_drives.create")
def test_drives_new_get():
    return render_form(
        title="Schedule Test Drive",
        fields=FORM_FIELDS,
        values={"duration_minutes": "30", "reservation_type": "scheduled", "status": "pending_signature", "esignature_status": "pending"},
        action_url=url_for("test_drives.test_drives_new_post"),
        cancel_url=url_for("test_drives.test_drives_list"),
    )


@bp.post("/test-drives/new")
@require_permission("test_drives.create")
def test_drives_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(FORM_FIELDS)
    errors = validate_test_drive_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("test_drives.test_drives_new_get"))
    td = create_test_drive(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash(f"Test drive {td.reservation_id} scheduled.", "success")
    return redirect(url_for("test_drives.test_drive_detail", test_drive_id=td.id))


@bp.get("/test-drives/<int:test_drive_id>")
@require_permission("test_drives.view")
def test_drive_detail(test_drive_id: int):
    td = _get_test_drive(test_drive_id, include_deleted=True)
    if td.deleted_at:
        actions = [Action("Restore", url_for("test_drives.test_drive_restore", test_drive_id=td.id), "post", "success")]
    else:
        actions = [
            Action("Edit", url_for("test_drives.test_drive_edit_get", test_drive_id=td.id)),
            Action("Delete", url_for("test_drives.test_drive_delete", test_drive_id=td.id), "post", "danger", "Delete this test drive?"),
        ]
    return render_detail(
        title=f"Test Drive {td.reservation_id}",
        obj=td,
        fields=[
            ("Customer", td.customer_name),
            ("Phone", td.customer_phone),
            ("Email", td.customer_email),
            ("VIN", td.vehicle_vin),
            ("Vehicle", td.vehicle_details),
            ("Scheduled", td.scheduled_at),
            ("Duration (min)", td.duration_minutes),
            ("Type", td.reservation_type),
            ("Status", td.status),
            ("E-signature", td.esignature_status),
            ("Signed at", td.esignature_timestamp),
            ("Assigned to", td.assigned_user.display_name if td.assigned_user else None),
            ("Route distance (km)", td.route_distance_km),
            ("Max speed (km/h)", td.max_speed_kmh),
            ("Insurance verified", td.insurance_verified),
            ("License verified", td.license_verified),
            ("Deposit", td.deposit_amount),
            ("Notes", td.notes),
            ("Deleted at", td.deleted_at),
        ],
        actions=actions,
        back_url=url_for("test_drives.test_drives_list"),
    )


@bp.get("/test-drives/<int:test_drive_id>/edit")
@require_permission("test_drives.edit")
def test_drive_edit_get(test_drive_id: int):
    td = _get_test_drive(test_drive_id)
    return render_form(
        title=f"Edit Test Drive {td.reservation_id}",
        fields=FORM_FIELDS,
        values=form_values(td, FORM_FIELDS),
        action_url=url_for("test_drives.test_drive_edit_post", test_drive_id=td.id),
        cancel_url=url_for("test_drives.test_drive_detail", test_drive_id=td.id),
    )


@bp.post("/test-drives/<int:test_drive_id>/edit")
@require_permission("test_drives.edit")
def test_drive_edit_post(test_drive_id: int):
    s = db_session()
    td = _get_test_drive(test_drive_id)
    payload = form_payload(FORM_FIELDS)
    errors = validate_test_drive_payload(payload, is_new=False)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("test_drives.test_drive_edit_get", test_drive_id=td.id))
    update_test_drive(s, td, payload, _current_user())
    s.commit()
    flash("Test drive updated.", "success")
    return redirect(url_for("test_drives.test_drive_detail", test_drive_id=td.id))


@bp.post("/test-drives/<int:test_drive_id>/delete")
@require_permission("test_drives.delete")
def test_drive_delete(test_drive_id: int):
    s = db_session()
    td = _get_test_drive(test_drive_id)
    delete_test_drive(s, td, _current_user())
    s.commit()
    flash(f"Test drive {td.reservation_id} deleted.", "success")
    return redirect(url_for("test_drives.test_drives_list"))


@bp.post("/test-drives/<int:test_drive_id>/restore")
@require_permission("test_drives.delete")
def test_drive_restore(test_drive_id: int):
    s = db_session()
    td = _get_test_drive(test_drive_id, include_deleted=True)
    try:
        restore_test_drive(s, td, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("test_drives.test_drive_detail", test_drive_id=td.id))
    s.commit()
    flash(f"Test drive {td.reservation_id} restored.", "success")
    return redirect(url_for("test_drives.test_drive_detail", test_drive_id=td.id))
