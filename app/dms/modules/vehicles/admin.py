from __future__ import annotations

import json

from flask import Blueprint, abort, flash, g, redirect, request, url_for

from app.dms.constants import PAYMENT_TYPES, RESERVATION_STATUSES, VEHICLE_UNIT_STATUSES
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.vehicles.models import VehicleMaster, VehicleModel, VehicleReservation, VehicleUnit
from app.dms.modules.vehicles.service import (
    create_master,
    create_model,
    create_reservation,
    create_unit,
    delete_master,
    delete_model,
    delete_reservation,
    delete_unit,
    restore_master,
    restore_model,
    restore_reservation,
    restore_unit,
    set_reservation_status,
    transfer_unit,
    unit_stats,
    update_master,
    update_model,
    update_reservation,
    update_status,
    update_unit,
    validate_master_payload,
    validate_model_payload,
    validate_reservation_payload,
    validate_unit_payload,
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
    table_rows,
)

bp = Blueprint("vehicles", __name__)

MASTER_COLUMNS = [
    Column("Vehicle", "full_name"),
    Column("Body", "body_type"),
    Column("Fuel", "fuel_type"),
    Column("Base price", "base_price"),
    Column("Active", "is_active"),
]

MASTER_FIELDS = [
    FormField("make", "Make", required=True),
    FormField("model", "Model", required=True),
    FormField("year", "Year", "number", required=True),
    FormField("trim", "Trim"),
    FormField("body_type", "Body type"),
    FormField("transmission", "Transmission"),
    FormField("fuel_type", "Fuel type"),
    FormField("drivetrain", "Drivetrain"),
    FormField("seating", "Seating", "number"),
    FormField("doors", "Doors", "number"),
    FormField("base_price", "Base price", "number"),
    FormField("currency", "Currency"),
    FormField("specs", "Specs (JSON)", "textarea", help='e.g. {"engine": "1.5L"}'),
    FormField("description", "Description", "textarea"),
    FormField("is_active", "Active", "checkbox"),
]

MODEL_COLUMNS = [
    Column("Code", "model_code"),
    Column("Make", "make"),
    Column("Model", "model"),
    Column("Year", "year"),
    Column("SRP", "srp"),
    Column("Active", "is_active"),
]

MODEL_FIELDS = [
    FormField("make", "Make", required=True),
    FormField("model", "Model", required=True),
    FormField("model_code", "Model code", required=True),
    FormField("year", "Year", "number"),
    FormField("body_type", "Body type"),
    FormField("engine_type", "Engine type"),
    FormField("fuel_type", "Fuel type"),
    FormField("transmission", "Transmission"),
    FormField("seating_capacity", "Seating capacity", "number"),
    FormField("base_price", "Base price", "number"),
    FormField("srp", "SRP", "number"),
    FormField("is_active", "Active", "checkbox"),
]

UNIT_COLUMNS = [
    Column("Stock #", "stock_number"),
    Column("VIN", "vin"),
    Column("Vehicle", "full_name"),
    Column("Branch", "branch.name"),
    Column("Status", "status"),
    Column("Locked", "is_locked"),
    Column("Days", "days_in_inventory"),
]

UNIT_FIELDS = [
    FormField("vin", "VIN", required=True, help="17 characters"),
    FormField("stock_number", "Stock number", required=True),
    FormField("vehicle_master_id", "Vehicle master ID", "number"),
    FormField("vehicle_model_id", "Vehicle model ID", "number"),
    FormField("status", "Status", "select", choices(VEHICLE_UNIT_STATUSES)),
    FormField("purchase_price", "Purchase price", "number"),
    FormField("sale_price", "Sale price", "number"),
    FormField("currency", "Currency"),
    FormField("acquisition_date", "Acquisition date", "date"),
    FormField("sold_date", "Sold date", "date", help="Only when status is sold"),
    FormField("color_exterior", "Exterior color"),
    FormField("color_interior", "Interior color"),
    FormField("odometer", "Odometer", "number"),
    FormField("assigned_user_id", "Assigned user ID", "number"),
    FormField("notes", "Notes", "textarea"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]

TRANSFER_FIELDS = [
    FormField("to_branch_id", "Destination branch ID", "number", required=True),
    FormField("transfer_date", "Transfer date", "date"),
    FormField("remarks", "Remarks", "textarea"),
]

STATUS_FIELDS = [
    FormField("status", "Status", "select", choices(VEHICLE_UNIT_STATUSES), required=True),
    FormField("sold_date", "Sold date", "date"),
]

RESERVATION_COLUMNS = [
    Column("Ref", "reservation_ref"),
    Column("Customer", "customer.display_name"),
    Column("Unit", "unit.stock_number"),
    Column("Date", "reservation_date"),
    Column("Payment", "payment_type"),
    Column("Status", "status"),
]

RESERVATION_FIELDS = [
    FormField("customer_id", "Customer ID", "number", required=True),
    FormField("vehicle_unit_id", "Vehicle unit ID", "number", required=True),
    FormField("reservation_date", "Reservation date", "date", required=True),
    FormField("payment_type", "Payment type", "select", choices(PAYMENT_TYPES)),
    FormField("target_release_date", "Target release date", "date"),
    FormField("status", "Status", "select", choices(RESERVATION_STATUSES)),
    FormField("handled_by_branch_id", "Handled by branch ID", "number"),
    FormField("remarks", "Remarks", "textarea"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _flash_errors(errors: list[str]) -> None:
    for e in errors:
        flash(e, "danger")


def _get_master(master_id: int, include_deleted: bool = False) -> VehicleMaster:
    m = db_session().get(VehicleMaster, master_id)
    if not m or (m.deleted_at and not include_deleted):
        abort(404)
    return m


def _get_model(model_id: int, include_deleted: bool = False) -> VehicleModel:
    m = db_session().get(VehicleModel, model_id)
    if not m or (m.deleted_at and not include_deleted):
        abort(404)
    return m


def _get_unit(unit_id: int, include_deleted: bool = False) -> VehicleUnit:
    u = db_session().get(VehicleUnit, unit_id)
    if not u or (u.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(u, _current_user(), "You can only access vehicle units from your branch.")
    return u


def _get_reservation(reservation_id: int, include_deleted: bool = False) -> VehicleReservation:
    r = db_session().get(VehicleReservation, reservation_id)
    if not r or (r.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(r, _current_user(), "You can only access reservations from your branch.")
    return r


def _crud_actions(obj, edit_url: str, delete_url: str, restore_url: str, noun: str) -> list[Action]:
    if obj.deleted_at:
        return [Action("Restore", restore_url, "post", "success")]
    return [
        Action("Edit", edit_url),
        Action("Delete", delete_url, "post", "danger", f"Delete this {noun}?"),
    ]


# ---- Vehicle masters ----

@bp.get("/vehicles/masters")
@require_permission("vehicles.view")
def masters_list():
    s = db_session()
    filters = current_filters(("q", "year", "include_deleted"))
    q = live(s.query(VehicleMaster), VehicleMaster, parse_bool(filters["include_deleted"]))
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(VehicleMaster.make.ilike(like) | VehicleMaster.model.ilike(like) | VehicleMaster.trim.ilike(like))
    if parse_int(filters["year"]):
        q = q.filter(VehicleMaster.year == parse_int(filters["year"]))
    page = paginate(q.order_by(VehicleMaster.year.desc(), VehicleMaster.make, VehicleMaster.model), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Vehicle Masters",
        page=page,
        columns=MASTER_COLUMNS,
        list_endpoint="vehicles.masters_list",
        detail_endpoint="vehicles.master_detail",
        id_arg="master_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("year", "Year", "number"),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("vehicles.masters_new_get"),
    )


@bp.get("/vehicles/masters/new")
@require_permission("vehicles.create")
def masters_new_get():
    return render_form(
        title="New Vehicle Master",
        fields=MASTER_FIELDS,
        values={"currency": "PHP", "is_active": True},
        action_url=url_for("vehicles.masters_new_post"),
        cancel_url=url_for("vehicles.masters_list"),
    )


@bp.post("/vehicles/masters/new")
@require_permission("vehicles.create")
def masters_new_post():
    s = db_session()
    payload = form_payload(MASTER_FIELDS)
    errors = validate_master_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("vehicles.masters_new_get"))
    master = create_master(s, payload, _current_user())
    s.commit()
    flash(f"Vehicle master {master.full_name} created.", "success")
    return redirect(url_for("vehicles.master_detail", master_id=master.id))


@bp.get("/vehicles/masters/<int:master_id>")
@require_permission("vehicles.view")
def master_detail(master_id: int):
    m = _get_master(master_id, include_deleted=True)
    units = [u for u in m.units if u.deleted_at is None]
    return render_detail(
        title=m.full_name,
        obj=m,
        fields=[
            ("Make", m.make),
            ("Model", m.model),
            ("Year", m.year),
            ("Trim", m.trim),
            ("Body type", m.body_type),
            ("Transmission", m.transmission),
            ("Fuel type", m.fuel_type),
            ("Drivetrain", m.drivetrain),
            ("Seating", m.seating),
            ("Doors", m.doors),
            ("Base price", m.base_price),
            ("Currency", m.currency),
            ("Specs", m.specs),
            ("Description", m.description),
            ("Active", m.is_active),
            ("Deleted at", m.deleted_at),
        ],
        actions=_crud_actions(
            m,
            url_for("vehicles.master_edit_get", master_id=m.id),
            url_for("vehicles.master_delete", master_id=m.id),
            url_for("vehicles.master_restore", master_id=m.id),
            "vehicle master",
        ),
        related=[Related("Units", UNIT_COLUMNS, table_rows(units, UNIT_COLUMNS, "vehicles.unit_detail", "unit_id"))],
        back_url=url_for("vehicles.masters_list"),
    )


@bp.get("/vehicles/masters/<int:master_id>/edit")
@require_permission("vehicles.edit")
def master_edit_get(master_id: int):
    m = _get_master(master_id)
    values = form_values(m, MASTER_FIELDS)
    values["specs"] = "" if not m.specs else json.dumps(m.specs)
    return render_form(
        title=f"Edit {m.full_name}",
        fields=MASTER_FIELDS,
        values=values,
        action_url=url_for("vehicles.master_edit_post", master_id=m.id),
        cancel_url=url_for("vehicles.master_detail", master_id=m.id),
    )


@bp.post("/vehicles/masters/<int:master_id>/edit")
@require_permission("vehicles.edit")
def master_edit_post(master_id: int):
    s = db_session()
    m = _get_master(master_id)
    payload = form_payload(MASTER_FIELDS)
    errors = validate_master_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("vehicles.master_edit_get", master_id=m.id))
    update_master(s, m, payload, _current_user())
    s.commit()
    flash("Vehicle master updated.", "success")
    return redirect(url_for("vehicles.master_detail", master_id=m.id))


@bp.post("/vehicles/masters/<int:master_id>/delete")
@require_permission("vehicles.delete")
def master_delete(master_id: int):
    s = db_session()
    m = _get_master(master_id)
    try:
        delete_master(s, m, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("vehicles.master_detail", master_id=m.id))
    s.commit()
    flash(f"Vehicle master {m.full_name} deleted.", "success")
    return redirect(url_for("vehicles.masters_list"))


@bp.post("/vehicles/masters/<int:master_id>/restore")
@require_permission("vehicles.delete")
def master_restore(master_id: int):
    s = db_session()
    m = _get_master(master_id, include_deleted=True)
    try:
        restore_master(s, m, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("vehicles.master_detail", master_id=m.id))
    s.commit()
    flash(f"Vehicle master {m.full_name} restored.", "success")
    return redirect(url_for("vehicles.master_detail", master_id=m.id))


# ---- Vehicle models ----

@bp.get("/vehicles/models")
@require_permission("vehicles.view")
def models_list():
    s = db_session()
    filters = current_filters(("q", "include_deleted"))
    q = live(s.query(VehicleModel), VehicleModel, parse_bool(filters["include_deleted"]))
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(VehicleModel.make.ilike(like) | VehicleModel.model.ilike(like) | VehicleModel.model_code.ilike(like))
    page = paginate(q.order_by(VehicleModel.make, VehicleModel.model), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Vehicle Models",
        page=page,
        columns=MODEL_COLUMNS,
        list_endpoint="vehicles.models_list",
        detail_endpoint="vehicles.model_detail",
        id_arg="model_id",
        filters=filters,
        filter_fields=[FormField("q", "Search"), FormField("include_deleted", "Include deleted", "checkbox")],
        new_url=url_for("vehicles.models_new_get"),
    )


@bp.get("/vehicles/models/new")
@require_permission("vehicles.create")
def models_new_get():
    return render_form(
        title="New Vehicle Model",
        fields=MODEL_FIELDS,
        values={"is_active": True},
        action_url=url_for("vehicles.models_new_post"),
        cancel_url=url_for("vehicles.models_list"),
    )


@bp.post("/vehicles/models/new")
@require_permission("vehicles.create")
def models_new_post():
    s = db_session()
    payload = form_payload(MODEL_FIELDS)
    errors = validate_model_payload(s, payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("vehicles.models_new_get"))
    vm = create_model(s, payload, _current_user())
    s.commit()
    flash(f"Vehicle model {vm.model_code} created.", "success")
    return redirect(url_for("vehicles.model_detail", model_id=vm.id))


@bp.get("/vehicles/models/<int:model_id>")
@require_permission("vehicles.view")
def model_detail(model_id: int):
    vm = _get_model(model_id, include_deleted=True)
    return render_detail(
        title=f"{vm.full_name} ({vm.model_code})",
        obj=vm,
        fields=[(f.label, getattr(vm, f.name)) for f in MODEL_FIELDS] + [("Deleted at", vm.deleted_at)],
        actions=_crud_actions(
            vm,
            url_for("vehicles.model_edit_get", model_id=vm.id),
            url_for("vehicles.model_delete", model_id=vm.id),
            url_for("vehicles.model_restore", model_id=vm.id),
            "vehicle model",
        ),
        back_url=url_for("vehicles.models_list"),
    )


@bp.get("/vehicles/models/<int:model_id>/edit")
@require_permission("vehicles.edit")
def model_edit_get(model_id: int):
    vm = _get_model(model_id)
    return render_form(
        title=f"Edit {vm.model_code}",
        fields=MODEL_FIELDS,
        values=form_values(vm, MODEL_FIELDS),
        action_url=url_for("vehicles.model_edit_post", model_id=vm.id),
        cancel_url=url_for("vehicles.model_detail", model_id=vm.id),
    )


@bp.post("/vehicles/models/<int:model_id>/edit")
@require_permission("vehicles.edit")
def model_edit_post(model_id: int):
    s = db_session()
    vm = _get_model(model_id)
    payload = form_payload(MODEL_FIELDS)
    errors = validate_model_payload(s, payload, vm.id)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("vehicles.model_edit_get", model_id=vm.id))
    update_model(s, vm, payload, _current_user())
    s.commit()
    flash("Vehicle model updated.", "success")
    return redirect(url_for("vehicles.model_detail", model_id=vm.id))


@bp.post("/vehicles/models/<int:model_id>/delete")
@require_permission("vehicles.delete")
def model_delete(model_id: int):
    s = db_session()
    vm = _get_model(model_id)
    delete_model(s, vm, _current_user())
    s.commit()
    flash(f"Vehicle model {vm.model_code} deleted.", "success")
    return redirect(url_for("vehicles.models_list"))


@bp.post("/vehicles/models/<int:model_id>/restore")
@require_permission("vehicles.delete")
def model_restore(model_id: int):
    s = db_session()
    vm = _get_model(model_id, include_deleted=True)
    try:
        restore_model(s, vm, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("vehicles.model_detail", model_id=vm.id))
    s.commit()
    flash(f"Vehicle model {vm.model_code} restored.", "success")
    return redirect(url_for("vehicles.model_detail", model_id=vm.id))


# ---- Vehicle units ----

@bp.get("/vehicles/units")
@require_permission("vehicles.view")
def units_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "status", "locked", "include_deleted"))
    q = scope_to_branch(live(s.query(VehicleUnit), VehicleUnit, parse_bool(filters["include_deleted"])), VehicleUnit, u)
    stats_q = scope_to_branch(live(s.query(VehicleUnit), VehicleUnit), VehicleUnit, u)
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(VehicleUnit.vin.ilike(like) | VehicleUnit.stock_number.ilike(like))
    if filters["status"]:
        q = q.filter(VehicleUnit.status == filters["status"])
    if filters["locked"]:
        q = q.filter(VehicleUnit.is_locked.is_(parse_bool(filters["locked"])))
    page = paginate(q.order_by(VehicleUnit.created_at.desc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Vehicle Units",
        page=page,
        columns=UNIT_COLUMNS,
        list_endpoint="vehicles.units_list",
        detail_endpoint="vehicles.unit_detail",
        id_arg="unit_id",
        filters=filters,
        filter_fields=[
            FormField("q", "VIN / stock #"),
            FormField("status", "Status", "select", choices(VEHICLE_UNIT_STATUSES)),
            FormField("locked", "Locked only", "checkbox"),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("vehicles.units_new_get"),
        stats=unit_stats(stats_q),
    )


@bp.get("/vehicles/units/new")
@require_permission("vehicles.create")
def units_new_get():
    return render_form(
        title="New Vehicle Unit",
        fields=UNIT_FIELDS,
        values={"status": "in_stock", "currency": "PHP"},
        action_url=url_for("vehicles.units_new_post"),
        cancel_url=url_for("vehicles.units_list"),
    )


@bp.post("/vehicles/units/new")
@require_permission("vehicles.create")
def units_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(UNIT_FIELDS)
    errors = validate_unit_payload(s, payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("vehicles.units_new_get"))
    unit = create_unit(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash(f"Vehicle unit {unit.stock_number} created.", "success")
    return redirect(url_for("vehicles.unit_detail", unit_id=unit.id))


@bp.get("/vehicles/units/<int:unit_id>")
@require_permission("vehicles.view")
def unit_detail(unit_id: int):
    s = db_session()
    unit = _get_unit(unit_id, include_deleted=True)
    actions = _crud_actions(
        unit,
        url_for("vehicles.unit_edit_get", unit_id=unit.id),
        url_for("vehicles.unit_delete", unit_id=unit.id),
        url_for("vehicles.unit_restore", unit_id=unit.id),
        "vehicle unit",
    )
    if not unit.deleted_at:
        actions[1:1] = [
            Action("Change status", url_for("vehicles.unit_status_get", unit_id=unit.id)),
            Action("Transfer", url_for("vehicles.unit_transfer_get", unit_id=unit.id)),
        ]
    movement_cols = [
        Column("Date", "transfer_date"),
        Column("From", "from_branch.name"),
        Column("To", "to_branch.name"),
        Column("Status", "status"),
        Column("Remarks", "remarks"),
    ]
    reservations = (
        s.query(VehicleReservation)
        .filter(VehicleReservation.vehicle_unit_id == unit.id, VehicleReservation.deleted_at.is_(None))
        .order_by(VehicleReservation.reservation_date.desc())
        .all()
    )
    return render_detail(
        title=f"{unit.full_name} ({unit.stock_number})",
        obj=unit,
        fields=[
            ("VIN", unit.vin),
            ("Stock number", unit.stock_number),
            ("Branch", unit.branch.name if unit.branch else None),
            ("Status", unit.status),
            ("Locked", unit.is_locked),
            ("Allocation", unit.allocation_status),
            ("Purchase price", unit.purchase_price),
            ("Sale price", unit.sale_price),
            ("Currency", unit.currency),
            ("Profit margin", unit.profit_margin),
            ("Profit %", round(unit.profit_percentage, 2) if unit.profit_percentage is not None else None),
            ("Acquired", unit.acquisition_date),
            ("Sold", unit.sold_date),
            ("Days in inventory", unit.days_in_inventory),
            ("Exterior", unit.color_exterior),
            ("Interior", unit.color_interior),
            ("Odometer", unit.odometer),
            ("Notes", unit.notes),
            ("Deleted at", unit.deleted_at),
        ],
        actions=actions,
        related=[
            Related("Movements", movement_cols, table_rows(unit.movements, movement_cols)),
            Related(
                "Reservations",
                RESERVATION_COLUMNS,
                table_rows(reservations, RESERVATION_COLUMNS, "vehicles.reservation_detail", "reservation_id"),
            ),
        ],
        back_url=url_for("vehicles.units_list"),
    )


@bp.get("/vehicles/units/<int:unit_id>/edit")
@require_permission("vehicles.edit")
def unit_edit_get(unit_id: int):
    unit = _get_unit(unit_id)
    return render_form(
        title=f"Edit {unit.stock_number}",
        fields=UNIT_FIELDS,
        values=form_values(unit, UNIT_FIELDS),
        action_url=url_for("vehicles.unit_edit_post", unit_id=unit.id),
        cancel_url=url_for("vehicles.unit_detail", unit_id=unit.id),
    )


@bp.post("/vehicles/units/<int:unit_id>/edit")
@require_permission("vehicles.edit")
def unit_edit_post(unit_id: int):
    s = db_session()
    unit = _get_unit(unit_id)
    payload = form_payload(UNIT_FIELDS)
    errors = validate_unit_payload(s, payload, unit.id)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("vehicles.unit_edit_get", unit_id=unit.id))
    update_unit(s, unit, payload, _current_user())
    s.commit()
    flash("Vehicle unit updated.", "success")
    return redirect(url_for("vehicles.unit_detail", unit_id=unit.id))


@bp.get("/vehicles/units/<int:unit_id>/status")
@require_permission("vehicles.edit")
def unit_status_get(unit_id: int):
    unit = _get_unit(unit_id)
    return render_form(
        title=f"Change status of {unit.stock_number}",
        fields=STATUS_FIELDS,
        values=form_values(unit, STATUS_FIELDS),
        action_url=url_for("vehicles.unit_status_post", unit_id=unit.id),
        cancel_url=url_for("vehicles.unit_detail", unit_id=unit.id),
    )


@bp.post("/vehicles/units/<int:unit_id>/status")
@require_permission("vehicles.edit")
def unit_status_post(unit_id: int):
    s = db_session()
    unit = _get_unit(unit_id)
    try:
        update_status(s, unit, (request.form.get("status") or "").strip(), parse_date(request.form.get("sold_date")), _current_user())
    except ValueError:
        flash("Sold date must be a valid date (YYYY-MM-DD).", "danger")
        return redirect(url_for("vehicles.unit_status_get", unit_id=unit.id))
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("vehicles.unit_status_get", unit_id=unit.id))
    s.commit()
    flash(f"Status changed to {unit.status}.", "success")
    return redirect(url_for("vehicles.unit_detail", unit_id=unit.id))


@bp.get("/vehicles/units/<int:unit_id>/transfer")
@require_permission("vehicles.transfer")
def unit_transfer_get(unit_id: int):
    unit = _get_unit(unit_id)
    return render_form(
        title=f"Transfer {unit.stock_number}",
        fields=TRANSFER_FIELDS,
        action_url=url_for("vehicles.unit_transfer_post", unit_id=unit.id),
        cancel_url=url_for("vehicles.unit_detail", unit_id=unit.id),
    )


@bp.post("/vehicles/units/<int:unit_id>/transfer")
@require_permission("vehicles.transfer")
def unit_transfer_post(unit_id: int):
    from app.dms.modules.branches.models import Branch

    s = db_session()
    unit = _get_unit(unit_id)
    to_branch = s.get(Branch, parse_int(request.form.get("to_branch_id")) or 0)
    if not to_branch or to_branch.deleted_at:
        flash("Destination branch not found.", "danger")
        return redirect(url_for("vehicles.unit_transfer_get", unit_id=unit.id))
    try:
        transfer_unit(
            s, unit, to_branch.id, parse_date(request.form.get("transfer_date")), _current_user(), request.form.get("remarks")
        )
    except ValueError:
        flash("Transfer date must be a valid date (YYYY-MM-DD).", "danger")
        return redirect(url_for("vehicles.unit_transfer_get", unit_id=unit.id))
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("vehicles.unit_detail", unit_id=unit.id))
    s.commit()
    flash(f"Vehicle transferred to {to_branch.name}.", "success")
    if not is_elevated(_current_user()):
        return redirect(url_for("vehicles.units_list"))
    return redirect(url_for("vehicles.unit_detail", unit_id=unit.id))


@bp.post("/vehicles/units/<int:unit_id>/delete")
@require_permission("vehicles.delete")
def unit_delete(unit_id: int):
    s = db_session()
    unit = _get_unit(unit_id)
    try:
        delete_unit(s, unit, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("vehicles.unit_detail", unit_id=unit.id))
    s.commit()
    flash(f"Vehicle unit {unit.stock_number} deleted.", "success")
    return redirect(url_for("vehicles.units_list"))


@bp.post("/vehicles/units/<int:unit_id>/restore")
@require_permission("vehicles.delete")
def unit_restore(unit_id: int):
    s = db_session()
    unit = _get_unit(unit_id, include_deleted=True)
    try:
        restore_unit(s, unit, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("vehicles.unit_detail", unit_id=unit.id))
    s.commit()
    flash(f"Vehicle unit {unit.stock_number} restored.", "success")
    return redirect(url_for("vehicles.unit_detail", unit_id=unit.id))


# ---- Reservations ----

@bp.get("/reservations")
@require_permission("reservations.view")
def reservations_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "status", "include_deleted"))
    q = scope_to_branch(
        live(s.query(VehicleReservation), VehicleReservation, parse_bool(filters["include_deleted"])), VehicleReservation, u
    )
    if filters["q"]:
        q = q.filter(VehicleReservation.reservation_ref.ilike(f"%{filters['q']}%"))
    if filters["status"]:
        q = q.filter(VehicleReservation.status == filters["status"])
    page = paginate(q.order_by(VehicleReservation.reservation_date.desc(), VehicleReservation.id.desc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Reservations",
        page=page,
        columns=RESERVATION_COLUMNS,
        list_endpoint="vehicles.reservations_list",
        detail_endpoint="vehicles.reservation_detail",
        id_arg="reservation_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Reference"),
            FormField("status", "Status", "select", choices(RESERVATION_STATUSES)),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("vehicles.reservations_new_get"),
    )


@bp.get("/reservations/new")
@require_permission("reservations.create")
def reservations_new_get():
    return render_form(
        title="New Reservation",
        fields=RESERVATION_FIELDS,
        values={"status": "pending", "vehicle_unit_id": request.args.get("vehicle_unit_id", "")},
        action_url=url_for("vehicles.reservations_new_post"),
        cancel_url=url_for("vehicles.reservations_list"),
    )


@bp.post("/reservations/new")
@require_permission("reservations.create")
def reservations_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(RESERVATION_FIELDS)
    errors = validate_reservation_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("vehicles.reservations_new_get"))
    unit = s.get(VehicleUnit, parse_int(payload.get("vehicle_unit_id")))
    if unit:
        ensure_branch_access(unit, u, "You can only reserve vehicle units from your branch.")
    try:
        reservation = create_reservation(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    except BusinessRuleError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("vehicles.reservations_new_get"))
    s.commit()
    flash(f"Reservation {reservation.reservation_ref} created.", "success")
    return redirect(url_for("vehicles.reservation_detail", reservation_id=reservation.id))


@bp.get("/reservations/<int:reservation_id>")
@require_permission("reservations.view")
def reservation_detail(reservation_id: int):
    r = _get_reservation(reservation_id, include_deleted=True)
    actions = _crud_actions(
        r,
        url_for("vehicles.reservation_edit_get", reservation_id=r.id),
        url_for("vehicles.reservation_delete", reservation_id=r.id),
        url_for("vehicles.reservation_restore", reservation_id=r.id),
        "reservation",
    )
    if not r.deleted_at and r.is_active:
        actions[1:1] = [
            Action("Release", url_for("vehicles.reservation_status", reservation_id=r.id, status="released"), "post", "success"),
            Action("Cancel", url_for("vehicles.reservation_status", reservation_id=r.id, status="cancelled"), "post", "warning", "Cancel this reservation?"),
        ]
    return render_detail(
        title=f"Reservation {r.reservation_ref}",
        obj=r,
        fields=[
            ("Customer", r.customer.display_name if r.customer else None),
            ("Vehicle unit", f"{r.unit.full_name} ({r.unit.stock_number})" if r.unit else None),
            ("Reservation date", r.reservation_date),
            ("Payment type", r.payment_type),
            ("Target release", r.target_release_date),
            ("Status", r.status),
            ("Remarks", r.remarks),
            ("Deleted at", r.deleted_at),
        ],
        actions=actions,
        back_url=url_for("vehicles.reservations_list"),
    )


@bp.get("/reservations/<int:reservation_id>/edit")
@require_permission("reservations.edit")
def reservation_edit_get(reservation_id: int):
    r = _get_reservation(reservation_id)
    fields = [f for f in RESERVATION_FIELDS if f.name not in ("customer_id", "vehicle_unit_id", "branch_id")]
    return render_form(
        title=f"Edit Reservation {r.reservation_ref}",
        fields=fields,
        values=form_values(r, fields),
        action_url=url_for("vehicles.reservation_edit_post", reservation_id=r.id),
        cancel_url=url_for("vehicles.reservation_detail", reservation_id=r.id),
    )


@bp.post("/reservations/<int:reservation_id>/edit")
@require_permission("reservations.edit")
def reservation_edit_post(reservation_id: int):
    s = db_session()
    r = _get_reservation(reservation_id)
    payload = form_payload(RESERVATION_FIELDS)
    payload.update(customer_id=r.customer_id, vehicle_unit_id=r.vehicle_unit_id)
    errors = validate_reservation_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("vehicles.reservation_edit_get", reservation_id=r.id))
    update_reservation(s, r, payload, _current_user())
    s.commit()
    flash("Reservation updated.", "success")
    return redirect(url_for("vehicles.reservation_detail", reservation_id=r.id))


@bp.post("/reservations/<int:reservation_id>/status/<status>")
@require_permission("reservations.edit")
def reservation_status(reservation_id: int, status: str):
    s = db_session()
    r = _get_reservation(reservation_id)
    try:
        set_reservation_status(s, r, status, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("vehicles.reservation_detail", reservation_id=r.id))
    s.commit()
    flash(f"Reservation {r.reservation_ref} {status}.", "success")
    return redirect(url_for("vehicles.reservation_detail", reservation_id=r.id))


@bp.post("/reservations/<int:reservation_id>/delete")
@require_permission("reservations.delete")
def reservation_delete(reservation_id: int):
    s = db_session()
    r = _get_reservation(reservation_id)
    delete_reservation(s, r, _current_user())
    s.commit()
    flash(f"Reservation {r.reservation_ref} deleted.", "success")
    return redirect(url_for("vehicles.reservations_list"))


@bp.post("/reservations/<int:reservation_id>/restore")
@require_permission("reservations.delete")
def reservation_restore(reservation_id: int):
    s = db_session()
    r = _get_reservation(reservation_id, include_deleted=True)
    try:
        restore_reservation(s, r, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("vehicles.reservation_detail", reservation_id=r.id))
    s.commit()
    flash(f"Reservation {r.reservation_ref} restored.", "success")
    return redirect(url_for("vehicles.reservation_detail", reservation_id=r.id))
