from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, request, url_for

from app.dms.constants import PART_CATEGORIES, PART_CONDITIONS, PART_STATUSES
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.parts.models import PartInventory
from app.dms.modules.parts.service import (
    adjust_stock,
    create_part,
    delete_part,
    filter_stock,
    parts_stats,
    restore_part,
    update_part,
    validate_part_payload,
)
from app.dms.rbac import default_branch_id, ensure_branch_access, live, require_permission, scope_to_branch
from app.dms.utils import BusinessRuleError, page_arg, paginate, parse_bool, parse_int
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

bp = Blueprint("parts", __name__)

LIST_COLUMNS = [
    Column("Part #", "part_number"),
    Column("Name", "part_name"),
    Column("Category", "category"),
    Column("On hand", "quantity_on_hand"),
    Column("Available", "available_quantity"),
    Column("Stock", "stock_status"),
    Column("Price", "selling_price"),
    Column("Location", "full_location"),
]

FORM_FIELDS = [
    FormField("part_name", "Part name", required=True),
    FormField("description", "Description", "textarea"),
    FormField("category", "Category", "select", choices(PART_CATEGORIES), required=True),
    FormField("manufacturer", "Manufacturer"),
    FormField("oem_part_number", "OEM part number"),
    FormField("barcode", "Barcode"),
    FormField("quantity_on_hand", "Quantity on hand", "number"),
    FormField("quantity_reserved", "Quantity reserved", "number"),
    FormField("minimum_stock_level", "Minimum stock level", "number"),
    FormField("maximum_stock_level", "Maximum stock level", "number"),
    FormField("reorder_quantity", "Reorder quantity", "number"),
    FormField("warehouse_location", "Warehouse location"),
    FormField("aisle", "Aisle"),
    FormField("rack", "Rack"),
    FormField("bin", "Bin"),
    FormField("unit_cost", "Unit cost", "number", required=True),
    FormField("selling_price", "Selling price", "number", required=True),
    FormField("condition", "Condition", "select", choices(PART_CONDITIONS)),
    FormField("status", "Status", "select", choices(PART_STATUSES)),
    FormField("is_genuine", "Genuine part", "checkbox"),
    FormField("warranty_months", "Warranty (months)", "number"),
    FormField("primary_supplier", "Primary supplier"),
    FormField("notes", "Notes", "textarea"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]

ADJUST_FIELDS = [
    FormField("delta", "Quantity change", "number", required=True, help="Negative to remove stock"),
    FormField("reason", "Reason", "textarea"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_part(part_id: int, include_deleted: bool = False) -> PartInventory:
    part = db_session().get(PartInventory, part_id)
    if not part or (part.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(part, _current_user(), "You can only access parts from your branch.")
    return part


@bp.get("/parts")
@require_permission("parts.view")
def parts_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "category", "status", "stock", "include_deleted"))
    q = scope_to_branch(live(s.query(PartInventory), PartInventory, parse_bool(filters["include_deleted"])), PartInventory, u)
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(
            PartInventory.part_number.ilike(like)
            | PartInventory.part_name.ilike(like)
            | PartInventory.oem_part_number.ilike(like)
            | PartInventory.barcode.ilike(like)
        )
    if filters["category"]:
        q = q.filter(PartInventory.category == filters["category"])
    if filters["status"]:
        q = q.filter(PartInventory.status == filters["status"])
    q = filter_stock(q, filters["stock"])
    page = paginate(q.order_by(PartInventory.part_name), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Parts Inventory",
        page=page,
        columns=LIST_COLUMNS,
        list_endpoint="parts.parts_list",
        detail_endpoint="parts.part_detail",
        id_arg="part_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("category", "Category", "select", choices(PART_CATEGORIES)),
            FormField("status", "Status", "select", choices(PART_STATUSES)),
            FormField("stock", "Stock", "select", (("low", "Low stock"), ("out", "Out of stock"), ("in", "In stock"))),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("parts.parts_new_get"),
        stats=parts_stats(scope_to_branch(live(s.query(PartInventory), PartInventory), PartInventory, u)),
    )


@bp.get("/parts/new")
@require_permission("parts.create")
def parts_new_get():
    return render_form(
        title="New Part",
        fields=FORM_FIELDS,
        values={"category": "other", "condition": "new", "status": "active", "is_genuine": True, "quantity_on_hand": "0"},
        action_url=url_for("parts.parts_new_post"),
        cancel_url=url_for("parts.parts_list"),
    )


@bp.post("/parts/new")
@require_permission("parts.create")
def parts_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(FORM_FIELDS)
    errors = validate_part_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("parts.parts_new_get"))
    part = create_part(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash(f"Part {part.part_number} created.", "success")
    return redirect(url_for("parts.part_detail", part_id=part.id))


@bp.get("/parts/<int:part_id>")
@require_permission("parts.view")
def part_detail(part_id: int):
    part = _get_part(part_id, include_deleted=True)
    if part.deleted_at:
        actions = [Action("Restore", url_for("parts.part_restore", part_id=part.id), "post", "success")]
    else:
        actions = [
            Action("Edit", url_for("parts.part_edit_get", part_id=part.id)),
            Action("Adjust stock", url_for("parts.part_adjust_get", part_id=part.id)),
            Action("Delete", url_for("parts.part_delete", part_id=part.id), "post", "danger", "Delete this part?"),
        ]
    return render_detail(
        title=f"{part.part_name} ({part.part_number})",
        obj=part,
        fields=[
            ("Category", part.category),
            ("Manufacturer", part.manufacturer),
            ("OEM part #", part.oem_part_number),
            ("Barcode", part.barcode),
            ("On hand", part.quantity_on_hand),
            ("Reserved", part.quantity_reserved),
            ("Available", part.available_quantity),
            ("Stock status", part.stock_status),
            ("Min / max", f"{part.minimum_stock_level} / {part.maximum_stock_level or '-'}"),
            ("Reorder qty", part.reorder_quantity),
            ("Location", part.full_location),
            ("Unit cost", part.unit_cost),
            ("Selling price", part.selling_price),
            ("Markup %", part.markup_percentage),
            ("Condition", part.condition),
            ("Status", part.status),
            ("Genuine", part.is_genuine),
            ("Warranty (months)", part.warranty_months),
            ("Supplier", part.primary_supplier),
            ("Notes", part.notes),
            ("Deleted at", part.deleted_at),
        ],
        actions=actions,
        back_url=url_for("parts.parts_list"),
    )


@bp.get("/parts/<int:part_id>/edit")
@require_permission("parts.edit")
def part_edit_get(part_id: int):
    part = _get_part(part_id)
    return render_form(
        title=f"Edit {part.part_number}",
        fields=FORM_FIELDS,
        values=form_values(part, FORM_FIELDS),
        action_url=url_for("parts.part_edit_post", part_id=part.id),
        cancel_url=url_for("parts.part_detail", part_id=part.id),
    )


@bp.post("/parts/<int:part_id>/edit")
@require_permission("parts.edit")
def part_edit_post(part_id: int):
    s = db_session()
    part = _get_part(part_id)
    payload = form_payload(FORM_FIELDS)
    errors = validate_part_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("parts.part_edit_get", part_id=part.id))
    update_part(s, part, payload, _current_user())
    s.commit()
    flash("Part updated.", "success")
    return redirect(url_for("parts.part_detail", part_id=part.id))


@bp.get("/parts/<int:part_id>/adjust")
@require_permission("parts.adjust")
def part_adjust_get(part_id: int):
    part = _get_part(part_id)
    return render_form(
        title=f"Adjust stock: {part.part_name} ({part.quantity_on_hand} on hand)",
        fields=ADJUST_FIELDS,
        action_url=url_for("parts.part_adjust_post", part_id=part.id),
        cancel_url=url_for("parts.part_detail", part_id=part.id),
    )


@bp.post("/parts/<int:part_id>/adjust")
@require_permission("parts.adjust")
def part_adjust_post(part_id: int):
    s = db_session()
    part = _get_part(part_id)
    delta = parse_int(request.form.get("delta"))
    if delta is None:
        flash("Quantity change must be a whole number.", "danger")
        return redirect(url_for("parts.part_adjust_get", part_id=part.id))
    try:
        adjust_stock(s, part, delta, request.form.get("reason"), _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("parts.part_adjust_get", part_id=part.id))
    s.commit()
    flash(f"Stock adjusted. {part.quantity_on_hand} on hand.", "success")
    return redirect(url_for("parts.part_detail", part_id=part.id))


@bp.post("/parts/<int:part_id>/delete")
@require_permission("parts.delete")
def part_delete(part_id: int):
    s = db_session()
    part = _get_part(part_id)
    delete_part(s, part, _current_user())
    s.commit()
    flash(f"Part {part.part_number} deleted.", "success")
    return redirect(url_for("parts.parts_list"))


@bp.post("/parts/<int:part_id>/restore")
@require_permission("parts.delete")
def part_restore(part_id: int):
    s = db_session()
    part = _get_part(part_id, include_deleted=True)
    try:
        restore_part(s, part, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("parts.part_detail", part_id=part.id))
    s.commit()
    flash(f"Part {part.part_number} restored.", "success")
    return redirect(url_for("parts.part_detail", part_id=part.id))
