from __future__ import annotations

import json

from flask import Blueprint, abort, flash, g, redirect, request, url_for

from app.dms.constants import BRANCH_STATUSES
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.branches.models import Branch
from app.dms.modules.branches.service import (
    create_branch,
    delete_branch,
    restore_branch,
    update_branch,
    validate_branch_payload,
)
from app.dms.rbac import is_elevated, live, require_permission
from app.dms.utils import BusinessRuleError, page_arg, paginate, parse_bool
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

bp = Blueprint("branches", __name__)

LIST_COLUMNS = [
    Column("Code", "code"),
    Column("Name", "name"),
    Column("City", "city"),
    Column("Phone", "phone"),
    Column("Status", "status"),
]

FORM_FIELDS = [
    FormField("name", "Name", required=True),
    FormField("code", "Code", required=True, help="Short unique code, e.g. MNL01"),
    FormField("status", "Status", "select", choices(BRANCH_STATUSES)),
    FormField("address", "Address", "textarea"),
    FormField("city", "City"),
    FormField("state", "State / Province"),
    FormField("postal_code", "Postal code"),
    FormField("country", "Country"),
    FormField("phone", "Phone"),
    FormField("email", "Email", "email"),
    FormField("latitude", "Latitude", "number"),
    FormField("longitude", "Longitude", "number"),
    FormField("business_hours", "Business hours (JSON)", "textarea"),
    FormField("notes", "Notes", "textarea"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _require_elevated() -> None:
    if not is_elevated(_current_user()):
        g.missing_permission = "role:admin|auditor"
        abort(403)


def _get_branch(branch_id: int, include_deleted: bool = False) -> Branch:
    s = db_session()
    branch = s.get(Branch, branch_id)
    if not branch or (branch.deleted_at and not include_deleted):
        abort(404)
    return branch


@bp.get("/branches")
@require_permission("branches.view")
def branches_list():
    s = db_session()
    filters = current_filters(("q", "status", "include_deleted"))
    q = live(s.query(Branch), Branch, parse_bool(filters["include_deleted"]))
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(Branch.name.ilike(like) | Branch.code.ilike(like) | Branch.city.ilike(like))
    if filters["status"]:
        q = q.filter(Branch.status == filters["status"])
    page = paginate(q.order_by(Branch.name.asc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Branches",
        page=page,
        columns=LIST_COLUMNS,
        list_endpoint="branches.branches_list",
        detail_endpoint="branches.branch_detail",
        id_arg="branch_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("status", "Status", "select", choices(BRANCH_STATUSES)),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("branches.branches_new_get"),
    )


@bp.get("/branches/new")
@require_permission("branches.create")
def branches_new_get():
    _require_elevated()
    return render_form(title="New Branch", fields=FORM_FIELDS, values={"status": "active"}, action_url=url_for("branches.branches_new_post"))


@bp.post("/branches/new")
@require_permission("branches.create")
def branches_new_post():
    _require_elevated()
    s = db_session()
    u = _current_user()
    payload = form_payload(FORM_FIELDS)
    errors = validate_branch_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("branches.branches_new_get"))
    branch = create_branch(s, payload, u)
    s.commit()
    flash(f"Branch {branch.name} created.", "success")
    return redirect(url_for("branches.branch_detail", branch_id=branch.id))


@bp.get("/branches/<int:branch_id>")
@require_permission("branches.view")
def branch_detail(branch_id: int):
    branch = _get_branch(branch_id, include_deleted=True)
    users = [u for u in db_session().query(User).filter(User.branch_id == branch.id, User.deleted_at.is_(None)).all()]
    user_cols = [Column("Name", "display_name"), Column("Email", "email"), Column("Active", "is_active")]
    actions = [Action("Edit", url_for("branches.branch_edit_get", branch_id=branch.id))]
    if branch.deleted_at:
        actions = [Action("Restore", url_for("branches.branch_restore", branch_id=branch.id), "post", "success")]
    else:
        actions.append(Action("Delete", url_for("branches.branch_delete", branch_id=branch.id), "post", "danger", "Delete this branch?"))
    return render_detail(
        title=f"Branch {branch.code}",
        obj=branch,
        fields=[
            ("Name", branch.name),
            ("Code", branch.code),
            ("Status", branch.status),
            ("Address", branch.full_address),
            ("Phone", branch.phone),
            ("Email", branch.email),
            ("Business hours", branch.business_hours),
            ("Notes", branch.notes),
            ("Deleted at", branch.deleted_at),
        ],
        actions=actions,
        related=[Related("Users", user_cols, table_rows(users, user_cols))],
        back_url=url_for("branches.branches_list"),
    )


@bp.get("/branches/<int:branch_id>/edit")
@require_permission("branches.edit")
def branch_edit_get(branch_id: int):
    _require_elevated()
    branch = _get_branch(branch_id)
    values = form_values(branch, FORM_FIELDS)
    if branch.business_hours:
        values["business_hours"] = json.dumps(branch.business_hours)
    return render_form(
        title=f"Edit Branch {branch.code}",
        fields=FORM_FIELDS,
        values=values,
        action_url=url_for("branches.branch_edit_post", branch_id=branch.id),
        cancel_url=url_for("branches.branch_detail", branch_id=branch.id),
    )


@bp.post("/branches/<int:branch_id>/edit")
@require_permission("branches.edit")
def branch_edit_post(branch_id: int):
    _require_elevated()
    s = db_session()
    branch = _get_branch(branch_id)
    payload = form_payload(FORM_FIELDS)
    errors = validate_branch_payload(s, payload, branch_id=branch.id)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("branches.branch_edit_get", branch_id=branch.id))
    update_branch(s, branch, payload, _current_user())
    s.commit()
    flash("Branch updated.", "success")
    return redirect(url_for("branches.branch_detail", branch_id=branch.id))


@bp.post("/branches/<int:branch_id>/delete")
@require_permission("branches.delete")
def branch_delete(branch_id: int):
    _require_elevated()
    s = db_session()
    branch = _get_branch(branch_id)
    try:
        delete_branch(s, branch, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("branches.branch_detail", branch_id=branch.id))
    s.commit()
    flash(f"Branch {branch.name} deleted.", "success")
    return redirect(url_for("branches.branches_list"))


@bp.post("/branches/<int:branch_id>/restore")
@require_permission("branches.delete")
def branch_restore(branch_id: int):
    _require_elevated()
    s = db_session()
    branch = _get_branch(branch_id, include_deleted=True)
    try:
        restore_branch(s, branch, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("branches.branch_detail", branch_id=branch.id))
    s.commit()
    flash(f"Branch {branch.name} restored.", "success")
    return redirect(url_for("branches.branch_detail", branch_id=branch.id))
