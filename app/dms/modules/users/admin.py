from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, request, session, url_for

from app.dms.db import db_session
from app.dms.models import Permission, Role, User
from app.dms.modules.branches.models import Branch
from app.dms.modules.mfa.guard import mfa_challenge, require_mfa
from app.dms.modules.mfa.service import is_verified
from app.dms.modules.users.service import (
    create_role,
    create_user,
    delete_role,
    delete_user,
    restore_user,
    set_user_roles,
    update_role,
    update_user,
    validate_role_payload,
    validate_user_payload,
)
from app.dms.rbac import live, require_permission
from app.dms.utils import BusinessRuleError, page_arg, paginate, parse_bool, parse_int
from app.dms.views import (
    Action,
    Column,
    FormField,
    Related,
    current_filters,
    form_payload,
    form_values,
    render_detail,
    render_form,
    render_list,
    table_rows,
)

bp = Blueprint("users", __name__)

USER_COLUMNS = [
    Column("Name", "name"),
    Column("Email", "email"),
    Column("Branch", "branch.name"),
    Column("Roles", "role_keys"),
    Column("Active", "is_active"),
    Column("Last login", "last_login_at"),
]

ROLE_COLUMNS = [Column("Key", "key"), Column("Name", "name"), Column("Description", "description")]
PERMISSION_COLUMNS = [Column("Key", "key"), Column("Name", "name")]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _branch_options() -> tuple[tuple[str, str], ...]:
    branches = live(db_session().query(Branch), Branch).order_by(Branch.name.asc()).all()
    return tuple((str(b.id), f"{b.code} - {b.name}") for b in branches)


def _role_options() -> tuple[tuple[str, str], ...]:
    return tuple((r.key, r.name) for r in db_session().query(Role).order_by(Role.name.asc()).all())


def _user_fields(creating: bool) -> list[FormField]:
    fields = [
        FormField("name", "Name"),
        FormField("email", "Email", "email", required=True),
        FormField("branch_id", "Branch", "select", _branch_options()),
        FormField("is_active", "Active", "checkbox"),
    ]
    if creating:
        fields.append(FormField("role_keys", "Roles", "checkboxes", _role_options()))
    fields += [
        FormField("password", "Password", "password", required=creating, help=None if creating else "Leave blank to keep the current password"),
        FormField("password_confirm", "Confirm password", "password", required=creating),
    ]
    return fields


def _role_fields(creating: bool) -> list[FormField]:
    perms = tuple((p.key, p.key) for p in db_session().query(Permission).order_by(Permission.key.asc()).all())
    fields = [FormField("key", "Key", required=True, help="e.g. finance_officer")] if creating else []
    return fields + [
        FormField("name", "Name", required=True),
        FormField("description", "Description", "textarea"),
        FormField("permission_keys", "Permissions", "checkboxes", perms),
    ]


def _get_user(user_id: int, include_deleted: bool = False) -> User:
    user = db_session().get(User, user_id)
    if not user or (user.deleted_at and not include_deleted):
        abort(404)
    return user


def _get_role(role_id: int) -> Role:
    role = db_session().get(Role, role_id)
    if not role:
        abort(404)
    return role


def _flash_errors(errors: list[str]) -> None:
    for e in errors:
        flash(e, "danger")


# ---- Users ----

@bp.get("/users")
@require_permission("users.view")
def users_list():
    s = db_session()
    filters = current_filters(("q", "role", "branch_id", "include_deleted"))
    q = live(s.query(User), User, parse_bool(filters["include_deleted"]))
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(User.name.ilike(like) | User.email.ilike(like))
    if filters["role"]:
        q = q.filter(User.roles.any(Role.key == filters["role"]))
    if filters["branch_id"]:
        q = q.filter(User.branch_id == parse_int(filters["branch_id"]))
    page = paginate(q.order_by(User.email.asc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Users",
        page=page,
        columns=USER_COLUMNS,
        list_endpoint="users.users_list",
        detail_endpoint="users.user_detail",
        id_arg="user_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("role", "Role", "select", _role_options()),
            FormField("branch_id", "Branch", "select", _branch_options()),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("users.users_new_get"),
        extra_actions=[Action("Roles", url_for("users.roles_list")), Action("Permissions", url_for("users.permissions_list"))],
    )


@bp.get("/users/new")
@require_permission("users.create")
def users_new_get():
    return render_form(
        title="New User",
        fields=_user_fields(creating=True),
        values={"is_active": True, "role_keys": []},
        action_url=url_for("users.users_new_post"),
        cancel_url=url_for("users.users_list"),
    )


@bp.post("/users/new")
@require_permission("users.create")
def users_new_post():
    s = db_session()
    fields = _user_fields(creating=True)
    payload = form_payload(fields)
    errors = validate_user_payload(s, payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("users.users_new_get"))
    user = create_user(s, payload, payload.get("role_keys") or [], _current_user())
    s.commit()
    flash(f"Account created for {user.email}.", "success")
    return redirect(url_for("users.user_detail", user_id=user.id))


@bp.get("/users/<int:user_id>")
@require_permission("users.view")
def user_detail(user_id: int):
    user = _get_user(user_id, include_deleted=True)
    if user.deleted_at:
        actions = [Action("Restore", url_for("users.user_restore", user_id=user.id), "post", "success")]
    else:
        actions = [
            Action("Edit", url_for("users.user_edit_get", user_id=user.id)),
            Action("Change roles", url_for("users.user_roles_get", user_id=user.id)),
            Action("Delete", url_for("users.user_delete", user_id=user.id), "post", "danger", "Delete this user?"),
        ]
    return render_detail(
        title=f"User: {user.display_name}",
        obj=user,
        fields=[
            ("Name", user.name),
            ("Email", user.email),
            ("Branch", user.branch.name if user.branch else None),
            ("Roles", user.role_keys),
            ("Active", user.is_active),
            ("Last login", user.last_login_at),
            ("Created", user.created_at),
            ("Deleted at", user.deleted_at),
        ],
        actions=actions,
        back_url=url_for("users.users_list"),
    )


@bp.get("/users/<int:user_id>/edit")
@require_permission("users.edit")
def user_edit_get(user_id: int):
    user = _get_user(user_id)
    if "admin" in user.role_keys and not is_verified(session, "edit_admin_user"):
        return mfa_challenge("edit_admin_user")
    fields = _user_fields(creating=False)
    return render_form(
        title=f"Edit {user.email}",
        fields=fields,
        values=form_values(user, fields) | {"password": "", "password_confirm": ""},
        action_url=url_for("users.user_edit_post", user_id=user.id),
        cancel_url=url_for("users.user_detail", user_id=user.id),
    )


@bp.post("/users/<int:user_id>/edit")
@require_permission("users.edit")
def user_edit_post(user_id: int):
    s = db_session()
    user = _get_user(user_id)
    if "admin" in user.role_keys and not is_verified(session, "edit_admin_user"):
        return mfa_challenge("edit_admin_user")
    payload = form_payload(_user_fields(creating=False))
    errors = validate_user_payload(s, payload, user_id=user.id)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("users.user_edit_get", user_id=user.id))
    try:
        update_user(s, user, payload, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("users.user_edit_get", user_id=user.id))
    s.commit()
    flash(f"Account updated for {user.email}.", "success")
    return redirect(url_for("users.user_detail", user_id=user.id))


@bp.get("/users/<int:user_id>/roles")
@require_permission("users.edit")
def user_roles_get(user_id: int):
    user = _get_user(user_id)
    fields = [FormField("role_keys", "Roles", "checkboxes", _role_options())]
    return render_form(
        title=f"Roles for {user.email}",
        fields=fields,
        values={"role_keys": user.role_keys},
        action_url=url_for("users.user_roles_post", user_id=user.id),
        cancel_url=url_for("users.user_detail", user_id=user.id),
    )


@bp.post("/users/<int:user_id>/roles")
@require_permission("users.edit")
@require_mfa("change_user_role")
def user_roles_post(user_id: int):
    s = db_session()
    user = _get_user(user_id)
    try:
        set_user_roles(s, user, request.form.getlist("role_keys"), _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("users.user_roles_get", user_id=user.id))
    s.commit()
    flash(f"Roles updated for {user.email}.", "success")
    return redirect(url_for("users.user_detail", user_id=user.id))


@bp.post("/users/<int:user_id>/delete")
@require_permission("users.delete")
@require_mfa("delete_user")
def user_delete(user_id: int):
    s = db_session()
    user = _get_user(user_id)
    try:
        delete_user(s, user, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("users.user_detail", user_id=user.id))
    s.commit()
    flash(f"User {user.email} deleted.", "success")
    return redirect(url_for("users.users_list"))


@bp.post("/users/<int:user_id>/restore")
@require_permission("users.delete")
def user_restore(user_id: int):
    s = db_session()
    user = _get_user(user_id, include_deleted=True)
    try:
        restore_user(s, user, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("users.user_detail", user_id=user.id))
    s.commit()
    flash(f"User {user.email} restored.", "success")
    return redirect(url_for("users.user_detail", user_id=user.id))


# ---- Roles ----

@bp.get("/roles")
@require_permission("roles.view")
def roles_list():
    s = db_session()
    filters = current_filters(("q",))
    q = s.query(Role)
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(Role.key.ilike(like) | Role.name.ilike(like))
    page = paginate(q.order_by(Role.name.asc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Roles",
        page=page,
        columns=ROLE_COLUMNS,
        list_endpoint="users.roles_list",
        detail_endpoint="users.role_detail",
        id_arg="role_id",
        filters=filters,
        filter_fields=[FormField("q", "Search")],
        new_url=url_for("users.roles_new_get"),
        extra_actions=[Action("Users", url_for("users.users_list")), Action("Permissions", url_for("users.permissions_list"))],
    )


@bp.get("/roles/new")
@require_permission("roles.create")
def roles_new_get():
    return render_form(
        title="New Role",
        fields=_role_fields(creating=True),
        values={"permission_keys": []},
        action_url=url_for("users.roles_new_post"),
        cancel_url=url_for("users.roles_list"),
    )


@bp.post("/roles/new")
@require_permission("roles.create")
def roles_new_post():
    s = db_session()
    payload = form_payload(_role_fields(creating=True))
    errors = validate_role_payload(s, payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("users.roles_new_get"))
    role = create_role(s, payload, payload.get("permission_keys") or [], _current_user())
    s.commit()
    flash(f"Role {role.key} created.", "success")
    return redirect(url_for("users.role_detail", role_id=role.id))


@bp.get("/roles/<int:role_id>")
@require_permission("roles.view")
def role_detail(role_id: int):
    role = _get_role(role_id)
    return render_detail(
        title=f"Role: {role.name}",
        obj=role,
        fields=[("Key", role.key), ("Name", role.name), ("Description", role.description), ("Users", len(role.users))],
        actions=[
            Action("Edit", url_for("users.role_edit_get", role_id=role.id)),
            Action("Delete", url_for("users.role_delete", role_id=role.id), "post", "danger", "Delete this role?"),
        ],
        related=[
            Related("Permissions", PERMISSION_COLUMNS, table_rows(sorted(role.permissions, key=lambda p: p.key), PERMISSION_COLUMNS)),
            Related("Users", USER_COLUMNS[:2], table_rows(role.users, USER_COLUMNS[:2], "users.user_detail", "user_id")),
        ],
        back_url=url_for("users.roles_list"),
    )


@bp.get("/roles/<int:role_id>/edit")
@require_permission("roles.edit")
def role_edit_get(role_id: int):
    role = _get_role(role_id)
    fields = _role_fields(creating=False)
    values = form_values(role, fields)
    values["permission_keys"] = [p.key for p in role.permissions]
    return render_form(
        title=f"Edit role {role.key}",
        fields=fields,
        values=values,
        action_url=url_for("users.role_edit_post", role_id=role.id),
        cancel_url=url_for("users.role_detail", role_id=role.id),
    )


@bp.post("/roles/<int:role_id>/edit")
@require_permission("roles.edit")
def role_edit_post(role_id: int):
    s = db_session()
    role = _get_role(role_id)
    payload = form_payload(_role_fields(creating=False))
    errors = validate_role_payload(s, payload, role_id=role.id)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("users.role_edit_get", role_id=role.id))
    update_role(s, role, payload, payload.get("permission_keys") or [], _current_user())
    s.commit()
    flash(f"Role {role.key} updated.", "success")
    return redirect(url_for("users.role_detail", role_id=role.id))


@bp.post("/roles/<int:role_id>/delete")
@require_permission("roles.delete")
@require_mfa("delete_role")
def role_delete(role_id: int):
    s = db_session()
    role = _get_role(role_id)
    key = role.key
    try:
        delete_role(s, role, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("users.role_detail", role_id=role.id))
    s.commit()
    flash(f"Role {key} deleted.", "success")
    return redirect(url_for("users.roles_list"))


# ---- Permissions ----

@bp.get("/permissions")
@require_permission("roles.view")
def permissions_list():
    s = db_session()
    filters = current_filters(("q",))
    q = s.query(Permission)
    if filters["q"]:
        q = q.filter(Permission.key.ilike(f"%{filters['q']}%"))
    page = paginate(q.order_by(Permission.key.asc()), page_arg(request.args.get("page")), 50)
    return render_list(
        title="Permissions",
        page=page,
        columns=PERMISSION_COLUMNS,
        list_endpoint="users.permissions_list",
        filters=filters,
        filter_fields=[FormField("q", "Search")],
        extra_actions=[Action("Roles", url_for("users.roles_list"))],
    )
