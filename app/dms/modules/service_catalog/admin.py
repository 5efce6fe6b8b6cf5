from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, request, url_for

from app.dms.constants import COMMON_SERVICE_CATEGORIES, INTERVAL_TYPES, SERVICE_TYPE_CATEGORIES, SERVICE_TYPE_STATUSES
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.service_catalog.models import CommonService, ServiceType
from app.dms.modules.service_catalog.service import (
    create_common_service,
    create_service_type,
    delete_common_service,
    delete_service_type,
    restore_common_service,
    restore_service_type,
    update_common_service,
    update_service_type,
    validate_common_service_payload,
    validate_service_type_payload,
)
from app.dms.rbac import default_branch_id, ensure_branch_access, live, require_permission, scope_to_branch
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

bp = Blueprint("service_catalog", __name__)

COMMON_COLUMNS = [
    Column("Code", "code"),
    Column("Name", "name"),
    Column("Category", "category"),
    Column("Hours", "estimated_duration"),
    Column("Price", "standard_price"),
    Column("Active", "is_active"),
]

COMMON_FIELDS = [
    FormField("name", "Name", required=True),
    FormField("code", "Code", help="Leave blank to generate from the name"),
    FormField("description", "Description", "textarea"),
    FormField("category", "Category", "select", choices(COMMON_SERVICE_CATEGORIES), required=True),
    FormField("estimated_duration", "Estimated duration (hours)", "number"),
    FormField("standard_price", "Standard price", "number"),
    FormField("currency", "Currency"),
    FormField("is_active", "Active", "checkbox"),
]

TYPE_COLUMNS = [
    Column("Code", "code"),
    Column("Name", "name"),
    Column("Category", "category"),
    Column("Interval", "interval_description"),
    Column("Base price", "base_price"),
    Column("Total price", "total_price"),
    Column("Status", "status"),
]

TYPE_FIELDS = [
    FormField("name", "Name", required=True),
    FormField("code", "Code", help="Leave blank to generate from the name"),
    FormField("description", "Description", "textarea"),
    FormField("category", "Category", "select", choices(SERVICE_TYPE_CATEGORIES), required=True),
    FormField("interval_type", "Interval type", "select", choices(INTERVAL_TYPES), required=True),
    FormField("interval_value", "Interval value", "number", help="Kilometres or months"),
    FormField("estimated_duration", "Estimated duration (hours)", "number"),
    FormField("base_price", "Base price", "number"),
    FormField("currency", "Currency"),
    FormField("status", "Status", "select", choices(SERVICE_TYPE_STATUSES)),
    FormField("is_available", "Available", "checkbox"),
    FormField("common_service_ids", "Common service IDs", help="Comma separated, in the order they are performed"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_common(common_service_id: int, include_deleted: bool = False) -> CommonService:
    cs = db_session().get(CommonService, common_service_id)
    if not cs or (cs.deleted_at and not include_deleted):
        abort(404)
    return cs


def _get_type(service_type_id: int, include_deleted: bool = False) -> ServiceType:
    st = db_session().get(ServiceType, service_type_id)
    if not st or (st.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(st, _current_user(), "You can only access service types from your branch.")
    return st


# ---- Common services ----

@bp.get("/common-services")
@require_permission("service_types.view")
def common_services_list():
    s = db_session()
    filters = current_filters(("q", "category", "include_deleted"))
    q = live(s.query(CommonService), CommonService, parse_bool(filters["include_deleted"]))
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(CommonService.name.ilike(like) | CommonService.code.ilike(like))
    if filters["category"]:
        q = q.filter(CommonService.category == filters["category"])
    page = paginate(q.order_by(CommonService.name), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Common Services",
        page=page,
        columns=COMMON_COLUMNS,
        list_endpoint="service_catalog.common_services_list",
        detail_endpoint="service_catalog.common_service_detail",
        id_arg="common_service_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("category", "Category", "select", choices(COMMON_SERVICE_CATEGORIES)),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("service_catalog.common_services_new_get"),
    )


@bp.get("/common-services/new")
@require_permission("service_types.create")
def common_services_new_get():
    return render_form(
        title="New Common Service",
        fields=COMMON_FIELDS,
        values={"category": "maintenance", "currency": "PHP", "is_active": True},
        action_url=url_for("service_catalog.common_services_new_post"),
        cancel_url=url_for("service_catalog.common_services_list"),
    )


@bp.post("/common-services/new")
@require_permission("service_types.create")
def common_services_new_post():
    s = db_session()
    payload = form_payload(COMMON_FIELDS)
    errors = validate_common_service_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("service_catalog.common_services_new_get"))
    cs = create_common_service(s, payload, _current_user())
    s.commit()
    flash(f"Common service {cs.code} created.", "success")
    return redirect(url_for("service_catalog.common_service_detail", common_service_id=cs.id))


@bp.get("/common-services/<int:common_service_id>")
@require_permission("service_types.view")
def common_service_detail(common_service_id: int):
    cs = _get_common(common_service_id, include_deleted=True)
    if cs.deleted_at:
        actions = [Action("Restore", url_for("service_catalog.common_service_restore", common_service_id=cs.id), "post", "success")]
    else:
        actions = [
            Action("Edit", url_for("service_catalog.common_service_edit_get", common_service_id=cs.id)),
            Action("Delete", url_for("service_catalog.common_service_delete", common_service_id=cs.id), "post", "danger", "Delete this service?"),
        ]
    return render_detail(
        title=f"{cs.name} ({cs.code})",
        obj=cs,
        fields=[(f.label, getattr(cs, f.name)) for f in COMMON_FIELDS] + [("Deleted at", cs.deleted_at)],
        actions=actions,
        back_url=url_for("service_catalog.common_services_list"),
    )


@bp.get("/common-services/<int:common_service_id>/edit")
@require_permission("service_types.edit")
def common_service_edit_get(common_service_id: int):
    cs = _get_common(common_service_id)
    return render_form(
        title=f"Edit {cs.code}",
        fields=COMMON_FIELDS,
        values=form_values(cs, COMMON_FIELDS),
        action_url=url_for("service_catalog.common_service_edit_post", common_service_id=cs.id),
        cancel_url=url_for("service_catalog.common_service_detail", common_service_id=cs.id),
    )


@bp.post("/common-services/<int:common_service_id>/edit")
@require_permission("service_types.edit")
def common_service_edit_post(common_service_id: int):
    s = db_session()
    cs = _get_common(common_service_id)
    payload = form_payload(COMMON_FIELDS)
    errors = validate_common_service_payload(s, payload, cs.id)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("service_catalog.common_service_edit_get", common_service_id=cs.id))
    update_common_service(s, cs, payload, _current_user())
    s.commit()
    flash("Common service updated.", "success")
    return redirect(url_for("service_catalog.common_service_detail", common_service_id=cs.id))


@bp.post("/common-services/<int:common_service_id>/delete")
@require_permission("service_types.delete")
def common_service_delete(common_service_id: int):
    s = db_session()
    cs = _get_common(common_service_id)
    delete_common_service(s, cs, _current_user())
    s.commit()
    flash(f"Common service {cs.code} deleted.", "success")
    return redirect(url_for("service_catalog.common_services_list"))


@bp.post("/common-services/<int:common_service_id>/restore")
@require_permission("service_types.delete")
def common_service_restore(common_service_id: int):
    s = db_session()
    cs = _get_common(common_service_id, include_deleted=True)
    try:
        restore_common_service(s, cs, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("service_catalog.common_service_detail", common_service_id=cs.id))
    s.commit()
    flash(f"Common service {cs.code} restored.", "success")
    return redirect(url_for("service_catalog.common_service_detail", common_service_id=cs.id))


# ---- Service types ----

@bp.get("/service-types")
@require_permission("service_types.view")
def service_types_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "category", "interval_type", "status", "include_deleted"))
    q = scope_to_branch(live(s.query(ServiceType), ServiceType, parse_bool(filters["include_deleted"])), ServiceType, u)
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(ServiceType.name.ilike(like) | ServiceType.code.ilike(like))
    for key in ("category", "interval_type", "status"):
        if filters[key]:
            q = q.filter(getattr(ServiceType, key) == filters[key])
    page = paginate(q.order_by(ServiceType.name), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Service Types",
        page=page,
        columns=TYPE_COLUMNS,
        list_endpoint="service_catalog.service_types_list",
        detail_endpoint="service_catalog.service_type_detail",
        id_arg="service_type_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("category", "Category", "select", choices(SERVICE_TYPE_CATEGORIES)),
            FormField("interval_type", "Interval", "select", choices(INTERVAL_TYPES)),
            FormField("status", "Status", "select", choices(SERVICE_TYPE_STATUSES)),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("service_catalog.service_types_new_get"),
    )


@bp.get("/service-types/new")
@require_permission("service_types.create")
def service_types_new_get():
    return render_form(
        title="New Service Type",
        fields=TYPE_FIELDS,
        values={"category": "maintenance", "interval_type": "on_demand", "status": "active", "currency": "PHP", "is_available": True},
        action_url=url_for("service_catalog.service_types_new_post"),
        cancel_url=url_for("service_catalog.service_types_list"),
    )


@bp.post("/service-types/new")
@require_permission("service_types.create")
def service_types_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(TYPE_FIELDS)
    errors = validate_service_type_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("service_catalog.service_types_new_get"))
    st = create_service_type(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash(f"Service type {st.code} created.", "success")
    return redirect(url_for("service_catalog.service_type_detail", service_type_id=st.id))


@bp.get("/service-types/<int:service_type_id>")
@require_permission("service_types.view")
def service_type_detail(service_type_id: int):
    st = _get_type(service_type_id, include_deleted=True)
    if st.deleted_at:
        actions = [Action("Restore", url_for("service_catalog.service_type_restore", service_type_id=st.id), "post", "success")]
    else:
        actions = [
            Action("Edit", url_for("service_catalog.service_type_edit_get", service_type_id=st.id)),
            Action("Delete", url_for("service_catalog.service_type_delete", service_type_id=st.id), "post", "danger", "Delete this service type?"),
        ]
    link_cols = [Column("#", "sequence"), Column("Code", "common_service.code"), Column("Service", "common_service.name"),
                 Column("Hours", "common_service.estimated_duration"), Column("Price", "common_service.standard_price")]
    return render_detail(
        title=f"{st.name} ({st.code})",
        obj=st,
        fields=[
            ("Category", st.category),
            ("Interval", st.interval_description),
            ("Estimated duration (h)", st.estimated_duration),
            ("Total duration (h)", st.total_duration),
            ("Base price", st.base_price),
            ("Total price", st.total_price),
            ("Currency", st.currency),
            ("Status", st.status),
            ("Available", st.is_available),
            ("Description", st.description),
            ("Deleted at", st.deleted_at),
        ],
        actions=actions,
        related=[Related("Included common services", link_cols, table_rows(st.links, link_cols))],
        back_url=url_for("service_catalog.service_types_list"),
    )


@bp.get("/service-types/<int:service_type_id>/edit")
@require_permission("service_types.edit")
def service_type_edit_get(service_type_id: int):
    st = _get_type(service_type_id)
    values = form_values(st, TYPE_FIELDS)
    values["common_service_ids"] = ", ".join(str(link.common_service_id) for link in st.links)
    return render_form(
        title=f"Edit {st.code}",
        fields=TYPE_FIELDS,
        values=values,
        action_url=url_for("service_catalog.service_type_edit_post", service_type_id=st.id),
        cancel_url=url_for("service_catalog.service_type_detail", service_type_id=st.id),
    )


@bp.post("/service-types/<int:service_type_id>/edit")
@require_permission("service_types.edit")
def service_type_edit_post(service_type_id: int):
    s = db_session()
    st = _get_type(service_type_id)
    payload = form_payload(TYPE_FIELDS)
    errors = validate_service_type_payload(s, payload, st.id)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("service_catalog.service_type_edit_get", service_type_id=st.id))
    update_service_type(s, st, payload, _current_user())
    s.commit()
    flash("Service type updated.", "success")
    return redirect(url_for("service_catalog.service_type_detail", service_type_id=st.id))


@bp.post("/service-types/<int:service_type_id>/delete")
@require_permission("service_types.delete")
def service_type_delete(service_type_id: int):
    s = db_session()
    st = _get_type(service_type_id)
    try:
        delete_service_type(s, st, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("service_catalog.service_type_detail", service_type_id=st.id))
    s.commit()
    flash(f"Service type {st.code} deleted.", "success")
    return redirect(url_for("service_catalog.service_types_list"))


@bp.post("/service-types/<int:service_type_id>/restore")
@require_permission("service_types.delete")
def service_type_restore(service_type_id: int):
    s = db_session()
    st = _get_type(service_type_id, include_deleted=True)
    try:
        restore_service_type(s, st, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("service_catalog.service_type_detail", service_type_id=st.id))
    s.commit()
    flash(f"Service type {st.code} restored.", "success")
    return redirect(url_for("service_catalog.service_type_detail", service_type_id=st.id))
