from __future__ import annotations

import io
from datetime import datetime

from flask import Blueprint, abort, current_app, flash, g, redirect, request, send_file, url_for

from app.dms.constants import CUSTOMER_SEGMENTS, CUSTOMER_STATUSES, CUSTOMER_TYPES, GENDERS, SURVEY_STATUSES
from app.dms.db import db_session
from app.dms.mailer import MailConfigError
from app.dms.models import User
from app.dms.modules.customers.models import Customer, CustomerSurvey
from app.dms.modules.customers.service import (
    create_customer,
    customer_stats,
    delete_customer,
    export_customers_csv,
    generate_survey,
    restore_customer,
    send_survey,
    survey_stats,
    survey_url,
    update_customer,
    validate_customer_payload,
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

bp = Blueprint("customers", __name__)

LIST_COLUMNS = [
    Column("Customer ID", "customer_id"),
    Column("Name", "display_name"),
    Column("Email", "email"),
    Column("Phone", "phone"),
    Column("Segment", "customer_segment"),
    Column("Status", "status"),
]

FORM_FIELDS = [
    FormField("first_name", "First name", required=True),
    FormField("last_name", "Last name", required=True),
    FormField("email", "Email", "email"),
    FormField("phone", "Phone"),
    FormField("alternate_phone", "Alternate phone"),
    FormField("date_of_birth", "Date of birth", "date"),
    FormField("gender", "Gender", "select", choices(GENDERS)),
    FormField("customer_type", "Customer type", "select", choices(CUSTOMER_TYPES)),
    FormField("customer_segment", "Segment", "select", choices(CUSTOMER_SEGMENTS)),
    FormField("company_name", "Company name"),
    FormField("tax_id", "Tax ID"),
    FormField("status", "Status", "select", choices(CUSTOMER_STATUSES)),
    FormField("address", "Address", "textarea"),
    FormField("city", "City"),
    FormField("state", "State / Province"),
    FormField("postal_code", "Postal code"),
    FormField("country", "Country"),
    FormField("loyalty_points", "Loyalty points", "number"),
    FormField("lead_source", "Lead source"),
    FormField("referred_by", "Referred by"),
    FormField("email_notifications", "Email notifications", "checkbox"),
    FormField("sms_notifications", "SMS notifications", "checkbox"),
    FormField("marketing_consent", "Marketing consent", "checkbox"),
    FormField("tags", "Tags", help="Comma separated"),
    FormField("notes", "Notes", "textarea"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]

SURVEY_COLUMNS = [
    Column("Customer", "customer.full_name"),
    Column("Type", "survey_type"),
    Column("Status", "status"),
    Column("Sent", "sent_at"),
    Column("Expires", "expires_at"),
    Column("Overall", "overall_rating"),
    Column("NPS", "nps_score"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_customer(customer_id: int, include_deleted: bool = False) -> Customer:
    c = db_session().get(Customer, customer_id)
    if not c or (c.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(c, _current_user(), "You can only access customers from your branch.")
    return c


def _customer_query(filters: dict[str, str]):
    s = db_session()
    q = live(s.query(Customer), Customer, parse_bool(filters.get("include_deleted")))
    q = scope_to_branch(q, Customer, _current_user())
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(
            Customer.first_name.ilike(like)
            | Customer.last_name.ilike(like)
            | Customer.email.ilike(like)
            | Customer.phone.ilike(like)
            | Customer.customer_id.ilike(like)
            | Customer.company_name.ilike(like)
        )
    for key, col in (("status", Customer.status), ("customer_type", Customer.customer_type), ("segment", Customer.customer_segment)):
        if filters.get(key):
            q = q.filter(col == filters[key])
    return q


# ---------- Customers ----------
@bp.get("/customers")
@require_permission("customers.view")
def customers_list():
    filters = current_filters(("q", "status", "customer_type", "segment", "include_deleted"))
    q = _customer_query(filters)
    stats_q = scope_to_branch(live(db_session().query(Customer), Customer), Customer, _current_user())
    page = paginate(q.order_by(Customer.created_at.desc(), Customer.id.desc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Customers",
        page=page,
        columns=LIST_COLUMNS,
        list_endpoint="customers.customers_list",
        detail_endpoint="customers.customer_detail",
        id_arg="customer_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("status", "Status", "select", choices(CUSTOMER_STATUSES)),
            FormField("customer_type", "Type", "select", choices(CUSTOMER_TYPES)),
            FormField("segment", "Segment", "select", choices(CUSTOMER_SEGMENTS)),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("customers.customers_new_get"),
        export_url=url_for("customers.customers_export", **{k: v for k, v in filters.items() if v}),
        stats=customer_stats(db_session(), stats_q),
        extra_actions=[Action("Surveys", url_for("customers.surveys_list"))],
    )


@bp.get("/customers/export")
@require_permission("customers.export")
def customers_export():
    filters = current_filters(("q", "status", "customer_type", "segment", "include_deleted"))
    customers = _customer_query(filters).order_by(Customer.customer_id.asc()).all()
    data = export_customers_csv(customers)
    return send_file(
        io.BytesIO(data),
        mimetype="text/csv",
        as_attachment=True,
        download_name=f"customers_{datetime.utcnow():%Y%m%d_%H%M%S}.csv",
        max_age=0,
    )


@bp.get("/customers/new")
@require_permission("customers.create")
def customers_new_get():
    return render_form(
        title="New Customer",
        fields=FORM_FIELDS,
        values={"status": "active", "customer_type": "individual", "email_notifications": True},
        action_url=url_for("customers.customers_new_post"),
        cancel_url=url_for("customers.customers_list"),
    )


@bp.post("/customers/new")
@require_permission("customers.create")
def customers_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(FORM_FIELDS)
    errors = validate_customer_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("customers.customers_new_get"))
    customer = create_customer(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash(f"Customer {customer.customer_id} created.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=customer.id))


@bp.get("/customers/<int:customer_id>")
@require_permission("customers.view")
def customer_detail(customer_id: int):
    c = _get_customer(customer_id, include_deleted=True)
    actions = []
    if c.deleted_at:
        actions.append(Action("Restore", url_for("customers.customer_restore", customer_id=c.id), "post", "success"))
    else:
        actions += [
            Action("Edit", url_for("customers.customer_edit_get", customer_id=c.id)),
            Action("Generate survey", url_for("customers.customer_survey_new", customer_id=c.id), "post", "primary"),
            Action("Delete", url_for("customers.customer_delete", customer_id=c.id), "post", "danger", "Delete this customer?"),
        ]
    return render_detail(
        title=f"{c.display_name} ({c.customer_id})",
        obj=c,
        fields=[
            ("Customer ID", c.customer_id),
            ("Name", c.full_name),
            ("Type", c.customer_type),
            ("Segment", c.customer_segment),
            ("Company", c.company_name),
            ("Status", c.status),
            ("Email", c.email),
            ("Phone", c.phone),
            ("Alternate phone", c.alternate_phone),
            ("Date of birth", c.date_of_birth),
            ("Address", ", ".join(p for p in (c.address, c.city, c.state, c.postal_code, c.country) if p)),
            ("Loyalty points", c.loyalty_points),
            ("Satisfaction rating", c.satisfaction_rating),
            ("Total purchases", c.total_purchases),
            ("Total spent", c.total_spent),
            ("Marketing consent", c.marketing_consent),
            ("Tags", c.tags),
            ("Notes", c.notes),
            ("Deleted at", c.deleted_at),
        ],
        actions=actions,
        related=[
            Related(
                "Surveys",
                SURVEY_COLUMNS,
                table_rows(c.surveys, SURVEY_COLUMNS, "customers.survey_detail", "survey_id"),
            )
        ],
        back_url=url_for("customers.customers_list"),
    )


@bp.get("/customers/<int:customer_id>/edit")
@require_permission("customers.edit")
def customer_edit_get(customer_id: int):
    c = _get_customer(customer_id)
    return render_form(
        title=f"Edit Customer {c.customer_id}",
        fields=FORM_FIELDS,
        values=form_values(c, FORM_FIELDS),
        action_url=url_for("customers.customer_edit_post", customer_id=c.id),
        cancel_url=url_for("customers.customer_detail", customer_id=c.id),
    )


@bp.post("/customers/<int:customer_id>/edit")
@require_permission("customers.edit")
def customer_edit_post(customer_id: int):
    s = db_session()
    c = _get_customer(customer_id)
    payload = form_payload(FORM_FIELDS)
    errors = validate_customer_payload(s, payload, customer_id=c.id)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("customers.customer_edit_get", customer_id=c.id))
    update_customer(s, c, payload, _current_user())
    s.commit()
    flash("Customer updated.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


@bp.post("/customers/<int:customer_id>/delete")
@require_permission("customers.delete")
def customer_delete(customer_id: int):
    s = db_session()
    c = _get_customer(customer_id)
    delete_customer(s, c, _current_user())
    s.commit()
    flash(f"Customer {c.customer_id} deleted.", "success")
    return redirect(url_for("customers.customers_list"))


@bp.post("/customers/<int:customer_id>/restore")
@require_permission("customers.delete")
def customer_restore(customer_id: int):
    s = db_session()
    c = _get_customer(customer_id, include_deleted=True)
    try:
        restore_customer(s, c, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("customers.customer_detail", customer_id=c.id))
    s.commit()
    flash(f"Customer {c.customer_id} restored.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


# ---------- Surveys ----------
def _get_survey(survey_id: int) -> CustomerSurvey:
    survey = db_session().get(CustomerSurvey, survey_id)
    if not survey:
        abort(404)
    ensure_branch_access(survey, _current_user(), "You can only access surveys from your branch.")
    return survey


@bp.post("/customers/<int:customer_id>/surveys/new")
@require_permission("surveys.create")
def customer_survey_new(customer_id: int):
    s = db_session()
    c = _get_customer(customer_id)
    survey_type = (request.form.get("survey_type") or "general").strip()
    survey = generate_survey(s, c, _current_user(), survey_type, request.form.get("trigger_event"))
    s.commit()
    flash("Survey generated.", "success")
    return redirect(url_for("customers.survey_detail", survey_id=survey.id))


@bp.get("/surveys")
@require_permission("surveys.view")
def surveys_list():
    s = db_session()
    filters = current_filters(("q", "status", "survey_type"))
    q = scope_to_branch(s.query(CustomerSurvey), CustomerSurvey, _current_user())
    stats_q = q
    if filters["status"]:
        q = q.filter(CustomerSurvey.status == filters["status"])
    if filters["survey_type"]:
        q = q.filter(CustomerSurvey.survey_type == filters["survey_type"])
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.join(Customer, CustomerSurvey.customer_id == Customer.id).filter(
            Customer.first_name.ilike(like) | Customer.last_name.ilike(like) | Customer.email.ilike(like)
        )
    page = paginate(q.order_by(CustomerSurvey.created_at.desc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Customer Surveys",
        page=page,
        columns=SURVEY_COLUMNS,
        list_endpoint="customers.surveys_list",
        detail_endpoint="customers.survey_detail",
        id_arg="survey_id",
        filters=filters,
        filter_fields=[
            FormField("q", "Customer"),
            FormField("status", "Status", "select", choices(SURVEY_STATUSES)),
            FormField("survey_type", "Type"),
        ],
        stats=survey_stats(s, stats_q),
    )


@bp.get("/surveys/<int:survey_id>")
@require_permission("surveys.view")
def survey_detail(survey_id: int):
    survey = _get_survey(survey_id)
    actions = []
    if survey.can_be_completed:
        actions.append(Action("Send by email", url_for("customers.survey_send", survey_id=survey.id), "post", "primary"))
    return render_detail(
        title=f"Survey for {survey.customer.full_name}",
        obj=survey,
        fields=[
            ("Customer", survey.customer.display_name),
            ("Type", survey.survey_type),
            ("Trigger", survey.trigger_event),
            ("Status", survey.status),
            ("Link", survey_url(current_app.config, survey)),
            ("Sent at", survey.sent_at),
            ("Sent via", survey.sent_method),
            ("Expires at", survey.expires_at),
            ("Completed at", survey.completed_at),
            ("Overall rating", survey.overall_rating),
            ("Average rating", survey.average_rating),
            ("NPS score", survey.nps_score),
            ("NPS category", survey.nps_category),
            ("What went well", survey.what_went_well),
            ("Needs improvement", survey.what_needs_improvement),
            ("Comments", survey.additional_comments),
            ("Wants follow-up", survey.wants_followup),
        ],
        actions=actions,
        back_url=url_for("customers.customer_detail", customer_id=survey.customer_id),
    )


@bp.post("/surveys/<int:survey_id>/send")
@require_permission("surveys.edit")
def survey_send(survey_id: int):
    s = db_session()
    survey = _get_survey(survey_id)
    try:
        send_survey(s, survey, current_app.config, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("customers.survey_detail", survey_id=survey.id))
    except (MailConfigError, OSError) as e:
        current_app.logger.error("Survey %s email failed: %s", survey.id, e)
        flash("Failed to send survey email. Check mail settings.", "danger")
        return redirect(url_for("customers.survey_detail", survey_id=survey.id))
    s.commit()
    flash("Survey sent.", "success")
    return redirect(url_for("customers.survey_detail", survey_id=survey.id))
