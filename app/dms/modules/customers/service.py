from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.dms.audit import log_created, log_updated, record_event, restore, soft_delete
from app.dms.constants import (
    CUSTOMER_SEGMENTS,
    CUSTOMER_STATUSES,
    CUSTOMER_TYPES,
    GENDERS,
    SURVEY_RATING_FIELDS,
)
from app.dms.mailer import send_email
from app.dms.security import generate_survey_token
from app.dms.utils import (
    EMAIL_RE,
    BusinessRuleError,
    check_enum,
    check_number,
    clean,
    next_sequence_id,
    parse_bool,
    parse_date,
    parse_int,
    parse_tags,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.customers.models import Customer, CustomerSurvey

logger = logging.getLogger(__name__)

MODULE = "customers"
SURVEY_MODULE = "surveys"

_TEXT_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "alternate_phone",
    "gender",
    "address",
    "city",
    "state",
    "postal_code",
    "country",
    "customer_segment",
    "company_name",
    "tax_id",
    "lead_source",
    "referred_by",
    "notes",
)
_BOOL_FIELDS = ("email_notifications", "sms_notifications", "marketing_consent")


def validate_customer_payload(s: "Session", payload: dict, customer_id: int | None = None) -> list[str]:
    from app.dms.modules.customers.models import Customer

    errors: list[str] = []
    for key, label in (("first_name", "First name"), ("last_name", "Last name")):
        v = clean(payload.get(key))
        if not v:
            errors.append(f"{label} is required.")
        elif len(v) < 2:
            errors.append(f"{label} must be at least 2 characters.")

    email = clean(payload.get("email"))
    if email:
        if not EMAIL_RE.match(email):
            errors.append("Email is not a valid address.")
        else:
            q = s.query(Customer).filter(func.lower(Customer.email) == email.lower(), Customer.deleted_at.is_(None))
            if customer_id:
                q = q.filter(Customer.id != customer_id)
            if q.first():
                errors.append("A customer with this email already exists.")

    check_enum(errors, "Customer type", payload.get("customer_type"), CUSTOMER_TYPES)
    check_enum(errors, "Customer segment", payload.get("customer_segment"), CUSTOMER_SEGMENTS)
    check_enum(errors, "Status", payload.get("status"), CUSTOMER_STATUSES)
    check_enum(errors, "Gender", payload.get("gender"), GENDERS)
    check_number(errors, "Loyalty points", payload.get("loyalty_points"), minimum=0)
    if clean(payload.get("customer_type")) == "corporate" and not clean(payload.get("company_name")):
        errors.append("Company name is required for corporate customers.")
    try:
        parse_date(payload.get("date_of_birth"))
    except ValueError:
        errors.append("Date of birth must be a valid date (YYYY-MM-DD).")
    return errors


def create_customer(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "Customer":
    from app.dms.modules.customers.models import Customer

    customer = Customer(
        customer_id=next_sequence_id(s, Customer.customer_id, "CUS"),
        branch_id=branch_id,
        customer_type=clean(payload.get("customer_type")) or "individual",
        status=clean(payload.get("status")) or "active",
        date_of_birth=parse_date(payload.get("date_of_birth")),
        loyalty_points=parse_int(payload.get("loyalty_points")) or 0,
        tags=parse_tags(payload.get("tags")) or None,
        assigned_to=parse_int(payload.get("assigned_to")),
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **{f: clean(payload.get(f)) for f in _TEXT_FIELDS},
        **{f: parse_bool(payload.get(f)) for f in _BOOL_FIELDS if f in payload},
    )
    s.add(customer)
    s.flush()
    log_created(s, MODULE, customer, user, f"Customer {customer.full_name} created", {"customer_id": customer.customer_id})
    return customer


def update_customer(s: "Session", customer: "Customer", payload: dict, user: "User") -> "Customer":
    new_values: dict[str, Any] = {f: clean(payload.get(f)) for f in _TEXT_FIELDS}
    new_values["customer_type"] = clean(payload.get("customer_type")) or customer.customer_type
    new_values["status"] = clean(payload.get("status")) or customer.status
    new_values["date_of_birth"] = parse_date(payload.get("date_of_birth"))
    new_values["loyalty_points"] = parse_int(payload.get("loyalty_points")) or 0
    new_values["tags"] = parse_tags(payload.get("tags")) or None
    for f in _BOOL_FIELDS:
        if f in payload:
            new_values[f] = parse_bool(payload.get(f))

    changes = {}
    for key, new in new_values.items():
        old = getattr(customer, key)
        if new != old:
            changes[key] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(customer, key, new)
    customer.updated_by_user_id = user.id
    log_updated(s, MODULE, customer, user, f"Customer {customer.full_name} updated", {"changes": changes})
    return customer


def delete_customer(s: "Session", customer: "Customer", user: "User") -> None:
    soft_delete(s, customer, user, MODULE, f"Customer {customer.full_name}")


def restore_customer(s: "Session", customer: "Customer", user: "User") -> None:
    restore(s, customer, user, MODULE, f"Customer {customer.full_name}", "Customer")


def customer_stats(s: "Session", base_query) -> dict[str, int]:
    from app.dms.modules.customers.models import Customer

    month_start = datetime.utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return {
        "total": base_query.count(),
        "active": base_query.filter(Customer.status == "active").count(),
        "vip": base_query.filter(Customer.status == "vip").count(),
        "new_this_month": base_query.filter(Customer.created_at >= month_start).count(),
    }


CUSTOMER_EXPORT_HEADER = [
    "Customer ID",
    "First Name",
    "Last Name",
    "Email",
    "Phone",
    "Type",
    "Segment",
    "Company",
    "Status",
    "City",
    "Loyalty Points",
    "Satisfaction",
    "Created At",
]


def export_customers_csv(customers: list["Customer"]) -> bytes:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(CUSTOMER_EXPORT_HEADER)
    for c in customers:
        w.writerow(
            [
                c.customer_id,
                c.first_name,
                c.last_name,
                c.email or "",
                c.phone or "",
                c.customer_type,
                c.customer_segment or "",
                c.company_name or "",
                c.status,
                c.city or "",
                c.loyalty_points,
                c.satisfaction_rating if c.satisfaction_rating is not None else "",
                c.created_at.isoformat() if c.created_at else "",
            ]
        )
    return buf.getvalue().encode("utf-8")


# ---------- Surveys ----------


def generate_survey(
    s: "Session",
    customer: "Customer",
    user: "User | None",
    survey_type: str = "general",
    trigger_event: str | None = None,
) -> "CustomerSurvey":
    from app.dms.modules.customers.models import CustomerSurvey

    survey = CustomerSurvey(
        customer_id=customer.id,
        branch_id=customer.branch_id,
        token=generate_survey_token(),
        survey_type=clean(survey_type) or "general",
        trigger_event=clean(trigger_event),
        status="pending",
        created_by_user_id=user.id if user else None,
    )
    s.add(survey)
    s.flush()
    log_created(
        s,
        SURVEY_MODULE,
        survey,
        user,
        f"Survey generated for {customer.full_name}",
        {"customer_id": customer.customer_id, "survey_type": survey.survey_type},
    )
    return survey


def survey_url(config: dict, survey: "CustomerSurvey") -> str:
    base = (config.get("APP_BASE_URL") or "").rstrip("/")
    return f"{base}/survey/{survey.token}"


def send_survey(s: "Session", survey: "CustomerSurvey", config: dict, user: "User | None") -> None:
    """Email the survey link; only pending, unexpired surveys can go out."""
    if survey.status == "completed":
        raise BusinessRuleError("This survey has already been completed.")
    if survey.is_expired:
        raise BusinessRuleError("This survey has expired.")
    customer = survey.customer
    if not customer.email:
        raise BusinessRuleError("Customer has no email address.")

    body = (
        f"Dear {customer.full_name},\n\n"
        "Thank you for choosing us. We would appreciate a few minutes of your time to tell us about your experience:\n\n"
        f"{survey_url(config, survey)}\n\n"
        f"This link expires on {survey.expires_at:%Y-%m-%d}.\n"
    )
    send_email(config, to=customer.email, subject="How did we do?", body=body)
    survey.sent_at = datetime.utcnow()
    survey.sent_method = "email"
    record_event(
        s,
        actor=user,
        action="surveys.send",
        description=f"Survey sent to {customer.email}",
        entity_type="CustomerSurvey",
        entity_id=survey.id,
        event="sent",
    )


def validate_survey_submission(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("overall_rating")):
        errors.append("Overall rating is required.")
    for f in SURVEY_RATING_FIELDS:
        check_number(errors, f.replace("_", " ").capitalize(), payload.get(f), minimum=1, maximum=5)
    check_number(errors, "NPS score", payload.get("nps_score"), minimum=0, maximum=10)
    return errors


def submit_survey(
    s: "Session",
    survey: "CustomerSurvey",
    payload: dict,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> "CustomerSurvey":
    if not survey.can_be_completed:
        raise BusinessRuleError("This survey is no longer available.")

    for f in SURVEY_RATING_FIELDS:
        setattr(survey, f, parse_int(payload.get(f)))
    survey.nps_score = parse_int(payload.get("nps_score"))
    for f in ("what_went_well", "what_needs_improvement", "additional_comments", "nps_reason", "preferred_contact_method"):
        setattr(survey, f, clean(payload.get(f)))
    survey.wants_followup = parse_bool(payload.get("wants_followup"))
    survey.status = "completed"
    survey.completed_at = datetime.utcnow()
    survey.ip_address = ip_address
    survey.user_agent = (user_agent or "")[:512] or None
    s.flush()

    _refresh_satisfaction(s, survey.customer)
    record_event(
        s,
        actor=None,
        action="surveys.complete",
        description=f"Survey completed by {survey.customer.full_name}",
        entity_type="CustomerSurvey",
        entity_id=survey.id,
        event="completed",
        metadata={"overall_rating": survey.overall_rating, "nps_score": survey.nps_score},
    )
    return survey


def _refresh_satisfaction(s: "Session", customer: "Customer") -> None:
    from app.dms.modules.customers.models import CustomerSurvey

    avg = (
        s.query(func.avg(CustomerSurvey.overall_rating))
        .filter(
            CustomerSurvey.customer_id == customer.id,
            CustomerSurvey.status == "completed",
            CustomerSurvey.overall_rating.isnot(None),
        )
        .scalar()
    )
    customer.satisfaction_rating = Decimal(str(round(float(avg), 2))) if avg is not None else None


def expire_overdue_surveys(s: "Session", now: datetime | None = None) -> int:
    from app.dms.modules.customers.models import CustomerSurvey

    now = now or datetime.utcnow()
    overdue = s.query(CustomerSurvey).filter(CustomerSurvey.status == "pending", CustomerSurvey.expires_at < now).all()
    for survey in overdue:
        survey.status = "expired"
    if overdue:
        logger.info("Expired %s overdue survey(s)", len(overdue))
    return len(overdue)


def survey_stats(s: "Session", base_query) -> dict[str, Any]:
    from app.dms.modules.customers.models import CustomerSurvey

    completed = base_query.filter(CustomerSurvey.status == "completed").all()
    nps = [x.nps_category for x in completed if x.nps_category]
    promoters = nps.count("promoter")
    detractors = nps.count("detractor")
    ratings = [x.overall_rating for x in completed if x.overall_rating]
    return {
        "total": base_query.count(),
        "completed": len(completed),
        "pending": base_query.filter(CustomerSurvey.status == "pending").count(),
        "avg_overall": round(sum(ratings) / len(ratings), 2) if ratings else None,
        "nps": round((promoters - detractors) / len(nps) * 100) if nps else None,
    }
