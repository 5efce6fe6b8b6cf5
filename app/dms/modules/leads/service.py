from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.dms.audit import log_created, log_updated, record_event, restore, soft_delete
from app.dms.constants import LEAD_SOURCES, LEAD_STATUSES, PRIORITIES, PURCHASE_TIMELINES
from app.dms.modules.leads.scoring import (
    SUSPICIOUS_THRESHOLD,
    calculate_conversion_probability,
    calculate_lead_score,
    detect_suspicious_lead,
)
from app.dms.modules.pipelines.service import create_pipeline_from_lead
from app.dms.rbac import live, scope_to_branch
from app.dms.utils import (
    EMAIL_RE,
    check_enum,
    check_number,
    clean,
    next_sequence_id,
    parse_bool,
    parse_datetime,
    parse_decimal,
    parse_int,
    parse_tags,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.dms.models import User
    from app.dms.modules.leads.models import Lead

logger = logging.getLogger(__name__)

MODULE = "leads"

_TEXT_FIELDS = ("name", "email", "phone", "location", "vehicle_interest", "vehicle_variant", "contact_method", "notes")

CSV_HEADER = [
    "name",
    "email",
    "phone",
    "location",
    "source",
    "status",
    "priority",
    "vehicle_interest",
    "vehicle_variant",
    "budget_min",
    "budget_max",
    "purchase_timeline",
    "notes",
    "tags",
]
CSV_EXAMPLE_ROW = [
    "Juan Dela Cruz",
    "juan.delacruz@example.com",
    "+63 917 123 4567",
    "Quezon City",
    "web_form",
    "new",
    "medium",
    "Toyota Vios",
    "1.3 XLE CVT",
    "800000",
    "1000000",
    "month",
    "Prefers weekend calls",
    "first-time buyer, financing",
]

EXPORT_HEADER = [
    "Lead ID",
    "Name",
    "Email",
    "Phone",
    "Location",
    "Source",
    "Status",
    "Priority",
    "Vehicle Interest",
    "Budget Min",
    "Budget Max",
    "Timeline",
    "Lead Score",
    "Conversion Probability",
    "Fake Lead Score",
    "Flags",
    "Next Follow-up",
    "Created At",
]


def validate_lead_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    name = clean(payload.get("name"))
    if not name:
        errors.append("Name is required.")
    elif len(name) > 255:
        errors.append("Name must be at most 255 characters.")
    email = clean(payload.get("email"))
    if email and not EMAIL_RE.match(email):
        errors.append("Email is not a valid address.")
    if not email and not clean(payload.get("phone")):
        errors.append("Email or phone is required.")
    check_enum(errors, "Source", payload.get("source"), LEAD_SOURCES, required=True)
    check_enum(errors, "Status", payload.get("status"), LEAD_STATUSES)
    check_enum(errors, "Priority", payload.get("priority"), PRIORITIES)
    check_enum(errors, "Purchase timeline", payload.get("purchase_timeline"), PURCHASE_TIMELINES)
    check_number(errors, "Budget min", payload.get("budget_min"), minimum=0)
    check_number(errors, "Budget max", payload.get("budget_max"), minimum=0)
    if not errors:
        bmin = parse_decimal(payload.get("budget_min"))
        bmax = parse_decimal(payload.get("budget_max"))
        if bmin is not None and bmax is not None and bmax < bmin:
            errors.append("Budget max must be greater than or equal to budget min.")
    try:
        parse_datetime(payload.get("next_followup_at"))
    except ValueError:
        errors.append("Next follow-up must be a valid date/time.")
    return errors


def _detection_input(values: dict[str, Any], ip_address: str | None) -> dict[str, Any]:
    return {
        "name": values.get("name"),
        "email": values.get("email"),
        "phone": values.get("phone"),
        "location": values.get("location"),
        "vehicle_interest": values.get("vehicle_interest"),
        "budget_min": values.get("budget_min"),
        "ip_address": ip_address,
    }


def create_lead(s: "Session", payload: dict, user: "User | None", branch_id: int | None, ip_address: str | None = None) -> "Lead":
    from app.dms.modules.leads.models import Lead

    values: dict[str, Any] = {f: clean(payload.get(f)) for f in _TEXT_FIELDS}
    values.update(
        source=clean(payload.get("source")) or "web_form",
        status=clean(payload.get("status")) or "new",
        priority=clean(payload.get("priority")) or "medium",
        purchase_timeline=clean(payload.get("purchase_timeline")),
        budget_min=parse_decimal(payload.get("budget_min")),
        budget_max=parse_decimal(payload.get("budget_max")),
        tags=parse_tags(payload.get("tags")),
        next_followup_at=parse_datetime(payload.get("next_followup_at")),
        assigned_to=parse_int(payload.get("assigned_to")),
        vehicle_model_id=parse_int(payload.get("vehicle_model_id")),
    )

    fake_score, flags = detect_suspicious_lead(s, _detection_input(values, ip_address))
    lead_score = calculate_lead_score(values["source"], values["priority"], values["tags"])
    values["tags"] = values["tags"] or None
    lead = Lead(
        lead_id=next_sequence_id(s, Lead.lead_id, "LD"),
        branch_id=branch_id,
        ip_address=ip_address,
        lead_score=lead_score,
        conversion_probability=calculate_conversion_probability(values["status"], values["budget_min"], values["purchase_timeline"]),
        fake_lead_score=fake_score,
        duplicate_flags=flags or None,
        created_by_user_id=user.id if user else None,
        updated_by_user_id=user.id if user else None,
        **values,
    )
    s.add(lead)
    s.flush()
    log_created(
        s,
        MODULE,
        lead,
        user,
        f"Lead {lead.lead_id} ({lead.name}) created",
        {"lead_score": lead.lead_score, "fake_lead_score": lead.fake_lead_score, "flags": flags},
    )
    if fake_score > SUSPICIOUS_THRESHOLD:
        logger.warning("Lead %s flagged as suspicious (score=%s flags=%s)", lead.lead_id, fake_score, flags)
    _maybe_open_pipeline(s, lead, user)
    return lead


def update_lead(s: "Session", lead: "Lead", payload: dict, user: "User") -> "Lead":
    new_values: dict[str, Any] = {f: clean(payload.get(f)) for f in _TEXT_FIELDS}
    new_values.update(
        source=clean(payload.get("source")) or lead.source,
        status=clean(payload.get("status")) or lead.status,
        priority=clean(payload.get("priority")) or lead.priority,
        purchase_timeline=clean(payload.get("purchase_timeline")),
        budget_min=parse_decimal(payload.get("budget_min")),
        budget_max=parse_decimal(payload.get("budget_max")),
        tags=parse_tags(payload.get("tags")) or None,
        next_followup_at=parse_datetime(payload.get("next_followup_at")),
        assigned_to=parse_int(payload.get("assigned_to")),
        vehicle_model_id=parse_int(payload.get("vehicle_model_id")),
    )

    changes: dict[str, dict[str, Any]] = {}
    for key, new in new_values.items():
        old = getattr(lead, key)
        if new != old:
            changes[key] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(lead, key, new)

    if changes.keys() & {"source", "priority", "tags"}:
        lead.lead_score = calculate_lead_score(lead.source, lead.priority, lead.tags)
    if changes.keys() & {"status", "budget_min", "purchase_timeline"}:
        lead.conversion_probability = calculate_conversion_probability(lead.status, lead.budget_min, lead.purchase_timeline)
    if changes.keys() & {"email", "phone", "name"}:
        values = {f: getattr(lead, f) for f in ("name", "email", "phone", "location", "vehicle_interest", "budget_min")}
        fake_score, flags = detect_suspicious_lead(s, _detection_input(values, lead.ip_address), exclude_id=lead.id)
        lead.fake_lead_score = fake_score
        lead.duplicate_flags = flags or None
    if "status" in changes and lead.status in ("contacted", "qualified", "hot"):
        lead.last_contact_at = lead.last_contact_at or datetime.utcnow()

    lead.updated_by_user_id = user.id
    log_updated(s, MODULE, lead, user, f"Lead {lead.lead_id} updated", {"changes": changes})

    if "status" in changes and lead.status == "qualified":
        _maybe_open_pipeline(s, lead, user)
    return lead


def _maybe_open_pipeline(s: "Session", lead: "Lead", user: "User | None") -> None:
    if lead.status != "qualified" or lead.pipelines:
        return
    pipeline = create_pipeline_from_lead(s, lead, user)
    if pipeline is not None:
        s.refresh(lead, attribute_names=["pipelines"])


def soft_delete_lead(s: "Session", lead: "Lead", user: "User") -> None:
    soft_delete(s, lead, user, MODULE, f"Lead {lead.lead_id}")


def restore_lead(s: "Session", lead: "Lead", user: "User") -> None:
    restore(s, lead, user, MODULE, f"Lead {lead.lead_id}", "Lead")


# ---------- Queries ----------


def query_leads(s: "Session", user: "User | None", filters: dict[str, str]) -> "Query":
    from app.dms.modules.leads.models import Lead

    q = live(s.query(Lead), Lead, parse_bool(filters.get("include_deleted")))
    q = scope_to_branch(q, Lead, user)
    search = clean(filters.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter(Lead.name.ilike(like) | Lead.email.ilike(like) | Lead.phone.ilike(like) | Lead.lead_id.ilike(like))
    if clean(filters.get("status")):
        q = q.filter(Lead.status == filters["status"])
    if clean(filters.get("source")):
        q = q.filter(Lead.source == filters["source"])
    if clean(filters.get("priority")):
        q = q.filter(Lead.priority == filters["priority"])
    band = clean(filters.get("score"))
    if band == "high":
        q = q.filter(Lead.lead_score >= 80)
    elif band == "medium":
        q = q.filter(Lead.lead_score >= 60, Lead.lead_score < 80)
    elif band == "low":
        q = q.filter(Lead.lead_score < 60)
    if parse_bool(filters.get("suspicious")):
        q = q.filter(Lead.fake_lead_score > SUSPICIOUS_THRESHOLD)
    return q.order_by(Lead.created_at.desc(), Lead.id.desc())


def lead_stats(s: "Session", user: "User | None") -> dict[str, Any]:
    from app.dms.modules.leads.models import Lead

    q = scope_to_branch(live(s.query(Lead), Lead), Lead, user)
    avg = q.with_entities(func.avg(Lead.conversion_probability)).scalar()
    return {
        "total": q.count(),
        "hot": q.filter(Lead.status == "hot").count(),
        "avg_conversion": round(float(avg), 1) if avg is not None else 0,
        "suspicious": q.filter(Lead.fake_lead_score > SUSPICIOUS_THRESHOLD).count(),
    }


def upcoming_followups(s: "Session", user: "User | None", days: int = 7, now: datetime | None = None) -> list["Lead"]:
    from app.dms.modules.leads.models import Lead

    now = now or datetime.utcnow()
    q = scope_to_branch(live(s.query(Lead), Lead), Lead, user)
    return (
        q.filter(
            Lead.next_followup_at.isnot(None),
            Lead.next_followup_at >= now,
            Lead.next_followup_at <= now + timedelta(days=days),
            Lead.status.notin_(("lost", "unqualified")),
        )
        .order_by(Lead.next_followup_at.asc())
        .all()
    )


def lead_to_dict(lead: "Lead") -> dict[str, Any]:
    return {
        "id": lead.id,
        "lead_id": lead.lead_id,
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "location": lead.location,
        "source": lead.source,
        "status": lead.status,
        "priority": lead.priority,
        "vehicle_interest": lead.vehicle_interest,
        "budget_min": float(lead.budget_min) if lead.budget_min is not None else None,
        "budget_max": float(lead.budget_max) if lead.budget_max is not None else None,
        "purchase_timeline": lead.purchase_timeline,
        "lead_score": lead.lead_score,
        "conversion_probability": lead.conversion_probability,
        "fake_lead_score": lead.fake_lead_score,
        "duplicate_flags": lead.duplicate_flags or [],
        "tags": lead.tags or [],
        "branch_id": lead.branch_id,
        "next_followup_at": lead.next_followup_at.isoformat() if lead.next_followup_at else None,
        "created_at": lead.created_at.isoformat() if lead.created_at else None,
        "deleted_at": lead.deleted_at.isoformat() if lead.deleted_at else None,
    }


# ---------- CSV ----------


def lead_csv_template() -> bytes:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(CSV_HEADER)
    w.writerow(CSV_EXAMPLE_ROW)
    return buf.getvalue().encode("utf-8")


def import_leads_csv(
    s: "Session", file_bytes: bytes, user: "User", branch_id: int | None, ip_address: str | None = None
) -> tuple[int, list[str]]:
    """
    Create one lead per valid row. Invalid rows are skipped and reported as
    "Row N: ..." (N counts the header as row 1).
    """
    text = file_bytes.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        return 0, ["File is empty or invalid."]
    fieldnames = [(f or "").strip().lower() for f in reader.fieldnames]
    reader.fieldnames = fieldnames
    if "name" not in fieldnames or "source" not in fieldnames:
        return 0, ["Missing required columns: name, source."]

    created = 0
    errors: list[str] = []
    for row_num, row in enumerate(reader, start=2):
        payload = {k: (v or "").strip() for k, v in row.items() if k}
        if not any(payload.values()):
            continue
        payload["status"] = payload.get("status") or "new"
        payload["priority"] = payload.get("priority") or "medium"
        row_errors = validate_lead_payload(payload)
        if row_errors:
            errors.extend(f"Row {row_num}: {e}" for e in row_errors)
            continue
        create_lead(s, payload, user, branch_id, ip_address)
        created += 1

    record_event(
        s,
        actor=user,
        action="leads.import",
        description=f"Imported {created} lead(s) from CSV",
        event="imported",
        metadata={"created": created, "errors": len(errors)},
        status="success" if not errors else "partial",
    )
    logger.info("Lead CSV import: created=%s errors=%s", created, len(errors))
    return created, errors


def export_leads_csv(leads: list["Lead"]) -> bytes:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(EXPORT_HEADER)
    for lead in leads:
        w.writerow(
            [
                lead.lead_id,
                lead.name,
                lead.email or "",
                lead.phone or "",
                lead.location or "",
                lead.source,
                lead.status,
                lead.priority,
                lead.vehicle_interest or "",
                lead.budget_min if lead.budget_min is not None else "",
                lead.budget_max if lead.budget_max is not None else "",
                lead.purchase_timeline or "",
                lead.lead_score,
                lead.conversion_probability,
                lead.fake_lead_score,
                ";".join(lead.duplicate_flags or []),
                lead.next_followup_at.isoformat() if lead.next_followup_at else "",
                lead.created_at.isoformat() if lead.created_at else "",
            ]
        )
    return buf.getvalue().encode("utf-8")
