from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from app.dms.audit import log_created, log_updated, record_event, restore, soft_delete
from app.dms.constants import CLAIM_DECISIONS, CLAIM_TYPES, PHOTO_CONTENT_TYPES, PHOTO_MAX_BYTES
from app.dms.storage import Storage, check_photo_upload, store_photo
from app.dms.utils import (
    BusinessRuleError,
    apply_changes,
    check_enum,
    check_number,
    clean,
    next_sequence_id,
    parse_date,
    parse_decimal,
    parse_int,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.warranty.models import WarrantyClaim, WarrantyClaimPart, WarrantyClaimPhoto, WarrantyClaimService

MODULE = "warranty"
PHOTO_FOLDER = "warranty_claims"
DECIDABLE_STATUSES = ("submitted", "under_review")
PAYABLE_STATUSES = ("approved", "partially_approved")

_TEXT_FIELDS = (
    "failure_description",
    "diagnosis",
    "repair_actions",
    "warranty_type",
    "warranty_provider",
    "warranty_number",
    "notes",
)


def validate_claim_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    check_enum(errors, "Claim type", payload.get("claim_type"), CLAIM_TYPES, required=True)
    desc = clean(payload.get("failure_description"))
    if not desc:
        errors.append("Failure description is required.")
    elif len(desc) < 10:
        errors.append("Failure description must be at least 10 characters.")
    check_number(errors, "Odometer reading", payload.get("odometer_reading"), minimum=0)
    try:
        claim_date = parse_date(payload.get("claim_date"))
        incident = parse_date(payload.get("incident_date"))
        start = parse_date(payload.get("warranty_start_date"))
        end = parse_date(payload.get("warranty_end_date"))
    except ValueError:
        errors.append("Dates must be valid (YYYY-MM-DD).")
        return errors
    if claim_date is None:
        errors.append("Claim date is required.")
    if incident and claim_date and incident > claim_date:
        errors.append("Incident date cannot be after the claim date.")
    if start and end and end < start:
        errors.append("Warranty end date must be on or after the start date.")
    return errors


def _values(payload: dict) -> dict[str, Any]:
    values: dict[str, Any] = {f: clean(payload.get(f)) for f in _TEXT_FIELDS}
    values.update(
        customer_id=parse_int(payload.get("customer_id")),
        vehicle_unit_id=parse_int(payload.get("vehicle_unit_id")),
        claim_type=clean(payload.get("claim_type")) or "both",
        claim_date=parse_date(payload.get("claim_date")) or date.today(),
        incident_date=parse_date(payload.get("incident_date")),
        odometer_reading=parse_int(payload.get("odometer_reading")),
        warranty_start_date=parse_date(payload.get("warranty_start_date")),
        warranty_end_date=parse_date(payload.get("warranty_end_date")),
        currency=(clean(payload.get("currency")) or "PHP").upper(),
        assigned_to=parse_int(payload.get("assigned_to")),
    )
    return values


def recalculate_amounts(claim: "WarrantyClaim") -> None:
    parts_total = sum((Decimal(p.total_price or 0) for p in claim.parts), Decimal("0"))
    labor_total = sum((Decimal(sv.total_labor_cost or 0) for sv in claim.services), Decimal("0"))
    claim.parts_claimed_amount = parts_total
    claim.labor_claimed_amount = labor_total
    claim.total_claimed_amount = parts_total + labor_total


def _require_editable(claim: "WarrantyClaim") -> None:
    if not claim.can_edit:
        raise BusinessRuleError(f"Claim {claim.claim_id} cannot be edited once it is {claim.status}.")


def create_claim(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "WarrantyClaim":
    from app.dms.modules.warranty.models import WarrantyClaim

    claim = WarrantyClaim(
        claim_id=next_sequence_id(s, WarrantyClaim.claim_id, "WC"),
        branch_id=branch_id,
        status="draft",
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **_values(payload),
    )
    s.add(claim)
    s.flush()
    log_created(s, MODULE, claim, user, f"Warranty claim {claim.claim_id} created", {"claim_type": claim.claim_type})
    return claim


def update_claim(s: "Session", claim: "WarrantyClaim", payload: dict, user: "User") -> "WarrantyClaim":
    _require_editable(claim)
    changes = apply_changes(claim, _values(payload))
    claim.updated_by_user_id = user.id
    log_updated(s, MODULE, claim, user, f"Warranty claim {claim.claim_id} updated", {"changes": changes})
    return claim


# ---- Line items ----

def validate_part_line(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("part_name")) and not parse_int(payload.get("part_inventory_id")):
        errors.append("Part name or inventory part is required.")
    check_number(errors, "Quantity", payload.get("quantity"), minimum=1, required=True)
    check_number(errors, "Unit price", payload.get("unit_price"), minimum=0)
    return errors


def add_part(s: "Session", claim: "WarrantyClaim", payload: dict, user: "User") -> "WarrantyClaimPart":
    from app.dms.modules.parts.models import PartInventory
    from app.dms.modules.warranty.models import WarrantyClaimPart

    _require_editable(claim)
    inventory = None
    if parse_int(payload.get("part_inventory_id")):
        inventory = s.get(PartInventory, parse_int(payload.get("part_inventory_id")))
        if not inventory or inventory.deleted_at:
            raise BusinessRuleError("Inventory part not found.")
    qty = parse_int(payload.get("quantity")) or 1
    price = parse_decimal(payload.get("unit_price"))
    if price is None:
        price = Decimal(inventory.selling_price) if inventory else Decimal("0")
    line = WarrantyClaimPart(
        part_inventory_id=inventory.id if inventory else None,
        part_number=clean(payload.get("part_number")) or (inventory.part_number if inventory else None),
        part_name=clean(payload.get("part_name")) or (inventory.part_name if inventory else ""),
        quantity=qty,
        unit_price=price,
        total_price=price * qty,
    )
    claim.parts.append(line)
    recalculate_amounts(claim)
    claim.updated_by_user_id = user.id
    s.flush()
    log_updated(
        s, MODULE, claim, user, f"Part {line.part_name} added to claim {claim.claim_id}",
        {"part_line_id": line.id, "total_price": line.total_price},
    )
    return line


def remove_part(s: "Session", claim: "WarrantyClaim", line: "WarrantyClaimPart", user: "User") -> None:
    _require_editable(claim)
    claim.parts.remove(line)
    recalculate_amounts(claim)
    claim.updated_by_user_id = user.id
    log_updated(s, MODULE, claim, user, f"Part {line.part_name} removed from claim {claim.claim_id}")


def validate_service_line(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("service_name")) and not parse_int(payload.get("service_type_id")):
        errors.append("Service name or service type is required.")
    check_number(errors, "Labor hours", payload.get("labor_hours"), minimum=0, required=True)
    check_number(errors, "Labor rate", payload.get("labor_rate"), minimum=0, required=True)
    return errors


def add_service(s: "Session", claim: "WarrantyClaim", payload: dict, user: "User") -> "WarrantyClaimService":
    from app.dms.modules.service_catalog.models import ServiceType
    from app.dms.modules.warranty.models import WarrantyClaimService

    _require_editable(claim)
    st = None
    if parse_int(payload.get("service_type_id")):
        st = s.get(ServiceType, parse_int(payload.get("service_type_id")))
        if not st or st.deleted_at:
            raise BusinessRuleError("Service type not found.")
    hours = parse_decimal(payload.get("labor_hours")) or Decimal("0")
    rate = parse_decimal(payload.get("labor_rate")) or Decimal("0")
    line = WarrantyClaimService(
        service_type_id=st.id if st else None,
        service_code=clean(payload.get("service_code")) or (st.code if st else None),
        service_name=clean(payload.get("service_name")) or (st.name if st else ""),
        labor_hours=hours,
        labor_rate=rate,
        total_labor_cost=hours * rate,
    )
    claim.services.append(line)
    recalculate_amounts(claim)
    claim.updated_by_user_id = user.id
    s.flush()
    log_updated(
        s, MODULE, claim, user, f"Service {line.service_name} added to claim {claim.claim_id}",
        {"service_line_id": line.id, "total_labor_cost": line.total_labor_cost},
    )
    return line


def remove_service(s: "Session", claim: "WarrantyClaim", line: "WarrantyClaimService", user: "User") -> None:
    _require_editable(claim)
    claim.services.remove(line)
    recalculate_amounts(claim)
    claim.updated_by_user_id = user.id
    log_updated(s, MODULE, claim, user, f"Service {line.service_name} removed from claim {claim.claim_id}")


# ---- Workflow ----

def _transition(s: "Session", claim: "WarrantyClaim", status: str, user: "User", description: str, reason: str | None = None, **extra: Any) -> None:
    old = claim.status
    claim.status = status
    claim.updated_by_user_id = user.id
    log_updated(
        s, MODULE, claim, user, description,
        {"changes": {"status": {"old": old, "new": status}}, **extra},
        reason=reason,
    )


def submit_claim(s: "Session", claim: "WarrantyClaim", user: "User", now: datetime | None = None) -> "WarrantyClaim":
    if claim.status != "draft":
        raise BusinessRuleError("Only draft claims can be submitted.")
    if not claim.parts and not claim.services:
        raise BusinessRuleError("Add at least one part or service before submitting.")
    claim.submission_date = now or datetime.utcnow()
    _transition(s, claim, "submitted", user, f"Warranty claim {claim.claim_id} submitted")
    return claim


def start_review(s: "Session", claim: "WarrantyClaim", user: "User") -> "WarrantyClaim":
    if claim.status != "submitted":
        raise BusinessRuleError("Only submitted claims can be put under review.")
    _transition(s, claim, "under_review", user, f"Warranty claim {claim.claim_id} under review")
    return claim


def decide_claim(
    s: "Session",
    claim: "WarrantyClaim",
    status: str,
    amount: Decimal | None,
    reason: str | None,
    user: "User",
    now: datetime | None = None,
) -> "WarrantyClaim":
    if status not in CLAIM_DECISIONS:
        raise BusinessRuleError(f"Invalid decision. Must be one of: {', '.join(CLAIM_DECISIONS)}")
    if claim.status not in DECIDABLE_STATUSES:
        raise BusinessRuleError("Only submitted or under-review claims can be decided.")
    reason = clean(reason)
    if status == "rejected":
        if not reason:
            raise BusinessRuleError("A rejection reason is required.")
        amount = Decimal("0")
    elif status == "approved" and amount is None:
        amount = claim.total_claimed_amount
    elif status == "partially_approved":
        if amount is None:
            raise BusinessRuleError("Approved amount is required for a partial approval.")
        if amount > claim.total_claimed_amount:
            raise BusinessRuleError("Approved amount cannot exceed the claimed amount.")
    if amount is not None and amount < 0:
        raise BusinessRuleError("Approved amount cannot be negative.")

    claim.approved_amount = amount
    claim.decision_date = now or datetime.utcnow()
    claim.decision_by = user.id
    claim.rejection_reason = reason if status == "rejected" else None
    _transition(
        s, claim, status, user, f"Warranty claim {claim.claim_id} {status.replace('_', ' ')}",
        reason=reason, approved_amount=amount,
    )
    return claim


def mark_paid(s: "Session", claim: "WarrantyClaim", user: "User") -> "WarrantyClaim":
    if claim.status not in PAYABLE_STATUSES:
        raise BusinessRuleError("Only approved claims can be marked as paid.")
    _transition(s, claim, "paid", user, f"Warranty claim {claim.claim_id} paid", approved_amount=claim.approved_amount)
    return claim


def close_claim(s: "Session", claim: "WarrantyClaim", user: "User") -> "WarrantyClaim":
    if claim.status not in ("paid", "rejected"):
        raise BusinessRuleError("Only paid or rejected claims can be closed.")
    _transition(s, claim, "closed", user, f"Warranty claim {claim.claim_id} closed")
    return claim


def delete_claim(s: "Session", claim: "WarrantyClaim", user: "User") -> None:
    if not claim.can_delete:
        raise BusinessRuleError("Only draft claims can be deleted.")
    soft_delete(s, claim, user, MODULE, f"Warranty claim {claim.claim_id}")


def restore_claim(s: "Session", claim: "WarrantyClaim", user: "User") -> None:
    restore(s, claim, user, MODULE, f"Warranty claim {claim.claim_id}", "Warranty claim")


# ---- Photos ----

def add_photo(
    s: "Session",
    storage: Storage,
    claim: "WarrantyClaim",
    *,
    filename: str,
    data: bytes,
    content_type: str | None,
    user: "User",
    photo_type: str | None = None,
    caption: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> "WarrantyClaimPhoto":
    from app.dms.modules.warranty.models import WarrantyClaimPhoto

    error = check_photo_upload(filename, content_type, len(data), allowed=PHOTO_CONTENT_TYPES, max_bytes=PHOTO_MAX_BYTES)
    if error:
        raise BusinessRuleError(error)
    key = store_photo(storage, PHOTO_FOLDER, claim.id, filename, data, content_type)
    photo = WarrantyClaimPhoto(
        warranty_claim_id=claim.id,
        file_path=key,
        file_name=filename,
        file_size=len(data),
        mime_type=content_type or "application/octet-stream",
        photo_type=clean(photo_type),
        caption=clean(caption),
        uploaded_by=user.id,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
    )
    s.add(photo)
    s.flush()
    record_event(
        s,
        actor=user,
        action=f"{MODULE}.photo_upload",
        description=f"Photo {filename} uploaded to claim {claim.claim_id}",
        entity_type="WarrantyClaim",
        entity_id=str(claim.id),
        event="updated",
        metadata={"photo_id": photo.id, "file_path": key},
    )
    return photo


def delete_photo(s: "Session", storage: Storage, photo: "WarrantyClaimPhoto", user: "User") -> None:
    claim = photo.claim
    storage.delete(photo.file_path)
    record_event(
        s,
        actor=user,
        action=f"{MODULE}.photo_delete",
        description=f"Photo {photo.file_name} removed from claim {claim.claim_id}",
        entity_type="WarrantyClaim",
        entity_id=str(claim.id),
        event="updated",
        metadata={"photo_id": photo.id},
    )
    s.delete(photo)


def claim_stats(base_query) -> dict[str, Any]:
    claims = base_query.all()
    claimed = sum((Decimal(c.total_claimed_amount or 0) for c in claims), Decimal("0"))
    return {
        "total": len(claims),
        "draft": sum(1 for c in claims if c.status == "draft"),
        "pending_decision": sum(1 for c in claims if c.status in DECIDABLE_STATUSES),
        "approved": sum(1 for c in claims if c.status in PAYABLE_STATUSES + ("paid",)),
        "claimed_total": f"{claimed:,.2f}",
    }
