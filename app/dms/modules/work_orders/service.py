from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.dms.audit import log_created, log_updated, record_event, restore, soft_delete
from app.dms.constants import PHOTO_CONTENT_TYPES, PHOTO_MAX_BYTES, WORK_ORDER_PRIORITIES, WORK_ORDER_STATUSES
from app.dms.storage import Storage, check_photo_upload, store_photo
from app.dms.utils import (
    EMAIL_RE,
    BusinessRuleError,
    apply_changes,
    check_enum,
    check_number,
    clean,
    count_created_on,
    parse_bool,
    parse_date,
    parse_datetime,
    parse_decimal,
    parse_int,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.work_orders.models import WorkOrder, WorkOrderPhoto

MODULE = "work_orders"
PHOTO_FOLDER = "work_orders"

_TEXT_FIELDS = (
    "vehicle_make",
    "vehicle_model",
    "customer_name",
    "customer_phone",
    "customer_email",
    "notes",
    "customer_concerns",
    "diagnosis",
    "work_performed",
)


def generate_work_order_number(s: "Session", today: date | None = None) -> str:
    """WO-YYYYMMDD-NNNN, numbered by rows created today (soft-deleted included)."""
    from app.dms.modules.work_orders.models import WorkOrder

    today = today or date.today()
    seq = count_created_on(s, WorkOrder, today) + 1
    return f"WO-{today.strftime('%Y%m%d')}-{seq:04d}"


def next_pms_due(current_mileage: int | None, pms_interval_km: int | None) -> int | None:
    if current_mileage is None or not pms_interval_km:
        return None
    return current_mileage + pms_interval_km


def validate_work_order_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    check_enum(errors, "Status", payload.get("status"), WORK_ORDER_STATUSES)
    check_enum(errors, "Priority", payload.get("priority"), WORK_ORDER_PRIORITIES)
    if not clean(payload.get("customer_name")) and not parse_int(payload.get("customer_id")):
        errors.append("Customer is required.")
    vin = clean(payload.get("vehicle_vin"))
    if vin and len(vin) != 17:
        errors.append("VIN must be exactly 17 characters.")
    email = clean(payload.get("customer_email"))
    if email and not EMAIL_RE.match(email):
        errors.append("Please enter a valid email address.")
    check_number(errors, "Vehicle year", payload.get("vehicle_year"), minimum=1900, maximum=date.today().year + 2)
    check_number(errors, "Current mileage", payload.get("current_mileage"), minimum=0)
    check_number(errors, "PMS interval", payload.get("pms_interval_km"), minimum=0)
    check_number(errors, "Completion", payload.get("completion_percentage"), minimum=0, maximum=100)
    for f, label in (("estimated_hours", "Estimated hours"), ("actual_hours", "Actual hours"),
                     ("estimated_cost", "Estimated cost"), ("actual_cost", "Actual cost")):
        check_number(errors, label, payload.get(f), minimum=0)
    try:
        parse_datetime(payload.get("scheduled_at"))
        parse_date(payload.get("due_date"))
    except ValueError:
        errors.append("Scheduled date and due date must be valid dates.")
    return errors


def _values(payload: dict) -> dict[str, Any]:
    values: dict[str, Any] = {f: clean(payload.get(f)) for f in _TEXT_FIELDS}
    vin = clean(payload.get("vehicle_vin"))
    values.update(
        vehicle_vin=vin.upper() if vin else None,
        vehicle_unit_id=parse_int(payload.get("vehicle_unit_id")),
        customer_id=parse_int(payload.get("customer_id")),
        service_type_id=parse_int(payload.get("service_type_id")),
        vehicle_year=parse_int(payload.get("vehicle_year")),
        current_mileage=parse_int(payload.get("current_mileage")),
        priority=clean(payload.get("priority")) or "normal",
        scheduled_at=parse_datetime(payload.get("scheduled_at")),
        due_date=parse_date(payload.get("due_date")),
        estimated_hours=parse_decimal(payload.get("estimated_hours")),
        actual_hours=parse_decimal(payload.get("actual_hours")),
        estimated_cost=parse_decimal(payload.get("estimated_cost")),
        actual_cost=parse_decimal(payload.get("actual_cost")),
        completion_percentage=parse_int(payload.get("completion_percentage")) or 0,
        assigned_technician_id=parse_int(payload.get("assigned_technician_id")),
        pms_interval_km=parse_int(payload.get("pms_interval_km")),
        is_warranty_claim=parse_bool(payload.get("is_warranty_claim")),
    )
    values["next_pms_due_km"] = next_pms_due(values["current_mileage"], values["pms_interval_km"])
    return values


def _fill_from_links(s: "Session", wo: "WorkOrder") -> None:
    """Copy customer and vehicle details from linked records where the form left them blank."""
    from app.dms.modules.customers.models import Customer
    from app.dms.modules.vehicles.models import VehicleUnit

    if wo.customer_id:
        c = s.get(Customer, wo.customer_id)
        if c:
            wo.customer_name = wo.customer_name or c.full_name
            wo.customer_phone = wo.customer_phone or c.phone
            wo.customer_email = wo.customer_email or c.email
    if wo.vehicle_unit_id:
        unit = s.get(VehicleUnit, wo.vehicle_unit_id)
        if unit:
            wo.vehicle_vin = wo.vehicle_vin or unit.vin
            source = unit.master or unit.vehicle_model
            if source:
                wo.vehicle_make = wo.vehicle_make or source.make
                wo.vehicle_model = wo.vehicle_model or source.model
                wo.vehicle_year = wo.vehicle_year or source.year
            if wo.current_mileage is None:
                wo.current_mileage = unit.odometer
    wo.next_pms_due_km = next_pms_due(wo.current_mileage, wo.pms_interval_km)


def _stamp_status(wo: "WorkOrder", now: datetime | None = None) -> None:
    now = now or datetime.utcnow()
    if wo.status == "in_progress" and wo.started_at is None:
        wo.started_at = now
    elif wo.status == "completed":
        if wo.completed_at is None:
            wo.completed_at = now
        wo.completion_percentage = 100


def create_work_order(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "WorkOrder":
    from app.dms.modules.work_orders.models import WorkOrder

    wo = WorkOrder(
        work_order_number=generate_work_order_number(s),
        branch_id=branch_id,
        status=clean(payload.get("status")) or "draft",
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **_values(payload),
    )
    _fill_from_links(s, wo)
    _stamp_status(wo)
    s.add(wo)
    s.flush()
    log_created(s, MODULE, wo, user, f"Work order {wo.work_order_number} created", {"status": wo.status, "priority": wo.priority})
    return wo


def update_work_order(s: "Session", wo: "WorkOrder", payload: dict, user: "User") -> "WorkOrder":
    values = _values(payload)
    values["status"] = clean(payload.get("status")) or wo.status
    changes = apply_changes(wo, values)
    _fill_from_links(s, wo)
    if "status" in changes:
        _stamp_status(wo)
    wo.updated_by_user_id = user.id
    log_updated(s, MODULE, wo, user, f"Work order {wo.work_order_number} updated", {"changes": changes})
    return wo


def set_status(s: "Session", wo: "WorkOrder", status: str, user: "User", now: datetime | None = None) -> "WorkOrder":
    if status not in WORK_ORDER_STATUSES:
        raise BusinessRuleError(f"Invalid status. Must be one of: {', '.join(WORK_ORDER_STATUSES)}")
    old = wo.status
    wo.status = status
    _stamp_status(wo, now)
    wo.updated_by_user_id = user.id
    log_updated(
        s, MODULE, wo, user, f"Work order {wo.work_order_number} status changed to {status}",
        {"changes": {"status": {"old": old, "new": status}}},
    )
    return wo


def delete_work_order(s: "Session", wo: "WorkOrder", user: "User") -> None:
    if wo.status == "in_progress":
        raise BusinessRuleError("Cannot delete a work order that is in progress.")
    soft_delete(s, wo, user, MODULE, f"Work order {wo.work_order_number}")


def restore_work_order(s: "Session", wo: "WorkOrder", user: "User") -> None:
    restore(s, wo, user, MODULE, f"Work order {wo.work_order_number}", "Work order")


def work_order_stats(base_query) -> dict[str, int]:
    from app.dms.modules.work_orders.models import WorkOrder

    return {
        "total": base_query.count(),
        "scheduled": base_query.filter(WorkOrder.status.in_(("scheduled", "confirmed"))).count(),
        "in_progress": base_query.filter(WorkOrder.status == "in_progress").count(),
        "completed": base_query.filter(WorkOrder.status == "completed").count(),
        "overdue": base_query.filter(WorkOrder.status == "overdue").count(),
    }


# ---- Photos ----

def add_photo(
    s: "Session",
    storage: Storage,
    wo: "WorkOrder",
    *,
    filename: str,
    data: bytes,
    content_type: str | None,
    user: "User",
    photo_type: str | None = None,
    caption: str | None = None,
    notes: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> "WorkOrderPhoto":
    from app.dms.modules.work_orders.models import WorkOrderPhoto

    error = check_photo_upload(filename, content_type, len(data), allowed=PHOTO_CONTENT_TYPES, max_bytes=PHOTO_MAX_BYTES)
    if error:
        raise BusinessRuleError(error)
    key = store_photo(storage, PHOTO_FOLDER, wo.id, filename, data, content_type)
    photo = WorkOrderPhoto(
        work_order_id=wo.id,
        file_path=key,
        file_name=filename,
        file_size=len(data),
        mime_type=content_type or "application/octet-stream",
        photo_type=clean(photo_type),
        caption=clean(caption),
        notes=clean(notes),
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
        description=f"Photo {filename} uploaded to work order {wo.work_order_number}",
        entity_type="WorkOrder",
        entity_id=str(wo.id),
        event="updated",
        metadata={"photo_id": photo.id, "file_path": key, "file_size": len(data)},
    )
    return photo


def delete_photo(s: "Session", storage: Storage, photo: "WorkOrderPhoto", user: "User") -> None:
    wo = photo.work_order
    storage.delete(photo.file_path)
    record_event(
        s,
        actor=user,
        action=f"{MODULE}.photo_delete",
        description=f"Photo {photo.file_name} removed from work order {wo.work_order_number}",
        entity_type="WorkOrder",
        entity_id=str(wo.id),
        event="updated",
        metadata={"photo_id": photo.id, "file_path": photo.file_path},
    )
    s.delete(photo)
