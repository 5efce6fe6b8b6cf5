from __future__ import annotations

import re
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.dms.audit import log_created, log_updated, restore, soft_delete
from app.dms.constants import ESIGNATURE_STATUSES, TEST_DRIVE_STATUSES, TEST_DRIVE_TYPES
from app.dms.modules.pipelines.service import (
    find_active_pipeline,
    on_reservation_made,
    on_test_drive_completed,
    on_test_drive_scheduled,
)
from app.dms.utils import (
    EMAIL_RE,
    check_enum,
    check_number,
    clean,
    next_sequence_id,
    parse_bool,
    parse_date,
    parse_decimal,
    parse_int,
    parse_time,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.test_drives.models import TestDrive

MODULE = "test_drives"

_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9](:[0-5][0-9])?$")
_TEXT_FIELDS = ("customer_name", "customer_phone", "customer_email", "vehicle_details", "notes")


def validate_test_drive_payload(payload: dict, *, is_new: bool = True, today: date | None = None) -> list[str]:
    errors: list[str] = []
    name = clean(payload.get("customer_name"))
    if not name:
        errors.append("Customer name is required.")
    elif len(name) < 3:
        errors.append("Customer name must be at least 3 characters.")
    phone = clean(payload.get("customer_phone"))
    if not phone:
        errors.append("Customer phone number is required.")
    elif not 10 <= len(phone) <= 20:
        errors.append("Phone number must be between 10 and 20 characters.")
    email = clean(payload.get("customer_email"))
    if email and not EMAIL_RE.match(email):
        errors.append("Please enter a valid email address.")

    vin = clean(payload.get("vehicle_vin"))
    if not vin:
        errors.append("Vehicle VIN is required.")
    elif len(vin) != 17:
        errors.append("VIN must be exactly 17 characters.")
    if not clean(payload.get("vehicle_details")):
        errors.append("Vehicle details are required.")

    try:
        scheduled = parse_date(payload.get("scheduled_date"))
    except ValueError:
        scheduled = None
        errors.append("Scheduled date must be a valid date (YYYY-MM-DD).")
    else:
        if scheduled is None:
            errors.append("Scheduled date is required.")
        elif is_new and scheduled < (today or date.today()):
            errors.append("Scheduled date must be today or in the future.")
    t = clean(payload.get("scheduled_time"))
    if not t:
        errors.append("Scheduled time is required.")
    elif not _TIME_RE.match(t):
        errors.append("Invalid time format. Use HH:MM format.")

    check_number(errors, "Duration", payload.get("duration_minutes"), minimum=15, maximum=240, required=True)
    check_enum(errors, "Status", payload.get("status"), TEST_DRIVE_STATUSES)
    check_enum(errors, "Reservation type", payload.get("reservation_type"), TEST_DRIVE_TYPES, required=True)
    check_enum(errors, "E-signature status", payload.get("esignature_status"), ESIGNATURE_STATUSES)
    check_number(errors, "Route distance", payload.get("route_distance_km"), minimum=0, maximum=9999.99)
    check_number(errors, "Max speed", payload.get("max_speed_kmh"), minimum=0, maximum=999.99)
    check_number(errors, "Deposit amount", payload.get("deposit_amount"), minimum=0)
    return errors


def _values(payload: dict) -> dict[str, Any]:
    values: dict[str, Any] = {f: clean(payload.get(f)) for f in _TEXT_FIELDS}
    values.update(
        vehicle_vin=(clean(payload.get("vehicle_vin")) or "").upper(),
        scheduled_date=parse_date(payload.get("scheduled_date")),
        scheduled_time=parse_time(payload.get("scheduled_time")),
        duration_minutes=parse_int(payload.get("duration_minutes")) or 30,
        reservation_type=clean(payload.get("reservation_type")) or "scheduled",
        esignature_status=clean(payload.get("esignature_status")) or "pending",
        route_distance_km=parse_decimal(payload.get("route_distance_km")),
        max_speed_kmh=parse_decimal(payload.get("max_speed_kmh")),
        deposit_amount=parse_decimal(payload.get("deposit_amount")),
        insurance_verified=parse_bool(payload.get("insurance_verified")),
        license_verified=parse_bool(payload.get("license_verified")),
        assigned_user_id=parse_int(payload.get("assigned_user_id")),
    )
    return values


def _pipeline_for(s: "Session", td: "TestDrive"):
    return find_active_pipeline(s, td.customer_phone, td.customer_email)


def create_test_drive(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "TestDrive":
    from app.dms.modules.test_drives.models import TestDrive

    values = _values(payload)
    td = TestDrive(
        reservation_id=next_sequence_id(s, TestDrive.reservation_id, "TD"),
        branch_id=branch_id,
        status=clean(payload.get("status")) or "pending_signature",
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **values,
    )
    if td.esignature_status == "signed":
        td.esignature_timestamp = datetime.utcnow()
    s.add(td)
    s.flush()
    log_created(s, MODULE, td, user, f"Test drive {td.reservation_id} scheduled for {td.customer_name}", {"status": td.status})

    if td.status == "confirmed":
        on_test_drive_scheduled(s, _pipeline_for(s, td), user, {"test_drive_id": td.reservation_id})
    return td


def update_test_drive(s: "Session", td: "TestDrive", payload: dict, user: "User") -> "TestDrive":
    new_values = _values(payload)
    new_values["status"] = clean(payload.get("status")) or td.status

    changes = {}
    for key, new in new_values.items():
        old = getattr(td, key)
        if new != old:
            changes[key] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(td, key, new)
    if "esignature_status" in changes and td.esignature_status == "signed":
        td.esignature_timestamp = datetime.utcnow()
    td.updated_by_user_id = user.id
    log_updated(s, MODULE, td, user, f"Test drive {td.reservation_id} updated", {"changes": changes})

    props = {"test_drive_id": td.reservation_id}
    if "status" in changes:
        if td.status == "confirmed":
            on_test_drive_scheduled(s, _pipeline_for(s, td), user, props)
        elif td.status == "completed":
            on_test_drive_completed(s, _pipeline_for(s, td), user, props)
    if "reservation_type" in changes and td.reservation_type == "reservation":
        on_reservation_made(s, _pipeline_for(s, td), user, props)
    return td


def delete_test_drive(s: "Session", td: "TestDrive", user: "User") -> None:
    soft_delete(s, td, user, MODULE, f"Test drive {td.reservation_id}")


def restore_test_drive(s: "Session", td: "TestDrive", user: "User") -> None:
    restore(s, td, user, MODULE, f"Test drive {td.reservation_id}", "Test drive")
