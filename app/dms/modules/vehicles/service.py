from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.dms.audit import log_created, log_updated, record_event, restore, soft_delete
from app.dms.constants import INACTIVE_UNIT_STATUSES, PAYMENT_TYPES, RESERVATION_STATUSES, VEHICLE_UNIT_STATUSES
from app.dms.modules.pipelines.service import find_active_pipeline, on_reservation_made
from app.dms.utils import (
    BusinessRuleError,
    apply_changes,
    check_enum,
    check_number,
    clean,
    next_sequence_id,
    parse_bool,
    parse_date,
    parse_decimal,
    parse_int,
    parse_json_object,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.vehicles.models import (
        VehicleMaster,
        VehicleModel,
        VehicleMovement,
        VehicleReservation,
        VehicleUnit,
    )

MODULE = "vehicles"
RESERVATION_MODULE = "reservations"

_MASTER_TEXT = ("make", "model", "trim", "body_type", "transmission", "fuel_type", "drivetrain", "description")
_MODEL_TEXT = ("make", "model", "model_code", "body_type", "engine_type", "fuel_type", "transmission")
_UNIT_TEXT = ("color_exterior", "color_interior", "notes")


# ---- Vehicle masters ----

def validate_master_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("make")):
        errors.append("Make is required.")
    if not clean(payload.get("model")):
        errors.append("Model is required.")
    check_number(errors, "Year", payload.get("year"), minimum=1900, maximum=date.today().year + 2, required=True)
    check_number(errors, "Seating", payload.get("seating"), minimum=1, maximum=50)
    check_number(errors, "Doors", payload.get("doors"), minimum=1, maximum=10)
    check_number(errors, "Base price", payload.get("base_price"), minimum=0)
    currency = clean(payload.get("currency"))
    if currency and len(currency) != 3:
        errors.append("Currency code must be exactly 3 characters (e.g., PHP, USD).")
    _, err = parse_json_object(payload.get("specs"))
    if err:
        errors.append(f"Specs: {err}")
    return errors


def _master_values(payload: dict) -> dict[str, Any]:
    values: dict[str, Any] = {f: clean(payload.get(f)) for f in _MASTER_TEXT}
    values.update(
        year=parse_int(payload.get("year")),
        seating=parse_int(payload.get("seating")),
        doors=parse_int(payload.get("doors")),
        base_price=parse_decimal(payload.get("base_price")),
        currency=(clean(payload.get("currency")) or "PHP").upper(),
        specs=parse_json_object(payload.get("specs"))[0],
        is_active=parse_bool(payload.get("is_active", True)),
    )
    return values


def create_master(s: "Session", payload: dict, user: "User") -> "VehicleMaster":
    from app.dms.modules.vehicles.models import VehicleMaster

    master = VehicleMaster(created_by_user_id=user.id, updated_by_user_id=user.id, **_master_values(payload))
    s.add(master)
    s.flush()
    log_created(s, MODULE, master, user, f"Vehicle master {master.full_name} created")
    return master


def update_master(s: "Session", master: "VehicleMaster", payload: dict, user: "User") -> "VehicleMaster":
    changes = apply_changes(master, _master_values(payload))
    master.updated_by_user_id = user.id
    log_updated(s, MODULE, master, user, f"Vehicle master {master.full_name} updated", {"changes": changes})
    return master


def delete_master(s: "Session", master: "VehicleMaster", user: "User") -> None:
    active = [u for u in master.units if u.deleted_at is None and u.status not in INACTIVE_UNIT_STATUSES]
    if active:
        raise BusinessRuleError("Cannot delete vehicle master with active units.")
    soft_delete(s, master, user, MODULE, f"Vehicle master {master.full_name}")


def restore_master(s: "Session", master: "VehicleMaster", user: "User") -> None:
    restore(s, master, user, MODULE, f"Vehicle master {master.full_name}", "Vehicle master")


# ---- Vehicle models ----

def validate_model_payload(s: "Session", payload: dict, model_id: int | None = None) -> list[str]:
    from app.dms.modules.vehicles.models import VehicleModel

    errors: list[str] = []
    for f, label in (("make", "Make"), ("model", "Model"), ("model_code", "Model code")):
        if not clean(payload.get(f)):
            errors.append(f"{label} is required.")
    code = clean(payload.get("model_code"))
    if code:
        q = s.query(VehicleModel).filter(VehicleModel.model_code == code)
        if model_id:
            q = q.filter(VehicleModel.id != model_id)
        if q.first():
            errors.append("Model code already exists.")
    check_number(errors, "Year", payload.get("year"), minimum=1900, maximum=date.today().year + 2)
    check_number(errors, "Seating capacity", payload.get("seating_capacity"), minimum=1, maximum=100)
    check_number(errors, "Base price", payload.get("base_price"), minimum=0)
    check_number(errors, "SRP", payload.get("srp"), minimum=0)
    return errors


def _model_values(payload: dict) -> dict[str, Any]:
    values: dict[str, Any] = {f: clean(payload.get(f)) for f in _MODEL_TEXT}
    values.update(
        year=parse_int(payload.get("year")),
        seating_capacity=parse_int(payload.get("seating_capacity")),
        base_price=parse_decimal(payload.get("base_price")),
        srp=parse_decimal(payload.get("srp")),
        is_active=parse_bool(payload.get("is_active", True)),
    )
    return values


def create_model(s: "Session", payload: dict, user: "User") -> "VehicleModel":
    from app.dms.modules.vehicles.models import VehicleModel

    vm = VehicleModel(created_by_user_id=user.id, updated_by_user_id=user.id, **_model_values(payload))
    s.add(vm)
    s.flush()
    log_created(s, MODULE, vm, user, f"Vehicle model {vm.model_code} created")
    return vm


def update_model(s: "Session", vm: "VehicleModel", payload: dict, user: "User") -> "VehicleModel":
    changes = apply_changes(vm, _model_values(payload))
    vm.updated_by_user_id = user.id
    log_updated(s, MODULE, vm, user, f"Vehicle model {vm.model_code} updated", {"changes": changes})
    return vm


def delete_model(s: "Session", vm: "VehicleModel", user: "User") -> None:
    soft_delete(s, vm, user, MODULE, f"Vehicle model {vm.model_code}")


def restore_model(s: "Session", vm: "VehicleModel", user: "User") -> None:
    restore(s, vm, user, MODULE, f"Vehicle model {vm.model_code}", "Vehicle model")


# ---- Vehicle units ----

def _check_sold_date(errors: list[str], status: str | None, sold: date | None, acquired: date | None) -> None:
    if status == "sold" and sold is None:
        errors.append("Sold date is required when status is sold.")
    if sold is not None and status != "sold":
        errors.append("Sold date can only be set when status is sold.")
    if sold and acquired and sold < acquired:
        errors.append("Sold date must be on or after acquisition date.")


def validate_unit_payload(s: "Session", payload: dict, unit_id: int | None = None, today: date | None = None) -> list[str]:
    from app.dms.modules.vehicles.models import VehicleUnit

    errors: list[str] = []
    vin = clean(payload.get("vin"))
    if not vin:
        errors.append("VIN (Vehicle Identification Number) is required.")
    elif len(vin) != 17:
        errors.append("VIN must be exactly 17 characters.")
    else:
        q = s.query(VehicleUnit).filter(VehicleUnit.vin == vin.upper())
        if unit_id:
            q = q.filter(VehicleUnit.id != unit_id)
        if q.first():
            errors.append("This VIN is already registered in the system.")
    stock = clean(payload.get("stock_number"))
    if not stock:
        errors.append("Stock number is required.")
    else:
        q = s.query(VehicleUnit).filter(VehicleUnit.stock_number == stock)
        if unit_id:
            q = q.filter(VehicleUnit.id != unit_id)
        if q.first():
            errors.append("This stock number is already in use.")
    if not parse_int(payload.get("vehicle_master_id")) and not parse_int(payload.get("vehicle_model_id")):
        errors.append("A vehicle master or vehicle model is required.")

    status = clean(payload.get("status")) or "in_stock"
    check_enum(errors, "Status", status, VEHICLE_UNIT_STATUSES)
    check_number(errors, "Purchase price", payload.get("purchase_price"), minimum=0)
    check_number(errors, "Sale price", payload.get("sale_price"), minimum=0)
    check_number(errors, "Odometer reading", payload.get("odometer"), minimum=0)
    try:
        acquired = parse_date(payload.get("acquisition_date"))
        sold = parse_date(payload.get("sold_date"))
    except ValueError:
        errors.append("Dates must be valid (YYYY-MM-DD).")
        return errors
    if acquired and acquired > (today or date.today()):
        errors.append("Acquisition date cannot be in the future.")
    _check_sold_date(errors, status, sold, acquired)
    return errors


def _unit_values(payload: dict) -> dict[str, Any]:
    values: dict[str, Any] = {f: clean(payload.get(f)) for f in _UNIT_TEXT}
    values.update(
        vin=(clean(payload.get("vin")) or "").upper(),
        stock_number=clean(payload.get("stock_number")),
        vehicle_master_id=parse_int(payload.get("vehicle_master_id")),
        vehicle_model_id=parse_int(payload.get("vehicle_model_id")),
        assigned_user_id=parse_int(payload.get("assigned_user_id")),
        purchase_price=parse_decimal(payload.get("purchase_price")),
        sale_price=parse_decimal(payload.get("sale_price")),
        currency=(clean(payload.get("currency")) or "PHP").upper(),
        acquisition_date=parse_date(payload.get("acquisition_date")),
        sold_date=parse_date(payload.get("sold_date")),
        odometer=parse_int(payload.get("odometer")),
    )
    return values


def create_unit(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "VehicleUnit":
    from app.dms.modules.vehicles.models import VehicleUnit

    unit = VehicleUnit(
        branch_id=branch_id,
        status=clean(payload.get("status")) or "in_stock",
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **_unit_values(payload),
    )
    s.add(unit)
    s.flush()
    log_created(s, MODULE, unit, user, f"Vehicle unit {unit.vin} created", {"stock_number": unit.stock_number, "status": unit.status})
    return unit


def update_unit(s: "Session", unit: "VehicleUnit", payload: dict, user: "User") -> "VehicleUnit":
    values = _unit_values(payload)
    values["status"] = clean(payload.get("status")) or unit.status
    changes = apply_changes(unit, values)
    unit.updated_by_user_id = user.id
    log_updated(s, MODULE, unit, user, f"Vehicle unit {unit.vin} updated", {"changes": changes})
    return unit


def update_status(s: "Session", unit: "VehicleUnit", status: str, sold_date: date | None, user: "User") -> "VehicleUnit":
    errors: list[str] = []
    check_enum(errors, "Status", status, VEHICLE_UNIT_STATUSES, required=True)
    _check_sold_date(errors, status, sold_date, unit.acquisition_date)
    if errors:
        raise BusinessRuleError(errors[0])
    old = unit.status
    unit.status = status
    unit.sold_date = sold_date
    unit.updated_by_user_id = user.id
    log_updated(
        s, MODULE, unit, user, f"Vehicle unit {unit.vin} status changed from {old} to {status}",
        {"changes": {"status": {"old": old, "new": status}}},
    )
    return unit


def transfer_unit(
    s: "Session",
    unit: "VehicleUnit",
    to_branch_id: int,
    when: date | None,
    user: "User",
    remarks: str | None = None,
) -> "VehicleMovement":
    from app.dms.modules.vehicles.models import VehicleMovement

    if unit.branch_id == to_branch_id:
        raise BusinessRuleError("Cannot transfer vehicle to the same branch it is currently in.")
    if unit.status in INACTIVE_UNIT_STATUSES:
        raise BusinessRuleError(f"Cannot transfer vehicle with status: {unit.status}")

    from_branch_id = unit.branch_id
    movement = VehicleMovement(
        vehicle_unit_id=unit.id,
        from_branch_id=from_branch_id,
        to_branch_id=to_branch_id,
        transfer_date=when or date.today(),
        user_id=user.id,
        remarks=clean(remarks),
        status="completed",
        completed_at=datetime.utcnow(),
    )
    s.add(movement)
    unit.branch_id = to_branch_id
    unit.status = "transferred"
    unit.updated_by_user_id = user.id
    s.flush()
    record_event(
        s,
        actor=user,
        action=f"{MODULE}.transfer",
        description=f"Vehicle unit {unit.vin} transferred",
        entity_type="VehicleUnit",
        entity_id=str(unit.id),
        event="transferred",
        metadata={"from_branch_id": from_branch_id, "to_branch_id": to_branch_id, "movement_id": movement.id},
    )
    return movement


def delete_unit(s: "Session", unit: "VehicleUnit", user: "User") -> None:
    if any(r.is_active and r.deleted_at is None for r in _reservations_for(s, unit)):
        raise BusinessRuleError("Cannot delete a vehicle unit with an active reservation.")
    soft_delete(s, unit, user, MODULE, f"Vehicle unit {unit.vin}")


def restore_unit(s: "Session", unit: "VehicleUnit", user: "User") -> None:
    restore(s, unit, user, MODULE, f"Vehicle unit {unit.vin}", "Vehicle unit")


def unit_stats(base_query) -> dict[str, int]:
    from app.dms.modules.vehicles.models import VehicleUnit

    return {
        "total": base_query.count(),
        "in_stock": base_query.filter(VehicleUnit.status == "in_stock").count(),
        "reserved": base_query.filter(VehicleUnit.status == "reserved").count(),
        "sold": base_query.filter(VehicleUnit.status == "sold").count(),
    }


def unit_to_dict(unit: "VehicleUnit") -> dict[str, Any]:
    return {
        "id": unit.id,
        "vin": unit.vin,
        "stock_number": unit.stock_number,
        "name": unit.full_name,
        "status": unit.status,
        "branch_id": unit.branch_id,
        "branch": unit.branch.name if unit.branch else None,
        "is_locked": unit.is_locked,
        "allocation_status": unit.allocation_status,
        "sale_price": float(unit.sale_price) if unit.sale_price is not None else None,
        "currency": unit.currency,
        "days_in_inventory": unit.days_in_inventory,
    }


# ---- Reservations ----

def _reservations_for(s: "Session", unit: "VehicleUnit") -> list["VehicleReservation"]:
    from app.dms.modules.vehicles.models import VehicleReservation

    return s.query(VehicleReservation).filter(VehicleReservation.vehicle_unit_id == unit.id).all()


def unit_is_available(s: "Session", unit: "VehicleUnit") -> bool:
    if unit.deleted_at or unit.status in INACTIVE_UNIT_STATUSES or unit.is_locked:
        return False
    return not any(r.is_active and r.deleted_at is None for r in _reservations_for(s, unit))


def validate_reservation_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not parse_int(payload.get("customer_id")):
        errors.append("Customer is required.")
    if not parse_int(payload.get("vehicle_unit_id")):
        errors.append("Vehicle unit is required.")
    check_enum(errors, "Payment type", payload.get("payment_type"), PAYMENT_TYPES)
    check_enum(errors, "Status", payload.get("status"), RESERVATION_STATUSES)
    try:
        reserved_on = parse_date(payload.get("reservation_date"))
        release_on = parse_date(payload.get("target_release_date"))
    except ValueError:
        errors.append("Dates must be valid (YYYY-MM-DD).")
        return errors
    if reserved_on is None:
        errors.append("Reservation date is required.")
    elif release_on and release_on < reserved_on:
        errors.append("Target release date must be on or after the reservation date.")
    return errors


def _allocation_label(reservation: "VehicleReservation") -> str:
    return f"Allocated to {reservation.customer.display_name} – {reservation.reservation_ref}"


def _lock_for(unit: "VehicleUnit", reservation: "VehicleReservation") -> None:
    unit.status = "reserved"
    unit.is_locked = True
    unit.allocation_status = _allocation_label(reservation)


def create_reservation(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "VehicleReservation":
    from app.dms.modules.customers.models import Customer
    from app.dms.modules.vehicles.models import VehicleReservation, VehicleUnit

    customer = s.get(Customer, parse_int(payload.get("customer_id")))
    if not customer or customer.deleted_at:
        raise BusinessRuleError("Customer not found.")
    unit = s.get(VehicleUnit, parse_int(payload.get("vehicle_unit_id")))
    if not unit or unit.deleted_at:
        raise BusinessRuleError("Vehicle unit not found.")
    if not unit_is_available(s, unit):
        raise BusinessRuleError("Vehicle unit is not available for reservation.")

    reservation = VehicleReservation(
        reservation_ref=next_sequence_id(s, VehicleReservation.reservation_ref, "RS", width=4),
        customer=customer,
        unit=unit,
        branch_id=branch_id,
        handled_by_branch_id=parse_int(payload.get("handled_by_branch_id")) or branch_id,
        reservation_date=parse_date(payload.get("reservation_date")) or date.today(),
        payment_type=clean(payload.get("payment_type")),
        target_release_date=parse_date(payload.get("target_release_date")),
        status=clean(payload.get("status")) or "pending",
        remarks=clean(payload.get("remarks")),
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    s.add(reservation)
    s.flush()
    _lock_for(unit, reservation)
    log_created(
        s, RESERVATION_MODULE, reservation, user, f"Reservation {reservation.reservation_ref} created",
        {"vehicle_unit_id": unit.id, "customer_id": customer.id},
    )

    pipeline = find_active_pipeline(s, customer.phone, customer.email)
    on_reservation_made(s, pipeline, user, {"reservation_ref": reservation.reservation_ref})
    return reservation


def update_reservation(s: "Session", reservation: "VehicleReservation", payload: dict, user: "User") -> "VehicleReservation":
    values: dict[str, Any] = {
        "reservation_date": parse_date(payload.get("reservation_date")) or reservation.reservation_date,
        "payment_type": clean(payload.get("payment_type")),
        "target_release_date": parse_date(payload.get("target_release_date")),
        "status": clean(payload.get("status")) or reservation.status,
        "remarks": clean(payload.get("remarks")),
    }
    changes = apply_changes(reservation, values)
    reservation.updated_by_user_id = user.id
    if "status" in changes:
        _sync_unit(reservation)
    log_updated(s, RESERVATION_MODULE, reservation, user, f"Reservation {reservation.reservation_ref} updated", {"changes": changes})
    return reservation


def _sync_unit(reservation: "VehicleReservation") -> None:
    unit = reservation.unit
    if reservation.status == "cancelled":
        unit.status = "in_stock"
        unit.is_locked = False
        unit.allocation_status = None
    elif reservation.status == "released":
        unit.is_locked = False
    else:
        _lock_for(unit, reservation)


def set_reservation_status(s: "Session", reservation: "VehicleReservation", status: str, user: "User") -> "VehicleReservation":
    if status not in RESERVATION_STATUSES:
        raise BusinessRuleError(f"Invalid status. Must be one of: {', '.join(RESERVATION_STATUSES)}")
    old = reservation.status
    if old == status:
        return reservation
    reservation.status = status
    reservation.updated_by_user_id = user.id
    _sync_unit(reservation)
    log_updated(
        s, RESERVATION_MODULE, reservation, user, f"Reservation {reservation.reservation_ref} {status}",
        {"changes": {"status": {"old": old, "new": status}}},
    )
    return reservation


def delete_reservation(s: "Session", reservation: "VehicleReservation", user: "User") -> None:
    if reservation.is_active:
        set_reservation_status(s, reservation, "cancelled", user)
    soft_delete(s, reservation, user, RESERVATION_MODULE, f"Reservation {reservation.reservation_ref}")


def restore_reservation(s: "Session", reservation: "VehicleReservation", user: "User") -> None:
    restore(s, reservation, user, RESERVATION_MODULE, f"Reservation {reservation.reservation_ref}", "Reservation")
