from datetime import date, timedelta

import pytest

from app.dms.db import session_scope
from app.dms.modules.customers.service import create_customer
from app.dms.modules.pipelines.service import change_stage, create_pipeline
from app.dms.modules.vehicles.models import VehicleMovement, VehicleReservation, VehicleUnit
from app.dms.modules.vehicles.service import (
    create_master,
    create_reservation,
    create_unit,
    delete_master,
    delete_unit,
    set_reservation_status,
    transfer_unit,
    unit_is_available,
    update_status,
    validate_master_payload,
    validate_unit_payload,
)
from app.dms.utils import BusinessRuleError

from conftest import branch_id, get_admin, login, make_user, post

VIN = "MHFXW42G6P1234567"


def _stock(app, *, branch="MNL", vin=VIN, stock="STK-001", **extra) -> int:
    with session_scope(app) as s:
        admin = get_admin(s)
        master = create_master(s, {"make": "Toyota", "model": "Hilux", "year": "2025", "trim": "Conquest"}, admin)
        payload = {"vin": vin, "stock_number": stock, "vehicle_master_id": str(master.id), "acquisition_date": "2026-01-10"}
        payload.update(extra)
        return create_unit(s, payload, admin, branch_id(app, branch)).id


def test_master_validation():
    errors = validate_master_payload({"year": "1800", "currency": "PESO", "specs": "[1, 2]"})
    assert "Make is required." in errors
    assert "Model is required." in errors
    assert "Year must be at least 1900." in errors
    assert "Currency code must be exactly 3 characters (e.g., PHP, USD)." in errors
    assert "Specs: Value must be a JSON object." in errors
    assert validate_master_payload({"make": "Ford", "model": "Ranger", "year": "2024", "specs": '{"engine": "2.0L"}'}) == []


def test_unit_validation(app):
    _stock(app)
    with session_scope(app) as s:
        errors = validate_unit_payload(
            s,
            {"vin": VIN.lower(), "stock_number": "STK-001", "status": "sold", "acquisition_date": "2030-01-01"},
            today=date(2026, 6, 1),
        )
        assert "This VIN is already registered in the system." in errors
        assert "This stock number is already in use." in errors
        assert "A vehicle master or vehicle model is required." in errors
        assert "Acquisition date cannot be in the future." in errors
        assert "Sold date is required when status is sold." in errors

        errors = validate_unit_payload(s, {"vin": "SHORT", "stock_number": "X", "vehicle_model_id": "1", "sold_date": "2026-01-01"})
        assert errors == ["VIN must be exactly 17 characters.", "Sold date can only be set when status is sold."]


def test_unit_defaults_and_name(app):
    pk = _stock(app, vin="mhfxw42g6p7654321")
    with session_scope(app) as s:
        unit = s.get(VehicleUnit, pk)
        assert unit.vin == "MHFXW42G6P7654321"
        assert (unit.status, unit.currency, unit.is_locked) == ("in_stock", "PHP", False)
        assert unit.full_name == "2025 Toyota Hilux Conquest"
        assert unit.days_in_inventory == (date.today() - date(2026, 1, 10)).days


def test_status_change_rules(app):
    pk = _stock(app, purchase_price="1000000", sale_price="1250000")
    with session_scope(app) as s:
        admin = get_admin(s)
        unit = s.get(VehicleUnit, pk)
        with pytest.raises(BusinessRuleError, match="Sold date is required"):
            update_status(s, unit, "sold", None, admin)
        with pytest.raises(BusinessRuleError, match="on or after acquisition"):
            update_status(s, unit, "sold", date(2025, 12, 31), admin)
        update_status(s, unit, "sold", date(2026, 2, 1), admin)
        assert unit.profit_margin == 250000
        assert unit.profit_percentage == 25.0
        assert unit.days_in_inventory == 22


def test_transfer_between_branches(app):
    pk = _stock(app)
    qc = branch_id(app, "QC")
    with session_scope(app) as s:
        admin = get_admin(s)
        unit = s.get(VehicleUnit, pk)
        with pytest.raises(BusinessRuleError, match="same branch"):
            transfer_unit(s, unit, unit.branch_id, None, admin)

        movement = transfer_unit(s, unit, qc, date(2026, 3, 1), admin, "  for display  ")
        assert (unit.branch_id, unit.status) == (qc, "transferred")
        assert movement.from_branch_id == branch_id(app, "MNL")
        assert movement.remarks == "for display"
        assert movement.status == "completed" and movement.completed_at is not None

        unit.status = "sold"
        with pytest.raises(BusinessRuleError, match="status: sold"):
            transfer_unit(s, unit, branch_id(app, "MNL"), None, admin)


def test_reservation_locks_unit_and_advances_pipeline(app):
    pk = _stock(app)
    with session_scope(app) as s:
        admin = get_admin(s)
        customer = create_customer(
            s, {"first_name": "Rosa", "last_name": "Diaz", "phone": "09171112222"}, admin, branch_id(app, "MNL")
        )
        pipeline = create_pipeline(s, {"customer_name": "Rosa Diaz", "customer_phone": "09171112222"}, admin, None)
        change_stage(s, pipeline, "test_drive_completed", user=admin)
        unit = s.get(VehicleUnit, pk)

        reservation = create_reservation(
            s,
            {"customer_id": customer.id, "vehicle_unit_id": unit.id, "reservation_date": "2026-03-01", "payment_type": "cash"},
            admin,
            unit.branch_id,
        )
        assert reservation.reservation_ref.endswith("-0001")
        assert (unit.status, unit.is_locked) == ("reserved", True)
        assert unit.allocation_status == f"Allocated to Rosa Diaz – {reservation.reservation_ref}"
        assert pipeline.current_stage == "reservation_made"
        assert unit_is_available(s, unit) is False

        with pytest.raises(BusinessRuleError, match="not available"):
            create_reservation(s, {"customer_id": customer.id, "vehicle_unit_id": unit.id}, admin, None)
        with pytest.raises(BusinessRuleError, match="active reservation"):
            delete_unit(s, unit, admin)

        set_reservation_status(s, reservation, "cancelled", admin)
        assert (unit.status, unit.is_locked, unit.allocation_status) == ("in_stock", False, None)
        assert unit_is_available(s, unit) is True

        with pytest.raises(BusinessRuleError, match="Invalid status"):
            set_reservation_status(s, reservation, "archived", admin)


def test_master_with_active_units_cannot_be_deleted(app):
    pk = _stock(app)
    with session_scope(app) as s:
        unit = s.get(VehicleUnit, pk)
        with pytest.raises(BusinessRuleError, match="active units"):
            delete_master(s, unit.master, get_admin(s))


def test_transfer_form_and_api(client, app):
    pk = _stock(app)
    login(client)
    qc = branch_id(app, "QC")

    r = post(client, f"/admin/vehicles/units/{pk}/transfer", {"to_branch_id": str(qc), "remarks": "Showroom"})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(VehicleMovement).count() == 1
        assert s.get(VehicleUnit, pk).branch_id == qc

    r = post(client, f"/admin/vehicles/units/{pk}/transfer", {"to_branch_id": str(qc)}, follow_redirects=True)
    assert b"Cannot transfer vehicle to the same branch it is currently in." in r.data

    data = client.get("/api/vehicle-units?status=transferred").get_json()
    assert [u["vin"] for u in data["data"]] == [VIN]
    assert data["data"][0]["branch"] == "Quezon City"
    assert client.get("/api/vehicle-units?status=in_stock").get_json()["meta"]["total"] == 0


def test_reservation_form_rejects_other_branch_unit(client, app):
    pk = _stock(app, branch="QC")
    with session_scope(app) as s:
        customer_pk = create_customer(s, {"first_name": "Rosa", "last_name": "Diaz"}, get_admin(s), branch_id(app, "MNL")).id
    make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    login(client, "rep@example.com")
    r = post(
        client,
        "/admin/reservations/new",
        {"customer_id": str(customer_pk), "vehicle_unit_id": str(pk), "reservation_date": date.today().isoformat()},
    )
    assert r.status_code == 403
    with session_scope(app) as s:
        assert s.query(VehicleReservation).count() == 0


def test_status_form(client, app):
    pk = _stock(app)
    login(client)
    r = post(client, f"/admin/vehicles/units/{pk}/status", {"status": "sold"}, follow_redirects=True)
    assert b"Sold date is required when status is sold." in r.data
    sold_on = (date.today() - timedelta(days=1)).isoformat()
    r = post(client, f"/admin/vehicles/units/{pk}/status", {"status": "sold", "sold_date": sold_on}, follow_redirects=True)
    assert b"Status changed to sold." in r.data
