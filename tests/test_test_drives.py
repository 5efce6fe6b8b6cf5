from datetime import date, time, timedelta

from app.dms.db import session_scope
from app.dms.modules.pipelines.service import create_pipeline
from app.dms.modules.test_drives import models as td_models
from app.dms.modules.test_drives.service import create_test_drive, update_test_drive, validate_test_drive_payload

from conftest import get_admin, login, post

PHONE = "09171234567"


def _payload(**extra):
    payload = {
        "customer_name": "Lito Lapid",
        "customer_phone": PHONE,
        "vehicle_vin": "jtdbt923x71234567",
        "vehicle_details": "2025 Toyota Vios 1.3 XE",
        "scheduled_date": (date.today() + timedelta(days=1)).isoformat(),
        "scheduled_time": "10:30",
        "duration_minutes": "45",
        "reservation_type": "scheduled",
    }
    payload.update(extra)
    return payload


def test_validation_messages():
    errors = validate_test_drive_payload(
        {
            "customer_name": "Al",
            "customer_phone": "0917",
            "customer_email": "not-an-email",
            "vehicle_vin": "SHORT",
            "scheduled_date": "2020-01-01",
            "scheduled_time": "25:00",
            "duration_minutes": "5",
            "reservation_type": "drive_by",
        },
        today=date(2026, 1, 1),
    )
    assert "Customer name must be at least 3 characters." in errors
    assert "Phone number must be between 10 and 20 characters." in errors
    assert "Please enter a valid email address." in errors
    assert "VIN must be exactly 17 characters." in errors
    assert "Vehicle details are required." in errors
    assert "Scheduled date must be today or in the future." in errors
    assert "Invalid time format. Use HH:MM format." in errors
    assert "Duration must be at least 15." in errors
    assert any(e.startswith("Invalid reservation type.") for e in errors)

    assert validate_test_drive_payload(_payload()) == []
    # existing bookings may keep a past date
    past = _payload(scheduled_date="2020-01-01")
    assert validate_test_drive_payload(past, is_new=False) == []
    assert "Scheduled date must be today or in the future." in validate_test_drive_payload(past)


def test_create_normalises_values(app):
    with session_scope(app) as s:
        td = create_test_drive(s, _payload(), get_admin(s), None)
        assert td.reservation_id.startswith("TD-") and td.reservation_id.endswith("-001")
        assert td.vehicle_vin == "JTDBT923X71234567"
        assert td.scheduled_time == time(10, 30)
        assert (td.status, td.esignature_status, td.duration_minutes) == ("pending_signature", "pending", 45)
        assert td.scheduled_at.hour == 10
        assert td.esignature_timestamp is None

        signed = create_test_drive(s, _payload(esignature_status="signed"), get_admin(s), None)
        assert signed.esignature_timestamp is not None


def test_confirmed_test_drive_advances_matching_pipeline(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        pipeline = create_pipeline(s, {"customer_name": "Lito Lapid", "customer_phone": PHONE}, admin, None)
        td = create_test_drive(s, _payload(status="confirmed"), admin, None)
        assert (pipeline.current_stage, pipeline.probability) == ("test_drive_scheduled", 70)

        update_test_drive(s, td, _payload(status="completed"), admin)
        assert pipeline.current_stage == "test_drive_completed"

        update_test_drive(s, td, _payload(status="completed", reservation_type="reservation"), admin)
        assert (pipeline.current_stage, pipeline.probability) == ("reservation_made", 85)


def test_unconfirmed_or_unmatched_test_drive_leaves_pipeline(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        pipeline = create_pipeline(s, {"customer_name": "Other", "customer_phone": "09990000000"}, admin, None)
        create_test_drive(s, _payload(status="confirmed"), admin, None)
        create_test_drive(s, _payload(customer_phone="09990000000"), admin, None)
        assert pipeline.current_stage == "lead"


def test_form_round_trip(client, app):
    login(client)
    r = post(client, "/admin/test-drives/new", _payload(insurance_verified="on"))
    assert r.status_code == 302
    with session_scope(app) as s:
        td = s.query(td_models.TestDrive).one()
        assert td.insurance_verified is True
        td_pk = td.id

    assert b"JTDBT923X71234567" in client.get(f"/admin/test-drives/{td_pk}").data
    assert b"Lito Lapid" in client.get("/admin/test-drives?q=Lito").data

    post(client, "/admin/test-drives/new", _payload(vehicle_vin="123"))
    assert b"VIN must be exactly 17 characters." in client.get("/admin/test-drives/new").data

    r = post(client, f"/admin/test-drives/{td_pk}/edit", _payload(status="no_show"))
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(td_models.TestDrive, td_pk).status == "no_show"
