import io
from datetime import date, datetime

import pytest

from app.dms.db import session_scope
from app.dms.modules.customers.service import create_customer
from app.dms.modules.service_catalog.service import create_service_type
from app.dms.modules.vehicles.service import create_master, create_unit
from app.dms.modules.work_orders.models import WorkOrder, WorkOrderPhoto
from app.dms.modules.work_orders.reports import pms_compliance, repeat_repairs, resolve_window
from app.dms.modules.work_orders.service import (
    add_photo,
    create_work_order,
    delete_photo,
    delete_work_order,
    generate_work_order_number,
    next_pms_due,
    set_status,
    update_work_order,
    validate_work_order_payload,
    work_order_stats,
)
from app.dms.storage import LocalStorage
from app.dms.utils import BusinessRuleError

from conftest import branch_id, get_admin, login, make_user, post

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def test_next_pms_due():
    assert next_pms_due(15000, 5000) == 20000
    assert next_pms_due(None, 5000) is None
    assert next_pms_due(15000, 0) is None


def test_validation_messages():
    errors = validate_work_order_payload(
        {
            "status": "parked",
            "vehicle_vin": "ABC",
            "customer_email": "nope",
            "completion_percentage": "120",
            "current_mileage": "-5",
            "due_date": "31/12/2026",
        }
    )
    assert any(e.startswith("Invalid status.") for e in errors)
    assert "Customer is required." in errors
    assert "VIN must be exactly 17 characters." in errors
    assert "Please enter a valid email address." in errors
    assert "Completion must be at most 100." in errors
    assert "Current mileage must be at least 0." in errors
    assert "Scheduled date and due date must be valid dates." in errors
    assert validate_work_order_payload({"customer_id": "4"}) == []


def test_numbers_are_sequential_per_day(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        first = create_work_order(s, {"customer_name": "Juan"}, admin, None)
        second = create_work_order(s, {"customer_name": "Pedro"}, admin, None)
        prefix = f"WO-{date.today().strftime('%Y%m%d')}-"
        assert first.work_order_number == prefix + "0001"
        assert second.work_order_number == prefix + "0002"
        assert generate_work_order_number(s, date(2020, 1, 1)) == "WO-20200101-0001"
        assert (first.status, first.priority, first.completion_percentage) == ("draft", "normal", 0)


def test_details_copied_from_customer_and_unit(app):
    mnl = branch_id(app, "MNL")
    with session_scope(app) as s:
        admin = get_admin(s)
        customer = create_customer(s, {"first_name": "Ana", "last_name": "Reyes", "phone": "09171230000", "email": "ana@example.com"}, admin, mnl)
        master = create_master(s, {"make": "Mitsubishi", "model": "Montero", "year": "2024"}, admin)
        unit = create_unit(
            s, {"vin": "MMBGUKS10PH012345", "stock_number": "STK-9", "vehicle_master_id": str(master.id), "odometer": "12000"}, admin, mnl
        )
        wo = create_work_order(
            s,
            {"customer_id": str(customer.id), "vehicle_unit_id": str(unit.id), "customer_phone": "0999", "pms_interval_km": "5000"},
            admin,
            mnl,
        )
        assert wo.customer_name == "Ana Reyes"
        assert wo.customer_phone == "0999"
        assert wo.customer_email == "ana@example.com"
        assert wo.vehicle_vin == "MMBGUKS10PH012345"
        assert wo.vehicle_label == "2024 Mitsubishi Montero"
        assert wo.current_mileage == 12000
        assert wo.next_pms_due_km == 17000


def test_status_stamps_and_delete_rules(app):
    started = datetime(2026, 3, 2, 8, 0)
    with session_scope(app) as s:
        admin = get_admin(s)
        wo = create_work_order(s, {"customer_name": "Juan", "completion_percentage": "40"}, admin, None)
        with pytest.raises(BusinessRuleError, match="Invalid status"):
            set_status(s, wo, "parked", admin)

        set_status(s, wo, "in_progress", admin, now=started)
        assert wo.started_at == started
        with pytest.raises(BusinessRuleError, match="in progress"):
            delete_work_order(s, wo, admin)

        set_status(s, wo, "completed", admin)
        assert wo.started_at == started
        assert wo.completed_at is not None
        assert wo.completion_percentage == 100

        delete_work_order(s, wo, admin)
        assert wo.deleted_at is not None


def test_update_stamps_only_on_status_change(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        wo = create_work_order(s, {"customer_name": "Juan", "status": "in_progress"}, admin, None)
        assert wo.started_at is not None
        update_work_order(s, wo, {"customer_name": "Juan", "diagnosis": "  Worn pads  "}, admin)
        assert wo.status == "in_progress"
        assert wo.diagnosis == "Worn pads"


def test_stats(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        for status in ("scheduled", "confirmed", "in_progress", "completed", "overdue", "draft"):
            create_work_order(s, {"customer_name": "X", "status": status}, admin, None)
        assert work_order_stats(s.query(WorkOrder)) == {
            "total": 6,
            "scheduled": 2,
            "in_progress": 1,
            "completed": 1,
            "overdue": 1,
        }


def test_photo_upload_and_delete(app, tmp_path):
    storage = LocalStorage(root=tmp_path / "photos")
    with session_scope(app) as s:
        admin = get_admin(s)
        wo = create_work_order(s, {"customer_name": "Juan"}, admin, None)

        with pytest.raises(BusinessRuleError, match="only JPEG, PNG or WebP"):
            add_photo(s, storage, wo, filename="notes.pdf", data=b"%PDF", content_type="application/pdf", user=admin)
        with pytest.raises(BusinessRuleError, match="file is empty"):
            add_photo(s, storage, wo, filename="blank.png", data=b"", content_type="image/png", user=admin)

        first = add_photo(s, storage, wo, filename="front bumper.png", data=PNG, content_type="image/png", user=admin, caption=" Dent ")
        second = add_photo(s, storage, wo, filename="front bumper.png", data=PNG + b"1", content_type="image/png", user=admin)
        assert first.file_path == f"work_orders/{wo.id}/{date.today().isoformat()}/front_bumper.png"
        assert first.file_path != second.file_path
        assert first.caption == "Dent"
        assert storage.exists(first.file_path) and storage.exists(second.file_path)

        key = first.file_path
        delete_photo(s, storage, first, admin)
        s.flush()
        assert not storage.exists(key)
        assert s.query(WorkOrderPhoto).count() == 1


def test_form_and_photo_routes(client, app):
    login(client)
    r = post(client, "/admin/work-orders/new", {"customer_name": "Juan Luna", "vehicle_vin": "short"})
    assert r.status_code == 302
    assert b"VIN must be exactly 17 characters." in client.get("/admin/work-orders/new").data

    r = post(client, "/admin/work-orders/new", {"customer_name": "Juan Luna", "priority": "high", "is_warranty_claim": "on"})
    assert r.status_code == 302
    with session_scope(app) as s:
        wo = s.query(WorkOrder).one()
        assert wo.is_warranty_claim is True
        assert wo.priority == "high"
        wo_pk = wo.id

    r = post(client, f"/admin/work-orders/{wo_pk}/photos", {}, follow_redirects=True)
    assert b"Choose at least one photo to upload." in r.data

    data = {"photos": (io.BytesIO(PNG), "engine.png", "image/png"), "photo_type": "before"}
    r = post(client, f"/admin/work-orders/{wo_pk}/photos", data, content_type="multipart/form-data", follow_redirects=True)
    assert b"1 photo(s) uploaded." in r.data
    assert b"engine.png" in r.data

    with session_scope(app) as s:
        photo = s.query(WorkOrderPhoto).one()
        assert photo.photo_type == "before"
        photo_pk = photo.id
    r = client.get(f"/admin/work-orders/{wo_pk}/photos/{photo_pk}")
    assert r.status_code == 200
    assert r.data == PNG

    r = post(client, f"/admin/work-orders/{wo_pk}/status/in_progress", follow_redirects=True)
    assert b"is now in_progress" in r.data
    r = post(client, f"/admin/work-orders/{wo_pk}/delete", follow_redirects=True)
    assert b"Cannot delete a work order that is in progress." in r.data


def test_technician_branch_scoping(client, app):
    with session_scope(app) as s:
        other = create_work_order(s, {"customer_name": "QC customer"}, get_admin(s), branch_id(app, "QC")).id
    make_user(app, "tech@example.com", "technician", branch_code="MNL")
    login(client, "tech@example.com")
    assert client.get(f"/admin/work-orders/{other}").status_code == 403
    assert post(client, "/admin/work-orders/new", {"customer_name": "X"}).status_code == 403


def _aftersales_fixture(app):
    """Three maintenance orders due in March 2026 plus repair history for two units."""
    mnl = branch_id(app, "MNL")
    with session_scope(app) as s:
        admin = get_admin(s)
        pms = create_service_type(s, {"name": "10k PMS", "category": "maintenance", "interval_type": "on_demand"}, admin, None)
        brake = create_service_type(s, {"name": "Brake Job", "category": "repair", "interval_type": "on_demand"}, admin, None)
        seal = create_service_type(s, {"name": "Seal Warranty", "category": "warranty", "interval_type": "on_demand"}, admin, None)
        master = create_master(s, {"make": "Toyota", "model": "Vios", "year": "2024"}, admin)
        repeat = create_unit(s, {"vin": "MR2BT9F30P1234567", "stock_number": "STK-9", "vehicle_master_id": str(master.id)}, admin, mnl)
        once = create_unit(s, {"vin": "MR2BT9F30P7654321", "stock_number": "STK-10", "vehicle_master_id": str(master.id)}, admin, mnl)

        def wo(service_type, status="scheduled", **fields):
            order = create_work_order(
                s, {"customer_name": "Juan", "service_type_id": str(service_type.id), "status": status}, admin, mnl
            )
            for key, value in fields.items():
                setattr(order, key, value)
            return order

        march = datetime(2026, 3, 5, 9, 0)
        wo(pms, "completed", due_date=date(2026, 3, 10), completed_at=datetime(2026, 3, 10, 18, 0))
        wo(pms, "completed", due_date=date(2026, 3, 12), completed_at=datetime(2026, 3, 14, 9, 0))
        wo(pms, due_date=date(2026, 3, 15))
        wo(pms, due_date=date(2026, 5, 1))
        wo(brake, due_date=date(2026, 3, 20))

        wo(brake, "in_progress", vehicle_unit_id=repeat.id, created_at=march, diagnosis="Worn pads")
        wo(seal, "completed", vehicle_unit_id=repeat.id, created_at=march, completed_at=datetime(2026, 3, 22, 15, 0), diagnosis="Leaking seal")
        wo(brake, "cancelled", vehicle_unit_id=repeat.id, created_at=march)
        wo(brake, "completed", vehicle_unit_id=once.id, created_at=march, completed_at=datetime(2026, 3, 6, 10, 0))
        wo(brake, vehicle_unit_id=once.id, created_at=datetime(2025, 12, 1, 9, 0))
    return mnl


def test_pms_compliance_counts_on_time_late_and_pending(app):
    mnl = _aftersales_fixture(app)
    with session_scope(app) as s:
        report = pms_compliance(s, date(2026, 3, 1), date(2026, 3, 31), mnl)
        assert report == {
            "total_due": 3,
            "completed_on_time": 1,
            "completed_late": 1,
            "pending": 1,
            "compliance_rate": 33.3,
        }
        assert pms_compliance(s, date(2026, 3, 1), date(2026, 3, 31), branch_id(app, "QC"))["total_due"] == 0


def test_repeat_repairs_group_by_unit(app):
    mnl = _aftersales_fixture(app)
    with session_scope(app) as s:
        rows = repeat_repairs(s, date(2026, 3, 1), date(2026, 3, 31), mnl)
        assert len(rows) == 1
        row = rows[0]
        assert (row["stock_number"], row["vin"], row["branch"]) == ("STK-9", "MR2BT9F30P1234567", "Manila Main")
        assert row["count"] == 2
        assert row["last_service_date"] == date(2026, 3, 22)
        assert row["last_issue"] == "Leaking seal"
        assert row["service_types"] == ["Brake Job", "Seal Warranty"]


def test_report_window_defaults_to_last_ninety_days():
    assert resolve_window(None, None, today=date(2026, 5, 1)) == (date(2026, 1, 31), date(2026, 5, 1))
    assert resolve_window(date(2026, 3, 31), date(2026, 3, 1)) == (date(2026, 3, 1), date(2026, 3, 31))


def test_aftersales_page_is_branch_scoped(client, app):
    mnl = _aftersales_fixture(app)
    login(client)
    r = client.get("/admin/work-orders/aftersales?start_date=2026-03-01&end_date=2026-03-31")
    assert r.status_code == 200
    assert b"STK-9" in r.data
    assert b"33.3%" in r.data

    make_user(app, "advisor@example.com", "service_advisor", branch_code="QC")
    client.get("/auth/logout")
    login(client, "advisor@example.com")
    r = client.get(f"/admin/work-orders/aftersales?start_date=2026-03-01&end_date=2026-03-31&branch_id={mnl}")
    assert r.status_code == 200
    assert b"STK-9" not in r.data

    r = client.get("/admin/work-orders/aftersales?start_date=March", follow_redirects=True)
    assert r.status_code == 200
    assert b"Dates must be YYYY-MM-DD." in r.data
