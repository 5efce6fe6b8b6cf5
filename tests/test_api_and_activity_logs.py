import csv
import io
from datetime import date, datetime, time, timedelta

from app.dms.admin import calendar_events
from app.dms.db import session_scope
from app.dms.models import ActivityLog, User
from app.dms.modules.leads.service import create_lead
from app.dms.modules.service_catalog.service import create_service_type
from app.dms.modules.test_drives.models import TestDrive
from app.dms.modules.vehicles.service import create_master, create_unit
from app.dms.modules.work_orders.service import create_work_order

from conftest import branch_id, get_admin, login, make_user, post


def _lead(app, name, branch, **extra):
    payload = {"name": name, "phone": "09170000000", "source": "walk_in", "priority": "high"}
    payload.update(extra)
    with session_scope(app) as s:
        return create_lead(s, payload, get_admin(s), branch_id(app, branch)).id


def test_api_requires_login(client):
    for url in ("/api/leads", "/api/vehicle-units", "/api/dashboard/stats", "/api/pipelines/1"):
        r = client.get(url)
        assert r.status_code == 401, url
        assert r.get_json() == {"error": "Authentication required."}


def test_api_leads_paginated_and_branch_scoped(client, app):
    for i in range(3):
        _lead(app, f"Manila Buyer {i}", "MNL")
    _lead(app, "QC Buyer", "QC")

    login(client)
    data = client.get("/api/leads?per_page=2").get_json()
    assert data["meta"] == {"page": 1, "per_page": 2, "total": 4, "pages": 2}
    assert len(data["data"]) == 2
    assert data["data"][0]["lead_id"].startswith("LD-")
    assert client.get("/api/leads?q=QC").get_json()["meta"]["total"] == 1

    client.get("/auth/logout")
    make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    login(client, "rep@example.com")
    data = client.get("/api/leads?per_page=500").get_json()
    assert data["meta"]["per_page"] == 100
    assert sorted(lead["name"] for lead in data["data"]) == ["Manila Buyer 0", "Manila Buyer 1", "Manila Buyer 2"]


def test_api_lead_detail_enforces_branch(client, app):
    qc_lead = _lead(app, "QC Buyer", "QC")
    make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    login(client, "rep@example.com")
    r = client.get(f"/api/leads/{qc_lead}")
    assert r.status_code == 403
    assert r.get_json()["error"] == "Forbidden"
    assert client.get("/api/leads/9999").get_json() == {"error": "Not found"}


def test_api_forbidden_without_permission(client, app):
    make_user(app, "tech@example.com", "technician", branch_code="MNL")
    login(client, "tech@example.com")
    r = client.get("/api/leads")
    assert r.status_code == 403
    assert r.get_json() == {"error": "Forbidden", "missing_permission": "leads.view"}


def test_dashboard_stats_follow_permissions(client, app):
    _lead(app, "Manila Buyer", "MNL")
    with session_scope(app) as s:
        admin = get_admin(s)
        master = create_master(s, {"make": "Toyota", "model": "Vios", "year": "2025"}, admin)
        create_unit(s, {"vin": "MR2B29F30P1234567", "stock_number": "S-1", "vehicle_master_id": str(master.id)}, admin, branch_id(app, "MNL"))

    login(client)
    stats = client.get("/api/dashboard/stats").get_json()["data"]
    assert set(stats) == {"leads", "pipelines", "vehicle_units", "work_orders", "warranty_claims", "compliance"}
    assert stats["leads"]["total"] == 1
    assert stats["vehicle_units"] == {"in_stock": 1, "reserved": 0}

    client.get("/auth/logout")
    make_user(app, "tech@example.com", "technician", branch_code="MNL")
    login(client, "tech@example.com")
    assert set(client.get("/api/dashboard/stats").get_json()["data"]) == {"work_orders"}


def test_changes_are_written_to_activity_log(client, app):
    login(client)
    post(client, "/admin/branches/new", {"name": "Cebu", "code": "CEB"})
    with session_scope(app) as s:
        log = s.query(ActivityLog).filter(ActivityLog.subject_type == "Branch").order_by(ActivityLog.id.desc()).first()
        assert log.causer_email == "admin@example.com"
        assert log.event == "created"
        assert log.request_id

    page = client.get("/admin/activity-logs?module=auth").data
    assert b"admin@example.com logged in" in page
    assert b"Dates must be YYYY-MM-DD." in client.get("/admin/activity-logs?date_from=yesterday").data


def test_activity_log_export(client, app):
    login(client)
    r = client.get("/admin/activity-logs/export?action=auth.login")
    assert r.mimetype == "text/csv"
    rows = list(csv.reader(io.StringIO(r.data.decode("utf-8"))))
    assert rows[0][:3] == ["Created At", "Action", "Module"]
    assert [row[1] for row in rows[1:]] == ["auth.login"]
    assert client.get("/admin/activity-logs/export?date_from=junk").status_code == 400


def test_activity_logs_are_auditor_only(client, app):
    make_user(app, "mgr@example.com", "sales_manager", branch_code="MNL")
    login(client, "mgr@example.com")
    assert client.get("/admin/activity-logs").status_code == 403

    client.get("/auth/logout")
    make_user(app, "audit@example.com", "auditor")
    login(client, "audit@example.com")
    assert client.get("/admin/activity-logs").status_code == 200
    assert client.get("/admin/activity-logs/export").status_code == 200


def _calendar_fixture(app, today):
    mnl, qc = branch_id(app, "MNL"), branch_id(app, "QC")
    with session_scope(app) as s:
        admin = get_admin(s)
        pms = create_service_type(s, {"name": "10k PMS", "category": "maintenance", "interval_type": "on_demand"}, admin, None)

        def drive(n, days, at, branch, customer="Ana Reyes"):
            s.add(
                TestDrive(
                    reservation_id=f"TD-2026-{n:03d}",
                    customer_name=customer,
                    customer_phone="0917",
                    vehicle_vin="MR2BT9F30P1234567",
                    vehicle_details="2026 Toyota Vios",
                    scheduled_date=today + timedelta(days=days),
                    scheduled_time=at,
                    status="confirmed",
                    branch_id=branch,
                )
            )

        def order(**fields):
            wo = create_work_order(s, {"customer_name": "Juan", "service_type_id": str(pms.id)}, admin, mnl)
            for key, value in fields.items():
                setattr(wo, key, value)
            return wo.work_order_number

        drive(1, 2, time(14, 0), mnl)
        drive(2, 1, time(9, 0), qc, "Ben Cruz")
        drive(3, 30, time(9, 0), mnl)
        scheduled = order(scheduled_at=datetime.combine(today + timedelta(days=2), time(9, 30, 45)))
        due_only = order(due_date=today + timedelta(days=5))
        order(scheduled_at=datetime.combine(today + timedelta(days=20), time(8, 0)), due_date=today + timedelta(days=3))
        s.flush()
    return scheduled, due_only


def test_calendar_events_are_windowed_and_ordered(app):
    today = date(2026, 3, 2)
    scheduled, due_only = _calendar_fixture(app, today)
    rep_id = make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    with session_scope(app) as s:
        events = calendar_events(s, get_admin(s), start=today)
        assert [e["reference"] for e in events] == ["TD-2026-002", scheduled, "TD-2026-001", due_only]
        assert [e["type"] for e in events] == ["test_drive", "pms", "test_drive", "pms"]
        assert events[1]["time"] == time(9, 30)
        assert events[1]["title"] == "10k PMS"
        assert (events[3]["date"], events[3]["time"]) == (today + timedelta(days=5), None)
        assert events[2]["title"] == "Ana Reyes - 2026 Toyota Vios"

        # sales reps see their own branch and no workshop jobs
        assert [e["reference"] for e in calendar_events(s, s.get(User, rep_id), start=today)] == ["TD-2026-001"]


def test_calendar_page_dashboard_and_json(client, app):
    scheduled, _ = _calendar_fixture(app, date.today())
    login(client)
    r = client.get("/admin/calendar")
    assert r.status_code == 200
    assert b"TD-2026-001" in r.data and scheduled.encode() in r.data
    assert b"TD-2026-003" not in r.data

    r = client.get("/admin/")
    assert b"Full calendar" in r.data
    assert b"Ben Cruz - 2026 Toyota Vios" in r.data

    r = client.get("/api/dashboard/calendar")
    assert r.status_code == 200
    data = r.get_json()["data"]
    assert len(data) == 4
    assert data[1]["reference"] == scheduled
    assert data[1]["time"] == "09:30"
    assert data[1]["date"] == (date.today() + timedelta(days=2)).isoformat()
    assert data[3]["time"] is None


def test_calendar_json_needs_login(client):
    assert client.get("/api/dashboard/calendar").status_code == 401
