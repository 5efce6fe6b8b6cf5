from datetime import date, datetime, time, timedelta

import pytest

from app.dms.db import session_scope
from app.dms.modules.customers.models import CustomerSurvey
from app.dms.modules.customers.service import create_customer
from app.dms.modules.leads.service import create_lead
from app.dms.modules.pipelines.models import Pipeline, PipelineStageLog
from app.dms.modules.pipelines.performance import ReportPeriod, performance_kpis, sales_rep_performance
from app.dms.modules.pipelines.service import (
    calculate_pipeline_lead_score,
    change_stage,
    create_pipeline,
    detect_inactive_pipelines,
    find_active_pipeline,
    on_quote_sent,
    on_reservation_made,
    on_test_drive_completed,
    on_test_drive_scheduled,
    stage_progress,
    update_pipeline,
)
from app.dms.modules.test_drives.models import TestDrive

from conftest import branch_id, get_admin, login, make_user, post


def _logs(s, pipeline):
    return (
        s.query(PipelineStageLog)
        .filter(PipelineStageLog.pipeline_id == pipeline.id)
        .order_by(PipelineStageLog.id.asc())
        .all()
    )


def test_stage_progress():
    assert stage_progress("lead") == 17
    assert stage_progress("quote_sent") == 50
    assert stage_progress("reservation_made") == 100
    assert stage_progress("won") == 0
    assert stage_progress(None) == 0


def test_pipeline_lead_score():
    p = Pipeline(
        customer_name="Ana",
        customer_phone="0917",
        customer_email="ana@example.com",
        vehicle_make="Toyota",
        vehicle_model="Vios",
        quote_amount=1000,
        priority="high",
        next_action="Call back",
    )
    assert calculate_pipeline_lead_score(p) == 90
    assert calculate_pipeline_lead_score(Pipeline(customer_name="Bo", priority="low")) == 10


def test_create_pipeline_starts_at_lead_with_initial_log(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        p = create_pipeline(s, {"customer_name": "Ana", "customer_phone": "0917"}, admin, branch_id(app, "MNL"))
        year = datetime.utcnow().year
        assert p.pipeline_id == f"PL-{year}-001"
        assert p.current_stage == "lead"
        assert p.lead_score == 30
        logs = _logs(s, p)
        assert [(log.stage, log.previous_stage, log.trigger_type) for log in logs] == [("lead", None, "manual")]


def test_change_stage_closes_open_log(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        p = create_pipeline(s, {"customer_name": "Ana"}, admin, None)
        later = datetime.utcnow() + timedelta(hours=5)
        assert change_stage(s, p, "qualified", user=admin, now=later) is True
        assert change_stage(s, p, "qualified", user=admin) is False

        assert (p.current_stage, p.previous_stage) == ("qualified", "lead")
        assert p.stage_entry_timestamp == later
        first, second = _logs(s, p)
        assert first.exit_timestamp == later
        assert float(first.duration_hours) == pytest.approx(5, abs=0.01)
        assert second.stage == "qualified" and second.exit_timestamp is None
        assert second.trigger_user_id == admin.id


def test_auto_progression_respects_allowed_stages(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        p = create_pipeline(s, {"customer_name": "Ana"}, admin, None)

        assert on_quote_sent(s, p, admin) is False
        assert on_test_drive_scheduled(s, p, admin) is True
        assert (p.current_stage, p.probability) == ("test_drive_scheduled", 70)
        assert on_test_drive_completed(s, p, admin) is True
        assert on_reservation_made(s, p, admin, {"reservation_id": 9}) is True
        assert (p.current_stage, p.probability) == ("reservation_made", 85)
        assert on_test_drive_completed(s, p, admin) is False
        assert p.auto_logged_events_count == 3

        last = _logs(s, p)[-1]
        assert last.trigger_type == "auto"
        assert last.trigger_system == "Reservation System"
        assert last.properties == {"auto_advanced": True, "reservation_id": 9}

        assert on_test_drive_scheduled(s, None, admin) is False


def test_auto_progression_can_be_disabled(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        p = create_pipeline(s, {"customer_name": "Ana", "auto_progression_enabled": False}, admin, None)
        assert p.auto_progression_enabled is False
        assert on_test_drive_scheduled(s, p, admin) is False
        assert p.current_stage == "lead"


def test_setting_quote_while_qualified_advances_to_quote_sent(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        p = create_pipeline(s, {"customer_name": "Ana", "current_stage": "qualified"}, admin, None)
        update_pipeline(s, p, {"customer_name": "Ana", "quote_amount": "1250000"}, admin)
        assert (p.current_stage, p.probability) == ("quote_sent", 60)
        assert _logs(s, p)[-1].properties["quote_amount"] == "1250000"

        # same quote again does not re-trigger
        update_pipeline(s, p, {"customer_name": "Ana", "quote_amount": "1250000"}, admin)
        assert len(_logs(s, p)) == 2


def test_detect_inactive_pipelines(app):
    now = datetime.utcnow()
    with session_scope(app) as s:
        admin = get_admin(s)
        stale = create_pipeline(s, {"customer_name": "Stale"}, admin, None)
        fresh = create_pipeline(s, {"customer_name": "Fresh"}, admin, None)
        won = create_pipeline(s, {"customer_name": "Won", "current_stage": "won"}, admin, None)
        exempt = create_pipeline(s, {"customer_name": "Exempt"}, admin, None)
        exempt.auto_loss_rule_enabled = False
        for p in (stale, won, exempt):
            p.last_activity_at = now - timedelta(days=10)
        s.flush()

        count, details = detect_inactive_pipelines(s, now=now, dry_run=True)
        assert count == 1
        assert details == [
            {"pipeline_id": stale.pipeline_id, "customer_name": "Stale", "previous_stage": "lead", "days_inactive": 10}
        ]
        assert stale.current_stage == "lead"

        count, _ = detect_inactive_pipelines(s, now=now)
        assert count == 1
        assert (stale.current_stage, stale.probability) == ("lost", 0)
        assert _logs(s, stale)[-1].trigger_event == "Inactivity Detected"
        assert fresh.current_stage == "lead"
        assert exempt.current_stage == "lead"

        assert detect_inactive_pipelines(s, now=now) == (0, [])


def test_inactive_days_fall_back_to_created_at(app):
    now = datetime.utcnow()
    with session_scope(app) as s:
        never = create_pipeline(s, {"customer_name": "Never touched"}, get_admin(s), None)
        never.last_activity_at = None
        never.created_at = now - timedelta(days=12)
        s.flush()

        count, details = detect_inactive_pipelines(s, now=now)
        assert count == 1
        assert details[0]["days_inactive"] == 12
        assert _logs(s, never)[-1].properties["days_inactive"] == 12


def test_find_active_pipeline(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        lost = create_pipeline(s, {"customer_name": "Ana", "customer_phone": "0917", "current_stage": "lost"}, admin, None)
        active = create_pipeline(s, {"customer_name": "Ana", "customer_email": "Ana@Example.com"}, admin, None)
        assert find_active_pipeline(s, phone="0917") is None
        assert find_active_pipeline(s, email="ana@example.com").id == active.id
        assert find_active_pipeline(s) is None
        assert lost.current_stage == "lost"


def test_pipeline_form_and_stage_history(client, app):
    login(client)
    r = post(
        client,
        "/admin/pipelines/new",
        {"customer_name": "Dina Reyes", "customer_phone": "0917", "priority": "high", "auto_progression_enabled": "on"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        pipeline_pk = s.query(Pipeline).one().id

    r = post(
        client,
        f"/admin/pipelines/{pipeline_pk}/edit",
        {"customer_name": "Dina Reyes", "customer_phone": "0917", "priority": "high", "current_stage": "qualified"},
    )
    assert r.status_code == 302
    page = client.get(f"/admin/pipelines/{pipeline_pk}")
    assert b"Stage history" in page.data
    assert b"Pipeline stage manually updated" in page.data

    data = client.get(f"/api/pipelines/{pipeline_pk}").get_json()["data"]
    assert data["current_stage"] == "qualified"
    assert data["stage_progress"] == 33
    assert [log["stage"] for log in data["stage_logs"]] == ["lead", "qualified"]


def test_pipeline_form_rejects_bad_probability(client):
    login(client)
    post(client, "/admin/pipelines/new", {"customer_name": "X", "probability": "150"})
    assert b"Probability must be at most 100." in client.get("/admin/pipelines/new").data


def test_auto_loss_check_requires_elevated_role(client, app):
    make_user(app, "mgr@example.com", "sales_manager", branch_code="MNL")
    login(client, "mgr@example.com")
    assert b"Run auto-loss check" not in client.get("/admin/pipelines").data
    assert post(client, "/admin/pipelines/detect-inactive").status_code == 403


def test_admin_runs_auto_loss_check(client, app):
    with session_scope(app) as s:
        p = create_pipeline(s, {"customer_name": "Old"}, get_admin(s), None)
        p.last_activity_at = datetime.utcnow() - timedelta(days=8)
    login(client)
    r = post(client, "/admin/pipelines/detect-inactive", follow_redirects=True)
    assert b"1 inactive pipeline(s) marked as lost." in r.data


def _performance_fixture(app):
    """March 2026 activity in Manila against a quieter February."""
    mnl = branch_id(app, "MNL")
    rep = make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    manager = make_user(app, "manager@example.com", "sales_manager", branch_code="MNL")
    make_user(app, "tech@example.com", "technician", branch_code="MNL")
    make_user(app, "qc-rep@example.com", "sales_rep", branch_code="QC")

    def at(month, day):
        return datetime(2026, month, day, 10, 0)

    with session_scope(app) as s:
        admin = get_admin(s)

        def lead(created, status="new", assigned=None, branch=mnl):
            row = create_lead(s, {"name": "Walk In", "phone": "0917", "source": "phone", "assigned_to": assigned}, admin, branch)
            row.status, row.created_at = status, created

        lead(at(3, 2), "qualified", rep)
        lead(at(3, 3), assigned=rep)
        lead(at(3, 4), assigned=manager)
        lead(at(3, 5))
        lead(at(3, 6), "qualified", branch=branch_id(app, "QC"))
        lead(at(2, 10), "qualified")
        lead(at(2, 11))

        def pipeline(created, updated, stage, sales_rep=None, quote=None):
            row = create_pipeline(s, {"customer_name": "Buyer"}, admin, mnl)
            row.current_stage, row.created_at, row.updated_at = stage, created, updated
            row.sales_rep_id, row.quote_amount = sales_rep, quote

        pipeline(at(3, 2), at(3, 12), "won", rep)
        pipeline(at(3, 3), at(3, 23), "lost")
        pipeline(at(3, 5), at(3, 5), "quote_sent", rep, 500000)
        pipeline(at(2, 5), at(2, 25), "won")
        pipeline(at(2, 10), at(2, 10), "qualified")

        for n, (status, assigned) in enumerate((("completed", rep), ("cancelled", None)), start=1):
            s.add(
                TestDrive(
                    reservation_id=f"TD-2026-{n:03d}",
                    customer_name="Buyer",
                    customer_phone="0917",
                    vehicle_vin="MR2BT9F30P1234567",
                    vehicle_details="2026 Toyota Vios",
                    scheduled_date=date(2026, 3, 10),
                    scheduled_time=time(10, 0),
                    status=status,
                    assigned_user_id=assigned,
                    branch_id=mnl,
                    created_at=at(3, 8),
                )
            )

        mine = create_customer(s, {"first_name": "Ana", "last_name": "Reyes", "phone": "09171230000"}, admin, mnl)
        mine.assigned_to = rep
        other = create_customer(s, {"first_name": "Ben", "last_name": "Cruz", "phone": "09181230000"}, admin, mnl)
        for n, (customer, status, rating) in enumerate(((mine, "completed", 5), (other, "completed", 4), (other, "pending", None))):
            s.add(
                CustomerSurvey(
                    customer_id=customer.id,
                    token=f"tok-{n}",
                    status=status,
                    overall_rating=rating,
                    branch_id=mnl,
                    created_at=at(3, 15),
                )
            )
    return mnl, rep, manager


def test_report_period_defaults_and_previous_window():
    assert ReportPeriod.resolve(None, None, today=date(2026, 2, 10)) == ReportPeriod(date(2026, 2, 1), date(2026, 2, 28))
    march = ReportPeriod(date(2026, 3, 1), date(2026, 3, 31))
    assert march.previous == ReportPeriod(date(2026, 1, 30), date(2026, 2, 28))


def test_performance_kpis_compare_with_previous_period(app):
    mnl, _rep, _manager = _performance_fixture(app)
    with session_scope(app) as s:
        report = performance_kpis(s, ReportPeriod(date(2026, 3, 1), date(2026, 3, 31)), mnl)
    assert report["summary"] == {"total_leads": 4, "active_pipelines": 2, "completed_test_drives": 1}
    kpis = {k.key: k for k in report["metrics"]}
    assert (kpis["lead_conversion_rate"].current, kpis["lead_conversion_rate"].previous) == (25.0, 50.0)
    assert kpis["lead_conversion_rate"].trend == "down"
    assert (kpis["active_pipelines"].current, kpis["active_pipelines"].previous) == (2, 1)
    assert (kpis["test_drive_completion_rate"].current, kpis["test_drive_completion_rate"].previous) == (50.0, 0.0)
    assert kpis["customer_satisfaction"].current == 4.5
    assert kpis["customer_satisfaction"].on_target
    duration = kpis["avg_pipeline_duration"]
    assert (duration.current, duration.previous) == (15.0, 20.0)
    # shorter deals count as an improvement
    assert duration.trend == "up"
    assert (kpis["pipeline_win_rate"].current, kpis["pipeline_win_rate"].previous) == (50.0, 100.0)


def test_sales_rep_performance_is_ranked_by_conversion(app):
    mnl, rep, manager = _performance_fixture(app)
    with session_scope(app) as s:
        rows = sales_rep_performance(s, ReportPeriod(date(2026, 3, 1), date(2026, 3, 31)), mnl)
    assert [(r["user_id"], r["rank"]) for r in rows] == [(rep, 1), (manager, 2)]
    top = rows[0]
    assert (top["leads_assigned"], top["leads_converted"], top["conversion_rate"]) == (2, 1, 50.0)
    assert (top["pipelines_managed"], top["pipelines_won"]) == (2, 1)
    assert top["pipeline_value"] == 500000
    assert top["test_drives_conducted"] == 1
    assert top["customer_satisfaction"] == 5.0
    assert (rows[1]["leads_assigned"], rows[1]["conversion_rate"]) == (1, 0.0)


def test_performance_page_keeps_reps_in_their_branch(client, app):
    _performance_fixture(app)
    login(client)
    r = client.get("/admin/pipelines/performance?start_date=2026-03-01&end_date=2026-03-31")
    assert r.status_code == 200
    assert b"Lead Conversion Rate" in r.data
    assert b"qc-rep" in r.data

    login(client, "rep@example.com")
    r = client.get("/admin/pipelines/performance?start_date=2026-03-01&end_date=2026-03-31&branch_id=999")
    assert r.status_code == 200
    assert b"manager" in r.data
    assert b"qc-rep" not in r.data
