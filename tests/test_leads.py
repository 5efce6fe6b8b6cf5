import io
from datetime import datetime, timedelta

import pytest

from app.dms.db import session_scope
from app.dms.modules.leads.models import Lead
from app.dms.modules.leads.scoring import calculate_conversion_probability, calculate_lead_score, detect_suspicious_lead
from app.dms.modules.leads.service import create_lead, query_leads, update_lead, upcoming_followups, validate_lead_payload
from app.dms.modules.pipelines.models import Pipeline
from app.dms.utils import parse_decimal

from conftest import branch_id, get_admin, login, make_user, post


def test_lead_score_weights():
    assert calculate_lead_score("walk_in", "high") == 75
    assert calculate_lead_score("referral", "urgent", ["fleet", "cash"]) == 90
    assert calculate_lead_score("social_media", "low") == 30
    assert calculate_lead_score("walk_in", "urgent", [str(i) for i in range(10)]) == 100
    assert calculate_lead_score(None, None) == 15


def test_conversion_probability_is_clamped():
    assert calculate_conversion_probability("new", None, None) == 40
    assert calculate_conversion_probability("hot", "500000", "immediate") == 100
    assert calculate_conversion_probability("lost", None, "exploring") == 0
    assert calculate_conversion_probability("qualified", 0, "month") == 70


def test_suspicious_lead_detection(app):
    with session_scope(app) as s:
        score, flags = detect_suspicious_lead(
            s, {"name": "JOHN123", "email": "x@mailinator.com", "budget_min": "50000"}
        )
        assert flags == ["suspicious_email", "incomplete_info", "unrealistic_budget", "suspicious_name"]
        assert score == 75

        clean_score, clean_flags = detect_suspicious_lead(
            s, {"name": "Ana Reyes", "email": "ana@example.com", "location": "Makati", "vehicle_interest": "Vios", "budget_min": "900000"}
        )
        assert (clean_score, clean_flags) == (0, [])


def test_duplicates_are_flagged_against_live_leads_only(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        first = create_lead(s, {"name": "Ana Reyes", "email": "ana@example.com", "phone": "0917", "source": "phone"}, admin, None, "10.0.0.1")
        second = create_lead(s, {"name": "Ana R.", "email": "ANA@example.com", "phone": "0917", "source": "phone"}, admin, None, "10.0.0.1")
        assert {"duplicate_email", "duplicate_phone", "duplicate_ip"} <= set(second.duplicate_flags)

        first.deleted_at = datetime.utcnow()
        s.flush()
        score, flags = detect_suspicious_lead(s, {"email": "ana@example.com", "phone": "0917"}, exclude_id=second.id)
        assert "duplicate_email" not in flags and "duplicate_phone" not in flags


def test_lead_ids_are_sequential_per_year(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        a = create_lead(s, {"name": "A", "phone": "1", "source": "phone"}, admin, None)
        b = create_lead(s, {"name": "B", "phone": "2", "source": "phone"}, admin, None)
        year = datetime.utcnow().year
        assert (a.lead_id, b.lead_id) == (f"LD-{year}-001", f"LD-{year}-002")


def test_lead_validation():
    errors = validate_lead_payload({"source": "billboard", "budget_min": "500", "budget_max": "100"})
    assert "Name is required." in errors
    assert "Email or phone is required." in errors
    assert any(e.startswith("Invalid source.") for e in errors)
    assert validate_lead_payload({"name": "A", "phone": "1", "source": "phone", "budget_min": "500", "budget_max": "100"}) == [
        "Budget max must be greater than or equal to budget min."
    ]


def test_non_finite_budgets_are_rejected(client, app):
    base = {"name": "Ana", "phone": "1", "source": "phone"}
    assert validate_lead_payload(dict(base, budget_min="nan")) == ["Budget min must be a number."]
    assert validate_lead_payload(dict(base, budget_max="inf")) == ["Budget max must be a number."]
    with pytest.raises(ValueError, match="Invalid number"):
        parse_decimal("NaN")

    login(client)
    r = post(client, "/admin/leads/new", dict(base, budget_min="nan"), follow_redirects=True)
    assert r.status_code == 200
    assert b"Budget min must be a number." in r.data
    with session_scope(app) as s:
        assert s.query(Lead).count() == 0


def test_qualified_high_score_lead_opens_pipeline(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        lead = create_lead(
            s,
            {"name": "Ben Cruz", "phone": "0918", "source": "walk_in", "priority": "high", "status": "qualified"},
            admin,
            branch_id(app, "MNL"),
        )
        assert lead.lead_score == 75
        pipeline = s.query(Pipeline).filter(Pipeline.lead_id == lead.id).one()
        assert pipeline.current_stage == "qualified"
        assert pipeline.branch_id == lead.branch_id
        assert [log.stage for log in pipeline.stage_logs] == ["qualified"]
        assert (pipeline.stage_logs[0].trigger_system, pipeline.stage_logs[0].trigger_event) == (
            "Lead Management",
            "Lead Qualified (Score >= 70)",
        )


def test_low_score_lead_does_not_open_pipeline_until_requalified(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        lead = create_lead(s, {"name": "Cora", "phone": "0919", "source": "social_media", "priority": "low"}, admin, None)
        update_lead(s, lead, {"name": "Cora", "phone": "0919", "source": "social_media", "priority": "low", "status": "qualified"}, admin)
        assert s.query(Pipeline).count() == 0

        update_lead(s, lead, {"name": "Cora", "phone": "0919", "source": "walk_in", "priority": "urgent", "status": "qualified"}, admin)
        assert lead.lead_score == 85
        # status did not change on this edit, so no pipeline is opened
        assert s.query(Pipeline).count() == 0
        assert lead.last_contact_at is not None


def test_followups_window(app):
    now = datetime(2026, 5, 1, 9, 0)
    with session_scope(app) as s:
        admin = get_admin(s)
        soon = create_lead(s, {"name": "Soon", "phone": "1", "source": "phone", "next_followup_at": "2026-05-03T10:00"}, admin, None)
        create_lead(s, {"name": "Later", "phone": "2", "source": "phone", "next_followup_at": "2026-06-01T10:00"}, admin, None)
        create_lead(s, {"name": "Lost", "phone": "3", "source": "phone", "status": "lost", "next_followup_at": "2026-05-02T10:00"}, admin, None)
        assert [lead.id for lead in upcoming_followups(s, admin, now=now)] == [soon.id]


def test_branch_scoping(app, client):
    rep = make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    with session_scope(app) as s:
        admin = get_admin(s)
        own = create_lead(s, {"name": "Own", "phone": "1", "source": "phone"}, admin, branch_id(app, "MNL")).id
        other = create_lead(s, {"name": "Other", "phone": "2", "source": "phone"}, admin, branch_id(app, "QC")).id
        from app.dms.models import User

        assert [lead.id for lead in query_leads(s, s.get(User, rep), {})] == [own]

    login(client, "rep@example.com")
    assert client.get(f"/admin/leads/{own}").status_code == 200
    assert client.get(f"/admin/leads/{other}").status_code == 403


def test_create_lead_via_form_warns_when_suspicious(client, app):
    login(client)
    r = post(
        client,
        "/admin/leads/new",
        {"name": "TEST999", "email": "a@yopmail.com", "source": "web_form", "budget_min": "1000"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"Lead looks suspicious" in r.data
    with session_scope(app) as s:
        lead = s.query(Lead).one()
        assert lead.fake_lead_score == 75
        assert lead.is_suspicious


def test_csv_import_reports_bad_rows(client, app):
    login(client)
    body = (
        "Name,Email,Phone,Source,Status\n"
        "Dan Lim,dan@example.com,0917,referral,new\n"
        ",nobody@example.com,,phone,new\n"
        "Eve Tan,,0918,billboard,new\n"
    ).encode()
    r = post(
        client,
        "/admin/leads/import",
        {"file": (io.BytesIO(body), "leads.csv")},
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"Imported 1 lead(s)." in r.data
    assert b"Row 3: Name is required." in r.data
    assert b"Row 4:" in r.data
    with session_scope(app) as s:
        assert [lead.name for lead in s.query(Lead).all()] == ["Dan Lim"]


def test_csv_template_and_export(client, app):
    login(client)
    r = client.get("/admin/leads/import/template")
    assert r.status_code == 200
    assert r.data.startswith(b"name,email,phone")

    with session_scope(app) as s:
        create_lead(s, {"name": "Fay", "phone": "0917", "source": "phone"}, get_admin(s), None)
    r = client.get("/admin/leads/export")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert b"Fay" in r.data


def test_soft_deleted_lead_hidden_then_restored(client, app):
    with session_scope(app) as s:
        lead_id = create_lead(s, {"name": "Gil", "phone": "0917", "source": "phone"}, get_admin(s), None).id
    login(client)
    post(client, f"/admin/leads/{lead_id}/delete")
    assert b"Gil" not in client.get("/admin/leads").data
    assert b"Gil" in client.get("/admin/leads?include_deleted=1").data
    assert client.get(f"/admin/leads/{lead_id}/edit").status_code == 404
    assert b"Restore" in client.get(f"/admin/leads/{lead_id}").data

    post(client, f"/admin/leads/{lead_id}/restore")
    assert b"Gil" in client.get("/admin/leads").data
    assert client.get(f"/admin/leads/{lead_id}/edit").status_code == 200
