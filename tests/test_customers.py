import csv
import io
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.dms.db import session_scope
from app.dms.modules.customers.models import Customer, CustomerSurvey
from app.dms.modules.customers.service import (
    create_customer,
    expire_overdue_surveys,
    generate_survey,
    send_survey,
    submit_survey,
    survey_stats,
    validate_customer_payload,
    validate_survey_submission,
)
from app.dms.utils import BusinessRuleError

from conftest import branch_id, get_admin, login, post


def _customer(app, **extra) -> int:
    payload = {"first_name": "Maria", "last_name": "Santos", "email": "maria@example.com", "phone": "0917"}
    payload.update(extra)
    with session_scope(app) as s:
        return create_customer(s, payload, get_admin(s), branch_id(app, "MNL")).id


def _survey(app, customer_pk: int) -> tuple[int, str]:
    with session_scope(app) as s:
        survey = generate_survey(s, s.get(Customer, customer_pk), get_admin(s), "after_sale", "vehicle_delivered")
        return survey.id, survey.token


def test_customer_validation(app):
    _customer(app)
    with session_scope(app) as s:
        errors = validate_customer_payload(
            s, {"first_name": "M", "last_name": "", "email": "MARIA@example.com", "customer_type": "corporate"}
        )
        assert "First name must be at least 2 characters." in errors
        assert "Last name is required." in errors
        assert "A customer with this email already exists." in errors
        assert "Company name is required for corporate customers." in errors

        own = s.query(Customer).one()
        assert validate_customer_payload(s, {"first_name": "Maria", "last_name": "Santos", "email": "maria@example.com"}, own.id) == []


def test_customer_ids_and_defaults(app):
    pk = _customer(app)
    with session_scope(app) as s:
        c = s.get(Customer, pk)
        assert c.customer_id == f"CUS-{datetime.utcnow().year}-001"
        assert (c.customer_type, c.status, c.loyalty_points) == ("individual", "active", 0)
        assert c.display_name == "Maria Santos"


def test_survey_submission_validation():
    assert validate_survey_submission({}) == ["Overall rating is required."]
    errors = validate_survey_submission({"overall_rating": "6", "service_quality": "0", "nps_score": "11"})
    assert "Overall rating must be at most 5." in errors
    assert "Service quality must be at least 1." in errors
    assert "NPS score must be at most 10." in errors


def test_submit_survey_refreshes_satisfaction(app):
    pk = _customer(app)
    first, _ = _survey(app, pk)
    second, _ = _survey(app, pk)
    with session_scope(app) as s:
        submit_survey(s, s.get(CustomerSurvey, first), {"overall_rating": "4", "nps_score": "9"})
        submit_survey(s, s.get(CustomerSurvey, second), {"overall_rating": "5", "nps_score": "3", "wants_followup": "1"})
        c = s.get(Customer, pk)
        assert c.satisfaction_rating == Decimal("4.5")

        done = s.get(CustomerSurvey, second)
        assert done.status == "completed" and done.completed_at is not None
        assert done.wants_followup is True
        assert done.nps_category == "detractor"

        with pytest.raises(BusinessRuleError):
            submit_survey(s, done, {"overall_rating": "1"})

        stats = survey_stats(s, s.query(CustomerSurvey))
        assert stats["completed"] == 2
        assert stats["avg_overall"] == 4.5
        assert stats["nps"] == 0


def test_expire_overdue_surveys(app):
    pk = _customer(app)
    survey_pk, _ = _survey(app, pk)
    with session_scope(app) as s:
        assert expire_overdue_surveys(s) == 0
        assert expire_overdue_surveys(s, now=datetime.utcnow() + timedelta(days=60)) == 1
        survey = s.get(CustomerSurvey, survey_pk)
        assert survey.status == "expired"
        assert survey.can_be_completed is False


def test_send_survey_rules(app):
    no_email = _customer(app, email="", first_name="Pedro")
    with_email = _customer(app, email="ana@example.com", first_name="Ana")
    with session_scope(app) as s:
        admin = get_admin(s)
        survey = generate_survey(s, s.get(Customer, no_email), admin)
        with pytest.raises(BusinessRuleError, match="no email"):
            send_survey(s, survey, {"MAIL_BACKEND": "console"}, admin)

        survey = generate_survey(s, s.get(Customer, with_email), admin)
        send_survey(s, survey, {"MAIL_BACKEND": "console", "APP_BASE_URL": "https://dms.example.com"}, admin)
        assert survey.sent_method == "email" and survey.sent_at is not None

        survey.expires_at = datetime.utcnow() - timedelta(minutes=1)
        with pytest.raises(BusinessRuleError, match="expired"):
            send_survey(s, survey, {"MAIL_BACKEND": "console"}, admin)


def test_public_survey_flow(client, app):
    pk = _customer(app)
    survey_pk, token = _survey(app, pk)

    page = client.get(f"/survey/{token}")
    assert page.status_code == 200
    assert b'name="overall_rating"' in page.data

    r = client.post(f"/survey/{token}", data={"nps_score": "8"})
    assert r.status_code == 302
    assert b"Overall rating is required." in client.get(f"/survey/{token}").data

    r = client.post(f"/survey/{token}", data={"overall_rating": "5", "nps_score": "10", "what_went_well": "Fast release"})
    assert r.headers["Location"].endswith(f"/survey/{token}/thanks")
    assert b"Thank you" in client.get(f"/survey/{token}/thanks").data

    with session_scope(app) as s:
        survey = s.get(CustomerSurvey, survey_pk)
        assert survey.status == "completed"
        assert survey.what_went_well == "Fast release"
        assert s.get(Customer, pk).satisfaction_rating == Decimal("5")

    assert b"Survey unavailable" in client.get(f"/survey/{token}").data
    assert client.get("/survey/not-a-token").status_code == 404


def test_admin_generates_and_sends_survey(client, app):
    pk = _customer(app)
    login(client)
    r = post(client, f"/admin/customers/{pk}/surveys/new", {"survey_type": "service"})
    assert r.status_code == 302
    with session_scope(app) as s:
        survey = s.query(CustomerSurvey).one()
        assert survey.survey_type == "service"
        assert survey.branch_id == branch_id(app, "MNL")
        survey_pk = survey.id

    r = post(client, f"/admin/surveys/{survey_pk}/send", follow_redirects=True)
    assert b"Survey sent." in r.data
    assert b"/survey/" in client.get(f"/admin/surveys/{survey_pk}").data


def test_customer_form_and_export(client, app):
    login(client)
    r = post(
        client,
        "/admin/customers/new",
        {"first_name": "Jose", "last_name": "Rizal", "email": "jose@example.com", "customer_type": "individual"},
    )
    assert r.status_code == 302

    r = post(client, "/admin/customers/new", {"first_name": "Dup", "last_name": "Email", "email": "JOSE@example.com"})
    assert b"A customer with this email already exists." in client.get("/admin/customers/new").data

    r = client.get("/admin/customers/export")
    assert r.mimetype == "text/csv"
    rows = list(csv.reader(io.StringIO(r.data.decode("utf-8"))))
    assert rows[0][:3] == ["Customer ID", "First Name", "Last Name"]
    assert [row[1] for row in rows[1:]] == ["Jose"]
