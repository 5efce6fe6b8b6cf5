import csv
import io
from datetime import datetime, timedelta

import pytest

from app.dms.db import session_scope
from app.dms.modules.time_tracking.models import UserSession
from app.dms.modules.time_tracking.service import (
    end_session,
    force_logout,
    format_duration,
    get_settings,
    idle_status,
    save_settings,
    session_stats,
    start_session,
    track_activity,
    update_idle_times,
    validate_settings,
)
from app.dms.utils import BusinessRuleError

from conftest import get_admin, login, make_user, post

T0 = datetime(2026, 5, 4, 8, 0)


def test_format_duration():
    assert format_duration(135) == "2h 15m"
    assert format_duration(None) == "0h 0m"


def test_validate_settings():
    assert validate_settings({"idle_warning_minutes": "0", "auto_logout_minutes": "500", "grace_period_minutes": ""}) == [
        "Idle warning must be at least 1.",
        "Auto logout must be at most 240.",
        "Grace period is required.",
    ]
    assert validate_settings({"idle_warning_minutes": "30", "auto_logout_minutes": "30", "grace_period_minutes": "5"}) == [
        "Auto logout must be greater than idle warning time."
    ]
    assert validate_settings({"idle_warning_minutes": "10", "auto_logout_minutes": "20", "grace_period_minutes": "5"}) == []


def test_settings_default_and_save(app):
    with session_scope(app) as s:
        assert get_settings(s) == {"idle_warning_minutes": 15, "auto_logout_minutes": 30, "grace_period_minutes": 5}
        save_settings(s, {"idle_warning_minutes": "10", "auto_logout_minutes": "20", "grace_period_minutes": "5"}, get_admin(s))
        assert get_settings(s)["auto_logout_minutes"] == 20
        save_settings(s, {"idle_warning_minutes": "10", "auto_logout_minutes": "45", "grace_period_minutes": "5"}, get_admin(s))
        assert get_settings(s)["auto_logout_minutes"] == 45


def test_activity_and_idle_timeout(app):
    with session_scope(app) as s:
        us = start_session(s, get_admin(s), "abc", "127.0.0.1", "pytest", now=T0)
        assert track_activity(s, us, now=T0 + timedelta(minutes=10)) is True
        assert track_activity(s, us, now=T0 + timedelta(minutes=40)) is True
        assert us.activity_count == 2
        assert us.last_activity_at == T0 + timedelta(minutes=40)

        status = idle_status(s, us, now=T0 + timedelta(minutes=56))
        assert (status["idle_minutes"], status["show_warning"], status["minutes_until_logout"]) == (16, True, 14)

        assert track_activity(s, us, now=T0 + timedelta(minutes=71)) is False
        assert (us.status, us.logout_reason, us.idle_time_minutes) == ("idle_timeout", "idle_timeout", 31)
        assert us.logout_time == T0 + timedelta(minutes=71)
        assert track_activity(s, us, now=T0 + timedelta(minutes=72)) is False


def test_end_and_force_logout(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        us = start_session(s, admin, "one", now=T0)
        end_session(s, us, now=T0 + timedelta(minutes=90))
        assert (us.status, us.logout_reason, us.duration_minutes) == ("completed", "logout", 90)
        assert us.formatted_duration == "1h 30m"
        end_session(s, us, reason="again", now=T0 + timedelta(hours=5))
        assert us.logout_reason == "logout"

        with pytest.raises(BusinessRuleError, match="not active"):
            force_logout(s, us, admin)
        other = start_session(s, admin, "two", now=T0)
        force_logout(s, other, admin)
        assert (other.status, other.logout_reason) == ("forced_logout", "forced_logout")


def test_update_idle_times_and_stats(app):
    now = datetime.utcnow()
    with session_scope(app) as s:
        admin = get_admin(s)
        fresh = start_session(s, admin, "fresh", now=now - timedelta(minutes=5))
        stale = start_session(s, admin, "stale", now=now - timedelta(minutes=45))
        assert update_idle_times(s, now=now) == 2
        assert (fresh.status, fresh.idle_time_minutes) == ("active", 5)
        assert stale.status == "idle_timeout"

        stats = session_stats(s, {}, now=now)
        assert stats["total_sessions"] == 2
        assert stats["active_sessions"] == 1
        assert stats["idle_timeouts"] == 1
        assert stats["average_duration"] == "0h 45m"


def _tracking(app, email):
    with session_scope(app) as s:
        return (
            s.query(UserSession)
            .join(UserSession.user)
            .filter_by(email=email)
            .order_by(UserSession.id.desc())
            .first()
            .id
        )


def test_login_tracks_and_heartbeat_does_not_count(client, app):
    make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    login(client, "rep@example.com")
    pk = _tracking(app, "rep@example.com")

    data = post(client, "/admin/time-tracking/heartbeat").get_json()
    assert data["tracked"] is True
    assert data["show_warning"] is False
    assert data["minutes_until_logout"] == 30
    with session_scope(app) as s:
        assert s.get(UserSession, pk).activity_count == 0

    assert client.get("/admin/leads").status_code == 200
    with session_scope(app) as s:
        assert s.get(UserSession, pk).activity_count == 1

    client.get("/auth/logout")
    with session_scope(app) as s:
        assert s.get(UserSession, pk).status == "completed"


def test_idle_session_logged_out_on_next_request(client, app):
    make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    login(client, "rep@example.com")
    pk = _tracking(app, "rep@example.com")
    with session_scope(app) as s:
        s.get(UserSession, pk).last_activity_at = datetime.utcnow() - timedelta(minutes=45)

    r = client.get("/admin/leads")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    assert b"You were logged out after a period of inactivity." in client.get("/auth/login").data
    with session_scope(app) as s:
        assert s.get(UserSession, pk).status == "idle_timeout"


def test_forced_logout_takes_effect_on_next_request(app):
    make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    rep = app.test_client()
    login(rep, "rep@example.com")
    pk = _tracking(app, "rep@example.com")

    admin = app.test_client()
    login(admin)
    r = post(admin, f"/admin/time-tracking/{pk}/force-logout", follow_redirects=True)
    assert b"was logged out." in r.data

    r = rep.get("/admin/leads")
    assert r.status_code == 302
    assert b"Your session was ended by an administrator." in rep.get("/auth/login").data


def test_settings_and_force_logout_are_admin_only(client, app):
    make_user(app, "mgr@example.com", "sales_manager", branch_code="MNL")
    login(client, "mgr@example.com")
    assert client.get("/admin/time-tracking/settings").status_code == 403
    assert post(client, "/admin/time-tracking/settings", {"idle_warning_minutes": "10"}).status_code == 403


def test_settings_form_and_export(client, app):
    login(client)
    r = post(
        client,
        "/admin/time-tracking/settings",
        {"idle_warning_minutes": "30", "auto_logout_minutes": "20", "grace_period_minutes": "5"},
        follow_redirects=True,
    )
    assert b"Auto logout must be greater than idle warning time." in r.data
    r = post(
        client,
        "/admin/time-tracking/settings",
        {"idle_warning_minutes": "10", "auto_logout_minutes": "60", "grace_period_minutes": "5"},
        follow_redirects=True,
    )
    assert b"Session settings saved." in r.data

    r = client.get("/admin/time-tracking/export")
    assert r.mimetype == "text/csv"
    rows = list(csv.reader(io.StringIO(r.data.decode("utf-8"))))
    assert rows[0][:3] == ["User", "Email", "Login Time"]
    assert rows[1][1] == "admin@example.com"
