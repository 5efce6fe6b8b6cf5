from datetime import datetime, timedelta

from app.dms.db import session_scope
from app.dms.models import ActivityLog
from app.dms.modules.mfa.models import UserOtpCode
from app.dms.modules.mfa.service import (
    OTP_RATE_LIMIT,
    cleanup_expired_codes,
    generate_login_otp,
    generate_sensitive_action_otp,
    is_verified,
    mark_verified,
    revoke,
    verify_otp,
)

from conftest import get_admin, login, make_user, post


def test_login_otp_is_six_digits_and_reused_while_valid(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        first = generate_login_otp(s, admin, config=app.config)
        assert first.status == "sent"
        assert len(first.code.code) == 6 and first.code.code.isdigit()
        assert first.expires_at - first.code.created_at == timedelta(minutes=10)

        again = generate_login_otp(s, admin, config=app.config)
        assert again.status == "existing"
        assert again.code.id == first.code.id


def test_verify_otp_is_single_use(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        code = generate_login_otp(s, admin, config=app.config).code.code
        assert verify_otp(s, admin, "000000" if code != "000000" else "111111", "login") is False
        assert verify_otp(s, admin, code, "login") is True
        assert verify_otp(s, admin, code, "login") is False
        actions = {a for (a,) in s.query(ActivityLog.action).all()}
        assert {"mfa.code_sent", "mfa.verified", "mfa.verify_failed"} <= actions


def test_code_spent_in_one_session_fails_in_another(app):
    with session_scope(app) as s:
        code = generate_login_otp(s, get_admin(s), config=app.config).code.code

    with session_scope(app) as s:
        assert verify_otp(s, get_admin(s), code, "login") is True
        otp = s.query(UserOtpCode).filter(UserOtpCode.code == code).one()
        assert otp.is_used is True
        assert otp.used_at is not None

    with session_scope(app) as s:
        assert verify_otp(s, get_admin(s), code, "login") is False
        assert s.query(ActivityLog).filter(ActivityLog.action == "mfa.verified").count() == 1


def test_expired_code_does_not_verify(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        issued = datetime(2026, 3, 1, 9, 0)
        code = generate_login_otp(s, admin, config=app.config, now=issued).code.code
        assert verify_otp(s, admin, code, "login", now=issued + timedelta(minutes=11)) is False


def test_sensitive_action_code_is_bound_to_action(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        code = generate_sensitive_action_otp(s, admin, "delete_user", config=app.config).code.code
        assert verify_otp(s, admin, code, "sensitive_action", "delete_role") is False
        assert verify_otp(s, admin, code, "sensitive_action", "delete_user") is True


def test_rate_limit_counts_codes_across_actions(app):
    now = datetime(2026, 3, 1, 9, 0)
    with session_scope(app) as s:
        admin = get_admin(s)
        for i in range(OTP_RATE_LIMIT):
            # each action gets its own code, so none is reused
            r = generate_sensitive_action_otp(s, admin, f"action_{i}", config=app.config, now=now + timedelta(minutes=i))
            assert r.status == "sent"
        blocked = generate_sensitive_action_otp(s, admin, "delete_user", config=app.config, now=now + timedelta(minutes=10))
        assert blocked.status == "rate_limited"
        assert blocked.retry_after == now + timedelta(hours=1)


def test_cleanup_removes_old_expired_codes(app):
    now = datetime(2026, 3, 2, 12, 0)
    with session_scope(app) as s:
        admin = get_admin(s)
        generate_login_otp(s, admin, config=app.config, now=now - timedelta(days=3))
        revoked = s.query(UserOtpCode).one()
        revoked.is_used = True
        generate_login_otp(s, admin, config=app.config, now=now)
        assert cleanup_expired_codes(s, older_than_hours=24, now=now) == 1
        assert s.query(UserOtpCode).count() == 1


def test_session_markers_expire():
    session = {}
    t0 = datetime(2026, 3, 1, 9, 0)
    mark_verified(session, "sensitive_action", "delete_user", now=t0)
    assert is_verified(session, "delete_user", now=t0 + timedelta(minutes=29))
    assert not is_verified(session, "delete_user", now=t0 + timedelta(minutes=31))
    assert "mfa_verified_delete_user" not in session

    mark_verified(session, "login", now=t0)
    assert is_verified(session, now=t0 + timedelta(hours=23))
    revoke(session)
    assert not is_verified(session, now=t0)


def test_login_requires_code_when_enabled(app, client):
    app.config["MFA_LOGIN_REQUIRED"] = True
    r = login(client)
    assert r.status_code == 302
    assert "/mfa/verify" in r.headers["Location"]

    # Admin pages bounce to the verify page until the code is entered
    r = client.get("/admin/leads")
    assert r.status_code == 302
    assert "/mfa/verify" in r.headers["Location"]

    with session_scope(app) as s:
        code = s.query(UserOtpCode).filter(UserOtpCode.purpose == "login").one().code
    r = client.post("/mfa/verify", data={"code": code})
    assert r.status_code == 302
    # back to the page that triggered the challenge
    assert r.headers["Location"].endswith("/admin/leads")
    assert client.get("/admin/leads").status_code == 200


def test_wrong_code_stays_on_verify_page(app, client):
    app.config["MFA_LOGIN_REQUIRED"] = True
    login(client)
    r = client.post("/mfa/verify", data={"code": "12345x"})
    assert r.status_code == 302
    assert "/mfa/verify" in r.headers["Location"]
    r = client.post("/mfa/verify", json={"code": "12345x"})
    assert r.status_code == 422
    assert r.json["success"] is False


def test_send_code_json_reports_status(app, client):
    login(client)
    r = client.post("/mfa/send-code", json={"action": "delete_user"})
    assert r.status_code == 200
    assert r.json["status"] == "sent"
    r = client.post("/mfa/send-code", json={"action": "delete_user"})
    assert r.json["status"] == "existing"


def test_status_and_revoke(client):
    login(client)
    with client.session_transaction() as sess:
        sess["mfa_verified_delete_user"] = datetime.utcnow().isoformat()
    r = client.get("/mfa/status")
    assert r.json["actions"]["delete_user"] is True
    r = client.post("/mfa/revoke", json={})
    assert r.json["success"] is True
    assert client.get("/mfa/status").json["actions"]["delete_user"] is False


def test_anonymous_mfa_endpoints_need_login(client):
    r = client.get("/mfa/status", headers={"Accept": "application/json"})
    assert r.status_code in (302, 401)


def test_sensitive_action_redirects_to_verify_then_succeeds(app, client):
    victim_id = make_user(app, "rep@example.com", "sales_rep")
    login(client)
    r = post(client, f"/admin/users/{victim_id}/delete", headers={"Referer": f"http://localhost/admin/users/{victim_id}"})
    assert r.status_code == 302
    assert "/mfa/verify" in r.headers["Location"]
    assert "action=delete_user" in r.headers["Location"]

    with session_scope(app) as s:
        code = s.query(UserOtpCode).filter(UserOtpCode.action == "delete_user").one().code
    r = client.post("/mfa/verify", data={"code": code, "action": "delete_user"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith(f"/admin/users/{victim_id}")

    r = post(client, f"/admin/users/{victim_id}/delete")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/users")
