from conftest import login, post


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_login_and_admin_access(client):
    # Anonymous is sent to login
    r = client.get("/admin/")
    assert r.status_code in (302, 403)

    r = login(client)
    assert r.status_code == 302

    r = client.get("/admin/")
    assert r.status_code == 200
    assert b"Dashboard" in r.data


def test_bad_password_is_rejected_and_logged(client, app):
    from app.dms.db import session_scope
    from app.dms.models import ActivityLog

    r = login(client, password="wrong")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/auth/login")
    assert client.get("/admin/").status_code in (302, 403)

    with session_scope(app) as s:
        failed = s.query(ActivityLog).filter(ActivityLog.action == "auth.login_failed").one()
        assert failed.status == "failed"


def test_post_without_csrf_token_is_rejected(client):
    login(client)
    r = client.post("/admin/branches/new", data={"name": "X", "code": "X1"})
    assert r.status_code == 400


def test_logout_clears_session(client):
    login(client)
    assert client.get("/admin/").status_code == 200
    r = client.get("/auth/logout")
    assert r.status_code == 302
    assert client.get("/admin/").status_code in (302, 403)


def test_every_admin_list_renders(client):
    login(client)
    for url in (
        "/admin/branches",
        "/admin/users",
        "/admin/roles",
        "/admin/permissions",
        "/admin/customers",
        "/admin/leads",
        "/admin/pipelines",
        "/admin/test-drives",
        "/admin/parts",
        "/admin/work-orders",
        "/admin/warranty-claims",
        "/admin/compliance/checklists",
        "/admin/compliance/reminders",
        "/admin/activity-logs",
        "/admin/time-tracking",
        "/admin/surveys",
        "/admin/leads/followups",
        "/admin/vehicles/masters",
        "/admin/vehicles/models",
        "/admin/vehicles/units",
        "/admin/reservations",
        "/admin/common-services",
        "/admin/service-types",
        "/admin/pipelines/performance",
        "/admin/work-orders/aftersales",
        "/admin/compliance/my-checklists",
        "/admin/calendar",
        "/admin/me",
        "/mfa/settings",
    ):
        r = client.get(url)
        assert r.status_code == 200, url


def test_unknown_admin_page_is_404(client):
    login(client)
    assert client.get("/admin/no-such-page").status_code == 404


def test_forms_include_csrf_field(client):
    login(client)
    r = client.get("/admin/branches/new")
    assert r.status_code == 200
    assert b'name="csrf_token"' in r.data
    r = post(client, "/admin/branches/new", {"name": "Cebu", "code": "CEB"}, follow_redirects=True)
    assert r.status_code == 200
    assert b"Cebu" in r.data


def test_standalone_engine_matches_app_settings(tmp_path):
    from sqlalchemy import text

    from app.dms.db import build_engine, make_sessionmaker

    engine = build_engine(f"sqlite:///{tmp_path/'cron.db'}")
    try:
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
        s = make_sessionmaker(engine)()
        assert s.autoflush is False
        s.close()
    finally:
        engine.dispose()
