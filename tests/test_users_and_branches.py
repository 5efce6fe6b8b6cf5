from datetime import datetime

import pytest

from app.dms.db import session_scope
from app.dms.models import ActivityLog, Role, User
from app.dms.modules.branches.models import Branch
from app.dms.modules.branches.service import delete_branch, validate_branch_payload
from app.dms.modules.users.service import create_role, delete_role, set_user_roles, update_user, validate_user_payload
from app.dms.utils import BusinessRuleError

from conftest import PASSWORD, branch_id, get_admin, login, make_user, post


def _verify(client, *actions):
    with client.session_transaction() as sess:
        for action in actions:
            sess[f"mfa_verified_{action}"] = datetime.utcnow().isoformat()


def test_branch_code_is_unique_and_uppercased(client, app):
    login(client)
    r = post(client, "/admin/branches/new", {"name": "Davao", "code": "dvo", "status": "active"})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(Branch).filter(Branch.code == "DVO").one().name == "Davao"
        assert "Branch code DVO is already in use." in validate_branch_payload(s, {"name": "Again", "code": "DVO"})


def test_branch_validation_rejects_bad_coordinates_and_hours(app):
    with session_scope(app) as s:
        errors = validate_branch_payload(s, {"name": "X", "code": "X", "latitude": "91", "business_hours": "[1, 2]"})
        assert "Latitude must be at most 90." in errors
        assert any(e.startswith("Business hours") for e in errors)


def test_branch_with_active_users_cannot_be_deleted(app):
    make_user(app, "rep@example.com", "sales_rep", branch_code="QC")
    with session_scope(app) as s:
        branch = s.query(Branch).filter(Branch.code == "QC").one()
        with pytest.raises(BusinessRuleError):
            delete_branch(s, branch, get_admin(s))
        empty = s.query(Branch).filter(Branch.code == "MNL").one()
        delete_branch(s, empty, get_admin(s))
        assert empty.deleted_at is not None


def test_create_user_with_roles(client, app):
    login(client)
    r = post(
        client,
        "/admin/users/new",
        {
            "name": "Maria",
            "email": "Maria@Example.com",
            "branch_id": str(branch_id(app, "MNL")),
            "is_active": "1",
            "role_keys": ["sales_rep", "service_advisor"],
            "password": "longenough",
            "password_confirm": "longenough",
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "maria@example.com").one()
        assert u.role_keys == ["sales_rep", "service_advisor"]
        assert u.is_active
        assert s.query(ActivityLog).filter(ActivityLog.action == "users.create").count() == 1

    # The new account can sign in
    client.get("/auth/logout")
    assert login(client, "maria@example.com", "longenough").status_code == 302
    assert client.get("/admin/leads").status_code == 200


def test_user_validation(app):
    with session_scope(app) as s:
        errors = validate_user_payload(s, {"email": "admin@example.com", "password": "short", "password_confirm": "short"})
        assert "An account with this email already exists." in errors
        assert "Password must be at least 8 characters." in errors
        errors = validate_user_payload(s, {"email": "new@example.com", "password": "longenough", "password_confirm": "different"})
        assert errors == ["Passwords do not match."]
        assert validate_user_payload(s, {"email": "new@example.com", "branch_id": "999"}, user_id=1) == ["Branch does not exist."]


def test_admin_cannot_lock_themselves_out(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        with pytest.raises(BusinessRuleError):
            update_user(s, admin, {"email": admin.email, "is_active": False}, admin)
        with pytest.raises(BusinessRuleError):
            set_user_roles(s, admin, ["auditor"], admin)


def test_role_change_requires_mfa(client, app):
    uid = make_user(app, "rep@example.com", "sales_rep")
    login(client)
    r = post(client, f"/admin/users/{uid}/roles", {"role_keys": ["sales_manager"]})
    assert "/mfa/verify" in r.headers["Location"]

    _verify(client, "change_user_role")
    r = post(client, f"/admin/users/{uid}/roles", {"role_keys": ["sales_manager"]})
    assert r.headers["Location"].endswith(f"/admin/users/{uid}")
    with session_scope(app) as s:
        assert s.get(User, uid).role_keys == ["sales_manager"]
        log = s.query(ActivityLog).filter(ActivityLog.action == "users.roles_changed").one()
        assert "sales_rep" in log.properties_json


def test_editing_an_admin_account_requires_mfa(client, app):
    other_admin = make_user(app, "root2@example.com", "admin")
    plain = make_user(app, "rep@example.com", "sales_rep")
    login(client)
    assert client.get(f"/admin/users/{plain}/edit").status_code == 200
    r = client.get(f"/admin/users/{other_admin}/edit")
    assert r.status_code == 302
    assert "action=edit_admin_user" in r.headers["Location"]
    _verify(client, "edit_admin_user")
    assert client.get(f"/admin/users/{other_admin}/edit").status_code == 200


def test_deleted_user_cannot_log_in_and_can_be_restored(client, app):
    uid = make_user(app, "rep@example.com", "sales_rep")
    login(client)
    _verify(client, "delete_user")
    post(client, f"/admin/users/{uid}/delete")
    with session_scope(app) as s:
        u = s.get(User, uid)
        assert u.deleted_at is not None and not u.is_active

    post(client, f"/admin/users/{uid}/restore")
    with session_scope(app) as s:
        u = s.get(User, uid)
        assert u.deleted_at is None and u.is_active

    client.get("/auth/logout")
    assert login(client, "rep@example.com", PASSWORD).headers["Location"].endswith("/admin/")


def test_roles_crud_and_assigned_role_protection(app):
    make_user(app, "rep@example.com", "sales_rep")
    with session_scope(app) as s:
        admin = get_admin(s)
        role = create_role(s, {"key": "finance_officer", "name": "Finance Officer"}, ["warranty.view", "warranty.decide"], admin)
        assert sorted(p.key for p in role.permissions) == ["warranty.decide", "warranty.view"]
        delete_role(s, role, admin)
        assert s.query(Role).filter(Role.key == "finance_officer").one_or_none() is None

        with pytest.raises(BusinessRuleError, match="assigned to 1 user"):
            delete_role(s, s.query(Role).filter(Role.key == "sales_rep").one(), admin)


def test_users_pages_need_permission(client, app):
    make_user(app, "rep@example.com", "sales_rep")
    login(client, "rep@example.com")
    assert client.get("/admin/users").status_code == 403
    assert client.get("/admin/roles").status_code == 403
