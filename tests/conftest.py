import pytest
from werkzeug.security import generate_password_hash

from app.dms import create_app
from app.dms.constants import PERMISSIONS, ROLE_PERMISSIONS, ROLES
from app.dms.db import session_scope
from app.dms.models import Base, Permission, Role, User
from app.dms.modules.branches.models import Branch

ADMIN_EMAIL = "admin@example.com"
PASSWORD = "pw-secret-1"


def seed_roles(s) -> dict[str, Role]:
    perms = {key: Permission(key=key, name=name) for key, name in PERMISSIONS}
    s.add_all(perms.values())
    roles = {}
    for key, name in ROLES.items():
        role = Role(key=key, name=name)
        role.permissions.extend(perms[p] for p in ROLE_PERMISSIONS[key])
        s.add(role)
        roles[key] = role
    return roles


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("MAIL_BACKEND", "console")
    monkeypatch.setenv("MFA_LOGIN_REQUIRED", "0")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = seed_roles(s)
        main = Branch(code="MNL", name="Manila Main")
        north = Branch(code="QC", name="Quezon City")
        s.add_all([main, north])
        s.flush()
        admin = User(email=ADMIN_EMAIL, name="Admin", password_hash=generate_password_hash(PASSWORD), is_active=True)
        admin.roles.append(roles["admin"])
        s.add(admin)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def branch_id(app, code: str) -> int:
    with session_scope(app) as s:
        return s.query(Branch).filter(Branch.code == code).one().id


def make_user(app, email: str, role_key: str, *, branch_code: str | None = None, password: str = PASSWORD) -> int:
    with session_scope(app) as s:
        u = User(email=email, name=email.split("@")[0], password_hash=generate_password_hash(password), is_active=True)
        if branch_code:
            u.branch_id = s.query(Branch).filter(Branch.code == branch_code).one().id
        u.roles.append(s.query(Role).filter(Role.key == role_key).one())
        s.add(u)
        s.flush()
        return u.id


def login(client, email: str = ADMIN_EMAIL, password: str = PASSWORD):
    return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)


def csrf(client) -> str:
    with client.session_transaction() as sess:
        return sess.setdefault("csrf_token", "test-csrf-token")


def post(client, url: str, data: dict | None = None, **kwargs):
    payload = dict(data or {})
    payload["csrf_token"] = csrf(client)
    return client.post(url, data=payload, **kwargs)


def get_admin(s) -> User:
    return s.query(User).filter(User.email == ADMIN_EMAIL).one()
