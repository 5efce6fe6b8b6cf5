import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dms.constants import PERMISSIONS, ROLE_PERMISSIONS, ROLES  # noqa: E402
from app.dms.models import Permission, Role, User  # noqa: E402
from app.dms.modules.time_tracking.models import SessionSetting  # noqa: E402
from app.dms.modules.time_tracking.service import SETTING_DEFINITIONS  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed(s) -> dict[str, int]:
    """
    Idempotent seed of permissions, built-in roles and idle-tracking settings.
    Existing role grants are only added to, never pruned.
    """
    perms: dict[str, Permission] = {p.key: p for p in s.query(Permission).all()}
    added_perms = 0
    for key, name in PERMISSIONS:
        if key not in perms:
            perms[key] = Permission(key=key, name=name)
            s.add(perms[key])
            added_perms += 1

    added_roles = 0
    for key, name in ROLES.items():
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if not role:
            role = Role(key=key, name=name)
            s.add(role)
            added_roles += 1
        for perm_key in ROLE_PERMISSIONS.get(key, []):
            p = perms[perm_key]
            if p not in role.permissions:
                role.permissions.append(p)

    for key, (default, label, description, _lo, _hi) in SETTING_DEFINITIONS.items():
        if not s.query(SessionSetting).filter(SessionSetting.key == key).one_or_none():
            s.add(
                SessionSetting(
                    key=key, value=str(default), default_value=str(default),
                    label=label, description=description, type="integer",
                )
            )
    s.flush()
    return {"permissions": added_perms, "roles": added_roles}


def ensure_admin(s, email: str, password: str) -> User:
    """Create the admin user if missing. Does NOT overwrite an existing password."""
    role_admin = s.query(Role).filter(Role.key == "admin").one()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user:
        user = User(email=email, name="Administrator", password_hash=generate_password_hash(password), is_active=True)
        s.add(user)
    if role_admin not in user.roles:
        user.roles.append(role_admin)
    return user


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@dealership.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(database_url) as s:
        counts = seed(s)
        ensure_admin(s, admin_email, admin_password)

    print(f"Initialized database (seed_only): {counts['permissions']} new permission(s), {counts['roles']} new role(s).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
