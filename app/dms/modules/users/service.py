from __future__ import annotations

import re
from typing import TYPE_CHECKING

from werkzeug.security import generate_password_hash

from app.dms.audit import log_created, log_updated, record_event, restore, soft_delete
from app.dms.utils import EMAIL_RE, BusinessRuleError, apply_changes, clean, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import Role, User

MODULE = "users"
MIN_PASSWORD_LENGTH = 8
ROLE_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{1,63}$")


def validate_password(password: str | None, confirm: str | None, *, required: bool = True) -> list[str]:
    if not password:
        return ["Password is required."] if required else []
    if len(password) < MIN_PASSWORD_LENGTH:
        return [f"Password must be at least {MIN_PASSWORD_LENGTH} characters."]
    if password != confirm:
        return ["Passwords do not match."]
    return []


def validate_user_payload(s: "Session", payload: dict, user_id: int | None = None) -> list[str]:
    from app.dms.models import User
    from app.dms.modules.branches.models import Branch

    errors: list[str] = []
    email = (clean(payload.get("email")) or "").lower()
    if not email:
        errors.append("Email is required.")
    elif not EMAIL_RE.match(email):
        errors.append("Invalid email format.")
    else:
        q = s.query(User).filter(User.email == email)
        if user_id:
            q = q.filter(User.id != user_id)
        if q.first():
            errors.append("An account with this email already exists.")
    branch_id = parse_int(payload.get("branch_id"))
    if payload.get("branch_id") and (branch_id is None or s.get(Branch, branch_id) is None):
        errors.append("Branch does not exist.")
    errors += validate_password(payload.get("password"), payload.get("password_confirm"), required=user_id is None)
    return errors


def _roles_for(s: "Session", role_keys: list[str]) -> list["Role"]:
    from app.dms.models import Role

    if not role_keys:
        return []
    return s.query(Role).filter(Role.key.in_(role_keys)).order_by(Role.key.asc()).all()


def create_user(s: "Session", payload: dict, role_keys: list[str], actor: "User") -> "User":
    from app.dms.models import User

    user = User(
        name=clean(payload.get("name")),
        email=(clean(payload.get("email")) or "").lower(),
        password_hash=generate_password_hash(payload["password"]),
        branch_id=parse_int(payload.get("branch_id")),
        is_active=bool(payload.get("is_active", True)),
    )
    user.roles = _roles_for(s, role_keys)
    s.add(user)
    s.flush()
    log_created(s, MODULE, user, actor, f"User {user.email} created", {"email": user.email, "roles": user.role_keys})
    return user


def update_user(s: "Session", user: "User", payload: dict, actor: "User") -> "User":
    if user.id == actor.id and not payload.get("is_active", True):
        raise BusinessRuleError("You cannot deactivate your own account.")
    changes = apply_changes(
        user,
        {
            "name": clean(payload.get("name")),
            "email": (clean(payload.get("email")) or "").lower(),
            "branch_id": parse_int(payload.get("branch_id")),
            "is_active": bool(payload.get("is_active")),
        },
    )
    if payload.get("password"):
        user.password_hash = generate_password_hash(payload["password"])
        changes["password"] = {"old": None, "new": "(changed)"}
    log_updated(s, MODULE, user, actor, f"User {user.email} updated", {"changes": changes})
    return user


def set_user_roles(s: "Session", user: "User", role_keys: list[str], actor: "User") -> "User":
    before = user.role_keys
    if user.id == actor.id and "admin" in before and "admin" not in role_keys:
        raise BusinessRuleError("You cannot remove the admin role from your own account.")
    user.roles = _roles_for(s, role_keys)
    record_event(
        s,
        actor=actor,
        action="users.roles_changed",
        module=MODULE,
        description=f"Roles changed for {user.email}",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": user.role_keys},
    )
    return user


def delete_user(s: "Session", user: "User", actor: "User") -> None:
    if user.id == actor.id:
        raise BusinessRuleError("You cannot delete your own account.")
    soft_delete(s, user, actor, MODULE, f"User {user.email}")
    user.is_active = False


def restore_user(s: "Session", user: "User", actor: "User") -> None:
    restore(s, user, actor, MODULE, f"User {user.email}", "User")
    user.is_active = True


# ---- Roles ----

def validate_role_payload(s: "Session", payload: dict, role_id: int | None = None) -> list[str]:
    from app.dms.models import Role

    errors: list[str] = []
    if not clean(payload.get("name")):
        errors.append("Name is required.")
    if role_id is None:
        key = clean(payload.get("key")) or ""
        if not ROLE_KEY_RE.match(key):
            errors.append("Key must be lowercase letters, digits or underscores.")
        elif s.query(Role).filter(Role.key == key).first():
            errors.append(f"Role {key} already exists.")
    return errors


def _permissions_for(s: "Session", permission_keys: list[str]):
    from app.dms.models import Permission

    if not permission_keys:
        return []
    return s.query(Permission).filter(Permission.key.in_(permission_keys)).order_by(Permission.key.asc()).all()


def create_role(s: "Session", payload: dict, permission_keys: list[str], actor: "User") -> "Role":
    from app.dms.models import Role

    role = Role(key=clean(payload.get("key")), name=clean(payload.get("name")), description=clean(payload.get("description")))
    role.permissions = _permissions_for(s, permission_keys)
    s.add(role)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="roles.created",
        module="roles",
        description=f"Role {role.key} created",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"permissions": [p.key for p in role.permissions]},
    )
    return role


def update_role(s: "Session", role: "Role", payload: dict, permission_keys: list[str], actor: "User") -> "Role":
    before = sorted(p.key for p in role.permissions)
    role.name = clean(payload.get("name")) or role.name
    role.description = clean(payload.get("description"))
    role.permissions = _permissions_for(s, permission_keys)
    after = sorted(p.key for p in role.permissions)
    record_event(
        s,
        actor=actor,
        action="roles.updated",
        module="roles",
        description=f"Role {role.key} updated",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"added": sorted(set(after) - set(before)), "removed": sorted(set(before) - set(after))},
    )
    return role


def delete_role(s: "Session", role: "Role", actor: "User") -> None:
    assigned = len(role.users or [])
    if assigned:
        raise BusinessRuleError(f"Role {role.key} is assigned to {assigned} user(s) and cannot be deleted.")
    record_event(
        s,
        actor=actor,
        action="roles.deleted",
        module="roles",
        description=f"Role {role.key} deleted",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"key": role.key, "permissions": [p.key for p in role.permissions]},
    )
    s.delete(role)
    s.flush()
