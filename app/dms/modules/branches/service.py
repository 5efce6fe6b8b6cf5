from __future__ import annotations

from typing import TYPE_CHECKING

from app.dms.audit import log_created, log_updated, restore, soft_delete
from app.dms.constants import BRANCH_STATUSES
from app.dms.utils import EMAIL_RE, BusinessRuleError, check_enum, check_number, clean, parse_decimal, parse_json_object

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.branches.models import Branch

MODULE = "branches"
_FIELDS = ("name", "address", "city", "state", "postal_code", "country", "phone", "email", "notes")


def validate_branch_payload(s: "Session", payload: dict, branch_id: int | None = None) -> list[str]:
    from app.dms.modules.branches.models import Branch

    errors: list[str] = []
    if not clean(payload.get("name")):
        errors.append("Name is required.")
    code = (clean(payload.get("code")) or "").upper()
    if not code:
        errors.append("Code is required.")
    elif len(code) > 32:
        errors.append("Code must be at most 32 characters.")
    else:
        q = s.query(Branch).filter(Branch.code == code)
        if branch_id:
            q = q.filter(Branch.id != branch_id)
        if q.first():
            errors.append(f"Branch code {code} is already in use.")
    email = clean(payload.get("email"))
    if email and not EMAIL_RE.match(email):
        errors.append("Email is not a valid address.")
    check_enum(errors, "Status", payload.get("status"), BRANCH_STATUSES)
    check_number(errors, "Latitude", payload.get("latitude"), minimum=-90, maximum=90)
    check_number(errors, "Longitude", payload.get("longitude"), minimum=-180, maximum=180)
    _, err = parse_json_object(payload.get("business_hours")) if isinstance(payload.get("business_hours"), str) else (None, None)
    if err:
        errors.append(f"Business hours: {err}")
    return errors


def _business_hours(raw):
    if isinstance(raw, dict):
        return raw
    value, _ = parse_json_object(raw)
    return value


def create_branch(s: "Session", payload: dict, user: "User") -> "Branch":
    from app.dms.modules.branches.models import Branch

    branch = Branch(
        code=(clean(payload.get("code")) or "").upper(),
        status=clean(payload.get("status")) or "active",
        business_hours=_business_hours(payload.get("business_hours")),
        latitude=parse_decimal(payload.get("latitude")),
        longitude=parse_decimal(payload.get("longitude")),
        **{f: clean(payload.get(f)) for f in _FIELDS},
    )
    s.add(branch)
    s.flush()
    log_created(s, MODULE, branch, user, f"Branch {branch.name} created", {"code": branch.code})
    return branch


def update_branch(s: "Session", branch: "Branch", payload: dict, user: "User") -> "Branch":
    changes = {}
    new_values = {f: clean(payload.get(f)) for f in _FIELDS}
    new_values["code"] = (clean(payload.get("code")) or branch.code).upper()
    new_values["status"] = clean(payload.get("status")) or branch.status
    new_values["latitude"] = parse_decimal(payload.get("latitude"))
    new_values["longitude"] = parse_decimal(payload.get("longitude"))
    if "business_hours" in payload:
        new_values["business_hours"] = _business_hours(payload.get("business_hours"))

    for key, new in new_values.items():
        old = getattr(branch, key)
        if new != old:
            changes[key] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(branch, key, new)

    log_updated(s, MODULE, branch, user, f"Branch {branch.name} updated", {"changes": changes})
    return branch


def delete_branch(s: "Session", branch: "Branch", user: "User") -> None:
    from app.dms.models import User as UserModel

    active_users = (
        s.query(UserModel)
        .filter(UserModel.branch_id == branch.id, UserModel.is_active.is_(True), UserModel.deleted_at.is_(None))
        .count()
    )
    if active_users:
        raise BusinessRuleError(f"Cannot delete branch {branch.name}: {active_users} active user(s) are assigned to it.")
    soft_delete(s, branch, user, MODULE, f"Branch {branch.name}")


def restore_branch(s: "Session", branch: "Branch", user: "User") -> None:
    restore(s, branch, user, MODULE, f"Branch {branch.name}", "Branch")
