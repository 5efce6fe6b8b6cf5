from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify, redirect, request, url_for

from app.dms.constants import ELEVATED_ROLES
from app.dms.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def user_has_role(user: User | None, *role_keys: str) -> bool:
    if not user or not user.is_active:
        return False
    return any(r.key in role_keys for r in user.roles)


def is_elevated(user: User | None) -> bool:
    return user_has_role(user, *ELEVATED_ROLES)


def _login_redirect():
    if request.path.startswith("/api/") or request.is_json:
        return jsonify({"error": "Authentication required."}), 401
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → redirect to login.
            if not user or not user.is_active:
                return _login_redirect()
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_role(*role_keys: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return _login_redirect()
            if not user_has_role(user, *role_keys):
                g.missing_permission = "role:" + "|".join(role_keys)
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def scope_to_branch(q, model, user: User | None):
    """Restrict a query to the user's branch unless the user is elevated."""
    if is_elevated(user):
        return q
    branch_id = user.branch_id if user else None
    return q.filter(model.branch_id == branch_id)


def ensure_branch_access(obj: Any, user: User | None, message: str = "You can only access records from your branch.") -> None:
    if is_elevated(user):
        return
    if obj is None or user is None or getattr(obj, "branch_id", None) != user.branch_id:
        g.missing_permission = "branch_scope"
        g.forbidden_message = message
        abort(403)


def default_branch_id(requested: Any, user: User) -> int | None:
    """Elevated users may pick a branch; everyone else writes into their own."""
    if is_elevated(user):
        try:
            return int(requested) if requested not in (None, "") else user.branch_id
        except (TypeError, ValueError):
            return user.branch_id
    return user.branch_id


def live(q, model, include_deleted: bool = False):
    """Hide soft-deleted rows unless explicitly requested."""
    if include_deleted:
        return q
    return q.filter(model.deleted_at.is_(None))
