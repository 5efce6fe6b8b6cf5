from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, flash, g, redirect, request, session, url_for

from app.dms.db import db_session
from app.dms.modules.mfa.service import generate_login_otp, generate_sensitive_action_otp, is_verified

_LOGIN_MFA_SKIP = ("mfa.", "auth.", "public.", "routes.", "static")


def _intended_url() -> str:
    # A POST cannot be replayed after verification; send the user back to the page they acted from.
    if request.method == "GET":
        nxt = request.full_path
        return nxt[:-1] if nxt.endswith("?") else nxt
    ref = request.referrer
    if ref and ref.startswith(request.host_url):
        return ref
    return url_for("admin.index")


def _client_meta() -> dict[str, Any]:
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.user_agent.string if request.user_agent else None,
    }


def mfa_challenge(action: str | None = None):
    """Issue an OTP for `action` and send the user to the verify page."""
    user = g.current_user
    session["mfa_intended_url"] = _intended_url()
    session["mfa_action"] = action
    s = db_session()
    if action:
        result = generate_sensitive_action_otp(
            s, user, action, {"endpoint": request.endpoint}, config=current_app.config, **_client_meta()
        )
    else:
        result = generate_login_otp(s, user, config=current_app.config, **_client_meta())
    s.commit()
    flash(result.message, "info" if result.ok else "danger")
    return redirect(url_for("mfa.verify_get", action=action) if action else url_for("mfa.verify_get"))


def require_mfa(action: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Require a fresh OTP verification for `action` (or the login marker when None)."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = getattr(g, "current_user", None)
            if not user:
                return redirect(url_for("auth.login_get", next=request.path))
            if is_verified(session, action):
                return fn(*args, **kwargs)
            return mfa_challenge(action)

        return wrapped

    return decorator


def enforce_login_mfa():
    """before_request hook: a signed-in user must pass the login OTP once per day."""
    if not current_app.config.get("MFA_LOGIN_REQUIRED"):
        return None
    user = getattr(g, "current_user", None)
    if not user:
        return None
    endpoint = request.endpoint or ""
    if endpoint.startswith(_LOGIN_MFA_SKIP) or request.path.startswith(("/static/", "/health", "/healthz", "/survey/")):
        return None
    if is_verified(session):
        return None

    session["mfa_intended_url"] = _intended_url()
    session.pop("mfa_action", None)
    s = db_session()
    result = generate_login_otp(s, user, config=current_app.config, **_client_meta())
    s.commit()
    if not result.ok:
        flash(result.message, "danger")
    return redirect(url_for("mfa.verify_get"))
