from __future__ import annotations

import secrets
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from app.dms.audit import record_event
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.mfa.service import generate_login_otp
from app.dms.modules.time_tracking.guard import SESSION_KEY, current_user_session
from app.dms.modules.time_tracking.service import end_session, start_session

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _safe_next(nxt: str) -> str | None:
    # Only local paths, to avoid open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a per-request request_id (for activity log / log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active or user.deleted_at is not None:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except SQLAlchemyError as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if (
            not user
            or not user.is_active
            or user.deleted_at is not None
            or not check_password_hash(user.password_hash, password)
        ):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                module="auth",
                description=f"Failed login for {email}",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                status="failed",
                log_name="auth",
                metadata={"email": email},
            )
            s.commit()
            flash("Invalid credentials.", "danger")
            return redirect(url_for("auth.login_get"))

        session.clear()
        session["user_id"] = user.id
        tracking_id = secrets.token_hex(16)
        session[SESSION_KEY] = tracking_id
        _login_attempts[ip].clear()
        user.last_login_at = datetime.utcnow()
        start_session(s, user, tracking_id, ip, request.user_agent.string if request.user_agent else None)
        record_event(
            s, actor=user, action="auth.login", module="auth", description=f"{user.email} logged in",
            entity_type="User", entity_id=str(user.id), log_name="auth",
        )
        target = _safe_next(nxt) or url_for("admin.index")
        if current_app.config.get("MFA_LOGIN_REQUIRED"):
            session["mfa_intended_url"] = target
            result = generate_login_otp(
                s, user, config=current_app.config, ip_address=ip,
                user_agent=request.user_agent.string if request.user_agent else None,
            )
            s.commit()
            flash(result.message, "info" if result.ok else "danger")
            return redirect(url_for("mfa.verify_get"))
        s.commit()
        return redirect(target)
    except SQLAlchemyError:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        us = current_user_session()
        if us is not None:
            end_session(s, us, reason="logout")
        record_event(
            s, actor=user, action="auth.logout", module="auth", description=f"{user.email} logged out",
            entity_type="User", entity_id=str(user.id), log_name="auth",
        )
        s.commit()
    session.clear()
    return redirect(url_for("routes.index"))
