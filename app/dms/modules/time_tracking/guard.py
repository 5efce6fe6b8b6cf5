from __future__ import annotations

from flask import flash, g, jsonify, redirect, request, session, url_for

from app.dms.db import db_session
from app.dms.modules.time_tracking.models import UserSession
from app.dms.modules.time_tracking.service import track_activity

SESSION_KEY = "tracking_session_id"

# The heartbeat polls idle state; counting it as activity would keep every open tab alive.
_SKIP_ENDPOINTS = ("static", "time_tracking.heartbeat", "routes.health", "routes.healthz")


def current_user_session() -> UserSession | None:
    user = getattr(g, "current_user", None)
    tracking_id = session.get(SESSION_KEY)
    if not user or not tracking_id:
        return None
    return (
        db_session()
        .query(UserSession)
        .filter(UserSession.session_id == tracking_id, UserSession.user_id == user.id)
        .order_by(UserSession.id.desc())
        .first()
    )


def track_request_activity():
    """before_request hook: count activity and log out sessions that sat idle too long."""
    if (request.endpoint or "") in _SKIP_ENDPOINTS or request.endpoint is None:
        return None
    us = current_user_session()
    if us is None:
        return None
    s = db_session()
    still_active = track_activity(s, us)
    s.commit()
    if still_active:
        return None

    session.clear()
    g.current_user = None
    if request.is_json:
        return jsonify({"success": False, "message": "Session expired due to inactivity."}), 401
    if us.status == "forced_logout":
        flash("Your session was ended by an administrator.", "warning")
    else:
        flash("You were logged out after a period of inactivity.", "warning")
    return redirect(url_for("auth.login_get"))
