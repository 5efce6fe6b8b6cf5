from __future__ import annotations

import io
from datetime import datetime

from flask import Blueprint, abort, flash, g, jsonify, redirect, request, send_file, url_for

from app.dms.db import db_session
from app.dms.constants import ROLES
from app.dms.modules.time_tracking.guard import current_user_session
from app.dms.modules.time_tracking.models import UserSession
from app.dms.modules.time_tracking.service import (
    SESSION_STATUSES,
    export_sessions_csv,
    force_logout,
    get_settings,
    idle_status,
    save_settings,
    session_stats,
    sessions_query,
    update_idle_times,
    validate_settings,
)
from app.dms.rbac import is_elevated, require_permission, require_role
from app.dms.utils import BusinessRuleError, page_arg, paginate
from app.dms.views import Action, Column, FormField, choices, current_filters, render_form, render_list

bp = Blueprint("time_tracking", __name__)

FILTER_NAMES = ("q", "role", "status", "date_from", "date_to")

LIST_COLUMNS = [
    Column("User", "user.display_name"),
    Column("Email", "user.email"),
    Column("Login", "login_time"),
    Column("Logout", "logout_time"),
    Column("Duration", "formatted_duration"),
    Column("Activities", "activity_count"),
    Column("Idle", "formatted_idle_time"),
    Column("Status", "status"),
    Column("Reason", "logout_reason"),
]

SETTINGS_FIELDS = [
    FormField("idle_warning_minutes", "Idle warning (minutes)", "number", required=True, help="1 to 120"),
    FormField("auto_logout_minutes", "Auto logout (minutes)", "number", required=True, help="5 to 240; must exceed the idle warning"),
    FormField("grace_period_minutes", "Grace period (minutes)", "number", required=True, help="1 to 60"),
]


def _current_user():
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/time-tracking")
@require_permission("time_tracking.view")
def sessions_list():
    s = db_session()
    filters = current_filters(FILTER_NAMES)
    try:
        q = sessions_query(s, filters)
        stats = session_stats(s, filters)
    except ValueError:
        flash("Invalid date filter.", "danger")
        return redirect(url_for("time_tracking.sessions_list"))
    page = paginate(q.order_by(UserSession.login_time.desc()), page_arg(request.args.get("page")), 20)
    extra = []
    if is_elevated(_current_user()):
        extra = [
            Action("Settings", url_for("time_tracking.settings_get")),
            Action("Refresh idle times", url_for("time_tracking.update_idle_times_post"), "post", "warning"),
        ]
    return render_list(
        title="Time Tracking",
        page=page,
        columns=LIST_COLUMNS,
        list_endpoint="time_tracking.sessions_list",
        filters=filters,
        filter_fields=[
            FormField("q", "Search user"),
            FormField("role", "Role", "select", tuple(ROLES.items())),
            FormField("status", "Status", "select", choices(SESSION_STATUSES)),
            FormField("date_from", "From", "date"),
            FormField("date_to", "To", "date"),
        ],
        export_url=url_for("time_tracking.sessions_export", **{k: v for k, v in filters.items() if v}),
        stats=stats,
        extra_actions=extra,
        template="admin/time_tracking/list.html",
        force_logout_urls={us.id: url_for("time_tracking.force_logout_post", session_pk=us.id) for us in page.items if us.is_active},
    )


@bp.get("/time-tracking/export")
@require_permission("time_tracking.view")
def sessions_export():
    s = db_session()
    filters = current_filters(FILTER_NAMES)
    try:
        sessions = sessions_query(s, filters).order_by(UserSession.login_time.desc()).all()
    except ValueError:
        abort(400)
    return send_file(
        io.BytesIO(export_sessions_csv(sessions)),
        mimetype="text/csv",
        as_attachment=True,
        download_name=f"time_tracking_{datetime.utcnow():%Y%m%d_%H%M%S}.csv",
        max_age=0,
    )


@bp.post("/time-tracking/<int:session_pk>/force-logout")
@require_role("admin", "auditor")
def force_logout_post(session_pk: int):
    s = db_session()
    us = s.get(UserSession, session_pk)
    if not us:
        abort(404)
    try:
        force_logout(s, us, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("time_tracking.sessions_list"))
    s.commit()
    flash(f"{us.user.display_name if us.user else 'User'} was logged out.", "success")
    return redirect(url_for("time_tracking.sessions_list"))


@bp.get("/time-tracking/settings")
@require_role("admin", "auditor")
def settings_get():
    values = {k: str(v) for k, v in get_settings(db_session()).items()}
    return render_form(
        title="Session Settings",
        fields=SETTINGS_FIELDS,
        values=values,
        action_url=url_for("time_tracking.settings_post"),
        cancel_url=url_for("time_tracking.sessions_list"),
    )


@bp.post("/time-tracking/settings")
@require_role("admin", "auditor")
def settings_post():
    s = db_session()
    payload = {f.name: request.form.get(f.name) for f in SETTINGS_FIELDS}
    errors = validate_settings(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("time_tracking.settings_get"))
    save_settings(s, payload, _current_user())
    s.commit()
    flash("Session settings saved.", "success")
    return redirect(url_for("time_tracking.settings_get"))


@bp.post("/time-tracking/update-idle-times")
@require_role("admin", "auditor")
def update_idle_times_post():
    s = db_session()
    count = update_idle_times(s)
    s.commit()
    flash(f"Idle times updated for {count} active session(s).", "success")
    return redirect(url_for("time_tracking.sessions_list"))


@bp.post("/time-tracking/heartbeat")
def heartbeat():
    if not getattr(g, "current_user", None):
        return jsonify({"success": False, "message": "Authentication required."}), 401
    us = current_user_session()
    if us is None:
        return jsonify({"success": True, "tracked": False})
    return jsonify({"success": True, "tracked": True, **idle_status(db_session(), us)})
