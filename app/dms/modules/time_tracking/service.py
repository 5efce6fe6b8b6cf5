"""
User session tracking: login/logout bookkeeping, per-request activity and idle timeouts.

Idle time is measured from `last_activity_at` before the current request is counted,
so a user who comes back after `auto_logout_minutes` is logged out by that request
instead of having the session silently revived.
"""
from __future__ import annotations

import csv
import io
import logging
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.dms.audit import record_event
from app.dms.utils import BusinessRuleError, check_number, parse_date, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.dms.models import User
    from app.dms.modules.time_tracking.models import UserSession

logger = logging.getLogger(__name__)

MODULE = "time_tracking"
SESSION_STATUSES = ("active", "completed", "idle_timeout", "forced_logout")

# key -> (default, label, description, min, max)
SETTING_DEFINITIONS: dict[str, tuple[int, str, str, int, int]] = {
    "idle_warning_minutes": (15, "Idle warning", "Minutes of inactivity before the user is warned.", 1, 120),
    "auto_logout_minutes": (30, "Auto logout", "Minutes of inactivity before the session is closed.", 5, 240),
    "grace_period_minutes": (5, "Grace period", "Minutes the warning stays up before logout.", 1, 60),
}

DEFAULT_SETTINGS = {k: v[0] for k, v in SETTING_DEFINITIONS.items()}


def format_duration(minutes: float | int | None) -> str:
    """
    >>> format_duration(135)
    '2h 15m'
    """
    total = int(minutes or 0)
    return f"{total // 60}h {total % 60}m"


# ---- Settings ----

def get_settings(s: "Session") -> dict[str, int]:
    from app.dms.modules.time_tracking.models import SessionSetting

    values = dict(DEFAULT_SETTINGS)
    for row in s.query(SessionSetting).filter(SessionSetting.key.in_(list(SETTING_DEFINITIONS))).all():
        parsed = parse_int(row.value)
        if parsed is not None:
            values[row.key] = parsed
    return values


def validate_settings(payload: dict) -> list[str]:
    errors: list[str] = []
    for key, (_default, label, _desc, lo, hi) in SETTING_DEFINITIONS.items():
        check_number(errors, label, payload.get(key), minimum=lo, maximum=hi, required=True)
    if errors:
        return errors
    if parse_int(payload.get("auto_logout_minutes")) <= parse_int(payload.get("idle_warning_minutes")):
        errors.append("Auto logout must be greater than idle warning time.")
    return errors


def save_settings(s: "Session", payload: dict, user: "User") -> dict[str, int]:
    from app.dms.modules.time_tracking.models import SessionSetting

    before = get_settings(s)
    existing = {row.key: row for row in s.query(SessionSetting).all()}
    for key, (default, label, desc, _lo, _hi) in SETTING_DEFINITIONS.items():
        value = str(parse_int(payload.get(key)))
        row = existing.get(key)
        if row is None:
            s.add(SessionSetting(key=key, value=value, label=label, description=desc, type="integer", default_value=str(default)))
        else:
            row.value = value
    s.flush()
    after = get_settings(s)
    changes = {k: {"old": before[k], "new": after[k]} for k in after if before[k] != after[k]}
    record_event(
        s,
        actor=user,
        action="time_tracking.settings_updated",
        module=MODULE,
        description="Session settings updated",
        entity_type="SessionSetting",
        metadata={"changes": changes},
    )
    return after


# ---- Session lifecycle ----

def start_session(
    s: "Session",
    user: "User",
    session_id: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> "UserSession":
    from app.dms.modules.time_tracking.models import UserSession

    now = now or datetime.utcnow()
    us = UserSession(
        session_id=session_id,
        user_id=user.id,
        login_time=now,
        last_activity_at=now,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        activity_count=0,
        idle_time_minutes=0,
        status="active",
    )
    s.add(us)
    s.flush()
    return us


def end_session(
    s: "Session",
    user_session: "UserSession",
    reason: str = "logout",
    status: str = "completed",
    now: datetime | None = None,
) -> "UserSession":
    if not user_session.is_active:
        return user_session
    user_session.logout_time = now or datetime.utcnow()
    user_session.status = status
    user_session.logout_reason = reason
    return user_session


def idle_minutes(user_session: "UserSession", now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    last = user_session.last_activity_at or user_session.login_time
    return max(0, int((now - last).total_seconds() // 60))


def track_activity(s: "Session", user_session: "UserSession", now: datetime | None = None) -> bool:
    """
    Count one request against the session. Returns False (and closes the session as
    idle_timeout) when the gap since the previous request exceeds the auto-logout limit.
    """
    now = now or datetime.utcnow()
    if not user_session.is_active:
        return False
    idle = idle_minutes(user_session, now)
    limit = get_settings(s)["auto_logout_minutes"]
    if idle > limit:
        user_session.idle_time_minutes = idle
        end_session(s, user_session, reason="idle_timeout", status="idle_timeout", now=now)
        return False
    user_session.activity_count = (user_session.activity_count or 0) + 1
    user_session.last_activity_at = now
    user_session.idle_time_minutes = 0
    return True


def update_idle_times(s: "Session", now: datetime | None = None) -> int:
    from app.dms.modules.time_tracking.models import UserSession

    now = now or datetime.utcnow()
    limit = get_settings(s)["auto_logout_minutes"]
    active = s.query(UserSession).filter(UserSession.status == "active").all()
    timed_out = 0
    for us in active:
        us.idle_time_minutes = idle_minutes(us, now)
        if us.idle_time_minutes > limit:
            end_session(s, us, reason="idle_timeout", status="idle_timeout", now=now)
            timed_out += 1
    s.flush()
    logger.info("Idle times refreshed for %s active session(s), %s timed out", len(active), timed_out)
    return len(active)


def force_logout(s: "Session", user_session: "UserSession", actor: "User", now: datetime | None = None) -> "UserSession":
    if not user_session.is_active:
        raise BusinessRuleError("Session is not active.")
    end_session(s, user_session, reason="forced_logout", status="forced_logout", now=now)
    record_event(
        s,
        actor=actor,
        action="time_tracking.force_logout",
        module=MODULE,
        description=f"Forced logout of {user_session.user.email if user_session.user else user_session.user_id}",
        entity_type="UserSession",
        entity_id=str(user_session.id),
        metadata={"user_id": user_session.user_id, "session_id": user_session.session_id},
    )
    return user_session


def idle_status(s: "Session", user_session: "UserSession", now: datetime | None = None) -> dict[str, Any]:
    """Heartbeat payload: how long the user has been idle and when warnings/logout kick in."""
    settings = get_settings(s)
    idle = idle_minutes(user_session, now)
    return {
        "active": user_session.is_active,
        "idle_minutes": idle,
        "show_warning": idle >= settings["idle_warning_minutes"],
        "minutes_until_logout": max(0, settings["auto_logout_minutes"] - idle),
        **settings,
    }


# ---- Reporting ----

def _date_range(filters: dict[str, Any]) -> tuple[datetime, datetime]:
    today = date.today()
    start = parse_date(filters.get("date_from")) or (today - timedelta(days=30))
    end = parse_date(filters.get("date_to")) or today
    return datetime.combine(start, time.min), datetime.combine(end, time.max)


def sessions_query(s: "Session", filters: dict[str, Any]) -> "Query":
    """Filtered session query; raises ValueError on a malformed date."""
    from app.dms.models import Role, User
    from app.dms.modules.time_tracking.models import UserSession

    start, end = _date_range(filters)
    q = s.query(UserSession).join(User, User.id == UserSession.user_id).filter(UserSession.login_time.between(start, end))
    if filters.get("status"):
        q = q.filter(UserSession.status == filters["status"])
    if filters.get("role"):
        q = q.filter(User.roles.any(Role.key == filters["role"]))
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(or_(User.name.ilike(like), User.email.ilike(like)))
    return q


def session_stats(s: "Session", filters: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    from app.dms.modules.time_tracking.models import UserSession

    sessions = sessions_query(s, filters).all()
    ended = [us for us in sessions if us.logout_time is not None]
    avg = sum(us.duration_at(now) for us in ended) / len(ended) if ended else 0
    return {
        "total_sessions": len(sessions),
        "active_sessions": s.query(func.count(UserSession.id)).filter(UserSession.status == "active").scalar() or 0,
        "average_duration": format_duration(avg),
        "average_duration_minutes": round(avg, 1),
        "idle_timeouts": sum(1 for us in sessions if us.status == "idle_timeout"),
        "forced_logouts": sum(1 for us in sessions if us.status == "forced_logout"),
        "total_activities": sum(us.activity_count or 0 for us in sessions),
    }


SESSION_EXPORT_HEADER = [
    "User",
    "Email",
    "Login Time",
    "Logout Time",
    "Duration",
    "Activities",
    "Idle Time (min)",
    "Status",
    "Logout Reason",
    "IP Address",
]


def export_sessions_csv(sessions: list["UserSession"]) -> bytes:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(SESSION_EXPORT_HEADER)
    for us in sessions:
        w.writerow(
            [
                us.user.display_name if us.user else "",
                us.user.email if us.user else "",
                us.login_time.strftime("%Y-%m-%d %H:%M:%S"),
                us.logout_time.strftime("%Y-%m-%d %H:%M:%S") if us.logout_time else "",
                us.formatted_duration,
                us.activity_count or 0,
                us.idle_time_minutes or 0,
                us.status,
                us.logout_reason or "",
                us.ip_address or "",
            ]
        )
    return buf.getvalue().encode("utf-8")
