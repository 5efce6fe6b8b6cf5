"""
One-time passcodes for login and sensitive-action verification.

Codes are emailed; a verified marker (timestamp) is then kept in the Flask session,
keyed `mfa_verified_login` or `mfa_verified_<action>`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, MutableMapping

from sqlalchemy import update

from app.dms.audit import record_event
from app.dms.mailer import send_email
from app.dms.security import OTP_LENGTH, generate_otp_code

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.mfa.models import UserOtpCode

logger = logging.getLogger(__name__)

OTP_EXPIRY_MINUTES = 10
OTP_RATE_LIMIT = 5
OTP_RATE_WINDOW = timedelta(hours=1)
LOGIN_VERIFIED_MINUTES = 1440
ACTION_VERIFIED_MINUTES = 30

PURPOSES = ("login", "sensitive_action", "password_reset")
OTP_TYPES = ("email", "sms", "totp")

SENSITIVE_ACTIONS = {
    "delete_role": "Delete a role",
    "delete_permission": "Delete a permission",
    "delete_user": "Delete a user",
    "edit_admin_user": "Edit an administrator account",
    "change_user_role": "Change a user's roles",
    "export_sensitive_data": "Export sensitive data",
    "system_settings": "Change system settings",
    "backup_database": "Back up the database",
    "financial_transactions": "Record a financial transaction",
}

_MARKER_PREFIX = "mfa_verified_"


@dataclass
class OtpResult:
    status: str  # sent, existing, rate_limited, failed
    message: str
    code: "UserOtpCode | None" = None
    expires_at: datetime | None = None
    retry_after: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status in ("sent", "existing")


def requires_mfa_for_action(action: str | None) -> bool:
    return bool(action) and action in SENSITIVE_ACTIONS


def action_label(action: str | None) -> str:
    if not action:
        return "Sign in"
    return SENSITIVE_ACTIONS.get(action, action.replace("_", " ").capitalize())


def _codes_for(s: "Session", user: "User", purpose: str, action: str | None):
    from app.dms.modules.mfa.models import UserOtpCode

    q = s.query(UserOtpCode).filter(UserOtpCode.user_id == user.id, UserOtpCode.purpose == purpose)
    if action:
        q = q.filter(UserOtpCode.action == action)
    else:
        q = q.filter(UserOtpCode.action.is_(None))
    return q


def _email_body(user: "User", code: str, purpose: str, action: str | None) -> tuple[str, str]:
    label = action_label(action) if purpose == "sensitive_action" else "sign in"
    subject = f"Your verification code: {code}"
    body = (
        f"Hello {user.display_name},\n\n"
        f"Use this code to {label.lower()}: {code}\n\n"
        f"It expires in {OTP_EXPIRY_MINUTES} minutes. If you did not request it, ignore this email.\n"
    )
    return subject, body


def generate_otp(
    s: "Session",
    user: "User",
    purpose: str,
    action: str | None = None,
    metadata: dict[str, Any] | None = None,
    *,
    config: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> OtpResult:
    from app.dms.modules.mfa.models import UserOtpCode

    if purpose not in PURPOSES:
        raise ValueError(f"Unknown OTP purpose: {purpose}")
    now = now or datetime.utcnow()

    existing = (
        _codes_for(s, user, purpose, action)
        .filter(UserOtpCode.is_used.is_(False), UserOtpCode.expires_at > now)
        .order_by(UserOtpCode.created_at.desc())
        .first()
    )
    if existing:
        return OtpResult("existing", "A verification code was already sent. Check your email.", existing, existing.expires_at)

    # Rate limit counts every code for this user+purpose, whatever the action.
    recent = (
        s.query(UserOtpCode)
        .filter(
            UserOtpCode.user_id == user.id,
            UserOtpCode.purpose == purpose,
            UserOtpCode.created_at > now - OTP_RATE_WINDOW,
        )
        .order_by(UserOtpCode.created_at.asc())
        .all()
    )
    if len(recent) >= OTP_RATE_LIMIT:
        retry_after = recent[0].created_at + OTP_RATE_WINDOW
        logger.warning("OTP rate limit hit user_id=%s purpose=%s", user.id, purpose)
        return OtpResult("rate_limited", "Too many verification codes requested. Try again later.", retry_after=retry_after)

    # Superseded codes are burnt without a used_at stamp, so only real verifications carry one.
    for old in _codes_for(s, user, purpose, action).filter(UserOtpCode.is_used.is_(False)).all():
        old.is_used = True

    otp = UserOtpCode(
        user_id=user.id,
        code=generate_otp_code(OTP_LENGTH),
        type="email",
        purpose=purpose,
        action=action,
        expires_at=now + timedelta(minutes=OTP_EXPIRY_MINUTES),
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        meta=metadata,
        created_at=now,
    )
    s.add(otp)
    s.flush()

    if config is None:
        from flask import current_app

        config = current_app.config
    subject, body = _email_body(user, otp.code, purpose, action)
    try:
        send_email(config, to=user.email, subject=subject, body=body)
    except Exception:
        logger.exception("OTP email failed user_id=%s purpose=%s", user.id, purpose)
        s.delete(otp)
        s.flush()
        return OtpResult("failed", "Could not send the verification code. Try again later.")

    record_event(
        s,
        actor=user,
        action="mfa.code_sent",
        description=f"Verification code sent for {purpose}",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"purpose": purpose, "action": action},
    )
    return OtpResult("sent", "Verification code sent to your email.", otp, otp.expires_at)


def generate_login_otp(s: "Session", user: "User", **kwargs: Any) -> OtpResult:
    return generate_otp(s, user, "login", **kwargs)


def generate_sensitive_action_otp(
    s: "Session", user: "User", action: str, metadata: dict[str, Any] | None = None, **kwargs: Any
) -> OtpResult:
    return generate_otp(s, user, "sensitive_action", action, metadata, **kwargs)


def verify_otp(
    s: "Session",
    user: "User",
    code: str | None,
    purpose: str,
    action: str | None = None,
    now: datetime | None = None,
) -> bool:
    from app.dms.modules.mfa.models import UserOtpCode

    code = (code or "").strip()
    if not code:
        return False
    now = now or datetime.utcnow()
    q = s.query(UserOtpCode).filter(
        UserOtpCode.user_id == user.id,
        UserOtpCode.code == code,
        UserOtpCode.purpose == purpose,
        UserOtpCode.is_used.is_(False),
        UserOtpCode.expires_at > now,
    )
    if action:
        q = q.filter(UserOtpCode.action == action)
    otp = q.order_by(UserOtpCode.created_at.desc()).first()

    # Claim in one statement so a concurrent request cannot spend the same code.
    claimed = 0
    if otp:
        claimed = s.execute(
            update(UserOtpCode)
            .where(UserOtpCode.id == otp.id, UserOtpCode.is_used.is_(False))
            .values(is_used=True, used_at=now)
            .execution_options(synchronize_session="fetch")
        ).rowcount
    if not claimed:
        record_event(
            s,
            actor=user,
            action="mfa.verify_failed",
            entity_type="User",
            entity_id=str(user.id),
            status="failed",
            metadata={"purpose": purpose, "action": action},
        )
        s.flush()
        return False
    record_event(
        s,
        actor=user,
        action="mfa.verified",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"purpose": purpose, "action": action},
    )
    s.flush()
    return True


# ---- Session markers ----

def _marker_key(action: str | None) -> str:
    return f"{_MARKER_PREFIX}{action or 'login'}"


def mark_verified(session: MutableMapping[str, Any], purpose: str, action: str | None = None, now: datetime | None = None) -> None:
    key = _marker_key(action if purpose == "sensitive_action" else None)
    session[key] = (now or datetime.utcnow()).isoformat()


def is_verified(session: MutableMapping[str, Any], action: str | None = None, now: datetime | None = None) -> bool:
    key = _marker_key(action)
    raw = session.get(key)
    if not raw:
        return False
    try:
        verified_at = datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        session.pop(key, None)
        return False
    ttl = ACTION_VERIFIED_MINUTES if action else LOGIN_VERIFIED_MINUTES
    if (now or datetime.utcnow()) - verified_at > timedelta(minutes=ttl):
        session.pop(key, None)
        return False
    return True


def revoke(session: MutableMapping[str, Any]) -> None:
    for key in [k for k in session.keys() if k.startswith(_MARKER_PREFIX)]:
        session.pop(key, None)


def cleanup_expired_codes(s: "Session", older_than_hours: int = 24, now: datetime | None = None) -> int:
    from app.dms.modules.mfa.models import UserOtpCode

    cutoff = (now or datetime.utcnow()) - timedelta(hours=older_than_hours)
    deleted = s.query(UserOtpCode).filter(UserOtpCode.expires_at < cutoff).delete(synchronize_session=False)
    logger.info("Deleted %s expired OTP codes (cutoff=%s)", deleted, cutoff.isoformat())
    return deleted


def otp_stats(s: "Session", user: "User", now: datetime | None = None) -> dict[str, int]:
    from app.dms.modules.mfa.models import UserOtpCode

    now = now or datetime.utcnow()
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    base = s.query(UserOtpCode).filter(UserOtpCode.user_id == user.id)
    return {
        "sent_today": base.filter(UserOtpCode.created_at >= start).count(),
        "verified_today": base.filter(UserOtpCode.used_at >= start).count(),
        "active_codes": base.filter(UserOtpCode.is_used.is_(False), UserOtpCode.expires_at > now).count(),
    }
