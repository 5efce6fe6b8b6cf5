from __future__ import annotations

from flask import Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, session, url_for

from app.dms.db import db_session
from app.dms.modules.mfa.service import (
    SENSITIVE_ACTIONS,
    action_label,
    generate_otp,
    is_verified,
    mark_verified,
    otp_stats,
    revoke,
    verify_otp,
)

bp = Blueprint("mfa", __name__)


def _wants_json() -> bool:
    return request.is_json or request.accept_mimetypes.best == "application/json"


def _request_data() -> dict:
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def _anonymous_response():
    if _wants_json() or request.method != "GET":
        return jsonify({"success": False, "message": "Authentication required."}), 401
    return redirect(url_for("auth.login_get", next=request.path))


@bp.get("/verify")
def verify_get():
    user = getattr(g, "current_user", None)
    if not user:
        return _anonymous_response()
    action = (request.args.get("action") or session.get("mfa_action") or "").strip() or None
    return render_template(
        "mfa/verify.html",
        action=action,
        action_label=action_label(action),
        email=user.email,
    )


@bp.post("/send-code")
def send_code():
    user = getattr(g, "current_user", None)
    if not user:
        return _anonymous_response()
    data = _request_data()
    action = (data.get("action") or "").strip() or None
    purpose = "sensitive_action" if action else "login"
    s = db_session()
    result = generate_otp(
        s,
        user,
        purpose,
        action,
        config=current_app.config,
        ip_address=request.remote_addr,
        user_agent=request.user_agent.string if request.user_agent else None,
    )
    s.commit()
    body = {
        "success": result.ok,
        "status": result.status,
        "message": result.message,
        "expires_at": result.expires_at.isoformat() if result.expires_at else None,
    }
    if result.status == "rate_limited":
        body["retry_after"] = result.retry_after.isoformat() if result.retry_after else None
        return jsonify(body), 429
    if result.status == "failed":
        return jsonify(body), 500
    return jsonify(body), 200


@bp.post("/verify")
def verify_post():
    user = getattr(g, "current_user", None)
    if not user:
        return _anonymous_response()
    data = _request_data()
    action = (data.get("action") or "").strip() or None
    purpose = "sensitive_action" if action else "login"
    s = db_session()
    ok = verify_otp(s, user, data.get("code"), purpose, action)
    s.commit()
    if not ok:
        if request.is_json:
            return jsonify({"success": False, "message": "Invalid or expired verification code."}), 422
        flash("Invalid or expired verification code.", "danger")
        return redirect(url_for("mfa.verify_get", action=action) if action else url_for("mfa.verify_get"))

    mark_verified(session, purpose, action)
    redirect_url = session.pop("mfa_intended_url", None) or url_for("admin.index")
    session.pop("mfa_action", None)
    if request.is_json:
        return jsonify({"success": True, "message": "Verified.", "redirect_url": redirect_url}), 200
    flash("Verification successful.", "success")
    return redirect(redirect_url)


@bp.get("/status")
def status():
    user = getattr(g, "current_user", None)
    if not user:
        return _anonymous_response()
    return jsonify(
        {
            "mfa_login_required": bool(current_app.config.get("MFA_LOGIN_REQUIRED")),
            "login_verified": is_verified(session),
            "actions": {a: is_verified(session, a) for a in SENSITIVE_ACTIONS},
        }
    )


@bp.post("/revoke")
def revoke_post():
    user = getattr(g, "current_user", None)
    if not user:
        return _anonymous_response()
    revoke(session)
    if request.is_json:
        return jsonify({"success": True, "message": "Verification revoked."})
    flash("Verification revoked.", "success")
    return redirect(url_for("mfa.settings"))


@bp.get("/settings")
def settings():
    user = getattr(g, "current_user", None)
    if not user:
        return _anonymous_response()
    return render_template(
        "mfa/settings.html",
        stats=otp_stats(db_session(), user),
        login_verified=is_verified(session),
        mfa_login_required=bool(current_app.config.get("MFA_LOGIN_REQUIRED")),
        actions=[(a, label, is_verified(session, a)) for a, label in SENSITIVE_ACTIONS.items()],
    )
