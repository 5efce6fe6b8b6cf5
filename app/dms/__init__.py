import os
from datetime import timedelta

from flask import Flask, g, render_template, request, session
from dotenv import load_dotenv

from app.dms.config import load_config
from app.dms.db import init_db, teardown_db_session
from app.dms.routes import bp as routes_bp
from app.dms.auth import bp as auth_bp, load_current_user
from app.dms.admin import bp as admin_bp
from app.dms.api import bp as api_bp
from app.dms.modules.branches.admin import bp as branches_bp
from app.dms.modules.users.admin import bp as users_bp
from app.dms.modules.customers.admin import bp as customers_bp
from app.dms.modules.customers.public import bp as public_bp
from app.dms.modules.leads.admin import bp as leads_bp
from app.dms.modules.pipelines.admin import bp as pipelines_bp
from app.dms.modules.test_drives.admin import bp as test_drives_bp
from app.dms.modules.vehicles.admin import bp as vehicles_bp
from app.dms.modules.parts.admin import bp as parts_bp
from app.dms.modules.service_catalog.admin import bp as service_catalog_bp
from app.dms.modules.work_orders.admin import bp as work_orders_bp
from app.dms.modules.warranty.admin import bp as warranty_bp
from app.dms.modules.compliance.admin import bp as compliance_bp
from app.dms.modules.time_tracking.admin import bp as time_tracking_bp
from app.dms.modules.time_tracking.guard import track_request_activity
from app.dms.modules.mfa.admin import bp as mfa_bp
from app.dms.modules.mfa.guard import enforce_login_mfa

_UNTRACKED_PREFIXES = ("/static/", "/health", "/healthz")
# Token-authenticated or pre-login endpoints; everything else needs the session CSRF token.
_CSRF_EXEMPT = ("auth.", "public.", "mfa.")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.dms.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.dms.rbac import user_has_permission
        from flask import g as _g

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(_g, "current_user", None), key)

        return {"has_perm": has_perm}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "—"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if (request.endpoint or "").startswith(_CSRF_EXEMPT):
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            from botocore.exceptions import BotoCoreError, ClientError

            from app.dms.storage import S3Storage, storage_from_config

            try:
                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except (BotoCoreError, ClientError) as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(public_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(mfa_bp, url_prefix="/mfa")
    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    for module_bp in (
        branches_bp,
        users_bp,
        customers_bp,
        leads_bp,
        pipelines_bp,
        test_drives_bp,
        vehicles_bp,
        parts_bp,
        service_catalog_bp,
        work_orders_bp,
        warranty_bp,
        compliance_bp,
        time_tracking_bp,
    ):
        app.register_blueprint(module_bp, url_prefix="/admin")

    def _load_user_wrapper():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    # Order matters: user first, then idle/forced logout, then the login OTP gate.
    app.before_request(_load_user_wrapper)
    app.before_request(track_request_activity)
    app.before_request(enforce_login_mfa)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        if request.path.startswith("/api/"):
            return {"error": "Forbidden", "missing_permission": missing}, 403
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        if request.path.startswith("/api/"):
            return {"error": "Not found"}, 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        from flask import flash, redirect, url_for

        flash("File too large. Maximum size is 25MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("admin.index")), 302

    import logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
