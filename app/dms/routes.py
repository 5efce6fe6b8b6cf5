from flask import Blueprint, g, redirect, render_template, url_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    if getattr(g, "current_user", None):
        return redirect(url_for("admin.index"))
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancers. No DB access, minimal overhead.
    """
    return "ok", 200
