"""
Read-only JSON endpoints. Same session auth and permission keys as the admin pages.
"""
from __future__ import annotations

from flask import Blueprint, abort, g, jsonify, request

from app.dms.admin import calendar_events, dashboard_stats
from app.dms.db import db_session
from app.dms.modules.leads.models import Lead
from app.dms.modules.leads.service import lead_to_dict, query_leads
from app.dms.modules.pipelines.models import Pipeline
from app.dms.modules.pipelines.service import pipeline_to_dict
from app.dms.modules.vehicles.models import VehicleUnit
from app.dms.modules.vehicles.service import unit_to_dict
from app.dms.rbac import ensure_branch_access, live, require_permission, scope_to_branch
from app.dms.utils import page_arg, paginate, parse_int

bp = Blueprint("api", __name__)

MAX_PER_PAGE = 100


def _per_page(default: int = 15) -> int:
    n = parse_int(request.args.get("per_page")) or default
    return max(1, min(n, MAX_PER_PAGE))


def _page_meta(page) -> dict:
    return {"page": page.page, "per_page": page.per_page, "total": page.total, "pages": page.pages}


@bp.get("/leads")
@require_permission("leads.view")
def leads_index():
    filters = {k: (request.args.get(k) or "").strip() for k in ("q", "status", "source", "priority", "score", "suspicious")}
    page = paginate(query_leads(db_session(), g.current_user, filters), page_arg(request.args.get("page")), _per_page())
    return jsonify({"data": [lead_to_dict(lead) for lead in page.items], "meta": _page_meta(page)})


@bp.get("/leads/<int:lead_pk>")
@require_permission("leads.view")
def lead_show(lead_pk: int):
    lead = db_session().get(Lead, lead_pk)
    if not lead or lead.deleted_at:
        abort(404)
    ensure_branch_access(lead, g.current_user)
    return jsonify({"data": lead_to_dict(lead)})


@bp.get("/pipelines/<int:pipeline_pk>")
@require_permission("pipelines.view")
def pipeline_show(pipeline_pk: int):
    pipeline = db_session().get(Pipeline, pipeline_pk)
    if not pipeline or pipeline.deleted_at:
        abort(404)
    ensure_branch_access(pipeline, g.current_user)
    return jsonify({"data": pipeline_to_dict(pipeline)})


@bp.get("/vehicle-units")
@require_permission("vehicles.view")
def vehicle_units_index():
    s = db_session()
    q = scope_to_branch(live(s.query(VehicleUnit), VehicleUnit), VehicleUnit, g.current_user)
    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(VehicleUnit.status == status)
    branch_id = parse_int(request.args.get("branch_id"))
    if branch_id:
        q = q.filter(VehicleUnit.branch_id == branch_id)
    page = paginate(q.order_by(VehicleUnit.id.desc()), page_arg(request.args.get("page")), _per_page(25))
    return jsonify({"data": [unit_to_dict(u) for u in page.items], "meta": _page_meta(page)})


@bp.get("/dashboard/stats")
@require_permission("admin.view")
def dashboard_stats_json():
    return jsonify({"data": dashboard_stats(db_session(), g.current_user)})


@bp.get("/dashboard/calendar")
@require_permission("admin.view")
def dashboard_calendar_json():
    events = calendar_events(db_session(), g.current_user)
    for e in events:
        e["date"] = e["date"].isoformat()
        e["time"] = e["time"].strftime("%H:%M") if e["time"] else None
    return jsonify({"data": events})
