"""
Aftersales report: PMS on-time rate for maintenance work orders due in a window, and
vehicles that came back more than once for repair or warranty work.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

DEFAULT_WINDOW_DAYS = 90
REPEAT_REPAIR_CATEGORIES = ("repair", "warranty")
_NOT_REPAIRED = ("cancelled", "draft")


def resolve_window(start: date | None, end: date | None, today: date | None = None) -> tuple[date, date]:
    today = today or date.today()
    end = end or today
    start = start or end - timedelta(days=DEFAULT_WINDOW_DAYS)
    if end < start:
        start, end = end, start
    return start, end


def _work_orders(s: "Session", branch_id: int | None, *categories: str):
    from app.dms.modules.service_catalog.models import ServiceType
    from app.dms.modules.work_orders.models import WorkOrder

    q = (
        s.query(WorkOrder)
        .join(ServiceType, WorkOrder.service_type_id == ServiceType.id)
        .filter(WorkOrder.deleted_at.is_(None), ServiceType.category.in_(categories))
    )
    if branch_id:
        q = q.filter(WorkOrder.branch_id == branch_id)
    return q


def pms_compliance(s: "Session", start: date, end: date, branch_id: int | None = None) -> dict[str, Any]:
    """Maintenance orders due between `start` and `end`; on time means completed by the end of the due day."""
    from app.dms.modules.work_orders.models import WorkOrder

    due = (
        _work_orders(s, branch_id, "maintenance")
        .filter(WorkOrder.due_date.isnot(None), WorkOrder.due_date >= start, WorkOrder.due_date <= end)
        .all()
    )
    on_time = late = 0
    for wo in due:
        if wo.status != "completed" or wo.completed_at is None:
            continue
        if wo.completed_at <= datetime.combine(wo.due_date, time.max):
            on_time += 1
        else:
            late += 1
    total = len(due)
    return {
        "total_due": total,
        "completed_on_time": on_time,
        "completed_late": late,
        "pending": total - on_time - late,
        "compliance_rate": round(on_time / total * 100, 1) if total else 0.0,
    }


def repeat_repairs(s: "Session", start: date, end: date, branch_id: int | None = None) -> list[dict[str, Any]]:
    """Vehicle units with two or more repair or warranty orders opened in the window, most visits first."""
    from app.dms.modules.branches.models import Branch
    from app.dms.modules.work_orders.models import WorkOrder

    orders = (
        _work_orders(s, branch_id, *REPEAT_REPAIR_CATEGORIES)
        .filter(
            WorkOrder.vehicle_unit_id.isnot(None),
            WorkOrder.status.notin_(_NOT_REPAIRED),
            WorkOrder.created_at >= datetime.combine(start, time.min),
            WorkOrder.created_at <= datetime.combine(end, time.max),
        )
        .order_by(WorkOrder.id)
        .all()
    )
    by_unit: dict[int, list] = defaultdict(list)
    for wo in orders:
        by_unit[wo.vehicle_unit_id].append(wo)

    branch_names = dict(s.query(Branch.id, Branch.name).all())
    rows = []
    for unit_id, group in by_unit.items():
        if len(group) < 2:
            continue
        latest = max(group, key=lambda wo: (wo.completed_at or datetime.min, wo.created_at))
        service_types: list[str] = []
        for wo in group:
            if wo.service_type and wo.service_type.name not in service_types:
                service_types.append(wo.service_type.name)
        unit = latest.vehicle_unit
        rows.append(
            {
                "vehicle_unit_id": unit_id,
                "stock_number": unit.stock_number if unit else None,
                "vin": unit.vin if unit else None,
                "branch": branch_names.get(latest.branch_id),
                "count": len(group),
                "last_service_date": latest.completed_at.date() if latest.completed_at else None,
                "last_issue": latest.diagnosis or latest.customer_concerns,
                "service_types": service_types,
            }
        )
    rows.sort(key=lambda r: (-r["count"], r["vehicle_unit_id"]))
    return rows
