from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

from app.dms.audit import log_created, log_updated, restore, soft_delete
from app.dms.constants import COMMON_SERVICE_CATEGORIES, INTERVAL_TYPES, SERVICE_TYPE_CATEGORIES, SERVICE_TYPE_STATUSES
from app.dms.utils import BusinessRuleError, apply_changes, check_enum, check_number, clean, parse_bool, parse_decimal, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.service_catalog.models import CommonService, ServiceType

MODULE = "service_types"


def generate_code(name: str, existing: Iterable[str]) -> str:
    """
    First letter of each word, uppercased; "2", "3", ... is appended until the code is unused.

    >>> generate_code("Oil Change Service", ["OCS"])
    'OCS2'
    """
    base = "".join(word[0] for word in name.split() if word).upper() or "SVC"
    taken = set(existing)
    code = base
    counter = 2
    while code in taken:
        code = f"{base}{counter}"
        counter += 1
    return code


def _existing_codes(s: "Session", model) -> list[str]:
    return [c for (c,) in s.query(model.code).all()]


# ---- Common services ----

def validate_common_service_payload(s: "Session", payload: dict, common_service_id: int | None = None) -> list[str]:
    from app.dms.modules.service_catalog.models import CommonService

    errors: list[str] = []
    if not clean(payload.get("name")):
        errors.append("Name is required.")
    check_enum(errors, "Category", payload.get("category"), COMMON_SERVICE_CATEGORIES, required=True)
    check_number(errors, "Estimated duration", payload.get("estimated_duration"), minimum=0)
    check_number(errors, "Standard price", payload.get("standard_price"), minimum=0)
    code = clean(payload.get("code"))
    if code:
        q = s.query(CommonService).filter(CommonService.code == code.upper())
        if common_service_id:
            q = q.filter(CommonService.id != common_service_id)
        if q.first():
            errors.append("Code already exists.")
    return errors


def _common_values(payload: dict) -> dict[str, Any]:
    return {
        "name": clean(payload.get("name")),
        "description": clean(payload.get("description")),
        "category": clean(payload.get("category")) or "maintenance",
        "estimated_duration": parse_decimal(payload.get("estimated_duration")),
        "standard_price": parse_decimal(payload.get("standard_price")) or 0,
        "currency": (clean(payload.get("currency")) or "PHP").upper(),
        "is_active": parse_bool(payload.get("is_active")),
    }


def create_common_service(s: "Session", payload: dict, user: "User") -> "CommonService":
    from app.dms.modules.service_catalog.models import CommonService

    values = _common_values(payload)
    code = (clean(payload.get("code")) or "").upper() or generate_code(values["name"], _existing_codes(s, CommonService))
    cs = CommonService(code=code, created_by_user_id=user.id, updated_by_user_id=user.id, **values)
    s.add(cs)
    s.flush()
    log_created(s, MODULE, cs, user, f"Common service {cs.name} created", {"code": cs.code})
    return cs


def update_common_service(s: "Session", cs: "CommonService", payload: dict, user: "User") -> "CommonService":
    values = _common_values(payload)
    code = clean(payload.get("code"))
    if code:
        values["code"] = code.upper()
    changes = apply_changes(cs, values)
    cs.updated_by_user_id = user.id
    log_updated(s, MODULE, cs, user, f"Common service {cs.name} updated", {"changes": changes})
    return cs


def delete_common_service(s: "Session", cs: "CommonService", user: "User") -> None:
    soft_delete(s, cs, user, MODULE, f"Common service {cs.name}")


def restore_common_service(s: "Session", cs: "CommonService", user: "User") -> None:
    restore(s, cs, user, MODULE, f"Common service {cs.name}", "Common service")


# ---- Service types ----

def parse_common_service_ids(raw: Any) -> list[int]:
    """Comma separated ids; the order given becomes the link sequence."""
    ids: list[int] = []
    for token in str(raw or "").split(","):
        value = parse_int(token.strip())
        if value and value not in ids:
            ids.append(value)
    return ids


def validate_service_type_payload(s: "Session", payload: dict, service_type_id: int | None = None) -> list[str]:
    from app.dms.modules.service_catalog.models import CommonService, ServiceType

    errors: list[str] = []
    if not clean(payload.get("name")):
        errors.append("Name is required.")
    check_enum(errors, "Category", payload.get("category"), SERVICE_TYPE_CATEGORIES, required=True)
    check_enum(errors, "Interval type", payload.get("interval_type"), INTERVAL_TYPES, required=True)
    check_enum(errors, "Status", payload.get("status"), SERVICE_TYPE_STATUSES)
    check_number(errors, "Interval value", payload.get("interval_value"), minimum=1)
    check_number(errors, "Estimated duration", payload.get("estimated_duration"), minimum=0)
    check_number(errors, "Base price", payload.get("base_price"), minimum=0)
    if clean(payload.get("interval_type")) in ("mileage", "time") and not parse_int(payload.get("interval_value")):
        errors.append("Interval value is required for mileage and time based services.")
    code = clean(payload.get("code"))
    if code:
        q = s.query(ServiceType).filter(ServiceType.code == code.upper())
        if service_type_id:
            q = q.filter(ServiceType.id != service_type_id)
        if q.first():
            errors.append("Code already exists.")
    ids = parse_common_service_ids(payload.get("common_service_ids"))
    if ids:
        found = {cid for (cid,) in s.query(CommonService.id).filter(CommonService.id.in_(ids), CommonService.deleted_at.is_(None))}
        missing = [str(i) for i in ids if i not in found]
        if missing:
            errors.append(f"Unknown common service id(s): {', '.join(missing)}")
    return errors


def _service_type_values(payload: dict) -> dict[str, Any]:
    interval_type = clean(payload.get("interval_type")) or "on_demand"
    return {
        "name": clean(payload.get("name")),
        "description": clean(payload.get("description")),
        "category": clean(payload.get("category")) or "maintenance",
        "interval_type": interval_type,
        "interval_value": None if interval_type == "on_demand" else parse_int(payload.get("interval_value")),
        "estimated_duration": parse_decimal(payload.get("estimated_duration")),
        "base_price": parse_decimal(payload.get("base_price")) or 0,
        "currency": (clean(payload.get("currency")) or "PHP").upper(),
        "status": clean(payload.get("status")) or "active",
        "is_available": parse_bool(payload.get("is_available")),
    }


def _sync_links(st: "ServiceType", ids: list[int]) -> None:
    from app.dms.modules.service_catalog.models import ServiceTypeCommonService

    st.links = [ServiceTypeCommonService(common_service_id=cid, sequence=i) for i, cid in enumerate(ids, start=1)]


def create_service_type(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "ServiceType":
    from app.dms.modules.service_catalog.models import ServiceType

    values = _service_type_values(payload)
    code = (clean(payload.get("code")) or "").upper() or generate_code(values["name"], _existing_codes(s, ServiceType))
    st = ServiceType(code=code, branch_id=branch_id, created_by_user_id=user.id, updated_by_user_id=user.id, **values)
    _sync_links(st, parse_common_service_ids(payload.get("common_service_ids")))
    s.add(st)
    s.flush()
    s.refresh(st)
    log_created(s, MODULE, st, user, f"Service type {st.name} created", {"code": st.code, "common_services": len(st.links)})
    return st


def update_service_type(s: "Session", st: "ServiceType", payload: dict, user: "User") -> "ServiceType":
    values = _service_type_values(payload)
    code = clean(payload.get("code"))
    if code:
        values["code"] = code.upper()
    changes = apply_changes(st, values)
    ids = parse_common_service_ids(payload.get("common_service_ids"))
    old_ids = [link.common_service_id for link in st.links]
    if ids != old_ids:
        st.links.clear()
        s.flush()
        _sync_links(st, ids)
        changes["common_services"] = {"old": ",".join(map(str, old_ids)) or None, "new": ",".join(map(str, ids)) or None}
    st.updated_by_user_id = user.id
    s.flush()
    s.refresh(st)
    log_updated(s, MODULE, st, user, f"Service type {st.name} updated", {"changes": changes})
    return st


def delete_service_type(s: "Session", st: "ServiceType", user: "User") -> None:
    from app.dms.modules.work_orders.models import WorkOrder

    open_orders = (
        s.query(WorkOrder)
        .filter(
            WorkOrder.service_type_id == st.id,
            WorkOrder.deleted_at.is_(None),
            WorkOrder.status.notin_(("completed", "cancelled")),
        )
        .count()
    )
    if open_orders:
        raise BusinessRuleError("Cannot delete a service type used by open work orders.")
    soft_delete(s, st, user, MODULE, f"Service type {st.name}")


def restore_service_type(s: "Session", st: "ServiceType", user: "User") -> None:
    restore(s, st, user, MODULE, f"Service type {st.name}", "Service type")
