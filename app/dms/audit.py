import json
from datetime import datetime
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.dms.models import ActivityLog, User
from app.dms.utils import BusinessRuleError


def _json_default(value: Any) -> str:
    # dates, Decimals
    return str(value)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    module: str | None = None,
    description: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    event: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    status: str = "success",
    log_name: str = "default",
    request_id: str | None = None,
) -> ActivityLog:
    """
    Append-only activity log helper.
    """
    ip = None
    agent = None
    rid = request_id
    if has_request_context():
        ip = request.remote_addr
        agent = (request.user_agent.string or None) if request.user_agent else None
        rid = rid or getattr(g, "request_id", None)
    if module is None and "." in action:
        module = action.split(".", 1)[0]
    if event is None and "." in action:
        event = action.rsplit(".", 1)[1]
    ev = ActivityLog(
        request_id=rid,
        log_name=log_name,
        description=description,
        subject_type=entity_type,
        subject_id=str(entity_id) if entity_id is not None else None,
        event=event,
        causer_id=actor.id if actor else None,
        causer_email=actor.email if actor else None,
        action=action,
        module=module,
        status=status,
        reason=reason,
        properties_json=json.dumps(metadata, sort_keys=True, default=_json_default) if metadata else None,
        ip_address=ip,
        user_agent=(agent or "")[:512] or None,
    )
    s.add(ev)
    return ev


def _subject(obj: Any) -> tuple[str, str]:
    return type(obj).__name__, str(getattr(obj, "id", ""))


def log_created(s: Session, module: str, obj: Any, actor: User | None, description: str, metadata: dict | None = None) -> ActivityLog:
    entity_type, entity_id = _subject(obj)
    return record_event(
        s, actor=actor, action=f"{module}.create", module=module, description=description,
        entity_type=entity_type, entity_id=entity_id, event="created", metadata=metadata,
    )


def log_updated(
    s: Session, module: str, obj: Any, actor: User | None, description: str, metadata: dict | None = None, reason: str | None = None
) -> ActivityLog:
    entity_type, entity_id = _subject(obj)
    return record_event(
        s, actor=actor, action=f"{module}.update", module=module, description=description,
        entity_type=entity_type, entity_id=entity_id, event="updated", metadata=metadata, reason=reason,
    )


def log_deleted(s: Session, module: str, obj: Any, actor: User | None, description: str, metadata: dict | None = None) -> ActivityLog:
    entity_type, entity_id = _subject(obj)
    return record_event(
        s, actor=actor, action=f"{module}.delete", module=module, description=description,
        entity_type=entity_type, entity_id=entity_id, event="deleted", metadata=metadata,
    )


def log_restored(s: Session, module: str, obj: Any, actor: User | None, description: str, metadata: dict | None = None) -> ActivityLog:
    entity_type, entity_id = _subject(obj)
    return record_event(
        s, actor=actor, action=f"{module}.restore", module=module, description=description,
        entity_type=entity_type, entity_id=entity_id, event="restored", metadata=metadata,
    )


def soft_delete(s: Session, obj: Any, actor: User | None, module: str, label: str) -> None:
    """Stamp deleted_at and log; the row stays restorable."""
    obj.deleted_at = datetime.utcnow()
    if hasattr(obj, "updated_by_user_id") and actor is not None:
        obj.updated_by_user_id = actor.id
    log_deleted(s, module, obj, actor, f"{label} deleted")


def restore(s: Session, obj: Any, actor: User | None, module: str, label: str, entity_name: str) -> None:
    if obj.deleted_at is None:
        raise BusinessRuleError(f"{entity_name} is not deleted.")
    obj.deleted_at = None
    if hasattr(obj, "updated_by_user_id") and actor is not None:
        obj.updated_by_user_id = actor.id
    log_restored(s, module, obj, actor, f"{label} restored")
