"""
Compliance checklists and their reminder schedule.

A checklist recurs from `start_date + due_time`; each active trigger turns the next due
date into one ComplianceReminder (advance = due - offset, due = due, escalation = due + offset).
`process_due_reminders` is run by scripts/process_compliance_reminders.py and the admin
"process now" button.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, or_

from app.dms.audit import log_created, log_updated, record_event, restore, soft_delete
from app.dms.constants import (
    CHECKLIST_STATUSES,
    CUSTOM_FREQUENCY_UNITS,
    FREQUENCY_TYPES,
    PRIORITIES,
    REMINDER_STATUSES,
    REMINDER_TYPES,
    TRIGGER_TYPES,
)
from app.dms.utils import (
    BusinessRuleError,
    apply_changes,
    check_enum,
    check_number,
    clean,
    parse_bool,
    parse_date,
    parse_datetime,
    parse_int,
    parse_tags,
    parse_time,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.compliance.models import (
        ComplianceChecklist,
        ComplianceChecklistAssignment,
        ComplianceChecklistAssignmentItem,
        ComplianceReminder,
    )

logger = logging.getLogger(__name__)

MODULE = "compliance"
DUE_STATUSES = ("scheduled", "pending")
DELIVERY_CHANNELS = ("email", "sms", "in_app")
_INACTIVE_CHECKLIST = ("inactive", "archived")


# ---- Calendar arithmetic ----

def add_months(value: datetime, months: int) -> datetime:
    """Calendar month step; the day is clamped to the end of the target month.

    >>> add_months(datetime(2024, 1, 31, 9, 0), 1)
    datetime.datetime(2024, 2, 29, 9, 0)
    """
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _period(checklist: "ComplianceChecklist") -> tuple[str, int]:
    """(unit, size) for one recurrence step."""
    interval = max(1, checklist.frequency_interval or 1)
    kind = checklist.frequency_type
    if kind == "daily":
        return "days", interval
    if kind == "weekly":
        return "weeks", interval
    if kind == "monthly":
        return "months", interval
    if kind == "quarterly":
        return "months", interval * 3
    if kind == "yearly":
        return "months", interval * 12
    if kind == "custom":
        unit = checklist.custom_frequency_unit or "days"
        value = max(1, checklist.custom_frequency_value or interval)
        if unit == "years":
            return "months", value * 12
        return unit, value
    raise ValueError(f"Unknown frequency: {kind}")


def _occurrence(start: datetime, unit: str, size: int, n: int) -> datetime:
    # Each occurrence is measured from the start so clamped month ends do not drift.
    if unit == "months":
        return add_months(start, size * n)
    return start + timedelta(**{unit: size * n})


def calculate_next_due_at(checklist: "ComplianceChecklist", reference: datetime | None = None) -> datetime | None:
    if not checklist.start_date:
        return None
    reference = reference or datetime.utcnow()
    start = datetime.combine(checklist.start_date, checklist.due_time or time.min)
    if start > reference or not checklist.is_recurring:
        return start
    try:
        unit, size = _period(checklist)
    except ValueError:
        return None

    if unit == "months":
        elapsed = (reference.year - start.year) * 12 + (reference.month - start.month)
        n = max(1, elapsed // size)
    else:
        step = timedelta(**{unit: size})
        n = max(1, int((reference - start) / step))
    while _occurrence(start, unit, size, n) <= reference:
        n += 1
    # Back off in case the jump overshot by a step (month clamping).
    while n > 1 and _occurrence(start, unit, size, n - 1) > reference:
        n -= 1
    return _occurrence(start, unit, size, n)


# ---- Checklist input ----

def parse_items_text(raw: str | None) -> list[dict[str, Any]]:
    """One item per line; a leading '?' marks the item optional."""
    items: list[dict[str, Any]] = []
    for line in (raw or "").splitlines():
        title = line.strip()
        if not title:
            continue
        required = not title.startswith("?")
        items.append({"title": title.lstrip("?").strip(), "is_required": required, "sort_order": len(items)})
    return items


def parse_triggers_text(raw: str | None) -> list[dict[str, Any]]:
    """One trigger per line: `type:offset_hours[:channel,channel]`, e.g. `advance:24:email,sms`."""
    triggers: list[dict[str, Any]] = []
    for line in (raw or "").splitlines():
        line = line.strip()
        if not line:
            continue
        parts = [p.strip() for p in line.split(":")]
        triggers.append(
            {
                "trigger_type": parts[0],
                "offset_hours": parts[1] if len(parts) > 1 else "0",
                "channels": parse_tags(parts[2]) if len(parts) > 2 else ["email"],
            }
        )
    return triggers


def items_text(checklist: "ComplianceChecklist") -> str:
    return "\n".join(("" if i.is_required else "?") + i.title for i in checklist.items)


def triggers_text(checklist: "ComplianceChecklist") -> str:
    return "\n".join(
        f"{t.trigger_type}:{t.offset_hours}:{','.join(t.channels or [])}" for t in checklist.triggers
    )


def validate_checklist_payload(
    s: "Session",
    payload: dict,
    items: list[dict[str, Any]],
    triggers: list[dict[str, Any]],
    checklist_id: int | None = None,
) -> list[str]:
    from app.dms.modules.compliance.models import ComplianceChecklist

    errors: list[str] = []
    if not clean(payload.get("title")):
        errors.append("Title is required.")
    code = clean(payload.get("code"))
    if not code:
        errors.append("Code is required.")
    else:
        q = s.query(ComplianceChecklist).filter(ComplianceChecklist.code == code.upper())
        if checklist_id:
            q = q.filter(ComplianceChecklist.id != checklist_id)
        if q.first():
            errors.append("Code is already used by another checklist.")
    check_enum(errors, "Status", payload.get("status"), CHECKLIST_STATUSES)
    check_enum(errors, "Frequency", payload.get("frequency_type"), FREQUENCY_TYPES, required=True)
    check_number(errors, "Frequency interval", payload.get("frequency_interval"), minimum=1)
    if clean(payload.get("frequency_type")) == "custom":
        check_enum(errors, "Custom frequency unit", payload.get("custom_frequency_unit"), CUSTOM_FREQUENCY_UNITS, required=True)
        check_number(errors, "Custom frequency value", payload.get("custom_frequency_value"), minimum=1, required=True)
    check_number(errors, "Escalation offset", payload.get("escalation_offset_hours"), minimum=0)
    try:
        parse_date(payload.get("start_date"))
        parse_time(payload.get("due_time"))
    except ValueError:
        errors.append("Start date and due time must be valid.")
    for raw in parse_tags(payload.get("advance_reminder_offsets")):
        if parse_int(raw) is None or parse_int(raw) < 0:
            errors.append("Advance reminder offsets must be whole hours.")
            break
    for item in items:
        if not clean(item.get("title")):
            errors.append("Checklist items need a title.")
            break
    for trig in triggers:
        check_enum(errors, "Trigger type", trig.get("trigger_type"), TRIGGER_TYPES, required=True)
        check_number(errors, "Trigger offset", trig.get("offset_hours"), minimum=0)
    return errors


def _values(payload: dict) -> dict[str, Any]:
    frequency = clean(payload.get("frequency_type")) or "monthly"
    return {
        "title": clean(payload.get("title")),
        "code": (clean(payload.get("code")) or "").upper(),
        "description": clean(payload.get("description")),
        "category": clean(payload.get("category")),
        "status": clean(payload.get("status")) or "draft",
        "frequency_type": frequency,
        "frequency_interval": parse_int(payload.get("frequency_interval")) or 1,
        "custom_frequency_unit": clean(payload.get("custom_frequency_unit")) if frequency == "custom" else None,
        "custom_frequency_value": parse_int(payload.get("custom_frequency_value")) if frequency == "custom" else None,
        "start_date": parse_date(payload.get("start_date")),
        "due_time": parse_time(payload.get("due_time")),
        "is_recurring": parse_bool(payload.get("is_recurring")),
        "assigned_user_id": parse_int(payload.get("assigned_user_id")),
        "assigned_role": clean(payload.get("assigned_role")),
        "escalate_to_user_id": parse_int(payload.get("escalate_to_user_id")),
        "escalation_offset_hours": parse_int(payload.get("escalation_offset_hours")),
        "advance_reminder_offsets": [parse_int(v) for v in parse_tags(payload.get("advance_reminder_offsets"))] or None,
        "requires_acknowledgement": parse_bool(payload.get("requires_acknowledgement")),
    }


def _replace_children(s: "Session", checklist: "ComplianceChecklist", items: list[dict], triggers: list[dict]) -> None:
    from app.dms.modules.compliance.models import ComplianceChecklistItem, ComplianceChecklistTrigger

    checklist.items.clear()
    checklist.triggers.clear()
    s.flush()
    for idx, item in enumerate(items):
        checklist.items.append(
            ComplianceChecklistItem(
                title=clean(item.get("title")),
                description=clean(item.get("description")),
                is_required=item.get("is_required", True),
                is_active=item.get("is_active", True),
                sort_order=item.get("sort_order", idx),
            )
        )
    for trig in triggers:
        checklist.triggers.append(
            ComplianceChecklistTrigger(
                trigger_type=clean(trig.get("trigger_type")),
                offset_hours=parse_int(trig.get("offset_hours")) or 0,
                channels=trig.get("channels") or ["email"],
                escalate_to_user_id=parse_int(trig.get("escalate_to_user_id")),
                is_active=trig.get("is_active", True),
            )
        )


def _cancel_open_reminders(checklist: "ComplianceChecklist") -> int:
    cancelled = 0
    for r in checklist.reminders:
        if r.status in DUE_STATUSES and r.deleted_at is None:
            r.status = "cancelled"
            cancelled += 1
    return cancelled


def schedule_reminders(s: "Session", checklist: "ComplianceChecklist", user: "User | None") -> list["ComplianceReminder"]:
    """Replace the checklist's open reminders with ones derived from its triggers."""
    from app.dms.modules.compliance.models import ComplianceReminder

    _cancel_open_reminders(checklist)
    due = checklist.next_due_at
    if due is None or checklist.status in _INACTIVE_CHECKLIST or checklist.deleted_at:
        return []

    plan: list[tuple[str, int, list[str], int | None]] = [
        (t.trigger_type, t.offset_hours or 0, t.channels or ["email"], t.escalate_to_user_id)
        for t in checklist.triggers
        if t.is_active
    ]
    advance_offsets = {offset for kind, offset, _, _ in plan if kind == "advance"}
    for offset in checklist.advance_reminder_offsets or []:
        if offset is not None and offset not in advance_offsets:
            plan.append(("advance", offset, ["email"], None))
            advance_offsets.add(offset)

    escalate_at = due + timedelta(hours=checklist.escalation_offset_hours) if checklist.escalation_offset_hours else None
    created: list[ComplianceReminder] = []
    for kind, offset, channels, escalate_to in plan:
        if kind == "advance":
            remind_at = due - timedelta(hours=offset)
        elif kind == "escalation":
            remind_at = due + timedelta(hours=offset)
        else:
            remind_at = due
        reminder = ComplianceReminder(
            branch_id=checklist.branch_id,
            assigned_user_id=checklist.assigned_user_id,
            assigned_role=checklist.assigned_role,
            title=f"{checklist.title} ({kind})",
            description=checklist.description,
            reminder_type=kind,
            priority="high" if kind == "escalation" else "medium",
            delivery_channel=channels[0] if channels else "email",
            remind_at=remind_at,
            due_at=due,
            escalate_at=escalate_at,
            status="scheduled",
            auto_escalate=kind == "escalation",
            escalate_to_user_id=escalate_to or checklist.escalate_to_user_id,
            meta={"channels": channels, "offset_hours": offset},
            created_by_user_id=user.id if user else None,
            updated_by_user_id=user.id if user else None,
        )
        checklist.reminders.append(reminder)
        created.append(reminder)
    s.flush()
    return created


def create_checklist(
    s: "Session",
    payload: dict,
    items: list[dict[str, Any]],
    triggers: list[dict[str, Any]],
    user: "User",
    branch_id: int | None,
    now: datetime | None = None,
) -> "ComplianceChecklist":
    from app.dms.modules.compliance.models import ComplianceChecklist

    checklist = ComplianceChecklist(
        branch_id=branch_id,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **_values(payload),
    )
    s.add(checklist)
    _replace_children(s, checklist, items, triggers)
    checklist.next_due_at = calculate_next_due_at(checklist, now)
    reminders = schedule_reminders(s, checklist, user)
    log_created(
        s, MODULE, checklist, user, f"Compliance checklist {checklist.code} created",
        {"items": len(items), "triggers": len(triggers), "reminders": len(reminders)},
    )
    return checklist


def update_checklist(
    s: "Session",
    checklist: "ComplianceChecklist",
    payload: dict,
    items: list[dict[str, Any]],
    triggers: list[dict[str, Any]],
    user: "User",
    now: datetime | None = None,
) -> "ComplianceChecklist":
    changes = apply_changes(checklist, _values(payload))
    _replace_children(s, checklist, items, triggers)
    checklist.next_due_at = calculate_next_due_at(checklist, now)
    checklist.updated_by_user_id = user.id
    reminders = schedule_reminders(s, checklist, user)
    log_updated(
        s, MODULE, checklist, user, f"Compliance checklist {checklist.code} updated",
        {"changes": changes, "items": len(items), "triggers": len(triggers), "reminders": len(reminders)},
    )
    return checklist


def complete_checklist(s: "Session", checklist: "ComplianceChecklist", user: "User", now: datetime | None = None) -> "ComplianceChecklist":
    """Record a completed round and roll the schedule to the following occurrence."""
    now = now or datetime.utcnow()
    if checklist.status != "active":
        raise BusinessRuleError("Only active checklists can be completed.")
    previous_due = checklist.next_due_at
    checklist.last_completed_at = now
    reference = max(now, previous_due) if previous_due else now
    checklist.next_due_at = calculate_next_due_at(checklist, reference) if checklist.is_recurring else None
    checklist.updated_by_user_id = user.id
    schedule_reminders(s, checklist, user)
    log_updated(
        s, MODULE, checklist, user, f"Compliance checklist {checklist.code} completed",
        {"previous_due_at": previous_due, "next_due_at": checklist.next_due_at},
    )
    return checklist


def delete_checklist(s: "Session", checklist: "ComplianceChecklist", user: "User") -> None:
    soft_delete(s, checklist, user, MODULE, f"Compliance checklist {checklist.code}")
    _cancel_open_reminders(checklist)


def restore_checklist(s: "Session", checklist: "ComplianceChecklist", user: "User", now: datetime | None = None) -> None:
    restore(s, checklist, user, MODULE, f"Compliance checklist {checklist.code}", "Compliance checklist")
    checklist.next_due_at = calculate_next_due_at(checklist, now)
    schedule_reminders(s, checklist, user)


# ---- Reminders ----

def validate_reminder_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("title")):
        errors.append("Title is required.")
    check_enum(errors, "Reminder type", payload.get("reminder_type"), REMINDER_TYPES)
    check_enum(errors, "Status", payload.get("status"), REMINDER_STATUSES)
    check_enum(errors, "Priority", payload.get("priority"), PRIORITIES)
    check_enum(errors, "Delivery channel", payload.get("delivery_channel"), DELIVERY_CHANNELS)
    try:
        remind_at = parse_datetime(payload.get("remind_at"))
        due_at = parse_datetime(payload.get("due_at"))
        escalate_at = parse_datetime(payload.get("escalate_at"))
    except ValueError:
        errors.append("Reminder dates must be valid.")
        return errors
    if remind_at is None:
        errors.append("Remind at is required.")
    if due_at and escalate_at and escalate_at < due_at:
        errors.append("Escalate at must be on or after the due date.")
    return errors


def _reminder_values(payload: dict) -> dict[str, Any]:
    return {
        "title": clean(payload.get("title")),
        "description": clean(payload.get("description")),
        "reminder_type": clean(payload.get("reminder_type")) or "custom",
        "priority": clean(payload.get("priority")) or "medium",
        "delivery_channel": clean(payload.get("delivery_channel")) or "email",
        "remind_at": parse_datetime(payload.get("remind_at")),
        "due_at": parse_datetime(payload.get("due_at")),
        "escalate_at": parse_datetime(payload.get("escalate_at")),
        "assigned_user_id": parse_int(payload.get("assigned_user_id")),
        "assigned_role": clean(payload.get("assigned_role")),
        "auto_escalate": parse_bool(payload.get("auto_escalate")),
        "escalate_to_user_id": parse_int(payload.get("escalate_to_user_id")),
    }


def create_reminder(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "ComplianceReminder":
    from app.dms.modules.compliance.models import ComplianceReminder

    reminder = ComplianceReminder(
        branch_id=branch_id,
        compliance_checklist_id=parse_int(payload.get("compliance_checklist_id")),
        status=clean(payload.get("status")) or "scheduled",
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **_reminder_values(payload),
    )
    s.add(reminder)
    s.flush()
    log_created(s, MODULE, reminder, user, f"Compliance reminder '{reminder.title}' created", {"remind_at": reminder.remind_at})
    return reminder


def update_reminder(s: "Session", reminder: "ComplianceReminder", payload: dict, user: "User") -> "ComplianceReminder":
    values = _reminder_values(payload)
    values["status"] = clean(payload.get("status")) or reminder.status
    changes = apply_changes(reminder, values)
    reminder.updated_by_user_id = user.id
    log_updated(s, MODULE, reminder, user, f"Compliance reminder '{reminder.title}' updated", {"changes": changes})
    return reminder


def cancel_reminder(s: "Session", reminder: "ComplianceReminder", user: "User") -> "ComplianceReminder":
    if reminder.status == "cancelled":
        raise BusinessRuleError("Reminder is already cancelled.")
    if reminder.status in ("sent", "escalated"):
        raise BusinessRuleError("A reminder that was already sent cannot be cancelled.")
    old = reminder.status
    reminder.status = "cancelled"
    reminder.updated_by_user_id = user.id
    log_updated(
        s, MODULE, reminder, user, f"Compliance reminder '{reminder.title}' cancelled",
        {"changes": {"status": {"old": old, "new": "cancelled"}}},
    )
    return reminder


def delete_reminder(s: "Session", reminder: "ComplianceReminder", user: "User") -> None:
    soft_delete(s, reminder, user, MODULE, f"Compliance reminder '{reminder.title}'")


def restore_reminder(s: "Session", reminder: "ComplianceReminder", user: "User") -> None:
    restore(s, reminder, user, MODULE, f"Compliance reminder '{reminder.title}'", "Compliance reminder")


def is_due(reminder: "ComplianceReminder", now: datetime | None = None) -> bool:
    now = now or datetime.utcnow()
    return reminder.status in DUE_STATUSES and reminder.remind_at is not None and reminder.remind_at <= now


@dataclass
class ProcessResult:
    processed: int = 0
    escalated: int = 0
    ids: list[int] = field(default_factory=list)
    dry_run: bool = False


def process_due_reminders(s: "Session", dry_run: bool = False, now: datetime | None = None) -> ProcessResult:
    from app.dms.modules.compliance.models import ComplianceReminder, ComplianceReminderEvent

    now = now or datetime.utcnow()
    result = ProcessResult(dry_run=dry_run)
    due = (
        s.query(ComplianceReminder)
        .filter(
            ComplianceReminder.deleted_at.is_(None),
            ComplianceReminder.status.in_(DUE_STATUSES),
            ComplianceReminder.remind_at <= now,
        )
        .order_by(ComplianceReminder.remind_at.asc(), ComplianceReminder.id.asc())
        .all()
    )
    for reminder in due:
        if not is_due(reminder, now):
            continue
        escalate = bool(reminder.auto_escalate and reminder.due_at and reminder.due_at < now)
        result.processed += 1
        result.escalated += int(escalate)
        result.ids.append(reminder.id)
        if dry_run:
            continue

        status = "escalated" if escalate else "sent"
        reminder.status = status
        reminder.last_triggered_at = now
        reminder.last_sent_at = now
        if escalate:
            reminder.last_escalated_at = now
        reminder.sent_count = (reminder.sent_count or 0) + 1
        if reminder.checklist is not None:
            reminder.checklist.last_triggered_at = now
        s.add(
            ComplianceReminderEvent(
                compliance_reminder_id=reminder.id,
                event_type="triggered",
                channel=reminder.delivery_channel,
                status=status,
                message="Reminder automatically triggered based on schedule.",
                meta={"delivery_channel": reminder.delivery_channel, "escalated": escalate},
                processed_at=now,
            )
        )
        record_event(
            s,
            actor=None,
            action=f"{MODULE}.reminder_triggered",
            module=MODULE,
            log_name=MODULE,
            description=f'Reminder "{reminder.title}" triggered automatically.',
            entity_type="ComplianceReminder",
            entity_id=str(reminder.id),
            event="reminder_triggered",
            metadata={"status": status, "remind_at": reminder.remind_at, "delivery_channel": reminder.delivery_channel},
        )
    s.flush()
    logger.info(
        "Compliance reminders processed=%s escalated=%s dry_run=%s", result.processed, result.escalated, dry_run
    )
    return result


def reminder_stats(base_query) -> dict[str, int]:
    from app.dms.modules.compliance.models import ComplianceReminder

    now = datetime.utcnow()
    return {
        "total": base_query.count(),
        "scheduled": base_query.filter(ComplianceReminder.status.in_(DUE_STATUSES)).count(),
        "due_now": base_query.filter(
            ComplianceReminder.status.in_(DUE_STATUSES), ComplianceReminder.remind_at <= now
        ).count(),
        "escalated": base_query.filter(ComplianceReminder.status == "escalated").count(),
    }


def checklist_stats(base_query, today: date | None = None) -> dict[str, int]:
    from app.dms.modules.compliance.models import ComplianceChecklist

    today = today or date.today()
    week_end = datetime.combine(today + timedelta(days=7), time.max)
    return {
        "total": base_query.count(),
        "active": base_query.filter(ComplianceChecklist.status == "active").count(),
        "due_this_week": base_query.filter(
            ComplianceChecklist.next_due_at.isnot(None), ComplianceChecklist.next_due_at <= week_end
        ).count(),
    }


# ---- Assignments ----

def _assignable_checklists(s: "Session", user: "User"):
    """Checklists that land on a user: directly, through one of their roles, or through their branch."""
    from app.dms.modules.compliance.models import ComplianceChecklist

    conditions = [ComplianceChecklist.assigned_user_id == user.id]
    if user.role_keys:
        conditions.append(ComplianceChecklist.assigned_role.in_(user.role_keys))
    if user.branch_id:
        conditions.append(ComplianceChecklist.branch_id == user.branch_id)
    return (
        s.query(ComplianceChecklist)
        .filter(
            ComplianceChecklist.deleted_at.is_(None),
            ComplianceChecklist.status != "archived",
            or_(*conditions),
        )
        .order_by(ComplianceChecklist.next_due_at.is_(None), ComplianceChecklist.next_due_at, ComplianceChecklist.id)
    )


def _sync_items(assignment: "ComplianceChecklistAssignment", checklist: "ComplianceChecklist") -> None:
    from app.dms.modules.compliance.models import ComplianceChecklistAssignmentItem

    known = {ai.compliance_checklist_item_id for ai in assignment.items}
    for item in checklist.items:
        if item.is_active and item.id not in known:
            assignment.items.append(ComplianceChecklistAssignmentItem(checklist_item=item, is_completed=False))


def tracked_items(assignment: "ComplianceChecklistAssignment") -> list["ComplianceChecklistAssignmentItem"]:
    """Assignment items whose checklist item is still active, in checklist order."""
    order = {item.id: idx for idx, item in enumerate(assignment.checklist.items) if item.is_active}
    return sorted(
        (ai for ai in assignment.items if ai.compliance_checklist_item_id in order),
        key=lambda ai: order[ai.compliance_checklist_item_id],
    )


def refresh_progress(assignment: "ComplianceChecklistAssignment", now: datetime | None = None) -> None:
    now = now or datetime.utcnow()
    items = tracked_items(assignment)
    done = sum(1 for ai in items if ai.is_completed)
    total = max(1, len(items))
    # half-up, so 1 of 8 shows 13%
    assignment.progress_percentage = int(done * 100 / total + 0.5)
    if items and done == len(items):
        assignment.status = "completed"
        assignment.completed_at = assignment.completed_at or now
    elif done:
        assignment.status = "in_progress"
        assignment.completed_at = None
    else:
        assignment.status = "pending"
        assignment.completed_at = None


def assignments_for_user(
    s: "Session", user: "User", limit: int | None = None, now: datetime | None = None
) -> list["ComplianceChecklistAssignment"]:
    """One assignment per checklist the user is responsible for, created on first view and kept in step with the checklist items."""
    from app.dms.modules.compliance.models import ComplianceChecklistAssignment

    q = _assignable_checklists(s, user)
    if limit:
        q = q.limit(limit)
    assignments = []
    for checklist in q.all():
        assignment = (
            s.query(ComplianceChecklistAssignment)
            .filter(
                ComplianceChecklistAssignment.compliance_checklist_id == checklist.id,
                ComplianceChecklistAssignment.user_id == user.id,
            )
            .one_or_none()
        )
        if assignment is None:
            assignment = ComplianceChecklistAssignment(
                checklist=checklist,
                user_id=user.id,
                branch_id=checklist.branch_id or user.branch_id,
                status="pending",
                progress_percentage=0,
            )
            s.add(assignment)
        elif assignment.branch_id is None and checklist.branch_id:
            assignment.branch_id = checklist.branch_id
        _sync_items(assignment, checklist)
        refresh_progress(assignment, now)
        assignments.append(assignment)
    s.flush()
    return assignments


def toggle_assignment_item(
    s: "Session",
    assignment_item: "ComplianceChecklistAssignmentItem",
    user: "User",
    is_completed: bool,
    notes: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Tick or untick one item and roll the assignment's progress and status forward."""
    now = now or datetime.utcnow()
    assignment = assignment_item.assignment
    if assignment.user_id != user.id:
        raise BusinessRuleError("Only the assigned user can update this checklist.")
    if assignment.checklist.deleted_at is not None or assignment.checklist.status == "archived":
        raise BusinessRuleError("This checklist is no longer open.")

    assignment_item.is_completed = is_completed
    assignment_item.completed_at = now if is_completed else None
    assignment_item.completed_by = user.id if is_completed else None
    if notes is not None:
        assignment_item.notes = clean(notes)
    assignment.last_interaction_at = now
    assignment.started_at = assignment.started_at or now
    previous_status = assignment.status
    refresh_progress(assignment, now)
    s.flush()

    record_event(
        s,
        actor=user,
        action=f"{MODULE}.assignment_item_toggled",
        module=MODULE,
        log_name=MODULE,
        description=f'{"Completed" if is_completed else "Reopened"} "{assignment_item.checklist_item.title}" on {assignment.checklist.code}',
        entity_type="ComplianceChecklistAssignment",
        entity_id=str(assignment.id),
        event="assignment_item_toggled",
        metadata={
            "assignment_item_id": assignment_item.id,
            "is_completed": is_completed,
            "progress_percentage": assignment.progress_percentage,
            "previous_status": previous_status,
            "status": assignment.status,
        },
    )
    return {
        "assignment_id": assignment.id,
        "assignment_item_id": assignment_item.id,
        "is_completed": assignment_item.is_completed,
        "progress_percentage": assignment.progress_percentage,
        "status": assignment.status,
    }


def reminders_for_user(s: "Session", user: "User", limit: int = 25) -> list["ComplianceReminder"]:
    """Reminders addressed to the user, to one of their roles, or left unassigned in their branch."""
    from app.dms.modules.compliance.models import ComplianceReminder

    conditions = [ComplianceReminder.assigned_user_id == user.id]
    if user.role_keys:
        conditions.append(ComplianceReminder.assigned_role.in_(user.role_keys))
    if user.branch_id:
        conditions.append(
            and_(ComplianceReminder.assigned_user_id.is_(None), ComplianceReminder.branch_id == user.branch_id)
        )
    return (
        s.query(ComplianceReminder)
        .filter(ComplianceReminder.deleted_at.is_(None), or_(*conditions))
        .order_by(ComplianceReminder.remind_at.asc(), ComplianceReminder.id.asc())
        .limit(limit)
        .all()
    )
