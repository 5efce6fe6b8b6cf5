from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.dms.audit import log_created, log_updated, record_event, restore, soft_delete
from app.dms.constants import CLOSED_STAGES, FOLLOW_UP_FREQUENCIES, PIPELINE_STAGES, PRIORITIES
from app.dms.rbac import scope_to_branch
from app.dms.utils import (
    EMAIL_RE,
    check_enum,
    check_number,
    clean,
    next_sequence_id,
    parse_bool,
    parse_datetime,
    parse_decimal,
    parse_int,
    parse_tags,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.dms.models import User
    from app.dms.modules.leads.models import Lead
    from app.dms.modules.pipelines.models import Pipeline, PipelineStageLog

logger = logging.getLogger(__name__)

MODULE = "pipelines"

# Stages that count toward progress; won/lost sit outside the funnel.
PROGRESS_STAGES = PIPELINE_STAGES[:6]

PIPELINE_PRIORITY_POINTS = {"low": 0, "medium": 5, "high": 10, "urgent": 15}
PIPELINE_SOURCE_POINTS = {"referral": 20, "walk_in": 10, "web_form": 15, "phone": 10, "social_media": 5}

AUTO_PIPELINE_MIN_SCORE = 70
INACTIVITY_DAYS = 7


def calculate_pipeline_lead_score(pipeline: "Pipeline") -> int:
    score = 0
    if pipeline.customer_name:
        score += 10
    if pipeline.customer_phone:
        score += 15
    if pipeline.customer_email:
        score += 15
    if pipeline.vehicle_make and pipeline.vehicle_model:
        score += 15
    if pipeline.quote_amount and pipeline.quote_amount > 0:
        score += 20
    score += PIPELINE_PRIORITY_POINTS.get(pipeline.priority or "", 0)
    if pipeline.next_action:
        score += 5
    if pipeline.lead is not None:
        score += PIPELINE_SOURCE_POINTS.get(pipeline.lead.source or "", 0)
    return min(100, score)


def stage_progress(stage: str | None) -> int:
    if stage not in PROGRESS_STAGES:
        return 0
    return min(100, round((PROGRESS_STAGES.index(stage) + 1) / len(PROGRESS_STAGES) * 100))


def _hours_between(start: datetime | None, end: datetime) -> Decimal | None:
    if start is None:
        return None
    return Decimal(str(round(abs((end - start).total_seconds()) / 3600, 2)))


def log_stage_entry(
    s: "Session",
    pipeline: "Pipeline",
    stage: str,
    previous_stage: str | None,
    *,
    trigger_type: str = "manual",
    trigger_system: str | None = None,
    trigger_event: str | None = None,
    trigger_user_id: int | None = None,
    properties: dict[str, Any] | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> "PipelineStageLog":
    """Close the open log for the stage being left and open one for `stage`."""
    from app.dms.modules.pipelines.models import PipelineStageLog

    now = now or datetime.utcnow()
    if previous_stage:
        open_log = (
            s.query(PipelineStageLog)
            .filter(
                PipelineStageLog.pipeline_id == pipeline.id,
                PipelineStageLog.stage == previous_stage,
                PipelineStageLog.exit_timestamp.is_(None),
            )
            .order_by(PipelineStageLog.entry_timestamp.desc())
            .first()
        )
        if open_log:
            open_log.exit_timestamp = now
            open_log.duration_hours = _hours_between(open_log.entry_timestamp, now)

    log = PipelineStageLog(
        pipeline_id=pipeline.id,
        stage=stage,
        previous_stage=previous_stage,
        entry_timestamp=now,
        trigger_type=trigger_type,
        trigger_system=trigger_system,
        trigger_event=trigger_event,
        trigger_user_id=trigger_user_id,
        properties=properties or None,
        notes=notes,
    )
    s.add(log)
    if trigger_type == "auto":
        pipeline.auto_logged_events_count = (pipeline.auto_logged_events_count or 0) + 1
    s.flush()
    return log


def change_stage(
    s: "Session",
    pipeline: "Pipeline",
    new_stage: str,
    *,
    trigger_type: str = "manual",
    user: "User | None" = None,
    trigger_system: str | None = None,
    trigger_event: str | None = None,
    probability: int | None = None,
    notes: str | None = None,
    properties: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> bool:
    """Move a pipeline to `new_stage` and log it. Returns False when nothing changed."""
    if new_stage == pipeline.current_stage:
        return False
    now = now or datetime.utcnow()
    old_stage = pipeline.current_stage
    pipeline.stage_duration_hours = _hours_between(pipeline.stage_entry_timestamp, now)
    pipeline.previous_stage = old_stage
    pipeline.current_stage = new_stage
    pipeline.stage_entry_timestamp = now
    pipeline.last_activity_at = now
    if probability is not None:
        pipeline.probability = probability

    log_stage_entry(
        s,
        pipeline,
        new_stage,
        old_stage,
        trigger_type=trigger_type,
        trigger_system=trigger_system,
        trigger_event=trigger_event,
        trigger_user_id=user.id if user else None,
        properties=properties,
        notes=notes,
        now=now,
    )
    record_event(
        s,
        actor=user,
        action="pipelines.stage_change",
        description=f"Pipeline {pipeline.pipeline_id} moved from {old_stage} to {new_stage}",
        entity_type="Pipeline",
        entity_id=pipeline.id,
        event="stage_changed",
        metadata={"from": old_stage, "to": new_stage, "trigger_type": trigger_type, "trigger_event": trigger_event},
    )
    return True


# ---------- Auto progression ----------


def _advance(
    s: "Session",
    pipeline: "Pipeline | None",
    allowed_from: tuple[str, ...],
    new_stage: str,
    probability: int,
    trigger_system: str,
    trigger_event: str,
    user: "User | None",
    properties: dict[str, Any] | None = None,
) -> bool:
    if pipeline is None or not pipeline.auto_progression_enabled:
        return False
    if pipeline.current_stage not in allowed_from:
        logger.info(
            "Pipeline %s not advanced to %s: current stage is %s", pipeline.pipeline_id, new_stage, pipeline.current_stage
        )
        return False
    props = {"auto_advanced": True}
    props.update(properties or {})
    changed = change_stage(
        s,
        pipeline,
        new_stage,
        trigger_type="auto",
        user=user,
        trigger_system=trigger_system,
        trigger_event=trigger_event,
        probability=probability,
        properties=props,
    )
    if changed:
        logger.info("Auto-advanced pipeline %s to %s", pipeline.pipeline_id, new_stage)
    return changed


def on_quote_sent(s: "Session", pipeline: "Pipeline", user: "User | None" = None) -> bool:
    props = {"quote_amount": str(pipeline.quote_amount) if pipeline.quote_amount is not None else None}
    return _advance(s, pipeline, ("qualified",), "quote_sent", 60, "Quote System", "Quote Generated", user, props)


def on_test_drive_scheduled(s: "Session", pipeline: "Pipeline | None", user: "User | None" = None, properties: dict | None = None) -> bool:
    return _advance(
        s,
        pipeline,
        ("lead", "qualified", "quote_sent"),
        "test_drive_scheduled",
        70,
        "Test Drive System",
        "Test Drive Scheduled",
        user,
        properties,
    )


def on_test_drive_completed(s: "Session", pipeline: "Pipeline | None", user: "User | None" = None, properties: dict | None = None) -> bool:
    return _advance(
        s,
        pipeline,
        ("test_drive_scheduled",),
        "test_drive_completed",
        75,
        "Test Drive System",
        "Test Drive Completed",
        user,
        properties,
    )


def on_reservation_made(s: "Session", pipeline: "Pipeline | None", user: "User | None" = None, properties: dict | None = None) -> bool:
    return _advance(
        s,
        pipeline,
        ("test_drive_scheduled", "test_drive_completed"),
        "reservation_made",
        85,
        "Reservation System",
        "Reservation Created",
        user,
        properties,
    )


def find_active_pipeline(s: "Session", phone: str | None = None, email: str | None = None) -> "Pipeline | None":
    from app.dms.modules.pipelines.models import Pipeline

    conditions = []
    if clean(phone):
        conditions.append(Pipeline.customer_phone == clean(phone))
    if clean(email):
        conditions.append(func.lower(Pipeline.customer_email) == clean(email).lower())
    if not conditions:
        return None
    return (
        s.query(Pipeline)
        .filter(or_(*conditions), Pipeline.current_stage.notin_(CLOSED_STAGES), Pipeline.deleted_at.is_(None))
        .order_by(Pipeline.updated_at.desc(), Pipeline.id.desc())
        .first()
    )


def create_pipeline_from_lead(s: "Session", lead: "Lead", user: "User | None") -> "Pipeline | None":
    """Open a pipeline at `qualified` for a lead scoring 70+; reuse an existing one."""
    from app.dms.modules.pipelines.models import Pipeline

    if (lead.lead_score or 0) < AUTO_PIPELINE_MIN_SCORE:
        return None
    existing = s.query(Pipeline).filter(Pipeline.lead_id == lead.id).first()
    if existing:
        return existing

    now = datetime.utcnow()
    pipeline = Pipeline(
        pipeline_id=next_sequence_id(s, Pipeline.pipeline_id, "PL"),
        branch_id=lead.branch_id,
        lead_id=lead.id,
        customer_name=lead.name,
        customer_phone=lead.phone,
        customer_email=lead.email,
        sales_rep_id=lead.assigned_to,
        vehicle_interest=lead.vehicle_interest,
        vehicle_model_id=lead.vehicle_model_id,
        current_stage="qualified",
        priority=lead.priority or "medium",
        lead_score=lead.lead_score,
        probability=lead.conversion_probability or 0,
        auto_progression_enabled=True,
        auto_loss_rule_enabled=True,
        stage_entry_timestamp=now,
        last_activity_at=now,
        created_by_user_id=user.id if user else None,
    )
    s.add(pipeline)
    s.flush()
    log_stage_entry(
        s,
        pipeline,
        "qualified",
        "lead",
        trigger_type="auto",
        trigger_system="Lead Management",
        trigger_event="Lead Qualified (Score >= 70)",
        trigger_user_id=lead.assigned_to,
        properties={"lead_id": lead.lead_id, "lead_score": lead.lead_score, "auto_created": True},
        now=now,
    )
    log_created(
        s,
        MODULE,
        pipeline,
        user,
        f"Pipeline {pipeline.pipeline_id} auto-created from qualified lead {lead.lead_id}",
        {"lead_id": lead.lead_id, "auto_created": True},
    )
    logger.info("Auto-created pipeline %s from qualified lead %s", pipeline.pipeline_id, lead.lead_id)
    return pipeline


@dataclass(frozen=True)
class InactivePipeline:
    pipeline_id: str
    customer_name: str
    previous_stage: str
    days_inactive: int | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "customer_name": self.customer_name,
            "previous_stage": self.previous_stage,
            "days_inactive": self.days_inactive,
        }


def detect_inactive_pipelines(
    s: "Session", days: int = INACTIVITY_DAYS, now: datetime | None = None, dry_run: bool = False
) -> tuple[int, list[dict[str, Any]]]:
    """Mark open pipelines with no activity for `days` as lost."""
    from app.dms.modules.pipelines.models import Pipeline

    now = now or datetime.utcnow()
    threshold = now - timedelta(days=days)
    candidates = (
        s.query(Pipeline)
        .filter(
            Pipeline.auto_loss_rule_enabled.is_(True),
            Pipeline.current_stage.notin_(CLOSED_STAGES),
            Pipeline.deleted_at.is_(None),
            or_(Pipeline.last_activity_at < threshold, Pipeline.last_activity_at.is_(None)),
        )
        .order_by(Pipeline.id.asc())
        .all()
    )

    details: list[dict[str, Any]] = []
    for pipeline in candidates:
        last_seen = pipeline.last_activity_at or pipeline.created_at
        days_inactive = (now - last_seen).days if last_seen else None
        previous = pipeline.current_stage
        if not dry_run:
            change_stage(
                s,
                pipeline,
                "lost",
                trigger_type="auto",
                trigger_system="Auto-Loss Detection",
                trigger_event="Inactivity Detected",
                probability=0,
                properties={"days_inactive": days_inactive, "threshold_days": days},
                now=now,
            )
        details.append(InactivePipeline(pipeline.pipeline_id, pipeline.customer_name, previous, days_inactive).as_dict())

    if details:
        logger.info("Auto-loss: %s pipeline(s) inactive for %s+ days%s", len(details), days, " (dry run)" if dry_run else "")
    return len(details), details


def auto_logging_stats(s: "Session", user: "User | None") -> dict[str, Any]:
    from app.dms.modules.pipelines.models import Pipeline, PipelineStageLog

    q = s.query(PipelineStageLog).join(Pipeline, PipelineStageLog.pipeline_id == Pipeline.id)
    q = scope_to_branch(q, Pipeline, user)
    total = q.count()
    auto = q.filter(PipelineStageLog.trigger_type == "auto").count()
    avg = q.with_entities(func.avg(PipelineStageLog.duration_hours)).filter(PipelineStageLog.duration_hours.isnot(None)).scalar()
    return {
        "total_logs": total,
        "auto_logs": auto,
        "manual_logs": total - auto,
        "avg_stage_duration_hours": round(float(avg), 2) if avg is not None else 0,
    }


def stage_counts(base_query) -> dict[str, int]:
    from app.dms.modules.pipelines.models import Pipeline

    rows = base_query.with_entities(Pipeline.current_stage, func.count(Pipeline.id)).group_by(Pipeline.current_stage).all()
    counts = {stage: 0 for stage in PIPELINE_STAGES}
    counts.update({stage: n for stage, n in rows})
    return counts


# ---------- CRUD ----------

_TEXT_FIELDS = (
    "customer_name",
    "customer_phone",
    "customer_email",
    "vehicle_interest",
    "vehicle_make",
    "vehicle_model",
    "next_action",
    "notes",
)


def validate_pipeline_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("customer_name")):
        errors.append("Customer name is required.")
    email = clean(payload.get("customer_email"))
    if email and not EMAIL_RE.match(email):
        errors.append("Customer email is not a valid address.")
    check_enum(errors, "Stage", payload.get("current_stage"), PIPELINE_STAGES)
    check_enum(errors, "Priority", payload.get("priority"), PRIORITIES)
    check_enum(errors, "Follow-up frequency", payload.get("follow_up_frequency"), FOLLOW_UP_FREQUENCIES)
    check_number(errors, "Quote amount", payload.get("quote_amount"), minimum=0)
    check_number(errors, "Probability", payload.get("probability"), minimum=0, maximum=100)
    check_number(errors, "Vehicle year", payload.get("vehicle_year"), minimum=1900, maximum=datetime.utcnow().year + 2)
    try:
        parse_datetime(payload.get("next_action_due"))
    except ValueError:
        errors.append("Next action due must be a valid date/time.")
    return errors


def _apply(pipeline: "Pipeline", payload: dict) -> None:
    for f in _TEXT_FIELDS:
        setattr(pipeline, f, clean(payload.get(f)))
    pipeline.vehicle_year = parse_int(payload.get("vehicle_year"))
    pipeline.quote_amount = parse_decimal(payload.get("quote_amount"))
    pipeline.priority = clean(payload.get("priority")) or pipeline.priority or "medium"
    pipeline.next_action_due = parse_datetime(payload.get("next_action_due"))
    pipeline.follow_up_frequency = clean(payload.get("follow_up_frequency"))
    pipeline.sales_rep_id = parse_int(payload.get("sales_rep_id"))
    pipeline.lead_id = parse_int(payload.get("lead_id"))
    pipeline.tags = parse_tags(payload.get("tags")) or None
    if "auto_progression_enabled" in payload:
        pipeline.auto_progression_enabled = parse_bool(payload.get("auto_progression_enabled"))
    if "auto_loss_rule_enabled" in payload:
        pipeline.auto_loss_rule_enabled = parse_bool(payload.get("auto_loss_rule_enabled"))
    if clean(payload.get("probability")) is not None:
        pipeline.probability = parse_int(payload.get("probability"))


def create_pipeline(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "Pipeline":
    from app.dms.modules.pipelines.models import Pipeline

    now = datetime.utcnow()
    pipeline = Pipeline(
        pipeline_id=next_sequence_id(s, Pipeline.pipeline_id, "PL"),
        branch_id=branch_id,
        current_stage=clean(payload.get("current_stage")) or "lead",
        stage_entry_timestamp=now,
        last_activity_at=now,
        probability=0,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    _apply(pipeline, payload)
    s.add(pipeline)
    s.flush()
    pipeline.lead_score = calculate_pipeline_lead_score(pipeline)
    log_stage_entry(
        s,
        pipeline,
        pipeline.current_stage,
        None,
        trigger_type="manual",
        trigger_system="Pipeline Created",
        trigger_event="Initial pipeline entry",
        trigger_user_id=user.id,
        now=now,
    )
    log_created(s, MODULE, pipeline, user, f"Pipeline {pipeline.pipeline_id} created", {"stage": pipeline.current_stage})
    return pipeline


def update_pipeline(s: "Session", pipeline: "Pipeline", payload: dict, user: "User") -> "Pipeline":
    tracked = _TEXT_FIELDS + ("quote_amount", "priority", "sales_rep_id", "probability", "follow_up_frequency")
    before = {f: getattr(pipeline, f) for f in tracked}
    quote_before = pipeline.quote_amount

    _apply(pipeline, payload)
    pipeline.updated_by_user_id = user.id
    pipeline.last_activity_at = datetime.utcnow()

    changes = {}
    for f in tracked:
        old, new = before[f], getattr(pipeline, f)
        if old != new:
            changes[f] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}

    new_stage = clean(payload.get("current_stage"))
    if new_stage and new_stage != pipeline.current_stage:
        changes["current_stage"] = {"old": pipeline.current_stage, "new": new_stage}
        change_stage(
            s,
            pipeline,
            new_stage,
            trigger_type="manual",
            user=user,
            trigger_system="Stage Updated",
            trigger_event="Pipeline stage manually updated",
        )
    elif pipeline.quote_amount and pipeline.quote_amount > 0 and pipeline.quote_amount != quote_before:
        if on_quote_sent(s, pipeline, user):
            changes["current_stage"] = {"old": "qualified", "new": "quote_sent"}

    pipeline.lead_score = calculate_pipeline_lead_score(pipeline)
    log_updated(s, MODULE, pipeline, user, f"Pipeline {pipeline.pipeline_id} updated", {"changes": changes})
    return pipeline


def delete_pipeline(s: "Session", pipeline: "Pipeline", user: "User") -> None:
    soft_delete(s, pipeline, user, MODULE, f"Pipeline {pipeline.pipeline_id}")


def restore_pipeline(s: "Session", pipeline: "Pipeline", user: "User") -> None:
    restore(s, pipeline, user, MODULE, f"Pipeline {pipeline.pipeline_id}", "Pipeline")


def pipeline_to_dict(pipeline: "Pipeline") -> dict[str, Any]:
    def ts(v):
        return v.isoformat() if v else None

    return {
        "id": pipeline.id,
        "pipeline_id": pipeline.pipeline_id,
        "lead_id": pipeline.lead.lead_id if pipeline.lead else None,
        "branch_id": pipeline.branch_id,
        "customer_name": pipeline.customer_name,
        "customer_phone": pipeline.customer_phone,
        "customer_email": pipeline.customer_email,
        "vehicle": pipeline.vehicle_label,
        "quote_amount": float(pipeline.quote_amount) if pipeline.quote_amount is not None else None,
        "current_stage": pipeline.current_stage,
        "previous_stage": pipeline.previous_stage,
        "stage_progress": stage_progress(pipeline.current_stage),
        "probability": pipeline.probability,
        "priority": pipeline.priority,
        "lead_score": pipeline.lead_score,
        "next_action": pipeline.next_action,
        "next_action_due": ts(pipeline.next_action_due),
        "last_activity_at": ts(pipeline.last_activity_at),
        "auto_progression_enabled": pipeline.auto_progression_enabled,
        "auto_loss_rule_enabled": pipeline.auto_loss_rule_enabled,
        "stage_logs": [
            {
                "stage": log.stage,
                "previous_stage": log.previous_stage,
                "entry_timestamp": ts(log.entry_timestamp),
                "exit_timestamp": ts(log.exit_timestamp),
                "duration_hours": float(log.duration_hours) if log.duration_hours is not None else None,
                "trigger_type": log.trigger_type,
                "trigger_system": log.trigger_system,
                "trigger_event": log.trigger_event,
                "properties": log.properties or {},
            }
            for log in pipeline.stage_logs
        ],
    }
