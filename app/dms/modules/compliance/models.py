from __future__ import annotations

from datetime import date, datetime, time
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from app.dms.models import User


class ComplianceChecklist(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "compliance_checklists"
    __table_args__ = (
        Index("idx_compliance_checklists_status", "status"),
        Index("idx_compliance_checklists_next_due_at", "next_due_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")

    frequency_type: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    frequency_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    custom_frequency_unit: Mapped[str | None] = mapped_column(String(16), nullable=True)
    custom_frequency_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_time: Mapped[time | None] = mapped_column(Time, nullable=True)

    next_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_role: Mapped[str | None] = mapped_column(String(64), nullable=True)
    escalate_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    escalation_offset_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    advance_reminder_offsets: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    requires_acknowledgement: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    assigned_user: Mapped["User | None"] = relationship("User", foreign_keys=[assigned_user_id], lazy="selectin")
    escalation_user: Mapped["User | None"] = relationship("User", foreign_keys=[escalate_to_user_id], lazy="selectin")
    items: Mapped[list["ComplianceChecklistItem"]] = relationship(
        back_populates="checklist",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by=lambda: [ComplianceChecklistItem.sort_order, ComplianceChecklistItem.id],
    )
    triggers: Mapped[list["ComplianceChecklistTrigger"]] = relationship(
        back_populates="checklist",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by=lambda: [ComplianceChecklistTrigger.trigger_type, ComplianceChecklistTrigger.offset_hours],
    )
    reminders: Mapped[list["ComplianceReminder"]] = relationship(back_populates="checklist", lazy="selectin")


class ComplianceChecklistItem(TimestampMixin, Base):
    __tablename__ = "compliance_checklist_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    compliance_checklist_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_checklists.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    checklist: Mapped[ComplianceChecklist] = relationship(back_populates="items")


class ComplianceChecklistTrigger(TimestampMixin, Base):
    __tablename__ = "compliance_checklist_triggers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    compliance_checklist_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_checklists.id", ondelete="CASCADE"), nullable=False, index=True
    )
    trigger_type: Mapped[str] = mapped_column(String(16), nullable=False)
    offset_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    channels: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    escalate_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    checklist: Mapped[ComplianceChecklist] = relationship(back_populates="triggers")


class ComplianceReminder(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "compliance_reminders"
    __table_args__ = (
        Index("idx_compliance_reminders_due", "status", "remind_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    compliance_checklist_id: Mapped[int | None] = mapped_column(
        ForeignKey("compliance_checklists.id", ondelete="CASCADE"), nullable=True, index=True
    )
    assigned_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_role: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminder_type: Mapped[str] = mapped_column(String(16), nullable=False, default="custom")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    delivery_channel: Mapped[str] = mapped_column(String(32), nullable=False, default="email")

    remind_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    escalate_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")
    auto_escalate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalate_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    checklist: Mapped[ComplianceChecklist | None] = relationship(back_populates="reminders", lazy="selectin")
    assigned_user: Mapped["User | None"] = relationship("User", foreign_keys=[assigned_user_id], lazy="selectin")
    events: Mapped[list["ComplianceReminderEvent"]] = relationship(
        back_populates="reminder",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ComplianceReminderEvent.processed_at.desc()",
    )


class ComplianceReminderEvent(Base):
    __tablename__ = "compliance_reminder_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    compliance_reminder_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_reminders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    reminder: Mapped[ComplianceReminder] = relationship(back_populates="events")


class ComplianceChecklistAssignment(TimestampMixin, BranchScopedMixin, Base):
    """One user's run through a checklist; progress is kept per item."""

    __tablename__ = "compliance_checklist_assignments"
    __table_args__ = (
        UniqueConstraint("compliance_checklist_id", "user_id", name="uq_checklist_assignment_user"),
        Index("idx_checklist_assignments_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    compliance_checklist_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_checklists.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_interaction_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    checklist: Mapped[ComplianceChecklist] = relationship(lazy="selectin")
    user: Mapped["User"] = relationship("User", foreign_keys=[user_id], lazy="selectin")
    items: Mapped[list["ComplianceChecklistAssignmentItem"]] = relationship(
        back_populates="assignment",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ComplianceChecklistAssignmentItem.id",
    )


class ComplianceChecklistAssignmentItem(TimestampMixin, Base):
    __tablename__ = "compliance_checklist_assignment_items"
    __table_args__ = (
        UniqueConstraint("assignment_id", "compliance_checklist_item_id", name="uq_assignment_item"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    assignment_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_checklist_assignments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    compliance_checklist_item_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_checklist_items.id", ondelete="CASCADE"), nullable=False
    )
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    assignment: Mapped[ComplianceChecklistAssignment] = relationship(back_populates="items")
    checklist_item: Mapped[ComplianceChecklistItem] = relationship(lazy="selectin")
