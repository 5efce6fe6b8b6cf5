from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from app.dms.models import User
    from app.dms.modules.leads.models import Lead


class Pipeline(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "pipelines"
    __table_args__ = (
        Index("idx_pipelines_stage", "current_stage"),
        Index("idx_pipelines_last_activity", "last_activity_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pipeline_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # PL-YYYY-NNN
    lead_id: Mapped[int | None] = mapped_column(ForeignKey("leads.id", ondelete="SET NULL"), nullable=True, index=True)

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    sales_rep_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    vehicle_interest: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vehicle_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    vehicle_make: Mapped[str | None] = mapped_column(String(128), nullable=True)
    vehicle_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    vehicle_model_id: Mapped[int | None] = mapped_column(ForeignKey("vehicle_models.id", ondelete="SET NULL"), nullable=True)
    quote_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)

    current_stage: Mapped[str] = mapped_column(String(32), nullable=False, default="lead")
    previous_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stage_entry_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    stage_duration_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    lead_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_action: Mapped[str | None] = mapped_column(String(255), nullable=True)
    next_action_due: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    auto_progression_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_loss_rule_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    follow_up_frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    auto_logged_events_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    manual_notes_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attachments_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    lead: Mapped["Lead | None"] = relationship(back_populates="pipelines", lazy="selectin")
    sales_rep: Mapped["User | None"] = relationship("User", foreign_keys=[sales_rep_id], lazy="selectin")
    stage_logs: Mapped[list["PipelineStageLog"]] = relationship(
        back_populates="pipeline",
        lazy="selectin",
        order_by="PipelineStageLog.entry_timestamp.asc(), PipelineStageLog.id.asc()",
        cascade="all, delete-orphan",
    )

    @property
    def vehicle_label(self) -> str:
        parts = [str(self.vehicle_year) if self.vehicle_year else None, self.vehicle_make, self.vehicle_model]
        label = " ".join(p for p in parts if p)
        return label or (self.vehicle_interest or "")


class PipelineStageLog(Base):
    __tablename__ = "pipeline_stage_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pipeline_id: Mapped[int] = mapped_column(ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    entry_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    exit_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    duration_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    trigger_type: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")  # manual, auto
    trigger_system: Mapped[str | None] = mapped_column(String(128), nullable=True)
    trigger_event: Mapped[str | None] = mapped_column(String(128), nullable=True)
    trigger_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    properties: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    pipeline: Mapped[Pipeline] = relationship(back_populates="stage_logs", lazy="selectin")
