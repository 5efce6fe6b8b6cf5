from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from app.dms.models import User
    from app.dms.modules.pipelines.models import Pipeline


class Lead(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "leads"
    __table_args__ = (
        Index("idx_leads_status", "status"),
        Index("idx_leads_source", "source"),
        Index("idx_leads_email", "email"),
        Index("idx_leads_phone", "phone"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lead_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # LD-YYYY-NNN

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    source: Mapped[str] = mapped_column(String(32), nullable=False, default="web_form")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="new")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")

    vehicle_interest: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vehicle_variant: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vehicle_model_id: Mapped[int | None] = mapped_column(ForeignKey("vehicle_models.id", ondelete="SET NULL"), nullable=True)
    budget_min: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    budget_max: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    purchase_timeline: Mapped[str | None] = mapped_column(String(32), nullable=True)

    lead_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fake_lead_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversion_probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    assigned_to: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    last_contact_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    next_followup_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True, index=True)
    contact_method: Mapped[str | None] = mapped_column(String(32), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    duplicate_flags: Mapped[list | None] = mapped_column(JSON, nullable=True)

    assignee: Mapped["User | None"] = relationship("User", foreign_keys=[assigned_to], lazy="selectin")
    pipelines: Mapped[list["Pipeline"]] = relationship(back_populates="lead", lazy="selectin")

    @property
    def score_band(self) -> str:
        if self.lead_score >= 80:
            return "high"
        if self.lead_score >= 60:
            return "medium"
        return "low"

    @property
    def is_suspicious(self) -> bool:
        return (self.fake_lead_score or 0) > 70
