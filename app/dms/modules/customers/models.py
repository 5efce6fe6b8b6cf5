from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.constants import SURVEY_RATING_FIELDS
from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin

SURVEY_VALIDITY_DAYS = 30


class Customer(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("idx_customers_status", "status"),
        Index("idx_customers_email", "email"),
        Index("idx_customers_phone", "phone"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # CUS-YYYY-NNN

    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    alternate_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(32), nullable=True)

    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(128), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    country: Mapped[str | None] = mapped_column(String(128), nullable=True)

    customer_type: Mapped[str] = mapped_column(String(32), nullable=False, default="individual")
    customer_segment: Mapped[str | None] = mapped_column(String(32), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tax_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    loyalty_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    satisfaction_rating: Mapped[Decimal | None] = mapped_column(Numeric(3, 2), nullable=True)
    total_purchases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)

    email_notifications: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sms_notifications: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    marketing_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    assigned_to: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    lead_source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    referred_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)

    surveys: Mapped[list["CustomerSurvey"]] = relationship(
        back_populates="customer",
        lazy="selectin",
        order_by="CustomerSurvey.created_at.desc()",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def display_name(self) -> str:
        if self.customer_type == "corporate" and self.company_name:
            return f"{self.company_name} ({self.full_name})"
        return self.full_name


class CustomerSurvey(TimestampMixin, BranchScopedMixin, Base):
    __tablename__ = "customer_surveys"
    __table_args__ = (
        Index("idx_customer_surveys_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    survey_type: Mapped[str] = mapped_column(String(64), nullable=False, default="general")
    trigger_event: Mapped[str | None] = mapped_column(String(64), nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    sent_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        default=lambda: datetime.utcnow() + timedelta(days=SURVEY_VALIDITY_DAYS),
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    overall_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    product_quality: Mapped[int | None] = mapped_column(Integer, nullable=True)
    service_quality: Mapped[int | None] = mapped_column(Integer, nullable=True)
    staff_friendliness: Mapped[int | None] = mapped_column(Integer, nullable=True)
    facility_cleanliness: Mapped[int | None] = mapped_column(Integer, nullable=True)
    value_for_money: Mapped[int | None] = mapped_column(Integer, nullable=True)

    what_went_well: Mapped[str | None] = mapped_column(Text, nullable=True)
    what_needs_improvement: Mapped[str | None] = mapped_column(Text, nullable=True)
    additional_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    nps_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    nps_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    wants_followup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    preferred_contact_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    custom_fields: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    customer: Mapped[Customer] = relationship(back_populates="surveys", lazy="selectin")

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at < datetime.utcnow()

    @property
    def can_be_completed(self) -> bool:
        return self.status == "pending" and not self.is_expired

    @property
    def average_rating(self) -> float | None:
        ratings = [getattr(self, f) for f in SURVEY_RATING_FIELDS]
        ratings = [r for r in ratings if r]
        if not ratings:
            return None
        return round(sum(ratings) / len(ratings), 2)

    @property
    def nps_category(self) -> str | None:
        if self.nps_score is None:
            return None
        if self.nps_score >= 9:
            return "promoter"
        if self.nps_score >= 7:
            return "passive"
        return "detractor"
