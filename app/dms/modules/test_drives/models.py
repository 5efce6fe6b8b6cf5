from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from app.dms.models import User


class TestDrive(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "test_drives"
    __table_args__ = (
        Index("idx_test_drives_status", "status"),
        Index("idx_test_drives_scheduled_date", "scheduled_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reservation_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # TD-YYYY-NNN

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    vehicle_vin: Mapped[str] = mapped_column(String(17), nullable=False)
    vehicle_details: Mapped[str] = mapped_column(String(500), nullable=False)

    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    scheduled_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    assigned_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_signature")
    reservation_type: Mapped[str] = mapped_column(String(32), nullable=False, default="scheduled")
    esignature_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    esignature_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    route_distance_km: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)
    max_speed_kmh: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    insurance_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    license_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deposit_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    assigned_user: Mapped["User | None"] = relationship("User", foreign_keys=[assigned_user_id], lazy="selectin")

    @property
    def scheduled_at(self) -> datetime | None:
        if not self.scheduled_date or not self.scheduled_time:
            return None
        return datetime.combine(self.scheduled_date, self.scheduled_time)
