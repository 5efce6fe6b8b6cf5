from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from app.dms.models import User
    from app.dms.modules.customers.models import Customer
    from app.dms.modules.service_catalog.models import ServiceType
    from app.dms.modules.vehicles.models import VehicleUnit


class WorkOrder(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "work_orders"
    __table_args__ = (
        Index("idx_work_orders_status", "status"),
        Index("idx_work_orders_scheduled_at", "scheduled_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    work_order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # WO-YYYYMMDD-NNNN

    vehicle_unit_id: Mapped[int | None] = mapped_column(ForeignKey("vehicle_units.id", ondelete="SET NULL"), nullable=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)
    service_type_id: Mapped[int | None] = mapped_column(ForeignKey("service_types.id", ondelete="SET NULL"), nullable=True)

    vehicle_vin: Mapped[str | None] = mapped_column(String(17), nullable=True)
    vehicle_make: Mapped[str | None] = mapped_column(String(128), nullable=True)
    vehicle_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    vehicle_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)

    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    estimated_hours: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    actual_hours: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    estimated_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    actual_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    completion_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    assigned_technician_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    pms_interval_km: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_pms_due_km: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_warranty_claim: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_concerns: Mapped[str | None] = mapped_column(Text, nullable=True)
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    work_performed: Mapped[str | None] = mapped_column(Text, nullable=True)

    customer: Mapped["Customer | None"] = relationship("Customer", lazy="selectin")
    vehicle_unit: Mapped["VehicleUnit | None"] = relationship("VehicleUnit", lazy="selectin")
    service_type: Mapped["ServiceType | None"] = relationship("ServiceType", lazy="selectin")
    technician: Mapped["User | None"] = relationship("User", foreign_keys=[assigned_technician_id], lazy="selectin")
    photos: Mapped[list["WorkOrderPhoto"]] = relationship(
        back_populates="work_order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="WorkOrderPhoto.created_at.desc()",
    )

    @property
    def vehicle_label(self) -> str:
        parts = [str(p) for p in (self.vehicle_year, self.vehicle_make, self.vehicle_model) if p]
        return " ".join(parts) or (self.vehicle_vin or "")


class WorkOrderPhoto(TimestampMixin, Base):
    __tablename__ = "work_order_photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    work_order_id: Mapped[int] = mapped_column(ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    file_path: Mapped[str] = mapped_column(String(512), nullable=False)  # storage key
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(64), nullable=False)
    photo_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    caption: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploaded_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    work_order: Mapped[WorkOrder] = relationship(back_populates="photos", lazy="selectin")
