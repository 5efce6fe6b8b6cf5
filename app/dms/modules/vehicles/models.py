from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from app.dms.modules.branches.models import Branch
    from app.dms.modules.customers.models import Customer


class VehicleMaster(TimestampMixin, SoftDeleteMixin, AuthorMixin, Base):
    __tablename__ = "vehicle_masters"
    __table_args__ = (
        Index("idx_vehicle_masters_make_model", "make", "model"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    make: Mapped[str] = mapped_column(String(128), nullable=False)
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    trim: Mapped[str | None] = mapped_column(String(128), nullable=True)
    body_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transmission: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fuel_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    drivetrain: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    doors: Mapped[int | None] = mapped_column(Integer, nullable=True)
    base_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="PHP")
    specs: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    units: Mapped[list["VehicleUnit"]] = relationship(back_populates="master", lazy="selectin")

    @property
    def full_name(self) -> str:
        return " ".join(str(p) for p in (self.year, self.make, self.model, self.trim) if p)


class VehicleModel(TimestampMixin, SoftDeleteMixin, AuthorMixin, Base):
    __tablename__ = "vehicle_models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    make: Mapped[str] = mapped_column(String(128), nullable=False)
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    model_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    body_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    engine_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fuel_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transmission: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seating_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    base_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    srp: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def full_name(self) -> str:
        return " ".join(str(p) for p in (self.year, self.make, self.model) if p)


class VehicleUnit(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "vehicle_units"
    __table_args__ = (
        Index("idx_vehicle_units_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_master_id: Mapped[int | None] = mapped_column(ForeignKey("vehicle_masters.id", ondelete="SET NULL"), nullable=True, index=True)
    vehicle_model_id: Mapped[int | None] = mapped_column(ForeignKey("vehicle_models.id", ondelete="SET NULL"), nullable=True, index=True)
    assigned_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    vin: Mapped[str] = mapped_column(String(17), nullable=False, unique=True)
    stock_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="in_stock")

    purchase_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    sale_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="PHP")
    acquisition_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    sold_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    color_exterior: Mapped[str | None] = mapped_column(String(64), nullable=True)
    color_interior: Mapped[str | None] = mapped_column(String(64), nullable=True)
    odometer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allocation_status: Mapped[str | None] = mapped_column(String(255), nullable=True)

    master: Mapped[VehicleMaster | None] = relationship(back_populates="units", lazy="selectin")
    vehicle_model: Mapped[VehicleModel | None] = relationship(lazy="selectin")
    branch: Mapped["Branch | None"] = relationship("Branch", lazy="selectin")
    movements: Mapped[list["VehicleMovement"]] = relationship(
        back_populates="unit",
        lazy="selectin",
        order_by="VehicleMovement.transfer_date.desc()",
    )

    @property
    def full_name(self) -> str:
        if self.master:
            return self.master.full_name
        if self.vehicle_model:
            return self.vehicle_model.full_name
        return "Unknown Vehicle"

    @property
    def days_in_inventory(self) -> int | None:
        if not self.acquisition_date:
            return None
        end = self.sold_date or date.today()
        return abs((end - self.acquisition_date).days)

    @property
    def profit_margin(self) -> Decimal | None:
        if self.status != "sold" or not self.purchase_price or not self.sale_price:
            return None
        return self.sale_price - self.purchase_price

    @property
    def profit_percentage(self) -> float | None:
        margin = self.profit_margin
        if not margin or not self.purchase_price:
            return None
        return float(margin / self.purchase_price * 100)


class VehicleMovement(TimestampMixin, Base):
    __tablename__ = "vehicle_movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_unit_id: Mapped[int] = mapped_column(ForeignKey("vehicle_units.id", ondelete="CASCADE"), nullable=False, index=True)
    from_branch_id: Mapped[int | None] = mapped_column(ForeignKey("branches.id", ondelete="SET NULL"), nullable=True)
    to_branch_id: Mapped[int | None] = mapped_column(ForeignKey("branches.id", ondelete="SET NULL"), nullable=True)
    transfer_date: Mapped[date] = mapped_column(Date, nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    unit: Mapped[VehicleUnit] = relationship(back_populates="movements", lazy="selectin")
    from_branch: Mapped["Branch | None"] = relationship("Branch", foreign_keys=[from_branch_id], lazy="selectin")
    to_branch: Mapped["Branch | None"] = relationship("Branch", foreign_keys=[to_branch_id], lazy="selectin")


class VehicleReservation(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "vehicle_reservations"
    __table_args__ = (
        Index("idx_vehicle_reservations_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reservation_ref: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # RS-YYYY-NNNN
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)
    vehicle_unit_id: Mapped[int] = mapped_column(ForeignKey("vehicle_units.id", ondelete="RESTRICT"), nullable=False, index=True)
    handled_by_branch_id: Mapped[int | None] = mapped_column(ForeignKey("branches.id", ondelete="SET NULL"), nullable=True)
    reservation_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    target_release_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    customer: Mapped["Customer"] = relationship("Customer", lazy="selectin")
    unit: Mapped[VehicleUnit] = relationship(lazy="selectin")

    @property
    def is_active(self) -> bool:
        return self.status not in ("cancelled", "released")
