from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from app.dms.models import User
    from app.dms.modules.customers.models import Customer
    from app.dms.modules.vehicles.models import VehicleUnit

EDITABLE_STATUSES = ("draft", "submitted")


class WarrantyClaim(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "warranty_claims"
    __table_args__ = (
        Index("idx_warranty_claims_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    claim_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # WC-YYYY-NNN
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)
    vehicle_unit_id: Mapped[int | None] = mapped_column(ForeignKey("vehicle_units.id", ondelete="SET NULL"), nullable=True)

    claim_type: Mapped[str] = mapped_column(String(16), nullable=False, default="both")
    claim_date: Mapped[date] = mapped_column(Date, nullable=False)
    incident_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    failure_description: Mapped[str] = mapped_column(Text, nullable=False)
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    repair_actions: Mapped[str | None] = mapped_column(Text, nullable=True)
    odometer_reading: Mapped[int | None] = mapped_column(Integer, nullable=True)

    warranty_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    warranty_provider: Mapped[str | None] = mapped_column(String(255), nullable=True)
    warranty_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    warranty_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    warranty_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    parts_claimed_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    labor_claimed_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    total_claimed_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    approved_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="PHP")

    submission_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    decision_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    decision_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_to: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    customer: Mapped["Customer | None"] = relationship("Customer", lazy="selectin")
    vehicle_unit: Mapped["VehicleUnit | None"] = relationship("VehicleUnit", lazy="selectin")
    decider: Mapped["User | None"] = relationship("User", foreign_keys=[decision_by], lazy="selectin")
    parts: Mapped[list["WarrantyClaimPart"]] = relationship(
        back_populates="claim", cascade="all, delete-orphan", lazy="selectin", order_by="WarrantyClaimPart.id"
    )
    services: Mapped[list["WarrantyClaimService"]] = relationship(
        back_populates="claim", cascade="all, delete-orphan", lazy="selectin", order_by="WarrantyClaimService.id"
    )
    photos: Mapped[list["WarrantyClaimPhoto"]] = relationship(
        back_populates="claim", cascade="all, delete-orphan", lazy="selectin", order_by="WarrantyClaimPhoto.created_at.desc()"
    )

    @property
    def can_edit(self) -> bool:
        return self.status in EDITABLE_STATUSES

    @property
    def can_delete(self) -> bool:
        return self.status == "draft"


class WarrantyClaimPart(TimestampMixin, Base):
    __tablename__ = "warranty_claim_parts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    warranty_claim_id: Mapped[int] = mapped_column(ForeignKey("warranty_claims.id", ondelete="CASCADE"), nullable=False, index=True)
    part_inventory_id: Mapped[int | None] = mapped_column(ForeignKey("parts_inventory.id", ondelete="SET NULL"), nullable=True)
    part_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    part_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    total_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    claim_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    approved_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)

    claim: Mapped[WarrantyClaim] = relationship(back_populates="parts")


class WarrantyClaimService(TimestampMixin, Base):
    __tablename__ = "warranty_claim_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    warranty_claim_id: Mapped[int] = mapped_column(ForeignKey("warranty_claims.id", ondelete="CASCADE"), nullable=False, index=True)
    service_type_id: Mapped[int | None] = mapped_column(ForeignKey("service_types.id", ondelete="SET NULL"), nullable=True)
    service_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    labor_hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=0)
    labor_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    total_labor_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    claim_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    approved_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)

    claim: Mapped[WarrantyClaim] = relationship(back_populates="services")


class WarrantyClaimPhoto(TimestampMixin, Base):
    __tablename__ = "warranty_claim_photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    warranty_claim_id: Mapped[int] = mapped_column(ForeignKey("warranty_claims.id", ondelete="CASCADE"), nullable=False, index=True)
    file_path: Mapped[str] = mapped_column(String(512), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(64), nullable=False)
    photo_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    caption: Mapped[str | None] = mapped_column(String(255), nullable=True)
    uploaded_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    claim: Mapped[WarrantyClaim] = relationship(back_populates="photos")
