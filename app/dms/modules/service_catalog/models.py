from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin


class CommonService(TimestampMixin, SoftDeleteMixin, AuthorMixin, Base):
    __tablename__ = "common_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="maintenance")
    estimated_duration: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)  # hours
    standard_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="PHP")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class ServiceTypeCommonService(Base):
    __tablename__ = "service_type_common_service"
    __table_args__ = (UniqueConstraint("service_type_id", "common_service_id", name="uq_service_type_common_service"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_type_id: Mapped[int] = mapped_column(ForeignKey("service_types.id", ondelete="CASCADE"), nullable=False, index=True)
    common_service_id: Mapped[int] = mapped_column(ForeignKey("common_services.id", ondelete="CASCADE"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    common_service: Mapped[CommonService] = relationship(lazy="selectin")


class ServiceType(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "service_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="maintenance")
    interval_type: Mapped[str] = mapped_column(String(16), nullable=False, default="on_demand")
    interval_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimated_duration: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    base_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="PHP")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    links: Mapped[list[ServiceTypeCommonService]] = relationship(
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ServiceTypeCommonService.sequence",
    )

    @property
    def common_services(self) -> list[CommonService]:
        return [link.common_service for link in self.links]

    @property
    def interval_description(self) -> str | None:
        if self.interval_type == "on_demand":
            return "On demand"
        n = self.interval_value
        if not n:
            return None
        if self.interval_type == "mileage":
            return f"Every {n:,} km"
        if self.interval_type == "time":
            if n % 12 == 0:
                years = n // 12
                return f"Every {years} year{'s' if years != 1 else ''}"
            return f"Every {n} month{'s' if n != 1 else ''}"
        return None

    @property
    def total_price(self) -> Decimal:
        return Decimal(self.base_price or 0) + sum((Decimal(c.standard_price or 0) for c in self.common_services), Decimal("0"))

    @property
    def total_duration(self) -> Decimal:
        return Decimal(self.estimated_duration or 0) + sum(
            (Decimal(c.estimated_duration or 0) for c in self.common_services), Decimal("0")
        )
