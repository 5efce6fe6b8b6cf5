from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Boolean, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.dms.models import AuthorMixin, Base, BranchScopedMixin, SoftDeleteMixin, TimestampMixin


class PartInventory(TimestampMixin, SoftDeleteMixin, AuthorMixin, BranchScopedMixin, Base):
    __tablename__ = "parts_inventory"
    __table_args__ = (
        Index("idx_parts_inventory_category", "category"),
        Index("idx_parts_inventory_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    part_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # PART-YYYY-NNN
    part_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    manufacturer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    oem_part_number: Mapped[str | None] = mapped_column(String(128), nullable=True)

    quantity_on_hand: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity_reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minimum_stock_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    maximum_stock_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reorder_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)

    warehouse_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    aisle: Mapped[str | None] = mapped_column(String(32), nullable=True)
    rack: Mapped[str | None] = mapped_column(String(32), nullable=True)
    bin: Mapped[str | None] = mapped_column(String(32), nullable=True)

    unit_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    selling_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    markup_percentage: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)

    condition: Mapped[str] = mapped_column(String(32), nullable=False, default="new")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    is_genuine: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    warranty_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    primary_supplier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    barcode: Mapped[str | None] = mapped_column(String(128), nullable=True)

    def calculate_markup(self) -> Decimal | None:
        cost = Decimal(self.unit_cost or 0)
        if cost <= 0:
            return None
        return ((Decimal(self.selling_price or 0) - cost) / cost * 100).quantize(Decimal("0.01"))

    @property
    def is_low_stock(self) -> bool:
        return 0 < self.quantity_on_hand <= self.minimum_stock_level

    @property
    def is_out_of_stock(self) -> bool:
        return self.quantity_on_hand <= 0

    @property
    def available_quantity(self) -> int:
        return max(0, self.quantity_on_hand - (self.quantity_reserved or 0))

    @property
    def stock_status(self) -> str:
        if self.is_out_of_stock:
            return "out_of_stock"
        if self.is_low_stock:
            return "low_stock"
        return "in_stock"

    @property
    def full_location(self) -> str | None:
        parts = []
        if self.aisle:
            parts.append(f"Aisle {self.aisle}")
        if self.rack:
            parts.append(f"Rack {self.rack}")
        if self.bin:
            parts.append(f"Bin {self.bin}")
        return " - ".join(parts) if parts else self.warehouse_location

    @property
    def inventory_value(self) -> Decimal:
        return Decimal(self.quantity_on_hand or 0) * Decimal(self.unit_cost or 0)
