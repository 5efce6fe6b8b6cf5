from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_

from app.dms.audit import log_created, log_updated, record_event, restore, soft_delete
from app.dms.constants import PART_CATEGORIES, PART_CONDITIONS, PART_STATUSES
from app.dms.utils import (
    BusinessRuleError,
    apply_changes,
    check_enum,
    check_number,
    clean,
    next_sequence_id,
    parse_bool,
    parse_decimal,
    parse_int,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.dms.models import User
    from app.dms.modules.parts.models import PartInventory

MODULE = "parts"

_TEXT_FIELDS = (
    "part_name",
    "description",
    "manufacturer",
    "oem_part_number",
    "warehouse_location",
    "aisle",
    "rack",
    "bin",
    "primary_supplier",
    "notes",
    "barcode",
)
_INT_FIELDS = ("quantity_on_hand", "quantity_reserved", "minimum_stock_level", "maximum_stock_level", "reorder_quantity", "warranty_months")


def validate_part_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("part_name")):
        errors.append("Part name is required.")
    check_enum(errors, "Category", payload.get("category"), PART_CATEGORIES, required=True)
    check_enum(errors, "Condition", payload.get("condition"), PART_CONDITIONS)
    check_enum(errors, "Status", payload.get("status"), PART_STATUSES)
    for f in _INT_FIELDS:
        check_number(errors, f.replace("_", " ").capitalize(), payload.get(f), minimum=0)
    check_number(errors, "Unit cost", payload.get("unit_cost"), minimum=0, required=True)
    check_number(errors, "Selling price", payload.get("selling_price"), minimum=0, required=True)
    on_hand = parse_int(payload.get("quantity_on_hand")) or 0
    reserved = parse_int(payload.get("quantity_reserved")) or 0
    if reserved > on_hand:
        errors.append("Reserved quantity cannot exceed quantity on hand.")
    min_level = parse_int(payload.get("minimum_stock_level"))
    max_level = parse_int(payload.get("maximum_stock_level"))
    if min_level is not None and max_level is not None and max_level < min_level:
        errors.append("Maximum stock level must be greater than or equal to the minimum.")
    return errors


def _values(payload: dict) -> dict[str, Any]:
    values: dict[str, Any] = {f: clean(payload.get(f)) for f in _TEXT_FIELDS}
    for f in _INT_FIELDS:
        values[f] = parse_int(payload.get(f))
    for f in ("quantity_on_hand", "quantity_reserved", "minimum_stock_level"):
        values[f] = values[f] or 0
    values.update(
        category=clean(payload.get("category")) or "other",
        condition=clean(payload.get("condition")) or "new",
        status=clean(payload.get("status")) or "active",
        unit_cost=parse_decimal(payload.get("unit_cost")) or Decimal("0"),
        selling_price=parse_decimal(payload.get("selling_price")) or Decimal("0"),
        is_genuine=parse_bool(payload.get("is_genuine")),
    )
    return values


def create_part(s: "Session", payload: dict, user: "User", branch_id: int | None) -> "PartInventory":
    from app.dms.modules.parts.models import PartInventory

    part = PartInventory(
        part_number=next_sequence_id(s, PartInventory.part_number, "PART"),
        branch_id=branch_id,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **_values(payload),
    )
    part.markup_percentage = part.calculate_markup()
    s.add(part)
    s.flush()
    log_created(
        s, MODULE, part, user, f"Part {part.part_name} created",
        {"part_number": part.part_number, "category": part.category, "quantity": part.quantity_on_hand},
    )
    return part


def update_part(s: "Session", part: "PartInventory", payload: dict, user: "User") -> "PartInventory":
    changes = apply_changes(part, _values(payload))
    if "unit_cost" in changes or "selling_price" in changes:
        part.markup_percentage = part.calculate_markup()
    part.updated_by_user_id = user.id
    log_updated(s, MODULE, part, user, f"Part {part.part_name} updated", {"changes": changes})
    return part


def adjust_stock(s: "Session", part: "PartInventory", delta: int, reason: str | None, user: "User") -> "PartInventory":
    """Move quantity_on_hand by delta; stock never goes below zero."""
    if delta == 0:
        raise BusinessRuleError("Adjustment quantity cannot be zero.")
    new_qty = part.quantity_on_hand + delta
    if new_qty < 0:
        raise BusinessRuleError(f"Insufficient stock. Only {part.quantity_on_hand} on hand.")
    old_qty = part.quantity_on_hand
    part.quantity_on_hand = new_qty
    part.quantity_reserved = min(part.quantity_reserved or 0, new_qty)
    part.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action=f"{MODULE}.adjust_stock",
        description=f"Stock for {part.part_name} adjusted by {delta:+d}",
        entity_type="PartInventory",
        entity_id=str(part.id),
        event="updated",
        reason=clean(reason),
        metadata={"old": old_qty, "new": new_qty, "delta": delta},
    )
    return part


def delete_part(s: "Session", part: "PartInventory", user: "User") -> None:
    soft_delete(s, part, user, MODULE, f"Part {part.part_name}")


def restore_part(s: "Session", part: "PartInventory", user: "User") -> None:
    restore(s, part, user, MODULE, f"Part {part.part_name}", "Part")


def filter_stock(q: "Query", stock: str | None) -> "Query":
    from app.dms.modules.parts.models import PartInventory

    if stock == "low":
        return q.filter(and_(PartInventory.quantity_on_hand <= PartInventory.minimum_stock_level, PartInventory.quantity_on_hand > 0))
    if stock == "out":
        return q.filter(PartInventory.quantity_on_hand <= 0)
    if stock == "in":
        return q.filter(PartInventory.quantity_on_hand > 0)
    return q


def parts_stats(base_query: "Query") -> dict[str, Any]:
    parts = base_query.all()
    return {
        "total_parts": len(parts),
        "low_stock": sum(1 for p in parts if p.is_low_stock),
        "out_of_stock": sum(1 for p in parts if p.is_out_of_stock),
        "inventory_value": f"{sum((p.inventory_value for p in parts), Decimal('0')):,.2f}",
    }
