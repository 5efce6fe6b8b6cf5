from decimal import Decimal

import pytest

from app.dms.db import session_scope
from app.dms.modules.parts.models import PartInventory
from app.dms.modules.parts.service import (
    adjust_stock,
    create_part,
    filter_stock,
    parts_stats,
    update_part,
    validate_part_payload,
)
from app.dms.utils import BusinessRuleError

from conftest import branch_id, get_admin, login, make_user, post


def _part(s, name="Oil filter", **extra):
    payload = {"part_name": name, "category": "engine", "unit_cost": "200", "selling_price": "260", "quantity_on_hand": "10", "minimum_stock_level": "3"}
    payload.update(extra)
    return create_part(s, payload, get_admin(s), None)


def test_part_validation():
    errors = validate_part_payload(
        {"category": "spaceship", "quantity_on_hand": "2", "quantity_reserved": "5", "minimum_stock_level": "10", "maximum_stock_level": "4"}
    )
    assert "Part name is required." in errors
    assert any(e.startswith("Invalid category.") for e in errors)
    assert "Unit cost is required." in errors
    assert "Selling price is required." in errors
    assert "Reserved quantity cannot exceed quantity on hand." in errors
    assert "Maximum stock level must be greater than or equal to the minimum." in errors
    assert "Quantity on hand must be at least 0." in validate_part_payload({"quantity_on_hand": "-1"})


def test_create_part_computes_markup_and_location(app):
    with session_scope(app) as s:
        part = _part(s, aisle="A", rack="3", bin="12")
        assert part.part_number.startswith("PART-") and part.part_number.endswith("-001")
        assert part.markup_percentage == Decimal("30.00")
        assert part.full_location == "Aisle A - Rack 3 - Bin 12"
        assert part.inventory_value == Decimal("2000")
        assert part.stock_status == "in_stock"

        update_part(s, part, {"part_name": "Oil filter", "category": "engine", "unit_cost": "200", "selling_price": "300", "quantity_on_hand": "10"}, get_admin(s))
        assert part.markup_percentage == Decimal("50.00")
        assert part.full_location is None

        free = _part(s, "Sticker", unit_cost="0", selling_price="10")
        assert free.markup_percentage is None


def test_adjust_stock(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        part = _part(s, quantity_reserved="4")
        adjust_stock(s, part, -8, "Used on WO", admin)
        assert part.quantity_on_hand == 2
        assert part.quantity_reserved == 2
        assert part.stock_status == "low_stock"
        assert part.available_quantity == 0

        with pytest.raises(BusinessRuleError, match="Only 2 on hand"):
            adjust_stock(s, part, -3, None, admin)
        with pytest.raises(BusinessRuleError, match="cannot be zero"):
            adjust_stock(s, part, 0, None, admin)

        adjust_stock(s, part, -2, None, admin)
        assert part.stock_status == "out_of_stock"


def test_stock_filters_and_stats(app):
    with session_scope(app) as s:
        _part(s, "Plenty")
        _part(s, "Low", quantity_on_hand="2")
        _part(s, "None", quantity_on_hand="0")
        base = s.query(PartInventory)

        def names(q):
            return sorted(p.part_name for p in q.all())

        assert names(filter_stock(base, "low")) == ["Low"]
        assert names(filter_stock(base, "out")) == ["None"]
        assert names(filter_stock(base, "in")) == ["Low", "Plenty"]
        assert names(filter_stock(base, None)) == ["Low", "None", "Plenty"]

        stats = parts_stats(base)
        assert stats == {"total_parts": 3, "low_stock": 1, "out_of_stock": 1, "inventory_value": "2,400.00"}


def test_adjust_form(client, app):
    with session_scope(app) as s:
        part_pk = _part(s).id
    login(client)
    r = post(client, f"/admin/parts/{part_pk}/adjust", {"delta": "abc"}, follow_redirects=True)
    assert b"Quantity change must be a whole number." in r.data
    r = post(client, f"/admin/parts/{part_pk}/adjust", {"delta": "-11"}, follow_redirects=True)
    assert b"Insufficient stock. Only 10 on hand." in r.data
    r = post(client, f"/admin/parts/{part_pk}/adjust", {"delta": "5", "reason": "Delivery"}, follow_redirects=True)
    assert b"Stock adjusted. 15 on hand." in r.data


def test_technician_can_view_but_not_adjust(client, app):
    with session_scope(app) as s:
        part_pk = create_part(
            s, {"part_name": "Brake pad", "category": "brakes", "unit_cost": "1", "selling_price": "2"}, get_admin(s), branch_id(app, "MNL")
        ).id
    make_user(app, "tech@example.com", "technician", branch_code="MNL")
    login(client, "tech@example.com")
    assert client.get(f"/admin/parts/{part_pk}").status_code == 200
    assert post(client, f"/admin/parts/{part_pk}/adjust", {"delta": "1"}).status_code == 403
