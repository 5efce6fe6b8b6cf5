from decimal import Decimal

import pytest

from app.dms.db import session_scope
from app.dms.modules.service_catalog.models import ServiceType
from app.dms.modules.service_catalog.service import (
    create_common_service,
    create_service_type,
    delete_service_type,
    generate_code,
    parse_common_service_ids,
    update_service_type,
    validate_common_service_payload,
    validate_service_type_payload,
)
from app.dms.utils import BusinessRuleError

from conftest import get_admin, login, post


def _common(s, name, price, hours, code=None):
    payload = {"name": name, "category": "maintenance", "standard_price": price, "estimated_duration": hours, "is_active": True}
    if code:
        payload["code"] = code
    return create_common_service(s, payload, get_admin(s))


def test_generate_code():
    assert generate_code("Oil Change Service", []) == "OCS"
    assert generate_code("Oil Change Service", ["OCS", "OCS2"]) == "OCS3"
    assert generate_code("  ", []) == "SVC"


def test_parse_common_service_ids_keeps_order():
    assert parse_common_service_ids("3, 1,3,x,,2") == [3, 1, 2]
    assert parse_common_service_ids(None) == []


def test_common_service_codes(app):
    with session_scope(app) as s:
        first = _common(s, "Oil Change", "800", "0.5")
        second = _common(s, "Oil Check", "100", "0.25")
        assert (first.code, second.code) == ("OC", "OC2")
        assert _common(s, "Tire Rotation", "300", "0.5", code="rot").code == "ROT"
        assert validate_common_service_payload(s, {"name": "X", "category": "maintenance", "code": "oc"}) == ["Code already exists."]
        assert validate_common_service_payload(s, {"name": "X", "category": "maintenance", "code": "oc"}, first.id) == []


def test_service_type_validation(app):
    with session_scope(app) as s:
        errors = validate_service_type_payload(
            s, {"category": "maintenance", "interval_type": "time", "interval_value": "", "common_service_ids": "99"}
        )
        assert "Name is required." in errors
        assert "Interval value is required for mileage and time based services." in errors
        assert "Unknown common service id(s): 99" in errors
        assert "Interval value must be at least 1." in validate_service_type_payload(
            s, {"name": "PMS", "category": "maintenance", "interval_type": "mileage", "interval_value": "0"}
        )


def test_service_type_totals_and_interval(app):
    with session_scope(app) as s:
        oil = _common(s, "Oil Change", "800", "0.5")
        filt = _common(s, "Filter Replacement", "450", "0.25")
        st = create_service_type(
            s,
            {
                "name": "Periodic Maintenance",
                "category": "maintenance",
                "interval_type": "mileage",
                "interval_value": "10000",
                "base_price": "1000",
                "estimated_duration": "1",
                "common_service_ids": f"{filt.id},{oil.id}",
            },
            get_admin(s),
            None,
        )
        assert st.code == "PM"
        assert [c.name for c in st.common_services] == ["Filter Replacement", "Oil Change"]
        assert st.total_price == Decimal("2250")
        assert st.total_duration == Decimal("1.75")
        assert st.interval_description == "Every 10,000 km"

        update_service_type(
            s, st, {"name": "Periodic Maintenance", "category": "maintenance", "interval_type": "time", "interval_value": "6", "base_price": "1000", "common_service_ids": str(oil.id)}, get_admin(s)
        )
        assert [c.name for c in st.common_services] == ["Oil Change"]
        assert st.interval_description == "Every 6 months"
        st.interval_value = 24
        assert st.interval_description == "Every 2 years"
        st.interval_type = "on_demand"
        assert st.interval_description == "On demand"


def test_on_demand_drops_interval_value(app):
    with session_scope(app) as s:
        st = create_service_type(
            s, {"name": "Diagnostics", "category": "diagnostic", "interval_type": "on_demand", "interval_value": "5"}, get_admin(s), None
        )
        assert st.interval_value is None
        assert st.total_price == Decimal("0")


def test_service_type_in_use_cannot_be_deleted(app):
    from app.dms.modules.work_orders.service import create_work_order

    with session_scope(app) as s:
        admin = get_admin(s)
        st = create_service_type(s, {"name": "Brake Job", "category": "repair", "interval_type": "on_demand"}, admin, None)
        create_work_order(
            s, {"customer_name": "Juan", "vehicle_model": "Vios", "service_type_id": str(st.id), "customer_concerns": "Brakes squeal"}, admin, None
        )
        with pytest.raises(BusinessRuleError, match="open work orders"):
            delete_service_type(s, st, admin)


def test_service_type_form(client, app):
    with session_scope(app) as s:
        oil_id = _common(s, "Oil Change", "800", "0.5").id
    login(client)
    r = post(
        client,
        "/admin/service-types/new",
        {"name": "Basic PMS", "category": "maintenance", "interval_type": "time", "interval_value": "12", "common_service_ids": str(oil_id), "is_available": "on"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        st = s.query(ServiceType).one()
        assert (st.code, st.is_available) == ("BP", True)
        st_id = st.id
    page = client.get(f"/admin/service-types/{st_id}").data
    assert b"Every 1 year" in page
    assert b"Oil Change" in page
