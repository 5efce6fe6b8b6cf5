from datetime import datetime
from decimal import Decimal

import pytest

from app.dms.db import session_scope
from app.dms.modules.parts.service import create_part
from app.dms.modules.warranty.models import WarrantyClaim
from app.dms.modules.warranty.service import (
    add_part,
    add_service,
    claim_stats,
    close_claim,
    create_claim,
    decide_claim,
    delete_claim,
    mark_paid,
    remove_part,
    start_review,
    submit_claim,
    update_claim,
    validate_claim_payload,
    validate_part_line,
    validate_service_line,
)
from app.dms.utils import BusinessRuleError

from conftest import get_admin, login, make_user, post

CLAIM = {"claim_type": "both", "failure_description": "Transmission slips in 3rd gear", "claim_date": "2026-04-02"}


def _claim_with_lines(s, admin):
    claim = create_claim(s, dict(CLAIM), admin, None)
    add_part(s, claim, {"part_name": "Clutch pack", "quantity": "2", "unit_price": "1500"}, admin)
    add_service(s, claim, {"service_name": "Transmission overhaul", "labor_hours": "3.5", "labor_rate": "800"}, admin)
    return claim


def test_claim_validation():
    errors = validate_claim_payload(
        {"claim_type": "tires", "failure_description": "noise", "incident_date": "2026-05-01", "claim_date": "2026-04-01",
         "warranty_start_date": "2026-01-01", "warranty_end_date": "2025-01-01"}
    )
    assert any(e.startswith("Invalid claim type.") for e in errors)
    assert "Failure description must be at least 10 characters." in errors
    assert "Incident date cannot be after the claim date." in errors
    assert "Warranty end date must be on or after the start date." in errors
    assert "Claim date is required." in validate_claim_payload({"claim_type": "parts", "failure_description": "Engine knocking"})
    assert validate_claim_payload(CLAIM) == []

    assert validate_part_line({"quantity": "0"}) == ["Part name or inventory part is required.", "Quantity must be at least 1."]
    assert "Labor rate is required." in validate_service_line({"service_name": "Diag", "labor_hours": "1"})


def test_line_items_drive_amounts(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        claim = _claim_with_lines(s, admin)
        assert claim.claim_id.startswith("WC-") and claim.claim_id.endswith("-001")
        assert claim.parts_claimed_amount == Decimal("3000")
        assert claim.labor_claimed_amount == Decimal("2800")
        assert claim.total_claimed_amount == Decimal("5800")

        remove_part(s, claim, claim.parts[0], admin)
        assert claim.parts_claimed_amount == Decimal("0")
        assert claim.total_claimed_amount == Decimal("2800")


def test_inventory_part_defaults_price(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        part = create_part(s, {"part_name": "Brake pad", "category": "brakes", "unit_cost": "300", "selling_price": "450"}, admin, None)
        claim = create_claim(s, dict(CLAIM), admin, None)
        line = add_part(s, claim, {"part_inventory_id": str(part.id), "quantity": "4"}, admin)
        assert (line.part_name, line.part_number) == ("Brake pad", part.part_number)
        assert line.total_price == Decimal("1800")
        with pytest.raises(BusinessRuleError, match="Inventory part not found"):
            add_part(s, claim, {"part_inventory_id": "999", "quantity": "1"}, admin)


def test_full_workflow(app):
    decided_at = datetime(2026, 4, 10, 9, 0)
    with session_scope(app) as s:
        admin = get_admin(s)
        empty = create_claim(s, dict(CLAIM), admin, None)
        with pytest.raises(BusinessRuleError, match="at least one part or service"):
            submit_claim(s, empty, admin)

        claim = _claim_with_lines(s, admin)
        with pytest.raises(BusinessRuleError, match="submitted or under-review"):
            decide_claim(s, claim, "approved", None, None, admin)

        submit_claim(s, claim, admin)
        assert claim.status == "submitted" and claim.submission_date is not None
        with pytest.raises(BusinessRuleError, match="Only draft claims"):
            submit_claim(s, claim, admin)

        start_review(s, claim, admin)
        assert claim.status == "under_review"
        with pytest.raises(BusinessRuleError, match="cannot be edited"):
            update_claim(s, claim, dict(CLAIM), admin)
        with pytest.raises(BusinessRuleError, match="cannot exceed"):
            decide_claim(s, claim, "partially_approved", Decimal("9000"), None, admin)

        decide_claim(s, claim, "partially_approved", Decimal("4000"), "  Labor capped  ", admin, now=decided_at)
        assert claim.status == "partially_approved"
        assert claim.approved_amount == Decimal("4000")
        assert claim.decision_date == decided_at
        assert claim.rejection_reason is None

        with pytest.raises(BusinessRuleError, match="paid or rejected"):
            close_claim(s, claim, admin)
        mark_paid(s, claim, admin)
        close_claim(s, claim, admin)
        assert claim.status == "closed"
        with pytest.raises(BusinessRuleError, match="Only draft claims can be deleted"):
            delete_claim(s, claim, admin)


def test_decisions(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        claim = _claim_with_lines(s, admin)
        submit_claim(s, claim, admin)
        with pytest.raises(BusinessRuleError, match="Invalid decision"):
            decide_claim(s, claim, "maybe", None, None, admin)
        with pytest.raises(BusinessRuleError, match="rejection reason"):
            decide_claim(s, claim, "rejected", None, "  ", admin)
        decide_claim(s, claim, "rejected", Decimal("100"), "Outside coverage", admin)
        assert claim.approved_amount == Decimal("0")
        assert claim.rejection_reason == "Outside coverage"
        with pytest.raises(BusinessRuleError, match="Only approved claims"):
            mark_paid(s, claim, admin)

        approved = _claim_with_lines(s, admin)
        submit_claim(s, approved, admin)
        decide_claim(s, approved, "approved", None, None, admin)
        assert approved.approved_amount == approved.total_claimed_amount

        assert claim_stats(s.query(WarrantyClaim)) == {
            "total": 2,
            "draft": 0,
            "pending_decision": 0,
            "approved": 1,
            "claimed_total": "11,600.00",
        }


def test_claim_routes(client, app):
    login(client)
    r = post(client, "/admin/warranty-claims/new", dict(CLAIM))
    assert r.status_code == 302
    with session_scope(app) as s:
        claim_pk = s.query(WarrantyClaim).one().id

    r = post(client, f"/admin/warranty-claims/{claim_pk}/submit", follow_redirects=True)
    assert b"Add at least one part or service before submitting." in r.data

    r = post(client, f"/admin/warranty-claims/{claim_pk}/parts/new", {"part_name": "Gasket", "quantity": "1", "unit_price": "250"}, follow_redirects=True)
    assert b"Part added." in r.data
    r = post(client, f"/admin/warranty-claims/{claim_pk}/submit", follow_redirects=True)
    assert b"submitted." in r.data

    r = post(client, f"/admin/warranty-claims/{claim_pk}/decide", {"status": "rejected"}, follow_redirects=True)
    assert b"A rejection reason is required." in r.data
    r = post(client, f"/admin/warranty-claims/{claim_pk}/decide", {"status": "approved"}, follow_redirects=True)
    assert b"approved." in r.data
    with session_scope(app) as s:
        claim = s.get(WarrantyClaim, claim_pk)
        assert claim.status == "approved"
        assert claim.approved_amount == Decimal("250")


def test_advisor_cannot_decide(client, app):
    with session_scope(app) as s:
        admin = get_admin(s)
        claim = _claim_with_lines(s, admin)
        submit_claim(s, claim, admin)
        claim_pk = claim.id
    make_user(app, "advisor@example.com", "service_advisor")
    login(client, "advisor@example.com")
    assert post(client, f"/admin/warranty-claims/{claim_pk}/decide", {"status": "approved"}).status_code == 403
