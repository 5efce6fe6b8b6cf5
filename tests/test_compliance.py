from datetime import date, datetime, time, timedelta

import pytest

from app.dms.db import session_scope
from app.dms.models import ActivityLog, User
from app.dms.modules.compliance.models import (
    ComplianceChecklist,
    ComplianceChecklistAssignment,
    ComplianceChecklistAssignmentItem,
    ComplianceReminder,
    ComplianceReminderEvent,
)
from app.dms.modules.compliance.service import (
    add_months,
    assignments_for_user,
    calculate_next_due_at,
    cancel_reminder,
    complete_checklist,
    create_checklist,
    create_reminder,
    delete_checklist,
    parse_items_text,
    parse_triggers_text,
    process_due_reminders,
    reminders_for_user,
    toggle_assignment_item,
    tracked_items,
    validate_checklist_payload,
    validate_reminder_payload,
)
from app.dms.utils import BusinessRuleError

from conftest import branch_id, csrf, get_admin, login, make_user, post

CHECKLIST = {
    "title": "Fire safety walk",
    "code": "fire-01",
    "status": "active",
    "frequency_type": "monthly",
    "start_date": "2026-02-01",
    "due_time": "09:00",
    "is_recurring": "1",
    "escalation_offset_hours": "48",
    "advance_reminder_offsets": "72, 24",
}
TRIGGERS = "advance:24:email,sms\ndue\nescalation:12:email"


def _checklist(**kw):
    values = {"frequency_interval": 1, "is_recurring": True, "due_time": None}
    values.update(kw)
    return ComplianceChecklist(**values)


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2024, 1, 31, 9, 0), 1) == datetime(2024, 2, 29, 9, 0)
    assert add_months(datetime(2023, 11, 30), 3) == datetime(2024, 2, 29)
    assert add_months(datetime(2024, 12, 15), 1) == datetime(2025, 1, 15)


def test_next_due_monthly_does_not_drift():
    c = _checklist(frequency_type="monthly", start_date=date(2024, 1, 31), due_time=time(9, 0))
    assert calculate_next_due_at(c, datetime(2024, 2, 15)) == datetime(2024, 2, 29, 9, 0)
    assert calculate_next_due_at(c, datetime(2024, 3, 1)) == datetime(2024, 3, 31, 9, 0)


def test_next_due_other_frequencies():
    weekly = _checklist(frequency_type="weekly", frequency_interval=2, start_date=date(2026, 1, 5), due_time=time(8, 0))
    assert calculate_next_due_at(weekly, datetime(2026, 1, 20, 12, 0)) == datetime(2026, 2, 2, 8, 0)

    quarterly = _checklist(frequency_type="quarterly", start_date=date(2026, 1, 15))
    assert calculate_next_due_at(quarterly, datetime(2026, 4, 15)) == datetime(2026, 7, 15)

    biennial = _checklist(frequency_type="custom", custom_frequency_unit="years", custom_frequency_value=2, start_date=date(2025, 3, 1))
    assert calculate_next_due_at(biennial, datetime(2026, 1, 1)) == datetime(2027, 3, 1)

    future = _checklist(frequency_type="daily", start_date=date(2030, 1, 1))
    assert calculate_next_due_at(future, datetime(2026, 1, 1)) == datetime(2030, 1, 1)

    once = _checklist(frequency_type="daily", start_date=date(2025, 1, 1), is_recurring=False)
    assert calculate_next_due_at(once, datetime(2026, 1, 1)) == datetime(2025, 1, 1)
    assert calculate_next_due_at(_checklist(frequency_type="daily", start_date=None)) is None


def test_parse_items_and_triggers():
    assert parse_items_text("Check extinguishers\n?Photo log\n\n") == [
        {"title": "Check extinguishers", "is_required": True, "sort_order": 0},
        {"title": "Photo log", "is_required": False, "sort_order": 1},
    ]
    assert parse_triggers_text("advance:24:email,sms\ndue") == [
        {"trigger_type": "advance", "offset_hours": "24", "channels": ["email", "sms"]},
        {"trigger_type": "due", "offset_hours": "0", "channels": ["email"]},
    ]


def test_checklist_validation(app):
    with session_scope(app) as s:
        create_checklist(s, dict(CHECKLIST), [], [], get_admin(s), None, now=datetime(2026, 1, 1))
        errors = validate_checklist_payload(
            s,
            {"code": "FIRE-01", "frequency_type": "custom", "advance_reminder_offsets": "24, soon"},
            [{"title": " "}],
            [{"trigger_type": "later", "offset_hours": "-1"}],
        )
        assert errors == [
            "Title is required.",
            "Code is already used by another checklist.",
            "Custom frequency unit is required.",
            "Custom frequency value is required.",
            "Advance reminder offsets must be whole hours.",
            "Checklist items need a title.",
            "Invalid trigger type. Must be one of: advance, due, escalation",
            "Trigger offset must be at least 0.",
        ]


def test_reminders_scheduled_from_triggers(app):
    due = datetime(2026, 2, 1, 9, 0)
    with session_scope(app) as s:
        checklist = create_checklist(
            s, dict(CHECKLIST), parse_items_text("Extinguishers\n?Photos"), parse_triggers_text(TRIGGERS), get_admin(s), None,
            now=datetime(2026, 1, 1),
        )
        assert checklist.code == "FIRE-01"
        assert checklist.next_due_at == due
        assert [i.is_required for i in checklist.items] == [True, False]

        by_kind = sorted((r.reminder_type, r.remind_at, r.delivery_channel) for r in checklist.reminders)
        assert by_kind == [
            ("advance", due - timedelta(hours=72), "email"),
            ("advance", due - timedelta(hours=24), "email"),
            ("due", due, "email"),
            ("escalation", due + timedelta(hours=12), "email"),
        ]
        assert {r.escalate_at for r in checklist.reminders} == {due + timedelta(hours=48)}
        assert [r.auto_escalate for r in checklist.reminders if r.reminder_type == "escalation"] == [True]


def test_process_due_reminders(app):
    with session_scope(app) as s:
        create_checklist(s, dict(CHECKLIST), [], parse_triggers_text(TRIGGERS), get_admin(s), None, now=datetime(2026, 1, 1))

        preview = process_due_reminders(s, dry_run=True, now=datetime(2026, 2, 1, 10, 0))
        assert (preview.processed, preview.escalated, preview.dry_run) == (3, 0, True)
        assert s.query(ComplianceReminder).filter(ComplianceReminder.status == "scheduled").count() == 4

        result = process_due_reminders(s, now=datetime(2026, 2, 2))
        assert (result.processed, result.escalated) == (4, 1)
        statuses = sorted(r.status for r in s.query(ComplianceReminder))
        assert statuses == ["escalated", "sent", "sent", "sent"]
        assert s.query(ComplianceReminderEvent).count() == 4
        assert all(r.sent_count == 1 for r in s.query(ComplianceReminder))

        assert process_due_reminders(s, now=datetime(2026, 2, 3)).processed == 0


def test_complete_rolls_schedule_forward(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        checklist = create_checklist(s, dict(CHECKLIST), [], parse_triggers_text("due"), admin, None, now=datetime(2026, 1, 1))
        complete_checklist(s, checklist, admin, now=datetime(2026, 2, 1, 12, 0))
        assert checklist.next_due_at == datetime(2026, 3, 1, 9, 0)
        statuses = sorted(r.status for r in checklist.reminders)
        assert statuses.count("cancelled") == 3
        open_reminders = [r for r in checklist.reminders if r.status == "scheduled"]
        assert {r.due_at for r in open_reminders} == {datetime(2026, 3, 1, 9, 0)}

        delete_checklist(s, checklist, admin)
        assert all(r.status == "cancelled" for r in checklist.reminders)


def test_inactive_checklists_get_no_reminders(app):
    with session_scope(app) as s:
        admin = get_admin(s)
        checklist = create_checklist(
            s, dict(CHECKLIST, status="inactive"), [], parse_triggers_text("due"), admin, None, now=datetime(2026, 1, 1)
        )
        assert checklist.reminders == []
        with pytest.raises(BusinessRuleError, match="Only active checklists"):
            complete_checklist(s, checklist, admin)


def test_manual_reminders(app):
    assert validate_reminder_payload({"due_at": "2026-02-02T09:00", "escalate_at": "2026-02-01T09:00"}) == [
        "Title is required.",
        "Remind at is required.",
        "Escalate at must be on or after the due date.",
    ]
    with session_scope(app) as s:
        admin = get_admin(s)
        reminder = create_reminder(s, {"title": "Renew permit", "remind_at": "2026-02-01T08:00"}, admin, None)
        assert (reminder.reminder_type, reminder.priority, reminder.status) == ("custom", "medium", "scheduled")
        cancel_reminder(s, reminder, admin)
        with pytest.raises(BusinessRuleError, match="already cancelled"):
            cancel_reminder(s, reminder, admin)

        sent = create_reminder(s, {"title": "Audit files", "remind_at": "2026-02-01T08:00", "status": "sent"}, admin, None)
        with pytest.raises(BusinessRuleError, match="already sent"):
            cancel_reminder(s, sent, admin)


def test_checklist_form_and_process_button(client, app):
    login(client)
    payload = dict(CHECKLIST, is_recurring="on", items="Extinguishers\n?Photos", triggers="due")
    r = post(client, "/admin/compliance/checklists/new", payload)
    assert r.status_code == 302
    with session_scope(app) as s:
        checklist = s.query(ComplianceChecklist).one()
        assert len(checklist.items) == 2 and len(checklist.triggers) == 1
        past = (datetime.utcnow() - timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M")
        create_reminder(s, {"title": "Overdue check", "remind_at": past}, get_admin(s), None)

    r = post(client, "/admin/compliance/reminders/process", {"dry_run": "1"}, follow_redirects=True)
    assert b"1 reminder(s) would be processed, 0 escalated." in r.data
    r = post(client, "/admin/compliance/reminders/process", follow_redirects=True)
    assert b"1 reminder(s) processed, 0 escalated." in r.data


def _assigned_checklists(app):
    rep = make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    mnl, qc = branch_id(app, "MNL"), branch_id(app, "QC")
    with session_scope(app) as s:
        admin = get_admin(s)
        mine = create_checklist(
            s, dict(CHECKLIST, assigned_user_id=str(rep)), parse_items_text("Extinguishers\nExits\n?Photos"), [], admin, None,
            now=datetime(2026, 1, 1),
        )
        create_checklist(
            s, dict(CHECKLIST, code="desk-01", title="Desk audit", start_date="2026-03-01", assigned_role="sales_rep"),
            [], [], admin, None, now=datetime(2026, 1, 1),
        )
        create_checklist(s, dict(CHECKLIST, code="qc-01", title="QC walk"), [], [], admin, qc, now=datetime(2026, 1, 1))
        create_checklist(
            s, dict(CHECKLIST, code="old-01", title="Old walk", status="archived", assigned_user_id=str(rep)),
            [], [], admin, mnl, now=datetime(2026, 1, 1),
        )
        return rep, mine.id


def test_assignments_follow_user_role_and_branch(app):
    rep_id, _ = _assigned_checklists(app)
    with session_scope(app) as s:
        rep = s.get(User, rep_id)
        assignments = assignments_for_user(s, rep)
        assert [a.checklist.title for a in assignments] == ["Fire safety walk", "Desk audit"]
        first = assignments[0]
        assert [ai.checklist_item.title for ai in tracked_items(first)] == ["Extinguishers", "Exits", "Photos"]
        assert (first.status, first.progress_percentage) == ("pending", 0)
        ids = [a.id for a in assignments]

    with session_scope(app) as s:
        again = assignments_for_user(s, s.get(User, rep_id))
        assert [a.id for a in again] == ids
        assert s.query(ComplianceChecklistAssignmentItem).count() == 3


def test_toggling_items_moves_progress_and_status(app):
    rep_id, _ = _assigned_checklists(app)
    t0 = datetime(2026, 2, 1, 8, 0)
    with session_scope(app) as s:
        rep = s.get(User, rep_id)
        assignment = assignments_for_user(s, rep)[0]
        items = tracked_items(assignment)

        result = toggle_assignment_item(s, items[0], rep, True, notes="All tagged", now=t0)
        assert (result["progress_percentage"], result["status"]) == (33, "in_progress")
        assert assignment.started_at == t0
        assert (items[0].completed_by, items[0].notes) == (rep.id, "All tagged")

        toggle_assignment_item(s, items[1], rep, True, now=t0)
        done = toggle_assignment_item(s, items[2], rep, True, now=t0 + timedelta(hours=1))
        assert (done["progress_percentage"], done["status"]) == (100, "completed")
        assert assignment.completed_at == t0 + timedelta(hours=1)

        reopened = toggle_assignment_item(s, items[1], rep, False, now=t0 + timedelta(hours=2))
        assert (reopened["progress_percentage"], reopened["status"]) == (67, "in_progress")
        assert assignment.completed_at is None and items[1].completed_at is None
        assert assignment.started_at == t0

        with pytest.raises(BusinessRuleError, match="Only the assigned user"):
            toggle_assignment_item(s, items[0], get_admin(s), False)
        assert s.query(ActivityLog).filter(ActivityLog.action == "compliance.assignment_item_toggled").count() == 4


def test_archived_checklist_cannot_be_ticked(app):
    rep_id, checklist_id = _assigned_checklists(app)
    with session_scope(app) as s:
        rep = s.get(User, rep_id)
        item = tracked_items(assignments_for_user(s, rep)[0])[0]
        s.get(ComplianceChecklist, checklist_id).status = "archived"
        with pytest.raises(BusinessRuleError, match="no longer open"):
            toggle_assignment_item(s, item, rep, True)


def test_reminder_center_matches_user_role_and_branch(app):
    rep_id = make_user(app, "rep@example.com", "sales_rep", branch_code="MNL")
    mnl, qc = branch_id(app, "MNL"), branch_id(app, "QC")
    with session_scope(app) as s:
        admin = get_admin(s)

        def remind(title, at, branch=None, **kw):
            create_reminder(s, dict(title=title, remind_at=at, **kw), admin, branch)

        remind("Mine", "2026-02-03T08:00", assigned_user_id=str(rep_id))
        remind("Role", "2026-02-01T08:00", assigned_role="sales_rep")
        remind("Branch", "2026-02-02T08:00", mnl)
        remind("Other branch", "2026-02-01T08:00", qc)
        remind("Admin only", "2026-02-01T08:00", mnl, assigned_user_id=str(admin.id))
        gone = create_reminder(s, {"title": "Deleted", "remind_at": "2026-02-01T08:00", "assigned_user_id": str(rep_id)}, admin, mnl)
        gone.deleted_at = datetime.utcnow()
        s.flush()

        assert [r.title for r in reminders_for_user(s, s.get(User, rep_id))] == ["Role", "Branch", "Mine"]


def test_my_checklists_page_and_toggle_routes(client, app):
    rep_id, _ = _assigned_checklists(app)
    make_user(app, "manager@example.com", "sales_manager", branch_code="MNL")
    login(client, "rep@example.com")
    r = client.get("/admin/compliance/my-checklists")
    assert r.status_code == 200
    assert b"Fire safety walk" in r.data and b"Desk audit" in r.data
    assert b"QC walk" not in r.data

    with session_scope(app) as s:
        assignment = (
            s.query(ComplianceChecklistAssignment).filter(ComplianceChecklistAssignment.user_id == rep_id).order_by(ComplianceChecklistAssignment.id).first()
        )
        assignment_id = assignment.id
        first_item, second_item = [ai.id for ai in tracked_items(assignment)][:2]
    url = f"/admin/compliance/assignments/{assignment_id}/items/{first_item}/toggle"

    r = post(client, url, {"is_completed": "1"}, follow_redirects=True)
    assert b"Fire safety walk: 33% complete." in r.data

    r = client.post(
        f"/admin/compliance/assignments/{assignment_id}/items/{second_item}/toggle",
        json={"is_completed": True},
        headers={"X-CSRF-Token": csrf(client)},
    )
    assert r.status_code == 200
    assert r.json["success"] is True
    assert (r.json["data"]["progress_percentage"], r.json["data"]["status"]) == (67, "in_progress")

    assert post(client, f"/admin/compliance/assignments/{assignment_id}/items/999/toggle", {"is_completed": "1"}).status_code == 404

    client.get("/auth/logout")
    login(client, "manager@example.com")
    assert post(client, url, {"is_completed": "0"}).status_code == 403
