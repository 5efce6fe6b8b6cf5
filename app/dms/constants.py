"""
Central constants for the DMS application.
"""
from __future__ import annotations

# Roles that see every branch.
ELEVATED_ROLES = ("admin", "auditor")

ROLES = {
    "admin": "Administrator",
    "auditor": "Auditor",
    "sales_manager": "Sales Manager",
    "sales_rep": "Sales Representative",
    "service_advisor": "Service Advisor",
    "technician": "Technician",
}

_CRUD = ("view", "create", "edit", "delete")

_MODULE_LABELS = {
    "branches": "Branches",
    "users": "Users",
    "roles": "Roles",
    "customers": "Customers",
    "surveys": "Surveys",
    "leads": "Leads",
    "pipelines": "Pipelines",
    "test_drives": "Test Drives",
    "vehicles": "Vehicles",
    "reservations": "Reservations",
    "parts": "Parts",
    "service_types": "Service Types",
    "work_orders": "Work Orders",
    "warranty": "Warranty Claims",
    "compliance": "Compliance",
}


def _build_permissions() -> list[tuple[str, str]]:
    perms: list[tuple[str, str]] = [("admin.view", "Admin: view shell")]
    for module, label in _MODULE_LABELS.items():
        for verb in _CRUD:
            perms.append((f"{module}.{verb}", f"{label}: {verb}"))
    perms += [
        ("leads.import", "Leads: import CSV"),
        ("leads.export", "Leads: export CSV"),
        ("customers.export", "Customers: export CSV"),
        ("vehicles.transfer", "Vehicles: transfer units"),
        ("parts.adjust", "Parts: adjust stock"),
        ("work_orders.upload", "Work Orders: upload photos"),
        ("warranty.upload", "Warranty Claims: upload photos"),
        ("warranty.decide", "Warranty Claims: record decision"),
        ("compliance.reminders", "Compliance: manage reminders"),
        ("activity_logs.view", "Activity Logs: view"),
        ("activity_logs.export", "Activity Logs: export"),
        ("time_tracking.view", "Time Tracking: view"),
    ]
    return perms


PERMISSIONS: list[tuple[str, str]] = _build_permissions()

_SALES = ("customers", "surveys", "leads", "pipelines", "test_drives", "reservations")
_SERVICE = ("parts", "service_types", "work_orders", "warranty")


def _keys_for(modules: tuple[str, ...], verbs: tuple[str, ...] = _CRUD) -> list[str]:
    return [f"{m}.{v}" for m in modules for v in verbs]


ROLE_PERMISSIONS: dict[str, list[str]] = {
    "admin": [k for k, _ in PERMISSIONS],
    "auditor": ["admin.view", "activity_logs.view", "activity_logs.export", "time_tracking.view"]
    + [f"{m}.view" for m in _MODULE_LABELS],
    "sales_manager": ["admin.view", "leads.import", "leads.export", "customers.export", "vehicles.view", "vehicles.transfer"]
    + _keys_for(_SALES),
    "sales_rep": ["admin.view", "vehicles.view"]
    + _keys_for(_SALES, ("view", "create", "edit")),
    "service_advisor": ["admin.view", "customers.view", "vehicles.view", "parts.adjust", "work_orders.upload", "warranty.upload"]
    + _keys_for(_SERVICE),
    "technician": ["admin.view", "work_orders.view", "work_orders.edit", "work_orders.upload", "parts.view", "service_types.view"],
}

# ---- Leads ----
LEAD_SOURCES = ("web_form", "phone", "walk_in", "referral", "social_media")
LEAD_STATUSES = ("new", "contacted", "qualified", "hot", "unqualified", "lost")
PRIORITIES = ("low", "medium", "high", "urgent")
PURCHASE_TIMELINES = ("immediate", "soon", "month", "quarter", "exploring")
LEADS_PER_PAGE = 15

# ---- Pipelines ----
PIPELINE_STAGES = (
    "lead",
    "qualified",
    "quote_sent",
    "test_drive_scheduled",
    "test_drive_completed",
    "reservation_made",
    "won",
    "lost",
)
CLOSED_STAGES = ("won", "lost")
FOLLOW_UP_FREQUENCIES = ("daily", "weekly", "biweekly", "monthly")

# ---- Customers ----
CUSTOMER_TYPES = ("individual", "corporate")
CUSTOMER_SEGMENTS = ("retail", "fleet", "puv_operator", "ap_dealer", "sub_dealer")
CUSTOMER_STATUSES = ("active", "inactive", "vip", "blacklisted")
GENDERS = ("male", "female", "other", "prefer_not_to_say")
SURVEY_STATUSES = ("pending", "completed", "expired")
SURVEY_RATING_FIELDS = (
    "overall_rating",
    "product_quality",
    "service_quality",
    "staff_friendliness",
    "facility_cleanliness",
    "value_for_money",
)

# ---- Test drives ----
TEST_DRIVE_STATUSES = ("pending_signature", "confirmed", "in_progress", "completed", "cancelled", "no_show")
TEST_DRIVE_TYPES = ("scheduled", "walk_in", "reservation")
ESIGNATURE_STATUSES = ("pending", "signed", "not_required")

# ---- Vehicles ----
VEHICLE_UNIT_STATUSES = ("in_stock", "reserved", "sold", "in_transit", "transferred", "disposed")
INACTIVE_UNIT_STATUSES = ("sold", "disposed")
RESERVATION_STATUSES = ("pending", "confirmed", "cancelled", "released")
PAYMENT_TYPES = ("cash", "bank_transfer", "gcash", "credit_card", "check", "other")

# ---- Parts ----
PART_CATEGORIES = (
    "engine",
    "transmission",
    "electrical",
    "body",
    "suspension",
    "brakes",
    "interior",
    "exterior",
    "accessories",
    "fluids",
    "filters",
    "other",
)
PART_CONDITIONS = ("new", "refurbished", "used", "oem", "aftermarket")
PART_STATUSES = ("active", "inactive", "discontinued", "out_of_stock", "on_order")

# ---- Service catalog ----
COMMON_SERVICE_CATEGORIES = ("maintenance", "repair", "inspection", "diagnostic")
SERVICE_TYPE_CATEGORIES = ("maintenance", "repair", "warranty", "inspection", "diagnostic")
INTERVAL_TYPES = ("mileage", "time", "on_demand")
SERVICE_TYPE_STATUSES = ("active", "inactive", "discontinued")

# ---- Work orders ----
WORK_ORDER_STATUSES = ("draft", "pending", "scheduled", "confirmed", "in_progress", "completed", "cancelled", "overdue")
WORK_ORDER_PRIORITIES = ("low", "normal", "high", "urgent")
PHOTO_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp")
PHOTO_MAX_BYTES = 10 * 1024 * 1024

# ---- Warranty ----
CLAIM_TYPES = ("parts", "labor", "both")
CLAIM_STATUSES = (
    "draft",
    "submitted",
    "under_review",
    "approved",
    "partially_approved",
    "rejected",
    "paid",
    "closed",
)
CLAIM_DECISIONS = ("approved", "partially_approved", "rejected")

# ---- Compliance ----
CHECKLIST_STATUSES = ("draft", "active", "inactive", "archived")
FREQUENCY_TYPES = ("daily", "weekly", "monthly", "quarterly", "yearly", "custom")
CUSTOM_FREQUENCY_UNITS = ("hours", "days", "weeks", "months", "years")
TRIGGER_TYPES = ("advance", "due", "escalation")
REMINDER_TYPES = ("advance", "due", "escalation", "custom")
REMINDER_STATUSES = ("scheduled", "pending", "triggered", "sent", "failed", "escalated", "cancelled")

# ---- Branches ----
BRANCH_STATUSES = ("active", "inactive")
