"""
Lead scoring heuristics.

All scores are weighted point sums on a 0-100 scale. The functions here are pure except
`detect_suspicious_lead`, which looks up other leads for duplicates.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterable

from sqlalchemy import func

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

BASE_LEAD_SCORE = 15
SOURCE_POINTS = {"web_form": 20, "phone": 30, "walk_in": 40, "referral": 35, "social_media": 15}
PRIORITY_POINTS = {"low": 0, "medium": 10, "high": 20, "urgent": 30}
TAG_POINTS = 5

BASE_CONVERSION = 50
STATUS_CONVERSION = {"new": -10, "contacted": 0, "qualified": 15, "hot": 30, "unqualified": -40, "lost": -50}
TIMELINE_CONVERSION = {"immediate": 20, "soon": 10, "month": 5, "quarter": 0, "exploring": -10}
BUDGET_CONVERSION = 10

DISPOSABLE_DOMAINS = frozenset(
    {
        "tempmail.com",
        "10minutemail.com",
        "guerrillamail.com",
        "mailinator.com",
        "throwaway.email",
        "temp-mail.org",
        "yopmail.com",
        "trashmail.com",
    }
)
UNREALISTIC_BUDGET = Decimal("100000")
SUSPICIOUS_THRESHOLD = 70

_DIGIT_RUN = re.compile(r"\d{3,}")


def calculate_lead_score(source: str | None, priority: str | None, tags: Iterable[Any] | None = None) -> int:
    score = BASE_LEAD_SCORE
    score += SOURCE_POINTS.get(source or "", 0)
    score += PRIORITY_POINTS.get(priority or "", 0)
    score += TAG_POINTS * len(list(tags or []))
    return min(100, score)


def calculate_conversion_probability(status: str | None, budget_min: Any, purchase_timeline: str | None) -> int:
    probability = BASE_CONVERSION
    probability += STATUS_CONVERSION.get(status or "", 0)
    if budget_min is not None and Decimal(str(budget_min)) > 0:
        probability += BUDGET_CONVERSION
    probability += TIMELINE_CONVERSION.get(purchase_timeline or "", 0)
    return max(0, min(100, probability))


def _suspicious_name(name: str | None) -> bool:
    if not name:
        return False
    if _DIGIT_RUN.search(name):
        return True
    letters = [c for c in name if c.isalpha()]
    return bool(letters) and name.upper() == name


def detect_suspicious_lead(s: "Session", data: dict, exclude_id: int | None = None, now: datetime | None = None) -> tuple[int, list[str]]:
    """
    Score how likely a lead is fake, with the reasons that contributed.

    Duplicate checks only consider live leads; the IP check looks back 24 hours.
    """
    from app.dms.modules.leads.models import Lead

    now = now or datetime.utcnow()
    score = 0
    flags: list[str] = []

    def others():
        q = s.query(Lead).filter(Lead.deleted_at.is_(None))
        if exclude_id:
            q = q.filter(Lead.id != exclude_id)
        return q

    email = (data.get("email") or "").strip().lower()
    if email:
        if others().filter(func.lower(Lead.email) == email).first():
            score += 30
            flags.append("duplicate_email")
        domain = email.rsplit("@", 1)[-1]
        if domain in DISPOSABLE_DOMAINS:
            score += 40
            flags.append("suspicious_email")

    phone = (data.get("phone") or "").strip()
    if phone and others().filter(Lead.phone == phone).first():
        score += 25
        flags.append("duplicate_phone")

    ip = (data.get("ip_address") or "").strip()
    if ip and others().filter(Lead.ip_address == ip, Lead.created_at >= now - timedelta(hours=24)).first():
        score += 20
        flags.append("duplicate_ip")

    if not (data.get("location") or "").strip() or not (data.get("vehicle_interest") or "").strip():
        score += 10
        flags.append("incomplete_info")

    budget = data.get("budget_min")
    if budget not in (None, ""):
        amount = Decimal(str(budget))
        if 0 < amount < UNREALISTIC_BUDGET:
            score += 15
            flags.append("unrealistic_budget")

    if _suspicious_name(data.get("name")):
        score += 10
        flags.append("suspicious_name")

    return min(100, score), flags
