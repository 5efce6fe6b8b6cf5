from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class BusinessRuleError(Exception):
    """Raised by services when a request is well-formed but not allowed."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def clean(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string."""
    if not s:
        return None
    if isinstance(s, date):
        return s
    s = s.strip()
    if not s:
        return None
    return date.fromisoformat(s)


def parse_datetime(s: str | None) -> datetime | None:
    """Parse ISO datetime (YYYY-MM-DDTHH:MM[:SS]) or a bare date."""
    if not s:
        return None
    if isinstance(s, datetime):
        return s
    s = s.strip()
    if not s:
        return None
    if len(s) == 10:
        return datetime.combine(date.fromisoformat(s), time.min)
    return datetime.fromisoformat(s)


def parse_time(s: str | None) -> time | None:
    if not s:
        return None
    if isinstance(s, time):
        return s
    s = s.strip()
    if not s:
        return None
    return time.fromisoformat(s)


def parse_int(s: Any) -> int | None:
    """Lenient int parse for optional form inputs; junk reads as None (validate with check_number)."""
    if s is None or (isinstance(s, str) and not s.strip()):
        return None
    try:
        return int(str(s).strip())
    except ValueError:
        try:
            f = float(str(s).strip().replace(",", ""))
        except ValueError:
            return None
        return int(f) if f.is_integer() else None


def parse_decimal(s: Any) -> Decimal | None:
    if s is None or (isinstance(s, str) and not s.strip()):
        return None
    try:
        d = Decimal(str(s).strip().replace(",", ""))
    except InvalidOperation as e:
        raise ValueError(f"Invalid number: {s}") from e
    if not d.is_finite():
        raise ValueError(f"Invalid number: {s}")
    return d


def parse_bool(s: Any) -> bool:
    if isinstance(s, bool):
        return s
    return (str(s or "").strip().lower()) in ("1", "true", "yes", "on")


def parse_tags(raw: Any) -> list[str]:
    """Accept a list or a comma separated string."""
    if not raw:
        return []
    if isinstance(raw, (list, tuple)):
        items = raw
    else:
        items = str(raw).split(",")
    return [t.strip() for t in items if t and str(t).strip()]


def parse_json_object(raw: str | None) -> tuple[dict | None, str | None]:
    """Parse JSON object from form input."""
    if not raw or not raw.strip():
        return None, None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        return None, f"JSON is invalid: {e}"
    if not isinstance(value, dict):
        return None, "Value must be a JSON object."
    return value, None


def check_enum(errors: list[str], label: str, value: Any, allowed: tuple[str, ...] | list[str], *, required: bool = False) -> None:
    v = (str(value).strip() if value is not None else "")
    if not v:
        if required:
            errors.append(f"{label} is required.")
        return
    if v not in allowed:
        errors.append(f"Invalid {label.lower()}. Must be one of: {', '.join(allowed)}")


def check_number(errors: list[str], label: str, value: Any, *, minimum: float | None = None, maximum: float | None = None, required: bool = False) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            errors.append(f"{label} is required.")
        return
    try:
        n = float(str(value).replace(",", ""))
    except ValueError:
        errors.append(f"{label} must be a number.")
        return
    if not math.isfinite(n):
        errors.append(f"{label} must be a number.")
        return
    if minimum is not None and n < minimum:
        errors.append(f"{label} must be at least {minimum:g}.")
    if maximum is not None and n > maximum:
        errors.append(f"{label} must be at most {maximum:g}.")


@dataclass
class Page:
    items: list[Any]
    page: int
    per_page: int
    total: int
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def pages(self) -> int:
        return max(1, math.ceil(self.total / self.per_page)) if self.per_page else 1

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page * self.per_page < self.total

    @property
    def first_index(self) -> int:
        return 0 if self.total == 0 else (self.page - 1) * self.per_page + 1

    @property
    def last_index(self) -> int:
        return min(self.page * self.per_page, self.total)


def page_arg(raw: Any) -> int:
    try:
        page = int(raw or 1)
    except (TypeError, ValueError):
        return 1
    return max(page, 1)


def paginate(q: Query, page: int, per_page: int) -> Page:
    total = q.order_by(None).count()
    items = q.offset((page - 1) * per_page).limit(per_page).all()
    return Page(items=items, page=page, per_page=per_page, total=total)


def next_sequence_id(s: Session, column, prefix: str, *, width: int = 3, year: int | None = None) -> str:
    """
    Next "<prefix>-<year>-<seq>" identifier.

    Numbering continues from the highest existing sequence for the year, soft-deleted rows
    included (queries here never filter deleted_at).
    """
    year = year or datetime.utcnow().year
    stem = f"{prefix}-{year}-"
    existing = s.query(column).filter(column.like(f"{stem}%")).all()
    highest = 0
    for (value,) in existing:
        tail = (value or "")[len(stem):]
        if tail.isdigit():
            highest = max(highest, int(tail))
    return f"{stem}{highest + 1:0{width}d}"


def count_created_on(s: Session, model, day: date) -> int:
    start = datetime.combine(day, time.min)
    end = datetime.combine(day, time.max)
    return s.query(func.count(model.id)).filter(model.created_at >= start, model.created_at <= end).scalar() or 0


def money(value: Any) -> float:
    if value is None:
        return 0.0
    return float(value)


def apply_changes(obj: Any, new_values: dict[str, Any]) -> dict[str, dict[str, str | None]]:
    """Set changed attributes on obj and return the {"old","new"} diff for the activity log."""
    changes: dict[str, dict[str, str | None]] = {}
    for key, new in new_values.items():
        old = getattr(obj, key)
        if new != old:
            changes[key] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(obj, key, new)
    return changes
