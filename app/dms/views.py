"""
View-model helpers shared by the admin blueprints.

Jinja cannot splat **kwargs in url_for, so row links, pagination and export URLs are
precomputed here and the CRUD templates stay dumb.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable

from flask import render_template, request, url_for

from app.dms.utils import Page


@dataclass(frozen=True)
class Column:
    label: str
    attr: str
    fmt: Callable[[Any], str] | None = None


@dataclass(frozen=True)
class FormField:
    name: str
    label: str
    type: str = "text"  # text, textarea, select, checkboxes, number, date, datetime-local, time, email, checkbox, password, file
    options: tuple[Any, ...] = ()
    required: bool = False
    help: str | None = None


@dataclass
class Action:
    label: str
    url: str
    method: str = "get"
    style: str = "secondary"
    confirm: str | None = None


@dataclass
class Related:
    title: str
    columns: list[Column]
    rows: list[dict[str, Any]] = field(default_factory=list)


def resolve(obj: Any, path: str) -> Any:
    value = obj
    for part in path.split("."):
        if value is None:
            return None
        value = value.get(part) if isinstance(value, dict) else getattr(value, part, None)
    return value


def display(value: Any) -> str:
    if value is None or value == "":
        return "—"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return f"{value:,.2f}"
    if isinstance(value, float):
        return f"{value:,.2f}"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value) or "—"
    return str(value)


def table_rows(items: list[Any], columns: list[Column], endpoint: str | None = None, id_arg: str | None = None) -> list[dict[str, Any]]:
    rows = []
    for obj in items:
        cells = []
        for col in columns:
            raw = resolve(obj, col.attr)
            cells.append(col.fmt(raw) if col.fmt else display(raw))
        url = url_for(endpoint, **{id_arg: obj.id}) if endpoint and id_arg else None
        rows.append({"cells": cells, "url": url, "deleted": bool(getattr(obj, "deleted_at", None))})
    return rows


def current_filters(names: list[str] | tuple[str, ...]) -> dict[str, str]:
    return {n: (request.args.get(n) or "").strip() for n in names}


def page_urls(endpoint: str, page: Page, filters: dict[str, Any], **view_args: Any) -> tuple[str | None, str | None]:
    kept = {k: v for k, v in filters.items() if v not in (None, "", "all")}
    prev_url = url_for(endpoint, page=page.page - 1, **view_args, **kept) if page.has_prev else None
    next_url = url_for(endpoint, page=page.page + 1, **view_args, **kept) if page.has_next else None
    return prev_url, next_url


def render_list(
    *,
    title: str,
    page: Page,
    columns: list[Column],
    list_endpoint: str,
    detail_endpoint: str | None = None,
    id_arg: str | None = None,
    filter_fields: list[FormField] | None = None,
    filters: dict[str, str] | None = None,
    new_url: str | None = None,
    export_url: str | None = None,
    stats: dict[str, Any] | None = None,
    extra_actions: list[Action] | None = None,
    template: str = "admin/crud/list.html",
    **context: Any,
):
    filters = filters or {}
    prev_url, next_url = page_urls(list_endpoint, page, filters)
    return render_template(
        template,
        title=title,
        page=page,
        columns=columns,
        rows=table_rows(page.items, columns, detail_endpoint, id_arg),
        filter_fields=filter_fields or [],
        filters=filters,
        list_url=url_for(list_endpoint),
        new_url=new_url,
        export_url=export_url,
        stats=stats or {},
        extra_actions=extra_actions or [],
        prev_url=prev_url,
        next_url=next_url,
        **context,
    )


def render_detail(
    *,
    title: str,
    obj: Any,
    fields: list[tuple[str, Any]],
    actions: list[Action] | None = None,
    related: list[Related] | None = None,
    back_url: str | None = None,
    template: str = "admin/crud/detail.html",
    **context: Any,
):
    return render_template(
        template,
        title=title,
        obj=obj,
        fields=[(label, display(value)) for label, value in fields],
        actions=actions or [],
        related=related or [],
        back_url=back_url,
        **context,
    )


def render_report(
    *,
    title: str,
    list_endpoint: str,
    related: list[Related],
    filter_fields: list[FormField] | None = None,
    filters: dict[str, str] | None = None,
    stats: dict[str, Any] | None = None,
    period: str | None = None,
    extra_actions: list[Action] | None = None,
    template: str = "admin/crud/report.html",
    **context: Any,
):
    """Read-only report page: the list header and filters, then one table per section."""
    return render_template(
        template,
        title=title,
        filter_fields=filter_fields or [],
        filters=filters or {},
        list_url=url_for(list_endpoint),
        new_url=None,
        export_url=None,
        stats=stats or {},
        extra_actions=extra_actions or [],
        related=related,
        period=period,
        **context,
    )


def form_values(obj: Any, fields: list[FormField]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for f in fields:
        raw = resolve(obj, f.name) if obj is not None else None
        if f.type == "checkbox":
            values[f.name] = bool(raw)
        elif f.type == "checkboxes":
            values[f.name] = list(raw or [])
        elif isinstance(raw, datetime) and f.type == "datetime-local":
            values[f.name] = raw.strftime("%Y-%m-%dT%H:%M")
        elif isinstance(raw, (list, tuple)):
            values[f.name] = ", ".join(str(v) for v in raw)
        elif raw is None:
            values[f.name] = ""
        else:
            values[f.name] = raw.isoformat() if isinstance(raw, (date, time)) else str(raw)
    return values


def render_form(
    *,
    title: str,
    fields: list[FormField],
    action_url: str,
    values: dict[str, Any] | None = None,
    cancel_url: str | None = None,
    multipart: bool = False,
    template: str = "admin/crud/form.html",
    **context: Any,
):
    return render_template(
        template,
        title=title,
        fields=fields,
        values=values or {},
        action_url=action_url,
        cancel_url=cancel_url,
        multipart=multipart or any(f.type == "file" for f in fields),
        **context,
    )


def form_payload(fields: list[FormField]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for f in fields:
        if f.type == "checkbox":
            payload[f.name] = request.form.get(f.name) in ("1", "on", "true", "yes")
        elif f.type == "checkboxes":
            payload[f.name] = request.form.getlist(f.name)
        elif f.type == "file":
            continue
        else:
            payload[f.name] = request.form.get(f.name)
    return payload


def choices(values: tuple[str, ...] | list[str]) -> tuple[tuple[str, str], ...]:
    return tuple((v, v.replace("_", " ").title()) for v in values)
