from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, request, send_file, url_for

from app.dms.constants import CLAIM_DECISIONS, CLAIM_STATUSES, CLAIM_TYPES
from app.dms.db import db_session
from app.dms.models import User
from app.dms.modules.mfa.guard import require_mfa
from app.dms.modules.warranty.models import WarrantyClaim, WarrantyClaimPart, WarrantyClaimPhoto, WarrantyClaimService
from app.dms.modules.warranty.service import (
    DECIDABLE_STATUSES,
    PAYABLE_STATUSES,
    add_part,
    add_photo,
    add_service,
    claim_stats,
    close_claim,
    create_claim,
    decide_claim,
    delete_claim,
    delete_photo,
    mark_paid,
    remove_part,
    remove_service,
    restore_claim,
    start_review,
    submit_claim,
    update_claim,
    validate_claim_payload,
    validate_part_line,
    validate_service_line,
)
from app.dms.rbac import default_branch_id, ensure_branch_access, live, require_permission, scope_to_branch
from app.dms.storage import StorageError, storage_from_config
from app.dms.utils import BusinessRuleError, check_number, page_arg, paginate, parse_bool, parse_decimal
from app.dms.views import (
    Action,
    Column,
    FormField,
    Related,
    choices,
    current_filters,
    form_payload,
    form_values,
    render_detail,
    render_form,
    render_list,
    table_rows,
)

bp = Blueprint("warranty", __name__)

LIST_COLUMNS = [
    Column("Claim", "claim_id"),
    Column("Customer", "customer.display_name"),
    Column("Vehicle VIN", "vehicle_unit.vin"),
    Column("Type", "claim_type"),
    Column("Claim date", "claim_date"),
    Column("Claimed", "total_claimed_amount"),
    Column("Approved", "approved_amount"),
    Column("Status", "status"),
]

FORM_FIELDS = [
    FormField("customer_id", "Customer ID", "number"),
    FormField("vehicle_unit_id", "Vehicle unit ID", "number"),
    FormField("claim_type", "Claim type", "select", choices(CLAIM_TYPES), required=True),
    FormField("claim_date", "Claim date", "date", required=True),
    FormField("incident_date", "Incident date", "date"),
    FormField("odometer_reading", "Odometer (km)", "number"),
    FormField("failure_description", "Failure description", "textarea", required=True, help="At least 10 characters"),
    FormField("diagnosis", "Diagnosis", "textarea"),
    FormField("repair_actions", "Repair actions", "textarea"),
    FormField("warranty_type", "Warranty type"),
    FormField("warranty_provider", "Warranty provider"),
    FormField("warranty_number", "Warranty number"),
    FormField("warranty_start_date", "Warranty start", "date"),
    FormField("warranty_end_date", "Warranty end", "date"),
    FormField("currency", "Currency"),
    FormField("assigned_to", "Assigned user ID", "number"),
    FormField("notes", "Notes", "textarea"),
    FormField("branch_id", "Branch ID", "number", help="Admins only; defaults to your branch"),
]

PART_FIELDS = [
    FormField("part_inventory_id", "Inventory part ID", "number", help="Fills number, name and price when blank"),
    FormField("part_number", "Part number"),
    FormField("part_name", "Part name"),
    FormField("quantity", "Quantity", "number", required=True),
    FormField("unit_price", "Unit price", "number"),
]

SERVICE_FIELDS = [
    FormField("service_type_id", "Service type ID", "number", help="Fills code and name when blank"),
    FormField("service_code", "Service code"),
    FormField("service_name", "Service name"),
    FormField("labor_hours", "Labor hours", "number", required=True),
    FormField("labor_rate", "Labor rate", "number", required=True),
]

DECISION_FIELDS = [
    FormField("status", "Decision", "select", choices(CLAIM_DECISIONS), required=True),
    FormField("approved_amount", "Approved amount", "number", help="Defaults to the claimed total on full approval"),
    FormField("reason", "Reason", "textarea", help="Required when rejecting"),
]

PHOTO_FIELDS = [
    FormField("photos", "Photos", "file", required=True, help="JPEG, PNG or WebP; 10 MB max each"),
    FormField("photo_type", "Photo type", "select", choices(("failure", "damage", "part", "document", "other"))),
    FormField("caption", "Caption"),
]

PART_COLUMNS = [
    Column("Part #", "part_number"),
    Column("Name", "part_name"),
    Column("Qty", "quantity"),
    Column("Unit price", "unit_price"),
    Column("Total", "total_price"),
    Column("Line status", "claim_status"),
]

SERVICE_COLUMNS = [
    Column("Code", "service_code"),
    Column("Service", "service_name"),
    Column("Hours", "labor_hours"),
    Column("Rate", "labor_rate"),
    Column("Total", "total_labor_cost"),
    Column("Line status", "claim_status"),
]

PHOTO_COLUMNS = [
    Column("File", "file_name"),
    Column("Type", "photo_type"),
    Column("Caption", "caption"),
    Column("Size", "file_size"),
    Column("Uploaded", "created_at"),
]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_claim(claim_pk: int, include_deleted: bool = False) -> WarrantyClaim:
    claim = db_session().get(WarrantyClaim, claim_pk)
    if not claim or (claim.deleted_at and not include_deleted):
        abort(404)
    ensure_branch_access(claim, _current_user(), "You can only access warranty claims from your branch.")
    return claim


def _get_child(model, claim: WarrantyClaim, child_id: int):
    child = db_session().get(model, child_id)
    if not child or child.warranty_claim_id != claim.id:
        abort(404)
    return child


def _back(claim: WarrantyClaim):
    return redirect(url_for("warranty.claim_detail", claim_pk=claim.id))


def _flash_errors(errors: list[str]) -> None:
    for e in errors:
        flash(e, "danger")


@bp.get("/warranty-claims")
@require_permission("warranty.view")
def claims_list():
    s = db_session()
    u = _current_user()
    filters = current_filters(("q", "status", "claim_type", "include_deleted"))
    q = scope_to_branch(live(s.query(WarrantyClaim), WarrantyClaim, parse_bool(filters["include_deleted"])), WarrantyClaim, u)
    if filters["q"]:
        like = f"%{filters['q']}%"
        q = q.filter(
            WarrantyClaim.claim_id.ilike(like)
            | WarrantyClaim.failure_description.ilike(like)
            | WarrantyClaim.warranty_number.ilike(like)
        )
    if filters["status"]:
        q = q.filter(WarrantyClaim.status == filters["status"])
    if filters["claim_type"]:
        q = q.filter(WarrantyClaim.claim_type == filters["claim_type"])
    page = paginate(q.order_by(WarrantyClaim.claim_date.desc(), WarrantyClaim.id.desc()), page_arg(request.args.get("page")), 15)
    return render_list(
        title="Warranty Claims",
        page=page,
        columns=LIST_COLUMNS,
        list_endpoint="warranty.claims_list",
        detail_endpoint="warranty.claim_detail",
        id_arg="claim_pk",
        filters=filters,
        filter_fields=[
            FormField("q", "Search"),
            FormField("status", "Status", "select", choices(CLAIM_STATUSES)),
            FormField("claim_type", "Type", "select", choices(CLAIM_TYPES)),
            FormField("include_deleted", "Include deleted", "checkbox"),
        ],
        new_url=url_for("warranty.claims_new_get"),
        stats=claim_stats(scope_to_branch(live(s.query(WarrantyClaim), WarrantyClaim), WarrantyClaim, u)),
    )


@bp.get("/warranty-claims/new")
@require_permission("warranty.create")
def claims_new_get():
    return render_form(
        title="New Warranty Claim",
        fields=FORM_FIELDS,
        values={"claim_type": "both", "currency": "PHP"},
        action_url=url_for("warranty.claims_new_post"),
        cancel_url=url_for("warranty.claims_list"),
    )


@bp.post("/warranty-claims/new")
@require_permission("warranty.create")
def claims_new_post():
    s = db_session()
    u = _current_user()
    payload = form_payload(FORM_FIELDS)
    errors = validate_claim_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("warranty.claims_new_get"))
    claim = create_claim(s, payload, u, default_branch_id(payload.get("branch_id"), u))
    s.commit()
    flash(f"Warranty claim {claim.claim_id} created.", "success")
    return _back(claim)


@bp.get("/warranty-claims/<int:claim_pk>")
@require_permission("warranty.view")
def claim_detail(claim_pk: int):
    claim = _get_claim(claim_pk, include_deleted=True)
    cid = claim.id
    actions: list[Action] = []
    if claim.deleted_at:
        actions.append(Action("Restore", url_for("warranty.claim_restore", claim_pk=cid), "post", "success"))
    else:
        if claim.can_edit:
            actions += [
                Action("Edit", url_for("warranty.claim_edit_get", claim_pk=cid)),
                Action("Add part", url_for("warranty.claim_part_new_get", claim_pk=cid)),
                Action("Add service", url_for("warranty.claim_service_new_get", claim_pk=cid)),
            ]
        if claim.status == "draft":
            actions.append(Action("Submit", url_for("warranty.claim_submit", claim_pk=cid), "post", "primary", "Submit this claim?"))
        if claim.status == "submitted":
            actions.append(Action("Start review", url_for("warranty.claim_review", claim_pk=cid), "post"))
        if claim.status in DECIDABLE_STATUSES:
            actions.append(Action("Record decision", url_for("warranty.claim_decide_get", claim_pk=cid), style="primary"))
        if claim.status in PAYABLE_STATUSES:
            actions.append(Action("Mark paid", url_for("warranty.claim_paid", claim_pk=cid), "post", "success", "Mark this claim as paid?"))
        if claim.status in ("paid", "rejected"):
            actions.append(Action("Close", url_for("warranty.claim_close", claim_pk=cid), "post"))
        actions.append(Action("Upload photos", url_for("warranty.claim_photos_get", claim_pk=cid)))
        if claim.can_delete:
            actions.append(Action("Delete", url_for("warranty.claim_delete", claim_pk=cid), "post", "danger", "Delete this claim?"))

    editable = claim.can_edit and not claim.deleted_at
    part_rows = table_rows(claim.parts, PART_COLUMNS)
    for row, line in zip(part_rows, claim.parts):
        if editable:
            row["delete_url"] = url_for("warranty.claim_part_delete", claim_pk=cid, line_id=line.id)
    service_rows = table_rows(claim.services, SERVICE_COLUMNS)
    for row, line in zip(service_rows, claim.services):
        if editable:
            row["delete_url"] = url_for("warranty.claim_service_delete", claim_pk=cid, line_id=line.id)
    photo_rows = table_rows(claim.photos, PHOTO_COLUMNS)
    for row, p in zip(photo_rows, claim.photos):
        row["url"] = url_for("warranty.claim_photo_download", claim_pk=cid, photo_id=p.id)
        if not claim.deleted_at:
            row["delete_url"] = url_for("warranty.claim_photo_delete", claim_pk=cid, photo_id=p.id)

    return render_detail(
        title=f"Warranty Claim {claim.claim_id}",
        obj=claim,
        fields=[
            ("Status", claim.status),
            ("Customer", claim.customer.display_name if claim.customer else None),
            ("Vehicle", claim.vehicle_unit.full_name if claim.vehicle_unit else None),
            ("VIN", claim.vehicle_unit.vin if claim.vehicle_unit else None),
            ("Claim type", claim.claim_type),
            ("Claim date", claim.claim_date),
            ("Incident date", claim.incident_date),
            ("Odometer (km)", claim.odometer_reading),
            ("Failure description", claim.failure_description),
            ("Diagnosis", claim.diagnosis),
            ("Repair actions", claim.repair_actions),
            ("Warranty", " / ".join(p for p in (claim.warranty_type, claim.warranty_provider, claim.warranty_number) if p) or None),
            ("Coverage", f"{claim.warranty_start_date or '-'} to {claim.warranty_end_date or '-'}"),
            ("Parts claimed", claim.parts_claimed_amount),
            ("Labor claimed", claim.labor_claimed_amount),
            ("Total claimed", f"{claim.total_claimed_amount} {claim.currency}"),
            ("Approved amount", claim.approved_amount),
            ("Submitted", claim.submission_date),
            ("Decided", claim.decision_date),
            ("Decided by", claim.decider.display_name if claim.decider else None),
            ("Rejection reason", claim.rejection_reason),
            ("Notes", claim.notes),
            ("Deleted at", claim.deleted_at),
        ],
        actions=actions,
        related=[
            Related("Parts", PART_COLUMNS, part_rows),
            Related("Labor", SERVICE_COLUMNS, service_rows),
            Related("Photos", PHOTO_COLUMNS, photo_rows),
        ],
        back_url=url_for("warranty.claims_list"),
    )


@bp.get("/warranty-claims/<int:claim_pk>/edit")
@require_permission("warranty.edit")
def claim_edit_get(claim_pk: int):
    claim = _get_claim(claim_pk)
    if not claim.can_edit:
        flash(f"Claim {claim.claim_id} cannot be edited once it is {claim.status}.", "danger")
        return _back(claim)
    return render_form(
        title=f"Edit {claim.claim_id}",
        fields=FORM_FIELDS,
        values=form_values(claim, FORM_FIELDS),
        action_url=url_for("warranty.claim_edit_post", claim_pk=claim.id),
        cancel_url=url_for("warranty.claim_detail", claim_pk=claim.id),
    )


@bp.post("/warranty-claims/<int:claim_pk>/edit")
@require_permission("warranty.edit")
def claim_edit_post(claim_pk: int):
    s = db_session()
    claim = _get_claim(claim_pk)
    payload = form_payload(FORM_FIELDS)
    errors = validate_claim_payload(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("warranty.claim_edit_get", claim_pk=claim.id))
    try:
        update_claim(s, claim, payload, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return _back(claim)
    s.commit()
    flash("Warranty claim updated.", "success")
    return _back(claim)


# ---- Line items ----

@bp.get("/warranty-claims/<int:claim_pk>/parts/new")
@require_permission("warranty.edit")
def claim_part_new_get(claim_pk: int):
    claim = _get_claim(claim_pk)
    return render_form(
        title=f"Add part: {claim.claim_id}",
        fields=PART_FIELDS,
        values={"quantity": "1"},
        action_url=url_for("warranty.claim_part_new_post", claim_pk=claim.id),
        cancel_url=url_for("warranty.claim_detail", claim_pk=claim.id),
    )


@bp.post("/warranty-claims/<int:claim_pk>/parts/new")
@require_permission("warranty.edit")
def claim_part_new_post(claim_pk: int):
    s = db_session()
    claim = _get_claim(claim_pk)
    payload = form_payload(PART_FIELDS)
    errors = validate_part_line(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("warranty.claim_part_new_get", claim_pk=claim.id))
    try:
        add_part(s, claim, payload, _current_user())
    except BusinessRuleError as e:
        s.rollback()
        flash(e.message, "danger")
        return _back(claim)
    s.commit()
    flash("Part added.", "success")
    return _back(claim)


@bp.post("/warranty-claims/<int:claim_pk>/parts/<int:line_id>/delete")
@require_permission("warranty.edit")
def claim_part_delete(claim_pk: int, line_id: int):
    s = db_session()
    claim = _get_claim(claim_pk)
    line = _get_child(WarrantyClaimPart, claim, line_id)
    try:
        remove_part(s, claim, line, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return _back(claim)
    s.commit()
    flash("Part removed.", "success")
    return _back(claim)


@bp.get("/warranty-claims/<int:claim_pk>/services/new")
@require_permission("warranty.edit")
def claim_service_new_get(claim_pk: int):
    claim = _get_claim(claim_pk)
    return render_form(
        title=f"Add labor: {claim.claim_id}",
        fields=SERVICE_FIELDS,
        action_url=url_for("warranty.claim_service_new_post", claim_pk=claim.id),
        cancel_url=url_for("warranty.claim_detail", claim_pk=claim.id),
    )


@bp.post("/warranty-claims/<int:claim_pk>/services/new")
@require_permission("warranty.edit")
def claim_service_new_post(claim_pk: int):
    s = db_session()
    claim = _get_claim(claim_pk)
    payload = form_payload(SERVICE_FIELDS)
    errors = validate_service_line(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("warranty.claim_service_new_get", claim_pk=claim.id))
    try:
        add_service(s, claim, payload, _current_user())
    except BusinessRuleError as e:
        s.rollback()
        flash(e.message, "danger")
        return _back(claim)
    s.commit()
    flash("Labor line added.", "success")
    return _back(claim)


@bp.post("/warranty-claims/<int:claim_pk>/services/<int:line_id>/delete")
@require_permission("warranty.edit")
def claim_service_delete(claim_pk: int, line_id: int):
    s = db_session()
    claim = _get_claim(claim_pk)
    line = _get_child(WarrantyClaimService, claim, line_id)
    try:
        remove_service(s, claim, line, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return _back(claim)
    s.commit()
    flash("Labor line removed.", "success")
    return _back(claim)


# ---- Workflow ----

def _run_transition(claim_pk: int, fn, success: str):
    s = db_session()
    claim = _get_claim(claim_pk)
    try:
        fn(s, claim, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return _back(claim)
    s.commit()
    flash(success.format(claim=claim), "success")
    return _back(claim)


@bp.post("/warranty-claims/<int:claim_pk>/submit")
@require_permission("warranty.edit")
def claim_submit(claim_pk: int):
    return _run_transition(claim_pk, submit_claim, "Claim {claim.claim_id} submitted.")


@bp.post("/warranty-claims/<int:claim_pk>/review")
@require_permission("warranty.decide")
def claim_review(claim_pk: int):
    return _run_transition(claim_pk, start_review, "Claim {claim.claim_id} is under review.")


@bp.get("/warranty-claims/<int:claim_pk>/decide")
@require_permission("warranty.decide")
def claim_decide_get(claim_pk: int):
    claim = _get_claim(claim_pk)
    return render_form(
        title=f"Decision: {claim.claim_id} (claimed {claim.total_claimed_amount} {claim.currency})",
        fields=DECISION_FIELDS,
        values={"status": "approved"},
        action_url=url_for("warranty.claim_decide_post", claim_pk=claim.id),
        cancel_url=url_for("warranty.claim_detail", claim_pk=claim.id),
    )


@bp.post("/warranty-claims/<int:claim_pk>/decide")
@require_permission("warranty.decide")
def claim_decide_post(claim_pk: int):
    s = db_session()
    claim = _get_claim(claim_pk)
    payload = form_payload(DECISION_FIELDS)
    errors: list[str] = []
    check_number(errors, "Approved amount", payload.get("approved_amount"), minimum=0)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("warranty.claim_decide_get", claim_pk=claim.id))
    try:
        decide_claim(
            s,
            claim,
            payload.get("status") or "",
            parse_decimal(payload.get("approved_amount")),
            payload.get("reason"),
            _current_user(),
        )
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return redirect(url_for("warranty.claim_decide_get", claim_pk=claim.id))
    s.commit()
    flash(f"Claim {claim.claim_id} {claim.status.replace('_', ' ')}.", "success")
    return _back(claim)


@bp.post("/warranty-claims/<int:claim_pk>/paid")
@require_permission("warranty.decide")
@require_mfa("financial_transactions")
def claim_paid(claim_pk: int):
    return _run_transition(claim_pk, mark_paid, "Claim {claim.claim_id} marked as paid.")


@bp.post("/warranty-claims/<int:claim_pk>/close")
@require_permission("warranty.edit")
def claim_close(claim_pk: int):
    return _run_transition(claim_pk, close_claim, "Claim {claim.claim_id} closed.")


@bp.post("/warranty-claims/<int:claim_pk>/delete")
@require_permission("warranty.delete")
def claim_delete(claim_pk: int):
    s = db_session()
    claim = _get_claim(claim_pk)
    try:
        delete_claim(s, claim, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return _back(claim)
    s.commit()
    flash(f"Warranty claim {claim.claim_id} deleted.", "success")
    return redirect(url_for("warranty.claims_list"))


@bp.post("/warranty-claims/<int:claim_pk>/restore")
@require_permission("warranty.delete")
def claim_restore(claim_pk: int):
    s = db_session()
    claim = _get_claim(claim_pk, include_deleted=True)
    try:
        restore_claim(s, claim, _current_user())
    except BusinessRuleError as e:
        flash(e.message, "danger")
        return _back(claim)
    s.commit()
    flash(f"Warranty claim {claim.claim_id} restored.", "success")
    return _back(claim)


# ---- Photos ----

@bp.get("/warranty-claims/<int:claim_pk>/photos")
@require_permission("warranty.upload")
def claim_photos_get(claim_pk: int):
    claim = _get_claim(claim_pk)
    return render_form(
        title=f"Upload photos: {claim.claim_id}",
        fields=PHOTO_FIELDS,
        action_url=url_for("warranty.claim_photos_post", claim_pk=claim.id),
        cancel_url=url_for("warranty.claim_detail", claim_pk=claim.id),
    )


@bp.post("/warranty-claims/<int:claim_pk>/photos")
@require_permission("warranty.upload")
def claim_photos_post(claim_pk: int):
    s = db_session()
    u = _current_user()
    claim = _get_claim(claim_pk)
    files = [f for f in request.files.getlist("photos") if f and f.filename]
    if not files:
        flash("Choose at least one photo to upload.", "danger")
        return redirect(url_for("warranty.claim_photos_get", claim_pk=claim.id))

    storage = storage_from_config(current_app.config)
    uploaded = 0
    for f in files:
        try:
            add_photo(
                s,
                storage,
                claim,
                filename=f.filename,
                data=f.read(),
                content_type=f.mimetype,
                user=u,
                photo_type=request.form.get("photo_type"),
                caption=request.form.get("caption"),
                ip_address=request.remote_addr,
                user_agent=request.user_agent.string if request.user_agent else None,
            )
        except BusinessRuleError as e:
            flash(e.message, "danger")
            continue
        uploaded += 1
    s.commit()
    if uploaded:
        flash(f"{uploaded} photo(s) uploaded.", "success")
    return _back(claim)


@bp.get("/warranty-claims/<int:claim_pk>/photos/<int:photo_id>")
@require_permission("warranty.view")
def claim_photo_download(claim_pk: int, photo_id: int):
    claim = _get_claim(claim_pk)
    photo = _get_child(WarrantyClaimPhoto, claim, photo_id)
    try:
        fh = storage_from_config(current_app.config).open(photo.file_path)
    except (FileNotFoundError, StorageError):
        abort(404)
    return send_file(fh, mimetype=photo.mime_type, as_attachment=False, download_name=photo.file_name, max_age=0)


@bp.post("/warranty-claims/<int:claim_pk>/photos/<int:photo_id>/delete")
@require_permission("warranty.upload")
def claim_photo_delete(claim_pk: int, photo_id: int):
    s = db_session()
    claim = _get_claim(claim_pk)
    photo = _get_child(WarrantyClaimPhoto, claim, photo_id)
    delete_photo(s, storage_from_config(current_app.config), photo, _current_user())
    s.commit()
    flash("Photo deleted.", "success")
    return _back(claim)
