"""Public survey pages; reached by token, no login."""
from __future__ import annotations

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for

from app.dms.constants import SURVEY_RATING_FIELDS
from app.dms.db import db_session
from app.dms.modules.customers.models import CustomerSurvey
from app.dms.modules.customers.service import submit_survey, validate_survey_submission
from app.dms.utils import BusinessRuleError

bp = Blueprint("public", __name__)

_SUBMIT_FIELDS = SURVEY_RATING_FIELDS + (
    "nps_score",
    "nps_reason",
    "what_went_well",
    "what_needs_improvement",
    "additional_comments",
    "wants_followup",
    "preferred_contact_method",
)


def _get_by_token(token: str) -> CustomerSurvey:
    survey = db_session().query(CustomerSurvey).filter(CustomerSurvey.token == token).one_or_none()
    if not survey:
        abort(404)
    return survey


@bp.get("/survey/<token>")
def survey_get(token: str):
    survey = _get_by_token(token)
    if not survey.can_be_completed:
        return render_template("public/survey_unavailable.html", survey=survey)
    return render_template("public/survey.html", survey=survey, rating_fields=SURVEY_RATING_FIELDS)


@bp.post("/survey/<token>")
def survey_post(token: str):
    s = db_session()
    survey = _get_by_token(token)
    if not survey.can_be_completed:
        return render_template("public/survey_unavailable.html", survey=survey)

    payload = {f: request.form.get(f) for f in _SUBMIT_FIELDS}
    errors = validate_survey_submission(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("public.survey_get", token=token))
    try:
        submit_survey(s, survey, payload, request.remote_addr, request.user_agent.string if request.user_agent else None)
    except BusinessRuleError:
        return render_template("public/survey_unavailable.html", survey=survey)
    s.commit()
    return redirect(url_for("public.survey_thanks", token=token))


@bp.get("/survey/<token>/thanks")
def survey_thanks(token: str):
    survey = _get_by_token(token)
    return render_template("public/survey_thanks.html", survey=survey)
