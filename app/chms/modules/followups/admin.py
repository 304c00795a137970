from __future__ import annotations

from datetime import date

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for

from app.chms.constants import MEMBER_FOLLOWUP_METHODS, VISITOR_FOLLOWUP_METHODS
from app.chms.db import db_session
from app.chms.modules.followups.service import (
    add_member_followup,
    delete_member_followup,
    followup_feed,
    update_member_followup,
    validate_member_followup_payload,
    visitors_needing_follow_up,
)
from app.chms.modules.members.models import Member, MemberFollowUp
from app.chms.rbac import require_permission
from app.chms.tenancy import current_org_id, current_user, get_for_org_or_404
from app.chms.utils import safe_parse_date

bp = Blueprint("followups", __name__)


def _get_followup_or_404(s, member: Member, followup_id: int) -> MemberFollowUp:
    fu = s.get(MemberFollowUp, followup_id)
    if not fu or fu.member_id != member.id:
        abort(404)
    return fu


def _form_payload() -> dict:
    return {k: request.form.get(k) for k in ("date", "method", "notes")}


@bp.get("/follow-ups")
@require_permission("followups.view")
def followups_index():
    s = db_session()
    method = (request.args.get("method") or "").strip()
    date_from = safe_parse_date(request.args.get("date_from"))
    date_to = safe_parse_date(request.args.get("date_to"))
    today = date.today()
    feed = followup_feed(s, current_org_id(), method=method or None, date_from=date_from, date_to=date_to)
    pending = visitors_needing_follow_up(s, current_org_id(), today)
    methods = sorted(set(MEMBER_FOLLOWUP_METHODS) | set(VISITOR_FOLLOWUP_METHODS))
    return render_template(
        "followups/index.html",
        feed=feed,
        pending=pending,
        methods=methods,
        method=method,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
        today=today,
    )


@bp.post("/members/<int:member_id>/follow-ups")
@require_permission("followups.edit")
def member_followup_add(member_id: int):
    s = db_session()
    member = get_for_org_or_404(s, Member, member_id)
    payload = _form_payload()
    errors = validate_member_followup_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("members.member_detail", member_id=member_id))
    add_member_followup(s, member, payload, current_user())
    s.commit()
    flash("Follow-up recorded.", "success")
    return redirect(url_for("members.member_detail", member_id=member_id))


@bp.post("/members/<int:member_id>/follow-ups/<int:followup_id>/edit")
@require_permission("followups.edit")
def member_followup_edit(member_id: int, followup_id: int):
    s = db_session()
    member = get_for_org_or_404(s, Member, member_id)
    fu = _get_followup_or_404(s, member, followup_id)
    payload = _form_payload()
    errors = validate_member_followup_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("members.member_detail", member_id=member_id))
    update_member_followup(s, fu, payload, current_user())
    s.commit()
    flash("Follow-up updated.", "success")
    return redirect(url_for("members.member_detail", member_id=member_id))


@bp.post("/members/<int:member_id>/follow-ups/<int:followup_id>/delete")
@require_permission("followups.edit")
def member_followup_delete(member_id: int, followup_id: int):
    s = db_session()
    member = get_for_org_or_404(s, Member, member_id)
    fu = _get_followup_or_404(s, member, followup_id)
    delete_member_followup(s, fu, current_user())
    s.commit()
    flash("Follow-up deleted.", "success")
    return redirect(url_for("members.member_detail", member_id=member_id))
