from __future__ import annotations

from flask import Blueprint, flash, redirect, render_template, request, url_for

from app.chms.constants import ACTIVE_STATUSES
from app.chms.db import db_session
from app.chms.modules.groups.service import (
    KINDS,
    assign_member,
    create_unit,
    delete_unit,
    has_leader,
    member_counts,
    unassign_member,
    update_unit,
    validate_unit_payload,
)
from app.chms.modules.members.models import Member
from app.chms.rbac import require_permission
from app.chms.tenancy import current_org_id, current_user, get_for_org_or_404

bp = Blueprint("groups", __name__)

_KIND = "<any(groups,departments,positions):kind>"


def _ctx(kind: str) -> dict:
    return {
        "kind": kind,
        "label": KINDS[kind][3],
        "has_leader": has_leader(kind),
        "statuses": ACTIVE_STATUSES,
        "kinds": {k: v[3] for k, v in KINDS.items()},
    }


def _payload_from_form() -> dict:
    return {k: request.form.get(k) for k in ("name", "description", "leader", "status")}


@bp.get(f"/{_KIND}")
@require_permission("groups.view")
def unit_list(kind: str):
    s = db_session()
    model = KINDS[kind][0]
    units = s.query(model).filter(model.organization_id == current_org_id()).order_by(model.name.asc()).all()
    counts = member_counts(s, kind, current_org_id())
    return render_template("groups/list.html", units=units, counts=counts, **_ctx(kind))


@bp.get(f"/{_KIND}/new")
@require_permission("groups.edit")
def unit_new_get(kind: str):
    return render_template("groups/form.html", unit=None, form={}, **_ctx(kind))


@bp.post(f"/{_KIND}/new")
@require_permission("groups.edit")
def unit_new_post(kind: str):
    s = db_session()
    payload = _payload_from_form()
    errors = validate_unit_payload(s, kind, current_org_id(), payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("groups/form.html", unit=None, form=payload, **_ctx(kind)), 400
    unit = create_unit(s, kind, current_org_id(), payload, current_user())
    s.commit()
    flash(f"{KINDS[kind][3]} created.", "success")
    return redirect(url_for("groups.unit_detail", kind=kind, unit_id=unit.id))


@bp.get(f"/{_KIND}/<int:unit_id>")
@require_permission("groups.view")
def unit_detail(kind: str, unit_id: int):
    s = db_session()
    unit = get_for_org_or_404(s, KINDS[kind][0], unit_id)
    assigned = {m.id for m in unit.members}
    available = [
        m
        for m in s.query(Member)
        .filter(Member.organization_id == current_org_id())
        .order_by(Member.last_name, Member.first_name)
        .all()
        if m.id not in assigned
    ]
    members = sorted(unit.members, key=lambda m: (m.last_name.lower(), m.first_name.lower()))
    return render_template("groups/detail.html", unit=unit, members=members, available=available, **_ctx(kind))


@bp.get(f"/{_KIND}/<int:unit_id>/edit")
@require_permission("groups.edit")
def unit_edit_get(kind: str, unit_id: int):
    s = db_session()
    unit = get_for_org_or_404(s, KINDS[kind][0], unit_id)
    return render_template("groups/form.html", unit=unit, form={}, **_ctx(kind))


@bp.post(f"/{_KIND}/<int:unit_id>/edit")
@require_permission("groups.edit")
def unit_edit_post(kind: str, unit_id: int):
    s = db_session()
    unit = get_for_org_or_404(s, KINDS[kind][0], unit_id)
    payload = _payload_from_form()
    errors = validate_unit_payload(s, kind, current_org_id(), payload, exclude_id=unit.id)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("groups/form.html", unit=unit, form=payload, **_ctx(kind)), 400
    update_unit(s, kind, unit, payload, current_user())
    s.commit()
    flash(f"{KINDS[kind][3]} updated.", "success")
    return redirect(url_for("groups.unit_detail", kind=kind, unit_id=unit.id))


@bp.post(f"/{_KIND}/<int:unit_id>/delete")
@require_permission("groups.edit")
def unit_delete(kind: str, unit_id: int):
    s = db_session()
    unit = get_for_org_or_404(s, KINDS[kind][0], unit_id)
    name = unit.name
    delete_unit(s, kind, unit, current_user())
    s.commit()
    flash(f"{KINDS[kind][3]} '{name}' deleted.", "success")
    return redirect(url_for("groups.unit_list", kind=kind))


@bp.post(f"/{_KIND}/<int:unit_id>/members")
@require_permission("groups.edit")
def unit_member_add(kind: str, unit_id: int):
    s = db_session()
    unit = get_for_org_or_404(s, KINDS[kind][0], unit_id)
    raw_id = (request.form.get("member_id") or "").strip()
    if not raw_id.isdigit():
        flash("Select a member to add.", "danger")
        return redirect(url_for("groups.unit_detail", kind=kind, unit_id=unit_id))
    member = get_for_org_or_404(s, Member, int(raw_id))
    if assign_member(s, kind, unit, member, current_user()):
        s.commit()
        flash(f"{member.full_name} added.", "success")
    else:
        flash(f"{member.full_name} is already assigned.", "warning")
    return redirect(url_for("groups.unit_detail", kind=kind, unit_id=unit_id))


@bp.post(f"/{_KIND}/<int:unit_id>/members/<int:member_id>/remove")
@require_permission("groups.edit")
def unit_member_remove(kind: str, unit_id: int, member_id: int):
    s = db_session()
    unit = get_for_org_or_404(s, KINDS[kind][0], unit_id)
    member = get_for_org_or_404(s, Member, member_id)
    if unassign_member(s, kind, unit, member, current_user()):
        s.commit()
        flash(f"{member.full_name} removed.", "success")
    return redirect(url_for("groups.unit_detail", kind=kind, unit_id=unit_id))
