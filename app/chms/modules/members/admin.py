from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, abort, current_app, flash, redirect, render_template, request, send_file, url_for

from app.chms.audit import record_event
from app.chms.constants import (
    EXCEL_CONTENT_TYPE,
    GENDERS,
    MARITAL_STATUSES,
    MEMBER_FOLLOWUP_METHODS,
    MEMBERSHIP_STATUSES,
)
from app.chms.db import db_session
from app.chms.excel import ImportFileError
from app.chms.modules.attendance.service import member_attendance_summary
from app.chms.modules.groups.models import Department, Group, RolePosition
from app.chms.modules.members.models import Member
from app.chms.modules.members.service import (
    MEMBER_FIELDS,
    create_member,
    delete_member,
    export_members_xlsx,
    import_members,
    member_list_query,
    member_template_xlsx,
    remove_member_photo,
    set_member_affiliations,
    update_member,
    upload_member_photo,
    validate_member_payload,
    validate_photo,
)
from app.chms.rbac import require_permission
from app.chms.storage import StorageError, storage_from_config
from app.chms.tenancy import current_org_id, current_user, get_for_org_or_404
from app.chms.utils import page_number, paginate

bp = Blueprint("members", __name__)


def _payload_from_form() -> dict:
    return {f: request.form.get(f) for f in MEMBER_FIELDS}


def _id_list(name: str) -> list[int]:
    return [int(v) for v in request.form.getlist(name) if str(v).isdigit()]


def _form_choices(s) -> dict:
    org_id = current_org_id()
    return {
        "groups": s.query(Group).filter(Group.organization_id == org_id).order_by(Group.name).all(),
        "departments": s.query(Department).filter(Department.organization_id == org_id).order_by(Department.name).all(),
        "positions": s.query(RolePosition).filter(RolePosition.organization_id == org_id).order_by(RolePosition.name).all(),
        "statuses": MEMBERSHIP_STATUSES,
        "genders": GENDERS,
        "marital_statuses": MARITAL_STATUSES,
    }


def _list_filters() -> dict:
    return {k: (request.args.get(k) or "").strip() for k in ("q", "status", "gender", "group_id", "department_id")}


# ---------- List ----------
@bp.get("/members")
@require_permission("members.view")
def members_list():
    s = db_session()
    filters = _list_filters()
    page = paginate(member_list_query(s, current_org_id(), filters), page_number(request.args.get("page")))
    return render_template("members/list.html", page=page, filters=filters, **_form_choices(s))


# ---------- New ----------
@bp.get("/members/new")
@require_permission("members.create")
def members_new_get():
    s = db_session()
    return render_template("members/form.html", member=None, form={}, **_form_choices(s))


@bp.post("/members/new")
@require_permission("members.create")
def members_new_post():
    s = db_session()
    u = current_user()
    payload = _payload_from_form()

    errors = validate_member_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("members/form.html", member=None, form=payload, **_form_choices(s)), 400

    member = create_member(s, current_org_id(), payload, u)
    set_member_affiliations(
        s,
        member,
        group_ids=_id_list("group_ids"),
        department_ids=_id_list("department_ids"),
        position_ids=_id_list("position_ids"),
    )
    s.commit()

    flash("Member created.", "success")
    return redirect(url_for("members.member_detail", member_id=member.id))


# ---------- Detail ----------
@bp.get("/members/<int:member_id>")
@require_permission("members.view")
def member_detail(member_id: int):
    s = db_session()
    member = get_for_org_or_404(s, Member, member_id)
    summary = member_attendance_summary(s, member)
    return render_template(
        "members/detail.html",
        member=member,
        attendance=summary,
        followup_methods=MEMBER_FOLLOWUP_METHODS,
        today=date.today(),
    )


# ---------- Edit ----------
@bp.get("/members/<int:member_id>/edit")
@require_permission("members.edit")
def member_edit_get(member_id: int):
    s = db_session()
    member = get_for_org_or_404(s, Member, member_id)
    return render_template("members/form.html", member=member, form={}, **_form_choices(s))


@bp.post("/members/<int:member_id>/edit")
@require_permission("members.edit")
def member_edit_post(member_id: int):
    s = db_session()
    u = current_user()
    member = get_for_org_or_404(s, Member, member_id)
    payload = _payload_from_form()

    errors = validate_member_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("members/form.html", member=member, form=payload, **_form_choices(s)), 400

    update_member(s, member, payload, u)
    changed = set_member_affiliations(
        s,
        member,
        group_ids=_id_list("group_ids"),
        department_ids=_id_list("department_ids"),
        position_ids=_id_list("position_ids"),
    )
    if changed:
        record_event(
            s,
            actor=u,
            action="member.affiliations",
            entity_type="Member",
            entity_id=str(member.id),
            metadata=changed,
        )
    s.commit()

    flash("Member updated.", "success")
    return redirect(url_for("members.member_detail", member_id=member.id))


# ---------- Delete ----------
@bp.post("/members/<int:member_id>/delete")
@require_permission("members.delete")
def member_delete(member_id: int):
    s = db_session()
    u = current_user()
    member = get_for_org_or_404(s, Member, member_id)

    reason = (request.form.get("reason") or "").strip()
    if not reason:
        flash("Reason is required to delete a member.", "danger")
        return redirect(url_for("members.member_detail", member_id=member_id))

    name = member.full_name
    delete_member(s, member, u, reason)
    s.commit()
    flash(f"Member '{name}' deleted.", "success")
    return redirect(url_for("members.members_list"))


# ---------- Photo ----------
@bp.post("/members/<int:member_id>/photo")
@require_permission("members.edit")
def member_photo_upload(member_id: int):
    s = db_session()
    u = current_user()
    member = get_for_org_or_404(s, Member, member_id)

    f = request.files.get("photo")
    file_bytes = f.read() if f else b""
    filename = f.filename if f else ""
    content_type = (f.mimetype if f else None) or ""
    errors = validate_photo(filename or "", content_type, len(file_bytes))
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("members.member_detail", member_id=member_id))

    storage = storage_from_config(current_app.config)
    try:
        upload_member_photo(s, storage, member, file_bytes, filename or "photo", content_type, u)
    except StorageError as e:
        current_app.logger.error("Photo upload failed for member %s: %s", member_id, e)
        flash("Could not store the photo. Please try again.", "danger")
        return redirect(url_for("members.member_detail", member_id=member_id))
    s.commit()
    flash("Photo updated.", "success")
    return redirect(url_for("members.member_detail", member_id=member_id))


@bp.post("/members/<int:member_id>/photo/remove")
@require_permission("members.edit")
def member_photo_remove(member_id: int):
    s = db_session()
    member = get_for_org_or_404(s, Member, member_id)
    remove_member_photo(s, storage_from_config(current_app.config), member, current_user())
    s.commit()
    flash("Photo removed.", "success")
    return redirect(url_for("members.member_detail", member_id=member_id))


@bp.get("/members/<int:member_id>/photo")
@require_permission("members.view")
def member_photo(member_id: int):
    s = db_session()
    member = get_for_org_or_404(s, Member, member_id)
    if not member.photo_storage_key:
        abort(404)
    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(member.photo_storage_key)
    except StorageError:
        abort(404)
    return send_file(fobj, download_name=member.photo_storage_key.rsplit("/", 1)[-1])


# ---------- Import / Export ----------
@bp.get("/members/import")
@require_permission("members.import")
def members_import_get():
    return render_template("members/import.html")


@bp.get("/members/import-template")
@require_permission("members.import")
def members_import_template():
    return send_file(
        io.BytesIO(member_template_xlsx()),
        mimetype=EXCEL_CONTENT_TYPE,
        as_attachment=True,
        download_name="member-import-template.xlsx",
    )


@bp.post("/members/import")
@require_permission("members.import")
def members_import_post():
    s = db_session()
    u = current_user()
    f = request.files.get("file")
    if not f or not f.filename:
        flash("Choose an .xlsx file to import.", "danger")
        return redirect(url_for("members.members_import_get"))
    if not f.filename.lower().endswith(".xlsx"):
        flash("Only .xlsx files are supported.", "danger")
        return redirect(url_for("members.members_import_get"))

    try:
        result = import_members(s, current_org_id(), f.read(), u)
    except ImportFileError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("members.members_import_get"))
    s.commit()

    current_app.logger.info(
        "Member import org=%s created=%s failed=%s", current_org_id(), result["created"], result["failed"]
    )
    flash(f"Import complete: {result['created']} created, {result['failed']} failed.", "success" if not result["failed"] else "warning")
    for e in result["errors"][:20]:
        flash(e, "warning")
    return redirect(url_for("members.members_list"))


@bp.get("/members/export")
@require_permission("members.export")
def members_export():
    s = db_session()
    members = member_list_query(s, current_org_id(), _list_filters()).all()
    return send_file(
        io.BytesIO(export_members_xlsx(members)),
        mimetype=EXCEL_CONTENT_TYPE,
        as_attachment=True,
        download_name=f"members-{date.today().isoformat()}.xlsx",
    )
