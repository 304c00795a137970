from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, abort, current_app, flash, redirect, render_template, request, send_file, url_for

from app.chms.constants import (
    EXCEL_CONTENT_TYPE,
    GENDERS,
    MARITAL_STATUSES,
    VISITOR_FOLLOWUP_METHODS,
    VISITOR_SOURCES,
    VISITOR_STATUSES,
)
from app.chms.db import db_session
from app.chms.excel import ImportFileError
from app.chms.modules.visitors.models import Visitor, VisitorFollowUp
from app.chms.modules.visitors.service import (
    VISITOR_FIELDS,
    add_visitor_followup,
    convert_visitor_to_member,
    create_visitor,
    delete_visitor,
    delete_visitor_followup,
    export_visitors_xlsx,
    import_visitors,
    update_visitor,
    update_visitor_followup,
    validate_visitor_followup_payload,
    validate_visitor_payload,
    visitor_list_query,
    visitor_template_xlsx,
)
from app.chms.rbac import require_permission
from app.chms.tenancy import current_org_id, current_user, get_for_org_or_404
from app.chms.utils import page_number, paginate

bp = Blueprint("visitors", __name__)

_CHOICES = {
    "statuses": VISITOR_STATUSES,
    "sources": VISITOR_SOURCES,
    "genders": GENDERS,
    "marital_statuses": MARITAL_STATUSES,
}


def _payload_from_form() -> dict:
    return {f: request.form.get(f) for f in VISITOR_FIELDS}


def _filters() -> dict:
    return {
        "q": (request.args.get("q") or "").strip(),
        "status": (request.args.get("status") or "").strip(),
        "source": (request.args.get("source") or "").strip(),
        "needs_follow_up": request.args.get("needs_follow_up") == "1",
    }


def _get_followup_or_404(s, visitor: Visitor, followup_id: int) -> VisitorFollowUp:
    fu = s.get(VisitorFollowUp, followup_id)
    if not fu or fu.visitor_id != visitor.id:
        abort(404)
    return fu


@bp.get("/visitors")
@require_permission("visitors.view")
def visitors_list():
    s = db_session()
    filters = _filters()
    page = paginate(visitor_list_query(s, current_org_id(), filters), page_number(request.args.get("page")))
    return render_template("visitors/list.html", page=page, filters=filters, today=date.today(), **_CHOICES)


@bp.get("/visitors/new")
@require_permission("visitors.create")
def visitors_new_get():
    return render_template("visitors/form.html", visitor=None, form={"visit_date": date.today().isoformat()}, **_CHOICES)


@bp.post("/visitors/new")
@require_permission("visitors.create")
def visitors_new_post():
    s = db_session()
    payload = _payload_from_form()
    errors = validate_visitor_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("visitors/form.html", visitor=None, form=payload, **_CHOICES), 400

    visitor = create_visitor(s, current_org_id(), payload, current_user())
    s.commit()
    flash("Visitor created.", "success")
    return redirect(url_for("visitors.visitor_detail", visitor_id=visitor.id))


@bp.get("/visitors/<int:visitor_id>")
@require_permission("visitors.view")
def visitor_detail(visitor_id: int):
    s = db_session()
    visitor = get_for_org_or_404(s, Visitor, visitor_id)
    return render_template(
        "visitors/detail.html",
        visitor=visitor,
        followup_methods=VISITOR_FOLLOWUP_METHODS,
        today=date.today(),
    )


@bp.get("/visitors/<int:visitor_id>/edit")
@require_permission("visitors.edit")
def visitor_edit_get(visitor_id: int):
    s = db_session()
    visitor = get_for_org_or_404(s, Visitor, visitor_id)
    return render_template("visitors/form.html", visitor=visitor, form={}, **_CHOICES)


@bp.post("/visitors/<int:visitor_id>/edit")
@require_permission("visitors.edit")
def visitor_edit_post(visitor_id: int):
    s = db_session()
    visitor = get_for_org_or_404(s, Visitor, visitor_id)
    payload = _payload_from_form()
    errors = validate_visitor_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("visitors/form.html", visitor=visitor, form=payload, **_CHOICES), 400

    update_visitor(s, visitor, payload, current_user())
    s.commit()
    flash("Visitor updated.", "success")
    return redirect(url_for("visitors.visitor_detail", visitor_id=visitor.id))


@bp.post("/visitors/<int:visitor_id>/delete")
@require_permission("visitors.delete")
def visitor_delete(visitor_id: int):
    s = db_session()
    visitor = get_for_org_or_404(s, Visitor, visitor_id)
    name = visitor.full_name
    delete_visitor(s, visitor, current_user(), reason=(request.form.get("reason") or "").strip() or None)
    s.commit()
    flash(f"Visitor '{name}' deleted.", "success")
    return redirect(url_for("visitors.visitors_list"))


@bp.post("/visitors/<int:visitor_id>/convert")
@require_permission("visitors.convert")
def visitor_convert(visitor_id: int):
    s = db_session()
    visitor = get_for_org_or_404(s, Visitor, visitor_id)
    name = visitor.full_name
    member = convert_visitor_to_member(s, visitor, current_user())
    s.commit()
    current_app.logger.info("Visitor %s converted to member %s (org=%s)", visitor_id, member.id, member.organization_id)
    flash(f"{name} has been converted to a member.", "success")
    return redirect(url_for("members.member_detail", member_id=member.id))


# ---------- Follow-ups ----------
@bp.post("/visitors/<int:visitor_id>/follow-ups")
@require_permission("followups.edit")
def visitor_followup_add(visitor_id: int):
    s = db_session()
    visitor = get_for_org_or_404(s, Visitor, visitor_id)
    payload = {k: request.form.get(k) for k in ("date", "method", "notes")}
    errors = validate_visitor_followup_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("visitors.visitor_detail", visitor_id=visitor_id))
    add_visitor_followup(s, visitor, payload, current_user())
    s.commit()
    flash("Follow-up recorded.", "success")
    return redirect(url_for("visitors.visitor_detail", visitor_id=visitor_id))


@bp.post("/visitors/<int:visitor_id>/follow-ups/<int:followup_id>/edit")
@require_permission("followups.edit")
def visitor_followup_edit(visitor_id: int, followup_id: int):
    s = db_session()
    visitor = get_for_org_or_404(s, Visitor, visitor_id)
    fu = _get_followup_or_404(s, visitor, followup_id)
    payload = {k: request.form.get(k) for k in ("date", "method", "notes")}
    errors = validate_visitor_followup_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("visitors.visitor_detail", visitor_id=visitor_id))
    update_visitor_followup(s, fu, payload, current_user())
    s.commit()
    flash("Follow-up updated.", "success")
    return redirect(url_for("visitors.visitor_detail", visitor_id=visitor_id))


@bp.post("/visitors/<int:visitor_id>/follow-ups/<int:followup_id>/delete")
@require_permission("followups.edit")
def visitor_followup_delete(visitor_id: int, followup_id: int):
    s = db_session()
    visitor = get_for_org_or_404(s, Visitor, visitor_id)
    fu = _get_followup_or_404(s, visitor, followup_id)
    delete_visitor_followup(s, fu, current_user())
    s.commit()
    flash("Follow-up deleted.", "success")
    return redirect(url_for("visitors.visitor_detail", visitor_id=visitor_id))


# ---------- Import / Export ----------
@bp.get("/visitors/import")
@require_permission("visitors.create")
def visitors_import_get():
    return render_template("visitors/import.html")


@bp.get("/visitors/import-template")
@require_permission("visitors.create")
def visitors_import_template():
    return send_file(
        io.BytesIO(visitor_template_xlsx()),
        mimetype=EXCEL_CONTENT_TYPE,
        as_attachment=True,
        download_name="visitor-import-template.xlsx",
    )


@bp.post("/visitors/import")
@require_permission("visitors.create")
def visitors_import_post():
    s = db_session()
    f = request.files.get("file")
    if not f or not f.filename or not f.filename.lower().endswith(".xlsx"):
        flash("Choose an .xlsx file to import.", "danger")
        return redirect(url_for("visitors.visitors_import_get"))
    try:
        result = import_visitors(s, current_org_id(), f.read(), current_user())
    except ImportFileError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("visitors.visitors_import_get"))
    s.commit()
    flash(f"Import complete: {result['created']} created, {result['failed']} failed.", "success" if not result["failed"] else "warning")
    for e in result["errors"][:20]:
        flash(e, "warning")
    return redirect(url_for("visitors.visitors_list"))


@bp.get("/visitors/export")
@require_permission("visitors.view")
def visitors_export():
    s = db_session()
    visitors = visitor_list_query(s, current_org_id(), _filters()).all()
    return send_file(
        io.BytesIO(export_visitors_xlsx(visitors)),
        mimetype=EXCEL_CONTENT_TYPE,
        as_attachment=True,
        download_name=f"visitors-{date.today().isoformat()}.xlsx",
    )
