from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, flash, redirect, render_template, request, send_file, url_for

from app.chms.constants import EXCEL_CONTENT_TYPE, SERVICE_TYPES
from app.chms.db import db_session
from app.chms.modules.attendance.models import AttendanceRecord
from app.chms.modules.attendance.service import (
    attendance_summary,
    checkins_for_record,
    create_attendance_record,
    delete_attendance_record,
    export_attendance_xlsx,
    record_list_query,
    save_checkins,
    service_types_in_use,
    update_attendance_record,
    validate_attendance_payload,
)
from app.chms.modules.members.models import Member
from app.chms.rbac import require_permission
from app.chms.tenancy import current_org_id, current_user, get_for_org_or_404
from app.chms.utils import page_number, paginate, safe_parse_date

bp = Blueprint("attendance", __name__)

_FIELDS = ("date", "service_type", "total_attendance", "men", "women", "children", "first_timers", "notes")


def _payload_from_form() -> dict:
    return {f: request.form.get(f) for f in _FIELDS}


def _filters() -> dict:
    raw_from = (request.args.get("date_from") or "").strip()
    raw_to = (request.args.get("date_to") or "").strip()
    date_from = safe_parse_date(raw_from)
    date_to = safe_parse_date(raw_to)
    if raw_from and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if raw_to and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")
    return {
        "date_from": date_from,
        "date_to": date_to,
        "service_type": (request.args.get("service_type") or "").strip(),
    }


def _service_type_choices(s) -> list[str]:
    return sorted(set(SERVICE_TYPES) | set(service_types_in_use(s, current_org_id())))


@bp.get("/attendance")
@require_permission("attendance.view")
def attendance_list():
    s = db_session()
    filters = _filters()
    q = record_list_query(s, current_org_id(), filters)
    summary = attendance_summary(q.all())
    page = paginate(q, page_number(request.args.get("page")))
    return render_template(
        "attendance/list.html",
        page=page,
        summary=summary,
        filters=filters,
        service_types=_service_type_choices(s),
    )


@bp.get("/attendance/new")
@require_permission("attendance.edit")
def attendance_new_get():
    s = db_session()
    return render_template(
        "attendance/form.html",
        record=None,
        form={"date": date.today().isoformat()},
        service_types=_service_type_choices(s),
    )


@bp.post("/attendance/new")
@require_permission("attendance.edit")
def attendance_new_post():
    s = db_session()
    payload = _payload_from_form()
    errors = validate_attendance_payload(s, current_org_id(), payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("attendance/form.html", record=None, form=payload, service_types=_service_type_choices(s)), 400

    record = create_attendance_record(s, current_org_id(), payload, current_user())
    s.commit()
    flash("Attendance record created.", "success")
    return redirect(url_for("attendance.attendance_detail", record_id=record.id))


@bp.get("/attendance/<int:record_id>")
@require_permission("attendance.view")
def attendance_detail(record_id: int):
    s = db_session()
    record = get_for_org_or_404(s, AttendanceRecord, record_id)
    checkins = checkins_for_record(s, record)
    members = (
        s.query(Member)
        .filter(
            Member.organization_id == record.organization_id,
            (Member.membership_status == "active") | (Member.id.in_(list(checkins) or [-1])),
        )
        .order_by(Member.last_name, Member.first_name)
        .all()
    )
    present_count = sum(1 for c in checkins.values() if c.status == "present")
    return render_template(
        "attendance/detail.html",
        record=record,
        members=members,
        checkins=checkins,
        present_count=present_count,
    )


@bp.get("/attendance/<int:record_id>/edit")
@require_permission("attendance.edit")
def attendance_edit_get(record_id: int):
    s = db_session()
    record = get_for_org_or_404(s, AttendanceRecord, record_id)
    return render_template("attendance/form.html", record=record, form={}, service_types=_service_type_choices(s))


@bp.post("/attendance/<int:record_id>/edit")
@require_permission("attendance.edit")
def attendance_edit_post(record_id: int):
    s = db_session()
    record = get_for_org_or_404(s, AttendanceRecord, record_id)
    payload = _payload_from_form()
    errors = validate_attendance_payload(s, record.organization_id, payload, exclude_id=record.id)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("attendance/form.html", record=record, form=payload, service_types=_service_type_choices(s)), 400

    update_attendance_record(s, record, payload, current_user())
    s.commit()
    flash("Attendance record updated.", "success")
    return redirect(url_for("attendance.attendance_detail", record_id=record.id))


@bp.post("/attendance/<int:record_id>/delete")
@require_permission("attendance.edit")
def attendance_delete(record_id: int):
    s = db_session()
    record = get_for_org_or_404(s, AttendanceRecord, record_id)
    delete_attendance_record(s, record, current_user())
    s.commit()
    flash("Attendance record deleted.", "success")
    return redirect(url_for("attendance.attendance_list"))


@bp.post("/attendance/<int:record_id>/checkins")
@require_permission("attendance.edit")
def attendance_checkins(record_id: int):
    s = db_session()
    record = get_for_org_or_404(s, AttendanceRecord, record_id)
    present_ids = [int(v) for v in request.form.getlist("present_member_ids") if str(v).isdigit()]
    counts = save_checkins(s, record, present_ids, current_user(), notes=request.form.get("notes"))
    s.commit()
    flash(f"Check-ins saved: {counts['present']} present, {counts['absent']} absent.", "success")
    return redirect(url_for("attendance.attendance_detail", record_id=record.id))


@bp.get("/attendance/export")
@require_permission("attendance.view")
def attendance_export():
    s = db_session()
    records = record_list_query(s, current_org_id(), _filters()).all()
    return send_file(
        io.BytesIO(export_attendance_xlsx(s, current_org_id(), records)),
        mimetype=EXCEL_CONTENT_TYPE,
        as_attachment=True,
        download_name=f"attendance-{date.today().isoformat()}.xlsx",
    )
