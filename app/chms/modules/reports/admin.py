from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, flash, render_template, request, send_file

from app.chms.constants import EXCEL_CONTENT_TYPE
from app.chms.db import db_session
from app.chms.modules.reports.service import (
    attendance_report,
    export_attendance_report_xlsx,
    export_member_report_xlsx,
    member_growth,
    member_report,
)
from app.chms.rbac import require_permission
from app.chms.tenancy import current_org_id
from app.chms.utils import safe_parse_date

bp = Blueprint("reports", __name__)


def _date_range() -> tuple[date, date]:
    today = date.today()
    raw_from = (request.args.get("date_from") or "").strip()
    raw_to = (request.args.get("date_to") or "").strip()
    date_from = safe_parse_date(raw_from)
    date_to = safe_parse_date(raw_to)
    if raw_from and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if raw_to and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")
    return date_from or date(today.year, 1, 1), date_to or today


@bp.get("/")
@require_permission("reports.view")
def reports_index():
    s = db_session()
    org_id = current_org_id()
    date_from, date_to = _date_range()
    return render_template(
        "reports/index.html",
        members=member_report(s, org_id),
        growth=member_growth(s, org_id),
        attendance=attendance_report(s, org_id, date_from, date_to),
        date_from=date_from,
        date_to=date_to,
    )


@bp.get("/members.xlsx")
@require_permission("reports.export")
def members_report_export():
    s = db_session()
    org_id = current_org_id()
    data = export_member_report_xlsx(member_report(s, org_id), member_growth(s, org_id))
    return send_file(
        io.BytesIO(data),
        mimetype=EXCEL_CONTENT_TYPE,
        as_attachment=True,
        download_name=f"member-report-{date.today().isoformat()}.xlsx",
    )


@bp.get("/attendance.xlsx")
@require_permission("reports.export")
def attendance_report_export():
    s = db_session()
    date_from, date_to = _date_range()
    data = export_attendance_report_xlsx(attendance_report(s, current_org_id(), date_from, date_to))
    return send_file(
        io.BytesIO(data),
        mimetype=EXCEL_CONTENT_TYPE,
        as_attachment=True,
        download_name=f"attendance-report-{date_from.isoformat()}-{date_to.isoformat()}.xlsx",
    )
