from __future__ import annotations

import calendar
from datetime import date
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.chms.excel import build_workbook
from app.chms.modules.attendance.models import AttendanceRecord
from app.chms.modules.birthdays.service import birthday_stats, members_with_birthdays
from app.chms.modules.groups.models import Department, Group
from app.chms.modules.members.models import Member
from app.chms.modules.visitors.models import Visitor

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


AGE_BRACKETS: tuple[tuple[str, int, int | None], ...] = (
    ("0-12", 0, 12),
    ("13-17", 13, 17),
    ("18-35", 18, 35),
    ("36-50", 36, 50),
    ("51-65", 51, 65),
    ("66+", 66, None),
)
UNKNOWN_AGE = "Unknown"


def age_bracket(dob: date | None, today: date) -> str:
    if dob is None or dob > today:
        return UNKNOWN_AGE
    age = today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))
    for label, low, high in AGE_BRACKETS:
        if age >= low and (high is None or age <= high):
            return label
    return UNKNOWN_AGE


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _counts(rows) -> list[dict[str, Any]]:
    return [{"label": label or "Not set", "count": int(n)} for label, n in rows]


def dashboard_overview(s: "Session", organization_id: int, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    base = s.query(Member).filter(Member.organization_id == organization_id)
    total = base.count()
    active = base.filter(Member.membership_status == "active").count()
    inactive = base.filter(Member.membership_status == "inactive").count()
    male = base.filter(Member.gender == "male").count()
    female = base.filter(Member.gender == "female").count()

    month_start = today.replace(day=1)
    visitors_this_month = (
        s.query(func.count(Visitor.id))
        .filter(
            Visitor.organization_id == organization_id,
            Visitor.visit_date >= month_start,
            Visitor.visit_date <= _month_end(today.year, today.month),
        )
        .scalar()
    )
    birthdays = birthday_stats(members_with_birthdays(s, organization_id), today)
    latest_attendance = (
        s.query(AttendanceRecord)
        .filter(AttendanceRecord.organization_id == organization_id)
        .order_by(AttendanceRecord.date.desc(), AttendanceRecord.id.desc())
        .first()
    )
    recent_members = (
        base.order_by(Member.join_date.is_(None), Member.join_date.desc(), Member.created_at.desc()).limit(10).all()
    )
    return {
        "total_members": total,
        "active_members": active,
        "inactive_members": inactive,
        "male_members": male,
        "female_members": female,
        "groups": s.query(func.count(Group.id)).filter(Group.organization_id == organization_id).scalar() or 0,
        "departments": s.query(func.count(Department.id)).filter(Department.organization_id == organization_id).scalar() or 0,
        "visitors_this_month": int(visitors_this_month or 0),
        "birthdays_today": birthdays["today"],
        "birthdays_this_week": birthdays["this_week"],
        "latest_attendance": latest_attendance,
        "recent_members": recent_members,
    }


def member_growth(s: "Session", organization_id: int, today: date | None = None) -> list[dict[str, Any]]:
    """Cumulative members joined by the end of each month of the current year, up to this month."""
    today = today or date.today()
    rows = (
        s.query(Member.join_date, Member.created_at, Member.membership_status)
        .filter(Member.organization_id == organization_id)
        .all()
    )
    joined = [(join_date or created_at.date(), status) for join_date, created_at, status in rows]
    out = []
    for month in range(1, today.month + 1):
        end = _month_end(today.year, month)
        out.append(
            {
                "month": month,
                "label": calendar.month_abbr[month],
                "total": sum(1 for d, _ in joined if d <= end),
                "active": sum(1 for d, st in joined if d <= end and st == "active"),
            }
        )
    return out


def attendance_report(
    s: "Session", organization_id: int, date_from: date | None = None, date_to: date | None = None
) -> dict[str, Any]:
    q = s.query(AttendanceRecord).filter(AttendanceRecord.organization_id == organization_id)
    if date_from:
        q = q.filter(AttendanceRecord.date >= date_from)
    if date_to:
        q = q.filter(AttendanceRecord.date <= date_to)
    records = q.order_by(AttendanceRecord.date.asc(), AttendanceRecord.service_type.asc()).all()

    by_service: dict[str, list[AttendanceRecord]] = {}
    by_month: dict[tuple[int, int], list[AttendanceRecord]] = {}
    for r in records:
        by_service.setdefault(r.service_type, []).append(r)
        by_month.setdefault((r.date.year, r.date.month), []).append(r)

    def _row(label: str, rows: list[AttendanceRecord]) -> dict[str, Any]:
        total = sum(r.total_attendance or 0 for r in rows)
        return {
            "label": label,
            "services": len(rows),
            "total": total,
            "average": round(total / len(rows), 1) if rows else 0,
            "first_timers": sum(r.first_timers or 0 for r in rows),
        }

    total = sum(r.total_attendance or 0 for r in records)
    return {
        "date_from": date_from,
        "date_to": date_to,
        "services": len(records),
        "total": total,
        "average": round(total / len(records), 1) if records else 0,
        "by_service": [_row(k, v) for k, v in sorted(by_service.items())],
        "by_month": [_row(date(y, m, 1).strftime("%b %Y"), v) for (y, m), v in sorted(by_month.items())],
        "trend": [{"date": r.date, "service_type": r.service_type, "total": r.total_attendance or 0} for r in records],
    }


def member_report(s: "Session", organization_id: int, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()

    def _group_by(col):
        return _counts(
            s.query(col, func.count(Member.id))
            .filter(Member.organization_id == organization_id)
            .group_by(col)
            .order_by(col)
            .all()
        )

    def _affiliation(model, members_attr):
        rows = s.query(model).filter(model.organization_id == organization_id).order_by(model.name).all()
        return [{"label": row.name, "count": len(getattr(row, members_attr))} for row in rows]

    brackets = {label: 0 for label, _, _ in AGE_BRACKETS}
    brackets[UNKNOWN_AGE] = 0
    for (dob,) in s.query(Member.date_of_birth).filter(Member.organization_id == organization_id):
        brackets[age_bracket(dob, today)] += 1

    return {
        "total": s.query(func.count(Member.id)).filter(Member.organization_id == organization_id).scalar() or 0,
        "by_status": _group_by(Member.membership_status),
        "by_gender": _group_by(Member.gender),
        "by_marital_status": _group_by(Member.marital_status),
        "by_group": _affiliation(Group, "members"),
        "by_department": _affiliation(Department, "members"),
        "age_brackets": [{"label": k, "count": v} for k, v in brackets.items()],
    }


# ---------- Excel ----------
def _count_sheet(title: str, rows: list[dict[str, Any]]) -> tuple[str, tuple[str, ...], list[list[Any]]]:
    return (title, ("label", "count"), [[r["label"], r["count"]] for r in rows])


def export_member_report_xlsx(report: dict[str, Any], growth: list[dict[str, Any]]) -> bytes:
    return build_workbook(
        [
            _count_sheet("By status", report["by_status"]),
            _count_sheet("By gender", report["by_gender"]),
            _count_sheet("By marital status", report["by_marital_status"]),
            _count_sheet("By group", report["by_group"]),
            _count_sheet("By department", report["by_department"]),
            _count_sheet("Age brackets", report["age_brackets"]),
            ("Growth", ("month", "total", "active"), [[g["label"], g["total"], g["active"]] for g in growth]),
        ]
    )


def export_attendance_report_xlsx(report: dict[str, Any]) -> bytes:
    headers = ("label", "services", "total", "average", "first_timers")
    return build_workbook(
        [
            ("By service", headers, [[r[h] for h in headers] for r in report["by_service"]]),
            ("By month", headers, [[r[h] for h in headers] for r in report["by_month"]]),
            (
                "Trend",
                ("date", "service_type", "total"),
                [[t["date"].isoformat(), t["service_type"], t["total"]] for t in report["trend"]],
            ),
        ]
    )
