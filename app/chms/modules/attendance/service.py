from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.chms.audit import record_event
from app.chms.excel import build_workbook
from app.chms.modules.attendance.models import AttendanceRecord, MemberAttendance
from app.chms.utils import clean, is_valid_date, parse_date, parse_non_negative_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.chms.models import User
    from app.chms.modules.members.models import Member


COUNT_FIELDS = ("men", "women", "children", "first_timers")
EXPORT_HEADERS = ("date", "service_type", "total_attendance", "men", "women", "children", "first_timers", "present_members", "notes")


def find_duplicate_record(
    s: "Session", organization_id: int, on: date, service_type: str, exclude_id: int | None = None
) -> AttendanceRecord | None:
    q = s.query(AttendanceRecord).filter(
        AttendanceRecord.organization_id == organization_id,
        AttendanceRecord.date == on,
        AttendanceRecord.service_type == service_type,
    )
    if exclude_id is not None:
        q = q.filter(AttendanceRecord.id != exclude_id)
    return q.first()


def validate_attendance_payload(
    s: "Session", organization_id: int, payload: dict, exclude_id: int | None = None
) -> list[str]:
    """Validate a service record. Returns list of errors."""
    errors = []
    raw_date = clean(payload.get("date"))
    if not raw_date:
        errors.append("Date is required.")
    elif not is_valid_date(raw_date):
        errors.append("Date must be YYYY-MM-DD.")
    service_type = clean(payload.get("service_type"))
    if not service_type:
        errors.append("Service type is required.")
    elif len(service_type) > 100:
        errors.append("Service type must be 100 characters or fewer.")

    if clean(payload.get("total_attendance")) is None:
        errors.append("Total attendance is required.")
    for field in ("total_attendance",) + COUNT_FIELDS:
        try:
            parse_non_negative_int(payload.get(field))
        except ValueError:
            errors.append(f"{field.replace('_', ' ').capitalize()} must be a whole number of zero or more.")

    if not errors and raw_date and service_type:
        if find_duplicate_record(s, organization_id, parse_date(raw_date), service_type, exclude_id):
            errors.append(f"An attendance record for {service_type} on {raw_date} already exists.")
    return errors


def _record_values(payload: dict) -> dict[str, Any]:
    values: dict[str, Any] = {
        "date": parse_date(payload.get("date")),
        "service_type": clean(payload.get("service_type")),
        "total_attendance": parse_non_negative_int(payload.get("total_attendance")) or 0,
        "notes": clean(payload.get("notes")),
    }
    for field in COUNT_FIELDS:
        values[field] = parse_non_negative_int(payload.get(field))
    return values


def create_attendance_record(s: "Session", organization_id: int, payload: dict, user: "User") -> AttendanceRecord:
    now = datetime.utcnow()
    record = AttendanceRecord(
        organization_id=organization_id,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        **_record_values(payload),
    )
    s.add(record)
    s.flush()
    record_event(
        s,
        actor=user,
        action="attendance.create",
        entity_type="AttendanceRecord",
        entity_id=str(record.id),
        metadata={"date": str(record.date), "service_type": record.service_type, "total": record.total_attendance},
    )
    return record


def update_attendance_record(s: "Session", record: AttendanceRecord, payload: dict, user: "User") -> AttendanceRecord:
    """Update a service record; check-ins keyed by the old (date, service_type) move with it."""
    old_date, old_service = record.date, record.service_type
    values = _record_values(payload)
    changes: dict[str, Any] = {}
    for field, new in values.items():
        old = getattr(record, field)
        if old != new:
            changes[field] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
            setattr(record, field, new)
    record.updated_at = datetime.utcnow()

    moved = 0
    if (record.date, record.service_type) != (old_date, old_service):
        moved = (
            s.query(MemberAttendance)
            .filter(
                MemberAttendance.organization_id == record.organization_id,
                MemberAttendance.date == old_date,
                MemberAttendance.service_type == old_service,
            )
            .update({"date": record.date, "service_type": record.service_type}, synchronize_session="fetch")
        )

    record_event(
        s,
        actor=user,
        action="attendance.edit",
        entity_type="AttendanceRecord",
        entity_id=str(record.id),
        metadata={"changes": changes, "checkins_moved": moved},
    )
    return record


def delete_attendance_record(s: "Session", record: AttendanceRecord, user: "User") -> int:
    """Delete the service record and its member check-ins. Returns number of check-ins removed."""
    removed = (
        s.query(MemberAttendance)
        .filter(
            MemberAttendance.organization_id == record.organization_id,
            MemberAttendance.date == record.date,
            MemberAttendance.service_type == record.service_type,
        )
        .delete(synchronize_session="fetch")
    )
    record_event(
        s,
        actor=user,
        action="attendance.delete",
        entity_type="AttendanceRecord",
        entity_id=str(record.id),
        metadata={"date": str(record.date), "service_type": record.service_type, "checkins_removed": removed},
    )
    s.delete(record)
    return removed


def checkins_for_record(s: "Session", record: AttendanceRecord) -> dict[int, MemberAttendance]:
    rows = (
        s.query(MemberAttendance)
        .filter(
            MemberAttendance.organization_id == record.organization_id,
            MemberAttendance.date == record.date,
            MemberAttendance.service_type == record.service_type,
        )
        .all()
    )
    return {r.member_id: r for r in rows}


def save_checkins(
    s: "Session",
    record: AttendanceRecord,
    present_member_ids: list[int],
    user: "User",
    notes: str | None = None,
) -> dict[str, int]:
    """
    Replace the check-ins for the record's (date, service_type).
    Listed members are saved present; every other active member of the organization absent.
    """
    from app.chms.modules.members.models import Member

    present = set(present_member_ids)
    member_ids = {
        mid
        for (mid,) in s.query(Member.id).filter(
            Member.organization_id == record.organization_id,
            (Member.membership_status == "active") | (Member.id.in_(present or [-1])),
        )
    }
    # Ignore ids that are not members of this organization.
    present &= member_ids

    s.query(MemberAttendance).filter(
        MemberAttendance.organization_id == record.organization_id,
        MemberAttendance.date == record.date,
        MemberAttendance.service_type == record.service_type,
    ).delete(synchronize_session="fetch")

    now = datetime.utcnow()
    for mid in sorted(member_ids):
        is_present = mid in present
        s.add(
            MemberAttendance(
                organization_id=record.organization_id,
                member_id=mid,
                date=record.date,
                service_type=record.service_type,
                status="present" if is_present else "absent",
                checked_in_at=now if is_present else None,
                notes=clean(notes),
            )
        )
    s.flush()

    counts = {"present": len(present), "absent": len(member_ids) - len(present)}
    record_event(
        s,
        actor=user,
        action="attendance.checkins",
        entity_type="AttendanceRecord",
        entity_id=str(record.id),
        metadata={"date": str(record.date), "service_type": record.service_type, **counts},
    )
    return counts


def record_list_query(s: "Session", organization_id: int, filters: dict) -> "Query[AttendanceRecord]":
    q = s.query(AttendanceRecord).filter(AttendanceRecord.organization_id == organization_id)
    date_from = filters.get("date_from")
    date_to = filters.get("date_to")
    service_type = (filters.get("service_type") or "").strip()
    if date_from:
        q = q.filter(AttendanceRecord.date >= date_from)
    if date_to:
        q = q.filter(AttendanceRecord.date <= date_to)
    if service_type:
        q = q.filter(AttendanceRecord.service_type == service_type)
    return q.order_by(AttendanceRecord.date.desc(), AttendanceRecord.service_type.asc())


def attendance_summary(records: list[AttendanceRecord]) -> dict[str, Any]:
    total = sum(r.total_attendance or 0 for r in records)
    return {
        "records": len(records),
        "total_attendance": total,
        "average_attendance": round(total / len(records), 1) if records else 0,
        "first_timers": sum(r.first_timers or 0 for r in records),
    }


def service_types_in_use(s: "Session", organization_id: int) -> list[str]:
    rows = (
        s.query(AttendanceRecord.service_type)
        .filter(AttendanceRecord.organization_id == organization_id)
        .distinct()
        .all()
    )
    return sorted(r[0] for r in rows if r[0])


def member_attendance_summary(s: "Session", member: "Member", limit: int = 50) -> dict[str, Any]:
    """History (newest first) plus attendance rate = present / recorded."""
    base = s.query(MemberAttendance).filter(MemberAttendance.member_id == member.id)
    recorded = base.count()
    present = base.filter(MemberAttendance.status == "present").count()
    history = base.order_by(MemberAttendance.date.desc(), MemberAttendance.id.desc()).limit(limit).all()
    return {
        "history": history,
        "recorded": recorded,
        "present": present,
        "rate": round(present * 100.0 / recorded, 1) if recorded else 0.0,
    }


def present_counts(s: "Session", organization_id: int) -> dict[tuple[date, str], int]:
    rows = (
        s.query(MemberAttendance.date, MemberAttendance.service_type, func.count(MemberAttendance.id))
        .filter(MemberAttendance.organization_id == organization_id, MemberAttendance.status == "present")
        .group_by(MemberAttendance.date, MemberAttendance.service_type)
        .all()
    )
    return {(d, st): int(n) for d, st, n in rows}


def export_attendance_xlsx(s: "Session", organization_id: int, records: list[AttendanceRecord]) -> bytes:
    present = present_counts(s, organization_id)
    rows = [
        [
            r.date.isoformat(),
            r.service_type,
            r.total_attendance,
            r.men,
            r.women,
            r.children,
            r.first_timers,
            present.get((r.date, r.service_type), 0),
            r.notes,
        ]
        for r in records
    ]
    return build_workbook([("Attendance", EXPORT_HEADERS, rows)])
