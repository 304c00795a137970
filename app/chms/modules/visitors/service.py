from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.chms.audit import record_event
from app.chms.constants import VISITOR_FOLLOWUP_METHODS, VISITOR_SOURCES, VISITOR_STATUSES
from app.chms.excel import build_workbook, cell_bool, cell_date, cell_text, read_rows
from app.chms.modules.members.models import Member
from app.chms.modules.members.service import (
    PERSON_DATE_FIELDS,
    PERSON_FIELDS,
    apply_changes,
    person_values,
    validate_person_fields,
)
from app.chms.modules.visitors.models import Visitor, VisitorFollowUp
from app.chms.utils import clean, is_valid_date, parse_date

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.chms.models import User


VISITOR_FIELDS = PERSON_FIELDS + (
    "visit_date",
    "source",
    "status",
    "invited_by",
    "interests",
    "notes",
    "follow_up_required",
    "follow_up_date",
)
VISITOR_DATE_FIELDS = PERSON_DATE_FIELDS + ("visit_date", "follow_up_date")
VISITOR_EXPORT_HEADERS = ("id",) + VISITOR_FIELDS + ("follow_ups", "created_at")


def _canonical(value: str | None, choices: tuple[str, ...]) -> str | None:
    """Case-insensitive match against choices; returns the canonical spelling or None."""
    if not value:
        return None
    for c in choices:
        if c.lower() == value.strip().lower():
            return c
    return None


def _is_checked(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "on", "true", "yes", "y")


def validate_visitor_payload(payload: dict) -> list[str]:
    """Validate visitor creation/update payload. Returns list of errors."""
    errors = validate_person_fields(payload)
    if not clean(payload.get("visit_date")):
        errors.append("Visit date is required.")
    elif not is_valid_date(payload.get("visit_date")):
        errors.append("Visit date must be YYYY-MM-DD.")
    if not is_valid_date(payload.get("follow_up_date")):
        errors.append("Follow-up date must be YYYY-MM-DD.")
    status = clean(payload.get("status"))
    if status and not _canonical(status, VISITOR_STATUSES):
        errors.append(f"Invalid status. Must be one of: {', '.join(VISITOR_STATUSES)}")
    source = clean(payload.get("source"))
    if source and not _canonical(source, VISITOR_SOURCES):
        errors.append(f"Invalid source. Must be one of: {', '.join(VISITOR_SOURCES)}")
    return errors


def _visitor_values(payload: dict) -> dict[str, Any]:
    values = person_values(payload)
    follow_up_required = _is_checked(payload.get("follow_up_required"))
    values.update(
        {
            "visit_date": parse_date(payload.get("visit_date")),
            "status": _canonical(clean(payload.get("status")), VISITOR_STATUSES) or "New",
            "source": _canonical(clean(payload.get("source")), VISITOR_SOURCES),
            "invited_by": clean(payload.get("invited_by")),
            "interests": clean(payload.get("interests")),
            "notes": clean(payload.get("notes")),
            "follow_up_required": follow_up_required,
            "follow_up_date": parse_date(payload.get("follow_up_date")) if follow_up_required else None,
        }
    )
    return values


def create_visitor(s: "Session", organization_id: int, payload: dict, user: "User") -> Visitor:
    now = datetime.utcnow()
    visitor = Visitor(
        organization_id=organization_id,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **_visitor_values(payload),
    )
    s.add(visitor)
    s.flush()
    record_event(
        s,
        actor=user,
        action="visitor.create",
        entity_type="Visitor",
        entity_id=str(visitor.id),
        metadata={"name": visitor.full_name, "visit_date": str(visitor.visit_date), "source": visitor.source},
    )
    return visitor


def update_visitor(s: "Session", visitor: Visitor, payload: dict, user: "User") -> Visitor:
    changes = apply_changes(visitor, _visitor_values(payload))
    visitor.updated_at = datetime.utcnow()
    visitor.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="visitor.edit",
        entity_type="Visitor",
        entity_id=str(visitor.id),
        metadata={"name": visitor.full_name, "changes": changes},
    )
    return visitor


def delete_visitor(s: "Session", visitor: Visitor, user: "User", reason: str | None = None) -> None:
    record_event(
        s,
        actor=user,
        action="visitor.delete",
        entity_type="Visitor",
        entity_id=str(visitor.id),
        reason=reason,
        metadata={"name": visitor.full_name},
    )
    s.delete(visitor)


def visitor_list_query(s: "Session", organization_id: int, filters: dict) -> "Query[Visitor]":
    q = s.query(Visitor).filter(Visitor.organization_id == organization_id)
    search = (filters.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Visitor.first_name.ilike(like),
                Visitor.last_name.ilike(like),
                Visitor.email.ilike(like),
                Visitor.phone_number.ilike(like),
            )
        )
    if filters.get("status"):
        q = q.filter(Visitor.status == filters["status"])
    if filters.get("source"):
        q = q.filter(Visitor.source == filters["source"])
    if filters.get("needs_follow_up"):
        q = q.filter(Visitor.follow_up_required.is_(True))
    return q.order_by(Visitor.visit_date.desc(), Visitor.id.desc())


# ---------- Follow-ups ----------
def validate_visitor_followup_payload(payload: dict) -> list[str]:
    errors = []
    if not clean(payload.get("date")):
        errors.append("Follow-up date is required.")
    elif not is_valid_date(payload.get("date")):
        errors.append("Follow-up date must be YYYY-MM-DD.")
    method = clean(payload.get("method"))
    if not method:
        errors.append("Method is required.")
    elif method not in VISITOR_FOLLOWUP_METHODS:
        errors.append(f"Invalid method. Must be one of: {', '.join(VISITOR_FOLLOWUP_METHODS)}")
    if not clean(payload.get("notes")):
        errors.append("Notes are required.")
    return errors


def add_visitor_followup(s: "Session", visitor: Visitor, payload: dict, user: "User") -> VisitorFollowUp:
    fu = VisitorFollowUp(
        organization_id=visitor.organization_id,
        visitor_id=visitor.id,
        date=parse_date(payload.get("date")),
        method=clean(payload.get("method")),
        notes=clean(payload.get("notes")),
        created_by_user_id=user.id,
    )
    s.add(fu)
    s.flush()
    record_event(
        s,
        actor=user,
        action="visitor.followup_add",
        entity_type="VisitorFollowUp",
        entity_id=str(fu.id),
        metadata={"visitor_id": visitor.id, "method": fu.method, "date": str(fu.date)},
    )
    return fu


def update_visitor_followup(s: "Session", fu: VisitorFollowUp, payload: dict, user: "User") -> VisitorFollowUp:
    changes = apply_changes(
        fu,
        {
            "date": parse_date(payload.get("date")),
            "method": clean(payload.get("method")),
            "notes": clean(payload.get("notes")),
        },
    )
    record_event(
        s,
        actor=user,
        action="visitor.followup_edit",
        entity_type="VisitorFollowUp",
        entity_id=str(fu.id),
        metadata={"visitor_id": fu.visitor_id, "changes": changes},
    )
    return fu


def delete_visitor_followup(s: "Session", fu: VisitorFollowUp, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="visitor.followup_delete",
        entity_type="VisitorFollowUp",
        entity_id=str(fu.id),
        metadata={"visitor_id": fu.visitor_id, "date": str(fu.date)},
    )
    s.delete(fu)


# ---------- Conversion ----------
def conversion_notes(visitor: Visitor) -> str:
    """
    "Converted from visitor. Original notes: ... Interests: ... Invited by: ..."
    with absent parts left out.
    """
    parts = []
    if visitor.notes:
        parts.append(f"Original notes: {visitor.notes}")
    if visitor.interests:
        parts.append(f"Interests: {visitor.interests}")
    if visitor.invited_by:
        parts.append(f"Invited by: {visitor.invited_by}")
    if not parts:
        return "Converted from visitor"
    return "Converted from visitor. " + " ".join(parts)


def convert_visitor_to_member(s: "Session", visitor: Visitor, user: "User") -> Member:
    """
    Create an active member from the visitor and delete the visitor.
    Both happen in the caller's transaction.
    """
    now = datetime.utcnow()
    member = Member(
        organization_id=visitor.organization_id,
        membership_status="active",
        join_date=visitor.visit_date,
        notes=conversion_notes(visitor),
        photo_storage_key=visitor.photo_storage_key,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
        **{f: getattr(visitor, f) for f in PERSON_FIELDS},
    )
    s.add(member)
    s.flush()

    record_event(
        s,
        actor=user,
        action="visitor.convert",
        entity_type="Visitor",
        entity_id=str(visitor.id),
        metadata={"member_id": member.id, "name": member.full_name},
    )
    s.delete(visitor)
    return member


# ---------- Excel ----------
def visitor_template_xlsx() -> bytes:
    example = {
        "first_name": "Jane",
        "last_name": "Smith",
        "email": "jane.smith@example.com",
        "phone_number": "0244987654",
        "gender": "female",
        "visit_date": date.today().isoformat(),
        "source": "Walk-in",
        "status": "New",
        "invited_by": "John Doe",
        "interests": "Youth Ministry, Music",
        "follow_up_required": "true",
    }
    return build_workbook([("Visitors", VISITOR_FIELDS, [[example.get(f) for f in VISITOR_FIELDS]])])


def import_visitors(s: "Session", organization_id: int, data: bytes, user: "User") -> dict[str, Any]:
    """
    Import visitors from the first sheet. Rows missing first name, last name or phone
    number are counted as failed; visit_date defaults to today.
    """
    created = 0
    failed = 0
    errors: list[str] = []

    for row_no, record in read_rows(data):
        payload: dict[str, Any] = {f: cell_text(record.get(f)) for f in VISITOR_FIELDS}
        try:
            for f in VISITOR_DATE_FIELDS:
                d = cell_date(record.get(f))
                payload[f] = d.isoformat() if d else None
        except ValueError:
            failed += 1
            errors.append(f"Row {row_no}: dates must be YYYY-MM-DD.")
            continue
        payload["follow_up_required"] = cell_bool(record.get("follow_up_required"))
        payload["visit_date"] = payload.get("visit_date") or date.today().isoformat()

        if not (payload.get("first_name") and payload.get("last_name") and payload.get("phone_number")):
            failed += 1
            errors.append(f"Row {row_no}: first_name, last_name and phone_number are required.")
            continue
        row_errors = validate_visitor_payload(payload)
        if row_errors:
            failed += 1
            errors.append(f"Row {row_no}: {' '.join(row_errors)}")
            continue

        now = datetime.utcnow()
        s.add(
            Visitor(
                organization_id=organization_id,
                created_at=now,
                updated_at=now,
                created_by_user_id=user.id,
                updated_by_user_id=user.id,
                **_visitor_values(payload),
            )
        )
        created += 1

    s.flush()
    record_event(
        s,
        actor=user,
        action="visitor.import",
        entity_type="Visitor",
        entity_id=None,
        metadata={"created": created, "failed": failed},
    )
    return {"created": created, "failed": failed, "errors": errors}


def export_visitors_xlsx(visitors: list[Visitor]) -> bytes:
    rows = []
    for v in visitors:
        row: list[Any] = [v.id]
        for f in VISITOR_FIELDS:
            value = getattr(v, f)
            row.append(value.isoformat() if isinstance(value, date) else value)
        row.append(len(v.follow_ups))
        row.append(v.created_at.strftime("%Y-%m-%d %H:%M") if v.created_at else None)
        rows.append(row)
    return build_workbook([("Visitors", VISITOR_EXPORT_HEADERS, rows)])
