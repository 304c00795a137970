from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.chms.audit import record_event
from app.chms.constants import (
    GENDERS,
    MARITAL_STATUSES,
    MEMBERSHIP_STATUSES,
    PHOTO_CONTENT_TYPES,
    PHOTO_MAX_BYTES,
)
from app.chms.excel import build_workbook, cell_date, cell_text, read_rows
from app.chms.modules.members.models import Member
from app.chms.storage import photo_key
from app.chms.utils import clean, is_valid_date, is_valid_email, parse_date, parse_non_negative_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.chms.models import User
    from app.chms.storage import Storage


# Personal fields shared by members and visitors (also the spreadsheet column keys).
PERSON_FIELDS = (
    "first_name",
    "last_name",
    "middle_name",
    "email",
    "phone_number",
    "secondary_phone",
    "gender",
    "date_of_birth",
    "marital_status",
    "spouse_name",
    "number_of_children",
    "occupation",
    "address",
    "city",
    "town",
    "region",
    "digital_address",
)
PERSON_DATE_FIELDS = ("date_of_birth",)

MEMBER_FIELDS = PERSON_FIELDS + ("join_date", "membership_status", "notes")
MEMBER_DATE_FIELDS = PERSON_DATE_FIELDS + ("join_date",)

MEMBER_EXPORT_HEADERS = ("id",) + MEMBER_FIELDS + ("groups", "departments", "positions", "created_at")


def validate_person_fields(payload: dict) -> list[str]:
    errors = []
    if not clean(payload.get("first_name")):
        errors.append("First name is required.")
    if not clean(payload.get("last_name")):
        errors.append("Last name is required.")
    email = clean(payload.get("email"))
    if email and not is_valid_email(email):
        errors.append("Invalid email format.")
    gender = clean(payload.get("gender"))
    if gender and gender.lower() not in GENDERS:
        errors.append(f"Invalid gender. Must be one of: {', '.join(GENDERS)}")
    marital = clean(payload.get("marital_status"))
    if marital and marital.lower() not in MARITAL_STATUSES:
        errors.append(f"Invalid marital status. Must be one of: {', '.join(MARITAL_STATUSES)}")
    if not is_valid_date(payload.get("date_of_birth")):
        errors.append("Date of birth must be YYYY-MM-DD.")
    else:
        dob = parse_date(payload.get("date_of_birth"))
        if dob and dob > date.today():
            errors.append("Date of birth cannot be in the future.")
    try:
        parse_non_negative_int(payload.get("number_of_children"))
    except ValueError:
        errors.append("Number of children must be a whole number of zero or more.")
    return errors


def person_values(payload: dict) -> dict[str, Any]:
    """Normalized column values for the shared personal fields (payload already validated)."""
    gender = clean(payload.get("gender"))
    marital = clean(payload.get("marital_status"))
    return {
        "first_name": clean(payload.get("first_name")) or "",
        "last_name": clean(payload.get("last_name")) or "",
        "middle_name": clean(payload.get("middle_name")),
        "email": (clean(payload.get("email")) or "").lower() or None,
        "phone_number": clean(payload.get("phone_number")),
        "secondary_phone": clean(payload.get("secondary_phone")),
        "gender": gender.lower() if gender else None,
        "date_of_birth": parse_date(payload.get("date_of_birth")),
        "marital_status": marital.lower() if marital else None,
        "spouse_name": clean(payload.get("spouse_name")),
        "number_of_children": parse_non_negative_int(payload.get("number_of_children")),
        "occupation": clean(payload.get("occupation")),
        "address": clean(payload.get("address")),
        "city": clean(payload.get("city")),
        "town": clean(payload.get("town")),
        "region": clean(payload.get("region")),
        "digital_address": clean(payload.get("digital_address")),
    }


def apply_changes(row: Any, values: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Set attributes on row, returning {field: {"old", "new"}} for those that changed."""
    changes: dict[str, dict[str, Any]] = {}
    for field, new in values.items():
        old = getattr(row, field)
        if old != new:
            changes[field] = {
                "old": str(old) if isinstance(old, date) else old,
                "new": str(new) if isinstance(new, date) else new,
            }
            setattr(row, field, new)
    return changes


def validate_member_payload(payload: dict) -> list[str]:
    """Validate member creation/update payload. Returns list of errors."""
    errors = validate_person_fields(payload)
    status = clean(payload.get("membership_status"))
    if status and status.lower() not in MEMBERSHIP_STATUSES:
        errors.append(f"Invalid membership status. Must be one of: {', '.join(MEMBERSHIP_STATUSES)}")
    if not is_valid_date(payload.get("join_date")):
        errors.append("Join date must be YYYY-MM-DD.")
    return errors


def _member_values(payload: dict) -> dict[str, Any]:
    values = person_values(payload)
    values["membership_status"] = (clean(payload.get("membership_status")) or "active").lower()
    values["join_date"] = parse_date(payload.get("join_date"))
    values["notes"] = clean(payload.get("notes"))
    return values


def create_member(s: "Session", organization_id: int, payload: dict, user: "User | None") -> Member:
    """Create a new member."""
    now = datetime.utcnow()
    member = Member(
        organization_id=organization_id,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id if user else None,
        updated_by_user_id=user.id if user else None,
        **_member_values(payload),
    )
    s.add(member)
    s.flush()

    record_event(
        s,
        actor=user,
        action="member.create",
        entity_type="Member",
        entity_id=str(member.id),
        metadata={"name": member.full_name, "status": member.membership_status},
        organization_id=organization_id,
    )
    return member


def update_member(s: "Session", member: Member, payload: dict, user: "User") -> Member:
    """Update an existing member; the audit event carries per-field before/after."""
    changes = apply_changes(member, _member_values(payload))
    member.updated_at = datetime.utcnow()
    member.updated_by_user_id = user.id

    record_event(
        s,
        actor=user,
        action="member.edit",
        entity_type="Member",
        entity_id=str(member.id),
        metadata={"name": member.full_name, "changes": changes},
    )
    return member


def delete_member(s: "Session", member: Member, user: "User", reason: str) -> None:
    """Hard delete; attendance check-ins, follow-ups and memberships go with it."""
    record_event(
        s,
        actor=user,
        action="member.delete",
        entity_type="Member",
        entity_id=str(member.id),
        reason=reason,
        metadata={"name": member.full_name, "phone_number": member.phone_number},
    )
    s.delete(member)


def set_member_affiliations(
    s: "Session",
    member: Member,
    *,
    group_ids: list[int] | None = None,
    department_ids: list[int] | None = None,
    position_ids: list[int] | None = None,
) -> dict[str, list[str]]:
    """Replace the member's groups/departments/positions with rows of the same organization."""
    from app.chms.modules.groups.models import Department, Group, RolePosition

    changed: dict[str, list[str]] = {}
    for attr, model, ids in (
        ("groups", Group, group_ids),
        ("departments", Department, department_ids),
        ("role_positions", RolePosition, position_ids),
    ):
        if ids is None:
            continue
        rows = (
            s.query(model)
            .filter(model.organization_id == member.organization_id, model.id.in_(ids or [-1]))
            .order_by(model.name)
            .all()
        )
        before = sorted(r.name for r in getattr(member, attr))
        setattr(member, attr, rows)
        after = sorted(r.name for r in rows)
        if before != after:
            changed[attr] = after
    return changed


def member_list_query(s: "Session", organization_id: int, filters: dict) -> "Query[Member]":
    """Directory query shared by the list page and the export."""
    from app.chms.modules.groups.models import MemberDepartment, MemberGroup

    q = s.query(Member).filter(Member.organization_id == organization_id)

    search = (filters.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Member.first_name.ilike(like),
                Member.last_name.ilike(like),
                Member.middle_name.ilike(like),
                Member.email.ilike(like),
                Member.phone_number.ilike(like),
            )
        )
    status = (filters.get("status") or "").strip()
    if status:
        q = q.filter(Member.membership_status == status)
    gender = (filters.get("gender") or "").strip()
    if gender:
        q = q.filter(Member.gender == gender)
    group_id = (filters.get("group_id") or "").strip()
    if group_id.isdigit():
        q = q.filter(Member.id.in_(s.query(MemberGroup.member_id).filter(MemberGroup.group_id == int(group_id))))
    department_id = (filters.get("department_id") or "").strip()
    if department_id.isdigit():
        q = q.filter(
            Member.id.in_(
                s.query(MemberDepartment.member_id).filter(MemberDepartment.department_id == int(department_id))
            )
        )
    return q.order_by(Member.last_name.asc(), Member.first_name.asc(), Member.id.asc())


# ---------- Photos ----------
def validate_photo(filename: str, content_type: str | None, size_bytes: int) -> list[str]:
    errors = []
    if not filename:
        errors.append("No file selected.")
    if (content_type or "").lower() not in PHOTO_CONTENT_TYPES:
        errors.append("Photo must be a JPEG, PNG, GIF or WebP image.")
    if size_bytes > PHOTO_MAX_BYTES:
        errors.append("Photo is too large. Maximum size is 5MB.")
    if size_bytes == 0:
        errors.append("Uploaded file is empty.")
    return errors


def upload_member_photo(
    s: "Session",
    storage: "Storage",
    member: Member,
    file_bytes: bytes,
    filename: str,
    content_type: str,
    user: "User",
) -> str:
    key = photo_key("members", member.organization_id, member.id, filename)
    storage.put_bytes(key, file_bytes, content_type=content_type)
    old_key = member.photo_storage_key
    member.photo_storage_key = key
    member.updated_at = datetime.utcnow()
    member.updated_by_user_id = user.id
    if old_key and old_key != key:
        storage.delete(old_key)

    record_event(
        s,
        actor=user,
        action="member.photo_upload",
        entity_type="Member",
        entity_id=str(member.id),
        metadata={"storage_key": key, "size_bytes": len(file_bytes)},
    )
    return key


def remove_member_photo(s: "Session", storage: "Storage", member: Member, user: "User") -> None:
    if not member.photo_storage_key:
        return
    storage.delete(member.photo_storage_key)
    record_event(
        s,
        actor=user,
        action="member.photo_remove",
        entity_type="Member",
        entity_id=str(member.id),
        metadata={"storage_key": member.photo_storage_key},
    )
    member.photo_storage_key = None
    member.updated_at = datetime.utcnow()


# ---------- Excel ----------
def member_template_xlsx() -> bytes:
    example = {
        "first_name": "Ama",
        "last_name": "Mensah",
        "email": "ama@example.com",
        "phone_number": "0244123456",
        "gender": "female",
        "date_of_birth": "1990-05-14",
        "marital_status": "single",
        "join_date": date.today().isoformat(),
        "membership_status": "active",
    }
    return build_workbook([("Members", MEMBER_FIELDS, [[example.get(f) for f in MEMBER_FIELDS]])])


def import_members(s: "Session", organization_id: int, data: bytes, user: "User") -> dict[str, Any]:
    """
    Import members from the first sheet of an .xlsx.
    Rows missing first name, last name or phone number are counted as failed.
    Raises ImportFileError when the file itself cannot be read.
    """
    created = 0
    failed = 0
    errors: list[str] = []

    for row_no, record in read_rows(data):
        payload: dict[str, Any] = {f: cell_text(record.get(f)) for f in MEMBER_FIELDS}
        try:
            for f in MEMBER_DATE_FIELDS:
                d = cell_date(record.get(f))
                payload[f] = d.isoformat() if d else None
        except ValueError:
            failed += 1
            errors.append(f"Row {row_no}: dates must be YYYY-MM-DD.")
            continue

        if not (payload.get("first_name") and payload.get("last_name") and payload.get("phone_number")):
            failed += 1
            errors.append(f"Row {row_no}: first_name, last_name and phone_number are required.")
            continue

        row_errors = validate_member_payload(payload)
        if row_errors:
            failed += 1
            errors.append(f"Row {row_no}: {' '.join(row_errors)}")
            continue

        now = datetime.utcnow()
        s.add(
            Member(
                organization_id=organization_id,
                created_at=now,
                updated_at=now,
                created_by_user_id=user.id,
                updated_by_user_id=user.id,
                **_member_values(payload),
            )
        )
        created += 1

    s.flush()
    record_event(
        s,
        actor=user,
        action="member.import",
        entity_type="Member",
        entity_id=None,
        metadata={"created": created, "failed": failed},
    )
    return {"created": created, "failed": failed, "errors": errors}


def export_members_xlsx(members: list[Member]) -> bytes:
    rows = []
    for m in members:
        row: list[Any] = [m.id]
        for f in MEMBER_FIELDS:
            v = getattr(m, f)
            row.append(v.isoformat() if isinstance(v, date) else v)
        row.append(", ".join(g.name for g in m.groups))
        row.append(", ".join(d.name for d in m.departments))
        row.append(", ".join(p.name for p in m.role_positions))
        row.append(m.created_at.strftime("%Y-%m-%d %H:%M") if m.created_at else None)
        rows.append(row)
    return build_workbook([("Members", MEMBER_EXPORT_HEADERS, rows)])
