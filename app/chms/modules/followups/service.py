from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Any

from app.chms.audit import record_event
from app.chms.constants import MEMBER_FOLLOWUP_METHODS
from app.chms.modules.members.models import Member, MemberFollowUp
from app.chms.modules.members.service import apply_changes
from app.chms.modules.visitors.models import Visitor, VisitorFollowUp
from app.chms.utils import clean, is_valid_date, parse_date

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.chms.models import User


def validate_member_followup_payload(payload: dict) -> list[str]:
    errors = []
    if not clean(payload.get("date")):
        errors.append("Follow-up date is required.")
    elif not is_valid_date(payload.get("date")):
        errors.append("Follow-up date must be YYYY-MM-DD.")
    method = clean(payload.get("method"))
    if not method:
        errors.append("Method is required.")
    elif method not in MEMBER_FOLLOWUP_METHODS:
        errors.append(f"Invalid method. Must be one of: {', '.join(MEMBER_FOLLOWUP_METHODS)}")
    if not clean(payload.get("notes")):
        errors.append("Notes are required.")
    return errors


def add_member_followup(s: "Session", member: Member, payload: dict, user: "User") -> MemberFollowUp:
    fu = MemberFollowUp(
        organization_id=member.organization_id,
        member_id=member.id,
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
        action="member.followup_add",
        entity_type="MemberFollowUp",
        entity_id=str(fu.id),
        metadata={"member_id": member.id, "method": fu.method, "date": str(fu.date)},
    )
    return fu


def update_member_followup(s: "Session", fu: MemberFollowUp, payload: dict, user: "User") -> MemberFollowUp:
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
        action="member.followup_edit",
        entity_type="MemberFollowUp",
        entity_id=str(fu.id),
        metadata={"member_id": fu.member_id, "changes": changes},
    )
    return fu


def delete_member_followup(s: "Session", fu: MemberFollowUp, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="member.followup_delete",
        entity_type="MemberFollowUp",
        entity_id=str(fu.id),
        metadata={"member_id": fu.member_id, "date": str(fu.date)},
    )
    s.delete(fu)


def followup_feed(
    s: "Session",
    organization_id: int,
    *,
    method: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 500,
) -> list[dict[str, Any]]:
    """Member and visitor follow-ups merged, newest first."""
    items: list[dict[str, Any]] = []
    for model, kind in ((MemberFollowUp, "member"), (VisitorFollowUp, "visitor")):
        q = s.query(model).filter(model.organization_id == organization_id)
        if method:
            q = q.filter(model.method == method)
        if date_from:
            q = q.filter(model.date >= date_from)
        if date_to:
            q = q.filter(model.date <= date_to)
        for fu in q.order_by(model.date.desc(), model.id.desc()).limit(limit).all():
            person = fu.member if kind == "member" else fu.visitor
            items.append(
                {
                    "kind": kind,
                    "id": fu.id,
                    "person_id": person.id,
                    "person_name": person.full_name,
                    "date": fu.date,
                    "method": fu.method,
                    "notes": fu.notes,
                }
            )
    items.sort(key=lambda i: (i["date"], i["id"]), reverse=True)
    return items[:limit]


def visitors_needing_follow_up(s: "Session", organization_id: int, today: date | None = None) -> list[dict[str, Any]]:
    """Visitors flagged for follow-up, soonest due first; undated ones last."""
    today = today or date.today()
    rows = (
        s.query(Visitor)
        .filter(Visitor.organization_id == organization_id, Visitor.follow_up_required.is_(True))
        .all()
    )
    rows.sort(key=lambda v: (v.follow_up_date is None, v.follow_up_date or date.max, v.last_name))
    return [
        {
            "visitor": v,
            "due": v.follow_up_date,
            "overdue": bool(v.follow_up_date and v.follow_up_date < today),
        }
        for v in rows
    ]
