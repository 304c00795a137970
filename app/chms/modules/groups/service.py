from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.chms.audit import record_event
from app.chms.constants import ACTIVE_STATUSES
from app.chms.modules.groups.models import (
    Department,
    Group,
    MemberDepartment,
    MemberGroup,
    MemberRolePosition,
    RolePosition,
)
from app.chms.utils import clean

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.chms.models import User
    from app.chms.modules.members.models import Member


# url kind -> (model, link model, link column, display label)
KINDS: dict[str, tuple[type, type, str, str]] = {
    "groups": (Group, MemberGroup, "group_id", "Group"),
    "departments": (Department, MemberDepartment, "department_id", "Department"),
    "positions": (RolePosition, MemberRolePosition, "role_position_id", "Role / Position"),
}


def has_leader(kind: str) -> bool:
    return kind in ("groups", "departments")


def validate_unit_payload(
    s: "Session", kind: str, organization_id: int, payload: dict, exclude_id: int | None = None
) -> list[str]:
    model = KINDS[kind][0]
    label = KINDS[kind][3]
    errors = []
    name = clean(payload.get("name"))
    if not name:
        errors.append("Name is required.")
    else:
        q = s.query(model.id).filter(
            model.organization_id == organization_id, func.lower(model.name) == name.lower()
        )
        if exclude_id is not None:
            q = q.filter(model.id != exclude_id)
        if q.first() is not None:
            errors.append(f"A {label.lower()} named '{name}' already exists.")
    status = clean(payload.get("status"))
    if status and status not in ACTIVE_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(ACTIVE_STATUSES)}")
    return errors


def _unit_values(kind: str, payload: dict) -> dict[str, Any]:
    values: dict[str, Any] = {
        "name": clean(payload.get("name")),
        "description": clean(payload.get("description")),
        "status": clean(payload.get("status")) or "Active",
    }
    if has_leader(kind):
        values["leader"] = clean(payload.get("leader"))
    return values


def create_unit(s: "Session", kind: str, organization_id: int, payload: dict, user: "User"):
    model, _, _, label = KINDS[kind]
    now = datetime.utcnow()
    unit = model(organization_id=organization_id, created_at=now, updated_at=now, **_unit_values(kind, payload))
    s.add(unit)
    s.flush()
    record_event(
        s,
        actor=user,
        action=f"{kind}.create",
        entity_type=model.__name__,
        entity_id=str(unit.id),
        metadata={"name": unit.name, "status": unit.status},
    )
    return unit


def update_unit(s: "Session", kind: str, unit, payload: dict, user: "User"):
    changes: dict[str, Any] = {}
    for field, new in _unit_values(kind, payload).items():
        old = getattr(unit, field)
        if old != new:
            changes[field] = {"old": old, "new": new}
            setattr(unit, field, new)
    unit.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action=f"{kind}.edit",
        entity_type=type(unit).__name__,
        entity_id=str(unit.id),
        metadata={"name": unit.name, "changes": changes},
    )
    return unit


def delete_unit(s: "Session", kind: str, unit, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action=f"{kind}.delete",
        entity_type=type(unit).__name__,
        entity_id=str(unit.id),
        metadata={"name": unit.name, "member_count": len(unit.members)},
    )
    s.delete(unit)


def member_counts(s: "Session", kind: str, organization_id: int) -> dict[int, int]:
    model, link, link_col, _ = KINDS[kind]
    col = getattr(link, link_col)
    rows = (
        s.query(col, func.count(link.member_id))
        .join(model, model.id == col)
        .filter(model.organization_id == organization_id)
        .group_by(col)
        .all()
    )
    return {unit_id: int(n) for unit_id, n in rows}


def assign_member(s: "Session", kind: str, unit, member: "Member", user: "User") -> bool:
    """Add member to unit. Returns False when already assigned."""
    if member in unit.members:
        return False
    unit.members.append(member)
    record_event(
        s,
        actor=user,
        action=f"{kind}.member_add",
        entity_type=type(unit).__name__,
        entity_id=str(unit.id),
        metadata={"name": unit.name, "member_id": member.id, "member_name": member.full_name},
    )
    return True


def unassign_member(s: "Session", kind: str, unit, member: "Member", user: "User") -> bool:
    if member not in unit.members:
        return False
    unit.members.remove(member)
    record_event(
        s,
        actor=user,
        action=f"{kind}.member_remove",
        entity_type=type(unit).__name__,
        entity_id=str(unit.id),
        metadata={"name": unit.name, "member_id": member.id, "member_name": member.full_name},
    )
    return True
