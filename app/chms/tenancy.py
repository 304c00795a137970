"""
Organization scoping.

Every church-side row carries organization_id. Handlers read through
tenant_query()/get_for_org_or_404() so a row that belongs to another
organization is indistinguishable from a missing one.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from flask import abort, g
from werkzeug.security import generate_password_hash

from app.chms.audit import record_event
from app.chms.constants import ORG_SIZES, ORG_TYPES
from app.chms.models import Organization, Role, User
from app.chms.utils import clean, is_valid_email

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

T = TypeVar("T")


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def current_org_id() -> int:
    u = getattr(g, "current_user", None)
    if not u or u.organization_id is None:
        abort(403)
    return u.organization_id


def tenant_query(s: "Session", model: type[T]) -> "Query[T]":
    return s.query(model).filter(model.organization_id == current_org_id())  # type: ignore[attr-defined]


def get_for_org_or_404(s: "Session", model: type[T], row_id: int) -> T:
    row = s.get(model, row_id)
    if row is None or getattr(row, "organization_id", None) != current_org_id():
        abort(404)
    return row


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug[:100] or "org"


def _unique_slug(s: "Session", name: str) -> str:
    base = slugify(name)
    slug = base
    n = 2
    while s.query(Organization.id).filter(Organization.slug == slug).first() is not None:
        slug = f"{base}-{n}"
        n += 1
    return slug


def validate_organization_payload(payload: dict) -> list[str]:
    errors = []
    if not clean(payload.get("name")):
        errors.append("Organization name is required.")
    org_type = clean(payload.get("org_type"))
    if org_type and org_type not in ORG_TYPES:
        errors.append(f"Invalid organization type. Must be one of: {', '.join(ORG_TYPES)}")
    size_range = clean(payload.get("size_range"))
    if size_range and size_range not in ORG_SIZES:
        errors.append(f"Invalid organization size. Must be one of: {', '.join(ORG_SIZES)}")
    country_code = clean(payload.get("country_code"))
    if country_code and not country_code.isdigit():
        errors.append("Country code must contain digits only (e.g. 233).")
    email = clean(payload.get("email"))
    if email and not is_valid_email(email):
        errors.append("Invalid organization email format.")
    return errors


def validate_signup_payload(s: "Session", payload: dict) -> list[str]:
    errors = validate_organization_payload(
        {
            "name": payload.get("organization_name"),
            "org_type": payload.get("org_type"),
            "size_range": payload.get("size_range"),
            "country_code": payload.get("country_code"),
        }
    )
    return errors + validate_account_payload(s, payload)


def create_organization_with_owner(s: "Session", payload: dict) -> tuple[Organization, User]:
    """Create the organization, its owner account and attach the owner role. Caller commits."""
    from app.chms.rbac import seed_roles_and_permissions

    roles = seed_roles_and_permissions(s)
    now = datetime.utcnow()
    name = (payload.get("organization_name") or "").strip()
    org = Organization(
        name=name,
        slug=_unique_slug(s, name),
        org_type=clean(payload.get("org_type")) or "church",
        size_range=clean(payload.get("size_range")),
        currency=(clean(payload.get("currency")) or "GHS").upper(),
        country_code=clean(payload.get("country_code")) or "233",
        created_at=now,
        updated_at=now,
    )
    s.add(org)
    s.flush()

    user = User(
        organization_id=org.id,
        email=(payload.get("email") or "").strip().lower(),
        full_name=clean(payload.get("full_name")),
        password_hash=generate_password_hash(payload.get("password") or ""),
        is_active=True,
    )
    user.roles.append(roles["owner"])
    s.add(user)
    s.flush()

    record_event(
        s,
        actor=user,
        action="organization.create",
        entity_type="Organization",
        entity_id=str(org.id),
        metadata={"name": org.name, "org_type": org.org_type, "owner_email": user.email},
    )
    return org, user


def update_organization(s: "Session", org: Organization, payload: dict, user: User) -> Organization:
    changes: dict[str, Any] = {}
    fields = {
        "name": clean(payload.get("name")) or org.name,
        "org_type": clean(payload.get("org_type")) or org.org_type,
        "size_range": clean(payload.get("size_range")),
        "currency": (clean(payload.get("currency")) or org.currency).upper(),
        "country_code": clean(payload.get("country_code")) or org.country_code,
        "address": clean(payload.get("address")),
        "phone": clean(payload.get("phone")),
        "email": clean(payload.get("email")),
    }
    for field, new in fields.items():
        old = getattr(org, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(org, field, new)
    org.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="organization.update",
        entity_type="Organization",
        entity_id=str(org.id),
        metadata={"changes": changes},
    )
    return org


def password_errors(password: str, password_confirm: str) -> list[str]:
    if not password:
        return ["Password is required."]
    if len(password) < 8:
        return ["Password must be at least 8 characters."]
    if password != password_confirm:
        return ["Passwords do not match."]
    return []


def _email_errors(s: "Session", email: str) -> list[str]:
    if not email:
        return ["Email is required."]
    if not is_valid_email(email):
        return ["Invalid email format."]
    if s.query(User.id).filter(User.email == email).first() is not None:
        return ["An account with this email already exists."]
    return []


def validate_account_payload(s: "Session", payload: dict) -> list[str]:
    email = (payload.get("email") or "").strip().lower()
    return _email_errors(s, email) + password_errors(
        payload.get("password") or "", payload.get("password_confirm") or ""
    )


def create_account(s: "Session", organization_id: int, payload: dict, roles: list[Role], actor: User) -> User:
    """Staff login inside an existing organization. Caller validates and commits."""
    user = User(
        organization_id=organization_id,
        email=(payload.get("email") or "").strip().lower(),
        full_name=clean(payload.get("full_name")),
        password_hash=generate_password_hash(payload.get("password") or ""),
        is_active=True,
    )
    user.roles.extend(roles)
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email, "roles": [r.key for r in user.roles]},
    )
    return user


def update_account(s: "Session", user: User, *, is_active: bool, roles: list[Role], actor: User) -> User:
    before = {"is_active": user.is_active, "roles": [r.key for r in user.roles]}
    user.is_active = is_active
    user.roles[:] = roles
    record_event(
        s,
        actor=actor,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": {"is_active": is_active, "roles": [r.key for r in roles]}},
    )
    return user


def reset_password(s: "Session", user: User, password: str, actor: User) -> None:
    user.password_hash = generate_password_hash(password)
    record_event(
        s,
        actor=actor,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_email": user.email, "reset_by": actor.email},
    )


def update_profile(s: "Session", user: User, full_name: str | None) -> None:
    old = user.full_name
    user.full_name = full_name
    record_event(
        s,
        actor=user,
        action="user.profile_update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"full_name": {"old": old, "new": full_name}},
    )
