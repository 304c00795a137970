"""
Append-only audit trail.

Services call record_event() inside their own transaction; the event is
committed (or rolled back) with the change it describes.
"""
from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from flask import g, has_request_context, request

from app.chms.models import AuditEvent, User

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

AUDIT_PAGE_LIMIT = 200


def _request_details() -> tuple[str | None, str | None]:
    if not has_request_context():
        return None, None
    return getattr(g, "request_id", None), request.remote_addr


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    organization_id: int | None = None,
) -> AuditEvent:
    """organization_id defaults to the actor's; jobs without an actor pass it explicitly."""
    request_id, client_ip = _request_details()
    if organization_id is None and actor is not None:
        organization_id = actor.organization_id
    event = AuditEvent(
        request_id=request_id,
        client_ip=client_ip,
        organization_id=organization_id,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(event)
    return event


def search_events(
    s: Session,
    organization_id: int,
    *,
    action: str = "",
    actor_email: str = "",
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[AuditEvent]:
    """Newest first; text filters are substring matches and date_to covers the whole day."""
    q = s.query(AuditEvent).filter(AuditEvent.organization_id == organization_id)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    return q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(AUDIT_PAGE_LIMIT).all()
