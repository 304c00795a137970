from __future__ import annotations

import logging
import re
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.chms.audit import record_event
from app.chms.models import Organization
from app.chms.modules.birthdays.service import todays_birthdays
from app.chms.modules.groups.models import Department, Group
from app.chms.modules.members.models import Member
from app.chms.modules.messaging.gateway import SmsGatewayClient, SmsGatewayError
from app.chms.modules.messaging.models import (
    Message,
    MessageRecipient,
    MessageTemplate,
    NotificationSettings,
    SmsApiConfiguration,
)
from app.chms.modules.messaging.utils import (
    calculate_sms_cost,
    format_phone_number,
    is_valid_phone,
    personalize_message,
    split_name,
)
from app.chms.utils import clean, format_date

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.chms.models import User

logger = logging.getLogger(__name__)

MESSAGE_STATUSES = ("Draft", "Scheduled", "Sending", "Sent", "Failed", "Cancelled")
RECIPIENT_TYPES = ("individual", "group", "department", "all_members", "phone_numbers")
RECURRENCE_FREQUENCIES = ("Weekly", "Monthly", "Yearly")

# frequency -> (min days, max days) since the previous send
RECURRENCE_WINDOWS = {
    "Weekly": (7, 13),
    "Monthly": (28, 34),
    "Yearly": (365, 374),
}

DEFAULT_BIRTHDAY_MESSAGE = (
    "Happy Birthday {FirstName}! Wishing you a blessed day filled with joy and happiness. God bless you!"
)
TEST_MESSAGE = "Test message from your church management system. Your SMS integration is working correctly!"


def gateway_for(config: SmsApiConfiguration, base_url: str) -> SmsGatewayClient:
    return SmsGatewayClient(
        api_key=config.api_key,
        sender_id=config.sender_id,
        username=config.username or "",
        base_url=base_url,
    )


# ---------- Templates ----------
def validate_template_payload(
    s: "Session", organization_id: int, payload: dict, exclude_id: int | None = None
) -> list[str]:
    errors = []
    name = clean(payload.get("name"))
    if not name:
        errors.append("Template name is required.")
    else:
        q = s.query(MessageTemplate.id).filter(
            MessageTemplate.organization_id == organization_id, MessageTemplate.name == name
        )
        if exclude_id is not None:
            q = q.filter(MessageTemplate.id != exclude_id)
        if q.first() is not None:
            errors.append(f"A template named '{name}' already exists.")
    if not clean(payload.get("message")):
        errors.append("Template message is required.")
    return errors


def create_template(s: "Session", organization_id: int, payload: dict, user: "User") -> MessageTemplate:
    now = datetime.utcnow()
    t = MessageTemplate(
        organization_id=organization_id,
        name=clean(payload.get("name")),
        message=clean(payload.get("message")),
        created_at=now,
        updated_at=now,
    )
    s.add(t)
    s.flush()
    record_event(s, actor=user, action="messaging.template_create", entity_type="MessageTemplate", entity_id=str(t.id), metadata={"name": t.name})
    return t


def update_template(s: "Session", t: MessageTemplate, payload: dict, user: "User") -> MessageTemplate:
    t.name = clean(payload.get("name"))
    t.message = clean(payload.get("message"))
    t.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="messaging.template_edit", entity_type="MessageTemplate", entity_id=str(t.id), metadata={"name": t.name})
    return t


def delete_template(s: "Session", t: MessageTemplate, user: "User") -> None:
    record_event(s, actor=user, action="messaging.template_delete", entity_type="MessageTemplate", entity_id=str(t.id), metadata={"name": t.name})
    s.delete(t)


# ---------- API configurations ----------
def validate_api_config_payload(payload: dict, require_key: bool = True) -> list[str]:
    errors = []
    if not clean(payload.get("name")):
        errors.append("Configuration name is required.")
    if require_key and not clean(payload.get("api_key")):
        errors.append("API key is required.")
    sender_id = clean(payload.get("sender_id"))
    if not sender_id:
        errors.append("Sender ID is required.")
    elif len(sender_id) > 11:
        errors.append("Sender ID must be 11 characters or fewer.")
    return errors


def active_api_config(s: "Session", organization_id: int) -> SmsApiConfiguration | None:
    return (
        s.query(SmsApiConfiguration)
        .filter(SmsApiConfiguration.organization_id == organization_id, SmsApiConfiguration.is_active.is_(True))
        .order_by(SmsApiConfiguration.updated_at.desc())
        .first()
    )


def _deactivate_others(s: "Session", config: SmsApiConfiguration) -> None:
    s.query(SmsApiConfiguration).filter(
        SmsApiConfiguration.organization_id == config.organization_id,
        SmsApiConfiguration.id != config.id,
        SmsApiConfiguration.is_active.is_(True),
    ).update({"is_active": False}, synchronize_session="fetch")


def create_api_config(s: "Session", organization_id: int, payload: dict, user: "User") -> SmsApiConfiguration:
    now = datetime.utcnow()
    has_active = active_api_config(s, organization_id) is not None
    config = SmsApiConfiguration(
        organization_id=organization_id,
        name=clean(payload.get("name")),
        api_key=clean(payload.get("api_key")),
        username=clean(payload.get("username")),
        sender_id=clean(payload.get("sender_id")),
        # the first configuration becomes active
        is_active=bool(payload.get("is_active")) or not has_active,
        created_at=now,
        updated_at=now,
    )
    s.add(config)
    s.flush()
    if config.is_active:
        _deactivate_others(s, config)
    record_event(
        s,
        actor=user,
        action="messaging.config_create",
        entity_type="SmsApiConfiguration",
        entity_id=str(config.id),
        metadata={"name": config.name, "sender_id": config.sender_id, "is_active": config.is_active},
    )
    return config


def update_api_config(s: "Session", config: SmsApiConfiguration, payload: dict, user: "User") -> SmsApiConfiguration:
    """A blank api_key keeps the stored key."""
    config.name = clean(payload.get("name"))
    config.username = clean(payload.get("username"))
    config.sender_id = clean(payload.get("sender_id"))
    new_key = clean(payload.get("api_key"))
    if new_key:
        config.api_key = new_key
    config.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="messaging.config_edit",
        entity_type="SmsApiConfiguration",
        entity_id=str(config.id),
        metadata={"name": config.name, "sender_id": config.sender_id, "api_key_changed": bool(new_key)},
    )
    return config


def activate_api_config(s: "Session", config: SmsApiConfiguration, user: "User") -> SmsApiConfiguration:
    _deactivate_others(s, config)
    config.is_active = True
    config.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="messaging.config_activate", entity_type="SmsApiConfiguration", entity_id=str(config.id), metadata={"name": config.name})
    return config


def delete_api_config(s: "Session", config: SmsApiConfiguration, user: "User") -> None:
    record_event(s, actor=user, action="messaging.config_delete", entity_type="SmsApiConfiguration", entity_id=str(config.id), metadata={"name": config.name})
    s.delete(config)


def test_api_config(client: SmsGatewayClient, phone: str, country_code: str = "233") -> dict[str, Any]:
    """Send a test SMS. Raises SmsGatewayError on an invalid number or a rejected send."""
    destination = format_phone_number(phone, country_code)
    if not is_valid_phone(destination, country_code):
        raise SmsGatewayError(f"Invalid phone number: {phone}")
    return client.send([{"destination": destination, "message": TEST_MESSAGE, "msgid": f"TEST_{int(time.time() * 1000)}"}])


# ---------- Compose ----------
def parse_phone_list(raw: str | None) -> list[str]:
    return [p for p in re.split(r"[,;\n\r]+", raw or "") if p.strip()]


def resolve_recipients(
    s: "Session",
    organization_id: int,
    recipient_type: str,
    *,
    member_ids: list[int] | None = None,
    group_id: int | None = None,
    department_id: int | None = None,
    phone_numbers: list[str] | None = None,
    country_code: str = "233",
) -> list[dict[str, Any]]:
    """
    Returns [{"member": Member | None, "phone": formatted, "name": str}], one per phone number.
    Members without a phone number are skipped.
    """
    members: list[Member] = []
    if recipient_type == "individual":
        if member_ids:
            members = (
                s.query(Member)
                .filter(Member.organization_id == organization_id, Member.id.in_(member_ids))
                .order_by(Member.last_name, Member.first_name)
                .all()
            )
    elif recipient_type == "group":
        group = s.get(Group, group_id) if group_id else None
        if group is not None and group.organization_id == organization_id:
            members = list(group.members)
    elif recipient_type == "department":
        dept = s.get(Department, department_id) if department_id else None
        if dept is not None and dept.organization_id == organization_id:
            members = list(dept.members)
    elif recipient_type == "all_members":
        members = (
            s.query(Member)
            .filter(Member.organization_id == organization_id, Member.membership_status == "active")
            .order_by(Member.last_name, Member.first_name)
            .all()
        )

    out: list[dict[str, Any]] = []
    seen: set[str] = set()
    for m in members:
        if not m.phone_number:
            continue
        phone = format_phone_number(m.phone_number, country_code)
        if phone in seen:
            continue
        seen.add(phone)
        out.append({"member": m, "phone": phone, "name": m.full_name})
    if recipient_type == "phone_numbers":
        for raw in phone_numbers or []:
            phone = format_phone_number(raw.strip(), country_code)
            if phone in seen:
                continue
            seen.add(phone)
            out.append({"member": None, "phone": phone, "name": phone})
    return out


def validate_compose_payload(payload: dict, now: datetime | None = None) -> list[str]:
    errors = []
    if not clean(payload.get("message_name")):
        errors.append("Message name is required.")
    if not clean(payload.get("message_text")):
        errors.append("Message text is required.")
    if clean(payload.get("recipient_type")) not in RECIPIENT_TYPES:
        errors.append("Choose who should receive the message.")
    raw_when = clean(payload.get("scheduled_at"))
    if raw_when:
        try:
            datetime.fromisoformat(raw_when)
        except ValueError:
            errors.append("Scheduled time must be YYYY-MM-DDTHH:MM.")
    if payload.get("is_recurring"):
        if clean(payload.get("recurrence_frequency")) not in RECURRENCE_FREQUENCIES:
            errors.append(f"Recurrence must be one of: {', '.join(RECURRENCE_FREQUENCIES)}")
        raw_end = clean(payload.get("recurrence_end_date"))
        if raw_end:
            try:
                date.fromisoformat(raw_end)
            except ValueError:
                errors.append("Recurrence end date must be YYYY-MM-DD.")
    return errors


def _personalized(text: str, recipient: dict[str, Any], organization: Organization | None) -> str:
    member = recipient.get("member")
    if member is not None:
        first, last = member.first_name or "", member.last_name or ""
    elif recipient.get("name") and recipient.get("name") != recipient.get("phone"):
        first, last = split_name(recipient.get("name"))
    else:
        first, last = "", ""
    return personalize_message(
        text,
        {
            "FirstName": first,
            "LastName": last,
            "PhoneNumber": recipient.get("phone"),
            "Currency": organization.currency if organization else None,
            "Organization": organization.name if organization else None,
            "Date": format_date(date.today()),
        },
    )


def org_template_id(s: "Session", organization_id: int, raw: Any) -> int | None:
    """Template id from a form value; ids of other organizations' templates are dropped."""
    raw = str(raw or "").strip()
    template = s.get(MessageTemplate, int(raw)) if raw.isdigit() else None
    if template is None or template.organization_id != organization_id:
        return None
    return template.id


def create_message(
    s: "Session",
    organization_id: int,
    payload: dict,
    recipients: list[dict[str, Any]],
    config: SmsApiConfiguration | None,
    user: "User | None",
    *,
    cost_per_segment: float = 0.10,
    country_code: str = "233",
    now: datetime | None = None,
) -> Message:
    """
    Create the message and one recipient row per phone number.
    Saved as Scheduled when scheduled_at lies in the future, otherwise Draft (ready to send).
    """
    now = now or datetime.utcnow()
    text = clean(payload.get("message_text")) or ""
    raw_when = clean(payload.get("scheduled_at"))
    scheduled_at = datetime.fromisoformat(raw_when) if raw_when else None
    is_recurring = bool(payload.get("is_recurring"))
    raw_end = clean(payload.get("recurrence_end_date"))
    organization = s.get(Organization, organization_id)

    message = Message(
        organization_id=organization_id,
        message_name=clean(payload.get("message_name")),
        message_text=text,
        recipient_type=clean(payload.get("recipient_type")) or "individual",
        recipient_count=len(recipients),
        status="Scheduled" if scheduled_at and scheduled_at > now else "Draft",
        scheduled_at=scheduled_at,
        is_recurring=is_recurring,
        recurrence_frequency=clean(payload.get("recurrence_frequency")) if is_recurring else None,
        recurrence_end_date=date.fromisoformat(raw_end) if is_recurring and raw_end else None,
        template_id=org_template_id(s, organization_id, payload.get("template_id")),
        api_configuration_id=config.id if config else None,
        cost=Decimal(str(calculate_sms_cost(len(text), len(recipients), cost_per_segment))),
        created_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    s.add(message)
    s.flush()

    for r in recipients:
        personalized = _personalized(text, r, organization)
        valid = is_valid_phone(r["phone"], country_code)
        s.add(
            MessageRecipient(
                message_id=message.id,
                recipient_type="member" if r.get("member") is not None else "phone_number",
                member_id=r["member"].id if r.get("member") is not None else None,
                phone_number=r["phone"],
                recipient_name=r.get("name") or r["phone"],
                personalized_message=personalized,
                status="Pending" if valid else "Failed",
                error_message=None if valid else "Invalid phone number",
                cost=Decimal(str(calculate_sms_cost(len(personalized), 1, cost_per_segment))),
                created_at=now,
            )
        )
    s.flush()
    s.refresh(message)

    record_event(
        s,
        actor=user,
        action="messaging.message_create",
        entity_type="Message",
        entity_id=str(message.id),
        organization_id=organization_id,
        metadata={
            "name": message.message_name,
            "recipient_type": message.recipient_type,
            "recipients": message.recipient_count,
            "status": message.status,
        },
    )
    return message


def _finalize(message: Message, errors: list[str], now: datetime) -> None:
    total = len(message.recipients)
    sent = sum(1 for r in message.recipients if r.status == "Sent")
    failed = sum(1 for r in message.recipients if r.status == "Failed")
    if sent:
        message.status = "Sent"
        message.sent_at = now
        message.error_message = f"{failed} of {total} recipients failed. {' '.join(errors)}".strip() if failed else None
    else:
        message.status = "Failed"
        message.error_message = "; ".join(errors) or "No recipients could be sent."
    message.updated_at = now


def send_message(
    s: "Session",
    message: Message,
    client: SmsGatewayClient,
    *,
    batch_size: int = 100,
    user: "User | None" = None,
) -> dict[str, Any]:
    """
    Send every Pending recipient in batches. A rejected batch marks its recipients Failed and
    the next batch still goes out. Returns {"sent", "failed", "errors"}.
    """
    message.status = "Sending"
    message.updated_at = datetime.utcnow()
    s.flush()

    pending = [r for r in message.recipients if r.status == "Pending"]
    errors: list[str] = []
    for n, start in enumerate(range(0, len(pending), max(1, batch_size)), start=1):
        batch = pending[start : start + max(1, batch_size)]
        ts = int(time.time() * 1000)
        destinations = [
            {
                "destination": r.phone_number,
                "message": r.personalized_message or message.message_text,
                "msgid": f"MSG_{message.id}_{r.id}_{ts}",
            }
            for r in batch
        ]
        for r in batch:
            r.status = "Sending"
        try:
            client.send(destinations)
        except SmsGatewayError as e:
            logger.warning("SMS batch %s of message %s failed: %s", n, message.id, e)
            errors.append(f"Batch {n}: {e}")
            for r in batch:
                r.status = "Failed"
                r.error_message = str(e)[:500]
            continue
        sent_at = datetime.utcnow()
        for r in batch:
            r.status = "Sent"
            r.sent_at = sent_at
        s.flush()

    _finalize(message, errors, datetime.utcnow())
    sent = sum(1 for r in message.recipients if r.status == "Sent")
    failed = sum(1 for r in message.recipients if r.status == "Failed")
    record_event(
        s,
        actor=user,
        action="messaging.message_send",
        entity_type="Message",
        entity_id=str(message.id),
        organization_id=message.organization_id,
        metadata={"name": message.message_name, "status": message.status, "sent": sent, "failed": failed},
    )
    logger.info("Message %s (org=%s) %s: sent=%s failed=%s", message.id, message.organization_id, message.status, sent, failed)
    return {"sent": sent, "failed": failed, "errors": errors}


def cancel_message(s: "Session", message: Message, user: "User") -> bool:
    if message.status not in ("Scheduled", "Draft"):
        return False
    message.status = "Cancelled"
    message.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="messaging.message_cancel", entity_type="Message", entity_id=str(message.id), metadata={"name": message.message_name})
    return True


def delete_message(s: "Session", message: Message, user: "User") -> None:
    record_event(s, actor=user, action="messaging.message_delete", entity_type="Message", entity_id=str(message.id), metadata={"name": message.message_name, "status": message.status})
    s.delete(message)


# ---------- Jobs ----------
def _config_for(s: "Session", message: Message) -> SmsApiConfiguration | None:
    config = message.api_configuration
    if config is not None and config.is_active:
        return config
    return active_api_config(s, message.organization_id)


def process_due_scheduled(s: "Session", *, base_url: str, batch_size: int = 100, now: datetime | None = None) -> int:
    """
    Send Scheduled messages whose time has come. Returns number of messages processed.
    Commits after each message so a later failure cannot undo sends already delivered.
    """
    now = now or datetime.utcnow()
    due = (
        s.query(Message)
        .filter(Message.status == "Scheduled", Message.scheduled_at.isnot(None), Message.scheduled_at <= now)
        .order_by(Message.scheduled_at.asc())
        .all()
    )
    for message in due:
        config = _config_for(s, message)
        if config is None:
            message.status = "Failed"
            message.error_message = "No active SMS API configuration."
            message.updated_at = now
            logger.warning("Scheduled message %s skipped: no active API configuration (org=%s)", message.id, message.organization_id)
        else:
            message.api_configuration_id = config.id
            send_message(s, message, gateway_for(config, base_url), batch_size=batch_size)
        s.commit()
    return len(due)


def recurrence_due(message: Message, now: datetime) -> bool:
    window = RECURRENCE_WINDOWS.get(message.recurrence_frequency or "")
    if window is None:
        return False
    last = message.sent_at or message.created_at
    days = (now - last).days
    return window[0] <= days <= window[1]


def process_recurring(
    s: "Session",
    *,
    base_url: str,
    batch_size: int = 100,
    now: datetime | None = None,
) -> dict[str, int]:
    """
    Re-send recurring messages that fall inside their window. Each run creates a new
    "(Recurring)" message to the previously sent recipients. The recurrence moves to the
    clone once it is Sent; a failed clone leaves the parent recurring so the next run in
    the window retries. Commits after each message.
    """
    now = now or datetime.utcnow()
    counts = {"sent": 0, "failed": 0, "ended": 0, "skipped": 0}
    rows = s.query(Message).filter(Message.is_recurring.is_(True), Message.status == "Sent").all()
    for message in rows:
        if message.recurrence_end_date and now.date() > message.recurrence_end_date:
            message.is_recurring = False
            message.updated_at = now
            counts["ended"] += 1
            continue
        if not recurrence_due(message, now):
            counts["skipped"] += 1
            continue
        config = _config_for(s, message)
        previous = [r for r in message.recipients if r.status == "Sent"]
        if config is None or not previous:
            counts["skipped"] += 1
            continue

        name = message.message_name if message.message_name.endswith("(Recurring)") else f"{message.message_name} (Recurring)"
        clone = Message(
            organization_id=message.organization_id,
            message_name=name,
            message_text=message.message_text,
            recipient_type=message.recipient_type,
            recipient_count=len(previous),
            status="Draft",
            is_recurring=True,
            recurrence_frequency=message.recurrence_frequency,
            recurrence_end_date=message.recurrence_end_date,
            template_id=message.template_id,
            api_configuration_id=config.id,
            cost=message.cost,
            created_by_user_id=message.created_by_user_id,
            created_at=now,
            updated_at=now,
        )
        s.add(clone)
        s.flush()
        for r in previous:
            s.add(
                MessageRecipient(
                    message_id=clone.id,
                    recipient_type=r.recipient_type,
                    member_id=r.member_id,
                    phone_number=r.phone_number,
                    recipient_name=r.recipient_name,
                    personalized_message=r.personalized_message or message.message_text,
                    status="Pending",
                    cost=r.cost,
                    created_at=now,
                )
            )
        s.flush()
        s.refresh(clone)
        send_message(s, clone, gateway_for(config, base_url), batch_size=batch_size)
        if clone.status == "Sent":
            message.is_recurring = False
            message.updated_at = now
            counts["sent"] += 1
        else:
            clone.is_recurring = False
            counts["failed"] += 1
        s.commit()
    return counts


def get_notification_settings(s: "Session", organization_id: int) -> NotificationSettings:
    ns = s.query(NotificationSettings).filter(NotificationSettings.organization_id == organization_id).one_or_none()
    if ns is None:
        ns = NotificationSettings(organization_id=organization_id, birthday_messages_enabled=False)
        s.add(ns)
        s.flush()
    return ns


def update_notification_settings(s: "Session", organization_id: int, payload: dict, user: "User") -> NotificationSettings:
    ns = get_notification_settings(s, organization_id)
    ns.birthday_messages_enabled = bool(payload.get("birthday_messages_enabled"))
    ns.birthday_template_id = org_template_id(s, organization_id, payload.get("birthday_template_id"))
    ns.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="messaging.settings_edit",
        entity_type="NotificationSettings",
        entity_id=str(ns.id),
        metadata={"birthday_messages_enabled": ns.birthday_messages_enabled, "birthday_template_id": ns.birthday_template_id},
    )
    return ns


def _birthday_sent_today(s: "Session", organization_id: int, member_id: int, today: date) -> bool:
    start = datetime.combine(today, datetime.min.time())
    return (
        s.query(MessageRecipient.id)
        .join(Message, Message.id == MessageRecipient.message_id)
        .filter(
            Message.organization_id == organization_id,
            Message.message_name.like("Birthday Message - %"),
            Message.created_at >= start,
            Message.created_at < start + timedelta(days=1),
            MessageRecipient.member_id == member_id,
        )
        .first()
        is not None
    )


def run_birthday_job(
    s: "Session",
    *,
    base_url: str,
    today: date | None = None,
    cost_per_segment: float = 0.10,
) -> dict[str, int]:
    """
    Send one birthday SMS per celebrating member for organizations that enabled it.
    Commits after each member.
    """
    today = today or date.today()
    counts = {"sent": 0, "failed": 0, "skipped": 0}
    enabled = s.query(NotificationSettings).filter(NotificationSettings.birthday_messages_enabled.is_(True)).all()
    for ns in enabled:
        org = s.get(Organization, ns.organization_id)
        config = active_api_config(s, ns.organization_id)
        if org is None or config is None:
            logger.warning("Birthday job: org=%s has no active API configuration", ns.organization_id)
            continue
        text = ns.birthday_template.message if ns.birthday_template is not None else DEFAULT_BIRTHDAY_MESSAGE
        members = (
            s.query(Member)
            .filter(
                Member.organization_id == org.id,
                Member.membership_status == "active",
                Member.date_of_birth.isnot(None),
                Member.phone_number.isnot(None),
                Member.phone_number != "",
            )
            .all()
        )
        client = gateway_for(config, base_url)
        for entry in todays_birthdays(members, today):
            member = entry["member"]
            if _birthday_sent_today(s, org.id, member.id, today):
                counts["skipped"] += 1
                continue
            recipients = [{"member": member, "phone": format_phone_number(member.phone_number, org.country_code), "name": member.full_name}]
            message = create_message(
                s,
                org.id,
                {
                    "message_name": f"Birthday Message - {member.first_name} {member.last_name}",
                    "message_text": text,
                    "recipient_type": "individual",
                    "template_id": ns.birthday_template_id,
                },
                recipients,
                config,
                None,
                cost_per_segment=cost_per_segment,
                country_code=org.country_code,
            )
            result = send_message(s, message, client, batch_size=1)
            # the committed message is what keeps this member from a second SMS today
            s.commit()
            if result["sent"]:
                counts["sent"] += 1
            else:
                counts["failed"] += 1
    return counts


# ---------- Delivery reports ----------
_DELIVERY_STATUS = {"delivered": "Sent", "sent": "Sent", "failed": "Failed"}


def _parse_timestamp(raw: Any) -> datetime:
    if raw:
        try:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
            return parsed.replace(tzinfo=None)
        except ValueError:
            pass
    return datetime.utcnow()


def apply_delivery_report(s: "Session", payload: dict) -> tuple[int, str]:
    """
    Apply a gateway delivery report {message_id, status, phone_number, timestamp?, error?}.
    Returns (http_status, error_text); error_text is empty on success.
    """
    message_id = payload.get("message_id")
    status = payload.get("status")
    phone_number = payload.get("phone_number")
    if not (isinstance(message_id, str) and isinstance(status, str) and isinstance(phone_number, str)):
        return 400, "message_id, status and phone_number are required"

    parts = message_id.split("_")
    if len(parts) < 3 or not parts[1].isdigit() or not parts[2].isdigit():
        return 400, "Invalid message ID format"

    recipient = s.get(MessageRecipient, int(parts[2]))
    if recipient is None or recipient.message_id != int(parts[1]) or recipient.phone_number != phone_number:
        return 404, "Recipient not found"

    new_status = _DELIVERY_STATUS.get(status.strip().lower(), "Pending")
    when = _parse_timestamp(payload.get("timestamp"))
    recipient.status = new_status
    if new_status in ("Sent", "Failed"):
        recipient.sent_at = when
    if payload.get("error"):
        recipient.error_message = str(payload.get("error"))[:500]

    message = recipient.message
    statuses = [r.status for r in message.recipients]
    if all(st in ("Sent", "Failed") for st in statuses):
        if all(st == "Failed" for st in statuses):
            message.status = "Failed"
        else:
            message.status = "Sent"
            message.sent_at = when
        message.updated_at = datetime.utcnow()
    return 200, ""


# ---------- Analytics ----------
def messaging_analytics(s: "Session", organization_id: int, today: date | None = None, months: int = 12) -> dict[str, Any]:
    today = today or date.today()
    by_status = {st: 0 for st in MESSAGE_STATUSES}
    for st, n in (
        s.query(Message.status, func.count(Message.id))
        .filter(Message.organization_id == organization_id)
        .group_by(Message.status)
        .all()
    ):
        by_status[st] = int(n)

    total_cost = (
        s.query(func.coalesce(func.sum(Message.cost), 0))
        .filter(Message.organization_id == organization_id, Message.status == "Sent")
        .scalar()
    )
    recipient_counts = {
        st: int(n)
        for st, n in s.query(MessageRecipient.status, func.count(MessageRecipient.id))
        .join(Message, Message.id == MessageRecipient.message_id)
        .filter(Message.organization_id == organization_id)
        .group_by(MessageRecipient.status)
        .all()
    }

    # last `months` calendar months, oldest first
    keys = []
    y, m = today.year, today.month
    for _ in range(months):
        keys.append((y, m))
        m -= 1
        if m == 0:
            y, m = y - 1, 12
    keys.reverse()
    start = datetime(keys[0][0], keys[0][1], 1)
    per_month = {k: 0 for k in keys}
    for (created_at,) in s.query(Message.created_at).filter(
        Message.organization_id == organization_id, Message.created_at >= start
    ):
        k = (created_at.year, created_at.month)
        if k in per_month:
            per_month[k] += 1

    sent = recipient_counts.get("Sent", 0)
    failed = recipient_counts.get("Failed", 0)
    return {
        "total_messages": sum(by_status.values()),
        "by_status": by_status,
        "total_cost": float(total_cost or 0),
        "recipients_sent": sent,
        "recipients_failed": failed,
        "recipients_pending": recipient_counts.get("Pending", 0) + recipient_counts.get("Sending", 0),
        "delivery_rate": round(sent * 100.0 / (sent + failed), 1) if (sent + failed) else 0.0,
        "per_month": [{"label": date(y, m, 1).strftime("%b %Y"), "count": per_month[(y, m)]} for y, m in keys],
    }
