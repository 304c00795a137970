"""SMS messaging: configurations, recipients, sending, jobs and delivery reports."""
from datetime import date, datetime, timedelta

import pytest

from app.chms.db import session_scope
from app.chms.models import User
from app.chms.modules.groups.models import Group
from app.chms.modules.members.service import create_member
from app.chms.tenancy import create_organization_with_owner
from app.chms.modules.messaging import service
from app.chms.modules.messaging.gateway import SmsGatewayClient, SmsGatewayError
from app.chms.modules.messaging.models import Message, MessageRecipient, SmsApiConfiguration
from app.chms.modules.messaging.service import (
    active_api_config,
    apply_delivery_report,
    cancel_message,
    create_api_config,
    create_message,
    create_template,
    messaging_analytics,
    parse_phone_list,
    process_due_scheduled,
    process_recurring,
    recurrence_due,
    resolve_recipients,
    run_birthday_job,
    send_message,
    update_notification_settings,
    validate_compose_payload,
)

from conftest import OWNER_EMAIL


class FakeClient:
    """Stands in for SmsGatewayClient; fails the batches whose 1-based number is in fail_on."""

    def __init__(self, fail_on=()):
        self.batches = []
        self.fail_on = set(fail_on)

    def send(self, destinations):
        self.batches.append(destinations)
        if len(self.batches) in self.fail_on:
            raise SmsGatewayError("Insufficient balance")
        return {"status": "SUCCESS"}


@pytest.fixture()
def sent_batches(monkeypatch):
    """Patch the real client so jobs that build their own gateway never hit the network."""
    batches = []

    def fake_send(self, destinations):
        batches.append(destinations)
        return {"status": "SUCCESS"}

    monkeypatch.setattr(SmsGatewayClient, "send", fake_send)
    return batches


def _owner(s):
    return s.query(User).filter(User.email == OWNER_EMAIL).one()


def _config(s, org_id, **overrides):
    payload = {"name": "Main", "api_key": "key-123", "sender_id": "GraceChapel"}
    payload.update(overrides)
    return create_api_config(s, org_id, payload, _owner(s))


def _phone_message(s, org_id, numbers, text="Hello {FirstName}", **payload):
    recipients = resolve_recipients(s, org_id, "phone_numbers", phone_numbers=numbers)
    data = {"message_name": "Notice", "message_text": text, "recipient_type": "phone_numbers"}
    data.update(payload)
    return create_message(s, org_id, data, recipients, _config(s, org_id), _owner(s))


def test_first_config_becomes_active(app, org_id):
    with session_scope(app) as s:
        first = _config(s, org_id)
        second = _config(s, org_id, name="Backup")
        assert first.is_active is True
        assert second.is_active is False
        assert active_api_config(s, org_id).id == first.id

        third = _config(s, org_id, name="New", is_active=True)
        s.flush()
        s.refresh(first)
        assert first.is_active is False
        assert active_api_config(s, org_id).id == third.id


def test_resolve_recipients(app, org_id):
    with session_scope(app) as s:
        ama = create_member(s, org_id, {"first_name": "Ama", "last_name": "Mensah", "phone_number": "0244123456"}, None)
        kofi = create_member(
            s,
            org_id,
            {"first_name": "Kofi", "last_name": "Boateng", "phone_number": "0201112222", "membership_status": "inactive"},
            None,
        )
        create_member(s, org_id, {"first_name": "No", "last_name": "Phone"}, None)
        choir = Group(organization_id=org_id, name="Choir", status="Active")
        choir.members.extend([ama, kofi])
        s.add(choir)
        s.flush()

        everyone = resolve_recipients(s, org_id, "all_members")
        assert [r["phone"] for r in everyone] == ["233244123456"]

        group = resolve_recipients(s, org_id, "group", group_id=choir.id)
        assert sorted(r["name"] for r in group) == ["Ama Mensah", "Kofi Boateng"]

        chosen = resolve_recipients(s, org_id, "individual", member_ids=[kofi.id])
        assert [r["member"].id for r in chosen] == [kofi.id]

        numbers = resolve_recipients(
            s, org_id, "phone_numbers", phone_numbers=parse_phone_list("0244123456, +233244123456\n0551234567")
        )
        assert [r["phone"] for r in numbers] == ["233244123456", "233551234567"]
        assert numbers[0]["member"] is None


def test_validate_compose_payload():
    ok = {"message_name": "Notice", "message_text": "Hi", "recipient_type": "all_members"}
    assert validate_compose_payload(ok) == []
    errors = validate_compose_payload(
        dict(ok, recipient_type="everyone", scheduled_at="tomorrow", is_recurring=True, recurrence_frequency="Daily")
    )
    assert "Choose who should receive the message." in errors
    assert "Scheduled time must be YYYY-MM-DDTHH:MM." in errors
    assert any(e.startswith("Recurrence must be one of") for e in errors)


def test_create_message_personalizes_and_flags_invalid_numbers(app, org_id):
    with session_scope(app) as s:
        member = create_member(s, org_id, {"first_name": "Ama", "last_name": "Mensah", "phone_number": "0244123456"}, None)
        recipients = resolve_recipients(s, org_id, "individual", member_ids=[member.id]) + [
            {"member": None, "phone": "23312", "name": "23312"}
        ]
        message = create_message(
            s,
            org_id,
            {"message_name": "Welcome", "message_text": "Hi {FirstName}, welcome to {Organization}", "recipient_type": "individual"},
            recipients,
            _config(s, org_id),
            _owner(s),
        )
        assert message.status == "Draft"
        assert message.recipient_count == 2
        good, bad = message.recipients
        assert good.personalized_message == "Hi Ama, welcome to Grace Chapel"
        assert good.status == "Pending"
        assert good.recipient_type == "member"
        assert bad.status == "Failed"
        assert bad.error_message == "Invalid phone number"
        assert float(message.cost) == 0.2


def test_future_message_is_scheduled(app, org_id):
    with session_scope(app) as s:
        when = (datetime.utcnow() + timedelta(days=1)).replace(microsecond=0)
        message = _phone_message(s, org_id, ["0244123456"], scheduled_at=when.isoformat())
        assert message.status == "Scheduled"
        assert message.scheduled_at == when
        assert cancel_message(s, message, _owner(s)) is True
        assert message.status == "Cancelled"
        assert cancel_message(s, message, _owner(s)) is False


def test_send_message_success(app, org_id):
    with session_scope(app) as s:
        message = _phone_message(s, org_id, ["0244123456", "0551234567"])
        client = FakeClient()
        result = send_message(s, message, client)
        assert result == {"sent": 2, "failed": 0, "errors": []}
        assert message.status == "Sent"
        assert message.sent_at is not None
        assert all(r.status == "Sent" for r in message.recipients)
        msgids = [d["msgid"] for d in client.batches[0]]
        assert all(m.startswith(f"MSG_{message.id}_") for m in msgids)


def test_failed_batch_does_not_stop_the_next(app, org_id):
    with session_scope(app) as s:
        message = _phone_message(s, org_id, ["0244123456", "0551234567", "0201112222"])
        result = send_message(s, message, FakeClient(fail_on={1}), batch_size=2)
        assert result["sent"] == 1
        assert result["failed"] == 2
        assert message.status == "Sent"
        assert message.error_message.startswith("2 of 3 recipients failed.")
        assert [r.status for r in message.recipients] == ["Failed", "Failed", "Sent"]
        assert message.recipients[0].error_message == "Insufficient balance"


def test_all_batches_failing_marks_message_failed(app, org_id):
    with session_scope(app) as s:
        message = _phone_message(s, org_id, ["0244123456"])
        result = send_message(s, message, FakeClient(fail_on={1}))
        assert result["sent"] == 0
        assert message.status == "Failed"
        assert "Insufficient balance" in message.error_message


def test_process_due_scheduled(app, org_id, sent_batches):
    with session_scope(app) as s:
        when = datetime.utcnow() + timedelta(hours=1)
        message = _phone_message(s, org_id, ["0244123456"], scheduled_at=when.isoformat())
        message_id = message.id

    with session_scope(app) as s:
        assert process_due_scheduled(s, base_url="https://sms.test") == 0
        assert process_due_scheduled(s, base_url="https://sms.test", now=when + timedelta(minutes=1)) == 1

    with session_scope(app) as s:
        assert s.get(Message, message_id).status == "Sent"
    assert len(sent_batches) == 1


def test_scheduled_message_without_config_fails(app, org_id):
    with session_scope(app) as s:
        when = datetime.utcnow() - timedelta(minutes=5)
        message = create_message(
            s,
            org_id,
            {"message_name": "Old", "message_text": "Hi", "recipient_type": "phone_numbers"},
            resolve_recipients(s, org_id, "phone_numbers", phone_numbers=["0244123456"]),
            None,
            _owner(s),
            now=when - timedelta(hours=1),
        )
        message.scheduled_at = when
        assert message.status == "Draft"
        message.status = "Scheduled"
        s.flush()
        process_due_scheduled(s, base_url="https://sms.test")
        assert message.status == "Failed"
        assert message.error_message == "No active SMS API configuration."


def test_recurrence_due_windows():
    now = datetime(2024, 3, 31, 9, 0)
    weekly = Message(recurrence_frequency="Weekly", sent_at=now - timedelta(days=7), created_at=now - timedelta(days=8))
    assert recurrence_due(weekly, now)
    weekly.sent_at = now - timedelta(days=6)
    assert not recurrence_due(weekly, now)
    weekly.sent_at = now - timedelta(days=14)
    assert not recurrence_due(weekly, now)
    assert not recurrence_due(Message(recurrence_frequency=None, created_at=now), now)


def test_process_recurring_clones_and_moves_recurrence(app, org_id, sent_batches):
    with session_scope(app) as s:
        message = _phone_message(s, org_id, ["0244123456"], is_recurring=True, recurrence_frequency="Weekly")
        send_message(s, message, FakeClient())
        message.sent_at = datetime.utcnow() - timedelta(days=7, hours=1)
        original_id = message.id

    with session_scope(app) as s:
        counts = process_recurring(s, base_url="https://sms.test")
        assert counts == {"sent": 1, "failed": 0, "ended": 0, "skipped": 0}

    with session_scope(app) as s:
        original = s.get(Message, original_id)
        clone = s.query(Message).filter(Message.id != original_id).one()
        assert original.is_recurring is False
        assert clone.is_recurring is True
        assert clone.message_name == "Notice (Recurring)"
        assert clone.status == "Sent"
        assert [r.phone_number for r in clone.recipients] == ["233244123456"]
    assert len(sent_batches) == 1


def test_process_recurring_ends_after_end_date(app, org_id, sent_batches):
    with session_scope(app) as s:
        message = _phone_message(
            s,
            org_id,
            ["0244123456"],
            is_recurring=True,
            recurrence_frequency="Monthly",
            recurrence_end_date=(date.today() - timedelta(days=1)).isoformat(),
        )
        send_message(s, message, FakeClient())
        counts = process_recurring(s, base_url="https://sms.test")
        assert counts["ended"] == 1
        assert message.is_recurring is False
    assert sent_batches == []


def test_birthday_job_sends_once_per_day(app, org_id, sent_batches):
    today = datetime.utcnow().date()
    dob = date(1990, today.month, today.day) if (today.month, today.day) != (2, 29) else date(1992, 2, 29)
    with session_scope(app) as s:
        create_member(
            s,
            org_id,
            {"first_name": "Ama", "last_name": "Mensah", "phone_number": "0244123456", "date_of_birth": dob.isoformat()},
            None,
        )
        create_member(s, org_id, {"first_name": "Kofi", "last_name": "Boateng", "phone_number": "0201112222"}, None)
        _config(s, org_id)
        update_notification_settings(s, org_id, {"birthday_messages_enabled": True}, _owner(s))

    with session_scope(app) as s:
        assert run_birthday_job(s, base_url="https://sms.test", today=today) == {"sent": 1, "failed": 0, "skipped": 0}
    with session_scope(app) as s:
        assert run_birthday_job(s, base_url="https://sms.test", today=today) == {"sent": 0, "failed": 0, "skipped": 1}
        message = s.query(Message).one()
        assert message.message_name == "Birthday Message - Ama Mensah"
        assert message.recipients[0].personalized_message.startswith("Happy Birthday Ama!")

    assert len(sent_batches) == 1
    assert sent_batches[0][0]["destination"] == "233244123456"


def test_birthday_job_skips_disabled_organizations(app, org_id, sent_batches):
    today = datetime.utcnow().date()
    dob = date(1990, today.month, today.day) if (today.month, today.day) != (2, 29) else date(1992, 2, 29)
    with session_scope(app) as s:
        create_member(
            s, org_id, {"first_name": "Ama", "last_name": "Mensah", "phone_number": "0244123456", "date_of_birth": dob.isoformat()}, None
        )
        _config(s, org_id)
        assert run_birthday_job(s, base_url="https://sms.test", today=today) == {"sent": 0, "failed": 0, "skipped": 0}
    assert sent_batches == []


def test_apply_delivery_report(app, org_id):
    with session_scope(app) as s:
        message = _phone_message(s, org_id, ["0244123456", "0551234567"])
        first, second = message.recipients

        assert apply_delivery_report(s, {"message_id": "bad", "status": "delivered", "phone_number": "1"}) == (
            400,
            "Invalid message ID format",
        )
        assert apply_delivery_report(s, {"status": "delivered"})[0] == 400
        wrong_phone = {"message_id": f"MSG_{message.id}_{first.id}_1", "status": "delivered", "phone_number": "233000000000"}
        assert apply_delivery_report(s, wrong_phone) == (404, "Recipient not found")

        report = {
            "message_id": f"MSG_{message.id}_{first.id}_1700000000000",
            "status": "DELIVERED",
            "phone_number": first.phone_number,
            "timestamp": "2024-03-03T10:15:00Z",
        }
        assert apply_delivery_report(s, report) == (200, "")
        assert first.status == "Sent"
        assert first.sent_at == datetime(2024, 3, 3, 10, 15)
        assert message.status == "Draft"

        report = {
            "message_id": f"MSG_{message.id}_{second.id}_1700000000000",
            "status": "failed",
            "phone_number": second.phone_number,
            "error": "Handset unreachable",
        }
        assert apply_delivery_report(s, report) == (200, "")
        assert second.error_message == "Handset unreachable"
        assert message.status == "Sent"


def test_messaging_analytics(app, org_id):
    with session_scope(app) as s:
        message = _phone_message(s, org_id, ["0244123456", "0551234567"])
        send_message(s, message, FakeClient())
        failed = _phone_message(s, org_id, ["0201112222"])
        send_message(s, failed, FakeClient(fail_on={1}))

        stats = messaging_analytics(s, org_id)
        assert stats["total_messages"] == 2
        assert stats["by_status"]["Sent"] == 1
        assert stats["by_status"]["Failed"] == 1
        assert stats["recipients_sent"] == 2
        assert stats["recipients_failed"] == 1
        assert stats["delivery_rate"] == 66.7
        assert stats["total_cost"] == 0.2
        assert len(stats["per_month"]) == 12
        assert stats["per_month"][-1]["count"] == 2


def test_test_message_rejects_invalid_number():
    with pytest.raises(SmsGatewayError, match="Invalid phone number"):
        service.test_api_config(FakeClient(), "0244")


def test_test_message_is_sent():
    client = FakeClient()
    service.test_api_config(client, "0244123456")
    assert client.batches[0][0]["destination"] == "233244123456"
    assert client.batches[0][0]["msgid"].startswith("TEST_")


def test_configs_are_scoped_to_their_organization(app, org_id):
    with session_scope(app) as s:
        _config(s, org_id)
        assert active_api_config(s, org_id + 1000) is None
        assert s.query(SmsApiConfiguration).count() == 1
        assert s.query(MessageRecipient).count() == 0


@pytest.fixture()
def gateway_outage(monkeypatch):
    """Real client patched to fail while state["down"] is set."""
    state = {"down": False, "batches": []}

    def send(self, destinations):
        state["batches"].append(destinations)
        if state["down"]:
            raise SmsGatewayError("HTTP 503 from SMS gateway: Service Unavailable")
        return {"status": "SUCCESS"}

    monkeypatch.setattr(SmsGatewayClient, "send", send)
    return state


def test_failed_recurrence_keeps_the_series(app, org_id, gateway_outage):
    start = datetime.utcnow() - timedelta(days=7, hours=1)
    with session_scope(app) as s:
        message = _phone_message(s, org_id, ["0244123456"], is_recurring=True, recurrence_frequency="Weekly")
        send_message(s, message, FakeClient())
        message.sent_at = start
        original_id = message.id

    gateway_outage["down"] = True
    with session_scope(app) as s:
        assert process_recurring(s, base_url="https://sms.test") == {"sent": 0, "failed": 1, "ended": 0, "skipped": 0}
    with session_scope(app) as s:
        assert s.get(Message, original_id).is_recurring is True
        failed_clone = s.query(Message).filter(Message.id != original_id).one()
        assert failed_clone.status == "Failed"
        assert failed_clone.is_recurring is False

    # next day, still inside the weekly window
    gateway_outage["down"] = False
    with session_scope(app) as s:
        counts = process_recurring(s, base_url="https://sms.test", now=datetime.utcnow() + timedelta(days=1))
        assert counts == {"sent": 1, "failed": 0, "ended": 0, "skipped": 0}
    with session_scope(app) as s:
        assert s.get(Message, original_id).is_recurring is False
        live = s.query(Message).filter(Message.is_recurring.is_(True)).one()
        assert live.status == "Sent"
        assert live.message_name == "Notice (Recurring)"


def test_birthday_sent_before_a_crash_is_not_repeated(app, org_id, monkeypatch):
    today = datetime.utcnow().date()
    dob = date(1990, today.month, today.day) if (today.month, today.day) != (2, 29) else date(1992, 2, 29)
    with session_scope(app) as s:
        for first, phone in (("Ama", "0244123456"), ("Kofi", "0201112222")):
            create_member(
                s,
                org_id,
                {"first_name": first, "last_name": "Mensah", "phone_number": phone, "date_of_birth": dob.isoformat()},
                None,
            )
        _config(s, org_id)
        update_notification_settings(s, org_id, {"birthday_messages_enabled": True}, _owner(s))

    batches = []

    def send(self, destinations):
        batches.append(destinations)
        if len(batches) == 2:
            raise TimeoutError("The read operation timed out")
        return {"status": "SUCCESS"}

    monkeypatch.setattr(SmsGatewayClient, "send", send)
    with pytest.raises(TimeoutError):
        with session_scope(app) as s:
            run_birthday_job(s, base_url="https://sms.test", today=today)

    with session_scope(app) as s:
        assert run_birthday_job(s, base_url="https://sms.test", today=today) == {"sent": 1, "failed": 0, "skipped": 1}
    # the member texted before the crash is skipped; only the interrupted one is retried
    destinations = [batch[0]["destination"] for batch in batches]
    assert len(destinations) == 3
    assert destinations[2] == destinations[1]
    assert destinations[0] != destinations[1]


def test_compose_ignores_another_organizations_template(app, org_id):
    with session_scope(app) as s:
        other_org, other_owner = create_organization_with_owner(
            s, {"organization_name": "Other Church", "email": "other@example.com", "password": "password123"}
        )
        foreign = create_template(s, other_org.id, {"name": "Theirs", "message": "Hi"}, other_owner)
        own = create_template(s, org_id, {"name": "Ours", "message": "Hello"}, _owner(s))

        assert _phone_message(s, org_id, ["0244123456"], template_id=str(foreign.id)).template_id is None
        assert _phone_message(s, org_id, ["0244123456"], template_id=str(own.id)).template_id == own.id
        assert _phone_message(s, org_id, ["0244123456"], template_id="abc").template_id is None
