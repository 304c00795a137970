"""Delivery-report webhook."""
import hashlib
import hmac
import json

from app.chms.db import session_scope
from app.chms.models import User
from app.chms.modules.messaging.models import Message, MessageRecipient
from app.chms.modules.messaging.service import create_api_config, create_message, resolve_recipients
from app.chms.security import verify_signature

from conftest import OWNER_EMAIL

URL = "/hooks/sms/delivery"


def _message(app, org_id, numbers=("0244123456",)):
    with session_scope(app) as s:
        owner = s.query(User).filter(User.email == OWNER_EMAIL).one()
        config = create_api_config(s, org_id, {"name": "Main", "api_key": "k", "sender_id": "Grace"}, owner)
        message = create_message(
            s,
            org_id,
            {"message_name": "Notice", "message_text": "Hello", "recipient_type": "phone_numbers"},
            resolve_recipients(s, org_id, "phone_numbers", phone_numbers=list(numbers)),
            config,
            owner,
        )
        return message.id, [(r.id, r.phone_number) for r in message.recipients]


def _sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def test_verify_signature():
    body = b'{"status": "delivered"}'
    digest = _sign(body, "s3cret")
    assert verify_signature(body, digest, "s3cret")
    assert verify_signature(body, f"sha256={digest.upper()}", "s3cret")
    assert not verify_signature(body, digest, "other")
    assert not verify_signature(body, None, "s3cret")
    assert not verify_signature(body, digest, "")


def test_delivery_report_marks_recipient_sent(app, org_id, client):
    message_id, recipients = _message(app, org_id)
    recipient_id, phone = recipients[0]
    r = client.post(
        URL,
        json={
            "message_id": f"MSG_{message_id}_{recipient_id}_1717000000",
            "status": "DELIVERED",
            "phone_number": phone,
            "timestamp": "2024-06-10T09:30:00Z",
        },
    )
    assert r.status_code == 200
    assert r.get_json() == {"success": True}

    with session_scope(app) as s:
        rec = s.get(MessageRecipient, recipient_id)
        assert rec.status == "Sent"
        assert rec.sent_at.isoformat() == "2024-06-10T09:30:00"
        assert s.get(Message, message_id).status == "Sent"


def test_delivery_report_errors(app, org_id, client):
    message_id, recipients = _message(app, org_id)
    recipient_id, _ = recipients[0]

    r = client.post(URL, json={"message_id": f"MSG_{message_id}_{recipient_id}_1", "status": "failed", "phone_number": "233200000000"})
    assert r.status_code == 404
    assert r.get_json() == {"error": "Recipient not found"}

    r = client.post(URL, json={"message_id": "bogus", "status": "failed", "phone_number": "233244123456"})
    assert r.status_code == 400
    assert r.get_json() == {"error": "Invalid message ID format"}

    r = client.post(URL, json={"status": "failed"})
    assert r.status_code == 400

    r = client.post(URL, data="not json", content_type="text/plain")
    assert r.status_code == 400

    r = client.post(URL, json=["MSG_1_2_3"])
    assert r.status_code == 400

    with session_scope(app) as s:
        assert s.get(MessageRecipient, recipient_id).status == "Pending"


def test_signed_webhook(app, org_id, client):
    app.config["SMS_WEBHOOK_SECRET"] = "s3cret"
    message_id, recipients = _message(app, org_id)
    recipient_id, phone = recipients[0]
    body = json.dumps(
        {"message_id": f"MSG_{message_id}_{recipient_id}_1", "status": "failed", "phone_number": phone, "error": "Unreachable"}
    ).encode("utf-8")

    r = client.post(URL, data=body, content_type="application/json")
    assert r.status_code == 401
    assert r.get_json() == {"error": "Invalid signature"}

    r = client.post(URL, data=body, content_type="application/json", headers={"X-Signature": "sha256=deadbeef"})
    assert r.status_code == 401

    r = client.post(
        URL, data=body, content_type="application/json", headers={"X-Signature": f"sha256={_sign(body, 's3cret')}"}
    )
    assert r.status_code == 200

    with session_scope(app) as s:
        rec = s.get(MessageRecipient, recipient_id)
        assert rec.status == "Failed"
        assert rec.error_message == "Unreachable"
        assert s.get(Message, message_id).status == "Failed"
