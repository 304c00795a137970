"""Wigal FROG client, with urlopen replaced by a fake."""
import http.client
import io
import json
import urllib.error

import pytest

from app.chms.modules.messaging import gateway
from app.chms.modules.messaging.gateway import SmsGatewayClient, SmsGatewayError, is_success_response


class _TimedOutResponse:
    """Connection opened, then the body read times out."""

    def read(self):
        raise TimeoutError("The read operation timed out")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _FakeResponse:
    def __init__(self, body):
        self._raw = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture()
def calls(monkeypatch):
    """Queue of responses (dict/bytes or exceptions); records each request made."""
    state = {"responses": [], "requests": []}

    def fake_urlopen(req, timeout=None):
        state["requests"].append(req)
        item = state["responses"].pop(0)
        if isinstance(item, Exception):
            raise item
        if hasattr(item, "read"):
            return item
        return _FakeResponse(item)

    monkeypatch.setattr(gateway.urllib.request, "urlopen", fake_urlopen)
    monkeypatch.setattr(gateway.time, "sleep", lambda _s: None)
    return state


def _client():
    return SmsGatewayClient(api_key="key-123", sender_id="GraceChapel", username="grace", base_url="https://sms.test/")


def test_success_shapes():
    assert is_success_response({"status": "SUCCESS"})
    assert is_success_response({"success": True})
    assert is_success_response({"message": "Request Accepted For Processing"})
    assert is_success_response({"data": []})
    assert not is_success_response({"status": "FAILED", "error": "Insufficient balance"})


def test_send_posts_destinations(calls):
    calls["responses"].append({"status": "SUCCESS", "message": "Accepted"})
    body = _client().send([{"destination": "233244123456", "message": "Hello", "msgid": "MSG_1_2_3"}])
    assert body["status"] == "SUCCESS"

    req = calls["requests"][0]
    assert req.full_url == "https://sms.test/api/v3/sms/send"
    assert req.get_method() == "POST"
    assert req.get_header("Api-key") == "key-123"
    assert req.get_header("Username") == "grace"
    payload = json.loads(req.data.decode("utf-8"))
    assert payload["senderid"] == "GraceChapel"
    assert payload["destinations"] == [
        {"destination": "233244123456", "message": "Hello", "msgid": "MSG_1_2_3", "smstype": "text"}
    ]


def test_send_rejected_batch_raises(calls):
    calls["responses"].append({"status": "FAILED", "error": {"message": "Invalid sender id"}})
    with pytest.raises(SmsGatewayError, match="Invalid sender id"):
        _client().send([{"destination": "233244123456", "message": "Hello"}])


def test_send_requires_credentials_and_destinations():
    with pytest.raises(SmsGatewayError):
        SmsGatewayClient(api_key="", sender_id="X").send([{"destination": "1", "message": "m"}])
    with pytest.raises(SmsGatewayError):
        _client().send([])


def test_http_error_is_reported(calls):
    err = urllib.error.HTTPError(
        "https://sms.test/api/v3/sms/send", 401, "Unauthorized", {}, io.BytesIO(b'{"message": "Invalid API key"}')
    )
    calls["responses"].append(err)
    with pytest.raises(SmsGatewayError, match="HTTP 401 from SMS gateway: Invalid API key"):
        _client().send([{"destination": "233244123456", "message": "Hello"}])


def test_network_errors_are_retried(calls):
    calls["responses"].extend([urllib.error.URLError("timed out"), {"status": "SUCCESS"}])
    _client().send([{"destination": "233244123456", "message": "Hello"}])
    assert len(calls["requests"]) == 2


def test_gives_up_after_retries(calls):
    calls["responses"].extend([urllib.error.URLError("down")] * 4)
    with pytest.raises(SmsGatewayError, match="after retries"):
        _client().send([{"destination": "233244123456", "message": "Hello"}])


def test_invalid_json_raises(calls):
    calls["responses"].append(b"<html>oops</html>")
    with pytest.raises(SmsGatewayError, match="Invalid JSON"):
        _client().send([{"destination": "233244123456", "message": "Hello"}])


def test_balance(calls):
    calls["responses"].append({"status": "SUCCESS", "data": {"cashbalance": 12.5, "bundles": {"SMS": 100}}})
    assert _client().balance() == {"cashbalance": 12.5, "paidcashbalance": 0, "bundles": {"SMS": 100}}
    assert calls["requests"][0].get_method() == "GET"
    assert calls["requests"][0].full_url == "https://sms.test/api/v3/balance"


def test_read_timeout_is_retried(calls):
    calls["responses"].extend([_TimedOutResponse(), {"status": "SUCCESS"}])
    _client().send([{"destination": "233244123456", "message": "Hello"}])
    assert len(calls["requests"]) == 2


def test_transport_failures_end_as_gateway_error(calls):
    calls["responses"].extend(
        [_TimedOutResponse(), TimeoutError("timed out"), http.client.IncompleteRead(b""), ConnectionResetError()]
    )
    with pytest.raises(SmsGatewayError, match="after retries"):
        _client().send([{"destination": "233244123456", "message": "Hello"}])
    assert len(calls["requests"]) == 4
