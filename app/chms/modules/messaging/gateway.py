from __future__ import annotations

import http.client
import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any


class SmsGatewayError(RuntimeError):
    pass


class SmsGatewayRateLimited(SmsGatewayError):
    pass


_SUCCESS_WORDS = ("accepted", "processing", "sent")


def _error_text(body: dict[str, Any]) -> str:
    err = body.get("error")
    if isinstance(err, dict):
        err = err.get("message")
    return str(body.get("message") or err or body.get("msg") or "")


def is_success_response(body: dict[str, Any]) -> bool:
    """Wigal answers in several shapes; any of these means the batch was taken."""
    status = str(body.get("status") or "")
    if status in ("success", "SUCCESS") or body.get("success") is True:
        return True
    message = str(body.get("message") or "").lower()
    if any(w in message for w in _SUCCESS_WORDS):
        return True
    return not body.get("error")


@dataclass(frozen=True)
class SmsGatewayClient:
    """Wigal FROG v3 SMS API."""

    api_key: str
    sender_id: str
    username: str = ""
    base_url: str = "https://frogapi.wigal.com.gh"
    timeout_seconds: int = 30

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None, retries: int = 3) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        data = json.dumps(payload).encode("utf-8") if payload is not None else None

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=data, method=method)
                req.add_header("API-KEY", self.api_key)
                req.add_header("USERNAME", self.username or self.api_key)
                req.add_header("Content-Type", "application/json")
                req.add_header("Accept", "application/json")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                    try:
                        body = json.loads(raw.decode("utf-8"))
                    except ValueError as e:
                        raise SmsGatewayError(f"Invalid JSON from SMS gateway ({path})") from e
                    return body if isinstance(body, dict) else {"data": body}
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = SmsGatewayRateLimited("Rate limited (429)")
                    continue
                try:
                    text = e.read().decode("utf-8", errors="ignore")
                except OSError:
                    text = ""
                message = text[:300]
                try:
                    message = _error_text(json.loads(text)) or message
                except ValueError:
                    pass
                raise SmsGatewayError(f"HTTP {e.code} from SMS gateway: {message}") from e
            except (OSError, http.client.HTTPException) as e:
                # URLError, timeouts during read, dropped connections
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise SmsGatewayError(f"SMS gateway request failed after retries: {last_err}")

    def send(self, destinations: list[dict[str, Any]]) -> dict[str, Any]:
        """
        destinations: [{"destination": "233...", "message": "...", "msgid": "..."}]
        Returns the gateway body; raises SmsGatewayError when the batch is rejected.
        """
        if not self.api_key or not self.sender_id:
            raise SmsGatewayError("API key and sender ID are required")
        if not destinations:
            raise SmsGatewayError("At least one destination is required")
        payload = {
            "senderid": self.sender_id,
            "destinations": [
                {
                    "destination": d["destination"],
                    "message": d["message"],
                    "msgid": d.get("msgid") or f"MSG{int(time.time() * 1000)}",
                    "smstype": d.get("smstype") or "text",
                }
                for d in destinations
            ],
        }
        body = self._request("POST", "/api/v3/sms/send", payload)
        if not is_success_response(body):
            raise SmsGatewayError(_error_text(body) or "Failed to send SMS")
        return body

    def balance(self) -> dict[str, Any]:
        if not self.api_key:
            raise SmsGatewayError("API key is required")
        body = self._request("GET", "/api/v3/balance")
        if not (str(body.get("status") or "") == "SUCCESS" or body.get("success") is True or body.get("data")):
            raise SmsGatewayError(_error_text(body) or "Unexpected response format from SMS gateway")
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        return {
            "cashbalance": data.get("cashbalance") or 0,
            "paidcashbalance": data.get("paidcashbalance") or 0,
            "bundles": data.get("bundles") or {},
        }
