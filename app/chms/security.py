"""Request integrity checks: session CSRF tokens and signed gateway callbacks."""
from __future__ import annotations

import hashlib
import hmac
import secrets

from flask import Request, session

CSRF_SESSION_KEY = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


def ensure_csrf_token() -> str:
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = session[CSRF_SESSION_KEY] = secrets.token_urlsafe(32)
    return token


def _submitted_csrf_token(req: Request) -> str | None:
    token = req.headers.get(CSRF_HEADER) or req.form.get(CSRF_SESSION_KEY)
    if token or not req.is_json:
        return token
    body = req.get_json(silent=True)
    return body.get(CSRF_SESSION_KEY) if isinstance(body, dict) else None


def validate_csrf(req: Request) -> bool:
    """Form field, X-CSRF-Token header, or a csrf_token key in a JSON body."""
    submitted = _submitted_csrf_token(req)
    expected = session.get(CSRF_SESSION_KEY)
    if not submitted or not expected:
        return False
    return hmac.compare_digest(str(submitted), str(expected))


def verify_signature(raw_body: bytes, header_value: str | None, secret: str) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded; a "sha256=" prefix is accepted."""
    if not header_value or not secret:
        return False
    signature = header_value.strip().split("=", 1)[-1]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.lower(), expected)
