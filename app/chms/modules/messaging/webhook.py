from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.chms.db import db_session
from app.chms.modules.messaging.service import apply_delivery_report
from app.chms.security import verify_signature

bp = Blueprint("sms_hooks", __name__)


@bp.post("/delivery")
def delivery_report():
    raw = request.get_data(cache=True)
    secret = current_app.config.get("SMS_WEBHOOK_SECRET") or ""
    if secret and not verify_signature(raw, request.headers.get("X-Signature"), secret):
        current_app.logger.warning("SMS delivery report rejected: bad signature (ip=%s)", request.remote_addr)
        return jsonify({"error": "Invalid signature"}), 401

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid webhook payload"}), 400

    s = db_session()
    status, error = apply_delivery_report(s, payload)
    if status != 200:
        s.rollback()
        current_app.logger.info("SMS delivery report ignored (%s): %s", status, error)
        return jsonify({"error": error}), status
    s.commit()
    return jsonify({"success": True})
