from __future__ import annotations

from flask import Blueprint, current_app, flash, redirect, render_template, request, url_for

from app.chms.db import db_session
from app.chms.models import Organization
from app.chms.modules.groups.models import Department, Group
from app.chms.modules.members.models import Member
from app.chms.modules.messaging.gateway import SmsGatewayError
from app.chms.modules.messaging.models import Message, MessageTemplate, SmsApiConfiguration
from app.chms.modules.messaging.service import (
    MESSAGE_STATUSES,
    RECURRENCE_FREQUENCIES,
    activate_api_config,
    active_api_config,
    cancel_message,
    create_api_config,
    create_message,
    create_template,
    delete_api_config,
    delete_message,
    delete_template,
    gateway_for,
    get_notification_settings,
    messaging_analytics,
    parse_phone_list,
    resolve_recipients,
    send_message,
    test_api_config,
    update_api_config,
    update_notification_settings,
    update_template,
    validate_api_config_payload,
    validate_compose_payload,
    validate_template_payload,
)
from app.chms.rbac import require_permission
from app.chms.tenancy import current_org_id, current_user, get_for_org_or_404
from app.chms.utils import page_number, paginate

bp = Blueprint("messaging", __name__)

_COMPOSE_FIELDS = (
    "message_name",
    "message_text",
    "template_id",
    "recipient_type",
    "group_id",
    "department_id",
    "phone_numbers",
    "scheduled_at",
    "recurrence_frequency",
    "recurrence_end_date",
)


def _organization(s) -> Organization:
    return s.get(Organization, current_org_id())


def _int_arg(value) -> int | None:
    text = str(value or "").strip()
    return int(text) if text.isdigit() else None


def _compose_context(s, form: dict) -> dict:
    org_id = current_org_id()
    return {
        "form": form,
        "templates": s.query(MessageTemplate).filter(MessageTemplate.organization_id == org_id).order_by(MessageTemplate.name).all(),
        "members": s.query(Member)
        .filter(Member.organization_id == org_id, Member.phone_number.isnot(None), Member.phone_number != "")
        .order_by(Member.last_name, Member.first_name)
        .all(),
        "groups": s.query(Group).filter(Group.organization_id == org_id).order_by(Group.name).all(),
        "departments": s.query(Department).filter(Department.organization_id == org_id).order_by(Department.name).all(),
        "frequencies": RECURRENCE_FREQUENCIES,
        "config": active_api_config(s, org_id),
    }


# ---------- Messages ----------
@bp.get("/")
@require_permission("messaging.view")
def messages_list():
    s = db_session()
    status = (request.args.get("status") or "").strip()
    q = s.query(Message).filter(Message.organization_id == current_org_id())
    if status:
        q = q.filter(Message.status == status)
    page = paginate(q.order_by(Message.created_at.desc(), Message.id.desc()), page_number(request.args.get("page")))
    return render_template(
        "messaging/list.html",
        page=page,
        status=status,
        statuses=MESSAGE_STATUSES,
        analytics=messaging_analytics(s, current_org_id()),
        config=active_api_config(s, current_org_id()),
    )


@bp.get("/compose")
@require_permission("messaging.send")
def compose_get():
    s = db_session()
    form = {"recipient_type": request.args.get("recipient_type") or "individual"}
    member_id = _int_arg(request.args.get("member_id"))
    form["member_ids"] = [member_id] if member_id else []
    return render_template("messaging/compose.html", **_compose_context(s, form))


@bp.post("/compose")
@require_permission("messaging.send")
def compose_post():
    s = db_session()
    u = current_user()
    org = _organization(s)
    payload: dict = {f: request.form.get(f) for f in _COMPOSE_FIELDS}
    payload["is_recurring"] = bool(request.form.get("is_recurring"))
    payload["member_ids"] = [int(v) for v in request.form.getlist("member_ids") if str(v).isdigit()]

    errors = validate_compose_payload(payload)
    config = active_api_config(s, org.id)
    if config is None:
        errors.append("Add and activate an SMS API configuration before sending.")
    recipients = []
    if not errors:
        recipients = resolve_recipients(
            s,
            org.id,
            payload["recipient_type"],
            member_ids=payload["member_ids"],
            group_id=_int_arg(payload.get("group_id")),
            department_id=_int_arg(payload.get("department_id")),
            phone_numbers=parse_phone_list(payload.get("phone_numbers")),
            country_code=org.country_code,
        )
        if not recipients:
            errors.append("No recipients with a phone number were selected.")
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("messaging/compose.html", **_compose_context(s, payload)), 400

    message = create_message(
        s,
        org.id,
        payload,
        recipients,
        config,
        u,
        cost_per_segment=float(current_app.config.get("SMS_COST_PER_SEGMENT") or 0.10),
        country_code=org.country_code,
    )
    if message.status == "Scheduled":
        s.commit()
        flash(f"Message scheduled for {message.scheduled_at:%Y-%m-%d %H:%M} UTC.", "success")
        return redirect(url_for("messaging.message_detail", message_id=message.id))

    result = send_message(
        s,
        message,
        gateway_for(config, current_app.config["SMS_API_BASE_URL"]),
        batch_size=int(current_app.config.get("SMS_BATCH_SIZE") or 100),
        user=u,
    )
    s.commit()
    if result["sent"] and not result["failed"]:
        flash(f"Message sent to {result['sent']} recipient(s).", "success")
    elif result["sent"]:
        flash(f"Message sent to {result['sent']} recipient(s); {result['failed']} failed.", "warning")
    else:
        flash(f"Message failed: {message.error_message}", "danger")
    return redirect(url_for("messaging.message_detail", message_id=message.id))


@bp.get("/messages/<int:message_id>")
@require_permission("messaging.view")
def message_detail(message_id: int):
    s = db_session()
    message = get_for_org_or_404(s, Message, message_id)
    return render_template("messaging/detail.html", message=message)


@bp.post("/messages/<int:message_id>/cancel")
@require_permission("messaging.send")
def message_cancel(message_id: int):
    s = db_session()
    message = get_for_org_or_404(s, Message, message_id)
    if cancel_message(s, message, current_user()):
        s.commit()
        flash("Message cancelled.", "success")
    else:
        flash(f"A {message.status.lower()} message cannot be cancelled.", "danger")
    return redirect(url_for("messaging.message_detail", message_id=message_id))


@bp.post("/messages/<int:message_id>/delete")
@require_permission("messaging.send")
def message_delete(message_id: int):
    s = db_session()
    message = get_for_org_or_404(s, Message, message_id)
    if message.status == "Sending":
        flash("A message that is sending cannot be deleted.", "danger")
        return redirect(url_for("messaging.message_detail", message_id=message_id))
    delete_message(s, message, current_user())
    s.commit()
    flash("Message deleted.", "success")
    return redirect(url_for("messaging.messages_list"))


@bp.get("/analytics")
@require_permission("messaging.view")
def analytics():
    s = db_session()
    return render_template("messaging/analytics.html", analytics=messaging_analytics(s, current_org_id()))


# ---------- Templates ----------
@bp.get("/templates")
@require_permission("messaging.view")
def templates_list():
    s = db_session()
    rows = s.query(MessageTemplate).filter(MessageTemplate.organization_id == current_org_id()).order_by(MessageTemplate.name).all()
    return render_template("messaging/templates.html", templates=rows)


@bp.get("/templates/new")
@require_permission("messaging.send")
def template_new_get():
    return render_template("messaging/template_form.html", template=None, form={})


@bp.post("/templates/new")
@require_permission("messaging.send")
def template_new_post():
    s = db_session()
    payload = {k: request.form.get(k) for k in ("name", "message")}
    errors = validate_template_payload(s, current_org_id(), payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("messaging/template_form.html", template=None, form=payload), 400
    create_template(s, current_org_id(), payload, current_user())
    s.commit()
    flash("Template created.", "success")
    return redirect(url_for("messaging.templates_list"))


@bp.get("/templates/<int:template_id>/edit")
@require_permission("messaging.send")
def template_edit_get(template_id: int):
    s = db_session()
    t = get_for_org_or_404(s, MessageTemplate, template_id)
    return render_template("messaging/template_form.html", template=t, form={})


@bp.post("/templates/<int:template_id>/edit")
@require_permission("messaging.send")
def template_edit_post(template_id: int):
    s = db_session()
    t = get_for_org_or_404(s, MessageTemplate, template_id)
    payload = {k: request.form.get(k) for k in ("name", "message")}
    errors = validate_template_payload(s, current_org_id(), payload, exclude_id=t.id)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("messaging/template_form.html", template=t, form=payload), 400
    update_template(s, t, payload, current_user())
    s.commit()
    flash("Template updated.", "success")
    return redirect(url_for("messaging.templates_list"))


@bp.post("/templates/<int:template_id>/delete")
@require_permission("messaging.send")
def template_delete(template_id: int):
    s = db_session()
    t = get_for_org_or_404(s, MessageTemplate, template_id)
    delete_template(s, t, current_user())
    s.commit()
    flash("Template deleted.", "success")
    return redirect(url_for("messaging.templates_list"))


# ---------- Gateway settings ----------
@bp.get("/settings")
@require_permission("messaging.configure")
def settings():
    s = db_session()
    org_id = current_org_id()
    configs = (
        s.query(SmsApiConfiguration)
        .filter(SmsApiConfiguration.organization_id == org_id)
        .order_by(SmsApiConfiguration.is_active.desc(), SmsApiConfiguration.name)
        .all()
    )
    notification_settings = get_notification_settings(s, org_id)
    s.commit()
    templates = s.query(MessageTemplate).filter(MessageTemplate.organization_id == org_id).order_by(MessageTemplate.name).all()
    return render_template(
        "messaging/settings.html",
        configs=configs,
        notification_settings=notification_settings,
        templates=templates,
    )


@bp.post("/settings/notifications")
@require_permission("messaging.configure")
def settings_notifications():
    s = db_session()
    payload = {
        "birthday_messages_enabled": bool(request.form.get("birthday_messages_enabled")),
        "birthday_template_id": request.form.get("birthday_template_id"),
    }
    update_notification_settings(s, current_org_id(), payload, current_user())
    s.commit()
    flash("Notification settings saved.", "success")
    return redirect(url_for("messaging.settings"))


@bp.get("/configs/new")
@require_permission("messaging.configure")
def config_new_get():
    return render_template("messaging/config_form.html", config=None, form={})


@bp.post("/configs/new")
@require_permission("messaging.configure")
def config_new_post():
    s = db_session()
    payload = {k: request.form.get(k) for k in ("name", "api_key", "username", "sender_id")}
    payload["is_active"] = bool(request.form.get("is_active"))
    errors = validate_api_config_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        payload["api_key"] = ""
        return render_template("messaging/config_form.html", config=None, form=payload), 400
    create_api_config(s, current_org_id(), payload, current_user())
    s.commit()
    flash("SMS API configuration saved.", "success")
    return redirect(url_for("messaging.settings"))


@bp.get("/configs/<int:config_id>/edit")
@require_permission("messaging.configure")
def config_edit_get(config_id: int):
    s = db_session()
    config = get_for_org_or_404(s, SmsApiConfiguration, config_id)
    return render_template("messaging/config_form.html", config=config, form={})


@bp.post("/configs/<int:config_id>/edit")
@require_permission("messaging.configure")
def config_edit_post(config_id: int):
    s = db_session()
    config = get_for_org_or_404(s, SmsApiConfiguration, config_id)
    payload = {k: request.form.get(k) for k in ("name", "api_key", "username", "sender_id")}
    errors = validate_api_config_payload(payload, require_key=False)
    if errors:
        for e in errors:
            flash(e, "danger")
        payload["api_key"] = ""
        return render_template("messaging/config_form.html", config=config, form=payload), 400
    update_api_config(s, config, payload, current_user())
    s.commit()
    flash("SMS API configuration updated.", "success")
    return redirect(url_for("messaging.settings"))


@bp.post("/configs/<int:config_id>/activate")
@require_permission("messaging.configure")
def config_activate(config_id: int):
    s = db_session()
    config = get_for_org_or_404(s, SmsApiConfiguration, config_id)
    activate_api_config(s, config, current_user())
    s.commit()
    flash(f"'{config.name}' is now the active configuration.", "success")
    return redirect(url_for("messaging.settings"))


@bp.post("/configs/<int:config_id>/delete")
@require_permission("messaging.configure")
def config_delete(config_id: int):
    s = db_session()
    config = get_for_org_or_404(s, SmsApiConfiguration, config_id)
    delete_api_config(s, config, current_user())
    s.commit()
    flash("SMS API configuration deleted.", "success")
    return redirect(url_for("messaging.settings"))


@bp.post("/configs/<int:config_id>/test")
@require_permission("messaging.configure")
def config_test(config_id: int):
    s = db_session()
    config = get_for_org_or_404(s, SmsApiConfiguration, config_id)
    phone = (request.form.get("phone_number") or "").strip()
    if not phone:
        flash("Enter a phone number to receive the test message.", "danger")
        return redirect(url_for("messaging.settings"))
    org = _organization(s)
    try:
        test_api_config(gateway_for(config, current_app.config["SMS_API_BASE_URL"]), phone, org.country_code)
    except SmsGatewayError as e:
        current_app.logger.warning("SMS test for config %s failed: %s", config_id, e)
        flash(f"Test failed: {e}", "danger")
        return redirect(url_for("messaging.settings"))
    current_app.logger.info("SMS test for config %s sent (org=%s)", config_id, org.id)
    flash("Test message sent.", "success")
    return redirect(url_for("messaging.settings"))


@bp.get("/configs/<int:config_id>/balance")
@require_permission("messaging.configure")
def config_balance(config_id: int):
    s = db_session()
    config = get_for_org_or_404(s, SmsApiConfiguration, config_id)
    try:
        balance = gateway_for(config, current_app.config["SMS_API_BASE_URL"]).balance()
    except SmsGatewayError as e:
        flash(f"Could not fetch balance: {e}", "danger")
        return redirect(url_for("messaging.settings"))
    sms_bundle = (balance.get("bundles") or {}).get("SMS")
    text = f"Balance for '{config.name}': {float(balance['cashbalance']):,.2f}"
    if sms_bundle is not None:
        text += f" (SMS bundle: {sms_bundle})"
    flash(text, "info")
    return redirect(url_for("messaging.settings"))
