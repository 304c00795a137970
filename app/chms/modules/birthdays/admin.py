from __future__ import annotations

from datetime import date

from flask import Blueprint, current_app, flash, redirect, render_template, request, url_for

from app.chms.db import db_session
from app.chms.models import Organization
from app.chms.modules.birthdays.service import (
    birthday_stats,
    members_with_birthdays,
    todays_birthdays,
    upcoming_birthdays,
)
from app.chms.modules.members.models import Member
from app.chms.modules.messaging.service import (
    DEFAULT_BIRTHDAY_MESSAGE,
    active_api_config,
    create_message,
    gateway_for,
    send_message,
)
from app.chms.modules.messaging.utils import format_phone_number
from app.chms.rbac import require_permission, user_has_permission
from app.chms.tenancy import current_org_id, current_user, get_for_org_or_404

bp = Blueprint("birthdays", __name__)


@bp.get("/birthdays")
@require_permission("birthdays.view")
def birthdays_index():
    s = db_session()
    today = date.today()
    window = int(current_app.config.get("BIRTHDAY_WINDOW_DAYS") or 30)
    members = members_with_birthdays(s, current_org_id())
    return render_template(
        "birthdays/index.html",
        today=today,
        window=window,
        todays=todays_birthdays(members, today),
        upcoming=upcoming_birthdays(members, today, days=window),
        stats=birthday_stats(members, today, days=window),
        default_message=DEFAULT_BIRTHDAY_MESSAGE,
        can_send=user_has_permission(current_user(), "messaging.send"),
    )


@bp.post("/birthdays/<int:member_id>/wish")
@require_permission("messaging.send")
def birthday_wish(member_id: int):
    s = db_session()
    u = current_user()
    member = get_for_org_or_404(s, Member, member_id)
    org = s.get(Organization, current_org_id())
    text = (request.form.get("message") or "").strip() or DEFAULT_BIRTHDAY_MESSAGE

    if not member.phone_number:
        flash(f"{member.full_name} has no phone number.", "danger")
        return redirect(url_for("birthdays.birthdays_index"))
    config = active_api_config(s, org.id)
    if config is None:
        flash("Add and activate an SMS API configuration before sending.", "danger")
        return redirect(url_for("birthdays.birthdays_index"))

    message = create_message(
        s,
        org.id,
        {
            "message_name": f"Birthday Message - {member.first_name} {member.last_name}",
            "message_text": text,
            "recipient_type": "individual",
        },
        [{"member": member, "phone": format_phone_number(member.phone_number, org.country_code), "name": member.full_name}],
        config,
        u,
        cost_per_segment=float(current_app.config.get("SMS_COST_PER_SEGMENT") or 0.10),
        country_code=org.country_code,
    )
    result = send_message(s, message, gateway_for(config, current_app.config["SMS_API_BASE_URL"]), batch_size=1, user=u)
    s.commit()
    if result["sent"]:
        flash(f"Birthday wish sent to {member.full_name}.", "success")
    else:
        flash(f"Birthday wish to {member.full_name} failed: {message.error_message}", "danger")
    return redirect(url_for("birthdays.birthdays_index"))
