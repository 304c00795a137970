from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.chms.audit import search_events
from app.chms.constants import ORG_SIZES, ORG_TYPES
from app.chms.db import db_session
from app.chms.models import Organization, Role, User
from app.chms.modules.reports.service import dashboard_overview, member_growth
from app.chms.rbac import permission_keys, require_permission
from app.chms.tenancy import (
    create_account,
    current_org_id,
    current_user,
    get_for_org_or_404,
    password_errors,
    reset_password,
    update_account,
    update_organization,
    update_profile,
    validate_account_payload,
    validate_organization_payload,
)
from app.chms.utils import clean, safe_parse_date

bp = Blueprint("admin", __name__)

ORG_FORM_FIELDS = ("name", "org_type", "size_range", "currency", "country_code", "address", "phone", "email")


def _all_roles(s) -> list[Role]:
    return s.query(Role).order_by(Role.name.asc()).all()


def _roles_from_form(s) -> list[Role]:
    role_ids = [int(r) for r in request.form.getlist("role_ids") if str(r).isdigit()]
    if not role_ids:
        return []
    return s.query(Role).filter(Role.id.in_(role_ids)).all()


def _flash_all(errors: list[str]) -> None:
    for e in errors:
        flash(e, "danger")


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    org_id = current_org_id()
    return render_template(
        "admin/index.html",
        overview=dashboard_overview(s, org_id),
        growth=member_growth(s, org_id),
        organization=s.get(Organization, org_id),
    )


@bp.get("/me")
@require_permission("admin.view")
def me():
    user = g.current_user
    roles = list(user.roles or [])
    return render_template(
        "admin/me.html", user=user, role_keys=sorted(r.key for r in roles), perm_keys=sorted(permission_keys(user))
    )


@bp.post("/me")
@require_permission("admin.view")
def me_update():
    s = db_session()
    update_profile(s, current_user(), clean(request.form.get("full_name")))
    s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("admin.me"))


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    filters = {k: (request.args.get(k) or "").strip() for k in ("action", "actor_email", "date_from", "date_to")}
    date_from = safe_parse_date(filters["date_from"])
    date_to = safe_parse_date(filters["date_to"])
    for key, parsed in (("date_from", date_from), ("date_to", date_to)):
        if filters[key] and not parsed:
            flash(f"{key} must be YYYY-MM-DD", "danger")

    events = search_events(
        db_session(),
        current_org_id(),
        action=filters["action"],
        actor_email=filters["actor_email"],
        date_from=date_from,
        date_to=date_to,
    )
    return render_template("admin/audit/list.html", events=events, **filters)


# ---------- Organization ----------
@bp.get("/settings")
@require_permission("org.settings")
def org_settings_get():
    org = db_session().get(Organization, current_org_id())
    return render_template("admin/settings.html", organization=org, form={}, org_types=ORG_TYPES, org_sizes=ORG_SIZES)


@bp.post("/settings")
@require_permission("org.settings")
def org_settings_post():
    s = db_session()
    org = s.get(Organization, current_org_id())
    payload = {k: request.form.get(k) for k in ORG_FORM_FIELDS}
    errors = validate_organization_payload(payload)
    if errors:
        _flash_all(errors)
        page = render_template(
            "admin/settings.html", organization=org, form=payload, org_types=ORG_TYPES, org_sizes=ORG_SIZES
        )
        return page, 400
    update_organization(s, org, payload, current_user())
    s.commit()
    flash("Organization settings saved.", "success")
    return redirect(url_for("admin.org_settings_get"))


# ---------- Staff accounts ----------
@bp.get("/accounts")
@require_permission("admin.edit")
def accounts_list():
    s = db_session()
    users = s.query(User).filter(User.organization_id == current_org_id()).order_by(User.email.asc()).all()
    return render_template("admin/accounts/list.html", users=users, roles=_all_roles(s))


@bp.get("/accounts/new")
@require_permission("admin.edit")
def accounts_new_get():
    return render_template("admin/accounts/new.html", roles=_all_roles(db_session()))


@bp.post("/accounts/new")
@require_permission("admin.edit")
def accounts_new_post():
    s = db_session()
    errors = validate_account_payload(s, request.form)
    if errors:
        _flash_all(errors)
        return redirect(url_for("admin.accounts_new_get"))
    user = create_account(s, current_org_id(), request.form, _roles_from_form(s), current_user())
    s.commit()
    flash(f"Account created for {user.email}.", "success")
    return redirect(url_for("admin.accounts_list"))


@bp.get("/accounts/<int:user_id>")
@require_permission("admin.edit")
def accounts_detail(user_id: int):
    s = db_session()
    account = get_for_org_or_404(s, User, user_id)
    return render_template("admin/accounts/detail.html", account=account, roles=_all_roles(s))


@bp.post("/accounts/<int:user_id>/update")
@require_permission("admin.edit")
def accounts_update(user_id: int):
    s = db_session()
    actor = current_user()
    account = get_for_org_or_404(s, User, user_id)
    if account.id == actor.id:
        flash("You cannot modify your own account from this page.", "danger")
    else:
        update_account(s, account, is_active=request.form.get("is_active") == "1", roles=_roles_from_form(s), actor=actor)
        s.commit()
        flash(f"Account updated for {account.email}.", "success")
    return redirect(url_for("admin.accounts_detail", user_id=user_id))


@bp.post("/accounts/<int:user_id>/reset-password")
@require_permission("admin.edit")
def accounts_reset_password(user_id: int):
    s = db_session()
    account = get_for_org_or_404(s, User, user_id)
    password = request.form.get("password") or ""
    errors = password_errors(password, request.form.get("password_confirm") or "")
    if errors:
        _flash_all(errors)
    else:
        reset_password(s, account, password, current_user())
        s.commit()
        flash(f"Password reset for {account.email}.", "success")
    return redirect(url_for("admin.accounts_detail", user_id=user_id))
