from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash

from app.chms.audit import record_event
from app.chms.constants import ORG_SIZES, ORG_TYPES
from app.chms.db import db_session
from app.chms.models import User
from app.chms.tenancy import create_organization_with_owner, validate_signup_payload

bp = Blueprint("auth", __name__)

SIGNUP_FIELDS = (
    "organization_name",
    "org_type",
    "size_range",
    "currency",
    "country_code",
    "full_name",
    "email",
    "password",
    "password_confirm",
)


class LoginThrottle:
    """Per-process failed-login counter keyed by client address."""

    def __init__(self, limit: int = 5, window: timedelta = timedelta(minutes=5)):
        self.limit = limit
        self.window = window
        self._attempts: dict[str, list[datetime]] = defaultdict(list)

    def blocked(self, key: str, now: datetime | None = None) -> bool:
        cutoff = (now or datetime.utcnow()) - self.window
        recent = [t for t in self._attempts[key] if t > cutoff]
        self._attempts[key] = recent
        return len(recent) >= self.limit

    def hit(self, key: str) -> None:
        self._attempts[key].append(datetime.utcnow())

    def forget(self, key: str) -> None:
        self._attempts.pop(key, None)

    def reset(self) -> None:
        self._attempts.clear()


login_throttle = LoginThrottle()


def _local_redirect_target(nxt: str) -> str | None:
    # absolute and scheme-relative URLs would be open redirects
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def load_current_user() -> None:
    """Sets g.request_id for log/audit correlation and g.current_user from the session cookie."""
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None

    user_id = session.get("user_id")
    if not user_id:
        return
    try:
        user = db_session().get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("Could not load signed-in user, clearing session: %s", e)
        user = None
    if user is None or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


def authenticate(s, email: str, password: str) -> User | None:
    user = s.query(User).filter(User.email == email).one_or_none()
    if user and user.is_active and check_password_hash(user.password_hash, password):
        return user
    record_event(
        s,
        actor=None,
        action="auth.login_failed",
        entity_type="User",
        entity_id=email,
        reason="Invalid credentials",
        metadata={"email": email},
        organization_id=user.organization_id if user else None,
    )
    return None


@bp.get("/login")
def login_get():
    return render_template("auth/login.html", next=(request.args.get("next") or "").strip())


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    ip = request.remote_addr or "unknown"
    if login_throttle.blocked(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))
    login_throttle.hit(ip)

    s = db_session()
    user = authenticate(s, email, request.form.get("password") or "")
    if user is None:
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get"))

    session["user_id"] = user.id
    login_throttle.forget(ip)
    user.last_login_at = datetime.utcnow()
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    current_app.logger.info("Login ok: user_id=%s org_id=%s", user.id, user.organization_id)
    target = _local_redirect_target((request.form.get("next") or "").strip())
    return redirect(target or url_for("admin.index"))


@bp.get("/signup")
def signup_get():
    return render_template("auth/signup.html", org_types=ORG_TYPES, org_sizes=ORG_SIZES, form={})


@bp.post("/signup")
def signup_post():
    s = db_session()
    payload = {k: request.form.get(k) for k in SIGNUP_FIELDS}
    errors = validate_signup_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        form = {k: v for k, v in payload.items() if not k.startswith("password")}
        return render_template("auth/signup.html", org_types=ORG_TYPES, org_sizes=ORG_SIZES, form=form), 400

    org, user = create_organization_with_owner(s, payload)
    s.commit()
    current_app.logger.info("Organization created: id=%s slug=%s owner=%s", org.id, org.slug, user.email)

    session["user_id"] = user.id
    flash(f"Welcome! {org.name} is ready.", "success")
    return redirect(url_for("admin.index"))


@bp.get("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))
