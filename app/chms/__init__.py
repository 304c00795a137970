import logging
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, flash, g, redirect, render_template, request, session, url_for

from app.chms.admin import bp as admin_bp
from app.chms.auth import bp as auth_bp, load_current_user
from app.chms.config import load_config
from app.chms.db import init_db, missing_tables
from app.chms.modules.attendance.admin import bp as attendance_bp
from app.chms.modules.birthdays.admin import bp as birthdays_bp
from app.chms.modules.followups.admin import bp as followups_bp
from app.chms.modules.groups.admin import bp as groups_bp
from app.chms.modules.members.admin import bp as members_bp
from app.chms.modules.messaging.admin import bp as messaging_bp
from app.chms.modules.messaging.webhook import bp as sms_hooks_bp
from app.chms.modules.reports.admin import bp as reports_bp
from app.chms.modules.visitors.admin import bp as visitors_bp
from app.chms.rbac import user_has_permission
from app.chms.routes import bp as routes_bp
from app.chms.security import ensure_csrf_token, validate_csrf
from app.chms.utils import format_date

logger = logging.getLogger(__name__)

# url prefix -> blueprints mounted there
_BLUEPRINTS = (
    ("", (routes_bp,)),
    ("/auth", (auth_bp,)),
    ("/dashboard", (admin_bp, members_bp, visitors_bp, attendance_bp, followups_bp, groups_bp, birthdays_bp)),
    ("/dashboard/messaging", (messaging_bp,)),
    ("/dashboard/reports", (reports_bp,)),
    ("/hooks/sms", (sms_hooks_bp,)),
)

# POSTs to these endpoints carry no session CSRF token (login form, gateway callbacks).
_CSRF_EXEMPT_PREFIXES = ("auth.", "sms_hooks.")
_UNTRACKED_PATHS = ("/static/", "/health", "/healthz")

# A missing table means `alembic upgrade head` was not run against this database.
_EXPECTED_TABLES = (
    "organizations",
    "users",
    "members",
    "visitors",
    "attendance_records",
    "member_attendance",
    "messages",
    "message_recipients",
)


def _check_production_config(app: Flask) -> None:
    if (app.config.get("ENV") or "").strip().lower() not in ("prod", "production"):
        return
    db_url = str(app.config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _check_photo_storage(app: Flask) -> None:
    """Photos live in S3 in production; report a bad bucket at boot instead of on first upload."""
    if app.config.get("STORAGE_BACKEND") != "s3":
        return
    missing = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
    if missing:
        app.logger.error("Photo storage misconfigured, missing env vars: %s", ", ".join(missing))
        return

    from botocore.exceptions import BotoCoreError, ClientError

    from app.chms.storage import S3Storage, storage_from_config

    storage = storage_from_config(app.config)
    if not isinstance(storage, S3Storage):
        return
    try:
        storage._client().head_bucket(Bucket=storage.bucket)
    except (BotoCoreError, ClientError) as e:
        app.logger.error("Photo storage bucket '%s' not reachable: %s", storage.bucket, e)
        return
    app.logger.info("Photo storage bucket '%s' reachable", storage.bucket)


def _install_template_helpers(app: Flask) -> None:
    @app.context_processor
    def _template_globals() -> dict:
        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"csrf_token": ensure_csrf_token(), "has_perm": has_perm}

    @app.template_filter("dateformat")
    def _dateformat(value, fmt: str = "%Y-%m-%d") -> str:
        if value is None:
            return "—"
        return value.strftime(fmt) if hasattr(value, "strftime") else str(value)

    app.add_template_filter(format_date, "shortdate")

    @app.template_filter("money")
    def _money(value) -> str:
        return f"{float(value or 0):,.2f}"


def _install_request_hooks(app: Flask) -> None:
    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNTRACKED_PATHS):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return None
        if (request.endpoint or "").startswith(_CSRF_EXEMPT_PREFIXES):
            return None
        if not validate_csrf(request):
            return render_template("errors/400.html", message="CSRF token missing or invalid."), 400
        return None

    @app.before_request
    def _load_user():
        # gateway callbacks are not signed-in users
        if request.path.startswith(_UNTRACKED_PATHS + ("/hooks/",)):
            g.current_user = None
            return None
        return load_current_user()

    @app.before_request
    def _schema_guard():
        # Checked on the first dashboard hit so tests and scripts can create tables after create_app().
        if not request.path.startswith("/dashboard"):
            return None
        if "_schema_missing" not in app.config:
            app.config["_schema_missing"] = missing_tables(app, _EXPECTED_TABLES)
            if app.config["_schema_missing"]:
                app.logger.error(
                    "DB schema out of date; run `alembic upgrade head`. Missing tables: %s",
                    ", ".join(app.config["_schema_missing"]),
                )
        if app.config["_schema_missing"]:
            return render_template("errors/schema_out_of_date.html", missing=app.config["_schema_missing"]), 500
        return None


def _install_error_handlers(app: Flask) -> None:
    @app.errorhandler(403)
    def _forbidden(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _not_found(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _too_large(e):  # type: ignore[no-redef]
        limit_mb = int(app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        flash(f"File too large. Maximum upload size is {limit_mb}MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer)
        return redirect(url_for("admin.index"))

    @app.errorhandler(500)
    def _server_error(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return render_template("errors/500.html", request_id=rid), 500


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    _check_production_config(app)
    init_db(app)
    _check_photo_storage(app)

    for prefix, blueprints in _BLUEPRINTS:
        for bp in blueprints:
            app.register_blueprint(bp, url_prefix=prefix or None)

    _install_template_helpers(app)
    _install_request_hooks(app)
    _install_error_handlers(app)

    logger.info("create_app() complete (env=%s)", app.config.get("ENV"))
    return app
