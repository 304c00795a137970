"""
Environment-driven settings. Each Settings field is read from the environment
variable of the same name in upper case and exposed to Flask under that key.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields

# photo uploads and spreadsheet imports
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class Settings:
    secret_key: str = "change-me"
    env: str = "development"
    database_url: str = "sqlite:///chms.db"

    # "local" (STORAGE_ROOT, default ./storage) or "s3" (DigitalOcean Spaces)
    storage_backend: str = "local"
    storage_root: str = ""
    s3_endpoint: str = ""
    s3_region: str = "nyc3"
    s3_bucket: str = ""
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""

    # Wigal FROG SMS gateway
    sms_api_base_url: str = "https://frogapi.wigal.com.gh"
    sms_webhook_secret: str = ""
    sms_batch_size: int = 100
    sms_cost_per_segment: float = 0.10
    default_country_code: str = "233"
    birthday_window_days: int = 30

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("prod", "production")


def _coerce(raw: str, default):
    """Numbers that fail to parse fall back to the default rather than failing boot."""
    if isinstance(default, str):
        return raw
    try:
        return type(default)(raw)
    except ValueError:
        return default


def load_settings(environ=None) -> Settings:
    environ = os.environ if environ is None else environ
    values = {}
    for f in fields(Settings):
        raw = (environ.get(f.name.upper()) or "").strip()
        if raw:
            values[f.name] = _coerce(raw, f.default)
    return Settings(**values)


def load_config(environ=None) -> dict:
    settings = load_settings(environ)
    config = {f.name.upper(): getattr(settings, f.name) for f in fields(Settings)}
    config["SMS_BATCH_SIZE"] = max(1, settings.sms_batch_size)
    config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=settings.is_production,
        MAX_CONTENT_LENGTH=MAX_UPLOAD_BYTES,
    )
    return config
