"""
Release phase: migrate the database to head, then seed roles/permissions and the
optional first organization (see scripts/init_db.py). Safe to run on every deploy.

    python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def release_database_url() -> str:
    """DATABASE_URL is mandatory here; production must not fall back to sqlite."""
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is not set; configure it in the app's environment variables.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release a production app against sqlite; point DATABASE_URL at Postgres.")
    return db_url


def migrate(db_url: str, revision: str = "head") -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, revision)


def run_release() -> None:
    db_url = release_database_url()
    print(f"[release] ENV={os.environ.get('ENV') or '(unset)'}; upgrading schema to head", flush=True)
    migrate(db_url)

    from scripts.init_db import seed_only

    print("[release] seeding roles and permissions", flush=True)
    seed_only(database_url=db_url)
    print("[release] done", flush=True)


if __name__ == "__main__":
    run_release()
