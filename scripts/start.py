#!/usr/bin/env python3
"""
Container entry point: run the release phase, then exec gunicorn.

    python scripts/start.py

PORT (default 8080) and WEB_CONCURRENCY (default 2) size the server; SKIP_RELEASE=1
starts gunicorn straight away. The scheduled jobs (scripts/run_jobs.py) run separately.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

LIMITS = {"PORT": (8080, 1, 65535), "WEB_CONCURRENCY": (2, 1, 64)}


def bounded_env_int(name: str) -> int:
    default, low, high = LIMITS[name]
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    if not raw.isdigit() or not low <= int(raw) <= high:
        raise SystemExit(f"{name}={raw!r} must be an integer in {low}-{high}.")
    return int(raw)


def gunicorn_argv(port: int, workers: int) -> list[str]:
    # --preload: create_app() runs once; db.init_db() resets the pool in each forked worker
    return [
        "gunicorn",
        "app.wsgi:app",
        f"--bind=0.0.0.0:{port}",
        f"--workers={workers}",
        "--timeout=60",
        "--preload",
        "--access-logfile=-",
        "--error-logfile=-",
    ]


def main() -> None:
    port = bounded_env_int("PORT")
    workers = bounded_env_int("WEB_CONCURRENCY")

    if (os.environ.get("SKIP_RELEASE") or "").strip() != "1":
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            raise SystemExit(f"Release failed, not starting the web server: {e}") from e

    print(f"[start] gunicorn on :{port} with {workers} worker(s)", flush=True)
    os.execvp("gunicorn", gunicorn_argv(port, workers))


if __name__ == "__main__":
    main()
