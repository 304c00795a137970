"""
Daily messaging jobs: due scheduled messages, recurring messages and birthday SMS.

Run from cron through scripts/run_jobs.py. Each job gets its own session and the
services commit after every message, so a crash keeps what was already delivered and
does not touch the other jobs.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from flask import Flask

from app.chms.db import session_scope
from app.chms.modules.messaging.service import process_due_scheduled, process_recurring, run_birthday_job

logger = logging.getLogger(__name__)

JOBS = ("scheduled", "recurring", "birthdays")


def run_jobs(app: Flask, names: tuple[str, ...] = JOBS, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    base_url = app.config["SMS_API_BASE_URL"]
    batch_size = int(app.config.get("SMS_BATCH_SIZE") or 100)
    results: dict[str, Any] = {}
    unknown = [n for n in names if n not in JOBS]
    if unknown:
        raise ValueError(f"Unknown job(s): {', '.join(unknown)}")

    for name in names:
        try:
            with session_scope(app) as s:
                if name == "scheduled":
                    results[name] = process_due_scheduled(s, base_url=base_url, batch_size=batch_size, now=now)
                elif name == "recurring":
                    results[name] = process_recurring(s, base_url=base_url, batch_size=batch_size, now=now)
                elif name == "birthdays":
                    results[name] = run_birthday_job(
                        s,
                        base_url=base_url,
                        today=date(now.year, now.month, now.day),
                        cost_per_segment=float(app.config.get("SMS_COST_PER_SEGMENT") or 0.10),
                    )
        except Exception:
            logger.exception("Messaging job '%s' failed", name)
            results[name] = "error"
            continue
        logger.info("Messaging job '%s' done: %s", name, results[name])
    return results
