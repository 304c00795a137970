#!/usr/bin/env python3
"""
Run the periodic messaging jobs once and exit.

Schedule it from cron or a DigitalOcean scheduled job, e.g. every 5 minutes:
    python scripts/run_jobs.py
    python scripts/run_jobs.py scheduled recurring
    python scripts/run_jobs.py birthdays

Jobs: scheduled (send due scheduled messages), recurring (re-send recurring messages),
birthdays (automatic birthday SMS; at most once per member per day).
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.chms import create_app
from app.chms.modules.messaging.jobs import JOBS, run_jobs


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("jobs", nargs="*", metavar="JOB", help=f"jobs to run: {', '.join(JOBS)} (default: all)")
    args = parser.parse_args(argv)
    unknown = [j for j in args.jobs if j not in JOBS]
    if unknown:
        parser.error(f"unknown job(s): {', '.join(unknown)}")

    app = create_app()
    results = run_jobs(app, tuple(args.jobs) or JOBS)
    print(json.dumps(results, indent=2, sort_keys=True, default=str))
    return 1 if any(r == "error" for r in results.values()) else 0


if __name__ == "__main__":
    sys.exit(main())
