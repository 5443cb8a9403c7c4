#!/usr/bin/env python3
"""Run the daily notification pass from cron or by hand.

By default the pass runs only when the scheduler watermark says it is due.
``--force`` runs it regardless (the watermark is left alone), and ``--enqueue``
hands the work to the background worker instead of running it here; a job already
queued for the same business day is reused.
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime, timezone
from pathlib import Path


def _bootstrap_imports() -> None:
    backend_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_root))

    os.environ.setdefault("EMAIL_ENABLED", "false")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run or enqueue the daily notification pass.")
    parser.add_argument("--force", action="store_true", help="Run even if the watermark says the pass is not due.")
    parser.add_argument("--enqueue", action="store_true", help="Enqueue a job for the worker instead of running inline.")
    args = parser.parse_args()

    _bootstrap_imports()

    from conference_api.dates import local_date  # noqa: PLC0415
    from conference_api.database import SessionLocal  # noqa: PLC0415
    from conference_api.logging_utils import configure_logging  # noqa: PLC0415
    from conference_api.scheduler import build_notification_scheduler, run_notification_pass  # noqa: PLC0415
    from conference_api.task_queue import JOB_TYPE_RUN_NOTIFICATION_PASS, enqueue_job  # noqa: PLC0415

    configure_logging()

    if args.enqueue:
        with SessionLocal() as db:
            job = enqueue_job(
                db,
                JOB_TYPE_RUN_NOTIFICATION_PASS,
                {},
                dedupe_key=local_date(datetime.now(timezone.utc)).isoformat(),
            )
            print(f"job_type={JOB_TYPE_RUN_NOTIFICATION_PASS} job_id={job.id} status={job.status}")
        return 0

    if args.force:
        with SessionLocal() as db:
            result = run_notification_pass(db)
        print(f"pass finished ok={result.ok} created={result.created} failed_rules={result.failed_rules}")
        return 0 if result.ok else 1

    ran = build_notification_scheduler().tick()
    print("pass ran" if ran else "pass not due (or failed; see logs)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
