"""Background worker: drains the job queue and, optionally, drives the notification scheduler.

Run with ``python -m conference_api.worker``.
"""

from __future__ import annotations

import os
import signal
import socket
import time

from .config import settings
from .database import SessionLocal
from .logging_utils import configure_logging, log_event, log_warning
from .scheduler import NotificationScheduler, build_notification_scheduler
from .task_queue import claim_next_job, idle_sleep, process_job, requeue_stale_jobs


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _drain_one(worker_id: str) -> bool:
    """Claim and process a single job; False when the queue had nothing runnable."""
    db = SessionLocal()
    try:
        job = claim_next_job(db, worker_id=worker_id)
        if not job:
            return False
        log_event("job_claimed", worker_id=worker_id, job_id=job.id, job_type=job.job_type)
        process_job(db, job)
        return True
    finally:
        db.close()


def _requeue_stale() -> None:
    db = SessionLocal()
    try:
        requeue_stale_jobs(db)
    finally:
        db.close()


def main() -> None:
    configure_logging()

    worker_id = os.getenv("WORKER_ID") or _default_worker_id()
    scheduler: NotificationScheduler | None = (
        build_notification_scheduler() if settings.scheduler_in_worker else None
    )
    shutdown_requested = False

    def _handle_signal(signum, _frame):  # noqa: ANN001
        nonlocal shutdown_requested
        shutdown_requested = True
        if scheduler is not None:
            scheduler.stop()
        log_warning("worker_shutdown_requested", worker_id=worker_id, signal=signum)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    log_event(
        "worker_started",
        worker_id=worker_id,
        poll_interval_seconds=settings.task_queue_poll_interval_seconds,
        scheduler=scheduler is not None,
    )

    last_requeue_ts = 0.0
    last_tick_ts = 0.0
    while not shutdown_requested:
        try:
            now = time.time()
            if now - last_requeue_ts > max(30, settings.task_queue_stale_after_seconds):
                _requeue_stale()
                last_requeue_ts = now

            if scheduler is not None and now - last_tick_ts >= settings.scheduler_poll_interval_seconds:
                last_tick_ts = now
                scheduler.tick()

            if not _drain_one(worker_id):
                idle_sleep()
        except Exception as exc:  # noqa: BLE001
            log_warning("worker_loop_error", worker_id=worker_id, error=str(exc))
            idle_sleep()

    log_event("worker_stopped", worker_id=worker_id)


if __name__ == "__main__":
    main()
