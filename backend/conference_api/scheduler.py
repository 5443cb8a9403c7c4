"""Daily notification pass with crash-recovery catch-up.

A ``NotificationScheduler`` is driven by ticks. Each tick asks the pure
``is_pass_due`` predicate whether the latest scheduled slot has been covered by
the stored watermark; if not, it runs one pass over the rules and advances the
watermark only when every rule succeeded. A process that was down at the
scheduled hour therefore runs the missed pass on its first tick after start.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, tzinfo
from typing import Callable, Optional

from sqlalchemy.orm import Session

from . import models
from .config import settings
from .database import SessionLocal
from .dates import business_tz, local_date, next_day_bounds, normalize_dt, utcnow
from .logging_utils import log_event, log_warning
from .notifications import NotificationService
from .ports import EventStore, RegistrationStore, UserDirectory, WatermarkStore
from .stores import SqlEventStore, SqlNotificationStore, SqlRegistrationStore, SqlUserDirectory, SqlWatermarkStore

RULE_CLOSING_SOON = "closing_soon"
RULE_EVENT_REMINDER = "event_reminder"
RULE_PAYMENT_DUE = "payment_due"


@dataclass
class RuleOutcome:
    created: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class PassResult:
    outcomes: dict[str, RuleOutcome] = field(default_factory=dict)
    failed_rules: list[str] = field(default_factory=list)
    stopped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed_rules and not self.stopped

    @property
    def created(self) -> int:
        return sum(outcome.created for outcome in self.outcomes.values())


def latest_slot(now: datetime, hour: int, tz: tzinfo | None = None) -> datetime:
    """Most recent instant, at or before ``now``, when the daily pass was scheduled."""
    tz = tz or business_tz()
    today = local_date(now, tz)
    slot = datetime.combine(today, time(hour=hour)).replace(tzinfo=tz)
    if normalize_dt(now) < slot:
        slot = datetime.combine(today - timedelta(days=1), time(hour=hour)).replace(tzinfo=tz)
    return normalize_dt(slot)


def is_pass_due(last_run: Optional[datetime], now: datetime, hour: int, tz: tzinfo | None = None) -> bool:
    if last_run is None:
        return True
    return normalize_dt(last_run) < latest_slot(now, hour, tz)


class NotificationRules:
    """The scheduled notification rules; each one is independent of the others."""

    def __init__(
        self,
        events: EventStore,
        registrations: RegistrationStore,
        users: UserDirectory,
        notifications: NotificationService,
        *,
        payment_reminder_days: int = 5,
        tz: tzinfo | None = None,
    ):
        self.events = events
        self.registrations = registrations
        self.users = users
        self.notifications = notifications
        self.payment_reminder_days = payment_reminder_days
        self.tz = tz

    def rules(self) -> list[tuple[str, Callable[[datetime], RuleOutcome]]]:
        return [
            (RULE_CLOSING_SOON, self.closing_soon),
            (RULE_EVENT_REMINDER, self.event_reminder),
            (RULE_PAYMENT_DUE, self.payment_due),
        ]

    def _deliver(
        self,
        outcome: RuleOutcome,
        user_id: int,
        notification_type: models.NotificationType,
        event: models.Event,
        now: datetime,
        registration_id: int | None = None,
    ) -> None:
        try:
            created = self.notifications.notify(
                user_id, notification_type, event, registration_id=registration_id, now=now
            )
        except Exception as exc:  # noqa: BLE001
            outcome.failed += 1
            log_warning(
                "scheduled_notification_failed",
                notification_type=notification_type.value,
                user_id=user_id,
                event_id=event.id,
                error=str(exc),
            )
            return
        if created is None:
            outcome.skipped += 1
        else:
            outcome.created += 1

    def closing_soon(self, now: datetime) -> RuleOutcome:
        outcome = RuleOutcome()
        start, end = next_day_bounds(now, self.tz)
        users = None
        for event in self.events.closing_between(start, end):
            if not event.registration_open_manual or now >= normalize_dt(event.start_date):
                continue
            if users is None:
                users = self.users.list_all()
            registered = {registration.user_id for registration in self.registrations.active_for_event(event.id)}
            for user in users:
                if user.id in registered:
                    continue
                self._deliver(outcome, user.id, models.NotificationType.registration_closing, event, now)
        return outcome

    def event_reminder(self, now: datetime) -> RuleOutcome:
        outcome = RuleOutcome()
        start, end = next_day_bounds(now, self.tz)
        for event in self.events.starting_between(start, end):
            for registration in self.registrations.active_for_event(event.id):
                self._deliver(
                    outcome,
                    registration.user_id,
                    models.NotificationType.event_reminder,
                    event,
                    now,
                    registration_id=registration.id,
                )
        return outcome

    def payment_due(self, now: datetime) -> RuleOutcome:
        outcome = RuleOutcome()
        horizon = now + timedelta(days=self.payment_reminder_days)
        for registration in self.registrations.unpaid_pending_starting_between(now, horizon):
            self._deliver(
                outcome,
                registration.user_id,
                models.NotificationType.payment_reminder,
                registration.event,
                now,
                registration_id=registration.id,
            )
        return outcome


def run_rules(
    rules: NotificationRules,
    now: datetime | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> PassResult:
    now = normalize_dt(now) or utcnow()
    result = PassResult()
    for name, rule in rules.rules():
        if should_stop is not None and should_stop():
            result.stopped = True
            log_warning("notification_pass_stopped", before_rule=name)
            break
        try:
            outcome = rule(now)
        except Exception as exc:  # noqa: BLE001
            result.failed_rules.append(name)
            log_warning("notification_rule_failed", rule=name, error=str(exc))
            continue
        result.outcomes[name] = outcome
        log_event(
            "notification_rule_completed",
            rule=name,
            created=outcome.created,
            skipped=outcome.skipped,
            failed=outcome.failed,
        )
    return result


def build_rules(db: Session) -> NotificationRules:
    registrations = SqlRegistrationStore(db)
    users = SqlUserDirectory(db)
    notifications = NotificationService(SqlNotificationStore(db), users, registrations)
    return NotificationRules(
        SqlEventStore(db),
        registrations,
        users,
        notifications,
        payment_reminder_days=settings.payment_reminder_days,
    )


def run_notification_pass(
    db: Session,
    now: datetime | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> PassResult:
    return run_rules(build_rules(db), now, should_stop)


class NotificationScheduler:
    def __init__(
        self,
        run_pass: Callable[[datetime, Callable[[], bool]], PassResult],
        watermarks: WatermarkStore,
        *,
        job_name: str,
        hour: int,
        tz: tzinfo | None = None,
    ):
        self.run_pass = run_pass
        self.watermarks = watermarks
        self.job_name = job_name
        self.hour = hour
        self.tz = tz
        self._stop = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Let the running rule finish, skip the rest, and refuse further ticks."""
        self._stop.set()

    def tick(self, now: datetime | None = None) -> bool:
        """Run a pass if one is due; True when a pass ran and the watermark moved."""
        if self.stopping:
            return False
        now = normalize_dt(now) or utcnow()
        last_run = self.watermarks.get(self.job_name)
        if not is_pass_due(last_run, now, self.hour, self.tz):
            return False

        log_event("notification_pass_started", job_name=self.job_name, last_run=last_run, catch_up=last_run is None)
        result = self.run_pass(now, lambda: self._stop.is_set())
        if not result.ok:
            log_warning(
                "notification_pass_failed",
                job_name=self.job_name,
                failed_rules=result.failed_rules,
                stopped=result.stopped,
            )
            return False

        if not self.watermarks.advance(self.job_name, last_run, now):
            log_warning("notification_watermark_conflict", job_name=self.job_name)
            return False
        log_event("notification_pass_completed", job_name=self.job_name, created=result.created)
        return True


class SchedulerRunner:
    """Drives a ``NotificationScheduler`` from the event loop: one tick at start, then every interval."""

    def __init__(self, scheduler: NotificationScheduler, interval_seconds: float):
        self.scheduler = scheduler
        self.interval_seconds = max(1.0, float(interval_seconds))
        self._wakeup: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    def start(self) -> asyncio.Task:
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        return self._task

    async def _loop(self) -> None:
        while not self.scheduler.stopping:
            try:
                await asyncio.to_thread(self.scheduler.tick)
            except Exception as exc:  # noqa: BLE001
                log_warning("scheduler_tick_error", job_name=self.scheduler.job_name, error=str(exc))
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        self.scheduler.stop()
        if self._wakeup is not None:
            self._wakeup.set()
        if self._task is not None:
            await self._task


def build_notification_scheduler(session_factory: Callable[[], Session] | None = None) -> NotificationScheduler:
    session_factory = session_factory or SessionLocal

    def _run_pass(now: datetime, should_stop: Callable[[], bool]) -> PassResult:
        with session_factory() as db:
            return run_notification_pass(db, now, should_stop)

    return NotificationScheduler(
        _run_pass,
        SqlWatermarkStore(session_factory),
        job_name=settings.scheduler_job_name,
        hour=settings.scheduler_hour,
    )
