"""SQLAlchemy implementations of the repository ports."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy import or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from . import models
from .dates import normalize_dt
from .ports import RegistrationFilters

# One advisory key for the whole catalog: writes are rare, scans are global.
CATALOG_ADVISORY_LOCK_KEY = 7_301_001
_catalog_lock = threading.Lock()


def _dialect_name(db: Session) -> str:
    bind = db.get_bind()
    return bind.dialect.name if bind is not None else ""


class SqlEventStore:
    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def write_lock(self):
        with _catalog_lock:
            try:
                if _dialect_name(self.db) == "postgresql":
                    # released by the commit that ends the write
                    self.db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": CATALOG_ADVISORY_LOCK_KEY})
                yield
            except Exception:
                self.db.rollback()
                raise

    def _active(self):
        return self.db.query(models.Event).filter(models.Event.cancelled.is_(False))

    def get(self, event_id: int) -> Optional[models.Event]:
        return self.db.get(models.Event, event_id)

    def list_active(self) -> list[models.Event]:
        return self._active().order_by(models.Event.start_date.asc(), models.Event.id.asc()).all()

    def find_active_by_name(self, name: str, *, exclude_id: Optional[int] = None) -> Optional[models.Event]:
        query = self._active().filter(models.Event.name == name)
        if exclude_id is not None:
            query = query.filter(models.Event.id != exclude_id)
        return query.first()

    def find_overlapping(self, start: datetime, end: datetime, *, exclude_id: Optional[int] = None) -> list[models.Event]:
        query = self._active().filter(
            ~(models.Event.start_date > normalize_dt(end)),
            ~(models.Event.end_date < normalize_dt(start)),
        )
        if exclude_id is not None:
            query = query.filter(models.Event.id != exclude_id)
        return query.order_by(models.Event.start_date.asc()).all()

    def closing_between(self, start: datetime, end: datetime) -> list[models.Event]:
        return (
            self._active()
            .filter(
                models.Event.registration_close_date >= normalize_dt(start),
                models.Event.registration_close_date < normalize_dt(end),
            )
            .order_by(models.Event.id.asc())
            .all()
        )

    def starting_between(self, start: datetime, end: datetime) -> list[models.Event]:
        return (
            self._active()
            .filter(models.Event.start_date >= normalize_dt(start), models.Event.start_date < normalize_dt(end))
            .order_by(models.Event.id.asc())
            .all()
        )

    def save(self, event: models.Event) -> models.Event:
        self.db.add(event)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(event)
        return event


class SqlRegistrationStore:
    def __init__(self, db: Session):
        self.db = db

    def _active(self):
        return self.db.query(models.Registration).filter(models.Registration.cancelled_at.is_(None))

    def get(self, registration_id: int) -> Optional[models.Registration]:
        return self._active().filter(models.Registration.id == registration_id).first()

    def find_active(self, event_id: int, user_id: int) -> Optional[models.Registration]:
        return (
            self._active()
            .filter(models.Registration.event_id == event_id, models.Registration.user_id == user_id)
            .first()
        )

    def active_for_event(self, event_id: int) -> list[models.Registration]:
        return self._active().filter(models.Registration.event_id == event_id).order_by(models.Registration.id).all()

    def unpaid_pending_starting_between(self, start: datetime, end: datetime) -> list[models.Registration]:
        return (
            self._active()
            .join(models.Event, models.Event.id == models.Registration.event_id)
            .options(joinedload(models.Registration.event))
            .filter(
                models.Registration.paid.is_(False),
                models.Registration.status == models.RegistrationStatus.pending,
                models.Event.cancelled.is_(False),
                models.Event.start_date >= normalize_dt(start),
                models.Event.start_date <= normalize_dt(end),
            )
            .order_by(models.Registration.id.asc())
            .all()
        )

    def search(self, filters: RegistrationFilters) -> list[models.Registration]:
        query = (
            self.db.query(models.Registration)
            .join(models.Event, models.Event.id == models.Registration.event_id)
            .options(joinedload(models.Registration.event))
        )
        if not filters.include_cancelled:
            query = query.filter(models.Registration.cancelled_at.is_(None))
        if filters.user_id is not None:
            query = query.filter(models.Registration.user_id == filters.user_id)
        if filters.event_id is not None:
            query = query.filter(models.Registration.event_id == filters.event_id)
        if filters.status is not None:
            query = query.filter(models.Registration.status == filters.status)
        if filters.query:
            like = f"%{filters.query.strip()}%"
            query = query.filter(
                or_(
                    models.Registration.participant_name.ilike(like),
                    models.Registration.email.ilike(like),
                    models.Event.name.ilike(like),
                )
            )
        if filters.created_from is not None:
            query = query.filter(models.Registration.created_at >= normalize_dt(filters.created_from))
        if filters.created_before is not None:
            query = query.filter(models.Registration.created_at < normalize_dt(filters.created_before))
        return query.order_by(models.Registration.created_at.desc(), models.Registration.id.desc()).all()

    def history(self, registration_id: int) -> list[models.RegistrationStatusHistory]:
        return (
            self.db.query(models.RegistrationStatusHistory)
            .filter(models.RegistrationStatusHistory.registration_id == registration_id)
            .order_by(models.RegistrationStatusHistory.changed_at.desc(), models.RegistrationStatusHistory.id.desc())
            .all()
        )

    def save(
        self,
        registration: models.Registration,
        history: Iterable[models.RegistrationStatusHistory] = (),
    ) -> models.Registration:
        self.db.add(registration)
        try:
            self.db.flush()
            for entry in history:
                entry.registration_id = registration.id
                self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(registration)
        return registration


class SqlUserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: int) -> Optional[models.User]:
        return self.db.get(models.User, user_id)

    def list_all(self) -> list[models.User]:
        return self.db.query(models.User).order_by(models.User.id.asc()).all()

    def get_preferences(self, user_id: int) -> Optional[models.NotificationPreference]:
        return self.db.get(models.NotificationPreference, user_id)

    def save_preferences(self, preference: models.NotificationPreference) -> models.NotificationPreference:
        self.db.add(preference)
        self.db.commit()
        self.db.refresh(preference)
        return preference


class SqlNotificationStore:
    def __init__(self, db: Session):
        self.db = db

    def exists(self, dedupe_key: str) -> bool:
        return (
            self.db.query(models.Notification.id).filter(models.Notification.dedupe_key == dedupe_key).first()
            is not None
        )

    def add(self, notification: models.Notification) -> Optional[models.Notification]:
        self.db.add(notification)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if notification.dedupe_key is None:
                raise
            return None
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(notification)
        return notification

    def get(self, notification_id: int) -> Optional[models.Notification]:
        return self.db.get(models.Notification, notification_id)

    def list_for_user(self, user_id: int) -> list[models.Notification]:
        return (
            self.db.query(models.Notification)
            .filter(models.Notification.user_id == user_id)
            .order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
            .all()
        )

    def save(self, notification: models.Notification) -> models.Notification:
        self.db.add(notification)
        self.db.commit()
        self.db.refresh(notification)
        return notification


class SqlWatermarkStore:
    """Scheduler watermarks in ``job_executions``; each call uses its own session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def get(self, job_name: str) -> Optional[datetime]:
        with self.session_factory() as db:
            row = db.get(models.JobExecution, job_name)
            return normalize_dt(row.last_run) if row else None

    def advance(self, job_name: str, previous: Optional[datetime], new: datetime) -> bool:
        with self.session_factory() as db:
            if previous is None:
                db.add(models.JobExecution(job_name=job_name, last_run=normalize_dt(new)))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return False
                return True

            updated = (
                db.query(models.JobExecution)
                .filter(
                    models.JobExecution.job_name == job_name,
                    models.JobExecution.last_run == normalize_dt(previous),
                )
                .update({"last_run": normalize_dt(new)}, synchronize_session=False)
            )
            db.commit()
            return updated == 1
