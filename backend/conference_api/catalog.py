from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from . import models
from .dates import normalize_dt, parse_date, start_of_day, utcnow
from .errors import CannotModifyAfterStart, CloseDateLocked, EventNotFound, InvalidInput, NameExists, Overlap
from .logging_utils import log_event
from .notifications import NotificationService
from .ports import EventStore

NAME_MIN_LENGTH = 5
NAME_MAX_LENGTH = 100
LOCATION_MIN_LENGTH = 5
LOCATION_MAX_LENGTH = 200
_LOCATION_SEPARATORS = re.compile(r"[,.]")
_LOCATION_PUNCTUATION = set(",.-")


def validate_event_name(name: str) -> str:
    name = (name or "").strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise InvalidInput(f"El nombre debe tener entre {NAME_MIN_LENGTH} y {NAME_MAX_LENGTH} caracteres")
    if not all(ch.isalpha() or ch == " " for ch in name):
        raise InvalidInput("El nombre solo puede contener letras y espacios")
    return name


def validate_location(location: str) -> str:
    location = (location or "").strip()
    if not LOCATION_MIN_LENGTH <= len(location) <= LOCATION_MAX_LENGTH:
        raise InvalidInput(
            f"La ubicación debe tener entre {LOCATION_MIN_LENGTH} y {LOCATION_MAX_LENGTH} caracteres"
        )
    if not all(ch.isalpha() or ch in "0123456789" or ch.isspace() or ch in _LOCATION_PUNCTUATION for ch in location):
        raise InvalidInput("La ubicación contiene caracteres no permitidos")
    parts = [part.strip() for part in _LOCATION_SEPARATORS.split(location) if part.strip()]
    if len(parts) < 2:
        raise InvalidInput("La ubicación debe incluir ciudad y país separados por coma o punto")
    return location


def is_registration_open(event: models.Event, now: datetime | None = None) -> bool:
    """Registration is open while the manual flag is on and neither close nor start has been reached."""
    now = normalize_dt(now) or utcnow()
    if event.cancelled:
        return False
    return (
        bool(event.registration_open_manual)
        and now < normalize_dt(event.registration_close_date)
        and now < normalize_dt(event.start_date)
    )


class EventCatalog:
    def __init__(self, events: EventStore, notifications: NotificationService | None = None):
        self.events = events
        self.notifications = notifications

    is_registration_open = staticmethod(is_registration_open)

    def _parse_window(self, start: str, end: str, close: str) -> tuple[datetime, datetime, datetime]:
        return (
            parse_date(start, "fecha de inicio"),
            parse_date(end, "fecha de fin"),
            parse_date(close, "fecha de cierre de inscripciones"),
        )

    def _check_conflicts(self, name: str, start: datetime, end: datetime, exclude_id: Optional[int] = None) -> None:
        if self.events.find_active_by_name(name, exclude_id=exclude_id) is not None:
            raise NameExists()
        if self.events.find_overlapping(start, end, exclude_id=exclude_id):
            raise Overlap()

    def _get_active(self, event_id: int) -> models.Event:
        event = self.events.get(event_id)
        if event is None or event.cancelled:
            raise EventNotFound()
        return event

    def create_event(
        self,
        name: str,
        start: str,
        end: str,
        close: str,
        location: str,
        now: datetime | None = None,
    ) -> models.Event:
        now = normalize_dt(now) or utcnow()
        today = start_of_day(now)
        name = validate_event_name(name)
        location = validate_location(location)
        start_date, end_date, close_date = self._parse_window(start, end, close)

        if start_date <= today:
            raise InvalidInput("La fecha de inicio debe ser posterior a hoy")
        if close_date <= today:
            raise InvalidInput("La fecha de cierre de inscripciones debe ser posterior a hoy")
        if end_date < start_date:
            raise InvalidInput("La fecha de fin no puede ser anterior a la fecha de inicio")
        if close_date >= start_date:
            raise InvalidInput("La fecha de cierre de inscripciones debe ser anterior a la fecha de inicio")

        with self.events.write_lock():
            self._check_conflicts(name, start_date, end_date)
            event = models.Event(
                name=name,
                location=location,
                start_date=start_date,
                end_date=end_date,
                registration_close_date=close_date,
                registration_open_manual=True,
                cancelled=False,
                created_at=now,
                updated_at=now,
            )
            try:
                event = self.events.save(event)
            except IntegrityError:
                raise NameExists()

        log_event("event_created", event_id=event.id, name=event.name)
        return event

    def update_event(
        self,
        event_id: int,
        name: str,
        start: str,
        end: str,
        close: str,
        location: str,
        now: datetime | None = None,
    ) -> models.Event:
        now = normalize_dt(now) or utcnow()
        today = start_of_day(now)
        event = self._get_active(event_id)
        name = validate_event_name(name)
        location = validate_location(location)
        start_date, end_date, close_date = self._parse_window(start, end, close)

        if start_date <= today:
            raise InvalidInput("La fecha de inicio debe ser posterior a hoy")

        current_close_day = start_of_day(event.registration_close_date)
        close_day_changed = start_of_day(close_date) != current_close_day
        if close_day_changed and now >= current_close_day:
            raise CloseDateLocked()
        if close_day_changed and start_of_day(close_date) <= today:
            raise InvalidInput("La fecha de cierre de inscripciones debe ser posterior a hoy")
        if end_date < start_date:
            raise InvalidInput("La fecha de fin no puede ser anterior a la fecha de inicio")
        if close_date >= start_date:
            raise InvalidInput("La fecha de cierre de inscripciones debe ser anterior a la fecha de inicio")

        changes = []
        if name != event.name:
            changes.append("nombre")
        if location != event.location:
            changes.append("ubicación")
        if start_date != normalize_dt(event.start_date) or end_date != normalize_dt(event.end_date):
            changes.append("fechas")
        if close_date != normalize_dt(event.registration_close_date):
            changes.append("cierre de inscripciones")

        with self.events.write_lock():
            self._check_conflicts(name, start_date, end_date, exclude_id=event.id)
            event.name = name
            event.location = location
            event.start_date = start_date
            event.end_date = end_date
            event.registration_close_date = close_date
            event.updated_at = now
            try:
                event = self.events.save(event)
            except IntegrityError:
                raise NameExists()

        log_event("event_updated", event_id=event.id, changes=changes)
        if self.notifications is not None:
            self.notifications.notify_event_changed(event, changes, now=now)
        return event

    def close_registration(self, event_id: int, now: datetime | None = None) -> models.Event:
        return self._set_manual_flag(event_id, False, now)

    def open_registration(self, event_id: int, now: datetime | None = None) -> models.Event:
        return self._set_manual_flag(event_id, True, now)

    def _set_manual_flag(self, event_id: int, value: bool, now: datetime | None) -> models.Event:
        now = normalize_dt(now) or utcnow()
        event = self._get_active(event_id)
        if now >= normalize_dt(event.start_date):
            raise CannotModifyAfterStart()
        was_open = bool(event.registration_open_manual)
        event.registration_open_manual = value
        event.updated_at = now
        event = self.events.save(event)
        log_event("event_registration_toggled", event_id=event.id, open=value)
        if value and not was_open and self.notifications is not None:
            self.notifications.notify_registration_reopened(event, now=now)
        return event

    def delete_event(self, event_id: int, now: datetime | None = None) -> models.Event:
        now = normalize_dt(now) or utcnow()
        event = self._get_active(event_id)
        event.cancelled = True
        event.cancelled_at = now
        event.updated_at = now
        event = self.events.save(event)
        log_event("event_cancelled", event_id=event.id)
        if self.notifications is not None:
            self.notifications.notify_event_cancelled(event, now=now)
        return event

    def get_event(self, event_id: int) -> models.Event:
        return self._get_active(event_id)

    def list_events(self) -> list[models.Event]:
        return self.events.list_active()

    def occupied_ranges(self) -> list[tuple[datetime, datetime]]:
        return [(normalize_dt(event.start_date), normalize_dt(event.end_date)) for event in self.events.list_active()]
