from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from . import models


@dataclass
class RegistrationFilters:
    user_id: Optional[int] = None
    event_id: Optional[int] = None
    status: Optional[models.RegistrationStatus] = None
    query: Optional[str] = None
    created_from: Optional[datetime] = None
    created_before: Optional[datetime] = None
    include_cancelled: bool = False


@runtime_checkable
class EventStore(Protocol):
    """Persistence for catalog events; cancelled events stay stored as tombstones."""

    def write_lock(self) -> AbstractContextManager[None]:
        """Serialize check-and-write sequences; rolls back if the block raises."""

    def get(self, event_id: int) -> Optional[models.Event]: ...

    def list_active(self) -> list[models.Event]: ...

    def find_active_by_name(self, name: str, *, exclude_id: Optional[int] = None) -> Optional[models.Event]: ...

    def find_overlapping(
        self, start: datetime, end: datetime, *, exclude_id: Optional[int] = None
    ) -> list[models.Event]: ...

    def closing_between(self, start: datetime, end: datetime) -> list[models.Event]: ...

    def starting_between(self, start: datetime, end: datetime) -> list[models.Event]: ...

    def save(self, event: models.Event) -> models.Event: ...


@runtime_checkable
class RegistrationStore(Protocol):
    def get(self, registration_id: int) -> Optional[models.Registration]: ...

    def find_active(self, event_id: int, user_id: int) -> Optional[models.Registration]: ...

    def active_for_event(self, event_id: int) -> list[models.Registration]: ...

    def unpaid_pending_starting_between(self, start: datetime, end: datetime) -> list[models.Registration]: ...

    def search(self, filters: RegistrationFilters) -> list[models.Registration]: ...

    def history(self, registration_id: int) -> list[models.RegistrationStatusHistory]: ...

    def save(
        self,
        registration: models.Registration,
        history: Iterable[models.RegistrationStatusHistory] = (),
    ) -> models.Registration:
        """Persist the registration and its history entries in one transaction."""


@runtime_checkable
class UserDirectory(Protocol):
    def get(self, user_id: int) -> Optional[models.User]: ...

    def list_all(self) -> list[models.User]: ...

    def get_preferences(self, user_id: int) -> Optional[models.NotificationPreference]: ...

    def save_preferences(self, preference: models.NotificationPreference) -> models.NotificationPreference: ...


@runtime_checkable
class NotificationStore(Protocol):
    def exists(self, dedupe_key: str) -> bool: ...

    def add(self, notification: models.Notification) -> Optional[models.Notification]:
        """Insert; returns None when the dedupe key is already taken."""

    def get(self, notification_id: int) -> Optional[models.Notification]: ...

    def list_for_user(self, user_id: int) -> list[models.Notification]: ...

    def save(self, notification: models.Notification) -> models.Notification: ...


@runtime_checkable
class WatermarkStore(Protocol):
    def get(self, job_name: str) -> Optional[datetime]: ...

    def advance(self, job_name: str, previous: Optional[datetime], new: datetime) -> bool:
        """Compare-and-swap: move the watermark only if it still equals ``previous``."""


@runtime_checkable
class MailSender(Protocol):
    def send(self, to_email: str, subject: str, body_text: str, context: dict[str, Any] | None = None) -> None:
        """Deliver or enqueue a message; never raises into the caller."""
