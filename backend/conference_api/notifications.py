from __future__ import annotations

from datetime import datetime
from typing import Optional

from . import models
from .dates import local_date, normalize_dt, utcnow
from .email_templates import render_confirmation_email, render_notification, render_status_email
from .errors import InvalidInput, NotificationNotFound, UserNotFound
from .logging_utils import log_event, log_warning
from .ports import MailSender, NotificationStore, RegistrationStore, UserDirectory

DEFAULT_FREQUENCY = "inmediata"
DEFAULT_TYPES = "estado"
STATUS_PREFERENCE_TYPE = "estado"


def dedupe_key(notification_type: models.NotificationType, user_id: int, event_id: int | None, now: datetime) -> str:
    return f"{notification_type.value}:{user_id}:{event_id or 0}:{local_date(now).isoformat()}"


def wants_status_updates(preference: Optional[models.NotificationPreference]) -> bool:
    if preference is None or not preference.enabled:
        return False
    return STATUS_PREFERENCE_TYPE in (preference.types or "").lower()


class NotificationService:
    """In-app notifications plus the mail that goes with some of them.

    ``notify`` raises on storage failures so callers that batch (the scheduler)
    can count them. Every ``notify_*`` helper is best-effort: failures are logged
    and swallowed, so the catalog and the ledger can call them after their own
    write has committed without risking the outcome they already reported.
    """

    def __init__(
        self,
        store: NotificationStore,
        users: UserDirectory,
        registrations: RegistrationStore,
        mailer: MailSender | None = None,
    ):
        self.store = store
        self.users = users
        self.registrations = registrations
        self.mailer = mailer

    def notify(
        self,
        user_id: int,
        notification_type: models.NotificationType,
        event: models.Event,
        *,
        registration_id: int | None = None,
        now: datetime | None = None,
        dedupe: bool = True,
        **extra,
    ) -> Optional[models.Notification]:
        """Create one notification; returns None when it was already sent today."""
        now = normalize_dt(now) or utcnow()
        key = dedupe_key(notification_type, user_id, event.id, now) if dedupe else None
        if key is not None and self.store.exists(key):
            return None
        title, message = render_notification(notification_type, event, **extra)
        notification = models.Notification(
            user_id=user_id,
            event_id=event.id,
            registration_id=registration_id,
            notification_type=notification_type,
            title=title,
            message=message,
            read=False,
            dedupe_key=key,
            created_at=now,
        )
        created = self.store.add(notification)
        if created is not None:
            log_event(
                "notification_created",
                notification_id=created.id,
                notification_type=notification_type.value,
                user_id=user_id,
                event_id=event.id,
            )
        return created

    def _notify_best_effort(self, user_id: int, notification_type: models.NotificationType, event: models.Event, **kwargs):
        try:
            return self.notify(user_id, notification_type, event, **kwargs)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                "notification_failed",
                notification_type=notification_type.value,
                user_id=user_id,
                event_id=event.id,
                error=str(exc),
            )
            return None

    def _mail_best_effort(self, to_email: str, subject: str, body: str, context: dict) -> None:
        if self.mailer is None:
            return
        try:
            self.mailer.send(to_email, subject, body, context)
        except Exception as exc:  # noqa: BLE001
            log_warning("notification_mail_failed", to=to_email, subject=subject, error=str(exc), **context)

    def notify_registration_confirmed(
        self, registration: models.Registration, event: models.Event, now: datetime | None = None
    ) -> None:
        self._notify_best_effort(
            registration.user_id,
            models.NotificationType.registration_confirmed,
            event,
            registration_id=registration.id,
            now=now,
            dedupe=False,
        )
        subject, body = render_confirmation_email(registration, event)
        self._mail_best_effort(
            registration.email,
            subject,
            body,
            {"registration_id": registration.id, "event_id": event.id},
        )

    def notify_status_changed(
        self,
        registration: models.Registration,
        event: models.Event,
        status: models.RegistrationStatus,
        note: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Alert the user about a status change if their preferences ask for it."""
        now = normalize_dt(now) or utcnow()
        try:
            preference = self.users.get_preferences(registration.user_id)
        except Exception as exc:  # noqa: BLE001
            log_warning("notification_preferences_unavailable", user_id=registration.user_id, error=str(exc))
            return False
        if not wants_status_updates(preference):
            return False
        self._notify_best_effort(
            registration.user_id,
            models.NotificationType.status_changed,
            event,
            registration_id=registration.id,
            now=now,
            dedupe=False,
            status=status.value,
        )
        subject, body = render_status_email(registration, event, status.value, now, note)
        self._mail_best_effort(
            registration.email,
            subject,
            body,
            {"registration_id": registration.id, "status": status.value},
        )
        return True

    def notify_registration_reopened(self, event: models.Event, now: datetime | None = None) -> int:
        try:
            users = self.users.list_all()
        except Exception as exc:  # noqa: BLE001
            log_warning("notification_recipients_unavailable", event_id=event.id, error=str(exc))
            return 0
        created = 0
        for user in users:
            if self._notify_best_effort(user.id, models.NotificationType.registration_reopened, event, now=now):
                created += 1
        log_event("registration_reopened_notified", event_id=event.id, created=created)
        return created

    def notify_event_cancelled(self, event: models.Event, now: datetime | None = None) -> int:
        return self._notify_registrants(event, models.NotificationType.event_cancelled, now=now)

    def notify_event_changed(self, event: models.Event, changes: list[str], now: datetime | None = None) -> int:
        if not changes:
            return 0
        return self._notify_registrants(
            event, models.NotificationType.event_changed, now=now, changes=", ".join(changes)
        )

    def _notify_registrants(
        self, event: models.Event, notification_type: models.NotificationType, now: datetime | None = None, **extra
    ) -> int:
        try:
            registrations = self.registrations.active_for_event(event.id)
        except Exception as exc:  # noqa: BLE001
            log_warning("notification_recipients_unavailable", event_id=event.id, error=str(exc))
            return 0
        created = 0
        for registration in registrations:
            if self._notify_best_effort(
                registration.user_id,
                notification_type,
                event,
                registration_id=registration.id,
                now=now,
                **extra,
            ):
                created += 1
        log_event(
            "registrants_notified",
            event_id=event.id,
            notification_type=notification_type.value,
            created=created,
        )
        return created

    def list_for_user(self, user_id: int) -> list[models.Notification]:
        return self.store.list_for_user(user_id)

    def mark_read(self, notification_id: int, read: bool = True) -> models.Notification:
        notification = self.store.get(notification_id)
        if notification is None:
            raise NotificationNotFound()
        notification.read = read
        return self.store.save(notification)

    def get_preferences(self, user_id: int) -> models.NotificationPreference:
        if self.users.get(user_id) is None:
            raise UserNotFound()
        preference = self.users.get_preferences(user_id)
        if preference is None:
            preference = self.users.save_preferences(
                models.NotificationPreference(
                    user_id=user_id,
                    frequency=DEFAULT_FREQUENCY,
                    types=DEFAULT_TYPES,
                    enabled=True,
                )
            )
        return preference

    def update_preferences(
        self, user_id: int, *, frequency: str, types: str, enabled: bool
    ) -> models.NotificationPreference:
        frequency = (frequency or "").strip()
        types = (types or "").strip()
        if not frequency or not types:
            raise InvalidInput("Frecuencia y tipos son requeridos")
        preference = self.get_preferences(user_id)
        preference.frequency = frequency
        preference.types = types
        preference.enabled = enabled
        preference = self.users.save_preferences(preference)
        log_event("notification_preferences_updated", user_id=user_id, types=types, enabled=enabled)
        return preference
