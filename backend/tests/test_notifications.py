from datetime import datetime, timedelta, timezone

import pytest

from conference_api import models
from conference_api.errors import InvalidInput, NotificationNotFound, UserNotFound
from conference_api.notifications import NotificationService, dedupe_key, wants_status_updates
from conference_api.stores import SqlNotificationStore, SqlRegistrationStore, SqlUserDirectory

NOW = datetime(2026, 2, 1, 10, 0, tzinfo=timezone.utc)


class BrokenNotificationStore:
    def exists(self, dedupe_key):
        return False

    def add(self, notification):
        raise RuntimeError("database unavailable")


class BrokenMailer:
    def send(self, to_email, subject, body_text, context=None):
        raise RuntimeError("smtp down")


@pytest.fixture()
def event(services):
    return services["catalog"].create_event(
        "Congreso de Ciencias", "10/03/2026", "12/03/2026", "01/03/2026", "Santiago, Chile", now=NOW
    )


def test_dedupe_key_uses_type_user_event_and_local_day():
    key = dedupe_key(models.NotificationType.payment_reminder, 7, 3, NOW)
    assert key == "recordatorio_pago:7:3:2026-02-01"
    assert dedupe_key(models.NotificationType.payment_reminder, 7, None, NOW).endswith(":7:0:2026-02-01")


def test_same_notification_is_created_once_per_day(services, helpers, event):
    notifications = services["notifications"]
    ana = helpers["make_user"]("ana@correo.com")

    first = notifications.notify(ana.id, models.NotificationType.registration_closing, event, now=NOW)
    assert first is not None
    assert first.title == "Cierre de inscripciones"
    assert "Congreso de Ciencias" in first.message
    assert notifications.notify(ana.id, models.NotificationType.registration_closing, event, now=NOW + timedelta(hours=5)) is None

    next_day = notifications.notify(ana.id, models.NotificationType.registration_closing, event, now=NOW + timedelta(days=1))
    assert next_day is not None
    assert services["db"].query(models.Notification).count() == 2


def test_store_treats_duplicate_key_as_already_sent(services, helpers, event):
    ana = helpers["make_user"]("ana@correo.com")
    store = SqlNotificationStore(services["db"])
    key = dedupe_key(models.NotificationType.event_reminder, ana.id, event.id, NOW)

    def _row():
        return models.Notification(
            user_id=ana.id,
            event_id=event.id,
            notification_type=models.NotificationType.event_reminder,
            title="Recordatorio de evento",
            message="Recuerda",
            dedupe_key=key,
            created_at=NOW,
        )

    assert store.add(_row()) is not None
    assert store.add(_row()) is None
    assert services["db"].query(models.Notification).count() == 1


def test_best_effort_helpers_swallow_store_failures(db_session, helpers, event):
    helpers["make_user"]("ana@correo.com")
    service = NotificationService(
        BrokenNotificationStore(), SqlUserDirectory(db_session), SqlRegistrationStore(db_session)
    )

    assert service.notify_registration_reopened(event, now=NOW) == 0
    with pytest.raises(RuntimeError):
        service.notify(1, models.NotificationType.registration_reopened, event, now=NOW)


def test_mail_failure_does_not_undo_notification(db_session, helpers, event):
    ana = helpers["make_user"]("ana@correo.com", "Ana Torres")
    users = SqlUserDirectory(db_session)
    registrations = SqlRegistrationStore(db_session)
    service = NotificationService(SqlNotificationStore(db_session), users, registrations, BrokenMailer())
    registration = models.Registration(
        event_id=event.id,
        user_id=ana.id,
        participant_name="Ana Torres",
        email="ana@correo.com",
        affiliation="UCh",
    )
    registration = registrations.save(registration)

    service.notify_registration_confirmed(registration, event, now=NOW)

    assert [n.notification_type for n in service.list_for_user(ana.id)] == [
        models.NotificationType.registration_confirmed
    ]


def test_preferences_default_and_update(services, helpers):
    notifications = services["notifications"]
    ana = helpers["make_user"]("ana@correo.com")

    preference = notifications.get_preferences(ana.id)
    assert (preference.frequency, preference.types, preference.enabled) == ("inmediata", "estado", True)

    updated = notifications.update_preferences(ana.id, frequency="diaria", types="estado,recordatorio", enabled=False)
    assert updated.frequency == "diaria"
    assert updated.enabled is False
    assert services["db"].query(models.NotificationPreference).count() == 1

    with pytest.raises(InvalidInput):
        notifications.update_preferences(ana.id, frequency=" ", types="estado", enabled=True)
    with pytest.raises(UserNotFound):
        notifications.get_preferences(999)


def test_wants_status_updates():
    assert wants_status_updates(models.NotificationPreference(types="Estado,recordatorio", enabled=True)) is True
    assert wants_status_updates(models.NotificationPreference(types="recordatorio", enabled=True)) is False
    assert wants_status_updates(models.NotificationPreference(types="estado", enabled=False)) is False
    assert wants_status_updates(None) is False


def test_mark_read(services, helpers, event):
    notifications = services["notifications"]
    ana = helpers["make_user"]("ana@correo.com")
    created = notifications.notify(ana.id, models.NotificationType.event_reminder, event, now=NOW)
    assert created.read is False

    assert notifications.mark_read(created.id).read is True
    assert notifications.mark_read(created.id, read=False).read is False
    with pytest.raises(NotificationNotFound):
        notifications.mark_read(999)


def test_event_update_notifies_registrants_of_changes(services, helpers, event):
    ana = helpers["make_user"]("ana@correo.com", "Ana Torres")
    services["ledger"].create_registration(event.id, ana.id, "Ana Torres", "ana@correo.com", "UCh", now=NOW)

    services["catalog"].update_event(
        event.id, event.name, "10/03/2026", "12/03/2026", "01/03/2026", "Lima, Perú", now=NOW
    )

    changed = [
        n for n in services["notifications"].list_for_user(ana.id)
        if n.notification_type == models.NotificationType.event_changed
    ]
    assert len(changed) == 1
    assert "ubicación" in changed[0].message
