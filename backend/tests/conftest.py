import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("TASK_QUEUE_ENABLED", "false")

from conference_api import models
from conference_api.api import app
from conference_api.catalog import EventCatalog
from conference_api.database import Base, engine, get_db, SessionLocal
from conference_api.ledger import RegistrationLedger
from conference_api.notifications import NotificationService
from conference_api.stores import SqlEventStore, SqlNotificationStore, SqlRegistrationStore, SqlUserDirectory


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(db_session):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send(self, to_email, subject, body_text, context=None):
        self.sent.append({"to": to_email, "subject": subject, "body": body_text, "context": context or {}})


@pytest.fixture()
def services(db_session):
    """Catalog, ledger and notification service wired to the test session."""
    mailer = RecordingMailer()
    users = SqlUserDirectory(db_session)
    registrations = SqlRegistrationStore(db_session)
    events = SqlEventStore(db_session)
    notifications = NotificationService(SqlNotificationStore(db_session), users, registrations, mailer)
    return {
        "catalog": EventCatalog(events, notifications),
        "ledger": RegistrationLedger(registrations, events, users, notifications),
        "notifications": notifications,
        "mailer": mailer,
        "db": db_session,
    }


@pytest.fixture()
def helpers(db_session):
    def make_user(email: str, full_name: str = "Usuario de Prueba", preferences: bool = False) -> models.User:
        user = models.User(email=email, full_name=full_name)
        db_session.add(user)
        db_session.commit()
        if preferences:
            db_session.add(models.NotificationPreference(user_id=user.id, frequency="inmediata", types="estado"))
            db_session.commit()
        db_session.refresh(user)
        return user

    def day(days: int = 0) -> str:
        return (datetime.now(timezone.utc) + timedelta(days=days)).strftime("%d/%m/%Y")

    def event_payload(name: str = "Congreso de Ciencias", start: int = 30, end: int = 32, close: int = 20, **overrides) -> dict:
        payload = {
            "name": name,
            "location": "Santiago, Chile",
            "start_date": day(start),
            "end_date": day(end),
            "registration_close_date": day(close),
        }
        payload.update(overrides)
        return payload

    def registration_payload(event_id: int, user: models.User, **overrides) -> dict:
        payload = {
            "event_id": event_id,
            "user_id": user.id,
            "participant_name": user.full_name,
            "email": user.email,
            "affiliation": "Universidad de Chile",
        }
        payload.update(overrides)
        return payload

    return {
        "db": db_session,
        "make_user": make_user,
        "day": day,
        "event_payload": event_payload,
        "registration_payload": registration_payload,
    }
