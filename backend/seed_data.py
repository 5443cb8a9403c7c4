#!/usr/bin/env python3
"""
Seed script for the conference database.
Creates sample users, events and registrations for local development.

Usage:
    cd backend
    python seed_data.py
"""

import random
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from conference_api.catalog import EventCatalog
from conference_api.database import SessionLocal
from conference_api.ledger import RegistrationLedger
from conference_api.models import NotificationPreference, RegistrationStatus, User
from conference_api.stores import SqlEventStore, SqlRegistrationStore, SqlUserDirectory

USERS = [
    {"email": "ana.torres@correo.com", "full_name": "Ana Torres", "affiliation": "Universidad de Chile"},
    {"email": "luis.mendez@correo.com", "full_name": "Luis Méndez", "affiliation": "Universidad de Santiago"},
    {"email": "carla.rojas@correo.com", "full_name": "Carla Rojas", "affiliation": "Pontificia Universidad Católica"},
    {"email": "diego.soto@correo.com", "full_name": "Diego Soto", "affiliation": "Universidad de Concepción"},
    {"email": "maria.vera@correo.com", "full_name": "María Vera", "affiliation": "Universidad Austral"},
]

EVENTS = [
    {"name": "Congreso de Ingeniería de Software", "location": "Santiago, Chile", "offset_days": 20, "length_days": 2},
    {"name": "Jornadas de Inteligencia Artificial", "location": "Valparaíso, Chile", "offset_days": 35, "length_days": 1},
    {"name": "Encuentro de Datos Abiertos", "location": "Concepción. Chile", "offset_days": 50, "length_days": 3},
    {"name": "Seminario de Seguridad Informática", "location": "Lima, Perú", "offset_days": 4, "length_days": 1},
]

TABLES_TO_CLEAR = [
    "notifications",
    "registration_status_history",
    "registrations",
    "events",
    "notification_preferences",
    "job_executions",
    "background_jobs",
    "users",
]


def _fmt(value: datetime) -> str:
    return value.strftime("%d/%m/%Y")


def seed_database():
    """Seed the database with sample data."""
    print("🌱 Starting database seeding...")

    session = SessionLocal()
    try:
        user_count = session.execute(text("SELECT COUNT(*) FROM users")).scalar()
        if user_count > 0:
            print("⚠️  Database already has data. Clearing existing data...")
            for table in TABLES_TO_CLEAR:
                session.execute(text(f"DELETE FROM {table}"))
            session.commit()
            print("✅ Existing data cleared")

        print("👤 Creating users...")
        users = []
        for data in USERS:
            user = User(email=data["email"], full_name=data["full_name"])
            session.add(user)
            session.flush()
            session.add(NotificationPreference(user_id=user.id, frequency="inmediata", types="estado", enabled=True))
            users.append((user, data["affiliation"]))
        session.commit()
        print(f"   Created {len(users)} users")

        print("📅 Creating events...")
        catalog = EventCatalog(SqlEventStore(session))
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        events = []
        for data in EVENTS:
            start = today + timedelta(days=data["offset_days"])
            end = start + timedelta(days=data["length_days"] - 1)
            close = start - timedelta(days=2)
            events.append(catalog.create_event(data["name"], _fmt(start), _fmt(end), _fmt(close), data["location"]))
        print(f"   Created {len(events)} events")

        print("📝 Creating registrations...")
        ledger = RegistrationLedger(SqlRegistrationStore(session), SqlEventStore(session), SqlUserDirectory(session))
        rng = random.Random(42)
        registration_count = 0
        for user, affiliation in users:
            for event in rng.sample(events, k=2):
                registration = ledger.create_registration(
                    event.id, user.id, user.full_name, user.email, affiliation
                )
                registration_count += 1
                if rng.random() < 0.5:
                    ledger.update_status(registration.id, RegistrationStatus.paid, "Pago recibido", actor="seed")
        print(f"   Created {registration_count} registrations")

        print("\n✅ Database seeding completed successfully!")
        print("\n📋 Users:")
        for user, _ in users:
            print(f"      - #{user.id} {user.email}")

    except Exception as e:
        session.rollback()
        print(f"\n❌ Error during seeding: {e}")
        raise
    finally:
        session.close()


if __name__ == "__main__":
    seed_database()
