import contextlib
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from conference_api import stores
from conference_api.catalog import EventCatalog
from conference_api.database import SessionLocal
from conference_api.errors import ConflictError
from conference_api.scheduler import build_notification_scheduler
from conference_api.stores import SqlEventStore


def test_postgres_end_to_end_flow(helpers):
    client = helpers["client"]
    ana = helpers["make_user"]("ana@correo.com", "Ana Torres")

    created = client.post(
        "/api/events",
        json={
            "name": "Congreso de Integracion",
            "location": "Santiago, Chile",
            "start_date": helpers["day"](10),
            "end_date": helpers["day"](11),
            "registration_close_date": helpers["day"](5),
        },
    )
    assert created.status_code == 201, created.text
    event_id = created.json()["id"]

    registered = client.post(
        "/api/registrations",
        json={
            "event_id": event_id,
            "user_id": ana.id,
            "participant_name": "Ana Torres",
            "email": "ana@correo.com",
            "affiliation": "Universidad de Chile",
        },
    )
    assert registered.status_code == 201
    registration_id = registered.json()["id"]

    updated = client.put(f"/api/registrations/{registration_id}/status", json={"status": "Aprobado"})
    assert updated.status_code == 200

    listing = client.get("/api/registrations", params={"event_id": event_id, "q": "torres"})
    assert [r["id"] for r in listing.json()] == [registration_id]


def test_concurrent_overlapping_creates_admit_one(helpers, monkeypatch):
    # Leave the database advisory lock as the only thing serializing the writers.
    monkeypatch.setattr(stores, "_catalog_lock", contextlib.nullcontext())
    start, end, close = helpers["day"](20), helpers["day"](21), helpers["day"](15)

    def _create(name: str):
        with SessionLocal() as db:
            try:
                EventCatalog(SqlEventStore(db)).create_event(name, start, end, close, "Lima, Perú")
                return "ok"
            except ConflictError as exc:
                return exc.code

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(_create, ["Congreso Andino", "Encuentro Andino", "Jornadas Andinas", "Foro Andino"]))

    assert outcomes.count("ok") == 1
    assert set(outcomes) - {"ok"} == {"overlap"}


def test_watermark_admits_one_scheduler(helpers):
    now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    schedulers = [build_notification_scheduler(SessionLocal) for _ in range(3)]

    with ThreadPoolExecutor(max_workers=3) as pool:
        results = list(pool.map(lambda scheduler: scheduler.tick(now), schedulers))

    assert results.count(True) == 1
