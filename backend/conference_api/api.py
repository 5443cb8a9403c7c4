from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional
import logging

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import models, schemas
from .catalog import EventCatalog, is_registration_open
from .config import settings
from .database import engine, get_db
from .dates import format_date, utcnow
from .email_service import build_mail_sender
from .errors import InvalidInput, ServiceError
from .ledger import RegistrationLedger
from .logging_utils import configure_logging, RequestIdMiddleware, log_event, log_warning
from .notifications import NotificationService
from .scheduler import SchedulerRunner, build_notification_scheduler
from .stores import SqlEventStore, SqlNotificationStore, SqlRegistrationStore, SqlUserDirectory

configure_logging()


def _run_migrations():
    """Run Alembic migrations to latest head. Controlled via settings.auto_run_migrations."""
    try:
        from alembic import command
        from alembic.config import Config
        base_dir = Path(__file__).resolve().parent.parent
        alembic_ini = base_dir / 'alembic.ini'
        if not alembic_ini.exists():
            logging.warning('alembic.ini not found; skipping migrations')
            return
        cfg = Config(str(alembic_ini))
        cfg.set_main_option('script_location', str(base_dir / 'alembic'))
        command.upgrade(cfg, 'head')
        logging.info('Migrations applied to head')
    except Exception:
        logging.exception('Failed to run migrations on startup')


def _check_configuration():
    if not settings.database_url:
        raise RuntimeError('DATABASE_URL is required')
    if settings.email_enabled and (not settings.smtp_host or not settings.smtp_sender):
        logging.warning('Email enabled but SMTP host/sender missing; disabling email sending')
        settings.email_enabled = False


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _check_configuration()
    if settings.auto_run_migrations:
        _run_migrations()
    elif settings.auto_create_tables:
        models.Base.metadata.create_all(bind=engine)

    runner = None
    if settings.scheduler_enabled:
        runner = SchedulerRunner(build_notification_scheduler(), settings.scheduler_poll_interval_seconds)
        runner.start()
        log_event("scheduler_started", job_name=settings.scheduler_job_name, hour=settings.scheduler_hour)
    try:
        yield
    finally:
        if runner is not None:
            await runner.stop()
            log_event("scheduler_stopped", job_name=settings.scheduler_job_name)


app = FastAPI(title="Conference API", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_notification_service(
    background_tasks: BackgroundTasks, db: Session = Depends(get_db)
) -> NotificationService:
    return NotificationService(
        SqlNotificationStore(db),
        SqlUserDirectory(db),
        SqlRegistrationStore(db),
        build_mail_sender(db, background_tasks),
    )


def get_catalog(
    db: Session = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
) -> EventCatalog:
    return EventCatalog(SqlEventStore(db), notifications)


def get_ledger(
    db: Session = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
) -> RegistrationLedger:
    return RegistrationLedger(SqlRegistrationStore(db), SqlEventStore(db), SqlUserDirectory(db), notifications)


def _serialize_event(event: models.Event) -> schemas.EventResponse:
    return schemas.EventResponse(
        id=event.id,
        name=event.name,
        location=event.location,
        start_date=format_date(event.start_date),
        end_date=format_date(event.end_date),
        registration_close_date=format_date(event.registration_close_date),
        registration_open=is_registration_open(event, utcnow()),
        registration_open_manual=bool(event.registration_open_manual),
    )


def _serialize_registration(registration: models.Registration) -> schemas.RegistrationResponse:
    event = registration.event
    return schemas.RegistrationResponse(
        id=registration.id,
        event_id=registration.event_id,
        event_name=event.name,
        user_id=registration.user_id,
        participant_name=registration.participant_name,
        email=registration.email,
        affiliation=registration.affiliation,
        status=registration.status.value,
        paid=bool(registration.paid),
        has_proof_of_payment=bool(registration.proof_of_payment),
        created_at=format_date(registration.created_at),
        payment_deadline=format_date(event.registration_close_date),
    )


def _serialize_history(entry: models.RegistrationStatusHistory) -> schemas.StatusHistoryResponse:
    return schemas.StatusHistoryResponse(
        id=entry.id,
        previous_status=entry.previous_status or "",
        new_status=entry.new_status,
        note=entry.note,
        actor=entry.actor,
        changed_at=format_date(entry.changed_at),
    )


def _serialize_notification(notification: models.Notification) -> schemas.NotificationResponse:
    return schemas.NotificationResponse(
        id=notification.id,
        user_id=notification.user_id,
        event_id=notification.event_id,
        registration_id=notification.registration_id,
        notification_type=notification.notification_type.value,
        title=notification.title,
        message=notification.message,
        read=bool(notification.read),
        created_at=format_date(notification.created_at),
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}, "detail": exc.message},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    code = f"http_{exc.status_code}"
    message = exc.detail if isinstance(exc.detail, str) else "Error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": code, "message": message}, "detail": message},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_warning("unhandled_exception", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"code": "internal_error", "message": "Ocurrió un error inesperado."}},
    )


@app.post("/api/events", response_model=schemas.EventResponse, status_code=status.HTTP_201_CREATED)
def create_event(payload: schemas.EventCreate, catalog: EventCatalog = Depends(get_catalog)):
    event = catalog.create_event(
        payload.name,
        payload.start_date,
        payload.end_date,
        payload.registration_close_date,
        payload.location,
    )
    return _serialize_event(event)


@app.get("/api/events", response_model=List[schemas.EventResponse])
def list_events(catalog: EventCatalog = Depends(get_catalog)):
    return [_serialize_event(event) for event in catalog.list_events()]


@app.get("/api/events/occupied-dates", response_model=List[schemas.OccupiedRange])
def occupied_dates(catalog: EventCatalog = Depends(get_catalog)):
    return [
        schemas.OccupiedRange(start_date=format_date(start), end_date=format_date(end))
        for start, end in catalog.occupied_ranges()
    ]


@app.get("/api/events/{event_id}", response_model=schemas.EventResponse)
def get_event(event_id: int, catalog: EventCatalog = Depends(get_catalog)):
    return _serialize_event(catalog.get_event(event_id))


@app.put("/api/events/{event_id}", response_model=schemas.EventResponse)
def update_event(event_id: int, payload: schemas.EventUpdate, catalog: EventCatalog = Depends(get_catalog)):
    event = catalog.update_event(
        event_id,
        payload.name,
        payload.start_date,
        payload.end_date,
        payload.registration_close_date,
        payload.location,
    )
    return _serialize_event(event)


@app.patch("/api/events/{event_id}", response_model=schemas.EventResponse)
def toggle_registration(
    event_id: int,
    action: str = Query(..., description="cerrar | abrir"),
    catalog: EventCatalog = Depends(get_catalog),
):
    action = action.strip().lower()
    if action == "cerrar":
        event = catalog.close_registration(event_id)
    elif action == "abrir":
        event = catalog.open_registration(event_id)
    else:
        raise InvalidInput("Acción inválida. Use 'cerrar' o 'abrir'")
    return _serialize_event(event)


@app.delete("/api/events/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_event(event_id: int, catalog: EventCatalog = Depends(get_catalog)):
    catalog.delete_event(event_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/registrations", response_model=schemas.RegistrationResponse, status_code=status.HTTP_201_CREATED)
def create_registration(payload: schemas.RegistrationCreate, ledger: RegistrationLedger = Depends(get_ledger)):
    registration = ledger.create_registration(
        payload.event_id,
        payload.user_id,
        payload.participant_name,
        str(payload.email),
        payload.affiliation,
        payload.proof_of_payment,
    )
    return _serialize_registration(registration)


@app.get("/api/registrations", response_model=List[schemas.RegistrationResponse])
def list_registrations(
    user_id: Optional[int] = None,
    event_id: Optional[int] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    q: Optional[str] = None,
    date_from: Optional[str] = Query(None, description="DD/MM/YYYY"),
    date_to: Optional[str] = Query(None, description="DD/MM/YYYY"),
    ledger: RegistrationLedger = Depends(get_ledger),
):
    registrations = ledger.list_registrations(
        user_id=user_id,
        event_id=event_id,
        status=status_filter,
        query=q,
        date_from=date_from,
        date_to=date_to,
    )
    return [_serialize_registration(registration) for registration in registrations]


@app.get("/api/registrations/{registration_id}", response_model=schemas.RegistrationResponse)
def get_registration(registration_id: int, ledger: RegistrationLedger = Depends(get_ledger)):
    return _serialize_registration(ledger.get_registration(registration_id))


@app.get("/api/registrations/{registration_id}/history", response_model=List[schemas.StatusHistoryResponse])
def registration_history(registration_id: int, ledger: RegistrationLedger = Depends(get_ledger)):
    return [_serialize_history(entry) for entry in ledger.history(registration_id)]


@app.put("/api/registrations/{registration_id}/status", response_model=schemas.RegistrationResponse)
def update_registration_status(
    registration_id: int,
    payload: schemas.StatusUpdate,
    ledger: RegistrationLedger = Depends(get_ledger),
):
    registration = ledger.update_status(registration_id, payload.status, payload.note, payload.actor)
    return _serialize_registration(registration)


@app.put("/api/registrations/{registration_id}/payment", response_model=schemas.RegistrationResponse)
def update_registration_payment(
    registration_id: int,
    payload: schemas.PaymentUpdate,
    ledger: RegistrationLedger = Depends(get_ledger),
):
    registration = ledger.update_payment(registration_id, payload.paid, payload.proof_of_payment)
    return _serialize_registration(registration)


@app.delete("/api/registrations/{registration_id}", status_code=status.HTTP_204_NO_CONTENT)
def cancel_registration(registration_id: int, ledger: RegistrationLedger = Depends(get_ledger)):
    ledger.cancel_registration(registration_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/users/{user_id}/notification-preferences", response_model=schemas.NotificationPreferenceResponse)
def get_notification_preferences(
    user_id: int, notifications: NotificationService = Depends(get_notification_service)
):
    return notifications.get_preferences(user_id)


@app.put("/api/users/{user_id}/notification-preferences", response_model=schemas.NotificationPreferenceResponse)
def update_notification_preferences(
    user_id: int,
    payload: schemas.NotificationPreferenceUpdate,
    notifications: NotificationService = Depends(get_notification_service),
):
    return notifications.update_preferences(
        user_id,
        frequency=payload.frequency,
        types=payload.types,
        enabled=payload.enabled,
    )


@app.get("/api/users/{user_id}/notifications", response_model=List[schemas.NotificationResponse])
def list_user_notifications(user_id: int, notifications: NotificationService = Depends(get_notification_service)):
    return [_serialize_notification(notification) for notification in notifications.list_for_user(user_id)]


@app.patch("/api/notifications/{notification_id}", response_model=schemas.NotificationResponse)
def mark_notification_read(
    notification_id: int,
    payload: schemas.NotificationReadUpdate,
    notifications: NotificationService = Depends(get_notification_service),
):
    return _serialize_notification(notifications.mark_read(notification_id, payload.read))


@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "ok"}
    except Exception:
        raise HTTPException(status_code=503, detail="Database unavailable")
