from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError

from . import models
from .catalog import is_registration_open
from .dates import normalize_dt, parse_date, start_of_day, utcnow
from .errors import (
    AlreadyRegistered,
    CannotModifyAfterStart,
    EventNotFound,
    InvalidInput,
    RegistrationClosed,
    RegistrationNotFound,
    UserNotFound,
)
from .logging_utils import log_event
from .notifications import NotificationService
from .ports import EventStore, RegistrationFilters, RegistrationStore, UserDirectory

PROOF_MAX_LENGTH = 5_000_000
PROOF_PREFIXES = ("data:application/pdf", "data:image/png", "data:image/jpeg")
CONFIRMATION_NOTE = "Confirmada"
SYSTEM_ACTOR = "system"


def validate_participant(name: str, email: str, affiliation: str) -> tuple[str, str, str]:
    name = (name or "").strip()
    affiliation = (affiliation or "").strip()
    if not 3 <= len(name) <= 100:
        raise InvalidInput("El nombre del participante debe tener entre 3 y 100 caracteres")
    if not 2 <= len(affiliation) <= 150:
        raise InvalidInput("La afiliación debe tener entre 2 y 150 caracteres")
    try:
        email = validate_email((email or "").strip(), check_deliverability=False).normalized
    except EmailNotValidError:
        raise InvalidInput("Correo electrónico inválido")
    return name, email, affiliation


def validate_proof(proof: Optional[str]) -> Optional[str]:
    if proof is None or not proof.strip():
        return None
    proof = proof.strip()
    if len(proof) > PROOF_MAX_LENGTH:
        raise InvalidInput("El comprobante excede el tamaño máximo permitido")
    if not proof.startswith(PROOF_PREFIXES):
        raise InvalidInput("El comprobante debe ser un PDF, PNG o JPEG")
    return proof


class RegistrationLedger:
    def __init__(
        self,
        registrations: RegistrationStore,
        events: EventStore,
        users: UserDirectory,
        notifications: NotificationService | None = None,
    ):
        self.registrations = registrations
        self.events = events
        self.users = users
        self.notifications = notifications

    def _get_active(self, registration_id: int) -> models.Registration:
        registration = self.registrations.get(registration_id)
        if registration is None:
            raise RegistrationNotFound()
        return registration

    def create_registration(
        self,
        event_id: int,
        user_id: int,
        participant_name: str,
        email: str,
        affiliation: str,
        proof: Optional[str] = None,
        now: datetime | None = None,
    ) -> models.Registration:
        now = normalize_dt(now) or utcnow()
        event = self.events.get(event_id)
        if event is None or event.cancelled:
            raise EventNotFound()
        if not is_registration_open(event, now):
            raise RegistrationClosed()
        if self.users.get(user_id) is None:
            raise UserNotFound()
        if self.registrations.find_active(event_id, user_id) is not None:
            raise AlreadyRegistered()
        participant_name, email, affiliation = validate_participant(participant_name, email, affiliation)
        proof = validate_proof(proof)

        registration = models.Registration(
            event_id=event_id,
            user_id=user_id,
            participant_name=participant_name,
            email=email,
            affiliation=affiliation,
            proof_of_payment=proof,
            status=models.RegistrationStatus.pending,
            paid=False,
            created_at=now,
            updated_at=now,
        )
        entry = models.RegistrationStatusHistory(
            previous_status="",
            new_status=models.RegistrationStatus.pending.value,
            note=CONFIRMATION_NOTE,
            actor=SYSTEM_ACTOR,
            changed_at=now,
        )
        try:
            registration = self.registrations.save(registration, [entry])
        except IntegrityError:
            raise AlreadyRegistered()

        log_event("registration_created", registration_id=registration.id, event_id=event_id, user_id=user_id)
        if self.notifications is not None:
            self.notifications.notify_registration_confirmed(registration, event, now=now)
        return registration

    def update_status(
        self,
        registration_id: int,
        status: str | models.RegistrationStatus,
        note: str | None = None,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> models.Registration:
        new_status = models.RegistrationStatus.parse(status)
        now = normalize_dt(now) or utcnow()
        registration = self._get_active(registration_id)
        previous = registration.status

        registration.status = new_status
        registration.updated_at = now
        entry = models.RegistrationStatusHistory(
            previous_status=previous.value if previous else "",
            new_status=new_status.value,
            note=(note or "").strip() or None,
            actor=(actor or "").strip() or SYSTEM_ACTOR,
            changed_at=now,
        )
        registration = self.registrations.save(registration, [entry])

        log_event(
            "registration_status_updated",
            registration_id=registration.id,
            previous_status=entry.previous_status,
            new_status=new_status.value,
            actor=entry.actor,
        )
        if self.notifications is not None:
            self.notifications.notify_status_changed(registration, registration.event, new_status, note, now=now)
        return registration

    def update_payment(
        self,
        registration_id: int,
        paid: bool,
        proof: Optional[str] = None,
        now: datetime | None = None,
    ) -> models.Registration:
        now = normalize_dt(now) or utcnow()
        registration = self._get_active(registration_id)
        proof = validate_proof(proof)
        if paid and proof is None and not registration.proof_of_payment:
            raise InvalidInput("El comprobante es requerido cuando el pago está confirmado")
        registration.paid = paid
        if proof is not None:
            registration.proof_of_payment = proof
        registration.updated_at = now
        registration = self.registrations.save(registration)
        log_event("registration_payment_updated", registration_id=registration.id, paid=paid)
        return registration

    def cancel_registration(self, registration_id: int, now: datetime | None = None) -> models.Registration:
        now = normalize_dt(now) or utcnow()
        registration = self._get_active(registration_id)
        if now >= normalize_dt(registration.event.start_date):
            raise CannotModifyAfterStart()
        registration.cancelled_at = now
        registration.updated_at = now
        registration = self.registrations.save(registration)
        log_event("registration_cancelled", registration_id=registration.id)
        return registration

    def get_registration(self, registration_id: int) -> models.Registration:
        return self._get_active(registration_id)

    def history(self, registration_id: int) -> list[models.RegistrationStatusHistory]:
        self._get_active(registration_id)
        return self.registrations.history(registration_id)

    def list_registrations(
        self,
        *,
        user_id: int | None = None,
        event_id: int | None = None,
        status: str | None = None,
        query: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        include_cancelled: bool = False,
    ) -> list[models.Registration]:
        filters = RegistrationFilters(
            user_id=user_id,
            event_id=event_id,
            query=(query or "").strip() or None,
            include_cancelled=include_cancelled,
        )
        if status:
            filters.status = models.RegistrationStatus.parse(status)
        if date_from:
            filters.created_from = start_of_day(parse_date(date_from, "fecha desde"))
        if date_to:
            filters.created_before = start_of_day(parse_date(date_to, "fecha hasta") + timedelta(days=1))
        return self.registrations.search(filters)
