from datetime import datetime
from typing import Optional

from .dates import format_date, normalize_dt, business_tz
from .models import Event, NotificationType, Registration

NOTIFICATION_TITLES = {
    NotificationType.registration_confirmed: "Inscripción exitosa",
    NotificationType.status_changed: "Actualización de inscripción",
    NotificationType.event_changed: "Cambio en evento",
    NotificationType.registration_closing: "Cierre de inscripciones",
    NotificationType.event_reminder: "Recordatorio de evento",
    NotificationType.payment_reminder: "Recordatorio de pago",
    NotificationType.registration_reopened: "Apertura de inscripciones",
    NotificationType.event_cancelled: "Cancelación de evento",
}

_MESSAGES = {
    NotificationType.registration_confirmed: "Te has inscrito exitosamente al evento '{name}', que inicia el {start} y finaliza el {end}.",
    NotificationType.status_changed: "Tu inscripción al evento '{name}' cambió a: {status}.",
    NotificationType.event_changed: "El evento '{name}' ha sufrido cambios: {changes}.",
    NotificationType.registration_closing: "¡Última oportunidad! Las inscripciones para el evento '{name}' cierran el {close}. ¡No te quedes fuera!",
    NotificationType.event_reminder: "Recuerda que el evento '{name}' al que te inscribiste inicia el {start}.",
    NotificationType.payment_reminder: (
        "Tienes un pago pendiente para el evento '{name}', que inicia el {start}. "
        "Por favor, regulariza tu situación para asegurar tu participación."
    ),
    NotificationType.registration_reopened: "¡Ya puedes inscribirte al evento '{name}'! Las inscripciones están abiertas hasta el {close}.",
    NotificationType.event_cancelled: (
        "Lamentamos informarte que el evento '{name}' ha sido cancelado. Si ya te habías inscrito, "
        "recibirás un reembolso completo. Disculpa las molestias."
    ),
}


def _day(dt: Optional[datetime]) -> str:
    if not dt:
        return ""
    return normalize_dt(dt).astimezone(business_tz()).strftime("%d/%m/%Y")


def render_notification(notification_type: NotificationType, event: Event, **extra) -> tuple[str, str]:
    """Return ``(title, message)`` for an in-app notification about ``event``."""
    values = {
        "name": event.name,
        "start": _day(event.start_date),
        "end": _day(event.end_date),
        "close": _day(event.registration_close_date),
        **extra,
    }
    return NOTIFICATION_TITLES[notification_type], _MESSAGES[notification_type].format(**values)


def render_confirmation_email(registration: Registration, event: Event) -> tuple[str, str]:
    subject = "Confirmación de inscripción"
    body = (
        f"Hola {registration.participant_name},\n\n"
        f"Tu inscripción al evento '{event.name}' fue registrada correctamente.\n"
        f"Inicio: {format_date(event.start_date)}.\n"
        f"Lugar: {event.location}.\n\n"
        "Gracias."
    )
    return subject, body


def render_status_email(
    registration: Registration, event: Event, status: str, changed_at: datetime, note: str | None = None
) -> tuple[str, str]:
    subject = f"Actualización de inscripción: {status}"
    body = (
        f"Hola {registration.participant_name},\n\n"
        f"Tu estado de inscripción cambió a: {status}.\n"
        f"Evento: {event.name}\n"
        f"Fecha: {format_date(changed_at)}."
    )
    if note and note.strip():
        body += f"\nDetalles: {note.strip()}."
    body += "\n\nGracias."
    return subject, body
