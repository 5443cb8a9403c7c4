"""Domain errors raised by the catalog, the ledger and the notification service.

Every error carries a stable ``code`` and the HTTP status the API answers with;
``api.py`` renders them through a single exception handler.
"""


class ServiceError(Exception):
    status_code = 400
    code = "error"
    default_message = "Solicitud inválida"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(ServiceError):
    code = "invalid_input"
    default_message = "Datos de entrada inválidos"


class InvalidStatus(InvalidInput):
    code = "invalid_status"
    default_message = "Estado inválido. Valores permitidos: Pendiente, Pagado, Aprobado, Rechazado"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"


class NameExists(ConflictError):
    code = "name_exists"
    default_message = "Ya existe un evento con ese nombre"


class Overlap(ConflictError):
    code = "overlap"
    default_message = "Las fechas del evento se superponen con otro evento existente"


class AlreadyRegistered(ConflictError):
    code = "already_registered"
    default_message = "El usuario ya está inscrito en este evento"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class EventNotFound(NotFoundError):
    code = "event_not_found"
    default_message = "Evento no encontrado"


class RegistrationNotFound(NotFoundError):
    code = "registration_not_found"
    default_message = "Inscripción no encontrada"


class UserNotFound(NotFoundError):
    code = "user_not_found"
    default_message = "Usuario no encontrado"


class NotificationNotFound(NotFoundError):
    code = "notification_not_found"
    default_message = "Notificación no encontrada"


class StateLockError(ServiceError):
    code = "state_locked"


class CloseDateLocked(StateLockError):
    code = "close_date_locked"
    default_message = "La fecha de cierre de inscripciones no puede modificarse una vez alcanzada"


class CannotModifyAfterStart(StateLockError):
    code = "cannot_modify_after_start"
    default_message = "No se puede modificar después de que el evento haya iniciado"


class RegistrationClosed(StateLockError):
    code = "registration_closed"
    default_message = "Las inscripciones para este evento están cerradas"
