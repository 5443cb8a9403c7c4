import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    TIMESTAMP,
    ForeignKey,
    Enum,
    Index,
    UniqueConstraint,
    func,
    Boolean,
    JSON,
    text,
)
from sqlalchemy.orm import relationship
from .database import Base
from .errors import InvalidStatus


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class RegistrationStatus(str, enum.Enum):
    pending = "Pendiente"
    paid = "Pagado"
    approved = "Aprobado"
    rejected = "Rechazado"

    @classmethod
    def parse(cls, value) -> "RegistrationStatus":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if normalized in (member.value.lower(), member.name):
                return member
        raise InvalidStatus()


class NotificationType(str, enum.Enum):
    registration_confirmed = "inscripcion"
    status_changed = "cambio_estado"
    event_changed = "cambio_evento"
    registration_closing = "cierre_inscripciones"
    event_reminder = "recordatorio_evento"
    payment_reminder = "recordatorio_pago"
    registration_reopened = "apertura_inscripciones"
    event_cancelled = "cancelacion_evento"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(255))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    registrations = relationship("Registration", back_populates="user")
    notification_preference = relationship(
        "NotificationPreference", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    frequency = Column(String(50), nullable=False, server_default="inmediata", default="inmediata")
    types = Column(String(255), nullable=False, server_default="estado", default="estado")
    enabled = Column(Boolean, nullable=False, server_default="true", default=True)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="notification_preference")


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index(
            "uq_events_active_name",
            "name",
            unique=True,
            sqlite_where=text("cancelled_at IS NULL"),
            postgresql_where=text("cancelled_at IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    location = Column(String(200), nullable=False)
    start_date = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    end_date = Column(TIMESTAMP(timezone=True), nullable=False)
    registration_close_date = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    registration_open_manual = Column(Boolean, nullable=False, server_default="true", default=True)
    cancelled = Column(Boolean, nullable=False, server_default="false", default=False)
    cancelled_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    registrations = relationship("Registration", back_populates="event")


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        Index(
            "uq_registrations_active_pair",
            "event_id",
            "user_id",
            unique=True,
            sqlite_where=text("cancelled_at IS NULL"),
            postgresql_where=text("cancelled_at IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    participant_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    affiliation = Column(String(150), nullable=False)
    proof_of_payment = Column(Text, nullable=True)
    status = Column(
        Enum(
            RegistrationStatus,
            values_callable=_enum_values,
            native_enum=False,
            name="registration_status",
            length=20,
        ),
        nullable=False,
        default=RegistrationStatus.pending,
    )
    paid = Column(Boolean, nullable=False, server_default="false", default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
    cancelled_at = Column(TIMESTAMP(timezone=True), nullable=True)

    event = relationship("Event", back_populates="registrations")
    user = relationship("User", back_populates="registrations")
    history = relationship(
        "RegistrationStatusHistory",
        back_populates="registration",
        order_by="RegistrationStatusHistory.id",
    )


class RegistrationStatusHistory(Base):
    __tablename__ = "registration_status_history"

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id"), nullable=False, index=True)
    previous_status = Column(String(20), nullable=False, default="")
    new_status = Column(String(20), nullable=False)
    note = Column(Text, nullable=True)
    actor = Column(String(100), nullable=False, default="system")
    changed_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    registration = relationship("Registration", back_populates="history")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id"), nullable=True)
    notification_type = Column(
        Enum(
            NotificationType,
            values_callable=_enum_values,
            native_enum=False,
            name="notification_type",
            length=40,
        ),
        nullable=False,
        index=True,
    )
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, server_default="false", default=False)
    dedupe_key = Column(String(200), nullable=True, unique=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)


class JobExecution(Base):
    __tablename__ = "job_executions"

    job_name = Column(String(100), primary_key=True)
    last_run = Column(TIMESTAMP(timezone=True), nullable=False)


class BackgroundJob(Base):
    __tablename__ = "background_jobs"
    __table_args__ = (UniqueConstraint("job_type", "dedupe_key", name="uq_background_jobs_type_dedupe"),)

    id = Column(Integer, primary_key=True, index=True)
    job_type = Column(String(50), nullable=False, index=True)
    dedupe_key = Column(String(200), nullable=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, index=True, server_default="queued")
    attempts = Column(Integer, nullable=False, server_default="0")
    max_attempts = Column(Integer, nullable=False, server_default="3")
    run_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)
    locked_at = Column(TIMESTAMP(timezone=True), nullable=True)
    locked_by = Column(String(100), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    finished_at = Column(TIMESTAMP(timezone=True), nullable=True)
