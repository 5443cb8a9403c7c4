import smtplib
import time
from email.message import EmailMessage
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from .config import settings
from .logging_utils import log_event, log_warning
from .task_queue import JOB_TYPE_SEND_EMAIL, enqueue_job

SMTP_ATTEMPTS = 3


def send_email_now(
    to_email: str,
    subject: str,
    body_text: str,
    body_html: Optional[str] = None,
    context: Dict[str, Any] | None = None,
) -> bool:
    context = context or {}
    if not settings.email_enabled:
        log_warning("email_disabled", to=to_email, subject=subject, **context)
        return False
    if not settings.smtp_host or not settings.smtp_sender:
        log_warning("email_smtp_not_configured", to=to_email, subject=subject, **context)
        return False

    message = EmailMessage()
    message["From"] = settings.smtp_sender
    message["To"] = to_email
    message["Subject"] = subject
    message.set_content(body_text)
    if body_html:
        message.add_alternative(body_html, subtype="html")

    for attempt in range(1, SMTP_ATTEMPTS + 1):
        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port or 587, timeout=10) as server:
                if settings.smtp_use_tls:
                    server.starttls()
                if settings.smtp_username:
                    server.login(settings.smtp_username, settings.smtp_password or "")
                server.send_message(message)
            log_event("email_sent", to=to_email, subject=subject, attempt=attempt, **context)
            return True
        except Exception as exc:  # noqa: BLE001
            log_warning(
                "email_send_failed_attempt",
                to=to_email,
                subject=subject,
                attempt=attempt,
                error=str(exc),
                smtp_host=settings.smtp_host,
                smtp_port=settings.smtp_port,
                **context,
            )
            if attempt < SMTP_ATTEMPTS:
                time.sleep(0.5 * attempt)
    log_warning("email_send_failed", to=to_email, subject=subject, attempts=SMTP_ATTEMPTS, **context)
    return False


class SmtpMailSender:
    """Sends inline over SMTP; failures are logged by ``send_email_now``."""

    def send(self, to_email: str, subject: str, body_text: str, context: Dict[str, Any] | None = None) -> None:
        send_email_now(to_email, subject, body_text, context=context)


class BackgroundMailSender:
    def __init__(self, background_tasks: BackgroundTasks):
        self.background_tasks = background_tasks

    def send(self, to_email: str, subject: str, body_text: str, context: Dict[str, Any] | None = None) -> None:
        self.background_tasks.add_task(send_email_now, to_email, subject, body_text, None, context or {})


class QueuedMailSender:
    """Enqueues a ``send_email`` job for the worker process."""

    def __init__(self, db: Session):
        self.db = db

    def send(self, to_email: str, subject: str, body_text: str, context: Dict[str, Any] | None = None) -> None:
        try:
            enqueue_job(
                self.db,
                JOB_TYPE_SEND_EMAIL,
                {
                    "to_email": to_email,
                    "subject": subject,
                    "body_text": body_text,
                    "body_html": None,
                    "context": context or {},
                },
            )
        except Exception as exc:  # noqa: BLE001
            self.db.rollback()
            log_warning("email_enqueue_failed", to=to_email, subject=subject, error=str(exc))


def build_mail_sender(db: Session | None = None, background_tasks: BackgroundTasks | None = None):
    # Persistent DB-backed queue when enabled; otherwise a FastAPI BackgroundTask, or inline as a last resort.
    if settings.task_queue_enabled and db is not None:
        return QueuedMailSender(db)
    if background_tasks is not None:
        return BackgroundMailSender(background_tasks)
    return SmtpMailSender()
