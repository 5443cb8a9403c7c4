import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:4200",
    "http://127.0.0.1:4200",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173"
]


class Settings(BaseSettings):
    database_url: str
    timezone: str = "UTC"
    request_timeout_seconds: int = 5
    allowed_origins: list[str] = DEFAULT_ALLOWED_ORIGINS
    auto_create_tables: bool = False
    auto_run_migrations: bool = False

    email_enabled: bool = True
    smtp_host: str | None = None
    smtp_port: int | None = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender: str | None = None
    smtp_use_tls: bool = True

    task_queue_enabled: bool = False
    task_queue_poll_interval_seconds: float = 1.0
    task_queue_max_attempts: int = 3
    task_queue_stale_after_seconds: int = 300

    # Ticks from the API process; SCHEDULER_IN_WORKER moves it to the task-queue worker instead.
    scheduler_enabled: bool = True
    scheduler_in_worker: bool = False
    scheduler_job_name: str = "notificaciones_diarias"
    scheduler_hour: int = 8
    scheduler_poll_interval_seconds: float = 300.0
    payment_reminder_days: int = 5

    # `allowed_origins` supports comma-separated strings or JSON lists; disable pydantic-settings JSON decoding
    # so our validator can handle both formats.
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        enable_decoding=False,
        env_ignore_empty=True,
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value):
        if value is None or value == "":
            return list(DEFAULT_ALLOWED_ORIGINS)

        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return [origin for origin in parsed if origin]
            except json.JSONDecodeError:
                pass

            parsed = [origin.strip() for origin in value.split(",")]
            return [origin for origin in parsed if origin]

        if isinstance(value, (list, tuple)):
            return [origin for origin in value if origin]

        raise ValueError("allowed_origins must be a list or comma-separated string")

    @field_validator("scheduler_hour")
    @classmethod
    def validate_scheduler_hour(cls, value: int) -> int:
        if value < 0 or value > 23:
            raise ValueError("scheduler_hour must be between 0 and 23")
        return value

    @field_validator("payment_reminder_days", "request_timeout_seconds")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value


settings = Settings()
