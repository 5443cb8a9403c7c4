from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from .config import settings
from .errors import InvalidInput

DATETIME_FORMAT = "%d/%m/%Y %H:%M:%S"
DATE_FORMAT = "%d/%m/%Y"


def business_tz() -> tzinfo:
    name = (settings.timezone or "UTC").strip()
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes to timezone-aware UTC instances."""
    if not value:
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value: str, field: str) -> datetime:
    """Parse ``DD/MM/YYYY HH:MM:SS`` or ``DD/MM/YYYY`` in the business timezone."""
    raw = (value or "").strip()
    for fmt in (DATETIME_FORMAT, DATE_FORMAT):
        try:
            parsed = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=business_tz()).astimezone(timezone.utc)
    raise InvalidInput(f"Formato de {field} inválido. Use DD/MM/YYYY o DD/MM/YYYY HH:MM:SS")


def local_date(value: datetime, tz: tzinfo | None = None) -> date:
    return normalize_dt(value).astimezone(tz or business_tz()).date()


def start_of_day(value: datetime | date, tz: tzinfo | None = None) -> datetime:
    tz = tz or business_tz()
    day = value if not isinstance(value, datetime) else local_date(value, tz)
    return datetime.combine(day, time.min).replace(tzinfo=tz).astimezone(timezone.utc)


def next_day_bounds(now: datetime, tz: tzinfo | None = None) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of tomorrow's calendar day, as UTC instants."""
    tz = tz or business_tz()
    tomorrow = local_date(now, tz) + timedelta(days=1)
    return start_of_day(tomorrow, tz), start_of_day(tomorrow + timedelta(days=1), tz)


def format_date(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    local = normalize_dt(value).astimezone(business_tz())
    if local.time() == time.min:
        return local.strftime(DATE_FORMAT)
    return local.strftime(DATETIME_FORMAT)
