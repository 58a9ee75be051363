from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from tradiedesk.core.config import settings


def automation_zone() -> ZoneInfo:
    return ZoneInfo(settings.automation_timezone)


def ensure_utc(value: datetime | date | str | None) -> datetime | None:
    """Normalize stored timestamps; naive values (SQLite) are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, date):
        return None
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_date(value: datetime | date | str | None) -> date | None:
    normalized = ensure_utc(value)
    if normalized is None:
        return None
    return normalized.astimezone(automation_zone()).date()


def format_au_date(value: datetime | date | str | None) -> str:
    day = local_date(value)
    if day is None:
        return ""
    return day.strftime("%d/%m/%Y")
