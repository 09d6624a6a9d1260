from __future__ import annotations

from datetime import datetime, timezone as dt_timezone


class TimezoneUtils:
    @staticmethod
    def utc_now() -> datetime:
        """Return the current UTC timestamp (timezone aware)."""
        return datetime.now(dt_timezone.utc)

    @staticmethod
    def ensure_timezone_aware(dt: datetime | None) -> datetime | None:
        """SQLite hands back naive datetimes; treat them as UTC."""
        if dt is None:
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=dt_timezone.utc)
        return dt

    @staticmethod
    def format_datetime_for_api(dt: datetime | None) -> str | None:
        aware = TimezoneUtils.ensure_timezone_aware(dt)
        return aware.isoformat() if aware is not None else None
