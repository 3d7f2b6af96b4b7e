"""Civil-time helpers pinned to the configured schedule timezone."""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

LOGGER = logging.getLogger(__name__)
DEFAULT_TIMEZONE = "Asia/Tokyo"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeZoneClock:
    """Produce instants, calendar dates and local wall times in one civil zone.

    The host timezone never leaks into results: every value is derived from an
    aware UTC instant converted into ``tz_name``.
    """

    def __init__(
        self,
        tz_name: str = DEFAULT_TIMEZONE,
        *,
        now: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.tz = ZoneInfo(tz_name)
        self.tz_name = tz_name
        self._now = now or _utcnow
        self._logger = logger or LOGGER

    def now(self) -> datetime:
        current = self._now()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current.astimezone(self.tz)

    def today(self) -> date:
        return self.now().date()

    def today_str(self) -> str:
        return self.today().isoformat()

    def local(self, instant: datetime) -> datetime:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz)

    def at(self, day: date, hour: int, minute: int) -> datetime:
        return datetime(day.year, day.month, day.day, hour, minute, tzinfo=self.tz)

    def days_ago(self, days: int) -> date:
        return self.today() - timedelta(days=days)

    def hours_ago(self, hours: float) -> datetime:
        return self.now() - timedelta(hours=hours)

    def check_host_offset(self) -> bool:
        """Warn when the host's local offset differs from the configured zone."""

        host_offset = time.localtime().tm_gmtoff
        zone_offset = self.now().utcoffset() or timedelta(0)
        if int(zone_offset.total_seconds()) != host_offset:
            self._logger.warning(
                "Host timezone offset differs from schedule timezone",
                extra={
                    "event": "clock.host_offset_mismatch",
                    "host_offset_minutes": host_offset // 60,
                    "zone": self.tz_name,
                    "zone_offset_minutes": int(zone_offset.total_seconds()) // 60,
                },
            )
            return False
        return True


def parse_calendar_date(value: str | date) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


__all__ = ["DEFAULT_TIMEZONE", "TimeZoneClock", "parse_calendar_date"]
