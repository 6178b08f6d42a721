"""Desktop notifications for prayer times and advance reminders."""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Protocol

from plyer import notification  # type: ignore[import]

from ..models import PrayerName
from ..timeutils import format_hhmm, format_remaining

logger = logging.getLogger(__name__)

APP_NAME = "Muadhin"


class Notifier(Protocol):
    def notify(self, prayer: PrayerName, scheduled_at: datetime, now: datetime) -> None:
        ...

    def remind(self, prayer: PrayerName, scheduled_at: datetime, remaining: timedelta) -> None:
        ...


class NullNotifier:
    def notify(self, prayer: PrayerName, scheduled_at: datetime, now: datetime) -> None:
        return None

    def remind(self, prayer: PrayerName, scheduled_at: datetime, remaining: timedelta) -> None:
        return None


class DesktopNotifier:
    """Send notifications through plyer's platform backend."""

    def __init__(self, app_name: str = APP_NAME, app_icon: str = "", timeout: int = 15) -> None:
        self.app_name = app_name
        self.app_icon = app_icon
        self.timeout = timeout

    def _send(self, title: str, message: str, timeout: int) -> None:
        kwargs = dict(
            app_name=self.app_name,
            title=title,
            message=message,
            timeout=timeout,
        )
        if self.app_icon:
            kwargs["app_icon"] = self.app_icon
        notification.notify(**kwargs)

    def notify(self, prayer: PrayerName, scheduled_at: datetime, now: datetime) -> None:
        if prayer is PrayerName.SUNRISE:
            title = f"Sunrise ({format_hhmm(scheduled_at)})"
            message = "The time for Fajr has ended."
        else:
            title = f"{prayer.value} time ({format_hhmm(scheduled_at)})"
            message = f"It is now time for {prayer.value} prayer."
        logger.debug("Notifying %s scheduled at %s (now %s)", prayer.value, scheduled_at, now)
        self._send(title, message, timeout=self.timeout * 2)

    def remind(self, prayer: PrayerName, scheduled_at: datetime, remaining: timedelta) -> None:
        title = "Prayer Time Reminder"
        message = f"{prayer.value} in {format_remaining(remaining)} ({format_hhmm(scheduled_at)})"
        self._send(title, message, timeout=self.timeout)
