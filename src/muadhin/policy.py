"""Decide which prayer, if any, fires on an evaluation tick.

The evaluation functions are pure: they read the clock value, the day's
schedule, a configuration snapshot and a view of what already fired, and
return at most one result. Recording the result is the caller's job.
``next_prayer`` answers the countdown question for display.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Container, Mapping

from .config import GlobalConfig
from .models import DailySchedule, Decision, FiredKey, PrayerName, Reminder, UpcomingPrayer

ScheduleLike = DailySchedule | Mapping[PrayerName, datetime]


def _candidates(now: datetime, schedule: ScheduleLike | None) -> list[tuple[PrayerName, datetime]]:
    if not schedule:
        return []
    times = schedule.times if isinstance(schedule, DailySchedule) else schedule
    today = now.date()
    # Entries computed for another day are stale and never fire.
    current = [
        (prayer, scheduled_at)
        for prayer, scheduled_at in times.items()
        if scheduled_at is not None and scheduled_at.date() == today
    ]
    current.sort(key=lambda item: item[1])
    return current


def evaluate(
    now: datetime,
    schedule: ScheduleLike | None,
    config: GlobalConfig,
    fire_state: Container[FiredKey],
) -> Decision | None:
    """Return the single prayer that should fire at ``now``, or ``None``.

    A prayer is due while ``now`` lies in ``[scheduled_at, scheduled_at + window]``
    (both ends inclusive) and it has not fired yet today. When several windows
    overlap the earliest prayer wins; the rest wait for later ticks.
    """
    if config.is_silent:
        return None

    window = config.trigger_window
    for prayer, scheduled_at in _candidates(now, schedule):
        if not (scheduled_at <= now <= scheduled_at + window):
            continue
        if FiredKey(now.date(), prayer) in fire_state:
            continue
        return _decide(prayer, scheduled_at, config)
    return None


def _decide(prayer: PrayerName, scheduled_at: datetime, config: GlobalConfig) -> Decision:
    entry = config.prayer(prayer)
    if prayer is PrayerName.SUNRISE:
        # Sunrise marks the end of Fajr; it is never a call to prayer.
        play_audio = False
    else:
        play_audio = config.audio_master_enabled and entry.enabled and entry.has_audio
    return Decision(
        prayer=prayer,
        scheduled_at=scheduled_at,
        do_notify=config.notifications_master_enabled,
        do_play_audio=play_audio,
        audio_ref=entry.audio_ref.strip() if play_audio and entry.audio_ref else None,
    )


def evaluate_reminder(
    now: datetime,
    schedule: ScheduleLike | None,
    config: GlobalConfig,
    reminder_state: Container[FiredKey],
) -> Reminder | None:
    """Return an advance reminder for the next prayer inside the lead time."""
    if config.quiet_mode or not config.notifications_master_enabled:
        return None
    if config.reminder_minutes_before <= 0:
        return None

    lead = timedelta(minutes=config.reminder_minutes_before)
    for prayer, scheduled_at in _candidates(now, schedule):
        if not (scheduled_at - lead <= now < scheduled_at):
            continue
        if FiredKey(now.date(), prayer) in reminder_state:
            continue
        return Reminder(prayer=prayer, scheduled_at=scheduled_at, remaining=scheduled_at - now)
    return None


def next_prayer(now: datetime, schedule: ScheduleLike | None) -> UpcomingPrayer | None:
    """Return the first prayer after ``now``; after Isha that is tomorrow's Fajr.

    Tomorrow's Fajr is approximated by today's time plus one day.
    """
    if not schedule:
        return None
    times = schedule.times if isinstance(schedule, DailySchedule) else schedule
    ordered = sorted(
        ((prayer, scheduled_at) for prayer, scheduled_at in times.items() if scheduled_at is not None),
        key=lambda item: item[1],
    )
    for prayer, scheduled_at in ordered:
        if scheduled_at > now:
            return UpcomingPrayer(prayer=prayer, scheduled_at=scheduled_at, remaining=scheduled_at - now)
    fajr = times.get(PrayerName.FAJR)
    if fajr is None:
        return None
    tomorrow = fajr + timedelta(days=1)
    return UpcomingPrayer(prayer=PrayerName.FAJR, scheduled_at=tomorrow, remaining=tomorrow - now)
