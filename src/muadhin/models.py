from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Iterator, Mapping


class PrayerName(str, Enum):
    FAJR = "Fajr"
    SUNRISE = "Sunrise"
    DHUHR = "Dhuhr"
    ASR = "Asr"
    MAGHRIB = "Maghrib"
    ISHA = "Isha"

    @classmethod
    def ordered(cls) -> list["PrayerName"]:
        return [cls.FAJR, cls.SUNRISE, cls.DHUHR, cls.ASR, cls.MAGHRIB, cls.ISHA]

    @classmethod
    def parse(cls, value: str) -> "PrayerName":
        cleaned = value.strip().lower()
        for member in cls:
            if member.value.lower() == cleaned:
                return member
        raise ValueError(f"Unknown prayer name: {value}")


@dataclass(frozen=True, slots=True)
class DailySchedule:
    """Prayer instants for one calendar day, as naive local datetimes."""

    day: date
    times: Mapping[PrayerName, datetime] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "times", MappingProxyType(dict(self.times)))

    @classmethod
    def from_times(cls, day: date, values: Mapping[PrayerName, time | None]) -> "DailySchedule":
        return cls(
            day=day,
            times={
                prayer: datetime.combine(day, moment)
                for prayer, moment in values.items()
                if moment is not None
            },
        )

    def ordered(self) -> list[tuple[PrayerName, datetime]]:
        return sorted(self.times.items(), key=lambda item: item[1])

    def get(self, prayer: PrayerName) -> datetime | None:
        return self.times.get(prayer)

    def __len__(self) -> int:
        return len(self.times)

    def __iter__(self) -> Iterator[PrayerName]:
        return iter(self.times)


@dataclass(frozen=True, slots=True)
class FiredKey:
    day: date
    prayer: PrayerName

    def to_token(self) -> str:
        return f"{self.day.isoformat()}:{self.prayer.value}"

    @classmethod
    def from_token(cls, token: str) -> "FiredKey":
        day_str, _, prayer_str = token.partition(":")
        if not prayer_str:
            raise ValueError(f"Malformed fire key: {token}")
        return cls(day=date.fromisoformat(day_str), prayer=PrayerName.parse(prayer_str))


@dataclass(frozen=True, slots=True)
class Decision:
    prayer: PrayerName
    scheduled_at: datetime
    do_notify: bool
    do_play_audio: bool
    audio_ref: str | None = None

    @property
    def is_observable(self) -> bool:
        return self.do_notify or self.do_play_audio


@dataclass(frozen=True, slots=True)
class Reminder:
    prayer: PrayerName
    scheduled_at: datetime
    remaining: timedelta


@dataclass(frozen=True, slots=True)
class UpcomingPrayer:
    prayer: PrayerName
    scheduled_at: datetime
    remaining: timedelta
