from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
import json
import logging
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Any, Mapping
import tomllib

from .fsutils import atomic_write_text
from .models import PrayerName

logger = logging.getLogger(__name__)

MIN_TRIGGER_WINDOW_SECONDS = 3
DEFAULT_TRIGGER_WINDOW_SECONDS = 20

_UNSET: Any = object()


class ConfigError(Exception):
    """Raised when the settings file cannot be read or written."""


def _default_config_root() -> Path:
    return Path.home() / ".config" / "muadhin"


def _default_audio_dir() -> Path:
    return _default_config_root() / "audio"


@dataclass(frozen=True, slots=True)
class PerPrayerConfig:
    enabled: bool = True
    audio_ref: str | None = None

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_ref and self.audio_ref.strip())


def _default_per_prayer() -> dict[PrayerName, PerPrayerConfig]:
    return {
        PrayerName.FAJR: PerPrayerConfig(enabled=True, audio_ref="Mishary_Al-Afasy.mp3"),
        PrayerName.SUNRISE: PerPrayerConfig(enabled=False, audio_ref=None),
        PrayerName.DHUHR: PerPrayerConfig(enabled=True, audio_ref="Hamza_Al_Majale.mp3"),
        PrayerName.ASR: PerPrayerConfig(enabled=True, audio_ref="Rabeh_Al_Jazairi.mp3"),
        PrayerName.MAGHRIB: PerPrayerConfig(enabled=True, audio_ref="Mishary_Al-Afasy.mp3"),
        PrayerName.ISHA: PerPrayerConfig(enabled=True, audio_ref="Rabeh_Al_Jazairi.mp3"),
    }


@dataclass(frozen=True, slots=True)
class GlobalConfig:
    """Immutable snapshot of the adhan and notification switches."""

    audio_master_enabled: bool = True
    notifications_master_enabled: bool = True
    quiet_mode: bool = False
    trigger_window_seconds: int = DEFAULT_TRIGGER_WINDOW_SECONDS
    per_prayer: Mapping[PrayerName, PerPrayerConfig] = field(default_factory=_default_per_prayer)
    reminder_minutes_before: int = 0
    state_retention_days: int = 30

    def __post_init__(self) -> None:
        object.__setattr__(self, "per_prayer", MappingProxyType(dict(self.per_prayer)))

    @classmethod
    def conservative(cls) -> "GlobalConfig":
        return cls(
            audio_master_enabled=False,
            notifications_master_enabled=False,
            per_prayer={prayer: PerPrayerConfig(enabled=False) for prayer in PrayerName.ordered()},
        )

    @property
    def trigger_window(self) -> timedelta:
        return timedelta(seconds=max(MIN_TRIGGER_WINDOW_SECONDS, self.trigger_window_seconds))

    @property
    def is_silent(self) -> bool:
        return self.quiet_mode or not (self.audio_master_enabled or self.notifications_master_enabled)

    def prayer(self, prayer: PrayerName) -> PerPrayerConfig:
        return self.per_prayer.get(prayer) or PerPrayerConfig(enabled=False)

    def with_prayer(self, prayer: PrayerName, entry: PerPrayerConfig) -> "GlobalConfig":
        per_prayer = dict(self.per_prayer)
        per_prayer[prayer] = entry
        return replace(self, per_prayer=per_prayer)


@dataclass(frozen=True, slots=True)
class LocationSettings:
    city: str = ""
    country: str = ""
    latitude: float | None = None
    longitude: float | None = None
    timezone: str | None = None


@dataclass(frozen=True, slots=True)
class PrayerSettings:
    provider: str = "pyislam"
    calculation_method: str = "MuslimWorldLeague"
    madhab: str = "Shafi"
    cache_days: int = 30


@dataclass(frozen=True, slots=True)
class MuadhinConfig:
    location: LocationSettings
    prayer_settings: PrayerSettings
    adhan: GlobalConfig
    audio_dir: Path = field(default_factory=_default_audio_dir)

    @classmethod
    def default(cls) -> "MuadhinConfig":
        return cls(
            location=LocationSettings(),
            prayer_settings=PrayerSettings(),
            adhan=GlobalConfig(),
        )

    def to_dict(self) -> dict:
        return {
            "location": {
                "city": self.location.city,
                "country": self.location.country,
                "latitude": self.location.latitude,
                "longitude": self.location.longitude,
                "timezone": self.location.timezone,
            },
            "prayer_settings": {
                "provider": self.prayer_settings.provider,
                "calculation_method": self.prayer_settings.calculation_method,
                "madhab": self.prayer_settings.madhab,
                "cache_days": self.prayer_settings.cache_days,
            },
            "adhan": {
                "audio_enabled": self.adhan.audio_master_enabled,
                "notifications_enabled": self.adhan.notifications_master_enabled,
                "quiet_mode": self.adhan.quiet_mode,
                "trigger_window_seconds": self.adhan.trigger_window_seconds,
                "reminder_minutes_before": self.adhan.reminder_minutes_before,
                "state_retention_days": self.adhan.state_retention_days,
                "audio_dir": str(self.audio_dir),
                "prayers": {
                    prayer.value.lower(): {
                        "enabled": self.adhan.prayer(prayer).enabled,
                        "audio": self.adhan.prayer(prayer).audio_ref or "",
                    }
                    for prayer in PrayerName.ordered()
                },
            },
        }


def _quote(value: object) -> str:
    return json.dumps("" if value is None else str(value), ensure_ascii=False)


def _bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "on", "1"):
            return True
        if lowered in ("false", "no", "off", "0"):
            return False
    return default


def _float_or_none(value: object) -> float | None:
    if value in (None, "", "nan"):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _string_or_none(value: object | None) -> str | None:
    if value in (None, "", "null"):
        return None
    return str(value)


class ConfigManager:
    """TOML settings loader for the location, provider and adhan switches."""

    def __init__(self, config_path: Path | None = None) -> None:
        self.config_path = config_path or (_default_config_root() / "config.toml")
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self._errors: list[str] = []

    def errors(self) -> list[str]:
        return list(self._errors)

    def load(self) -> MuadhinConfig:
        self._errors.clear()
        if not self.config_path.exists():
            config = MuadhinConfig.default()
            try:
                self.save(config)
            except ConfigError as exc:
                logger.warning("Using built-in defaults: %s", exc)
            return config

        try:
            with self.config_path.open("rb") as handle:
                raw = tomllib.load(handle)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigError(f"Cannot read {self.config_path}: {exc}") from exc

        location_cfg = self._table(raw, "location")
        settings_cfg = self._table(raw, "prayer_settings")
        adhan_cfg = self._table(raw, "adhan")

        try:
            cache_days = int(settings_cfg.get("cache_days", 30))
        except (TypeError, ValueError) as exc:
            self._errors.append(f"Invalid prayer_settings.cache_days: {exc}")
            cache_days = 30

        audio_dir_value = adhan_cfg.get("audio_dir") or str(_default_audio_dir())

        return MuadhinConfig(
            location=LocationSettings(
                city=str(location_cfg.get("city", "")),
                country=str(location_cfg.get("country", "")),
                latitude=_float_or_none(location_cfg.get("latitude")),
                longitude=_float_or_none(location_cfg.get("longitude")),
                timezone=_string_or_none(location_cfg.get("timezone")),
            ),
            prayer_settings=PrayerSettings(
                provider=str(settings_cfg.get("provider", "pyislam")),
                calculation_method=str(settings_cfg.get("calculation_method", "MuslimWorldLeague")),
                madhab=str(settings_cfg.get("madhab", "Shafi")),
                cache_days=cache_days,
            ),
            adhan=self._read_adhan(adhan_cfg),
            audio_dir=Path(audio_dir_value).expanduser(),
        )

    def _table(self, raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
        value = raw.get(key, {})
        if not isinstance(value, Mapping):
            self._errors.append(f"Invalid [{key}] table")
            return {}
        return value

    def _read_adhan(self, adhan_cfg: Mapping[str, Any]) -> GlobalConfig:
        defaults = GlobalConfig()

        def read_int(key: str, default: int) -> int:
            value = adhan_cfg.get(key, default)
            try:
                return int(value)
            except (TypeError, ValueError):
                self._errors.append(f"Invalid adhan.{key}: {value!r}")
                return default

        prayers_cfg = adhan_cfg.get("prayers", {})
        if not isinstance(prayers_cfg, Mapping):
            self._errors.append("Invalid adhan.prayers table")
            prayers_cfg = {}
        per_prayer: dict[PrayerName, PerPrayerConfig] = {}
        for prayer in PrayerName.ordered():
            fallback = defaults.prayer(prayer)
            entry = prayers_cfg.get(prayer.value.lower(), {})
            if not isinstance(entry, Mapping):
                self._errors.append(f"Invalid adhan.prayers.{prayer.value.lower()} table")
                entry = {}
            per_prayer[prayer] = PerPrayerConfig(
                enabled=_bool(entry.get("enabled"), fallback.enabled),
                audio_ref=_string_or_none(entry.get("audio", fallback.audio_ref)),
            )

        return GlobalConfig(
            audio_master_enabled=_bool(adhan_cfg.get("audio_enabled"), defaults.audio_master_enabled),
            notifications_master_enabled=_bool(
                adhan_cfg.get("notifications_enabled"), defaults.notifications_master_enabled
            ),
            quiet_mode=_bool(adhan_cfg.get("quiet_mode"), defaults.quiet_mode),
            trigger_window_seconds=read_int("trigger_window_seconds", defaults.trigger_window_seconds),
            per_prayer=per_prayer,
            reminder_minutes_before=max(0, read_int("reminder_minutes_before", defaults.reminder_minutes_before)),
            state_retention_days=max(1, read_int("state_retention_days", defaults.state_retention_days)),
        )

    def _render(self, config: MuadhinConfig) -> str:
        data = config.to_dict()
        location = data["location"]
        lines = ["[location]"]
        lines.append(f"city = {_quote(location['city'])}")
        lines.append(f"country = {_quote(location['country'])}")
        if location["latitude"] is not None:
            lines.append(f"latitude = {location['latitude']}")
        if location["longitude"] is not None:
            lines.append(f"longitude = {location['longitude']}")
        lines.append(f"timezone = {_quote(location['timezone'])}")
        settings = data["prayer_settings"]
        lines.extend([
            "",
            "[prayer_settings]",
            f"provider = {_quote(settings['provider'])}",
            f"calculation_method = {_quote(settings['calculation_method'])}",
            f"madhab = {_quote(settings['madhab'])}",
            f"cache_days = {settings['cache_days']}",
        ])
        adhan = data["adhan"]
        lines.extend([
            "",
            "[adhan]",
            f"audio_enabled = {str(adhan['audio_enabled']).lower()}",
            f"notifications_enabled = {str(adhan['notifications_enabled']).lower()}",
            f"quiet_mode = {str(adhan['quiet_mode']).lower()}",
            f"trigger_window_seconds = {adhan['trigger_window_seconds']}",
            f"reminder_minutes_before = {adhan['reminder_minutes_before']}",
            f"state_retention_days = {adhan['state_retention_days']}",
            f"audio_dir = {_quote(adhan['audio_dir'])}",
        ])
        for name, entry in adhan["prayers"].items():
            lines.extend([
                "",
                f"[adhan.prayers.{name}]",
                f"enabled = {str(entry['enabled']).lower()}",
                f"audio = {_quote(entry['audio'])}",
            ])
        return "\n".join(lines) + "\n"

    def save(self, config: MuadhinConfig) -> None:
        try:
            atomic_write_text(self.config_path, self._render(config))
        except OSError as exc:
            raise ConfigError(f"Cannot write {self.config_path}: {exc}") from exc

    def stamp(self) -> tuple[int, int] | None:
        """Modification marker of the settings file, ``None`` when it is missing."""
        try:
            stat = self.config_path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size


class ConfigHolder:
    """Copy-on-write holder for the live configuration.

    Readers get an immutable snapshot; writers build a replacement, persist it
    and swap the reference, so a tick never sees a half-applied update. Edits
    made to the settings file by hand are picked up on the next read.
    """

    def __init__(self, manager: ConfigManager | None = None, initial: MuadhinConfig | None = None) -> None:
        self._manager = manager
        self._lock = Lock()
        self._stamp = self._file_stamp()
        self._snapshot = initial if initial is not None else self._initial_load()

    def _file_stamp(self) -> tuple[int, int] | None:
        return self._manager.stamp() if self._manager is not None else None

    def _initial_load(self) -> MuadhinConfig:
        if self._manager is None:
            return MuadhinConfig.default()
        try:
            config = self._manager.load()
        except ConfigError as exc:
            logger.warning("Falling back to silent defaults: %s", exc)
            return replace(MuadhinConfig.default(), adhan=GlobalConfig.conservative())
        finally:
            self._stamp = self._file_stamp()
        for message in self._manager.errors():
            logger.warning("Config: %s", message)
        return config

    def snapshot(self) -> MuadhinConfig:
        if self._manager is not None and self._file_stamp() != self._stamp:
            return self.reload()
        with self._lock:
            return self._snapshot

    def adhan(self) -> GlobalConfig:
        return self.snapshot().adhan

    def _store(self, updated: MuadhinConfig) -> MuadhinConfig:
        if self._manager is not None:
            self._manager.save(updated)
            self._stamp = self._file_stamp()
        self._snapshot = updated
        return updated

    def update(self, **changes: Any) -> MuadhinConfig:
        """Apply ``GlobalConfig`` field changes, e.g. ``update(quiet_mode=True)``."""
        self.snapshot()
        with self._lock:
            current = self._snapshot
            return self._store(replace(current, adhan=replace(current.adhan, **changes)))

    def set_prayer(
        self,
        prayer: PrayerName,
        *,
        enabled: bool | None = None,
        audio_ref: str | None = _UNSET,
    ) -> MuadhinConfig:
        self.snapshot()
        with self._lock:
            current = self._snapshot
            entry = current.adhan.prayer(prayer)
            entry = PerPrayerConfig(
                enabled=entry.enabled if enabled is None else enabled,
                audio_ref=entry.audio_ref if audio_ref is _UNSET else audio_ref,
            )
            return self._store(replace(current, adhan=current.adhan.with_prayer(prayer, entry)))

    def reload(self) -> MuadhinConfig:
        """Re-read the settings file, keeping the last good snapshot on failure."""
        if self._manager is None:
            with self._lock:
                return self._snapshot
        with self._lock:
            stamp = self._file_stamp()
            try:
                config = self._manager.load()
            except ConfigError as exc:
                # Remember the broken file so it is not re-read until it changes again.
                self._stamp = stamp
                logger.warning("Keeping previous configuration: %s", exc)
                return self._snapshot
            for message in self._manager.errors():
                logger.warning("Config: %s", message)
            self._stamp = stamp if stamp is not None else self._file_stamp()
            self._snapshot = config
            logger.info("Configuration reloaded from %s", self._manager.config_path)
            return config
