from __future__ import annotations

from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Callable, Mapping, Protocol
from zoneinfo import ZoneInfo

import httpx  # type: ignore[import]
from pyIslam.praytimes import LIST_FAJR_ISHA_METHODS, Prayer as PyIslamPrayer, PrayerConf  # type: ignore[import]

from ..config import LocationSettings, MuadhinConfig, PrayerSettings
from ..fsutils import atomic_write_text
from ..models import DailySchedule, PrayerName
from ..timeutils import parse_hhmm, sanitize_time

logger = logging.getLogger(__name__)

ALADHAN_API = "https://api.aladhan.com/v1/timings/{day}"

ALADHAN_METHODS = {
    "Shia Ithna-Ansari": 0,
    "University of Islamic Sciences, Karachi": 1,
    "Islamic Society of North America": 2,
    "MuslimWorldLeague": 3,
    "UmmAlQura": 4,
    "EgyptianGeneralAuthority": 5,
    "Karachi": 1,
    "Diyanet": 13,
}

PYISLAM_METHODS = {
    "muslimworldleague": 2,
    "islamicsocietyofnorthamerica": 5,
    "egyptiangeneralauthority": 3,
    "karachi": 1,
    "universityofislamicscienceskarachi": 1,
    "ummalqura": 4,
    "makkah": 4,
    "diyanet": 4,
    "turkey": 4,
    "islamicreligiouscouncilofsingapore": 7,
    "muis": 7,
    "jakim": 7,
    "kemenag": 7,
    "frenchmuslims": 6,
    "uoif": 6,
    "spiritualadministrationofmuslimsofrussia": 8,
    "russia": 8,
    "fixedishaatimeinterval90min": 9,
}

PrayerTimes = dict[PrayerName, time]


class LocationNotConfigured(ValueError):
    pass


class DailyScheduleProvider(Protocol):
    def today(self) -> DailySchedule | None:
        ...


class PrayerProvider(Protocol):
    name: str

    def fetch(self, day: date, location: LocationSettings, settings: PrayerSettings) -> PrayerTimes:
        ...


def _require_coordinates(location: LocationSettings) -> tuple[float, float]:
    if location.latitude is None or location.longitude is None:
        raise LocationNotConfigured("Latitude and longitude must be set in [location]")
    return location.latitude, location.longitude


class AladhanProvider:
    name = "aladhan"

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout

    def fetch(self, day: date, location: LocationSettings, settings: PrayerSettings) -> PrayerTimes:
        latitude, longitude = _require_coordinates(location)
        method_value = ALADHAN_METHODS.get(settings.calculation_method, settings.calculation_method)
        try:
            method_value = int(method_value)
        except (TypeError, ValueError):
            method_value = 3
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "method": method_value,
            "school": 1 if settings.madhab.lower() == "hanafi" else 0,
        }
        if location.timezone:
            params["timezonestring"] = location.timezone
        url = ALADHAN_API.format(day=day.strftime("%d-%m-%Y"))
        response = httpx.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        timings = response.json().get("data", {}).get("timings", {})
        return {
            prayer: parse_hhmm(sanitize_time(timings[prayer.value]))
            for prayer in PrayerName.ordered()
            if timings.get(prayer.value)
        }


class PyIslamProvider:
    """Offline calculation through pyIslam."""

    name = "pyislam"

    def fetch(self, day: date, location: LocationSettings, settings: PrayerSettings) -> PrayerTimes:
        latitude, longitude = _require_coordinates(location)
        tz = _resolve_timezone(location.timezone)
        conf = PrayerConf(
            longitude=longitude,
            latitude=latitude,
            timezone=_standard_offset_minutes(tz, day) / 60,
            angle_ref=_map_pyislam_method(settings.calculation_method),
            asr_madhab=2 if settings.madhab.lower() == "hanafi" else 1,
            enable_summer_time=_is_dst(tz, day),
        )
        calculator = PyIslamPrayer(conf, day)
        sunrise = getattr(calculator, "sherook_time", None) or getattr(calculator, "sunrise_time", None)
        values = {
            PrayerName.FAJR: calculator.fajr_time(),
            PrayerName.SUNRISE: sunrise() if sunrise else None,
            PrayerName.DHUHR: calculator.dohr_time(),
            PrayerName.ASR: calculator.asr_time(),
            PrayerName.MAGHRIB: calculator.maghreb_time(),
            PrayerName.ISHA: calculator.ishaa_time(),
        }
        times: PrayerTimes = {}
        for prayer, value in values.items():
            moment = _as_time(value)
            if moment is not None:
                times[prayer] = moment
        return times


class StaticScheduleProvider:
    """Serve the same wall-clock times every day."""

    def __init__(self, times: Mapping[PrayerName, time], clock: Callable[[], datetime] = datetime.now) -> None:
        self.times = dict(times)
        self._clock = clock

    def today(self) -> DailySchedule:
        return DailySchedule.from_times(self._clock().date(), self.times)


class PrayerCache:
    """Computed prayer times per provider, day and coordinates, kept on disk."""

    def __init__(self, path: Path, max_days: int) -> None:
        self.path = path
        self.max_days = max(1, max_days)
        self._lock = Lock()
        self._cache = self._load()
        with self._lock:
            self._prune_locked()

    def _load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def _key(self, provider: str, day: date, location: LocationSettings) -> str:
        lat = location.latitude or 0.0
        lon = location.longitude or 0.0
        return f"{provider}:{day.isoformat()}:{lat:.3f}:{lon:.3f}"

    def _prune_locked(self) -> None:
        buckets: dict[str, list[tuple[date, str]]] = defaultdict(list)
        for key in list(self._cache):
            provider, _, rest = key.partition(":")
            day_str, _, coords = rest.partition(":")
            try:
                day_value = date.fromisoformat(day_str)
            except ValueError:
                self._cache.pop(key, None)
                continue
            buckets[f"{provider}:{coords}"].append((day_value, key))
        for entries in buckets.values():
            entries.sort(reverse=True)
            for _, key in entries[self.max_days:]:
                self._cache.pop(key, None)

    def get(self, provider: str, day: date, location: LocationSettings) -> PrayerTimes | None:
        with self._lock:
            entry = self._cache.get(self._key(provider, day, location))
        if not isinstance(entry, dict) or not isinstance(entry.get("times"), dict):
            return None
        times: PrayerTimes = {}
        for name, value in entry["times"].items():
            try:
                times[PrayerName.parse(name)] = parse_hhmm(value)
            except (AttributeError, ValueError):
                return None
        return times or None

    def put(self, provider: str, day: date, location: LocationSettings, times: PrayerTimes) -> None:
        record = {
            "fetched_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "times": {prayer.value: moment.isoformat(timespec="seconds") for prayer, moment in times.items()},
        }
        with self._lock:
            self._cache[self._key(provider, day, location)] = record
            self._prune_locked()
            payload = json.dumps(self._cache, indent=2)
        try:
            atomic_write_text(self.path, payload)
        except OSError as exc:
            logger.warning("Could not write prayer cache %s: %s", self.path, exc)


FetchKey = tuple[str, date, float | None, float | None]


class PrayerService:
    """Resolve today's prayer instants in the process's local time.

    Providers report wall-clock times in the configured location's zone.
    Those are converted to naive local datetimes and the ones that fall on
    the local calendar day make up the schedule, so a location zone that
    differs from the system zone still fires at the right moment.

    Reads only touch the cache. Missing days, including tomorrow's, are
    fetched on a background worker; a failed day is retried after
    ``retry_after`` and the failure is logged as a warning once per day.
    """

    def __init__(
        self,
        config: Callable[[], MuadhinConfig],
        cache: PrayerCache | None = None,
        clock: Callable[[], datetime] = datetime.now,
        providers: Mapping[str, PrayerProvider] | None = None,
        *,
        local_zone: tzinfo | None = None,
        retry_after: timedelta = timedelta(minutes=5),
    ) -> None:
        self._config = config
        self._clock = clock
        self._local_zone = local_zone
        self.retry_after = retry_after
        if cache is None:
            cache_path = Path.home() / ".cache" / "muadhin" / "prayer_times.json"
            cache = PrayerCache(cache_path, config().prayer_settings.cache_days)
        self.cache = cache
        if providers is None:
            providers = {
                "pyislam": PyIslamProvider(),
                "aladhan": AladhanProvider(),
            }
        self.providers = dict(providers)
        self._lock = Lock()
        self._retry_at: dict[FetchKey, datetime] = {}
        self._warned_on: date | None = None
        self._fetch_executor: ThreadPoolExecutor | None = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="muadhin-prayer"
        )
        self._fetch_future: Future | None = None

    def _provider(self, settings: PrayerSettings) -> PrayerProvider:
        provider = self.providers.get(settings.provider.lower())
        if provider is None:
            provider = self.providers.get("pyislam") or next(iter(self.providers.values()))
        return provider

    def _to_local(self, moment: datetime) -> datetime:
        if self._local_zone is None:
            return moment.astimezone().replace(tzinfo=None)
        return moment.astimezone(self._local_zone).replace(tzinfo=None)

    def _from_local(self, moment: datetime) -> datetime:
        if self._local_zone is None:
            return moment.astimezone()
        return moment.replace(tzinfo=self._local_zone)

    def _location_days(self, day: date, zone: tzinfo | None) -> list[date]:
        """Days in the location's calendar that overlap local ``day``."""
        if zone is None:
            return [day]
        first = self._from_local(datetime.combine(day, time.min)).astimezone(zone).date()
        last = self._from_local(datetime.combine(day, time.max)).astimezone(zone).date()
        return [first + timedelta(days=offset) for offset in range((last - first).days + 1)]

    def schedule_for(self, day: date) -> DailySchedule | None:
        config = self._config()
        provider = self._provider(config.prayer_settings)
        zone = _location_zone(config.location.timezone)
        wanted = self._location_days(day, zone)
        upcoming = self._location_days(day + timedelta(days=1), zone)

        found: dict[date, PrayerTimes] = {}
        missing: list[date] = []
        for location_day in dict.fromkeys(wanted + upcoming):
            times = self.cache.get(provider.name, location_day, config.location)
            if times:
                found[location_day] = times
            else:
                missing.append(location_day)
        if missing:
            self._request_fetch(provider, config, missing)

        instants: dict[PrayerName, datetime] = {}
        for location_day in wanted:
            for prayer, moment in found.get(location_day, {}).items():
                instant = datetime.combine(location_day, moment)
                if zone is not None:
                    instant = self._to_local(instant.replace(tzinfo=zone))
                if instant.date() != day:
                    continue
                if prayer not in instants or instant < instants[prayer]:
                    instants[prayer] = instant
        if not instants:
            return None
        return DailySchedule(day=day, times=instants)

    def today(self) -> DailySchedule | None:
        return self.schedule_for(self._clock().date())

    def refresh(self, timeout: float | None = None) -> DailySchedule | None:
        """Fetch whatever today's schedule is missing and wait up to ``timeout`` for it."""
        self.today()
        future = self._fetch_future
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeout:
                logger.warning("Prayer times still loading after %ss", timeout)
        return self.today()

    def _fetch_key(self, provider: PrayerProvider, day: date, location: LocationSettings) -> FetchKey:
        return provider.name, day, location.latitude, location.longitude

    def _request_fetch(self, provider: PrayerProvider, config: MuadhinConfig, days: list[date]) -> None:
        now = self._clock()
        with self._lock:
            if self._fetch_executor is None:
                return
            if self._fetch_future is not None and not self._fetch_future.done():
                return
            due = [
                day
                for day in days
                if self._retry_at.get(self._fetch_key(provider, day, config.location), now) <= now
            ]
            if not due:
                return
            self._fetch_future = self._fetch_executor.submit(self._fetch_days, provider, config, due)

    def _fetch_days(self, provider: PrayerProvider, config: MuadhinConfig, days: list[date]) -> None:
        for index, day in enumerate(days):
            try:
                times = provider.fetch(day, config.location, config.prayer_settings)
            except Exception as exc:
                # The remaining days would fail the same way.
                self._record_failure(provider, config.location, days[index:], exc)
                return
            if not times:
                self._record_failure(provider, config.location, days[index:], ValueError("no prayer times returned"))
                return
            self.cache.put(provider.name, day, config.location, times)
            with self._lock:
                self._retry_at.pop(self._fetch_key(provider, day, config.location), None)

    def _record_failure(
        self,
        provider: PrayerProvider,
        location: LocationSettings,
        days: list[date],
        exc: Exception,
    ) -> None:
        now = self._clock()
        with self._lock:
            for day in days:
                self._retry_at[self._fetch_key(provider, day, location)] = now + self.retry_after
            first_today = self._warned_on != now.date()
            self._warned_on = now.date()
        if first_today:
            logger.warning("Prayer times unavailable from %s for %s: %s", provider.name, days[0], exc)
        else:
            logger.debug("Prayer times still unavailable from %s for %s: %s", provider.name, days[0], exc)

    def close(self) -> None:
        with self._lock:
            executor = self._fetch_executor
            self._fetch_executor = None
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)


@lru_cache(maxsize=8)
def _location_zone(tz_name: str | None) -> tzinfo | None:
    if not tz_name:
        return None
    try:
        return ZoneInfo(tz_name)
    except (KeyError, ValueError):
        logger.warning("Unknown timezone %s, treating prayer times as local", tz_name)
        return None


def _resolve_timezone(tz_name: str | None) -> tzinfo:
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (KeyError, ValueError):
            logger.warning("Unknown timezone %s, using the system zone", tz_name)
    return datetime.now().astimezone().tzinfo or timezone.utc


def _standard_offset_minutes(tz: tzinfo, day: date) -> int:
    # pyIslam adds the DST hour itself when enable_summer_time is set.
    dt = datetime(day.year, day.month, day.day, 12, tzinfo=tz)
    offset = (dt.utcoffset() or timedelta()) - (dt.dst() or timedelta())
    return int(offset.total_seconds() // 60)


def _is_dst(tz: tzinfo, day: date) -> bool:
    dt = datetime(day.year, day.month, day.day, 12, tzinfo=tz)
    delta = dt.dst()
    return bool(delta and delta.total_seconds())


def _normalize_method_key(method_name: str) -> str:
    return "".join(ch for ch in method_name.lower() if ch.isalnum())


def _map_pyislam_method(method_name: str | None) -> int:
    default_method = 2
    if not method_name:
        return default_method
    try:
        method_id = int(method_name)
    except (TypeError, ValueError):
        method_id = None
    if isinstance(method_id, int) and 1 <= method_id <= len(LIST_FAJR_ISHA_METHODS):
        return method_id
    return PYISLAM_METHODS.get(_normalize_method_key(method_name), default_method)


def _as_time(value: time | datetime | str | None) -> time | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.time().replace(microsecond=0)
    if isinstance(value, time):
        return value.replace(microsecond=0)
    if isinstance(value, str) and value.strip():
        return parse_hhmm(sanitize_time(value))
    return None
