from __future__ import annotations

from datetime import date, datetime
import json
import logging
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Mapping

from .config import _default_config_root
from .fsutils import atomic_write_text
from .models import FiredKey, PrayerName

logger = logging.getLogger(__name__)


class FireStateStore:
    """Durable record of which (date, prayer) pairs already fired.

    Entries are keyed by calendar date, so a new day starts with nothing
    fired and needs no explicit rollover. Corrupt files load as empty.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (_default_config_root() / "fire_state.json")
        self._lock = Lock()
        self._fired: dict[FiredKey, datetime] = self.load()

    def load(self) -> dict[FiredKey, datetime]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable fire state %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring fire state %s: expected an object", self.path)
            return {}
        fired: dict[FiredKey, datetime] = {}
        for token, raw_at in data.items():
            try:
                key = FiredKey.from_token(token)
                fired_at = datetime.fromisoformat(raw_at)
            except (TypeError, ValueError):
                logger.debug("Skipping malformed fire state entry %r", token)
                continue
            fired[key] = fired_at
        return fired

    def record_fire(self, key: FiredKey, at: datetime) -> None:
        with self._lock:
            self._fired[key] = at

    def persist(self) -> None:
        """Write the current state atomically; raises ``OSError`` on failure."""
        with self._lock:
            payload = json.dumps(
                {key.to_token(): at.isoformat() for key, at in self._fired.items()},
                indent=2,
                sort_keys=True,
            )
        atomic_write_text(self.path, payload)

    def contains(self, key: FiredKey) -> bool:
        with self._lock:
            return key in self._fired

    def __contains__(self, key: object) -> bool:
        return isinstance(key, FiredKey) and self.contains(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._fired)

    def fired_at(self, key: FiredKey) -> datetime | None:
        with self._lock:
            return self._fired.get(key)

    def fired_on(self, day: date) -> list[PrayerName]:
        with self._lock:
            prayers = {key.prayer for key in self._fired if key.day == day}
        return [prayer for prayer in PrayerName.ordered() if prayer in prayers]

    def snapshot(self) -> Mapping[FiredKey, datetime]:
        with self._lock:
            return MappingProxyType(dict(self._fired))

    def prune(self, before: date) -> int:
        """Drop entries dated before ``before``; returns how many were removed."""
        with self._lock:
            stale = [key for key in self._fired if key.day < before]
            for key in stale:
                del self._fired[key]
        return len(stale)
