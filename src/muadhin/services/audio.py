"""Adhan playback through pygame's mixer."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from threading import Lock
from typing import Callable, Protocol

os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")

from pygame import error as PygameError  # type: ignore[import]  # noqa: E402
from pygame import mixer  # type: ignore[import]  # noqa: E402

logger = logging.getLogger(__name__)


class AudioSink(Protocol):
    def play(self, audio_ref: str) -> None:
        ...

    def stop(self) -> None:
        ...


class NullAudioSink:
    def play(self, audio_ref: str) -> None:
        return None

    def stop(self) -> None:
        return None


class PygameAudioSink:
    """Play one recording at a time; failures are reported, never raised."""

    def __init__(
        self,
        audio_dir: Path,
        volume: float = 1.0,
        on_error: Callable[[str, Exception], None] | None = None,
    ) -> None:
        self.audio_dir = audio_dir
        self.volume = min(1.0, max(0.0, volume))
        self._on_error = on_error
        self._lock = Lock()
        self._ready = False

    def resolve(self, audio_ref: str) -> Path:
        path = Path(audio_ref).expanduser()
        if not path.is_absolute():
            path = self.audio_dir / path
        return path

    def _ensure_mixer(self) -> None:
        if not self._ready:
            mixer.init()
            self._ready = True

    def _report(self, audio_ref: str, exc: Exception) -> None:
        logger.warning("Audio playback failed for %s: %s", audio_ref, exc)
        if self._on_error is not None:
            self._on_error(audio_ref, exc)

    def play(self, audio_ref: str) -> None:
        path = self.resolve(audio_ref)
        if not path.is_file():
            self._report(audio_ref, FileNotFoundError(str(path)))
            return
        with self._lock:
            try:
                self._ensure_mixer()
                mixer.music.stop()
                mixer.music.load(str(path))
                mixer.music.set_volume(self.volume)
                mixer.music.play()
            except (PygameError, OSError) as exc:
                self._report(audio_ref, exc)
                return
        logger.info("Playing %s", path)

    def stop(self) -> None:
        with self._lock:
            if not self._ready:
                return
            try:
                mixer.music.stop()
            except PygameError as exc:
                self._report("<stop>", exc)

    def close(self) -> None:
        with self._lock:
            if self._ready:
                mixer.quit()
                self._ready = False
