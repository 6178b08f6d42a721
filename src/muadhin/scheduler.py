from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import date, datetime, timedelta
import logging
import threading
import time
from typing import Callable

from .config import GlobalConfig
from .models import DailySchedule, Decision, FiredKey, Reminder
from .policy import evaluate, evaluate_reminder
from .services.audio import AudioSink, NullAudioSink
from .services.notifier import Notifier, NullNotifier
from .services.prayer import DailyScheduleProvider
from .state import FireStateStore

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """Evaluate the trigger policy on a fixed cadence and apply its decisions.

    Each accepted decision is recorded and persisted before any notification
    or audio is attempted. A crash between the two loses at most one alert;
    it can never replay the same prayer on every tick.
    """

    def __init__(
        self,
        config: Callable[[], GlobalConfig],
        provider: DailyScheduleProvider,
        fire_state: FireStateStore,
        notifier: Notifier | None = None,
        audio: AudioSink | None = None,
        *,
        reminder_state: FireStateStore | None = None,
        clock: Callable[[], datetime] = datetime.now,
        interval: float = 1.0,
        persist_timeout: float = 2.0,
        diagnostics: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self.provider = provider
        self.fire_state = fire_state
        self.reminder_state = reminder_state
        self.notifier = notifier or NullNotifier()
        self.audio = audio or NullAudioSink()
        self._clock = clock
        self.interval = max(0.05, interval)
        self.persist_timeout = persist_timeout
        self._log = diagnostics or logger
        self._last_config: GlobalConfig | None = None
        self._pruned_for: date | None = None
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._io = ThreadPoolExecutor(max_workers=1, thread_name_prefix="muadhin-persist")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _read_config(self) -> GlobalConfig:
        try:
            config = self._config()
        except Exception as exc:
            self._log.warning("Config read failed, using last known settings: %s", exc)
            return self._last_config or GlobalConfig.conservative()
        self._last_config = config
        return config

    def _read_schedule(self) -> DailySchedule | None:
        try:
            return self.provider.today()
        except Exception as exc:
            self._log.warning("Prayer schedule not ready: %s", exc)
            return None

    def _persist(self, store: FireStateStore) -> bool:
        future = self._io.submit(store.persist)
        try:
            future.result(timeout=self.persist_timeout)
        except FutureTimeout:
            self._log.warning("Persisting %s took longer than %.1fs", store.path, self.persist_timeout)
            return False
        except OSError as exc:
            self._log.error("Could not persist %s: %s", store.path, exc)
            return False
        return True

    def tick(self) -> Decision | None:
        """Run one evaluation cycle and return the decision it applied."""
        with self._tick_lock:
            config = self._read_config()
            now = self._clock()
            schedule = self._read_schedule()
            if not schedule:
                return None
            self._prune(now.date(), config)

            decision = evaluate(now, schedule, config, self.fire_state.snapshot())
            if decision is not None:
                self._apply(decision, now)

            if self.reminder_state is not None:
                reminder = evaluate_reminder(now, schedule, config, self.reminder_state.snapshot())
                if reminder is not None:
                    self._apply_reminder(self.reminder_state, reminder, now)
            return decision

    def _apply(self, decision: Decision, now: datetime) -> None:
        self.fire_state.record_fire(FiredKey(now.date(), decision.prayer), now)
        self._persist(self.fire_state)
        self._log.info(
            "%s fired (scheduled %s, notify=%s, audio=%s)",
            decision.prayer.value,
            decision.scheduled_at.strftime("%H:%M:%S"),
            decision.do_notify,
            decision.do_play_audio,
        )
        if decision.do_notify:
            try:
                self.notifier.notify(decision.prayer, decision.scheduled_at, now)
            except Exception as exc:
                self._log.warning("Notification for %s failed: %s", decision.prayer.value, exc)
        if decision.do_play_audio and decision.audio_ref:
            try:
                self.audio.play(decision.audio_ref)
            except Exception as exc:
                self._log.warning("Adhan for %s failed: %s", decision.prayer.value, exc)

    def _apply_reminder(self, store: FireStateStore, reminder: Reminder, now: datetime) -> None:
        store.record_fire(FiredKey(now.date(), reminder.prayer), now)
        self._persist(store)
        try:
            self.notifier.remind(reminder.prayer, reminder.scheduled_at, reminder.remaining)
        except Exception as exc:
            self._log.warning("Reminder for %s failed: %s", reminder.prayer.value, exc)

    def _prune(self, today: date, config: GlobalConfig) -> None:
        if self._pruned_for == today:
            return
        self._pruned_for = today
        cutoff = today - timedelta(days=max(1, config.state_retention_days))
        for store in (self.fire_state, self.reminder_state):
            if store is not None and store.prune(cutoff):
                self._persist(store)

    def _run(self) -> None:
        next_at = time.monotonic()
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                self._log.exception("Scheduler tick failed")
            next_at += self.interval
            delay = next_at - time.monotonic()
            if delay < 0:
                next_at = time.monotonic()
                delay = 0
            self._stop.wait(delay)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="muadhin-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop scheduling new ticks; an in-flight tick is allowed to finish."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def close(self) -> None:
        self.stop()
        self._io.shutdown(wait=True)

    def run_forever(self) -> None:
        self.start()
        try:
            while self.is_running:
                self._stop.wait(0.5)
        finally:
            self.close()
