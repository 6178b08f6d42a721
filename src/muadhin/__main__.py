from __future__ import annotations

import argparse
from datetime import datetime
import logging
from pathlib import Path
from typing import Sequence

from .config import ConfigHolder, ConfigManager, _default_config_root
from .models import DailySchedule
from .policy import next_prayer
from .scheduler import SchedulerLoop
from .services.audio import PygameAudioSink
from .services.notifier import DesktopNotifier
from .services.prayer import PrayerService
from .state import FireStateStore
from .timeutils import format_hhmm, format_remaining

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
STARTUP_FETCH_TIMEOUT = 15.0


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="muadhin", description="Play the adhan and notify at prayer times.")
    parser.add_argument("--config", type=Path, default=None, help="path to config.toml")
    parser.add_argument("--state-dir", type=Path, default=None, help="directory for fire state files")
    parser.add_argument("--once", action="store_true", help="run a single evaluation and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def describe_next(schedule: DailySchedule | None, now: datetime) -> str:
    upcoming = next_prayer(now, schedule)
    if upcoming is None:
        return "Next prayer: unknown (no prayer times available)"
    return (
        f"Next prayer: {upcoming.prayer.value} at {format_hhmm(upcoming.scheduled_at)} "
        f"(in {format_remaining(upcoming.remaining)})"
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    log = logging.getLogger("muadhin")

    holder = ConfigHolder(ConfigManager(args.config))
    config = holder.snapshot()
    state_dir = args.state_dir or _default_config_root()
    service = PrayerService(holder.snapshot)
    audio = PygameAudioSink(config.audio_dir)
    loop = SchedulerLoop(
        holder.adhan,
        service,
        FireStateStore(state_dir / "fire_state.json"),
        DesktopNotifier(),
        audio,
        reminder_state=FireStateStore(state_dir / "reminder_state.json"),
        diagnostics=log,
    )

    try:
        schedule = service.refresh(timeout=STARTUP_FETCH_TIMEOUT)
        summary = describe_next(schedule, datetime.now())
        if args.once:
            decision = loop.tick()
            print(f"Fired: {decision.prayer.value}" if decision else "Nothing due")
            print(summary)
            return
        log.info(summary)
        log.info("Scheduler started")
        loop.run_forever()
    except KeyboardInterrupt:
        log.info("Stopping")
    finally:
        loop.close()
        audio.close()
        service.close()


if __name__ == "__main__":  # pragma: no cover
    main()
