from __future__ import annotations

from datetime import datetime, time, timedelta


def parse_hhmm(value: str) -> time:
    value = value.strip()
    parts: list[str]
    if ":" in value:
        parts = value.split(":")
    elif "." in value:
        parts = value.split(".")
    else:
        raise ValueError(f"Unsupported time format: {value}")
    if len(parts) not in (2, 3):
        raise ValueError(f"Unsupported time format: {value}")
    hour = int(parts[0])
    minute = int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    if not (0 <= hour < 24 and 0 <= minute < 60 and 0 <= second < 60):
        raise ValueError(f"Invalid time value: {value}")
    return time(hour=hour, minute=minute, second=second)


def format_hhmm(value: time | datetime) -> str:
    return value.strftime("%H:%M")


def format_remaining(value: timedelta) -> str:
    """Render a countdown such as ``1h 05m`` or ``4m 30s``."""
    total_seconds = max(0, int(value.total_seconds()))
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {seconds:02d}s"
    return f"{seconds}s"


def sanitize_time(value: str) -> str:
    """Strip timezone suffixes such as ``05:12 (EET)`` or ``05:12+03``."""
    value = value.strip()
    if " " in value:
        value = value.split(" ", 1)[0]
    if "+" in value:
        value = value.split("+", 1)[0]
    if "-" in value and value.count(":") == 1 and value.split("-", 1)[1].isdigit():
        value = value.split("-", 1)[0]
    return value
