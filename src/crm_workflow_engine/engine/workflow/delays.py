"""Delay node scheduling."""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta, tzinfo

from .definition import DelayConfig


def delay_duration(config: DelayConfig) -> timedelta:
    return timedelta(
        minutes=config.delay_minutes,
        hours=config.delay_hours,
        days=config.delay_days,
    )


def _sunday_based_weekday(moment: datetime) -> int:
    # datetime.weekday() is Monday=0; delay configs use Sunday=0.
    return (moment.weekday() + 1) % 7


def next_delay_time(config: DelayConfig, now: datetime, tz: tzinfo = UTC) -> datetime:
    """Return the instant a delay node configured with ``config`` releases.

    The fixed duration is applied first. If a wall-clock time and/or weekday is
    configured, the result is the first matching moment at or after that
    point, evaluated in ``tz``. The result is always timezone-aware UTC.
    """

    earliest = now + delay_duration(config)
    if config.wait_until_time is None and config.wait_until_day_of_week is None:
        return earliest.astimezone(UTC)

    local = earliest.astimezone(tz)
    if config.wait_until_time is not None:
        hour, minute = (int(p) for p in config.wait_until_time.split(":"))
        at = time(hour=hour, minute=minute)
    else:
        at = None

    for offset in range(8):
        day = local.date() + timedelta(days=offset)
        if at is None:
            candidate = local if offset == 0 else datetime.combine(day, time(0, 0), tzinfo=tz)
        else:
            candidate = datetime.combine(day, at, tzinfo=tz)
        if candidate < local:
            continue
        if (
            config.wait_until_day_of_week is not None
            and _sunday_based_weekday(candidate) != config.wait_until_day_of_week
        ):
            continue
        return candidate.astimezone(UTC)

    # Unreachable: every weekday/time combination recurs within a week.
    raise AssertionError("No delay release time found within a week")


def describe_delay(config: DelayConfig) -> str:
    parts = []
    if config.delay_days:
        parts.append(f"{config.delay_days:g}d")
    if config.delay_hours:
        parts.append(f"{config.delay_hours:g}h")
    if config.delay_minutes:
        parts.append(f"{config.delay_minutes:g}m")
    text = " ".join(parts) if parts else "no fixed delay"
    if config.wait_until_day_of_week is not None:
        names = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
        text += f", then until {names[config.wait_until_day_of_week]}"
    if config.wait_until_time is not None:
        text += f" at {config.wait_until_time}"
    return text
