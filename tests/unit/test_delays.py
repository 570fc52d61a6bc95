"""Unit tests for delay release time computation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from crm_workflow_engine.engine.workflow.definition import DelayConfig
from crm_workflow_engine.engine.workflow.delays import describe_delay, next_delay_time

# Monday.
NOW = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


def test_fixed_duration_adds_up_all_units() -> None:
    config = DelayConfig(delay_minutes=10, delay_hours=1, delay_days=2)

    assert next_delay_time(config, NOW) == NOW + timedelta(days=2, hours=1, minutes=10)


def test_no_configuration_releases_immediately() -> None:
    assert next_delay_time(DelayConfig(), NOW) == NOW


def test_wait_until_time_later_today() -> None:
    config = DelayConfig(wait_until_time="14:30")

    assert next_delay_time(config, NOW) == datetime(2025, 1, 6, 14, 30, tzinfo=UTC)


def test_wait_until_time_already_passed_rolls_to_tomorrow() -> None:
    config = DelayConfig(wait_until_time="08:00")

    assert next_delay_time(config, NOW) == datetime(2025, 1, 7, 8, 0, tzinfo=UTC)


def test_duration_is_applied_before_wall_clock_time() -> None:
    config = DelayConfig(delay_hours=6, wait_until_time="14:30")

    assert next_delay_time(config, NOW) == datetime(2025, 1, 7, 14, 30, tzinfo=UTC)


def test_wait_until_weekday_uses_sunday_as_zero() -> None:
    wednesday = DelayConfig(wait_until_day_of_week=3)
    monday_at_ten = DelayConfig(wait_until_day_of_week=1, wait_until_time="10:00")

    assert next_delay_time(wednesday, NOW) == datetime(2025, 1, 8, 0, 0, tzinfo=UTC)
    assert next_delay_time(monday_at_ten, NOW) == datetime(2025, 1, 6, 10, 0, tzinfo=UTC)


def test_wait_until_today_with_no_time_does_not_wait() -> None:
    assert next_delay_time(DelayConfig(wait_until_day_of_week=1), NOW) == NOW


def test_wall_clock_is_evaluated_in_schedule_timezone() -> None:
    # 09:00 UTC is 14:30 in Kolkata, so 10:00 local is tomorrow morning.
    config = DelayConfig(wait_until_time="10:00")

    released = next_delay_time(config, NOW, ZoneInfo("Asia/Kolkata"))

    assert released == datetime(2025, 1, 7, 4, 30, tzinfo=UTC)
    assert released.tzinfo == UTC


def test_describe_delay() -> None:
    assert describe_delay(DelayConfig(delay_minutes=10)) == "10m"
    assert describe_delay(DelayConfig(delay_days=1, delay_hours=2)) == "1d 2h"
    assert (
        describe_delay(DelayConfig(wait_until_day_of_week=1, wait_until_time="09:00"))
        == "no fixed delay, then until Monday at 09:00"
    )
