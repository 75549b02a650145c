from datetime import datetime, timezone

from thread_rotator.utils import (
    PerformanceMonitor,
    parse_bool,
    parse_delay_schedule,
    parse_delay_setting,
    parse_discord_timestamp,
    parse_positive_int,
    snowflake_sort_key,
    snowflake_to_datetime,
)


def test_parse_delay_setting_ms_backwards_compatibility() -> None:
    assert parse_delay_setting("250", 0.0) == 0.25


def test_parse_delay_setting_seconds_float() -> None:
    assert parse_delay_setting("1.50", 0.0) == 1.5


def test_parse_delay_setting_invalid_returns_default() -> None:
    assert parse_delay_setting("not-a-number", 2.0) == 2.0


def test_parse_delay_schedule() -> None:
    assert parse_delay_schedule("1000,2000,", (9.0,)) == (1.0, 2.0)
    assert parse_delay_schedule("", (9.0,)) == (9.0,)
    assert parse_delay_schedule("1.0,oops", (9.0,)) == (9.0,)


def test_parse_positive_int() -> None:
    assert parse_positive_int(" 7 ", 1) == 7
    assert parse_positive_int("0", 3) == 3
    assert parse_positive_int(None, 3) == 3


def test_parse_bool_supports_truthy_and_falsy() -> None:
    assert parse_bool("on") is True
    assert parse_bool("NO") is False
    assert parse_bool(None, default=True) is True
    assert parse_bool("unexpected", default=False) is False


def test_parse_discord_timestamp_handles_zulu_suffix() -> None:
    parsed = parse_discord_timestamp("2024-01-02T03:04:05Z")
    assert parsed == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_discord_timestamp("garbage") is None


def test_snowflake_helpers() -> None:
    assert snowflake_to_datetime("0") == datetime(2015, 1, 1, tzinfo=timezone.utc)
    assert sorted(["10", "9", "x"], key=snowflake_sort_key) == ["x", "9", "10"]


def test_performance_monitor_measures_in_flight_operations() -> None:
    ticks = iter([1.0, 1.25])
    monitor = PerformanceMonitor(clock=lambda: next(ticks))

    monitor.start("thread:1")
    assert monitor.in_flight == 1
    assert monitor.end("thread:1") == 0.25
    assert monitor.end("thread:1") is None
    assert monitor.in_flight == 0
