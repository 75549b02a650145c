from __future__ import annotations

import os
from pathlib import Path

import pytest

from thread_rotator.config import BotSettings, load_env_file, load_settings
from thread_rotator.errors import ConfigError

_REQUIRED = {
    "DISCORD_TOKEN": "secret",
    "CHANNEL_ID": "123456789",
    "MESSAGE_CONTENT": "Please continue in the newest thread",
}


def test_defaults_apply_when_optional_keys_missing() -> None:
    settings = load_settings(dict(_REQUIRED))

    assert settings == BotSettings(
        token="secret",
        channel_id="123456789",
        message_text="Please continue in the newest thread",
    )
    assert settings.cache_duration == 300.0
    assert settings.rate_limit_max_ops == 5
    assert settings.rate_limit_window == 10.0
    assert settings.retry_max_attempts == 2
    assert settings.retry_delays == (1.0, 2.0)
    assert settings.batch_size == 5
    assert settings.serialize_events is False


def test_missing_required_keys_are_reported_together() -> None:
    with pytest.raises(ConfigError) as info:
        load_settings({"CHANNEL_ID": "1", "DISCORD_TOKEN": "  "})

    message = str(info.value)
    assert "DISCORD_TOKEN" in message
    assert "MESSAGE_CONTENT" in message
    assert "CHANNEL_ID" not in message


def test_channel_id_must_be_numeric() -> None:
    env = dict(_REQUIRED, CHANNEL_ID="general")
    with pytest.raises(ConfigError):
        load_settings(env)


def test_optional_values_follow_delay_conventions() -> None:
    env = dict(
        _REQUIRED,
        THREAD_CACHE_DURATION="300000",
        RATE_LIMIT_MAX_OPS="3",
        RATE_LIMIT_WINDOW="2.5",
        RETRY_MAX_ATTEMPTS="4",
        RETRY_DELAYS="500, 1.5",
        BATCH_SIZE="10",
        OPERATION_DELAY="250",
        SERIALIZE_EVENTS="yes",
        DISCORD_PROXY_URL="http://proxy:8080",
    )

    settings = load_settings(env)

    assert settings.cache_duration == 300.0
    assert settings.rate_limit_max_ops == 3
    assert settings.rate_limit_window == 2.5
    assert settings.retry_max_attempts == 4
    assert settings.retry_delays == (0.5, 1.5)
    assert settings.batch_size == 10
    assert settings.operation_delay == 0.25
    assert settings.serialize_events is True
    assert settings.network.discord_proxy_url == "http://proxy:8080"


def test_invalid_optional_values_fall_back_to_defaults() -> None:
    env = dict(_REQUIRED, BATCH_SIZE="-1", RATE_LIMIT_MAX_OPS="many", RETRY_DELAYS="x,1")

    settings = load_settings(env)

    assert settings.batch_size == 5
    assert settings.rate_limit_max_ops == 5
    assert settings.retry_delays == (1.0, 2.0)


def test_load_env_file_does_not_override_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / "bot.env"
    env_file.write_text("CHANNEL_ID=42\nMESSAGE_CONTENT=from file\n", encoding="utf-8")
    monkeypatch.setenv("CHANNEL_ID", "7")
    monkeypatch.setenv("MESSAGE_CONTENT", "placeholder")
    monkeypatch.delenv("MESSAGE_CONTENT", raising=False)

    assert load_env_file(env_file) is True
    assert os.environ["CHANNEL_ID"] == "7"
    assert os.environ["MESSAGE_CONTENT"] == "from file"


def test_explicit_missing_env_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_env_file(tmp_path / "missing.env")
