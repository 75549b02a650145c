"""Environment based configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError
from .models import NetworkOptions
from .utils import (
    parse_bool,
    parse_delay_schedule,
    parse_delay_setting,
    parse_positive_int,
)

REQUIRED_KEYS = ("DISCORD_TOKEN", "CHANNEL_ID", "MESSAGE_CONTENT")

DEFAULT_CACHE_DURATION = 300.0
DEFAULT_RATE_LIMIT_MAX_OPS = 5
DEFAULT_RATE_LIMIT_WINDOW = 10.0
DEFAULT_RETRY_MAX_ATTEMPTS = 2
DEFAULT_RETRY_DELAYS = (1.0, 2.0)
DEFAULT_BATCH_SIZE = 5
DEFAULT_OPERATION_DELAY = 0.1
DEFAULT_SWEEP_INTERVAL = 60.0


@dataclass(slots=True)
class BotSettings:
    """Complete runtime configuration of the rotator."""

    token: str
    channel_id: str
    message_text: str
    cache_duration: float = DEFAULT_CACHE_DURATION
    rate_limit_max_ops: int = DEFAULT_RATE_LIMIT_MAX_OPS
    rate_limit_window: float = DEFAULT_RATE_LIMIT_WINDOW
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS
    batch_size: int = DEFAULT_BATCH_SIZE
    operation_delay: float = DEFAULT_OPERATION_DELAY
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    serialize_events: bool = False
    network: NetworkOptions = field(default_factory=NetworkOptions)


def load_env_file(path: Path | None) -> bool:
    """Load ``path`` (or ``./.env``) without overriding the process environment."""

    if path is None:
        path = Path.cwd() / ".env"
        if not path.is_file():
            return False
    elif not path.is_file():
        raise ConfigError(f"Файл окружения {path} не найден")
    return load_dotenv(dotenv_path=path, override=False)


def load_settings(environ: Mapping[str, str] | None = None) -> BotSettings:
    env = os.environ if environ is None else environ

    def _get(key: str) -> str | None:
        value = env.get(key)
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    missing = [key for key in REQUIRED_KEYS if _get(key) is None]
    if missing:
        raise ConfigError(
            "Не заданы обязательные переменные окружения: " + ", ".join(missing)
        )

    channel_id = _get("CHANNEL_ID") or ""
    if not channel_id.isdigit():
        raise ConfigError(f"CHANNEL_ID должен быть числовым идентификатором: {channel_id!r}")

    return BotSettings(
        token=_get("DISCORD_TOKEN") or "",
        channel_id=channel_id,
        # message text keeps its inner whitespace
        message_text=env["MESSAGE_CONTENT"],
        cache_duration=parse_delay_setting(
            _get("THREAD_CACHE_DURATION"), DEFAULT_CACHE_DURATION
        ),
        rate_limit_max_ops=parse_positive_int(
            _get("RATE_LIMIT_MAX_OPS"), DEFAULT_RATE_LIMIT_MAX_OPS
        ),
        rate_limit_window=parse_delay_setting(
            _get("RATE_LIMIT_WINDOW"), DEFAULT_RATE_LIMIT_WINDOW
        ),
        retry_max_attempts=parse_positive_int(
            _get("RETRY_MAX_ATTEMPTS"), DEFAULT_RETRY_MAX_ATTEMPTS
        ),
        retry_delays=parse_delay_schedule(_get("RETRY_DELAYS"), DEFAULT_RETRY_DELAYS),
        batch_size=parse_positive_int(_get("BATCH_SIZE"), DEFAULT_BATCH_SIZE),
        operation_delay=parse_delay_setting(
            _get("OPERATION_DELAY"), DEFAULT_OPERATION_DELAY
        ),
        sweep_interval=parse_delay_setting(_get("SWEEP_INTERVAL"), DEFAULT_SWEEP_INTERVAL),
        serialize_events=parse_bool(_get("SERIALIZE_EVENTS"), False),
        network=NetworkOptions(
            discord_proxy_url=_get("DISCORD_PROXY_URL"),
            discord_proxy_login=_get("DISCORD_PROXY_LOGIN"),
            discord_proxy_password=_get("DISCORD_PROXY_PASSWORD"),
            discord_user_agent=_get("DISCORD_USER_AGENT"),
        ),
    )
