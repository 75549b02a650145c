"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from .app import ThreadRotatorApp
from .config import load_env_file, load_settings
from .errors import AuthError, ConfigError, ExternalOpError

logger = logging.getLogger(__name__)


def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    message = context.get("message", "необработанная ошибка")
    if exc is not None:
        logger.error("Необработанная асинхронная ошибка: %s", message, exc_info=exc)
    else:
        logger.error("Необработанная асинхронная ошибка: %s", message)


async def _serve(app: ThreadRotatorApp) -> None:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_log_unhandled)
    main_task = asyncio.current_task()
    for signum in (signal.SIGINT, signal.SIGTERM):
        # not available on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, main_task.cancel)
    try:
        await app.run()
    except asyncio.CancelledError:
        logger.info("Получен сигнал остановки, соединение закрыто")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Lock older Discord threads when a new one is created"
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Файл с переменными окружения (по умолчанию ./.env, если есть)",
    )
    parser.add_argument(
        "--token",
        help="Токен Discord бота. Можно передать через DISCORD_TOKEN",
    )
    parser.add_argument("--log-level", default="INFO", help="Уровень логирования")
    args = parser.parse_args()

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        load_env_file(args.env_file)
        environ = dict(os.environ)
        if args.token:
            environ["DISCORD_TOKEN"] = args.token
        settings = load_settings(environ)
    except ConfigError as exc:
        parser.error(str(exc))

    logger.info("Отслеживается канал %s", settings.channel_id)
    app = ThreadRotatorApp(settings)
    try:
        asyncio.run(_serve(app))
    except AuthError as exc:
        logger.error("Не удалось войти в Discord: %s", exc)
        sys.exit(1)
    except ExternalOpError as exc:
        logger.error("Discord недоступен: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Остановка по запросу пользователя")


if __name__ == "__main__":
    main()
