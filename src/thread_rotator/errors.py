"""Error taxonomy shared by the rotator components."""

from __future__ import annotations


class ThreadRotatorError(Exception):
    """Base class for all errors raised by the service."""


class ConfigError(ThreadRotatorError):
    """Required configuration is missing or invalid."""


class AuthError(ThreadRotatorError):
    """Discord rejected the bot credential."""


class ExternalOpError(ThreadRotatorError):
    """A single Discord read or write failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFound(ExternalOpError):
    """The requested Discord resource does not exist or is not visible."""


class ExhaustedRetries(ThreadRotatorError):
    """Every attempt of a retried operation failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{attempts} attempt(s) failed, last error: {last_error!r}")
        self.attempts = attempts
        self.last_error = last_error
