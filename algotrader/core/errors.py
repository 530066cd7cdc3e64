from __future__ import annotations


class ExchangeError(RuntimeError):
    """Exchange rejected or failed a request."""

    def __init__(self, message: str, *, code: int | None = None, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.status = status


class TransientExchangeError(ExchangeError):
    """Timeouts, connection drops, rate limits, 5xx. Safe to retry."""


class FatalExchangeError(ExchangeError):
    """Invalid credentials / permission errors. Never retried."""


class NetworkUnavailableError(FatalExchangeError):
    """Every exchange call of a pass failed even after retries."""


class ExecutionError(RuntimeError):
    """An order could not be placed; callers must know it failed."""


# Substrings the trading loop treats as fatal even on untyped errors
FATAL_MESSAGE_PATTERNS = (
    "api key invalid",
    "invalid api key",
    "network error",
)


def is_fatal(exc: BaseException) -> bool:
    if isinstance(exc, FatalExchangeError):
        return True
    msg = str(exc).lower()
    return any(p in msg for p in FATAL_MESSAGE_PATTERNS)
