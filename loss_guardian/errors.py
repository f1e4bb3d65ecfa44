"""Error types for Loss Guardian."""

from typing import Optional


class ExchangeError(Exception):
    """An exchange call failed. Higher layers treat every subclass the same."""


class NetworkError(ExchangeError):
    """Transport-level failure: no HTTP response was received."""


class HttpStatusError(ExchangeError):
    """The exchange answered with a non-success status (or an unreadable body)."""

    BODY_EXCERPT_LIMIT = 200

    def __init__(self, status_code: int, body: str, code: Optional[int] = None):
        self.status_code = status_code
        self.body = (body or "")[: self.BODY_EXCERPT_LIMIT]
        self.code = code
        super().__init__(f"HTTP {status_code}: {self.body}")


class CloseExhausted(Exception):
    """Every attempt to submit the reduce-only close order failed."""

    def __init__(self, symbol: str, attempts: int, last_error: Exception):
        self.symbol = symbol
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"close {symbol} failed after {attempts} attempt(s): {last_error}")


class BootstrapFatal(Exception):
    """A required setting is missing; the process cannot start."""

    def __init__(self, env_name: str):
        self.env_name = env_name
        super().__init__(f"Missing env: {env_name}")
