"""Per-symbol alert rate limiting."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

from .clock import SystemClock

logger = logging.getLogger(__name__)


class NotificationThrottle:
    """Allows at most one alert per symbol per interval.

    In-memory only. Resets on restart, worst case is one extra alert per
    symbol after a restart.
    """

    def __init__(self, interval_seconds: float, clock: Optional[SystemClock] = None):
        self.interval = timedelta(seconds=interval_seconds)
        self.clock = clock or SystemClock()
        self._last_sent: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def should_notify(self, symbol: str) -> bool:
        """Return True (and record now) if ``symbol`` may alert again."""
        now = self.clock.now()
        with self._lock:
            last = self._last_sent.get(symbol)
            if last is not None and now - last < self.interval:
                logger.debug(f"{symbol}: alert throttled (last sent {last.isoformat()})")
                return False
            self._last_sent[symbol] = now
            return True

    def clear(self, symbol: str) -> None:
        """Forget the last alert so the next one goes out immediately."""
        with self._lock:
            self._last_sent.pop(symbol, None)

    def last_sent(self, symbol: str) -> Optional[datetime]:
        with self._lock:
            return self._last_sent.get(symbol)
