"""Stop-loss presence detection.

Decides, per open position, whether an active protective stop order exists
on the exchange. Conditional (algo) orders are checked first, then regular
open orders. A check that cannot see both lists yields UNKNOWN, never
UNPROTECTED: a failed fetch is not evidence that the stop is missing.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, Optional, Sequence

from .alerting.dispatcher import AlertDispatcher
from .clock import SystemClock
from .errors import ExchangeError
from .exchange.client import ExchangeClient
from .models import (
    OrderSide,
    Position,
    ProtectionState,
    ProtectionStatus,
    STOP_ORDER_TYPES,
)
from .throttle import NotificationThrottle

logger = logging.getLogger(__name__)


def is_protective(order, protective_side: OrderSide) -> bool:
    """True if ``order`` is a live stop that would reduce the position."""
    if not order.is_active:
        return False
    if order.side != protective_side:
        return False
    if order.order_type not in STOP_ORDER_TYPES:
        return False
    return order.close_position or order.quantity > 0


class StopLossDetector:
    """Tracks ProtectionState per symbol on its own polling interval."""

    def __init__(
        self,
        client: ExchangeClient,
        dispatcher: AlertDispatcher,
        throttle: NotificationThrottle,
        get_positions: Callable[[], Sequence[Position]],
        interval_seconds: float,
        clock: Optional[SystemClock] = None,
    ):
        self.client = client
        self.dispatcher = dispatcher
        self.throttle = throttle
        self.get_positions = get_positions
        self.interval_seconds = interval_seconds
        self.clock = clock or SystemClock()
        self._cache: Dict[str, ProtectionStatus] = {}
        self._lock = threading.Lock()
        self._running = False

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self):
        """Check every interval until stop() is called."""
        self._running = True
        logger.info(f"Stop-loss detector started (interval: {self.interval_seconds}s)")
        while self._running:
            try:
                self.check_once()
            except Exception as e:
                logger.error(f"Error in stop-loss detection cycle: {e}", exc_info=True)
            self.clock.sleep(self.interval_seconds)

    def stop(self):
        self._running = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_status(self, symbol: str) -> Optional[ProtectionStatus]:
        with self._lock:
            return self._cache.get(symbol)

    def get_state(self, symbol: str) -> ProtectionState:
        """Protection state for display; symbols not yet checked are UNKNOWN."""
        status = self.get_status(symbol)
        return status.state if status else ProtectionState.UNKNOWN

    def _evict_missing(self, live_symbols: Iterable[str]):
        live = set(live_symbols)
        with self._lock:
            gone = [symbol for symbol in self._cache if symbol not in live]
            for symbol in gone:
                del self._cache[symbol]
        for symbol in gone:
            self.throttle.clear(symbol)
            logger.info(f"{symbol}: position gone, dropped stop-loss tracking")

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def check_once(self):
        """Run one detection cycle over the monitor's current snapshot."""
        positions = list(self.get_positions())
        self._evict_missing(p.symbol for p in positions)

        for position in positions:
            try:
                state = self.detect(position)
            except Exception as e:
                logger.error(f"Error checking stop loss for {position.symbol}: {e}", exc_info=True)
                state = ProtectionState.UNKNOWN
            self._record(position, state)

    def detect(self, position: Position) -> ProtectionState:
        """Determine whether ``position`` has a protective stop order."""
        protective_side = position.protective_side
        fetch_failed = False

        try:
            for order in self.client.fetch_conditional_orders(position.symbol):
                if is_protective(order, protective_side):
                    return ProtectionState.PROTECTED
        except ExchangeError as e:
            fetch_failed = True
            logger.warning(f"{position.symbol}: could not fetch algo orders: {e}")

        try:
            for order in self.client.fetch_conventional_orders(position.symbol):
                if is_protective(order, protective_side):
                    # a match is not trusted while the algo list is unknown
                    return ProtectionState.UNKNOWN if fetch_failed else ProtectionState.PROTECTED
        except ExchangeError as e:
            fetch_failed = True
            logger.warning(f"{position.symbol}: could not fetch open orders: {e}")

        if fetch_failed:
            return ProtectionState.UNKNOWN
        return ProtectionState.UNPROTECTED

    def _record(self, position: Position, state: ProtectionState):
        with self._lock:
            previous = self._cache.get(position.symbol)
            self._cache[position.symbol] = ProtectionStatus(state=state, checked_at=self.clock.now())

        if state == ProtectionState.UNPROTECTED:
            if self.throttle.should_notify(position.symbol):
                logger.warning(
                    f"ALERT: {position.symbol} {position.side.value} has NO STOP LOSS! "
                    f"PnL: {position.unrealized_pnl}"
                )
                self.dispatcher.send_missing_stop_loss_alert(position)
        elif state == ProtectionState.PROTECTED:
            if previous is not None and previous.state == ProtectionState.UNPROTECTED:
                logger.info(f"{position.symbol}: stop loss is now in place")
            self.throttle.clear(position.symbol)
