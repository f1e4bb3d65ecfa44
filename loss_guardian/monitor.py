"""Position monitor - the loss-cap enforcement loop.

Every tick fetches all positions, and force-closes any position whose
unrealized loss has reached the configured maximum. Closing is:

1. round the full position quantity
2. cancel regular open orders      (best effort)
3. cancel active algo orders        (best effort)
4. reduce-only MARKET close         (mandatory, retried)
5. report FILLED / not fully closed / unexpected status

Outcome alerts for a tick go out only after every close of that tick was
submitted, and one position failing never stops the others.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .alerting.dispatcher import AlertDispatcher
from .clock import SystemClock
from .config import Settings, settings as default_settings
from .errors import CloseExhausted, ExchangeError
from .exchange.client import ExchangeClient
from .models import (
    CloseOutcome,
    CloseReport,
    GuardianState,
    INCOMPLETE_ORDER_STATUSES,
    OrderResult,
    Position,
    ProtectionState,
    format_pnl,
)

logger = logging.getLogger(__name__)


class PositionMonitor:
    """Polls positions and closes the ones over the loss limit."""

    def __init__(
        self,
        client: ExchangeClient,
        dispatcher: AlertDispatcher,
        state: GuardianState,
        settings: Optional[Settings] = None,
        clock: Optional[SystemClock] = None,
        protection_lookup: Optional[Callable[[str], ProtectionState]] = None,
    ):
        self.client = client
        self.dispatcher = dispatcher
        self.state = state
        self.settings = settings or default_settings
        self.clock = clock or SystemClock()
        self.protection_lookup = protection_lookup or (lambda symbol: ProtectionState.UNKNOWN)

        self._positions: Tuple[Position, ...] = ()
        self._running = False
        self.consecutive_errors = 0
        self.last_tick_at: Optional[datetime] = None
        self._last_report_at: Optional[datetime] = None

    @property
    def positions(self) -> Tuple[Position, ...]:
        """Latest snapshot. Replaced as a whole each tick, never mutated."""
        return self._positions

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self):
        """Main monitoring loop. Only stop() ends it; errors never do."""
        self._running = True
        logger.info(
            f"Monitor started (interval: {self.settings.interval_seconds}s, "
            f"max loss: {self.settings.max_loss_usd} USDT)"
        )
        while self._running:
            self.run_once()
            self.clock.sleep(self.settings.interval_seconds)

    def stop(self):
        self._running = False

    def run_once(self) -> bool:
        """One tick plus error accounting. Returns True if the tick succeeded."""
        try:
            self.tick()
        except Exception as e:
            self.consecutive_errors += 1
            logger.error(
                f"Error in monitoring tick (consecutive: {self.consecutive_errors}): {e}",
                exc_info=True,
            )

            threshold = self.settings.error_cooldown_threshold
            if self.consecutive_errors == threshold:
                logger.critical(
                    f"Loss Guardian: {self.consecutive_errors} consecutive monitoring failures. "
                    f"Positions are NOT being watched. Last error: {e}"
                )
                self.dispatcher.send_degraded_alert(self.consecutive_errors, str(e))
            if self.consecutive_errors >= threshold:
                logger.warning(
                    f"{self.consecutive_errors} errors, cooling down "
                    f"{self.settings.error_cooldown_seconds}s"
                )
                self.clock.sleep(self.settings.error_cooldown_seconds)
            return False

        if self.consecutive_errors > 0:
            logger.info(f"Monitoring recovered after {self.consecutive_errors} consecutive error(s)")
        self.consecutive_errors = 0
        self.last_tick_at = self.clock.now()
        return True

    def tick(self):
        """Fetch positions, report them and enforce the loss limit."""
        self._positions = tuple(self.client.fetch_positions())
        self._report_positions()

        # Paused: keep watching, never close.
        if self.state.paused:
            return

        max_loss = self.settings.max_loss_usd
        closed: List[Tuple[Position, CloseReport]] = []
        for position in self._positions:
            if position.loss_exceeds(max_loss):
                logger.error(
                    f"{position.symbol} loss {abs(position.unrealized_pnl):.2f}$ "
                    f">= {max_loss}$, CLOSING"
                )
                closed.append((position, self._close_isolated(position)))

        # Alerts only after every close of this tick was submitted.
        for position, report in closed:
            self._alert(position, report)

    def _report_positions(self):
        now = self.clock.now()
        if (
            self._last_report_at is not None
            and (now - self._last_report_at).total_seconds() < self.settings.status_log_interval_seconds
        ):
            return
        self._last_report_at = now

        if not self._positions:
            logger.info("No open positions")
            return

        for position in self._positions:
            protection = self.protection_lookup(position.symbol)
            logger.info(
                f"{position.symbol} {position.side.value} | "
                f"PnL: {format_pnl(position.unrealized_pnl)} | {protection.label}"
            )

    # ------------------------------------------------------------------
    # Close protocol
    # ------------------------------------------------------------------

    def close_position(self, position: Position) -> CloseReport:
        """Force-close ``position`` and alert the operator with the outcome."""
        report = self._close_isolated(position)
        self._alert(position, report)
        return report

    def _alert(self, position: Position, report: CloseReport):
        if report.outcome != CloseOutcome.DRY_RUN:
            self.dispatcher.send_close_report(position, report)

    def _close_isolated(self, position: Position) -> CloseReport:
        """Run the close protocol; a failure here never reaches other positions."""
        try:
            return self._close(position)
        except Exception as e:
            logger.error(f"FAILED {position.symbol}: unexpected error while closing: {e}", exc_info=True)
            return CloseReport(
                symbol=position.symbol,
                side=position.protective_side,
                quantity=abs(position.amount),
                outcome=CloseOutcome.FAILED,
                error=str(e),
            )

    def _close(self, position: Position) -> CloseReport:
        """Close protocol without alerting. Returns what happened."""
        side = position.protective_side

        try:
            quantity = self.client.round_quantity(position.symbol, abs(position.amount))
        except ExchangeError as e:
            logger.error(f"FAILED {position.symbol}: could not compute close quantity: {e}")
            return CloseReport(
                symbol=position.symbol,
                side=side,
                quantity=abs(position.amount),
                outcome=CloseOutcome.FAILED,
                error=str(e),
            )

        if self.settings.dry_run:
            logger.warning(f"[DRY RUN] would close {position.symbol}: {side.value} {quantity}")
            return CloseReport(
                symbol=position.symbol,
                side=side,
                quantity=quantity,
                outcome=CloseOutcome.DRY_RUN,
            )

        # Protective orders go first so they cannot fire against the close.
        self._best_effort(
            f"cancel open orders {position.symbol}",
            lambda: self.client.cancel_all_conventional(position.symbol),
        )
        self._best_effort(
            f"cancel algo orders {position.symbol}",
            lambda: self._cancel_active_conditional(position.symbol),
        )

        try:
            result = self._submit_close(position, quantity)
        except CloseExhausted as e:
            logger.error(f"FAILED {position.symbol}: {e}")
            return CloseReport(
                symbol=position.symbol,
                side=side,
                quantity=quantity,
                outcome=CloseOutcome.FAILED,
                error=str(e.last_error),
            )

        report = CloseReport(
            symbol=position.symbol,
            side=side,
            quantity=quantity,
            outcome=classify_close_status(result.status),
            order_id=result.order_id,
            order_status=result.status,
        )

        if report.outcome == CloseOutcome.FILLED:
            logger.info(f"{position.symbol} closed #{result.order_id}")
        elif report.outcome == CloseOutcome.NOT_FULLY_CLOSED:
            logger.warning(f"{position.symbol} order {result.status} #{result.order_id}, not fully closed")
        else:
            logger.error(f"{position.symbol} unexpected close status: {result.status} #{result.order_id}")

        return report

    def _cancel_active_conditional(self, symbol: str):
        for order in self.client.fetch_conditional_orders(symbol):
            if order.is_active:
                self.client.cancel_conditional(symbol, order.algo_id)

    def _best_effort(self, name: str, action: Callable[[], None]) -> bool:
        """Run a step whose failure must not stop the close."""
        try:
            action()
            return True
        except ExchangeError as e:
            logger.warning(f"{name} failed, continuing: {e}")
            return False
        except Exception as e:
            logger.error(f"{name} failed unexpectedly, continuing: {e}", exc_info=True)
            return False

    def _submit_close(self, position: Position, quantity) -> OrderResult:
        """Submit the close order, retrying a bounded number of times."""
        attempts = self.settings.close_attempts
        delay = self.settings.close_retry_delay_seconds
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return self.client.submit_reduce_only_market_close(
                    position.symbol, position.protective_side, quantity
                )
            except ExchangeError as e:
                last_error = e
                if attempt < attempts:
                    logger.warning(
                        f"close {position.symbol} failed ({attempt}/{attempts}), "
                        f"retry in {delay}s: {e}"
                    )
                    self.clock.sleep(delay)

        raise CloseExhausted(position.symbol, attempts, last_error)


def classify_close_status(status: str) -> CloseOutcome:
    if status == "FILLED":
        return CloseOutcome.FILLED
    if status in INCOMPLETE_ORDER_STATUSES:
        return CloseOutcome.NOT_FULLY_CLOSED
    return CloseOutcome.UNEXPECTED_STATUS
