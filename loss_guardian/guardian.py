"""Loss Guardian - composition root.

Wires the exchange client, alerting, stop-loss detector and position
monitor together and exposes pause/resume, status and health for the
command bot and the health endpoint.
"""

import logging
import threading
from datetime import datetime
from typing import List, Optional

from .alerting.commands import CommandBot
from .alerting.dispatcher import AlertDispatcher
from .alerting.telegram_client import TelegramClient
from .clock import SystemClock
from .config import Settings, settings as default_settings
from .exchange.client import ExchangeClient
from .models import GuardianState, GuardianStatus, PositionStatus
from .monitor import PositionMonitor
from .stop_loss_detector import StopLossDetector
from .throttle import NotificationThrottle

logger = logging.getLogger(__name__)


class GuardianController:
    """Owns every component and the in-memory pause flag."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[ExchangeClient] = None,
        telegram: Optional[TelegramClient] = None,
        clock: Optional[SystemClock] = None,
    ):
        self.settings = settings or default_settings
        self.clock = clock or SystemClock()
        self.client = client or ExchangeClient(self.settings, clock=self.clock)
        self.telegram = telegram or TelegramClient(self.settings, clock=self.clock)
        self.dispatcher = AlertDispatcher(self.telegram)
        self.state = GuardianState()
        self.throttle = NotificationThrottle(self.settings.notification_interval_seconds, clock=self.clock)

        self.monitor = PositionMonitor(
            client=self.client,
            dispatcher=self.dispatcher,
            state=self.state,
            settings=self.settings,
            clock=self.clock,
        )
        self.detector = StopLossDetector(
            client=self.client,
            dispatcher=self.dispatcher,
            throttle=self.throttle,
            get_positions=lambda: self.monitor.positions,
            interval_seconds=self.settings.sl_check_interval_seconds,
            clock=self.clock,
        )
        self.monitor.protection_lookup = self.detector.get_state
        self.command_bot = CommandBot(self.telegram, self, clock=self.clock)

        self._threads: List[threading.Thread] = []
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start background loops, then run the monitor in this thread."""
        logger.info("Starting Loss Guardian")
        self._running = True

        self.dispatcher.send_startup_alert(self.settings.max_loss_usd, self.settings.dry_run)

        self._spawn("stop-loss-detector", self.detector.run)
        if self.telegram.enabled:
            self._spawn("telegram-commands", self.command_bot.run)
        else:
            logger.warning("Telegram not configured - commands and alerts disabled")

        self.monitor.run()

    def _spawn(self, name: str, target):
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def stop(self):
        """Stop all loops. Safe to call more than once."""
        if not self._running:
            return
        logger.info("Stopping Loss Guardian...")
        self._running = False
        self.monitor.stop()
        self.detector.stop()
        self.command_bot.stop()
        self.client.close()
        logger.info("Loss Guardian shutdown complete")

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    def pause(self):
        self.state.paused = True
        logger.warning("Monitoring paused: positions will NOT be closed")

    def resume(self):
        self.state.paused = False
        logger.info("Monitoring resumed")

    @property
    def is_paused(self) -> bool:
        return self.state.paused

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @property
    def last_tick_at(self) -> Optional[datetime]:
        return self.monitor.last_tick_at

    @property
    def consecutive_errors(self) -> int:
        return self.monitor.consecutive_errors

    def get_status(self) -> GuardianStatus:
        return GuardianStatus(
            paused=self.state.paused,
            max_loss_usd=self.settings.max_loss_usd,
            consecutive_errors=self.monitor.consecutive_errors,
            last_tick_at=self.monitor.last_tick_at,
            positions=[
                PositionStatus(
                    symbol=p.symbol,
                    side=p.side,
                    unrealized_pnl=p.unrealized_pnl,
                    protection=self.detector.get_state(p.symbol),
                )
                for p in self.monitor.positions
            ],
        )

    def is_healthy(self) -> bool:
        """A tick succeeded recently and the error counter is below cooldown."""
        last = self.monitor.last_tick_at
        if last is None:
            return False
        if self.monitor.consecutive_errors >= self.settings.error_cooldown_threshold:
            return False
        age = (self.clock.now() - last).total_seconds()
        return age <= self.settings.health_stale_seconds
