"""Loss Guardian - Entry Point.

This service watches every open futures position for:
1. Losses at or beyond MAX_LOSS_USD → closes the position at market
2. Missing stop losses → alerts (rate limited) until one is placed

Operators control it over Telegram: /status /pause /resume /help.
"""

import logging
import signal
import sys
from typing import Optional

from .clock import SystemClock
from .config import Settings, settings
from .errors import BootstrapFatal
from .guardian import GuardianController
from .health import HealthServer

logger = logging.getLogger(__name__)

# Global guardian instance for signal handling
guardian: Optional[GuardianController] = None
_shutting_down = False


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )
    # httpx logs every request at INFO; one per second is noise.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutting_down
    logger.info(f"Received signal {signum}, shutting down...")
    _shutting_down = True
    if guardian:
        guardian.stop()
    sys.exit(0)


def log_configuration(config: Settings):
    logger.info("=" * 60)
    logger.info("LOSS GUARDIAN")
    logger.info("=" * 60)
    logger.info(f"Exchange: {config.base_url}")
    logger.info(f"Max loss: {config.max_loss_usd} USDT")
    logger.info(f"Monitor interval: {config.interval_ms}ms")
    logger.info(f"Stop-loss check interval: {config.sl_check_interval_ms}ms")
    logger.info(f"Alert interval per symbol: {config.telegram_notification_interval_ms}ms")
    logger.info(f"Telegram enabled: {config.telegram_enabled}")
    if config.dry_run:
        logger.warning("DRY RUN: positions will NOT be closed")


def run_forever(config: Settings, health: Optional[HealthServer] = None, clock: Optional[SystemClock] = None):
    """Run the guardian, restarting it after any uncaught exception."""
    global guardian
    clock = clock or SystemClock()

    while not _shutting_down:
        guardian = GuardianController(config, clock=clock)
        if health:
            health.attach(guardian)
        try:
            guardian.start()
            # start() only returns once stop() was called
            return
        except Exception as e:
            logger.error(f"Fatal: {e}", exc_info=True)
            logger.warning(f"Restart in {config.restart_backoff_seconds}s")
        finally:
            guardian.stop()
        clock.sleep(config.restart_backoff_seconds)


def main():
    """Main entry point."""
    configure_logging(settings.log_level)

    try:
        settings.validate_required()
    except BootstrapFatal as e:
        logger.critical(f"[FATAL] {e}")
        sys.exit(1)

    health = HealthServer(settings.health_port)
    health.start()

    log_configuration(settings)

    # Setup signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        run_forever(settings, health)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        if guardian:
            guardian.stop()


if __name__ == "__main__":
    main()
