"""Alert dispatcher: builds operator alerts and sends them to Telegram."""

import logging
from decimal import Decimal
from typing import Optional

from ..models import Alert, AlertType, CloseOutcome, CloseReport, OrderSide, Position, Severity
from .telegram_client import TelegramClient

logger = logging.getLogger(__name__)


class AlertDispatcher:
    """Formats guardian events as alerts and delivers them.

    Sending never raises into the caller: a failed alert is logged and
    reported as False so the loops keep running.
    """

    def __init__(self, telegram_client: TelegramClient):
        self.telegram = telegram_client

    def dispatch(self, alert: Alert) -> bool:
        """Send a single alert.

        Returns:
            True if alert was sent successfully
        """
        message = alert.format_message()
        success = self.telegram.send(message)

        log_level = logging.INFO if success else logging.ERROR
        logger.log(
            log_level,
            f"Alert {'sent' if success else 'FAILED'}: {alert.alert_type.value}"
            f"{' for ' + alert.symbol if alert.symbol else ''}"
        )
        return success

    def send_startup_alert(self, max_loss_usd: Decimal, dry_run: bool) -> bool:
        message = f"Loss Guardian started. Max loss: {max_loss_usd} USDT. State: active."
        if dry_run:
            message += " DRY RUN: positions will not be closed."
        return self.dispatch(Alert(
            alert_type=AlertType.SERVICE_STARTED,
            severity=Severity.INFO,
            symbol=None,
            message=message,
        ))

    def send_missing_stop_loss_alert(self, position: Position) -> bool:
        """Send alert for a position with no protective stop order."""
        return self.dispatch(Alert(
            alert_type=AlertType.MISSING_STOP_LOSS,
            severity=Severity.WARNING,
            symbol=position.symbol,
            message=f"Position {position.symbol} has NO STOP LOSS set!",
            details={
                "side": position.side.value,
                "pnl": position.unrealized_pnl,
            },
            suggested_action=f"Place a {position.protective_side.value} STOP_MARKET order",
        ))

    def send_close_report(self, position: Position, report: CloseReport) -> bool:
        """Send the outcome of a loss-triggered close.

        FILLED, not fully closed and unexpected status are three distinct
        alerts; a partial fill still carries risk and must look different.
        """
        details = {
            "pnl": position.unrealized_pnl,
            "order_id": report.order_id,
            "status": report.order_status,
        }

        if report.outcome == CloseOutcome.FILLED:
            alert = Alert(
                alert_type=AlertType.POSITION_CLOSED,
                severity=Severity.URGENT,
                symbol=position.symbol,
                message=f"Position {position.symbol} closed: loss limit reached.",
                details=details,
            )
        elif report.outcome == CloseOutcome.NOT_FULLY_CLOSED:
            alert = Alert(
                alert_type=AlertType.CLOSE_INCOMPLETE,
                severity=Severity.CRITICAL,
                symbol=position.symbol,
                message=f"Position {position.symbol} is NOT fully closed.",
                details=details,
                suggested_action="Check the position on the exchange",
            )
        elif report.outcome == CloseOutcome.UNEXPECTED_STATUS:
            alert = Alert(
                alert_type=AlertType.CLOSE_UNEXPECTED_STATUS,
                severity=Severity.CRITICAL,
                symbol=position.symbol,
                message=f"Close order for {position.symbol} returned an unexpected status.",
                details=details,
                suggested_action="Check the position on the exchange",
            )
        else:
            return self.send_close_failed_alert(position, report.side, report.error or "unknown error")

        return self.dispatch(alert)

    def send_close_failed_alert(self, position: Position, side: Optional[OrderSide], error: str) -> bool:
        return self.dispatch(Alert(
            alert_type=AlertType.CLOSE_FAILED,
            severity=Severity.CRITICAL,
            symbol=position.symbol,
            message=f"FAILED to close {position.symbol}. Position is still open.",
            details={
                "side": side.value if side else None,
                "pnl": position.unrealized_pnl,
                "error": error[:100],
            },
            suggested_action="Close the position manually",
        ))

    def send_degraded_alert(self, consecutive_errors: int, last_error: str) -> bool:
        return self.dispatch(Alert(
            alert_type=AlertType.SERVICE_DEGRADED,
            severity=Severity.CRITICAL,
            symbol=None,
            message=(
                f"{consecutive_errors} consecutive monitoring failures. "
                f"Positions are NOT being watched."
            ),
            details={"error": last_error[:100]},
            suggested_action="Check guardian logs immediately",
        ))
