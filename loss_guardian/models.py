"""Data models for Loss Guardian."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Dict, Any, List


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class ProtectionState(str, Enum):
    """Whether a position is covered by a stop loss.

    UNKNOWN means the last check could not see both order books; it is not
    the same thing as UNPROTECTED and must never be shown as such.
    """
    PROTECTED = "protected"
    UNPROTECTED = "unprotected"
    UNKNOWN = "unknown"

    @property
    def glyph(self) -> str:
        return {
            ProtectionState.PROTECTED: "✅",
            ProtectionState.UNPROTECTED: "❌",
            ProtectionState.UNKNOWN: "❓",
        }[self]

    @property
    def label(self) -> str:
        return {
            ProtectionState.PROTECTED: "[SL]",
            ProtectionState.UNPROTECTED: "[NO SL]",
            ProtectionState.UNKNOWN: "[?]",
        }[self]


class AlertType(str, Enum):
    MISSING_STOP_LOSS = "missing_stop_loss"
    POSITION_CLOSED = "position_closed"
    CLOSE_INCOMPLETE = "close_incomplete"
    CLOSE_UNEXPECTED_STATUS = "close_unexpected_status"
    CLOSE_FAILED = "close_failed"
    SERVICE_DEGRADED = "service_degraded"
    SERVICE_STARTED = "service_started"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    URGENT = "urgent"
    CRITICAL = "critical"


class CloseOutcome(str, Enum):
    FILLED = "filled"
    NOT_FULLY_CLOSED = "not_fully_closed"
    UNEXPECTED_STATUS = "unexpected_status"
    FAILED = "failed"
    DRY_RUN = "dry_run"


# Order statuses that leave residual exposure after a close attempt.
INCOMPLETE_ORDER_STATUSES = ("PARTIALLY_FILLED", "NEW")

# Orders in this status are live on the exchange.
ACTIVE_ORDER_STATUS = "NEW"

STOP_ORDER_TYPES = ("STOP", "STOP_MARKET")


def to_decimal(value: Any) -> Decimal:
    """Parse an exchange numeric field, treating missing/garbage as zero."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _flag(value: Any) -> bool:
    # The exchange reports closePosition both as a bool and as "true"/"false".
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


@dataclass(frozen=True)
class Position:
    """Open futures position as reported by positionRisk."""
    symbol: str
    amount: Decimal
    unrealized_pnl: Decimal

    @property
    def side(self) -> PositionSide:
        return PositionSide.LONG if self.amount > 0 else PositionSide.SHORT

    @property
    def protective_side(self) -> OrderSide:
        """Order side that reduces this position."""
        return OrderSide.SELL if self.side == PositionSide.LONG else OrderSide.BUY

    def loss_exceeds(self, max_loss: Decimal) -> bool:
        """True when the position is losing at least ``max_loss``."""
        return self.unrealized_pnl < 0 and abs(self.unrealized_pnl) >= max_loss

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            symbol=data["symbol"],
            amount=to_decimal(data.get("positionAmt")),
            unrealized_pnl=to_decimal(data.get("unRealizedProfit")),
        )


@dataclass(frozen=True)
class ConditionalOrder:
    """Open algo (conditional) order."""
    algo_id: int
    symbol: str
    side: str
    quantity: Decimal
    order_type: str
    status: str
    close_position: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE_ORDER_STATUS

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ConditionalOrder":
        return cls(
            algo_id=data.get("algoId"),
            symbol=data.get("symbol", ""),
            side=data.get("side", ""),
            quantity=to_decimal(data.get("quantity")),
            order_type=data.get("orderType", ""),
            status=data.get("algoStatus", ""),
            close_position=_flag(data.get("closePosition")),
        )


@dataclass(frozen=True)
class ConventionalOrder:
    """Regular open order."""
    order_id: int
    symbol: str
    side: str
    quantity: Decimal
    order_type: str
    status: str
    close_position: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE_ORDER_STATUS

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ConventionalOrder":
        return cls(
            order_id=data.get("orderId"),
            symbol=data.get("symbol", ""),
            side=data.get("side", ""),
            quantity=to_decimal(data.get("origQty") or data.get("quantity")),
            order_type=data.get("type", ""),
            status=data.get("status", ""),
            close_position=_flag(data.get("closePosition")),
        )


@dataclass(frozen=True)
class OrderResult:
    """Response of a submitted order."""
    order_id: Optional[int]
    status: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "OrderResult":
        return cls(order_id=data.get("orderId"), status=str(data.get("status", "")))


@dataclass(frozen=True)
class ProtectionStatus:
    """Last stop-loss determination for a symbol."""
    state: ProtectionState
    checked_at: datetime


@dataclass
class GuardianState:
    """In-memory pause flag. Not persisted; a restart resumes monitoring."""
    paused: bool = False


@dataclass
class CloseReport:
    """What happened when the guardian tried to close a position."""
    symbol: str
    side: OrderSide
    quantity: Decimal
    outcome: CloseOutcome
    order_id: Optional[int] = None
    order_status: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PositionStatus:
    symbol: str
    side: PositionSide
    unrealized_pnl: Decimal
    protection: ProtectionState


@dataclass
class GuardianStatus:
    """Snapshot rendered by the command bot and the health endpoint."""
    paused: bool
    max_loss_usd: Decimal
    consecutive_errors: int
    last_tick_at: Optional[datetime]
    positions: List[PositionStatus] = field(default_factory=list)


def format_pnl(pnl: Decimal) -> str:
    """Signed two-decimal PnL, e.g. ``+12.50`` / ``-150.00``."""
    return f"+{pnl:.2f}" if pnl >= 0 else f"{pnl:.2f}"


@dataclass
class Alert:
    """Alert to be sent to the operator."""
    alert_type: AlertType
    severity: Severity
    symbol: Optional[str]
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    # Suggested action
    suggested_action: Optional[str] = None

    def format_message(self) -> str:
        """Format alert message for delivery (Telegram HTML)."""
        emoji = {
            Severity.INFO: "ℹ️",
            Severity.WARNING: "⚠️",
            Severity.URGENT: "🚨",
            Severity.CRITICAL: "🔴",
        }.get(self.severity, "")

        title = self.alert_type.value.replace("_", " ").title()
        if self.symbol:
            title = f"{title}: {self.symbol}"

        lines = [
            f"{emoji} <b>{title}</b>",
            self.message,
        ]

        if self.details.get("side"):
            lines.append(f"Side: {self.details['side']}")
        if self.details.get("pnl") is not None:
            lines.append(f"PnL: {format_pnl(self.details['pnl'])}$")
        if self.details.get("quantity") is not None:
            lines.append(f"Qty: {self.details['quantity']}")
        if self.details.get("order_id") is not None:
            lines.append(f"Order: #{self.details['order_id']}")
        if self.details.get("status"):
            lines.append(f"Status: {self.details['status']}")
        if self.details.get("error"):
            lines.append(f"Error: {self.details['error']}")
        if self.suggested_action:
            lines.append(f"Action: {self.suggested_action}")

        return "\n".join(lines)
