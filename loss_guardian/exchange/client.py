"""Binance USDT-M Futures REST client used by the guardian."""

import hashlib
import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx

from ..clock import SystemClock
from ..config import Settings, settings as default_settings
from ..errors import HttpStatusError, NetworkError
from ..models import (
    ConditionalOrder,
    ConventionalOrder,
    OrderResult,
    OrderSide,
    Position,
    to_decimal,
)

logger = logging.getLogger(__name__)

# Exchange error code for "timestamp outside recvWindow".
TIMESTAMP_ERROR_CODE = -1021


class ExchangeClient:
    """Signed REST access to positions, orders and instrument metadata.

    This layer never retries. Every failure surfaces as NetworkError or
    HttpStatusError and the caller decides what to do.
    """

    DEFAULT_PRECISION = 6

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[SystemClock] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.settings = settings or default_settings
        self.clock = clock or SystemClock()
        self.base_url = self.settings.base_url.rstrip("/")
        self.http = http_client or httpx.Client(timeout=self.settings.request_timeout_seconds)
        self._api_key = self.settings.binance_api_key or ""
        self._api_secret = (self.settings.binance_api_secret or "").encode()
        self._time_offset_ms: Optional[int] = None
        # symbol -> number of fractional digits allowed in order quantity
        self._precision: Dict[str, int] = {}

    def close(self):
        """Release the HTTP connection pool."""
        self.http.close()

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    @staticmethod
    def build_query(params: Dict[str, Any]) -> str:
        """Canonical query string: insertion order, percent-encoded values."""
        return urlencode(params, quote_via=quote)

    def sign(self, query: str) -> str:
        return hmac.new(self._api_secret, query.encode(), hashlib.sha256).hexdigest()

    def sync_time(self) -> int:
        """Measure the offset between the exchange clock and ours."""
        local_before = self.clock.time_ms()
        data = self._request("GET", "/fapi/v1/time")
        local_after = self.clock.time_ms()
        server_time = int(data["serverTime"])
        offset = server_time - (local_before + local_after) // 2
        self._time_offset_ms = offset
        logger.debug(f"Exchange clock offset: {offset}ms")
        return offset

    def _timestamp(self) -> int:
        # read once: another thread may reset the offset after a -1021
        offset = self._time_offset_ms
        if offset is None:
            offset = self.sync_time()
        return self.clock.time_ms() + offset

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        params = dict(params or {})

        # timestamp and recvWindow are part of the signed payload
        if signed:
            params["timestamp"] = self._timestamp()
            params["recvWindow"] = self.settings.recv_window

        query = self.build_query(params)
        if signed:
            query = f"{query}&signature={self.sign(query)}"

        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        try:
            response = self.http.request(
                method,
                url,
                headers={"X-MBX-APIKEY": self._api_key},
                timeout=self.settings.request_timeout_seconds,
            )
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path}: {e}") from e

        if not response.is_success:
            code = self._error_code(response)
            if code == TIMESTAMP_ERROR_CODE:
                logger.warning("Exchange rejected timestamp, clock offset will be re-synced")
                self._time_offset_ms = None
            raise HttpStatusError(response.status_code, response.text, code)

        try:
            return response.json()
        except ValueError:
            raise HttpStatusError(response.status_code, response.text)

    @staticmethod
    def _error_code(response: httpx.Response) -> Optional[int]:
        try:
            payload = response.json()
        except ValueError:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("code"), int):
            return payload["code"]
        return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_positions(self) -> List[Position]:
        """All positions with a non-zero amount."""
        raw = self._request("GET", "/fapi/v2/positionRisk", signed=True)
        positions = [Position.from_api(item) for item in raw]
        return [p for p in positions if p.amount != 0]

    def fetch_conditional_orders(self, symbol: str) -> List[ConditionalOrder]:
        raw = self._request("GET", "/fapi/v1/openAlgoOrders", {"symbol": symbol}, signed=True)
        if not isinstance(raw, list):
            return []
        return [ConditionalOrder.from_api(item) for item in raw]

    def fetch_conventional_orders(self, symbol: str) -> List[ConventionalOrder]:
        raw = self._request("GET", "/fapi/v1/openOrders", {"symbol": symbol}, signed=True)
        if not isinstance(raw, list):
            return []
        return [ConventionalOrder.from_api(item) for item in raw]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def cancel_all_conventional(self, symbol: str) -> None:
        self._request("DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol}, signed=True)

    def cancel_conditional(self, symbol: str, algo_id: int) -> None:
        self._request("DELETE", "/fapi/v1/algoOrder", {"symbol": symbol, "algoId": algo_id}, signed=True)

    def submit_reduce_only_market_close(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
    ) -> OrderResult:
        """Submit a reduce-only MARKET order. Only ever used to close."""
        data = self._request(
            "POST",
            "/fapi/v1/order",
            {
                "symbol": symbol,
                "side": OrderSide(side).value,
                "type": "MARKET",
                "quantity": format(quantity, "f"),
                "reduceOnly": "true",
                "newOrderRespType": "RESULT",
            },
            signed=True,
        )
        return OrderResult.from_api(data)

    # ------------------------------------------------------------------
    # Quantity precision
    # ------------------------------------------------------------------

    def _load_precision(self) -> None:
        info = self._request("GET", "/fapi/v1/exchangeInfo")
        for item in info.get("symbols", []):
            for f in item.get("filters", []):
                if f.get("filterType") == "LOT_SIZE" and f.get("stepSize"):
                    self._precision[item["symbol"]] = step_precision(f["stepSize"])
        logger.info(f"Loaded quantity precision for {len(self._precision)} symbols")

    def get_precision(self, symbol: str) -> int:
        if symbol not in self._precision:
            self._load_precision()
            if symbol not in self._precision:
                logger.warning(
                    f"{symbol}: no LOT_SIZE in exchangeInfo, "
                    f"using default precision {self.DEFAULT_PRECISION}"
                )
                self._precision[symbol] = self.DEFAULT_PRECISION
        return self._precision[symbol]

    def round_quantity(self, symbol: str, raw_quantity: Decimal) -> Decimal:
        return round_to_precision(to_decimal(raw_quantity), self.get_precision(symbol))


def step_precision(step_size: str) -> int:
    """Fractional digits in a step size string: "0.001" -> 3, "1" -> 0."""
    _, _, fraction = str(step_size).partition(".")
    return len(fraction)


def round_to_precision(quantity: Decimal, precision: int) -> Decimal:
    return quantity.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)
