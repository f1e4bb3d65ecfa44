"""Tests for the Binance futures REST client (signing, parsing, errors, rounding)."""

import hashlib
import hmac
from decimal import Decimal
from urllib.parse import parse_qsl

import httpx
import pytest

from loss_guardian.errors import HttpStatusError, NetworkError
from loss_guardian.exchange.client import (
    ExchangeClient,
    round_to_precision,
    step_precision,
)
from loss_guardian.models import OrderSide, PositionSide
from tests.fakes import FakeClock, make_settings

SERVER_OFFSET_MS = 250

EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001"},
            ],
        },
        {
            "symbol": "DOGEUSDT",
            "filters": [{"filterType": "LOT_SIZE", "stepSize": "1"}],
        },
    ]
}


class FakeBinance:
    """httpx handler that routes by path and records requests."""

    def __init__(self, clock):
        self.clock = clock
        self.routes = {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/fapi/v1/time":
            return httpx.Response(200, json={"serverTime": self.clock.time_ms() + SERVER_OFFSET_MS})
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, text="not found")
        if callable(route):
            return route(request)
        return route

    def paths(self):
        return [r.url.path for r in self.requests]


class ResettingClock(FakeClock):
    """Runs ``on_read`` on every time_ms() call, like a concurrent offset reset."""

    on_read = None

    def time_ms(self) -> int:
        if self.on_read:
            self.on_read()
        return super().time_ms()


def _raw_query(request: httpx.Request) -> str:
    return request.url.query.decode()


class TestExchangeClient:

    def setup_method(self):
        self.clock = FakeClock()
        self.settings = make_settings(recv_window=5000)
        self.binance = FakeBinance(self.clock)
        self.client = ExchangeClient(
            self.settings,
            clock=self.clock,
            http_client=httpx.Client(transport=httpx.MockTransport(self.binance)),
        )

    def _last(self, path):
        return [r for r in self.binance.requests if r.url.path == path][-1]

    # -- signing --------------------------------------------------------

    def test_signed_request_carries_timestamp_recv_window_and_trailing_signature(self):
        self.binance.routes[("GET", "/fapi/v1/openOrders")] = httpx.Response(200, json=[])

        self.client.fetch_conventional_orders("BTCUSDT")

        request = self._last("/fapi/v1/openOrders")
        query = _raw_query(request)
        unsigned, _, signature = query.rpartition("&signature=")
        expected = hmac.new(b"test-secret", unsigned.encode(), hashlib.sha256).hexdigest()

        assert signature == expected
        params = parse_qsl(unsigned)
        assert [k for k, _ in params] == ["symbol", "timestamp", "recvWindow"]
        assert dict(params)["timestamp"] == str(self.clock.time_ms() + SERVER_OFFSET_MS)
        assert dict(params)["recvWindow"] == "5000"
        assert request.headers["X-MBX-APIKEY"] == "test-key"

    def test_time_is_synced_once(self):
        self.binance.routes[("GET", "/fapi/v1/openOrders")] = httpx.Response(200, json=[])

        self.client.fetch_conventional_orders("BTCUSDT")
        self.client.fetch_conventional_orders("ETHUSDT")

        assert self.binance.paths().count("/fapi/v1/time") == 1

    def test_timestamp_error_forces_resync(self):
        self.binance.routes[("GET", "/fapi/v1/openOrders")] = httpx.Response(
            400, json={"code": -1021, "msg": "Timestamp for this request is outside of the recvWindow."}
        )

        with pytest.raises(HttpStatusError) as exc:
            self.client.fetch_conventional_orders("BTCUSDT")
        assert exc.value.code == -1021

        self.binance.routes[("GET", "/fapi/v1/openOrders")] = httpx.Response(200, json=[])
        self.client.fetch_conventional_orders("BTCUSDT")
        assert self.binance.paths().count("/fapi/v1/time") == 2

    def test_offset_reset_by_another_thread_mid_timestamp(self):
        self.client.sync_time()
        clock = ResettingClock(self.clock.current)
        clock.on_read = lambda: setattr(self.client, "_time_offset_ms", None)
        self.client.clock = clock

        timestamp = self.client._timestamp()

        assert timestamp == int(clock.current.timestamp() * 1000) + SERVER_OFFSET_MS

    def test_values_are_percent_encoded(self):
        assert ExchangeClient.build_query({"a": "x y/z", "b": 1}) == "a=x%20y%2Fz&b=1"

    # -- reads ----------------------------------------------------------

    def test_fetch_positions_filters_zero_amounts(self):
        self.binance.routes[("GET", "/fapi/v2/positionRisk")] = httpx.Response(200, json=[
            {"symbol": "BTCUSDT", "positionAmt": "0.100", "unRealizedProfit": "-150.5"},
            {"symbol": "ETHUSDT", "positionAmt": "0.000", "unRealizedProfit": "0.0"},
            {"symbol": "SOLUSDT", "positionAmt": "-3", "unRealizedProfit": "4.2"},
        ])

        positions = self.client.fetch_positions()

        assert [p.symbol for p in positions] == ["BTCUSDT", "SOLUSDT"]
        assert positions[0].amount == Decimal("0.1")
        assert positions[0].unrealized_pnl == Decimal("-150.5")
        assert positions[0].side == PositionSide.LONG
        assert positions[1].side == PositionSide.SHORT

    def test_fetch_conditional_orders_non_list_payload_is_empty(self):
        self.binance.routes[("GET", "/fapi/v1/openAlgoOrders")] = httpx.Response(200, json={"orders": []})
        assert self.client.fetch_conditional_orders("BTCUSDT") == []

    def test_fetch_conditional_orders_parses_algo_fields(self):
        self.binance.routes[("GET", "/fapi/v1/openAlgoOrders")] = httpx.Response(200, json=[
            {
                "algoId": 77,
                "symbol": "BTCUSDT",
                "side": "SELL",
                "quantity": "0",
                "orderType": "STOP_MARKET",
                "algoStatus": "NEW",
                "closePosition": True,
            }
        ])

        (order,) = self.client.fetch_conditional_orders("BTCUSDT")

        assert order.algo_id == 77
        assert order.close_position is True
        assert dict(parse_qsl(_raw_query(self._last("/fapi/v1/openAlgoOrders"))))["symbol"] == "BTCUSDT"

    # -- mutations ------------------------------------------------------

    def test_submit_close_sends_reduce_only_market(self):
        self.binance.routes[("POST", "/fapi/v1/order")] = httpx.Response(
            200, json={"orderId": 991, "status": "FILLED"}
        )

        result = self.client.submit_reduce_only_market_close("BTCUSDT", OrderSide.SELL, Decimal("0.100"))

        assert result.order_id == 991
        assert result.status == "FILLED"
        params = dict(parse_qsl(_raw_query(self._last("/fapi/v1/order"))))
        assert params["side"] == "SELL"
        assert params["type"] == "MARKET"
        assert params["quantity"] == "0.100"
        assert params["reduceOnly"] == "true"
        assert params["newOrderRespType"] == "RESULT"

    def test_cancel_endpoints(self):
        self.binance.routes[("DELETE", "/fapi/v1/allOpenOrders")] = httpx.Response(200, json={"code": 200})
        self.binance.routes[("DELETE", "/fapi/v1/algoOrder")] = httpx.Response(200, json={"algoId": 5})

        self.client.cancel_all_conventional("BTCUSDT")
        self.client.cancel_conditional("BTCUSDT", 5)

        params = dict(parse_qsl(_raw_query(self._last("/fapi/v1/algoOrder"))))
        assert params["algoId"] == "5"
        assert params["symbol"] == "BTCUSDT"

    # -- errors ---------------------------------------------------------

    def test_non_success_status_raises_with_truncated_body(self):
        self.binance.routes[("GET", "/fapi/v2/positionRisk")] = httpx.Response(500, text="x" * 1000)

        with pytest.raises(HttpStatusError) as exc:
            self.client.fetch_positions()

        assert exc.value.status_code == 500
        assert len(exc.value.body) == 200

    def test_transport_failure_raises_network_error(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        self.binance.routes[("GET", "/fapi/v2/positionRisk")] = boom

        with pytest.raises(NetworkError):
            self.client.fetch_positions()

    def test_failed_call_is_not_retried(self):
        self.binance.routes[("POST", "/fapi/v1/order")] = httpx.Response(503, text="busy")

        with pytest.raises(HttpStatusError):
            self.client.submit_reduce_only_market_close("BTCUSDT", OrderSide.SELL, Decimal("1"))

        assert self.binance.paths().count("/fapi/v1/order") == 1

    # -- precision ------------------------------------------------------

    def test_round_quantity_uses_lot_size_step(self):
        self.binance.routes[("GET", "/fapi/v1/exchangeInfo")] = httpx.Response(200, json=EXCHANGE_INFO)

        assert self.client.round_quantity("BTCUSDT", Decimal("0.12345")) == Decimal("0.123")
        assert self.client.round_quantity("DOGEUSDT", Decimal("150.6")) == Decimal("151")

    def test_exchange_info_fetched_once(self):
        self.binance.routes[("GET", "/fapi/v1/exchangeInfo")] = httpx.Response(200, json=EXCHANGE_INFO)

        self.client.round_quantity("BTCUSDT", Decimal("1"))
        self.client.round_quantity("DOGEUSDT", Decimal("1"))
        self.client.round_quantity("BTCUSDT", Decimal("2"))

        assert self.binance.paths().count("/fapi/v1/exchangeInfo") == 1

    def test_unknown_symbol_defaults_to_six_digits_and_is_cached(self):
        self.binance.routes[("GET", "/fapi/v1/exchangeInfo")] = httpx.Response(200, json=EXCHANGE_INFO)

        assert self.client.round_quantity("NEWUSDT", Decimal("1.23456789")) == Decimal("1.234568")
        self.client.round_quantity("NEWUSDT", Decimal("1"))

        assert self.binance.paths().count("/fapi/v1/exchangeInfo") == 1

    def test_exchange_info_is_unsigned(self):
        self.binance.routes[("GET", "/fapi/v1/exchangeInfo")] = httpx.Response(200, json=EXCHANGE_INFO)
        self.client.round_quantity("BTCUSDT", Decimal("1"))
        assert "signature" not in _raw_query(self._last("/fapi/v1/exchangeInfo"))


class TestRounding:

    @pytest.mark.parametrize("step,expected", [("0.001", 3), ("1", 0), ("0.1", 1), ("0.00010000", 8)])
    def test_step_precision(self, step, expected):
        assert step_precision(step) == expected

    @pytest.mark.parametrize("raw,precision", [
        (Decimal("0.1"), 3),
        (Decimal("0.123456789"), 3),
        (Decimal("1234.5"), 0),
        (Decimal("0.0000005"), 6),
    ])
    def test_rounding_is_idempotent(self, raw, precision):
        once = round_to_precision(raw, precision)
        assert round_to_precision(once, precision) == once

    def test_rounds_half_up(self):
        assert round_to_precision(Decimal("0.0125"), 3) == Decimal("0.013")
