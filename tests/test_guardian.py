"""
Tests for GuardianController: pause/resume, status aggregation and health.

The exchange is replaced with an in-memory fake and Telegram with a mock,
so nothing here touches the network.
"""

import unittest
from decimal import Decimal
from unittest import mock

from loss_guardian.guardian import GuardianController
from loss_guardian.models import Position, PositionSide, ProtectionState
from tests.fakes import FakeClock, FakeExchange, make_settings, stop_order


def _make_guardian(**overrides):
    clock = FakeClock()
    exchange = FakeExchange()
    exchange.precision["BTCUSDT"] = 3
    telegram = mock.MagicMock()
    telegram.enabled = False
    guardian = GuardianController(
        settings=make_settings(**overrides),
        client=exchange,
        telegram=telegram,
        clock=clock,
    )
    return guardian, exchange, telegram, clock


class TestPauseResume(unittest.TestCase):

    def setUp(self):
        self.guardian, self.exchange, self.telegram, self.clock = _make_guardian()
        self.exchange.positions = [
            Position(symbol="BTCUSDT", amount=Decimal("0.1"), unrealized_pnl=Decimal("-150")),
        ]

    def test_starts_active(self):
        self.assertFalse(self.guardian.is_paused)

    def test_pause_blocks_close_but_status_still_reports(self):
        self.guardian.pause()
        self.guardian.monitor.run_once()

        self.assertNotIn("submit_reduce_only_market_close", self.exchange.call_names())
        self.assertNotIn("cancel_all_conventional", self.exchange.call_names())

        status = self.guardian.get_status()
        self.assertTrue(status.paused)
        self.assertEqual(len(status.positions), 1)
        self.assertEqual(status.positions[0].symbol, "BTCUSDT")
        self.assertEqual(status.positions[0].unrealized_pnl, Decimal("-150"))

    def test_pause_does_not_stop_detection(self):
        self.guardian.pause()
        self.guardian.monitor.run_once()
        self.guardian.detector.check_once()

        self.assertEqual(self.guardian.detector.get_state("BTCUSDT"), ProtectionState.UNPROTECTED)

    def test_resume_closes_on_next_tick(self):
        self.guardian.pause()
        self.guardian.monitor.run_once()
        self.guardian.resume()
        self.guardian.monitor.run_once()

        self.assertIn("submit_reduce_only_market_close", self.exchange.call_names())


class TestStatus(unittest.TestCase):

    def setUp(self):
        self.guardian, self.exchange, self.telegram, self.clock = _make_guardian(max_loss_usd=Decimal("250"))

    def test_status_keeps_three_protection_states(self):
        self.exchange.positions = [
            Position(symbol="BTCUSDT", amount=Decimal("0.1"), unrealized_pnl=Decimal("5")),
            Position(symbol="ETHUSDT", amount=Decimal("1"), unrealized_pnl=Decimal("-5")),
            Position(symbol="SOLUSDT", amount=Decimal("-3"), unrealized_pnl=Decimal("1")),
        ]
        self.exchange.conditional["BTCUSDT"] = [stop_order()]
        self.guardian.monitor.run_once()
        self.guardian.detector.check_once()

        # a later SOLUSDT check cannot read open orders
        self.exchange.fail_conventional = True
        sol = self.exchange.positions[2]
        self.guardian.detector._record(sol, self.guardian.detector.detect(sol))

        states = {p.symbol: p.protection for p in self.guardian.get_status().positions}
        self.assertEqual(states["BTCUSDT"], ProtectionState.PROTECTED)
        self.assertEqual(states["ETHUSDT"], ProtectionState.UNPROTECTED)
        self.assertEqual(states["SOLUSDT"], ProtectionState.UNKNOWN)

    def test_status_fields(self):
        self.exchange.positions = [
            Position(symbol="SOLUSDT", amount=Decimal("-3"), unrealized_pnl=Decimal("1")),
        ]
        self.guardian.monitor.run_once()

        status = self.guardian.get_status()
        self.assertEqual(status.max_loss_usd, Decimal("250"))
        self.assertEqual(status.consecutive_errors, 0)
        self.assertEqual(status.last_tick_at, self.clock.now())
        self.assertEqual(status.positions[0].side, PositionSide.SHORT)
        # never checked yet
        self.assertEqual(status.positions[0].protection, ProtectionState.UNKNOWN)

    def test_error_count_reported(self):
        self.exchange.fail_positions = True
        self.guardian.monitor.run_once()
        self.assertEqual(self.guardian.get_status().consecutive_errors, 1)
        self.assertEqual(self.guardian.consecutive_errors, 1)


class TestHealth(unittest.TestCase):

    def setUp(self):
        self.guardian, self.exchange, self.telegram, self.clock = _make_guardian(
            health_stale_seconds=60, error_cooldown_threshold=3,
        )

    def test_unhealthy_before_first_tick(self):
        self.assertFalse(self.guardian.is_healthy())
        self.assertIsNone(self.guardian.last_tick_at)

    def test_healthy_after_successful_tick(self):
        self.guardian.monitor.run_once()
        self.assertTrue(self.guardian.is_healthy())

    def test_unhealthy_when_last_tick_is_stale(self):
        self.guardian.monitor.run_once()
        self.clock.advance(61)
        self.assertFalse(self.guardian.is_healthy())

    def test_unhealthy_at_error_threshold(self):
        self.guardian.monitor.run_once()
        self.exchange.fail_positions = True
        for _ in range(3):
            self.guardian.monitor.run_once()
        self.clock.current = self.guardian.last_tick_at
        self.assertFalse(self.guardian.is_healthy())


class TestLifecycle(unittest.TestCase):

    def test_start_sends_startup_alert_and_runs_monitor(self):
        guardian, exchange, telegram, clock = _make_guardian()
        guardian.detector.run = mock.MagicMock()
        guardian.monitor.run = mock.MagicMock()

        guardian.start()

        telegram.send.assert_called_once()
        self.assertIn("Loss Guardian started", telegram.send.call_args[0][0])
        guardian.monitor.run.assert_called_once()

    def test_stop_is_idempotent(self):
        guardian, exchange, telegram, clock = _make_guardian()
        guardian.stop()  # never started

        guardian.detector.run = mock.MagicMock()
        guardian.monitor.run = mock.MagicMock()
        guardian.start()
        guardian.stop()
        guardian.stop()

        self.assertFalse(guardian.monitor._running)
        self.assertFalse(guardian.detector._running)


if __name__ == "__main__":
    unittest.main()
