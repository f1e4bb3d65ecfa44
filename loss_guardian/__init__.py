"""Loss Guardian - Futures Position Risk Enforcement

Watches open Binance USDT-M futures positions, alerts when a position has
no stop loss, and force-closes any position whose unrealized loss reaches
the configured cap.

A loss you cap today is a loss you never have to recover from.
"""

__version__ = "0.1.0"
