"""Exchange access for Loss Guardian."""

from .client import ExchangeClient

__all__ = ["ExchangeClient"]
