"""Alerting module for Loss Guardian."""

from .telegram_client import TelegramClient
from .dispatcher import AlertDispatcher
from .commands import CommandBot

__all__ = ["TelegramClient", "AlertDispatcher", "CommandBot"]
