"""Telegram command bot: /status /pause /resume /help."""

import logging
from typing import Any, Dict, Optional

import httpx

from ..clock import SystemClock
from ..models import GuardianStatus, format_pnl
from .telegram_client import TelegramClient

logger = logging.getLogger(__name__)


def format_status(status: GuardianStatus) -> str:
    """Render a status snapshot. Protection keeps all three glyphs."""
    if not status.positions:
        positions_text = "No positions"
    else:
        positions_text = "\n".join(
            f"{p.symbol}: {format_pnl(p.unrealized_pnl)}$ {p.protection.glyph}"
            for p in status.positions
        )

    return (
        f"<b>📊 Status</b>\n\n"
        f"State: {'⏸ PAUSED' if status.paused else '✅ Active'}\n"
        f"Max loss: <b>{status.max_loss_usd} USDT</b>\n"
        f"Errors: {status.consecutive_errors}\n\n"
        f"<b>Positions:</b>\n<code>{positions_text}</code>"
    )


class CommandBot:
    """Long-polls Telegram and routes operator commands to the guardian.

    ``guardian`` needs ``get_status()``, ``pause()``, ``resume()`` and
    ``is_paused``.
    """

    POLL_TIMEOUT_SECONDS = 5
    POLL_PAUSE_SECONDS = 1

    def __init__(self, telegram: TelegramClient, guardian, clock: Optional[SystemClock] = None):
        self.telegram = telegram
        self.guardian = guardian
        self.clock = clock or SystemClock()
        self.last_update_id = 0
        self._running = False

    def run(self):
        if not self.telegram.enabled:
            return
        self._running = True
        logger.info("Telegram command bot started")
        while self._running:
            self.poll_once()
            self.clock.sleep(self.POLL_PAUSE_SECONDS)

    def stop(self):
        self._running = False

    def poll_once(self):
        try:
            updates = self.telegram.get_updates(self.last_update_id + 1, self.POLL_TIMEOUT_SECONDS)
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Telegram polling failed: {e}")
            return

        for update in updates:
            update_id = update.get("update_id", 0)
            if update_id > self.last_update_id:
                self.last_update_id = update_id
            try:
                self.handle_update(update)
            except Exception as e:
                logger.error(f"Failed to handle Telegram update {update_id}: {e}", exc_info=True)

    def handle_update(self, update: Dict[str, Any]):
        callback = update.get("callback_query")
        if callback:
            self._handle_callback(callback)
            return

        message = update.get("message") or {}
        text = message.get("text")
        if not text:
            return

        chat_id = str(message.get("chat", {}).get("id", ""))
        if chat_id != str(self.telegram.chat_id):
            logger.warning(f"Ignoring command from unknown chat {chat_id}")
            return

        command = text.strip().split()[0].lower()
        # "/status@MyBot" in group chats
        command = command.split("@")[0]

        if command in ("/start", "/help"):
            self.cmd_help()
        elif command == "/status":
            self.cmd_status()
        elif command == "/pause":
            self.cmd_pause()
        elif command == "/resume":
            self.cmd_resume()

    def _handle_callback(self, callback: Dict[str, Any]):
        data = callback.get("data")
        if not data:
            return

        self.telegram.answer_callback_query(callback.get("id"))

        chat_id = str(((callback.get("message") or {}).get("chat") or {}).get("id", ""))
        if chat_id and chat_id != str(self.telegram.chat_id):
            logger.warning(f"Ignoring callback from unknown chat {chat_id}")
            return

        if data == "status":
            self.cmd_status()
        elif data == "pause":
            self.cmd_pause()
        elif data == "resume":
            self.cmd_resume()

    def _toggle_button(self) -> Dict[str, str]:
        if self.guardian.is_paused:
            return {"text": "▶️ Resume", "callback_data": "resume"}
        return {"text": "⏸ Pause", "callback_data": "pause"}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def cmd_help(self):
        status = self.guardian.get_status()
        self.telegram.send(
            f"<b>Loss Guardian</b>\n\n"
            f"<b>Commands:</b>\n"
            f"/status - state and positions\n"
            f"/pause - stop closing positions\n"
            f"/resume - resume closing positions\n\n"
            f"Max loss: {status.max_loss_usd} USDT",
            {
                "inline_keyboard": [
                    [{"text": "📊 Status", "callback_data": "status"}],
                    [self._toggle_button()],
                ],
            },
        )

    def cmd_status(self):
        self.telegram.send(
            format_status(self.guardian.get_status()),
            {
                "inline_keyboard": [
                    [{"text": "🔄 Refresh", "callback_data": "status"}],
                    [self._toggle_button()],
                ],
            },
        )

    def cmd_pause(self):
        self.guardian.pause()
        self.telegram.send(
            "⏸ <b>Monitoring paused</b>\n\nPositions will NOT be closed automatically.",
            {"inline_keyboard": [[{"text": "▶️ Resume", "callback_data": "resume"}]]},
        )
        logger.info("Monitoring paused via Telegram")

    def cmd_resume(self):
        self.guardian.resume()
        status = self.guardian.get_status()
        self.telegram.send(
            f"▶️ <b>Monitoring resumed</b>\n\nMax loss: {status.max_loss_usd} USDT",
            {"inline_keyboard": [[{"text": "📊 Status", "callback_data": "status"}]]},
        )
        logger.info("Monitoring resumed via Telegram")
