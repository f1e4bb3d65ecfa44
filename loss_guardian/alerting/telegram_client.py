"""Telegram client for alerts and operator commands."""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..clock import SystemClock
from ..config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class TelegramClient:
    """Client for the Telegram Bot API (sendMessage / getUpdates)."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.Client] = None,
        clock: Optional[SystemClock] = None,
    ):
        self.settings = settings or default_settings
        self.enabled = self.settings.telegram_enabled
        self.bot_token = self.settings.telegram_bot_token
        self.chat_id = self.settings.telegram_chat_id
        self.base_url = f"https://api.telegram.org/bot{self.bot_token}"
        self.http = http_client or httpx.Client()
        self.clock = clock or SystemClock()

    _MAX_RETRIES = 3
    _RETRY_BACKOFF_SECONDS = [1, 2, 4]

    def send(self, message: str, keyboard: Optional[Dict[str, Any]] = None, parse_mode: str = "HTML") -> bool:
        """Send a message, optionally with an inline keyboard, retrying with backoff.

        Args:
            message: Message text
            keyboard: Inline keyboard markup (``{"inline_keyboard": [...]}``)
            parse_mode: 'HTML' or 'Markdown'

        Returns:
            True if successful
        """
        if not self.enabled:
            logger.warning("Telegram not configured")
            return False

        payload: Dict[str, Any] = {
            "chat_id": self.chat_id,
            "text": message,
            "parse_mode": parse_mode,
        }
        if keyboard:
            payload["reply_markup"] = json.dumps(keyboard)

        last_error = None
        for attempt in range(self._MAX_RETRIES):
            try:
                response = self.http.post(
                    f"{self.base_url}/sendMessage",
                    json=payload,
                    timeout=10.0,
                )

                if response.status_code == 200:
                    logger.debug("Telegram message sent")
                    return True
                else:
                    last_error = f"Telegram API error: {response.status_code} - {response.text}"
                    logger.error(last_error)

            except httpx.HTTPError as e:
                last_error = str(e)
                logger.error(f"Failed to send Telegram message (attempt {attempt + 1}/{self._MAX_RETRIES}): {e}")

            if attempt < self._MAX_RETRIES - 1:
                delay = self._RETRY_BACKOFF_SECONDS[attempt]
                logger.info(f"Retrying Telegram send in {delay}s...")
                self.clock.sleep(delay)

        logger.error(f"All {self._MAX_RETRIES} Telegram send attempts failed. Last error: {last_error}")
        return False

    def get_updates(self, offset: int, timeout: int = 5) -> List[Dict[str, Any]]:
        """Long-poll for updates newer than ``offset``.

        Raises httpx.HTTPError on transport failure; the caller owns the
        polling loop and its error policy.
        """
        response = self.http.get(
            f"{self.base_url}/getUpdates",
            params={"offset": offset, "timeout": timeout},
            timeout=timeout + 10.0,
        )
        data = response.json()
        if data.get("ok") and data.get("result"):
            return data["result"]
        return []

    def answer_callback_query(self, callback_query_id: str) -> None:
        try:
            self.http.post(
                f"{self.base_url}/answerCallbackQuery",
                json={"callback_query_id": callback_query_id},
                timeout=10.0,
            )
        except httpx.HTTPError as e:
            logger.debug(f"answerCallbackQuery failed: {e}")

    def close(self):
        self.http.close()
