"""Configuration for Loss Guardian service."""

from decimal import Decimal
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional

from .errors import BootstrapFatal


class Settings(BaseSettings):
    """Loss Guardian configuration."""

    # Exchange - Binance USDT-M Futures
    binance_api_key: Optional[str] = Field(default=None, alias="BINANCE_API_KEY")
    binance_api_secret: Optional[str] = Field(default=None, alias="BINANCE_API_SECRET")
    base_url: str = Field(default="https://fapi.binance.com", alias="BASE_URL")
    recv_window: int = Field(default=5000, alias="RECV_WINDOW")
    request_timeout_seconds: float = Field(default=10.0, alias="REQUEST_TIMEOUT_SECONDS")

    # Telegram - Alerts and commands
    telegram_bot_token: Optional[str] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: Optional[str] = Field(default=None, alias="TELEGRAM_CHAT_ID")
    telegram_notification_interval_ms: int = Field(default=30000, alias="TELEGRAM_NOTIFICATION_INTERVAL_MS")

    # Risk Parameters
    max_loss_usd: Decimal = Field(default=Decimal("100"), alias="MAX_LOSS_USD")
    dry_run: bool = Field(default=False, alias="DRY_RUN")

    # Close order retry policy
    close_attempts: int = Field(default=3, alias="CLOSE_ATTEMPTS")
    close_retry_delay_ms: int = Field(default=500, alias="CLOSE_RETRY_DELAY_MS")

    # Monitoring
    interval_ms: int = Field(default=1000, alias="INTERVAL_MS")
    sl_check_interval_ms: int = Field(default=5000, alias="SL_CHECK_INTERVAL_MS")
    error_cooldown_threshold: int = Field(default=10, alias="ERROR_COOLDOWN_THRESHOLD")
    error_cooldown_seconds: float = Field(default=30.0, alias="ERROR_COOLDOWN_SECONDS")
    status_log_interval_seconds: float = Field(default=60.0, alias="STATUS_LOG_INTERVAL_SECONDS")
    restart_backoff_seconds: float = Field(default=10.0, alias="RESTART_BACKOFF_SECONDS")

    # Health
    health_port: int = Field(default=8080, alias="HEALTH_PORT")
    health_stale_seconds: float = Field(default=60.0, alias="HEALTH_STALE_SECONDS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000

    @property
    def sl_check_interval_seconds(self) -> float:
        return self.sl_check_interval_ms / 1000

    @property
    def notification_interval_seconds(self) -> float:
        return self.telegram_notification_interval_ms / 1000

    @property
    def close_retry_delay_seconds(self) -> float:
        return self.close_retry_delay_ms / 1000

    @property
    def telegram_enabled(self) -> bool:
        return all([self.telegram_bot_token, self.telegram_chat_id])

    def validate_required(self) -> None:
        """Raise BootstrapFatal if a credential needed to trade is missing."""
        if not self.binance_api_key:
            raise BootstrapFatal("BINANCE_API_KEY")
        if not self.binance_api_secret:
            raise BootstrapFatal("BINANCE_API_SECRET")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


settings = Settings()
