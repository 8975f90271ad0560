import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class ClientSettings(BaseSettings):
    env: str = "dev"

    # Backend
    api_base_url: str = "http://localhost:5000/api"
    ws_url: str = "ws://localhost:5000/ws"
    request_timeout: float = 30.0
    connect_timeout: float = 5.0

    # Local persistence
    storage_path: str = ".carelink/session.json"
    storage_scope: str = "@carelink:"

    # Session lifetime
    session_ttl_hours: int = 24
    remember_me_ttl_days: int = 30
    refresh_margin_minutes: int = 5

    # Realtime reconnect policy
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 5.0
    reconnect_max_attempts: int = 5

    model_config = {"env_prefix": "CARELINK_", "case_sensitive": False}

    @model_validator(mode="after")
    def _validate_backoff(self) -> "ClientSettings":
        if self.reconnect_base_delay <= 0:
            raise ValueError("CARELINK_RECONNECT_BASE_DELAY must be positive")
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError(
                "CARELINK_RECONNECT_MAX_DELAY must not be below the base delay"
            )
        if self.reconnect_max_attempts < 1:
            raise ValueError("CARELINK_RECONNECT_MAX_ATTEMPTS must be at least 1")
        return self


@lru_cache
def get_settings() -> ClientSettings:
    return ClientSettings()
