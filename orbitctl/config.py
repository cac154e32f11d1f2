"""Configuration and logging setup."""

import logging
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from ``ORBIT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ORBIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Backend
    api_url: str = "http://localhost:8000/api"
    environment_id: int = 1
    request_timeout: float = 30.0

    # Local state
    data_dir: str = ".orbitctl"

    # Realtime (Reverb speaks the Pusher protocol)
    reverb_enabled: bool = False
    reverb_host: str = "127.0.0.1"
    reverb_port: int = 8080
    reverb_scheme: Literal["http", "https"] = "http"
    reverb_app_key: str = ""
    reconnect_max_delay: float = 30.0  # seconds

    # Monitor
    poll_interval: float = 10.0
    refresh_debounce: float = 1.0

    log_level: str = "INFO"

    @property
    def reverb_url(self) -> Optional[str]:
        """WebSocket URL for the Reverb app, or None when not configured."""
        if not self.reverb_enabled or not self.reverb_app_key:
            return None
        scheme = "wss" if self.reverb_scheme == "https" else "ws"
        return (
            f"{scheme}://{self.reverb_host}:{self.reverb_port}"
            f"/app/{self.reverb_app_key}?protocol=7&client=orbitctl&version=1.0"
        )


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a single console handler."""
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    if not any(isinstance(h, logging.StreamHandler) for h in root_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root_logger.addHandler(console)
