from __future__ import annotations

from typing import Optional

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    directory_url: str = "http://localhost:54321/rest/v1"
    directory_api_key: Optional[str] = None
    directory_timeout: float = 10.0

    # Origin used for confirmation and gallery links
    public_base_url: str = "http://localhost:5173"

    # Admission window around the scheduled start
    admission_opens_before_minutes: int = 0
    admission_closes_after_minutes: int = 180

    scan_display_seconds: float = 3.0
    kiosk_countdown_steps: int = 10
    kiosk_step_seconds: float = 1.0

    # Optional: organizer gets a webhook call per confirmed guest
    notify_webhook_url: Optional[str] = None

    search_match_limit: int = 5
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "GUESTCHECK_"


@lru_cache
def get_settings() -> Settings:
    return Settings()
