"""Runtime settings loaded from the environment (and a ``.env`` file)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_TOKEN_SECRET = "deskhub-development-secret"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class Settings:
    database_path: str = "deskhub.db"
    public_token_secret: str = DEFAULT_TOKEN_SECRET
    public_app_url: str = "http://localhost:5000"
    public_booking_buffer_minutes: int = 30
    public_token_min_lifetime_hours: int = 24
    check_in_early_minutes: int = 15
    admin_api_key: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_path=os.getenv("DATABASE_PATH", "deskhub.db"),
            public_token_secret=os.getenv("PUBLIC_TOKEN_SECRET", DEFAULT_TOKEN_SECRET),
            public_app_url=os.getenv("PUBLIC_APP_URL", "http://localhost:5000"),
            public_booking_buffer_minutes=_int_env("PUBLIC_BOOKING_BUFFER_MINUTES", 30),
            public_token_min_lifetime_hours=_int_env("PUBLIC_TOKEN_MIN_HOURS", 24),
            check_in_early_minutes=_int_env("CHECK_IN_EARLY_MINUTES", 15),
            admin_api_key=os.getenv("ADMIN_API_KEY") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
