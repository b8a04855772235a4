"""
Waste Reminder Bot — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # SQLite
    DATABASE_PATH: str = "data/waste_bot.db"
    DB_TIMEOUT_SECONDS: float = 5.0

    # Reminders
    TIMEZONE: str = "Europe/Berlin"
    DEFAULT_NOTIFY_TIME: str = "18:00"
    NOTIFY_DAY_OFFSET: int = 1    # 1 = remind the day before, 0 = same day

    # Location identifiers
    LOCATION_ID_MAX_LENGTH: int = 20

    # Pickup calendar feed (Dresden waste management iCal export)
    PICKUP_CALENDAR_URL: str = (
        "https://stadtplan.dresden.de/project/cardo3Apps/IDU_DDStadtplan/abfall/ical.ashx"
    )
    PICKUP_FETCH_DAYS: int = 90
    PICKUP_REFRESH_HOUR: int = 4
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Security — empty list means the bot is open to everyone
    ALLOWED_USER_IDS: list[int] = []

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("NOTIFY_DAY_OFFSET", mode="before")
    @classmethod
    def parse_offset(cls, v: str | int) -> int:
        offset = int(v)
        if offset not in (0, 1):
            raise ValueError("NOTIFY_DAY_OFFSET must be 0 (same day) or 1 (day before)")
        return offset

    @field_validator("PICKUP_REFRESH_HOUR", mode="before")
    @classmethod
    def parse_hour(cls, v: str | int) -> int:
        hour = int(v)
        if not 0 <= hour <= 23:
            raise ValueError("PICKUP_REFRESH_HOUR must be between 0 and 23")
        return hour


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/waste_bot.db"),
        DB_TIMEOUT_SECONDS=os.getenv("DB_TIMEOUT_SECONDS", "5"),
        TIMEZONE=os.getenv("TIMEZONE", "Europe/Berlin"),
        DEFAULT_NOTIFY_TIME=os.getenv("DEFAULT_NOTIFY_TIME", "18:00"),
        NOTIFY_DAY_OFFSET=os.getenv("NOTIFY_DAY_OFFSET", "1"),
        LOCATION_ID_MAX_LENGTH=os.getenv("LOCATION_ID_MAX_LENGTH", "20"),
        PICKUP_CALENDAR_URL=os.getenv(
            "PICKUP_CALENDAR_URL", Settings.model_fields["PICKUP_CALENDAR_URL"].default,
        ),
        PICKUP_FETCH_DAYS=os.getenv("PICKUP_FETCH_DAYS", "90"),
        PICKUP_REFRESH_HOUR=os.getenv("PICKUP_REFRESH_HOUR", "4"),
        HTTP_TIMEOUT_SECONDS=os.getenv("HTTP_TIMEOUT_SECONDS", "30"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
    )


# Singleton — imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
