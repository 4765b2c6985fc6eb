"""
Reminder Engine — Centralized configuration.

Loads all settings from .env and validates required keys.
Every other module imports the singleton as `from src.config import settings`.
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

    # Telegram (delivery + assignee commands)
    TELEGRAM_BOT_TOKEN: str

    # SQLite reminder store
    DATABASE_PATH: str = "data/reminders.db"
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Trigger sweeper
    SWEEP_INTERVAL_SECONDS: int = 60
    SWEEP_FIRST_DELAY_SECONDS: int = 5
    SWEEP_BATCH_LIMIT: int = 500

    # Chats that receive operator alerts (e.g. a recurring series that
    # could not be continued)
    OPERATOR_CHAT_IDS: list[int] = []

    # Display only; all stored timestamps are UTC
    TIMEZONE: str = "UTC"

    DEFAULT_PAGE_SIZE: int = 50

    @field_validator("OPERATOR_CHAT_IDS", mode="before")
    @classmethod
    def parse_chat_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(cid.strip()) for cid in v.split(",") if cid.strip()]
        return []

    @field_validator(
        "SWEEP_INTERVAL_SECONDS",
        "SWEEP_FIRST_DELAY_SECONDS",
        "SWEEP_BATCH_LIMIT",
        "DEFAULT_PAGE_SIZE",
        mode="before",
    )
    @classmethod
    def parse_non_negative_int(cls, v: str | int) -> int:
        value = int(v)
        if value < 0:
            raise ValueError(f"must be >= 0, got {value}")
        return value

    @field_validator("SWEEP_INTERVAL_SECONDS")
    @classmethod
    def check_sweep_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be at least 1 second, got {v}")
        return v


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/reminders.db"),
        STORE_TIMEOUT_SECONDS=float(os.getenv("STORE_TIMEOUT_SECONDS", "5.0")),
        SWEEP_INTERVAL_SECONDS=os.getenv("SWEEP_INTERVAL_SECONDS", "60"),
        SWEEP_FIRST_DELAY_SECONDS=os.getenv("SWEEP_FIRST_DELAY_SECONDS", "5"),
        SWEEP_BATCH_LIMIT=os.getenv("SWEEP_BATCH_LIMIT", "500"),
        OPERATOR_CHAT_IDS=os.getenv("OPERATOR_CHAT_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        DEFAULT_PAGE_SIZE=os.getenv("DEFAULT_PAGE_SIZE", "50"),
    )


# Singleton — imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
