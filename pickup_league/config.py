"""Configuration settings for the pickup_league service."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PICKUP_LEAGUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_path: str = Field(default="pickup_league.db", description="SQLite database file")
    league_timezone: str = Field(
        default="America/Los_Angeles",
        description="Time zone session dates and buy windows are expressed in",
    )
    lock_timeout_seconds: float = Field(
        default=5.0,
        description="How long a submit waits for the ledger write lock before giving up",
    )
    default_buy_day_minimum: int = Field(default=6, description="Buy window lead time in days")
    log_level: str = Field(default="INFO", description="Logging level")
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def to_league_time(instant: datetime, tz_name: Optional[str] = None) -> datetime:
    """Convert a naive UTC ``instant`` to naive league-local wall-clock time."""

    zone = ZoneInfo(tz_name or get_settings().league_timezone)
    return instant.replace(tzinfo=timezone.utc).astimezone(zone).replace(tzinfo=None)


def league_now(tz_name: Optional[str] = None) -> datetime:
    """Current wall-clock time in the league's time zone, without tzinfo.

    Session dates are stored as naive league-local datetimes, so comparisons
    against them must use the same representation. Stored timestamps use
    naive UTC instead.
    """

    return to_league_time(datetime.now(timezone.utc).replace(tzinfo=None), tz_name)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or get_settings().log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


__all__ = ["Settings", "configure_logging", "get_settings", "league_now", "to_league_time"]
