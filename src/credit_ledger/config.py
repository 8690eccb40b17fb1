from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger configuration, read from `CREDIT_*` environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Store selection: SQL wins over Mongo; neither means in-memory
    database_url: str = ""
    mongo_uri: str = ""
    mongo_db: str = "credit_management"

    ledger_log_path: Path = Path("logs/credit_ledger.log")
    log_level: str = "INFO"

    # Signup bonus
    initial_credits_enabled: bool = True
    initial_credits_amount: int = 50
    initial_credits_valid_days: int = 365
    initial_credits_description: str = "Initial credits for meme generation"

    # Paid features
    meme_generation_cost: int = 2
    paid_paths: List[str] = ["/api/ai/meme/generate"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
