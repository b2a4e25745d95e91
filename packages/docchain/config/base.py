# docchain/config/base.py

from pathlib import Path
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class BaseConfig(BaseSettings):
    """
    Base configuration shared by all docchain processes.
    Contains logging and infrastructure endpoints.
    """

    # Logging
    LOG_LEVEL: str = "INFO"

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"
    CONSUMER_GROUP: str = "docchain"

    # Object Storage
    STORAGE_DIR: Path = Path("data/objects")

    # Metrics
    METRICS_PORT: int = 9092

    # Pydantic model config
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: Any) -> str:
        level = str(v).upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}")
        return level
