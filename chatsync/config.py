"""Runtime settings for chatsync.

Values come from environment variables; anything unset keeps its default.
Without ``REDIS_URL`` the app runs the in-process change feed, the same way the
realtime bus used to fall back to a no-op bus.
"""
import logging
import os
from typing import Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):

    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "chatsync"
    redis_url: Optional[str] = None
    log_level: str = "INFO"
    # seconds a directory refresh waits so bursts of feed events collapse into one read
    directory_refresh_debounce: float = Field(0.05, ge=0)
    retry_attempts: int = Field(3, ge=1)
    retry_base_delay: float = Field(0.2, ge=0)
    retry_max_delay: float = Field(2.0, ge=0)
    profile_cache_size: int = Field(256, ge=1)

    @classmethod
    def from_env(cls) -> "Settings":
        values = {
            "mongodb_uri": os.getenv("MONGODB_URI"),
            "mongodb_db": os.getenv("MONGODB_DB"),
            "redis_url": os.getenv("REDIS_URL"),
            "log_level": os.getenv("CHATSYNC_LOG_LEVEL"),
            "directory_refresh_debounce": os.getenv("CHATSYNC_DIRECTORY_DEBOUNCE"),
            "retry_attempts": os.getenv("CHATSYNC_RETRY_ATTEMPTS"),
            "retry_base_delay": os.getenv("CHATSYNC_RETRY_BASE_DELAY"),
            "retry_max_delay": os.getenv("CHATSYNC_RETRY_MAX_DELAY"),
            "profile_cache_size": os.getenv("CHATSYNC_PROFILE_CACHE_SIZE"),
        }
        return cls(**{k: v for k, v in values.items() if v not in (None, "")})


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
