from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Chat backend settings.

    Values come from the environment or a repo ".env" file. The ".env" file is
    ignored when APP_ENV is "test" or "ci".
    """

    _app_env = (os.getenv("APP_ENV") or "").strip().lower()
    _env_files = [] if _app_env in {"test", "ci"} else [str(Path(__file__).resolve().parent / ".env")]

    model_config = SettingsConfigDict(
        env_file=_env_files,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    app_env: str = Field(default="dev", alias="APP_ENV")
    log_level: str | None = Field(default=None, alias="LOG_LEVEL")

    database_url: str = Field(default="mongodb://localhost:27017", alias="DATABASE_URL")
    database_name: str = Field(default="chat_db", alias="DATABASE_NAME")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    cors_allow_origins: list[str] = Field(default=["*"], alias="CORS_ALLOW_ORIGINS")

    # Reject joinRoom from users who are not persisted members of the conversation.
    strict_room_join: bool = Field(default=True, alias="STRICT_ROOM_JOIN")
    unknown_author_name: str = Field(default="Unknown", alias="UNKNOWN_AUTHOR_NAME")
    history_limit: int = Field(default=200, alias="HISTORY_LIMIT")


@lru_cache
def get_settings() -> Settings:
    return Settings()
