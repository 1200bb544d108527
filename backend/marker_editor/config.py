"""
Configuration settings using Pydantic Settings.
"""

from pathlib import Path
from pydantic import model_validator
from pydantic_settings import BaseSettings
from functools import lru_cache

BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    PLEX_DATABASE_PATH: str = ""
    BACKUP_DATABASE_PATH: str = "Backup/markerActions.db"

    # Don't repurpose taggings.thumb_url for modified/user-created tracking.
    PURE_MODE: bool = False
    BACKUP_ACTIONS: bool = True
    EXTENDED_MARKER_STATS: bool = True

    CORS_ORIGINS: list[str] = [
        "http://localhost:3232",
        "http://127.0.0.1:3232",
    ]

    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }

    @model_validator(mode="after")
    def resolve_relative_paths(self):
        backup_path = Path(self.BACKUP_DATABASE_PATH)
        if not backup_path.is_absolute():
            self.BACKUP_DATABASE_PATH = str((BASE_DIR / backup_path).resolve())

        if self.PLEX_DATABASE_PATH:
            self.PLEX_DATABASE_PATH = str(Path(self.PLEX_DATABASE_PATH).expanduser())

        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    :return: Cached Settings instance
    :rtype: Settings
    """
    return Settings()


settings = get_settings()
