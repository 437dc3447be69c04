"""Configuration settings for loreweaver.

Settings are loaded from ``LOREWEAVER_*`` environment variables or a ``.env``
file. User-facing sync preferences (``SyncSettings``) are separate and live
in the local store.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_loreweaver_home() -> Path:
    """Directory holding the local database and credentials.

    ``LOREWEAVER_HOME`` overrides the default ``~/.loreweaver``.
    """
    override = os.environ.get("LOREWEAVER_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".loreweaver"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="LOREWEAVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    home: Path = Field(default_factory=get_loreweaver_home)
    db_path: Optional[Path] = None  # defaults to <home>/loreweaver.db

    # Remote document store
    remote_backend: Literal["memory", "supabase"] = "memory"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    attachments_bucket: str = "attachments"
    user_id: Optional[str] = None

    # Connectivity probe
    connectivity_url: Optional[str] = None  # defaults to <supabase_url>/rest/v1/
    connectivity_timeout: float = 5.0
    connectivity_ttl: float = 30.0

    # Sensitive field protection: a Fernet key enables real encryption,
    # otherwise provider keys are only obfuscated.
    field_key: Optional[str] = None
    obfuscation_secret: Optional[str] = None

    def resolved_db_path(self) -> Path:
        return self.db_path or (self.home / "loreweaver.db")

    def resolved_connectivity_url(self) -> Optional[str]:
        if self.connectivity_url:
            return self.connectivity_url
        if self.supabase_url:
            return f"{self.supabase_url.rstrip('/')}/rest/v1/"
        return None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
