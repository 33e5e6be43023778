from __future__ import annotations

import json
from typing import Annotated

from pydantic import AnyUrl
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_list(v, default: list[str]) -> list[str]:
    if v is None:
        return default
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return default
        # Allow JSON list: '["http://localhost:3000"]'
        if s.startswith("["):
            try:
                parsed = json.loads(s)
                if isinstance(parsed, list):
                    return [str(x) for x in parsed]
            except ValueError:
                pass
        # Allow comma-separated: "http://a, http://b"
        return [p.strip() for p in s.split(",") if p.strip()]
    return default


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "Tweetboard API"
    environment: str = "dev"
    log_level: str = "INFO"

    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    database_url: str = "sqlite+aiosqlite:///./tweetboard.db"

    jwt_secret_key: str = "dev-change-me"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expires_minutes: int = 60 * 24 * 7

    # Used to build absolute media URLs; relative "/uploads/..." when unset.
    public_base_url: AnyUrl | None = None
    upload_dir: str = "./uploads"
    max_upload_files: int = 9
    max_upload_bytes: int = 50 * 1024 * 1024
    video_extensions: Annotated[list[str], NoDecode] = [".mp4", ".webm", ".ogg", ".mov"]

    guest_label: str = "Guest"
    edited_marker: str = "(edited)"
    default_bio: str = "This user is lazy and hasn't written anything yet..."
    anonymous_nickname: str = "Not logged in"

    toggle_retries: int = 3

    otel_enabled: bool = False
    metrics_enabled: bool = True

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        return _split_list(v, ["*"])

    @field_validator("video_extensions", mode="before")
    @classmethod
    def _parse_video_extensions(cls, v):
        return [e.lower() if e.startswith(".") else f".{e.lower()}" for e in _split_list(v, [])]


settings = Settings()
