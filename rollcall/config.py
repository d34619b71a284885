from __future__ import annotations

import secrets
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ROLLCALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Rollcall Face Attendance"
    app_env: str = "development"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    log_dir: Path = BASE_DIR / "logs"

    database_url: str = f"sqlite:///{BASE_DIR / 'data' / 'rollcall.db'}"

    # Tokens are issued by the school's auth service; we only verify them.
    jwt_secret: str = Field(default_factory=lambda: secrets.token_urlsafe(48))
    jwt_algorithm: str = "HS256"
    access_token_minutes: int = 60

    # Descriptor settings
    descriptor_length: int = 128
    descriptor_cipher_key: str = ""

    # Recognition settings
    match_threshold: float = 0.6
    detection_floor: float = 0.5
    auto_mark_confidence: float = 0.7
    recognition_interval_seconds: float = 0.2
    detection_interval_seconds: float = 0.5
    remark_cooldown_seconds: float = 5.0
    roster_refresh_seconds: float = 20.0
    max_idle_seconds: Optional[float] = None

    # Webcam settings
    camera_index: int = 0
    frame_width: int = 640
    frame_height: int = 480
    frame_fps: int = 30
    preview_jpeg_quality: int = 80
    # Comma separated, e.g. "dshow,msmf"; empty picks a per-OS default.
    camera_backends_raw: str = ""

    cors_origins_raw: str = "http://localhost:3000"

    @property
    def camera_backends(self) -> List[str]:
        return [name.strip() for name in self.camera_backends_raw.split(",") if name.strip()]

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
