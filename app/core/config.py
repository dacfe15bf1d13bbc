# app/core/config.py
from __future__ import annotations

import json
from functools import lru_cache
from typing import Annotated, Any, List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    # === App Info ===
    APP_NAME: str = "Vision Lens API"
    ENV: str = "dev"
    DEBUG: bool = False
    PORT: int = 3000

    # === CORS ===
    # 接受 CORS_ORIGINS 或 ALLOWED_ORIGINS（逗號分隔或 JSON list）
    CORS_ORIGINS: Annotated[List[str], NoDecode] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        validation_alias=AliasChoices("CORS_ORIGINS", "ALLOWED_ORIGINS"),
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                return [x.strip() for x in json.loads(s)]
            return [x.strip() for x in s.split(",") if x.strip()]
        return v

    # === Inference provider（OpenAI 相容 API）===
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: Optional[str] = None
    VISION_MODEL: str = "gpt-4o-mini"
    VISION_MAX_TOKENS: Optional[int] = None
    INFERENCE_TIMEOUT_SEC: float = 30.0

    # === Uploads（暫存目錄）===
    UPLOAD_DIR: str = "uploads"
    DETECT_MAX_UPLOAD_MB: int = 5
    ASK_MAX_UPLOAD_MB: int = 10
    SERVE_UPLOADS: bool = False
    UPLOAD_SWEEP_MINUTES: int = 30
    UPLOAD_MAX_AGE_MINUTES: int = 60

    # === Rate limit / Redis ===
    REDIS_URL: str = "redis://localhost:6379/0"
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SEC: int = 900
    RATE_LIMIT_MAX_PER_IP: int = 100

    # === Observability（Sentry / Monitoring） ===
    SENTRY_DSN: Optional[str] = None
    SENTRY_ENV: str = "dev"
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    @property
    def detect_max_bytes(self) -> int:
        return self.DETECT_MAX_UPLOAD_MB * 1024 * 1024

    @property
    def ask_max_bytes(self) -> int:
        return self.ASK_MAX_UPLOAD_MB * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """測試環境自動停用限流"""
    s = Settings()
    if s.ENV == "test":
        s = s.model_copy(update={"RATE_LIMIT_ENABLED": False})
    return s
