"""
Central configuration for the essay exam service.
All values are read from environment variables (or a local .env file).
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ──────────────────────────────────────────────────
    database_url: str = "sqlite:///./essay_exams.db"

    # ── HTTP session ──────────────────────────────────────────────
    session_secret: str = "CHANGE_ME_TO_A_RANDOM_SECRET"

    # ── Gemini grading collaborator ───────────────────────────────
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: Optional[str] = None   # override the generateContent endpoint

    grading_timeout_seconds: float = 60.0   # per collaborator call
    grading_concurrency: int = 3            # problems graded at once on finish

    # ── Attempts & proctoring ─────────────────────────────────────
    proctoring_write_retries: int = 3
    attempt_sweep_seconds: int = 0          # >0 enables the overdue-attempt sweep

    # ── Seed admin (created on startup when no admin exists) ──────
    seed_admin_username: str = "admin"
    seed_admin_password: str = "admin123"

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
