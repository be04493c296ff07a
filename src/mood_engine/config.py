"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def _resolve_db_dir() -> Path:
    """Return (and create) the directory that holds the SQLite file."""
    d = Path(os.getenv("MOOD_ENGINE_DATA_DIR", str(_PROJECT_ROOT / "data")))
    d.mkdir(parents=True, exist_ok=True)
    return d


_DB_DIR = _resolve_db_dir()
_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_DB_DIR / 'mood_engine.db'}"


class Settings(BaseSettings):
    """All runtime configuration for the mood calibration engine.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Variable names are the upper-cased field
    names (``DATABASE_URL``, ``CALIBRATION_LAMBDA``, ...).
    """

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ──────────────────────────────────────────────
    database_url: str = _DEFAULT_DB_URL

    # ── API server ────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = int(os.getenv("PORT", "8000"))

    # ── CORS ──────────────────────────────────────────────────
    cors_origins: str = "*"  # comma-separated origins, or "*" for all

    # ── Logging ───────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ── Text-understanding service (embeddings) ───────────────
    embedding_api_url: str = "https://api.openai.com/v1/embeddings"
    embedding_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536  # must match the entry embeddings
    embedding_timeout: float = 30.0

    # ── Baseline normalisation ────────────────────────────────
    baseline_half_life_days: float = 45.0

    # ── Calibration training ──────────────────────────────────
    calibration_lambda: float = 1.0
    calibration_max_features: int = 30
    calibration_min_training_n: int = 10
    calibration_bootstrap_samples: int = 100

    # ── Retrieval & blending ──────────────────────────────────
    retrieval_limit: int = 20
    retrieval_within_days: int = 180
    blend_alpha_min: float = 0.25
    blend_alpha_max: float = 0.75
    blend_disagreement_cap: float | None = None  # None = uncapped


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
