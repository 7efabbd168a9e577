"""
CryWatch - Configuration Management

Centralized configuration using Pydantic Settings.
Environment-specific values are loaded from environment variables or `.env`.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_log_level: str = "INFO"
    log_json: bool = False  # JSON log lines instead of human-readable ones

    # --- Cry Detection ---
    # RMS level on a [0, 1] scale above which a block counts as cry activity
    cry_threshold: float = 0.1
    # Sustained activity: validate once this much time and these many blocks accumulated
    sustained_min_seconds: float = 0.5
    sustained_min_blocks: int = 20
    # Activity release: validate on the falling edge if at least this much was buffered
    release_min_seconds: float = 0.3
    release_min_blocks: int = 10
    # Confirmed-cry events kept for drain_events() before the oldest is dropped
    max_pending_events: int = 32

    # --- History Store ---
    history_max_entries: int = 1000
    # Keys match the persisted layout of existing installations
    history_key: str = "dababy_cry_history"
    audio_key_prefix: str = "dababy_audio_"
    # "memory" = process-local dict (default, nothing survives a restart)
    # "directory" = one file per key under storage_dir
    storage_backend: str = "memory"
    storage_dir: str = "./data/crywatch"
    storage_quota_bytes: int = 0  # 0 = unlimited
    audio_write_workers: int = 1

    # --- Pipeline ---
    store_audio: bool = True          # Attach PCM16 audio to persisted cries
    store_normal_cries: bool = False  # Persist cries that raised no alerts


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
