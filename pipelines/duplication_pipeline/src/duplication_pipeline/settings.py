"""
Configuration settings for the duplication pipeline.

Environment variables:
    EPISODES_DUPLICATION_ENABLED          Feature gate; stages defer themselves while false
    EPISODES_CHUNK_SIZE                   Child rows per insert batch (parts, items)
    EPISODES_OUTER_CHUNK_FACTOR           Parent chunk = factor x child chunk
    EPISODES_BLOCK_CHUNK_SIZE             Blocks per insert batch
    EPISODES_TRANSACTION_ATTEMPTS         Attempts per batched insert transaction
    EPISODES_RELEASE_DELAY_S              Delay before a deferred stage runs again
    EPISODES_THROTTLE_MAX_EXCEPTIONS      Exceptions tolerated per throttle window
    EPISODES_THROTTLE_WINDOW_S            Throttle window length
    EPISODES_WORKERS                      Worker threads running chains
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Duplication pipeline settings."""

    model_config = SettingsConfigDict(
        env_prefix="EPISODES_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    duplication_enabled: bool = True

    # Chunking
    chunk_size: int = 100
    outer_chunk_factor: int = 10
    block_chunk_size: int = 200

    # Batched insert transactions
    transaction_attempts: int = 3
    transaction_retry_wait_s: float = 0.1
    transaction_retry_wait_max_s: float = 2.0

    # Worker runtime
    release_delay_s: float = 30.0
    throttle_max_exceptions: int = 5
    throttle_window_s: float = 60.0
    workers: int = 4
    queue_name: str = "duplicate_episodes"

    @property
    def outer_chunk_size(self) -> int:
        return self.outer_chunk_factor * self.chunk_size


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
