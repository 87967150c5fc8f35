"""
Configuration settings for the upload client and the reference server
"""
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

MIB = 1024 * 1024
HARD_MAX_CONCURRENCY = 8


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    """Application settings"""

    # Storage API
    API_BASE_URL: str = os.getenv("UPLOADER_API_BASE_URL", "http://localhost:8000")
    API_PREFIX: str = os.getenv("UPLOADER_API_PREFIX", "/api/assets")
    FOLDER_PATH: str = os.getenv("UPLOADER_FOLDER_PATH", "")
    REQUEST_TIMEOUT: float = float(os.getenv("UPLOADER_REQUEST_TIMEOUT", "30"))

    # Chunking / hashing
    CHUNK_SIZE: int = int(os.getenv("UPLOADER_CHUNK_SIZE", str(5 * MIB)))
    HASH_WINDOW_SIZE: int = int(os.getenv("UPLOADER_HASH_WINDOW_SIZE", str(5 * MIB)))
    HASH_ALGORITHM: str = os.getenv("UPLOADER_HASH_ALGORITHM", "md5")

    # Scheduling / retries
    MAX_CONCURRENCY: int = int(os.getenv("UPLOADER_MAX_CONCURRENCY", "4"))
    MAX_CHUNK_RETRIES: int = int(os.getenv("UPLOADER_MAX_CHUNK_RETRIES", "3"))
    MAX_MERGE_RETRIES: int = int(os.getenv("UPLOADER_MAX_MERGE_RETRIES", "3"))
    RETRY_BASE_DELAY: float = float(os.getenv("UPLOADER_RETRY_BASE_DELAY", "1.0"))
    STATUS_POLL_ATTEMPTS: int = int(os.getenv("UPLOADER_STATUS_POLL_ATTEMPTS", "5"))
    STATUS_POLL_INTERVAL: float = float(os.getenv("UPLOADER_STATUS_POLL_INTERVAL", "1.0"))

    # Behaviour switches
    CHECK_EXISTENCE: bool = _env_bool("UPLOADER_CHECK_EXISTENCE", "false")
    DIRECT_UPLOAD: bool = _env_bool("UPLOADER_DIRECT_UPLOAD", "true")
    PROTOCOL: str = os.getenv("UPLOADER_PROTOCOL", "session")
    STATE_DIR: Optional[str] = os.getenv("UPLOADER_STATE_DIR") or None

    # Reference server
    SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
    SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Application
    APP_TITLE: str = "Resumable Upload Reference Server"
    APP_DESCRIPTION: str = "In-memory storage backend speaking the chunked upload protocol"
    APP_VERSION: str = "1.0.0"


settings = Settings()


@dataclass
class UploaderConfig:
    """
    Per-orchestrator configuration.

    Every field defaults to the environment-driven ``settings``; callers
    override what they need. ``max_concurrency`` is clamped to 1..8.
    """
    api_prefix: str = field(default_factory=lambda: settings.API_PREFIX)
    folder_path: str = field(default_factory=lambda: settings.FOLDER_PATH)
    chunk_size: int = field(default_factory=lambda: settings.CHUNK_SIZE)
    hash_window_size: int = field(default_factory=lambda: settings.HASH_WINDOW_SIZE)
    hash_algorithm: str = field(default_factory=lambda: settings.HASH_ALGORITHM)
    max_concurrency: int = field(default_factory=lambda: settings.MAX_CONCURRENCY)
    max_chunk_retries: int = field(default_factory=lambda: settings.MAX_CHUNK_RETRIES)
    max_merge_retries: int = field(default_factory=lambda: settings.MAX_MERGE_RETRIES)
    retry_base_delay: float = field(default_factory=lambda: settings.RETRY_BASE_DELAY)
    status_poll_attempts: int = field(default_factory=lambda: settings.STATUS_POLL_ATTEMPTS)
    status_poll_interval: float = field(default_factory=lambda: settings.STATUS_POLL_INTERVAL)
    check_existence: bool = field(default_factory=lambda: settings.CHECK_EXISTENCE)
    direct_upload: bool = field(default_factory=lambda: settings.DIRECT_UPLOAD)
    protocol: str = field(default_factory=lambda: settings.PROTOCOL)

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.hash_window_size <= 0:
            raise ValueError(f"hash_window_size must be positive, got {self.hash_window_size}")
        if self.max_chunk_retries < 0 or self.max_merge_retries < 0:
            raise ValueError("retry ceilings must not be negative")
        if self.status_poll_attempts < 1:
            raise ValueError("status_poll_attempts must be at least 1")
        if self.protocol not in ("session", "legacy"):
            raise ValueError(f"Unknown protocol: {self.protocol!r}")
        self.max_concurrency = max(1, min(HARD_MAX_CONCURRENCY, self.max_concurrency))

    @classmethod
    def from_settings(cls, **overrides) -> "UploaderConfig":
        """Build a config from ``settings``, ignoring ``None`` overrides."""
        return cls(**{k: v for k, v in overrides.items() if v is not None})
