import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .logger import get_logger


def load_env() -> None:
    """Load .env from the working directory if present."""
    env_path = Path.cwd() / ".env"
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        get_logger().warning(f"Invalid {name}, using default", value=raw, default=default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        get_logger().warning(f"Invalid {name}, using default", value=raw, default=default)
        return default


@dataclass
class Settings:
    """Runtime policy knobs. Every field has a usable default."""

    api_url: str = "http://localhost:8000"
    api_token: Optional[str] = None
    http_timeout: float = 15.0
    page_size: int = 10
    search_debounce_ms: int = 300
    retention_seconds: float = 5.0
    large_batch_threshold: int = 1000
    large_batch_size: int = 50
    small_batch_size: int = 10
    max_concurrency: int = 8

    @property
    def search_debounce(self) -> float:
        return self.search_debounce_ms / 1000.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from FLEETOPS_* environment variables."""
        defaults = cls()
        return cls(
            api_url=os.getenv("FLEETOPS_API_URL", defaults.api_url).rstrip("/"),
            api_token=os.getenv("FLEETOPS_API_TOKEN") or None,
            http_timeout=_env_float("FLEETOPS_HTTP_TIMEOUT", defaults.http_timeout),
            page_size=_env_int("FLEETOPS_PAGE_SIZE", defaults.page_size),
            search_debounce_ms=_env_int("FLEETOPS_SEARCH_DEBOUNCE_MS", defaults.search_debounce_ms),
            retention_seconds=_env_float("FLEETOPS_RETENTION_SECONDS", defaults.retention_seconds),
            large_batch_threshold=_env_int("FLEETOPS_LARGE_BATCH_THRESHOLD", defaults.large_batch_threshold),
            large_batch_size=_env_int("FLEETOPS_LARGE_BATCH_SIZE", defaults.large_batch_size),
            small_batch_size=_env_int("FLEETOPS_SMALL_BATCH_SIZE", defaults.small_batch_size),
            max_concurrency=max(1, _env_int("FLEETOPS_MAX_CONCURRENCY", defaults.max_concurrency)),
        )
