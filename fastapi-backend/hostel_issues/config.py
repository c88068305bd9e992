"""
Centralized settings for the hostel issue tracker backend.

Provides a lightweight wrapper around environment variables (with `.env`
support for local development) so the rest of the codebase can import a single
`get_settings()` helper when configuration is needed. Domain lists (blocks,
floors, categories) and the collection layout live in `TrackerConfig`, which
is built once and handed to each service explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple
import os

from dotenv import dotenv_values


DEFAULT_BLOCKS: Tuple[str, ...] = ("A", "B", "C", "D")
DEFAULT_FLOORS: Tuple[int, ...] = (1, 2, 3, 4)
DEFAULT_CATEGORIES: Tuple[str, ...] = (
    "Cleaning",
    "Water Filter",
    "Washroom Repair",
    "Lift Issue",
    "WiFi/Network",
    "Power Supply",
    "Pest Control",
    "Other",
)


@dataclass(frozen=True)
class Settings:
    """Immutable view of application configuration."""

    # General
    environment: str
    app_id: str
    allowed_hosts: Tuple[str, ...]

    # Document store
    store_backend: str
    database_url: str
    transaction_max_attempts: int

    # Identity tokens
    jwt_secret: str
    jwt_algorithm: str

    # Observability
    sentry_dsn: Optional[str]


@dataclass(frozen=True)
class TrackerConfig:
    """Domain configuration passed to the services at construction."""

    app_id: str = "hostel-issue-tracker"
    blocks: Tuple[str, ...] = DEFAULT_BLOCKS
    floors: Tuple[int, ...] = DEFAULT_FLOORS
    categories: Tuple[str, ...] = DEFAULT_CATEGORIES
    open_statuses: Tuple[str, ...] = field(default=("New", "In Progress"))

    @property
    def issues_collection(self) -> str:
        return f"artifacts/{self.app_id}/public/data/issue-tracker-issues"

    @property
    def open_keys_collection(self) -> str:
        return f"artifacts/{self.app_id}/public/data/issue-tracker-open-keys"

    @property
    def profiles_collection(self) -> str:
        return f"artifacts/{self.app_id}/users"


def _env_lookup(key: str, env: dict[str, str], default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key) or env.get(key) or default


@lru_cache()
def get_settings() -> Settings:
    """Load settings once per process."""

    env_path = Path(__file__).resolve().parents[2] / ".env"
    env_file = dotenv_values(str(env_path)) if env_path.exists() else {}

    jwt_secret = _env_lookup("JWT_SECRET", env_file)
    if not jwt_secret:
        # Fail closed rather than signing tokens with a well-known default.
        raise ValueError("JWT_SECRET not found in environment or .env file.")

    return Settings(
        environment=_env_lookup("APP_ENV", env_file, "development"),
        app_id=_env_lookup("APP_ID", env_file, "hostel-issue-tracker"),
        allowed_hosts=tuple(
            h.strip() for h in _env_lookup("ALLOWED_HOSTS", env_file, "*").split(",") if h.strip()
        ),
        store_backend=_env_lookup("STORE_BACKEND", env_file, "sql").lower(),
        database_url=_env_lookup("DATABASE_URL", env_file, "sqlite+aiosqlite:///./issues.db"),
        transaction_max_attempts=int(_env_lookup("TRANSACTION_MAX_ATTEMPTS", env_file, "5")),
        jwt_secret=jwt_secret,
        jwt_algorithm=_env_lookup("JWT_ALGORITHM", env_file, "HS256"),
        sentry_dsn=_env_lookup("SENTRY_DSN", env_file),
    )


def get_tracker_config(settings: Optional[Settings] = None) -> TrackerConfig:
    settings = settings or get_settings()
    return TrackerConfig(app_id=settings.app_id)


__all__ = ["Settings", "TrackerConfig", "get_settings", "get_tracker_config"]
