"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with defaults for every missing key
  - Env var overrides for secrets (COINGECKO_API_KEY, SENTRY_DSN)
  - All subsystem configs: game rules, resolution poller, price feed,
    storage, API server, observability
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class GameConfig(BaseModel):
    """Timing rules of a single guess."""
    resolution_time_secs: int = 60
    resolution_buffer_secs: int = 5  # poller waits this long past the game window
    stale_price_threshold_secs: int = 120  # also the guess expiry horizon


class PollerConfig(BaseModel):
    """Background resolution of guesses the client never resolved."""
    enabled: bool = True
    interval_secs: float = 15.0
    batch_size: int = 100


class PriceFeedConfig(BaseModel):
    base_url: str = "https://api.coingecko.com/api/v3"
    coin_id: str = "bitcoin"
    vs_currency: str = "usd"
    interval_secs: float = 10.0
    timeout_secs: float = 10.0
    api_key_env: str = "COINGECKO_API_KEY"

    @property
    def api_key(self) -> str:
        return os.environ.get(self.api_key_env, "")


class StorageConfig(BaseModel):
    sqlite_path: str = "data/game.db"
    busy_timeout_secs: float = 5.0


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 2345
    identity_header: str = "X-Player-Id"
    history_limit: int = 20
    chart_minutes: int = 15


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/game.log"


class AppConfig(BaseModel):
    game: GameConfig = Field(default_factory=GameConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    price_feed: PriceFeedConfig = Field(default_factory=PriceFeedConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return AppConfig(**raw)
    return AppConfig()
