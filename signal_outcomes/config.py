"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'signal_outcomes.db'}"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Bearer token for the API; empty disables the check
    api_token: str = ""

    # Market data
    symbol: str = "BTC"
    candle_interval: str = "1h"
    http_timeout_seconds: float = 10.0
    price_cache_ttl_seconds: float = 60.0

    # Cycle
    resolve_interval: str = "1h"
    cycle_timeout_seconds: float = 45.0
    ledger_conflict_retries: int = 3
    scheduler_enabled: bool = True

    # Ledger storage: "database" or "github"
    ledger_backend: str = "database"
    github_token: str = ""
    github_repo: str = ""  # "owner/name"
    github_path: str = "data/signal-history.json"
    github_branch: str = "master"

    model_config = {"env_prefix": "SO_", "env_file": ".env"}


settings = Settings()
