"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from .enums import Exchange

_DEFAULT_BASE_URLS = {
    Exchange.BITUNIX: "https://fapi.bitunix.com",
    Exchange.BITGET: "https://api.bitget.com",
    Exchange.PAPER: "",
}


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class ExchangeConfig(BaseModel):
    name: Exchange
    api_key_env: str = ""  # Name of env var holding the API key
    secret_env: str = ""  # Name of env var holding the secret
    passphrase_env: str = ""  # Bitget only
    base_url: str = ""
    timeout_seconds: float = 10.0  # Per request
    page_size: int = 100
    max_pages: int = 50
    enabled: bool = True

    @property
    def api_key(self) -> str:
        return os.environ.get(self.api_key_env, "") if self.api_key_env else ""

    @property
    def secret(self) -> str:
        return os.environ.get(self.secret_env, "") if self.secret_env else ""

    @property
    def passphrase(self) -> str:
        if not self.passphrase_env:
            return ""
        return os.environ.get(self.passphrase_env, "")

    @property
    def resolved_base_url(self) -> str:
        return self.base_url or _DEFAULT_BASE_URLS[self.name]


class ReconciliationConfig(BaseModel):
    interval_seconds: float = 60.0
    pass_timeout_seconds: float = 30.0
    evaluation_popups: bool = True
    max_close_attempts: int = 60  # One hour at the default interval
    fetch_fills_on_close: bool = True
    track_stop_orders: bool = True


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level application settings.

    Loaded from TOML config files, overridden by environment variables.
    """

    database_url: str = "sqlite+aiosqlite:///data/tradesync.db"
    vault_secret_env: str = "TRADESYNC_SECRET"

    # Sub-configs
    exchanges: list[ExchangeConfig] = Field(default_factory=list)
    reconciliation: ReconciliationConfig = Field(
        default_factory=ReconciliationConfig
    )
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = {"env_prefix": "TRADESYNC_", "env_nested_delimiter": "__"}

    @property
    def enabled_exchanges(self) -> list[ExchangeConfig]:
        return [e for e in self.exchanges if e.enabled]

    def validate_exchanges(self) -> None:
        """Reject duplicate exchange entries and missing credentials."""
        from .errors import ConfigError

        seen: set[Exchange] = set()
        for cfg in self.enabled_exchanges:
            if cfg.name in seen:
                raise ConfigError(f"Exchange {cfg.name.value} configured twice")
            seen.add(cfg.name)
            if cfg.name == Exchange.PAPER:
                continue
            if not cfg.api_key or not cfg.secret:
                raise ConfigError(
                    f"Missing credentials for {cfg.name.value}: set "
                    f"{cfg.api_key_env or '<api_key_env>'} and "
                    f"{cfg.secret_env or '<secret_env>'}"
                )
            if cfg.name == Exchange.BITGET and not cfg.passphrase:
                raise ConfigError(
                    "Bitget requires a passphrase: set "
                    f"{cfg.passphrase_env or '<passphrase_env>'}"
                )


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from TOML file + env vars.

    Args:
        config_path: Path to TOML config file (optional).
        overrides: Dict of overrides to apply on top.
    """
    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            import tomli

            with open(path, "rb") as f:
                data = tomli.load(f)

    if overrides:
        data.update(overrides)

    return Settings(**data)
