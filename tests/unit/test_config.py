"""Test Settings loading and exchange validation."""

import pytest

from tradesync.core.config import ExchangeConfig, Settings, load_settings
from tradesync.core.enums import Exchange
from tradesync.core.errors import ConfigError

TOML = """
database_url = "sqlite+aiosqlite:///:memory:"

[[exchanges]]
name = "bitunix"
api_key_env = "TS_BITUNIX_KEY"
secret_env = "TS_BITUNIX_SECRET"

[[exchanges]]
name = "bitget"
api_key_env = "TS_BITGET_KEY"
secret_env = "TS_BITGET_SECRET"
passphrase_env = "TS_BITGET_PASS"
enabled = false

[reconciliation]
interval_seconds = 15
evaluation_popups = false
"""


class TestDefaults:
    def test_reconciliation_defaults(self):
        settings = Settings()
        assert settings.reconciliation.interval_seconds == 60.0
        assert settings.reconciliation.pass_timeout_seconds == 30.0
        assert settings.reconciliation.evaluation_popups is True
        assert settings.reconciliation.max_close_attempts == 60
        assert settings.vault_secret_env == "TRADESYNC_SECRET"

    def test_env_nested_override(self, monkeypatch):
        monkeypatch.setenv("TRADESYNC_RECONCILIATION__MAX_CLOSE_ATTEMPTS", "5")
        monkeypatch.setenv("TRADESYNC_OBSERVABILITY__LOG_LEVEL", "DEBUG")
        settings = Settings()
        assert settings.reconciliation.max_close_attempts == 5
        assert settings.observability.log_level == "DEBUG"


class TestLoadSettings:
    def test_from_toml(self, tmp_path):
        path = tmp_path / "tradesync.toml"
        path.write_text(TOML)
        settings = load_settings(path)

        assert settings.database_url == "sqlite+aiosqlite:///:memory:"
        assert [e.name for e in settings.exchanges] == [Exchange.BITUNIX, Exchange.BITGET]
        assert [e.name for e in settings.enabled_exchanges] == [Exchange.BITUNIX]
        assert settings.reconciliation.interval_seconds == 15
        assert settings.reconciliation.evaluation_popups is False

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.toml")
        assert settings.exchanges == []

    def test_overrides_win(self, tmp_path):
        path = tmp_path / "tradesync.toml"
        path.write_text(TOML)
        settings = load_settings(path, overrides={"database_url": "sqlite+aiosqlite:///x.db"})
        assert settings.database_url == "sqlite+aiosqlite:///x.db"


class TestExchangeConfig:
    def test_credentials_read_from_env(self, monkeypatch):
        monkeypatch.setenv("TS_KEY", "k")
        monkeypatch.setenv("TS_SECRET", "s")
        cfg = ExchangeConfig(name=Exchange.BITUNIX, api_key_env="TS_KEY", secret_env="TS_SECRET")
        assert cfg.api_key == "k"
        assert cfg.secret == "s"
        assert cfg.passphrase == ""

    def test_default_base_url(self):
        assert ExchangeConfig(name=Exchange.BITGET).resolved_base_url == "https://api.bitget.com"
        assert (
            ExchangeConfig(name=Exchange.BITGET, base_url="http://local").resolved_base_url
            == "http://local"
        )


class TestValidateExchanges:
    def test_paper_needs_no_credentials(self):
        Settings(exchanges=[ExchangeConfig(name=Exchange.PAPER)]).validate_exchanges()

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("TS_MISSING_KEY", raising=False)
        settings = Settings(
            exchanges=[
                ExchangeConfig(
                    name=Exchange.BITUNIX,
                    api_key_env="TS_MISSING_KEY",
                    secret_env="TS_MISSING_SECRET",
                )
            ]
        )
        with pytest.raises(ConfigError, match="TS_MISSING_KEY"):
            settings.validate_exchanges()

    def test_bitget_requires_passphrase(self, monkeypatch):
        monkeypatch.setenv("TS_KEY", "k")
        monkeypatch.setenv("TS_SECRET", "s")
        monkeypatch.delenv("TS_PASS", raising=False)
        settings = Settings(
            exchanges=[
                ExchangeConfig(
                    name=Exchange.BITGET,
                    api_key_env="TS_KEY",
                    secret_env="TS_SECRET",
                    passphrase_env="TS_PASS",
                )
            ]
        )
        with pytest.raises(ConfigError, match="passphrase"):
            settings.validate_exchanges()

    def test_duplicate_exchange(self):
        settings = Settings(
            exchanges=[ExchangeConfig(name=Exchange.PAPER), ExchangeConfig(name=Exchange.PAPER)]
        )
        with pytest.raises(ConfigError, match="twice"):
            settings.validate_exchanges()

    def test_disabled_entries_ignored(self):
        settings = Settings(
            exchanges=[
                ExchangeConfig(name=Exchange.BITUNIX, enabled=False),
                ExchangeConfig(name=Exchange.PAPER),
            ]
        )
        settings.validate_exchanges()
