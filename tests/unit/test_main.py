"""Adapter and service wiring from settings, including vault-encrypted secrets."""

from __future__ import annotations

import pytest

from tradesync.adapters.bitunix import BitunixAdapter
from tradesync.adapters.paper import PaperAdapter
from tradesync.core.config import ExchangeConfig, Settings
from tradesync.core.enums import Exchange
from tradesync.core.errors import CredentialError
from tradesync.core.interfaces import ICredentialVault
from tradesync.main import build_adapter, build_service
from tradesync.security.vault import CredentialVault


@pytest.fixture
def bitunix_env(monkeypatch):
    monkeypatch.setenv("TS_TEST_VAULT_KEY", "vault-key")
    monkeypatch.setenv("TS_TEST_BITUNIX_KEY", "plain-key")
    monkeypatch.setenv(
        "TS_TEST_BITUNIX_SECRET", CredentialVault("vault-key").encrypt("real-secret")
    )
    return ExchangeConfig(
        name=Exchange.BITUNIX,
        api_key_env="TS_TEST_BITUNIX_KEY",
        secret_env="TS_TEST_BITUNIX_SECRET",
    )


@pytest.mark.asyncio
async def test_encrypted_secret_decrypted_for_adapter(bitunix_env, session_factory):
    settings = Settings(exchanges=[bitunix_env], vault_secret_env="TS_TEST_VAULT_KEY")

    service = build_service(settings, session_factory)
    adapter = service.adapter(Exchange.BITUNIX)
    await service.close()

    assert isinstance(adapter, BitunixAdapter)
    assert adapter._config.api_secret == "real-secret"
    assert adapter._config.api_key == "plain-key"


def test_wrong_vault_key_rejected(bitunix_env):
    vault = CredentialVault("another-key")
    assert isinstance(vault, ICredentialVault)
    with pytest.raises(CredentialError):
        build_adapter(bitunix_env, vault=vault)


def test_paper_exchange_needs_no_credentials():
    adapter = build_adapter(ExchangeConfig(name=Exchange.PAPER))
    assert isinstance(adapter, PaperAdapter)
