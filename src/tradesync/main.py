"""Application bootstrap.

Wires settings, logging, the database, exchange adapters and the
reconciliation service together, and provides the coroutines behind each
CLI command.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .adapters.base import AdapterConfig
from .adapters.bitget import BitgetAdapter
from .adapters.bitunix import BitunixAdapter
from .adapters.paper import PaperAdapter
from .core.config import ExchangeConfig, Settings, load_settings
from .core.enums import Exchange
from .core.ids import IClock, WallClock
from .core.interfaces import ICredentialVault, IExchangeAdapter
from .core.models import (
    EvaluationTask,
    ImportSummary,
    IncomingPosition,
    PassSummary,
    PendingCounts,
)
from .observability.logger import setup_logging
from .reconciliation.scheduler import ReconciliationScheduler
from .reconciliation.service import ReconciliationService
from .security.vault import CredentialVault
from .storage import connection

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def _reveal(value: str, vault: ICredentialVault | None) -> str:
    if vault is not None and CredentialVault.is_encrypted(value):
        return vault.decrypt(value)
    return value


def build_adapter(
    cfg: ExchangeConfig,
    *,
    vault: ICredentialVault | None = None,
    clock: IClock | None = None,
) -> IExchangeAdapter:
    """Create the adapter for one configured exchange.

    Secrets stored in vault format are decrypted here; plaintext values
    pass through.
    """
    if cfg.name == Exchange.PAPER:
        return PaperAdapter(clock=clock)

    adapter_config = AdapterConfig(
        exchange=cfg.name,
        api_key=_reveal(cfg.api_key, vault),
        api_secret=_reveal(cfg.secret, vault),
        passphrase=_reveal(cfg.passphrase, vault),
        base_url=cfg.resolved_base_url,
        timeout_seconds=cfg.timeout_seconds,
        page_size=cfg.page_size,
        max_pages=cfg.max_pages,
    )
    if cfg.name == Exchange.BITUNIX:
        return BitunixAdapter(adapter_config, clock=clock)
    return BitgetAdapter(adapter_config, clock=clock)


def build_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    clock: IClock | None = None,
    vault: ICredentialVault | None = None,
) -> ReconciliationService:
    settings.validate_exchanges()
    enabled = settings.enabled_exchanges
    if vault is None and any(
        CredentialVault.is_encrypted(value)
        for cfg in enabled
        for value in (cfg.api_key, cfg.secret, cfg.passphrase)
    ):
        vault = CredentialVault(secret_env=settings.vault_secret_env)

    adapters = [build_adapter(cfg, vault=vault, clock=clock) for cfg in enabled]
    if not adapters:
        logger.warning("No exchanges enabled; passes will do nothing")
    return ReconciliationService(
        adapters,
        session_factory,
        config=settings.reconciliation,
        clock=clock,
    )


@asynccontextmanager
async def open_service(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> AsyncIterator[tuple[Settings, ReconciliationService]]:
    """Load settings, set up logging and the database, yield a started service."""
    settings = load_settings(config_path=config_path, overrides=overrides)
    setup_logging(settings.observability.log_level, settings.observability.log_format)

    session_factory = await connection.init_engine(settings.database_url)
    service = build_service(settings, session_factory, clock=WallClock())
    try:
        await service.start()
        yield settings, service
    finally:
        await service.close()
        await connection.dispose()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def run(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    async with open_service(config_path, overrides) as (settings, service):
        cfg = settings.reconciliation
        scheduler = ReconciliationScheduler(
            service,
            interval_seconds=cfg.interval_seconds,
            pass_timeout_seconds=cfg.pass_timeout_seconds,
        )

        stop_event = asyncio.Event()

        def _signal_handler() -> None:
            logger.info("Received shutdown signal")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        await scheduler.start()
        logger.info("Sync loop running every %ss. Press Ctrl+C to stop.", cfg.interval_seconds)
        await stop_event.wait()
        await scheduler.stop()
        logger.info("Shutdown complete")


async def run_once(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> PassSummary | None:
    async with open_service(config_path, overrides) as (_, service):
        return await service.run_reconciliation_pass()


async def run_import(
    exchange: Exchange,
    days: int,
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> ImportSummary:
    """Journal the last *days* days of closed positions for *exchange*."""
    clock = WallClock()
    end = clock.now()
    start = end - timedelta(days=days)
    async with open_service(config_path, overrides) as (_, service):
        return await service.import_history(exchange, start, end)


async def list_pending(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> tuple[list[EvaluationTask], PendingCounts, list[IncomingPosition]]:
    async with open_service(config_path, overrides) as (_, service):
        tasks = service.evaluation.tasks
        counts = await service.evaluation.pending_counts()
        unresolved = await service.list_unresolved()
    return tasks, counts, unresolved


async def resolve(
    exchange: Exchange,
    position_id: str,
    *,
    retry: bool,
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> None:
    """Retry or discard an unresolved position."""
    async with open_service(config_path, overrides) as (_, service):
        if retry:
            await service.retry_unresolved(exchange, position_id)
        else:
            await service.discard_position(exchange, position_id)
