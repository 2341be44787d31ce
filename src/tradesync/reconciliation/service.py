"""Reconciliation service facade.

Composes one :class:`PositionReconciler` per configured exchange with the
shared :class:`TradeMaterializer` and :class:`EvaluationQueue`.  Callers
(scheduler, CLI, an HTTP layer) only talk to this class.

Only one pass runs at a time: :meth:`run_reconciliation_pass` returns
``None`` instead of queueing when a pass is already in flight.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradesync.core.config import ReconciliationConfig
from tradesync.core.enums import Exchange, PositionErrorType, PositionStatus
from tradesync.core.errors import (
    AuthenticationError,
    ConfigError,
    EvaluationError,
    ExchangeError,
    LedgerError,
)
from tradesync.core.ids import IClock, WallClock, ensure_utc
from tradesync.core.interfaces import IExchangeAdapter
from tradesync.core.models import (
    ImportSummary,
    IncomingPosition,
    PassSummary,
    PositionError,
)
from tradesync.observability.logger import pass_context
from tradesync.storage.connection import session_scope
from tradesync.storage.repos import IncomingPositionRepo

from .evaluation import EvaluationQueue
from .materializer import TradeMaterializer
from .reconciler import PositionReconciler

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Entry point for passes, history imports and manual resolution.

    Parameters
    ----------
    adapters:
        One adapter per exchange to reconcile.
    session_factory:
        Async session factory for the journal database.
    config:
        Reconciliation settings shared by every exchange.
    clock:
        Time source (tests pass a ``SimClock``).
    """

    def __init__(
        self,
        adapters: list[IExchangeAdapter],
        session_factory: async_sessionmaker[AsyncSession],
        *,
        config: ReconciliationConfig | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._config = config or ReconciliationConfig()
        self._clock = clock or WallClock()
        self._session_factory = session_factory
        self._materializer = TradeMaterializer(
            session_factory, evaluation_popups=self._config.evaluation_popups
        )
        self._evaluation = EvaluationQueue(session_factory, self._materializer)
        self._reconcilers: dict[Exchange, PositionReconciler] = {}
        for adapter in adapters:
            if adapter.exchange in self._reconcilers:
                raise ConfigError(f"Exchange {adapter.exchange.value} configured twice")
            self._reconcilers[adapter.exchange] = PositionReconciler(
                adapter,
                session_factory,
                self._materializer,
                config=self._config,
                clock=self._clock,
            )
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def evaluation(self) -> EvaluationQueue:
        return self._evaluation

    @property
    def materializer(self) -> TradeMaterializer:
        return self._materializer

    @property
    def exchanges(self) -> list[Exchange]:
        return list(self._reconcilers)

    @property
    def is_running(self) -> bool:
        """``True`` while a pass or import holds the single-flight lock."""
        return self._lock.locked()

    def adapter(self, exchange: Exchange) -> IExchangeAdapter:
        reconciler = self._reconcilers.get(exchange)
        if reconciler is None:
            raise ConfigError(f"Exchange {exchange.value} is not configured")
        return reconciler.adapter

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Rebuild the evaluation queue from the store."""
        tasks = await self._evaluation.rebuild()
        logger.info(
            "Reconciliation service ready for %s (%d pending evaluation(s))",
            ", ".join(e.value for e in self._reconcilers) or "no exchanges",
            len(tasks),
        )

    async def close(self) -> None:
        for reconciler in self._reconcilers.values():
            await reconciler.adapter.close()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_reconciliation_pass(self) -> PassSummary | None:
        """Reconcile every configured exchange once.

        Returns ``None`` without doing anything when a pass is already in
        flight.  A listing failure on one exchange is recorded in
        ``exchange_errors`` and leaves that exchange's state untouched.
        """
        if self._lock.locked():
            logger.info("Reconciliation pass already in flight, skipping")
            return None

        async with self._lock:
            with pass_context() as pass_id:
                summary = PassSummary(pass_id=pass_id, started_at=self._clock.now())
                for exchange, reconciler in self._reconcilers.items():
                    try:
                        result = await reconciler.run_pass(pass_id)
                    except AuthenticationError as exc:
                        logger.error("%s rejected credentials: %s", exchange.value, exc)
                        summary.exchange_errors[exchange.value] = str(exc)
                        summary.auth_failed = True
                        continue
                    except ExchangeError as exc:
                        logger.warning("%s listing failed: %s", exchange.value, exc)
                        summary.exchange_errors[exchange.value] = str(exc)
                        continue
                    summary.results.append(result)
                    if any(
                        e.error_type == PositionErrorType.AUTHENTICATION
                        for e in result.errors
                    ):
                        summary.auth_failed = True

                await self._evaluation.rebuild()
                summary.finished_at = self._clock.now()
                logger.info(
                    "Pass complete: created=%d updated=%d closed=%d deferred=%d "
                    "unresolved=%d errors=%d exchange_errors=%d",
                    len(summary.created),
                    len(summary.updated),
                    len(summary.closed),
                    len(summary.deferred),
                    len(summary.unresolved),
                    len(summary.errors),
                    len(summary.exchange_errors),
                )
                return summary

    # ------------------------------------------------------------------
    # History import
    # ------------------------------------------------------------------

    async def import_history(
        self,
        exchange: Exchange,
        start: datetime,
        end: datetime,
    ) -> ImportSummary:
        """Journal every position closed in ``[start, end)`` without metadata.

        Positions still tracked locally are skipped; the reconciler
        journals those together with their annotations.  Re-running an
        import over the same window adds nothing.

        Raises:
            ConfigError: the exchange is not configured.
            ExchangeError: fetching the history failed.  Nothing was written.
        """
        adapter = self.adapter(exchange)
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise ValueError(f"Empty import window {start} .. {end}")

        async with self._lock:
            with pass_context():
                history = await adapter.fetch_position_history(start, end)
                async with session_scope(self._session_factory) as session:
                    tracked = {
                        row.position_id
                        for row in await IncomingPositionRepo(session).find(exchange=exchange)
                    }

                summary = ImportSummary(exchange=exchange, start=start, end=end)
                for closed in history:
                    if closed.position_id in tracked:
                        summary.skipped.append(closed.position_id)
                        continue
                    try:
                        trade, added = await self._materializer.import_closed(closed)
                    except LedgerError as exc:
                        logger.error("Import of %s failed: %s", closed.position_id, exc)
                        summary.errors.append(
                            PositionError(
                                position_id=closed.position_id,
                                error_type=PositionErrorType.MERGE_CONFLICT,
                                message=str(exc),
                            )
                        )
                        continue
                    (summary.imported if added else summary.unchanged).append(trade.id)

                logger.info(
                    "Imported %s history %s .. %s: %d new, %d already journaled, %d skipped",
                    exchange.value, start.date(), end.date(),
                    len(summary.imported), len(summary.unchanged), len(summary.skipped),
                )
                return summary

    # ------------------------------------------------------------------
    # Manual resolution of unresolved positions
    # ------------------------------------------------------------------

    async def list_unresolved(self) -> list[IncomingPosition]:
        async with session_scope(self._session_factory) as session:
            return await IncomingPositionRepo(session).find(status=PositionStatus.UNRESOLVED)

    async def retry_unresolved(self, exchange: Exchange, position_id: str) -> IncomingPosition:
        """Put an unresolved position back into the open set, counter reset."""
        async with session_scope(self._session_factory) as session:
            repo = IncomingPositionRepo(session)
            current = await self._require_unresolved(repo, exchange, position_id)
            row = await repo.update(
                exchange,
                position_id,
                status=PositionStatus.OPEN,
                close_attempts=0,
                last_close_attempt_at=None,
            )
        logger.info("Position %s/%s returned to open for retry", exchange.value, position_id)
        await self._evaluation.rebuild()
        return row or current

    async def discard_position(self, exchange: Exchange, position_id: str) -> None:
        """Drop an unresolved position without journaling it."""
        async with session_scope(self._session_factory) as session:
            repo = IncomingPositionRepo(session)
            await self._require_unresolved(repo, exchange, position_id)
            await repo.delete(exchange, position_id)
        logger.warning("Position %s/%s discarded", exchange.value, position_id)
        await self._evaluation.rebuild()

    @staticmethod
    async def _require_unresolved(
        repo: IncomingPositionRepo, exchange: Exchange, position_id: str
    ) -> IncomingPosition:
        row = await repo.get(exchange, position_id, for_update=True)
        if row is None:
            raise EvaluationError(f"Unknown position {exchange.value}/{position_id}")
        if row.status != PositionStatus.UNRESOLVED:
            raise EvaluationError(
                f"Position {position_id} is {row.status.value}, not unresolved"
            )
        return row
