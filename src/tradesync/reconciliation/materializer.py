"""Trade materializer: turns a confirmed close into a day-ledger entry.

Each materialization runs in one database transaction:

1. Build the :class:`Trade` from the exchange's close record.
2. Load the day ledger (row locked where the backend supports it), merge
   the trade by synthetic id and rebuild blotter + P&L.
3. Either hand the position to the closing evaluation (status
   ``pending_evaluation`` plus the stored close payload) or, when popups
   are off or the user skipped evaluation, copy its metadata to the journal
   side tables and delete the row.

Writes that target the same day are additionally serialized in-process by
a per-day ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradesync.core.enums import Exchange, PositionStatus
from tradesync.core.errors import EvaluationError
from tradesync.core.models import (
    ClosedPosition,
    ClosingEvaluation,
    DayLedger,
    Fill,
    IncomingPosition,
    Trade,
)
from tradesync.journal.annotations import MetadataTransfer, build_transfer
from tradesync.journal.ledger import build_trade, merge_trade
from tradesync.storage.connection import session_scope
from tradesync.storage.repos import AnnotationRepo, DayLedgerRepo, IncomingPositionRepo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaterializeOutcome:
    trade: Trade
    ledger_changed: bool
    awaiting_evaluation: bool


class TradeMaterializer:
    """Merges closed positions into day ledgers.

    Parameters
    ----------
    session_factory:
        Async session factory for the journal database.
    evaluation_popups:
        When ``True`` a closed position waits for a closing evaluation
        before its row is removed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        evaluation_popups: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._evaluation_popups = evaluation_popups
        self._day_locks: dict[int, asyncio.Lock] = {}

    def _day_lock(self, day: int) -> asyncio.Lock:
        lock = self._day_locks.get(day)
        if lock is None:
            lock = asyncio.Lock()
            self._day_locks[day] = lock
        return lock

    # ------------------------------------------------------------------
    # Reconciler entry point
    # ------------------------------------------------------------------

    async def materialize(
        self,
        incoming: IncomingPosition,
        closed: ClosedPosition,
        fills: list[Fill] | None = None,
    ) -> MaterializeOutcome:
        """Merge the trade and advance the position's lifecycle.

        Raises:
            MergeConflict: the day already holds a different trade with the
                same synthetic id. Nothing is written.
        """
        trade = build_trade(closed, incoming=incoming, fills=fills)

        async with self._day_lock(trade.day):
            async with session_scope(self._session_factory) as session:
                changed = await self._merge(session, trade)

                positions = IncomingPositionRepo(session)
                current = await positions.get(
                    incoming.exchange, incoming.position_id, for_update=True
                )
                if current is None:
                    logger.warning(
                        "Position %s/%s vanished before materialization finished",
                        incoming.exchange.value, incoming.position_id,
                    )
                    return MaterializeOutcome(trade, changed, False)

                if not self._evaluation_popups or current.skip_evaluation:
                    transfer = build_transfer(
                        current, trade_id=trade.id, day=trade.day, symbol=trade.symbol,
                    )
                    await self._apply_transfer(session, transfer)
                    await positions.delete(current.exchange, current.position_id)
                    logger.info(
                        "Position %s %s closed, trade %s journaled",
                        current.symbol, current.position_id, trade.id,
                    )
                    return MaterializeOutcome(trade, changed, False)

                await positions.update(
                    current.exchange,
                    current.position_id,
                    status=PositionStatus.PENDING_EVALUATION,
                    history_payload=closed.model_dump(mode="json"),
                    close_attempts=0,
                )
                logger.info(
                    "Position %s %s closed, closing evaluation pending (trade %s)",
                    current.symbol, current.position_id, trade.id,
                )
                return MaterializeOutcome(trade, changed, True)

    # ------------------------------------------------------------------
    # Evaluation completion
    # ------------------------------------------------------------------

    async def complete_evaluation(
        self,
        exchange: Exchange,
        position_id: str,
        evaluation: ClosingEvaluation,
    ) -> Trade:
        """Transfer the closing evaluation to the journal and delete the row.

        The trade itself was merged when the close was detected; it is only
        merged again if it is missing from the ledger.

        Raises:
            EvaluationError: unknown position or not awaiting evaluation.
        """
        async with session_scope(self._session_factory) as session:
            current = await IncomingPositionRepo(session).get(exchange, position_id)
        if current is None:
            raise EvaluationError(f"Unknown position {exchange.value}/{position_id}")
        closed = current.closed_position
        if current.status != PositionStatus.PENDING_EVALUATION or closed is None:
            raise EvaluationError(
                f"Position {position_id} is not awaiting a closing evaluation "
                f"(status={current.status.value})"
            )

        candidate = build_trade(closed, incoming=current)
        async with self._day_lock(candidate.day):
            async with session_scope(self._session_factory) as session:
                trade, added = await self._ensure_trade(session, candidate)
                if added:
                    logger.warning("Trade %s was missing from its ledger, re-added", trade.id)
                positions = IncomingPositionRepo(session)
                locked = await positions.get(exchange, position_id, for_update=True)
                if locked is None or locked.status != PositionStatus.PENDING_EVALUATION:
                    raise EvaluationError(
                        f"Position {position_id} was resolved concurrently"
                    )
                transfer = build_transfer(
                    locked,
                    trade_id=trade.id,
                    day=trade.day,
                    symbol=trade.symbol,
                    evaluation=evaluation,
                )
                await self._apply_transfer(session, transfer)
                await positions.delete(exchange, position_id)

        logger.info("Closing evaluation stored for %s (trade %s)", position_id, trade.id)
        return trade

    # ------------------------------------------------------------------
    # History import
    # ------------------------------------------------------------------

    async def import_closed(self, closed: ClosedPosition) -> tuple[Trade, bool]:
        """Add a historical close to the ledger, metadata-less.

        A trade already present under the same synthetic id is kept as is,
        so re-importing a window is a no-op.  Returns ``(trade, added)``.
        """
        candidate = build_trade(closed)
        async with self._day_lock(candidate.day):
            async with session_scope(self._session_factory) as session:
                return await self._ensure_trade(session, candidate)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _merge(self, session: AsyncSession, trade: Trade) -> bool:
        ledgers = DayLedgerRepo(session)
        current: DayLedger | None = await ledgers.get(trade.day, for_update=True)
        merged, changed = merge_trade(current, trade)
        if changed:
            await ledgers.save(merged)
            logger.debug(
                "Ledger %s now holds %d trade(s), net %s",
                merged.date, len(merged.trades), merged.pnl.net_proceeds,
            )
        return changed

    async def _ensure_trade(
        self, session: AsyncSession, candidate: Trade
    ) -> tuple[Trade, bool]:
        """Return the ledger's trade with *candidate*'s id, adding it if absent."""
        ledgers = DayLedgerRepo(session)
        current = await ledgers.get(candidate.day, for_update=True)
        if current is not None:
            existing = current.find_trade(candidate.id)
            if existing is not None:
                return existing, False
        merged, _ = merge_trade(current, candidate)
        await ledgers.save(merged)
        return candidate, True

    async def _apply_transfer(
        self, session: AsyncSession, transfer: MetadataTransfer
    ) -> None:
        annotations = AnnotationRepo(session)
        await annotations.upsert_note(
            transfer.trade_id,
            transfer.day,
            note=transfer.note,
            opening=transfer.opening,
            closing=transfer.closing,
            trading_metadata=transfer.trading_metadata,
        )
        if transfer.tags:
            await annotations.upsert_tags(transfer.trade_id, transfer.day, transfer.tags)
        if transfer.satisfaction is not None:
            await annotations.upsert_satisfaction(
                transfer.trade_id, transfer.day, transfer.satisfaction
            )
        for link in transfer.screenshots:
            await annotations.upsert_screenshot_link(
                link.name,
                trade_id=transfer.trade_id,
                day=transfer.day,
                kind=link.kind,
                screenshot_id=link.screenshot_id,
            )
