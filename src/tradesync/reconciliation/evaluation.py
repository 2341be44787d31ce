"""Evaluation queue: the user-annotation state machine.

::

    open / opening not shown  --mark_opening_shown / submit_opening-->
    open / opening shown      --position disappears (reconciler)------>
    pending_evaluation        --submit_closing------------------------>
    done (row deleted)

The persisted ``status`` and ``opening_eval_done`` columns are the only
state.  The in-memory task list is a derived view that :meth:`rebuild`
reconstructs from the store at startup and after every mutation.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradesync.core.enums import EvaluationKind, Exchange, PositionStatus
from tradesync.core.errors import EvaluationError
from tradesync.core.models import (
    ClosingEvaluation,
    EvaluationTask,
    IncomingPosition,
    OpeningEvaluation,
    PendingCounts,
    Trade,
)
from tradesync.storage.connection import session_scope
from tradesync.storage.repos import IncomingPositionRepo

from .materializer import TradeMaterializer

logger = logging.getLogger(__name__)

# User-editable columns on an open row
_METADATA_FIELDS = frozenset(
    {
        "playbook",
        "entry_note",
        "feelings",
        "stress_level",
        "emotion_level",
        "entry_timeframe",
        "trade_type",
        "tags",
        "entry_screenshot_id",
        "trend_screenshot_id",
        "satisfaction",
        "closing_note",
    }
)


class EvaluationQueue:
    """Pending opening/closing evaluations derived from persisted state.

    Parameters
    ----------
    session_factory:
        Async session factory for the journal database.
    materializer:
        Performs the metadata transfer when a closing evaluation arrives.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        materializer: TradeMaterializer,
    ) -> None:
        self._session_factory = session_factory
        self._materializer = materializer
        self._tasks: list[EvaluationTask] = []

    @property
    def tasks(self) -> list[EvaluationTask]:
        return list(self._tasks)

    # ------------------------------------------------------------------
    # Derived view
    # ------------------------------------------------------------------

    async def rebuild(self) -> list[EvaluationTask]:
        """Reconstruct the task list from the store."""
        async with session_scope(self._session_factory) as session:
            repo = IncomingPositionRepo(session)
            opening = await repo.find(status=PositionStatus.OPEN, opening_eval_done=False)
            closing = await repo.find(status=PositionStatus.PENDING_EVALUATION)

        self._tasks = []
        for row in opening:
            self.enqueue(_task_for(row, EvaluationKind.OPENING))
        for row in closing:
            self.enqueue(_task_for(row, EvaluationKind.CLOSING))
        logger.debug(
            "Evaluation queue rebuilt: %d opening, %d closing", len(opening), len(closing)
        )
        return self.tasks

    def enqueue(self, task: EvaluationTask) -> bool:
        """Add *task* unless one with the same key is queued already."""
        if any(t.key == task.key for t in self._tasks):
            return False
        self._tasks.append(task)
        return True

    def next_task(self, kind: EvaluationKind | None = None) -> EvaluationTask | None:
        for task in self._tasks:
            if kind is None or task.kind == kind:
                return task
        return None

    async def pending_counts(self) -> PendingCounts:
        """Unresolved opening/closing evaluation counts, read from the store."""
        async with session_scope(self._session_factory) as session:
            repo = IncomingPositionRepo(session)
            opening = await repo.count(status=PositionStatus.OPEN, opening_eval_done=False)
            closing = await repo.count(status=PositionStatus.PENDING_EVALUATION)
        return PendingCounts(opening=opening, closing=closing)

    # ------------------------------------------------------------------
    # Opening side
    # ------------------------------------------------------------------

    async def mark_opening_shown(self, exchange: Exchange, position_id: str) -> IncomingPosition:
        return await self._update_open(exchange, position_id, opening_eval_done=True)

    async def submit_opening(
        self,
        exchange: Exchange,
        position_id: str,
        evaluation: OpeningEvaluation,
    ) -> IncomingPosition:
        """Store the opening annotation and mark the opening evaluation done."""
        fields: dict[str, Any] = evaluation.model_dump()
        fields["opening_eval_done"] = True
        row = await self._update_open(exchange, position_id, **fields)
        logger.info("Opening evaluation stored for %s %s", row.symbol, position_id)
        return row

    async def update_metadata(
        self, exchange: Exchange, position_id: str, **fields: Any
    ) -> IncomingPosition:
        """Edit user metadata on an open row.

        Raises:
            EvaluationError: unknown field, unknown position or wrong state.
        """
        unknown = set(fields) - _METADATA_FIELDS
        if unknown:
            raise EvaluationError(f"Not editable: {', '.join(sorted(unknown))}")
        return await self._update_open(exchange, position_id, **fields)

    async def set_skip_evaluation(
        self, exchange: Exchange, position_id: str, skip: bool = True
    ) -> IncomingPosition:
        return await self._update_open(exchange, position_id, skip_evaluation=skip)

    # ------------------------------------------------------------------
    # Closing side
    # ------------------------------------------------------------------

    async def submit_closing(
        self,
        exchange: Exchange,
        position_id: str,
        evaluation: ClosingEvaluation,
    ) -> Trade:
        """Transfer the closing evaluation to the journal and drop the row."""
        trade = await self._materializer.complete_evaluation(exchange, position_id, evaluation)
        await self.rebuild()
        return trade

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _update_open(
        self, exchange: Exchange, position_id: str, **fields: Any
    ) -> IncomingPosition:
        async with session_scope(self._session_factory) as session:
            repo = IncomingPositionRepo(session)
            row = await repo.get(exchange, position_id, for_update=True)
            if row is None:
                raise EvaluationError(f"Unknown position {exchange.value}/{position_id}")
            if row.status != PositionStatus.OPEN:
                raise EvaluationError(
                    f"Position {position_id} is {row.status.value}, not open"
                )
            updated = await repo.update(exchange, position_id, **fields)
        await self.rebuild()
        return updated or row


def _task_for(row: IncomingPosition, kind: EvaluationKind) -> EvaluationTask:
    return EvaluationTask(
        kind=kind,
        exchange=row.exchange,
        position_id=row.position_id,
        symbol=row.symbol,
        side=row.side,
        closed_position=row.closed_position if kind == EvaluationKind.CLOSING else None,
    )
