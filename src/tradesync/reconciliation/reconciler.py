"""Position reconciler: one fetch-diff-apply cycle for a single exchange.

The exchange's open-position snapshot is compared with the locally tracked
``open`` rows:

* **created**: in the snapshot, not tracked yet -> new row.
* **unchanged**: in both -> mutable fields refreshed, only on real change.
* **closed**: tracked but gone from the snapshot -> close record fetched
  and handed to the :class:`TradeMaterializer`.

A failure to list open positions raises before anything is written.  Every
closed position is handled in isolation; its failure is reported in the
pass result and never aborts the pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradesync.core.config import ReconciliationConfig
from tradesync.core.enums import PositionErrorType, PositionStatus, StopOrderKind
from tradesync.core.errors import (
    AuthenticationError,
    ExchangeError,
    MergeConflict,
    PartialDataError,
    TransientNetworkError,
)
from tradesync.core.ids import IClock, WallClock, new_id
from tradesync.core.interfaces import IExchangeAdapter
from tradesync.core.models import (
    IncomingPosition,
    Position,
    PositionError,
    ReconciliationResult,
    StopOrder,
)
from tradesync.observability.logger import get_pass_id
from tradesync.storage.connection import session_scope
from tradesync.storage.repos import IncomingPositionRepo

from .materializer import TradeMaterializer

logger = logging.getLogger(__name__)

# Snapshot fields refreshed on tracked open positions
_MUTABLE_FIELDS = (
    "entry_price",
    "quantity",
    "leverage",
    "unrealized_pnl",
    "mark_price",
)


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------

@dataclass
class PositionDiff:
    created: list[Position] = field(default_factory=list)
    unchanged: list[tuple[IncomingPosition, Position]] = field(default_factory=list)
    closed: list[IncomingPosition] = field(default_factory=list)


def diff_positions(
    snapshot: list[Position],
    persisted: list[IncomingPosition],
) -> PositionDiff:
    """Partition *snapshot* and *persisted* by position id.

    ``created = snapshot - persisted``, ``closed = persisted - snapshot`` and
    ``unchanged`` pairs each persisted row with its snapshot entry.  Repeated
    ids in the snapshot are collapsed to their first occurrence.
    """
    current: dict[str, Position] = {}
    for position in snapshot:
        current.setdefault(position.position_id, position)

    tracked = {row.position_id for row in persisted}
    diff = PositionDiff()
    for row in persisted:
        match = current.get(row.position_id)
        if match is None:
            diff.closed.append(row)
        else:
            diff.unchanged.append((row, match))
    for position_id, position in current.items():
        if position_id not in tracked:
            diff.created.append(position)
    return diff


def stop_order_metadata(orders: list[StopOrder]) -> dict[str, Any]:
    """Summarize pending TP/SL triggers for ``trading_metadata``."""
    take_profit: Decimal | None = None
    stop_loss: Decimal | None = None
    for order in orders:
        if order.kind == StopOrderKind.TAKE_PROFIT and take_profit is None:
            take_profit = order.trigger_price
        elif order.kind == StopOrderKind.STOP_LOSS and stop_loss is None:
            stop_loss = order.trigger_price
    return {
        "take_profit": str(take_profit) if take_profit is not None else None,
        "stop_loss": str(stop_loss) if stop_loss is not None else None,
        "stop_orders": [
            {
                "order_id": o.order_id,
                "kind": o.kind.value,
                "trigger_price": str(o.trigger_price),
                "quantity": str(o.quantity) if o.quantity is not None else None,
            }
            for o in orders
        ],
    }


def _changed_fields(
    row: IncomingPosition,
    position: Position,
    stop_meta: dict[str, Any] | None,
) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for name in _MUTABLE_FIELDS:
        value = getattr(position, name)
        if getattr(row, name) != value:
            changes[name] = value
    if row.raw_payload != position.raw:
        changes["raw_payload"] = dict(position.raw)
    if stop_meta is not None:
        merged = {**row.trading_metadata, **stop_meta}
        if merged != row.trading_metadata:
            changes["trading_metadata"] = merged
    if row.close_attempts:
        # Was missing from an earlier snapshot but is back
        changes["close_attempts"] = 0
        changes["last_close_attempt_at"] = None
    return changes


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class PositionReconciler:
    """Reconciles one exchange's open positions with the local store.

    Parameters
    ----------
    adapter:
        Exchange adapter implementing ``IExchangeAdapter``.
    session_factory:
        Async session factory for the journal database.
    materializer:
        Shared :class:`TradeMaterializer` (owns the per-day locks).
    config:
        Reconciliation settings (popups, retry cap, optional fetches).
    clock:
        Time source for row timestamps and attempt bookkeeping.
    """

    def __init__(
        self,
        adapter: IExchangeAdapter,
        session_factory: async_sessionmaker[AsyncSession],
        materializer: TradeMaterializer,
        *,
        config: ReconciliationConfig | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._adapter = adapter
        self._session_factory = session_factory
        self._materializer = materializer
        self._config = config or ReconciliationConfig()
        self._clock = clock or WallClock()

    @property
    def adapter(self) -> IExchangeAdapter:
        return self._adapter

    # ------------------------------------------------------------------
    # Single pass
    # ------------------------------------------------------------------

    async def run_pass(self, pass_id: str | None = None) -> ReconciliationResult:
        """Run one reconciliation pass for this exchange.

        Raises:
            ExchangeError: listing open positions failed.  Nothing was
                written.
        """
        exchange = self._adapter.exchange
        result = ReconciliationResult(
            pass_id=pass_id or get_pass_id() or new_id(),
            exchange=exchange,
            started_at=self._clock.now(),
        )

        snapshot = await self._adapter.list_open_positions()

        async with session_scope(self._session_factory) as session:
            rows = await IncomingPositionRepo(session).find(exchange=exchange)
        open_rows = [r for r in rows if r.status == PositionStatus.OPEN]
        parked = {r.position_id for r in rows if r.status != PositionStatus.OPEN}

        diff = diff_positions(snapshot, open_rows)
        created: list[Position] = []
        for position in diff.created:
            if position.position_id in parked:
                logger.debug("Position %s already parked locally, not recreating", position.position_id)
                continue
            created.append(position)

        stop_meta = await self._collect_stop_metadata(
            [*created, *(position for _, position in diff.unchanged)]
        )
        await self._apply_snapshot(created, diff.unchanged, stop_meta, result)

        for row in diff.closed:
            await self._handle_closed(row, result)

        result.finished_at = self._clock.now()
        logger.info(
            "%s pass: created=%d updated=%d unchanged=%d closed=%d deferred=%d "
            "unresolved=%d errors=%d",
            exchange.value,
            len(result.created),
            len(result.updated),
            len(result.unchanged),
            len(result.closed),
            len(result.deferred),
            len(result.unresolved),
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Created / unchanged
    # ------------------------------------------------------------------

    async def _collect_stop_metadata(
        self, positions: list[Position]
    ) -> dict[str, dict[str, Any]]:
        if not self._config.track_stop_orders:
            return {}
        out: dict[str, dict[str, Any]] = {}
        for position in positions:
            try:
                orders = await self._adapter.fetch_pending_stop_orders(position.position_id)
            except ExchangeError as exc:
                logger.warning(
                    "Stop orders for %s unavailable: %s", position.position_id, exc
                )
                continue
            out[position.position_id] = stop_order_metadata(orders)
        return out

    async def _apply_snapshot(
        self,
        created: list[Position],
        unchanged: list[tuple[IncomingPosition, Position]],
        stop_meta: dict[str, dict[str, Any]],
        result: ReconciliationResult,
    ) -> None:
        now = self._clock.now()
        async with session_scope(self._session_factory) as session:
            repo = IncomingPositionRepo(session)
            for position in created:
                await repo.create(
                    IncomingPosition(
                        exchange=position.exchange,
                        position_id=position.position_id,
                        symbol=position.symbol,
                        side=position.side,
                        entry_price=position.entry_price,
                        quantity=position.quantity,
                        leverage=position.leverage,
                        unrealized_pnl=position.unrealized_pnl,
                        mark_price=position.mark_price,
                        status=PositionStatus.OPEN,
                        opening_eval_done=not self._config.evaluation_popups,
                        trading_metadata=stop_meta.get(position.position_id, {}),
                        raw_payload=dict(position.raw),
                        created_at=now,
                        updated_at=now,
                    )
                )
                result.created.append(position.position_id)
                logger.info(
                    "New position %s %s %s", position.symbol, position.side.value,
                    position.position_id,
                )

            for row, position in unchanged:
                changes = _changed_fields(row, position, stop_meta.get(row.position_id))
                if not changes:
                    result.unchanged.append(row.position_id)
                    continue
                await repo.update(row.exchange, row.position_id, **changes)
                result.updated.append(row.position_id)
                logger.debug(
                    "Refreshed %s: %s", row.position_id, ", ".join(sorted(changes))
                )

    # ------------------------------------------------------------------
    # Closed
    # ------------------------------------------------------------------

    async def _handle_closed(
        self, row: IncomingPosition, result: ReconciliationResult
    ) -> None:
        position_id = row.position_id
        try:
            closed = await self._adapter.fetch_closed_position(position_id)
            if closed is None:
                raise PartialDataError(position_id, "close not yet in history feed")
            fills = None
            if self._config.fetch_fills_on_close:
                fills = await self._adapter.fetch_fills(
                    position_id=position_id, symbol=row.symbol, end=closed.closed_at
                )
            await self._materializer.materialize(row, closed, fills)
        except PartialDataError:
            logger.warning(
                "Position %s closed but history not published yet, deferring",
                position_id,
            )
            await self._record_attempt(row, result, deferred=True)
            return
        except AuthenticationError as exc:
            logger.error("Authentication failed while closing %s: %s", position_id, exc)
            result.errors.append(
                PositionError(
                    position_id=position_id,
                    error_type=PositionErrorType.AUTHENTICATION,
                    message=str(exc),
                )
            )
            return
        except TransientNetworkError as exc:
            self._record_error(result, position_id, PositionErrorType.TRANSIENT, exc)
            await self._record_attempt(row, result)
            return
        except MergeConflict as exc:
            self._record_error(result, position_id, PositionErrorType.MERGE_CONFLICT, exc)
            await self._record_attempt(row, result)
            return
        except ExchangeError as exc:
            self._record_error(result, position_id, PositionErrorType.EXCHANGE, exc)
            await self._record_attempt(row, result)
            return
        except Exception as exc:
            logger.exception("Unexpected failure closing %s", position_id)
            self._record_error(result, position_id, PositionErrorType.INTERNAL, exc)
            await self._record_attempt(row, result)
            return

        result.closed.append(position_id)

    @staticmethod
    def _record_error(
        result: ReconciliationResult,
        position_id: str,
        error_type: PositionErrorType,
        exc: Exception,
    ) -> None:
        logger.warning("Closing %s failed (%s): %s", position_id, error_type.value, exc)
        result.errors.append(
            PositionError(position_id=position_id, error_type=error_type, message=str(exc))
        )

    async def _record_attempt(
        self,
        row: IncomingPosition,
        result: ReconciliationResult,
        *,
        deferred: bool = False,
    ) -> None:
        """Count one failed close attempt; park the row at the retry cap."""
        attempts = row.close_attempts + 1
        fields: dict[str, Any] = {
            "close_attempts": attempts,
            "last_close_attempt_at": self._clock.now(),
        }
        parked = attempts >= self._config.max_close_attempts
        if parked:
            fields["status"] = PositionStatus.UNRESOLVED

        async with session_scope(self._session_factory) as session:
            updated = await IncomingPositionRepo(session).update(
                row.exchange, row.position_id, **fields
            )
        if updated is None:
            return

        if parked:
            logger.warning(
                "Position %s %s unresolved after %d close attempts; manual resolution needed",
                row.symbol, row.position_id, attempts,
            )
            result.unresolved.append(row.position_id)
        elif deferred:
            result.deferred.append(row.position_id)
