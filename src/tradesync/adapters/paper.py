"""Paper adapter: an in-memory exchange with no network calls.

Maintains open positions, the published history feed, fills and pending
TP/SL orders.  Closing a position removes it from the open snapshot; its
history row only becomes visible once published, which models the lag
between a close and the exchange's history feed.  Guarded by an asyncio
lock.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal

from tradesync.core.enums import Exchange
from tradesync.core.errors import ExchangeError
from tradesync.core.ids import IClock, WallClock
from tradesync.core.models import ClosedPosition, Fill, Position, StopOrder

logger = logging.getLogger(__name__)


class PaperAdapter:
    """Simulated exchange adapter for local runs and tests.

    Parameters
    ----------
    exchange:
        Which exchange this paper adapter pretends to be.
    clock:
        Time source for close timestamps.
    """

    def __init__(
        self,
        exchange: Exchange = Exchange.PAPER,
        clock: IClock | None = None,
    ) -> None:
        self._exchange = exchange
        self._clock = clock or WallClock()

        # State stores
        self._open: dict[str, Position] = {}  # position_id -> Position
        self._history: dict[str, ClosedPosition] = {}  # published closes
        self._unpublished: dict[str, ClosedPosition] = {}  # closed, not visible
        self._fills: list[Fill] = []
        self._stop_orders: dict[str, list[StopOrder]] = {}

        # Injected failures, raised once by the next matching call
        self.listing_error: Exception | None = None
        self.history_errors: dict[str, Exception] = {}

        self._lock = asyncio.Lock()

        logger.info("PaperAdapter initialised (exchange=%s)", exchange.value)

    @property
    def exchange(self) -> Exchange:
        return self._exchange

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def open_position(self, position: Position) -> None:
        """Add or replace a position in the open snapshot."""
        self._open[position.position_id] = position

    def update_position(self, position_id: str, **fields: object) -> Position:
        current = self._open.get(position_id)
        if current is None:
            raise ExchangeError(f"Unknown paper position: {position_id}")
        updated = current.model_copy(update=fields)
        self._open[position_id] = updated
        return updated

    def close_position(
        self,
        position_id: str,
        *,
        close_price: Decimal,
        realized_pnl: Decimal,
        fee: Decimal = Decimal("0"),
        funding: Decimal = Decimal("0"),
        closed_at: datetime | None = None,
        publish: bool = True,
    ) -> ClosedPosition:
        """Remove a position from the snapshot and record its close.

        With ``publish=False`` the history row stays hidden until
        :meth:`publish_history` is called.
        """
        position = self._open.pop(position_id, None)
        if position is None:
            raise ExchangeError(f"Unknown paper position: {position_id}")
        self._stop_orders.pop(position_id, None)

        closed = ClosedPosition(
            exchange=self._exchange,
            position_id=position_id,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            close_price=close_price,
            quantity=position.quantity,
            realized_pnl=realized_pnl,
            fee=fee,
            funding=funding,
            leverage=position.leverage,
            opened_at=position.opened_at or self._clock.now(),
            closed_at=closed_at or self._clock.now(),
        )
        if publish:
            self._history[position_id] = closed
        else:
            self._unpublished[position_id] = closed
        logger.info(
            "Paper close: %s %s pnl=%s (published=%s)",
            position.symbol, position_id, realized_pnl, publish,
        )
        return closed

    def publish_history(self, position_id: str) -> ClosedPosition:
        closed = self._unpublished.pop(position_id, None)
        if closed is None:
            raise ExchangeError(f"No unpublished close for {position_id}")
        self._history[position_id] = closed
        return closed

    def add_history(self, closed: ClosedPosition) -> None:
        self._history[closed.position_id] = closed

    def add_fill(self, fill: Fill) -> None:
        self._fills.append(fill)

    def set_stop_orders(self, position_id: str, orders: list[StopOrder]) -> None:
        self._stop_orders[position_id] = list(orders)

    # ------------------------------------------------------------------
    # IExchangeAdapter
    # ------------------------------------------------------------------

    async def list_open_positions(self) -> list[Position]:
        async with self._lock:
            if self.listing_error is not None:
                exc, self.listing_error = self.listing_error, None
                raise exc
            return list(self._open.values())

    async def fetch_closed_position(
        self, position_id: str
    ) -> ClosedPosition | None:
        async with self._lock:
            exc = self.history_errors.pop(position_id, None)
            if exc is not None:
                raise exc
            return self._history.get(position_id)

    async def fetch_position_history(
        self, start: datetime, end: datetime
    ) -> list[ClosedPosition]:
        async with self._lock:
            return sorted(
                (c for c in self._history.values() if start <= c.closed_at <= end),
                key=lambda c: c.closed_at,
            )

    async def fetch_fills(
        self,
        position_id: str | None = None,
        symbol: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Fill]:
        async with self._lock:
            fills = self._fills
            if position_id is not None:
                fills = [f for f in fills if f.position_id == position_id]
            if symbol is not None:
                fills = [f for f in fills if f.symbol == symbol]
            if start is not None:
                fills = [f for f in fills if f.timestamp >= start]
            if end is not None:
                fills = [f for f in fills if f.timestamp <= end]
            return list(fills)

    async def fetch_pending_stop_orders(
        self, position_id: str
    ) -> list[StopOrder]:
        async with self._lock:
            return list(self._stop_orders.get(position_id, []))

    async def close(self) -> None:
        return None
