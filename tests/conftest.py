"""Shared fixtures for the tradesync test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from tradesync.adapters.paper import PaperAdapter
from tradesync.core.config import ReconciliationConfig
from tradesync.core.enums import Exchange, PositionSide
from tradesync.core.ids import SimClock
from tradesync.core.models import ClosedPosition, Position
from tradesync.reconciliation.service import ReconciliationService
from tradesync.storage.connection import create_all, create_engine, create_session_factory

START = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    """Deterministic clock starting 2024-06-01 09:00 UTC."""
    return SimClock(start=START)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite schema, one shared connection per test."""
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await create_all(engine)
    yield create_session_factory(engine)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Domain factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_position():
    """Factory for open-snapshot positions."""

    def _make(
        position_id: str = "P1",
        symbol: str = "BTCUSDT",
        side: PositionSide = PositionSide.LONG,
        exchange: Exchange = Exchange.PAPER,
        **overrides,
    ) -> Position:
        data = dict(
            exchange=exchange,
            position_id=position_id,
            symbol=symbol,
            side=side,
            entry_price=Decimal("60000"),
            quantity=Decimal("1"),
            leverage=10,
            unrealized_pnl=Decimal("0"),
            mark_price=Decimal("60000"),
            opened_at=START,
        )
        data.update(overrides)
        return Position(**data)

    return _make


@pytest.fixture
def make_closed():
    """Factory for history close records."""

    def _make(
        position_id: str = "P1",
        realized_pnl: Decimal | str = "50",
        fee: Decimal | str = "1",
        funding: Decimal | str = "0",
        symbol: str = "BTCUSDT",
        side: PositionSide = PositionSide.LONG,
        closed_at: datetime | None = None,
        exchange: Exchange = Exchange.PAPER,
        **overrides,
    ) -> ClosedPosition:
        data = dict(
            exchange=exchange,
            position_id=position_id,
            symbol=symbol,
            side=side,
            entry_price=Decimal("60000"),
            close_price=Decimal("60050"),
            quantity=Decimal("1"),
            realized_pnl=Decimal(str(realized_pnl)),
            fee=Decimal(str(fee)),
            funding=Decimal(str(funding)),
            leverage=10,
            opened_at=START,
            closed_at=closed_at or START + timedelta(hours=2),
        )
        data.update(overrides)
        return ClosedPosition(**data)

    return _make


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------

@pytest.fixture
def paper_adapter(sim_clock) -> PaperAdapter:
    return PaperAdapter(clock=sim_clock)


@pytest.fixture
def make_service(session_factory, sim_clock):
    """Build a service over the in-memory database and given adapters."""

    def _make(*adapters, **config) -> ReconciliationService:
        return ReconciliationService(
            list(adapters),
            session_factory,
            config=ReconciliationConfig(**config),
            clock=sim_clock,
        )

    return _make
