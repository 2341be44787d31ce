"""Tests for the async repositories over an in-memory SQLite database."""

from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio

from tradesync.core.enums import Exchange, PositionSide, PositionStatus
from tradesync.core.models import IncomingPosition
from tradesync.journal.ledger import build_trade, merge_trade
from tradesync.storage.connection import session_scope
from tradesync.storage.repos import AnnotationRepo, DayLedgerRepo, IncomingPositionRepo


def _incoming(position_id: str = "P1", **fields) -> IncomingPosition:
    data = dict(
        exchange=Exchange.PAPER,
        position_id=position_id,
        symbol="BTCUSDT",
        side=PositionSide.LONG,
        entry_price=Decimal("60000.12345678"),
        quantity=Decimal("0.001"),
    )
    data.update(fields)
    return IncomingPosition(**data)


@pytest_asyncio.fixture
async def seeded(session_factory):
    async with session_scope(session_factory) as session:
        repo = IncomingPositionRepo(session)
        await repo.create(_incoming("P1"))
        await repo.create(_incoming("P2", status=PositionStatus.PENDING_EVALUATION))
        await repo.create(_incoming("P3", opening_eval_done=True))
    return session_factory


class TestIncomingPositionRepo:
    @pytest.mark.asyncio
    async def test_create_and_get_keeps_decimal_precision(self, session_factory):
        async with session_scope(session_factory) as session:
            await IncomingPositionRepo(session).create(
                _incoming(tags=["breakout"], trading_metadata={"take_profit": "65000"})
            )

        async with session_scope(session_factory) as session:
            row = await IncomingPositionRepo(session).get(Exchange.PAPER, "P1")

        assert row is not None
        assert row.entry_price == Decimal("60000.12345678")
        assert row.quantity == Decimal("0.001")
        assert row.tags == ["breakout"]
        assert row.trading_metadata == {"take_profit": "65000"}
        assert row.created_at is not None
        assert row.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_missing(self, session_factory):
        async with session_scope(session_factory) as session:
            assert await IncomingPositionRepo(session).get(Exchange.PAPER, "nope") is None

    @pytest.mark.asyncio
    async def test_find_filters(self, seeded):
        async with session_scope(seeded) as session:
            repo = IncomingPositionRepo(session)
            open_rows = await repo.find(status=PositionStatus.OPEN)
            needs_opening = await repo.find(
                status=PositionStatus.OPEN, opening_eval_done=False
            )
            other_exchange = await repo.find(exchange=Exchange.BITGET)

        assert {r.position_id for r in open_rows} == {"P1", "P3"}
        assert [r.position_id for r in needs_opening] == ["P1"]
        assert other_exchange == []

    @pytest.mark.asyncio
    async def test_count(self, seeded):
        async with session_scope(seeded) as session:
            repo = IncomingPositionRepo(session)
            assert await repo.count() == 3
            assert await repo.count(status=PositionStatus.PENDING_EVALUATION) == 1

    @pytest.mark.asyncio
    async def test_update(self, seeded):
        async with session_scope(seeded) as session:
            updated = await IncomingPositionRepo(session).update(
                Exchange.PAPER, "P1", mark_price=Decimal("61000"), close_attempts=2
            )
        assert updated is not None
        assert updated.mark_price == Decimal("61000")
        assert updated.close_attempts == 2

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, session_factory):
        async with session_scope(session_factory) as session:
            assert await IncomingPositionRepo(session).update(
                Exchange.PAPER, "nope", close_attempts=1
            ) is None

    @pytest.mark.asyncio
    async def test_update_rejects_key_fields(self, seeded):
        with pytest.raises(AttributeError):
            async with session_scope(seeded) as session:
                await IncomingPositionRepo(session).update(
                    Exchange.PAPER, "P1", position_id="P9"
                )

    @pytest.mark.asyncio
    async def test_delete(self, seeded):
        async with session_scope(seeded) as session:
            repo = IncomingPositionRepo(session)
            assert await repo.delete(Exchange.PAPER, "P2")
            assert not await repo.delete(Exchange.PAPER, "P2")
        async with session_scope(seeded) as session:
            assert await IncomingPositionRepo(session).count() == 2

    @pytest.mark.asyncio
    async def test_failed_scope_rolls_back(self, session_factory):
        with pytest.raises(RuntimeError):
            async with session_scope(session_factory) as session:
                await IncomingPositionRepo(session).create(_incoming("P9"))
                raise RuntimeError("boom")
        async with session_scope(session_factory) as session:
            assert await IncomingPositionRepo(session).get(Exchange.PAPER, "P9") is None


class TestDayLedgerRepo:
    @pytest.mark.asyncio
    async def test_save_and_reload(self, session_factory, make_closed):
        ledger, _ = merge_trade(None, build_trade(make_closed(realized_pnl="12.5")))
        async with session_scope(session_factory) as session:
            await DayLedgerRepo(session).save(ledger)

        async with session_scope(session_factory) as session:
            loaded = await DayLedgerRepo(session).get(ledger.day)

        assert loaded == ledger
        assert loaded.pnl.gross_proceeds == Decimal("12.5")

    @pytest.mark.asyncio
    async def test_save_overwrites(self, session_factory, make_closed):
        first, _ = merge_trade(None, build_trade(make_closed("P1")))
        second, _ = merge_trade(first, build_trade(make_closed("P2")))
        async with session_scope(session_factory) as session:
            repo = DayLedgerRepo(session)
            await repo.save(first)
            await repo.save(second)
        async with session_scope(session_factory) as session:
            days = await DayLedgerRepo(session).find_range()
        assert len(days) == 1
        assert len(days[0].trades) == 2


class TestAnnotationRepo:
    @pytest.mark.asyncio
    async def test_upserts_do_not_duplicate(self, session_factory):
        for note in ("<p>first</p>", "<p>second</p>"):
            async with session_scope(session_factory) as session:
                repo = AnnotationRepo(session)
                await repo.upsert_note(
                    "t1", 1, note=note, opening={}, closing={}, trading_metadata={}
                )
                await repo.upsert_tags("t1", 1, ["a", "b"])
                await repo.upsert_satisfaction("t1", 1, 0)
                await repo.upsert_screenshot_link(
                    "1_BTCUSDT_entry", trade_id="t1", day=1, kind="entry", screenshot_id="s1"
                )

        async with session_scope(session_factory) as session:
            repo = AnnotationRepo(session)
            note = await repo.get_note("t1")
            assert note is not None and note.note == "<p>second</p>"
            assert await repo.get_tags("t1") == ["a", "b"]
            assert await repo.get_satisfaction("t1") == 0
            links = await repo.list_screenshot_links("t1")
            assert [link.name for link in links] == ["1_BTCUSDT_entry"]

    @pytest.mark.asyncio
    async def test_reads_for_unknown_trade(self, session_factory):
        async with session_scope(session_factory) as session:
            repo = AnnotationRepo(session)
            assert await repo.get_note("t404") is None
            assert await repo.get_tags("t404") == []
            assert await repo.get_satisfaction("t404") is None
