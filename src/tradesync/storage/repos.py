"""Repository pattern for async database operations.

Each repository encapsulates query logic for a single aggregate root.
All methods accept an :class:`AsyncSession` obtained from
:func:`tradesync.storage.connection.session_scope`.

Conversion helpers translate between core domain models
(:mod:`tradesync.core.models`) and ORM records.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tradesync.core.enums import Exchange, PositionSide, PositionStatus
from tradesync.core.ids import ensure_utc, utc_now
from tradesync.core.models import DayLedger, IncomingPosition

from .models import (
    DayLedgerRecord,
    IncomingPositionRecord,
    ScreenshotLinkRecord,
    TradeNoteRecord,
    TradeSatisfactionRecord,
    TradeTagRecord,
)

logger = logging.getLogger(__name__)

# Columns copied 1:1 between IncomingPosition and IncomingPositionRecord
_INCOMING_PLAIN_FIELDS = (
    "position_id",
    "symbol",
    "entry_price",
    "quantity",
    "leverage",
    "unrealized_pnl",
    "mark_price",
    "opening_eval_done",
    "skip_evaluation",
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
    "trading_metadata",
    "raw_payload",
    "history_payload",
    "close_attempts",
)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _opt_utc(ts: datetime | None) -> datetime | None:
    return ensure_utc(ts) if ts is not None else None


def _incoming_to_record(position: IncomingPosition) -> IncomingPositionRecord:
    """Convert a core :class:`IncomingPosition` to an ORM record."""
    now = utc_now()
    record = IncomingPositionRecord(
        exchange=position.exchange.value,
        side=position.side.value,
        status=position.status.value,
        last_close_attempt_at=position.last_close_attempt_at,
        created_at=position.created_at or now,
        updated_at=position.updated_at or now,
    )
    for name in _INCOMING_PLAIN_FIELDS:
        setattr(record, name, _to_column(getattr(position, name)))
    return record


def _record_to_incoming(record: IncomingPositionRecord) -> IncomingPosition:
    """Convert an ORM record back to a core :class:`IncomingPosition`."""
    data: dict[str, Any] = {name: getattr(record, name) for name in _INCOMING_PLAIN_FIELDS}
    data["tags"] = list(record.tags or [])
    data["trading_metadata"] = dict(record.trading_metadata or {})
    data["raw_payload"] = dict(record.raw_payload or {})
    return IncomingPosition(
        exchange=Exchange(record.exchange),
        side=PositionSide(record.side),
        status=PositionStatus(record.status),
        last_close_attempt_at=_opt_utc(record.last_close_attempt_at),
        created_at=_opt_utc(record.created_at),
        updated_at=_opt_utc(record.updated_at),
        **data,
    )


def _to_column(value: Any) -> Any:
    """Enum -> value, lists/dicts copied so the ORM sees a new object."""
    if isinstance(value, (PositionStatus, PositionSide, Exchange)):
        return value.value
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


def _ledger_to_columns(ledger: DayLedger) -> dict[str, Any]:
    dumped = ledger.model_dump(mode="json")
    return {
        "date": dumped["date"],
        "trades": dumped["trades"],
        "blotter": dumped["blotter"],
        "pnl": dumped["pnl"],
    }


def _record_to_ledger(record: DayLedgerRecord) -> DayLedger:
    return DayLedger.model_validate(
        {
            "day": record.day,
            "date": record.date,
            "trades": record.trades or [],
            "blotter": record.blotter or [],
            "pnl": record.pnl or {},
        }
    )


# ---------------------------------------------------------------------------
# IncomingPositionRepo
# ---------------------------------------------------------------------------

class IncomingPositionRepo:
    """Repository for :class:`IncomingPositionRecord` rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _get_record(
        self,
        exchange: Exchange,
        position_id: str,
        *,
        for_update: bool = False,
    ) -> IncomingPositionRecord | None:
        stmt = select(IncomingPositionRecord).where(
            IncomingPositionRecord.exchange == exchange.value,
            IncomingPositionRecord.position_id == position_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(
        self,
        exchange: Exchange,
        position_id: str,
        *,
        for_update: bool = False,
    ) -> IncomingPosition | None:
        """Retrieve one tracked position, or ``None``."""
        record = await self._get_record(exchange, position_id, for_update=for_update)
        if record is None:
            return None
        return _record_to_incoming(record)

    async def find(
        self,
        *,
        exchange: Exchange | None = None,
        status: PositionStatus | None = None,
        opening_eval_done: bool | None = None,
        symbol: str | None = None,
        updated_after: datetime | None = None,
        updated_before: datetime | None = None,
    ) -> list[IncomingPosition]:
        """Retrieve positions matching every given equality/range filter.

        Results are ordered oldest first.
        """
        stmt = select(IncomingPositionRecord).order_by(
            IncomingPositionRecord.created_at.asc(),
            IncomingPositionRecord.id.asc(),
        )
        if exchange is not None:
            stmt = stmt.where(IncomingPositionRecord.exchange == exchange.value)
        if status is not None:
            stmt = stmt.where(IncomingPositionRecord.status == status.value)
        if opening_eval_done is not None:
            stmt = stmt.where(IncomingPositionRecord.opening_eval_done == opening_eval_done)
        if symbol is not None:
            stmt = stmt.where(IncomingPositionRecord.symbol == symbol)
        if updated_after is not None:
            stmt = stmt.where(IncomingPositionRecord.updated_at >= updated_after)
        if updated_before is not None:
            stmt = stmt.where(IncomingPositionRecord.updated_at < updated_before)

        result = await self._session.execute(stmt)
        records: Sequence[IncomingPositionRecord] = result.scalars().all()
        return [_record_to_incoming(r) for r in records]

    async def count(
        self,
        *,
        status: PositionStatus | None = None,
        opening_eval_done: bool | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(IncomingPositionRecord)
        if status is not None:
            stmt = stmt.where(IncomingPositionRecord.status == status.value)
        if opening_eval_done is not None:
            stmt = stmt.where(IncomingPositionRecord.opening_eval_done == opening_eval_done)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def create(self, position: IncomingPosition) -> IncomingPosition:
        """Insert a new row. The (exchange, position_id) pair must be new."""
        record = _incoming_to_record(position)
        self._session.add(record)
        await self._session.flush()
        logger.debug(
            "Inserted incoming position %s/%s", position.exchange.value, position.position_id
        )
        return _record_to_incoming(record)

    async def update(
        self,
        exchange: Exchange,
        position_id: str,
        **fields: Any,
    ) -> IncomingPosition | None:
        """Apply *fields* to an existing row and bump ``updated_at``.

        Returns the updated position, or ``None`` if the row does not exist.
        """
        record = await self._get_record(exchange, position_id)
        if record is None:
            return None
        for name, value in fields.items():
            if not hasattr(record, name) or name in ("id", "exchange", "position_id"):
                raise AttributeError(f"Cannot update field {name!r}")
            setattr(record, name, _to_column(value))
        record.updated_at = utc_now()
        await self._session.flush()
        return _record_to_incoming(record)

    async def delete(self, exchange: Exchange, position_id: str) -> bool:
        """Delete a row. Returns ``True`` if something was deleted."""
        stmt = delete(IncomingPositionRecord).where(
            IncomingPositionRecord.exchange == exchange.value,
            IncomingPositionRecord.position_id == position_id,
        )
        result = await self._session.execute(stmt)
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.debug("Deleted incoming position %s/%s", exchange.value, position_id)
        return deleted


# ---------------------------------------------------------------------------
# DayLedgerRepo
# ---------------------------------------------------------------------------

class DayLedgerRepo:
    """Repository for :class:`DayLedgerRecord` rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, day: int, *, for_update: bool = False) -> DayLedger | None:
        """Load one day. ``for_update`` locks the row where supported."""
        stmt = select(DayLedgerRecord).where(DayLedgerRecord.day == day)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            return None
        return _record_to_ledger(record)

    async def save(self, ledger: DayLedger) -> None:
        """Insert or overwrite the row for ``ledger.day``."""
        stmt = select(DayLedgerRecord).where(DayLedgerRecord.day == ledger.day)
        result = await self._session.execute(stmt)
        existing = result.scalar_one_or_none()
        columns = _ledger_to_columns(ledger)

        if existing is not None:
            for name, value in columns.items():
                setattr(existing, name, value)
            await self._session.flush()
            logger.debug("Updated day ledger %s (%d trades)", ledger.date, len(ledger.trades))
            return

        self._session.add(DayLedgerRecord(day=ledger.day, **columns))
        await self._session.flush()
        logger.debug("Inserted day ledger %s", ledger.date)

    async def find_range(
        self,
        start_day: int | None = None,
        end_day: int | None = None,
    ) -> list[DayLedger]:
        """Days in ``[start_day, end_day]``, oldest first."""
        stmt = select(DayLedgerRecord).order_by(DayLedgerRecord.day.asc())
        if start_day is not None:
            stmt = stmt.where(DayLedgerRecord.day >= start_day)
        if end_day is not None:
            stmt = stmt.where(DayLedgerRecord.day <= end_day)
        result = await self._session.execute(stmt)
        return [_record_to_ledger(r) for r in result.scalars().all()]

    async def delete(self, day: int) -> bool:
        result = await self._session.execute(
            delete(DayLedgerRecord).where(DayLedgerRecord.day == day)
        )
        return (result.rowcount or 0) > 0


# ---------------------------------------------------------------------------
# AnnotationRepo
# ---------------------------------------------------------------------------

class AnnotationRepo:
    """Repository for the per-trade journal side tables.

    Every write is an upsert keyed by trade id (or link name), so replaying
    a metadata transfer never duplicates rows.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _one(self, stmt: Any) -> Any:
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_note(
        self,
        trade_id: str,
        day: int,
        *,
        note: str,
        opening: dict[str, Any],
        closing: dict[str, Any],
        trading_metadata: dict[str, Any],
    ) -> TradeNoteRecord:
        record = await self._one(
            select(TradeNoteRecord).where(TradeNoteRecord.trade_id == trade_id)
        )
        if record is None:
            record = TradeNoteRecord(trade_id=trade_id, day=day)
            self._session.add(record)
        record.note = note
        record.opening = dict(opening)
        record.closing = dict(closing)
        record.trading_metadata = dict(trading_metadata)
        await self._session.flush()
        return record

    async def upsert_tags(self, trade_id: str, day: int, tags: list[str]) -> TradeTagRecord:
        record = await self._one(
            select(TradeTagRecord).where(TradeTagRecord.trade_id == trade_id)
        )
        if record is None:
            record = TradeTagRecord(trade_id=trade_id, day=day)
            self._session.add(record)
        record.tags = list(tags)
        await self._session.flush()
        return record

    async def upsert_satisfaction(
        self, trade_id: str, day: int, satisfaction: int
    ) -> TradeSatisfactionRecord:
        record = await self._one(
            select(TradeSatisfactionRecord).where(
                TradeSatisfactionRecord.trade_id == trade_id
            )
        )
        if record is None:
            record = TradeSatisfactionRecord(trade_id=trade_id, day=day, satisfaction=satisfaction)
            self._session.add(record)
        else:
            record.satisfaction = satisfaction
        await self._session.flush()
        return record

    async def upsert_screenshot_link(
        self,
        name: str,
        *,
        trade_id: str,
        day: int,
        kind: str,
        screenshot_id: str,
    ) -> ScreenshotLinkRecord:
        record = await self._one(
            select(ScreenshotLinkRecord).where(ScreenshotLinkRecord.name == name)
        )
        if record is None:
            record = ScreenshotLinkRecord(
                name=name, trade_id=trade_id, day=day, kind=kind, screenshot_id=screenshot_id,
            )
            self._session.add(record)
        else:
            record.trade_id = trade_id
            record.day = day
            record.kind = kind
            record.screenshot_id = screenshot_id
        await self._session.flush()
        return record

    # -- Reads ----------------------------------------------------------------

    async def get_note(self, trade_id: str) -> TradeNoteRecord | None:
        return await self._one(
            select(TradeNoteRecord).where(TradeNoteRecord.trade_id == trade_id)
        )

    async def get_tags(self, trade_id: str) -> list[str]:
        record = await self._one(
            select(TradeTagRecord).where(TradeTagRecord.trade_id == trade_id)
        )
        return list(record.tags) if record is not None else []

    async def get_satisfaction(self, trade_id: str) -> int | None:
        record = await self._one(
            select(TradeSatisfactionRecord).where(
                TradeSatisfactionRecord.trade_id == trade_id
            )
        )
        return record.satisfaction if record is not None else None

    async def list_screenshot_links(self, trade_id: str) -> list[ScreenshotLinkRecord]:
        result = await self._session.execute(
            select(ScreenshotLinkRecord)
            .where(ScreenshotLinkRecord.trade_id == trade_id)
            .order_by(ScreenshotLinkRecord.name.asc())
        )
        return list(result.scalars().all())
