"""SQLAlchemy ORM models for the position and journal database.

All tables use integer surrogate keys, UTC timestamps, and indexes for the
common query patterns (by exchange + status, by day, by trade id).

Tables:
    incoming_positions   one row per (exchange, position_id) while tracked
    day_ledgers          one row per UTC day: trades, blotter, pnl
    trade_notes / trade_tags / trade_satisfactions / screenshot_links
                         user metadata attached to a materialized trade
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DecimalText(TypeDecorator):
    """Exact Decimal storage as text (SQLite has no native decimal)."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        if value is None:
            return None
        return str(Decimal(str(value)))

    def process_result_value(self, value: Any, dialect: Any) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# IncomingPositionRecord
# ---------------------------------------------------------------------------

class IncomingPositionRecord(Base):
    """Tracked exchange position plus its evaluation state.

    Maps from :class:`tradesync.core.models.IncomingPosition`.
    Refreshes UPDATE this row in place; the row is deleted once the
    position's metadata has been transferred to the journal.
    """

    __tablename__ = "incoming_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exchange: Mapped[str] = mapped_column(String(32), nullable=False)
    position_id: Mapped[str] = mapped_column(String(128), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    entry_price: Mapped[Decimal] = mapped_column(DecimalText, default=Decimal("0"))
    quantity: Mapped[Decimal] = mapped_column(DecimalText, default=Decimal("0"))
    leverage: Mapped[int] = mapped_column(Integer, default=1)
    unrealized_pnl: Mapped[Decimal] = mapped_column(DecimalText, default=Decimal("0"))
    mark_price: Mapped[Decimal | None] = mapped_column(DecimalText, nullable=True)

    status: Mapped[str] = mapped_column(String(24), nullable=False, default="open")
    opening_eval_done: Mapped[bool] = mapped_column(Boolean, default=False)
    skip_evaluation: Mapped[bool] = mapped_column(Boolean, default=False)

    playbook: Mapped[str] = mapped_column(Text, default="")
    entry_note: Mapped[str] = mapped_column(Text, default="")
    feelings: Mapped[str] = mapped_column(Text, default="")
    stress_level: Mapped[int] = mapped_column(Integer, default=0)
    emotion_level: Mapped[int] = mapped_column(Integer, default=0)
    entry_timeframe: Mapped[str] = mapped_column(String(16), default="")
    trade_type: Mapped[str] = mapped_column(String(32), default="")
    tags: Mapped[list] = mapped_column(JSON, default=list)
    entry_screenshot_id: Mapped[str] = mapped_column(String(128), default="")
    trend_screenshot_id: Mapped[str] = mapped_column(String(128), default="")
    satisfaction: Mapped[int | None] = mapped_column(Integer, nullable=True)
    closing_note: Mapped[str] = mapped_column(Text, default="")

    trading_metadata: Mapped[dict] = mapped_column(JSON, default=dict)
    raw_payload: Mapped[dict] = mapped_column(JSON, default=dict)
    history_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    close_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_close_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("exchange", "position_id", name="uq_incoming_exchange_position"),
        Index("ix_incoming_exchange_status", "exchange", "status"),
        Index("ix_incoming_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<IncomingPositionRecord(exchange={self.exchange!r}, "
            f"position_id={self.position_id!r}, status={self.status!r})>"
        )


# ---------------------------------------------------------------------------
# DayLedgerRecord
# ---------------------------------------------------------------------------

class DayLedgerRecord(Base):
    """One UTC calendar day of trades.

    ``trades`` is the ordered list of serialized :class:`Trade` objects;
    ``blotter`` and ``pnl`` are derived and rewritten on every merge.
    """

    __tablename__ = "day_ledgers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    day: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    trades: Mapped[list] = mapped_column(JSON, default=list)
    blotter: Mapped[list] = mapped_column(JSON, default=list)
    pnl: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_day_ledgers_date", "date"),
    )

    def __repr__(self) -> str:
        return f"<DayLedgerRecord(day={self.day!r}, date={self.date!r})>"


# ---------------------------------------------------------------------------
# Journal side tables
# ---------------------------------------------------------------------------

class TradeNoteRecord(Base):
    """Note HTML plus the structured opening/closing annotation."""

    __tablename__ = "trade_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[str] = mapped_column(String(192), unique=True, nullable=False)
    day: Mapped[int] = mapped_column(BigInteger, nullable=False)
    note: Mapped[str] = mapped_column(Text, default="")
    opening: Mapped[dict] = mapped_column(JSON, default=dict)
    closing: Mapped[dict] = mapped_column(JSON, default=dict)
    trading_metadata: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_trade_notes_day", "day"),
    )


class TradeTagRecord(Base):
    __tablename__ = "trade_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[str] = mapped_column(String(192), unique=True, nullable=False)
    day: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tags: Mapped[list] = mapped_column(JSON, default=list)

    __table_args__ = (
        Index("ix_trade_tags_day", "day"),
    )


class TradeSatisfactionRecord(Base):
    __tablename__ = "trade_satisfactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[str] = mapped_column(String(192), unique=True, nullable=False)
    day: Mapped[int] = mapped_column(BigInteger, nullable=False)
    satisfaction: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_trade_satisfactions_day", "day"),
    )


class ScreenshotLinkRecord(Base):
    """Link between a trade and an externally stored screenshot."""

    __tablename__ = "screenshot_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(192), unique=True, nullable=False)
    trade_id: Mapped[str] = mapped_column(String(192), nullable=False)
    day: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # entry / trend / closing
    screenshot_id: Mapped[str] = mapped_column(String(128), nullable=False)

    __table_args__ = (
        Index("ix_screenshot_links_trade_id", "trade_id"),
        Index("ix_screenshot_links_day", "day"),
    )
