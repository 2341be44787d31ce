"""Core domain models used across tradesync.

These are the canonical "truth models" for the system.
Every exchange adapter normalizes into these shapes; no exchange-specific
field names leak past the adapter boundary.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import (
    EvaluationKind,
    Exchange,
    PositionErrorType,
    PositionSide,
    PositionStatus,
    Side,
    StopOrderKind,
)
from .ids import new_id, utc_now

_ZERO = Decimal("0")


# ---------------------------------------------------------------------------
# Exchange-facing shapes
# ---------------------------------------------------------------------------

class Position(BaseModel):
    """One entry of an open-position snapshot."""

    exchange: Exchange
    position_id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal = _ZERO
    quantity: Decimal = _ZERO
    leverage: int = 1
    unrealized_pnl: Decimal = _ZERO
    mark_price: Decimal | None = None
    liquidation_price: Decimal | None = None
    opened_at: datetime | None = None
    updated_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ClosedPosition(BaseModel):
    """Authoritative close record published in the exchange history feed."""

    exchange: Exchange
    position_id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal = _ZERO
    close_price: Decimal = _ZERO
    quantity: Decimal = _ZERO
    realized_pnl: Decimal = _ZERO  # Gross, before fees and funding
    fee: Decimal = _ZERO
    funding: Decimal = _ZERO
    leverage: int = 1
    opened_at: datetime
    closed_at: datetime
    raw: dict[str, Any] = Field(default_factory=dict)


class Fill(BaseModel):
    """A single execution contributing to a position."""

    exchange: Exchange
    fill_id: str
    order_id: str = ""
    position_id: str | None = None
    symbol: str
    side: Side
    price: Decimal
    quantity: Decimal
    fee: Decimal = _ZERO
    realized_pnl: Decimal = _ZERO
    is_maker: bool = False
    timestamp: datetime
    raw: dict[str, Any] = Field(default_factory=dict)


class StopOrder(BaseModel):
    """Pending take-profit / stop-loss trigger attached to a position."""

    exchange: Exchange
    order_id: str
    position_id: str
    symbol: str
    kind: StopOrderKind
    trigger_price: Decimal
    quantity: Decimal | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Ledger shapes
# ---------------------------------------------------------------------------

class Trade(BaseModel):
    """Immutable record of one completed position."""

    model_config = ConfigDict(frozen=True)

    id: str
    exchange: Exchange
    position_id: str
    day: int  # Epoch seconds of the UTC close day
    symbol: str
    side: PositionSide
    strategy: str  # "long" / "short"
    quantity: Decimal
    leverage: int = 1
    entry_price: Decimal
    exit_price: Decimal
    entry_time: datetime
    exit_time: datetime

    gross_proceeds: Decimal
    exchange_fee: Decimal
    funding_fee: Decimal
    commission: Decimal  # |exchange_fee| + |funding_fee|
    net_proceeds: Decimal

    gross_wins: Decimal = _ZERO
    gross_loss: Decimal = _ZERO
    net_wins: Decimal = _ZERO
    net_loss: Decimal = _ZERO
    gross_wins_count: int = 0
    gross_loss_count: int = 0
    net_wins_count: int = 0
    net_loss_count: int = 0

    executions_count: int = 1
    currency: str = "USDT"
    type: str = "futures"


class BlotterEntry(BaseModel):
    """Per-symbol rollup inside a day ledger."""

    symbol: str
    gross_proceeds: Decimal = _ZERO
    net_proceeds: Decimal = _ZERO
    fees: Decimal = _ZERO
    gross_wins_count: int = 0
    gross_loss_count: int = 0
    trades: int = 0


class PnLSummary(BaseModel):
    """Day-level P&L totals."""

    gross_proceeds: Decimal = _ZERO
    net_proceeds: Decimal = _ZERO
    fees: Decimal = _ZERO
    gross_wins_count: int = 0
    gross_loss_count: int = 0
    trades: int = 0


class DayLedger(BaseModel):
    """All trades closed on one UTC calendar day plus derived rollups.

    ``blotter`` and ``pnl`` are derived data: they are always rebuilt from
    ``trades`` (see :func:`tradesync.journal.ledger.recompute`).
    """

    day: int
    date: str
    trades: list[Trade] = Field(default_factory=list)
    blotter: list[BlotterEntry] = Field(default_factory=list)
    pnl: PnLSummary = Field(default_factory=PnLSummary)

    def find_trade(self, trade_id: str) -> Trade | None:
        for trade in self.trades:
            if trade.id == trade_id:
                return trade
        return None


# ---------------------------------------------------------------------------
# Persisted incoming position (lifecycle + user metadata)
# ---------------------------------------------------------------------------

class IncomingPosition(BaseModel):
    """Locally tracked position and its annotation state.

    The lifecycle fields (``status``, ``opening_eval_done``) are the single
    source of truth for the evaluation queue.
    """

    exchange: Exchange
    position_id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal = _ZERO
    quantity: Decimal = _ZERO
    leverage: int = 1
    unrealized_pnl: Decimal = _ZERO
    mark_price: Decimal | None = None
    status: PositionStatus = PositionStatus.OPEN
    opening_eval_done: bool = False
    skip_evaluation: bool = False

    # Opening annotation
    playbook: str = ""
    entry_note: str = ""
    feelings: str = ""
    stress_level: int = 0
    emotion_level: int = 0
    entry_timeframe: str = ""
    trade_type: str = ""
    tags: list[str] = Field(default_factory=list)
    entry_screenshot_id: str = ""
    trend_screenshot_id: str = ""
    satisfaction: int | None = None
    closing_note: str = ""

    trading_metadata: dict[str, Any] = Field(default_factory=dict)
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    history_payload: dict[str, Any] | None = None

    close_attempts: int = 0
    last_close_attempt_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def closed_position(self) -> ClosedPosition | None:
        """The close payload retained while awaiting closing evaluation."""
        if not self.history_payload:
            return None
        return ClosedPosition.model_validate(self.history_payload)


# ---------------------------------------------------------------------------
# Evaluation payloads
# ---------------------------------------------------------------------------

class OpeningEvaluation(BaseModel):
    """User annotation captured while a position is open."""

    playbook: str = ""
    entry_note: str = ""
    feelings: str = ""
    stress_level: int = 0
    emotion_level: int = 0
    entry_timeframe: str = ""
    trade_type: str = ""
    tags: list[str] = Field(default_factory=list)
    entry_screenshot_id: str = ""
    trend_screenshot_id: str = ""
    skip_evaluation: bool = False


class ClosingEvaluation(BaseModel):
    """User annotation submitted after a position closed."""

    note: str = ""
    tags: list[str] = Field(default_factory=list)
    satisfaction: int | None = None
    closing_note: str = ""
    closing_stress_level: int = 0
    closing_emotion_level: int = 0
    closing_feelings: str = ""
    closing_timeframe: str = ""
    closing_playbook: str = ""
    closing_trade_type: str = ""
    closing_screenshot_id: str = ""
    closing_tags: list[str] = Field(default_factory=list)
    strategy_followed: bool | None = None


class EvaluationTask(BaseModel):
    """Derived, in-memory description of a pending user annotation."""

    kind: EvaluationKind
    exchange: Exchange
    position_id: str
    symbol: str
    side: PositionSide
    closed_position: ClosedPosition | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.kind.value, self.exchange.value, self.position_id)


class PendingCounts(BaseModel):
    """Unresolved evaluation counts for UI badges."""

    opening: int = 0
    closing: int = 0

    @property
    def total(self) -> int:
        return self.opening + self.closing


# ---------------------------------------------------------------------------
# Pass results
# ---------------------------------------------------------------------------

class PositionError(BaseModel):
    position_id: str | None = None
    error_type: PositionErrorType
    message: str


class ReconciliationResult(BaseModel):
    """Outcome of one exchange's reconciliation pass."""

    pass_id: str = Field(default_factory=new_id)
    exchange: Exchange
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    closed: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)
    unresolved: list[str] = Field(default_factory=list)
    errors: list[PositionError] = Field(default_factory=list)


class PassSummary(BaseModel):
    """Aggregate of one reconciliation pass across all exchanges."""

    pass_id: str = Field(default_factory=new_id)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    results: list[ReconciliationResult] = Field(default_factory=list)
    exchange_errors: dict[str, str] = Field(default_factory=dict)
    auth_failed: bool = False

    def _collect(self, attr: str) -> list[str]:
        out: list[str] = []
        for result in self.results:
            out.extend(getattr(result, attr))
        return out

    @property
    def created(self) -> list[str]:
        return self._collect("created")

    @property
    def updated(self) -> list[str]:
        return self._collect("updated")

    @property
    def unchanged(self) -> list[str]:
        return self._collect("unchanged")

    @property
    def closed(self) -> list[str]:
        return self._collect("closed")

    @property
    def deferred(self) -> list[str]:
        return self._collect("deferred")

    @property
    def unresolved(self) -> list[str]:
        return self._collect("unresolved")

    @property
    def errors(self) -> list[PositionError]:
        errors: list[PositionError] = []
        for result in self.results:
            errors.extend(result.errors)
        return errors

    def as_dict(self) -> dict[str, Any]:
        """``{created, updated, closed, deferred, unresolved, errors}`` view."""
        return {
            "pass_id": self.pass_id,
            "created": self.created,
            "updated": self.updated,
            "closed": self.closed,
            "deferred": self.deferred,
            "unresolved": self.unresolved,
            "errors": [e.model_dump(mode="json") for e in self.errors],
            "exchange_errors": dict(self.exchange_errors),
        }


class ImportSummary(BaseModel):
    """Outcome of a history import over a time window."""

    exchange: Exchange
    start: datetime
    end: datetime
    imported: list[str] = Field(default_factory=list)  # Trade ids
    unchanged: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)  # Position ids still tracked locally
    errors: list[PositionError] = Field(default_factory=list)
