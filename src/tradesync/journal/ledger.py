"""Day ledger math: trade construction, merge and rollup recompute.

Pure functions, no I/O.  The materializer wraps them in a transaction.

Rollup rule: ``blotter`` and ``pnl`` are always rebuilt from the complete
trade list after a mutation, never patched incrementally.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from tradesync.core.enums import PositionSide
from tradesync.core.errors import MergeConflict
from tradesync.core.ids import day_bucket, day_label, synthetic_trade_id
from tradesync.core.models import (
    BlotterEntry,
    ClosedPosition,
    DayLedger,
    Fill,
    IncomingPosition,
    PnLSummary,
    Trade,
)

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_ONE = Decimal("1")


def build_trade(
    closed: ClosedPosition,
    *,
    incoming: IncomingPosition | None = None,
    fills: list[Fill] | None = None,
) -> Trade:
    """Convert an authoritative close record into a :class:`Trade`.

    ``commission = |fee| + |funding|`` and ``net = gross - commission``.
    A trade is a gross win iff ``gross > 0`` and a net win iff ``net > 0``;
    everything else (including exactly zero) counts as a loss.
    """
    day = day_bucket(closed.closed_at)
    gross = closed.realized_pnl
    commission = abs(closed.fee) + abs(closed.funding)
    net = gross - commission
    gross_win = gross > 0
    net_win = net > 0

    quantity = closed.quantity
    if quantity == 0 and incoming is not None:
        quantity = incoming.quantity
    if quantity == 0:
        quantity = _ONE

    leverage = closed.leverage
    if leverage <= 1 and incoming is not None:
        leverage = max(leverage, incoming.leverage)

    return Trade(
        id=synthetic_trade_id(day, closed.position_id),
        exchange=closed.exchange,
        position_id=closed.position_id,
        day=day,
        symbol=closed.symbol or "FUTURES",
        side=closed.side,
        strategy="long" if closed.side == PositionSide.LONG else "short",
        quantity=quantity,
        leverage=leverage,
        entry_price=closed.entry_price,
        exit_price=closed.close_price,
        entry_time=closed.opened_at,
        exit_time=closed.closed_at,
        gross_proceeds=gross,
        exchange_fee=closed.fee,
        funding_fee=closed.funding,
        commission=commission,
        net_proceeds=net,
        gross_wins=gross if gross_win else _ZERO,
        gross_loss=_ZERO if gross_win else gross,
        net_wins=net if net_win else _ZERO,
        net_loss=_ZERO if net_win else net,
        gross_wins_count=1 if gross_win else 0,
        gross_loss_count=0 if gross_win else 1,
        net_wins_count=1 if net_win else 0,
        net_loss_count=0 if net_win else 1,
        executions_count=len(fills) if fills else 1,
    )


def recompute_blotter(trades: list[Trade]) -> list[BlotterEntry]:
    """Per-symbol rollup, symbols in first-seen order."""
    entries: dict[str, BlotterEntry] = {}
    for t in trades:
        entry = entries.get(t.symbol)
        if entry is None:
            entry = BlotterEntry(symbol=t.symbol)
            entries[t.symbol] = entry
        entry.gross_proceeds += t.gross_proceeds
        entry.net_proceeds += t.net_proceeds
        entry.fees += t.commission
        entry.gross_wins_count += t.gross_wins_count
        entry.gross_loss_count += t.gross_loss_count
        entry.trades += 1
    return list(entries.values())


def recompute_pnl(trades: list[Trade]) -> PnLSummary:
    pnl = PnLSummary()
    for t in trades:
        pnl.gross_proceeds += t.gross_proceeds
        pnl.net_proceeds += t.net_proceeds
        pnl.fees += t.commission
        pnl.gross_wins_count += t.gross_wins_count
        pnl.gross_loss_count += t.gross_loss_count
        pnl.trades += 1
    return pnl


def recompute(ledger: DayLedger) -> DayLedger:
    """Return *ledger* with blotter and P&L rebuilt from its trades."""
    trades = list(ledger.trades)
    return DayLedger(
        day=ledger.day,
        date=ledger.date,
        trades=trades,
        blotter=recompute_blotter(trades),
        pnl=recompute_pnl(trades),
    )


def new_ledger(day: int) -> DayLedger:
    return DayLedger(day=day, date=day_label(day))


def merge_trade(ledger: DayLedger | None, trade: Trade) -> tuple[DayLedger, bool]:
    """Merge *trade* into the ledger for its day.

    Returns ``(ledger, changed)``.  ``changed`` is ``False`` when an
    identical trade is already present.

    Raises:
        MergeConflict: a trade with the same id but different content is
            already in the ledger.  The existing entry is never overwritten.
    """
    if ledger is None:
        ledger = new_ledger(trade.day)
    elif ledger.day != trade.day:
        raise ValueError(
            f"Trade {trade.id} belongs to day {trade.day}, not {ledger.day}"
        )

    existing = ledger.find_trade(trade.id)
    if existing is not None:
        if existing == trade:
            logger.debug("Trade %s already in ledger %s, no-op", trade.id, ledger.date)
            return ledger, False
        logger.error(
            "Merge conflict: trade %s already in ledger %s with different content",
            trade.id, ledger.date,
        )
        raise MergeConflict(trade.id, ledger.day)

    merged = recompute(
        DayLedger(day=ledger.day, date=ledger.date, trades=[*ledger.trades, trade])
    )
    return merged, True
