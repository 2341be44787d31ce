"""Enumerations used across tradesync."""

from enum import Enum


class Exchange(str, Enum):
    BITUNIX = "bitunix"
    BITGET = "bitget"
    PAPER = "paper"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class PositionStatus(str, Enum):
    """Persisted lifecycle state of an incoming position."""

    OPEN = "open"
    PENDING_EVALUATION = "pending_evaluation"
    UNRESOLVED = "unresolved"  # History never appeared within the retry cap


class StopOrderKind(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"


class EvaluationKind(str, Enum):
    OPENING = "opening"
    CLOSING = "closing"


class PositionErrorType(str, Enum):
    """Classification of a per-position failure inside a pass."""

    TRANSIENT = "transient"
    AUTHENTICATION = "authentication"
    EXCHANGE = "exchange"
    MERGE_CONFLICT = "merge_conflict"
    INTERNAL = "internal"


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AUTH_FAILED = "auth_failed"
    STOPPED = "stopped"
