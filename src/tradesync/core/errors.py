"""Custom exception hierarchy for the position sync pipeline."""


class TradeSyncError(Exception):
    """Base exception for all tradesync errors."""


# --- Configuration ---
class ConfigError(TradeSyncError):
    """Invalid or missing configuration."""


class CredentialError(ConfigError):
    """Stored credential could not be decrypted or is malformed."""


# --- Exchange ---
class ExchangeError(TradeSyncError):
    """Exchange communication error."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class AuthenticationError(ExchangeError):
    """Exchange rejected the credentials or the request signature."""


class TransientNetworkError(ExchangeError):
    """Timeout, connection failure or 5xx. Retried on the next pass only."""


class RateLimitError(TransientNetworkError):
    """Exchange rate limit hit."""


# --- Data ---
class PartialDataError(TradeSyncError):
    """Close detected but the exchange has not published its history yet."""

    def __init__(self, position_id: str, message: str = "") -> None:
        self.position_id = position_id
        super().__init__(
            message or f"History for position {position_id} not yet available"
        )


# --- Ledger ---
class LedgerError(TradeSyncError):
    """Day ledger merge or aggregation error."""


class MergeConflict(LedgerError):
    """A synthetic trade id already exists with different content."""

    def __init__(self, trade_id: str, day: int) -> None:
        self.trade_id = trade_id
        self.day = day
        super().__init__(
            f"Trade {trade_id} already in ledger {day} with different content"
        )


# --- Evaluation ---
class EvaluationError(TradeSyncError):
    """Evaluation submitted for an unknown position or in the wrong state."""
