"""Protocol interfaces for tradesync.

Module boundaries are defined here as Protocol classes.
Implementations can be swapped (live/paper) without changing callers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from .enums import Exchange
from .models import ClosedPosition, Fill, Position, StopOrder


# ---------------------------------------------------------------------------
# Exchange Adapter
# ---------------------------------------------------------------------------

@runtime_checkable
class IExchangeAdapter(Protocol):
    """Read-only exchange interface. Implemented by Bitunix, Bitget and paper adapters.

    Request signing, pagination and payload normalization are private to
    each implementation. Callers only ever see canonical models.

    Failure semantics:
        AuthenticationError: credentials rejected, never retried in-pass.
        TransientNetworkError / RateLimitError: retried on the next pass.
        ExchangeError: any other non-success envelope.
    """

    @property
    def exchange(self) -> Exchange: ...

    async def list_open_positions(self) -> list[Position]: ...

    async def fetch_closed_position(
        self, position_id: str
    ) -> ClosedPosition | None:
        """Close record for *position_id*, or ``None`` if not yet published."""
        ...

    async def fetch_position_history(
        self, start: datetime, end: datetime
    ) -> list[ClosedPosition]: ...

    async def fetch_fills(
        self,
        position_id: str | None = None,
        symbol: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Fill]: ...

    async def fetch_pending_stop_orders(
        self, position_id: str
    ) -> list[StopOrder]: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Credential Vault
# ---------------------------------------------------------------------------

@runtime_checkable
class ICredentialVault(Protocol):
    """Symmetric encryption of stored API secrets."""

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...
