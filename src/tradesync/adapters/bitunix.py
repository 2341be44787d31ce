"""Bitunix USDT-M futures adapter (read-only).

Auth scheme: double SHA-256 over ``nonce + timestamp + api_key +
sorted_params + body`` with the secret appended before the second round.
Query params are signed as ``key + value`` concatenated without any
delimiter, sorted by key; the URL carries the same params as
``key=value&...`` in the same order.

Envelope: ``{"code": 0, "msg": "...", "data": ...}``.  Any other ``code``
is an error.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime
from typing import Any, Callable

import httpx

from tradesync.core.enums import Exchange, StopOrderKind
from tradesync.core.errors import ExchangeError
from tradesync.core.ids import IClock, WallClock, datetime_to_ms, ms_to_datetime
from tradesync.core.models import ClosedPosition, Fill, Position, StopOrder

from .base import (
    AdapterConfig,
    Page,
    collect_pages,
    parse_position_side,
    parse_side,
    raise_for_envelope,
    send_request,
    to_decimal,
    to_int,
    to_optional_decimal,
)

logger = logging.getLogger(__name__)

BASE_URL = "https://fapi.bitunix.com"

PENDING_POSITIONS_PATH = "/api/v1/futures/position/get_pending_positions"
HISTORY_POSITIONS_PATH = "/api/v1/futures/position/get_history_positions"
HISTORY_TRADES_PATH = "/api/v1/futures/trade/get_history_trades"
PENDING_TPSL_PATH = "/api/v1/futures/tpsl/get_pending_orders"

# 10003 empty api-key, 10004 IP not whitelisted, 10007 signature error
_AUTH_CODES = frozenset({"10003", "10004", "10007"})
# 10005 too many requests, 10006 request too frequently
_RATE_LIMIT_CODES = frozenset({"10005", "10006"})


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def generate_nonce(length: int = 32) -> str:
    return secrets.token_hex(length)[:length]


def sign_request(
    api_key: str,
    secret: str,
    timestamp: str,
    nonce: str,
    params: list[tuple[str, str]],
    body: str = "",
) -> str:
    """Return the hex ``sign`` header for one request.

    *params* must already be sorted by key.
    """
    query = "".join(f"{k}{v}" for k, v in params)
    digest = hashlib.sha256(
        (nonce + timestamp + api_key + query + body).encode()
    ).hexdigest()
    return hashlib.sha256((digest + secret).encode()).hexdigest()


def _sorted_params(params: dict[str, Any]) -> list[tuple[str, str]]:
    return sorted(
        (k, str(v)) for k, v in params.items() if v is not None and v != ""
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class BitunixAdapter:
    """Bitunix implementation of ``IExchangeAdapter``.

    Parameters
    ----------
    config:
        Credentials, base URL, timeout and page size.
    clock:
        Source of the ``timestamp`` header.
    transport:
        Optional httpx transport (tests inject ``httpx.MockTransport``).
    nonce_factory:
        Callable producing the 32-char ``nonce`` header.
    """

    def __init__(
        self,
        config: AdapterConfig,
        *,
        clock: IClock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        nonce_factory: Callable[[], str] = generate_nonce,
    ) -> None:
        self._config = config
        self._clock = clock or WallClock()
        self._transport = transport
        self._nonce_factory = nonce_factory
        self._base_url = config.base_url or BASE_URL
        self._client: httpx.AsyncClient | None = None

    @property
    def exchange(self) -> Exchange:
        return Exchange.BITUNIX

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._config.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        items = _sorted_params(params or {})
        timestamp = str(self._clock.now_ms())
        nonce = self._nonce_factory()
        headers = {
            "Content-Type": "application/json",
            "api-key": self._config.api_key,
            "timestamp": timestamp,
            "nonce": nonce,
            "sign": sign_request(
                self._config.api_key,
                self._config.api_secret,
                timestamp,
                nonce,
                items,
            ),
            "language": "en-US",
        }
        body = await send_request(
            self._get_client(),
            Exchange.BITUNIX,
            "GET",
            path,
            params=items,
            headers=headers,
            timeout=self._config.timeout_seconds,
            auth_codes=_AUTH_CODES,
        )
        raise_for_envelope(
            body,
            Exchange.BITUNIX,
            path,
            success_code=0,
            auth_codes=_AUTH_CODES,
            rate_limit_codes=_RATE_LIMIT_CODES,
        )
        return body.get("data")

    async def _paged(
        self,
        path: str,
        list_key: str,
        params: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """skip/limit pagination over ``data[list_key]``."""
        page_size = self._config.page_size

        async def fetch_page(skip: int | None) -> Page[dict[str, Any], int]:
            offset = skip or 0
            data = await self._get(
                path, {**params, "skip": offset, "limit": page_size}
            )
            items = _extract_list(data, list_key)
            return Page(items=items, next_cursor=offset + len(items))

        return await collect_pages(
            fetch_page,
            page_size=page_size,
            max_pages=self._config.max_pages,
            label=f"bitunix {path}",
        )

    # ------------------------------------------------------------------
    # IExchangeAdapter
    # ------------------------------------------------------------------

    async def list_open_positions(self) -> list[Position]:
        data = await self._get(PENDING_POSITIONS_PATH)
        # Pending positions come back as a bare list, history as data.positionList
        rows = _extract_list(data, "positionList")
        positions = [self._to_position(r) for r in rows]
        logger.debug("Bitunix open positions: %d", len(positions))
        return positions

    async def fetch_closed_position(
        self, position_id: str
    ) -> ClosedPosition | None:
        data = await self._get(
            HISTORY_POSITIONS_PATH,
            {"positionId": position_id, "skip": 0, "limit": 1},
        )
        rows = _extract_list(data, "positionList")
        for row in rows:
            if str(row.get("positionId")) == position_id:
                return self._to_closed_position(row)
        return None

    async def fetch_position_history(
        self, start: datetime, end: datetime
    ) -> list[ClosedPosition]:
        rows = await self._paged(
            HISTORY_POSITIONS_PATH,
            "positionList",
            {"startTime": datetime_to_ms(start), "endTime": datetime_to_ms(end)},
        )
        return [self._to_closed_position(r) for r in rows]

    async def fetch_fills(
        self,
        position_id: str | None = None,
        symbol: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Fill]:
        params: dict[str, Any] = {
            "positionId": position_id,
            "symbol": symbol,
            "startTime": datetime_to_ms(start) if start else None,
            "endTime": datetime_to_ms(end) if end else None,
        }
        rows = await self._paged(HISTORY_TRADES_PATH, "tradeList", params)
        return [self._to_fill(r) for r in rows]

    async def fetch_pending_stop_orders(
        self, position_id: str
    ) -> list[StopOrder]:
        data = await self._get(PENDING_TPSL_PATH, {"positionId": position_id})
        orders: list[StopOrder] = []
        for row in _extract_list(data, "orderList"):
            orders.extend(self._to_stop_orders(row, position_id))
        return orders

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _to_position(self, raw: dict[str, Any]) -> Position:
        return Position(
            exchange=Exchange.BITUNIX,
            position_id=str(raw["positionId"]),
            symbol=raw["symbol"],
            side=parse_position_side(raw.get("side")),
            entry_price=to_decimal(raw.get("avgOpenPrice") or raw.get("entryPrice")),
            quantity=to_decimal(raw.get("qty") or raw.get("maxQty")),
            leverage=to_int(raw.get("leverage"), default=1),
            unrealized_pnl=to_decimal(raw.get("unrealizedPNL")),
            mark_price=to_optional_decimal(raw.get("markPrice")),
            liquidation_price=to_optional_decimal(raw.get("liqPrice")),
            opened_at=ms_to_datetime(raw.get("ctime")),
            updated_at=ms_to_datetime(raw.get("mtime")),
            raw=raw,
        )

    def _to_closed_position(self, raw: dict[str, Any]) -> ClosedPosition:
        opened_at = ms_to_datetime(raw.get("ctime"))
        closed_at = ms_to_datetime(raw.get("mtime")) or opened_at
        if opened_at is None or closed_at is None:
            raise ExchangeError(
                f"Bitunix history row {raw.get('positionId')} has no timestamps"
            )
        return ClosedPosition(
            exchange=Exchange.BITUNIX,
            position_id=str(raw["positionId"]),
            symbol=raw["symbol"],
            side=parse_position_side(raw.get("side")),
            entry_price=to_decimal(raw.get("entryPrice")),
            close_price=to_decimal(raw.get("closePrice")),
            quantity=to_decimal(raw.get("maxQty") or raw.get("qty")),
            realized_pnl=to_decimal(raw.get("realizedPNL")),
            fee=to_decimal(raw.get("fee")),
            funding=to_decimal(raw.get("funding")),
            leverage=to_int(raw.get("leverage"), default=1),
            opened_at=opened_at,
            closed_at=closed_at,
            raw=raw,
        )

    def _to_fill(self, raw: dict[str, Any]) -> Fill:
        timestamp = ms_to_datetime(raw.get("ctime")) or self._clock.now()
        return Fill(
            exchange=Exchange.BITUNIX,
            fill_id=str(raw.get("tradeId", "")),
            order_id=str(raw.get("orderId", "")),
            position_id=str(raw["positionId"]) if raw.get("positionId") else None,
            symbol=raw["symbol"],
            side=parse_side(raw.get("side")),
            price=to_decimal(raw.get("price")),
            quantity=to_decimal(raw.get("qty")),
            fee=to_decimal(raw.get("fee")),
            realized_pnl=to_decimal(raw.get("realizedPNL")),
            is_maker=str(raw.get("roleType", "")).upper() == "MAKER",
            timestamp=timestamp,
            raw=raw,
        )

    def _to_stop_orders(
        self, raw: dict[str, Any], position_id: str
    ) -> list[StopOrder]:
        """One TP/SL row may carry both a take-profit and a stop-loss."""
        out: list[StopOrder] = []
        legs = (
            (StopOrderKind.TAKE_PROFIT, "tpPrice", "tpQty"),
            (StopOrderKind.STOP_LOSS, "slPrice", "slQty"),
        )
        for kind, price_key, qty_key in legs:
            trigger = to_optional_decimal(raw.get(price_key))
            if trigger is None:
                continue
            out.append(
                StopOrder(
                    exchange=Exchange.BITUNIX,
                    order_id=str(raw.get("id", "")),
                    position_id=str(raw.get("positionId") or position_id),
                    symbol=raw.get("symbol", ""),
                    kind=kind,
                    trigger_price=trigger,
                    quantity=to_optional_decimal(raw.get(qty_key)),
                    raw=raw,
                )
            )
        return out


def _extract_list(data: Any, key: str) -> list[dict[str, Any]]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return list(data.get(key) or [])
    return []
