"""Bitget USDT-M futures adapter (read-only, API v2).

Auth scheme: ``base64(hmac_sha256(secret, timestamp + METHOD + path
[+ "?" + query] + body))``.  The query string in the prehash is built from
params sorted by key and left UNESCAPED, matching Bitget's official SDK.

Envelope: ``{"code": "00000", "msg": "success", "data": ...}``.

Bitget's open-position feed carries no position id.  A stable id is derived
as ``{symbol}:{holdSide}:{cTime}`` and closes are resolved by matching
symbol, side and open time in the history feed.  History rows are mapped to
the same derived id so that a position keeps one identity from open to close.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any

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

BASE_URL = "https://api.bitget.com"
PRODUCT_TYPE = "USDT-FUTURES"
MARGIN_COIN = "USDT"

ALL_POSITIONS_PATH = "/api/v2/mix/position/all-position"
HISTORY_POSITIONS_PATH = "/api/v2/mix/position/history-position"
FILL_HISTORY_PATH = "/api/v2/mix/order/fill-history"
PLAN_PENDING_PATH = "/api/v2/mix/order/orders-plan-pending"

# 40006 invalid key, 40009 bad signature, 40012 key/passphrase wrong or IP
# blocked, 40014 missing permission, 40037 key does not exist
_AUTH_CODES = frozenset({"40006", "40009", "40012", "40014", "40037"})
_RATE_LIMIT_CODES = frozenset({"429", "40010"})

_TP_PLAN_TYPES = frozenset({"pos_profit", "profit_plan"})
_SL_PLAN_TYPES = frozenset({"pos_loss", "loss_plan"})


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def build_query(params: list[tuple[str, str]]) -> str:
    """Unescaped ``key=value&...`` in the given (sorted) order."""
    return "&".join(f"{k}={v}" for k, v in params)


def sign_request(
    secret: str,
    timestamp: str,
    method: str,
    path: str,
    query: str = "",
    body: str = "",
) -> str:
    prehash = timestamp + method.upper() + path
    if query:
        prehash += "?" + query
    if body:
        prehash += body
    digest = hmac.new(secret.encode(), prehash.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def position_key(symbol: str, hold_side: str, opened_ms: Any) -> str:
    return f"{symbol}:{str(hold_side).lower()}:{opened_ms}"


def parse_position_key(position_id: str) -> tuple[str, str, int] | None:
    """Split a derived position id; ``None`` if it is not one."""
    parts = position_id.split(":")
    if len(parts) != 3 or not parts[2].isdigit():
        return None
    return parts[0], parts[1], int(parts[2])


def fill_hold_side(raw: dict[str, Any]) -> str | None:
    """Hold side a fill row belongs to, or ``None`` in one-way mode.

    Hedge-mode rows carry ``tradeSide`` ``open``/``close``: a buy opens a
    long and closes a short.  Forced closes spell the side out
    (``burst_close_long``, ``offset_close_short``...).
    """
    pos_side = str(raw.get("posSide", "")).lower()
    if pos_side in ("long", "short"):
        return pos_side
    trade_side = str(raw.get("tradeSide", "")).lower()
    if trade_side.endswith("_long"):
        return "long"
    if trade_side.endswith("_short"):
        return "short"
    buy = str(raw.get("side", "")).lower() == "buy"
    if trade_side == "open":
        return "long" if buy else "short"
    if trade_side == "close":
        return "short" if buy else "long"
    return None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class BitgetAdapter:
    """Bitget implementation of ``IExchangeAdapter``.

    Parameters
    ----------
    config:
        Credentials (including passphrase), base URL, timeout and page size.
    clock:
        Source of the ``ACCESS-TIMESTAMP`` header.
    transport:
        Optional httpx transport (tests inject ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: AdapterConfig,
        *,
        clock: IClock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._clock = clock or WallClock()
        self._transport = transport
        self._base_url = config.base_url or BASE_URL
        self._client: httpx.AsyncClient | None = None

    @property
    def exchange(self) -> Exchange:
        return Exchange.BITGET

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
        items = sorted(
            (k, str(v))
            for k, v in (params or {}).items()
            if v is not None and v != ""
        )
        timestamp = str(self._clock.now_ms())
        headers = {
            "Content-Type": "application/json",
            "ACCESS-KEY": self._config.api_key,
            "ACCESS-SIGN": sign_request(
                self._config.api_secret,
                timestamp,
                "GET",
                path,
                build_query(items),
            ),
            "ACCESS-TIMESTAMP": timestamp,
            "ACCESS-PASSPHRASE": self._config.passphrase,
            "locale": "en-US",
        }
        body = await send_request(
            self._get_client(),
            Exchange.BITGET,
            "GET",
            path,
            params=items,
            headers=headers,
            timeout=self._config.timeout_seconds,
            auth_codes=_AUTH_CODES,
        )
        raise_for_envelope(
            body,
            Exchange.BITGET,
            path,
            success_code="00000",
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
        """``idLessThan`` cursor pagination over ``data[list_key]``.

        The cursor is ``data.endId`` (falling back to the last row's id).
        """
        page_size = self._config.page_size

        async def fetch_page(cursor: str | None) -> Page[dict[str, Any], str]:
            data = await self._get(
                path, {**params, "limit": page_size, "idLessThan": cursor}
            )
            if not isinstance(data, dict):
                return Page(items=list(data or []), next_cursor=None)
            items = list(data.get(list_key) or [])
            next_cursor = data.get("endId") or None
            if next_cursor is None and items:
                last = items[-1]
                next_cursor = (
                    last.get("positionId") or last.get("tradeId")
                    or last.get("orderId")
                )
            if next_cursor is not None and next_cursor == cursor:
                next_cursor = None
            return Page(
                items=items,
                next_cursor=str(next_cursor) if next_cursor else None,
            )

        return await collect_pages(
            fetch_page,
            page_size=page_size,
            max_pages=self._config.max_pages,
            label=f"bitget {path}",
        )

    # ------------------------------------------------------------------
    # IExchangeAdapter
    # ------------------------------------------------------------------

    async def list_open_positions(self) -> list[Position]:
        data = await self._get(
            ALL_POSITIONS_PATH,
            {"productType": PRODUCT_TYPE, "marginCoin": MARGIN_COIN},
        )
        rows = data if isinstance(data, list) else []
        positions = [self._to_position(r) for r in rows]
        logger.debug("Bitget open positions: %d", len(positions))
        return positions

    async def fetch_closed_position(
        self, position_id: str
    ) -> ClosedPosition | None:
        key = parse_position_key(position_id)
        if key is None:
            raise ExchangeError(f"Not a Bitget position id: {position_id!r}")

        symbol, hold_side, opened_ms = key
        rows = await self._paged(
            HISTORY_POSITIONS_PATH,
            "list",
            {
                "productType": PRODUCT_TYPE,
                "symbol": symbol,
                "startTime": opened_ms,
            },
        )
        for row in rows:
            if (
                row.get("symbol") == symbol
                and str(row.get("holdSide", "")).lower() == hold_side
                and to_int(row.get("cTime")) == opened_ms
            ):
                return self._to_closed_position(row)
        return None

    async def fetch_position_history(
        self, start: datetime, end: datetime
    ) -> list[ClosedPosition]:
        rows = await self._paged(
            HISTORY_POSITIONS_PATH,
            "list",
            {
                "productType": PRODUCT_TYPE,
                "startTime": datetime_to_ms(start),
                "endTime": datetime_to_ms(end),
            },
        )
        return [self._to_closed_position(r) for r in rows]

    async def fetch_fills(
        self,
        position_id: str | None = None,
        symbol: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Fill]:
        start_ms = datetime_to_ms(start) if start else None
        key = parse_position_key(position_id) if position_id else None
        if key is not None:
            symbol = symbol or key[0]
            start_ms = start_ms or key[2]
        rows = await self._paged(
            FILL_HISTORY_PATH,
            "fillList",
            {
                "productType": PRODUCT_TYPE,
                "symbol": symbol,
                "startTime": start_ms,
                "endTime": datetime_to_ms(end) if end else None,
            },
        )
        if key is not None:
            # The feed is per symbol; drop the opposite hedge leg
            rows = [r for r in rows if fill_hold_side(r) in (None, key[1])]
        return [self._to_fill(r, position_id) for r in rows]

    async def fetch_pending_stop_orders(
        self, position_id: str
    ) -> list[StopOrder]:
        key = parse_position_key(position_id)
        params: dict[str, Any] = {
            "productType": PRODUCT_TYPE,
            "planType": "profit_loss",
        }
        if key is not None:
            params["symbol"] = key[0]
        data = await self._get(PLAN_PENDING_PATH, params)
        rows = data.get("entrustedList") or [] if isinstance(data, dict) else []
        orders: list[StopOrder] = []
        for row in rows:
            if key is not None:
                pos_side = str(row.get("posSide", "")).lower()
                if pos_side and pos_side != key[1]:
                    continue
            order = self._to_stop_order(row, position_id)
            if order is not None:
                orders.append(order)
        return orders

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _to_position(self, raw: dict[str, Any]) -> Position:
        hold_side = str(raw.get("holdSide", "")).lower()
        return Position(
            exchange=Exchange.BITGET,
            position_id=position_key(raw["symbol"], hold_side, raw.get("cTime")),
            symbol=raw["symbol"],
            side=parse_position_side(hold_side),
            entry_price=to_decimal(raw.get("openPriceAvg")),
            quantity=to_decimal(raw.get("total")),
            leverage=to_int(raw.get("leverage"), default=1),
            unrealized_pnl=to_decimal(raw.get("unrealizedPL")),
            mark_price=to_optional_decimal(raw.get("markPrice")),
            liquidation_price=to_optional_decimal(raw.get("liquidationPrice")),
            opened_at=ms_to_datetime(raw.get("cTime")),
            updated_at=ms_to_datetime(raw.get("uTime")),
            raw=raw,
        )

    def _to_closed_position(self, raw: dict[str, Any]) -> ClosedPosition:
        opened_at = ms_to_datetime(raw.get("cTime"))
        closed_at = ms_to_datetime(raw.get("uTime")) or opened_at
        if opened_at is None or closed_at is None:
            raise ExchangeError(
                f"Bitget history row {raw.get('positionId')} has no timestamps"
            )
        hold_side = str(raw.get("holdSide", "")).lower()
        position_id = position_key(raw["symbol"], hold_side, raw.get("cTime"))
        fee = to_decimal(raw.get("openFee")) + to_decimal(raw.get("closeFee"))
        return ClosedPosition(
            exchange=Exchange.BITGET,
            position_id=position_id,
            symbol=raw["symbol"],
            side=parse_position_side(hold_side),
            entry_price=to_decimal(raw.get("openAvgPrice")),
            close_price=to_decimal(raw.get("closeAvgPrice")),
            quantity=to_decimal(raw.get("openTotalPos") or raw.get("closeTotalPos")),
            realized_pnl=to_decimal(raw.get("pnl")),
            fee=fee,
            funding=to_decimal(raw.get("totalFunding")),
            leverage=to_int(raw.get("leverage"), default=1),
            opened_at=opened_at,
            closed_at=closed_at,
            raw=raw,
        )

    def _to_fill(self, raw: dict[str, Any], position_id: str | None) -> Fill:
        fee = sum(
            (to_decimal(d.get("totalFee")) for d in raw.get("feeDetail") or []),
            to_decimal(None),
        )
        return Fill(
            exchange=Exchange.BITGET,
            fill_id=str(raw.get("tradeId", "")),
            order_id=str(raw.get("orderId", "")),
            position_id=position_id,
            symbol=raw["symbol"],
            side=parse_side(raw.get("side")),
            price=to_decimal(raw.get("price")),
            quantity=to_decimal(raw.get("baseVolume")),
            fee=fee,
            realized_pnl=to_decimal(raw.get("profit")),
            is_maker=str(raw.get("tradeScope", "")).lower() == "maker",
            timestamp=ms_to_datetime(raw.get("cTime")) or self._clock.now(),
            raw=raw,
        )

    def _to_stop_order(
        self, raw: dict[str, Any], position_id: str
    ) -> StopOrder | None:
        plan_type = str(raw.get("planType", ""))
        if plan_type in _TP_PLAN_TYPES:
            kind = StopOrderKind.TAKE_PROFIT
        elif plan_type in _SL_PLAN_TYPES:
            kind = StopOrderKind.STOP_LOSS
        else:
            return None
        trigger = to_optional_decimal(raw.get("triggerPrice"))
        if trigger is None:
            return None
        return StopOrder(
            exchange=Exchange.BITGET,
            order_id=str(raw.get("orderId", "")),
            position_id=position_id,
            symbol=raw.get("symbol", ""),
            kind=kind,
            trigger_price=trigger,
            quantity=to_optional_decimal(raw.get("size")),
            raw=raw,
        )

