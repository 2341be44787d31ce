"""Bitunix adapter against an httpx.MockTransport."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from decimal import Decimal
from urllib.parse import parse_qsl

import httpx
import pytest

from tradesync.adapters.base import AdapterConfig
from tradesync.adapters.bitunix import (
    HISTORY_POSITIONS_PATH,
    PENDING_POSITIONS_PATH,
    PENDING_TPSL_PATH,
    BitunixAdapter,
    sign_request,
)
from tradesync.core.enums import Exchange, PositionSide, StopOrderKind
from tradesync.core.errors import AuthenticationError, ExchangeError

API_KEY = "test-key"
SECRET = "test-secret"
NONCE = "0123456789abcdef0123456789abcdef"


def _ok(data) -> httpx.Response:
    return httpx.Response(200, json={"code": 0, "msg": "Success", "data": data})


def _adapter(handler, sim_clock, page_size: int = 100) -> BitunixAdapter:
    return BitunixAdapter(
        AdapterConfig(
            exchange=Exchange.BITUNIX,
            api_key=API_KEY,
            api_secret=SECRET,
            base_url="https://fapi.bitunix.test",
            page_size=page_size,
        ),
        clock=sim_clock,
        transport=httpx.MockTransport(handler),
        nonce_factory=lambda: NONCE,
    )


def _history_row(i: int) -> dict:
    return {
        "positionId": str(i),
        "symbol": "BTCUSDT",
        "side": "BUY",
        "maxQty": "0.5",
        "entryPrice": "60000",
        "closePrice": "60100",
        "realizedPNL": "50",
        "fee": "-0.6",
        "funding": "0.1",
        "leverage": "20",
        "ctime": "1717232400000",
        "mtime": "1717239600000",
    }


class TestSigning:
    def test_double_sha256(self):
        params = [("limit", "10"), ("symbol", "BTCUSDT")]
        first = hashlib.sha256(
            f"{NONCE}1717232400000{API_KEY}limit10symbolBTCUSDT".encode()
        ).hexdigest()
        expected = hashlib.sha256((first + SECRET).encode()).hexdigest()
        assert sign_request(API_KEY, SECRET, "1717232400000", NONCE, params) == expected

    def test_body_is_part_of_signature(self):
        without = sign_request(API_KEY, SECRET, "1", NONCE, [])
        with_body = sign_request(API_KEY, SECRET, "1", NONCE, [], body='{"a":1}')
        assert without != with_body

    @pytest.mark.asyncio
    async def test_request_headers_and_sorted_query(self, sim_clock):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return _ok({"positionList": []})

        adapter = _adapter(handler, sim_clock)
        start = datetime(2024, 6, 1, tzinfo=timezone.utc)
        end = datetime(2024, 6, 2, tzinfo=timezone.utc)
        await adapter.fetch_position_history(start, end)
        await adapter.close()

        request = seen[0]
        query = parse_qsl(request.url.query.decode())
        assert [k for k, _ in query] == ["endTime", "limit", "skip", "startTime"]

        timestamp = request.headers["timestamp"]
        assert timestamp == str(sim_clock.now_ms())
        assert request.headers["api-key"] == API_KEY
        assert request.headers["nonce"] == NONCE
        assert request.headers["sign"] == sign_request(API_KEY, SECRET, timestamp, NONCE, query)


class TestOpenPositions:
    @pytest.mark.asyncio
    async def test_normalizes_pending_positions(self, sim_clock):
        def handler(request):
            assert request.url.path == PENDING_POSITIONS_PATH
            return _ok(
                [
                    {
                        "positionId": "12345",
                        "symbol": "ETHUSDT",
                        "side": "SELL",
                        "qty": "2",
                        "avgOpenPrice": "3500.5",
                        "unrealizedPNL": "-12.3",
                        "leverage": "10",
                        "liqPrice": "",
                        "ctime": "1717232400000",
                        "mtime": "1717236000000",
                    }
                ]
            )

        adapter = _adapter(handler, sim_clock)
        positions = await adapter.list_open_positions()
        await adapter.close()

        assert len(positions) == 1
        p = positions[0]
        assert p.position_id == "12345"
        assert p.side == PositionSide.SHORT
        assert p.quantity == Decimal("2")
        assert p.entry_price == Decimal("3500.5")
        assert p.unrealized_pnl == Decimal("-12.3")
        assert p.leverage == 10
        assert p.liquidation_price is None
        assert p.opened_at == datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_signature_error_is_authentication(self, sim_clock):
        adapter = _adapter(
            lambda request: httpx.Response(
                200, json={"code": 10007, "msg": "Signature Error"}
            ),
            sim_clock,
        )
        with pytest.raises(AuthenticationError):
            await adapter.list_open_positions()
        await adapter.close()

    @pytest.mark.asyncio
    async def test_unknown_code_is_exchange_error(self, sim_clock):
        adapter = _adapter(
            lambda request: httpx.Response(200, json={"code": 2, "msg": "System error"}),
            sim_clock,
        )
        with pytest.raises(ExchangeError, match="System error"):
            await adapter.list_open_positions()
        await adapter.close()


class TestHistory:
    @pytest.mark.asyncio
    async def test_paginates_until_short_page(self, sim_clock):
        sizes = {0: 100, 100: 100, 200: 37}
        calls: list[int] = []

        def handler(request):
            params = dict(parse_qsl(request.url.query.decode()))
            skip = int(params["skip"])
            calls.append(skip)
            rows = [_history_row(skip + i) for i in range(sizes[skip])]
            return _ok({"positionList": rows, "total": 237})

        adapter = _adapter(handler, sim_clock)
        closed = await adapter.fetch_position_history(
            datetime(2024, 6, 1, tzinfo=timezone.utc),
            datetime(2024, 6, 2, tzinfo=timezone.utc),
        )
        await adapter.close()

        assert len(closed) == 237
        assert calls == [0, 100, 200]

    @pytest.mark.asyncio
    async def test_fetch_closed_position(self, sim_clock):
        def handler(request):
            assert request.url.path == HISTORY_POSITIONS_PATH
            params = dict(parse_qsl(request.url.query.decode()))
            assert params["positionId"] == "42"
            return _ok({"positionList": [_history_row(42)]})

        adapter = _adapter(handler, sim_clock)
        closed = await adapter.fetch_closed_position("42")
        await adapter.close()

        assert closed is not None
        assert closed.realized_pnl == Decimal("50")
        assert closed.fee == Decimal("-0.6")
        assert closed.funding == Decimal("0.1")
        assert closed.quantity == Decimal("0.5")
        assert closed.closed_at == datetime(2024, 6, 1, 11, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_fetch_closed_position_not_published(self, sim_clock):
        adapter = _adapter(lambda request: _ok({"positionList": []}), sim_clock)
        assert await adapter.fetch_closed_position("42") is None
        await adapter.close()


class TestStopOrders:
    @pytest.mark.asyncio
    async def test_one_row_two_legs(self, sim_clock):
        def handler(request):
            assert request.url.path == PENDING_TPSL_PATH
            return _ok(
                [
                    {
                        "id": "tpsl-1",
                        "positionId": "42",
                        "symbol": "BTCUSDT",
                        "tpPrice": "65000",
                        "tpQty": "0.5",
                        "slPrice": "58000",
                        "slQty": "",
                    }
                ]
            )

        adapter = _adapter(handler, sim_clock)
        orders = await adapter.fetch_pending_stop_orders("42")
        await adapter.close()

        kinds = {o.kind: o for o in orders}
        assert kinds[StopOrderKind.TAKE_PROFIT].trigger_price == Decimal("65000")
        assert kinds[StopOrderKind.TAKE_PROFIT].quantity == Decimal("0.5")
        assert kinds[StopOrderKind.STOP_LOSS].trigger_price == Decimal("58000")
        assert kinds[StopOrderKind.STOP_LOSS].quantity is None
