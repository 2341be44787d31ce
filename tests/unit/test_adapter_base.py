"""Shared adapter plumbing: pagination, error mapping and coercion."""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from tradesync.adapters.base import (
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
from tradesync.core.enums import Exchange, PositionSide, Side
from tradesync.core.errors import (
    AuthenticationError,
    ExchangeError,
    RateLimitError,
    TransientNetworkError,
)


# ---------------------------------------------------------------------------
# collect_pages
# ---------------------------------------------------------------------------

class TestCollectPages:
    @pytest.mark.asyncio
    async def test_stops_after_short_page(self):
        sizes = [100, 100, 37]
        calls: list[int | None] = []

        async def fetch(cursor):
            calls.append(cursor)
            n = sizes[len(calls) - 1]
            start = cursor or 0
            return Page(items=list(range(start, start + n)), next_cursor=start + n)

        items = await collect_pages(fetch, page_size=100)
        assert len(items) == 237
        assert calls == [None, 100, 200]
        assert items[-1] == 236

    @pytest.mark.asyncio
    async def test_stops_on_exhausted_cursor(self):
        calls = 0

        async def fetch(cursor):
            nonlocal calls
            calls += 1
            return Page(items=[1, 2], next_cursor=None)

        assert await collect_pages(fetch, page_size=2) == [1, 2]
        assert calls == 1

    @pytest.mark.asyncio
    async def test_max_pages_guard(self):
        async def fetch(cursor):
            return Page(items=[0] * 10, next_cursor=(cursor or 0) + 1)

        items = await collect_pages(fetch, page_size=10, max_pages=3)
        assert len(items) == 30

    @pytest.mark.asyncio
    async def test_empty_first_page(self):
        async def fetch(cursor):
            return Page(items=[], next_cursor=None)

        assert await collect_pages(fetch, page_size=100) == []


# ---------------------------------------------------------------------------
# send_request / raise_for_envelope
# ---------------------------------------------------------------------------

def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url="https://exchange.test", transport=httpx.MockTransport(handler)
    )


class TestSendRequest:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error",
        [
            (401, AuthenticationError),
            (403, AuthenticationError),
            (429, RateLimitError),
            (502, TransientNetworkError),
            (400, ExchangeError),
        ],
    )
    async def test_status_mapping(self, status, error):
        async with _client(lambda request: httpx.Response(status, json={"code": 1})) as client:
            with pytest.raises(error):
                await send_request(client, Exchange.BITUNIX, "GET", "/x")

    @pytest.mark.asyncio
    async def test_auth_code_in_4xx_body(self):
        async with _client(
            lambda request: httpx.Response(400, json={"code": "40012", "msg": "bad"})
        ) as client:
            with pytest.raises(AuthenticationError):
                await send_request(
                    client, Exchange.BITGET, "GET", "/x", auth_codes=frozenset({"40012"})
                )

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        async with _client(lambda request: httpx.Response(429)) as client:
            with pytest.raises(TransientNetworkError):
                await send_request(client, Exchange.BITGET, "GET", "/x")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(TransientNetworkError, match="connection error"):
                await send_request(client, Exchange.BITUNIX, "GET", "/x")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(handler) as client:
            with pytest.raises(TransientNetworkError, match="timeout"):
                await send_request(client, Exchange.BITUNIX, "GET", "/x")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        async with _client(lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(ExchangeError, match="invalid JSON"):
                await send_request(client, Exchange.BITUNIX, "GET", "/x")

    @pytest.mark.asyncio
    async def test_returns_envelope(self):
        async with _client(
            lambda request: httpx.Response(200, json={"code": 0, "data": [1]})
        ) as client:
            body = await send_request(client, Exchange.BITUNIX, "GET", "/x")
        assert body == {"code": 0, "data": [1]}


class TestEnvelope:
    kwargs = dict(
        success_code="00000",
        auth_codes=frozenset({"40012"}),
        rate_limit_codes=frozenset({"40010"}),
    )

    def test_success(self):
        raise_for_envelope({"code": "00000"}, Exchange.BITGET, "/x", **self.kwargs)

    def test_numeric_success_code(self):
        raise_for_envelope(
            {"code": 0},
            Exchange.BITUNIX,
            "/x",
            success_code=0,
            auth_codes=frozenset(),
            rate_limit_codes=frozenset(),
        )

    def test_auth_code(self):
        with pytest.raises(AuthenticationError) as info:
            raise_for_envelope(
                {"code": "40012", "msg": "apikey/password is incorrect"},
                Exchange.BITGET, "/x", **self.kwargs,
            )
        assert info.value.code == "40012"

    def test_rate_limit_code(self):
        with pytest.raises(RateLimitError):
            raise_for_envelope({"code": "40010"}, Exchange.BITGET, "/x", **self.kwargs)

    def test_other_code(self):
        with pytest.raises(ExchangeError, match="Parameter error"):
            raise_for_envelope(
                {"code": "40034", "msg": "Parameter error"},
                Exchange.BITGET, "/x", **self.kwargs,
            )


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------

class TestCoercion:
    def test_decimals(self):
        assert to_decimal("1.50") == Decimal("1.50")
        assert to_decimal("") == Decimal("0")
        assert to_optional_decimal(None) is None
        assert to_optional_decimal("") is None
        assert to_int("20") == 20
        assert to_int(None, default=1) == 1

    def test_invalid_number(self):
        with pytest.raises(ExchangeError):
            to_decimal("abc")

    @pytest.mark.parametrize(
        "raw, side",
        [
            ("BUY", PositionSide.LONG),
            ("long", PositionSide.LONG),
            ("SELL", PositionSide.SHORT),
            ("short", PositionSide.SHORT),
        ],
    )
    def test_position_side(self, raw, side):
        assert parse_position_side(raw) == side

    def test_unknown_position_side(self):
        with pytest.raises(ExchangeError):
            parse_position_side("FLAT")

    def test_order_side(self):
        assert parse_side("buy") == Side.BUY
        assert parse_side("close_long") == Side.SELL
