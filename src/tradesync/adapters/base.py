"""Exchange adapter base: re-exports and shared helpers.

Re-exports ``IExchangeAdapter`` from ``core.interfaces`` so that adapter
implementations can import from a single location.  Also provides the
configuration container, the page-walking cursor helper, HTTP error
mapping and payload coercion helpers used by every HTTP adapter.

Signing is deliberately NOT shared: each adapter owns its own scheme.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx

from tradesync.core.enums import Exchange, PositionSide, Side
from tradesync.core.errors import (
    AuthenticationError,
    ExchangeError,
    RateLimitError,
    TransientNetworkError,
)
from tradesync.core.interfaces import IExchangeAdapter  # noqa: F401  re-export

__all__ = [
    "IExchangeAdapter",
    "AdapterConfig",
    "Page",
    "collect_pages",
    "send_request",
    "raise_for_envelope",
    "to_decimal",
    "to_optional_decimal",
    "to_int",
    "parse_position_side",
    "parse_side",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")
C = TypeVar("C")

_ZERO = Decimal("0")


# ---------------------------------------------------------------------------
# Adapter configuration
# ---------------------------------------------------------------------------


@dataclass
class AdapterConfig:
    """Generic adapter configuration container."""

    exchange: Exchange
    api_key: str = ""
    api_secret: str = ""
    passphrase: str = ""  # Bitget only
    base_url: str = ""
    timeout_seconds: float = 10.0
    page_size: int = 100
    max_pages: int = 50


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


@dataclass
class Page(Generic[T, C]):
    """One page of results plus the cursor for the next request.

    ``next_cursor`` is ``None`` when the exchange signals the end.
    """

    items: list[T]
    next_cursor: C | None = None


async def collect_pages(
    fetch_page: Callable[[C | None], Awaitable[Page[T, C]]],
    *,
    page_size: int,
    max_pages: int = 50,
    label: str = "",
) -> list[T]:
    """Walk a paginated endpoint and return one flat list.

    Stops on a short page (fewer than ``page_size`` items), an exhausted
    cursor, or after ``max_pages`` requests.
    """
    results: list[T] = []
    cursor: C | None = None
    for page_no in range(1, max_pages + 1):
        page = await fetch_page(cursor)
        results.extend(page.items)
        if len(page.items) < page_size or page.next_cursor is None:
            logger.debug(
                "Collected %d items from %s in %d page(s)",
                len(results), label or "endpoint", page_no,
            )
            return results
        cursor = page.next_cursor

    logger.warning(
        "Stopped paging %s after max_pages=%d (%d items collected)",
        label or "endpoint", max_pages, len(results),
    )
    return results


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------


async def send_request(
    client: httpx.AsyncClient,
    exchange: Exchange,
    method: str,
    path: str,
    *,
    params: list[tuple[str, str]] | None = None,
    headers: dict[str, str] | None = None,
    content: str | None = None,
    timeout: float | None = None,
    auth_codes: frozenset[str] = frozenset(),
) -> dict[str, Any]:
    """Execute one request and map transport/status failures.

    Returns the decoded JSON envelope; envelope ``code`` checks are left to
    the caller since every exchange uses its own success code.

    Raises:
        AuthenticationError: HTTP 401/403, or a 4xx whose envelope code is
            one of *auth_codes*.
        RateLimitError: HTTP 429.
        TransientNetworkError: timeouts, connection errors, HTTP 5xx.
        ExchangeError: any other non-2xx status or an undecodable body.
    """
    name = exchange.value
    try:
        resp = await client.request(
            method,
            path,
            params=params,
            headers=headers,
            content=content,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
    except httpx.TimeoutException as exc:
        raise TransientNetworkError(f"{name} {path}: timeout ({exc})") from exc
    except httpx.TransportError as exc:
        raise TransientNetworkError(
            f"{name} {path}: connection error ({exc})"
        ) from exc

    status = resp.status_code
    if status in (401, 403):
        raise AuthenticationError(
            f"{name} {path}: HTTP {status} {resp.text[:200]}", code=str(status)
        )
    if status == 429:
        raise RateLimitError(f"{name} {path}: rate limited", code="429")
    if status >= 500:
        raise TransientNetworkError(
            f"{name} {path}: server error {status}", code=str(status)
        )

    try:
        body = resp.json()
    except ValueError as exc:
        raise ExchangeError(
            f"{name} {path}: invalid JSON (HTTP {status})"
        ) from exc

    if status >= 400:
        code = str(body.get("code", status)) if isinstance(body, dict) else str(status)
        msg = body.get("msg", "") if isinstance(body, dict) else ""
        if code in auth_codes:
            raise AuthenticationError(
                f"{name} {path}: HTTP {status} [{code}] {msg}", code=code
            )
        raise ExchangeError(f"{name} {path}: HTTP {status} [{code}] {msg}", code=code)

    if not isinstance(body, dict):
        raise ExchangeError(f"{name} {path}: unexpected payload type")
    return body


def raise_for_envelope(
    body: dict[str, Any],
    exchange: Exchange,
    path: str,
    *,
    success_code: Any,
    auth_codes: frozenset[str],
    rate_limit_codes: frozenset[str],
) -> None:
    """Raise the mapped error for a non-success JSON envelope."""
    code = body.get("code")
    if str(code) == str(success_code):
        return
    code_str = str(code)
    msg = f"{exchange.value} {path}: [{code_str}] {body.get('msg', 'Unknown error')}"
    if code_str in auth_codes:
        raise AuthenticationError(msg, code=code_str)
    if code_str in rate_limit_codes:
        raise RateLimitError(msg, code=code_str)
    raise ExchangeError(msg, code=code_str)


# ---------------------------------------------------------------------------
# Payload coercion
# ---------------------------------------------------------------------------


def to_optional_decimal(value: Any) -> Decimal | None:
    """Numeric string/number -> Decimal; empty or missing -> None."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ExchangeError(f"Invalid numeric value: {value!r}") from exc


def to_decimal(value: Any, default: Decimal = _ZERO) -> Decimal:
    result = to_optional_decimal(value)
    return default if result is None else result


def to_int(value: Any, default: int = 0) -> int:
    result = to_optional_decimal(value)
    return default if result is None else int(result)


_POSITION_SIDES = {
    "BUY": PositionSide.LONG,
    "LONG": PositionSide.LONG,
    "SELL": PositionSide.SHORT,
    "SHORT": PositionSide.SHORT,
}


def parse_position_side(value: Any) -> PositionSide:
    """BUY/SELL/long/short (any case) -> ``PositionSide``."""
    side = _POSITION_SIDES.get(str(value).upper())
    if side is None:
        raise ExchangeError(f"Unknown position side: {value!r}")
    return side


def parse_side(value: Any) -> Side:
    raw = str(value).upper()
    if raw in ("BUY", "OPEN_LONG", "CLOSE_SHORT"):
        return Side.BUY
    if raw in ("SELL", "OPEN_SHORT", "CLOSE_LONG"):
        return Side.SELL
    raise ExchangeError(f"Unknown order side: {value!r}")
