"""Coinbase Advanced Trade client with per-read fallback chains.

The SDK is synchronous, so every call runs in a worker thread. Reads walk a
chain of sources and raise ExchangeUnavailableError only when all of them
fail:

    candles:  get_public_candles -> get_candles (auth) -> windowed public fetch
    balances: get_accounts (paginated) -> portfolio breakdown
    price:    get_product -> get_best_bid_ask -> last candle close
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from coinbase.rest import RESTClient

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Candle
from execution.order_utils import (
    ExchangeUnavailableError,
    OrderResult,
    RateLimiter,
    classify_error,
    parse_order_response,
    validate_order_args,
)

logger = get_logger(__name__)

# Coinbase returns max 300 candles per request
_MAX_CANDLES = 300

_granularity_map = {
    60: "ONE_MINUTE",
    300: "FIVE_MINUTE",
    900: "FIFTEEN_MINUTE",
    3600: "ONE_HOUR",
    21600: "SIX_HOUR",
    86400: "ONE_DAY",
}

_public_limiter = RateLimiter(max_requests=4)
_private_limiter = RateLimiter(max_requests=8)


def _get(obj: Any, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _parse_candles(resp) -> List[Candle]:
    candles = []
    for raw in _get(resp, "candles", None) or []:
        try:
            candles.append(Candle.from_api(raw))
        except (TypeError, ValueError) as e:
            logger.debug("[CANDLES] Skipping invalid candle: %s", e)
    candles.sort(key=lambda c: c.start)
    return candles


def _format_decimal(value: float, decimals: int) -> str:
    """Fixed-point string without scientific notation or trailing zeros."""
    return f"{value:.{decimals}f}".rstrip("0").rstrip(".")


class CoinbaseExchangeClient:
    """IExchangeClient over coinbase-advanced-py."""

    def __init__(self, config: Settings = settings, rest_client: Optional[RESTClient] = None):
        self.config = config
        if rest_client is not None:
            self._client = rest_client
        else:
            if config.is_live and not (config.coinbase_api_key and config.coinbase_api_secret):
                raise ValueError("COINBASE_API_KEY and COINBASE_API_SECRET are required for live trading")
            if config.coinbase_api_key and config.coinbase_api_secret:
                self._client = RESTClient(api_key=config.coinbase_api_key, api_secret=config.coinbase_api_secret)
            else:
                # Public market data only
                self._client = RESTClient()
        self.last_candle_close: float = 0.0

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _call(self, limiter: RateLimiter, fn: Callable, *args, **kwargs):
        await limiter.wait()
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def _first_success(self, label: str, sources: Sequence[Tuple[str, Callable[[], Awaitable[Any]]]]):
        errors = []
        for name, factory in sources:
            for attempt in range(self.config.fetch_max_attempts):
                try:
                    result = await factory()
                except Exception as e:
                    errors.append(f"{name}: {e}")
                    if attempt < self.config.fetch_max_attempts - 1:
                        await asyncio.sleep(min(5.0, 0.5 * (2 ** attempt)))
                    continue
                if result is None:
                    errors.append(f"{name}: empty result")
                    break
                if errors:
                    logger.info("[EXCHANGE] %s served by fallback %s", label, name)
                return result
        raise ExchangeUnavailableError(f"{label} unavailable: {'; '.join(errors[-3:])}")

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_candles(self, pair: str, granularity_s: int, start: int, end: int) -> List[Candle]:
        granularity = _granularity_map.get(granularity_s, "ONE_MINUTE")

        async def public():
            resp = await self._call(
                _public_limiter, self._client.get_public_candles,
                product_id=pair, start=str(start), end=str(end), granularity=granularity,
            )
            return _parse_candles(resp) or None

        async def private():
            resp = await self._call(
                _private_limiter, self._client.get_candles,
                product_id=pair, start=str(start), end=str(end), granularity=granularity,
            )
            return _parse_candles(resp) or None

        async def windowed():
            chunk = granularity_s * (_MAX_CANDLES // 2)
            out: dict[int, Candle] = {}
            cursor = start
            while cursor < end:
                chunk_end = min(cursor + chunk, end)
                resp = await self._call(
                    _public_limiter, self._client.get_public_candles,
                    product_id=pair, start=str(cursor), end=str(chunk_end), granularity=granularity,
                )
                for c in _parse_candles(resp):
                    out[c.start] = c
                cursor = chunk_end
            return sorted(out.values(), key=lambda c: c.start) or None

        candles = await self._first_success(
            "candles", [("public", public), ("authenticated", private), ("windowed", windowed)]
        )
        if candles:
            self.last_candle_close = candles[-1].close
        return candles

    async def get_price(self, pair: str) -> float:
        async def product():
            resp = await self._call(_private_limiter, self._client.get_product, pair)
            price = float(_get(resp, "price", 0) or 0)
            return price if price > 0 else None

        async def best_bid_ask():
            resp = await self._call(_private_limiter, self._client.get_best_bid_ask, product_ids=[pair])
            for book in _get(resp, "pricebooks", None) or []:
                bids = _get(book, "bids", None) or []
                asks = _get(book, "asks", None) or []
                if bids and asks:
                    bid = float(_get(bids[0], "price", 0) or 0)
                    ask = float(_get(asks[0], "price", 0) or 0)
                    if bid > 0 and ask > 0:
                        return (bid + ask) / 2
            return None

        async def last_close():
            if self.last_candle_close > 0:
                return self.last_candle_close
            now = int(time.time())
            candles = await self.get_candles(pair, self.config.candle_granularity_s, now - 600, now)
            return candles[-1].close if candles else None

        return await self._first_success(
            "price", [("product", product), ("best_bid_ask", best_bid_ask), ("last_candle", last_close)]
        )

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_balances(self) -> dict[str, float]:
        async def accounts():
            balances: dict[str, float] = {}
            cursor = None
            while True:
                kwargs = {"limit": 250}
                if cursor:
                    kwargs["cursor"] = cursor
                resp = await self._call(_private_limiter, self._client.get_accounts, **kwargs)
                for acct in _get(resp, "accounts", None) or []:
                    currency = _get(acct, "currency", "")
                    bal = _get(acct, "available_balance", {}) or {}
                    balances[currency] = balances.get(currency, 0.0) + float(_get(bal, "value", 0) or 0)
                cursor = _get(resp, "cursor", None)
                if not _get(resp, "has_next", False) or not cursor:
                    break
            return balances

        async def portfolio_breakdown():
            resp = await self._call(_private_limiter, self._client.get_portfolios)
            portfolios = _get(resp, "portfolios", None) or []
            if not portfolios:
                return None
            portfolio_uuid = _get(portfolios[0], "uuid", "")
            breakdown = await self._call(_private_limiter, self._client.get_portfolio_breakdown, portfolio_uuid)
            body = _get(breakdown, "breakdown", None) or {}
            balances: dict[str, float] = {}
            for pos in _get(body, "spot_positions", None) or []:
                asset = _get(pos, "asset", "")
                balances[asset] = float(_get(pos, "available_to_trade_crypto", 0) or 0)
            return balances or None

        return await self._first_success(
            "balances", [("accounts", accounts), ("portfolio_breakdown", portfolio_breakdown)]
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit_order(
        self,
        pair: str,
        side: str,
        quantity: float,
        order_type: str = "market",
        price: Optional[float] = None,
        post_only: bool = False,
    ) -> OrderResult:
        validate_order_args(pair, side, quantity, order_type, price)
        cfg = self.config
        client_order_id = f"sig_{side.lower()}_{uuid.uuid4().hex[:16]}"
        base_size = _format_decimal(quantity, cfg.lot_decimals)

        try:
            if order_type == "limit":
                fn = self._client.limit_order_gtc_buy if side == "BUY" else self._client.limit_order_gtc_sell
                resp = await self._call(
                    _private_limiter, fn,
                    client_order_id=client_order_id,
                    product_id=pair,
                    base_size=base_size,
                    limit_price=_format_decimal(price, cfg.price_decimals),
                    post_only=post_only,
                )
            else:
                fn = self._client.market_order_buy if side == "BUY" else self._client.market_order_sell
                resp = await self._call(
                    _private_limiter, fn,
                    client_order_id=client_order_id,
                    product_id=pair,
                    base_size=base_size,
                )
        except Exception as e:
            raise classify_error(e) from e

        logger.info("[ORDER] %s %s %s %s response: %s", order_type, side, base_size, pair, resp)
        return parse_order_response(resp, side=side, expected_qty=quantity, market_price=price or 0)

    async def cancel_order(self, order_id: str) -> bool:
        resp = await self._call(_private_limiter, self._client.cancel_orders, order_ids=[order_id])
        for result in _get(resp, "results", None) or []:
            if _get(result, "order_id") == order_id:
                return bool(_get(result, "success", False))
        return False

    async def get_open_orders(self, pair: Optional[str] = None) -> list[dict]:
        kwargs = {"order_status": ["OPEN"]}
        if pair:
            kwargs["product_id"] = pair
        resp = await self._call(_private_limiter, self._client.list_orders, **kwargs)
        orders = []
        for order in _get(resp, "orders", None) or []:
            orders.append({
                "order_id": _get(order, "order_id", ""),
                "product_id": _get(order, "product_id", ""),
                "side": _get(order, "side", ""),
                "status": _get(order, "status", ""),
            })
        return orders
