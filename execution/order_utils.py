"""
Order plumbing: error taxonomy, retry/backoff, rate limiting, argument
validation and normalisation of Coinbase order responses.
"""

import asyncio
import math
import re
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from core.logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

PAIR_PATTERN = re.compile(r"^[A-Z0-9]{2,10}-[A-Z0-9]{2,10}$")
ORDER_SIDES = ("BUY", "SELL")
ORDER_TYPES = ("market", "limit")


class OrderError(Exception):
    """Base exception for order errors."""


class OrderRetryableError(OrderError):
    """Transient failure; another attempt may succeed."""


class OrderFatalError(OrderError):
    """Failure that must not be retried (bad arguments, funds)."""


class InsufficientFundsError(OrderFatalError):
    """Wallet cannot cover the order."""


class ExchangeUnavailableError(Exception):
    """Every source for a read (candles, balances, price) failed."""


@dataclass
class RateLimiter:
    """Sliding-window limiter; Coinbase private endpoints allow ~10 req/s."""
    max_requests: int = 8
    window_seconds: float = 1.0
    _requests: list = field(default_factory=list)

    async def wait(self):
        now = time.monotonic()
        self._requests = [t for t in self._requests if now - t < self.window_seconds]
        if len(self._requests) >= self.max_requests:
            sleep_time = self.window_seconds - (now - self._requests[0])
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
            self._requests = self._requests[1:]
        self._requests.append(time.monotonic())


rate_limiter = RateLimiter()


def classify_error(error: Exception) -> OrderError:
    """Map a raw client exception onto the retryable/fatal taxonomy."""
    if isinstance(error, OrderError):
        return error
    text = str(error).lower()
    if "insufficient" in text or "balance" in text:
        return InsufficientFundsError(f"Insufficient funds: {error}")
    if "invalid" in text and ("size" in text or "amount" in text):
        return OrderFatalError(f"Invalid order size: {error}")
    return OrderRetryableError(str(error))


def with_retry_async(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    retryable_exceptions: tuple = (Exception,),
):
    """Retry an async call with exponential backoff; fatal errors pass straight through."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(max_attempts):
                try:
                    await rate_limiter.wait()
                    return await func(*args, **kwargs)
                except OrderFatalError:
                    raise
                except retryable_exceptions as e:
                    classified = classify_error(e)
                    if isinstance(classified, OrderFatalError):
                        raise classified from e
                    last_error = e
                    if attempt < max_attempts - 1:
                        delay = min(base_delay * (2 ** attempt), max_delay)
                        logger.info("[RETRY] %s attempt %d/%d failed: %s", func.__name__, attempt + 1, max_attempts, e)
                        await asyncio.sleep(delay)
            raise OrderRetryableError(f"Failed after {max_attempts} attempts: {last_error}")
        return wrapper
    return decorator


def floor_to_lot(quantity: float, decimals: int = 8) -> float:
    """Round a base quantity down to the exchange lot precision."""
    if quantity <= 0:
        return 0.0
    factor = 10 ** decimals
    # Products like 2.3 * 1e8 can land a hair under the integer
    return math.floor(quantity * factor + 1e-6) / factor


def validate_order_args(
    pair: str, side: str, quantity: float, order_type: str = "market", price: Optional[float] = None
) -> None:
    """Raise OrderFatalError for arguments the exchange would reject."""
    if not isinstance(pair, str) or not PAIR_PATTERN.match(pair):
        raise OrderFatalError(f"Invalid trading pair {pair!r}")
    if side not in ORDER_SIDES:
        raise OrderFatalError(f"Invalid side {side!r}, expected BUY or SELL")
    if not isinstance(quantity, (int, float)) or not math.isfinite(quantity) or quantity <= 0:
        raise OrderFatalError(f"Invalid order size {quantity!r}")
    if order_type not in ORDER_TYPES:
        raise OrderFatalError(f"Invalid order type {order_type!r}")
    if order_type == "limit" and (price is None or price <= 0):
        raise OrderFatalError("Limit order requires a positive price")


@dataclass
class OrderResult:
    """Normalised outcome of an order submission."""
    success: bool
    order_id: Optional[str] = None
    side: str = ""
    fill_price: Optional[float] = None
    fill_qty: Optional[float] = None
    filled_value: Optional[float] = None
    fees: Optional[float] = None
    status: str = ""
    error: Optional[str] = None

    @property
    def quote_amount(self) -> float:
        if self.filled_value:
            return self.filled_value
        if self.fill_price and self.fill_qty:
            return self.fill_price * self.fill_qty
        return 0.0


def _get(obj: Any, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def parse_order_response(response, side: str = "", expected_qty: float = 0, market_price: float = 0) -> OrderResult:
    """
    Normalise a Coinbase create_order response (SDK object or dict).

    Success responses carry `success_response.order_id`; failures carry
    `error_response` or `failure_reason`. Fill data is rarely present on the
    create call, so the requested size and the current market price stand in
    until the wallet is reconciled.
    """
    if response is None:
        return OrderResult(success=False, side=side, error="empty response")

    success_response = _get(response, "success_response") or {}
    order_id = _get(success_response, "order_id") or _get(response, "order_id") or ""
    success = bool(_get(response, "success", False) or order_id)

    if not success:
        error_response = _get(response, "error_response") or {}
        reason = (
            _get(error_response, "message")
            or _get(error_response, "error")
            or _get(response, "failure_reason")
            or "order rejected"
        )
        return OrderResult(success=False, side=side, error=str(reason))

    filled_size = float(_get(response, "filled_size", 0) or 0)
    avg_price = float(_get(response, "average_filled_price", 0) or 0)
    filled_value = float(_get(response, "filled_value", 0) or 0)
    fees = float(_get(response, "total_fees", 0) or 0)

    fill_qty = filled_size if filled_size > 0 else (expected_qty or None)
    fill_price = avg_price if avg_price > 0 else (market_price or None)
    if filled_size <= 0:
        logger.info(
            "[ORDER] %s order %s accepted without fill data, tracking qty=%s @ %s",
            side, order_id, fill_qty, fill_price,
        )

    return OrderResult(
        success=True,
        order_id=str(order_id),
        side=side,
        fill_price=fill_price,
        fill_qty=fill_qty,
        filled_value=filled_value or None,
        fees=fees or None,
        status=str(_get(response, "status", "") or ""),
    )
