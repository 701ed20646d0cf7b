"""
External collaborator interfaces.

The core only sees these protocols; concrete venues, oracles and staking
providers are injected. Every call goes through ``call_with_timeout`` so a hung
or failing collaborator surfaces as ExternalFailure and never as a silent
success. A timed-out call keeps running on its worker thread, so adapters must
make late completions safe (bounded orders, idempotent deposits).
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Tuple, TypeVar

from treasury.errors import ExternalFailure

LOG = logging.getLogger("treasury.adapters")

T = TypeVar("T")

_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="treasury-ext")


@dataclass(frozen=True)
class MarketSnapshot:
    """Target-token market conditions (replaces hard-coded liquidity/volume stubs)."""

    pool_depth: Optional[int] = None
    trailing_volume: Optional[int] = None
    token_price: Optional[int] = None  # buffer units per target token, WAD
    as_of: Optional[float] = None


@dataclass(frozen=True)
class PurchaseFill:
    spent: int
    acquired: int


@dataclass(frozen=True)
class LiquidityReceipt:
    lp_units: int
    pool_total_units: int


class PriceOracle(Protocol):
    def get_reference_price(self, asset_id: str) -> Tuple[int, float]:
        ...


class MarketDataSource(Protocol):
    def snapshot(self) -> MarketSnapshot:
        ...


class PurchaseVenue(Protocol):
    def execute_bounded_purchase(self, spend_amount: int, min_acquired: int, max_slippage_bps: int) -> PurchaseFill:
        ...


class YieldVenue(Protocol):
    def deposit(self, asset: str, amount: int) -> None:
        ...

    def withdraw(self, asset: str, amount: int) -> None:
        ...

    def harvest(self) -> int:
        ...


class StakingAdapter(Protocol):
    def stake(self, amount: int) -> int:
        ...

    def unstake(self, units: int) -> int:
        ...


class LiquidityAdapter(Protocol):
    def add_liquidity(self, token_amount: int, pair_amount: int) -> LiquidityReceipt:
        ...

    def position_share(self) -> Tuple[int, int]:
        ...


def call_with_timeout(
    operation: str,
    fn: Callable[..., T],
    *args: Any,
    timeout_s: float,
    **kwargs: Any,
) -> T:
    """Run an external call with a bounded wait; any failure becomes ExternalFailure."""
    future = _EXECUTOR.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeout:
        future.cancel()
        LOG.warning("[adapters] %s timed out after %.2fs", operation, timeout_s)
        raise ExternalFailure(operation, f"timed out after {timeout_s}s") from None
    except ExternalFailure:
        raise
    except Exception as exc:
        LOG.warning("[adapters] %s failed: %s", operation, exc)
        raise ExternalFailure(operation, str(exc) or type(exc).__name__) from exc


def _non_negative_int(value: Any, operation: str, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ExternalFailure(operation, f"invalid {name}: {value!r}")
    return value


def fetch_reference_price(
    oracle: PriceOracle,
    asset_id: str,
    *,
    max_age_seconds: float,
    now: float,
    timeout_s: float,
) -> Tuple[int, float]:
    """Fetch a quote and reject malformed or stale ones."""
    op = "get_reference_price"
    result = call_with_timeout(op, oracle.get_reference_price, asset_id, timeout_s=timeout_s)
    try:
        price, as_of = result
        as_of = float(as_of)
    except (TypeError, ValueError):
        raise ExternalFailure(op, f"malformed quote: {result!r}") from None
    price = _non_negative_int(price, op, "price")
    if price == 0:
        raise ExternalFailure(op, "zero price")
    age = float(now) - as_of
    if age > max_age_seconds:
        raise ExternalFailure(op, f"stale quote age={age:.0f}s limit={max_age_seconds:.0f}s")
    return price, as_of


def fetch_market_snapshot(source: MarketDataSource, *, timeout_s: float) -> MarketSnapshot:
    op = "market_snapshot"
    snap = call_with_timeout(op, source.snapshot, timeout_s=timeout_s)
    if not isinstance(snap, MarketSnapshot):
        raise ExternalFailure(op, f"unexpected snapshot type {type(snap).__name__}")
    for name in ("pool_depth", "trailing_volume", "token_price"):
        value = getattr(snap, name)
        if value is not None:
            _non_negative_int(value, op, name)
    return snap


__all__ = [
    "MarketSnapshot",
    "PurchaseFill",
    "LiquidityReceipt",
    "PriceOracle",
    "MarketDataSource",
    "PurchaseVenue",
    "YieldVenue",
    "StakingAdapter",
    "LiquidityAdapter",
    "call_with_timeout",
    "fetch_reference_price",
    "fetch_market_snapshot",
]
