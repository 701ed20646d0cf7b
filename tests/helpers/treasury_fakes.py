"""In-memory stand-ins for the external collaborators."""
from __future__ import annotations

import threading
from typing import List, Optional, Tuple

from treasury.adapters import LiquidityReceipt, MarketSnapshot, PurchaseFill
from treasury.policy_config import WAD


class FakeOracle:
    def __init__(self, price: int, as_of: float) -> None:
        self.price = price
        self.as_of = as_of
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    def get_reference_price(self, asset_id: str) -> Tuple[int, float]:
        self.calls.append(asset_id)
        if self.error is not None:
            raise self.error
        return self.price, self.as_of


class FakeMarketData:
    def __init__(self, snapshot: Optional[MarketSnapshot] = None) -> None:
        self.value = snapshot or healthy_market()
        self.error: Optional[Exception] = None

    def snapshot(self) -> MarketSnapshot:
        if self.error is not None:
            raise self.error
        return self.value


class FakePurchaseVenue:
    """Fills at ``token_price`` (WAD) unless told to fail or fill short."""

    def __init__(self, token_price: int = WAD) -> None:
        self.token_price = token_price
        self.calls: List[Tuple[int, int, int]] = []
        self.error: Optional[Exception] = None
        self.fill: Optional[PurchaseFill] = None

    def execute_bounded_purchase(self, spend_amount: int, min_acquired: int, max_slippage_bps: int) -> PurchaseFill:
        self.calls.append((spend_amount, min_acquired, max_slippage_bps))
        if self.error is not None:
            raise self.error
        if self.fill is not None:
            return self.fill
        return PurchaseFill(spent=spend_amount, acquired=spend_amount * WAD // self.token_price)


class SlowPurchaseVenue(FakePurchaseVenue):
    def __init__(self, release: threading.Event) -> None:
        super().__init__()
        self.release = release

    def execute_bounded_purchase(self, spend_amount: int, min_acquired: int, max_slippage_bps: int) -> PurchaseFill:
        self.release.wait(5)
        return super().execute_bounded_purchase(spend_amount, min_acquired, max_slippage_bps)


class FakeYieldVenue:
    def __init__(self, harvest_amounts: Optional[List[int]] = None) -> None:
        self.deposits: List[Tuple[str, int]] = []
        self.withdrawals: List[Tuple[str, int]] = []
        self.harvest_amounts = list(harvest_amounts or [])
        self.error: Optional[Exception] = None

    def deposit(self, asset: str, amount: int) -> None:
        if self.error is not None:
            raise self.error
        self.deposits.append((asset, amount))

    def withdraw(self, asset: str, amount: int) -> None:
        if self.error is not None:
            raise self.error
        self.withdrawals.append((asset, amount))

    def harvest(self) -> int:
        if self.error is not None:
            raise self.error
        return self.harvest_amounts.pop(0) if self.harvest_amounts else 0


class FakeStaking:
    def __init__(self, reward_bps: int = 0) -> None:
        self.reward_bps = reward_bps
        self.staked: List[int] = []
        self.unstaked: List[int] = []
        self.error: Optional[Exception] = None

    def stake(self, amount: int) -> int:
        if self.error is not None:
            raise self.error
        self.staked.append(amount)
        return amount

    def unstake(self, units: int) -> int:
        if self.error is not None:
            raise self.error
        self.unstaked.append(units)
        return units + units * self.reward_bps // 10_000


class FakeLiquidityAdapter:
    def __init__(self, pool_total_units: int = 1_000_000) -> None:
        self.pool_total_units = pool_total_units
        self.lp_units = 0
        self.added: List[Tuple[int, int]] = []
        self.error: Optional[Exception] = None

    def add_liquidity(self, token_amount: int, pair_amount: int) -> LiquidityReceipt:
        if self.error is not None:
            raise self.error
        self.added.append((token_amount, pair_amount))
        minted = pair_amount
        self.lp_units += minted
        self.pool_total_units += minted
        return LiquidityReceipt(lp_units=minted, pool_total_units=self.pool_total_units)

    def position_share(self) -> Tuple[int, int]:
        if self.error is not None:
            raise self.error
        return self.lp_units, self.pool_total_units


def healthy_market(token_price: int = WAD) -> MarketSnapshot:
    return MarketSnapshot(pool_depth=1_000_000, trailing_volume=1_000_000, token_price=token_price)
