"""
Buyback Execution Engine

Spends the buyback pool on the target token, then splits what was acquired:

    burn     = acquired * burn_bps // BPS        (permanently removed)
    non_burn = acquired - burn                   -> POL pairing, else token reserve

Preconditions are all-or-nothing: an unmet one returns a GateBlocked result
naming it and nothing moves. The pool is debited only after the venue confirms
a fill; a failed or timed-out purchase leaves it untouched for the next cycle.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from treasury.adapters import (
    LiquidityAdapter,
    LiquidityReceipt,
    MarketSnapshot,
    PurchaseFill,
    PurchaseVenue,
    call_with_timeout,
)
from treasury.burn_policy import burn_bps_for, split_acquired
from treasury.errors import (
    REASON_COVERAGE,
    REASON_MARKET_UNAVAILABLE,
    REASON_POOL_DEPTH,
    REASON_POOL_EMPTY,
    REASON_PRICE_STALE,
    REASON_RATE_LIMITED,
    REASON_RUNWAY,
    REASON_VOLUME_CAP,
    ExternalFailure,
    GateBlocked,
    ValidationError,
)
from treasury.events import TelemetrySink, emit_event
from treasury.gates import SafetyGateStatus, evaluate_gates
from treasury.ledger import BuybackExecution, Ledger, POLPosition, TreasuryState, require_amount
from treasury.policy_config import BPS, WAD, PolicyConfig

LOG = logging.getLogger("treasury.buyback")

STATUS_EXECUTED = "executed"
STATUS_BLOCKED = "blocked"
STATUS_FAILED = "failed"
STATUS_NO_FILL = "no_fill"

ContributionRecorder = Callable[[int, int, int, int], POLPosition]


@dataclass
class BuybackResult:
    status: str
    blocked: Optional[GateBlocked] = None
    execution: Optional[BuybackExecution] = None
    error: Optional[str] = None

    @property
    def reason(self) -> Optional[str]:
        return self.blocked.reason if self.blocked is not None else None

    @property
    def executed(self) -> bool:
        return self.status == STATUS_EXECUTED


def min_acquired_for(spend: int, token_price: int, max_slippage_bps: int) -> int:
    """Lowest acceptable fill for ``spend`` at ``token_price`` (WAD) minus slippage."""
    if token_price <= 0:
        return 0
    expected = spend * WAD // token_price
    return expected * (BPS - max_slippage_bps) // BPS


class BuybackEngine:
    def __init__(
        self,
        ledger: Ledger,
        venue: PurchaseVenue,
        config: Optional[PolicyConfig] = None,
        *,
        liquidity_adapter: Optional[LiquidityAdapter] = None,
        record_contribution: Optional[ContributionRecorder] = None,
        telemetry: Optional[TelemetrySink] = None,
    ) -> None:
        self._ledger = ledger
        self._venue = venue
        self._config = config or PolicyConfig()
        self._liquidity = liquidity_adapter
        self._record_contribution = record_contribution
        self._telemetry = telemetry

    @property
    def _timeout(self) -> float:
        return self._config.cycle.external_call_timeout_seconds

    def check_preconditions(
        self,
        state: TreasuryState,
        status: SafetyGateStatus,
        market: Optional[MarketSnapshot],
        spend: int,
        now: float,
    ) -> Optional[GateBlocked]:
        cfg = self._config.buyback
        if not status.runway_ok:
            return GateBlocked(REASON_RUNWAY, {"runway_months": status.runway_months})
        if not status.coverage_ok:
            if not status.price_fresh:
                return GateBlocked(REASON_PRICE_STALE, {"price_as_of": state.price_as_of})
            return GateBlocked(REASON_COVERAGE, {"coverage_ratio_wad": status.coverage_ratio_wad})
        if (
            market is None
            or market.pool_depth is None
            or market.trailing_volume is None
            or not market.token_price
        ):
            return GateBlocked(REASON_MARKET_UNAVAILABLE)
        if spend <= 0:
            return GateBlocked(REASON_POOL_EMPTY, {"balance": state.buyback_pool.balance})
        history = state.buyback_pool.history
        if history and now - history[-1].timestamp < cfg.min_interval_seconds:
            return GateBlocked(
                REASON_RATE_LIMITED,
                {"last_execution": history[-1].timestamp, "min_interval_seconds": cfg.min_interval_seconds},
            )
        if market.pool_depth < cfg.min_pool_depth:
            return GateBlocked(REASON_POOL_DEPTH, {"pool_depth": market.pool_depth, "minimum": cfg.min_pool_depth})
        if spend * BPS > cfg.volume_participation_bps * market.trailing_volume:
            return GateBlocked(
                REASON_VOLUME_CAP,
                {
                    "spend": spend,
                    "trailing_volume": market.trailing_volume,
                    "participation_bps": cfg.volume_participation_bps,
                },
            )
        return None

    def execute(
        self,
        *,
        market: Optional[MarketSnapshot],
        now: Optional[float] = None,
        budget: Optional[int] = None,
    ) -> BuybackResult:
        ts = float(now if now is not None else time.time())
        cfg = self._config.buyback
        with self._ledger.transaction():
            state = self._ledger.snapshot()
            status = evaluate_gates(state, self._config.gates, ts)
            pool_balance = state.buyback_pool.balance
            if budget is None:
                spend = min(pool_balance, cfg.max_spend_per_execution)
            else:
                spend = require_amount(budget, "budget")
                if spend > pool_balance:
                    raise ValidationError(f"buyback budget {spend} exceeds pool balance {pool_balance}")

            blocked = self.check_preconditions(state, status, market, spend, ts)
            if blocked is not None:
                LOG.info("[buyback] blocked reason=%s detail=%s", blocked.reason, blocked.detail)
                emit_event(self._telemetry, "buyback_blocked", blocked.to_dict())
                return BuybackResult(STATUS_BLOCKED, blocked=blocked)

            token_price = market.token_price if market is not None else 0
            min_acquired = min_acquired_for(spend, token_price or 0, cfg.max_slippage_bps)
            try:
                fill = self._purchase(spend, min_acquired)
            except ExternalFailure as exc:
                LOG.warning("[buyback] purchase failed spend=%s err=%s", spend, exc)
                emit_event(
                    self._telemetry,
                    "buyback_failed",
                    {"operation": exc.operation, "error": exc.message, "spend": spend},
                )
                return BuybackResult(STATUS_FAILED, error=str(exc))

            if fill.spent == 0:
                LOG.info("[buyback] zero fill spend=%s", spend)
                emit_event(self._telemetry, "buyback_blocked", {"reason": STATUS_NO_FILL, "spend": spend})
                return BuybackResult(STATUS_NO_FILL)
            if fill.acquired < min_acquired:
                LOG.warning("[buyback] fill below bound acquired=%s min=%s", fill.acquired, min_acquired)

            self._ledger.debit_buyback_pool(fill.spent)
            burn_bps = burn_bps_for(status.runway_ok, status.coverage_ok, self._config.burn)
            burn, non_burn = split_acquired(fill.acquired, burn_bps)
            if burn:
                self._ledger.record_burn(burn)
            paired, pairing_error = self._pair(state, non_burn, fill)
            reserved = non_burn - paired
            if reserved:
                self._ledger.credit_token_reserve(reserved)
            record = BuybackExecution(
                timestamp=ts,
                spent=fill.spent,
                acquired=fill.acquired,
                burned=burn,
                paired=paired,
                reserved=reserved,
                average_price=fill.spent * WAD // fill.acquired,
            )
            self._ledger.append_buyback_execution(record)

        LOG.info(
            "[buyback] executed spent=%s acquired=%s burn=%s paired=%s reserved=%s burn_bps=%s",
            record.spent,
            record.acquired,
            record.burned,
            record.paired,
            record.reserved,
            burn_bps,
        )
        payload: Dict[str, Any] = {
            "spent": record.spent,
            "acquired": record.acquired,
            "burned": record.burned,
            "paired": record.paired,
            "reserved": record.reserved,
            "average_price": record.average_price,
            "burn_bps": burn_bps,
        }
        if pairing_error:
            payload["pairing_error"] = pairing_error
        emit_event(self._telemetry, "buyback_executed", payload)
        return BuybackResult(STATUS_EXECUTED, execution=record)

    def _purchase(self, spend: int, min_acquired: int) -> PurchaseFill:
        op = "execute_bounded_purchase"
        fill = call_with_timeout(
            op,
            self._venue.execute_bounded_purchase,
            spend,
            min_acquired,
            self._config.buyback.max_slippage_bps,
            timeout_s=self._timeout,
        )
        if not isinstance(fill, PurchaseFill):
            raise ExternalFailure(op, f"unexpected fill type {type(fill).__name__}")
        for value in (fill.spent, fill.acquired):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ExternalFailure(op, f"malformed fill {fill!r}")
        if fill.spent > spend:
            raise ExternalFailure(op, f"venue overspent {fill.spent} > {spend}")
        if fill.spent > 0 and fill.acquired == 0:
            raise ExternalFailure(op, "spend reported without acquisition")
        return fill

    def _pair(self, state: TreasuryState, non_burn: int, fill: PurchaseFill) -> tuple[int, Optional[str]]:
        """Match non-burn tokens 1:1 in value with the reserved liquidity budget."""
        if non_burn == 0 or self._liquidity is None or self._record_contribution is None:
            return 0, None
        pol = state.pol
        if pol.current_ownership_bps >= pol.target_ownership_bps or state.liquidity_budget == 0:
            return 0, None
        tokens = min(non_burn, state.liquidity_budget * fill.acquired // fill.spent)
        pair_value = tokens * fill.spent // fill.acquired
        if tokens == 0 or pair_value == 0:
            return 0, None
        op = "add_liquidity"
        try:
            receipt = call_with_timeout(op, self._liquidity.add_liquidity, tokens, pair_value, timeout_s=self._timeout)
            if not isinstance(receipt, LiquidityReceipt):
                raise ExternalFailure(op, f"unexpected receipt type {type(receipt).__name__}")
            for value in (receipt.lp_units, receipt.pool_total_units):
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise ExternalFailure(op, f"malformed receipt {receipt!r}")
        except ExternalFailure as exc:
            LOG.warning("[buyback] pairing failed tokens=%s value=%s err=%s", tokens, pair_value, exc)
            return 0, str(exc)
        self._ledger.consume_liquidity_budget(pair_value)
        self._record_contribution(receipt.lp_units, tokens, pair_value, receipt.pool_total_units)
        return tokens, None


__all__ = [
    "STATUS_EXECUTED",
    "STATUS_BLOCKED",
    "STATUS_FAILED",
    "STATUS_NO_FILL",
    "BuybackResult",
    "min_acquired_for",
    "BuybackEngine",
]
