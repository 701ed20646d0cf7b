"""
Allocation Router

Partitions one inflow across competing uses in strict priority order:

    1. buffer_topup     restore runway to the threshold (may consume everything)
    2. liquidity        reserve a capped POL pairing budget when the pool is
                        under-owned or too shallow
    3. dca / buyback    weighted split of the remainder, each under its own
                        per-period cap
    4. buffer_residual  cap excess and every basis-point truncation remainder

The plan always sums to the inflow exactly. Gate evaluation, plan construction
and the ledger mutation happen inside one ledger transaction.

The router owns the POL position: the buyback engine receives only
``record_contribution`` to report pairings.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from treasury.adapters import LiquidityAdapter, MarketSnapshot, call_with_timeout
from treasury.errors import ExternalFailure, InvariantViolation
from treasury.events import TelemetrySink, emit_event
from treasury.gates import SafetyGateStatus, buffer_deficit, evaluate_gates
from treasury.ledger import (
    PURPOSE_BUFFER_RESIDUAL,
    PURPOSE_BUFFER_TOPUP,
    PURPOSE_BUYBACK,
    PURPOSE_DCA,
    PURPOSE_LIQUIDITY,
    CycleUsage,
    Inflow,
    Ledger,
    POLPosition,
    TreasuryState,
)
from treasury.policy_config import BPS, GateConfig, PolicyConfig, RouterConfig

LOG = logging.getLogger("treasury.router")


@dataclass(frozen=True)
class AllocationEntry:
    purpose: str
    amount: int


@dataclass
class AllocationPlan:
    inflow_id: str
    inflow_amount: int
    entries: List[AllocationEntry]
    terminated_early: bool
    gate_status: SafetyGateStatus
    period: int

    def total(self) -> int:
        return sum(entry.amount for entry in self.entries)

    def amount_for(self, purpose: str) -> int:
        return sum(entry.amount for entry in self.entries if entry.purpose == purpose)

    def as_pairs(self) -> List[Tuple[str, int]]:
        return [(entry.purpose, entry.amount) for entry in self.entries]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inflow_id": self.inflow_id,
            "inflow_amount": self.inflow_amount,
            "entries": self.as_pairs(),
            "terminated_early": self.terminated_early,
            "period": self.period,
            "gates": self.gate_status.to_dict(),
        }


def liquidity_needed(state: TreasuryState, market: Optional[MarketSnapshot], cfg: RouterConfig) -> bool:
    pol = state.pol
    if pol.current_ownership_bps < pol.target_ownership_bps:
        return True
    if market is not None and market.pool_depth is not None and market.pool_depth < cfg.min_pool_depth:
        return True
    return False


def build_allocation_plan(
    inflow_id: str,
    amount: int,
    state: TreasuryState,
    status: SafetyGateStatus,
    cfg: RouterConfig,
    gate_cfg: GateConfig,
    usage: CycleUsage,
    market: Optional[MarketSnapshot] = None,
) -> AllocationPlan:
    """Pure plan construction; no ledger access."""
    remaining = amount
    entries: List[AllocationEntry] = []

    topup = 0
    if not status.runway_ok:
        topup = min(remaining, buffer_deficit(state, gate_cfg))
    entries.append(AllocationEntry(PURPOSE_BUFFER_TOPUP, topup))
    remaining -= topup
    if remaining == 0:
        return AllocationPlan(inflow_id, amount, entries, True, status, usage.period)

    liquidity = 0
    if liquidity_needed(state, market, cfg):
        liquidity = min(remaining, max(0, cfg.liquidity_cycle_cap - usage.liquidity))
    entries.append(AllocationEntry(PURPOSE_LIQUIDITY, liquidity))
    remaining -= liquidity

    dca = min(remaining * cfg.dca_weight_bps // BPS, max(0, cfg.dca_cycle_cap - usage.dca))
    buyback = min(remaining * cfg.buyback_weight_bps // BPS, max(0, cfg.buyback_cycle_cap - usage.buyback))
    if not status.coverage_ok and cfg.divert_buyback_on_coverage_failure:
        buyback = 0
    entries.append(AllocationEntry(PURPOSE_DCA, dca))
    entries.append(AllocationEntry(PURPOSE_BUYBACK, buyback))
    entries.append(AllocationEntry(PURPOSE_BUFFER_RESIDUAL, remaining - dca - buyback))
    return AllocationPlan(inflow_id, amount, entries, False, status, usage.period)


class AllocationRouter:
    def __init__(
        self,
        ledger: Ledger,
        config: Optional[PolicyConfig] = None,
        *,
        telemetry: Optional[TelemetrySink] = None,
    ) -> None:
        self._ledger = ledger
        self._config = config or PolicyConfig()
        self._telemetry = telemetry

    def cycle_usage(self, period: int) -> CycleUsage:
        """Capped amounts already routed in ``period``, as recorded in TreasuryState."""
        return self._ledger.cycle_usage(period)

    def route(
        self,
        inflow: Inflow,
        *,
        market: Optional[MarketSnapshot] = None,
        now: Optional[float] = None,
    ) -> AllocationPlan:
        ts = float(now if now is not None else time.time())
        period = self._config.cycle.period_of(ts)
        with self._ledger.transaction():
            state = self._ledger.snapshot()
            status = evaluate_gates(state, self._config.gates, ts)
            plan = build_allocation_plan(
                inflow.inflow_id,
                inflow.amount,
                state,
                status,
                self._config.router,
                self._config.gates,
                self._ledger.cycle_usage(period),
                market,
            )
            if plan.total() != inflow.amount:
                raise InvariantViolation(
                    f"allocation plan for {inflow.inflow_id} sums to {plan.total()}, inflow was {inflow.amount}"
                )
            self._ledger.apply_allocation(inflow.inflow_id, plan.as_pairs(), period=period)
        LOG.info(
            "[router] inflow=%s amount=%s plan=%s early=%s",
            inflow.inflow_id,
            inflow.amount,
            plan.as_pairs(),
            plan.terminated_early,
        )
        emit_event(
            self._telemetry,
            "inflow_processed",
            {
                "inflow_id": inflow.inflow_id,
                "amount": inflow.amount,
                "asset": inflow.asset,
                "source": inflow.source,
                "plan": plan.as_pairs(),
                "terminated_early": plan.terminated_early,
            },
        )
        return plan

    def process_pending(
        self,
        *,
        market: Optional[MarketSnapshot] = None,
        now: Optional[float] = None,
    ) -> List[AllocationPlan]:
        """Route every queued inflow once, in arrival order."""
        return [self.route(inflow, market=market, now=now) for inflow in self._ledger.pending_inflows()]

    # -- POL ---------------------------------------------------------------

    def record_contribution(
        self,
        lp_units: int,
        base_amount: int,
        pair_amount: int,
        pool_total_units: int,
    ) -> POLPosition:
        """The only POL mutation exposed to the buyback engine."""
        position = self._ledger.record_pol_contribution(lp_units, base_amount, pair_amount, pool_total_units)
        LOG.info(
            "[router] pol contribution lp=%s base=%s pair=%s ownership_bps=%s",
            lp_units,
            base_amount,
            pair_amount,
            position.current_ownership_bps,
        )
        return position

    def refresh_pol(self, adapter: LiquidityAdapter, *, timeout_s: float) -> POLPosition:
        """Refresh ownership share from the live pool; raises ExternalFailure on a bad reading."""
        result = call_with_timeout("position_share", adapter.position_share, timeout_s=timeout_s)
        try:
            lp_units, pool_total = result
        except (TypeError, ValueError):
            raise ExternalFailure("position_share", f"malformed reading {result!r}") from None
        for value in (lp_units, pool_total):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ExternalFailure("position_share", f"malformed reading {result!r}")
        tracked = self._ledger.snapshot().pol.lp_units
        if lp_units != tracked:
            LOG.warning("[router] pol lp_units drift tracked=%s venue=%s", tracked, lp_units)
        return self._ledger.update_pol_ownership(pool_total)


__all__ = [
    "AllocationEntry",
    "AllocationPlan",
    "CycleUsage",
    "liquidity_needed",
    "build_allocation_plan",
    "AllocationRouter",
]
