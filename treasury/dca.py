"""
Accumulation (DCA) Engine

Converts a capped slice of buffer value into the reserve asset each period:

    budget   = min(dca_earmark + buffer_surplus, period_ceiling - spent_this_period)
    acquired = budget * WAD // reference_price

The earmark routed by the allocation router is drawn first, then liquid buffer
above the runway requirement. Staking rebalance is a separate step toward the
target staked share; when the staking provider fails the holding simply stays
liquid.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from treasury.adapters import StakingAdapter, call_with_timeout
from treasury.errors import (
    REASON_DCA_NO_BUDGET,
    REASON_PRICE_STALE,
    REASON_RUNWAY,
    ExternalFailure,
    GateBlocked,
)
from treasury.events import TelemetrySink, emit_event
from treasury.gates import buffer_surplus, evaluate_gates
from treasury.ledger import DcaExecution, Ledger, TreasuryState
from treasury.policy_config import BPS, WAD, PolicyConfig

LOG = logging.getLogger("treasury.dca")


@dataclass
class RebalanceResult:
    action: str  # "stake" | "unstake" | "none" | "failed"
    amount: int = 0
    units: int = 0
    error: Optional[str] = None


@dataclass
class DcaResult:
    status: str  # "executed" | "blocked"
    blocked: Optional[GateBlocked] = None
    execution: Optional[DcaExecution] = None
    rebalance: Optional[RebalanceResult] = None

    @property
    def reason(self) -> Optional[str]:
        return self.blocked.reason if self.blocked is not None else None


class DcaEngine:
    def __init__(
        self,
        ledger: Ledger,
        config: Optional[PolicyConfig] = None,
        *,
        staking: Optional[StakingAdapter] = None,
        telemetry: Optional[TelemetrySink] = None,
    ) -> None:
        self._ledger = ledger
        self._config = config or PolicyConfig()
        self._staking = staking
        self._telemetry = telemetry

    def spent_in_period(self, state: TreasuryState, period: int) -> int:
        cycle = self._config.cycle
        return sum(row.spent for row in state.dca_history if cycle.period_of(row.timestamp) == period)

    def execute(self, *, now: Optional[float] = None) -> DcaResult:
        ts = float(now if now is not None else time.time())
        cfg = self._config.dca
        with self._ledger.transaction():
            state = self._ledger.snapshot()
            status = evaluate_gates(state, self._config.gates, ts)
            blocked: Optional[GateBlocked] = None
            if not status.price_fresh:
                blocked = GateBlocked(REASON_PRICE_STALE, {"price_as_of": state.price_as_of})
            elif not status.runway_ok:
                blocked = GateBlocked(REASON_RUNWAY, {"runway_months": status.runway_months})
            else:
                period = self._config.cycle.period_of(ts)
                ceiling_left = max(0, cfg.period_ceiling - self.spent_in_period(state, period))
                surplus = buffer_surplus(state, self._config.gates)
                budget = min(state.dca_budget + surplus, ceiling_left)
                acquired = budget * WAD // state.reference_price
                if budget == 0 or acquired == 0:
                    blocked = GateBlocked(
                        REASON_DCA_NO_BUDGET,
                        {"earmark": state.dca_budget, "surplus": surplus, "ceiling_left": ceiling_left},
                    )
            if blocked is not None:
                LOG.info("[dca] blocked reason=%s detail=%s", blocked.reason, blocked.detail)
                emit_event(self._telemetry, "dca_blocked", blocked.to_dict())
                return DcaResult("blocked", blocked=blocked)

            from_earmark = min(state.dca_budget, budget)
            from_buffer = budget - from_earmark
            self._ledger.draw_for_accumulation(from_earmark, from_buffer)
            self._ledger.credit_accumulation(acquired)
            record = DcaExecution(
                timestamp=ts,
                spent=budget,
                acquired=acquired,
                price=state.reference_price,
                from_earmark=from_earmark,
                from_buffer=from_buffer,
            )
            self._ledger.append_dca_execution(record)

        LOG.info(
            "[dca] converted spent=%s acquired=%s price=%s earmark=%s buffer=%s",
            budget,
            acquired,
            record.price,
            from_earmark,
            from_buffer,
        )
        emit_event(
            self._telemetry,
            "dca_executed",
            {
                "spent": budget,
                "acquired": acquired,
                "price": record.price,
                "from_earmark": from_earmark,
                "from_buffer": from_buffer,
            },
        )
        rebalance = self.rebalance_staking(now=ts)
        return DcaResult("executed", execution=record, rebalance=rebalance)

    def rebalance_staking(self, *, now: Optional[float] = None) -> RebalanceResult:
        """Move accumulation toward the target staked share; failures leave it liquid."""
        if self._staking is None:
            return RebalanceResult("none")
        cfg = self._config.dca
        timeout = self._config.cycle.external_call_timeout_seconds
        with self._ledger.transaction():
            acc = self._ledger.snapshot().accumulation
            target = acc.total * cfg.target_staking_bps // BPS
            if acc.staked < target:
                amount = min(target - acc.staked, acc.liquid * cfg.max_rebalance_bps // BPS)
                if amount == 0:
                    return RebalanceResult("none")
                try:
                    units = call_with_timeout("stake", self._staking.stake, amount, timeout_s=timeout)
                    if isinstance(units, bool) or not isinstance(units, int) or units < 0:
                        raise ExternalFailure("stake", f"malformed staked units {units!r}")
                except ExternalFailure as exc:
                    return self._staking_failed(exc, amount)
                self._ledger.move_to_staked(amount)
                LOG.info("[dca] staked amount=%s units=%s", amount, units)
                return RebalanceResult("stake", amount=amount, units=units)
            if acc.staked > target:
                units = (acc.staked - target) * cfg.max_rebalance_bps // BPS
                if units == 0:
                    return RebalanceResult("none")
                try:
                    returned = call_with_timeout("unstake", self._staking.unstake, units, timeout_s=timeout)
                    if isinstance(returned, bool) or not isinstance(returned, int) or returned < 0:
                        raise ExternalFailure("unstake", f"malformed unstake amount {returned!r}")
                except ExternalFailure as exc:
                    return self._staking_failed(exc, units)
                self._ledger.move_to_liquid(units, returned)
                LOG.info("[dca] unstaked units=%s returned=%s", units, returned)
                return RebalanceResult("unstake", amount=returned, units=units)
        return RebalanceResult("none")

    def _staking_failed(self, exc: ExternalFailure, amount: int) -> RebalanceResult:
        LOG.warning("[dca] staking call failed op=%s amount=%s err=%s", exc.operation, amount, exc.message)
        emit_event(
            self._telemetry,
            "staking_failed",
            {"operation": exc.operation, "error": exc.message, "amount": amount},
        )
        return RebalanceResult("failed", amount=amount, error=str(exc))


__all__ = ["DcaResult", "RebalanceResult", "DcaEngine"]
