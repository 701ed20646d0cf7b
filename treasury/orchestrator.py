"""
Cycle Orchestrator

Pure sequencer over the policy components. One invocation per trigger:

    refresh reference price + market snapshot   (every invocation)
    route pending inflows                        (every invocation, idempotent per inflow id)
    runway -> liquidity -> buyback -> dca -> yield

Each step is journaled under the period index once it completes, and a
journaled step is skipped on later invocations of the same period. Blocked or
failed steps stay unjournaled so the next invocation retries them. Expected
failures never abort the cycle; an InvariantViolation halts the ledger and
propagates. Missed periods are not replayed.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from treasury.adapters import (
    LiquidityAdapter,
    MarketDataSource,
    MarketSnapshot,
    PriceOracle,
    YieldVenue,
    call_with_timeout,
    fetch_market_snapshot,
    fetch_reference_price,
)
from treasury.buyback import STATUS_BLOCKED, STATUS_EXECUTED, BuybackEngine
from treasury.dca import DcaEngine
from treasury.errors import ExternalFailure, ValidationError
from treasury.events import TelemetrySink, emit_event
from treasury.gates import GateMonitor, SafetyGateStatus, evaluate_gates, required_buffer
from treasury.ledger import Ledger
from treasury.log_utils import atomic_write_json
from treasury.notes import NoteIssuanceGate
from treasury.policy_config import BPS, PolicyConfig
from treasury.router import AllocationPlan, AllocationRouter

LOG = logging.getLogger("treasury.orchestrator")

STEP_RUNWAY = "runway"
STEP_LIQUIDITY = "liquidity"
STEP_BUYBACK = "buyback"
STEP_DCA = "dca"
STEP_YIELD = "yield"
STEPS = (STEP_RUNWAY, STEP_LIQUIDITY, STEP_BUYBACK, STEP_DCA, STEP_YIELD)

_HARVEST_MARK = "yield:harvest"

OUTCOME_COMPLETED = "completed"
OUTCOME_SKIPPED = "skipped"  # already journaled this period
OUTCOME_BLOCKED = "blocked"
OUTCOME_FAILED = "failed"

JOURNAL_KEEP_PERIODS = 16


@dataclass
class StepOutcome:
    step: str
    outcome: str
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CycleReport:
    period: int
    started_at: float
    price_refreshed: bool = False
    market: Optional[MarketSnapshot] = None
    gate_status: Optional[SafetyGateStatus] = None
    gate_flips: List[Tuple[str, bool, bool]] = field(default_factory=list)
    plans: List[AllocationPlan] = field(default_factory=list)
    steps: List[StepOutcome] = field(default_factory=list)

    def outcome_of(self, step: str) -> Optional[str]:
        for row in self.steps:
            if row.step == step:
                return row.outcome
        return None

    @property
    def completed(self) -> List[str]:
        return [row.step for row in self.steps if row.outcome == OUTCOME_COMPLETED]


class CycleJournal:
    """Completed steps per period index, optionally persisted as JSON."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path else None
        self._done: Dict[int, Set[str]] = {}
        if self._path is not None and self._path.exists():
            self._load(self._path)

    def _load(self, path: Path) -> None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ValidationError(f"cannot read cycle journal {path}: {exc}") from exc
        periods = payload.get("periods") if isinstance(payload, dict) else None
        if not isinstance(periods, dict):
            raise ValidationError(f"{path} is not a cycle journal")
        self._done = {int(k): set(v) for k, v in periods.items()}

    def is_done(self, period: int, step: str) -> bool:
        return step in self._done.get(period, set())

    def completed(self, period: int) -> List[str]:
        return sorted(self._done.get(period, set()))

    def mark_done(self, period: int, step: str) -> None:
        self._done.setdefault(period, set()).add(step)
        for old in sorted(self._done)[:-JOURNAL_KEEP_PERIODS]:
            del self._done[old]
        if self._path is not None:
            atomic_write_json(
                self._path,
                {"periods": {str(p): sorted(s) for p, s in self._done.items()}, "ts": time.time()},
            )


class CycleOrchestrator:
    def __init__(
        self,
        ledger: Ledger,
        router: AllocationRouter,
        buyback: BuybackEngine,
        dca: DcaEngine,
        notes: Optional[NoteIssuanceGate] = None,
        config: Optional[PolicyConfig] = None,
        *,
        oracle: Optional[PriceOracle] = None,
        market_data: Optional[MarketDataSource] = None,
        yield_venue: Optional[YieldVenue] = None,
        liquidity_adapter: Optional[LiquidityAdapter] = None,
        journal_path: Path | str | None = None,
        telemetry: Optional[TelemetrySink] = None,
        gate_monitor: Optional[GateMonitor] = None,
    ) -> None:
        self._ledger = ledger
        self._router = router
        self._buyback = buyback
        self._dca = dca
        self._notes = notes
        self._config = config or PolicyConfig()
        self._oracle = oracle
        self._market_data = market_data
        self._yield = yield_venue
        self._liquidity = liquidity_adapter
        self._telemetry = telemetry
        self._monitor = gate_monitor or GateMonitor(telemetry=telemetry)
        self.journal = CycleJournal(journal_path)
        self._market: Optional[MarketSnapshot] = None

    @property
    def _timeout(self) -> float:
        return self._config.cycle.external_call_timeout_seconds

    # -- entry points ------------------------------------------------------

    def process_inflows(self, now: Optional[float] = None) -> List[AllocationPlan]:
        """Inflow-triggered entry: route whatever is queued against the last market view."""
        ts = float(now if now is not None else time.time())
        return self._router.process_pending(market=self._market, now=ts)

    def run_cycle(self, now: Optional[float] = None) -> CycleReport:
        ts = float(now if now is not None else time.time())
        period = self._config.cycle.period_of(ts)
        report = CycleReport(period=period, started_at=ts)
        report.price_refreshed = self._refresh_price(ts)
        report.market = self._refresh_market()
        report.plans = self.process_inflows(ts)

        steps: Dict[str, Callable[[float, int], StepOutcome]] = {
            STEP_RUNWAY: self._step_runway,
            STEP_LIQUIDITY: self._step_liquidity,
            STEP_BUYBACK: self._step_buyback,
            STEP_DCA: self._step_dca,
            STEP_YIELD: self._step_yield,
        }
        for name in STEPS:
            if self.journal.is_done(period, name):
                report.steps.append(StepOutcome(name, OUTCOME_SKIPPED))
                continue
            try:
                outcome = steps[name](ts, period)
            except (ExternalFailure, ValidationError) as exc:
                LOG.warning("[orchestrator] step %s failed period=%s err=%s", name, period, exc)
                emit_event(self._telemetry, "step_failed", {"period": period, "step": name, "error": str(exc)})
                outcome = StepOutcome(name, OUTCOME_FAILED, {"error": str(exc)})
            if outcome.outcome == OUTCOME_COMPLETED:
                self.journal.mark_done(period, name)
            report.steps.append(outcome)

        report.gate_status = evaluate_gates(self._ledger.snapshot(), self._config.gates, ts)
        report.gate_flips = self._monitor.observe(report.gate_status)
        LOG.info(
            "[orchestrator] cycle period=%s steps=%s",
            period,
            {row.step: row.outcome for row in report.steps},
        )
        return report

    # -- refresh -----------------------------------------------------------

    def _refresh_price(self, ts: float) -> bool:
        if self._oracle is None:
            return False
        asset = self._config.reserve_asset
        try:
            price, as_of = fetch_reference_price(
                self._oracle,
                asset,
                max_age_seconds=self._config.gates.price_staleness_seconds,
                now=ts,
                timeout_s=self._timeout,
            )
            self._ledger.set_reference_price(price, as_of)
        except (ExternalFailure, ValidationError) as exc:
            LOG.warning("[orchestrator] price refresh failed asset=%s err=%s", asset, exc)
            emit_event(self._telemetry, "price_refresh_failed", {"asset": asset, "error": str(exc)})
            return False
        return True

    def _refresh_market(self) -> Optional[MarketSnapshot]:
        if self._market_data is None:
            return self._market
        try:
            self._market = fetch_market_snapshot(self._market_data, timeout_s=self._timeout)
        except ExternalFailure as exc:
            LOG.warning("[orchestrator] market snapshot failed err=%s", exc)
            emit_event(self._telemetry, "market_refresh_failed", {"operation": exc.operation, "error": exc.message})
            self._market = None
        return self._market

    # -- steps -------------------------------------------------------------

    def _step_runway(self, ts: float, period: int) -> StepOutcome:
        status = evaluate_gates(self._ledger.snapshot(), self._config.gates, ts)
        flips = self._monitor.observe(status)
        detail: Dict[str, Any] = {"gates": status.to_dict(), "flips": flips}
        if self._notes is not None:
            detail["matured"] = self._notes.mature_due(ts)
            detail["tranches_changed"] = self._notes.sync_with_gates(ts)
        return StepOutcome(STEP_RUNWAY, OUTCOME_COMPLETED, detail)

    def _step_liquidity(self, ts: float, period: int) -> StepOutcome:
        if self._liquidity is None:
            return StepOutcome(STEP_LIQUIDITY, OUTCOME_COMPLETED, {"note": "no liquidity adapter"})
        position = self._router.refresh_pol(self._liquidity, timeout_s=self._timeout)
        return StepOutcome(
            STEP_LIQUIDITY,
            OUTCOME_COMPLETED,
            {
                "ownership_bps": position.current_ownership_bps,
                "target_bps": position.target_ownership_bps,
            },
        )

    def _step_buyback(self, ts: float, period: int) -> StepOutcome:
        result = self._buyback.execute(market=self._market, now=ts)
        if result.status == STATUS_EXECUTED and result.execution is not None:
            return StepOutcome(STEP_BUYBACK, OUTCOME_COMPLETED, {"spent": result.execution.spent})
        if result.status == STATUS_BLOCKED:
            return StepOutcome(STEP_BUYBACK, OUTCOME_BLOCKED, {"reason": result.reason})
        if result.error:
            emit_event(self._telemetry, "step_failed", {"period": period, "step": STEP_BUYBACK, "error": result.error})
            return StepOutcome(STEP_BUYBACK, OUTCOME_FAILED, {"error": result.error})
        return StepOutcome(STEP_BUYBACK, OUTCOME_BLOCKED, {"reason": result.status})

    def _step_dca(self, ts: float, period: int) -> StepOutcome:
        result = self._dca.execute(now=ts)
        if result.status == "executed" and result.execution is not None:
            return StepOutcome(
                STEP_DCA,
                OUTCOME_COMPLETED,
                {
                    "spent": result.execution.spent,
                    "acquired": result.execution.acquired,
                    "rebalance": result.rebalance.action if result.rebalance else None,
                },
            )
        return StepOutcome(STEP_DCA, OUTCOME_BLOCKED, {"reason": result.reason})

    def _step_yield(self, ts: float, period: int) -> StepOutcome:
        venue = self._yield
        if venue is None:
            return StepOutcome(STEP_YIELD, OUTCOME_COMPLETED, {"note": "no yield venue"})
        detail: Dict[str, Any] = {}
        if not self.journal.is_done(period, _HARVEST_MARK):
            detail["harvested"] = self._harvest(venue, ts, period)
            self.journal.mark_done(period, _HARVEST_MARK)
        detail["withdrawn"] = self._restore_runway_floor(venue)
        if not detail["withdrawn"]:
            detail["deployed"] = self._deploy_surplus(venue)
        return StepOutcome(STEP_YIELD, OUTCOME_COMPLETED, detail)

    def _harvest(self, venue: YieldVenue, ts: float, period: int) -> int:
        amount = call_with_timeout("harvest", venue.harvest, timeout_s=self._timeout)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ExternalFailure("harvest", f"malformed harvest amount {amount!r}")
        if amount:
            inflow = self._ledger.enqueue_inflow(
                amount,
                asset=self._ledger.primary_asset,
                source="yield_harvest",
                inflow_id=f"harvest:{period}",
                now=ts,
            )
            if inflow is not None:
                self._router.route(inflow, market=self._market, now=ts)
            emit_event(self._telemetry, "yield_action", {"action": "harvest", "amount": amount})
        return amount

    def _restore_runway_floor(self, venue: YieldVenue) -> int:
        """Pull principal back from the venue until liquid buffer covers the runway requirement."""
        primary = self._ledger.primary_asset
        withdrawn = 0
        while True:
            # one transaction per confirmed withdrawal
            with self._ledger.transaction():
                state = self._ledger.snapshot()
                shortfall = required_buffer(state, self._config.gates) - state.liquid_buffer_total()
                deployed = [primary] + sorted(a for a in state.yield_deployed if a != primary)
                asset = next((a for a in deployed if state.yield_deployed.get(a, 0) > 0), None)
                if shortfall <= 0 or asset is None:
                    return withdrawn
                take = min(state.yield_deployed[asset], shortfall)
                call_with_timeout("withdraw", venue.withdraw, asset, take, timeout_s=self._timeout)
                self._ledger.withdraw_from_yield(take, asset)
            withdrawn += take
            LOG.info("[orchestrator] yield withdraw asset=%s amount=%s", asset, take)
            emit_event(self._telemetry, "yield_action", {"action": "withdraw", "amount": take, "asset": asset})

    def _deploy_surplus(self, venue: YieldVenue) -> int:
        cfg = self._config.yield_
        with self._ledger.transaction():
            state = self._ledger.snapshot()
            excess = max(0, state.liquid_buffer_total() - required_buffer(state, self._config.gates))
            asset = self._ledger.primary_asset
            amount = min(excess * cfg.deploy_bps // BPS, state.buffer_balances.get(asset, 0))
            if amount < cfg.min_deploy_amount or amount == 0:
                return 0
            call_with_timeout("deposit", venue.deposit, asset, amount, timeout_s=self._timeout)
            self._ledger.deploy_to_yield(amount, asset)
        LOG.info("[orchestrator] yield deploy asset=%s amount=%s", asset, amount)
        emit_event(self._telemetry, "yield_action", {"action": "deploy", "amount": amount, "asset": asset})
        return amount


__all__ = [
    "STEPS",
    "STEP_RUNWAY",
    "STEP_LIQUIDITY",
    "STEP_BUYBACK",
    "STEP_DCA",
    "STEP_YIELD",
    "OUTCOME_COMPLETED",
    "OUTCOME_SKIPPED",
    "OUTCOME_BLOCKED",
    "OUTCOME_FAILED",
    "StepOutcome",
    "CycleReport",
    "CycleJournal",
    "CycleOrchestrator",
]
