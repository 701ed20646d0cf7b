"""
Safety Gate Evaluator

Derives runway and coverage from a TreasuryState snapshot:

    runway_months = buffer_total // monthly_obligation            (floor)
    coverage      = (buffer_total + reserve_value) / note_principal

Coverage is kept as an integer numerator/denominator pair and compared to the
WAD threshold by cross-multiplication, never through floats. A stale or
missing reference price fails the coverage gate closed.

Evaluation is pure: callable any number of times without touching state.
GateMonitor adds the audit side (flip events + timestamped JSONL snapshots).
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from treasury.events import TelemetrySink, emit_event
from treasury.ledger import TreasuryState
from treasury.log_utils import JsonlLogger, get_logger, log_event
from treasury.policy_config import WAD, GateConfig

LOG = logging.getLogger("treasury.gates")

DEFAULT_AUDIT_PATH = "logs/treasury/gate_snapshots.jsonl"


@dataclass(frozen=True)
class SafetyGateStatus:
    runway_months: Optional[int]  # None: no obligation, runway is maximal
    coverage_num: int
    coverage_den: int  # 0: no outstanding notes, coverage is maximal
    runway_ok: bool
    coverage_ok: bool
    price_fresh: bool
    evaluated_at: float

    @property
    def coverage_maximal(self) -> bool:
        return self.coverage_den == 0

    @property
    def coverage_ratio_wad(self) -> Optional[int]:
        if self.coverage_den == 0:
            return None
        return self.coverage_num * WAD // self.coverage_den

    @property
    def all_ok(self) -> bool:
        return self.runway_ok and self.coverage_ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runway_months": self.runway_months,
            "coverage_num": self.coverage_num,
            "coverage_den": self.coverage_den,
            "coverage_ratio_wad": self.coverage_ratio_wad,
            "coverage_maximal": self.coverage_maximal,
            "runway_ok": self.runway_ok,
            "coverage_ok": self.coverage_ok,
            "price_fresh": self.price_fresh,
            "evaluated_at": self.evaluated_at,
        }


def price_is_fresh(state: TreasuryState, cfg: GateConfig, now: float) -> bool:
    if state.reference_price <= 0 or state.price_as_of is None:
        return False
    return (float(now) - float(state.price_as_of)) <= cfg.price_staleness_seconds


def reserve_value(state: TreasuryState) -> int:
    """Reserve-asset holdings valued in buffer units at the reference price (floor)."""
    return state.accumulation.total * state.reference_price // WAD


def treasury_value(state: TreasuryState) -> int:
    return state.buffer_total() + reserve_value(state)


def required_buffer(state: TreasuryState, cfg: GateConfig) -> int:
    return cfg.runway_threshold_months * state.monthly_obligation


def buffer_deficit(state: TreasuryState, cfg: GateConfig) -> int:
    return max(0, required_buffer(state, cfg) - state.buffer_total())


def buffer_surplus(state: TreasuryState, cfg: GateConfig) -> int:
    """Liquid buffer that can leave without dropping below the runway requirement."""
    excess = max(0, state.buffer_total() - required_buffer(state, cfg))
    return min(excess, state.liquid_buffer_total())


def coverage_passes(num: int, den: int, threshold_wad: int) -> bool:
    """num/den >= threshold_wad/WAD, compared exactly."""
    if den == 0:
        return True
    return num * WAD >= threshold_wad * den


def evaluate_gates(state: TreasuryState, cfg: GateConfig, now: Optional[float] = None) -> SafetyGateStatus:
    ts = float(now if now is not None else time.time())
    buffer_total = state.buffer_total()

    if state.monthly_obligation > 0:
        runway_months: Optional[int] = buffer_total // state.monthly_obligation
        runway_ok = runway_months >= cfg.runway_threshold_months
    else:
        runway_months = None
        runway_ok = True

    fresh = price_is_fresh(state, cfg, ts)
    num = treasury_value(state)
    den = state.outstanding_note_principal
    if den == 0:
        coverage_ok = True
    else:
        coverage_ok = fresh and coverage_passes(num, den, cfg.coverage_threshold_wad)

    return SafetyGateStatus(
        runway_months=runway_months,
        coverage_num=num,
        coverage_den=den,
        runway_ok=runway_ok,
        coverage_ok=coverage_ok,
        price_fresh=fresh,
        evaluated_at=ts,
    )


class GateMonitor:
    """Tracks gate transitions across evaluations and keeps an audit trail."""

    def __init__(
        self,
        telemetry: Optional[TelemetrySink] = None,
        audit_log: Optional[JsonlLogger] = None,
        audit_path: str | Path | None = None,
    ) -> None:
        self._telemetry = telemetry
        self._audit = audit_log if audit_log is not None else (get_logger(audit_path) if audit_path else None)
        self._last: Optional[SafetyGateStatus] = None

    @property
    def last_status(self) -> Optional[SafetyGateStatus]:
        return self._last

    def observe(self, status: SafetyGateStatus) -> List[Tuple[str, bool, bool]]:
        flips: List[Tuple[str, bool, bool]] = []
        previous = self._last
        if previous is not None:
            for gate in ("runway_ok", "coverage_ok", "price_fresh"):
                before = getattr(previous, gate)
                after = getattr(status, gate)
                if before != after:
                    flips.append((gate, before, after))
        self._last = status
        for gate, before, after in flips:
            LOG.warning("[gates] %s flipped %s -> %s", gate, before, after)
            emit_event(
                self._telemetry,
                "gate_flipped",
                {"gate": gate, "previous": before, "current": after, "status": status.to_dict()},
            )
        if self._audit is not None:
            try:
                log_event(self._audit, "gate_snapshot", status.to_dict())
            except OSError as exc:
                LOG.warning("[gates] audit snapshot write failed: %s", exc)
        return flips


__all__ = [
    "SafetyGateStatus",
    "price_is_fresh",
    "reserve_value",
    "treasury_value",
    "required_buffer",
    "buffer_deficit",
    "buffer_surplus",
    "coverage_passes",
    "evaluate_gates",
    "GateMonitor",
]
