"""
Note Issuance Gate

Fixed-term, fixed-rate tranches admitted against buffer-currency deposits.

Per-tranche state machine:

    active -> paused -> active      (governance, or the coverage gate)
    active -> matured -> closed     (time, then governance; closed is terminal)

A subscription is evaluated and applied inside one ledger transaction so two
concurrent requests can never both fit under the same cap headroom, and the
coverage gate is re-evaluated per request against the live snapshot.
"""
from __future__ import annotations

import copy
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional

from treasury.errors import (
    REASON_ABOVE_MAX,
    REASON_BELOW_MIN,
    REASON_COVERAGE,
    REASON_POST_ADMISSION_COVERAGE,
    REASON_PRICE_STALE,
    REASON_TRANCHE_CAP,
    REASON_TRANCHE_INACTIVE,
    REASON_TRANCHE_NOT_LAUNCHED,
    GateBlocked,
    ValidationError,
)
from treasury.events import TelemetrySink, emit_event
from treasury.gates import coverage_passes, evaluate_gates
from treasury.ledger import Ledger, require_amount
from treasury.policy_config import BPS, SECONDS_PER_MONTH, PolicyConfig

LOG = logging.getLogger("treasury.notes")


class TrancheStatus:
    ACTIVE = "active"
    PAUSED = "paused"
    MATURED = "matured"
    CLOSED = "closed"

    ALL = (ACTIVE, PAUSED, MATURED, CLOSED)


@dataclass
class NoteTranche:
    tranche_id: str
    cap: int
    apr_bps: int
    term_months: int
    launch_time: float
    maturity_time: float
    issued_principal: int = 0
    min_subscription: int = 0
    max_subscription: int = 0  # 0: no per-tranche ceiling
    asset: Optional[str] = None
    status: str = TrancheStatus.ACTIVE
    paused_by_gate: bool = False

    @property
    def remaining_capacity(self) -> int:
        return max(0, self.cap - self.issued_principal)

    @property
    def utilization_bps(self) -> int:
        return self.issued_principal * BPS // self.cap if self.cap else 0


@dataclass
class NoteClaim:
    """Holder's claim on principal plus coupon. Transfer enforcement lives outside the core."""

    claim_id: str
    tranche_id: str
    holder: str
    principal: int
    apr_bps: int
    issued_at: float
    maturity_time: float
    transferable: bool = False

    @property
    def monthly_coupon(self) -> int:
        return self.principal * self.apr_bps // BPS // 12


@dataclass
class NoteAdmission:
    admitted: bool
    claim: Optional[NoteClaim] = None
    blocked: Optional[GateBlocked] = None

    @property
    def reason(self) -> Optional[str]:
        return self.blocked.reason if self.blocked is not None else None


class NoteIssuanceGate:
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
        self._tranches: Dict[str, NoteTranche] = {}
        self._claims: List[NoteClaim] = []

    # -- accessors ---------------------------------------------------------

    def tranche(self, tranche_id: str) -> NoteTranche:
        return copy.copy(self._get(tranche_id))

    def tranches(self) -> List[NoteTranche]:
        return [copy.copy(t) for t in list(self._tranches.values())]

    def claims(self, holder: Optional[str] = None) -> List[NoteClaim]:
        return [copy.copy(c) for c in list(self._claims) if holder is None or c.holder == holder]

    def _get(self, tranche_id: str) -> NoteTranche:
        tranche = self._tranches.get(tranche_id)
        if tranche is None:
            raise ValidationError(f"unknown tranche {tranche_id!r}")
        return tranche

    # -- governance --------------------------------------------------------

    def create_tranche(
        self,
        tranche_id: str,
        *,
        cap: int,
        apr_bps: int,
        term_months: int,
        launch_time: float,
        min_subscription: int = 0,
        max_subscription: int = 0,
        asset: Optional[str] = None,
    ) -> NoteTranche:
        if not tranche_id:
            raise ValidationError("tranche_id is required")
        require_amount(cap, "cap")
        require_amount(apr_bps, "apr_bps")
        require_amount(term_months, "term_months")
        require_amount(min_subscription, "min_subscription")
        require_amount(max_subscription, "max_subscription")
        if cap == 0:
            raise ValidationError("tranche cap must be positive")
        if term_months == 0:
            raise ValidationError("term_months must be positive")
        if apr_bps > BPS:
            raise ValidationError(f"apr_bps must be <= {BPS}")
        if max_subscription and max_subscription < min_subscription:
            raise ValidationError("max_subscription below min_subscription")
        if asset is not None and asset.upper() not in self._ledger.supported_assets:
            raise ValidationError(f"unsupported asset: {asset}")
        launch = float(launch_time)
        tranche = NoteTranche(
            tranche_id=tranche_id,
            cap=cap,
            apr_bps=apr_bps,
            term_months=term_months,
            launch_time=launch,
            maturity_time=launch + term_months * SECONDS_PER_MONTH,
            min_subscription=min_subscription,
            max_subscription=max_subscription,
            asset=asset.upper() if asset else None,
        )
        with self._ledger.transaction():
            if tranche_id in self._tranches:
                raise ValidationError(f"tranche {tranche_id!r} already exists")
            self._tranches[tranche_id] = tranche
        LOG.info(
            "[notes] tranche created id=%s cap=%s apr_bps=%s term_months=%s",
            tranche_id,
            cap,
            apr_bps,
            term_months,
        )
        return copy.copy(tranche)

    def pause(self, tranche_id: str) -> NoteTranche:
        with self._ledger.transaction():
            tranche = self._get(tranche_id)
            if tranche.status == TrancheStatus.ACTIVE:
                self._transition(tranche, TrancheStatus.PAUSED)
            elif tranche.status != TrancheStatus.PAUSED:
                raise ValidationError(f"cannot pause tranche in state {tranche.status}")
            tranche.paused_by_gate = False
            return copy.copy(tranche)

    def resume(self, tranche_id: str) -> NoteTranche:
        with self._ledger.transaction():
            tranche = self._get(tranche_id)
            if tranche.status == TrancheStatus.PAUSED:
                tranche.paused_by_gate = False
                self._transition(tranche, TrancheStatus.ACTIVE)
            elif tranche.status != TrancheStatus.ACTIVE:
                raise ValidationError(f"cannot resume tranche in state {tranche.status}")
            return copy.copy(tranche)

    def close(self, tranche_id: str) -> NoteTranche:
        with self._ledger.transaction():
            tranche = self._get(tranche_id)
            if tranche.status != TrancheStatus.MATURED:
                raise ValidationError(f"only matured tranches close, {tranche_id} is {tranche.status}")
            self._transition(tranche, TrancheStatus.CLOSED)
            return copy.copy(tranche)

    # -- time and gate control ---------------------------------------------

    def mature_due(self, now: Optional[float] = None) -> List[str]:
        ts = float(now if now is not None else time.time())
        with self._ledger.transaction():
            return self._mature_due(ts)

    def _mature_due(self, ts: float) -> List[str]:
        matured: List[str] = []
        for tranche in self._tranches.values():
            if tranche.status in (TrancheStatus.ACTIVE, TrancheStatus.PAUSED) and ts >= tranche.maturity_time:
                tranche.paused_by_gate = False
                self._transition(tranche, TrancheStatus.MATURED)
                matured.append(tranche.tranche_id)
        return matured

    def sync_with_gates(self, now: Optional[float] = None) -> List[str]:
        """Pause issuance on a coverage breach; resume only what the gate itself paused."""
        ts = float(now if now is not None else time.time())
        changed: List[str] = []
        with self._ledger.transaction():
            status = evaluate_gates(self._ledger.snapshot(), self._config.gates, ts)
            for tranche in self._tranches.values():
                if not status.coverage_ok and tranche.status == TrancheStatus.ACTIVE:
                    tranche.paused_by_gate = True
                    self._transition(tranche, TrancheStatus.PAUSED)
                    changed.append(tranche.tranche_id)
                elif status.coverage_ok and tranche.status == TrancheStatus.PAUSED and tranche.paused_by_gate:
                    tranche.paused_by_gate = False
                    self._transition(tranche, TrancheStatus.ACTIVE)
                    changed.append(tranche.tranche_id)
        return changed

    def _transition(self, tranche: NoteTranche, new_status: str) -> None:
        previous = tranche.status
        tranche.status = new_status
        LOG.info("[notes] tranche %s %s -> %s", tranche.tranche_id, previous, new_status)
        emit_event(
            self._telemetry,
            "tranche_state_changed",
            {
                "tranche_id": tranche.tranche_id,
                "previous": previous,
                "current": new_status,
                "paused_by_gate": tranche.paused_by_gate,
            },
        )

    # -- subscriptions -----------------------------------------------------

    def _bounds(self, tranche: NoteTranche) -> tuple[int, int]:
        cfg = self._config.notes
        low = max(tranche.min_subscription, cfg.min_subscription)
        ceilings = [c for c in (tranche.max_subscription, cfg.max_subscription) if c]
        return low, min(ceilings) if ceilings else 0

    def _check(self, tranche: NoteTranche, amount: int, ts: float) -> Optional[GateBlocked]:
        if tranche.status != TrancheStatus.ACTIVE:
            return GateBlocked(REASON_TRANCHE_INACTIVE, {"status": tranche.status})
        if ts < tranche.launch_time:
            return GateBlocked(REASON_TRANCHE_NOT_LAUNCHED, {"launch_time": tranche.launch_time})
        low, high = self._bounds(tranche)
        if amount < low:
            return GateBlocked(REASON_BELOW_MIN, {"amount": amount, "minimum": low})
        if high and amount > high:
            return GateBlocked(REASON_ABOVE_MAX, {"amount": amount, "maximum": high})
        if tranche.issued_principal + amount > tranche.cap:
            return GateBlocked(
                REASON_TRANCHE_CAP,
                {"amount": amount, "issued": tranche.issued_principal, "cap": tranche.cap},
            )
        state = self._ledger.snapshot()
        status = evaluate_gates(state, self._config.gates, ts)
        if not status.coverage_ok:
            if not status.price_fresh:
                return GateBlocked(REASON_PRICE_STALE, {"price_as_of": state.price_as_of})
            return GateBlocked(REASON_COVERAGE, {"coverage_ratio_wad": status.coverage_ratio_wad})
        if self._config.notes.require_post_admission_coverage:
            # reserve value cannot be trusted on a stale price
            if not status.price_fresh and state.accumulation.total > 0:
                return GateBlocked(REASON_PRICE_STALE, {"price_as_of": state.price_as_of})
            num = status.coverage_num + amount
            den = status.coverage_den + amount
            if not coverage_passes(num, den, self._config.gates.coverage_threshold_wad):
                return GateBlocked(
                    REASON_POST_ADMISSION_COVERAGE,
                    {"coverage_num": num, "coverage_den": den},
                )
        return None

    def subscribe(
        self,
        tranche_id: str,
        amount: int,
        holder: str,
        *,
        now: Optional[float] = None,
    ) -> NoteAdmission:
        require_amount(amount)
        if not holder:
            raise ValidationError("holder is required")
        ts = float(now if now is not None else time.time())
        with self._ledger.transaction():
            tranche = self._get(tranche_id)
            self._mature_due(ts)
            blocked = self._check(tranche, amount, ts)
            if blocked is not None:
                LOG.info("[notes] rejected tranche=%s amount=%s reason=%s", tranche_id, amount, blocked.reason)
                emit_event(
                    self._telemetry,
                    "note_rejected",
                    {"tranche_id": tranche_id, "amount": amount, "reason": blocked.reason, "detail": blocked.detail},
                )
                return NoteAdmission(False, blocked=blocked)

            self._ledger.add_note_principal(amount)
            self._ledger.credit_buffer(amount, tranche.asset)
            claim = NoteClaim(
                claim_id=uuid.uuid4().hex,
                tranche_id=tranche_id,
                holder=holder,
                principal=amount,
                apr_bps=tranche.apr_bps,
                issued_at=ts,
                maturity_time=tranche.maturity_time,
            )
            tranche.issued_principal += amount
            self._claims.append(claim)

        LOG.info(
            "[notes] admitted tranche=%s amount=%s holder=%s issued=%s/%s",
            tranche_id,
            amount,
            holder,
            tranche.issued_principal,
            tranche.cap,
        )
        emit_event(
            self._telemetry,
            "note_admitted",
            {"tranche_id": tranche_id, "amount": amount, "claim_id": claim.claim_id, "holder": holder},
        )
        return NoteAdmission(True, claim=copy.copy(claim))

    # -- obligations -------------------------------------------------------

    def monthly_coupon_obligation(self, now: Optional[float] = None) -> int:
        """Coupon run-rate over claims not yet past maturity. Paid regardless of gate state."""
        return sum(
            claim.monthly_coupon
            for claim in list(self._claims)
            if now is None or claim.maturity_time > float(now)
        )

    # -- persistence -------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tranches": [asdict(t) for t in list(self._tranches.values())],
            "claims": [asdict(c) for c in list(self._claims)],
        }

    def load_dict(self, data: Mapping[str, Any]) -> None:
        tranches: Dict[str, NoteTranche] = {}
        for row in data.get("tranches") or []:
            tranche = NoteTranche(**row)
            if tranche.status not in TrancheStatus.ALL:
                raise ValidationError(f"tranche {tranche.tranche_id} has unknown status {tranche.status!r}")
            tranches[tranche.tranche_id] = tranche
        self._tranches = tranches
        self._claims = [NoteClaim(**row) for row in data.get("claims") or []]

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        ledger: Ledger,
        config: Optional[PolicyConfig] = None,
        *,
        telemetry: Optional[TelemetrySink] = None,
    ) -> "NoteIssuanceGate":
        gate = cls(ledger, config, telemetry=telemetry)
        gate.load_dict(data)
        return gate


__all__ = [
    "TrancheStatus",
    "NoteTranche",
    "NoteClaim",
    "NoteAdmission",
    "NoteIssuanceGate",
]
