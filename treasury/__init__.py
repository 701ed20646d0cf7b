"""
Treasury Policy Engine

Routes protocol revenue across runway buffer, protocol-owned liquidity,
buybacks and reserve-asset accumulation, gated by runway and note coverage.

Components:
    ledger.py        - Single owner of TreasuryState (transactions, rollback, halt)
    gates.py         - Runway / coverage evaluation + gate flip audit
    burn_policy.py   - Gate state -> burn share of bought-back tokens
    router.py        - Priority allocation of each inflow; owns the POL position
    buyback.py       - Bounded buyback execution, burn / pair / reserve split
    dca.py           - Capped reserve-asset accumulation + staking rebalance
    notes.py         - Fixed-term note tranches and subscription admission
    orchestrator.py  - Per-period step sequencing with a completion journal
    report.py        - Status surface (pandas rollups of execution history)

Canonical State Surfaces:
    state/treasury_ledger.json         - Ledger snapshot (save_ledger_state)
    logs/treasury/events.jsonl         - Telemetry events
    logs/treasury/gate_snapshots.jsonl - Gate evaluation audit trail

Amounts are integer base units; ratios are basis points (BPS) or WAD fixed point.
"""
from treasury.buyback import BuybackEngine, BuybackResult
from treasury.dca import DcaEngine, DcaResult
from treasury.errors import ExternalFailure, GateBlocked, InvariantViolation, TreasuryError, ValidationError
from treasury.gates import GateMonitor, SafetyGateStatus, evaluate_gates
from treasury.ledger import Ledger, TreasuryState, load_ledger_state, save_ledger_state
from treasury.notes import NoteIssuanceGate
from treasury.orchestrator import CycleOrchestrator, CycleReport
from treasury.policy_config import PolicyConfig, load_policy_config
from treasury.router import AllocationPlan, AllocationRouter

__all__ = [
    "AllocationPlan",
    "AllocationRouter",
    "BuybackEngine",
    "BuybackResult",
    "CycleOrchestrator",
    "CycleReport",
    "DcaEngine",
    "DcaResult",
    "ExternalFailure",
    "GateBlocked",
    "GateMonitor",
    "InvariantViolation",
    "Ledger",
    "NoteIssuanceGate",
    "PolicyConfig",
    "SafetyGateStatus",
    "TreasuryError",
    "TreasuryState",
    "ValidationError",
    "evaluate_gates",
    "load_ledger_state",
    "load_policy_config",
    "save_ledger_state",
]
