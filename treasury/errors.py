"""
Error taxonomy for the treasury policy engine.

- ValidationError    malformed input, rejected before any mutation
- ExternalFailure    venue/oracle/staking call failed or timed out (retry next cycle)
- InvariantViolation logic defect; halts further ledger mutation
- GateBlocked        NOT an exception: a normal negative result carrying a reason code
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

__all__ = [
    "TreasuryError",
    "ValidationError",
    "ExternalFailure",
    "InvariantViolation",
    "GateBlocked",
    "REASON_RUNWAY",
    "REASON_COVERAGE",
    "REASON_PRICE_STALE",
    "REASON_MARKET_UNAVAILABLE",
    "REASON_POOL_EMPTY",
    "REASON_RATE_LIMITED",
    "REASON_POOL_DEPTH",
    "REASON_VOLUME_CAP",
    "REASON_DCA_NO_BUDGET",
    "REASON_TRANCHE_INACTIVE",
    "REASON_TRANCHE_NOT_LAUNCHED",
    "REASON_TRANCHE_CAP",
    "REASON_BELOW_MIN",
    "REASON_ABOVE_MAX",
    "REASON_POST_ADMISSION_COVERAGE",
    "REASON_LEDGER_HALTED",
]

REASON_RUNWAY = "runway_below_threshold"
REASON_COVERAGE = "coverage_below_threshold"
REASON_PRICE_STALE = "reference_price_stale"
REASON_MARKET_UNAVAILABLE = "market_data_unavailable"
REASON_POOL_EMPTY = "buyback_pool_empty"
REASON_RATE_LIMITED = "rate_limited"
REASON_POOL_DEPTH = "pool_depth_below_minimum"
REASON_VOLUME_CAP = "exceeds_volume_participation"
REASON_DCA_NO_BUDGET = "dca_no_budget"
REASON_TRANCHE_INACTIVE = "tranche_not_active"
REASON_TRANCHE_NOT_LAUNCHED = "tranche_not_launched"
REASON_TRANCHE_CAP = "tranche_cap_exceeded"
REASON_BELOW_MIN = "below_min_subscription"
REASON_ABOVE_MAX = "above_max_subscription"
REASON_POST_ADMISSION_COVERAGE = "coverage_after_admission_below_threshold"
REASON_LEDGER_HALTED = "ledger_halted"


class TreasuryError(Exception):
    """Base class for treasury engine errors."""


class ValidationError(TreasuryError, ValueError):
    """Malformed input (negative amount, unsupported asset, bad config)."""


class ExternalFailure(TreasuryError):
    """An external collaborator failed or timed out."""

    def __init__(self, operation: str, message: str = "") -> None:
        self.operation = operation
        self.message = message or "external call failed"
        super().__init__(f"{operation}: {self.message}")


class InvariantViolation(TreasuryError):
    """A treasury invariant would be broken. Fatal: stop mutating state."""


@dataclass(frozen=True)
class GateBlocked:
    """Negative result for an unmet precondition; callers defer, not crash."""

    reason: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason, "detail": dict(self.detail)}
