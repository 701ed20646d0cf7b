"""Burn-ratio policy: gate state -> burn share of acquired tokens (bps)."""
from __future__ import annotations

from typing import Tuple

from treasury.errors import ValidationError
from treasury.ledger import require_amount
from treasury.policy_config import BPS, BurnPolicyConfig


def burn_bps_for(runway_ok: bool, coverage_ok: bool, cfg: BurnPolicyConfig | None = None) -> int:
    cfg = cfg or BurnPolicyConfig()
    if runway_ok and coverage_ok:
        return cfg.healthy_burn_bps
    return cfg.throttled_burn_bps


def split_acquired(acquired: int, burn_bps: int) -> Tuple[int, int]:
    """Return (burn, non_burn). Burn floors; non_burn takes the remainder so both sum to acquired."""
    require_amount(acquired, "acquired")
    if isinstance(burn_bps, bool) or not isinstance(burn_bps, int) or not 0 <= burn_bps <= BPS:
        raise ValidationError(f"burn_bps must be an int within [0, {BPS}], got {burn_bps!r}")
    burn = acquired * burn_bps // BPS
    return burn, acquired - burn


__all__ = ["burn_bps_for", "split_acquired"]
