"""
Treasury policy configuration.

Governed parameters live in ``config/treasury_policy.yaml`` (override the path
with ``TREASURY_POLICY_CONFIG``). Every section has a dataclass with the
canonical defaults and a ``load_*_config`` parser; unknown keys are ignored and
invalid values raise ValidationError.

Example::

    gates:
      runway_threshold_months: 6
      coverage_threshold: "1.2"
      price_staleness_seconds: 3600
    burn:
      healthy_burn_bps: 8000
      throttled_burn_bps: 5000
    router:
      dca_weight_bps: 5000
      buyback_weight_bps: 5000
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv

from treasury.errors import ValidationError

LOGGER = logging.getLogger("treasury.policy_config")

load_dotenv()

BPS = 10_000
WAD = 10**18
SECONDS_PER_MONTH = 30 * 24 * 3600
SECONDS_PER_WEEK = 7 * 24 * 3600

_DEFAULT_PATH = Path(os.getenv("TREASURY_POLICY_CONFIG") or "config/treasury_policy.yaml")


def _section(cfg: Optional[Mapping[str, Any]], name: str) -> Mapping[str, Any]:
    if not isinstance(cfg, Mapping):
        return {}
    block = cfg.get(name)
    return block if isinstance(block, Mapping) else {}


def _as_int(block: Mapping[str, Any], key: str, default: int, *, minimum: int = 0) -> int:
    raw = block.get(key, default)
    if isinstance(raw, bool):
        raise ValidationError(f"{key} must be an integer, got bool")
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise ValidationError(f"{key} must be an integer, got {raw!r}") from None
    if value != value.to_integral_value():
        raise ValidationError(f"{key} must be a whole number, got {raw!r}")
    result = int(value)
    if result < minimum:
        raise ValidationError(f"{key} must be >= {minimum}, got {result}")
    return result


def _as_bps(block: Mapping[str, Any], key: str, default: int) -> int:
    value = _as_int(block, key, default)
    if value > BPS:
        raise ValidationError(f"{key} must be within [0, {BPS}] bps, got {value}")
    return value


def _as_seconds(block: Mapping[str, Any], key: str, default: float) -> float:
    raw = block.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number of seconds, got {raw!r}") from None
    if not math.isfinite(value) or value < 0:
        raise ValidationError(f"{key} must be a finite non-negative number, got {raw!r}")
    return value


def ratio_to_wad(value: Any) -> int:
    """Convert a decimal ratio ("1.2", 1.2, 6/5 as str) to a WAD-scaled int without float math."""
    if isinstance(value, bool):
        raise ValidationError("ratio must be numeric")
    try:
        dec = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"invalid ratio: {value!r}") from None
    if not dec.is_finite() or dec < 0:
        raise ValidationError(f"ratio must be finite and non-negative: {value!r}")
    return int(dec * WAD)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GateConfig:
    """Solvency gate thresholds."""

    runway_threshold_months: int = 6
    coverage_threshold_wad: int = 1_200_000_000_000_000_000
    price_staleness_seconds: float = 3600.0


@dataclass(frozen=True)
class BurnPolicyConfig:
    """Single source of truth for the burn/retain split (decision D1: 80/20 healthy, 50/50 throttled)."""

    healthy_burn_bps: int = 8000
    throttled_burn_bps: int = 5000


@dataclass(frozen=True)
class RouterConfig:
    primary_asset: str = "USDC"
    supported_assets: Tuple[str, ...] = ("USDC", "USD1", "EURC")
    liquidity_cycle_cap: int = 5_000
    min_pool_depth: int = 50_000
    dca_weight_bps: int = 5000
    buyback_weight_bps: int = 5000
    dca_cycle_cap: int = 5_000
    buyback_cycle_cap: int = 10_000
    divert_buyback_on_coverage_failure: bool = True


@dataclass(frozen=True)
class BuybackConfig:
    max_spend_per_execution: int = 10_000
    volume_participation_bps: int = 1000
    max_slippage_bps: int = 100
    min_pool_depth: int = 50_000
    min_interval_seconds: float = 3600.0


@dataclass(frozen=True)
class DcaConfig:
    period_ceiling: int = 5_000
    target_staking_bps: int = 2000
    max_rebalance_bps: int = BPS


@dataclass(frozen=True)
class NoteConfig:
    min_subscription: int = 1
    max_subscription: int = 0  # 0 = unbounded
    require_post_admission_coverage: bool = True


@dataclass(frozen=True)
class YieldConfig:
    deploy_bps: int = 5000
    min_deploy_amount: int = 1


@dataclass(frozen=True)
class CycleConfig:
    period_seconds: float = float(SECONDS_PER_WEEK)
    epoch: float = 0.0
    external_call_timeout_seconds: float = 30.0

    def period_of(self, now: float) -> int:
        """Index of the scheduling period containing ``now``."""
        return int(math.floor((float(now) - self.epoch) / self.period_seconds))


@dataclass(frozen=True)
class PolicyConfig:
    gates: GateConfig = field(default_factory=GateConfig)
    burn: BurnPolicyConfig = field(default_factory=BurnPolicyConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    buyback: BuybackConfig = field(default_factory=BuybackConfig)
    dca: DcaConfig = field(default_factory=DcaConfig)
    notes: NoteConfig = field(default_factory=NoteConfig)
    yield_: YieldConfig = field(default_factory=YieldConfig)
    cycle: CycleConfig = field(default_factory=CycleConfig)
    reserve_asset: str = "ETH"


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def load_gate_config(cfg: Optional[Mapping[str, Any]] = None) -> GateConfig:
    block = _section(cfg, "gates")
    default = GateConfig()
    threshold = block.get("coverage_threshold")
    return GateConfig(
        runway_threshold_months=_as_int(block, "runway_threshold_months", default.runway_threshold_months),
        coverage_threshold_wad=ratio_to_wad(threshold) if threshold is not None else default.coverage_threshold_wad,
        price_staleness_seconds=_as_seconds(block, "price_staleness_seconds", default.price_staleness_seconds),
    )


def load_burn_policy_config(cfg: Optional[Mapping[str, Any]] = None) -> BurnPolicyConfig:
    block = _section(cfg, "burn")
    default = BurnPolicyConfig()
    healthy = _as_bps(block, "healthy_burn_bps", default.healthy_burn_bps)
    throttled = _as_bps(block, "throttled_burn_bps", default.throttled_burn_bps)
    if throttled > healthy:
        LOGGER.warning("[policy_config] throttled_burn_bps=%s exceeds healthy_burn_bps=%s", throttled, healthy)
    return BurnPolicyConfig(healthy_burn_bps=healthy, throttled_burn_bps=throttled)


def load_router_config(cfg: Optional[Mapping[str, Any]] = None) -> RouterConfig:
    block = _section(cfg, "router")
    default = RouterConfig()
    assets_raw = block.get("supported_assets", default.supported_assets)
    if isinstance(assets_raw, str) or not hasattr(assets_raw, "__iter__"):
        raise ValidationError("router.supported_assets must be a list")
    assets = tuple(str(a).upper() for a in assets_raw if str(a).strip())
    primary = str(block.get("primary_asset", default.primary_asset)).upper()
    if not assets:
        raise ValidationError("router.supported_assets must not be empty")
    if primary not in assets:
        raise ValidationError(f"router.primary_asset {primary} not in supported_assets")
    dca_w = _as_bps(block, "dca_weight_bps", default.dca_weight_bps)
    buyback_w = _as_bps(block, "buyback_weight_bps", default.buyback_weight_bps)
    if dca_w + buyback_w > BPS:
        raise ValidationError(f"router weights exceed {BPS} bps: dca={dca_w} buyback={buyback_w}")
    return RouterConfig(
        primary_asset=primary,
        supported_assets=assets,
        liquidity_cycle_cap=_as_int(block, "liquidity_cycle_cap", default.liquidity_cycle_cap),
        min_pool_depth=_as_int(block, "min_pool_depth", default.min_pool_depth),
        dca_weight_bps=dca_w,
        buyback_weight_bps=buyback_w,
        dca_cycle_cap=_as_int(block, "dca_cycle_cap", default.dca_cycle_cap),
        buyback_cycle_cap=_as_int(block, "buyback_cycle_cap", default.buyback_cycle_cap),
        divert_buyback_on_coverage_failure=bool(
            block.get("divert_buyback_on_coverage_failure", default.divert_buyback_on_coverage_failure)
        ),
    )


def load_buyback_config(cfg: Optional[Mapping[str, Any]] = None) -> BuybackConfig:
    block = _section(cfg, "buyback")
    default = BuybackConfig()
    return BuybackConfig(
        max_spend_per_execution=_as_int(block, "max_spend_per_execution", default.max_spend_per_execution),
        volume_participation_bps=_as_bps(block, "volume_participation_bps", default.volume_participation_bps),
        max_slippage_bps=_as_bps(block, "max_slippage_bps", default.max_slippage_bps),
        min_pool_depth=_as_int(block, "min_pool_depth", default.min_pool_depth),
        min_interval_seconds=_as_seconds(block, "min_interval_seconds", default.min_interval_seconds),
    )


def load_dca_config(cfg: Optional[Mapping[str, Any]] = None) -> DcaConfig:
    block = _section(cfg, "dca")
    default = DcaConfig()
    return DcaConfig(
        period_ceiling=_as_int(block, "period_ceiling", default.period_ceiling),
        target_staking_bps=_as_bps(block, "target_staking_bps", default.target_staking_bps),
        max_rebalance_bps=_as_bps(block, "max_rebalance_bps", default.max_rebalance_bps),
    )


def load_note_config(cfg: Optional[Mapping[str, Any]] = None) -> NoteConfig:
    block = _section(cfg, "notes")
    default = NoteConfig()
    min_sub = _as_int(block, "min_subscription", default.min_subscription, minimum=1)
    max_sub = _as_int(block, "max_subscription", default.max_subscription)
    if max_sub and max_sub < min_sub:
        raise ValidationError(f"notes.max_subscription {max_sub} below min_subscription {min_sub}")
    return NoteConfig(
        min_subscription=min_sub,
        max_subscription=max_sub,
        require_post_admission_coverage=bool(
            block.get("require_post_admission_coverage", default.require_post_admission_coverage)
        ),
    )


def load_yield_config(cfg: Optional[Mapping[str, Any]] = None) -> YieldConfig:
    block = _section(cfg, "yield")
    default = YieldConfig()
    return YieldConfig(
        deploy_bps=_as_bps(block, "deploy_bps", default.deploy_bps),
        min_deploy_amount=_as_int(block, "min_deploy_amount", default.min_deploy_amount, minimum=1),
    )


def load_cycle_config(cfg: Optional[Mapping[str, Any]] = None) -> CycleConfig:
    block = _section(cfg, "cycle")
    default = CycleConfig()
    period = _as_seconds(block, "period_seconds", default.period_seconds)
    if period <= 0:
        raise ValidationError("cycle.period_seconds must be positive")
    timeout = _as_seconds(block, "external_call_timeout_seconds", default.external_call_timeout_seconds)
    if timeout <= 0:
        raise ValidationError("cycle.external_call_timeout_seconds must be positive")
    return CycleConfig(
        period_seconds=period,
        epoch=_as_seconds(block, "epoch", default.epoch),
        external_call_timeout_seconds=timeout,
    )


def parse_policy_config(cfg: Optional[Mapping[str, Any]] = None) -> PolicyConfig:
    """Build a PolicyConfig from an already-loaded mapping (None -> defaults)."""
    raw = cfg if isinstance(cfg, Mapping) else {}
    return PolicyConfig(
        gates=load_gate_config(raw),
        burn=load_burn_policy_config(raw),
        router=load_router_config(raw),
        buyback=load_buyback_config(raw),
        dca=load_dca_config(raw),
        notes=load_note_config(raw),
        yield_=load_yield_config(raw),
        cycle=load_cycle_config(raw),
        reserve_asset=str(raw.get("reserve_asset", "ETH")).upper(),
    )


def read_policy_file(path: Path | str | None = None) -> Dict[str, Any]:
    """Read the YAML policy file; a missing file yields {} (all defaults)."""
    cfg_path = Path(path) if path is not None else _DEFAULT_PATH
    if not cfg_path.exists():
        LOGGER.info("[policy_config] %s not found; using defaults", cfg_path)
        return {}
    try:
        with cfg_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"cannot parse {cfg_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError(f"{cfg_path} must contain a mapping at top level")
    return data


@lru_cache(maxsize=4)
def load_policy_config(path: Path | str | None = None) -> PolicyConfig:
    """Load and validate the policy file once per process (per path)."""
    return parse_policy_config(read_policy_file(path))


__all__ = [
    "BPS",
    "WAD",
    "SECONDS_PER_MONTH",
    "SECONDS_PER_WEEK",
    "GateConfig",
    "BurnPolicyConfig",
    "RouterConfig",
    "BuybackConfig",
    "DcaConfig",
    "NoteConfig",
    "YieldConfig",
    "CycleConfig",
    "PolicyConfig",
    "ratio_to_wad",
    "load_gate_config",
    "load_burn_policy_config",
    "load_router_config",
    "load_buyback_config",
    "load_dca_config",
    "load_note_config",
    "load_yield_config",
    "load_cycle_config",
    "parse_policy_config",
    "read_policy_file",
    "load_policy_config",
]
