"""
Treasury Ledger

Single owner of TreasuryState. Policy components never touch fields directly;
they read consistent snapshots and call narrow mutation entry points that the
ledger validates and applies atomically.

The ledger:
- Serializes every mutation through one re-entrant lock
- Offers ``transaction()`` for check-then-act (gate evaluation + mutation as a unit)
- Restores the pre-transaction state when the block raises
- Latches into a halted state on InvariantViolation; every later mutation raises
- Never lets a balance go negative
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from treasury.errors import InvariantViolation, ValidationError
from treasury.log_utils import atomic_write_json
from treasury.policy_config import BPS, RouterConfig

LOG = logging.getLogger("treasury.ledger")

PURPOSE_BUFFER_TOPUP = "buffer_topup"
PURPOSE_LIQUIDITY = "liquidity"
PURPOSE_DCA = "dca"
PURPOSE_BUYBACK = "buyback"
PURPOSE_BUFFER_RESIDUAL = "buffer_residual"

_BUFFER_PURPOSES = {PURPOSE_BUFFER_TOPUP, PURPOSE_BUFFER_RESIDUAL}
MAX_PROCESSED_IDS = 10_000  # dedupe window for routed inflow ids


def require_amount(value: Any, name: str = "amount") -> int:
    """Validate a base-unit amount: a non-negative int (bool rejected)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount, got {value!r}")
    if value < 0:
        raise ValidationError(f"{name} must be non-negative, got {value}")
    return value


# ---------------------------------------------------------------------------
# State records
# ---------------------------------------------------------------------------


@dataclass
class AccumulationHoldings:
    """Reserve-asset holdings split by custody state."""

    liquid: int = 0
    staked: int = 0
    earned: int = 0

    @property
    def total(self) -> int:
        return self.liquid + self.staked + self.earned


@dataclass
class BuybackExecution:
    timestamp: float
    spent: int
    acquired: int
    burned: int
    paired: int
    reserved: int
    average_price: int  # buffer units per target token, WAD


@dataclass
class BuybackPool:
    balance: int = 0
    history: List[BuybackExecution] = field(default_factory=list)


@dataclass
class POLPosition:
    lp_units: int = 0
    contributed_base_asset: int = 0
    contributed_pair_asset: int = 0
    current_ownership_bps: int = 0
    target_ownership_bps: int = 0


@dataclass
class DcaExecution:
    timestamp: float
    spent: int
    acquired: int
    price: int
    from_earmark: int
    from_buffer: int


@dataclass
class CycleUsage:
    """Amounts already routed per capped purpose within one scheduling period."""

    period: Optional[int] = None
    liquidity: int = 0
    dca: int = 0
    buyback: int = 0


@dataclass
class Inflow:
    inflow_id: str
    amount: int
    asset: str
    source: str
    received_at: float


@dataclass
class TreasuryState:
    """The sole mutable aggregate."""

    buffer_balances: Dict[str, int] = field(default_factory=dict)
    yield_deployed: Dict[str, int] = field(default_factory=dict)
    accumulation: AccumulationHoldings = field(default_factory=AccumulationHoldings)
    outstanding_note_principal: int = 0
    monthly_obligation: int = 0
    reference_price: int = 0
    price_as_of: Optional[float] = None
    circulating_supply: int = 0
    burned_total: int = 0
    token_reserve: int = 0
    liquidity_budget: int = 0
    dca_budget: int = 0
    buyback_pool: BuybackPool = field(default_factory=BuybackPool)
    pol: POLPosition = field(default_factory=POLPosition)
    dca_history: List[DcaExecution] = field(default_factory=list)
    pending_inflows: List[Inflow] = field(default_factory=list)
    processed_inflow_ids: List[str] = field(default_factory=list)
    cycle_usage: CycleUsage = field(default_factory=CycleUsage)
    updated_at: Optional[float] = None

    def liquid_buffer_total(self) -> int:
        return sum(self.buffer_balances.values())

    def buffer_total(self) -> int:
        """Stable-value holdings regardless of custody (liquid + parked at the yield venue)."""
        return self.liquid_buffer_total() + sum(self.yield_deployed.values())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TreasuryState":
        acc = data.get("accumulation") or {}
        pool = data.get("buyback_pool") or {}
        pol = data.get("pol") or {}
        usage = data.get("cycle_usage") or {}
        return cls(
            buffer_balances={str(k).upper(): int(v) for k, v in (data.get("buffer_balances") or {}).items()},
            yield_deployed={str(k).upper(): int(v) for k, v in (data.get("yield_deployed") or {}).items()},
            accumulation=AccumulationHoldings(
                liquid=int(acc.get("liquid", 0)),
                staked=int(acc.get("staked", 0)),
                earned=int(acc.get("earned", 0)),
            ),
            outstanding_note_principal=int(data.get("outstanding_note_principal", 0)),
            monthly_obligation=int(data.get("monthly_obligation", 0)),
            reference_price=int(data.get("reference_price", 0)),
            price_as_of=data.get("price_as_of"),
            circulating_supply=int(data.get("circulating_supply", 0)),
            burned_total=int(data.get("burned_total", 0)),
            token_reserve=int(data.get("token_reserve", 0)),
            liquidity_budget=int(data.get("liquidity_budget", 0)),
            dca_budget=int(data.get("dca_budget", 0)),
            buyback_pool=BuybackPool(
                balance=int(pool.get("balance", 0)),
                history=[BuybackExecution(**row) for row in pool.get("history") or []],
            ),
            pol=POLPosition(**{k: int(v) for k, v in pol.items()}),
            dca_history=[DcaExecution(**row) for row in data.get("dca_history") or []],
            pending_inflows=[Inflow(**row) for row in data.get("pending_inflows") or []],
            processed_inflow_ids=[str(x) for x in data.get("processed_inflow_ids") or []],
            cycle_usage=CycleUsage(
                period=None if usage.get("period") is None else int(usage["period"]),
                liquidity=int(usage.get("liquidity", 0)),
                dca=int(usage.get("dca", 0)),
                buyback=int(usage.get("buyback", 0)),
            ),
            updated_at=data.get("updated_at"),
        )


def _negative_fields(state: TreasuryState) -> List[str]:
    bad: List[str] = []
    for asset, value in state.buffer_balances.items():
        if value < 0:
            bad.append(f"buffer_balances.{asset}")
    for asset, value in state.yield_deployed.items():
        if value < 0:
            bad.append(f"yield_deployed.{asset}")
    for name in ("liquid", "staked", "earned"):
        if getattr(state.accumulation, name) < 0:
            bad.append(f"accumulation.{name}")
    for name in (
        "outstanding_note_principal",
        "monthly_obligation",
        "reference_price",
        "circulating_supply",
        "burned_total",
        "token_reserve",
        "liquidity_budget",
        "dca_budget",
    ):
        if getattr(state, name) < 0:
            bad.append(name)
    if state.buyback_pool.balance < 0:
        bad.append("buyback_pool.balance")
    for name in ("liquidity", "dca", "buyback"):
        if getattr(state.cycle_usage, name) < 0:
            bad.append(f"cycle_usage.{name}")
    return bad


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class Ledger:
    """Serialized, validated access to TreasuryState."""

    def __init__(
        self,
        state: Optional[TreasuryState] = None,
        *,
        supported_assets: Sequence[str] = RouterConfig.supported_assets,
        primary_asset: str = RouterConfig.primary_asset,
    ) -> None:
        self._state = state if state is not None else TreasuryState()
        self._lock = threading.RLock()
        self._halt_reason: Optional[str] = None
        self.supported_assets = tuple(a.upper() for a in supported_assets)
        self.primary_asset = primary_asset.upper()
        if self.primary_asset not in self.supported_assets:
            raise ValidationError(f"primary asset {self.primary_asset} not supported")
        held = set(self._state.buffer_balances) | set(self._state.yield_deployed)
        foreign = sorted(held - set(self.supported_assets))
        if foreign:
            raise ValidationError(f"state holds unsupported assets: {', '.join(foreign)}")
        bad = _negative_fields(self._state)
        if bad:
            raise InvariantViolation(f"initial state has negative balances: {', '.join(bad)}")

    @classmethod
    def from_config(cls, state: Optional[TreasuryState], cfg: RouterConfig) -> "Ledger":
        """Ledger over ``state`` accepting the deployment's configured buffer assets."""
        return cls(state, supported_assets=cfg.supported_assets, primary_asset=cfg.primary_asset)

    # -- read side ---------------------------------------------------------

    def snapshot(self) -> TreasuryState:
        """Deep copy of the current state, taken under the lock."""
        with self._lock:
            return copy.deepcopy(self._state)

    @property
    def is_halted(self) -> bool:
        return self._halt_reason is not None

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    def pending_inflows(self) -> List[Inflow]:
        with self._lock:
            return [copy.copy(item) for item in self._state.pending_inflows]

    def cycle_usage(self, period: int) -> CycleUsage:
        """Capped amounts routed so far in ``period``; zero for any period not on record."""
        with self._lock:
            usage = self._state.cycle_usage
            if usage.period != period:
                return CycleUsage(period=period)
            return copy.copy(usage)

    # -- transaction boundary ----------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["Ledger"]:
        """Hold the lock for a check-then-act unit; roll back if the block raises."""
        with self._lock:
            self._ensure_live()
            before = copy.deepcopy(self._state)
            try:
                yield self
            except InvariantViolation as exc:
                self._state = before
                self._halt(str(exc))
                raise
            except BaseException:
                self._state = before
                raise

    def _ensure_live(self) -> None:
        if self._halt_reason is not None:
            raise InvariantViolation(f"ledger halted: {self._halt_reason}")

    def _halt(self, reason: str) -> None:
        if self._halt_reason is None:
            self._halt_reason = reason
            LOG.critical("[ledger] HALTED reason=%s", reason)

    def _violation(self, message: str) -> InvariantViolation:
        self._halt(message)
        return InvariantViolation(message)

    def _asset(self, asset: Optional[str]) -> str:
        name = (asset or self.primary_asset).upper()
        if name not in self.supported_assets:
            raise ValidationError(f"unsupported asset: {name}")
        return name

    def _touch(self) -> None:
        self._state.updated_at = time.time()

    # -- inflows -----------------------------------------------------------

    def enqueue_inflow(
        self,
        amount: int,
        *,
        asset: Optional[str] = None,
        source: str = "unknown",
        inflow_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Optional[Inflow]:
        """Queue an inflow for routing. Returns None when the id was already seen.

        Dedupe covers every pending inflow plus the most recent ``MAX_PROCESSED_IDS``
        routed ids; an id evicted from that window is accepted as new.
        """
        require_amount(amount)
        asset_name = self._asset(asset)
        ident = inflow_id or uuid.uuid4().hex
        with self._lock:
            self._ensure_live()
            seen = ident in self._state.processed_inflow_ids or any(
                item.inflow_id == ident for item in self._state.pending_inflows
            )
            if seen:
                LOG.debug("[ledger] duplicate inflow ignored id=%s", ident)
                return None
            inflow = Inflow(
                inflow_id=ident,
                amount=amount,
                asset=asset_name,
                source=source,
                received_at=float(now if now is not None else time.time()),
            )
            self._state.pending_inflows.append(inflow)
            self._touch()
            return copy.copy(inflow)

    def apply_allocation(
        self,
        inflow_id: str,
        entries: Sequence[Tuple[str, int]],
        *,
        period: Optional[int] = None,
    ) -> None:
        """Apply a routed plan to a pending inflow; the plan must conserve value exactly.

        With ``period`` the capped purposes are also charged to that period's usage,
        so cap bookkeeping commits or rolls back with the allocation itself.
        """
        with self._lock:
            self._ensure_live()
            inflow = next((i for i in self._state.pending_inflows if i.inflow_id == inflow_id), None)
            if inflow is None:
                raise ValidationError(f"no pending inflow {inflow_id}")
            total = 0
            for purpose, amount in entries:
                if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
                    raise self._violation(f"plan entry {purpose} has invalid amount {amount!r}")
                total += amount
            if total != inflow.amount:
                raise self._violation(
                    f"allocation plan for {inflow_id} sums to {total}, inflow was {inflow.amount}"
                )
            state = self._state
            for purpose, amount in entries:
                if purpose in _BUFFER_PURPOSES:
                    state.buffer_balances[inflow.asset] = state.buffer_balances.get(inflow.asset, 0) + amount
                elif purpose == PURPOSE_LIQUIDITY:
                    state.liquidity_budget += amount
                elif purpose == PURPOSE_DCA:
                    state.dca_budget += amount
                elif purpose == PURPOSE_BUYBACK:
                    state.buyback_pool.balance += amount
                else:
                    raise self._violation(f"unknown allocation purpose {purpose!r}")
            if period is not None:
                self._charge_usage(period, entries)
            state.pending_inflows = [i for i in state.pending_inflows if i.inflow_id != inflow_id]
            state.processed_inflow_ids.append(inflow_id)
            if len(state.processed_inflow_ids) > MAX_PROCESSED_IDS:
                state.processed_inflow_ids = state.processed_inflow_ids[-MAX_PROCESSED_IDS:]
            self._touch()

    def _charge_usage(self, period: int, entries: Sequence[Tuple[str, int]]) -> None:
        usage = self._state.cycle_usage
        if usage.period is not None and period < usage.period:
            # only the newest period is tracked; a late plan for an older one is not charged
            LOG.debug("[ledger] usage for period %s not charged, tracking %s", period, usage.period)
            return
        if usage.period != period:
            usage = self._state.cycle_usage = CycleUsage(period=period)
        for purpose, amount in entries:
            if purpose == PURPOSE_LIQUIDITY:
                usage.liquidity += amount
            elif purpose == PURPOSE_DCA:
                usage.dca += amount
            elif purpose == PURPOSE_BUYBACK:
                usage.buyback += amount

    # -- buffer ------------------------------------------------------------

    def credit_buffer(self, amount: int, asset: Optional[str] = None) -> None:
        require_amount(amount)
        name = self._asset(asset)
        with self._lock:
            self._ensure_live()
            self._state.buffer_balances[name] = self._state.buffer_balances.get(name, 0) + amount
            self._touch()

    def debit_buffer(self, amount: int, asset: Optional[str] = None) -> Dict[str, int]:
        """Debit liquid buffer. Without an asset, drain the primary asset first, then others by name."""
        require_amount(amount)
        with self._lock:
            self._ensure_live()
            balances = self._state.buffer_balances
            if asset is not None:
                name = self._asset(asset)
                if balances.get(name, 0) < amount:
                    raise self._violation(f"buffer {name} debit {amount} exceeds balance {balances.get(name, 0)}")
                balances[name] -= amount
                self._touch()
                return {name: amount}
            if sum(balances.values()) < amount:
                raise self._violation(f"buffer debit {amount} exceeds liquid buffer {sum(balances.values())}")
            order = [self.primary_asset] + sorted(a for a in balances if a != self.primary_asset)
            remaining = amount
            drawn: Dict[str, int] = {}
            for name in order:
                if remaining == 0:
                    break
                take = min(balances.get(name, 0), remaining)
                if take:
                    balances[name] -= take
                    drawn[name] = take
                    remaining -= take
            self._touch()
            return drawn

    def deploy_to_yield(self, amount: int, asset: Optional[str] = None) -> None:
        require_amount(amount)
        name = self._asset(asset)
        with self._lock:
            self._ensure_live()
            if self._state.buffer_balances.get(name, 0) < amount:
                raise self._violation(f"yield deploy {amount} {name} exceeds liquid balance")
            self._state.buffer_balances[name] -= amount
            self._state.yield_deployed[name] = self._state.yield_deployed.get(name, 0) + amount
            self._touch()

    def withdraw_from_yield(self, amount: int, asset: Optional[str] = None) -> None:
        require_amount(amount)
        name = self._asset(asset)
        with self._lock:
            self._ensure_live()
            if self._state.yield_deployed.get(name, 0) < amount:
                raise self._violation(f"yield withdraw {amount} {name} exceeds deployed principal")
            self._state.yield_deployed[name] -= amount
            self._state.buffer_balances[name] = self._state.buffer_balances.get(name, 0) + amount
            self._touch()

    def set_monthly_obligation(self, amount: int) -> None:
        require_amount(amount, "monthly_obligation")
        with self._lock:
            self._ensure_live()
            self._state.monthly_obligation = amount
            self._touch()

    def set_reference_price(self, price: int, as_of: float) -> None:
        require_amount(price, "reference_price")
        if price == 0:
            raise ValidationError("reference_price must be positive")
        with self._lock:
            self._ensure_live()
            current = self._state.price_as_of
            if current is not None and float(as_of) < current:
                raise ValidationError(f"reference price as_of {as_of} older than current {current}")
            if current == float(as_of) and self._state.reference_price == price:
                return
            self._state.reference_price = price
            self._state.price_as_of = float(as_of)
            self._touch()

    # -- buyback / POL -----------------------------------------------------

    def debit_buyback_pool(self, amount: int) -> None:
        require_amount(amount)
        with self._lock:
            self._ensure_live()
            if self._state.buyback_pool.balance < amount:
                raise self._violation(
                    f"buyback pool debit {amount} exceeds balance {self._state.buyback_pool.balance}"
                )
            self._state.buyback_pool.balance -= amount
            self._touch()

    def append_buyback_execution(self, record: BuybackExecution) -> None:
        with self._lock:
            self._ensure_live()
            if record.burned + record.paired + record.reserved != record.acquired:
                raise self._violation(f"buyback record does not conserve acquired tokens: {record}")
            self._state.buyback_pool.history.append(copy.copy(record))
            self._touch()

    def record_burn(self, amount: int) -> None:
        require_amount(amount)
        with self._lock:
            self._ensure_live()
            if self._state.circulating_supply < amount:
                raise self._violation(
                    f"burn {amount} exceeds circulating supply {self._state.circulating_supply}"
                )
            self._state.circulating_supply -= amount
            self._state.burned_total += amount
            self._touch()

    def credit_token_reserve(self, amount: int) -> None:
        require_amount(amount)
        with self._lock:
            self._ensure_live()
            self._state.token_reserve += amount
            self._touch()

    def consume_liquidity_budget(self, amount: int) -> None:
        require_amount(amount)
        with self._lock:
            self._ensure_live()
            if self._state.liquidity_budget < amount:
                raise self._violation(
                    f"liquidity budget draw {amount} exceeds reserved {self._state.liquidity_budget}"
                )
            self._state.liquidity_budget -= amount
            self._touch()

    def record_pol_contribution(
        self,
        lp_units: int,
        base_amount: int,
        pair_amount: int,
        pool_total_units: int,
    ) -> POLPosition:
        for name, value in (
            ("lp_units", lp_units),
            ("base_amount", base_amount),
            ("pair_amount", pair_amount),
            ("pool_total_units", pool_total_units),
        ):
            require_amount(value, name)
        with self._lock:
            self._ensure_live()
            pol = self._state.pol
            pol.lp_units += lp_units
            pol.contributed_base_asset += base_amount
            pol.contributed_pair_asset += pair_amount
            if pool_total_units:
                if pol.lp_units > pool_total_units:
                    raise self._violation(f"POL lp_units {pol.lp_units} exceed pool total {pool_total_units}")
                pol.current_ownership_bps = pol.lp_units * BPS // pool_total_units
            self._touch()
            return copy.copy(pol)

    def update_pol_ownership(self, pool_total_units: int) -> POLPosition:
        require_amount(pool_total_units, "pool_total_units")
        with self._lock:
            self._ensure_live()
            pol = self._state.pol
            if pool_total_units == 0:
                pol.current_ownership_bps = 0
            else:
                pol.current_ownership_bps = min(BPS, pol.lp_units * BPS // pool_total_units)
            self._touch()
            return copy.copy(pol)

    def set_pol_target(self, target_ownership_bps: int) -> None:
        require_amount(target_ownership_bps, "target_ownership_bps")
        if target_ownership_bps > BPS:
            raise ValidationError(f"target_ownership_bps must be <= {BPS}")
        with self._lock:
            self._ensure_live()
            self._state.pol.target_ownership_bps = target_ownership_bps
            self._touch()

    # -- accumulation ------------------------------------------------------

    def draw_for_accumulation(self, from_earmark: int, from_buffer: int) -> None:
        require_amount(from_earmark, "from_earmark")
        require_amount(from_buffer, "from_buffer")
        with self._lock:
            self._ensure_live()
            if self._state.dca_budget < from_earmark:
                raise self._violation(f"dca earmark draw {from_earmark} exceeds {self._state.dca_budget}")
            if self._state.liquid_buffer_total() < from_buffer:
                raise self._violation(f"dca buffer draw {from_buffer} exceeds liquid buffer")
            self._state.dca_budget -= from_earmark
            if from_buffer:
                self.debit_buffer(from_buffer)
            self._touch()

    def credit_accumulation(self, amount: int) -> None:
        require_amount(amount)
        with self._lock:
            self._ensure_live()
            self._state.accumulation.liquid += amount
            self._touch()

    def move_to_staked(self, amount: int) -> None:
        require_amount(amount)
        with self._lock:
            self._ensure_live()
            acc = self._state.accumulation
            if acc.liquid < amount:
                raise self._violation(f"stake {amount} exceeds liquid accumulation {acc.liquid}")
            acc.liquid -= amount
            acc.staked += amount
            self._touch()

    def move_to_liquid(self, staked_amount: int, returned_amount: int) -> None:
        """Unstake: ``staked_amount`` leaves custody, ``returned_amount`` comes back (excess is earned)."""
        require_amount(staked_amount, "staked_amount")
        require_amount(returned_amount, "returned_amount")
        with self._lock:
            self._ensure_live()
            acc = self._state.accumulation
            if acc.staked < staked_amount:
                raise self._violation(f"unstake {staked_amount} exceeds staked {acc.staked}")
            acc.staked -= staked_amount
            acc.liquid += min(staked_amount, returned_amount)
            acc.earned += max(0, returned_amount - staked_amount)
            self._touch()

    def append_dca_execution(self, record: DcaExecution) -> None:
        with self._lock:
            self._ensure_live()
            if record.from_earmark + record.from_buffer != record.spent:
                raise self._violation(f"dca record draws do not sum to spent: {record}")
            self._state.dca_history.append(copy.copy(record))
            self._touch()

    # -- notes -------------------------------------------------------------

    def add_note_principal(self, amount: int) -> None:
        require_amount(amount)
        with self._lock:
            self._ensure_live()
            self._state.outstanding_note_principal += amount
            self._touch()


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def save_ledger_state(ledger: Ledger, path: Path | str) -> None:
    """Write the ledger snapshot as a JSON state surface (atomic replace)."""
    snapshot = ledger.snapshot()
    payload = {
        "state": snapshot.to_dict(),
        "supported_assets": list(ledger.supported_assets),
        "primary_asset": ledger.primary_asset,
        "halted": ledger.halt_reason,
        "ts": time.time(),
    }
    atomic_write_json(path, payload)


def load_ledger_state(path: Path | str, router_cfg: Optional[RouterConfig] = None) -> Ledger:
    """Rebuild a Ledger from a saved state surface.

    With ``router_cfg`` the configured asset set governs; otherwise the set saved
    alongside the state is restored.
    """
    target = Path(path)
    try:
        payload = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ValidationError(f"cannot read ledger state {target}: {exc}") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("state"), dict):
        raise ValidationError(f"{target} is not a ledger state surface")
    state = TreasuryState.from_dict(payload["state"])
    if router_cfg is not None:
        ledger = Ledger.from_config(state, router_cfg)
    else:
        ledger = Ledger(
            state,
            supported_assets=payload.get("supported_assets") or RouterConfig.supported_assets,
            primary_asset=payload.get("primary_asset") or RouterConfig.primary_asset,
        )
    if payload.get("halted"):
        ledger._halt(str(payload["halted"]))
    return ledger


__all__ = [
    "PURPOSE_BUFFER_TOPUP",
    "PURPOSE_LIQUIDITY",
    "PURPOSE_DCA",
    "PURPOSE_BUYBACK",
    "PURPOSE_BUFFER_RESIDUAL",
    "require_amount",
    "AccumulationHoldings",
    "BuybackExecution",
    "BuybackPool",
    "POLPosition",
    "DcaExecution",
    "CycleUsage",
    "Inflow",
    "TreasuryState",
    "Ledger",
    "save_ledger_state",
    "load_ledger_state",
]
