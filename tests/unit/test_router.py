from __future__ import annotations

import threading

import pytest

from helpers.treasury_fakes import FakeLiquidityAdapter
from helpers.treasury_state import NOW, build_state
from treasury.adapters import MarketSnapshot
from treasury.errors import ExternalFailure
from treasury.gates import evaluate_gates
from treasury.ledger import (
    PURPOSE_BUFFER_RESIDUAL,
    PURPOSE_BUFFER_TOPUP,
    PURPOSE_BUYBACK,
    PURPOSE_DCA,
    PURPOSE_LIQUIDITY,
    load_ledger_state,
    save_ledger_state,
)
from treasury.policy_config import GateConfig, PolicyConfig, RouterConfig
from treasury.router import AllocationRouter, CycleUsage, build_allocation_plan, liquidity_needed

pytestmark = pytest.mark.unit


def test_five_month_runway_tops_up_before_anything_else(make_ledger, telemetry):
    ledger = make_ledger(buffer=10_000, obligation=2_000)
    router = AllocationRouter(ledger, PolicyConfig(), telemetry=telemetry)
    inflow = ledger.enqueue_inflow(10_000, inflow_id="rev-1", source="fees", now=NOW)

    plan = router.route(inflow, now=NOW)

    assert plan.entries[0].purpose == PURPOSE_BUFFER_TOPUP
    assert plan.amount_for(PURPOSE_BUFFER_TOPUP) == 2_000
    assert plan.inflow_amount - plan.amount_for(PURPOSE_BUFFER_TOPUP) == 8_000
    assert plan.amount_for(PURPOSE_DCA) == 4_000
    assert plan.amount_for(PURPOSE_BUYBACK) == 4_000
    assert plan.total() == 10_000

    state = ledger.snapshot()
    assert state.buffer_balances["USDC"] == 12_000
    assert evaluate_gates(state, GateConfig(), NOW).runway_months == 6
    assert state.dca_budget == 4_000
    assert state.buyback_pool.balance == 4_000

    event = telemetry.of_type("inflow_processed")[0]
    assert event["inflow_id"] == "rev-1"
    assert event["amount"] == 10_000


def test_deficit_larger_than_inflow_terminates_early(make_ledger):
    ledger = make_ledger(buffer=10_000, obligation=10_000)
    router = AllocationRouter(ledger)
    inflow = ledger.enqueue_inflow(3_000, inflow_id="small", now=NOW)
    plan = router.route(inflow, now=NOW)
    assert plan.terminated_early is True
    assert plan.as_pairs() == [(PURPOSE_BUFFER_TOPUP, 3_000)]
    assert ledger.snapshot().buffer_balances["USDC"] == 13_000


def test_coverage_failure_diverts_buyback_share_to_buffer(make_ledger):
    ledger = make_ledger(buffer=115_000, obligation=10_000, principal=100_000)
    router = AllocationRouter(ledger)
    inflow = ledger.enqueue_inflow(1_000, inflow_id="x", now=NOW)
    plan = router.route(inflow, now=NOW)
    assert plan.amount_for(PURPOSE_BUYBACK) == 0
    assert plan.amount_for(PURPOSE_DCA) == 500
    assert plan.amount_for(PURPOSE_BUFFER_RESIDUAL) == 500
    assert ledger.snapshot().buyback_pool.balance == 0


def test_per_period_caps_carry_across_inflows(ledger):
    router = AllocationRouter(ledger)
    first = ledger.enqueue_inflow(8_000, inflow_id="a", now=NOW)
    second = ledger.enqueue_inflow(8_000, inflow_id="b", now=NOW)
    router.route(first, now=NOW)
    plan = router.route(second, now=NOW + 60)
    # dca cap is 5,000 per period: 4,000 used by the first inflow
    assert plan.amount_for(PURPOSE_DCA) == 1_000
    assert plan.amount_for(PURPOSE_BUYBACK) == 4_000
    assert plan.amount_for(PURPOSE_BUFFER_RESIDUAL) == 3_000
    assert router.cycle_usage(plan.period).dca == 5_000


def test_caps_reset_in_the_next_period(ledger):
    router = AllocationRouter(ledger)
    week = PolicyConfig().cycle.period_seconds
    router.route(ledger.enqueue_inflow(10_000, inflow_id="a", now=NOW), now=NOW)
    plan = router.route(ledger.enqueue_inflow(10_000, inflow_id="b", now=NOW + week), now=NOW + week)
    assert plan.amount_for(PURPOSE_DCA) == 5_000
    assert router.cycle_usage(plan.period - 1).dca == 0


def test_liquidity_reserved_when_pool_is_under_owned():
    state = build_state()
    state.pol.target_ownership_bps = 1_000
    status = evaluate_gates(state, GateConfig(), NOW)
    cfg = RouterConfig()
    plan = build_allocation_plan("i", 20_000, state, status, cfg, GateConfig(), CycleUsage(period=0))
    assert plan.amount_for(PURPOSE_LIQUIDITY) == cfg.liquidity_cycle_cap
    assert plan.total() == 20_000


def test_liquidity_reserved_when_market_is_shallow():
    state = build_state()
    cfg = RouterConfig()
    shallow = MarketSnapshot(pool_depth=cfg.min_pool_depth - 1, trailing_volume=1, token_price=1)
    deep = MarketSnapshot(pool_depth=cfg.min_pool_depth, trailing_volume=1, token_price=1)
    assert liquidity_needed(state, shallow, cfg) is True
    assert liquidity_needed(state, deep, cfg) is False
    assert liquidity_needed(state, None, cfg) is False


def test_process_pending_routes_in_arrival_order(ledger):
    router = AllocationRouter(ledger)
    for ident in ("one", "two", "three"):
        ledger.enqueue_inflow(100, inflow_id=ident, now=NOW)
    plans = router.process_pending(now=NOW)
    assert [p.inflow_id for p in plans] == ["one", "two", "three"]
    assert ledger.pending_inflows() == []
    assert router.process_pending(now=NOW) == []


def test_refresh_pol_reads_live_share(ledger):
    router = AllocationRouter(ledger)
    adapter = FakeLiquidityAdapter(pool_total_units=10_000)
    ledger.set_pol_target(500)
    router.record_contribution(lp_units=200, base_amount=100, pair_amount=100, pool_total_units=10_000)
    assert ledger.snapshot().pol.current_ownership_bps == 200

    adapter.pool_total_units = 40_000
    position = router.refresh_pol(adapter, timeout_s=1.0)
    assert position.current_ownership_bps == 50


def test_refresh_pol_rejects_malformed_reading(ledger):
    router = AllocationRouter(ledger)

    class Broken:
        def position_share(self):
            return ("lots", None)

    with pytest.raises(ExternalFailure):
        router.refresh_pol(Broken(), timeout_s=1.0)
    assert not ledger.is_halted


def _under_owned(make_ledger):
    ledger = make_ledger()
    ledger.set_pol_target(1_000)
    return ledger


def test_caps_are_shared_by_every_router_on_a_ledger(make_ledger):
    ledger = _under_owned(make_ledger)
    first = AllocationRouter(ledger).route(ledger.enqueue_inflow(10_000, inflow_id="a", now=NOW), now=NOW)
    second = AllocationRouter(ledger).route(ledger.enqueue_inflow(10_000, inflow_id="b", now=NOW), now=NOW + 60)

    assert first.amount_for(PURPOSE_LIQUIDITY) == 5_000
    assert second.amount_for(PURPOSE_LIQUIDITY) == 0
    assert second.amount_for(PURPOSE_DCA) == 2_500
    assert second.amount_for(PURPOSE_BUYBACK) == 5_000
    state = ledger.snapshot()
    assert state.liquidity_budget == RouterConfig().liquidity_cycle_cap
    assert (state.cycle_usage.liquidity, state.cycle_usage.dca, state.cycle_usage.buyback) == (5_000, 5_000, 7_500)


def test_cap_usage_survives_a_restart(make_ledger, tmp_path):
    ledger = _under_owned(make_ledger)
    AllocationRouter(ledger).route(ledger.enqueue_inflow(10_000, inflow_id="a", now=NOW), now=NOW)
    path = tmp_path / "ledger.json"
    save_ledger_state(ledger, path)

    restored = load_ledger_state(path)
    plan = AllocationRouter(restored).route(restored.enqueue_inflow(10_000, inflow_id="b", now=NOW), now=NOW + 60)

    assert plan.amount_for(PURPOSE_LIQUIDITY) == 0
    assert restored.snapshot().liquidity_budget == 5_000


def test_concurrent_routes_never_exceed_period_caps(make_ledger):
    ledger = _under_owned(make_ledger)
    router = AllocationRouter(ledger)
    inflows = [ledger.enqueue_inflow(10_000, inflow_id=f"c{n}", now=NOW) for n in range(6)]
    barrier = threading.Barrier(len(inflows))
    errors = []

    def worker(inflow):
        barrier.wait(5)
        try:
            router.route(inflow, now=NOW)
        except Exception as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(inflow,)) for inflow in inflows]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert errors == []
    cfg = RouterConfig()
    state = ledger.snapshot()
    assert state.liquidity_budget == cfg.liquidity_cycle_cap
    assert state.dca_budget == cfg.dca_cycle_cap
    assert state.buyback_pool.balance == cfg.buyback_cycle_cap
    assert state.buffer_balances["USDC"] == 120_000 + 60_000 - 20_000
    assert ledger.pending_inflows() == []
