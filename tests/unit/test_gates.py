from __future__ import annotations

import json

import pytest
from hypothesis import given
from hypothesis import strategies as st

from helpers.treasury_state import NOW, PRICE, build_state
from treasury.gates import (
    GateMonitor,
    buffer_deficit,
    buffer_surplus,
    coverage_passes,
    evaluate_gates,
    reserve_value,
)
from treasury.log_utils import get_logger
from treasury.policy_config import WAD, GateConfig

pytestmark = pytest.mark.unit

CFG = GateConfig()


def test_runway_is_floored_months():
    status = evaluate_gates(build_state(buffer=59_999, obligation=10_000), CFG, NOW)
    assert status.runway_months == 5
    assert status.runway_ok is False


def test_runway_at_threshold_passes():
    status = evaluate_gates(build_state(buffer=60_000, obligation=10_000), CFG, NOW)
    assert status.runway_months == 6
    assert status.runway_ok is True


def test_zero_obligation_means_maximal_runway():
    status = evaluate_gates(build_state(buffer=0, obligation=0), CFG, NOW)
    assert status.runway_months is None
    assert status.runway_ok is True


def test_no_notes_outstanding_coverage_is_maximal_even_with_stale_price():
    state = build_state(principal=0, price_as_of=NOW - 10 * 3600)
    status = evaluate_gates(state, CFG, NOW)
    assert status.coverage_maximal is True
    assert status.coverage_ok is True
    assert status.coverage_ratio_wad is None
    assert status.price_fresh is False


def test_coverage_below_threshold_fails():
    status = evaluate_gates(build_state(buffer=115_000, principal=100_000), CFG, NOW)
    assert status.coverage_ok is False
    assert status.coverage_ratio_wad == 115 * WAD // 100


def test_coverage_exactly_at_threshold_passes():
    status = evaluate_gates(build_state(buffer=120_000, principal=100_000), CFG, NOW)
    assert status.coverage_ok is True


def test_reserve_holdings_count_toward_coverage_at_reference_price():
    short = build_state(buffer=100_000, principal=100_000, accumulation=5_000)
    enough = build_state(buffer=100_000, principal=100_000, accumulation=10_000)
    assert reserve_value(enough) == 10_000 * PRICE // WAD
    assert evaluate_gates(short, CFG, NOW).coverage_ok is False
    assert evaluate_gates(enough, CFG, NOW).coverage_ok is True


def test_stale_price_fails_coverage_closed():
    state = build_state(buffer=500_000, principal=100_000, price_as_of=NOW - CFG.price_staleness_seconds - 1)
    status = evaluate_gates(state, CFG, NOW)
    assert status.price_fresh is False
    assert status.coverage_ok is False


def test_missing_price_fails_coverage_closed():
    status = evaluate_gates(build_state(buffer=500_000, principal=100_000, price=None), CFG, NOW)
    assert status.price_fresh is False
    assert status.coverage_ok is False


def test_earmarks_do_not_count_as_buffer():
    state = build_state(buffer=100_000, principal=100_000, dca_budget=50_000, liquidity_budget=50_000)
    assert evaluate_gates(state, CFG, NOW).coverage_ok is False


def test_yield_deployed_principal_counts_as_buffer():
    state = build_state(buffer=30_000, obligation=10_000, yield_deployed={"USDC": 30_000})
    status = evaluate_gates(state, CFG, NOW)
    assert status.runway_months == 6
    assert buffer_deficit(state, CFG) == 0
    # only liquid balance can leave as surplus
    assert buffer_surplus(state, CFG) == 0


def test_evaluation_does_not_mutate_state():
    state = build_state(buffer=115_000, principal=100_000)
    before = state.to_dict()
    for _ in range(3):
        evaluate_gates(state, CFG, NOW)
    assert state.to_dict() == before


def test_coverage_passes_uses_exact_integer_comparison():
    threshold = 12 * WAD // 10
    assert coverage_passes(6, 5, threshold) is True
    assert coverage_passes(6 * 10**30 - 1, 5 * 10**30, threshold) is False
    assert coverage_passes(1, 0, threshold) is True


@given(
    buffer=st.integers(min_value=0, max_value=10**15),
    extra=st.integers(min_value=0, max_value=10**15),
    obligation=st.integers(min_value=1, max_value=10**9),
)
def test_more_buffer_never_flips_runway_to_failing(buffer, extra, obligation):
    low = evaluate_gates(build_state(buffer=buffer, obligation=obligation), CFG, NOW)
    high = evaluate_gates(build_state(buffer=buffer + extra, obligation=obligation), CFG, NOW)
    assert not (low.runway_ok and not high.runway_ok)


@given(
    buffer=st.integers(min_value=0, max_value=10**15),
    principal=st.integers(min_value=1, max_value=10**15),
    more_principal=st.integers(min_value=0, max_value=10**15),
)
def test_more_principal_never_flips_coverage_to_passing(buffer, principal, more_principal):
    low = evaluate_gates(build_state(buffer=buffer, principal=principal), CFG, NOW)
    high = evaluate_gates(build_state(buffer=buffer, principal=principal + more_principal), CFG, NOW)
    assert not (high.coverage_ok and not low.coverage_ok)


def test_gate_monitor_reports_flips_and_writes_audit_trail(tmp_path, telemetry):
    audit = get_logger(tmp_path / "gate_snapshots.jsonl")
    monitor = GateMonitor(telemetry=telemetry, audit_log=audit)

    healthy = evaluate_gates(build_state(buffer=120_000), CFG, NOW)
    short = evaluate_gates(build_state(buffer=50_000), CFG, NOW + 60)

    assert monitor.observe(healthy) == []
    assert monitor.observe(short) == [("runway_ok", True, False)]
    assert monitor.last_status is short

    flips = telemetry.of_type("gate_flipped")
    assert len(flips) == 1
    assert flips[0]["gate"] == "runway_ok"
    assert flips[0]["previous"] is True and flips[0]["current"] is False

    lines = (tmp_path / "gate_snapshots.jsonl").read_text().splitlines()
    assert len(lines) == 2
    record = json.loads(lines[1])
    assert record["event_type"] == "gate_snapshot"
    assert record["runway_months"] == 5
