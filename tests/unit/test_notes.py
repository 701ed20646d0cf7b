from __future__ import annotations

import threading

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from helpers.treasury_state import NOW, build_state
from treasury.errors import (
    REASON_ABOVE_MAX,
    REASON_BELOW_MIN,
    REASON_COVERAGE,
    REASON_POST_ADMISSION_COVERAGE,
    REASON_TRANCHE_CAP,
    REASON_TRANCHE_INACTIVE,
    REASON_TRANCHE_NOT_LAUNCHED,
    ValidationError,
)
from treasury.gates import evaluate_gates
from treasury.ledger import Ledger
from treasury.notes import NoteIssuanceGate, TrancheStatus
from treasury.policy_config import SECONDS_PER_MONTH, GateConfig, NoteConfig, PolicyConfig

pytestmark = pytest.mark.unit


def _gate(ledger, **tranche_kwargs):
    gate = NoteIssuanceGate(ledger, PolicyConfig(), telemetry=tranche_kwargs.pop("telemetry", None))
    params = {"cap": 250_000, "apr_bps": 800, "term_months": 6, "launch_time": NOW - 10}
    params.update(tranche_kwargs)
    gate.create_tranche("T1", **params)
    return gate


def test_admission_credits_buffer_and_issues_claim(ledger, telemetry):
    gate = _gate(ledger, telemetry=telemetry)
    admission = gate.subscribe("T1", 10_000, "alice", now=NOW)

    assert admission.admitted
    claim = admission.claim
    assert claim.principal == 10_000
    assert claim.transferable is False
    assert claim.maturity_time == NOW - 10 + 6 * SECONDS_PER_MONTH
    state = ledger.snapshot()
    assert state.outstanding_note_principal == 10_000
    assert state.buffer_balances["USDC"] == 130_000
    assert gate.tranche("T1").issued_principal == 10_000
    assert telemetry.of_type("note_admitted")[0]["claim_id"] == claim.claim_id


def test_cap_is_never_exceeded(ledger):
    gate = _gate(ledger, cap=15_000)
    assert gate.subscribe("T1", 10_000, "a", now=NOW).admitted
    rejected = gate.subscribe("T1", 6_000, "b", now=NOW)
    assert rejected.reason == REASON_TRANCHE_CAP
    assert gate.subscribe("T1", 5_000, "c", now=NOW).admitted
    assert gate.tranche("T1").remaining_capacity == 0


@pytest.mark.parametrize(
    "amount,reason",
    [(999, REASON_BELOW_MIN), (50_001, REASON_ABOVE_MAX)],
)
def test_subscription_bounds(ledger, amount, reason):
    gate = _gate(ledger, min_subscription=1_000, max_subscription=50_000)
    assert gate.subscribe("T1", amount, "a", now=NOW).reason == reason


def test_global_minimum_rejects_zero(ledger):
    gate = _gate(ledger)
    assert gate.subscribe("T1", 0, "a", now=NOW).reason == REASON_BELOW_MIN


def test_tranche_not_yet_launched(ledger):
    gate = _gate(ledger, launch_time=NOW + 100)
    assert gate.subscribe("T1", 1_000, "a", now=NOW).reason == REASON_TRANCHE_NOT_LAUNCHED


def test_coverage_failure_rejects_and_changes_nothing(make_ledger, telemetry):
    ledger = make_ledger(buffer=115_000, principal=100_000)
    gate = _gate(ledger, telemetry=telemetry)
    before = ledger.snapshot().to_dict()

    admission = gate.subscribe("T1", 1_000, "a", now=NOW)

    assert admission.admitted is False
    assert admission.reason == REASON_COVERAGE
    assert ledger.snapshot().to_dict() == before
    assert gate.tranche("T1").issued_principal == 0
    assert telemetry.of_type("note_rejected")[0]["reason"] == REASON_COVERAGE


def test_admission_that_would_break_coverage_is_rejected(make_ledger):
    ledger = make_ledger(buffer=130_000, principal=100_000)
    gate = _gate(ledger)
    assert gate.subscribe("T1", 60_000, "a", now=NOW).reason == REASON_POST_ADMISSION_COVERAGE

    lenient = NoteIssuanceGate(
        ledger,
        PolicyConfig(notes=NoteConfig(require_post_admission_coverage=False)),
    )
    lenient.create_tranche("T2", cap=100_000, apr_bps=800, term_months=6, launch_time=NOW - 10)
    assert lenient.subscribe("T2", 60_000, "a", now=NOW).admitted


def test_unknown_tranche_is_validation_error(ledger):
    gate = NoteIssuanceGate(ledger)
    with pytest.raises(ValidationError):
        gate.subscribe("nope", 1_000, "a", now=NOW)


def test_create_tranche_validates_inputs(ledger):
    gate = NoteIssuanceGate(ledger)
    with pytest.raises(ValidationError):
        gate.create_tranche("bad", cap=0, apr_bps=800, term_months=6, launch_time=NOW)
    with pytest.raises(ValidationError):
        gate.create_tranche("bad", cap=10, apr_bps=800, term_months=0, launch_time=NOW)
    with pytest.raises(ValidationError):
        gate.create_tranche("bad", cap=10, apr_bps=800, term_months=6, launch_time=NOW, asset="DOGE")
    gate.create_tranche("ok", cap=10, apr_bps=800, term_months=6, launch_time=NOW)
    with pytest.raises(ValidationError):
        gate.create_tranche("ok", cap=10, apr_bps=800, term_months=6, launch_time=NOW)


def test_gate_pauses_on_breach_and_resumes_on_recovery(make_ledger, telemetry):
    ledger = make_ledger(buffer=115_000, principal=100_000)
    gate = _gate(ledger, telemetry=telemetry)

    assert gate.sync_with_gates(NOW) == ["T1"]
    assert gate.tranche("T1").status == TrancheStatus.PAUSED
    assert gate.tranche("T1").paused_by_gate is True

    ledger.credit_buffer(10_000)
    assert gate.sync_with_gates(NOW) == ["T1"]
    assert gate.tranche("T1").status == TrancheStatus.ACTIVE

    changes = telemetry.of_type("tranche_state_changed")
    assert [(c["previous"], c["current"]) for c in changes] == [("active", "paused"), ("paused", "active")]


def test_gate_recovery_does_not_resume_a_governance_pause(make_ledger):
    ledger = make_ledger()
    gate = _gate(ledger)
    gate.pause("T1")
    assert gate.sync_with_gates(NOW) == []
    assert gate.tranche("T1").status == TrancheStatus.PAUSED
    assert gate.subscribe("T1", 1_000, "a", now=NOW).reason == REASON_TRANCHE_INACTIVE
    gate.resume("T1")
    assert gate.subscribe("T1", 1_000, "a", now=NOW).admitted


def test_maturity_then_close_is_terminal(ledger):
    gate = _gate(ledger)
    maturity = gate.tranche("T1").maturity_time

    assert gate.mature_due(maturity - 1) == []
    assert gate.subscribe("T1", 1_000, "a", now=maturity).reason == REASON_TRANCHE_INACTIVE
    assert gate.tranche("T1").status == TrancheStatus.MATURED

    gate.close("T1")
    assert gate.tranche("T1").status == TrancheStatus.CLOSED
    with pytest.raises(ValidationError):
        gate.close("T1")
    with pytest.raises(ValidationError):
        gate.resume("T1")


def test_monthly_coupon_obligation(ledger):
    gate = _gate(ledger, apr_bps=1_000)
    gate.subscribe("T1", 12_000, "a", now=NOW)
    gate.subscribe("T1", 24_000, "b", now=NOW)
    assert gate.monthly_coupon_obligation() == 100 + 200
    maturity = gate.tranche("T1").maturity_time
    assert gate.monthly_coupon_obligation(now=maturity) == 0


def test_registry_round_trips(ledger):
    gate = _gate(ledger)
    gate.subscribe("T1", 5_000, "a", now=NOW)
    restored = NoteIssuanceGate.from_dict(gate.to_dict(), ledger)
    assert restored.tranche("T1") == gate.tranche("T1")
    assert [c.claim_id for c in restored.claims()] == [c.claim_id for c in gate.claims()]


@settings(max_examples=50, deadline=None)
@given(
    requests=st.lists(st.integers(min_value=0, max_value=60_000), min_size=1, max_size=20),
    principal=st.integers(min_value=0, max_value=200_000),
)
def test_no_admission_sequence_breaks_cap_or_coverage(requests, principal):
    ledger = Ledger(build_state(buffer=150_000, principal=principal))
    gate = NoteIssuanceGate(ledger)
    gate.create_tranche("T", cap=100_000, apr_bps=800, term_months=6, launch_time=NOW - 1)

    for index, amount in enumerate(requests):
        covered = evaluate_gates(ledger.snapshot(), GateConfig(), NOW).coverage_ok
        admission = gate.subscribe("T", amount, f"h{index}", now=NOW)
        if admission.admitted:
            assert covered
        assert gate.tranche("T").issued_principal <= 100_000


def test_concurrent_subscriptions_respect_the_cap(ledger):
    gate = _gate(ledger, cap=50_000)
    results = []
    lock = threading.Lock()

    def worker(index):
        admission = gate.subscribe("T1", 10_000, f"h{index}", now=NOW)
        with lock:
            results.append(admission.admitted)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert results.count(True) == 5
    assert gate.tranche("T1").issued_principal == 50_000
    assert ledger.snapshot().outstanding_note_principal == 50_000
