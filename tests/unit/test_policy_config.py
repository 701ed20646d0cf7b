from __future__ import annotations

import pathlib

import pytest

from treasury.errors import ValidationError
from treasury.ledger import Ledger, TreasuryState
from treasury.policy_config import (
    WAD,
    CycleConfig,
    PolicyConfig,
    load_policy_config,
    parse_policy_config,
    ratio_to_wad,
    read_policy_file,
)

pytestmark = pytest.mark.unit

ROOT = pathlib.Path(__file__).resolve().parents[2]
POLICY = ROOT / "config" / "treasury_policy.yaml"


def test_shipped_policy_matches_defaults():
    assert POLICY.exists()
    assert parse_policy_config(read_policy_file(POLICY)) == PolicyConfig()


def test_defaults_when_file_missing(tmp_path):
    load_policy_config.cache_clear()
    try:
        cfg = load_policy_config(tmp_path / "absent.yaml")
    finally:
        load_policy_config.cache_clear()
    assert cfg == PolicyConfig()
    assert cfg.gates.coverage_threshold_wad == 12 * WAD // 10


def test_yaml_overrides_are_applied(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text(
        "gates:\n"
        "  runway_threshold_months: 9\n"
        "  coverage_threshold: '1.5'\n"
        "burn:\n"
        "  healthy_burn_bps: 7000\n"
        "router:\n"
        "  primary_asset: eurc\n"
        "  supported_assets: [eurc, usdc]\n"
        "  dca_weight_bps: 6000\n"
        "  buyback_weight_bps: 4000\n"
        "unknown_section:\n"
        "  ignored: true\n",
        encoding="utf-8",
    )
    cfg = parse_policy_config(read_policy_file(path))
    assert cfg.gates.runway_threshold_months == 9
    assert cfg.gates.coverage_threshold_wad == 15 * WAD // 10
    assert cfg.burn.healthy_burn_bps == 7000
    assert cfg.burn.throttled_burn_bps == 5000
    assert cfg.router.primary_asset == "EURC"
    assert cfg.router.supported_assets == ("EURC", "USDC")
    assert cfg.dca == PolicyConfig().dca


@pytest.mark.parametrize(
    "raw",
    [
        {"burn": {"healthy_burn_bps": 10_001}},
        {"router": {"dca_weight_bps": 6000, "buyback_weight_bps": 5000}},
        {"router": {"primary_asset": "DAI"}},
        {"router": {"supported_assets": "USDC"}},
        {"gates": {"runway_threshold_months": -1}},
        {"gates": {"runway_threshold_months": 1.5}},
        {"gates": {"coverage_threshold": "abc"}},
        {"gates": {"price_staleness_seconds": "never"}},
        {"buyback": {"max_slippage_bps": True}},
        {"notes": {"min_subscription": 0}},
        {"notes": {"min_subscription": 100, "max_subscription": 10}},
        {"cycle": {"period_seconds": 0}},
    ],
)
def test_invalid_values_are_rejected(raw):
    with pytest.raises(ValidationError):
        parse_policy_config(raw)


def test_malformed_yaml_is_a_validation_error(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("gates: [unterminated\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        read_policy_file(path)

    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        read_policy_file(path)


def test_ratio_to_wad_is_exact():
    assert ratio_to_wad("1.2") == 1_200_000_000_000_000_000
    assert ratio_to_wad(1) == WAD
    with pytest.raises(ValidationError):
        ratio_to_wad("-0.1")
    with pytest.raises(ValidationError):
        ratio_to_wad(True)


def test_period_index_uses_epoch():
    cycle = CycleConfig(period_seconds=100.0, epoch=1_000.0)
    assert cycle.period_of(1_000) == 0
    assert cycle.period_of(1_099.9) == 0
    assert cycle.period_of(1_100) == 1
    assert cycle.period_of(950) == -1


def test_router_assets_govern_the_ledger():
    cfg = parse_policy_config({"router": {"primary_asset": "dai", "supported_assets": ["dai"]}})
    ledger = Ledger.from_config(TreasuryState(), cfg.router)
    inflow = ledger.enqueue_inflow(1_000, asset="DAI", now=0.0)
    assert inflow.asset == "DAI"
    assert ledger.supported_assets == ("DAI",)
