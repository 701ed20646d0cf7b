from __future__ import annotations

import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import pandas as pd

from treasury.gates import evaluate_gates, reserve_value, treasury_value
from treasury.ledger import TreasuryState
from treasury.notes import NoteIssuanceGate
from treasury.policy_config import BPS, WAD, PolicyConfig

__all__ = [
    "history_frame",
    "dca_performance",
    "buyback_summary",
    "build_status_report",
]

_BUYBACK_COLUMNS = ["period", "spent", "acquired", "burned", "paired", "reserved"]


def history_frame(rows: List[Any], config: PolicyConfig) -> pd.DataFrame:
    """Execution records as a frame keyed by period index.

    Amount columns stay ``object`` dtype so base-unit integers never wrap at int64.
    """
    records = [asdict(row) for row in rows]
    if not records:
        return pd.DataFrame()
    df = pd.DataFrame.from_records(records).astype(object)
    df["period"] = [config.cycle.period_of(ts) for ts in df["timestamp"]]
    return df.sort_values("timestamp", ignore_index=True)


def dca_performance(state: TreasuryState, config: PolicyConfig) -> Dict[str, Any]:
    df = history_frame(state.dca_history, config)
    if df.empty:
        return {
            "executions": 0,
            "total_spent": 0,
            "total_acquired": 0,
            "average_buy_price": None,
            "performance_bps": None,
        }
    spent = int(sum(df["spent"]))
    acquired = int(sum(df["acquired"]))
    average = spent * WAD // acquired if acquired else None
    performance = None
    if average and state.reference_price:
        performance = (state.reference_price - average) * BPS // average
    return {
        "executions": int(len(df)),
        "total_spent": spent,
        "total_acquired": acquired,
        "average_buy_price": average,
        "performance_bps": performance,
        "last_execution": float(df["timestamp"].iloc[-1]),
    }


def buyback_summary(state: TreasuryState, config: PolicyConfig) -> Dict[str, Any]:
    df = history_frame(state.buyback_pool.history, config)
    totals = {name: 0 for name in _BUYBACK_COLUMNS[1:]}
    periods: List[Dict[str, int]] = []
    if not df.empty:
        for name in totals:
            totals[name] = int(sum(df[name]))
        grouped = df.groupby("period", sort=True)[_BUYBACK_COLUMNS[1:]].agg(lambda col: int(sum(col)))
        for period, row in grouped.iterrows():
            periods.append({"period": int(period), **{name: int(row[name]) for name in totals}})
    average = totals["spent"] * WAD // totals["acquired"] if totals["acquired"] else None
    return {
        "pool_balance": state.buyback_pool.balance,
        "executions": int(len(df)),
        "totals": totals,
        "average_price": average,
        "burned_total": state.burned_total,
        "circulating_supply": state.circulating_supply,
        "per_period": periods,
    }


def _notes_summary(notes: NoteIssuanceGate, now: float) -> Dict[str, Any]:
    tranches = []
    for tranche in notes.tranches():
        tranches.append(
            {
                "tranche_id": tranche.tranche_id,
                "status": tranche.status,
                "cap": tranche.cap,
                "issued_principal": tranche.issued_principal,
                "remaining_capacity": tranche.remaining_capacity,
                "utilization_bps": tranche.utilization_bps,
                "apr_bps": tranche.apr_bps,
                "maturity_time": tranche.maturity_time,
            }
        )
    return {
        "tranches": tranches,
        "claims": len(notes.claims()),
        "monthly_coupon_obligation": notes.monthly_coupon_obligation(now),
    }


def build_status_report(
    state: TreasuryState,
    config: Optional[PolicyConfig] = None,
    *,
    notes: Optional[NoteIssuanceGate] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Treasury status surface: gates against thresholds, holdings and history rollups."""
    cfg = config or PolicyConfig()
    ts = float(now if now is not None else time.time())
    status = evaluate_gates(state, cfg.gates, ts)
    total = treasury_value(state)
    reserve = reserve_value(state)
    ratio = status.coverage_ratio_wad

    report: Dict[str, Any] = {
        "generated_at": ts,
        "period": cfg.cycle.period_of(ts),
        "gates": {
            **status.to_dict(),
            "runway_threshold_months": cfg.gates.runway_threshold_months,
            "coverage_threshold_wad": cfg.gates.coverage_threshold_wad,
            "coverage_ratio": round(ratio / WAD, 4) if ratio is not None else None,
            "price_staleness_seconds": cfg.gates.price_staleness_seconds,
        },
        "holdings": {
            "buffer_balances": dict(state.buffer_balances),
            "yield_deployed": dict(state.yield_deployed),
            "buffer_total": state.buffer_total(),
            "accumulation": {
                "asset": cfg.reserve_asset,
                "liquid": state.accumulation.liquid,
                "staked": state.accumulation.staked,
                "earned": state.accumulation.earned,
                "total": state.accumulation.total,
                "value": reserve,
            },
            "earmarks": {
                "liquidity_budget": state.liquidity_budget,
                "dca_budget": state.dca_budget,
                "buyback_pool": state.buyback_pool.balance,
            },
            "token_reserve": state.token_reserve,
            "pol": asdict(state.pol),
        },
        "total_value": total,
        "reserve_allocation_pct": round(reserve * 100 / total, 2) if total else 0.0,
        "monthly_obligation": state.monthly_obligation,
        "outstanding_note_principal": state.outstanding_note_principal,
        "reference_price": state.reference_price,
        "price_as_of": state.price_as_of,
        "pending_inflows": len(state.pending_inflows),
        "dca": dca_performance(state, cfg),
        "buybacks": buyback_summary(state, cfg),
    }
    if notes is not None:
        report["notes"] = _notes_summary(notes, ts)
    return report
