#!/usr/bin/env python
"""Read-only treasury probe over a saved ledger state surface."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from treasury.errors import REASON_LEDGER_HALTED, TreasuryError
from treasury.gates import evaluate_gates
from treasury.ledger import load_ledger_state
from treasury.log_utils import safe_dump
from treasury.notes import NoteIssuanceGate
from treasury.policy_config import load_policy_config
from treasury.report import build_status_report

LOG = logging.getLogger("treasury.cli")

STATE_PATH = os.environ.get("TREASURY_LEDGER_STATE", "state/treasury_ledger.json")


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="treasury", description=__doc__)
    ap.add_argument("--state", default=STATE_PATH, help="ledger state JSON (default: %(default)s)")
    ap.add_argument("--config", default=None, help="policy YAML (default: TREASURY_POLICY_CONFIG or config/)")
    ap.add_argument("--now", type=float, default=None, help="evaluate as of this unix time")
    sub = ap.add_subparsers(dest="command", required=True)
    status = sub.add_parser("status", help="full treasury status report")
    status.add_argument("--notes", default=None, help="note registry JSON written by NoteIssuanceGate.to_dict()")
    sub.add_parser("gates", help="runway / coverage gate evaluation only")
    return ap


def _load_notes(path: str, ledger: Any, config: Any) -> NoteIssuanceGate:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise TreasuryError(f"cannot read note registry {path}: {exc}") from exc
    return NoteIssuanceGate.from_dict(data, ledger, config)


def run(argv: Optional[List[str]] = None) -> Dict[str, Any]:
    args = _build_parser().parse_args(argv)
    config = load_policy_config(args.config)
    ledger = load_ledger_state(args.state, config.router)
    now = args.now if args.now is not None else time.time()
    state = ledger.snapshot()

    if args.command == "gates":
        result: Dict[str, Any] = {"gates": evaluate_gates(state, config.gates, now).to_dict()}
    else:
        notes = _load_notes(args.notes, ledger, config) if args.notes else None
        result = build_status_report(state, config, notes=notes, now=now)
    if ledger.is_halted:
        result["halted"] = {"reason": REASON_LEDGER_HALTED, "detail": ledger.halt_reason}
    return result


def main(argv: Optional[List[str]] = None) -> int:  # pragma: no cover - thin wrapper
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    try:
        result = run(argv)
    except TreasuryError as exc:
        LOG.error("[cli] %s", exc)
        return 1
    print(json.dumps(safe_dump(result), indent=2, sort_keys=True))
    return 2 if "halted" in result else 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
