from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, MutableMapping, Optional, Protocol, Tuple

from treasury.log_utils import JsonlLogger, get_logger, log_event, safe_dump

__all__ = [
    "TelemetrySink",
    "JsonlTelemetrySink",
    "NullTelemetrySink",
    "RecordingTelemetrySink",
    "now_utc",
    "validate_event",
    "emit_event",
    "default_sink",
]


_LOG = logging.getLogger("treasury.events")
_DEFAULT_EVENT_PATH = os.getenv("TREASURY_EVENTS_PATH") or "logs/treasury/events.jsonl"

_REQUIRED_FIELDS = {
    "inflow_processed": {"inflow_id", "amount", "plan"},
    "gate_flipped": {"gate", "previous", "current"},
    "buyback_executed": {"spent", "acquired", "burned", "paired", "reserved"},
    "buyback_blocked": {"reason"},
    "buyback_failed": {"operation", "error"},
    "dca_executed": {"spent", "acquired", "price"},
    "dca_blocked": {"reason"},
    "staking_failed": {"operation", "error"},
    "note_admitted": {"tranche_id", "amount", "claim_id"},
    "note_rejected": {"tranche_id", "amount", "reason"},
    "tranche_state_changed": {"tranche_id", "previous", "current"},
    "step_failed": {"period", "step", "error"},
    "yield_action": {"action", "amount"},
    "price_refresh_failed": {"asset", "error"},
    "market_refresh_failed": {"operation", "error"},
}


class TelemetrySink(Protocol):
    def emit(self, event_type: str, payload: Mapping[str, Any]) -> None:
        ...


class JsonlTelemetrySink:
    """Writes events to a rotating JSONL file."""

    def __init__(self, path: str | Path | None = None, logger: Optional[JsonlLogger] = None) -> None:
        self._logger = logger or get_logger(path or _DEFAULT_EVENT_PATH)

    def emit(self, event_type: str, payload: Mapping[str, Any]) -> None:
        log_event(self._logger, event_type, payload)


class NullTelemetrySink:
    def emit(self, event_type: str, payload: Mapping[str, Any]) -> None:
        return None


class RecordingTelemetrySink:
    """Keeps events in memory; handy for probes and tests."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, MutableMapping[str, Any]]] = []

    def emit(self, event_type: str, payload: Mapping[str, Any]) -> None:
        self.events.append((event_type, dict(payload)))

    def of_type(self, event_type: str) -> List[MutableMapping[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_type]


_DEFAULT_SINK: Optional[TelemetrySink] = None


def default_sink() -> TelemetrySink:
    """Lazily build the process-wide JSONL sink."""
    global _DEFAULT_SINK
    if _DEFAULT_SINK is None:
        _DEFAULT_SINK = JsonlTelemetrySink()
    return _DEFAULT_SINK


def now_utc() -> str:
    """Return current UTC timestamp as ISO8601 string."""
    return datetime.now(tz=timezone.utc).isoformat()


def validate_event(event_type: str, payload: Mapping[str, Any]) -> None:
    """Validate that required keys for an event are present."""
    required = _REQUIRED_FIELDS.get(event_type)
    if required is None:
        raise ValueError(f"unknown event type: {event_type}")
    missing = [name for name in required if name not in payload]
    if missing:
        raise ValueError(f"{event_type} missing fields: {', '.join(sorted(missing))}")


def emit_event(sink: Optional[TelemetrySink], event_type: str, payload: Mapping[str, Any]) -> None:
    """Fire-and-forget: invalid events and delivery failures are logged, never raised."""
    body: MutableMapping[str, Any] = safe_dump(payload or {})
    body.setdefault("ts", now_utc())
    try:
        validate_event(event_type, body)
    except ValueError as exc:
        _LOG.warning("skip_event invalid=%s error=%s payload=%s", event_type, exc, payload)
        return
    target = sink if sink is not None else default_sink()
    try:
        target.emit(event_type, body)
    except Exception as exc:
        _LOG.warning("event_write_failed type=%s err=%s", event_type, exc)
