"""
Pytest configuration and shared fixtures for the treasury suite.
"""
from __future__ import annotations

from typing import Any, Callable

import pytest

from helpers.treasury_state import NOW, build_state
from treasury import events as events_module
from treasury.events import NullTelemetrySink, RecordingTelemetrySink
from treasury.ledger import Ledger
from treasury.policy_config import PolicyConfig


@pytest.fixture(autouse=True)
def quiet_default_sink(monkeypatch):
    """Components built without a sink must not write logs/treasury/events.jsonl."""
    monkeypatch.setattr(events_module, "_DEFAULT_SINK", NullTelemetrySink())


@pytest.fixture
def now() -> float:
    return NOW


@pytest.fixture
def config() -> PolicyConfig:
    return PolicyConfig()


@pytest.fixture
def telemetry() -> RecordingTelemetrySink:
    return RecordingTelemetrySink()


@pytest.fixture
def make_ledger() -> Callable[..., Ledger]:
    """Factory: ``make_ledger(buffer=..., obligation=..., principal=..., buyback_pool=...)``."""

    def _make(**kwargs: Any) -> Ledger:
        return Ledger(build_state(**kwargs))

    return _make


@pytest.fixture
def ledger(make_ledger) -> Ledger:
    return make_ledger()
