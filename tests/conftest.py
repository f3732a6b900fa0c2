"""Shared fixtures for Specgate tests."""

import pytest

from specgate.event_log import EventLog
from specgate.models import ApprovalDecision, Phase
from specgate.phase_graph import PhaseGraph
from specgate.state_store import StateStore
from specgate.workflow import WorkflowEngine


class FakeClock:
    """Monotonic clock the tests can move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / ".specgate" / "state"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(state_dir, clock):
    return StateStore(state_dir, cache_ttl=300.0, lock_timeout=5.0, clock=clock)


@pytest.fixture
def events(state_dir):
    return EventLog(state_dir)


@pytest.fixture
def engine(store, events):
    return WorkflowEngine(store, events, PhaseGraph())


def _advance(engine: WorkflowEngine, name: str, target: Phase, approver: str = "alice"):
    record = engine.get_status(name)
    while record.current_phase != target:
        upcoming = engine.graph.next_phase(record.current_phase)
        if engine.graph.requires_approval(upcoming):
            engine.record_approval(name, upcoming, approver, ApprovalDecision.APPROVED)
        record = engine.request_transition(name, upcoming)
    return record


@pytest.fixture
def advance_to():
    """Walk a specification forward to a phase, approving gated phases on the way."""
    return _advance
