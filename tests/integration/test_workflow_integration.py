"""
Integration tests for the complete specification workflow.

These tests drive the engine end to end against a real state directory:
the phase walk from init to complete, approval gating and rejection,
durability across restarts, and concurrent callers working on the same
specification.
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from specgate.config import APPROVAL_PHASES_ENV, EngineConfig
from specgate.errors import ApprovalRequired, IllegalTransition, InvalidName
from specgate.models import ApprovalDecision, Phase, PhaseStatus
from specgate.workflow import WorkflowEngine


class TestWorkflowScenarios:
    """End-to-end walks through the phase graph."""

    @pytest.fixture
    def engine(self, tmp_path):
        return WorkflowEngine.from_config(EngineConfig.from_env(tmp_path, env={}))

    def test_happy_path(self, engine):
        """Walk a specification from init to complete with approvals."""
        engine.initialize("user-auth", "User authentication", author="alice")
        engine.request_transition("user-auth", Phase.REQUIREMENTS)
        engine.mark_phase_progress("user-auth", Phase.REQUIREMENTS, True)
        engine.record_approval("user-auth", Phase.DESIGN, "bob", ApprovalDecision.APPROVED)
        engine.request_transition("user-auth", Phase.DESIGN)
        engine.mark_phase_progress("user-auth", Phase.DESIGN, True)
        engine.record_approval("user-auth", Phase.TASKS, "bob", ApprovalDecision.APPROVED)
        engine.request_transition("user-auth", Phase.TASKS)
        record = engine.request_transition("user-auth", Phase.COMPLETE)

        assert record.current_phase == Phase.COMPLETE
        assert all(p.status == PhaseStatus.COMPLETED for p in record.phases.values())
        assert [a.phase for a in record.approvals] == [Phase.DESIGN, Phase.TASKS]

        actions = [event.action for event in engine.history("user-auth", limit=100)]
        assert actions.count("phase_transition") == 4
        assert actions[0] == "spec_initialized"

    def test_entering_requirements_needs_no_approval(self, engine):
        engine.initialize("billing", "Billing")

        record = engine.request_transition("billing", Phase.REQUIREMENTS)

        assert record.current_phase == Phase.REQUIREMENTS
        assert record.approvals == []

    def test_design_blocked_until_approved(self, engine):
        engine.initialize("billing", "Billing")
        engine.request_transition("billing", Phase.REQUIREMENTS)

        with pytest.raises(ApprovalRequired):
            engine.request_transition("billing", Phase.DESIGN)

        engine.record_approval("billing", Phase.DESIGN, "carol", "approved")
        assert engine.request_transition("billing", Phase.DESIGN).current_phase == Phase.DESIGN

    def test_rejection_then_approval(self, engine):
        """A rejection blocks entry; a later approval unblocks it."""
        engine.initialize("billing", "Billing")
        engine.request_transition("billing", Phase.REQUIREMENTS)
        engine.record_approval("billing", Phase.DESIGN, "carol", "rejected", comments="Add NFRs")

        with pytest.raises(ApprovalRequired):
            engine.request_transition("billing", Phase.DESIGN)
        assert engine.get_status("billing").current_phase == Phase.REQUIREMENTS

        engine.record_approval("billing", Phase.DESIGN, "carol", "approved")
        record = engine.request_transition("billing", Phase.DESIGN)

        assert record.current_phase == Phase.DESIGN
        assert len(record.approvals) == 2

    def test_skipping_and_going_back_are_illegal(self, engine):
        engine.initialize("billing", "Billing")

        with pytest.raises(IllegalTransition):
            engine.request_transition("billing", Phase.TASKS)

        engine.request_transition("billing", Phase.REQUIREMENTS)
        with pytest.raises(IllegalTransition):
            engine.request_transition("billing", Phase.INIT)

    def test_path_traversal_name_writes_nothing(self, engine, tmp_path):
        with pytest.raises(InvalidName):
            engine.initialize("../../etc/passwd", "nope")

        assert not (tmp_path / "etc").exists()
        assert engine.list_specs() == []

    def test_approval_gates_from_environment(self, tmp_path):
        """Gating requirements through configuration blocks the first transition."""
        engine = WorkflowEngine.from_config(
            EngineConfig.from_env(tmp_path, env={APPROVAL_PHASES_ENV: "requirements,design,tasks"})
        )
        engine.initialize("billing", "Billing")

        with pytest.raises(ApprovalRequired):
            engine.request_transition("billing", Phase.REQUIREMENTS)


class TestDurability:
    """State written by one engine is what a restarted engine reads."""

    def test_restart_preserves_state(self, tmp_path):
        config = EngineConfig.from_env(tmp_path, env={})
        first = WorkflowEngine.from_config(config)
        first.initialize("auth", "User authentication", author="alice")
        first.request_transition("auth", Phase.REQUIREMENTS)
        first.record_approval("auth", Phase.DESIGN, "bob", "rejected", comments="Needs detail")
        before = first.get_status("auth")

        restarted = WorkflowEngine.from_config(config)
        after = restarted.get_status("auth")

        assert after == before
        assert [e.action for e in restarted.history("auth")] == [
            "spec_initialized", "phase_transition", "approval_rejected",
        ]

    def test_state_file_layout(self, tmp_path):
        config = EngineConfig.from_env(tmp_path, env={})
        engine = WorkflowEngine.from_config(config)
        engine.initialize("auth", "User authentication")

        data = json.loads((config.state_dir / "spec-auth.json").read_text())

        assert data["schema_version"] == 1
        assert data["metadata"]["description"] == "User authentication"
        assert (config.state_dir / "history-auth.jsonl").exists()


class TestConcurrency:
    """Concurrent callers on the same specification never lose updates."""

    WORKERS = 16

    @pytest.fixture
    def config(self, tmp_path):
        return EngineConfig.from_env(tmp_path, env={})

    def test_concurrent_approvals_are_all_kept(self, config):
        engine = WorkflowEngine.from_config(config)
        engine.initialize("auth", "desc")
        engine.request_transition("auth", Phase.REQUIREMENTS)

        def approve(index):
            return engine.record_approval("auth", Phase.DESIGN, f"reviewer-{index}", index % 2 == 0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(approve, range(self.WORKERS)))

        record = engine.get_status("auth")
        assert len(record.approvals) == self.WORKERS
        assert {a.id for a in record.approvals} == {a.id for a in results}

    def test_concurrent_identical_transitions_apply_once(self, config):
        """Racing requests for the same transition produce one transition event."""
        engine = WorkflowEngine.from_config(config)
        engine.initialize("auth", "desc")
        engine.request_transition("auth", Phase.REQUIREMENTS)
        engine.record_approval("auth", Phase.DESIGN, "alice", "approved")
        start = threading.Barrier(8)

        def transition(_):
            start.wait()
            return engine.request_transition("auth", Phase.DESIGN)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(transition, range(8)))

        assert all(record.current_phase == Phase.DESIGN for record in results)
        events = engine.history("auth", limit=100)
        to_design = [e for e in events if e.action == "phase_transition" and e.details["to"] == "design"]
        assert len(to_design) == 1

    def test_separate_engines_share_locks_through_files(self, config):
        """Two engines on one directory behave like two processes."""
        first = WorkflowEngine.from_config(config)
        second = WorkflowEngine.from_config(config)
        first.initialize("auth", "desc")
        first.request_transition("auth", Phase.REQUIREMENTS)

        def approve(index):
            engine = first if index % 2 else second
            engine.record_approval("auth", Phase.DESIGN, f"reviewer-{index}", "approved")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(approve, range(self.WORKERS)))

        first.store.invalidate()
        assert len(first.get_status("auth").approvals) == self.WORKERS
        assert len(second.store.load("auth", fresh=True).approvals) == self.WORKERS

    def test_mixed_operations_on_many_specs(self, config):
        engine = WorkflowEngine.from_config(config)
        names = [f"spec-{index}" for index in range(6)]
        for name in names:
            engine.initialize(name, f"Specification {name}")

        def walk(name):
            engine.request_transition(name, Phase.REQUIREMENTS)
            engine.mark_phase_progress(name, Phase.REQUIREMENTS, True)
            engine.record_approval(name, Phase.DESIGN, "alice", "approved")
            return engine.request_transition(name, Phase.DESIGN)

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(walk, names))

        assert all(record.current_phase == Phase.DESIGN for record in results)
        assert [record.name for record in engine.list_specs()] == names
