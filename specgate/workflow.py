"""Workflow orchestration for Specgate.

This module owns the phase-transition rules for a specification: it
validates transitions against the phase graph, records approval decisions,
and delegates every read and write to the state store. It never keeps a
private copy of a record between calls.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .config import EngineConfig
from .errors import (
    ApprovalRequired,
    CorruptState,
    DuplicateName,
    IllegalTransition,
    InvalidApprover,
    InvalidDecision,
    InvalidDescription,
    InvalidDocument,
    InvalidName,
    InvalidPhase,
    NotFound,
    StorageFault,
)
from .event_log import EventLog
from .models import (
    DOCUMENT_NAMES,
    TRACKED_PHASES,
    WORKFLOW_STEPS,
    ApprovalDecision,
    ApprovalRecord,
    FileRef,
    NextAction,
    Phase,
    PhaseStatus,
    RecordFormatError,
    SpecRecord,
    TransitionCheck,
    WorkflowEvent,
    utcnow,
    validate_description,
    validate_name,
)
from .phase_graph import PhaseGraph
from .specgate_logging import log_error_with_context, log_operation, log_performance
from .state_store import StateStore

logger = logging.getLogger("specgate.workflow")


@dataclass(frozen=True, slots=True)
class TransitionNotice:
    """What the document collaborator learns about a completed transition."""

    spec_name: str
    from_phase: Phase
    to_phase: Phase
    description: str
    author: str
    timestamp: datetime


TransitionListener = Callable[[TransitionNotice], None]


class WorkflowEngine:
    """Manages phase transitions and approvals for named specifications."""

    def __init__(
        self,
        store: StateStore,
        events: EventLog,
        graph: Optional[PhaseGraph] = None,
        *,
        default_author: str = "unknown",
    ):
        self.store = store
        self.events = events
        self.graph = graph or PhaseGraph()
        self.default_author = default_author
        self._listeners: List[TransitionListener] = []

    @classmethod
    def from_config(cls, config: EngineConfig) -> "WorkflowEngine":
        return cls(
            StateStore.from_config(config),
            EventLog(config.state_dir),
            PhaseGraph(config.approval_phases),
            default_author=config.default_author,
        )

    def add_transition_listener(self, listener: TransitionListener) -> None:
        """Register a callback run after each committed transition."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    @log_performance("initialize")
    def initialize(self, name: str, description: str, author: Optional[str] = None) -> SpecRecord:
        """Create a new specification in the init phase."""
        issues = validate_name(name)
        if issues:
            raise InvalidName("; ".join(issues), spec_name=name if isinstance(name, str) else None)
        issues = validate_description(description)
        if issues:
            raise InvalidDescription("; ".join(issues), spec_name=name)

        with self._mutation("initialize", name):
            if self.store.exists(name):
                raise DuplicateName(f"Specification '{name}' already exists", spec_name=name)

            record = SpecRecord.create(name, description, author=author or self.default_author)
            self.store.save(record)
            self.events.record(
                name,
                Phase.INIT,
                "spec_initialized",
                {"description": description, "author": record.author},
                user_id=author,
            )
            logger.info(f"Initialized specification {name}")
            return record.copy()

    @log_performance("request_transition")
    def request_transition(
        self,
        name: str,
        target: Union[Phase, str],
        actor: Optional[str] = None,
    ) -> SpecRecord:
        """Move ``name`` one step forward to ``target``.

        Requesting the phase the record is already in succeeds without any
        change, so an ambiguous request can be retried safely.
        """
        target = self._coerce_phase(target, name)

        with self._mutation("request_transition", name, target=target.value):
            record = self.store.load(name, fresh=True)
            current = record.current_phase

            if target == current:
                logger.info(f"{name} is already in {target.value}; transition is a no-op")
                return record

            self._validate_transition(record, target)

            now = utcnow()
            self._apply_transition(record, target, now)
            self.store.save(record)

            approval = record.latest_approved(target)
            self.events.record(
                name,
                target,
                "phase_transition",
                {
                    "from": current.value,
                    "to": target.value,
                    "approved_by": approval.approver if approval else None,
                },
                user_id=actor,
            )
            logger.info(f"Transitioned {name} from {current.value} to {target.value}")

        self._notify(TransitionNotice(
            spec_name=name,
            from_phase=current,
            to_phase=target,
            description=record.description,
            author=record.author,
            timestamp=now,
        ))
        return record.copy()

    @log_performance("record_approval")
    def record_approval(
        self,
        name: str,
        phase: Union[Phase, str],
        approver: str,
        decision: Union[ApprovalDecision, str, bool],
        comments: Optional[str] = None,
    ) -> ApprovalRecord:
        """Append an approval decision for the phase the spec would enter next.

        A rejection is recorded for audit only; it never moves the current
        phase or changes any phase status.
        """
        phase = self._coerce_phase(phase, name)
        decision = self._coerce_decision(decision, name, phase)
        if not isinstance(approver, str) or not approver.strip():
            raise InvalidApprover("Approver identity is required", spec_name=name, phase=phase)

        with self._mutation("record_approval", name, phase=phase.value, decision=decision.value):
            record = self.store.load(name, fresh=True)

            if phase not in self.graph.allowed_next(record.current_phase):
                raise InvalidPhase(
                    f"Phase {phase.value} is not pending approval; "
                    f"'{name}' is in {record.current_phase.value}",
                    spec_name=name,
                    phase=phase,
                )

            approval = ApprovalRecord(
                phase=phase,
                approver=approver.strip(),
                decision=decision,
                comments=comments,
            )
            record.approvals.append(approval)
            record.touch(approval.timestamp)
            self.store.save(record)

            self.events.record(
                name,
                phase,
                f"approval_{decision.value}",
                {"approval_id": approval.id, "approver": approval.approver, "comments": comments},
                user_id=approval.approver,
            )
            logger.info(f"Recorded {decision.value} decision for {name}/{phase.value} by {approval.approver}")
            return approval

    @log_performance("mark_phase_progress")
    def mark_phase_progress(self, name: str, phase: Union[Phase, str], completed: bool) -> SpecRecord:
        """Mark the current phase completed, or back to in progress."""
        phase = self._coerce_phase(phase, name)
        if phase not in TRACKED_PHASES:
            raise InvalidPhase(f"Phase {phase.value} has no progress to update", spec_name=name, phase=phase)

        with self._mutation("mark_phase_progress", name, phase=phase.value, completed=completed):
            record = self.store.load(name, fresh=True)
            if record.current_phase != phase:
                raise InvalidPhase(
                    f"Phase {phase.value} is not the current phase of '{name}' ({record.current_phase.value})",
                    spec_name=name,
                    phase=phase,
                )

            progress = record.phases[phase]
            wanted = PhaseStatus.COMPLETED if completed else PhaseStatus.IN_PROGRESS
            if progress.status == wanted:
                return record

            now = utcnow()
            if completed:
                progress.complete(now)
            else:
                progress.start(now)
            record.touch(now)
            self.store.save(record)

            self.events.record(name, phase, "phase_progress", {"completed": bool(completed)})
            return record.copy()

    @log_performance("update_file_refs")
    def update_file_refs(self, name: str, refs: Mapping[str, Union[FileRef, Dict[str, Any]]]) -> SpecRecord:
        """Store document metadata reported by the file collaborator."""
        parsed: Dict[str, FileRef] = {}
        for doc_name, ref in refs.items():
            if doc_name not in DOCUMENT_NAMES:
                raise InvalidDocument(
                    f"Unknown document '{doc_name}'. Allowed documents: {', '.join(DOCUMENT_NAMES)}",
                    spec_name=name,
                )
            if isinstance(ref, FileRef):
                parsed[doc_name] = ref
                continue
            try:
                parsed[doc_name] = FileRef.from_dict(ref, f"files.{doc_name}")
            except RecordFormatError as e:
                raise InvalidDocument(f"Invalid metadata for '{doc_name}': {e}", spec_name=name) from e

        with self._mutation("update_file_refs", name, documents=sorted(parsed)):
            record = self.store.load(name, fresh=True)
            record.files.update(parsed)
            record.touch()
            self.store.save(record)
            self.events.record(
                name,
                record.current_phase,
                "files_updated",
                {doc_name: ref.to_dict() for doc_name, ref in parsed.items()},
            )
            return record.copy()

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get_status(self, name: str) -> SpecRecord:
        """Return the store's current record for ``name``."""
        return self._read("get_status", name, lambda: self.store.load(name))

    def list_specs(self) -> List[SpecRecord]:
        return self._read("list_specs", None, self.store.list_all)

    def history(self, name: str, limit: int = 5) -> List[WorkflowEvent]:
        """Most recent workflow events for ``name``, oldest first."""
        def read():
            if not self.store.exists(name):
                raise NotFound(f"Specification '{name}' not found", spec_name=name)
            return self.events.tail(name, limit)

        return self._read("history", name, read)

    def check_transition(self, name: str, target: Union[Phase, str]) -> TransitionCheck:
        """Validate a transition without applying it."""
        target = self._coerce_phase(target, name)
        record = self.get_status(name)
        current = record.current_phase
        requires_approval = self.graph.requires_approval(target)

        if target == current:
            return TransitionCheck(True, current, target, requires_approval, f"Already in {target.value}")
        try:
            self._validate_transition(record, target)
        except (IllegalTransition, ApprovalRequired) as e:
            return TransitionCheck(False, current, target, requires_approval, e.message)
        return TransitionCheck(True, current, target, requires_approval)

    def next_action(self, record: SpecRecord) -> NextAction:
        """Describe what should happen next for ``record``."""
        current = record.current_phase

        if self.graph.is_terminal(current):
            return NextAction("Specification is complete")

        upcoming = self.graph.next_phase(current)
        if current not in TRACKED_PHASES:
            return self._entry_action(record, upcoming)

        if record.phase_status(current) != PhaseStatus.COMPLETED:
            return NextAction(f"Complete {current.value} document", target_phase=upcoming)
        return self._entry_action(record, upcoming)

    def _entry_action(self, record: SpecRecord, upcoming: Phase) -> NextAction:
        if not self.graph.requires_approval(upcoming) or record.has_approval(upcoming):
            return NextAction(f"Enter {upcoming.value} phase", target_phase=upcoming)

        current = record.current_phase.value
        guidance = (
            f"Review the {current} document and record an approval for {upcoming.value} to proceed."
        )
        latest = record.latest_approval(upcoming)
        if latest is not None and not latest.approved:
            guidance = (
                f"The last review by {latest.approver} rejected entering {upcoming.value}. "
                f"Revise the {current} document and request a new approval."
            )
        return NextAction(
            f"Approve {current} before entering {upcoming.value}",
            target_phase=upcoming,
            approval_guidance=guidance,
        )

    def describe(self, name: str, limit: int = 5) -> Dict[str, Any]:
        """Status payload combining the record, guidance and recent events."""
        record = self.get_status(name)
        return {
            "spec_name": record.name,
            "current_phase": record.current_phase.value,
            "progress": {phase.value: progress.to_dict() for phase, progress in record.phases.items()},
            "next_action": self.next_action(record).to_dict(),
            "record": record.to_dict(),
            "recent_events": [event.to_dict() for event in self.history(name, limit)],
        }

    def workflow_guide(self) -> Dict[str, Any]:
        """Get comprehensive workflow guidance."""
        steps = []
        for step in WORKFLOW_STEPS:
            entry = step.to_dict()
            entry["requires_approval"] = self.graph.requires_approval(step.phase)
            steps.append(entry)
        return {
            "workflow_overview": "Specification phases in the only order they can be entered",
            "steps": steps,
            "tips": [
                "Phases move forward one step at a time; skipping or going back is rejected",
                "Record an approval for the next phase before entering an approval-gated phase",
                "A rejection is kept in the history but does not move the specification",
                "Requesting the current phase again is safe and changes nothing",
            ],
        }

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    @contextmanager
    def _mutation(self, operation: str, name: str, **fields):
        with log_operation(operation, spec_name=name, **fields):
            try:
                with self.store.lock(name):
                    yield
            except (StorageFault, CorruptState) as e:
                log_error_with_context(e, {"operation": operation, "spec_name": name, **fields})
                raise

    def _read(self, operation: str, name: Optional[str], reader):
        try:
            return reader()
        except (StorageFault, CorruptState) as e:
            log_error_with_context(e, {"operation": operation, "spec_name": name})
            raise

    def _validate_transition(self, record: SpecRecord, target: Phase) -> None:
        current = record.current_phase
        if target not in self.graph.allowed_next(current):
            raise IllegalTransition(current, target, spec_name=record.name)
        if self.graph.requires_approval(target) and not record.has_approval(target):
            raise ApprovalRequired(target, spec_name=record.name)

    @staticmethod
    def _apply_transition(record: SpecRecord, target: Phase, now: datetime) -> None:
        left = record.phases.get(record.current_phase)
        if left is not None and left.status != PhaseStatus.COMPLETED:
            left.complete(now)

        entered = record.phases.get(target)
        if entered is not None:
            entered.start(now)

        record.current_phase = target
        record.touch(now)

    def _notify(self, notice: TransitionNotice) -> None:
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception as e:
                log_error_with_context(e, {
                    "operation": "transition_listener",
                    "spec_name": notice.spec_name,
                    "phase": notice.to_phase.value,
                })
                raise

    @staticmethod
    def _coerce_phase(value: Union[Phase, str], name: Optional[str]) -> Phase:
        if isinstance(value, Phase):
            return value
        try:
            return Phase(str(value).strip().lower())
        except ValueError:
            raise InvalidPhase(f"Unknown phase {value!r}", spec_name=name) from None

    @staticmethod
    def _coerce_decision(
        value: Union[ApprovalDecision, str, bool],
        name: Optional[str],
        phase: Phase,
    ) -> ApprovalDecision:
        if isinstance(value, ApprovalDecision):
            return value
        if isinstance(value, bool):
            return ApprovalDecision.APPROVED if value else ApprovalDecision.REJECTED
        try:
            return ApprovalDecision(str(value).strip().lower())
        except ValueError:
            raise InvalidDecision(
                f"Unknown approval decision {value!r}; use 'approved' or 'rejected'",
                spec_name=name,
                phase=phase,
            ) from None
