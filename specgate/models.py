"""Data models for Specgate workflow state.

This module contains the core data structures used throughout the Specgate
system: phases, per-phase progress, approval decisions, file metadata,
the specification record itself and workflow events.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


SCHEMA_VERSION = 1

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_NAME_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 200


class Phase(str, Enum):
    INIT = "init"
    REQUIREMENTS = "requirements"
    DESIGN = "design"
    TASKS = "tasks"
    COMPLETE = "complete"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


# Phases that carry their own progress entry and document.
TRACKED_PHASES = (Phase.REQUIREMENTS, Phase.DESIGN, Phase.TASKS)
DOCUMENT_NAMES = tuple(phase.value for phase in TRACKED_PHASES)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class RecordFormatError(ValueError):
    """A persisted document is missing a field or holds a bad value."""

    def __init__(self, field_path: str, message: str):
        super().__init__(f"{field_path}: {message}")
        self.field_path = field_path


def _require(data: Any, key: str, where: str) -> Any:
    if not isinstance(data, dict):
        raise RecordFormatError(where or "<root>", "expected an object")
    if key not in data or data[key] is None:
        raise RecordFormatError(f"{where}.{key}" if where else key, "required field is missing")
    return data[key]


def _parse_time(value: Any, where: str) -> datetime:
    if not isinstance(value, str):
        raise RecordFormatError(where, "expected an ISO-8601 timestamp")
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise RecordFormatError(where, f"invalid timestamp {value!r}") from exc


def _parse_optional_time(value: Any, where: str) -> Optional[datetime]:
    if value is None:
        return None
    return _parse_time(value, where)


def _parse_enum(enum_cls, value: Any, where: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise RecordFormatError(where, f"unknown value {value!r}") from exc


def validate_name(name: Any) -> List[str]:
    """Validate a specification name and return any issues."""
    issues = []

    if not isinstance(name, str) or not name:
        issues.append("Specification name is required and must be a string")
        return issues
    if ".." in name or "/" in name or "\\" in name:
        issues.append("Specification name contains invalid characters")
    if not NAME_PATTERN.match(name):
        issues.append("Specification name must contain only alphanumeric characters, hyphens, and underscores")
    if len(name) > MAX_NAME_LENGTH:
        issues.append(f"Specification name must be {MAX_NAME_LENGTH} characters or less")

    return issues


def validate_description(description: Any) -> List[str]:
    """Validate a specification description and return any issues."""
    issues = []

    if not isinstance(description, str) or not description.strip():
        issues.append("Specification description is required and must be a string")
    elif len(description) > MAX_DESCRIPTION_LENGTH:
        issues.append(f"Specification description must be {MAX_DESCRIPTION_LENGTH} characters or less")

    return issues


@dataclass(slots=True)
class PhaseProgress:
    """Progress of a single tracked phase."""

    status: PhaseStatus = PhaseStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], where: str = "phase") -> "PhaseProgress":
        return cls(
            status=_parse_enum(PhaseStatus, _require(data, "status", where), f"{where}.status"),
            started_at=_parse_optional_time(data.get("started_at"), f"{where}.started_at"),
            completed_at=_parse_optional_time(data.get("completed_at"), f"{where}.completed_at"),
        )

    def start(self, when: datetime) -> None:
        self.status = PhaseStatus.IN_PROGRESS
        if self.started_at is None:
            self.started_at = when
        self.completed_at = None

    def complete(self, when: datetime) -> None:
        """Mark completed; a phase that never started cannot complete."""
        if self.status == PhaseStatus.PENDING:
            raise ValueError("A pending phase cannot be completed")
        self.status = PhaseStatus.COMPLETED
        self.completed_at = when


@dataclass(frozen=True, slots=True)
class ApprovalRecord:
    """Immutable reviewer decision gating entry into a phase."""

    phase: Phase
    approver: str
    decision: ApprovalDecision
    timestamp: datetime = field(default_factory=utcnow)
    comments: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def approved(self) -> bool:
        return self.decision == ApprovalDecision.APPROVED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "phase": self.phase.value,
            "approver": self.approver,
            "decision": self.decision.value,
            "timestamp": self.timestamp.isoformat(),
            "comments": self.comments,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], where: str = "approval") -> "ApprovalRecord":
        """Create from dictionary representation."""
        return cls(
            id=_require(data, "id", where),
            phase=_parse_enum(Phase, _require(data, "phase", where), f"{where}.phase"),
            approver=_require(data, "approver", where),
            decision=_parse_enum(ApprovalDecision, _require(data, "decision", where), f"{where}.decision"),
            timestamp=_parse_time(_require(data, "timestamp", where), f"{where}.timestamp"),
            comments=data.get("comments"),
        )


@dataclass(slots=True)
class FileRef:
    """Metadata for a rendered document, supplied by the file collaborator."""

    path: str = ""
    last_modified: Optional[datetime] = None
    size: int = 0
    exists: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "last_modified": _iso(self.last_modified),
            "size": self.size,
            "exists": self.exists,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], where: str = "file") -> "FileRef":
        if not isinstance(data, dict):
            raise RecordFormatError(where, "expected an object")
        size = data.get("size", 0)
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise RecordFormatError(f"{where}.size", f"invalid size {size!r}")
        return cls(
            path=str(data.get("path", "")),
            last_modified=_parse_optional_time(data.get("last_modified"), f"{where}.last_modified"),
            size=size,
            exists=bool(data.get("exists", False)),
        )


def _default_phases() -> Dict[Phase, PhaseProgress]:
    return {phase: PhaseProgress() for phase in TRACKED_PHASES}


def _default_files() -> Dict[str, FileRef]:
    return {name: FileRef() for name in DOCUMENT_NAMES}


@dataclass(slots=True)
class SpecRecord:
    """Durable aggregate state for one named specification."""

    name: str
    description: str
    author: str = "unknown"
    version: str = "1.0.0"
    created_at: datetime = field(default_factory=utcnow)
    last_modified: datetime = field(default_factory=utcnow)
    current_phase: Phase = Phase.INIT
    phases: Dict[Phase, PhaseProgress] = field(default_factory=_default_phases)
    approvals: List[ApprovalRecord] = field(default_factory=list)
    files: Dict[str, FileRef] = field(default_factory=_default_files)

    @classmethod
    def create(cls, name: str, description: str, author: Optional[str] = None) -> "SpecRecord":
        now = utcnow()
        return cls(
            name=name,
            description=description,
            author=author or "unknown",
            created_at=now,
            last_modified=now,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def phase_status(self, phase: Phase) -> Optional[PhaseStatus]:
        progress = self.phases.get(phase)
        return progress.status if progress else None

    def approvals_for(self, phase: Phase) -> List[ApprovalRecord]:
        return [approval for approval in self.approvals if approval.phase == phase]

    def has_approval(self, phase: Phase) -> bool:
        """Check if an approved decision exists for ``phase``."""
        return any(approval.approved for approval in self.approvals_for(phase))

    def latest_approval(self, phase: Phase) -> Optional[ApprovalRecord]:
        decisions = self.approvals_for(phase)
        return decisions[-1] if decisions else None

    def latest_approved(self, phase: Phase) -> Optional[ApprovalRecord]:
        for approval in reversed(self.approvals_for(phase)):
            if approval.approved:
                return approval
        return None

    def touch(self, when: Optional[datetime] = None) -> None:
        self.last_modified = when or utcnow()

    def copy(self) -> "SpecRecord":
        """Return an independent copy via the persisted representation."""
        return SpecRecord.from_dict(self.to_dict())

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the versioned persisted representation."""
        return {
            "schema_version": SCHEMA_VERSION,
            "metadata": {
                "name": self.name,
                "description": self.description,
                "author": self.author,
                "version": self.version,
                "created_at": self.created_at.isoformat(),
                "last_modified": self.last_modified.isoformat(),
            },
            "workflow": {
                "current_phase": self.current_phase.value,
                "phases": {phase.value: progress.to_dict() for phase, progress in self.phases.items()},
                "approvals": [approval.to_dict() for approval in self.approvals],
            },
            "files": {name: ref.to_dict() for name, ref in self.files.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpecRecord":
        """Create from the persisted representation.

        Unknown keys are ignored so newer writers stay readable. Missing
        required fields raise ``RecordFormatError`` naming the field.
        """
        metadata = _require(data, "metadata", "")
        workflow = _require(data, "workflow", "")

        name = _require(metadata, "name", "metadata")
        if validate_name(name):
            raise RecordFormatError("metadata.name", f"invalid specification name {name!r}")
        description = _require(metadata, "description", "metadata")
        if not isinstance(description, str):
            raise RecordFormatError("metadata.description", "expected a string")

        raw_phases = _require(workflow, "phases", "workflow")
        phases: Dict[Phase, PhaseProgress] = {}
        for phase in TRACKED_PHASES:
            where = f"workflow.phases.{phase.value}"
            phases[phase] = PhaseProgress.from_dict(_require(raw_phases, phase.value, "workflow.phases"), where)

        raw_approvals = _require(workflow, "approvals", "workflow")
        if not isinstance(raw_approvals, list):
            raise RecordFormatError("workflow.approvals", "expected a list")
        approvals = [
            ApprovalRecord.from_dict(item, f"workflow.approvals[{index}]")
            for index, item in enumerate(raw_approvals)
        ]

        files = _default_files()
        raw_files = data.get("files") or {}
        if not isinstance(raw_files, dict):
            raise RecordFormatError("files", "expected an object")
        for doc_name, ref in raw_files.items():
            if doc_name in files:
                files[doc_name] = FileRef.from_dict(ref, f"files.{doc_name}")

        return cls(
            name=name,
            description=description,
            author=metadata.get("author") or "unknown",
            version=metadata.get("version") or "1.0.0",
            created_at=_parse_time(_require(metadata, "created_at", "metadata"), "metadata.created_at"),
            last_modified=_parse_time(_require(metadata, "last_modified", "metadata"), "metadata.last_modified"),
            current_phase=_parse_enum(
                Phase, _require(workflow, "current_phase", "workflow"), "workflow.current_phase"
            ),
            phases=phases,
            approvals=approvals,
            files=files,
        )


@dataclass(slots=True)
class WorkflowEvent:
    """Single entry of the append-only workflow history."""

    spec_name: str
    phase: Phase
    action: str
    details: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "spec_name": self.spec_name,
            "phase": self.phase.value,
            "action": self.action,
            "details": self.details,
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowEvent":
        """Create from dictionary representation."""
        return cls(
            id=_require(data, "id", "event"),
            timestamp=_parse_time(_require(data, "timestamp", "event"), "event.timestamp"),
            spec_name=_require(data, "spec_name", "event"),
            phase=_parse_enum(Phase, _require(data, "phase", "event"), "event.phase"),
            action=_require(data, "action", "event"),
            details=data.get("details"),
            user_id=data.get("user_id"),
        )


@dataclass(frozen=True, slots=True)
class TransitionCheck:
    """Outcome of a non-mutating transition validation."""

    valid: bool
    current_phase: Phase
    target_phase: Phase
    requires_approval: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "current_phase": self.current_phase.value,
            "target_phase": self.target_phase.value,
            "requires_approval": self.requires_approval,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class NextAction:
    """Guidance for what a caller should do next with a specification."""

    action: str
    target_phase: Optional[Phase] = None
    approval_guidance: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "target_phase": self.target_phase.value if self.target_phase else None,
            "approval_guidance": self.approval_guidance,
        }


@dataclass(slots=True)
class WorkflowStep:
    """Represents a single step in the Specgate workflow."""

    step_number: int
    phase: Phase
    tool_name: str
    description: str
    purpose: str
    requires_approval: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "step": self.step_number,
            "phase": self.phase.value,
            "tool": self.tool_name,
            "description": self.description,
            "purpose": self.purpose,
            "requires_approval": self.requires_approval,
        }


# Workflow step definitions
WORKFLOW_STEPS = [
    WorkflowStep(
        step_number=1,
        phase=Phase.INIT,
        tool_name="initialize_spec",
        description="Create a new specification in the init phase",
        purpose="Register the unit of work and its description",
    ),
    WorkflowStep(
        step_number=2,
        phase=Phase.REQUIREMENTS,
        tool_name="request_transition",
        description="Enter the requirements phase and write requirements.md",
        purpose="Capture user stories and acceptance criteria",
    ),
    WorkflowStep(
        step_number=3,
        phase=Phase.DESIGN,
        tool_name="record_approval, request_transition",
        description="Approve the requirements, then enter the design phase",
        purpose="Develop technical approach and architecture",
        requires_approval=True,
    ),
    WorkflowStep(
        step_number=4,
        phase=Phase.TASKS,
        tool_name="record_approval, request_transition",
        description="Approve the design, then break it down into tasks",
        purpose="Create an executable checklist for implementation",
        requires_approval=True,
    ),
    WorkflowStep(
        step_number=5,
        phase=Phase.COMPLETE,
        tool_name="request_transition",
        description="Mark the specification complete once tasks are done",
        purpose="Close the workflow and freeze the documents",
    ),
]
