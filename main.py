"""MCP server exposing the Specgate workflow engine as tools."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from specgate.config import PROJECT_ROOT_ENV, EngineConfig
from specgate.errors import (
    ApprovalRequired,
    CorruptState,
    DuplicateName,
    IllegalTransition,
    NotFound,
    SpecgateError,
    StorageFault,
)
from specgate.models import SpecRecord
from specgate.specgate_logging import setup_logging
from specgate.workflow import WorkflowEngine

mcp = FastMCP("specgate")


PROJECT_MARKER_DIRECTORIES = (".specgate",)

_ENGINES: Dict[Path, WorkflowEngine] = {}
_ENGINES_GUARD = threading.Lock()


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    return [cwd, *cwd.parents]


def _locate_workspace_root() -> Optional[Path]:
    for base in _candidate_bases():
        for marker in PROJECT_MARKER_DIRECTORIES:
            if (base / marker).is_dir():
                return base
    return None


def _resolve_root(root: Optional[str], *, create: bool = False) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(PROJECT_ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {PROJECT_ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    detected_root = _locate_workspace_root()
    if detected_root:
        return detected_root

    if create:
        return Path.cwd().resolve()

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        f"or set the {PROJECT_ROOT_ENV} environment variable."
    )


def _engine(root: Optional[str], *, create: bool = False) -> WorkflowEngine:
    resolved = _resolve_root(root, create=create)
    # One engine per root so its locks and cache are shared by every tool call
    with _ENGINES_GUARD:
        engine = _ENGINES.get(resolved)
        if engine is None:
            engine = _ENGINES[resolved] = WorkflowEngine.from_config(EngineConfig.from_env(resolved))
        return engine


def _suggestion(error: SpecgateError) -> str:
    if isinstance(error, ApprovalRequired):
        phase = error.phase.value if error.phase else "the next phase"
        return (
            f"Approval required before entering {phase}. Call record_approval with phase='{phase}' "
            "and decision='approved', then request the transition again."
        )
    if isinstance(error, IllegalTransition):
        return (
            f"Phases advance one step at a time; from {error.current.value} request the next phase "
            "shown by get_spec_status."
        )
    if isinstance(error, NotFound):
        return "Call initialize_spec first, or use list_specs to find existing specifications."
    if isinstance(error, DuplicateName):
        return "Choose a different name or continue the existing specification with get_spec_status."
    if isinstance(error, CorruptState):
        return f"Repair or restore the state file {error.path} (field: {error.field or 'document'})."
    if isinstance(error, StorageFault):
        return "Check that the project directory is writable and retry."
    return "Correct the arguments and call the tool again."


def _error_payload(error: SpecgateError) -> Dict[str, Any]:
    return {
        "success": False,
        "error": error.message,
        "code": error.code,
        "details": error.to_dict(),
        "suggestion": _suggestion(error),
    }


def _record_payload(engine: WorkflowEngine, record: SpecRecord, message: str) -> Dict[str, Any]:
    next_action = engine.next_action(record)
    return {
        "success": True,
        "spec_name": record.name,
        "current_phase": record.current_phase.value,
        "record": record.to_dict(),
        "next_action": next_action.to_dict(),
        "workflow_tip": next_action.approval_guidance or f"Next: {next_action.action}",
        "message": message,
    }


@mcp.tool()
def initialize_spec(
    name: str,
    description: str,
    author: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 1: Create a new specification in the init phase.
    Names may contain only letters, digits, hyphens and underscores (max 50 characters)."""

    engine = _engine(root, create=True)
    try:
        record = engine.initialize(name, description, author=author)
    except SpecgateError as e:
        return _error_payload(e)
    return _record_payload(engine, record, f"Specification '{name}' initialized.")


@mcp.tool()
def request_transition(
    spec_name: str,
    target_phase: str,
    actor: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Advance a specification to the next phase.
    Entering an approval-gated phase requires an approved decision recorded via record_approval.
    Requesting the current phase again is a safe no-op."""

    engine = _engine(root)
    try:
        record = engine.request_transition(spec_name, target_phase, actor=actor)
    except SpecgateError as e:
        return _error_payload(e)
    return _record_payload(engine, record, f"'{spec_name}' is in the {record.current_phase.value} phase.")


@mcp.tool()
def record_approval(
    spec_name: str,
    phase: str,
    approver: str,
    decision: str,
    comments: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a reviewer's 'approved' or 'rejected' decision for the phase the specification enters next.
    A rejection is kept for audit and does not move the specification."""

    engine = _engine(root)
    try:
        approval = engine.record_approval(spec_name, phase, approver, decision, comments=comments)
    except SpecgateError as e:
        return _error_payload(e)
    return {
        "success": True,
        "spec_name": spec_name,
        "approval": approval.to_dict(),
        "next_suggested_step": "request_transition" if approval.approved else "record_approval",
        "message": f"Recorded {approval.decision.value} decision for {approval.phase.value}.",
    }


@mcp.tool()
def update_phase_progress(
    spec_name: str,
    phase: str,
    completed: bool,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Mark the current phase's document completed, or reopen it."""

    engine = _engine(root)
    try:
        record = engine.mark_phase_progress(spec_name, phase, completed)
    except SpecgateError as e:
        return _error_payload(e)
    state = "completed" if completed else "in progress"
    return _record_payload(engine, record, f"Phase {phase} marked {state}.")


@mcp.tool()
def validate_phase_transition(spec_name: str, target_phase: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Check whether a transition would be accepted, without changing anything."""

    engine = _engine(root)
    try:
        check = engine.check_transition(spec_name, target_phase)
    except SpecgateError as e:
        return _error_payload(e)
    return {"success": True, "spec_name": spec_name, **check.to_dict()}


@mcp.tool()
def update_file_refs(
    spec_name: str,
    files: Dict[str, Dict[str, Any]],
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Report metadata (path, last_modified, size, exists) for the requirements, design or tasks documents."""

    engine = _engine(root)
    try:
        record = engine.update_file_refs(spec_name, files)
    except SpecgateError as e:
        return _error_payload(e)
    return _record_payload(engine, record, f"Updated file metadata for {', '.join(sorted(files))}.")


@mcp.tool()
def get_spec_status(spec_name: str, limit: int = 5, root: Optional[str] = None) -> Dict[str, Any]:
    """Return current phase, per-phase progress, next action and recent events for a specification."""

    engine = _engine(root)
    try:
        status = engine.describe(spec_name, limit=limit)
    except SpecgateError as e:
        return _error_payload(e)
    return {"success": True, **status}


@mcp.tool()
def list_specs(root: Optional[str] = None) -> Dict[str, Any]:
    """Enumerate specifications in creation order."""

    engine = _engine(root)
    try:
        records = engine.list_specs()
    except SpecgateError as e:
        return _error_payload(e)
    return {
        "success": True,
        "specs": [
            {
                "name": record.name,
                "description": record.description,
                "current_phase": record.current_phase.value,
                "created_at": record.created_at.isoformat(),
            }
            for record in records
        ],
        "count": len(records),
        "message": f"Found {len(records)} specifications" if records else "No specifications yet. Use initialize_spec to create one.",
    }


@mcp.tool()
def get_workflow_history(spec_name: str, limit: int = 20, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the most recent workflow events for a specification, oldest first."""

    engine = _engine(root)
    try:
        events = engine.history(spec_name, limit=limit)
    except SpecgateError as e:
        return _error_payload(e)
    return {"success": True, "spec_name": spec_name, "events": [event.to_dict() for event in events]}


@mcp.tool()
def get_workflow_guide(root: Optional[str] = None) -> Dict[str, Any]:
    """Describe the phases, their order and which ones need approval."""

    return _engine(root, create=True).workflow_guide()


@mcp.resource("specgate://specs")
def resource_specs() -> str:
    """Resource view listing specifications and their phases."""

    try:
        engine = _engine(None)
    except ValueError:
        return f"No project root detected. Launch tools with a 'root' argument or set {PROJECT_ROOT_ENV}."

    try:
        records = engine.list_specs()
    except SpecgateError as e:
        return f"{e.message}\n{_suggestion(e)}"
    if not records:
        return "No specifications have been initialized yet."

    lines = ["Specgate Specifications"]
    for record in records:
        lines.append("")
        lines.append(f"- {record.name}: {record.description}")
        lines.append(f"  Phase: {record.current_phase.value}")
        for doc_name, ref in record.files.items():
            if ref.exists:
                lines.append(f"  {doc_name.capitalize()}: {ref.path}")

    return "\n".join(lines)


if __name__ == "__main__":
    config = EngineConfig.from_env()
    setup_logging(config.log_level, config.log_file)
    mcp.run(transport="stdio")
