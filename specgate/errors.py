"""Error taxonomy for the Specgate workflow engine.

Every error carries the specification name and phase it relates to so a
caller can reproduce the failure. Validation errors are deterministic and
never retried; storage errors are infrastructure faults.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .models import Phase


class SpecgateError(Exception):
    """Base class for all engine failures."""

    code = "SPECGATE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        spec_name: Optional[str] = None,
        phase: Optional["Phase"] = None,
    ):
        super().__init__(message)
        self.message = message
        self.spec_name = spec_name
        self.phase = phase

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "message": self.message,
            "spec_name": self.spec_name,
            "phase": self.phase.value if self.phase is not None else None,
        }


class ValidationError(SpecgateError):
    """Caller-facing failure; retrying with the same arguments fails again."""

    code = "VALIDATION_ERROR"


class InvalidName(ValidationError):
    code = "INVALID_NAME"


class InvalidDescription(ValidationError):
    code = "INVALID_DESCRIPTION"


class InvalidApprover(ValidationError):
    code = "INVALID_APPROVER"


class InvalidDocument(ValidationError):
    code = "INVALID_DOCUMENT"


class InvalidDecision(ValidationError):
    code = "INVALID_DECISION"


class DuplicateName(ValidationError):
    code = "DUPLICATE_NAME"


class NotFound(SpecgateError):
    code = "NOT_FOUND"


class IllegalTransition(ValidationError):
    """Target phase is not a direct successor of the current phase."""

    code = "ILLEGAL_TRANSITION"

    def __init__(self, current: "Phase", target: "Phase", *, spec_name: Optional[str] = None):
        super().__init__(
            f"Cannot transition from {current.value} to {target.value}",
            spec_name=spec_name,
            phase=target,
        )
        self.current = current
        self.target = target


class ApprovalRequired(ValidationError):
    code = "APPROVAL_REQUIRED"

    def __init__(self, target: "Phase", *, spec_name: Optional[str] = None):
        super().__init__(
            f"Approval required before entering {target.value}",
            spec_name=spec_name,
            phase=target,
        )


class InvalidPhase(ValidationError):
    code = "INVALID_PHASE"


class StorageFault(SpecgateError):
    """Underlying storage could not be read or written."""

    code = "STORAGE_FAULT"


class LockTimeout(StorageFault):
    code = "LOCK_TIMEOUT"


class CorruptState(SpecgateError):
    """Persisted data failed structural validation."""

    code = "CORRUPT_STATE"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        path: Optional[str] = None,
        spec_name: Optional[str] = None,
    ):
        super().__init__(message, spec_name=spec_name)
        self.field = field
        self.path = path

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        data["path"] = self.path
        return data
