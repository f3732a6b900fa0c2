"""Specgate - workflow state engine for spec-driven development."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__all__ = [
    "WorkflowEngine",
    "PhaseGraph",
    "StateStore",
    "EventLog",
    "SpecRecord",
    "ApprovalRecord",
    "EngineConfig",
]
