"""Append-only history of workflow actions.

Events are written as JSON lines, one file per specification. The log is
used for status and audit display only; SpecRecord state is never rebuilt
from it.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import CorruptState, NotFound, StorageFault
from .models import Phase, WorkflowEvent, validate_name

logger = logging.getLogger("specgate.events")

HISTORY_PREFIX = "history-"
HISTORY_SUFFIX = ".jsonl"


class EventLog:
    """Per-specification JSON-lines event history."""

    def __init__(self, state_dir: Path | str):
        self.state_dir = Path(state_dir)
        self._write_guard = threading.Lock()
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFault(f"Could not create history directory {self.state_dir}: {e}") from e

    def history_path(self, spec_name: str) -> Path:
        if validate_name(spec_name):
            raise NotFound(f"Specification '{spec_name}' not found", spec_name=spec_name)
        return self.state_dir / f"{HISTORY_PREFIX}{spec_name}{HISTORY_SUFFIX}"

    def append(self, event: WorkflowEvent) -> None:
        """Durably append ``event``; storage faults are raised, never dropped."""
        path = self.history_path(event.spec_name)
        line = json.dumps(event.to_dict(), default=str) + "\n"

        with self._write_guard:
            try:
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
                    handle.flush()
                    os.fsync(handle.fileno())
            except OSError as e:
                raise StorageFault(
                    f"Could not append event for '{event.spec_name}': {e}",
                    spec_name=event.spec_name,
                    phase=event.phase,
                ) from e

        logger.info(
            f"Workflow event: {event.action} ({event.spec_name}/{event.phase.value})",
            extra={"extra_fields": event.to_dict()},
        )

    def record(
        self,
        spec_name: str,
        phase: Phase,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> WorkflowEvent:
        """Build and append an event in one call."""
        event = WorkflowEvent(
            spec_name=spec_name,
            phase=phase,
            action=action,
            details=details,
            user_id=user_id,
        )
        self.append(event)
        return event

    def tail(self, spec_name: str, limit: int = 5) -> List[WorkflowEvent]:
        """Return up to ``limit`` most recent events, oldest first."""
        if limit <= 0:
            return []
        path = self.history_path(spec_name)
        recent: deque = deque(maxlen=limit)

        try:
            with path.open("r", encoding="utf-8") as handle:
                for line_number, line in enumerate(handle, start=1):
                    if line.strip():
                        recent.append((line_number, line))
        except FileNotFoundError:
            return []
        except UnicodeDecodeError as e:
            raise CorruptState(
                f"History for '{spec_name}' is not valid UTF-8",
                path=str(path),
                spec_name=spec_name,
            ) from e
        except OSError as e:
            raise StorageFault(f"Could not read history for '{spec_name}': {e}", spec_name=spec_name) from e

        events = []
        for line_number, line in recent:
            try:
                events.append(WorkflowEvent.from_dict(json.loads(line)))
            except ValueError as e:
                # JSONDecodeError and RecordFormatError are both ValueErrors
                raise CorruptState(
                    f"History for '{spec_name}' is malformed at line {line_number}: {e}",
                    field=f"line {line_number}",
                    path=str(path),
                    spec_name=spec_name,
                ) from e
        return events
