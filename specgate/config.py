"""Engine configuration read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Mapping, Optional

from .models import Phase
from .phase_graph import DEFAULT_APPROVAL_PHASES

PROJECT_ROOT_ENV = "SPECGATE_PROJECT_ROOT"
STORAGE_DIR_ENV = "SPECGATE_STORAGE_DIR"
CACHE_TTL_ENV = "SPECGATE_CACHE_TTL"
LOCK_TIMEOUT_ENV = "SPECGATE_LOCK_TIMEOUT"
APPROVAL_PHASES_ENV = "SPECGATE_APPROVAL_PHASES"
DEFAULT_AUTHOR_ENV = "SPECGATE_DEFAULT_AUTHOR"
LOG_LEVEL_ENV = "SPECGATE_LOG_LEVEL"
LOG_FILE_ENV = "SPECGATE_LOG_FILE"

DEFAULT_STORAGE_DIR = ".specgate"
DEFAULT_CACHE_TTL = 300.0
DEFAULT_LOCK_TIMEOUT = 30.0


def _parse_seconds(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


def parse_approval_phases(raw: str) -> FrozenSet[Phase]:
    """Parse a comma separated phase list such as ``"design,tasks"``."""
    phases = set()
    for item in raw.split(","):
        item = item.strip().lower()
        if not item:
            continue
        try:
            phases.add(Phase(item))
        except ValueError as exc:
            raise ValueError(f"{APPROVAL_PHASES_ENV} contains unknown phase {item!r}") from exc
    return frozenset(phases)


@dataclass(slots=True)
class EngineConfig:
    """Settings shared by the store, event log and engine."""

    root: Path
    storage_dir: str = DEFAULT_STORAGE_DIR
    cache_ttl: float = DEFAULT_CACHE_TTL
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    approval_phases: FrozenSet[Phase] = field(default_factory=lambda: DEFAULT_APPROVAL_PHASES)
    default_author: str = "unknown"
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @property
    def base_dir(self) -> Path:
        return self.root / self.storage_dir

    @property
    def state_dir(self) -> Path:
        return self.base_dir / "state"

    @classmethod
    def from_env(cls, root: Optional[Path | str] = None, env: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build a config from ``SPECGATE_*`` variables.

        An explicit ``root`` wins over ``SPECGATE_PROJECT_ROOT``; the current
        directory is used when neither is set.
        """
        env = os.environ if env is None else env

        if root is None:
            root = env.get(PROJECT_ROOT_ENV) or Path.cwd()
        resolved = Path(root).expanduser().resolve()

        approval_raw = env.get(APPROVAL_PHASES_ENV)
        approval_phases = (
            parse_approval_phases(approval_raw) if approval_raw is not None else DEFAULT_APPROVAL_PHASES
        )

        log_file = env.get(LOG_FILE_ENV)

        return cls(
            root=resolved,
            storage_dir=env.get(STORAGE_DIR_ENV) or DEFAULT_STORAGE_DIR,
            cache_ttl=_parse_seconds(env, CACHE_TTL_ENV, DEFAULT_CACHE_TTL),
            lock_timeout=_parse_seconds(env, LOCK_TIMEOUT_ENV, DEFAULT_LOCK_TIMEOUT),
            approval_phases=approval_phases,
            default_author=env.get(DEFAULT_AUTHOR_ENV) or "unknown",
            log_level=(env.get(LOG_LEVEL_ENV) or "INFO").upper(),
            log_file=Path(log_file).expanduser() if log_file else None,
        )
