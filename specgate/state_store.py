"""Durable storage for specification records.

Each record lives in its own JSON document under the state directory.
Writes go to a temporary file that is atomically swapped into place, reads
are served from a short-lived in-memory cache, and mutations on one name are
serialized by a per-name lock that also holds across processes.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .errors import CorruptState, LockTimeout, NotFound, StorageFault
from .models import SCHEMA_VERSION, RecordFormatError, SpecRecord, validate_name

logger = logging.getLogger("specgate.state")

RECORD_PREFIX = "spec-"
RECORD_SUFFIX = ".json"
LOCK_POLL_INTERVAL = 0.02


@dataclass(slots=True)
class _CacheEntry:
    record: SpecRecord
    refreshed_at: float


class StateStore:
    """Single source of truth for SpecRecord state."""

    def __init__(
        self,
        state_dir: Path | str,
        *,
        cache_ttl: float = 300.0,
        lock_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state_dir = Path(state_dir)
        self.locks_dir = self.state_dir / "locks"
        self.cache_ttl = cache_ttl
        self.lock_timeout = lock_timeout
        self._clock = clock

        self._cache: Dict[str, _CacheEntry] = {}
        # Bumped by save and invalidate so a slower read cannot refill the cache
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._cache_guard = threading.Lock()
        self._name_locks: Dict[str, threading.Lock] = {}
        self._name_locks_guard = threading.Lock()

        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self.locks_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFault(f"Could not create state directory {self.state_dir}: {e}") from e

    @classmethod
    def from_config(cls, config) -> "StateStore":
        return cls(config.state_dir, cache_ttl=config.cache_ttl, lock_timeout=config.lock_timeout)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def record_path(self, name: str) -> Path:
        self._check_name(name)
        return self.state_dir / f"{RECORD_PREFIX}{name}{RECORD_SUFFIX}"

    def _lock_path(self, name: str) -> Path:
        return self.locks_dir / f"{name}.lock"

    @staticmethod
    def _check_name(name: str) -> None:
        # Names reach the filesystem, so anything outside the pattern is unknown
        if validate_name(name):
            raise NotFound(f"Specification '{name}' not found", spec_name=name)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists(self, name: str) -> bool:
        """Check durable storage for ``name``; the cache is not consulted."""
        try:
            return self.record_path(name).exists()
        except NotFound:
            return False

    def load(self, name: str, *, fresh: bool = False) -> SpecRecord:
        """Return the record for ``name``.

        A cached copy is served while it is younger than ``cache_ttl`` unless
        ``fresh`` is set. Callers always receive their own copy.
        """
        path = self.record_path(name)

        if not fresh:
            cached = self._cached(name)
            if cached is not None:
                return cached

        generation = self._generation(name)
        text = self._read_document(name, path)
        record = self._parse_document(name, path, text)
        self._remember(record, generation)
        return record.copy()

    def list_all(self) -> List[SpecRecord]:
        """Return every stored record ordered by creation time."""
        records = []
        for path in self.state_dir.glob(f"{RECORD_PREFIX}*{RECORD_SUFFIX}"):
            name = path.name[len(RECORD_PREFIX):-len(RECORD_SUFFIX)]
            if validate_name(name):
                logger.warning(f"Ignoring state file with invalid name: {path}")
                continue
            try:
                records.append(self.load(name))
            except NotFound:
                # Removed between glob and read
                continue
        records.sort(key=lambda record: (record.created_at, record.name))
        return records

    def _read_document(self, name: str, path: Path) -> str:
        for attempt in (1, 2):
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                raise NotFound(f"Specification '{name}' not found", spec_name=name) from None
            except UnicodeDecodeError as e:
                raise CorruptState(
                    f"State file for '{name}' is not valid UTF-8",
                    path=str(path),
                    spec_name=name,
                ) from e
            except OSError as e:
                if attempt == 2:
                    raise StorageFault(f"Could not read state for '{name}': {e}", spec_name=name) from e
                logger.warning(f"Retrying read of {path} after error: {e}")
        raise AssertionError("unreachable")

    def _parse_document(self, name: str, path: Path, text: str) -> SpecRecord:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptState(
                f"State file for '{name}' is not valid JSON: {e}",
                path=str(path),
                spec_name=name,
            ) from e

        if not isinstance(data, dict):
            raise CorruptState(
                f"State file for '{name}' must hold an object",
                path=str(path),
                spec_name=name,
            )

        version = data.get("schema_version")
        if not isinstance(version, int) or isinstance(version, bool):
            raise CorruptState(
                f"State file for '{name}' has no valid schema_version",
                field="schema_version",
                path=str(path),
                spec_name=name,
            )
        if version > SCHEMA_VERSION:
            logger.warning(
                f"State file {path} uses schema_version {version}; reading known fields of version {SCHEMA_VERSION}"
            )

        try:
            record = SpecRecord.from_dict(data)
        except RecordFormatError as e:
            raise CorruptState(
                f"State file for '{name}' failed validation at {e.field_path}: {e}",
                field=e.field_path,
                path=str(path),
                spec_name=name,
            ) from e

        if record.name != name:
            raise CorruptState(
                f"State file for '{name}' holds record '{record.name}'",
                field="metadata.name",
                path=str(path),
                spec_name=name,
            )
        return record

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, record: SpecRecord) -> None:
        """Persist ``record`` atomically and refresh the cache entry."""
        path = self.record_path(record.name)
        content = json.dumps(record.to_dict(), indent=2)

        try:
            self._atomic_write(path, content)
        except OSError as e:
            raise StorageFault(f"Could not write state for '{record.name}': {e}", spec_name=record.name) from e

        with self._cache_guard:
            self._generations[record.name] = self._generations.get(record.name, 0) + 1
            self._cache[record.name] = _CacheEntry(record=record.copy(), refreshed_at=self._clock())
        logger.debug(f"Saved state for {record.name} ({record.current_phase.value})")

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cached(self, name: str) -> Optional[SpecRecord]:
        with self._cache_guard:
            entry = self._cache.get(name)
            if entry is None:
                return None
            if self._clock() - entry.refreshed_at >= self.cache_ttl:
                del self._cache[name]
                return None
            return entry.record.copy()

    def _generation(self, name: str) -> Tuple[int, int]:
        with self._cache_guard:
            return self._epoch, self._generations.get(name, 0)

    def _remember(self, record: SpecRecord, generation: Tuple[int, int]) -> None:
        """Cache a record read from disk unless a save or invalidate happened since."""
        with self._cache_guard:
            if (self._epoch, self._generations.get(record.name, 0)) != generation:
                return
            self._cache[record.name] = _CacheEntry(record=record, refreshed_at=self._clock())

    def invalidate(self, name: Optional[str] = None) -> None:
        """Drop one cache entry, or all of them."""
        with self._cache_guard:
            if name is None:
                self._epoch += 1
                self._cache.clear()
            else:
                self._generations[name] = self._generations.get(name, 0) + 1
                self._cache.pop(name, None)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _thread_lock(self, name: str) -> threading.Lock:
        with self._name_locks_guard:
            lock = self._name_locks.get(name)
            if lock is None:
                lock = self._name_locks[name] = threading.Lock()
            return lock

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        """Hold the exclusive mutation lock for ``name``.

        Only one name is ever locked at a time by the engine, so no lock
        ordering between names is needed.
        """
        self._check_name(name)
        deadline = time.monotonic() + self.lock_timeout

        thread_lock = self._thread_lock(name)
        if not thread_lock.acquire(timeout=self.lock_timeout):
            raise LockTimeout(
                f"Could not acquire lock for '{name}' within {self.lock_timeout}s",
                spec_name=name,
            )
        try:
            with self._file_lock(name, deadline):
                yield
        finally:
            thread_lock.release()

    @contextmanager
    def _file_lock(self, name: str, deadline: float) -> Iterator[None]:
        # Sidecar file so the record itself can be replaced while locked
        lock_path = self._lock_path(name)
        try:
            handle = lock_path.open("a+", encoding="utf-8")
        except OSError as e:
            raise StorageFault(f"Could not open lock file {lock_path}: {e}", spec_name=name) from e

        with handle:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeout(
                            f"Could not acquire lock for '{name}' within {self.lock_timeout}s",
                            spec_name=name,
                        ) from None
                    time.sleep(LOCK_POLL_INTERVAL)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
