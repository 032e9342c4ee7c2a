"""Per-working-directory mutual exclusion for batch runs.

The lock is a JSON file under the system temp directory named after a hash of
the absolute working directory::

    {"pid": 4242, "cwd": "/repo", "startTime": "...", "hostname": "build-1",
     "agents": ["tech-design", "implement"]}

A present lock is cleared when it is unparseable, when its owner pid is no
longer alive, or when it is older than the stale timeout. A stale timeout of
zero always force-clears.
"""

from __future__ import annotations

import atexit
import hashlib
import json
import os
import signal
import socket
import tempfile
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from loguru import logger

from .constants import DEFAULT_STALE_TIMEOUT_MINUTES, LOCK_FILE_PREFIX
from .errors import LockHeldError
from .models import LockRecord
from .utils import _now_iso, _parse_iso, format_duration, is_process_alive

_HELD_LOCKS: "weakref.WeakSet[ProcessLock]" = weakref.WeakSet()
_HOOKS_INSTALLED = False
_HOOKS_GUARD = threading.Lock()


def lock_path_for(cwd: Path, lock_dir: Optional[Path] = None) -> Path:
    digest = hashlib.sha256(str(cwd).encode("utf-8")).hexdigest()
    base = lock_dir if lock_dir is not None else Path(tempfile.gettempdir())
    return base / f"{LOCK_FILE_PREFIX}{digest}.lock"


def _release_all_held() -> None:
    for lock in list(_HELD_LOCKS):
        lock.release()


def _on_sigterm(signum: int, frame: object) -> None:
    # Unwind through finally blocks; atexit then releases anything still held.
    raise SystemExit(128 + signum)


def _install_exit_hooks() -> None:
    global _HOOKS_INSTALLED
    with _HOOKS_GUARD:
        if _HOOKS_INSTALLED:
            return
        _HOOKS_INSTALLED = True
        atexit.register(_release_all_held)
        if threading.current_thread() is not threading.main_thread():
            return
        try:
            if signal.getsignal(signal.SIGTERM) in (signal.SIG_DFL, None):
                signal.signal(signal.SIGTERM, _on_sigterm)
        except (ValueError, OSError) as exc:
            logger.debug("Could not install SIGTERM handler: {}", exc)


class ProcessLock:
    """Filesystem lock guaranteeing one batch run per working directory.

    Args:
        cwd: Working directory to guard. Defaults to the current directory.
        lock_dir: Directory holding lock files. Defaults to the system temp dir.
        is_process_alive: Liveness probe for the recorded owner pid.
        now: Clock used for stale-age checks.
    """

    def __init__(
        self,
        cwd: Optional[Path] = None,
        *,
        lock_dir: Optional[Path] = None,
        is_process_alive: Callable[[int], bool] = is_process_alive,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cwd = Path(cwd or os.getcwd()).resolve()
        self.path = lock_path_for(self.cwd, lock_dir)
        self._is_alive = is_process_alive
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._record: Optional[LockRecord] = None
        self.last_owner: Optional[LockRecord] = None

    @property
    def held(self) -> bool:
        return self._record is not None

    def _read(self) -> Optional[LockRecord]:
        """Return the on-disk record, ``None`` if absent.

        Raises:
            ValueError: If the file exists but is not a valid lock record.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(str(exc)) from exc
        record = LockRecord.from_json(data)
        if _parse_iso(record.start_time) is None:
            raise ValueError(f"invalid startTime {record.start_time!r}")
        return record

    def _create(self, record: LockRecord) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(record.to_json(), handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        return True

    def _remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def _age_seconds(self, record: LockRecord) -> float:
        started = _parse_iso(record.start_time)
        if started is None:
            return 0.0
        return max(0.0, (self._now() - started).total_seconds())

    def acquire(
        self,
        stale_timeout_minutes: int = DEFAULT_STALE_TIMEOUT_MINUTES,
        agents: Iterable[str] = (),
    ) -> bool:
        """Try to take the lock. Returns False when another live run owns it."""
        if self._record is not None:
            return True

        record = LockRecord(
            pid=os.getpid(),
            cwd=str(self.cwd),
            start_time=_now_iso(),
            hostname=socket.gethostname(),
            agents=list(agents),
        )

        if not self._create(record):
            if not self._clear_if_stale(stale_timeout_minutes):
                return False
            if not self._create(record):
                # Another run re-took the lock between our clear and create.
                logger.warning("Lock {} was re-acquired by another process; not proceeding", self.path)
                try:
                    self.last_owner = self._read()
                except ValueError:
                    self.last_owner = None
                return False

        self._record = record
        self.last_owner = None
        _HELD_LOCKS.add(self)
        _install_exit_hooks()
        logger.debug("Acquired directory lock {} (pid {})", self.path, record.pid)
        return True

    def _clear_if_stale(self, stale_timeout_minutes: int) -> bool:
        """Inspect an existing lock and delete it if it may be taken over."""
        try:
            existing = self._read()
        except ValueError as exc:
            logger.warning("Lock file {} is corrupt ({}); removing", self.path, exc)
            self._remove()
            return True

        if existing is None:
            return True

        if not self._is_alive(existing.pid):
            logger.warning(
                "Clearing lock from crashed process (PID {}, started {})",
                existing.pid,
                existing.start_time,
            )
            self._remove()
            return True

        age = self._age_seconds(existing)
        if stale_timeout_minutes == 0:
            logger.warning(
                "Force-clearing lock held by PID {} (age {}, agents: {})",
                existing.pid,
                format_duration(age),
                ", ".join(existing.agents) or "none",
            )
            self._remove()
            return True
        if stale_timeout_minutes > 0 and age > stale_timeout_minutes * 60:
            logger.warning(
                "Lock held by PID {} is stale ({} > {}m); force-clearing",
                existing.pid,
                format_duration(age),
                stale_timeout_minutes,
            )
            self._remove()
            return True

        self.last_owner = existing
        logger.error(
            "Another agent run is active in this directory\n"
            "  PID: {}\n  Host: {}\n  Running for: {}\n  Agents: {}\n"
            "Wait for it to finish, or pass --stale-timeout 0 to force.",
            existing.pid,
            existing.hostname or "unknown",
            format_duration(age),
            ", ".join(existing.agents) or "none",
        )
        return False

    def release(self) -> None:
        """Delete the lock file if this instance still owns it. Idempotent."""
        record = self._record
        if record is None:
            return
        self._record = None
        _HELD_LOCKS.discard(self)
        try:
            current = self._read()
        except ValueError as exc:
            logger.warning("Lock file {} unreadable on release ({}); leaving it", self.path, exc)
            return
        except OSError as exc:
            logger.warning("Failed to read lock file {} on release: {}", self.path, exc)
            return
        if current is None:
            return
        if current.pid != record.pid or current.start_time != record.start_time:
            logger.warning(
                "Lock {} now belongs to PID {}; not removing",
                self.path,
                current.pid,
            )
            return
        try:
            self._remove()
        except OSError as exc:
            logger.warning("Failed to remove lock file {}: {}", self.path, exc)
            return
        logger.debug("Released directory lock {}", self.path)

    @contextmanager
    def hold(
        self,
        stale_timeout_minutes: int = DEFAULT_STALE_TIMEOUT_MINUTES,
        agents: Iterable[str] = (),
    ) -> Iterator["ProcessLock"]:
        """Hold the lock for the duration of the block.

        Raises:
            LockHeldError: If another live run owns the lock.
        """
        if not self.acquire(stale_timeout_minutes, agents):
            owner = self.last_owner.to_json() if self.last_owner else None
            raise LockHeldError(str(self.path), owner)
        try:
            yield self
        finally:
            self.release()
