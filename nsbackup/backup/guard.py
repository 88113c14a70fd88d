"""
Run guard - allows at most one backup run per database target.

The guard is the single source of truth for "a backup is in progress". It does
not implement cooldowns; the rate-limit precondition reads last_completed_at
and applies its own policy.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

from .errors import AlreadyRunningError


IDLE = 'idle'
RUNNING = 'running'


class RunGuard:
    """
    Atomic check-and-set gate for one database target.
    """

    def __init__(self, target: str):
        self.target = target
        self._lock = threading.Lock()
        self._status = IDLE
        self._started_at: Optional[datetime] = None
        self._last_completed_at: Optional[datetime] = None

    def try_admit(self):
        """
        Admit a run.

        Raises:
            AlreadyRunningError: If a run is already in progress
        """
        with self._lock:
            if self._status == RUNNING:
                raise AlreadyRunningError(
                    f"Backup already running for {self.target} (started {self._started_at.isoformat()})"
                )
            self._status = RUNNING
            self._started_at = datetime.now(timezone.utc)

    def release(self):
        """Mark the current run as finished. Safe to call when idle."""
        with self._lock:
            if self._status == RUNNING:
                self._last_completed_at = datetime.now(timezone.utc)
            self._status = IDLE
            self._started_at = None

    @contextmanager
    def admitted(self):
        """Admit a run for the duration of the block, releasing on any exit."""
        self.try_admit()
        try:
            yield self
        finally:
            self.release()

    def is_running(self) -> bool:
        with self._lock:
            return self._status == RUNNING

    @property
    def last_completed_at(self) -> Optional[datetime]:
        with self._lock:
            return self._last_completed_at

    def state(self) -> dict:
        """Snapshot of the run state for status endpoints."""
        with self._lock:
            return {
                'target': self.target,
                'status': self._status,
                'started_at': self._started_at.isoformat() if self._started_at else None,
                'last_completed_at': self._last_completed_at.isoformat() if self._last_completed_at else None
            }


_guards: Dict[str, RunGuard] = {}
_guards_lock = threading.Lock()


def get_guard(target: str) -> RunGuard:
    """
    Get the process-wide guard for a database target.

    Args:
        target: Database identifier (e.g. database name)

    Returns:
        RunGuard shared by every caller using the same target
    """
    with _guards_lock:
        guard = _guards.get(target)
        if guard is None:
            guard = RunGuard(target)
            _guards[target] = guard
        return guard


def reset_guards():
    """Forget all guards. Intended for tests."""
    with _guards_lock:
        _guards.clear()
