"""Per-profile exclusive locks.

A profile lock is held for the whole of a sync, switch, track or untrack.
Inside one process a ``threading.Lock`` orders callers; across processes a
lock file created with ``O_CREAT | O_EXCL`` does. The lock file records who
holds it so a lock left behind by a dead process on this host can be
reclaimed.

Usage::

    with ProfileLock(locks_dir, "dark", operation="sync"):
        ...
"""

import json
import logging
import os
import socket
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .core import read_json
from .exceptions import LockTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
POLL_INTERVAL = 0.05
# A lock file that cannot be parsed after this many seconds was left half-written
CORRUPT_LOCK_AGE = 5.0

_process_locks: Dict[Path, threading.Lock] = {}
_registry_lock = threading.Lock()


def _process_lock(path: Path) -> threading.Lock:
    with _registry_lock:
        return _process_locks.setdefault(path, threading.Lock())


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # No signal-0 liveness check on Windows; never reclaim there
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProfileLock:
    """Exclusive lock on one profile."""

    def __init__(
        self,
        locks_dir: Path,
        profile_id: str,
        timeout: float = DEFAULT_TIMEOUT,
        operation: str = "",
    ) -> None:
        self.locks_dir = Path(locks_dir)
        self.profile_id = profile_id
        self.timeout = timeout
        self.operation = operation
        self.path = self.locks_dir / f"{profile_id}.lock"
        self._thread_lock = _process_lock(self.path)
        self._held = False

    def __enter__(self) -> "ProfileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()

    def acquire(self) -> None:
        """Take the lock or raise LockTimeout after ``timeout`` seconds."""
        deadline = time.monotonic() + self.timeout
        if not self._thread_lock.acquire(timeout=max(self.timeout, 0)):
            raise LockTimeout(self.profile_id, self.describe(self.read_info()))

        try:
            while not self._try_create():
                info = self.read_info()
                if self._is_stale(info):
                    logger.warning(
                        "Reclaiming stale lock on %s (%s)", self.profile_id, self.describe(info)
                    )
                    self.path.unlink(missing_ok=True)
                    continue
                if time.monotonic() >= deadline:
                    raise LockTimeout(self.profile_id, self.describe(info))
                time.sleep(POLL_INTERVAL)
        except BaseException:
            self._thread_lock.release()
            raise

        self._held = True
        logger.debug("Locked %s for %s", self.profile_id, self.operation or "operation")

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False
        self._thread_lock.release()
        logger.debug("Unlocked %s", self.profile_id)

    def read_info(self) -> Optional[Dict[str, Any]]:
        """Holder details, None when unlocked and {} when unreadable."""
        try:
            info = read_json(self.path)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError):
            return {}
        return info if isinstance(info, dict) else {}

    @staticmethod
    def describe(info: Optional[Dict[str, Any]]) -> str:
        if not info:
            return ""
        return (
            f"held by pid {info.get('pid')} on {info.get('host')}"
            f" for {info.get('operation') or 'an operation'} since {info.get('since')}"
        )

    def _try_create(self) -> bool:
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            json.dump(
                {
                    "pid": os.getpid(),
                    "host": socket.gethostname(),
                    "operation": self.operation,
                    "since": datetime.now().isoformat(),
                },
                f,
            )
        return True

    def _is_stale(self, info: Optional[Dict[str, Any]]) -> bool:
        if info is None:
            # Released between our attempt and the read
            return False
        if not info:
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > CORRUPT_LOCK_AGE
        if info.get("host") != socket.gethostname():
            return False
        try:
            pid = int(info.get("pid", 0))
        except (TypeError, ValueError):
            return True
        return not pid_alive(pid)
