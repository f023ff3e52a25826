"""
Failure injection helpers for dotrice tests.
"""

from pathlib import Path
from typing import Callable, List, Optional

from dotrice import staging


class FailingWrites:
    """
    Stand-in for the staging writer that fails on one call.

    Install with ``monkeypatch.setattr(staging, "_write_staged", failing)``.
    """

    def __init__(self, fail_on: int = 1, error: Optional[Exception] = None) -> None:
        self.fail_on = fail_on
        self.error = error or OSError("No space left on device")
        self.calls: List[Path] = []
        self._write: Callable[[Path, bytes, Optional[int]], None] = staging._write_staged

    def __call__(self, path: Path, data: bytes, mode: Optional[int]) -> None:
        self.calls.append(path)
        if len(self.calls) == self.fail_on:
            # Leave a partial file behind, as a full disk would
            path.write_bytes(data[: len(data) // 2])
            raise self.error
        self._write(path, data, mode)


class Interrupted(BaseException):
    """Simulates the process dying at a chosen point."""
