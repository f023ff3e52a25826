"""Two-phase writes of tracked files onto the live filesystem.

Files are first written next to their targets as ``.<name>.pending-<id>``.
Only when every file is staged are they moved into place with ``os.replace``,
which is atomic per file on POSIX filesystems. A failed staging pass removes
its pending files and the directories it created, leaving live paths as they
were.
"""

import logging
import os
import stat
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from .exceptions import DotriceFileOperationError

logger = logging.getLogger(__name__)

PENDING_MARKER = ".pending-"


@dataclass
class StagedFile:
    target: Path
    staged: Path


def _write_staged(path: Path, data: bytes, mode: Optional[int]) -> None:
    with open(path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    if mode is not None:
        os.chmod(path, mode)


def missing_dirs(targets: Iterable[Path]) -> List[Path]:
    """Parent directories that do not exist yet, shallowest first."""
    missing = set()
    for target in targets:
        parent = target.parent
        while not parent.exists() and parent != parent.parent:
            missing.add(parent)
            parent = parent.parent
    return sorted(missing, key=lambda p: (len(p.parts), str(p)))


def remove_empty_dirs(dirs: Iterable[Path]) -> None:
    """Remove ``dirs`` deepest first, keeping any that are not empty."""
    for directory in sorted(dirs, key=lambda p: len(p.parts), reverse=True):
        if directory.is_dir() and not any(directory.iterdir()):
            directory.rmdir()


class StagingArea:
    """Stage a batch of file writes, then commit or roll them back together."""

    def __init__(self, transaction_id: Optional[str] = None) -> None:
        self.transaction_id = transaction_id or uuid.uuid4().hex[:12]
        self.staged: List[StagedFile] = []
        self.created_dirs: List[Path] = []

    def pending_path(self, target: Path) -> Path:
        return target.with_name(f".{target.name}{PENDING_MARKER}{self.transaction_id}")

    def stage_all(self, writes: Mapping[Path, bytes]) -> List[StagedFile]:
        """Stage every write or none of them."""
        self.created_dirs = missing_dirs(writes)
        try:
            for target in sorted(writes):
                self.stage(target, writes[target])
        except OSError as e:
            logger.warning("Staging failed, rolling back: %s", e)
            self.rollback()
            raise DotriceFileOperationError(f"Could not stage files: {e}") from e
        except BaseException:
            self.rollback()
            raise
        logger.debug("Staged %d file(s) in %s", len(self.staged), self.transaction_id)
        return self.staged

    def stage(self, target: Path, data: bytes) -> StagedFile:
        if target.is_dir():
            raise IsADirectoryError(f"{target} is a directory")
        target.parent.mkdir(parents=True, exist_ok=True)

        mode = None
        if target.exists():
            mode = stat.S_IMODE(target.stat().st_mode)
        staged = StagedFile(target=target, staged=self.pending_path(target))
        self.staged.append(staged)
        _write_staged(staged.staged, data, mode)
        return staged

    def commit(self) -> None:
        """Move every staged file into place."""
        for item in self.staged:
            os.replace(item.staged, item.target)
        logger.debug("Committed %d staged file(s)", len(self.staged))
        self.staged = []
        self.created_dirs = []

    def rollback(self) -> None:
        for item in self.staged:
            item.staged.unlink(missing_ok=True)
        remove_empty_dirs(self.created_dirs)
        self.staged = []
        self.created_dirs = []


def write_files(writes: Mapping[Path, bytes]) -> None:
    """Write a batch of files all-or-nothing up to the final rename pass."""
    if not writes:
        return
    area = StagingArea()
    area.stage_all(writes)
    area.commit()
