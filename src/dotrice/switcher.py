"""Materialize a profile onto the local filesystem."""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from .core import atomic_write_json, create_backup, hash_bytes, hash_file, read_json
from .exceptions import DotriceError, UnsafeOverwrite
from .mapper import PathMapper
from .profiles import FileStatus, Profile, ProfileStore
from .staging import StagingArea, missing_dirs, remove_empty_dirs
from .tracker import FileTracker
from .transport import Transport

logger = logging.getLogger(__name__)

PHASE_STAGING = "staging"
PHASE_COMMIT = "commit"


@dataclass
class SwitchPlan:
    target: Profile
    previous: Optional[Profile]
    to_write: Dict[Path, bytes]
    to_remove: List[Path]


@dataclass
class SwitchResult:
    profile_id: str
    previous: Optional[str]
    written: List[Path] = field(default_factory=list)
    removed: List[Path] = field(default_factory=list)
    backups: List[Path] = field(default_factory=list)
    saved_commit: Optional[str] = None


class ProfileSwitcher:
    """
    Replace the active profile's files with another profile's files.

    A switch stages every incoming file beside its target before touching a
    live path. A journal written before the rename pass lets ``recover``
    finish an interrupted switch or undo an interrupted staging pass.
    """

    def __init__(
        self,
        store: ProfileStore,
        tracker: FileTracker,
        mapper: PathMapper,
        transport: Transport,
        journal_file: Path,
        backup_dir: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.mapper = mapper
        self.transport = transport
        self.journal_file = journal_file
        self.backup_dir = backup_dir

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, target_id: str) -> SwitchPlan:
        target = self.store.get(target_id)
        previous = self.store.active()

        to_write: Dict[Path, bytes] = {}
        for tracked in sorted(target.tracked_files, key=lambda t: t.repo_path):
            data = self.transport.read_file(target.remote_ref, tracked.repo_path)
            if hash_bytes(data) != tracked.content_hash:
                logger.debug(
                    "%s on %s differs from the recorded hash", tracked.repo_path, target.remote_ref
                )
            to_write[tracked.local_path] = data

        to_remove: List[Path] = []
        if previous is not None and previous.id != target_id:
            to_remove = sorted(p for p in previous.local_paths() if p not in to_write)
        return SwitchPlan(target, previous, to_write, to_remove)

    def unsafe_paths(self, plan: SwitchPlan, save_current: bool = True) -> List[Path]:
        """
        Paths a switch would clobber without a saved copy.

        A path is safe when its content equals the incoming bytes or the
        committed content of some profile tracking it. Modified files of the
        active profile count as saved only when ``save_current`` is set.
        """
        known: Dict[Path, Set[str]] = {}
        for profile in self.store.list():
            for tracked in profile.tracked_files:
                known.setdefault(tracked.local_path, set()).add(tracked.content_hash)

        modified: Set[Path] = set()
        if plan.previous is not None:
            for tracked in self.tracker.refresh_status(plan.previous.id):
                if tracked.status == FileStatus.MODIFIED:
                    modified.add(tracked.local_path)

        unsafe = []
        for path in sorted(set(plan.to_write) | set(plan.to_remove)):
            if not path.is_file():
                continue
            if path in modified:
                if not save_current:
                    unsafe.append(path)
                continue
            current = hash_file(path)
            incoming = plan.to_write.get(path)
            if incoming is not None and current == hash_bytes(incoming):
                continue
            if current not in known.get(path, set()):
                unsafe.append(path)
        return unsafe

    # ------------------------------------------------------------------
    # Switching
    # ------------------------------------------------------------------

    def switch(
        self,
        target_id: str,
        save_current: bool = True,
        acknowledge: Optional[Iterable[Path]] = None,
        force: bool = False,
    ) -> SwitchResult:
        if self.journal_file.exists():
            raise DotriceError(
                "A previous switch was interrupted. Run 'dotrice recover' first"
            )

        plan = self.plan(target_id)
        previous_id = plan.previous.id if plan.previous is not None else None
        result = SwitchResult(profile_id=target_id, previous=previous_id)
        if previous_id == target_id:
            logger.info("Profile %s is already active", target_id)
            return result

        acknowledged = {self.mapper.canonicalize(p) for p in acknowledge or ()}
        unsafe = self.unsafe_paths(plan, save_current)
        blocked = [p for p in unsafe if p not in acknowledged]
        if blocked and not force:
            raise UnsafeOverwrite(blocked)

        for path in unsafe:
            backup = create_backup(path, "switch", self.backup_dir, self.mapper.host.home)
            if backup is not None:
                result.backups.append(backup)

        if save_current and plan.previous is not None:
            result.saved_commit = self.tracker.commit(
                plan.previous.id, f"Save {plan.previous.id} before switching to {target_id}"
            )

        self._apply(plan)
        result.written = sorted(plan.to_write)
        result.removed = plan.to_remove
        logger.info(
            "Switched from %s to %s: wrote %d, removed %d",
            previous_id,
            target_id,
            len(result.written),
            len(result.removed),
        )
        return result

    def _apply(self, plan: SwitchPlan) -> None:
        area = StagingArea()
        journal = {
            "transaction": area.transaction_id,
            "phase": PHASE_STAGING,
            "target": plan.target.id,
            "previous": plan.previous.id if plan.previous is not None else None,
            "writes": [
                [str(path), str(area.pending_path(path))] for path in sorted(plan.to_write)
            ],
            "remove": [str(path) for path in plan.to_remove],
            "created_dirs": [str(d) for d in missing_dirs(plan.to_write)],
        }
        atomic_write_json(self.journal_file, journal)

        try:
            area.stage_all(plan.to_write)
        except BaseException:
            self.journal_file.unlink(missing_ok=True)
            raise

        journal["phase"] = PHASE_COMMIT
        atomic_write_json(self.journal_file, journal)
        logger.debug("Switch %s entering commit pass", area.transaction_id)

        area.commit()
        for path in plan.to_remove:
            path.unlink(missing_ok=True)
        self._finish(plan.target.id, plan.to_write)

    def _finish(self, target_id: str, written: Dict[Path, bytes]) -> None:
        self.store.set_active(target_id)

        target = self.store.get(target_id)
        updated = []
        for tracked in target.tracked_files:
            data = written.get(tracked.local_path)
            if data is not None and hash_bytes(data) != tracked.content_hash:
                updated.append(replace(tracked, content_hash=hash_bytes(data)))
        if updated:
            self.store.save_files(target_id, updated)

        self.journal_file.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self) -> Optional[str]:
        """
        Settle a switch interrupted by a crash.

        Returns ``"rolled-back"`` when staging had not finished (live paths were
        never touched), ``"rolled-forward"`` when the rename pass had started,
        or None when there was nothing to recover.
        """
        if not self.journal_file.exists():
            return None

        journal = read_json(self.journal_file)
        writes = [(Path(target), Path(staged)) for target, staged in journal["writes"]]

        if journal["phase"] == PHASE_STAGING:
            for _, staged in writes:
                staged.unlink(missing_ok=True)
            remove_empty_dirs(Path(d) for d in journal["created_dirs"])
            self.journal_file.unlink()
            logger.warning("Rolled back interrupted switch to %s", journal["target"])
            return "rolled-back"

        written: Dict[Path, bytes] = {}
        for target, staged in writes:
            if staged.exists():
                os.replace(staged, target)
            if target.is_file():
                written[target] = target.read_bytes()
        for path in journal["remove"]:
            Path(path).unlink(missing_ok=True)
        self._finish(journal["target"], written)
        logger.warning("Completed interrupted switch to %s", journal["target"])
        return "rolled-forward"
