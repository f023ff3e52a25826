"""Reconcile a profile's tracked files with its remote branch.

Each file is compared three ways: the hash on disk (L), the hash on the
remote branch (R) and the hash recorded at the last successful sync (C).

==========  ==========  ===============
L vs R      C           result
==========  ==========  ===============
L == R      any         in sync
R missing   L == C      remote removed
R missing   other       local ahead
L missing   any         remote ahead
L != R      R == C      local ahead
L != R      L == C      remote ahead
L != R      other       diverged
==========  ==========  ===============

A file that was never synced has no C; it is local ahead only when the
remote still holds the content we last committed, and diverged otherwise.
Diverged files are never resolved automatically.

Remote paths no record tracks are adopted, unless the local branch removed
them (untrack, reassign) since it last matched the remote. Those removals
are pushed instead.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .core import create_backup, hash_bytes, hash_file
from .exceptions import (
    DotriceError,
    NotTracked,
    SyncConflict,
    SyncReportDict,
    TransportError,
)
from .mapper import PathMapper
from .profiles import FileStatus, Profile, ProfileStore, TrackedFile
from .staging import StagingArea, write_files
from .tracker import FileTracker
from .transport import Transport

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IN_SYNC = "in_sync"
    LOCAL_AHEAD = "local_ahead"
    REMOTE_AHEAD = "remote_ahead"
    DIVERGED = "diverged"
    # untracked here, still on the remote
    LOCAL_REMOVED = "local_removed"
    # untracked on another machine, unchanged here
    REMOTE_REMOVED = "remote_removed"


class Resolution(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class FileSync:
    """Classification of one file for one sync."""

    local_path: Path
    repo_path: str
    local_hash: Optional[str]
    remote_hash: Optional[str]
    base_hash: Optional[str]
    status: SyncStatus
    live: bool = True
    # None for a remote file no local record tracks yet
    record: Optional[TrackedFile] = field(default=None, repr=False, compare=False)


@dataclass
class SyncState:
    """Per-sync buckets of classified files. Never persisted."""

    local_ahead: List[FileSync] = field(default_factory=list)
    remote_ahead: List[FileSync] = field(default_factory=list)
    diverged: List[FileSync] = field(default_factory=list)
    in_sync: List[FileSync] = field(default_factory=list)
    local_removed: List[FileSync] = field(default_factory=list)
    remote_removed: List[FileSync] = field(default_factory=list)

    def add(self, item: FileSync) -> None:
        bucket: List[FileSync] = getattr(self, item.status.value)
        bucket.append(item)

    def items(self) -> List[FileSync]:
        return (
            self.local_ahead
            + self.remote_ahead
            + self.diverged
            + self.in_sync
            + self.local_removed
            + self.remote_removed
        )

    @property
    def outgoing(self) -> bool:
        return bool(self.local_ahead or self.local_removed)

    @property
    def changed(self) -> bool:
        return bool(
            self.outgoing or self.remote_ahead or self.diverged or self.remote_removed
        )


@dataclass
class SyncReport:
    profile_id: str
    state: SyncState
    commit: Optional[str] = None

    def to_dict(self) -> SyncReportDict:
        return {
            "profile": self.profile_id,
            "local_ahead": [f.repo_path for f in self.state.local_ahead],
            "remote_ahead": [f.repo_path for f in self.state.remote_ahead],
            "in_sync": [f.repo_path for f in self.state.in_sync],
            "removed": [
                f.repo_path
                for f in self.state.local_removed + self.state.remote_removed
            ],
            "commit": self.commit,
        }


def classify(
    local_hash: Optional[str],
    remote_hash: Optional[str],
    base_hash: Optional[str],
    content_hash: Optional[str] = None,
) -> Optional[SyncStatus]:
    """Three-way classification of one file. None when neither side has it."""
    if local_hash is None and remote_hash is None:
        return None
    if local_hash == remote_hash:
        return SyncStatus.IN_SYNC
    if remote_hash is None:
        if local_hash == base_hash:
            return SyncStatus.REMOTE_REMOVED
        return SyncStatus.LOCAL_AHEAD
    if local_hash is None:
        return SyncStatus.REMOTE_AHEAD

    if base_hash is not None:
        if remote_hash == base_hash:
            return SyncStatus.LOCAL_AHEAD
        if local_hash == base_hash:
            return SyncStatus.REMOTE_AHEAD
        return SyncStatus.DIVERGED

    if content_hash is not None and remote_hash == content_hash:
        return SyncStatus.LOCAL_AHEAD
    return SyncStatus.DIVERGED


class SyncEngine:
    """Bring one profile and its remote branch to the same content."""

    def __init__(
        self,
        store: ProfileStore,
        tracker: FileTracker,
        mapper: PathMapper,
        transport: Transport,
        backup_dir: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.mapper = mapper
        self.transport = transport
        self.backup_dir = backup_dir

    def plan(self, profile_id: str) -> Tuple[Profile, SyncState]:
        """Fetch and classify every file of a profile without changing anything local."""
        profile = self.store.get(profile_id)
        remote = self.transport.fetch_metadata(profile.remote_ref)
        self.transport.ensure_branch(profile.remote_ref)

        state = SyncState()
        tracked = self.tracker.refresh_status(profile_id)
        for record in tracked:
            remote_hash = remote.get(record.repo_path)
            status = classify(
                record.current_hash, remote_hash, record.synced_hash, record.content_hash
            )
            if status is None:
                logger.warning(
                    "%s is missing locally and on the remote; skipping", record.local_path
                )
                continue
            state.add(
                FileSync(
                    local_path=record.local_path,
                    repo_path=record.repo_path,
                    local_hash=record.current_hash,
                    remote_hash=remote_hash,
                    base_hash=record.synced_hash,
                    status=status,
                    live=record.status != FileStatus.UNTRACKED_ON_DISK,
                    record=record,
                )
            )

        known = {record.repo_path for record in tracked}
        removed = set(self.transport.removed_paths(profile.remote_ref))
        claimed: Dict[Path, str] = {
            tf.local_path: tf.repo_path
            for other in self.store.list()
            for tf in other.tracked_files
        }
        for repo_path in sorted(set(remote) - known):
            if repo_path in removed:
                logger.debug("%s was removed from %s; pushing the removal", repo_path, profile_id)
                state.add(
                    FileSync(
                        local_path=self.mapper.to_local_path(repo_path),
                        repo_path=repo_path,
                        local_hash=None,
                        remote_hash=remote[repo_path],
                        base_hash=remote[repo_path],
                        status=SyncStatus.LOCAL_REMOVED,
                        live=False,
                    )
                )
                continue

            local_path = self.mapper.claim(repo_path, claimed)
            claimed[local_path] = repo_path
            local_hash = None
            if profile.active and local_path.is_file():
                local_hash = hash_file(local_path)
            status = _adoption_status(local_hash, remote[repo_path])
            logger.debug("Adopting %s from %s as %s", repo_path, profile.remote_ref, status.value)
            state.add(
                FileSync(
                    local_path=local_path,
                    repo_path=repo_path,
                    local_hash=local_hash,
                    remote_hash=remote[repo_path],
                    base_hash=None,
                    status=status,
                    live=profile.active,
                )
            )

        logger.info(
            "Sync plan for %s: %d local ahead, %d remote ahead, %d diverged, %d in sync",
            profile_id,
            len(state.local_ahead),
            len(state.remote_ahead),
            len(state.diverged),
            len(state.in_sync),
        )
        return profile, state

    def sync(self, profile_id: str) -> SyncReport:
        """
        Sync one profile.

        Raises SyncConflict, before anything is committed or written, when any
        file diverged. Pulled files are staged before anything is pushed and
        moved into place only after the push; if staging or the push fails,
        the local branch is back where it was and no file on disk has changed.
        """
        profile, state = self.plan(profile_id)
        if state.diverged:
            raise SyncConflict(profile_id, state.diverged)

        ref = profile.remote_ref
        area = StagingArea()
        area.stage_all(
            {
                item.local_path: self.transport.read_file(ref, item.repo_path, remote=True)
                for item in state.remote_ahead
                if item.live
            }
        )

        commit_id = None
        previous = self.transport.head(ref)
        try:
            if state.outgoing:
                changes: Dict[str, Optional[bytes]] = {
                    item.repo_path: self._local_content(ref, item)
                    for item in state.local_ahead
                }
                changes.update((item.repo_path, None) for item in state.local_removed)
                commit_id = self.transport.commit(
                    ref, changes, _commit_message(profile_id, changes)
                )
                self.transport.push(ref)
            else:
                self.transport.pull(ref)
        except TransportError:
            logger.warning("Sync of %s failed, resetting to %s", ref, previous)
            area.rollback()
            self.transport.reset(ref, previous)
            raise
        except BaseException:
            area.rollback()
            raise
        area.commit()

        self._record(profile_id, state.items())
        for item in state.remote_removed:
            self.store.remove_file(profile_id, item.local_path)
            logger.info("%s was untracked on another machine; forgetting it", item.local_path)

        report = SyncReport(profile_id=profile_id, state=state, commit=commit_id)
        logger.info(
            "Synced %s: pushed %d, pulled %d, removed %d",
            profile_id,
            len(state.local_ahead),
            len(state.remote_ahead),
            len(state.local_removed) + len(state.remote_removed),
        )
        return report

    def resolve(self, profile_id: str, local_path: Path, keep: str) -> FileSync:
        """
        Settle one diverged file.

        ``local`` keeps the disk content and takes the remote hash as the common
        ancestor, so the next sync pushes it. ``remote`` backs up the disk file
        and replaces it with the remote content.
        """
        resolution = Resolution(keep)
        path = self.mapper.canonicalize(local_path)
        profile, state = self.plan(profile_id)

        item = next((i for i in state.diverged if i.local_path == path), None)
        if item is None:
            if not any(i.local_path == path for i in state.items()):
                raise NotTracked(path)
            raise DotriceError(f"{path} has no conflict to resolve")

        if resolution == Resolution.LOCAL:
            resolved = replace(item, base_hash=item.remote_hash, status=SyncStatus.LOCAL_AHEAD)
            committed = item.record.content_hash if item.record else item.local_hash
        else:
            data = self.transport.read_file(profile.remote_ref, item.repo_path, remote=True)
            if item.live:
                create_backup(path, "resolve", self.backup_dir, self.mapper.host.home)
                write_files({path: data})
            resolved = replace(
                item,
                local_hash=hash_bytes(data),
                base_hash=item.remote_hash,
                status=SyncStatus.IN_SYNC,
            )
            committed = item.remote_hash

        if committed is None or item.remote_hash is None:
            raise DotriceError(f"{path} is missing on one side and cannot be resolved")
        self.store.save_files(
            profile_id,
            [self._settled(profile_id, item, committed, item.remote_hash)],
        )
        logger.info("Resolved %s in %s keeping %s", path, profile_id, resolution.value)
        return resolved

    def _local_content(self, ref: str, item: FileSync) -> bytes:
        if item.live:
            data = item.local_path.read_bytes()
        else:
            # Not on disk; the content was committed on the local branch
            data = self.transport.read_file(ref, item.repo_path)
        item.local_hash = hash_bytes(data)
        return data

    def _record(self, profile_id: str, items: List[FileSync]) -> None:
        """Store the hashes both sides agree on after a successful sync."""
        updated = []
        for item in items:
            if item.status in (SyncStatus.LOCAL_REMOVED, SyncStatus.REMOTE_REMOVED):
                continue
            if item.status == SyncStatus.REMOTE_AHEAD:
                settled = item.remote_hash
            else:
                settled = item.local_hash
            if settled is None:
                continue
            record = self._settled(profile_id, item, settled, settled)
            if item.record is None or item.record.to_dict() != record.to_dict():
                updated.append(record)

        if updated:
            self.store.save_files(profile_id, updated)

    @staticmethod
    def _settled(
        profile_id: str, item: FileSync, content_hash: str, synced_hash: str
    ) -> TrackedFile:
        if item.record is None:
            return TrackedFile(
                local_path=item.local_path,
                repo_path=item.repo_path,
                profile_id=profile_id,
                content_hash=content_hash,
                synced_hash=synced_hash,
            )
        return replace(item.record, content_hash=content_hash, synced_hash=synced_hash)


def _adoption_status(local_hash: Optional[str], remote_hash: str) -> SyncStatus:
    """Classify a remote file no record tracks; it has no common ancestor."""
    if local_hash == remote_hash:
        return SyncStatus.IN_SYNC
    if local_hash is None:
        return SyncStatus.REMOTE_AHEAD
    return SyncStatus.DIVERGED


def _commit_message(profile_id: str, changes: Dict[str, Optional[bytes]]) -> str:
    paths = sorted(changes)
    if len(paths) == 1:
        verb = "remove" if changes[paths[0]] is None else "update"
        return f"Sync {profile_id}: {verb} {paths[0]}"
    return f"Sync {profile_id}: update {len(paths)} files"
