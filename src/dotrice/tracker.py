"""Registry of tracked files and their change detection."""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, TypedDict

from .core import find_config_files, hash_bytes, hash_file
from .exceptions import (
    AlreadyTracked,
    DotriceError,
    DotriceFileOperationError,
    DotriceRepositoryError,
    NotTracked,
    PathNotFound,
)
from .mapper import PathMapper
from .profiles import FileStatus, ProfileStore, TrackedFile
from .transport import Transport

logger = logging.getLogger(__name__)


class OperationResultDict(TypedDict):
    """Type definition for bulk track results."""

    success: int
    skipped: int
    failed: int


class FileTracker:
    """Track, untrack and fingerprint files for a profile."""

    def __init__(
        self,
        store: ProfileStore,
        mapper: PathMapper,
        transport: Transport,
        config: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.store = store
        self.mapper = mapper
        self.transport = transport
        self.config = config

    def find(self, local_path: Path) -> List[TrackedFile]:
        return self.store.find(self.mapper.canonicalize(local_path))

    def track(self, local_path: Path, profile_id: str) -> TrackedFile:
        """
        Register a file under ``profile_id`` and commit its current content to
        the profile branch. The profile is created if it does not exist yet.
        """
        path = self.mapper.canonicalize(local_path)
        if not path.exists():
            raise PathNotFound(path)
        if not path.is_file():
            raise DotriceFileOperationError(
                f"{path} is not a regular file; track directories with track_directory"
            )

        existing = self.store.find(path)
        if existing:
            raise AlreadyTracked(path, existing[0].profile_id)

        repo_path = self.mapper.to_repo_path(path)
        if not self.store.exists(profile_id):
            self.store.create_profile(profile_id)
        profile = self.store.get(profile_id)

        data = path.read_bytes()
        content_hash = hash_bytes(data)
        self._commit_content(profile.remote_ref, repo_path, data, content_hash)

        tracked = TrackedFile(
            local_path=path,
            repo_path=repo_path,
            profile_id=profile_id,
            content_hash=content_hash,
        )
        self.store.add_file(tracked)
        if self.store.active() is None:
            # The first tracked profile is the one on disk
            self.store.set_active(profile_id)
        logger.info("Tracked %s as %s in %s", path, repo_path, profile_id)
        return tracked

    def track_directory(self, directory: Path, profile_id: str) -> OperationResultDict:
        """Track every file under ``directory`` that matches the file patterns."""
        directory = self.mapper.canonicalize(directory)
        if not directory.is_dir():
            raise PathNotFound(directory)

        result: OperationResultDict = {"success": 0, "skipped": 0, "failed": 0}
        for path in find_config_files(directory, self._config()):
            try:
                self.track(path, profile_id)
                result["success"] += 1
            except AlreadyTracked:
                result["skipped"] += 1
            except DotriceError as e:
                logger.warning("Could not track %s: %s", path, e)
                result["failed"] += 1
        return result

    def untrack(self, local_path: Path, profile_id: Optional[str] = None) -> TrackedFile:
        """
        Forget a file and remove it from the tip of its profile branch.

        The file on disk and its repository history are kept; the next sync
        pushes the removal.
        """
        tracked = self._single_record(self.mapper.canonicalize(local_path), profile_id)
        self._commit_removal(tracked, f"Untrack {tracked.repo_path}")
        self.store.remove_file(tracked.profile_id, tracked.local_path)
        logger.info("Untracked %s from %s", tracked.local_path, tracked.profile_id)
        return tracked

    def reassign(
        self, local_path: Path, profile_id: str, from_profile: Optional[str] = None
    ) -> TrackedFile:
        """Move a tracked file to another profile, removing it from the source branch."""
        path = self.mapper.canonicalize(local_path)
        tracked = self._single_record(path, from_profile)
        if tracked.profile_id == profile_id:
            return tracked
        target = self.store.get(profile_id)
        if target.file(path) is not None:
            raise AlreadyTracked(path, profile_id)

        if path.is_file():
            data = path.read_bytes()
        else:
            source = self.store.get(tracked.profile_id)
            data = self.transport.read_file(source.remote_ref, tracked.repo_path)
        content_hash = hash_bytes(data)
        self._commit_content(target.remote_ref, tracked.repo_path, data, content_hash)
        self._commit_removal(tracked, f"Move {tracked.repo_path} to {profile_id}")

        moved = replace(
            tracked,
            profile_id=profile_id,
            content_hash=content_hash,
            synced_hash=None,
            status=FileStatus.CLEAN,
        )
        self.store.remove_file(tracked.profile_id, path)
        self.store.add_file(moved)
        logger.info("Reassigned %s from %s to %s", path, tracked.profile_id, profile_id)
        return moved

    def refresh_status(self, profile_id: str) -> List[TrackedFile]:
        """
        Re-hash every file of a profile against its stored hash.

        Returns copies ordered by repo path; nothing is persisted. Only the
        active profile is materialized on disk, so every file of an inactive
        profile is reported as ``UNTRACKED_ON_DISK`` and keeps its stored hash.
        """
        profile = self.store.get(profile_id)

        refreshed = []
        for tracked in sorted(profile.tracked_files, key=lambda t: t.repo_path):
            current = replace(tracked)
            if not profile.active:
                current.status = FileStatus.UNTRACKED_ON_DISK
                current.current_hash = tracked.content_hash
            elif not tracked.local_path.is_file():
                current.status = FileStatus.MISSING_ON_DISK
                current.current_hash = None
            else:
                current.current_hash = hash_file(tracked.local_path)
                if current.current_hash != tracked.content_hash:
                    current.status = FileStatus.MODIFIED
                else:
                    current.status = FileStatus.CLEAN
            refreshed.append(current)
        return refreshed

    def commit(self, profile_id: str, message: Optional[str] = None) -> Optional[str]:
        """Commit modified live files of a profile to its branch and store their hashes."""
        profile = self.store.get(profile_id)
        changes: Dict[str, bytes] = {}
        updated = []
        for tracked in self.refresh_status(profile_id):
            if tracked.status != FileStatus.MODIFIED:
                continue
            data = tracked.local_path.read_bytes()
            changes[tracked.repo_path] = data
            updated.append(replace(tracked, content_hash=hash_bytes(data)))

        if not changes:
            return None

        if message is None:
            if len(changes) == 1:
                message = f"Update {next(iter(changes))}"
            else:
                message = f"Update {len(changes)} files"
        self.transport.ensure_branch(profile.remote_ref)
        sha = self.transport.commit(profile.remote_ref, changes, message)
        self.store.save_files(profile_id, updated)
        return sha

    def _single_record(self, path: Path, profile_id: Optional[str]) -> TrackedFile:
        records = self.store.find(path)
        if profile_id is not None:
            records = [r for r in records if r.profile_id == profile_id]
        if not records:
            raise NotTracked(path)
        if len(records) > 1:
            owners = ", ".join(r.profile_id for r in records)
            raise DotriceFileOperationError(
                f"{path} is tracked by several profiles ({owners}); name one"
            )
        return records[0]

    def _commit_content(
        self, ref: str, repo_path: str, data: bytes, content_hash: str
    ) -> None:
        self.transport.ensure_branch(ref)
        try:
            stored = hash_bytes(self.transport.read_file(ref, repo_path))
        except DotriceRepositoryError:
            stored = None
        if stored != content_hash:
            self.transport.commit(ref, {repo_path: data}, f"Track {repo_path}")

    def _commit_removal(self, tracked: TrackedFile, message: str) -> None:
        ref = self.store.get(tracked.profile_id).remote_ref
        self.transport.ensure_branch(ref)
        self.transport.commit(ref, {tracked.repo_path: None}, message)

    def _config(self) -> Dict[str, Any]:
        if self.config is None:
            from .core import load_config

            self.config = load_config()
        return self.config
