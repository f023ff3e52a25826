"""Profile (rice) records and their durable store."""

import json
import logging
import re
import shutil
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .core import atomic_write_json, read_json
from .exceptions import (
    AlreadyTracked,
    DotriceProfileError,
    InvalidRemoteRef,
    NotTracked,
    ProfileActive,
    ProfileExists,
    ProfileMetadataDict,
    ProfileNotFound,
    TrackedFileDict,
)

logger = logging.getLogger(__name__)

# Constants
PROFILE_METADATA_FILE = "profile.json"
PROFILE_FORMAT_VERSION = "1.0"
INVALID_REF_CHARS = ("~", "^", ":", "?", "*", "[", "\\")
PROFILE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class FileStatus(str, Enum):
    CLEAN = "clean"
    MODIFIED = "modified"
    UNTRACKED_ON_DISK = "untracked-on-disk"
    MISSING_ON_DISK = "missing-on-disk"


@dataclass
class TrackedFile:
    """A local file registered under one profile."""

    local_path: Path
    repo_path: str
    profile_id: str
    content_hash: str
    synced_hash: Optional[str] = None
    status: FileStatus = FileStatus.CLEAN
    # Hash of the bytes on disk at the last refresh; never persisted
    current_hash: Optional[str] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_path": str(self.local_path),
            "repo_path": self.repo_path,
            "content_hash": self.content_hash,
            "synced_hash": self.synced_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], profile_id: str) -> "TrackedFile":
        return cls(
            local_path=Path(data["local_path"]),
            repo_path=data["repo_path"],
            profile_id=profile_id,
            content_hash=data["content_hash"],
            synced_hash=data.get("synced_hash"),
        )

    def snapshot(self) -> TrackedFileDict:
        return {
            "local_path": str(self.local_path),
            "repo_path": self.repo_path,
            "profile_id": self.profile_id,
            "content_hash": self.content_hash,
            "synced_hash": self.synced_hash,
            "status": self.status.value,
        }


@dataclass
class Profile:
    """A named, switchable set of tracked files."""

    id: str
    remote_ref: str
    active: bool = False
    description: str = ""
    created: str = ""
    last_used: Optional[str] = None
    tracked_files: List[TrackedFile] = field(default_factory=list)

    def file(self, local_path: Path) -> Optional[TrackedFile]:
        for tracked in self.tracked_files:
            if tracked.local_path == local_path:
                return tracked
        return None

    def local_paths(self) -> Dict[Path, TrackedFile]:
        return {tf.local_path: tf for tf in self.tracked_files}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.id,
            "description": self.description,
            "remote_ref": self.remote_ref,
            "created": self.created,
            "created_by": "dotrice",
            "version": PROFILE_FORMAT_VERSION,
            "last_used": self.last_used,
            "active": self.active,
            "files": [
                tf.to_dict()
                for tf in sorted(self.tracked_files, key=lambda t: t.repo_path)
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        profile_id = data["name"]
        return cls(
            id=profile_id,
            remote_ref=data.get("remote_ref") or profile_id,
            active=bool(data.get("active", False)),
            description=data.get("description", ""),
            created=data.get("created", ""),
            last_used=data.get("last_used"),
            tracked_files=[
                TrackedFile.from_dict(item, profile_id) for item in data.get("files", [])
            ],
        )

    def metadata(self) -> ProfileMetadataDict:
        return {
            "name": self.id,
            "description": self.description,
            "remote_ref": self.remote_ref,
            "created": self.created,
            "last_used": self.last_used,
            "active": self.active,
            "file_count": len(self.tracked_files),
        }


def validate_remote_ref(name: str) -> None:
    """Check a branch name against git's naming rules."""
    if not name.strip():
        raise InvalidRemoteRef(name, "branch name cannot be empty")
    if name.startswith("/") or name.endswith("/"):
        raise InvalidRemoteRef(name, "branch name cannot start or end with '/'")
    if ".." in name:
        raise InvalidRemoteRef(name, "branch name cannot contain '..'")
    if name.endswith(".lock") or name.endswith(".") or "@{" in name:
        raise InvalidRemoteRef(name, "branch name is not allowed by git")
    for char in name:
        if char.isspace():
            raise InvalidRemoteRef(name, "branch name cannot contain spaces")
        if char in INVALID_REF_CHARS or not char.isprintable():
            raise InvalidRemoteRef(name, "branch name contains invalid characters")


class ProfileStore:
    """
    Durable store for profiles, one ``profile.json`` per profile directory.

    Every write goes through a temp file and ``os.replace``. ``set_active``
    clears the old active flag before it sets the new one, so a crash in
    between leaves no active profile rather than two.
    """

    def __init__(self, profiles_dir: Path) -> None:
        self.profiles_dir = Path(profiles_dir)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _metadata_file(self, profile_id: str) -> Path:
        return self.profiles_dir / profile_id / PROFILE_METADATA_FILE

    def exists(self, profile_id: str) -> bool:
        return self._metadata_file(profile_id).exists()

    def get(self, profile_id: str) -> Profile:
        metadata_file = self._metadata_file(profile_id)
        if not metadata_file.exists():
            raise ProfileNotFound(profile_id)
        try:
            return Profile.from_dict(read_json(metadata_file))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise DotriceProfileError(
                f"Profile '{profile_id}' has corrupted metadata: {e}"
            ) from e

    def list(self) -> List[Profile]:
        if not self.profiles_dir.exists():
            return []

        profiles = []
        for profile_dir in sorted(self.profiles_dir.iterdir()):
            if not (profile_dir / PROFILE_METADATA_FILE).exists():
                continue
            try:
                profiles.append(self.get(profile_dir.name))
            except DotriceProfileError as e:
                logger.warning("Skipping profile %s: %s", profile_dir.name, e)

        active = [p.id for p in profiles if p.active]
        if len(active) > 1:
            files = ", ".join(str(self._metadata_file(profile_id)) for profile_id in active)
            raise DotriceProfileError(
                f"More than one active profile: {', '.join(active)}. "
                f"Set \"active\" to false in all but one of: {files}"
            )
        return profiles

    def active(self) -> Optional[Profile]:
        for profile in self.list():
            if profile.active:
                return profile
        return None

    def find(self, local_path: Path) -> List[TrackedFile]:
        """All records, across profiles, for a local path."""
        return [
            tracked
            for profile in self.list()
            for tracked in profile.tracked_files
            if tracked.local_path == local_path
        ]

    # ------------------------------------------------------------------
    # Profile lifecycle
    # ------------------------------------------------------------------

    def create_profile(
        self,
        profile_id: str,
        remote_ref: Optional[str] = None,
        description: str = "",
        copy_from: Optional[str] = None,
    ) -> Profile:
        """Create a new profile, optionally copying another profile's records."""
        if not PROFILE_ID_PATTERN.match(profile_id):
            raise DotriceProfileError(
                f"Invalid profile name '{profile_id}'. Use letters, digits, '.', '_' or '-'"
            )
        if self.exists(profile_id):
            raise ProfileExists(profile_id)

        remote_ref = remote_ref or profile_id
        self._check_remote_ref(remote_ref)

        tracked_files: List[TrackedFile] = []
        if copy_from:
            source = self.get(copy_from)
            tracked_files = [
                replace(tf, profile_id=profile_id, status=FileStatus.CLEAN)
                for tf in source.tracked_files
            ]

        profile = Profile(
            id=profile_id,
            remote_ref=remote_ref,
            description=description,
            created=datetime.now().isoformat(),
            tracked_files=tracked_files,
        )
        self.save(profile)
        logger.info("Created profile %s on branch %s", profile_id, remote_ref)
        return profile

    def update_profile(
        self,
        profile_id: str,
        remote_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Profile:
        profile = self.get(profile_id)
        if remote_ref is not None and remote_ref != profile.remote_ref:
            self._check_remote_ref(remote_ref, ignore=profile_id)
            profile.remote_ref = remote_ref
            # A new branch shares no sync history with the old one
            for tracked in profile.tracked_files:
                tracked.synced_hash = None
        if description is not None:
            profile.description = description
        self.save(profile)
        return profile

    def delete_profile(self, profile_id: str) -> None:
        profile = self.get(profile_id)
        if profile.active:
            raise ProfileActive(profile_id)
        shutil.rmtree(self.profiles_dir / profile_id)
        logger.info("Deleted profile %s", profile_id)

    def set_active(self, profile_id: str) -> Profile:
        """Mark ``profile_id`` active. Bookkeeping only, the filesystem is untouched."""
        target = self.get(profile_id)
        for profile in self.list():
            if profile.active and profile.id != profile_id:
                profile.active = False
                self.save(profile)

        target.active = True
        target.last_used = datetime.now().isoformat()
        self.save(target)
        logger.info("Active profile is now %s", profile_id)
        return target

    def clear_active(self) -> None:
        for profile in self.list():
            if profile.active:
                profile.active = False
                self.save(profile)

    def save(self, profile: Profile) -> None:
        atomic_write_json(self._metadata_file(profile.id), profile.to_dict())

    # ------------------------------------------------------------------
    # Tracked file records
    # ------------------------------------------------------------------

    def add_file(self, tracked: TrackedFile) -> None:
        profile = self.get(tracked.profile_id)
        if profile.file(tracked.local_path) is not None:
            raise AlreadyTracked(tracked.local_path, profile.id)
        profile.tracked_files.append(tracked)
        self.save(profile)

    def remove_file(self, profile_id: str, local_path: Path) -> TrackedFile:
        profile = self.get(profile_id)
        tracked = profile.file(local_path)
        if tracked is None:
            raise NotTracked(local_path)
        profile.tracked_files.remove(tracked)
        self.save(profile)
        return tracked

    def save_files(self, profile_id: str, files: Iterable[TrackedFile]) -> None:
        """Insert or update records by local path."""
        profile = self.get(profile_id)
        by_path = profile.local_paths()
        for tracked in files:
            by_path[tracked.local_path] = replace(tracked, profile_id=profile_id)
        profile.tracked_files = list(by_path.values())
        self.save(profile)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_remote_ref(self, remote_ref: str, ignore: Optional[str] = None) -> None:
        validate_remote_ref(remote_ref)
        for profile in self.list():
            if profile.id != ignore and profile.remote_ref == remote_ref:
                raise InvalidRemoteRef(
                    remote_ref, f"already used by profile '{profile.id}'"
                )
