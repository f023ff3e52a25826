"""Exception classes for dotrice - a Git-backed rice manager."""

from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, TypedDict

if TYPE_CHECKING:
    from .sync import FileSync


# Type definitions for structured data
class TrackedFileDict(TypedDict):
    """Type definition for a tracked file as shown to the UI."""

    local_path: str
    repo_path: str
    profile_id: str
    content_hash: str
    synced_hash: Optional[str]
    status: str


class ProfileMetadataDict(TypedDict):
    """Type definition for profile metadata."""

    name: str
    description: str
    remote_ref: str
    created: str
    last_used: Optional[str]
    active: bool
    file_count: int


class SnapshotDict(TypedDict):
    """Read-only state handed to the terminal UI."""

    profiles: List[ProfileMetadataDict]
    active: Optional[str]
    files: List[TrackedFileDict]


class SyncReportDict(TypedDict):
    """Type definition for the outcome of a sync."""

    profile: str
    local_ahead: List[str]
    remote_ahead: List[str]
    in_sync: List[str]
    removed: List[str]
    commit: Optional[str]


class DotriceError(Exception):
    """Base exception for all dotrice-related errors."""

    pass


class DotriceRepositoryError(DotriceError):
    """Errors related to the dotrice repository."""

    pass


class DotriceRepositoryNotFoundError(DotriceRepositoryError):
    """Raised when the dotrice repository is not initialized."""

    pass


class DotriceFileOperationError(DotriceError):
    """Errors related to file operations."""

    pass


class DotriceFileNotFoundError(DotriceFileOperationError):
    """Raised when a file or directory cannot be found."""

    pass


class DotriceConfigurationError(DotriceError):
    """Errors related to configuration management."""

    pass


class DotriceBackupError(DotriceError):
    """Errors related to backup operations."""

    pass


class DotriceSecurityError(DotriceError):
    """Errors related to security validation (e.g., path traversal)."""

    pass


class DotriceProfileError(DotriceError):
    """Errors related to profile operations."""

    pass


# ============================================================================
# ENGINE ERRORS
# ============================================================================


class PathNotFound(DotriceFileNotFoundError):
    """Raised when a path to track does not exist."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        super().__init__(f"{self.path} not found")


class AlreadyTracked(DotriceError):
    """Raised when a path is already tracked by a profile."""

    def __init__(self, path: Path, profile_id: str) -> None:
        self.path = Path(path)
        self.profile_id = profile_id
        super().__init__(f"{self.path} is already tracked by profile '{profile_id}'")


class NotTracked(DotriceError):
    """Raised when an operation needs a tracked path and gets an untracked one."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        super().__init__(f"{self.path} is not tracked")


class MappingError(DotriceSecurityError):
    """Raised when a path cannot be mapped between disk and repository."""

    pass


class MappingConflict(MappingError):
    """Raised when a repo path would land on a local path claimed by another source."""

    def __init__(self, repo_path: str, local_path: Path, claimed_by: str) -> None:
        self.repo_path = repo_path
        self.local_path = Path(local_path)
        self.claimed_by = claimed_by
        super().__init__(
            f"'{repo_path}' maps to {self.local_path}, "
            f"which is already claimed by '{claimed_by}'"
        )


class ProfileNotFound(DotriceProfileError):
    """Raised when a profile does not exist."""

    def __init__(self, profile_id: str) -> None:
        self.profile_id = profile_id
        super().__init__(f"Profile '{profile_id}' not found")


class ProfileExists(DotriceProfileError):
    """Raised when creating a profile whose id is taken."""

    def __init__(self, profile_id: str) -> None:
        self.profile_id = profile_id
        super().__init__(f"Profile '{profile_id}' already exists")


class InvalidRemoteRef(DotriceProfileError):
    """Raised when a profile branch name is invalid or already used."""

    def __init__(self, remote_ref: str, reason: str) -> None:
        self.remote_ref = remote_ref
        self.reason = reason
        super().__init__(f"Invalid branch '{remote_ref}': {reason}")


class ProfileActive(DotriceProfileError):
    """Raised when deleting the active profile."""

    def __init__(self, profile_id: str) -> None:
        self.profile_id = profile_id
        super().__init__(
            f"Cannot delete active profile '{profile_id}'. "
            "Switch to another profile first"
        )


class SyncConflict(DotriceError):
    """Raised when files changed on both sides since the last sync."""

    def __init__(self, profile_id: str, conflicts: Iterable["FileSync"]) -> None:
        self.profile_id = profile_id
        self.conflicts = list(conflicts)
        super().__init__(
            f"{len(self.conflicts)} file(s) diverged in profile '{profile_id}'"
        )


class TransportError(DotriceRepositoryError):
    """Raised when the version-control transport fails (network, auth, remote)."""

    pass


class UnsafeOverwrite(DotriceFileOperationError):
    """Raised when a switch would clobber content the user has not acknowledged."""

    def __init__(self, paths: Iterable[Path]) -> None:
        self.paths = sorted(Path(p) for p in paths)
        listed = ", ".join(str(p) for p in self.paths)
        super().__init__(f"Refusing to overwrite unsaved content: {listed}")


class LockTimeout(DotriceError):
    """Raised when a profile lock cannot be acquired in time."""

    def __init__(self, profile_id: str, holder: str = "") -> None:
        self.profile_id = profile_id
        self.holder = holder
        message = f"Profile '{profile_id}' is busy"
        if holder:
            message += f" ({holder})"
        super().__init__(message)
