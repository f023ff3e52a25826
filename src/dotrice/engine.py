"""The dotrice engine: one object wiring mapper, store, tracker, sync and switch.

Every mutating operation runs under the lock of each profile it touches.
"""

import logging
import time
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .core import get_dotrice_paths, load_config, read_json, save_config
from .exceptions import (
    DotriceProfileError,
    DotriceRepositoryError,
    SnapshotDict,
    TransportError,
)
from .locking import DEFAULT_TIMEOUT, ProfileLock
from .mapper import HostContext, PathMapper
from .profiles import PROFILE_ID_PATTERN, Profile, ProfileStore, TrackedFile
from .switcher import ProfileSwitcher, SwitchResult
from .sync import FileSync, SyncEngine, SyncReport, SyncState
from .tracker import FileTracker, OperationResultDict
from .transport import DEFAULT_BRANCH, GitTransport, Transport

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "default"
DEFAULT_BACKOFF = 1.0


class Dotrice:
    """Facade used by the CLI and any other front end."""

    def __init__(
        self,
        home: Optional[Path] = None,
        config: Optional[Dict[str, Any]] = None,
        transport: Optional[Transport] = None,
        host: Optional[HostContext] = None,
        lock_timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.paths = get_dotrice_paths(home)
        self.config = config if config is not None else load_config(self.paths["config_file"])
        self.host = host or HostContext.detect(
            home=self.paths["home"], path_mappings=self.config.get("path_mappings")
        )
        self.mapper = PathMapper(self.host)

        transport_config = self.config.get("transport", {})
        self.transport: Transport = transport or GitTransport(
            self.paths["repo"],
            remote=transport_config.get("remote", "origin"),
            timeout=transport_config.get("timeout"),
        )
        self.lock_timeout = lock_timeout

        self.store = ProfileStore(self.paths["profiles_dir"])
        self.tracker = FileTracker(self.store, self.mapper, self.transport, self.config)
        self.sync_engine = SyncEngine(
            self.store,
            self.tracker,
            self.mapper,
            self.transport,
            backup_dir=self.paths["backup_dir"],
        )
        self.switcher = ProfileSwitcher(
            self.store,
            self.tracker,
            self.mapper,
            self.transport,
            journal_file=self.paths["journal_file"],
            backup_dir=self.paths["backup_dir"],
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    @classmethod
    def init(
        cls,
        home: Optional[Path] = None,
        remote_url: str = "",
        host: Optional[HostContext] = None,
    ) -> "Dotrice":
        """Create ``~/.dotrice`` with an empty repository and default config."""
        paths = get_dotrice_paths(home)
        config = load_config(paths["config_file"])
        transport_config = config["transport"]
        GitTransport.init(
            paths["repo"],
            remote_url=remote_url,
            remote=transport_config.get("remote", "origin"),
            timeout=transport_config.get("timeout"),
        )
        for key in ("profiles_dir", "backup_dir", "locks_dir"):
            paths[key].mkdir(parents=True, exist_ok=True)
        if not paths["config_file"].exists():
            save_config(config, paths["config_file"])
        logger.info("Initialized dotrice in %s", paths["dotrice_dir"])
        return cls(home, config=config, host=host)

    @classmethod
    def clone(
        cls,
        remote_url: str,
        home: Optional[Path] = None,
        host: Optional[HostContext] = None,
    ) -> "Dotrice":
        """Initialize against an existing remote and create a profile per branch."""
        dotrice = cls.init(home, remote_url=remote_url, host=host)
        transport = dotrice.transport
        if not isinstance(transport, GitTransport):
            raise DotriceRepositoryError("Cloning needs a git repository")
        transport.fetch()

        for branch in transport.remote_branches():
            if branch == DEFAULT_BRANCH:
                continue
            profile_id = branch.replace("/", "-")
            if not PROFILE_ID_PATTERN.match(profile_id) or dotrice.store.exists(profile_id):
                logger.warning("Skipping remote branch %s", branch)
                continue
            dotrice.create_profile(profile_id, remote_ref=branch)
            dotrice.sync(profile_id)
        return dotrice

    @contextmanager
    def locked(self, *profile_ids: Optional[str], operation: str = "") -> Iterator[None]:
        """Hold the locks of several profiles, always taken in name order."""
        with ExitStack() as stack:
            for profile_id in sorted({p for p in profile_ids if p}):
                stack.enter_context(
                    ProfileLock(
                        self.paths["locks_dir"],
                        profile_id,
                        timeout=self.lock_timeout,
                        operation=operation,
                    )
                )
            yield

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_profile(self) -> Optional[Profile]:
        return self.store.active()

    def list_profiles(self) -> List[Profile]:
        return self.store.list()

    def get_profile(self, profile_id: str) -> Profile:
        return self.store.get(profile_id)

    def status(self, profile_id: Optional[str] = None) -> List[TrackedFile]:
        return self.tracker.refresh_status(self._profile_or_active(profile_id))

    def snapshot(self) -> SnapshotDict:
        """Read-only view of every profile and the active profile's files."""
        profiles = self.store.list()
        active = next((p for p in profiles if p.active), None)
        files = self.tracker.refresh_status(active.id) if active is not None else []
        return {
            "profiles": [p.metadata() for p in profiles],
            "active": active.id if active is not None else None,
            "files": [f.snapshot() for f in files],
        }

    def plan_sync(self, profile_id: Optional[str] = None) -> SyncState:
        _, state = self.sync_engine.plan(self._profile_or_active(profile_id))
        return state

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track(self, local_path: Path, profile_id: Optional[str] = None) -> TrackedFile:
        profile_id = self._profile_or_default(profile_id)
        with self.locked(profile_id, operation="track"):
            return self.tracker.track(local_path, profile_id)

    def track_directory(
        self, directory: Path, profile_id: Optional[str] = None
    ) -> OperationResultDict:
        profile_id = self._profile_or_default(profile_id)
        with self.locked(profile_id, operation="track"):
            return self.tracker.track_directory(directory, profile_id)

    def untrack(self, local_path: Path, profile_id: Optional[str] = None) -> TrackedFile:
        owners = [t.profile_id for t in self.tracker.find(local_path)]
        with self.locked(profile_id, *owners, operation="untrack"):
            return self.tracker.untrack(local_path, profile_id)

    def reassign(
        self, local_path: Path, profile_id: str, from_profile: Optional[str] = None
    ) -> TrackedFile:
        owners = [t.profile_id for t in self.tracker.find(local_path)]
        with self.locked(profile_id, from_profile, *owners, operation="reassign"):
            return self.tracker.reassign(local_path, profile_id, from_profile)

    def commit(
        self, profile_id: Optional[str] = None, message: Optional[str] = None
    ) -> Optional[str]:
        profile_id = self._profile_or_active(profile_id)
        with self.locked(profile_id, operation="commit"):
            return self.tracker.commit(profile_id, message)

    # ------------------------------------------------------------------
    # Sync and switch
    # ------------------------------------------------------------------

    def sync(
        self,
        profile_id: Optional[str] = None,
        retries: int = 0,
        backoff: float = DEFAULT_BACKOFF,
    ) -> SyncReport:
        """Sync a profile, retrying transport failures with exponential backoff."""
        profile_id = self._profile_or_active(profile_id)
        attempt = 0
        while True:
            try:
                with self.locked(profile_id, operation="sync"):
                    return self.sync_engine.sync(profile_id)
            except TransportError as e:
                if attempt >= retries:
                    raise
                delay = backoff * 2**attempt
                attempt += 1
                logger.warning(
                    "Sync of %s failed (%s); retry %d/%d in %.1fs",
                    profile_id,
                    e,
                    attempt,
                    retries,
                    delay,
                )
                time.sleep(delay)

    def resolve(
        self, local_path: Path, keep: str, profile_id: Optional[str] = None
    ) -> FileSync:
        profile_id = self._profile_or_active(profile_id)
        with self.locked(profile_id, operation="resolve"):
            return self.sync_engine.resolve(profile_id, local_path, keep)

    def switch(
        self,
        profile_id: str,
        save_current: bool = True,
        acknowledge: Optional[Iterable[Path]] = None,
        force: bool = False,
    ) -> SwitchResult:
        active = self.store.active()
        previous = active.id if active is not None else None
        with self.locked(profile_id, previous, operation="switch"):
            return self.switcher.switch(profile_id, save_current, acknowledge, force)

    def recover(self) -> Optional[str]:
        journal_file = self.paths["journal_file"]
        if not journal_file.exists():
            return None
        journal = read_json(journal_file)
        with self.locked(journal.get("target"), journal.get("previous"), operation="recover"):
            return self.switcher.recover()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def create_profile(
        self,
        profile_id: str,
        remote_ref: Optional[str] = None,
        description: str = "",
        copy_from: Optional[str] = None,
    ) -> Profile:
        with self.locked(profile_id, copy_from, operation="create"):
            profile = self.store.create_profile(profile_id, remote_ref, description, copy_from)
            if copy_from:
                source = self.store.get(copy_from)
                self.transport.copy_branch(source.remote_ref, profile.remote_ref)
            else:
                self.transport.ensure_branch(profile.remote_ref)
            return profile

    def update_profile(
        self,
        profile_id: str,
        remote_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Profile:
        with self.locked(profile_id, operation="update"):
            old = self.store.get(profile_id)
            profile = self.store.update_profile(profile_id, remote_ref, description)
            if profile.remote_ref != old.remote_ref:
                try:
                    self.transport.copy_branch(old.remote_ref, profile.remote_ref)
                except DotriceRepositoryError as e:
                    logger.warning("Could not seed branch %s: %s", profile.remote_ref, e)
            return profile

    def delete_profile(self, profile_id: str) -> None:
        """Delete a profile's records. Its branch and history are kept."""
        with self.locked(profile_id, operation="delete"):
            self.store.delete_profile(profile_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _profile_or_active(self, profile_id: Optional[str]) -> str:
        if profile_id:
            return profile_id
        active = self.store.active()
        if active is None:
            raise DotriceProfileError(
                "No active profile. Name one or run 'dotrice switch <profile>'"
            )
        return active.id

    def _profile_or_default(self, profile_id: Optional[str]) -> str:
        if profile_id:
            return profile_id
        active = self.store.active()
        return active.id if active is not None else DEFAULT_PROFILE
