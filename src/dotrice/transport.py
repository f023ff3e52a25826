"""Version-control transport for dotrice, backed by GitPython.

Every profile lives on its own branch of a bare repository in
``~/.dotrice/repo``. Commits are assembled with git plumbing and a private
index file, so no working tree is shared between profiles and operations on
different profiles never step on each other.
"""

import logging
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from .exceptions import (
    DotriceRepositoryError,
    DotriceRepositoryNotFoundError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
ROOT_REF = "refs/dotrice/root"
GIT_USER_NAME = "dotrice"
GIT_USER_EMAIL = "dotrice@localhost"


class Transport(Protocol):
    """Operations the engine needs from the versioned object store."""

    def fetch_metadata(self, ref: str) -> Dict[str, str]: ...

    def read_file(self, ref: str, repo_path: str, remote: bool = False) -> bytes: ...

    def commit(
        self, ref: str, changes: Mapping[str, Optional[bytes]], message: str
    ) -> str: ...

    def push(self, ref: str) -> None: ...

    def pull(self, ref: str) -> None: ...

    def head(self, ref: str) -> Optional[str]: ...

    def removed_paths(self, ref: str) -> List[str]: ...

    def reset(self, ref: str, commit_id: Optional[str]) -> None: ...

    def ensure_branch(self, ref: str) -> str: ...

    def copy_branch(self, source: str, target: str) -> None: ...


class GitTransport:
    """Transport over a bare git repository with an optional remote."""

    def __init__(
        self, repo_dir: Path, remote: str = "origin", timeout: Optional[float] = None
    ) -> None:
        self.repo_dir = Path(repo_dir)
        self.remote_name = remote
        self.timeout = timeout
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    @classmethod
    def init(
        cls,
        repo_dir: Path,
        remote_url: str = "",
        remote: str = "origin",
        timeout: Optional[float] = None,
    ) -> "GitTransport":
        """Create the bare repository with an empty root commit."""
        if repo_dir.exists():
            raise DotriceRepositoryError(f"{repo_dir} already exists")

        repo = Repo.init(str(repo_dir), bare=True)
        repo.git.config("user.name", GIT_USER_NAME)
        repo.git.config("user.email", GIT_USER_EMAIL)

        transport = cls(repo_dir, remote=remote, timeout=timeout)
        transport._local.repo = repo

        with tempfile.TemporaryDirectory(prefix="dotrice-index-") as tmp:
            env = {"GIT_INDEX_FILE": str(Path(tmp) / "index")}
            empty_tree = repo.git.write_tree(env=env)
        root = transport._commit_tree(empty_tree, "Initial commit", [])
        repo.git.update_ref(ROOT_REF, root)
        repo.git.update_ref(f"refs/heads/{DEFAULT_BRANCH}", root)
        repo.git.symbolic_ref("HEAD", f"refs/heads/{DEFAULT_BRANCH}")

        if remote_url:
            transport.set_remote(remote_url)

        logger.info("Initialized repository at %s", repo_dir)
        return transport

    @property
    def repo(self) -> Repo:
        # One Repo per thread; GitPython's persistent cat-file readers are not
        # safe to share.
        repo = getattr(self._local, "repo", None)
        if repo is None:
            try:
                repo = Repo(str(self.repo_dir))
            except (InvalidGitRepositoryError, NoSuchPathError):
                raise DotriceRepositoryNotFoundError(
                    "Dotrice repository not initialized. Run 'dotrice init' first."
                )
            self._local.repo = repo
        return repo

    def exists(self) -> bool:
        return (self.repo_dir / "HEAD").exists()

    def has_remote(self) -> bool:
        return self.remote_name in [r.name for r in self.repo.remotes]

    def set_remote(self, url: str) -> None:
        if self.has_remote():
            self.repo.remote(self.remote_name).set_url(url)
        else:
            self.repo.create_remote(self.remote_name, url)
        logger.info("Remote %s set to %s", self.remote_name, url)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def branches(self) -> List[str]:
        return sorted(h.name for h in self.repo.heads)

    def remote_branches(self) -> List[str]:
        if not self.has_remote():
            return []
        return sorted(
            r.remote_head
            for r in self.repo.remote(self.remote_name).refs
            if r.remote_head != "HEAD"
        )

    def head(self, ref: str) -> Optional[str]:
        return self._rev(f"refs/heads/{ref}")

    def remote_head(self, ref: str) -> Optional[str]:
        """Tip of the remote side of ``ref``; the local branch when offline."""
        if self.has_remote():
            return self._rev(f"refs/remotes/{self.remote_name}/{ref}")
        return self.head(ref)

    def fetch_metadata(self, ref: str) -> Dict[str, str]:
        """Fetch and return ``{repo_path: blob hash}`` for the remote side of ``ref``."""
        self.fetch()
        tip = self.remote_head(ref)
        if tip is None:
            return {}
        return self._files(tip)

    def removed_paths(self, ref: str) -> List[str]:
        """
        Paths the local branch removed that the remote side still holds unchanged.

        Compares both tips with their merge base. A path the remote changed
        since then is not reported.
        """
        local = self.head(ref)
        remote = self.remote_head(ref)
        if local is None or remote is None or local == remote:
            return []
        bases = self.repo.merge_base(local, remote)
        if not bases:
            return []
        base_files = self._files(bases[0].hexsha)
        local_files = self._files(local)
        remote_files = self._files(remote)
        return sorted(
            path
            for path, blob in base_files.items()
            if path not in local_files and remote_files.get(path) == blob
        )

    def read_file(self, ref: str, repo_path: str, remote: bool = False) -> bytes:
        tip = self.remote_head(ref) if remote else self.head(ref)
        if tip is None:
            raise DotriceRepositoryError(f"Branch '{ref}' has no commits")
        try:
            blob = self.repo.commit(tip).tree / repo_path
        except KeyError:
            raise DotriceRepositoryError(f"'{repo_path}' is not stored on '{ref}'")
        data: bytes = blob.data_stream.read()
        return data

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def fetch(self) -> None:
        if not self.has_remote():
            return
        try:
            results = self.repo.remote(self.remote_name).fetch(
                kill_after_timeout=self.timeout
            )
        except GitCommandError as e:
            raise TransportError(f"Fetch from {self.remote_name} failed: {e}") from e
        errors = [r.note or r.name for r in results if r.flags & r.ERROR]
        if errors:
            raise TransportError(f"Fetch from {self.remote_name} failed: {errors}")

    def ensure_branch(self, ref: str) -> str:
        """Make sure ``refs/heads/<ref>`` exists and return its tip."""
        tip = self.head(ref)
        if tip is not None:
            return tip
        base = None
        if self.has_remote():
            base = self._rev(f"refs/remotes/{self.remote_name}/{ref}")
        base = base or self._root()
        self.repo.git.update_ref(f"refs/heads/{ref}", base)
        logger.debug("Created branch %s at %s", ref, base[:8])
        return base

    def copy_branch(self, source: str, target: str) -> None:
        tip = self.head(source) or self.remote_head(source) or self._root()
        self.repo.git.update_ref(f"refs/heads/{target}", tip)

    def commit(
        self, ref: str, changes: Mapping[str, Optional[bytes]], message: str
    ) -> str:
        """
        Commit ``changes`` on ``ref``.

        ``changes`` maps repo paths to new content, or to None for removal.
        The commit builds on the local tip while it contains the remote tip,
        and on the remote tip otherwise. A local tip the remote does not
        contain then becomes a second parent so no history is dropped. The
        local branch is moved to the new commit and its id returned.

        When the resulting tree equals the base tree and there is no second
        parent, no commit is made; the branch moves to the base and the base
        is returned.
        """
        git = self.repo.git
        local = self.head(ref)
        remote = self.remote_head(ref)
        if local and (remote is None or self.repo.is_ancestor(remote, local)):
            base = local
        else:
            base = remote or local or self._root()

        with tempfile.TemporaryDirectory(prefix="dotrice-index-") as tmp:
            env = {"GIT_INDEX_FILE": str(Path(tmp) / "index")}
            git.read_tree(base, env=env)
            blob_file = Path(tmp) / "blob"
            for repo_path, data in sorted(changes.items()):
                if data is None:
                    git.update_index("--force-remove", "--", repo_path, env=env)
                    continue
                blob_file.write_bytes(data)
                blob = git.hash_object("-w", "--no-filters", str(blob_file))
                git.update_index(
                    "--add", "--cacheinfo", f"100644,{blob},{repo_path}", env=env
                )
            tree = git.write_tree(env=env)

        parents = [base]
        if local and local != base and not self.repo.is_ancestor(local, base):
            parents.append(local)
        if len(parents) == 1 and tree == git.rev_parse(f"{base}^{{tree}}"):
            if local != base:
                git.update_ref(f"refs/heads/{ref}", base)
            logger.debug("Nothing to commit on %s", ref)
            return base
        sha = self._commit_tree(tree, message, parents)
        git.update_ref(f"refs/heads/{ref}", sha)
        logger.info("Committed %s on %s: %s", sha[:8], ref, message)
        return sha

    def push(self, ref: str) -> None:
        if not self.has_remote():
            return
        refspec = f"refs/heads/{ref}:refs/heads/{ref}"
        try:
            result = self.repo.remote(self.remote_name).push(
                refspec=refspec, kill_after_timeout=self.timeout
            )
        except GitCommandError as e:
            raise TransportError(f"Push to {self.remote_name} failed: {e}") from e

        errors = [r.summary.strip() for r in result if r.flags & r.ERROR]
        if errors:
            summary = "; ".join(errors)
            if "non-fast-forward" in summary or "rejected" in summary:
                raise TransportError(
                    f"Push of '{ref}' rejected (remote moved). Sync again. {summary}"
                )
            raise TransportError(f"Push of '{ref}' failed: {summary}")
        logger.info("Pushed %s to %s", ref, self.remote_name)

    def pull(self, ref: str) -> None:
        """Integrate the already fetched remote tip into the local branch."""
        if not self.has_remote():
            return
        remote = self.remote_head(ref)
        local = self.head(ref)
        if remote is None or remote == local:
            return

        if local is None or self.repo.is_ancestor(local, remote):
            self.repo.git.update_ref(f"refs/heads/{ref}", remote)
            logger.info("Fast-forwarded %s to %s", ref, remote[:8])
            return

        tree = self.repo.git.rev_parse(f"{remote}^{{tree}}")
        sha = self._commit_tree(
            tree, f"Merge {self.remote_name}/{ref}", [remote, local]
        )
        self.repo.git.update_ref(f"refs/heads/{ref}", sha)
        logger.info("Merged %s/%s into %s", self.remote_name, ref, ref)

    def reset(self, ref: str, commit_id: Optional[str]) -> None:
        if commit_id is None:
            self.repo.git.update_ref("-d", f"refs/heads/{ref}")
        else:
            self.repo.git.update_ref(f"refs/heads/{ref}", commit_id)
        logger.info("Reset %s to %s", ref, commit_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _rev(self, name: str) -> Optional[str]:
        try:
            sha: str = self.repo.git.rev_parse(
                "--verify", "--quiet", f"{name}^{{commit}}"
            )
        except GitCommandError:
            return None
        return sha or None

    def _files(self, commit_id: str) -> Dict[str, str]:
        return {
            item.path: item.hexsha
            for item in self.repo.commit(commit_id).tree.traverse()
            if item.type == "blob"
        }

    def _root(self) -> str:
        root = self._rev(ROOT_REF)
        if root is None:
            raise DotriceRepositoryError("Repository has no root commit")
        return root

    def _commit_tree(self, tree: str, message: str, parents: List[str]) -> str:
        args = [tree]
        for parent in parents:
            args.extend(["-p", parent])
        args.extend(["-m", message])
        sha: str = self.repo.git.commit_tree(*args)
        return sha
