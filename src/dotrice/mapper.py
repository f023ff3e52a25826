"""Mapping between local filesystem paths and repository storage paths.

Repository layout::

    config/<rel>   files under the host's configuration directory
    <alias>/<rel>  files under a configured extra root (``path_mappings``)
    home/<rel>     files under the home directory
    root/<rel>     any other absolute path, relative to the filesystem anchor

The longest matching root wins, so ``~/.config/kitty/kitty.conf`` is stored
as ``config/kitty/kitty.conf`` on Linux and lands in
``~/Library/Application Support/kitty/kitty.conf`` on macOS. Nothing outside
this module looks at the operating system.
"""

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Mapping, Optional, Tuple

from .core import get_home_dir
from .exceptions import DotriceConfigurationError, MappingConflict, MappingError

CONFIG_ROOT = "config"
HOME_ROOT = "home"
ANCHOR_ROOT = "root"
RESERVED_ROOTS = (CONFIG_ROOT, HOME_ROOT, ANCHOR_ROOT)


@dataclass(frozen=True)
class HostContext:
    """Machine-specific roots used to translate paths."""

    home: Path
    config_dir: Path
    system: str = "linux"
    roots: Mapping[str, Path] = field(default_factory=dict)

    @classmethod
    def detect(
        cls,
        home: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        system: Optional[str] = None,
        path_mappings: Optional[Mapping[str, str]] = None,
    ) -> "HostContext":
        """Build the context for the running machine."""
        environ = os.environ if environ is None else environ
        system = (system or platform.system()).lower()
        home = Path(home) if home is not None else get_home_dir()

        if system == "windows":
            appdata = environ.get("APPDATA")
            config_dir = Path(appdata) if appdata else home / "AppData" / "Roaming"
        elif system == "darwin":
            config_dir = home / "Library" / "Application Support"
        else:
            xdg = environ.get("XDG_CONFIG_HOME", "")
            # XDG says relative values must be ignored
            config_dir = Path(xdg) if xdg and Path(xdg).is_absolute() else home / ".config"

        roots: Dict[str, Path] = {}
        for alias, raw in (path_mappings or {}).items():
            roots[alias] = _expand(str(raw), home)

        host = cls(
            home=_normalize(home),
            config_dir=_normalize(config_dir),
            system=system,
            roots=roots,
        )
        host.validate()
        return host

    def validate(self) -> None:
        """Reject alias sets that would make the mapping ambiguous."""
        reserved = sorted(set(self.roots) & set(RESERVED_ROOTS))
        if reserved:
            raise DotriceConfigurationError(
                f"Path mapping alias '{reserved[0]}' is reserved"
            )

        seen: Dict[Path, str] = {}
        for alias, root in self.mount_points():
            if not alias or "/" in alias or "\\" in alias or alias in (".", ".."):
                raise DotriceConfigurationError(
                    f"Path mapping alias '{alias}' must be a single path segment"
                )
            if not root.is_absolute():
                raise DotriceConfigurationError(
                    f"Path mapping '{alias}' must point to an absolute directory"
                )
            if root in seen:
                raise DotriceConfigurationError(
                    f"Path mappings '{seen[root]}' and '{alias}' share the directory {root}"
                )
            seen[root] = alias

    def mount_points(self) -> List[Tuple[str, Path]]:
        """Roots ordered so the most specific directory is tried first."""
        points = [(CONFIG_ROOT, self.config_dir), (HOME_ROOT, self.home)]
        points.extend(
            (alias, root) for alias, root in self.roots.items()
            if alias not in RESERVED_ROOTS
        )
        return sorted(points, key=lambda item: len(item[1].parts), reverse=True)


def _normalize(path: Path) -> Path:
    return Path(os.path.normpath(str(path)))


def _expand(raw: str, home: Path) -> Path:
    if raw == "~" or raw.startswith("~/"):
        raw = str(home) + raw[1:]
    return _normalize(Path(raw))


def canonicalize(local_path: Path, host: HostContext) -> Path:
    """Absolute, normalized form of a local path. Relative paths are taken from home."""
    path = _expand(str(local_path), host.home)
    if not path.is_absolute():
        path = _normalize(host.home / path)
    return path


def to_repo_path(local_path: Path, host: HostContext) -> str:
    """Map a local path to its repository storage path."""
    path = canonicalize(local_path, host)
    for alias, root in host.mount_points():
        if path == root:
            raise MappingError(f"{path} is a mapping root, not a file")
        if path.is_relative_to(root):
            return f"{alias}/{path.relative_to(root).as_posix()}"

    rel = path.relative_to(path.anchor)
    if not rel.parts:
        raise MappingError(f"{path} cannot be tracked")
    return f"{ANCHOR_ROOT}/{rel.as_posix()}"


def to_local_path(repo_path: str, host: HostContext) -> Path:
    """Map a repository storage path back to a local path on this host."""
    pure = PurePosixPath(repo_path)
    if pure.is_absolute() or "\\" in repo_path:
        raise MappingError(f"'{repo_path}' is not a relative repository path")
    if ".." in pure.parts:
        raise MappingError(f"'{repo_path}' escapes its mapping root")
    if len(pure.parts) < 2:
        raise MappingError(f"'{repo_path}' has no mapping root")

    alias, rest = pure.parts[0], pure.parts[1:]
    if alias == ANCHOR_ROOT:
        return Path(host.home.anchor).joinpath(*rest)

    roots = dict(host.mount_points())
    if alias not in roots:
        raise MappingError(f"'{repo_path}' uses unknown mapping root '{alias}'")
    return roots[alias].joinpath(*rest)


def claim(repo_path: str, host: HostContext, claimed: Mapping[Path, str]) -> Path:
    """
    Map an incoming repo path, refusing local paths owned by another source.

    ``claimed`` maps already-claimed local paths to the repo path that owns
    them. A repo path may re-claim its own local path.
    """
    local_path = to_local_path(repo_path, host)
    owner = claimed.get(local_path)
    if owner is not None and owner != repo_path:
        raise MappingConflict(repo_path, local_path, owner)
    return local_path


class PathMapper:
    """PathMapper bound to one host context."""

    def __init__(self, host: HostContext) -> None:
        self.host = host

    def canonicalize(self, local_path: Path) -> Path:
        return canonicalize(local_path, self.host)

    def to_repo_path(self, local_path: Path) -> str:
        return to_repo_path(local_path, self.host)

    def to_local_path(self, repo_path: str) -> Path:
        return to_local_path(repo_path, self.host)

    def claim(self, repo_path: str, claimed: Mapping[Path, str]) -> Path:
        return claim(repo_path, self.host, claimed)
