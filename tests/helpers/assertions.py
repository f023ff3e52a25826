"""
Custom assertion helpers for dotrice tests.
"""

from pathlib import Path
from typing import Dict, Union

from dotrice.profiles import ProfileStore
from dotrice.staging import PENDING_MARKER


def assert_file_exists(file_path: Union[str, Path], message: str = "") -> None:
    path = Path(file_path)
    assert path.exists(), f"File does not exist: {path} {message}".strip()
    assert path.is_file(), f"Path exists but is not a file: {path} {message}".strip()


def assert_file_not_exists(file_path: Union[str, Path], message: str = "") -> None:
    path = Path(file_path)
    assert not path.exists(), f"File should not exist: {path} {message}".strip()


def assert_file_content(file_path: Union[str, Path], expected: str) -> None:
    path = Path(file_path)
    assert_file_exists(path)
    actual = path.read_text()
    assert actual == expected, f"Content mismatch in {path}: {actual!r} != {expected!r}"


def assert_single_active(store: ProfileStore) -> None:
    """Zero or one profile is active."""
    active = [p.id for p in store.list() if p.active]
    assert len(active) <= 1, f"More than one active profile: {active}"


def assert_no_pending_files(root: Path) -> None:
    pending = [p for p in root.rglob(f"*{PENDING_MARKER}*")]
    assert not pending, f"Staging leftovers: {pending}"


def snapshot_tree(root: Path, skip: str = ".dotrice") -> Dict[str, bytes]:
    """Every file below ``root`` (outside ``skip``) with its bytes."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file() and skip not in p.relative_to(root).parts
    }
