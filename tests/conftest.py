"""Shared pytest fixtures and configuration."""

import tempfile
from pathlib import Path
from typing import Dict, Generator

import pytest
from git import Repo

from dotrice.engine import Dotrice
from dotrice.mapper import HostContext


def create_test_files(base_dir: Path, files: Dict[str, str]) -> Dict[str, Path]:
    """Create files below ``base_dir`` and return their paths by relative name."""
    created = {}
    for rel_path, content in files.items():
        path = base_dir / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        created[rel_path] = path
    return created


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's XDG settings out of path mapping."""
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)


@pytest.fixture
def temp_home() -> Generator[Path, None, None]:
    """Create a temporary home directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def host(temp_home: Path) -> HostContext:
    return HostContext(home=temp_home, config_dir=temp_home / ".config")


@pytest.fixture
def origin() -> Generator[Path, None, None]:
    """A bare repository playing the shared remote."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir).resolve() / "origin.git"
        Repo.init(str(path), bare=True)
        yield path


@pytest.fixture
def dotrice(temp_home: Path, host: HostContext, origin: Path) -> Dotrice:
    """An initialized engine connected to ``origin``."""
    return Dotrice.init(temp_home, remote_url=str(origin), host=host)


@pytest.fixture
def offline_dotrice(temp_home: Path, host: HostContext) -> Dotrice:
    """An initialized engine with no remote."""
    return Dotrice.init(temp_home, host=host)


@pytest.fixture
def other_machine(origin: Path) -> Generator[Dotrice, None, None]:
    """A second machine sharing ``origin``."""
    with tempfile.TemporaryDirectory() as tmpdir:
        home = Path(tmpdir).resolve()
        host = HostContext(home=home, config_dir=home / ".config")
        yield Dotrice.init(home, remote_url=str(origin), host=host)


@pytest.fixture
def sample_config() -> dict:
    """Sample configuration for testing."""
    return {
        "log_level": "INFO",
        "file_patterns": {
            "include": [".*", "*.conf", "*.config"],
            "exclude": [".git", ".cache", "*.log"],
        },
        "search_settings": {
            "recursive": True,
            "case_sensitive": False,
            "follow_symlinks": False,
        },
    }
