"""Core helpers for dotrice - paths, configuration, hashing and backups."""

import copy
import fnmatch
import hashlib
import json
import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import DotriceBackupError, DotriceConfigurationError

logger = logging.getLogger(__name__)

# Constants
DOTRICE_DIR_NAME = ".dotrice"
REPO_DIR_NAME = "repo"
PROFILES_DIR_NAME = "profiles"
CONFIG_FILENAME = "config.json"
BACKUP_DIR_NAME = "backups"
LOCKS_DIR_NAME = "locks"
JOURNAL_FILENAME = "switch.json"
LOG_FILENAME = "dotrice.log"
HASH_CHUNK_SIZE = 1024 * 1024


# ============================================================================
# PATH MANAGEMENT
# ============================================================================


def get_home_dir() -> Path:
    """Get the home directory, respecting environment variables for testing."""
    if "HOME" in os.environ:
        return Path(os.environ["HOME"])
    return Path.home()


def get_dotrice_paths(home_dir: Optional[Path] = None) -> Dict[str, Path]:
    """Get all dotrice-related paths based on home directory."""
    if home_dir is None:
        home_dir = get_home_dir()

    dotrice_dir = home_dir / DOTRICE_DIR_NAME

    return {
        "home": home_dir,
        "dotrice_dir": dotrice_dir,
        "repo": dotrice_dir / REPO_DIR_NAME,
        "profiles_dir": dotrice_dir / PROFILES_DIR_NAME,
        "config_file": dotrice_dir / CONFIG_FILENAME,
        "backup_dir": dotrice_dir / BACKUP_DIR_NAME,
        "locks_dir": dotrice_dir / LOCKS_DIR_NAME,
        "journal_file": dotrice_dir / JOURNAL_FILENAME,
        "log_file": dotrice_dir / LOG_FILENAME,
    }


# ============================================================================
# GLOBAL CONFIGURATION AND PATHS
# ============================================================================

DEFAULT_CONFIG: Dict[str, Any] = {
    "log_level": "WARNING",
    "transport": {
        "remote": "origin",
        "timeout": 60,  # seconds, per network call
    },
    "path_mappings": {},  # alias -> directory, e.g. {"fonts": "~/.local/share/fonts"}
    "file_patterns": {
        "include": [
            ".*",
            "*.conf",
            "*.config",
            "*.cfg",
            "*.ini",
            "*.toml",
            "*.yaml",
            "*.yml",
            "*.json",
            "*.rasi",
            "*.css",
        ],
        "exclude": [
            ".DS_Store",
            ".Trash*",
            ".cache",
            ".git",
            "*.log",
            "*.tmp",
        ],
    },
    "search_settings": {
        "recursive": True,
        "case_sensitive": False,
        "follow_symlinks": False,
    },
}

_paths = get_dotrice_paths()
HOME = _paths["home"]
CONFIG_FILE = _paths["config_file"]
BACKUP_DIR = _paths["backup_dir"]


# ============================================================================
# CONFIGURATION MANAGEMENT
# ============================================================================


def load_config(config_file: Optional[Path] = None) -> Dict[str, Any]:
    """Load configuration from config file, or return default if not exists."""
    config_file = config_file or CONFIG_FILE
    config = copy.deepcopy(DEFAULT_CONFIG)
    if not config_file.exists():
        return config

    try:
        with open(config_file, "r") as f:
            stored = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Error reading config file %s: %s. Using defaults.", config_file, e)
        return config

    if not isinstance(stored, dict):
        logger.warning("Config file %s is not an object. Using defaults.", config_file)
        return config

    # Merge nested sections so partial files keep default keys
    for key, value in stored.items():
        if isinstance(value, dict) and isinstance(config.get(key), dict):
            config[key].update(value)
        else:
            config[key] = value
    return config


def save_config(config: Dict[str, Any], config_file: Optional[Path] = None) -> None:
    """Save configuration to config file."""
    config_file = config_file or CONFIG_FILE
    atomic_write_json(config_file, config)


def get_config_value(key_path: str, config_file: Optional[Path] = None) -> Any:
    """Get a configuration value by key path (e.g., 'transport.timeout')."""
    value: Any = load_config(config_file)
    try:
        for key in key_path.split("."):
            value = value[key]
    except (KeyError, TypeError):
        raise DotriceConfigurationError(f"Configuration key '{key_path}' not found")
    return value


def set_config_value(
    key_path: str, value: str, config_file: Optional[Path] = None
) -> Any:
    """Set a configuration value by key path and return the stored value."""
    config = load_config(config_file)
    keys = key_path.split(".")

    current = config
    for key in keys[:-1]:
        if not isinstance(current.setdefault(key, {}), dict):
            raise DotriceConfigurationError(f"'{key}' in '{key_path}' is not a section")
        current = current[key]

    if value.startswith("[") or value.startswith("{"):
        try:
            parsed: Any = json.loads(value)
        except json.JSONDecodeError:
            raise DotriceConfigurationError(f"Invalid JSON value: {value}")
    elif value.lower() in ("true", "false"):
        parsed = value.lower() == "true"
    elif value.isdigit():
        parsed = int(value)
    else:
        parsed = value

    current[keys[-1]] = parsed
    save_config(config, config_file)
    return parsed


def reset_config(config_file: Optional[Path] = None) -> None:
    """Reset configuration to defaults."""
    save_config(copy.deepcopy(DEFAULT_CONFIG), config_file)


def matches_patterns(
    filename: str,
    include_patterns: List[str],
    exclude_patterns: List[str],
    case_sensitive: bool = False,
) -> bool:
    """
    Check if a filename matches the include patterns and doesn't match exclude
    patterns.
    """
    if not case_sensitive:
        filename = filename.lower()
        include_patterns = [p.lower() for p in include_patterns]
        exclude_patterns = [p.lower() for p in exclude_patterns]

    included = any(fnmatch.fnmatch(filename, pattern) for pattern in include_patterns)
    excluded = any(fnmatch.fnmatch(filename, pattern) for pattern in exclude_patterns)

    return included and not excluded


def find_config_files(directory: Path, config: Dict[str, Any]) -> List[Path]:
    """Find files matching the configured patterns in a directory."""
    include_patterns = config["file_patterns"]["include"]
    exclude_patterns = config["file_patterns"]["exclude"]
    case_sensitive = config["search_settings"]["case_sensitive"]
    follow_symlinks = config["search_settings"]["follow_symlinks"]

    directory = Path(directory)
    if config["search_settings"]["recursive"]:
        iterator = directory.rglob("*")
    else:
        iterator = directory.iterdir()

    found_files = []
    for item in iterator:
        if not follow_symlinks and item.is_symlink():
            continue
        # Skip anything below an excluded directory such as .git
        parents = item.relative_to(directory).parts[:-1]
        if not all(
            matches_patterns(part, ["*"], exclude_patterns, case_sensitive)
            for part in parents
        ):
            continue
        if item.is_file() and matches_patterns(
            item.name, include_patterns, exclude_patterns, case_sensitive
        ):
            found_files.append(item)

    return sorted(found_files)


# ============================================================================
# HASHING AND ATOMIC WRITES
# ============================================================================


def hash_bytes(data: bytes) -> str:
    """Return the git blob id of ``data``."""
    digest = hashlib.sha1(f"blob {len(data)}\0".encode())  # nosec B324
    digest.update(data)
    return digest.hexdigest()


def hash_file(path: Path) -> str:
    """Return the git blob id of a file without loading it whole."""
    digest = hashlib.sha1(f"blob {path.stat().st_size}\0".encode())  # nosec B324
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` through a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON atomically so readers never see a half-written file."""
    atomic_write_bytes(path, (json.dumps(data, indent=2) + "\n").encode())


def read_json(path: Path) -> Any:
    with open(path, "r") as f:
        return json.load(f)


# ============================================================================
# BACKUP MANAGEMENT
# ============================================================================


def create_backup(
    file_path: Path,
    operation: str = "switch",
    backup_dir: Optional[Path] = None,
    home: Optional[Path] = None,
) -> Optional[Path]:
    """
    Create a backup of a file before overwriting it.

    Args:
        file_path: Path to the file to backup
        operation: The operation being performed (for backup naming)
        backup_dir: Directory receiving the backup, defaults to ~/.dotrice/backups
        home: Home directory used to shorten the backup name

    Returns:
        Path to the backup file, or None if there was nothing to back up
    """
    if not file_path.exists():
        return None

    backup_dir = backup_dir or BACKUP_DIR
    home = home or HOME
    backup_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    if file_path.is_relative_to(home):
        relative_path = file_path.relative_to(home)
    else:
        relative_path = Path(*file_path.parts[1:])
    backup_name = (
        f"{relative_path.as_posix().replace('/', '_')}_{operation}_{timestamp}"
    )
    backup_path = backup_dir / backup_name

    try:
        shutil.copy2(file_path, backup_path)
    except OSError as e:
        raise DotriceBackupError(f"Failed to backup {relative_path}: {e}") from e

    logger.info("Backed up %s to %s", file_path, backup_path)
    return backup_path


def list_backups(backup_dir: Optional[Path] = None) -> List[Path]:
    """List all backup files, newest first."""
    backup_dir = backup_dir or BACKUP_DIR
    if not backup_dir.exists():
        return []

    backups = [f for f in backup_dir.iterdir() if f.is_file()]
    return sorted(backups, key=lambda x: x.stat().st_mtime, reverse=True)
