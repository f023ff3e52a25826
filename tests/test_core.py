"""Tests for dotrice core functionality."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from git import Repo

from dotrice.core import (
    DEFAULT_CONFIG,
    atomic_write_json,
    create_backup,
    find_config_files,
    get_config_value,
    get_dotrice_paths,
    hash_bytes,
    hash_file,
    list_backups,
    load_config,
    matches_patterns,
    reset_config,
    save_config,
    set_config_value,
)
from dotrice.exceptions import DotriceConfigurationError
from tests.conftest import create_test_files
from tests.helpers.builders import ConfigBuilder


class TestDotricePaths:
    """Test dotrice path management."""

    def test_get_dotrice_paths_default(self):
        """Test default paths come from the home directory."""
        with patch("dotrice.core.get_home_dir") as mock_home:
            mock_home.return_value = Path("/home/user")
            paths = get_dotrice_paths()

        assert paths["dotrice_dir"] == Path("/home/user/.dotrice")
        assert paths["repo"] == Path("/home/user/.dotrice/repo")
        assert paths["profiles_dir"] == Path("/home/user/.dotrice/profiles")
        assert paths["config_file"] == Path("/home/user/.dotrice/config.json")
        assert paths["journal_file"] == Path("/home/user/.dotrice/switch.json")

    def test_get_dotrice_paths_custom_home(self, temp_home: Path):
        """Test paths with an explicit home directory."""
        paths = get_dotrice_paths(temp_home)
        assert paths["home"] == temp_home
        assert paths["locks_dir"] == temp_home / ".dotrice" / "locks"


class TestConfiguration:
    """Test configuration management."""

    def test_missing_file_gives_defaults(self, tmp_path: Path):
        """Test loading configuration when the file doesn't exist."""
        assert load_config(tmp_path / "config.json") == DEFAULT_CONFIG

    def test_defaults_not_shared(self, tmp_path: Path):
        """Test that callers cannot mutate the defaults."""
        config = load_config(tmp_path / "config.json")
        config["file_patterns"]["include"].append("*.zzz")
        assert "*.zzz" not in DEFAULT_CONFIG["file_patterns"]["include"]

    def test_partial_file_merged_with_defaults(self, tmp_path: Path):
        """Test that nested sections keep default keys."""
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"transport": {"timeout": 5}}))

        config = load_config(config_file)

        assert config["transport"] == {"remote": "origin", "timeout": 5}
        assert config["file_patterns"] == DEFAULT_CONFIG["file_patterns"]

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
    def test_corrupt_file_gives_defaults(self, tmp_path: Path, content: str):
        """Test that unreadable configuration falls back to defaults."""
        config_file = tmp_path / "config.json"
        config_file.write_text(content)
        assert load_config(config_file) == DEFAULT_CONFIG

    def test_save_and_load(self, tmp_path: Path, sample_config: dict):
        """Test saving configuration to file."""
        config_file = tmp_path / "config.json"
        save_config(sample_config, config_file)
        assert json.loads(config_file.read_text()) == sample_config

    def test_get_config_value(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        assert get_config_value("transport.remote", config_file) == "origin"
        with pytest.raises(DotriceConfigurationError):
            get_config_value("transport.nope", config_file)

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("30", 30),
            ("true", True),
            ("False", False),
            ('["*.conf"]', ["*.conf"]),
            ('{"fonts": "~/.fonts"}', {"fonts": "~/.fonts"}),
            ("upstream", "upstream"),
        ],
    )
    def test_set_config_value_parses(self, tmp_path: Path, raw: str, expected):
        """Test value parsing for 'config set'."""
        config_file = tmp_path / "config.json"
        assert set_config_value("custom.value", raw, config_file) == expected
        assert load_config(config_file)["custom"]["value"] == expected

    def test_set_config_value_bad_json(self, tmp_path: Path):
        with pytest.raises(DotriceConfigurationError, match="Invalid JSON"):
            set_config_value("file_patterns.include", "[oops", tmp_path / "config.json")

    def test_set_config_value_through_scalar(self, tmp_path: Path):
        with pytest.raises(DotriceConfigurationError, match="not a section"):
            set_config_value("log_level.sub", "x", tmp_path / "config.json")

    def test_reset_config(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        set_config_value("log_level", "DEBUG", config_file)
        reset_config(config_file)
        assert load_config(config_file)["log_level"] == "WARNING"


class TestFilePatterns:
    """Test include/exclude matching."""

    def test_matches_patterns(self):
        assert matches_patterns(".bashrc", [".*"], [".git"])
        assert not matches_patterns(".git", [".*"], [".git"])
        assert not matches_patterns("notes.txt", [".*", "*.conf"], [])

    def test_case_insensitive_by_default(self):
        assert matches_patterns("Picom.CONF", ["*.conf"], [])
        assert not matches_patterns("Picom.CONF", ["*.conf"], [], case_sensitive=True)

    def test_find_config_files(self, tmp_path: Path):
        """Test discovery honours patterns, recursion and excluded directories."""
        create_test_files(
            tmp_path,
            {
                "picom.conf": "",
                "README.md": "",
                "nested/rofi.rasi": "",
                ".git/config": "",
                "app.log": "",
            },
        )
        config = ConfigBuilder().with_include_patterns(["*.conf", "*.rasi", "config"]).build()

        found = find_config_files(tmp_path, config)

        assert found == [tmp_path / "nested" / "rofi.rasi", tmp_path / "picom.conf"]

    def test_find_config_files_non_recursive(self, tmp_path: Path):
        create_test_files(tmp_path, {"a.conf": "", "nested/b.conf": ""})
        config = ConfigBuilder().with_include_patterns(["*.conf"]).with_recursive(False).build()
        assert find_config_files(tmp_path, config) == [tmp_path / "a.conf"]


class TestHashing:
    """Test content fingerprints."""

    def test_hash_is_git_blob_id(self, tmp_path: Path):
        """Test that hashes equal the ids git gives the same bytes."""
        data = b"font_size 11\n"
        repo = Repo.init(str(tmp_path / "repo"))
        sample = tmp_path / "sample"
        sample.write_bytes(data)

        assert hash_bytes(data) == repo.git.hash_object(str(sample))
        assert hash_file(sample) == hash_bytes(data)

    def test_empty_file(self, tmp_path: Path):
        empty = tmp_path / "empty"
        empty.write_bytes(b"")
        assert hash_file(empty) == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"


class TestAtomicWrites:
    def test_atomic_write_json(self, tmp_path: Path):
        target = tmp_path / "sub" / "state.json"
        atomic_write_json(target, {"a": 1})
        assert json.loads(target.read_text()) == {"a": 1}
        assert [p.name for p in target.parent.iterdir()] == ["state.json"]


class TestBackups:
    """Test backups taken before overwriting files."""

    def test_create_backup(self, temp_home: Path):
        source = temp_home / ".config" / "kitty" / "kitty.conf"
        source.parent.mkdir(parents=True)
        source.write_text("font_size 11")
        backup_dir = temp_home / ".dotrice" / "backups"

        backup = create_backup(source, "switch", backup_dir, temp_home)

        assert backup is not None
        assert backup.name.startswith(".config_kitty_kitty.conf_switch_")
        assert backup.read_text() == "font_size 11"
        assert list_backups(backup_dir) == [backup]

    def test_missing_file_not_backed_up(self, temp_home: Path):
        assert create_backup(temp_home / ".nothing", "switch", temp_home / "b", temp_home) is None

    def test_list_backups_without_dir(self, tmp_path: Path):
        assert list_backups(tmp_path / "none") == []
