"""Tests for tracking files and detecting their changes."""

from pathlib import Path

import pytest

from dotrice.core import hash_bytes
from dotrice.exceptions import (
    AlreadyTracked,
    DotriceFileOperationError,
    DotriceRepositoryError,
    NotTracked,
    PathNotFound,
)
from dotrice.profiles import FileStatus
from tests.conftest import create_test_files
from tests.helpers.builders import ConfigBuilder, RiceBuilder


class TestTrack:
    """Test tracking single files."""

    def test_track_records_and_commits(self, offline_dotrice, temp_home):
        bashrc = temp_home / ".bashrc"
        bashrc.write_text("alias ll='ls -l'\n")

        record = offline_dotrice.track(bashrc, "dark")

        assert record.repo_path == "home/.bashrc"
        assert record.content_hash == hash_bytes(bashrc.read_bytes())
        assert record.synced_hash is None
        stored = offline_dotrice.transport.read_file("dark", "home/.bashrc")
        assert stored == bashrc.read_bytes()

    def test_first_tracked_profile_becomes_active(self, offline_dotrice, temp_home):
        (temp_home / ".bashrc").write_text("x")
        offline_dotrice.track(temp_home / ".bashrc", "dark")
        assert offline_dotrice.active_profile().id == "dark"

    def test_track_relative_to_home(self, offline_dotrice, temp_home):
        (temp_home / ".vimrc").write_text("set number")
        record = offline_dotrice.track(Path(".vimrc"), "dark")
        assert record.local_path == temp_home / ".vimrc"

    def test_track_missing(self, offline_dotrice, temp_home):
        with pytest.raises(PathNotFound) as exc_info:
            offline_dotrice.track(temp_home / ".nothing", "dark")
        assert exc_info.value.path == temp_home / ".nothing"

    def test_track_directory_path_refused(self, offline_dotrice, temp_home):
        (temp_home / ".config").mkdir()
        with pytest.raises(DotriceFileOperationError):
            offline_dotrice.tracker.track(temp_home / ".config", "dark")

    def test_track_twice(self, offline_dotrice, temp_home):
        (temp_home / ".bashrc").write_text("x")
        offline_dotrice.track(temp_home / ".bashrc", "dark")
        with pytest.raises(AlreadyTracked) as exc_info:
            offline_dotrice.track(temp_home / ".bashrc", "light")
        assert exc_info.value.profile_id == "dark"

    def test_config_dir_mapping(self, offline_dotrice, temp_home):
        conf = temp_home / ".config" / "kitty" / "kitty.conf"
        conf.parent.mkdir(parents=True)
        conf.write_text("font_size 12")
        assert offline_dotrice.track(conf, "dark").repo_path == "config/kitty/kitty.conf"


class TestTrackDirectory:
    """Test tracking every matching file below a directory."""

    def test_patterns_applied(self, offline_dotrice, temp_home):
        create_test_files(
            temp_home / ".config" / "polybar",
            {
                "config.ini": "[bar]",
                "launch.sh": "#!/bin/sh",
                "colors.conf": "bg=#000",
                "debug.log": "noise",
                ".git/HEAD": "ref",
            },
        )
        offline_dotrice.tracker.config = (
            ConfigBuilder().with_include_patterns(["*.ini", "*.conf", "*.log"]).build()
        )

        result = offline_dotrice.track_directory(temp_home / ".config" / "polybar", "dark")

        assert result == {"success": 2, "skipped": 0, "failed": 0}
        repo_paths = sorted(t.repo_path for t in offline_dotrice.get_profile("dark").tracked_files)
        assert repo_paths == ["config/polybar/colors.conf", "config/polybar/config.ini"]

    def test_already_tracked_skipped(self, offline_dotrice, temp_home):
        files = create_test_files(temp_home / ".config" / "app", {"a.conf": "1", "b.conf": "2"})
        offline_dotrice.track(files["a.conf"], "dark")
        result = offline_dotrice.track_directory(temp_home / ".config" / "app", "dark")
        assert result["success"] == 1
        assert result["skipped"] == 1

    def test_missing_directory(self, offline_dotrice, temp_home):
        with pytest.raises(PathNotFound):
            offline_dotrice.track_directory(temp_home / "nope", "dark")


class TestUntrackAndReassign:
    """Test removing and moving records."""

    def test_untrack_keeps_file(self, offline_dotrice, temp_home):
        RiceBuilder(offline_dotrice, "dark").with_file(".bashrc", "x").build()
        record = offline_dotrice.untrack(temp_home / ".bashrc")
        assert record.profile_id == "dark"
        assert (temp_home / ".bashrc").read_text() == "x"
        assert offline_dotrice.get_profile("dark").tracked_files == []
        with pytest.raises(DotriceRepositoryError):
            offline_dotrice.transport.read_file("dark", "home/.bashrc")
        # History is kept
        assert offline_dotrice.transport.repo.git.show("dark~1:home/.bashrc") == "x"

    def test_untrack_unknown(self, offline_dotrice, temp_home):
        with pytest.raises(NotTracked):
            offline_dotrice.untrack(temp_home / ".bashrc")

    def test_reassign(self, offline_dotrice, temp_home):
        RiceBuilder(offline_dotrice, "dark").with_file(".bashrc", "x").build()
        offline_dotrice.create_profile("light")

        moved = offline_dotrice.reassign(temp_home / ".bashrc", "light")

        assert moved.profile_id == "light"
        assert offline_dotrice.get_profile("dark").tracked_files == []
        assert offline_dotrice.get_profile("light").file(temp_home / ".bashrc") is not None
        assert offline_dotrice.transport.read_file("light", "home/.bashrc") == b"x"
        with pytest.raises(DotriceRepositoryError):
            offline_dotrice.transport.read_file("dark", "home/.bashrc")


class TestRefreshStatus:
    """Test change detection."""

    def test_statuses(self, offline_dotrice, temp_home):
        RiceBuilder(offline_dotrice, "dark").with_file(".a", "1").with_file(
            ".b", "2"
        ).with_file(".c", "3").build()
        (temp_home / ".b").write_text("changed")
        (temp_home / ".c").unlink()

        statuses = {t.repo_path: t.status for t in offline_dotrice.status("dark")}

        assert statuses == {
            "home/.a": FileStatus.CLEAN,
            "home/.b": FileStatus.MODIFIED,
            "home/.c": FileStatus.MISSING_ON_DISK,
        }

    def test_sorted_by_repo_path(self, offline_dotrice):
        RiceBuilder(offline_dotrice, "dark").with_file(".z").with_file(".a").with_file(
            ".config/m.conf"
        ).build()
        repo_paths = [t.repo_path for t in offline_dotrice.status("dark")]
        assert repo_paths == sorted(repo_paths)

    def test_inactive_profile_not_on_disk(self, offline_dotrice, temp_home):
        RiceBuilder(offline_dotrice, "dark").with_file(".a", "1").build()
        offline_dotrice.create_profile("light", copy_from="dark")
        (temp_home / ".a").write_text("edited while dark is active")

        light = offline_dotrice.status("light")

        assert light[0].status == FileStatus.UNTRACKED_ON_DISK
        assert light[0].current_hash == light[0].content_hash

    def test_refresh_does_not_persist(self, offline_dotrice, temp_home):
        RiceBuilder(offline_dotrice, "dark").with_file(".a", "1").build()
        (temp_home / ".a").write_text("2")
        offline_dotrice.status("dark")
        assert offline_dotrice.get_profile("dark").tracked_files[0].content_hash == hash_bytes(b"1")


class TestCommit:
    """Test the explicit commit step."""

    def test_commit_modified(self, offline_dotrice, temp_home):
        RiceBuilder(offline_dotrice, "dark").with_file(".a", "1").with_file(".b", "2").build()
        (temp_home / ".a").write_text("one")

        sha = offline_dotrice.commit("dark", "tweak")

        assert sha is not None
        assert offline_dotrice.transport.head("dark") == sha
        assert offline_dotrice.transport.read_file("dark", "home/.a") == b"one"
        assert all(t.status == FileStatus.CLEAN for t in offline_dotrice.status("dark"))

    def test_nothing_to_commit(self, offline_dotrice):
        RiceBuilder(offline_dotrice, "dark").with_file(".a", "1").build()
        assert offline_dotrice.commit("dark") is None
