"""Tests for mapping between local paths and repository paths."""

from pathlib import Path

import pytest

from dotrice.exceptions import DotriceConfigurationError, MappingConflict, MappingError
from dotrice.mapper import HostContext, PathMapper, canonicalize, to_local_path, to_repo_path


@pytest.fixture
def linux() -> HostContext:
    return HostContext(
        home=Path("/home/ana"),
        config_dir=Path("/home/ana/.config"),
        roots={"fonts": Path("/home/ana/.local/share/fonts")},
    )


@pytest.fixture
def mac() -> HostContext:
    return HostContext(
        home=Path("/Users/ana"),
        config_dir=Path("/Users/ana/Library/Application Support"),
        system="darwin",
        roots={"fonts": Path("/Users/ana/Library/Fonts")},
    )


class TestHostDetection:
    """Test host context detection."""

    def test_linux_uses_dot_config(self):
        host = HostContext.detect(home=Path("/home/ana"), environ={}, system="Linux")
        assert host.config_dir == Path("/home/ana/.config")
        assert host.system == "linux"

    def test_linux_honours_absolute_xdg(self):
        host = HostContext.detect(
            home=Path("/home/ana"), environ={"XDG_CONFIG_HOME": "/srv/cfg"}, system="linux"
        )
        assert host.config_dir == Path("/srv/cfg")

    def test_linux_ignores_relative_xdg(self):
        host = HostContext.detect(
            home=Path("/home/ana"), environ={"XDG_CONFIG_HOME": "cfg"}, system="linux"
        )
        assert host.config_dir == Path("/home/ana/.config")

    def test_macos_application_support(self):
        host = HostContext.detect(home=Path("/Users/ana"), environ={}, system="Darwin")
        assert host.config_dir == Path("/Users/ana/Library/Application Support")

    def test_path_mappings_expand_home(self):
        host = HostContext.detect(
            home=Path("/home/ana"),
            environ={},
            system="linux",
            path_mappings={"fonts": "~/.local/share/fonts"},
        )
        assert host.roots["fonts"] == Path("/home/ana/.local/share/fonts")

    @pytest.mark.parametrize("alias", ["home", "config", "root"])
    def test_reserved_alias_rejected(self, alias):
        with pytest.raises(DotriceConfigurationError, match="reserved"):
            HostContext.detect(
                home=Path("/home/ana"), environ={}, system="linux",
                path_mappings={alias: "/opt/x"},
            )

    def test_alias_with_slash_rejected(self):
        with pytest.raises(DotriceConfigurationError, match="single path segment"):
            HostContext.detect(
                home=Path("/home/ana"), environ={}, system="linux",
                path_mappings={"a/b": "/opt/x"},
            )

    def test_duplicate_root_rejected(self):
        with pytest.raises(DotriceConfigurationError, match="share the directory"):
            HostContext.detect(
                home=Path("/home/ana"), environ={}, system="linux",
                path_mappings={"one": "/opt/x", "two": "/opt/x"},
            )


class TestToRepoPath:
    """Test local to repository path mapping."""

    def test_config_dir_wins_over_home(self, linux):
        assert to_repo_path(Path("/home/ana/.config/kitty/kitty.conf"), linux) == (
            "config/kitty/kitty.conf"
        )

    def test_home_file(self, linux):
        assert to_repo_path(Path("/home/ana/.bashrc"), linux) == "home/.bashrc"

    def test_extra_root(self, linux):
        assert to_repo_path(Path("/home/ana/.local/share/fonts/a.ttf"), linux) == "fonts/a.ttf"

    def test_outside_home_uses_anchor(self, linux):
        assert to_repo_path(Path("/etc/X11/xorg.conf"), linux) == "root/etc/X11/xorg.conf"

    def test_relative_path_taken_from_home(self, linux):
        assert to_repo_path(Path(".zshrc"), linux) == "home/.zshrc"

    def test_tilde_expanded(self, linux):
        assert canonicalize(Path("~/.zshrc"), linux) == Path("/home/ana/.zshrc")

    def test_dot_segments_normalized(self, linux):
        assert to_repo_path(Path("/home/ana/.config/../.bashrc"), linux) == "home/.bashrc"

    def test_root_itself_rejected(self, linux):
        with pytest.raises(MappingError):
            to_repo_path(Path("/home/ana/.config"), linux)


class TestToLocalPath:
    """Test repository to local path mapping."""

    @pytest.mark.parametrize(
        "local",
        [
            "/home/ana/.bashrc",
            "/home/ana/.config/polybar/config.ini",
            "/home/ana/.local/share/fonts/Iosevka.ttf",
            "/etc/hosts",
        ],
    )
    def test_round_trip(self, linux, local):
        path = Path(local)
        assert to_local_path(to_repo_path(path, linux), linux) == path

    def test_config_path_moves_between_platforms(self, linux, mac):
        repo_path = to_repo_path(Path("/home/ana/.config/kitty/kitty.conf"), linux)
        assert to_local_path(repo_path, mac) == Path(
            "/Users/ana/Library/Application Support/kitty/kitty.conf"
        )

    def test_extra_root_moves_between_platforms(self, linux, mac):
        repo_path = to_repo_path(Path("/home/ana/.local/share/fonts/a.ttf"), linux)
        assert to_local_path(repo_path, mac) == Path("/Users/ana/Library/Fonts/a.ttf")

    @pytest.mark.parametrize(
        "repo_path",
        ["home/../../etc/passwd", "/etc/passwd", "home\\x", "nowhere/file", "home"],
    )
    def test_invalid_repo_paths_rejected(self, linux, repo_path):
        with pytest.raises(MappingError):
            to_local_path(repo_path, linux)

    def test_distinct_local_paths_never_collide(self, linux):
        locals_ = [
            Path("/home/ana/.config/a"),
            Path("/home/ana/config/a"),
            Path("/home/ana/a"),
            Path("/config/a"),
            Path("/home/ana/.local/share/fonts/a"),
            Path("/home/ana/fonts/a"),
        ]
        repo_paths = [to_repo_path(p, linux) for p in locals_]
        assert len(set(repo_paths)) == len(locals_)


class TestClaim:
    """Test conflict detection when adopting repository paths."""

    def test_claim_free_path(self, linux):
        mapper = PathMapper(linux)
        assert mapper.claim("home/.bashrc", {}) == Path("/home/ana/.bashrc")

    def test_claim_own_path(self, linux):
        mapper = PathMapper(linux)
        claimed = {Path("/home/ana/.bashrc"): "home/.bashrc"}
        assert mapper.claim("home/.bashrc", claimed) == Path("/home/ana/.bashrc")

    def test_claim_conflict(self, linux):
        mapper = PathMapper(linux)
        claimed = {Path("/home/ana/.config/app.conf"): "root/home/ana/.config/app.conf"}
        with pytest.raises(MappingConflict) as exc_info:
            mapper.claim("config/app.conf", claimed)
        assert exc_info.value.claimed_by == "root/home/ana/.config/app.conf"
        assert exc_info.value.local_path == Path("/home/ana/.config/app.conf")
