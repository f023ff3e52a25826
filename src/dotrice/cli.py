"""CLI commands for dotrice - a Git-backed rice manager."""

import json
from contextlib import contextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.status import Status
from typing_extensions import Annotated

from . import __version__
from .core import (
    get_config_value,
    get_dotrice_paths,
    list_backups,
    load_config,
    reset_config,
    set_config_value,
)
from .engine import Dotrice
from .exceptions import DotriceError, SyncConflict, UnsafeOverwrite
from .log import setup_logging
from .profiles import FileStatus
from .sync import Resolution
from .watcher import main as watcher_main

# Constants
MAX_DISPLAYED_FILES = 10

# Global app and console instances
app = typer.Typer(help="dotrice - a Git-backed rice manager")
console = Console()

STATUS_COLORS = {
    FileStatus.CLEAN: typer.colors.GREEN,
    FileStatus.MODIFIED: typer.colors.YELLOW,
    FileStatus.MISSING_ON_DISK: typer.colors.RED,
    FileStatus.UNTRACKED_ON_DISK: typer.colors.CYAN,
}


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================


@app.callback()
def main(
    debug: Annotated[
        bool, typer.Option("--debug", help="Log debug output to stderr")
    ] = False,
) -> None:
    """Configure logging from the config file before any command runs."""
    paths = get_dotrice_paths()
    config = load_config(paths["config_file"])
    log_file = paths["log_file"] if paths["dotrice_dir"].exists() else None
    setup_logging(config.get("log_level", "WARNING"), log_file, debug=debug)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn dotrice errors into a red message and exit code 1."""
    try:
        yield
    except KeyboardInterrupt:
        typer.secho("Operation cancelled by user", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1)
    except DotriceError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def get_engine() -> Dotrice:
    return Dotrice()


def get_config_file() -> Path:
    return get_dotrice_paths()["config_file"]


def _short(commit: Optional[str]) -> str:
    return commit[:8] if commit else "-"


# ============================================================================
# SETUP COMMANDS
# ============================================================================


@app.command()
def init(
    remote: Annotated[
        str, typer.Option(help="Optional remote URL to add as origin (SSH or HTTPS).")
    ] = "",
) -> None:
    """Initialize a new dotrice repository."""
    with handle_errors():
        Dotrice.init(remote_url=remote)

    typer.secho("Dotrice repository initialized successfully", fg=typer.colors.GREEN, bold=True)
    typer.secho("Next steps:", fg=typer.colors.CYAN)
    typer.echo("  Track files: dotrice track <path> --profile <name>")
    typer.echo("  Check status: dotrice status")
    if remote:
        typer.echo("  Sync with the remote: dotrice sync")


@app.command()
def clone(
    remote_url: Annotated[str, typer.Argument(help="Remote repository URL")],
) -> None:
    """Clone a remote repository and create a profile for each of its branches."""
    with handle_errors(), Status("Cloning...", console=console):
        dotrice = Dotrice.clone(remote_url)

    profiles = dotrice.list_profiles()
    typer.secho(f"Cloned {len(profiles)} profile(s)", fg=typer.colors.GREEN)
    for profile in profiles:
        typer.echo(f"  {profile.id} ({len(profile.tracked_files)} files)")
    if profiles:
        typer.echo("Apply one with: dotrice switch <profile>")


# ============================================================================
# TRACKING COMMANDS
# ============================================================================


@app.command()
def track(
    paths: Annotated[List[Path], typer.Argument(help="Files or directories to track")],
    profile: Annotated[
        Optional[str],
        typer.Option("--profile", "-p", help="Profile to track into (default: active)"),
    ] = None,
    quiet: Annotated[
        bool, typer.Option("--quiet", "-q", help="Suppress output")
    ] = False,
) -> None:
    """Track files or directories in a profile."""
    with handle_errors():
        dotrice = get_engine()
        for path in paths:
            local_path = dotrice.mapper.canonicalize(path)
            if local_path.is_dir():
                result = dotrice.track_directory(local_path, profile)
                if not quiet:
                    typer.secho(
                        f"Tracked {result['success']} file(s) from {local_path}"
                        f" ({result['skipped']} already tracked, {result['failed']} failed)",
                        fg=typer.colors.GREEN,
                    )
                continue
            tracked = dotrice.track(local_path, profile)
            if not quiet:
                typer.secho(
                    f"Tracked {tracked.local_path} in '{tracked.profile_id}'",
                    fg=typer.colors.GREEN,
                )


@app.command()
def untrack(
    paths: Annotated[List[Path], typer.Argument(help="Files to stop tracking")],
    profile: Annotated[
        Optional[str], typer.Option("--profile", "-p", help="Profile holding the file")
    ] = None,
) -> None:
    """Stop tracking files. They stay on disk and in history."""
    with handle_errors():
        dotrice = get_engine()
        for path in paths:
            tracked = dotrice.untrack(path, profile)
            typer.secho(
                f"Untracked {tracked.local_path} from '{tracked.profile_id}'",
                fg=typer.colors.GREEN,
            )


@app.command()
def status(
    profile: Annotated[
        Optional[str], typer.Option("--profile", "-p", help="Profile to inspect")
    ] = None,
    remote: Annotated[
        bool, typer.Option("--remote", "-r", help="Also compare with the remote")
    ] = False,
) -> None:
    """Show the status of a profile's tracked files."""
    with handle_errors():
        dotrice = get_engine()
        files = dotrice.status(profile)
        state = dotrice.plan_sync(profile) if remote else None

    if not files:
        typer.secho("No files tracked.", fg=typer.colors.YELLOW)
    for tracked in files:
        typer.secho(
            f"  {tracked.status.value:<18} {tracked.local_path}",
            fg=STATUS_COLORS[tracked.status],
        )

    if state is not None:
        for label, items in (
            ("Local ahead", state.local_ahead),
            ("Remote ahead", state.remote_ahead),
            ("Diverged", state.diverged),
            ("Removed here", state.local_removed),
            ("Removed on the remote", state.remote_removed),
        ):
            if items:
                typer.secho(f"{label}:", fg=typer.colors.YELLOW)
                for item in items:
                    typer.echo(f"  {item.repo_path}")
        if not state.changed:
            typer.secho("In sync with the remote", fg=typer.colors.GREEN)


@app.command()
def commit(
    profile: Annotated[
        Optional[str], typer.Option("--profile", "-p", help="Profile to commit")
    ] = None,
    message: Annotated[
        Optional[str], typer.Option("--message", "-m", help="Commit message")
    ] = None,
) -> None:
    """Commit modified tracked files to the profile's branch."""
    with handle_errors():
        sha = get_engine().commit(profile, message)
    if sha is None:
        typer.secho("Nothing to commit", fg=typer.colors.YELLOW)
    else:
        typer.secho(f"Committed {_short(sha)}", fg=typer.colors.GREEN)


# ============================================================================
# SYNC COMMANDS
# ============================================================================


@app.command()
def sync(
    profile: Annotated[
        Optional[str], typer.Argument(help="Profile to sync (default: active)")
    ] = None,
    retries: Annotated[
        int, typer.Option("--retries", help="Retry network failures this many times")
    ] = 0,
) -> None:
    """Synchronize a profile with its remote branch."""
    try:
        with Status("Syncing...", console=console):
            report = get_engine().sync(profile, retries=retries)
    except SyncConflict as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        for item in e.conflicts[:MAX_DISPLAYED_FILES]:
            typer.secho(f"  {item.local_path}", fg=typer.colors.RED, err=True)
        if len(e.conflicts) > MAX_DISPLAYED_FILES:
            typer.secho(
                f"  ... and {len(e.conflicts) - MAX_DISPLAYED_FILES} more",
                fg=typer.colors.RED,
                err=True,
            )
        typer.secho(
            "  → Run 'dotrice resolve <path> --keep local|remote' for each file",
            fg=typer.colors.CYAN,
            err=True,
        )
        raise typer.Exit(code=1)
    except DotriceError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    state = report.state
    typer.secho(
        f"Synced '{report.profile_id}': pushed {len(state.local_ahead)}, "
        f"pulled {len(state.remote_ahead)}, unchanged {len(state.in_sync)}",
        fg=typer.colors.GREEN,
    )
    removed = len(state.local_removed) + len(state.remote_removed)
    if removed:
        typer.echo(f"  untracked {removed}")
    if report.commit:
        typer.echo(f"  commit {_short(report.commit)}")


@app.command()
def resolve(
    path: Annotated[Path, typer.Argument(help="Diverged file")],
    keep: Annotated[Resolution, typer.Option("--keep", help="Side to keep")],
    profile: Annotated[
        Optional[str], typer.Option("--profile", "-p", help="Profile holding the file")
    ] = None,
) -> None:
    """Resolve a sync conflict by keeping the local or the remote version."""
    with handle_errors():
        get_engine().resolve(path, keep.value, profile)
    typer.secho(f"Resolved {path} keeping {keep.value}", fg=typer.colors.GREEN)
    typer.echo("Run 'dotrice sync' to finish")


# ============================================================================
# SWITCH COMMANDS
# ============================================================================


@app.command()
def switch(
    name: Annotated[str, typer.Argument(help="Profile name to switch to")],
    confirm: Annotated[
        bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")
    ] = False,
    force: Annotated[
        bool, typer.Option("--force", help="Overwrite unsaved files (they are backed up)")
    ] = False,
    acknowledge: Annotated[
        Optional[List[Path]],
        typer.Option("--acknowledge", "-a", help="File that may be overwritten"),
    ] = None,
    no_save: Annotated[
        bool, typer.Option("--no-save", help="Do not commit the current profile first")
    ] = False,
) -> None:
    """Switch the files on disk to another profile."""
    with handle_errors():
        dotrice = get_engine()
        current = dotrice.active_profile()
        if current is not None and current.id == name:
            typer.secho(f"Already using profile '{name}'", fg=typer.colors.YELLOW)
            return

        if not confirm:
            typer.secho(f"Switch to profile '{name}'?", fg=typer.colors.CYAN)
            if current is not None:
                action = "discard" if no_save else "save"
                typer.secho(
                    f"Modified files of '{current.id}' will be {action}d",
                    fg=typer.colors.WHITE,
                )
            if not typer.confirm("Continue?"):
                typer.secho("Profile switch cancelled.", fg=typer.colors.YELLOW)
                return

        try:
            result = dotrice.switch(
                name, save_current=not no_save, acknowledge=acknowledge or [], force=force
            )
        except UnsafeOverwrite as e:
            typer.secho(
                "Error: these files hold unsaved content:", fg=typer.colors.RED, err=True
            )
            for path in e.paths:
                typer.secho(f"  {path}", fg=typer.colors.RED, err=True)
            typer.secho(
                "  → Pass --acknowledge <path> for each, or --force",
                fg=typer.colors.CYAN,
                err=True,
            )
            raise typer.Exit(code=1)

    typer.secho(f"Switched to profile '{name}'", fg=typer.colors.GREEN)
    typer.echo(f"  wrote {len(result.written)}, removed {len(result.removed)}")
    for backup in result.backups:
        typer.secho(f"  backup: {backup}", fg=typer.colors.WHITE)


@app.command()
def recover() -> None:
    """Finish or undo a switch that was interrupted."""
    with handle_errors():
        outcome = get_engine().recover()
    if outcome is None:
        typer.secho("Nothing to recover", fg=typer.colors.GREEN)
    elif outcome == "rolled-back":
        typer.secho("Interrupted switch undone", fg=typer.colors.YELLOW)
    else:
        typer.secho("Interrupted switch completed", fg=typer.colors.GREEN)


# ============================================================================
# UTILITY COMMANDS
# ============================================================================


@app.command()
def watch(
    auto_commit: Annotated[
        bool, typer.Option("--commit", help="Commit changes as they happen")
    ] = False,
    auto_track: Annotated[
        bool, typer.Option("--track-new", help="Track new files that match the patterns")
    ] = False,
) -> None:
    """Watch the active profile's files for changes."""
    typer.secho("Starting watcher...", fg=typer.colors.WHITE)

    def report(path: Path, kind: str) -> None:
        typer.echo(f"{kind}: {path}")

    with handle_errors():
        watcher_main(get_engine(), auto_commit, auto_track, report)
    typer.secho("Watcher stopped.", fg=typer.colors.YELLOW)


@app.command()
def version() -> None:
    """Show dotrice version."""
    try:
        version_str = get_version("dotrice")
    except PackageNotFoundError:
        version_str = __version__

    typer.secho(f"dotrice version {version_str}", fg=typer.colors.GREEN)


# ============================================================================
# BACKUP COMMANDS
# ============================================================================

backup_app = typer.Typer(help="Inspect backups taken before overwriting files")
app.add_typer(backup_app, name="backup")


@backup_app.command("list")
def backup_list(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show file sizes")
    ] = False,
) -> None:
    """List backups, newest first."""
    backups = list_backups(get_dotrice_paths()["backup_dir"])
    if not backups:
        typer.secho("No backups found.", fg=typer.colors.YELLOW)
        return

    typer.secho(f"Found {len(backups)} backup(s):", fg=typer.colors.WHITE, bold=True)
    for backup_path in backups:
        if verbose:
            typer.secho(
                f"  {backup_path.name} ({backup_path.stat().st_size} bytes)",
                fg=typer.colors.CYAN,
            )
        else:
            typer.secho(f"  {backup_path.name}", fg=typer.colors.CYAN)


# ============================================================================
# CONFIGURATION COMMANDS
# ============================================================================

config_app = typer.Typer(help="Manage dotrice configuration")
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show(
    key: Annotated[
        str,
        typer.Argument(
            help="Configuration key to show (e.g., 'transport.timeout' "
            "or leave empty for all)"
        ),
    ] = "",
) -> None:
    """Show current configuration or a specific configuration value."""
    if not key:
        typer.echo(json.dumps(load_config(get_config_file()), indent=2))
        return

    with handle_errors():
        value = get_config_value(key, get_config_file())
    if isinstance(value, (list, dict)):
        typer.echo(json.dumps(value, indent=2))
    else:
        typer.echo(str(value))


@config_app.command("set")
def config_set(
    key: Annotated[
        str, typer.Argument(help="Configuration key to set (e.g., 'log_level')")
    ],
    value: Annotated[
        str, typer.Argument(help="Value to set (JSON strings for lists/objects)")
    ],
) -> None:
    """Set a configuration value."""
    with handle_errors():
        stored = set_config_value(key, value, get_config_file())
    typer.secho(f"Set {key} = {json.dumps(stored)}", fg=typer.colors.GREEN)


@config_app.command("reset")
def config_reset(
    confirm: Annotated[
        bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")
    ] = False,
) -> None:
    """Reset configuration to defaults."""
    if not confirm and not typer.confirm("Reset configuration to defaults?"):
        typer.secho("Reset cancelled.", fg=typer.colors.YELLOW)
        return
    reset_config(get_config_file())
    typer.secho("Configuration reset to defaults", fg=typer.colors.GREEN)


# ============================================================================
# PROFILE COMMANDS
# ============================================================================

profile_app = typer.Typer(help="Manage rice profiles")
app.add_typer(profile_app, name="profile")


@profile_app.command("create")
def profile_create(
    name: Annotated[str, typer.Argument(help="Profile name")],
    branch: Annotated[
        Optional[str],
        typer.Option("--branch", "-b", help="Remote branch (default: the name)"),
    ] = None,
    description: Annotated[
        str, typer.Option("--description", "-d", help="Profile description")
    ] = "",
    copy_from: Annotated[
        str, typer.Option("--copy-from", help="Copy from existing profile")
    ] = "",
) -> None:
    """Create a new profile."""
    with handle_errors():
        profile = get_engine().create_profile(
            name, remote_ref=branch, description=description, copy_from=copy_from or None
        )
    typer.secho(
        f"Created profile '{profile.id}' on branch '{profile.remote_ref}'",
        fg=typer.colors.GREEN,
    )


@profile_app.command("list")
def profile_list(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show detailed information")
    ] = False,
) -> None:
    """List all profiles."""
    with handle_errors():
        profiles = get_engine().list_profiles()

    if not profiles:
        typer.secho("No profiles found.", fg=typer.colors.YELLOW)
        typer.echo("Create a profile with: dotrice profile create <name>")
        return

    typer.secho(f"Found {len(profiles)} profile(s):", fg=typer.colors.WHITE, bold=True)
    for profile in profiles:
        indicator = " ●" if profile.active else "  "
        color = typer.colors.GREEN if profile.active else typer.colors.CYAN
        desc_part = f" - {profile.description}" if profile.description else ""
        typer.secho(f"{indicator} {profile.id:<18} {profile.remote_ref}{desc_part}", fg=color)
        if verbose:
            typer.secho(f"     Files:     {len(profile.tracked_files)}", fg=typer.colors.WHITE)
            typer.secho(f"     Created:   {profile.created}", fg=typer.colors.WHITE)
            typer.secho(
                f"     Last used: {profile.last_used or 'never'}", fg=typer.colors.WHITE
            )


@profile_app.command("current")
def profile_current() -> None:
    """Show the currently active profile."""
    with handle_errors():
        active = get_engine().active_profile()
    if active is None:
        typer.secho("No active profile", fg=typer.colors.YELLOW)
        typer.echo("Switch to one with: dotrice switch <name>")
        return
    typer.secho(f"Active profile: {active.id}", fg=typer.colors.GREEN, bold=True)
    typer.secho(f"Files: {len(active.tracked_files)}", fg=typer.colors.WHITE)


@profile_app.command("info")
def profile_info(
    name: Annotated[str, typer.Argument(help="Profile name")],
) -> None:
    """Show detailed information about a profile."""
    with handle_errors():
        profile = get_engine().get_profile(name)

    color = typer.colors.GREEN if profile.active else typer.colors.CYAN
    typer.secho(f"Profile: {profile.id}", fg=color, bold=True)
    if profile.active:
        typer.secho("Status: ACTIVE", fg=typer.colors.GREEN, bold=True)
    if profile.description:
        typer.secho(f"Description:  {profile.description}", fg=typer.colors.WHITE)
    typer.secho(f"Branch:       {profile.remote_ref}", fg=typer.colors.WHITE)
    typer.secho(f"Created:      {profile.created}", fg=typer.colors.WHITE)
    typer.secho(f"Last used:    {profile.last_used or 'never'}", fg=typer.colors.WHITE)
    typer.secho(f"Files:        {len(profile.tracked_files)}", fg=typer.colors.WHITE)
    for tracked in sorted(profile.tracked_files, key=lambda t: t.repo_path)[:MAX_DISPLAYED_FILES]:
        typer.echo(f"  {tracked.repo_path}")
    if len(profile.tracked_files) > MAX_DISPLAYED_FILES:
        typer.echo(f"  ... and {len(profile.tracked_files) - MAX_DISPLAYED_FILES} more")


@profile_app.command("update")
def profile_update(
    name: Annotated[str, typer.Argument(help="Profile name")],
    branch: Annotated[
        Optional[str], typer.Option("--branch", "-b", help="New remote branch")
    ] = None,
    description: Annotated[
        Optional[str], typer.Option("--description", "-d", help="New description")
    ] = None,
) -> None:
    """Change a profile's branch or description."""
    with handle_errors():
        profile = get_engine().update_profile(name, remote_ref=branch, description=description)
    typer.secho(f"Updated profile '{profile.id}'", fg=typer.colors.GREEN)


@profile_app.command("delete")
def profile_delete(
    name: Annotated[str, typer.Argument(help="Profile name to delete")],
    confirm: Annotated[
        bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")
    ] = False,
) -> None:
    """Delete a profile. Its branch history is kept."""
    if not confirm and not typer.confirm(f"Delete profile '{name}'?"):
        typer.secho("Deletion cancelled.", fg=typer.colors.YELLOW)
        return
    with handle_errors():
        get_engine().delete_profile(name)
    typer.secho(f"Profile '{name}' deleted", fg=typer.colors.GREEN)


@profile_app.command("reassign")
def profile_reassign(
    path: Annotated[Path, typer.Argument(help="Tracked file")],
    name: Annotated[str, typer.Argument(help="Profile to move it to")],
    from_profile: Annotated[
        Optional[str], typer.Option("--from", help="Profile currently holding it")
    ] = None,
) -> None:
    """Move a tracked file to another profile."""
    with handle_errors():
        tracked = get_engine().reassign(path, name, from_profile)
    typer.secho(f"Moved {tracked.local_path} to '{name}'", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
