"""Watch the active profile's files and commit edits as they happen."""

import logging
import os
import time
from pathlib import Path
from typing import Callable, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .core import load_config, matches_patterns
from .engine import Dotrice
from .exceptions import DotriceError

logger = logging.getLogger(__name__)


def _event_path(raw: object) -> Path:
    # watchdog reports bytes paths for bytes-scheduled watches
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return Path(str(bytes(raw), "utf-8"))
    return Path(str(raw))


def get_watch_dirs(dotrice: Dotrice) -> List[Path]:
    """Directories holding the active profile's files."""
    active = dotrice.active_profile()
    if active is None:
        return []
    dirs = {tf.local_path.parent for tf in active.tracked_files}
    return sorted(d for d in dirs if d.is_dir())


class DotriceEventHandler(FileSystemEventHandler):
    def __init__(
        self,
        dotrice: Dotrice,
        auto_commit: bool = False,
        auto_track: bool = False,
        on_change: Optional[Callable[[Path, str], None]] = None,
    ) -> None:
        super().__init__()
        self.dotrice = dotrice
        self.auto_commit = auto_commit
        self.auto_track = auto_track
        self.on_change = on_change
        self.config = load_config(dotrice.paths["config_file"])
        self.reload_tracked()

    def reload_tracked(self) -> None:
        active = self.dotrice.active_profile()
        self.profile_id = active.id if active is not None else None
        self.tracked: Set[Path] = set(active.local_paths()) if active is not None else set()

    def should_track_file(self, filename: str) -> bool:
        """Check if a new file matches the configured patterns."""
        return matches_patterns(
            filename,
            self.config["file_patterns"]["include"],
            self.config["file_patterns"]["exclude"],
            self.config["search_settings"]["case_sensitive"],
        )

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = _event_path(event.src_path)
        if path == self.dotrice.paths["config_file"]:
            self.config = load_config(path)
            logger.info("Configuration reloaded")
            return
        if path in self.tracked:
            self._changed(path, "modified")

    def on_moved(self, event: FileSystemEvent) -> None:
        # Editors that save through a temp file and rename show up as moves
        if event.is_directory:
            return
        path = _event_path(event.dest_path)
        if path in self.tracked:
            self._changed(path, "modified")

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = _event_path(event.src_path)
        if os.path.islink(path):
            return
        if path in self.tracked:
            self._changed(path, "created")
        elif self.auto_track and self.profile_id and self.should_track_file(path.name):
            try:
                self.dotrice.track(path, self.profile_id)
            except DotriceError as e:
                logger.warning("Could not auto-track %s: %s", path, e)
                return
            self.tracked.add(path)
            self._changed(path, "tracked")

    def _changed(self, path: Path, kind: str) -> None:
        logger.info("%s %s", kind.capitalize(), path)
        if self.on_change is not None:
            self.on_change(path, kind)
        if self.auto_commit and self.profile_id:
            try:
                self.dotrice.commit(self.profile_id)
            except DotriceError as e:
                logger.warning("Auto-commit of %s failed: %s", path, e)


def main(
    dotrice: Dotrice,
    auto_commit: bool = False,
    auto_track: bool = False,
    on_change: Optional[Callable[[Path, str], None]] = None,
) -> None:
    watch_dirs = get_watch_dirs(dotrice)
    if not watch_dirs:
        raise DotriceError("No tracked files to watch. Track one with 'dotrice track <path>'")

    observer = Observer()
    handler = DotriceEventHandler(dotrice, auto_commit, auto_track, on_change)
    for directory in watch_dirs:
        observer.schedule(handler, str(directory), recursive=False)
    observer.schedule(handler, str(dotrice.paths["dotrice_dir"]), recursive=False)
    observer.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        observer.stop()
    observer.join()
