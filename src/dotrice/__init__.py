"""
dotrice - A Git-backed dotfile and rice manager.

dotrice tracks configuration files in named profiles ("rices"), keeps each
profile on its own branch of a Git repository, synchronizes profiles across
machines and switches the files on disk from one profile to another.
"""

__version__ = "0.1.0"
__license__ = "GPL-3.0-or-later"

from .engine import Dotrice
from .mapper import HostContext, PathMapper
from .profiles import FileStatus, Profile, ProfileStore, TrackedFile
from .switcher import ProfileSwitcher, SwitchResult
from .sync import FileSync, SyncEngine, SyncReport, SyncState, SyncStatus
from .tracker import FileTracker
from .transport import GitTransport, Transport

__all__ = [
    "Dotrice",
    "HostContext",
    "PathMapper",
    "FileStatus",
    "Profile",
    "ProfileStore",
    "TrackedFile",
    "FileTracker",
    "Transport",
    "GitTransport",
    # Sync and switch
    "FileSync",
    "SyncEngine",
    "SyncReport",
    "SyncState",
    "SyncStatus",
    "ProfileSwitcher",
    "SwitchResult",
]
