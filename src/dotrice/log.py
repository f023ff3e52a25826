"""Logging setup for dotrice."""

import logging
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: Union[int, str] = "WARNING",
    log_file: Optional[Path] = None,
    debug: bool = False,
) -> logging.Logger:
    """
    Configure the ``dotrice`` logger.

    Console records go to stderr through rich so they never mix with command
    output. When ``log_file`` is given every record at ``level`` or above is
    also appended there.
    """
    if debug:
        level = logging.DEBUG
    elif isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    root = logging.getLogger("dotrice")
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=debug,
    )
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            root.warning("Could not open log file %s: %s", log_file, e)
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
            file_handler.setLevel(level)
            root.addHandler(file_handler)

    return root
