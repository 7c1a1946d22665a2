from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..storage.session_paths import SessionPaths


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(log_path: Optional[Path] = None, level: int = logging.INFO, console: bool = False) -> Path:
    """Send package logs to sessions/logs/bodyscan.log (and optionally stderr)."""
    path = log_path or SessionPaths.default().log_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger("bodyscan")
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        stream.setLevel(logging.WARNING)
        root.addHandler(stream)
    return path
