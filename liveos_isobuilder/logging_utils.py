from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

DEFAULT_LOG_PATH = "logs/liveos-isobuilder.log"
FALLBACK_LOG_NAME = "liveos-isobuilder.log"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_configured_path: Optional[str] = None


def _open_log_file(log_path: str) -> Tuple[logging.Handler, str]:
    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path), log_path
    except OSError:
        # Build hosts do not always let us write where we are told to.
        fallback = str(Path.cwd() / FALLBACK_LOG_NAME)
        return logging.FileHandler(fallback), fallback


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Route every module's records to the build log (and the console).

    External commands, artifact decisions and PXE capability gaps all end up
    in the same file. When `log_path` cannot be opened, a file in the current
    directory is used instead.

    Calling it again only changes the level. Returns the log file in use.
    """

    global _configured_path

    root = logging.getLogger()
    root.setLevel(level)
    if _configured_path is not None:
        return _configured_path

    file_handler, chosen_path = _open_log_file(log_path)
    handlers: List[logging.Handler] = [file_handler]
    if also_console:
        handlers.append(logging.StreamHandler())

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    for h in handlers:
        h.setFormatter(fmt)
        root.addHandler(h)

    _configured_path = chosen_path
    logging.getLogger(__name__).info("Build log at %s (requested %s)", chosen_path, log_path)
    return chosen_path
