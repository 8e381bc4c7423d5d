"""
Best-effort append-only log file for store lifecycle events.

Writes go through ``logging``; a handler that cannot write drops the record
instead of reporting the failure to the caller.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Union

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"

STORE_LOGGERS = ("kv_store", "record_parsers", "project_attribution", "store_filter", "shadow_store")


class SafeFileHandler(logging.FileHandler):
    """FileHandler that silently drops records it fails to write."""

    def handleError(self, record):
        pass


def configure_file_log(
    log_dir: Union[str, Path],
    filename: str = "db-manager.log",
    loggers: Iterable[str] = STORE_LOGGERS,
    level: int = logging.INFO,
) -> Optional[SafeFileHandler]:
    try:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = SafeFileHandler(log_dir / filename, mode="a", encoding="utf-8")
    except OSError:
        return None

    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(level)
    for name in loggers:
        target = logging.getLogger(name)
        if target.level == logging.NOTSET or target.level > level:
            target.setLevel(level)
        target.addHandler(handler)
    return handler


def remove_file_log(handler: SafeFileHandler, loggers: Iterable[str] = STORE_LOGGERS) -> None:
    for name in loggers:
        logging.getLogger(name).removeHandler(handler)
    handler.close()
