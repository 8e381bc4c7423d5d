"""
Process-lifetime working copy of the Cursor global store.

The IDE's own ``state.vscdb`` is never opened for writing. The first
request copies it to a shadow file, filters that copy when an allow-list is
configured, and remembers the resulting path until ``invalidate()``.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Union

from kv_store import StoreCopyError, copy_store
from store_filter import create_filtered_database

logger = logging.getLogger(__name__)

SHADOW_DB_NAME = "state.vscdb.shadow"
FILTERED_DB_NAME = "filtered.vscdb"


def default_temp_dir() -> Path:
    return Path.cwd() / ".temp" / "db"


class ShadowStoreManager:
    """
    Owns the cached active store path.

    ``get_active_store_path`` and ``invalidate`` share one lock, so at most
    one copy/filter pass runs at a time and callers never see a half-built
    file.
    """

    def __init__(
        self,
        workspace_path_resolver: Callable[[], Path],
        config_manager,
        temp_dir: Optional[Union[str, Path]] = None,
    ):
        self.workspace_path_resolver = workspace_path_resolver
        self.config_manager = config_manager
        self.temp_dir = Path(temp_dir) if temp_dir else default_temp_dir()
        self._cached_path: Optional[Path] = None
        self._lock = threading.Lock()

    @property
    def cached_path(self) -> Optional[Path]:
        return self._cached_path

    @property
    def shadow_path(self) -> Path:
        return self.temp_dir / SHADOW_DB_NAME

    @property
    def filtered_path(self) -> Path:
        return self.temp_dir / FILTERED_DB_NAME

    def source_store_path(self) -> Path:
        workspace_path = Path(self.workspace_path_resolver())
        return workspace_path.parent / "globalStorage" / "state.vscdb"

    def get_active_store_path(self) -> Path:
        with self._lock:
            return self._derive()

    def invalidate(self) -> Path:
        """Drop the cached copy and build a fresh one now."""
        with self._lock:
            self._cached_path = None
            logger.info("Shadow database invalidated, re-deriving")
            return self._derive()

    def _derive(self) -> Path:
        if self._cached_path is not None and self._cached_path.exists():
            return self._cached_path

        original = self.source_store_path()
        if not original.exists():
            logger.warning(f"Original database not found at: {original}")
            return original

        try:
            copy_store(original, self.shadow_path)
        except StoreCopyError as e:
            logger.error(f"Failed to copy/setup database: {e}")
            return original
        logger.info(f"Database copied to shadow path: {self.shadow_path}")

        allowed_projects = self.config_manager.get_allowed_projects()
        logger.info(f"Allowed projects from config: {', '.join(allowed_projects)}")

        if not allowed_projects:
            logger.info("No allowed projects configured, using full database")
            self._cached_path = self.shadow_path
            return self.shadow_path

        if create_filtered_database(self.shadow_path, self.filtered_path, allowed_projects):
            try:
                self.shadow_path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove shadow database {self.shadow_path}: {e}")
            self._cached_path = self.filtered_path
            logger.info(f"Successfully created and switched to filtered database: {self.filtered_path}")
            return self.filtered_path

        # Availability wins over filtering here: the unfiltered copy is served.
        logger.warning(
            "Failed to create filtered database, falling back to shadow DB; "
            "project filtering is NOT applied"
        )
        self._cached_path = self.shadow_path
        return self.shadow_path
