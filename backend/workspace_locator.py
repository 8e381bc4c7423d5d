"""
Locate the Cursor workspaceStorage directory and the workspaces inside it.
"""

import json
import logging
import os
import pathlib
import platform
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import unquote

logger = logging.getLogger(__name__)

WORKSPACE_PATH_ENV = "CURSOR_WORKSPACE_PATH"


@dataclass
class WorkspaceEntry:
    workspace_id: str
    folder: str
    name: str

    def to_dict(self):
        return {"id": self.workspace_id, "folder": self.folder, "name": self.name}


def cursor_root() -> pathlib.Path:
    h = pathlib.Path.home()
    s = platform.system()
    if s == "Darwin":   return h / "Library" / "Application Support" / "Cursor"
    if s == "Windows":  return h / "AppData" / "Roaming" / "Cursor"
    if s == "Linux":    return h / ".config" / "Cursor"
    raise RuntimeError(f"Unsupported OS: {s}")


def default_workspace_path() -> pathlib.Path:
    return cursor_root() / "User" / "workspaceStorage"


def folder_uri_to_path(folder: str) -> str:
    """``file:///Users/a/Foo`` -> ``/Users/a/Foo``"""
    if folder.startswith("file://"):
        folder = folder[len("file://"):]
    return unquote(folder)


def folder_name(folder_path: str) -> str:
    trimmed = folder_path.rstrip("/\\")
    return trimmed.replace("\\", "/").split("/")[-1] if trimmed else ""


class WorkspaceLocator:
    """Resolves the workspaceStorage directory: config, then env, then OS default."""

    def __init__(self, config_manager=None):
        self.config_manager = config_manager

    def resolve(self) -> pathlib.Path:
        if self.config_manager is not None:
            custom = self.config_manager.get_workspace_path()
            if custom:
                path = pathlib.Path(custom).expanduser()
                if path.exists():
                    logger.debug(f"Using custom workspace path: {path}")
                    return path
                logger.warning(f"Custom workspace path does not exist: {custom}, falling back")

        env_path = os.environ.get(WORKSPACE_PATH_ENV)
        if env_path:
            return pathlib.Path(env_path).expanduser()

        return default_workspace_path()

    def __call__(self) -> pathlib.Path:
        return self.resolve()


def read_workspace_entry(workspace_dir: pathlib.Path) -> Optional[WorkspaceEntry]:
    descriptor = workspace_dir / "workspace.json"
    if not descriptor.exists():
        return None
    try:
        data = json.loads(descriptor.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Error reading workspace {workspace_dir.name}: {e}")
        return None

    folder = data.get("folder") if isinstance(data, dict) else None
    if not isinstance(folder, str) or not folder:
        return None
    path = folder_uri_to_path(folder)
    return WorkspaceEntry(workspace_id=workspace_dir.name, folder=path, name=folder_name(path))


def list_workspace_entries(workspace_path: pathlib.Path) -> List[WorkspaceEntry]:
    """Every workspace folder with a readable ``workspace.json`` naming a folder."""
    if not workspace_path.exists():
        return []

    entries = []
    for child in sorted(workspace_path.iterdir()):
        if not child.is_dir():
            continue
        entry = read_workspace_entry(child)
        if entry is not None:
            entries.append(entry)
    return entries
