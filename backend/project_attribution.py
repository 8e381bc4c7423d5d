"""
Decide which project a stored conversation belongs to.

Signals are tried in a fixed order and the first hit wins:

1. ``projectLayouts`` root paths from the conversation's request contexts
   (the IDE's own declaration of the project root).
2. ``newlyCreatedFiles`` on the composer record.
3. File paths used as keys of ``codeBlockData``.
4. File references inside the conversation's bubbles, in conversation order.

Steps 2-4 normalize each path and look for a project name as a
case-sensitive substring. A short project name contained in a longer one
can therefore match the wrong project; that is accepted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from record_parsers import conversation_headers

logger = logging.getLogger(__name__)

_HOME_PREFIX = re.compile(r"^/Users/[^/]+/")
_WSL_C_PREFIX = re.compile(r"^/mnt/c/")


def normalize_file_path(path: str) -> str:
    """
    Bring a stored file path into the form project names are matched against.

    ``/Users/alice/Foo/src/main.ts`` -> ``Foo\\src\\main.ts``
    ``/mnt/c/work/Foo/x.py``         -> ``C:\\work\\Foo\\x.py``
    """
    if path.startswith("file://"):
        path = path[len("file://"):]
    path = _HOME_PREFIX.sub("", path, count=1)
    path = _WSL_C_PREFIX.sub(lambda _: "C:\\", path, count=1)
    return path.replace("/", "\\")


def _last_segment(path: str) -> str:
    trimmed = path.rstrip("/\\")
    return re.split(r"[/\\]", trimmed)[-1] if trimmed else ""


@dataclass
class ConversationRecords:
    """Everything the attribution engine looks at for one conversation."""
    composer_id: str
    composer: Dict[str, Any]
    root_paths: List[str] = field(default_factory=list)
    bubbles: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class Attribution:
    project: str
    matcher: str


################################################################################
# Catalogs
################################################################################
class ProjectCatalog:
    """What signals are matched against. Returns a project identifier or None."""

    def match_root(self, root_path: str) -> Optional[str]:
        raise NotImplementedError

    def match_file(self, normalized_path: str) -> Optional[str]:
        raise NotImplementedError


class AllowListCatalog(ProjectCatalog):
    """Plain list of allowed project names; identifiers are the names themselves."""

    def __init__(self, names: Sequence[str]):
        self.names = [n for n in names if n]
        self._name_set = set(self.names)

    def match_root(self, root_path: str) -> Optional[str]:
        if root_path in self._name_set:
            return root_path
        name = _last_segment(root_path)
        return name if name in self._name_set else None

    def match_file(self, normalized_path: str) -> Optional[str]:
        for name in self.names:
            if name in normalized_path:
                return name
        return None


class WorkspaceCatalog(ProjectCatalog):
    """Project folder name -> workspace id, built from workspace.json descriptors."""

    def __init__(self, name_to_workspace: Dict[str, str]):
        self.name_to_workspace = dict(name_to_workspace)

    @classmethod
    def from_entries(cls, entries: Iterable[Any]) -> "WorkspaceCatalog":
        mapping: Dict[str, str] = {}
        for entry in entries:
            if entry.name:
                mapping[entry.name] = entry.workspace_id
        return cls(mapping)

    def match_root(self, root_path: str) -> Optional[str]:
        if root_path in self.name_to_workspace:
            return self.name_to_workspace[root_path]
        return self.name_to_workspace.get(_last_segment(root_path))

    def match_file(self, normalized_path: str) -> Optional[str]:
        for name, workspace_id in self.name_to_workspace.items():
            if name in normalized_path:
                return workspace_id
        return None


################################################################################
# Matchers
################################################################################
Matcher = Callable[[ConversationRecords, ProjectCatalog], Optional[str]]


def _match_paths(paths: Iterable[str], catalog: ProjectCatalog) -> Optional[str]:
    for path in paths:
        project = catalog.match_file(normalize_file_path(path))
        if project:
            return project
    return None


def _uri_path(obj: Any) -> Optional[str]:
    if isinstance(obj, dict):
        uri = obj.get("uri")
        if isinstance(uri, dict) and isinstance(uri.get("path"), str):
            return uri["path"]
    return None


def match_project_layouts(records: ConversationRecords, catalog: ProjectCatalog) -> Optional[str]:
    for root in records.root_paths:
        project = catalog.match_root(root)
        if project:
            return project
    return None


def match_newly_created_files(records: ConversationRecords, catalog: ProjectCatalog) -> Optional[str]:
    files = records.composer.get("newlyCreatedFiles")
    if not isinstance(files, list):
        return None
    return _match_paths((p for p in map(_uri_path, files) if p), catalog)


def match_code_block_data(records: ConversationRecords, catalog: ProjectCatalog) -> Optional[str]:
    code_blocks = records.composer.get("codeBlockData")
    if not isinstance(code_blocks, dict):
        return None
    return _match_paths(code_blocks.keys(), catalog)


def _bubble_file_paths(bubble: Dict[str, Any]) -> Iterator[str]:
    relevant = bubble.get("relevantFiles")
    if isinstance(relevant, list):
        for path in relevant:
            if isinstance(path, str) and path:
                yield path

    chunks = bubble.get("attachedFileCodeChunksUris")
    if isinstance(chunks, list):
        for uri in chunks:
            if isinstance(uri, dict) and isinstance(uri.get("path"), str):
                yield uri["path"]

    context = bubble.get("context")
    if isinstance(context, dict) and isinstance(context.get("fileSelections"), list):
        for selection in context["fileSelections"]:
            path = _uri_path(selection)
            if path:
                yield path


def match_bubble_files(records: ConversationRecords, catalog: ProjectCatalog) -> Optional[str]:
    for header in conversation_headers(records.composer):
        bubble = records.bubbles.get(header["bubbleId"])
        if not isinstance(bubble, dict):
            continue
        project = _match_paths(_bubble_file_paths(bubble), catalog)
        if project:
            return project
    return None


DEFAULT_MATCHERS: List[Matcher] = [
    match_project_layouts,
    match_newly_created_files,
    match_code_block_data,
    match_bubble_files,
]

# Listing and search skip the per-bubble scan.
QUICK_MATCHERS: List[Matcher] = DEFAULT_MATCHERS[:3]


class ProjectAttributor:
    """Runs matchers in order against a catalog; first hit wins."""

    def __init__(self, catalog: ProjectCatalog, matchers: Optional[Sequence[Matcher]] = None):
        self.catalog = catalog
        self.matchers = list(matchers if matchers is not None else DEFAULT_MATCHERS)

    def attribute(self, records: ConversationRecords) -> Optional[Attribution]:
        for matcher in self.matchers:
            try:
                project = matcher(records, self.catalog)
            except (AttributeError, TypeError, KeyError) as e:
                logger.debug(f"{matcher.__name__} failed for {records.composer_id}: {e}")
                continue
            if project:
                return Attribution(project=project, matcher=matcher.__name__)
        return None
