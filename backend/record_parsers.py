"""
Decoders for the JSON blobs stored under each record family.

Every decoder returns a ``ParseResult`` instead of raising, so a single
malformed record only removes that record's signal. Skips are counted in
``ParseStats`` and reported once per pass.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from kv_store import KVStore, KeyFamily

logger = logging.getLogger(__name__)


@dataclass
class ParseResult:
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any) -> "ParseResult":
        return cls(value=value)

    @classmethod
    def skip(cls, reason: str) -> "ParseResult":
        return cls(error=reason)


class ParseStats:
    """Counts records skipped as unparseable, per family."""

    def __init__(self):
        self._skipped: Dict[str, int] = defaultdict(int)

    def record_skip(self, family: str, count: int = 1) -> None:
        self._skipped[family] += count

    def skipped(self, family: str) -> int:
        return self._skipped.get(family, 0)

    @property
    def total_skipped(self) -> int:
        return sum(self._skipped.values())

    def as_dict(self) -> Dict[str, int]:
        return dict(self._skipped)

    def log_summary(self, context: str) -> None:
        if self.total_skipped:
            logger.warning(f"{context}: skipped {self.total_skipped} unparseable records {self.as_dict()}")


def decode_json(raw: Any) -> ParseResult:
    if raw is None:
        return ParseResult.skip("empty value")
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            return ParseResult.skip(f"undecodable bytes: {e}")
    if not isinstance(raw, str):
        return ParseResult.skip(f"unexpected value type {type(raw).__name__}")
    try:
        return ParseResult.success(json.loads(raw))
    except ValueError as e:
        return ParseResult.skip(f"invalid JSON: {e}")


def _decode_object(raw: Any) -> ParseResult:
    result = decode_json(raw)
    if result.ok and not isinstance(result.value, dict):
        return ParseResult.skip("not an object")
    return result


def parse_composer(raw: Any) -> ParseResult:
    return _decode_object(raw)


def parse_bubble(raw: Any) -> ParseResult:
    return _decode_object(raw)


def parse_request_context(raw: Any) -> ParseResult:
    return _decode_object(raw)


def extract_root_paths(context: Dict[str, Any], stats: Optional[ParseStats] = None) -> List[str]:
    """
    Root paths declared in a request context's ``projectLayouts``.

    Each layout entry is itself a JSON string and needs a second decode.
    """
    layouts = context.get("projectLayouts")
    if not isinstance(layouts, list):
        return []

    roots = []
    for layout in layouts:
        if not isinstance(layout, str):
            continue
        decoded = _decode_object(layout)
        if not decoded.ok:
            if stats is not None:
                stats.record_skip("projectLayouts")
            continue
        root = decoded.value.get("rootPath")
        if isinstance(root, str) and root:
            roots.append(root)
    return roots


def conversation_headers(composer: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Ordered bubble headers of a conversation; malformed entries dropped."""
    headers = composer.get("fullConversationHeadersOnly") or []
    if not isinstance(headers, list):
        return []
    return [h for h in headers if isinstance(h, dict) and h.get("bubbleId")]


def build_project_layouts_map(store: KVStore, stats: ParseStats) -> Dict[str, List[str]]:
    """composerId -> ordered root paths, from every messageRequestContext record."""
    layouts_map: Dict[str, List[str]] = {}
    for key, raw in store.iter_family(KeyFamily.REQUEST_CONTEXT):
        parsed = parse_request_context(raw)
        if not parsed.ok:
            stats.record_skip(KeyFamily.REQUEST_CONTEXT)
            logger.debug(f"Skipping {key}: {parsed.error}")
            continue
        roots = extract_root_paths(parsed.value, stats)
        if roots:
            layouts_map.setdefault(key.conversation_id, []).extend(roots)
    return layouts_map


def build_bubble_index(store: KVStore, stats: ParseStats) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """composerId -> {bubbleId -> bubble}. The composer id comes from the key."""
    index: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
    for key, raw in store.iter_family(KeyFamily.BUBBLE):
        if not key.secondary_id:
            continue
        parsed = parse_bubble(raw)
        if not parsed.ok:
            stats.record_skip(KeyFamily.BUBBLE)
            logger.debug(f"Skipping {key}: {parsed.error}")
            continue
        index[key.conversation_id][key.secondary_id] = parsed.value
    return dict(index)
