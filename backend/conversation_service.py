"""
Read-only queries over the active (shadow or filtered) store:
workspace listing, conversation listing/search, and conversation detail.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from chat_formatter import (
    ChatBubble,
    ChatTab,
    extract_text_from_bubble,
    format_request_context,
    format_tool_action,
)
from kv_store import KeyFamily, KVStore, StoreKey, StoreNotFoundError
from project_attribution import QUICK_MATCHERS, ConversationRecords, ProjectAttributor, WorkspaceCatalog
from record_parsers import (
    ParseStats,
    build_project_layouts_map,
    conversation_headers,
    decode_json,
    parse_bubble,
    parse_composer,
    parse_request_context,
)
from workspace_locator import list_workspace_entries

logger = logging.getLogger(__name__)


def conversation_title(composer_id: str, composer: Dict[str, Any]) -> str:
    return composer.get("name") or f"Conversation {composer_id[:8]}"


def conversation_timestamp(composer: Dict[str, Any]) -> Optional[float]:
    value = composer.get("lastUpdatedAt") or composer.get("createdAt")
    return value if isinstance(value, (int, float)) else None


def render_record(render, record, label: str) -> str:
    """Render one stored record; a record that cannot be rendered is logged and yields ''."""
    try:
        return render(record)
    except Exception as e:
        logger.warning(f"Skipping unrenderable {label}: {e}")
        return ""


class ConversationService:
    def __init__(self, shadow_store, locator):
        self.shadow_store = shadow_store
        self.locator = locator

    def _open_store(self) -> KVStore:
        path = self.shadow_store.get_active_store_path()
        if not path.exists():
            raise StoreNotFoundError("Global storage not found")
        store = KVStore(path, readonly=True)
        if not store.has_table():
            store.close()
            raise StoreNotFoundError("Global storage not found")
        return store

    def _attributor(self, entries) -> ProjectAttributor:
        return ProjectAttributor(WorkspaceCatalog.from_entries(entries), QUICK_MATCHERS)

    def _iter_conversations(self, store: KVStore, composer_ids=None):
        """Yield (composerId, composer) for conversations with at least one message."""
        stats = ParseStats()
        if composer_ids is None:
            rows = store.iter_family(KeyFamily.COMPOSER)
        else:
            rows = ((StoreKey.composer(cid), store.get(StoreKey.composer(cid))) for cid in composer_ids)

        for key, raw in rows:
            if raw is None:
                continue
            parsed = parse_composer(raw)
            if not parsed.ok:
                stats.record_skip(KeyFamily.COMPOSER)
                continue
            if not conversation_headers(parsed.value):
                continue
            yield key.conversation_id, parsed.value
        stats.log_summary("Conversation listing")

    def list_workspaces(self) -> List[Dict[str, Any]]:
        entries = list_workspace_entries(self.locator.resolve())
        counts = {e.workspace_id: 0 for e in entries}

        try:
            store = self._open_store()
        except StoreNotFoundError:
            store = None

        if store is not None:
            with store:
                layouts_map = build_project_layouts_map(store, ParseStats())
                attributor = self._attributor(entries)
                for cid, composer in self._iter_conversations(store):
                    attribution = attributor.attribute(
                        ConversationRecords(cid, composer, layouts_map.get(cid, []))
                    )
                    if attribution and attribution.project in counts:
                        counts[attribution.project] += 1

        result = []
        for entry in entries:
            item = entry.to_dict()
            item["conversationCount"] = counts[entry.workspace_id]
            result.append(item)
        return result

    def list_tabs(self, workspace_id: str, query: Optional[str] = None) -> List[Dict[str, Any]]:
        entries = list_workspace_entries(self.locator.resolve())

        with self._open_store() as store:
            layouts_map = build_project_layouts_map(store, ParseStats())

            composer_ids = None
            if query:
                logger.info(f"[Search] Starting search for query: \"{query}\" in workspace: {workspace_id}")
                composer_hits = store.search_family(KeyFamily.COMPOSER, query)
                bubble_hits = store.search_family(KeyFamily.BUBBLE, query)
                composer_ids = {k.conversation_id for k in composer_hits}
                composer_ids.update(k.conversation_id for k in bubble_hits)
                logger.info(
                    f"[Search] Found {len(composer_ids)} unique chat IDs matching query "
                    f"(from composers: {len(composer_hits)}, bubbles: {len(bubble_hits)})"
                )

            attributor = self._attributor(entries)
            tabs = []
            for cid, composer in self._iter_conversations(store, composer_ids):
                attribution = attributor.attribute(ConversationRecords(cid, composer, layouts_map.get(cid, [])))
                if attribution is None or attribution.project != workspace_id:
                    continue
                tabs.append({
                    "id": cid,
                    "title": conversation_title(cid, composer),
                    "timestamp": conversation_timestamp(composer),
                    "bubbles": [],
                })

        tabs.sort(key=lambda t: t["timestamp"] or 0, reverse=True)
        if query:
            logger.info(f"[Search] Found {len(tabs)} matching tabs after filtering by project")
        return tabs

    def get_tab(self, tab_id: str) -> Optional[ChatTab]:
        with self._open_store() as store:
            parsed = parse_composer(store.get(StoreKey.composer(tab_id)))
            if not parsed.ok:
                return None
            composer = parsed.value

            contexts_by_bubble: Dict[str, List[Dict[str, Any]]] = {}
            for key, raw in store.iter_family(KeyFamily.REQUEST_CONTEXT, tab_id):
                context = parse_request_context(raw)
                if not context.ok:
                    logger.debug(f"Error parsing {key}: {context.error}")
                    continue
                bubble_id = context.value.get("bubbleId")
                if bubble_id:
                    contexts_by_bubble.setdefault(bubble_id, []).append(context.value)

            diffs = []
            for key, raw in store.iter_family(KeyFamily.CODE_BLOCK_DIFF, tab_id):
                diff = decode_json(raw)
                if diff.ok and isinstance(diff.value, dict):
                    diffs.append(dict(diff.value, diffId=key.secondary_id))
                else:
                    logger.debug(f"Error parsing {key}: {diff.error}")

            headers = conversation_headers(composer)
            bubble_keys = [StoreKey.bubble(tab_id, h["bubbleId"]) for h in headers]
            raw_bubbles = store.get_many(bubble_keys)

        now = time.time() * 1000
        bubbles: List[ChatBubble] = []
        for header, key in zip(headers, bubble_keys):
            bubble = parse_bubble(raw_bubbles.get(str(key)))
            if not bubble.ok:
                continue

            text = render_record(extract_text_from_bubble, bubble.value, f"bubble {key}")
            for context in contexts_by_bubble.get(header["bubbleId"], []):
                text += render_record(format_request_context, context, f"request context of bubble {header['bubbleId']}")

            if text.strip():
                timestamp = bubble.value.get("timestamp")
                bubbles.append(ChatBubble(
                    type="user" if header.get("type") == 1 else "ai",
                    text=text,
                    timestamp=timestamp if isinstance(timestamp, (int, float)) else now,
                ))

        for diff in diffs:
            diff_text = render_record(format_tool_action, diff, f"codeBlockDiff {diff['diffId']}")
            if diff_text.strip():
                bubbles.append(ChatBubble(type="ai", text=f"**Tool Action:**{diff_text}", timestamp=now))

        bubbles.sort(key=lambda b: b.timestamp or 0)

        return ChatTab(
            id=tab_id,
            title=conversation_title(tab_id, composer),
            timestamp=conversation_timestamp(composer),
            bubbles=bubbles,
        )
