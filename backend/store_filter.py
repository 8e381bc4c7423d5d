"""
Build a privacy-scoped copy of the Cursor global store.

The copy keeps only conversations attributed to an allowed project. All
composerData, bubbleId and messageRequestContext records of every other
conversation are deleted, and the file is vacuumed so the deleted content
does not linger in free pages. codeBlockDiff records are not filtered.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence, Set, Union

from kv_store import CONVERSATION_FAMILIES, KeyFamily, KVStore, copy_store, discard_file
from project_attribution import AllowListCatalog, ConversationRecords, ProjectAttributor
from record_parsers import (
    ParseStats,
    build_bubble_index,
    build_project_layouts_map,
    parse_composer,
)

logger = logging.getLogger(__name__)


@dataclass
class FilterReport:
    total_before: int = 0
    total_after: int = 0
    filtered: bool = False
    allowed_conversations: Set[str] = field(default_factory=set)
    deleted: Dict[str, int] = field(default_factory=dict)
    parse_skips: Dict[str, int] = field(default_factory=dict)

    @property
    def deleted_count(self) -> int:
        return sum(self.deleted.values())


class StoreFilter:
    """One copy -> attribute -> delete -> vacuum pass."""

    def __init__(self, source: Union[str, Path], dest: Union[str, Path], allowed_projects: Sequence[str]):
        self.source = Path(source)
        self.dest = Path(dest)
        self.allowed_projects: List[str] = [p for p in allowed_projects if p]

    @property
    def work_path(self) -> Path:
        return self.dest.with_name(self.dest.name + ".partial")

    def run(self) -> FilterReport:
        """Filter into ``work_path``, then rename it over ``dest``; ``dest`` is untouched on failure."""
        logger.info(f"Starting database filtering: {self.source} -> {self.dest}")
        try:
            report = self._filter(self.work_path)
            os.replace(self.work_path, self.dest)
        except Exception:
            discard_file(self.work_path)
            raise

        logger.info(
            f"Database filtering completed: {report.total_after} records remaining "
            f"({report.deleted_count} deleted from {report.total_before} total)"
        )
        return report

    def _filter(self, path: Path) -> FilterReport:
        report = FilterReport()
        copy_store(self.source, path)
        logger.info("Database copied to filtered path")

        with KVStore(path, readonly=False) as store:
            report.total_before = store.count()
            logger.info(f"Total records before filtering: {report.total_before}")

            if self.allowed_projects:
                report.filtered = True
                stats = ParseStats()
                report.allowed_conversations = self.find_allowed_conversations(store, stats)
                report.parse_skips = stats.as_dict()
                stats.log_summary("Attribution pass")
                logger.info(f"Found {len(report.allowed_conversations)} composers belonging to allowed projects")

                if report.allowed_conversations:
                    self._delete_excluded(store, report)
                else:
                    logger.info("No allowed composers found, keeping only system data")
                    deleted = store.delete_families(CONVERSATION_FAMILIES)
                    report.deleted["conversation"] = deleted
                    logger.info(f"Deleted {deleted} project-specific records")
            else:
                logger.info("No project filtering configured, keeping all records")

            logger.info("Optimizing database with VACUUM...")
            store.vacuum()

            report.total_after = store.count()
        return report

    def find_allowed_conversations(self, store: KVStore, stats: ParseStats) -> Set[str]:
        layouts_map = build_project_layouts_map(store, stats)
        bubble_index = build_bubble_index(store, stats)
        attributor = ProjectAttributor(AllowListCatalog(self.allowed_projects))

        allowed: Set[str] = set()
        for key, raw in store.iter_family(KeyFamily.COMPOSER):
            parsed = parse_composer(raw)
            if not parsed.ok:
                stats.record_skip(KeyFamily.COMPOSER)
                logger.debug(f"Skipping {key}: {parsed.error}")
                continue

            cid = key.conversation_id
            records = ConversationRecords(
                composer_id=cid,
                composer=parsed.value,
                root_paths=layouts_map.get(cid, []),
                bubbles=bubble_index.get(cid, {}),
            )
            attribution = attributor.attribute(records)
            if attribution and attribution.project in self.allowed_projects:
                logger.debug(f"Composer {cid} -> {attribution.project} via {attribution.matcher}")
                allowed.add(cid)
        return allowed

    def _delete_excluded(self, store: KVStore, report: FilterReport) -> None:
        allowed = report.allowed_conversations

        try:
            deleted = store.delete_family_except(KeyFamily.COMPOSER, allowed)
            report.deleted[KeyFamily.COMPOSER] = deleted
            logger.info(f"Deleted {deleted} composerData records")
        except Exception as e:
            logger.warning(f"Error deleting composerData records: {e}")

        # Orphaned records go too: only the key's conversation id matters.
        for family in (KeyFamily.BUBBLE, KeyFamily.REQUEST_CONTEXT):
            keys = store.iter_family_keys(family)
            logger.info(f"Checking {len(keys)} {family} records for cleanup...")
            doomed = [k for k in keys if k.conversation_id not in allowed]
            try:
                deleted = store.delete_keys(doomed)
                report.deleted[family] = deleted
                logger.info(f"Deleted {deleted} {family} records")
            except Exception as e:
                logger.warning(f"Error deleting {family} records: {e}")


def create_filtered_database(
    shadow_db_path: Union[str, Path],
    filtered_db_path: Union[str, Path],
    allowed_projects: Sequence[str],
) -> bool:
    """
    Write a filtered copy of ``shadow_db_path`` to ``filtered_db_path``.

    Returns False on any failure. A failed run leaves any existing file at
    the destination as it was; the caller decides what to serve.
    """
    try:
        StoreFilter(shadow_db_path, filtered_db_path, allowed_projects).run()
        return True
    except Exception as e:
        logger.error(f"Failed to create filtered database: {e}", exc_info=True)
        return False
