"""
Access to the Cursor global key-value store (``cursorDiskKV``).

The table maps string keys to JSON blobs. Keys carry a record-family tag
followed by composite identifiers, all joined by ``:``:

    composerData:<composerId>
    bubbleId:<composerId>:<bubbleId>
    messageRequestContext:<composerId>:<contextId>
    codeBlockDiff:<composerId>:<diffId>

``StoreKey`` is the only place that splits or joins these segments.
"""

from __future__ import annotations

import logging
import os
import shutil
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

TABLE = "cursorDiskKV"
KEY_SEPARATOR = ":"


class KeyFamily:
    COMPOSER = "composerData"
    BUBBLE = "bubbleId"
    REQUEST_CONTEXT = "messageRequestContext"
    CODE_BLOCK_DIFF = "codeBlockDiff"


# Families removed when a conversation is excluded. codeBlockDiff is left alone.
CONVERSATION_FAMILIES = (KeyFamily.COMPOSER, KeyFamily.BUBBLE, KeyFamily.REQUEST_CONTEXT)


class StoreError(Exception):
    """Base class for store access failures."""


class StoreCopyError(StoreError):
    """Copying a store file failed."""


class StoreNotFoundError(StoreError):
    """The store file or its table does not exist."""


@dataclass(frozen=True)
class StoreKey:
    family: str
    primary_id: str
    secondary_id: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> Optional["StoreKey"]:
        """Split a raw key; returns None when it has no id segment."""
        if not isinstance(raw, str):
            return None
        parts = raw.split(KEY_SEPARATOR, 2)
        if len(parts) < 2 or not parts[0]:
            return None
        secondary = parts[2] if len(parts) == 3 else None
        return cls(parts[0], parts[1], secondary)

    @classmethod
    def composer(cls, composer_id: str) -> "StoreKey":
        return cls(KeyFamily.COMPOSER, composer_id)

    @classmethod
    def bubble(cls, composer_id: str, bubble_id: str) -> "StoreKey":
        return cls(KeyFamily.BUBBLE, composer_id, bubble_id)

    @classmethod
    def context(cls, composer_id: str, context_id: str) -> "StoreKey":
        return cls(KeyFamily.REQUEST_CONTEXT, composer_id, context_id)

    @property
    def conversation_id(self) -> str:
        return self.primary_id

    def format(self) -> str:
        parts = [self.family, self.primary_id]
        if self.secondary_id is not None:
            parts.append(self.secondary_id)
        return KEY_SEPARATOR.join(parts)

    def __str__(self) -> str:
        return self.format()


def family_range(family: str, conversation_id: Optional[str] = None) -> Tuple[str, str]:
    """
    Half-open key range covering every key with the given prefix.

    The upper bound replaces the trailing ``:`` with the next code point
    (``;``) so the comparison can be answered from the key index.
    """
    prefix = family + KEY_SEPARATOR
    if conversation_id is not None:
        prefix += conversation_id + KEY_SEPARATOR
    return prefix, prefix[:-1] + chr(ord(KEY_SEPARATOR) + 1)


def readonly_uri(path: Union[str, Path]) -> str:
    """SQLite URI opening ``path`` read-only; reserved characters are percent-escaped."""
    return Path(path).resolve().as_uri() + "?mode=ro"


def discard_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")


def copy_store(source: Union[str, Path], dest: Union[str, Path]) -> Path:
    """
    Byte-for-byte copy of a store file, creating the destination directory.

    The copy is written to a sibling temp file and renamed over ``dest``, so
    connections already open on the old file keep reading a complete store.
    """
    source_path = Path(source)
    dest_path = Path(dest)
    tmp_path = dest_path.with_name(dest_path.name + ".tmp")
    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source_path, tmp_path)
        os.replace(tmp_path, dest_path)
    except OSError as e:
        discard_file(tmp_path)
        raise StoreCopyError(f"Error copying {source_path} to {dest_path}: {e}") from e
    logger.debug(f"Copied {source_path} to {dest_path}")
    return dest_path


def validate_store(file_path: Union[str, Path]) -> Tuple[bool, str]:
    """Validate that the file is a SQLite database holding the key-value table."""
    try:
        con = sqlite3.connect(readonly_uri(file_path), uri=True)
        try:
            cur = con.cursor()
            cur.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = [row[0] for row in cur.fetchall()]
        finally:
            con.close()
    except sqlite3.Error as e:
        return False, f"Not a valid SQLite database: {e}"

    if TABLE not in tables:
        return False, f"Database has no {TABLE} table ({len(tables)} tables found)"
    return True, f"Valid SQLite database with {len(tables)} tables"


class KVStore:
    """Thin wrapper around a connection to one ``cursorDiskKV`` store file."""

    def __init__(self, path: Union[str, Path], readonly: bool = True):
        self.path = Path(path)
        self.readonly = readonly
        if not self.path.exists():
            raise StoreNotFoundError(f"Store not found: {self.path}")
        if readonly:
            self.con = sqlite3.connect(readonly_uri(self.path), uri=True)
        else:
            self.con = sqlite3.connect(str(self.path))

    def __enter__(self) -> "KVStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self.con is not None:
            self.con.close()
            self.con = None

    def has_table(self) -> bool:
        cur = self.con.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (TABLE,)
        )
        return cur.fetchone() is not None

    def count(self) -> int:
        return self.con.execute(f"SELECT COUNT(*) FROM {TABLE}").fetchone()[0]

    def get(self, key: Union[str, StoreKey]):
        row = self.con.execute(f"SELECT value FROM {TABLE} WHERE key = ?", (str(key),)).fetchone()
        return row[0] if row else None

    def get_many(self, keys: Iterable[Union[str, StoreKey]]) -> dict:
        """Values for the given keys that exist, keyed by raw key string."""
        found = {}
        for key in keys:
            value = self.get(key)
            if value is not None:
                found[str(key)] = value
        return found

    def iter_family(self, family: str, conversation_id: Optional[str] = None) -> Iterator[Tuple[StoreKey, object]]:
        """Yield (StoreKey, raw value) for every record of a family."""
        low, high = family_range(family, conversation_id)
        cur = self.con.execute(
            f"SELECT key, value FROM {TABLE} WHERE key >= ? AND key < ? ORDER BY key",
            (low, high),
        )
        for raw_key, value in cur:
            key = StoreKey.parse(raw_key)
            if key is None:
                continue
            yield key, value

    def iter_family_keys(self, family: str) -> List[StoreKey]:
        low, high = family_range(family)
        rows = self.con.execute(
            f"SELECT key FROM {TABLE} WHERE key >= ? AND key < ?", (low, high)
        ).fetchall()
        keys = []
        for (raw_key,) in rows:
            key = StoreKey.parse(raw_key)
            if key is not None:
                keys.append(key)
        return keys

    def search_family(self, family: str, needle: str) -> List[StoreKey]:
        """Keys of a family whose value contains ``needle`` (SQLite LIKE semantics)."""
        low, high = family_range(family)
        escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self.con.execute(
            f"SELECT key FROM {TABLE} WHERE key >= ? AND key < ? AND value LIKE ? ESCAPE '\\'",
            (low, high, f"%{escaped}%"),
        ).fetchall()
        return [k for k in (StoreKey.parse(r[0]) for r in rows) if k is not None]

    def delete_keys(self, keys: Iterable[Union[str, StoreKey]]) -> int:
        """Delete the given keys in a single transaction."""
        params = [(str(k),) for k in keys]
        if not params:
            return 0
        with self.con:
            cur = self.con.executemany(f"DELETE FROM {TABLE} WHERE key = ?", params)
        return cur.rowcount

    def delete_family_except(self, family: str, keep_ids: Iterable[str]) -> int:
        """Delete every record of ``family`` whose primary id is not in ``keep_ids``."""
        low, high = family_range(family)
        keep_keys = [(StoreKey(family, cid).format(),) for cid in keep_ids]
        with self.con:
            self.con.execute("CREATE TEMP TABLE IF NOT EXISTS keep_keys (key TEXT PRIMARY KEY)")
            self.con.execute("DELETE FROM keep_keys")
            self.con.executemany("INSERT OR IGNORE INTO keep_keys (key) VALUES (?)", keep_keys)
            cur = self.con.execute(
                f"DELETE FROM {TABLE} WHERE key >= ? AND key < ? "
                f"AND key NOT IN (SELECT key FROM keep_keys)",
                (low, high),
            )
            deleted = cur.rowcount
            self.con.execute("DROP TABLE keep_keys")
        return deleted

    def delete_families(self, families: Iterable[str]) -> int:
        """Delete every record of the given families in one statement."""
        clauses = []
        params: List[str] = []
        for family in families:
            low, high = family_range(family)
            clauses.append("(key >= ? AND key < ?)")
            params.extend([low, high])
        if not clauses:
            return 0
        with self.con:
            cur = self.con.execute(f"DELETE FROM {TABLE} WHERE " + " OR ".join(clauses), params)
        return cur.rowcount

    def vacuum(self) -> None:
        self.con.commit()
        self.con.execute("VACUUM")
