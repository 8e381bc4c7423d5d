#!/usr/bin/env python3
"""
Tests for kv_store.py
"""

from unittest.mock import patch

import pytest

from kv_store import (
    CONVERSATION_FAMILIES,
    KeyFamily,
    KVStore,
    StoreCopyError,
    StoreKey,
    StoreNotFoundError,
    copy_store,
    family_range,
    readonly_uri,
    validate_store,
)
from store_builders import make_store, read_keys


class TestStoreKey:
    def test_parse_composer_key(self):
        key = StoreKey.parse("composerData:abc")
        assert key == StoreKey(KeyFamily.COMPOSER, "abc")
        assert key.secondary_id is None

    def test_parse_bubble_key(self):
        key = StoreKey.parse("bubbleId:abc:b1")
        assert key.family == KeyFamily.BUBBLE
        assert key.conversation_id == "abc"
        assert key.secondary_id == "b1"

    def test_secondary_keeps_extra_separators(self):
        key = StoreKey.parse("codeBlockDiff:abc:x:y")
        assert key.secondary_id == "x:y"
        assert str(key) == "codeBlockDiff:abc:x:y"

    @pytest.mark.parametrize("raw", ["composerData", "", ":abc", None])
    def test_parse_rejects_keys_without_id(self, raw):
        assert StoreKey.parse(raw) is None

    def test_factories_format(self):
        assert str(StoreKey.composer("c")) == "composerData:c"
        assert str(StoreKey.bubble("c", "b")) == "bubbleId:c:b"
        assert str(StoreKey.context("c", "x")) == "messageRequestContext:c:x"

    def test_family_range_bounds(self):
        low, high = family_range("bubbleId")
        assert low == "bubbleId:"
        assert high == "bubbleId;"
        assert low <= "bubbleId:zzz" < high
        assert not ("bubbleIdX:1" < high and "bubbleIdX:1" >= low)


class TestKVStore:
    def test_missing_store_raises(self, tmp_path):
        with pytest.raises(StoreNotFoundError):
            KVStore(tmp_path / "missing.vscdb")

    def test_iter_family_only_returns_prefix(self, store_factory):
        path = store_factory({
            "composerData:a": {"name": "A"},
            "composerDataExtra:zzz": "x",
            "bubbleId:a:1": {"text": "hi"},
            "ItemKey": "system",
        })
        with KVStore(path) as store:
            keys = [str(k) for k, _ in store.iter_family(KeyFamily.COMPOSER)]
        assert keys == ["composerData:a"]

    def test_iter_family_scoped_to_conversation(self, store_factory):
        path = store_factory({
            "codeBlockDiff:a:1": {},
            "codeBlockDiff:a:2": {},
            "codeBlockDiff:ab:3": {},
        })
        with KVStore(path) as store:
            keys = [k.secondary_id for k, _ in store.iter_family(KeyFamily.CODE_BLOCK_DIFF, "a")]
        assert keys == ["1", "2"]

    def test_count_and_get(self, store_factory):
        path = store_factory({"composerData:a": {"name": "A"}, "other": "v"})
        with KVStore(path) as store:
            assert store.count() == 2
            assert store.get(StoreKey.composer("a")) == '{"name": "A"}'
            assert store.get("composerData:missing") is None
            assert store.has_table()

    def test_search_family_is_literal(self, store_factory):
        path = store_factory({
            "bubbleId:a:1": {"text": "100% done"},
            "bubbleId:b:1": {"text": "1000 done"},
        })
        with KVStore(path) as store:
            hits = store.search_family(KeyFamily.BUBBLE, "100%")
        assert [k.conversation_id for k in hits] == ["a"]

    def test_delete_keys(self, store_factory):
        path = store_factory({"bubbleId:a:1": "{}", "bubbleId:a:2": "{}", "bubbleId:b:1": "{}"})
        with KVStore(path, readonly=False) as store:
            deleted = store.delete_keys([StoreKey.bubble("a", "1"), "bubbleId:a:2"])
        assert deleted == 2
        assert read_keys(path) == {"bubbleId:b:1"}

    def test_delete_keys_empty(self, store_factory):
        path = store_factory({"bubbleId:a:1": "{}"})
        with KVStore(path, readonly=False) as store:
            assert store.delete_keys([]) == 0

    def test_delete_family_except(self, store_factory):
        path = store_factory({
            "composerData:a": "{}",
            "composerData:b": "{}",
            "composerData:c": "{}",
            "bubbleId:b:1": "{}",
        })
        with KVStore(path, readonly=False) as store:
            deleted = store.delete_family_except(KeyFamily.COMPOSER, {"a", "c"})
        assert deleted == 1
        assert read_keys(path) == {"composerData:a", "composerData:c", "bubbleId:b:1"}

    def test_delete_families_keeps_others(self, store_factory):
        path = store_factory({
            "composerData:a": "{}",
            "bubbleId:a:1": "{}",
            "messageRequestContext:a:1": "{}",
            "codeBlockDiff:a:1": "{}",
            "inlineDiffs": "{}",
        })
        with KVStore(path, readonly=False) as store:
            deleted = store.delete_families(CONVERSATION_FAMILIES)
            store.vacuum()
        assert deleted == 3
        assert read_keys(path) == {"codeBlockDiff:a:1", "inlineDiffs"}

    def test_readonly_store_rejects_writes(self, store_factory):
        path = store_factory({"bubbleId:a:1": "{}"})
        with KVStore(path) as store:
            with pytest.raises(Exception):
                store.delete_keys(["bubbleId:a:1"])


class TestCopyAndValidate:
    def test_copy_store_creates_directory(self, store_factory, tmp_path):
        source = store_factory({"composerData:a": "{}"})
        dest = copy_store(source, tmp_path / "nested" / "copy.vscdb")
        assert dest.exists()
        assert read_keys(dest) == {"composerData:a"}

    def test_copy_replaces_destination_file(self, store_factory, tmp_path):
        source = store_factory({"composerData:new": "{}"}, name="new.vscdb")
        dest = store_factory({"composerData:old": "{}"}, name="dest.vscdb")
        old_inode = dest.stat().st_ino

        with KVStore(dest) as reader:
            assert reader.count() == 1
            copy_store(source, dest)
            assert reader.get("composerData:old") == "{}"

        assert dest.stat().st_ino != old_inode
        assert read_keys(dest) == {"composerData:new"}
        assert sorted(p.name for p in tmp_path.iterdir()) == ["dest.vscdb", "new.vscdb"]

    def test_failed_copy_keeps_destination(self, store_factory, tmp_path):
        source = store_factory({"composerData:new": "{}"}, name="new.vscdb")
        dest = store_factory({"composerData:old": "{}"}, name="dest.vscdb")
        with patch("kv_store.os.replace", side_effect=OSError("busy")):
            with pytest.raises(StoreCopyError):
                copy_store(source, dest)
        assert read_keys(dest) == {"composerData:old"}
        assert not (tmp_path / "dest.vscdb.tmp").exists()

    def test_copy_missing_source_raises(self, tmp_path):
        with pytest.raises(StoreCopyError):
            copy_store(tmp_path / "missing.vscdb", tmp_path / "copy.vscdb")

    def test_validate_store(self, store_factory, tmp_path):
        ok, message = validate_store(store_factory({}))
        assert ok, message

        bogus = tmp_path / "bogus.vscdb"
        bogus.write_text("not a database")
        ok, _ = validate_store(bogus)
        assert not ok

    def test_readonly_open_with_reserved_characters(self, tmp_path):
        path = make_store(tmp_path / "a?b#c%20d" / "state.vscdb", {"composerData:a": "{}"})
        assert readonly_uri(path).endswith("/a%3Fb%23c%2520d/state.vscdb?mode=ro")
        with KVStore(path) as store:
            assert store.get("composerData:a") == "{}"
        assert validate_store(path)[0]
