#!/usr/bin/env python3
"""
Tests for workspace_locator.py and log_sink.py
"""

import json
import logging
from unittest.mock import Mock, patch

from log_sink import configure_file_log, remove_file_log
from workspace_locator import (
    WORKSPACE_PATH_ENV,
    WorkspaceLocator,
    cursor_root,
    folder_uri_to_path,
    list_workspace_entries,
)


def write_workspace(root, workspace_id, descriptor):
    folder = root / workspace_id
    folder.mkdir(parents=True)
    if descriptor is not None:
        text = descriptor if isinstance(descriptor, str) else json.dumps(descriptor)
        (folder / "workspace.json").write_text(text)
    return folder


class TestWorkspaceLocator:
    def test_cursor_root_per_platform(self):
        with patch("platform.system", return_value="Linux"):
            assert cursor_root().parts[-2:] == (".config", "Cursor")
        with patch("platform.system", return_value="Darwin"):
            assert cursor_root().parts[-3:] == ("Library", "Application Support", "Cursor")

    def test_config_override(self, tmp_path, monkeypatch):
        monkeypatch.delenv(WORKSPACE_PATH_ENV, raising=False)
        config = Mock()
        config.get_workspace_path.return_value = str(tmp_path)
        assert WorkspaceLocator(config).resolve() == tmp_path

    def test_missing_override_falls_back_to_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv(WORKSPACE_PATH_ENV, str(tmp_path / "env"))
        config = Mock()
        config.get_workspace_path.return_value = str(tmp_path / "missing")
        assert WorkspaceLocator(config).resolve() == tmp_path / "env"

    def test_folder_uri_to_path(self):
        assert folder_uri_to_path("file:///Users/a/My%20Project") == "/Users/a/My Project"

    def test_list_workspace_entries(self, tmp_path):
        write_workspace(tmp_path, "ws1", {"folder": "file:///Users/a/Foo"})
        write_workspace(tmp_path, "ws2", {"workspace": "file:///x.code-workspace"})
        write_workspace(tmp_path, "ws3", "{broken")
        write_workspace(tmp_path, "ws4", None)

        entries = list_workspace_entries(tmp_path)
        assert [(e.workspace_id, e.folder, e.name) for e in entries] == [("ws1", "/Users/a/Foo", "Foo")]

    def test_list_missing_directory(self, tmp_path):
        assert list_workspace_entries(tmp_path / "missing") == []


class TestLogSink:
    def test_appends_lifecycle_events(self, tmp_path):
        handler = configure_file_log(tmp_path / "log", loggers=("store_filter_test",))
        try:
            logging.getLogger("store_filter_test").info("Database copied to shadow path")
        finally:
            remove_file_log(handler, loggers=("store_filter_test",))

        content = (tmp_path / "log" / "db-manager.log").read_text()
        assert "[INFO] Database copied to shadow path" in content

    def test_unwritable_directory_is_ignored(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        assert configure_file_log(blocker / "log") is None

    def test_write_errors_are_swallowed(self, tmp_path):
        handler = configure_file_log(tmp_path, loggers=("sink_error_test",))
        try:
            handler.stream.close()
            handler.stream = Mock(write=Mock(side_effect=OSError("disk full")))
            logging.getLogger("sink_error_test").error("boom")
        finally:
            remove_file_log(handler, loggers=("sink_error_test",))
