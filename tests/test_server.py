#!/usr/bin/env python3
"""
Tests for the Flask API in server.py
"""

import json
from unittest.mock import patch

import pytest

from config_manager import ConfigManager
from conversation_service import ConversationService
from shadow_store import ShadowStoreManager
from store_builders import conversation, make_store
from workspace_locator import WorkspaceLocator


@pytest.fixture
def env(tmp_path):
    user = tmp_path / "Cursor" / "User"
    storage = user / "workspaceStorage"
    for ws_id, folder in (("ws-foo", "file:///Users/alice/Foo"), ("ws-bar", "file:///Users/alice/Bar")):
        (storage / ws_id).mkdir(parents=True)
        (storage / ws_id / "workspace.json").write_text(json.dumps({"folder": folder}))

    records = {}
    records.update(conversation(
        "foo1",
        {"b1": {"text": "How do I parse JSON?", "timestamp": 10},
         "b2": {"text": "Use json.loads", "timestamp": 20}},
        roots=["Foo"], name="Parsing", created_at=1700000000000,
    ))
    records["messageRequestContext:foo1:ctx1"]["bubbleId"] = "b1"
    records["messageRequestContext:foo1:ctx1"]["gitStatusRaw"] = "M main.py"
    records["codeBlockDiff:foo1:d1"] = {"filePath": "/Users/alice/Foo/main.py", "timestamp": 5}
    records.update(conversation(
        "foo2", {"b1": {"text": "unrelated"}},
        codeBlockData={"/Users/alice/Foo/x.py": {}}, created_at=1600000000000,
    ))
    records.update(conversation("bar1", {"b1": {"text": "Bar secret about JSON"}}, roots=["Bar"]))
    records["composerData:empty"] = {"name": "empty", "fullConversationHeadersOnly": []}
    make_store(user / "globalStorage" / "state.vscdb", records)

    config = ConfigManager(str(tmp_path / "config.json"))
    config.set_workspace_path(str(storage))
    return {"tmp_path": tmp_path, "config": config}


@pytest.fixture
def client(env):
    from server import create_app

    config = env["config"]
    locator = WorkspaceLocator(config)
    shadow = ShadowStoreManager(locator, config, temp_dir=env["tmp_path"] / ".temp" / "db")
    app = create_app(config, shadow, ConversationService(shadow, locator))
    app.testing = True
    return app.test_client()


class TestConfigApi:
    def test_get_default(self, client):
        response = client.get("/api/config")
        assert response.status_code == 200
        assert response.get_json()["allowedProjects"] == []

    def test_post_normalizes(self, client):
        response = client.post("/api/config", json={"allowedProjects": [" Foo", "Foo", ""]})
        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["config"]["allowedProjects"] == ["Foo"]

    @pytest.mark.parametrize("payload", [{"allowedProjects": "Foo"}, {"allowedProjects": [1]}, {}])
    def test_post_rejects_invalid(self, client, payload):
        response = client.post("/api/config", json=payload)
        assert response.status_code == 400
        assert "error" in response.get_json()


def add_records(env, records):
    """Add records to the IDE store; only effective before the first request copies it."""
    make_store(env["tmp_path"] / "Cursor" / "User" / "globalStorage" / "state.vscdb", records)


def user_text(tab):
    return next(b["text"] for b in tab["bubbles"] if b["type"] == "user")


class TestConversationApi:
    def test_workspaces_with_counts(self, client):
        response = client.get("/api/workspaces")
        assert response.status_code == 200
        counts = {w["id"]: w["conversationCount"] for w in response.get_json()["workspaces"]}
        assert counts == {"ws-bar": 1, "ws-foo": 2}

    def test_tabs_for_workspace(self, client):
        tabs = client.get("/api/workspaces/ws-foo/tabs").get_json()["tabs"]
        assert [t["id"] for t in tabs] == ["foo1", "foo2"]
        assert tabs[0]["title"] == "Parsing"
        assert tabs[1]["title"] == "Conversation foo2"

    def test_search_matches_bubble_text(self, client):
        tabs = client.get("/api/workspaces/ws-foo/tabs?q=json.loads").get_json()["tabs"]
        assert [t["id"] for t in tabs] == ["foo1"]

    def test_search_scoped_to_workspace(self, client):
        tabs = client.get("/api/workspaces/ws-foo/tabs?q=secret").get_json()["tabs"]
        assert tabs == []

    def test_tab_detail(self, client):
        response = client.get("/api/workspaces/ws-foo/tabs/foo1")
        assert response.status_code == 200
        tab = response.get_json()
        texts = [b["text"] for b in tab["bubbles"]]
        assert texts[:2] == [user_text(tab), "Use json.loads"]
        assert texts[-1] == "**Tool Action:**\n\n**File:** /Users/alice/Foo/main.py"
        user_bubble = next(b for b in tab["bubbles"] if b["type"] == "user")
        assert user_bubble["text"].startswith("How do I parse JSON?")
        assert "**Git Status:**" in user_bubble["text"]

    def test_tab_detail_with_plain_file_list(self, env, client):
        add_records(env, {"codeBlockDiff:foo1:d2": {"toolName": "list_dir", "result": json.dumps({"files": ["a.py"]})}})
        response = client.get("/api/workspaces/ws-foo/tabs/foo1")
        assert response.status_code == 200
        texts = [b["text"] for b in response.get_json()["bubbles"]]
        assert any("**Files Found:**\n- a.py (file)" in t for t in texts)

    def test_unrenderable_diff_is_skipped(self, client):
        with patch("conversation_service.format_tool_action", side_effect=RuntimeError("bad shape")):
            response = client.get("/api/workspaces/ws-foo/tabs/foo1")
        assert response.status_code == 200
        texts = [b["text"] for b in response.get_json()["bubbles"]]
        assert texts == [user_text(response.get_json()), "Use json.loads"]

    def test_tab_missing(self, client):
        assert client.get("/api/workspaces/ws-foo/tabs/nope").status_code == 404

    def test_export_markdown(self, client):
        response = client.get("/api/workspaces/ws-foo/tabs/foo1/export?format=markdown")
        assert response.status_code == 200
        assert response.mimetype == "text/markdown"
        assert 'filename="Parsing.md"' in response.headers["Content-Disposition"]
        assert "# Parsing" in response.get_data(as_text=True)

    def test_export_non_ascii_title(self, env, client):
        add_records(env, conversation("zh1", {"b1": {"text": "hello"}}, roots=["Foo"], name="解析 JSON"))
        response = client.get("/api/workspaces/ws-foo/tabs/zh1/export?format=markdown")
        assert response.status_code == 200
        disposition = response.headers["Content-Disposition"]
        disposition.encode("latin-1")
        assert 'filename="JSON.md"' in disposition
        assert "filename*=UTF-8''%E8%A7%A3%E6%9E%90%20JSON.md" in disposition
        assert "# 解析 JSON" in response.get_data(as_text=True)

    def test_export_unknown_format(self, client):
        assert client.get("/api/workspaces/ws-foo/tabs/foo1/export?format=pdf").status_code == 400


class TestRefresh:
    def test_refresh_applies_new_allow_list(self, client):
        assert len(client.get("/api/workspaces/ws-bar/tabs").get_json()["tabs"]) == 1

        client.post("/api/config", json={"allowedProjects": ["Foo"]})
        # Cached store is kept until refreshed
        assert len(client.get("/api/workspaces/ws-bar/tabs").get_json()["tabs"]) == 1

        response = client.post("/api/refresh-db")
        assert response.get_json() == {"success": True, "message": "Database refreshed"}
        assert client.get("/api/workspaces/ws-bar/tabs").get_json()["tabs"] == []
        assert len(client.get("/api/workspaces/ws-foo/tabs").get_json()["tabs"]) == 2


def test_missing_store_reports_not_found(tmp_path):
    from server import create_app

    config = ConfigManager(str(tmp_path / "config.json"))
    config.set_workspace_path(str(tmp_path))
    locator = WorkspaceLocator(config)
    shadow = ShadowStoreManager(locator, config, temp_dir=tmp_path / "db")
    app = create_app(config, shadow, ConversationService(shadow, locator))

    response = app.test_client().get("/api/workspaces/ws/tabs")
    assert response.status_code == 404
    assert response.get_json() == {"error": "Global storage not found"}


class TestContentDisposition:
    def test_ascii_name(self):
        from server import content_disposition

        assert content_disposition("Parsing.md", "chat-1.md") == 'attachment; filename="Parsing.md"'

    def test_non_ascii_name_without_ascii_letters(self):
        from server import content_disposition

        value = content_disposition("解析.md", "chat-1.md")
        assert value == "attachment; filename=\"chat-1.md\"; filename*=UTF-8''%E8%A7%A3%E6%9E%90.md"
