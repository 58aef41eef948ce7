"""HTTP-level tests for the dashboard server."""

from __future__ import annotations

import itertools
import json
import time
from unittest import mock

import pytest
from fastapi.testclient import TestClient

from agent_farm.dashboard import create_dashboard_app
from agent_farm.models.state import AnnotationRecord, BuilderRecord, UtilTerminalRecord
from agent_farm.services import tabs as tabs_mod
from agent_farm.services.process import ProcessHandle


@pytest.fixture
def exit_hook():
    return mock.Mock()


@pytest.fixture
def app(config, ports, sessions, exit_hook, monkeypatch):
    monkeypatch.setattr(
        tabs_mod,
        "find_available_port",
        lambda start, exclude=frozenset(), end=65535: next(p for p in itertools.count(start) if p not in exclude),
    )
    return create_dashboard_app(config, ports, sessions=sessions, exit_hook=exit_hook)


@pytest.fixture
def client(app):
    return TestClient(app, base_url="http://localhost")


def _util(util_id, pid, port=4230):
    return UtilTerminalRecord(id=util_id, name=f"util-{util_id}", port=port, pid=pid, tmux_session=f"af-shell-{util_id}")


class TestState:
    def test_empty_state(self, client):
        response = client.get("/api/state")
        assert response.status_code == 200
        assert response.json() == {"architect": None, "builders": [], "utils": [], "annotations": []}
        assert response.headers["cache-control"] == "no-store"

    def test_reconciliation_is_persisted(self, client, store, live_pid, dead_pid):
        store.add_util(_util("U1", live_pid))
        store.add_util(_util("U2", dead_pid, port=4231))
        store.add_annotation(AnnotationRecord(id="A1", file="/x", port=4250, pid=dead_pid))

        body = client.get("/api/state").json()

        assert [u["id"] for u in body["utils"]] == ["U1"]
        assert body["annotations"] == []
        on_disk = json.loads(store.path.read_text())
        assert [u["id"] for u in on_disk["utils"]] == ["U1"]
        assert on_disk["annotations"] == []

    def test_non_local_host_is_forbidden(self, client):
        response = client.get("/api/state", headers={"host": "evil.example.com"})
        assert response.status_code == 403

    def test_non_local_origin_is_forbidden(self, client):
        response = client.get("/api/state", headers={"origin": "http://evil.example.com"})
        assert response.status_code == 403

    def test_local_origin_is_allowed(self, client):
        response = client.get("/api/state", headers={"origin": "http://localhost:4201"})
        assert response.status_code == 200

    def test_oversized_body(self, client):
        response = client.post(
            "/api/tabs/shell",
            content=b"x" * (1024 * 1024 + 1),
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 413


class TestShellTabs:
    def test_create(self, client, sessions, store, live_pid):
        sessions.attach_pid = live_pid
        response = client.post("/api/tabs/shell", json={"name": "logs"})
        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "logs"
        assert body["port"] == 4230
        assert store.load().utils[0].id == body["id"]

    def test_create_without_body(self, client, sessions, live_pid):
        sessions.attach_pid = live_pid
        response = client.post("/api/tabs/shell")
        assert response.status_code == 201
        assert response.json()["name"].startswith("util-U")

    def test_invalid_name(self, client):
        response = client.post("/api/tabs/shell", json={"name": "a;b"})
        assert response.status_code == 400
        assert "Invalid name" in response.json()["detail"]

    def test_tab_limit_leaves_state_unchanged(self, client, config, store, sessions, live_pid):
        config.max_tabs = 2
        sessions.attach_pid = live_pid
        store.add_util(_util("U1", live_pid))
        store.add_util(_util("U2", live_pid, port=4231))
        before = store.path.read_text()

        response = client.post("/api/tabs/shell", json={})

        assert response.status_code == 429
        assert "Tab limit reached" in response.json()["detail"]
        assert store.path.read_text() == before

    def test_delete(self, client, store, sessions, live_pid):
        store.add_util(_util("U1", live_pid))
        response = client.delete("/api/tabs/shell-U1")
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert store.load().utils == []
        assert sessions.killed == [(live_pid, "af-shell-U1")]

    @pytest.mark.parametrize("tab_id", ["shell-UNKNOWN", "file-A1", "nonsense"])
    def test_delete_unknown(self, client, tab_id):
        assert client.delete(f"/api/tabs/{tab_id}").status_code == 404


class TestFileTabs:
    @pytest.fixture
    def viewer(self, monkeypatch, live_pid):
        spawned = []

        def spawn(args, cwd=None, env=None):
            spawned.append(args)
            return ProcessHandle(pid=live_pid)

        async def ready(port, timeout=5.0, interval=0.1):
            return True

        monkeypatch.setattr(tabs_mod, "spawn_detached", spawn)
        monkeypatch.setattr(tabs_mod, "wait_for_port", ready)
        return spawned

    def test_open_then_reuse(self, client, viewer):
        first = client.post("/api/tabs/file", json={"path": "src/app.py"})
        assert first.status_code == 201
        assert "existing" not in first.json()

        second = client.post("/api/tabs/file", json={"path": "src/app.py"})
        assert second.status_code == 200
        assert second.json() == {"id": first.json()["id"], "port": first.json()["port"], "existing": True}
        assert len(viewer) == 1

    def test_tab_limit_leaves_state_unchanged(self, client, config, store, viewer, live_pid):
        config.max_tabs = 2
        store.add_util(_util("U1", live_pid))
        store.add_util(_util("U2", live_pid, port=4231))
        before = store.path.read_text()

        response = client.post("/api/tabs/file", json={"path": "src/app.py"})

        assert response.status_code == 429
        assert "Tab limit reached" in response.json()["detail"]
        assert store.path.read_text() == before
        assert viewer == []

    @pytest.mark.parametrize("path", ["../../etc/passwd", "%2e%2e%2fetc%2fpasswd", "/etc/passwd"])
    def test_path_outside_project(self, client, viewer, path):
        response = client.post("/api/tabs/file", json={"path": path})
        assert response.status_code == 403
        assert viewer == []

    def test_missing_file(self, client, viewer):
        assert client.post("/api/tabs/file", json={"path": "src/nope.py"}).status_code == 404

    def test_missing_path_field(self, client):
        response = client.post("/api/tabs/file", json={})
        assert response.status_code == 400
        assert response.json()["detail"].startswith("Invalid request")

    def test_delete_file_tab(self, client, store, sessions, viewer, live_pid):
        tab_id = client.post("/api/tabs/file", json={"path": "src/app.py"}).json()["id"]
        assert client.delete(f"/api/tabs/file-{tab_id}").status_code == 200
        assert store.load().annotations == []
        assert sessions.killed == [(live_pid, None)]


class TestBuilderTabs:
    def test_existing_builder(self, client, store, live_pid):
        store.upsert_builder(
            BuilderRecord(id="B1", name="0001-login", port=4210, pid=live_pid, worktree="/w", branch="builder/B1-0001-login")
        )
        response = client.post("/api/tabs/builder", json={"projectId": "0001"})
        assert response.status_code == 200
        assert response.json() == {"id": "B1", "port": 4210, "name": "0001-login", "existing": True}

    def test_new_builder_not_implemented(self, client):
        response = client.post("/api/tabs/builder", json={"projectId": "0002"})
        assert response.status_code == 501
        assert "af spawn --project 0002" in response.json()["detail"]

    def test_missing_project_id(self, client):
        assert client.post("/api/tabs/builder", json={}).status_code == 400


class TestStop:
    def test_stop_kills_clears_and_exits(self, app, store, sessions, exit_hook, live_pid):
        store.add_util(_util("U1", live_pid))
        store.add_annotation(AnnotationRecord(id="A1", file="/x", port=4250, pid=live_pid))

        with TestClient(app, base_url="http://localhost") as client:
            response = client.post("/api/stop")
            assert response.status_code == 200
            assert response.json() == {"success": True, "killed": 2}
            assert store.load().utils == []

            deadline = time.monotonic() + 3
            while not exit_hook.called and time.monotonic() < deadline:
                time.sleep(0.05)

        exit_hook.assert_called_once()


class TestPages:
    def test_dashboard_has_injected_state(self, client, config, store, live_pid):
        store.add_util(_util("U1", live_pid))
        response = client.get("/")
        assert response.status_code == 200
        page = response.text
        assert "// STATE_INJECTION_POINT" not in page
        assert "window.INITIAL_STATE = " in page
        assert '"U1"' in page
        assert config.project_name in page

    def test_open_file_bridge(self, client):
        response = client.get("/open-file", params={"path": "src/app.py", "line": 2, "sourcePort": 4201})
        assert response.status_code == 200
        assert "__OPEN_FILE_PAYLOAD__" not in response.text
        assert '"line": 2' in response.text

    def test_open_file_bad_line(self, client):
        assert client.get("/open-file", params={"path": "src/app.py", "line": 0}).status_code == 400

    def test_open_file_bad_port(self, client):
        assert client.get("/open-file", params={"path": "src/app.py", "sourcePort": 80}).status_code == 400

    def test_open_file_outside_project(self, client):
        assert client.get("/open-file", params={"path": "../../etc/passwd"}).status_code == 403
