"""Tests for the annotation viewer."""

from __future__ import annotations

from fastapi.testclient import TestClient

from agent_farm.annotate import create_annotate_app, render_file


def test_render_file_numbers_lines(project):
    page = render_file(project / "src" / "app.py")
    assert '<tr id="L1"><td class="n">1</td>' in page
    assert '<tr id="L2">' in page
    assert "print(&#x27;world&#x27;)" in page


def test_render_escapes_markup(tmp_path):
    target = tmp_path / "x.html"
    target.write_text("<script>alert(1)</script>\n")
    assert "<script>alert" not in render_file(target)


def test_viewer_routes(project):
    path = project / "src" / "app.py"
    client = TestClient(create_annotate_app(path), base_url="http://localhost")

    assert client.get("/").status_code == 200
    body = client.get("/api/file").json()
    assert body == {"path": str(path), "content": path.read_text()}
