"""
tests/test_cli.py
"""
from __future__ import annotations

import json

from mf2press.app import app

NOTE = """
<div class="h-entry">
  <p class="p-name">I ate a cheese sandwich.</p>
  <div class="e-content"><p>I ate a <em>cheese</em> sandwich.</p></div>
</div>
"""


def _page(tmp_path, html: str) -> str:
    path = tmp_path / "page.html"
    path.write_text(html, encoding="utf-8")
    return str(path)


def test_extract_prints_properties(tmp_path):
    result = app.test_cli_runner().invoke(args=["extract", _page(tmp_path, NOTE)])
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["name"] == ["I ate a cheese sandwich."]
    assert data["content"] == [
        {"html": "<p>I ate a <em>cheese</em> sandwich.</p>", "value": "I ate a cheese sandwich."}
    ]


def test_extract_selected_property(tmp_path):
    result = app.test_cli_runner().invoke(args=["extract", _page(tmp_path, NOTE), "-p", "name"])
    assert json.loads(result.output) == {"name": ["I ate a cheese sandwich."]}


def test_extract_page_without_items(tmp_path):
    result = app.test_cli_runner().invoke(args=["extract", _page(tmp_path, "<p>plain</p>")])
    assert result.exit_code != 0
    assert "Page has no items" in result.output


def test_post_types_lists_builtins():
    result = app.test_cli_runner().invoke(args=["post-types"])
    assert result.exit_code == 0
    assert "📝  note" in result.output
    assert "_articles/" in result.output


def test_init_reports_database():
    result = app.test_cli_runner().invoke(args=["init"])
    assert result.exit_code == 0
    assert app.config["DATABASE"] in result.output
