"""
tests/test_errors.py
"""
from __future__ import annotations

from mf2press.app import app


# ─────────────────────────■  tests  ■────────────────────────────────
def test_404_is_json(client):
    """
    Any unknown URL yields a Micropub-style error document.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"


def test_missing_query(client):
    resp = client.get("/micropub")
    assert resp.status_code == 400
    assert resp.get_json() == {
        "error": "invalid_request",
        "error_description": "Missing q parameter",
    }


def test_unsupported_query(client):
    resp = client.get("/micropub?q=weather")
    assert resp.status_code == 400
    assert "weather" in resp.get_json()["error_description"]


def test_source_needs_url(client):
    resp = client.get("/micropub?q=source")
    assert resp.status_code == 400


def test_body_must_be_object(client):
    resp = client.post("/micropub", json=["h-entry"])
    assert resp.status_code == 400
    assert "object" in resp.get_json()["error_description"]


def test_missing_publisher(client, monkeypatch):
    monkeypatch.setitem(app.config, "PUBLISHER", None)
    monkeypatch.setattr("mf2press.app.github_config", lambda: {})
    resp = client.post("/micropub", json={"type": ["h-entry"], "properties": {"content": ["x"]}})
    assert resp.status_code == 502
    assert resp.get_json()["error"] == "publish_error"


def test_500_is_json(client, monkeypatch):
    """
    Simulate an internal crash and make sure the JSON 500 handler fires.
    """
    def boom():
        raise RuntimeError("kaboom")

    monkeypatch.setitem(app.view_functions, "micropub_query", boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/micropub?q=config")
    assert resp.status_code == 500
    assert resp.get_json() == {
        "error": "server_error",
        "error_description": "Internal Server Error",
    }
