"""
tests/test_source.py
"""
from __future__ import annotations

import pytest
import requests

import mf2press.mf2 as mf2

PAGE = b"""<!doctype html>
<html><body>
  <article class="h-entry">
    <h1 class="p-name">Remote title</h1>
    <div class="e-content"><p>Remote <em>body</em></p></div>
  </article>
</body></html>
"""


class _FakeResp:
    """Just enough of a streamed requests.Response for fetch_html."""

    def __init__(self, body: bytes = PAGE, ctype: str = "text/html; charset=utf-8", status: int = 200):
        self.body = body
        self.headers = {"Content-Type": ctype}
        self.status_code = status
        self.encoding = "utf-8"

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def iter_content(self, size):
        for i in range(0, len(self.body), size):
            yield self.body[i:i + size]


class _Remote:
    """Records fetched URLs and serves ``resp`` for each of them."""

    def __init__(self):
        self.urls: list[str] = []
        self.resp = _FakeResp()

    def get(self, url, **kwargs):
        self.urls.append(url)
        return self.resp


@pytest.fixture
def remote(monkeypatch) -> _Remote:
    """Route fetch_html to a canned page instead of the network."""
    fake = _Remote()
    monkeypatch.setattr(mf2.requests, "get", fake.get)
    monkeypatch.setattr(mf2, "_is_private", lambda host: False)
    return fake


def _create(client, **properties):
    resp = client.post("/micropub", json={"type": ["h-entry"], "properties": properties})
    return resp.headers["Location"]


# ───────────────────────── from the post store ─────────────────────
def test_source_of_stored_post(client):
    url = _create(client, content=["hello"], category=["a", "b"])
    data = client.get("/micropub", query_string={"q": "source", "url": url}).get_json()
    assert data["type"] == ["h-entry"]
    assert data["properties"]["content"] == ["hello"]
    assert data["properties"]["category"] == ["a", "b"]


def test_source_selected_properties(client):
    url = _create(client, content=["hello"], category=["a"])
    data = client.get(
        "/micropub",
        query_string=[("q", "source"), ("url", url), ("properties[]", "category"), ("properties[]", "location")],
    ).get_json()
    assert data == {"properties": {"category": ["a"]}}


# ───────────────────────── fetched pages ───────────────────────────
def test_source_fetches_unknown_url(client, remote):
    data = client.get(
        "/micropub", query_string={"q": "source", "url": "https://elsewhere.example/post"}
    ).get_json()
    assert remote.urls == ["https://elsewhere.example/post"]
    assert data["properties"]["name"] == ["Remote title"]
    assert data["properties"]["content"] == [
        {"html": "<p>Remote <em>body</em></p>", "value": "Remote body"}
    ]


def test_source_fetched_properties(client, remote):
    data = client.get(
        "/micropub",
        query_string=[("q", "source"), ("url", "https://elsewhere.example/post"), ("properties[]", "name")],
    ).get_json()
    assert data == {"properties": {"name": ["Remote title"]}}


def test_source_of_deleted_post_is_fetched(client, remote):
    url = _create(client, content=["hello"])
    client.post("/micropub", json={"action": "delete", "url": url})
    client.get("/micropub", query_string={"q": "source", "url": url})
    assert remote.urls == [url]


# ───────────────────────── fetch guards ────────────────────────────
def test_fetch_requires_https(remote):
    with pytest.raises(mf2.InputError, match="HTTPS"):
        mf2.fetch_html("http://elsewhere.example/post")
    assert remote.urls == []


def test_fetch_refuses_private_hosts(monkeypatch):
    monkeypatch.setattr(mf2, "_is_private", lambda host: True)
    with pytest.raises(mf2.InputError, match="private"):
        mf2.fetch_html("https://intranet.example/")


def test_fetch_rejects_non_html(remote):
    remote.resp = _FakeResp(b"{}", ctype="application/json")
    with pytest.raises(mf2.InputError, match="Content-Type"):
        mf2.fetch_html("https://elsewhere.example/post")


def test_fetch_caps_size(remote):
    remote.resp = _FakeResp(b"x" * (mf2.FETCH_MAX_BYTES + 1))
    with pytest.raises(mf2.InputError, match="too large"):
        mf2.fetch_html("https://elsewhere.example/post")


def test_fetch_http_error_is_not_found(client, remote):
    remote.resp = _FakeResp(status=404)
    resp = client.get("/micropub", query_string={"q": "source", "url": "https://elsewhere.example/gone"})
    assert resp.status_code == 404
