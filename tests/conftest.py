"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

from mf2press.app import app, init_db
from mf2press.publisher import FilePublisher

PUBLICATION_URL = "https://foo.bar"


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One post store for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        PUBLICATION_URL=PUBLICATION_URL,
        PUBLICATION_CONFIG=None,
        MEDIA_ENDPOINT=None,
        PUBLISHER_DIR=None,
        RATE_LIMIT_ENABLED=False,
    )
    with app.app_context():
        init_db()


@pytest.fixture
def site(tmp_path: Path, monkeypatch: MonkeyPatch) -> FilePublisher:
    """A fresh, empty publication directory wired in as the publisher."""
    publisher = FilePublisher(tmp_path / "site")
    monkeypatch.setitem(app.config, "PUBLISHER", publisher)
    return publisher


@pytest.fixture
def client(site: FilePublisher) -> Generator[FlaskClient, None, None]:
    """
    Gives each test an application context *and* a test client that
    publishes into its own temporary directory.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch mf2press.app.utc_now for the whole session so every call returns
    an ever-increasing timestamp, keeping generated slugs unique.
    """
    from mf2press import app as app_module

    counter = itertools.count()

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(app_module, "utc_now", _fake_now)

    yield

    mp.undo()
