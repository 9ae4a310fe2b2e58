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

from keyblog.blog import app
from keyblog.store import JsonStore


@pytest.fixture(scope="session", autouse=True)
def _configure_app() -> None:
    """Configure the Flask app *once* before the first test is collected."""
    app.config.update(
        TESTING=True,
        SESSION_COOKIE_SECURE=False,
        # rate limits are exercised in test_auth.py with their own IPs
        LOGIN_RATE_LIMIT=0,
        UNLOCK_RATE_LIMIT=0,
    )


@pytest.fixture(autouse=True)
def data_dir(tmp_path: Path, monkeypatch: MonkeyPatch) -> Path:
    """Every test gets an empty data directory of its own."""
    root = tmp_path / "data"
    monkeypatch.setitem(app.config, "DATA_DIR", str(root))
    JsonStore(root).ensure_dirs()
    return root


@pytest.fixture
def store(data_dir: Path) -> JsonStore:
    return JsonStore(data_dir)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch keyblog.blog.utc_now for the whole session so every call returns
    an ever-increasing timestamp.
    """
    from keyblog import blog  # import here to avoid early import

    counter = itertools.count()

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield

    mp.undo()
