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

# The single-file app lives here:
from stanza.blog import EDITORS, app, init_db

ADMIN = "admin@example.com"
READER = "reader@example.com"
CSRF = "test-token"          # shared constant so the token matches the session


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        ADMIN_EMAILS=frozenset({ADMIN}),
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client
    EDITORS.clear()


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    """The same client, signed in as an allow-listed account."""
    login_as(client, ADMIN)
    return client


def login_as(client: FlaskClient, email: str) -> None:
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["email"] = email
        sess["csrf"] = CSRF


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch stanza.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from stanza import blog  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
