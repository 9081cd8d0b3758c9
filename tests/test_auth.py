"""
tests/test_auth.py
"""
from __future__ import annotations

import itertools
import time
from contextlib import contextmanager
from typing import Iterator

import pytest
from click import ClickException
from flask.testing import FlaskClient

from conftest import ADMIN, READER, login_as
from stanza.blog import (
    _create_user,
    _rotate_token,
    app,
    get_db,
    is_admin,
    signer,
    utc_now,
)


# ───────────────────────── helpers ────────────────────────────────────
def _fresh_token(email: str = ADMIN) -> str:
    """Return a valid one-time login token, creating the account if needed."""
    with app.app_context():
        db = get_db()
        if not db.execute("SELECT 1 FROM user WHERE email=?", (email,)).fetchone():
            return _create_user(db, email=email)
        return _rotate_token(db, email=email)

_ip_counter = itertools.count(1)
@contextmanager
def _new_client() -> Iterator[FlaskClient]:
    """
    Yield a brand-new Flask test-client whose REMOTE_ADDR is unique
    for every call, so the rate-limit (keyed by IP) never bleeds
    between tests unless we stay inside the same `with`-block.
    """
    ip = f"127.0.1.{next(_ip_counter)}"
    with app.test_client() as c, app.app_context():
        c.environ_base["REMOTE_ADDR"] = ip
        yield c

def _login(client, token: str, follow=True):
    """POST /login with the given token and return the response."""
    return client.post(
        "/login",
        data={"token": token},
        follow_redirects=follow,
    )


# ───────────────────────── tests ──────────────────────────────────────
def test_successful_login():
    token = _fresh_token()
    with _new_client() as c:
        rv = _login(c, token)
        assert rv.status_code == 200
        with c.session_transaction() as sess:
            assert sess["logged_in"] is True
            assert sess["email"] == ADMIN
            assert sess["csrf"]


def test_token_expired(monkeypatch):
    tok = _fresh_token()

    # jump 70 s into the future (signer max_age = 60 s)
    monkeypatch.setattr(time, "time", lambda: int(utc_now().timestamp()) + 70)

    with _new_client() as c:
        rv = _login(c, tok, follow=False)
        assert rv.status_code == 200
        assert b"invalid or has expired" in rv.data
        with c.session_transaction() as sess:
            assert "logged_in" not in sess


def test_token_forged():
    bad = signer.sign("1.evil-payload").decode()[:-1] + "x"   # break the sig

    with _new_client() as c:
        rv = _login(c, bad, follow=False)
        assert rv.status_code == 200
        with c.session_transaction() as sess:
            assert "logged_in" not in sess


def test_token_is_burned_after_login():
    tok = _fresh_token()

    with _new_client() as c1:
        assert _login(c1, tok).status_code == 200

    with _new_client() as c2:
        rv2 = _login(c2, tok, follow=False)
        assert rv2.status_code == 200
        with c2.session_transaction() as sess:
            assert "logged_in" not in sess


def test_rotate_token_invalidates_old_one():
    old = _fresh_token()
    new = _fresh_token()

    with _new_client() as c:
        _login(c, old, follow=False)
        with c.session_transaction() as sess:
            assert "logged_in" not in sess

    with _new_client() as c:
        _login(c, new)
        with c.session_transaction() as sess:
            assert sess.get("logged_in") is True


def test_rotate_unknown_email_fails():
    with app.app_context():
        with pytest.raises(ClickException):
            _rotate_token(get_db(), email="nobody@example.com")


def test_login_rate_limit(monkeypatch):
    forged = signer.sign("nope").decode()[:-1] + "x"

    # freeze time so every call lands within the same 60 s window
    now = int(utc_now().timestamp())
    monkeypatch.setattr(time, "time", lambda: now)

    with _new_client() as c:
        for _ in range(5):
            assert _login(c, forged, follow=False).status_code == 200

        resp = _login(c, forged, follow=False)
        assert resp.status_code == 429
        assert b"Too many requests" in resp.data


# ───────────────────────── allow-list ─────────────────────────────────
def test_is_admin_is_case_insensitive():
    assert is_admin(ADMIN)
    assert is_admin(ADMIN.upper())
    assert not is_admin(READER)
    assert not is_admin(None)
    assert not is_admin("")


def test_signed_in_reader_cannot_write(client):
    login_as(client, READER)
    assert client.get("/poem/new").status_code == 403
    assert client.get("/drafts").status_code == 403


def test_anonymous_gets_403_page(client):
    rv = client.get("/poem/new")
    assert rv.status_code == 403
    assert b"Access denied" in rv.data


def test_csrf_required_for_signed_in_posts(client):
    login_as(client, ADMIN)
    rv = client.post("/poem/new", data={"title": "x"})
    assert rv.status_code == 403


def test_logout_clears_session(admin):
    admin.get("/logout")
    with admin.session_transaction() as sess:
        assert "logged_in" not in sess


def test_cli_token_rotates():
    old = _fresh_token()
    result = app.test_cli_runner().invoke(args=["token", "--email", ADMIN])
    assert result.exit_code == 0, result.output
    assert "Fresh login token" in result.output

    with _new_client() as c:
        _login(c, old, follow=False)
        with c.session_transaction() as sess:
            assert "logged_in" not in sess
