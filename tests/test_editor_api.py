"""
tests/test_editor_api.py
"""
from __future__ import annotations

import re

import pytest

from conftest import ADMIN, CSRF, login_as
from stanza.blog import EDITORS, app

HDR = {"X-CSRFToken": CSRF}


# ───────────────────────── helpers ────────────────────────────────────
def _open(client) -> str:
    html = client.get("/poem/new").data.decode()
    return re.search(r'data-sid="([0-9a-f]{32})"', html).group(1)


def _post(client, sid: str, path: str, **body) -> dict:
    rv = client.post(f"/editor/{sid}{path}", json=body, headers=HDR)
    assert rv.status_code == 200, rv.data
    return rv.get_json()


# ───────────────────────── state ──────────────────────────────────────
def test_fresh_editor_state(admin):
    sid = _open(admin)
    st = admin.get(f"/editor/{sid}").get_json()
    assert st["html"] == "<p></p>"
    assert st["selection"] == {"anchor": 0, "head": 0}
    assert st["popover"] is None
    tools = {t["name"]: t for t in st["toolbar"]}
    assert not tools["undo"]["enabled"]
    assert tools["link"]["enabled"]
    assert tools["align-left"]["active"]


def test_typing_and_bold(admin):
    sid = _open(admin)
    _post(admin, sid, "/type", anchor=0, text="hello world")
    st = _post(admin, sid, "/toolbar/bold", anchor=0, head=5)
    assert st["html"] == "<p><strong>hello</strong> world</p>"
    tools = {t["name"]: t for t in st["toolbar"]}
    assert tools["bold"]["active"]
    assert tools["undo"]["enabled"]

    st = _post(admin, sid, "/toolbar/undo")
    assert st["html"] == "<p>hello world</p>"


def test_backspace_and_enter(admin):
    sid = _open(admin)
    _post(admin, sid, "/type", anchor=0, text="abcd")
    st = _post(admin, sid, "/key", anchor=2, key="Enter")
    assert st["html"] == "<p>ab</p><p>cd</p>"
    st = _post(admin, sid, "/key", key="Backspace")
    assert st["html"] == "<p>abcd</p>"
    assert st["selection"] == {"anchor": 2, "head": 2}


def test_alignment_and_heading_buttons(admin):
    sid = _open(admin)
    _post(admin, sid, "/type", anchor=0, text="Title")
    _post(admin, sid, "/toolbar/h1")
    st = _post(admin, sid, "/toolbar/align-center")
    assert st["html"] == '<h1 style="text-align: center">Title</h1>'


def test_viewport_moves_the_caret(admin):
    sid = _open(admin)
    _post(admin, sid, "/type", anchor=0, text="abc")
    st = _post(admin, sid, "/viewport", origin_x=100, origin_y=50, scroll_y=10)
    assert st["caret"] == {"x": 100 + 16 + 3 * 9, "y": 50 + 16 - 10}


# ───────────────────────── links ──────────────────────────────────────
def test_link_popover_round_trip(admin):
    sid = _open(admin)
    _post(admin, sid, "/type", anchor=0, text="visit example")

    st = _post(admin, sid, "/link/open", anchor=6, head=13)
    assert st["popover"]["url"] == ""
    assert st["popover"]["position"]["placement"] == "top"

    st = _post(admin, sid, "/link/fields", url="http://x.com")
    assert st["popover"]["text"] == "http://x.com"

    st = _post(admin, sid, "/link/submit", url="http://x.com")
    assert st["popover"] is None
    assert st["html"] == (
        '<p>visit <a target="_blank" rel="noopener noreferrer nofollow" '
        'href="http://x.com">example</a></p>'
    )

    # reopen inside the link: prefilled from the mark
    st = _post(admin, sid, "/link/open", anchor=8)
    assert st["popover"]["url"] == "http://x.com"
    assert st["popover"]["use_text"] is True
    assert st["popover"]["text"] == "example"

    st = _post(admin, sid, "/link/submit", url="")
    assert st["html"] == "<p>visit example</p>"


def test_toolbar_link_button_opens_popover(admin):
    sid = _open(admin)
    st = _post(admin, sid, "/toolbar/link")
    assert st["popover"] is not None


def test_dismiss_changes_nothing(admin):
    sid = _open(admin)
    _post(admin, sid, "/type", anchor=0, text="plain")
    _post(admin, sid, "/link/open", anchor=0, head=5)
    _post(admin, sid, "/link/fields", url="http://x.com")
    st = _post(admin, sid, "/link/dismiss")
    assert st["popover"] is None
    assert st["html"] == "<p>plain</p>"


def test_link_fields_need_an_open_popover(admin):
    sid = _open(admin)
    rv = admin.post(f"/editor/{sid}/link/fields", json={"url": "x"}, headers=HDR)
    assert rv.status_code == 409


# ───────────────────────── guards ─────────────────────────────────────
@pytest.mark.parametrize(
    "path, body, status",
    [
        ("/toolbar/strike", {}, 404),
        ("/link/teleport", {}, 404),
        ("/key", {"key": "Tab"}, 400),
        ("/selection", {"anchor": "x"}, 400),
        ("/selection", {"anchor": None}, 400),
        ("/viewport", {"scroll_y": True}, 400),
    ],
)
def test_bad_requests(admin, path, body, status):
    sid = _open(admin)
    rv = admin.post(f"/editor/{sid}{path}", json=body, headers=HDR)
    assert rv.status_code == status


def test_non_object_json_is_400(admin):
    sid = _open(admin)
    rv = admin.post(f"/editor/{sid}/type", json=[1, 2], headers=HDR)
    assert rv.status_code == 400


def test_csrf_header_required(admin):
    sid = _open(admin)
    rv = admin.post(f"/editor/{sid}/type", json={"text": "x"})
    assert rv.status_code == 403


def test_readers_cannot_touch_editors(admin):
    sid = _open(admin)
    login_as(admin, "reader@example.com")
    assert admin.get(f"/editor/{sid}").status_code == 403


def test_editor_belongs_to_its_owner(admin, monkeypatch):
    sid = _open(admin)
    monkeypatch.setitem(app.config, "ADMIN_EMAILS", frozenset({ADMIN, "other@example.com"}))
    login_as(admin, "other@example.com")
    assert admin.get(f"/editor/{sid}").status_code == 404


def test_oldest_editors_are_evicted(admin, monkeypatch):
    monkeypatch.setitem(app.config, "EDITOR_SESSION_LIMIT", 2)
    first = _open(admin)
    _open(admin)
    _open(admin)
    assert len(EDITORS) == 2
    assert admin.get(f"/editor/{first}").status_code == 404


def test_saving_drops_the_editor(admin):
    sid = _open(admin)
    _post(admin, sid, "/type", anchor=0, text="short")
    admin.post("/poem/new", data={"title": "Dropped Editor", "sid": sid, "csrf": CSRF})
    assert sid not in EDITORS


# ───────────────────────── input hardening & paste ────────────────────
@pytest.mark.parametrize("raw", ['{"anchor": NaN}', '{"anchor": Infinity}', '{"anchor": 1, "head": -Infinity}'])
def test_non_finite_numbers_are_400(admin, raw):
    sid = _open(admin)
    rv = admin.post(
        f"/editor/{sid}/selection",
        data=raw,
        headers={**HDR, "Content-Type": "application/json"},
    )
    assert rv.status_code == 400


def test_unknown_scroll_container_is_400(admin):
    sid = _open(admin)
    rv = admin.post(
        f"/editor/{sid}/viewport", json={"container": "sidebar-42", "scroll_y": 5}, headers=HDR
    )
    assert rv.status_code == 400
    st = _post(admin, sid, "/viewport", container="page", scroll_y=6)
    assert st["caret"]["y"] == 16 - 6


def test_paste_html_keeps_lines_drops_formatting(admin):
    sid = _open(admin)
    st = _post(
        admin,
        sid,
        "/paste",
        anchor=0,
        html="<p><b>first</b> line</p><p> </p><p>second</p>",
        text="ignored",
    )
    assert st["html"] == "<p>first line</p><p>second</p>"


def test_paste_plain_text(admin):
    sid = _open(admin)
    st = _post(admin, sid, "/paste", anchor=0, text="a\nb")
    assert st["html"] == "<p>a</p><p>b</p>"
