"""
tests/test_document.py
"""
from __future__ import annotations

import pytest

from stanza.editor import (
    BOLD,
    ITALIC,
    Block,
    Document,
    InlineRun,
    Mark,
    Selection,
    heading,
    link_extent,
    link_mark,
    paragraph,
)


def _doc(*texts: str) -> Document:
    return Document(tuple(paragraph(t) for t in texts))


# ───────────────────────── runs & blocks ──────────────────────────────
def test_inline_run_needs_text():
    with pytest.raises(ValueError):
        InlineRun("")


def test_empty_href_is_not_a_link():
    run = InlineRun("x", frozenset({Mark("link", href=""), BOLD}))
    assert run.marks == {BOLD}
    assert link_mark("   ") is None


def test_neighbouring_runs_merge():
    block = Block(runs=(InlineRun("ab"), InlineRun("cd"), InlineRun("e", frozenset({BOLD}))))
    assert [r.text for r in block.runs] == ["abcd", "e"]
    assert block.text == "abcde"
    assert block.length == 5


def test_heading_defaults_to_level_one():
    assert Block("heading").level == 1
    assert heading("T", level=3).level == 3
    assert paragraph("x").level is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"type": "list"},
        {"alignment": "middle"},
        {"type": "heading", "level": 7},
    ],
)
def test_invalid_blocks_rejected(kwargs):
    with pytest.raises(ValueError):
        Block(**kwargs)


# ───────────────────────── documents ──────────────────────────────────
def test_document_is_never_empty():
    assert Document().blocks == (Block(),)
    assert Document(()).blocks == (Block(),)
    assert Document().size == 0


def test_flat_positions():
    doc = _doc("ab", "cd")
    assert doc.size == 5
    assert doc.text == "ab\ncd"
    assert list(doc.spans()) == [(0, 0, 2), (1, 3, 5)]
    assert doc.resolve(2) == (0, 2)
    assert doc.resolve(3) == (1, 0)
    assert doc.resolve(99) == (1, 2)
    assert doc.resolve(-4) == (0, 0)
    assert doc.block_start(1) == 3


def test_marks_at_reads_the_char_before():
    doc = Document(
        (Block(runs=(InlineRun("ab", frozenset({BOLD})), InlineRun("cd", frozenset({ITALIC})))),)
    )
    assert doc.marks_at(0) == {BOLD}       # block start → char after
    assert doc.marks_at(2) == {BOLD}
    assert doc.marks_at(3) == {ITALIC}
    assert doc.char_marks(1, 3) == [{BOLD}, {ITALIC}]


def test_selection_clamps_to_document():
    doc = _doc("abc")
    sel = Selection(-2, 40).clamp(doc)
    assert (sel.anchor, sel.head) == (0, 3)
    assert Selection(3, 1).from_ == 1
    assert Selection(3, 1).to == 3
    assert Selection.caret(2).collapsed


def test_link_extent_covers_the_whole_link():
    link = link_mark("http://old.com")
    doc = Document(
        (
            Block(
                runs=(
                    InlineRun("see "),
                    InlineRun("o", frozenset({link})),
                    InlineRun("ld", frozenset({link, BOLD})),
                    InlineRun(" site"),
                )
            ),
        )
    )
    assert link_extent(doc, 5) == (4, 7, link)
    assert link_extent(doc, 7) == (4, 7, link)   # caret right after the link
    assert link_extent(doc, 2) is None
