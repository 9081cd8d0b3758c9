"""
Plain text ⇄ editor document ⇄ markup.

Poems are stored as plain text, one line per paragraph.  The editor works on
`Document`s and the pages show them as HTML.

Public API:

• `load_from_plain_text` / `save_to_plain_text`: the stored form
• `to_markup`: editor HTML for pages and the editing surface
• `markup_to_plain_text`: arbitrary HTML → stored form (used for pasting)
• `parse_markup`: editor HTML → `Document`, for callers holding markup
"""

from __future__ import annotations

import logging
import re
from html import unescape

from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from markupsafe import escape

from stanza.editor import (
    BOLD,
    DEFAULT_LINK_TARGET,
    ITALIC,
    UNDERLINE,
    Block,
    Document,
    InlineRun,
    add_mark,
    find_link,
    link_mark,
    paragraph,
)

log = logging.getLogger(__name__)

BLOCK_TAGS = ["p", "h1", "h2", "h3", "h4", "h5", "h6"]
INLINE_MARKS = {
    "strong": BOLD,
    "b": BOLD,
    "em": ITALIC,
    "i": ITALIC,
    "u": UNDERLINE,
}
# innermost first
MARK_TAGS = (("underline", "u"), ("italic", "em"), ("bold", "strong"))
LINK_REL = "noopener noreferrer nofollow"

_ALIGN_RE = re.compile(r"text-align\s*:\s*(left|center|right|justify)", re.I)
_BLOCK_BOUNDARY_RE = re.compile(r"</(?:p|h[1-6])>\s*<(?:p|h[1-6])(?:\s[^>]*)?>", re.I)
_BR_RE = re.compile(r"<br\s*/?>", re.I)
_TAG_RE = re.compile(r"<[^>]*>")


###############################################################################
# Plain text
###############################################################################
def load_from_plain_text(text: str | None) -> Document:
    """One unmarked paragraph per non-blank line; never an empty document."""
    lines = [ln for ln in (text or "").split("\n") if ln.strip()]
    return Document(tuple(paragraph(ln) for ln in lines))


def save_to_plain_text(document: Document) -> str:
    """
    Paragraph texts joined by newlines (marks and headings are dropped).
    Falls back to stripping the rendered markup when no paragraph has text.
    """
    lines = [
        b.text for b in document.blocks if b.type == "paragraph" and b.text.strip()
    ]
    if lines:
        return "\n".join(lines)
    return strip_markup(to_markup(document))


def strip_markup(markup: str | None) -> str:
    """Regex fallback: block boundaries → newlines, tags dropped, blanks skipped."""
    text = _BLOCK_BOUNDARY_RE.sub("\n", markup or "")
    text = _BR_RE.sub("\n", text)
    text = unescape(_TAG_RE.sub("", text))
    return "\n".join(ln for ln in text.split("\n") if ln.strip())


def markup_to_plain_text(markup: str | None) -> str:
    soup = BeautifulSoup(markup or "", "html.parser")
    lines = [p.get_text() for p in soup.find_all("p")]
    lines = [ln for ln in lines if ln.strip()]
    if lines:
        return "\n".join(lines)
    return strip_markup(markup)


###############################################################################
# Markup
###############################################################################
def _run_markup(run: InlineRun) -> str:
    html = str(escape(run.text))
    for mark_type, tag in MARK_TAGS:
        if any(m.type == mark_type for m in run.marks):
            html = f"<{tag}>{html}</{tag}>"
    link = find_link(run.marks)
    if link is not None:
        html = (
            f'<a target="{escape(link.target or DEFAULT_LINK_TARGET)}" '
            f'rel="{LINK_REL}" href="{escape(link.href)}">{html}</a>'
        )
    return html


def block_markup(block: Block) -> str:
    tag = "p" if block.type == "paragraph" else f"h{block.level}"
    style = "" if block.alignment == "left" else f' style="text-align: {block.alignment}"'
    inner = "".join(_run_markup(run) for run in block.runs)
    return f"<{tag}{style}>{inner}</{tag}>"


def to_markup(document: Document) -> str:
    return "".join(block_markup(b) for b in document.blocks)


def _inline_runs(node: Tag, marks: frozenset, out: list[InlineRun]) -> None:
    for child in node.children:
        if isinstance(child, Comment):
            continue
        if isinstance(child, NavigableString):
            text = str(child).replace("\r", "").replace("\n", " ")
            if text:
                out.append(InlineRun(text, marks))
            continue
        if not isinstance(child, Tag) or child.name == "br":
            continue
        child_marks = marks
        if child.name in INLINE_MARKS:
            child_marks = marks | {INLINE_MARKS[child.name]}
        elif child.name == "a":
            link = link_mark(child.get("href"), child.get("target"))
            if link is not None:
                child_marks = add_mark(marks, link)
        _inline_runs(child, child_marks, out)


def _parse_block(el: Tag) -> Block:
    m = _ALIGN_RE.search(el.get("style") or "")
    alignment = m.group(1).lower() if m else "left"
    runs: list[InlineRun] = []
    _inline_runs(el, frozenset(), runs)
    if el.name == "p":
        return Block("paragraph", tuple(runs), alignment)
    return Block("heading", tuple(runs), alignment, int(el.name[1]))


def parse_markup(markup: str | None) -> Document:
    """
    Parse editor HTML into a `Document`.

    Never raises: markup without any paragraph / heading becomes a single
    unmarked paragraph holding the input's text.
    """
    soup = BeautifulSoup(markup or "", "html.parser")
    blocks = [
        _parse_block(el)
        for el in soup.find_all(BLOCK_TAGS)
        if el.find_parent(BLOCK_TAGS) is None
    ]
    if blocks:
        return Document(tuple(blocks))
    if markup and markup.strip():
        log.warning("no blocks in markup, loading it as one paragraph")
    text = soup.get_text().replace("\r", "").replace("\n", " ")
    return Document((paragraph(text),))
