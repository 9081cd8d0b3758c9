"""
Rich-text editing core.

Everything the page toolbar needs lives here:

• an immutable document model (paragraph / heading blocks made of marked runs)
• pure commands over (document, selection, stored marks) with can/active queries
• an `EditorSession` that owns the live state and the undo/redo stacks
• a `SelectionTracker` that maps the caret to viewport coordinates
• the `LinkPopover` state machine and its three-way `apply_link`

Positions are flat character offsets: block *i* starts one past the end of
block *i-1*, exactly as if the blocks were joined with newlines.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from functools import partial
from math import ceil
from typing import Callable, Iterable, Iterator

log = logging.getLogger(__name__)

ALIGNMENTS = ("left", "center", "right", "justify")
HEADING_LEVELS = range(1, 7)
DEFAULT_LINK_TARGET = "_blank"


################################################################################
# Document model
################################################################################
@dataclass(frozen=True)
class Mark:
    type: str  # bold | italic | underline | link
    href: str | None = None
    target: str | None = None


BOLD = Mark("bold")
ITALIC = Mark("italic")
UNDERLINE = Mark("underline")
SIMPLE_MARKS = {"bold": BOLD, "italic": ITALIC, "underline": UNDERLINE}

NO_MARKS: frozenset = frozenset()


def link_mark(href: str | None, target: str | None = DEFAULT_LINK_TARGET) -> Mark | None:
    """Return a link mark, or ``None`` for an empty href (never stored)."""
    href = (href or "").strip()
    if not href:
        return None
    return Mark("link", href=href, target=target or DEFAULT_LINK_TARGET)


def find_link(marks: Iterable[Mark]) -> Mark | None:
    return next((m for m in marks if m.type == "link"), None)


def add_mark(marks: Iterable[Mark], mark: Mark) -> frozenset:
    """Add *mark*, replacing any mark of the same type (one link per run)."""
    return frozenset(m for m in marks if m.type != mark.type) | {mark}


def drop_mark_type(marks: Iterable[Mark], mark_type: str) -> frozenset:
    return frozenset(m for m in marks if m.type != mark_type)


@dataclass(frozen=True)
class InlineRun:
    text: str
    marks: frozenset = NO_MARKS

    def __post_init__(self):
        if not self.text:
            raise ValueError("inline runs must carry text")
        # an empty href means "no link"
        object.__setattr__(
            self,
            "marks",
            frozenset(m for m in self.marks if m.type != "link" or m.href),
        )


def normalize_runs(runs: Iterable[InlineRun]) -> tuple[InlineRun, ...]:
    """Merge neighbours that share a mark set."""
    out: list[InlineRun] = []
    for run in runs:
        if out and out[-1].marks == run.marks:
            out[-1] = InlineRun(out[-1].text + run.text, run.marks)
        else:
            out.append(run)
    return tuple(out)


Char = tuple[str, frozenset]


def runs_from_chars(chars: Iterable[Char]) -> tuple[InlineRun, ...]:
    return normalize_runs(InlineRun(ch, marks) for ch, marks in chars)


@dataclass(frozen=True)
class Block:
    type: str = "paragraph"
    runs: tuple[InlineRun, ...] = ()
    alignment: str = "left"
    level: int | None = None

    def __post_init__(self):
        if self.type not in ("paragraph", "heading"):
            raise ValueError(f"unknown block type {self.type!r}")
        if self.alignment not in ALIGNMENTS:
            raise ValueError(f"unknown alignment {self.alignment!r}")
        if self.type == "heading":
            level = 1 if self.level is None else self.level
            if level not in HEADING_LEVELS:
                raise ValueError(f"heading level {level} out of range")
            object.__setattr__(self, "level", level)
        else:
            object.__setattr__(self, "level", None)
        object.__setattr__(self, "runs", normalize_runs(self.runs))

    @property
    def text(self) -> str:
        return "".join(run.text for run in self.runs)

    @property
    def length(self) -> int:
        return sum(len(run.text) for run in self.runs)

    def chars(self) -> list[Char]:
        return [(ch, run.marks) for run in self.runs for ch in run.text]

    def with_chars(self, chars: Iterable[Char]) -> "Block":
        return replace(self, runs=runs_from_chars(chars))


def paragraph(text: str = "", marks: Iterable[Mark] = (), alignment: str = "left") -> Block:
    runs = (InlineRun(text, frozenset(marks)),) if text else ()
    return Block("paragraph", runs, alignment)


def heading(
    text: str = "", level: int = 1, marks: Iterable[Mark] = (), alignment: str = "left"
) -> Block:
    runs = (InlineRun(text, frozenset(marks)),) if text else ()
    return Block("heading", runs, alignment, level)


@dataclass(frozen=True)
class Document:
    blocks: tuple[Block, ...] = (Block(),)

    def __post_init__(self):
        # an editor is never truly empty
        object.__setattr__(self, "blocks", tuple(self.blocks) or (Block(),))

    @property
    def size(self) -> int:
        return sum(b.length for b in self.blocks) + len(self.blocks) - 1

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.blocks)

    def spans(self) -> Iterator[tuple[int, int, int]]:
        """Yield ``(index, start, end)`` for every block."""
        start = 0
        for index, block in enumerate(self.blocks):
            end = start + block.length
            yield index, start, end
            start = end + 1

    def block_start(self, index: int) -> int:
        return sum(b.length + 1 for b in self.blocks[:index])

    def resolve(self, pos: int) -> tuple[int, int]:
        """Map a flat position to ``(block index, offset in block)``."""
        pos = max(0, pos)
        for index, start, end in self.spans():
            if pos <= end:
                return index, max(0, pos - start)
        last = len(self.blocks) - 1
        return last, self.blocks[last].length

    def touched(self, start: int, end: int) -> list[tuple[int, int, int]]:
        """Blocks overlapping ``[start, end]`` with local offsets."""
        if start == end:
            index, offset = self.resolve(start)
            return [(index, offset, offset)]
        out = []
        for index, b_start, b_end in self.spans():
            if start <= b_end and end >= b_start:
                out.append(
                    (index, max(start, b_start) - b_start, min(end, b_end) - b_start)
                )
        return out

    def marks_at(self, pos: int) -> frozenset:
        """Marks of the character before *pos* (after it at a block start)."""
        index, offset = self.resolve(pos)
        chars = self.blocks[index].chars()
        if offset > 0:
            return chars[offset - 1][1]
        if chars:
            return chars[0][1]
        return NO_MARKS

    def char_marks(self, start: int, end: int) -> list[frozenset]:
        """Marks of every character in ``[start, end)``."""
        out: list[frozenset] = []
        for index, lo, hi in self.touched(start, end):
            out.extend(marks for _, marks in self.blocks[index].chars()[lo:hi])
        return out

    def with_block(self, index: int, block: Block) -> "Document":
        blocks = list(self.blocks)
        blocks[index] = block
        return Document(tuple(blocks))


@dataclass(frozen=True)
class Selection:
    anchor: int = 0
    head: int = 0

    @classmethod
    def caret(cls, pos: int) -> "Selection":
        return cls(pos, pos)

    @property
    def collapsed(self) -> bool:
        return self.anchor == self.head

    @property
    def from_(self) -> int:
        return min(self.anchor, self.head)

    @property
    def to(self) -> int:
        return max(self.anchor, self.head)

    def clamp(self, document: Document) -> "Selection":
        size = document.size
        return Selection(min(max(self.anchor, 0), size), min(max(self.head, 0), size))


@dataclass(frozen=True)
class EditorState:
    document: Document = field(default_factory=Document)
    selection: Selection = field(default_factory=Selection)
    # pending marks for the next typed text; None → derive from the caret
    stored_marks: frozenset | None = None


################################################################################
# Range helpers
################################################################################
def map_marks(
    document: Document, start: int, end: int, fn: Callable[[frozenset], frozenset]
) -> Document:
    for index, lo, hi in document.touched(start, end):
        if lo == hi:
            continue
        block = document.blocks[index]
        chars = block.chars()
        chars[lo:hi] = [(ch, fn(marks)) for ch, marks in chars[lo:hi]]
        document = document.with_block(index, block.with_chars(chars))
    return document


def delete_range(document: Document, start: int, end: int) -> Document:
    if start >= end:
        return document
    first, lo = document.resolve(start)
    last, hi = document.resolve(end)
    head = document.blocks[first].chars()[:lo]
    tail = document.blocks[last].chars()[hi:]
    merged = document.blocks[first].with_chars(head + tail)
    blocks = document.blocks[:first] + (merged,) + document.blocks[last + 1 :]
    return Document(blocks)


def insert_chars(document: Document, pos: int, chars: list[Char]) -> Document:
    index, offset = document.resolve(pos)
    block = document.blocks[index]
    existing = block.chars()
    existing[offset:offset] = chars
    return document.with_block(index, block.with_chars(existing))


def split_at(document: Document, pos: int) -> Document:
    index, offset = document.resolve(pos)
    block = document.blocks[index]
    chars = block.chars()
    head = block.with_chars(chars[:offset])
    if chars[offset:]:
        tail = block.with_chars(chars[offset:])
    else:
        tail = Block("paragraph", alignment=block.alignment)
    blocks = document.blocks[:index] + (head, tail) + document.blocks[index + 1 :]
    return Document(blocks)


def link_extent(document: Document, pos: int) -> tuple[int, int, Mark] | None:
    """Full contiguous extent of the link the caret at *pos* sits in."""
    index, offset = document.resolve(pos)
    chars = document.blocks[index].chars()
    if not chars:
        return None
    at = offset - 1 if offset > 0 else 0
    link = find_link(chars[at][1])
    if link is None:
        return None
    lo = at
    while lo > 0 and link in chars[lo - 1][1]:
        lo -= 1
    hi = at + 1
    while hi < len(chars) and link in chars[hi][1]:
        hi += 1
    base = document.block_start(index)
    return base + lo, base + hi, link


def extend_over_links(document: Document, start: int, end: int) -> tuple[int, int]:
    """Grow ``[start, end)`` so no link is cut in two."""
    for index, lo, hi in document.touched(start, end):
        chars = document.blocks[index].chars()
        base = document.block_start(index)
        if lo < hi and find_link(chars[lo][1]):
            extent = link_extent(document, base + lo + 1)
            start = min(start, extent[0])
        if lo < hi and find_link(chars[hi - 1][1]):
            extent = link_extent(document, base + hi)
            end = max(end, extent[1])
    return start, end


def typing_marks(state: EditorState) -> frozenset:
    if state.stored_marks is not None:
        return state.stored_marks
    return state.document.marks_at(state.selection.from_)


def active_link(state: EditorState) -> Mark | None:
    sel = state.selection
    if sel.collapsed:
        return find_link(typing_marks(state))
    for marks in state.document.char_marks(sel.from_, sel.to):
        link = find_link(marks)
        if link is not None:
            return link
    return None


def adjacent_run(document: Document, pos: int) -> InlineRun | None:
    """The run holding the character before *pos* (after it at a block start)."""
    index, offset = document.resolve(pos)
    at = offset - 1 if offset > 0 else 0
    seen = 0
    for run in document.blocks[index].runs:
        seen += len(run.text)
        if at < seen:
            return run
    return None


################################################################################
# Commands
#
# Each command takes an EditorState and returns the next one, or None when
# it cannot apply.  `EditorSession.can_apply` is a dry run.
################################################################################
def mark_active(state: EditorState, mark_type: str) -> bool:
    mark = SIMPLE_MARKS[mark_type]
    sel = state.selection
    if sel.collapsed:
        return mark in typing_marks(state)
    marks = state.document.char_marks(sel.from_, sel.to)
    return bool(marks) and all(mark in m for m in marks)


def toggle_mark(state: EditorState, mark_type: str) -> EditorState:
    mark = SIMPLE_MARKS[mark_type]
    sel = state.selection
    if sel.collapsed:
        pending = typing_marks(state)
        pending = pending - {mark} if mark in pending else pending | {mark}
        return replace(state, stored_marks=frozenset(pending))

    if mark_active(state, mark_type):
        doc = map_marks(state.document, sel.from_, sel.to, lambda m: m - {mark})
    else:
        doc = map_marks(state.document, sel.from_, sel.to, lambda m: m | {mark})
    return replace(state, document=doc)


def heading_active(state: EditorState, level: int = 1) -> bool:
    index, _ = state.document.resolve(state.selection.anchor)
    block = state.document.blocks[index]
    return block.type == "heading" and block.level == level


def toggle_heading(state: EditorState, level: int = 1) -> EditorState | None:
    if level not in HEADING_LEVELS:
        return None
    doc = state.document
    index, _ = doc.resolve(state.selection.anchor)
    block = doc.blocks[index]
    if heading_active(state, level):
        new = Block("paragraph", block.runs, block.alignment)
    else:
        new = Block("heading", block.runs, block.alignment, level)
    return replace(state, document=doc.with_block(index, new))


def _aligned_blocks(state: EditorState) -> list[int]:
    sel = state.selection
    return [index for index, _, _ in state.document.touched(sel.from_, sel.to)]


def alignment_active(state: EditorState, value: str = "left") -> bool:
    blocks = state.document.blocks
    return all(blocks[i].alignment == value for i in _aligned_blocks(state))


def set_alignment(state: EditorState, value: str = "left") -> EditorState | None:
    if value not in ALIGNMENTS:
        return None
    doc = state.document
    for index in _aligned_blocks(state):
        doc = doc.with_block(index, replace(doc.blocks[index], alignment=value))
    return replace(state, document=doc)


def link_active(state: EditorState, **_) -> bool:
    return active_link(state) is not None


def set_link(
    state: EditorState, href: str = "", target: str = DEFAULT_LINK_TARGET
) -> EditorState | None:
    mark = link_mark(href, target)
    if mark is None:
        return None
    doc, sel = state.document, state.selection
    if sel.collapsed:
        extent = link_extent(doc, sel.anchor) if state.stored_marks is None else None
        if extent is None:
            return replace(state, stored_marks=add_mark(typing_marks(state), mark))
        start, end, _ = extent
    else:
        start, end = extend_over_links(doc, sel.from_, sel.to)
    doc = map_marks(doc, start, end, lambda m: add_mark(m, mark))
    return replace(state, document=doc)


def unset_link(state: EditorState) -> EditorState | None:
    if active_link(state) is None:
        return None
    doc, sel = state.document, state.selection
    stored = state.stored_marks
    if stored is not None:
        stored = drop_mark_type(stored, "link")
    if sel.collapsed:
        extent = link_extent(doc, sel.anchor)
        if extent is None:
            return replace(state, stored_marks=stored)
        start, end, _ = extent
    else:
        start, end = extend_over_links(doc, sel.from_, sel.to)
    doc = map_marks(doc, start, end, lambda m: drop_mark_type(m, "link"))
    return EditorState(doc, sel, stored)


def insert_text(state: EditorState, text: str = "") -> EditorState | None:
    if not text:
        return None
    sel = state.selection
    marks = typing_marks(state)
    doc = delete_range(state.document, sel.from_, sel.to)
    pos = sel.from_
    for n, line in enumerate(text.replace("\r\n", "\n").split("\n")):
        if n:
            doc = split_at(doc, pos)
            pos += 1
        doc = insert_chars(doc, pos, [(ch, marks) for ch in line])
        pos += len(line)
    return EditorState(doc, Selection.caret(pos))


def delete_backward(state: EditorState) -> EditorState | None:
    sel = state.selection
    if not sel.collapsed:
        doc = delete_range(state.document, sel.from_, sel.to)
        return EditorState(doc, Selection.caret(sel.from_))
    if sel.head == 0:
        return None
    doc = delete_range(state.document, sel.head - 1, sel.head)
    return EditorState(doc, Selection.caret(sel.head - 1))


def split_block(state: EditorState) -> EditorState:
    sel = state.selection
    doc = delete_range(state.document, sel.from_, sel.to)
    doc = split_at(doc, sel.from_)
    return EditorState(doc, Selection.caret(sel.from_ + 1))


@dataclass(frozen=True)
class Command:
    name: str
    run: Callable[..., EditorState | None]
    active: Callable[..., bool] = lambda state, **_: False


COMMANDS: dict[str, Command] = {
    c.name: c
    for c in (
        Command(
            "toggle_bold",
            partial(toggle_mark, mark_type="bold"),
            partial(mark_active, mark_type="bold"),
        ),
        Command(
            "toggle_italic",
            partial(toggle_mark, mark_type="italic"),
            partial(mark_active, mark_type="italic"),
        ),
        Command(
            "toggle_underline",
            partial(toggle_mark, mark_type="underline"),
            partial(mark_active, mark_type="underline"),
        ),
        Command("toggle_heading", toggle_heading, heading_active),
        Command("set_alignment", set_alignment, alignment_active),
        Command("set_link", set_link, link_active),
        Command("unset_link", unset_link, link_active),
        Command("insert_text", insert_text),
        Command("delete_backward", delete_backward),
        Command("split_block", split_block),
    )
}
HISTORY_COMMANDS = ("undo", "redo")


################################################################################
# Link protocol
################################################################################
def apply_link(state: EditorState, url: str, text: str | None = None) -> EditorState | None:
    """
    Insert, update or remove a link depending on where the caret is.

    ➊ caret/selection already in a link → rewrite (or strip) its full extent
    ➋ bare caret → insert a new linked run
    ➌ selected text → link it in place

    Returns None when nothing changes.
    """
    url = (url or "").strip()
    label = (text or url).replace("\r", "").replace("\n", " ")
    doc, sel = state.document, state.selection
    previous = active_link(state)

    if previous is not None:
        if sel.collapsed:
            extent = link_extent(doc, sel.anchor)
            start, end = extent[:2] if extent else (sel.anchor, sel.anchor)
        else:
            start, end = extend_over_links(doc, sel.from_, sel.to)
        if not url:
            stripped = map_marks(doc, start, end, lambda m: drop_mark_type(m, "link"))
            stored = state.stored_marks
            if stored is not None:
                stored = drop_mark_type(stored, "link")
            return EditorState(stripped, sel, stored)
        mark = link_mark(url)
        doc = delete_range(doc, start, end)
        doc = insert_chars(doc, start, [(ch, frozenset({mark})) for ch in label])
        return EditorState(doc, Selection.caret(start + len(label)), NO_MARKS)

    if sel.collapsed:
        if not url:
            return None
        mark = link_mark(url)
        doc = insert_chars(doc, sel.anchor, [(ch, frozenset({mark})) for ch in label])
        return EditorState(doc, Selection.caret(sel.anchor + len(label)), NO_MARKS)

    if not url:
        # no link anywhere in the selection, nothing to strip
        return None
    linked = set_link(replace(state, stored_marks=None), url)
    caret = sel.to
    return EditorState(
        linked.document,
        Selection.caret(caret),
        drop_mark_type(linked.document.marks_at(caret), "link"),
    )


################################################################################
# Session
################################################################################
class EditorSession:
    """
    One live editing surface.  Owns the state, the undo/redo stacks and the
    listeners (toolbar, selection tracker …) that re-read it after a change.
    """

    def __init__(self, document: Document | None = None, *, editable: bool = True):
        self.editable = editable
        self._state = EditorState(document or Document(), Selection())
        self._undo: list[EditorState] = []
        self._redo: list[EditorState] = []
        self._listeners: list[Callable[["EditorSession"], None]] = []

    # ── state ────────────────────────────────────────────────────────
    @property
    def state(self) -> EditorState:
        return self._state

    @property
    def document(self) -> Document:
        return self._state.document

    @property
    def selection(self) -> Selection:
        return self._state.selection

    @property
    def stored_marks(self) -> frozenset | None:
        return self._state.stored_marks

    def typing_marks(self) -> frozenset:
        return typing_marks(self._state)

    def add_listener(self, listener: Callable[["EditorSession"], None]) -> None:
        self._listeners.append(listener)

    def set_selection(self, anchor: int, head: int | None = None) -> Selection:
        sel = Selection(anchor, anchor if head is None else head).clamp(self.document)
        if sel != self._state.selection:
            self._state = EditorState(self.document, sel)
            self._notify()
        return sel

    # ── commands ─────────────────────────────────────────────────────
    def can_apply(self, name: str, **args) -> bool:
        if name not in COMMANDS and name not in HISTORY_COMMANDS:
            raise KeyError(name)
        if not self.editable:
            return False
        if name == "undo":
            return bool(self._undo)
        if name == "redo":
            return bool(self._redo)
        return COMMANDS[name].run(self._state, **args) is not None

    def is_active(self, name: str, **args) -> bool:
        if name in HISTORY_COMMANDS:
            return False
        return COMMANDS[name].active(self._state, **args)

    def invoke(self, name: str, **args) -> bool:
        if not self.can_apply(name, **args):
            log.debug("ignoring inapplicable command %s %r", name, args)
            return False
        if name == "undo":
            self._redo.append(self._state)
            self._state = self._undo.pop()
            self._notify()
            return True
        if name == "redo":
            self._undo.append(self._state)
            self._state = self._redo.pop()
            self._notify()
            return True
        return self._commit(COMMANDS[name].run(self._state, **args))

    def apply_link(self, url: str, text: str | None = None) -> bool:
        if not self.editable:
            return False
        new = apply_link(self._state, url, text)
        if new is None:
            return False
        return self._commit(new)

    def _commit(self, new: EditorState) -> bool:
        """Every applied command is exactly one history entry, even a no-op."""
        new = replace(new, selection=new.selection.clamp(new.document))
        self._undo.append(self._state)
        self._redo.clear()
        self._state = new
        self._notify()
        return True

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)


################################################################################
# Toolbar
################################################################################
@dataclass(frozen=True)
class ToolbarItem:
    name: str
    label: str
    icon: str
    command: str | None = None  # None → opens the link popover
    args: dict = field(default_factory=dict)


TOOLBAR_ITEMS = (
    ToolbarItem("bold", "Bold", "TextBolder", "toggle_bold"),
    ToolbarItem("italic", "Italic", "TextItalic", "toggle_italic"),
    ToolbarItem("underline", "Underline", "TextUnderline", "toggle_underline"),
    ToolbarItem("h1", "Heading", "TextHOne", "toggle_heading", {"level": 1}),
    ToolbarItem("align-left", "Align left", "TextAlignLeft", "set_alignment", {"value": "left"}),
    ToolbarItem("align-center", "Align center", "TextAlignCenter", "set_alignment", {"value": "center"}),
    ToolbarItem("align-right", "Align right", "TextAlignRight", "set_alignment", {"value": "right"}),
    ToolbarItem("align-justify", "Justify", "TextAlignJustify", "set_alignment", {"value": "justify"}),
    ToolbarItem("link", "Insert link", "Link"),
    ToolbarItem("unlink", "Remove link", "LinkBreak", "unset_link"),
    ToolbarItem("undo", "Undo", "ArrowCounterClockwise", "undo"),
    ToolbarItem("redo", "Redo", "ArrowClockwise", "redo"),
)


class Toolbar:
    def __init__(
        self,
        session: EditorSession,
        popover: "LinkPopover | None" = None,
        items: Iterable[ToolbarItem] = TOOLBAR_ITEMS,
    ):
        self.session = session
        self.popover = popover
        self.items = {item.name: item for item in items}

    def state(self) -> list[dict]:
        out = []
        for item in self.items.values():
            if item.command is None:
                enabled = self.session.editable and self.popover is not None
                active = False
            else:
                enabled = self.session.can_apply(item.command, **item.args)
                active = self.session.is_active(item.command, **item.args)
            out.append(
                {
                    "name": item.name,
                    "label": item.label,
                    "icon": item.icon,
                    "enabled": enabled,
                    "active": active,
                }
            )
        return out

    def invoke(self, name: str) -> bool:
        item = self.items[name]
        if item.command is None:
            if self.popover is None or not self.session.editable:
                return False
            self.popover.open()
            return True
        return self.session.invoke(item.command, **item.args)


################################################################################
# Selection → viewport coordinates
################################################################################
@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class GridLayout:
    """Fixed-pitch layout: one row per block, soft-wrapped every *columns*."""

    char_width: float = 9.0
    line_height: float = 28.0
    padding: float = 16.0
    columns: int | None = None

    def rows(self, block: Block) -> int:
        if not self.columns:
            return 1
        return max(1, ceil(block.length / self.columns))

    def locate(self, document: Document, pos: int) -> Point:
        index, offset = document.resolve(pos)
        row = sum(self.rows(b) for b in document.blocks[:index])
        col = offset
        if self.columns:
            wrapped, col = divmod(offset, self.columns)
            if wrapped and col == 0:
                # caret at a wrap point stays at the end of the previous row
                wrapped, col = wrapped - 1, self.columns
            row += wrapped
        return Point(self.padding + col * self.char_width, self.padding + row * self.line_height)


class SelectionTracker:
    """
    Keeps the caret's viewport position current.

    Recomputes on every session change, scroll, surface move and resize, and
    calls subscribers only when the point actually moves.
    """

    def __init__(
        self,
        session: EditorSession,
        layout: GridLayout | None = None,
        *,
        viewport: tuple[float, float] = (1024.0, 768.0),
        origin: tuple[float, float] = (0.0, 0.0),
    ):
        self.session = session
        self.layout = layout or GridLayout()
        self.viewport = viewport
        self.origin = Point(*origin)
        self._scroll: dict[str, tuple[float, float]] = {}
        self._observers: list[Callable[[Point], None]] = []
        self._point: Point | None = None
        session.add_listener(lambda _session: self.recompute())
        self.recompute()

    def subscribe(self, observer: Callable[[Point], None]) -> Callable[[], None]:
        self._observers.append(observer)
        return lambda: self._observers.remove(observer)

    def scroll(self, x: float, y: float, container: str = "editor") -> Point:
        self._scroll[container] = (x, y)
        return self.recompute()

    def move_surface(self, x: float, y: float) -> Point:
        self.origin = Point(x, y)
        return self.recompute()

    def resize(self, width: float, height: float) -> Point:
        self.viewport = (width, height)
        return self.recompute()

    def recompute(self) -> Point:
        content = self.layout.locate(self.session.document, self.session.selection.anchor)
        sx = sum(x for x, _ in self._scroll.values())
        sy = sum(y for _, y in self._scroll.values())
        point = Point(self.origin.x + content.x - sx, self.origin.y + content.y - sy)
        if point != self._point:
            self._point = point
            for observer in list(self._observers):
                observer(point)
        return point

    def coordinates_at_selection_anchor(self) -> Point:
        return self._point

    def popover_position(
        self, width: float, height: float, *, gap: float = 8.0, padding: float = 8.0
    ) -> dict:
        """Place a box of *width*×*height* above the caret, shifted into view."""
        anchor = self._point
        vw, _ = self.viewport
        x = anchor.x - width / 2
        x = max(padding, min(x, vw - width - padding))
        return {
            "x": x,
            "y": anchor.y - height - gap,
            "arrow_x": min(max(anchor.x - x, 0.0), width),
            "placement": "top",
        }


################################################################################
# Link popover
################################################################################
@dataclass
class LinkPopoverState:
    open: bool = False
    url_field: str = ""
    text_field: str = ""
    use_separate_text: bool = False
    anchor_coordinate: Point = Point(0.0, 0.0)


class LinkPopover:
    """Closed ⇄ Open.  Only `submit` touches the document."""

    def __init__(self, session: EditorSession, tracker: SelectionTracker | None = None):
        self.session = session
        self.tracker = tracker
        self.state: LinkPopoverState | None = None

    @property
    def is_open(self) -> bool:
        return self.state is not None

    def open(self) -> LinkPopoverState:
        state = LinkPopoverState(open=True)
        if self.tracker is not None:
            state.anchor_coordinate = self.tracker.recompute()
        link = active_link(self.session.state)
        if link is not None:
            state.url_field = state.text_field = link.href
            run = adjacent_run(self.session.document, self.session.selection.anchor)
            if run is not None and run.text != link.href:
                state.use_separate_text = True
                state.text_field = run.text
        self.state = state
        return state

    def set_url(self, value: str) -> None:
        self._require_open()
        self.state.url_field = value
        if not self.state.use_separate_text:
            self.state.text_field = value

    def set_text(self, value: str) -> None:
        self._require_open()
        self.state.text_field = value
        if not self.state.use_separate_text:
            self.state.url_field = value

    def set_use_separate_text(self, flag: bool) -> None:
        self._require_open()
        self.state.use_separate_text = bool(flag)
        if not flag:
            self.state.text_field = self.state.url_field

    def dismiss(self) -> None:
        self.state = None

    def submit(self) -> bool:
        if self.state is None:
            return False
        state, self.state = self.state, None
        text = state.text_field if state.use_separate_text else None
        return self.session.apply_link(state.url_field, text)

    def _require_open(self) -> None:
        if self.state is None:
            raise RuntimeError("link popover is closed")
