#!/usr/bin/env python3
"""
A single-file poetry site with a rich-text editor.
"""

import json
import os
import re
import secrets
import sqlite3
import uuid
from collections import OrderedDict, defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from math import isfinite
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlparse

import click
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

from stanza.convert import (
    load_from_plain_text,
    markup_to_plain_text,
    save_to_plain_text,
    to_markup,
)
from stanza.editor import (
    EditorSession,
    GridLayout,
    LinkPopover,
    SelectionTracker,
    Toolbar,
)

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("STANZA_DATABASE", ROOT / "stanza.sqlite3"))

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")

ADMIN_EMAILS = frozenset(
    e.strip().lower()
    for e in os.environ.get("STANZA_ADMIN_EMAILS", "").split(",")
    if e.strip()
)
SITE_NAME = os.environ.get("STANZA_SITE_NAME", "stanza")
THEME_DEFAULT = "#A5BA93"
EDITOR_SESSION_LIMIT = int(os.environ.get("STANZA_EDITOR_SESSION_LIMIT", "64"))
POPOVER_WIDTH, POPOVER_HEIGHT = 280, 140
SCROLL_CONTAINERS = ("editor", "page")
THEME_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
RESERVED_SLUGS = {"new"}

try:
    __version__ = version("stanza")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
    ADMIN_EMAILS=ADMIN_EMAILS,
    SITE_NAME=SITE_NAME,
    EDITOR_SESSION_LIMIT=EDITOR_SESSION_LIMIT,
    EDITOR_CHAR_WIDTH=9.0,
    EDITOR_LINE_HEIGHT=28.0,
    EDITOR_PADDING=16.0,
    EDITOR_COLUMNS=None,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return dt.strftime("%Y.%m.%d")


@app.template_filter("poem")
def poem_filter(content: str | None) -> Markup:
    """Stored plain text → the editor's read-only markup."""
    return Markup(to_markup(load_from_plain_text(content)))


@app.template_filter("excerpt")
def excerpt_filter(content: str | None, lines: int = 4) -> str:
    kept = [ln for ln in (content or "").split("\n") if ln.strip()]
    return "\n".join(kept[:lines])


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id          INTEGER PRIMARY KEY,
            email       TEXT UNIQUE NOT NULL,
            token_hash  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Poems
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS poem (
            id          INTEGER PRIMARY KEY,
            title       TEXT NOT NULL,
            slug        TEXT UNIQUE NOT NULL,
            content     TEXT NOT NULL,
            has_title   INTEGER NOT NULL DEFAULT 1,
            is_draft    INTEGER NOT NULL DEFAULT 0,
            image_link  TEXT NOT NULL DEFAULT '',
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_poem_created ON poem(created_at);

        ------------------------------------------------------------
        -- 3.  Settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key    TEXT PRIMARY KEY,
            value  TEXT
        );
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _stamp() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# Settings
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def site_name() -> str:
    return get_setting("site_name", app.config["SITE_NAME"])


def theme_color() -> str:
    return get_setting("theme_color", THEME_DEFAULT)


###############################################################################
# Poems
###############################################################################
def slugify(title: str | None) -> str:
    """Lower-case, ASCII letters/digits, single hyphens."""
    slug = (title or "").lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip().strip("-") or "poem"


def unique_slug(base: str, *, db, exclude_id: int | None = None) -> str:
    """Append -1, -2 … until *base* is free (ignoring the poem being edited)."""
    slug, counter = base, 1
    while True:
        taken = slug in RESERVED_SLUGS or db.execute(
            "SELECT 1 FROM poem WHERE slug=? AND id IS NOT ?", (slug, exclude_id)
        ).fetchone()
        if not taken:
            return slug
        slug = f"{base}-{counter}"
        counter += 1


def list_poems(*, db, drafts: bool | None = False):
    """Newest first.  drafts=None → everything (admin overview)."""
    if drafts is None:
        return db.execute(
            "SELECT * FROM poem ORDER BY created_at DESC, id DESC"
        ).fetchall()
    return db.execute(
        "SELECT * FROM poem WHERE is_draft=? ORDER BY created_at DESC, id DESC",
        (1 if drafts else 0,),
    ).fetchall()


def poem_by_slug(slug: str, *, db):
    return db.execute("SELECT * FROM poem WHERE slug=?", (slug,)).fetchone()


def next_poem(poem_id: int, *, db, include_drafts: bool = False):
    return db.execute(
        "SELECT * FROM poem WHERE id > ? AND (is_draft=0 OR ?) ORDER BY id LIMIT 1",
        (poem_id, include_drafts),
    ).fetchone()


def prev_poem(poem_id: int, *, db, include_drafts: bool = False):
    return db.execute(
        "SELECT * FROM poem WHERE id < ? AND (is_draft=0 OR ?) ORDER BY id DESC LIMIT 1",
        (poem_id, include_drafts),
    ).fetchone()


def create_poem(
    *,
    title: str,
    content: str,
    has_title: bool = True,
    is_draft: bool = False,
    image_link: str = "",
    slug: str | None = None,
    created_at: str | None = None,
    updated_at: str | None = None,
    db,
):
    slug = unique_slug(slug or slugify(title), db=db)
    now = _stamp()
    cur = db.execute(
        """INSERT INTO poem
               (title, slug, content, has_title, is_draft, image_link,
                created_at, updated_at)
           VALUES (?,?,?,?,?,?,?,?)""",
        (
            title,
            slug,
            content,
            int(has_title),
            int(is_draft),
            image_link,
            created_at or now,
            updated_at or created_at or now,
        ),
    )
    db.commit()
    return db.execute("SELECT * FROM poem WHERE id=?", (cur.lastrowid,)).fetchone()


def update_poem(
    poem_id: int,
    *,
    title: str,
    content: str,
    has_title: bool = True,
    is_draft: bool = False,
    image_link: str = "",
    db,
):
    slug = unique_slug(slugify(title), db=db, exclude_id=poem_id)
    db.execute(
        """UPDATE poem
              SET title=?, slug=?, content=?, has_title=?, is_draft=?,
                  image_link=?, updated_at=?
            WHERE id=?""",
        (
            title,
            slug,
            content,
            int(has_title),
            int(is_draft),
            image_link,
            _stamp(),
            poem_id,
        ),
    )
    db.commit()
    return db.execute("SELECT * FROM poem WHERE id=?", (poem_id,)).fetchone()


def delete_poem(poem_id: int, *, db) -> None:
    db.execute("DELETE FROM poem WHERE id=?", (poem_id,))
    db.commit()


def poem_to_json(row) -> dict:
    """Export shape (camelCase keys, as the old site wrote them)."""
    return {
        "title": row["title"],
        "slug": row["slug"],
        "content": row["content"],
        "imageLink": row["image_link"],
        "hasTitle": bool(row["has_title"]),
        "isDraft": bool(row["is_draft"]),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def import_poems(paths, *, db) -> list[str]:
    """Insert exported poems oldest-first; returns the slugs they got."""
    poems = [json.loads(Path(p).read_text(encoding="utf-8")) for p in paths]
    poems.sort(key=lambda p: p.get("createdAt") or "")
    slugs = []
    for p in poems:
        row = create_poem(
            title=p.get("title", ""),
            content=p.get("content", ""),
            has_title=p.get("hasTitle", True),
            is_draft=p.get("isDraft", False),
            image_link=p.get("imageLink") or "",
            slug=p.get("slug") or None,
            created_at=p.get("createdAt"),
            updated_at=p.get("updatedAt"),
            db=db,
        )
        slugs.append(row["slug"])
    return slugs


###############################################################################
# CLI – users, tokens, import/export
###############################################################################
def _issue_token(user_id: int) -> tuple[str, str]:
    handle = secrets.token_urlsafe(TOKEN_LEN)
    return signer.sign(f"{user_id}.{handle}").decode(), hash_token(handle)


def _create_user(db, *, email: str) -> str:
    cur = db.execute(
        "INSERT INTO user (email, token_hash) VALUES (?,?)", (email.lower(), "")
    )
    token, token_hash = _issue_token(cur.lastrowid)
    db.execute("UPDATE user SET token_hash=? WHERE id=?", (token_hash, cur.lastrowid))
    db.commit()
    return token


def _rotate_token(db, *, email: str) -> str:
    """Generate + store a *new* one-time token, return it for display."""
    row = db.execute("SELECT id FROM user WHERE email=?", (email.lower(),)).fetchone()
    if row is None:
        raise click.ClickException(f"no user with email {email}")
    token, token_hash = _issue_token(row["id"])
    db.execute("UPDATE user SET token_hash=? WHERE id=?", (token_hash, row["id"]))
    db.commit()
    return token


@app.cli.command("init")
@click.option("--email", prompt=True, help="Account e-mail (admin if allow-listed)")
def cli_init(email: str):
    """Initialise DB *and* create an account."""
    init_db()
    db = get_db()
    token = _create_user(db, email=email.strip())

    click.secho("\n✅  Account created.", fg="green")
    if email.strip().lower() not in app.config["ADMIN_EMAILS"]:
        click.secho("⚠️   Not in STANZA_ADMIN_EMAILS – it cannot edit.", fg="yellow")
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("token")
@click.option("--email", prompt=True)
def cli_token(email: str):
    """Rotate an account’s one-time login token."""
    token = _rotate_token(get_db(), email=email.strip())

    click.secho("\n🔑  Fresh login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("site-name")
@click.argument("name")
def cli_site_name(name: str):
    """Set the title shown on every page."""
    init_db()
    set_setting("site_name", name.strip())
    click.secho(f"✅  Site name set to {name.strip()!r}.", fg="green")


@app.cli.command("theme-color")
@click.argument("color")
def cli_theme_color(color: str):
    """Set the accent colour (#RRGGBB)."""
    if not THEME_RE.match(color):
        raise click.BadParameter("expected #RRGGBB", param_hint="COLOR")
    init_db()
    set_setting("theme_color", color)
    click.secho(f"✅  Theme colour set to {color}.", fg="green")


@app.cli.command("import-poems")
@click.argument(
    "directory", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
def cli_import_poems(directory: Path):
    """Import every *.json poem export in DIRECTORY."""
    init_db()
    slugs = import_poems(sorted(directory.glob("*.json")), db=get_db())
    for slug in slugs:
        click.echo(f"imported {slug}")
    click.secho(f"\n✅  {len(slugs)} poems imported.", fg="green")


@app.cli.command("export-poems")
@click.argument("directory", type=click.Path(file_okay=False, path_type=Path))
def cli_export_poems(directory: Path):
    """Write one JSON file per poem into DIRECTORY."""
    directory.mkdir(parents=True, exist_ok=True)
    rows = list_poems(db=get_db(), drafts=None)
    for row in rows:
        (directory / f"{row['slug']}.json").write_text(
            json.dumps(poem_to_json(row), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
    click.secho(f"✅  {len(rows)} poems exported to {directory}", fg="green")


###############################################################################
# Authentication
###############################################################################
def validate_token(token: str, max_age: int = 60) -> str | None:
    """
    • Unsigned age-check in *one* step (`max_age` seconds).
    • Compare the handle against the hashed copy of that user’s token.
    Returns the account e-mail or None.
    """
    try:
        payload = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return None  # too old ➜ invalid
    except BadSignature:
        return None  # forged ➜ invalid

    user_id, _, handle = payload.partition(".")
    if not user_id.isdigit():
        return None
    row = get_db().execute(
        "SELECT email, token_hash FROM user WHERE id=?", (int(user_id),)
    ).fetchone()
    if row and row["token_hash"] and verify_token(row["token_hash"], handle):
        return row["email"]
    return None


def current_email() -> str | None:
    return session.get("email") if session.get("logged_in") else None


def is_admin(email: str | None) -> bool:
    """Allow-list check; authorisation lives here and nowhere else."""
    if not email:
        return False
    return email.lower() in app.config["ADMIN_EMAILS"]


def admin_required() -> None:
    if not is_admin(current_email()):
        abort(403)


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    get_setting=get_setting,
    theme_color=theme_color,
    current_email=current_email,
    is_admin=lambda: is_admin(current_email()),
    version=__version__,
)


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ no logged-in flag yet ⇒ allow (covers /login POST)
    if not session.get("logged_in"):
        return

    # ➌ for authenticated users we REQUIRE a valid token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Editor sessions
###############################################################################
EDITORS: "OrderedDict[str, dict]" = OrderedDict()


def open_editor(content: str | None, *, owner: str | None) -> str:
    """Seed an editing surface from stored plain text; returns its id."""
    ed = EditorSession(load_from_plain_text(content))
    layout = GridLayout(
        char_width=app.config["EDITOR_CHAR_WIDTH"],
        line_height=app.config["EDITOR_LINE_HEIGHT"],
        padding=app.config["EDITOR_PADDING"],
        columns=app.config["EDITOR_COLUMNS"],
    )
    tracker = SelectionTracker(ed, layout)
    popover = LinkPopover(ed, tracker)
    sid = uuid.uuid4().hex
    EDITORS[sid] = {
        "session": ed,
        "tracker": tracker,
        "popover": popover,
        "toolbar": Toolbar(ed, popover),
        "owner": owner,
    }
    # oldest surfaces go first; nothing is autosaved
    while len(EDITORS) > app.config["EDITOR_SESSION_LIMIT"]:
        EDITORS.popitem(last=False)
    return sid


def get_editor(sid: str | None) -> dict:
    ed = EDITORS.get(sid or "")
    if ed is None or ed["owner"] != current_email():
        abort(404)
    EDITORS.move_to_end(sid)
    return ed


def drop_editor(sid: str) -> None:
    EDITORS.pop(sid, None)


def editor_payload(ed: dict) -> dict:
    s, tracker, popover = ed["session"], ed["tracker"], ed["popover"]
    caret = tracker.coordinates_at_selection_anchor()
    pop = None
    if popover.is_open:
        st = popover.state
        pop = {
            "url": st.url_field,
            "text": st.text_field,
            "use_text": st.use_separate_text,
            "anchor": {"x": st.anchor_coordinate.x, "y": st.anchor_coordinate.y},
            "position": tracker.popover_position(POPOVER_WIDTH, POPOVER_HEIGHT),
        }
    return {
        "html": to_markup(s.document),
        "selection": {"anchor": s.selection.anchor, "head": s.selection.head},
        "caret": {"x": caret.x, "y": caret.y},
        "toolbar": ed["toolbar"].state(),
        "popover": pop,
    }


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        abort(400)
    return data


def _number(data: dict, key: str, default=None):
    value = data.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        abort(400)
    if not isfinite(value):
        abort(400)  # NaN / Infinity slip through the JSON parser
    return value


def _sync_selection(ed: dict, data: dict) -> None:
    """Most calls carry the browser’s selection; apply it first."""
    if "anchor" not in data:
        return
    anchor = _number(data, "anchor")
    if anchor is None:
        abort(400)
    head = _number(data, "head", anchor)
    ed["session"].set_selection(int(anchor), int(head))


###############################################################################
# Templates + Views
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'stanza' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{font-size:1.8rem;line-height:1.618;max-width:42em;margin:auto;color:#c9c9c9;background-color:#222222;padding:13px}
h1,h2,h3{line-height:1.1;font-weight:700;margin-top:3rem;margin-bottom:1.5rem}
p{margin-top:0;margin-bottom:1rem}
a{color:#ffffff;text-decoration:underline;text-decoration-color:transparent;text-underline-offset:.18em}
a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}
img{height:auto;max-width:100%}
textarea,select,input{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background-color:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box}
button{display:inline-block;padding:5px 10px;background-color:#ffffff;color:#222222;border:1px solid #ffffff;border-radius:1px;cursor:pointer}
button[disabled]{cursor:default;opacity:.5}
label{display:block;margin-bottom:.5rem;font-weight:600}
nav{display:flex;gap:1.25rem;font-size:.9em;margin-bottom:1rem}
.poem-card{border-bottom:1px solid #444;padding:1.5rem 0}
.poem-card .excerpt{white-space:pre-line;color:#aaa}
.pill{display:inline-block;padding:.1em .6em;background:#444;color:#fff;border-radius:1em;font-size:.7em;vertical-align:middle}
.writing-input{width:100%;background:#2b2b2b;border:1px solid #555;border-radius:8px}
.toolbar{display:flex;flex-wrap:wrap;gap:.4rem;padding:.6rem;background:#2b2b2b;border:1px solid #555;border-bottom:0;border-radius:8px 8px 0 0}
.toolbar button{background:#333;color:#fff;border:1px solid #666;font-size:.8em}
.toolbar button.active{background:{{ theme_color() }};color:#000}
.editor-surface{min-height:24rem;max-height:60vh;overflow:auto;padding:16px;background:#1c1c1c;border:1px solid #555;border-radius:0 0 8px 8px;font-family:ui-monospace,Menlo,Consolas,monospace;font-size:15px;line-height:28px;white-space:pre-wrap;outline:0}
.editor-surface p,.editor-surface h1{margin:0;font-size:15px;line-height:28px}
.editor-surface a,.poem a{color:#7fb0ff;text-decoration:underline}
#link-popover{position:fixed;z-index:20;width:280px;padding:.6rem;background:#0f172a;border:1px solid #555;border-radius:8px;font-size:.8em}
#link-popover input[type=text]{width:100%;margin-bottom:.4rem}
#link-popover .arrow{position:absolute;bottom:-6px;width:12px;height:12px;background:#0f172a;transform:rotate(45deg)}
</style>
<body>
<div class="container" style="max-width:60rem;margin:3rem auto;">
    <h1 id="page-top" style="margin:0 0 1rem 0;font-size:2.25em">
        <a href="{{ url_for('index') }}" style="color:{{ theme_color() }};text-decoration:none;">{{ title or 'stanza' }}</a>
    </h1>
    <nav aria-label="Primary">
        <a href="{{ url_for('index') }}">Poems</a>
        {% if is_admin() %}
            <a href="{{ url_for('drafts') }}">Drafts</a>
            <a href="{{ url_for('new_poem') }}">New poem</a>
        {% endif %}
        <span style="flex:1"></span>
        {% if current_email() %}
            <span style="color:#888">{{ current_email() }}</span>
            <a href="{{ url_for('logout') }}">Logout</a>
        {% else %}
            <a href="{{ url_for('login') }}">Login</a>
        {% endif %}
    </nav>
    {% with msgs = get_flashed_messages() %}
    {% if msgs %}
        <div role="status" aria-live="polite" style="border:2px solid #b33;background:#331414;color:#f9c0c0;padding:.75rem 1rem;border-radius:.4rem;margin-bottom:1rem;">
        {{ msgs|join('<br>') }}
        </div>
    {% endif %}
    {% endwith %}
    <main id="main-content" role="main" tabindex="-1">
"""

TEMPL_EPILOG = """
    </main>
    <footer style="margin-top:1.875em;padding-top:1.5em;font-size:.8em;color:#888;border-top:1px solid #444;">
        Built with stanza <span style="color:#aaa">v{{ version }}</span>
    </footer>
</div>
</body>
</html>
"""


###############################################################################
# Login
###############################################################################
@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    token = request.form.get("token", "").strip()

    if request.method == "POST" and token:
        email = validate_token(token)
        if email:
            # ── token matched → burn it right away ─────────────────
            db = get_db()
            db.execute(
                "UPDATE user SET token_hash=? WHERE email=?",
                (hash_token(secrets.token_hex(16)), email),
            )
            db.commit()

            session.clear()
            session.permanent = True
            session["logged_in"] = True
            session["email"] = email
            session["csrf"] = secrets.token_hex(16)
            return redirect(url_for("index"))
        flash("That token is invalid or has expired.")

    return render_template_string(TEMPL_LOGIN, title=site_name())


TEMPL_LOGIN = wrap("""
{% block body %}
<hr>
<form method="post">
  <label for="token">Login token</label>
  <input id="token" name="token" type="password" autocomplete="current-password"
         class="writing-input">
  <button type="submit">Sign in</button>
</form>
{% endblock %}
""")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


###############################################################################
# Poems – reading
###############################################################################
@app.route("/")
def index():
    poems = list_poems(db=get_db(), drafts=False)
    return render_template_string(
        TEMPL_INDEX, poems=poems, heading=None, title=site_name()
    )


@app.route("/drafts")
def drafts():
    admin_required()
    poems = list_poems(db=get_db(), drafts=True)
    return render_template_string(
        TEMPL_INDEX, poems=poems, heading="Drafts", title=site_name()
    )


TEMPL_INDEX = wrap("""
{% block body %}
{% if heading %}<h2>{{ heading }}</h2>{% endif %}
{% for p in poems %}
  <article class="poem-card">
    {% if p['image_link'] %}
      <img src="{{ p['image_link'] }}" alt="" loading="lazy">
    {% endif %}
    {% if p['has_title'] %}<h2 style="margin-top:1rem">{{ p['title'] }}</h2>{% endif %}
    {% if p['is_draft'] %}<span class="pill">draft</span>{% endif %}
    <div class="excerpt">{{ p['content']|excerpt }}</div>
    <a href="{{ url_for('poem_detail', slug=p['slug']) }}">Read more…</a>
  </article>
{% else %}
  <p>Nothing here yet.</p>
{% endfor %}
{% endblock %}
""")


@app.route("/poem/<slug>")
def poem_detail(slug):
    db = get_db()
    row = poem_by_slug(slug, db=db)
    admin = is_admin(current_email())
    if not row or (row["is_draft"] and not admin):
        abort(404)
    return render_template_string(
        TEMPL_POEM,
        p=row,
        prev=prev_poem(row["id"], db=db, include_drafts=admin),
        next=next_poem(row["id"], db=db, include_drafts=admin),
        title=site_name(),
    )


TEMPL_POEM = wrap("""
{% block body %}
<small><a href="{{ url_for('index') }}">Home</a> / {{ p['title'] }}</small>
<article>
  {% if p['image_link'] %}<img src="{{ p['image_link'] }}" alt="">{% endif %}
  {% if p['has_title'] %}<h2>{{ p['title'] }}</h2>{% endif %}
  <div class="poem">{{ p['content']|poem }}</div>
  {% if p['is_draft'] %}<span class="pill">draft</span>{% endif %}
  <small style="color:#888">{{ p['created_at']|ts }}</small>
</article>
{% if is_admin() %}
  <p>
    <a href="{{ url_for('edit_poem', slug=p['slug']) }}">Edit</a> ·
    <a href="{{ url_for('delete_poem_view', slug=p['slug']) }}">Delete</a>
  </p>
{% endif %}
<nav aria-label="Poems">
  {% if prev %}<a href="{{ url_for('poem_detail', slug=prev['slug']) }}">← {{ prev['title'] }}</a>{% endif %}
  <span style="flex:1"></span>
  {% if next %}<a href="{{ url_for('poem_detail', slug=next['slug']) }}">{{ next['title'] }} →</a>{% endif %}
</nav>
{% endblock %}
""")


###############################################################################
# Poems – writing
###############################################################################
def _poem_form() -> dict:
    return {
        "title": request.form.get("title", "").strip(),
        "has_title": request.form.get("has_title") == "1",
        "is_draft": request.form.get("is_draft") == "1",
        "image_link": request.form.get("image_link", "").strip(),
    }


def _form_errors(form: dict, content: str) -> list[str]:
    errors = []
    if not content.strip():
        errors.append("Please add some content to your poem.")
    if not form["title"]:
        errors.append("Please add a title to your poem.")
    link = form["image_link"]
    if link and urlparse(link).scheme not in ("http", "https"):
        errors.append("The image link must be an http(s) URL.")
    return errors


def _render_editor(form: dict, sid: str, *, heading: str):
    return render_template_string(
        TEMPL_EDIT_POEM,
        f=form,
        sid=sid,
        ed=editor_payload(get_editor(sid)),
        heading=heading,
        title=site_name(),
    )


@app.route("/poem/new", methods=["GET", "POST"])
def new_poem():
    admin_required()
    if request.method == "POST":
        sid = request.form.get("sid", "")
        ed = get_editor(sid)
        form = _poem_form()
        content = save_to_plain_text(ed["session"].document)
        errors = _form_errors(form, content)
        if not errors:
            try:
                row = create_poem(content=content, db=get_db(), **form)
            except sqlite3.Error:
                app.logger.exception("creating poem failed")
                errors = ["Error creating poem. Please try again."]
            else:
                drop_editor(sid)
                return redirect(url_for("poem_detail", slug=row["slug"]))
        for err in errors:
            flash(err)
        return _render_editor(form, sid, heading="New poem")

    sid = open_editor("", owner=current_email())
    form = {"title": "", "has_title": True, "is_draft": False, "image_link": ""}
    return _render_editor(form, sid, heading="New poem")


@app.route("/poem/<slug>/edit", methods=["GET", "POST"])
def edit_poem(slug):
    admin_required()
    db = get_db()
    row = poem_by_slug(slug, db=db)
    if not row:
        abort(404)

    if request.method == "POST":
        sid = request.form.get("sid", "")
        ed = get_editor(sid)
        form = _poem_form()
        content = save_to_plain_text(ed["session"].document)
        errors = _form_errors(form, content)
        if not errors:
            try:
                row = update_poem(row["id"], content=content, db=db, **form)
            except sqlite3.Error:
                app.logger.exception("updating poem %s failed", row["id"])
                errors = ["Error updating poem. Please try again."]
            else:
                drop_editor(sid)
                return redirect(url_for("poem_detail", slug=row["slug"]))
        for err in errors:
            flash(err)
        return _render_editor(form, sid, heading=f"Edit: {row['title']}")

    sid = open_editor(row["content"], owner=current_email())
    form = {
        "title": row["title"],
        "has_title": bool(row["has_title"]),
        "is_draft": bool(row["is_draft"]),
        "image_link": row["image_link"] or "",
    }
    return _render_editor(form, sid, heading=f"Edit: {row['title']}")


TEMPL_EDIT_POEM = wrap("""
{% block body %}
<hr>
<h2>{{ heading }}</h2>
<form method="post" id="poem-form">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="sid" value="{{ sid }}">

  <label for="title">Poem title</label>
  <input id="title" name="title" class="writing-input" value="{{ f['title'] }}"
         placeholder="Enter your poem title here…">

  <div id="editor" data-sid="{{ sid }}">
    <div class="toolbar" role="toolbar">
      {% for t in ed['toolbar'] %}
        <button type="button" data-tool="{{ t['name'] }}" title="{{ t['label'] }}"
                class="{{ 'active' if t['active'] }}" {{ 'disabled' if not t['enabled'] }}>
          {{ t['label'] }}
        </button>
      {% endfor %}
    </div>
    <div class="editor-surface" contenteditable="true" spellcheck="true">{{ ed['html']|safe }}</div>
  </div>
  <div id="link-popover" hidden>
    <input type="text" name="link-url" placeholder="URL" autocomplete="off">
    <input type="text" name="link-text" placeholder="Text" autocomplete="off" disabled>
    <label style="display:inline"><input type="checkbox" name="link-use-text"> separate text</label>
    <button type="button" data-link="submit" style="float:right">Go</button>
    <div class="arrow"></div>
  </div>

  <label><input type="checkbox" name="has_title" value="1" {{ 'checked' if f['has_title'] }}> Show title</label>
  <label><input type="checkbox" name="is_draft" value="1" {{ 'checked' if f['is_draft'] }}> Save as draft</label>
  <label for="image_link">Image link</label>
  <input id="image_link" name="image_link" class="writing-input" value="{{ f['image_link'] }}">
  <button>Save poem</button>
</form>
<script>
(() => {
  const root = document.getElementById('editor');
  const surface = root.querySelector('.editor-surface');
  const pop = document.getElementById('link-popover');
  const csrf = document.querySelector('input[name="csrf"]').value;
  const url = pop.querySelector('[name="link-url"]');
  const text = pop.querySelector('[name="link-text"]');
  const useText = pop.querySelector('[name="link-use-text"]');

  // DOM selection ⇄ flat offsets (blocks joined by one separator)
  const offsetOf = (node, off) => {
    let pos = 0;
    for (const block of surface.children) {
      if (block === node || block.contains(node)) {
        const r = document.createRange();
        r.setStart(block, 0);
        r.setEnd(node, off);
        return pos + r.toString().length;
      }
      pos += block.textContent.length + 1;
    }
    return Math.max(0, pos - 1);
  };
  const place = (pos) => {
    for (const block of surface.children) {
      const len = block.textContent.length;
      if (pos <= len) {
        const walker = document.createTreeWalker(block, NodeFilter.SHOW_TEXT);
        let t;
        while ((t = walker.nextNode())) {
          if (pos <= t.length) return [t, pos];
          pos -= t.length;
        }
        return [block, 0];
      }
      pos -= len + 1;
    }
    return [surface, 0];
  };
  const selection = () => {
    const s = window.getSelection();
    if (!s.rangeCount || !surface.contains(s.anchorNode)) return {};
    return {anchor: offsetOf(s.anchorNode, s.anchorOffset),
            head: offsetOf(s.focusNode, s.focusOffset)};
  };

  const render = (st) => {
    surface.innerHTML = st.html;
    const [an, ao] = place(st.selection.anchor);
    const [hn, ho] = place(st.selection.head);
    window.getSelection().setBaseAndExtent(an, ao, hn, ho);
    for (const t of st.toolbar) {
      const btn = root.querySelector(`[data-tool="${t.name}"]`);
      btn.disabled = !t.enabled;
      btn.classList.toggle('active', t.active);
    }
    pop.hidden = !st.popover;
    if (st.popover) {
      url.value = st.popover.url;
      text.value = st.popover.text;
      useText.checked = st.popover.use_text;
      text.disabled = !st.popover.use_text;
      pop.style.left = `${st.popover.position.x}px`;
      pop.style.top = `${st.popover.position.y}px`;
      pop.querySelector('.arrow').style.left = `${st.popover.position.arrow_x - 6}px`;
    }
  };
  const post = async (path, body) => {
    const res = await fetch(`/editor/${root.dataset.sid}${path}`, {
      method: 'POST',
      headers: {'Content-Type': 'application/json', 'X-CSRFToken': csrf},
      body: JSON.stringify(body || {}),
    });
    if (res.ok) render(await res.json());
  };

  surface.addEventListener('beforeinput', (e) => {
    e.preventDefault();
    const sel = selection();
    if (e.inputType === 'insertText' || e.inputType === 'insertReplacementText') {
      post('/type', Object.assign(sel, {text: e.data || ''}));
    } else if (e.inputType === 'insertParagraph') {
      post('/key', Object.assign(sel, {key: 'Enter'}));
    } else if (e.inputType.startsWith('delete')) {
      post('/key', Object.assign(sel, {key: 'Backspace'}));
    } else if (e.inputType === 'insertFromPaste' && e.dataTransfer) {
      post('/paste', Object.assign(sel, {html: e.dataTransfer.getData('text/html'),
                                        text: e.dataTransfer.getData('text/plain')}));
    }
  });
  const syncSel = () => { const sel = selection(); if ('anchor' in sel) post('/selection', sel); };
  surface.addEventListener('mouseup', syncSel);
  surface.addEventListener('keyup', (e) => { if (e.key.startsWith('Arrow')) syncSel(); });

  let queued = false;
  const viewport = () => {
    if (queued) return;
    queued = true;
    requestAnimationFrame(() => {
      queued = false;
      const r = surface.getBoundingClientRect();
      post('/viewport', {origin_x: r.left, origin_y: r.top,
                         scroll_x: surface.scrollLeft, scroll_y: surface.scrollTop,
                         width: window.innerWidth, height: window.innerHeight});
    });
  };
  surface.addEventListener('scroll', viewport);
  window.addEventListener('scroll', viewport, {passive: true});
  window.addEventListener('resize', viewport);
  viewport();

  root.querySelectorAll('[data-tool]').forEach((btn) => {
    btn.addEventListener('click', () => post(`/toolbar/${btn.dataset.tool}`, selection()));
  });
  const fields = () => ({url: url.value, text: text.value, use_text: useText.checked});
  url.addEventListener('change', () => post('/link/fields', fields()));
  text.addEventListener('change', () => post('/link/fields', fields()));
  useText.addEventListener('change', () => post('/link/fields', fields()));
  pop.querySelector('[data-link="submit"]').addEventListener('click', () => post('/link/submit', fields()));
  document.addEventListener('keydown', (e) => { if (e.key === 'Escape' && !pop.hidden) post('/link/dismiss'); });
  document.addEventListener('mousedown', (e) => {
    if (!pop.hidden && !pop.contains(e.target) && !root.contains(e.target)) post('/link/dismiss');
  });
})();
</script>
{% endblock %}
""")


@app.route("/poem/<slug>/delete", methods=["GET", "POST"])
def delete_poem_view(slug):
    admin_required()
    db = get_db()
    row = poem_by_slug(slug, db=db)
    if not row:
        abort(404)

    if request.method == "POST":
        delete_poem(row["id"], db=db)
        return redirect(url_for("index"))

    return render_template_string(TEMPL_DELETE_POEM, p=row, title=site_name())


TEMPL_DELETE_POEM = wrap("""
{% block body %}
    <hr>
    <h2>Delete poem?</h2>
    <article style="border-left:3px solid #c00; padding-left:1rem;">
        <h3>{{ p['title'] }}</h3>
        <div class="poem">{{ p['content']|poem }}</div>
    </article>
    <form method="post" style="margin-top:1rem;">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button style="background:#c00; color:#fff;">Yes – delete it</button>
        <a href="{{ url_for('poem_detail', slug=p['slug']) }}" style="margin-left:1rem;">Cancel</a>
    </form>
{% endblock %}
""")


###############################################################################
# Editor API (JSON)
###############################################################################
@app.route("/editor/<sid>")
def editor_state(sid):
    admin_required()
    return jsonify(editor_payload(get_editor(sid)))


@app.route("/editor/<sid>/selection", methods=["POST"])
def editor_selection(sid):
    admin_required()
    ed = get_editor(sid)
    _sync_selection(ed, _payload())
    return jsonify(editor_payload(ed))


@app.route("/editor/<sid>/viewport", methods=["POST"])
def editor_viewport(sid):
    admin_required()
    ed = get_editor(sid)
    data = _payload()
    tracker = ed["tracker"]
    if "origin_x" in data or "origin_y" in data:
        tracker.move_surface(_number(data, "origin_x", 0), _number(data, "origin_y", 0))
    if "width" in data or "height" in data:
        tracker.resize(_number(data, "width", 0), _number(data, "height", 0))
    container = str(data.get("container") or "editor")
    if container not in SCROLL_CONTAINERS:
        abort(400)
    tracker.scroll(_number(data, "scroll_x", 0), _number(data, "scroll_y", 0), container)
    return jsonify(editor_payload(ed))


@app.route("/editor/<sid>/toolbar/<name>", methods=["POST"])
def editor_toolbar(sid, name):
    admin_required()
    ed = get_editor(sid)
    if name not in ed["toolbar"].items:
        abort(404)
    _sync_selection(ed, _payload())
    ed["toolbar"].invoke(name)
    return jsonify(editor_payload(ed))


@app.route("/editor/<sid>/type", methods=["POST"])
def editor_type(sid):
    admin_required()
    ed = get_editor(sid)
    data = _payload()
    _sync_selection(ed, data)
    ed["session"].invoke("insert_text", text=str(data.get("text") or ""))
    return jsonify(editor_payload(ed))


@app.route("/editor/<sid>/paste", methods=["POST"])
def editor_paste(sid):
    """Clipboard HTML is flattened to its lines; formatting is not carried over."""
    admin_required()
    ed = get_editor(sid)
    data = _payload()
    _sync_selection(ed, data)
    html = data.get("html")
    if html:
        text = markup_to_plain_text(str(html))
    else:
        text = str(data.get("text") or "")
    ed["session"].invoke("insert_text", text=text)
    return jsonify(editor_payload(ed))


KEY_COMMANDS = {"Backspace": "delete_backward", "Enter": "split_block"}


@app.route("/editor/<sid>/key", methods=["POST"])
def editor_key(sid):
    admin_required()
    ed = get_editor(sid)
    data = _payload()
    command = KEY_COMMANDS.get(data.get("key"))
    if command is None:
        abort(400)
    _sync_selection(ed, data)
    ed["session"].invoke(command)
    return jsonify(editor_payload(ed))


@app.route("/editor/<sid>/link/<action>", methods=["POST"])
def editor_link(sid, action):
    admin_required()
    ed = get_editor(sid)
    popover = ed["popover"]
    data = _payload()

    if action == "open":
        _sync_selection(ed, data)
        popover.open()
    elif action in ("fields", "submit"):
        if not popover.is_open:
            abort(409)
        popover.set_use_separate_text(bool(data.get("use_text")))
        if "url" in data:
            popover.set_url(str(data["url"]))
        if popover.state.use_separate_text and "text" in data:
            popover.set_text(str(data["text"]))
        if action == "submit":
            popover.submit()
    elif action == "dismiss":
        popover.dismiss()
    else:
        abort(404)
    return jsonify(editor_payload(ed))


###############################################################################
# Errors
###############################################################################
@app.errorhandler(403)
def forbidden(exc):
    return render_template_string(TEMPL_403, title=site_name()), 403


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title=site_name()), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.  With debug on, Flask bypasses this
    handler and the Werkzeug debugger shows the traceback instead.
    """
    return render_template_string(TEMPL_500, title=site_name()), 500


TEMPL_403 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Access denied</h2>
  {% if current_email() %}
    <p>You must be an administrator to do that.</p>
  {% else %}
    <p>Please <a href="{{ url_for('login') }}" style="color:{{ theme_color() }};">sign in</a> first.</p>
  {% endif %}
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}" style="color:{{ theme_color() }};">Back to the front page</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Our fault, not yours.  Please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
