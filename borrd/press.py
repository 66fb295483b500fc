#!/usr/bin/env python3
"""
A single-file personal publishing tool.

Markdown pages live under per-user slugs, folders only organise the
dashboard, media goes to object storage and every active page is public
at ``/<slug>``.
"""

import io
import json
import math
import mimetypes
import os
import re
import secrets
import sqlite3
import uuid
import zipfile
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict, Iterable

import boto3
import click
import markdown
import yaml
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    g,
    render_template_string,
    request,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markdown.extensions import Extension
from markdown.preprocessors import Preprocessor
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_password
from werkzeug.security import generate_password_hash as hash_password
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_setting(key: str, default: str = "") -> str:
    """Process environment first, then the .env file beside the package."""
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


DB_FILE = Path(env_setting("BORRD_DATABASE", str(ROOT / "borrd.sqlite3")))

SECRET_KEY = env_setting("BORRD_SECRET_KEY")
if not SECRET_KEY:
    if SECRET_FILE.exists():
        SECRET_KEY = SECRET_FILE.read_text().strip()
    else:
        SECRET_KEY = secrets.token_hex(32)
        SECRET_FILE.write_text(SECRET_KEY)
signer = TimestampSigner(SECRET_KEY, salt="bearer-token")

TOKEN_MAX_AGE = int(env_setting("BORRD_TOKEN_MAX_AGE", str(7 * 24 * 3600)))
LOG_LEVEL = env_setting("BORRD_LOG_LEVEL", "INFO").upper()

SLUG_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
FOLDER_NAME_RE = re.compile(r"^[A-Za-z0-9_ -]+$")
FOLDER_NAME_MAX = 100
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_MIN = 6

STORAGE_ENV_KEYS = (
    "STORAGE_ENDPOINT",
    "STORAGE_ACCESS_KEY_ID",
    "STORAGE_SECRET_ACCESS_KEY",
    "STORAGE_REGION",
    "STORAGE_PUBLIC_BASE",
    "STORAGE_BUCKET_PREFIX",
)
STORAGE_REQUIRED_KEYS = (
    "STORAGE_ACCESS_KEY_ID",
    "STORAGE_SECRET_ACCESS_KEY",
)

MIB = 1024 * 1024
VIDEO_MAX_SECONDS = 30
MEDIA_RULES = {
    "image": {
        "bucket": "images",
        "max_bytes": 5 * MIB,
        "mimes": None,  # any image/*
        "label": "Image",
    },
    "audio": {
        "bucket": "audio",
        "max_bytes": 10 * MIB,
        "mimes": {"audio/mp3", "audio/mpeg", "audio/wav"},
        "label": "Audio",
    },
    "video": {
        "bucket": "videos",
        "max_bytes": 10 * MIB,
        # HEIC/HEIF arrive from phones as short clips
        "mimes": {"video/mp4", "video/quicktime", "image/heic", "image/heif"},
        "label": "Video",
    },
}
# must stay above the largest MEDIA_RULES limit
UPLOAD_MAX_BYTES = 12 * MIB

FONT_STACKS = {
    "serif": 'Georgia,Cambria,"Times New Roman",Times,serif',
    "sans": '-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif',
    "mono": 'ui-monospace,SFMono-Regular,Menlo,Consolas,"Liberation Mono",monospace',
}
HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.S | re.M)
_CODE_FENCE_RE = re.compile(r"^\s*(`{3,}|~{3,})")
_MEDIA_LINE_RE = re.compile(r"^!(audio|video)\((\S+)\)$")

try:
    __version__ = version("borrd")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# Errors
################################################################################
class BorrdError(Exception):
    """Base for every failure that is reported to the caller as JSON."""

    status = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class InvalidInput(BorrdError):
    status = 400


class ConflictError(InvalidInput):
    """Uniqueness violation; the caller picks another name or retries."""


class AuthError(BorrdError):
    status = 401


class NotFoundError(BorrdError):
    status = 404


class UploadTooLarge(BorrdError):
    status = 413


class UnsupportedMedia(BorrdError):
    status = 415


class StorageFailed(BorrdError):
    status = 502


class StorageUnavailable(BorrdError):
    status = 503


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    TOKEN_MAX_AGE=TOKEN_MAX_AGE,
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES,
)
app.logger.setLevel(LOG_LEVEL)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

MD_EXTENSION_CONFIGS = {
    "pymdownx.highlight": {
        "guess_lang": True,
        "noclasses": True,
        "pygments_style": "friendly",
    },
}
BASE_MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.superfences",
    "pymdownx.highlight",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]


def _is_urlish(val: str) -> bool:
    val = val.strip().lower()
    return val.startswith(("http://", "https://", "//", "/"))


def media_embed_html(kind: str, url: str) -> str:
    src = escape(url, quote=True)
    if kind == "audio":
        return (
            f'<figure class="media media-audio">'
            f'<audio controls preload="metadata" src="{src}"></audio></figure>'
        )
    return (
        f'<figure class="media media-video">'
        f'<video controls playsinline preload="metadata" src="{src}"></video></figure>'
    )


class MediaEmbedPreprocessor(Preprocessor):
    """Turn a line that is exactly ``!audio(url)`` / ``!video(url)`` into a player."""

    def run(self, lines: list[str]) -> list[str]:
        out, in_code, fence = [], False, ""
        for ln in lines:
            m_f = _CODE_FENCE_RE.match(ln)
            if m_f:
                tok = m_f.group(1)
                if not in_code:
                    in_code, fence = True, tok
                elif tok == fence:
                    in_code, fence = False, ""
                out.append(ln)
                continue

            m = None if in_code else _MEDIA_LINE_RE.match(ln.strip())
            if not m or not _is_urlish(m.group(2)):
                out.append(ln)
                continue

            placeholder = self.md.htmlStash.store(media_embed_html(m.group(1), m.group(2)))
            out.extend(["", placeholder, ""])
        return out


class MediaEmbedExtension(Extension):
    def extendMarkdown(self, md_inst):
        md_inst.preprocessors.register(
            MediaEmbedPreprocessor(md_inst), "media_embed", 27
        )


def _markdown_renderer():
    return markdown.Markdown(
        extensions=[*BASE_MD_EXTENSIONS, MediaEmbedExtension()],
        extension_configs=MD_EXTENSION_CONFIGS,
    )


md = _markdown_renderer()


def render_markdown_html(text: str | None) -> str:
    md.reset()
    return md.convert(text or "")


def split_frontmatter(text: str | None) -> tuple[dict, str]:
    """
    Split a leading ``---`` YAML block off *text*.

    Returns ``(frontmatter, body)``. Anything that is not a mapping, or
    does not parse, counts as no frontmatter and the text is left alone.
    """
    text = text or ""
    m = _FRONTMATTER_RE.match(text)
    if not m:
        return {}, text
    try:
        data = yaml.safe_load(m.group(1))
    except yaml.YAMLError:
        return {}, text
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return {}, text
    return data, text[m.end():]


def page_style(front: dict) -> dict[str, str | None]:
    font = str(front.get("font") or "sans").lower()
    background = front.get("background")
    if not isinstance(background, str) or not HEX_COLOR_RE.fullmatch(background):
        background = None
    return {
        "font": FONT_STACKS.get(font, FONT_STACKS["sans"]),
        "background": background,
    }


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown_html(text))


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
        CREATE TABLE IF NOT EXISTS users (
            id            TEXT PRIMARY KEY,
            email         TEXT UNIQUE NOT NULL COLLATE NOCASE,
            password_hash TEXT NOT NULL,
            created_at    TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Folders  (dashboard organisation only, never in URLs)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS folders (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            name        TEXT NOT NULL,
            parent_id   INTEGER REFERENCES folders(id),
            owner_id    TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL,
            CONSTRAINT valid_folder_name CHECK (
                LENGTH(name) BETWEEN 1 AND 100
                AND name NOT GLOB '*[^A-Za-z0-9_ -]*'
            )
        );

        ------------------------------------------------------------
        -- 3.  Pages  (flat slugs, unique per owner, soft delete)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS pages (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            slug        TEXT NOT NULL,
            markdown    TEXT NOT NULL,
            folder_id   INTEGER REFERENCES folders(id) ON DELETE SET NULL,
            owner_id    TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            deleted_at  TEXT DEFAULT NULL,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL,
            CONSTRAINT unique_owner_slug UNIQUE (owner_id, slug),
            CONSTRAINT valid_page_slug CHECK (
                LENGTH(slug) > 0
                AND slug NOT GLOB '*[^a-zA-Z0-9_-]*'
            )
        );

        CREATE INDEX IF NOT EXISTS idx_pages_owner_slug ON pages(owner_id, slug);
        CREATE INDEX IF NOT EXISTS idx_pages_folder_id ON pages(folder_id);
        CREATE INDEX IF NOT EXISTS idx_pages_deleted_at ON pages(deleted_at);
        CREATE INDEX IF NOT EXISTS idx_folders_owner_parent ON folders(owner_id, parent_id);
        """
    )
    db.commit()


def _rows(rows: Iterable[sqlite3.Row]) -> list[dict]:
    return [dict(r) for r in rows]


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Identity provider
###############################################################################
def create_user(email: str, password: str, *, db) -> dict:
    email = email.strip().lower() if isinstance(email, str) else ""
    if not EMAIL_RE.match(email):
        raise InvalidInput("A valid email address is required")
    if not isinstance(password, str) or len(password) < PASSWORD_MIN:
        raise InvalidInput(f"Password must be at least {PASSWORD_MIN} characters")

    user_id = uuid.uuid4().hex
    try:
        with db:
            db.execute(
                "INSERT INTO users (id, email, password_hash, created_at) VALUES (?,?,?,?)",
                (user_id, email, hash_password(password), utc_now().isoformat()),
            )
    except sqlite3.IntegrityError:
        raise ConflictError("An account with this email already exists") from None
    return {"id": user_id, "email": email}


def authenticate(email: str, password: str, *, db) -> dict | None:
    if not isinstance(email, str) or not isinstance(password, str):
        return None
    row = db.execute(
        "SELECT id, email, password_hash FROM users WHERE email=?",
        (email.strip().lower(),),
    ).fetchone()
    if not row or not verify_password(row["password_hash"], password):
        return None
    return {"id": row["id"], "email": row["email"]}


def issue_token(user_id: str) -> str:
    return signer.sign(user_id).decode()


def resolve_user(token: str, *, db, max_age: int | None = None) -> str | None:
    """
    Turn a bearer token into a user id.

    The signature and age are checked first; the id must also still name
    an existing account.
    """
    max_age = app.config["TOKEN_MAX_AGE"] if max_age is None else max_age
    try:
        user_id = signer.unsign(token, max_age=max_age).decode()
    except (SignatureExpired, BadSignature):
        return None

    row = db.execute("SELECT id FROM users WHERE id=?", (user_id,)).fetchone()
    return row["id"] if row else None


def auth_required() -> str:
    """Resolve ``Authorization: Bearer …`` to the caller's user id or raise 401."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Unauthorized")
    user_id = resolve_user(token.strip(), db=get_db())
    if user_id is None:
        raise AuthError("Unauthorized")
    g.user_id = user_id
    return user_id


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
                return (
                    {"error": "Too many requests – try again later."},
                    429,
                    {"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


###############################################################################
# CLI – schema + accounts
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database schema (no-op if it already exists)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"   {app.config['DATABASE']}\n")


@app.cli.command("adduser")
@click.option("--email", prompt=True, help="Email address of the new account")
@click.password_option(help="Password (at least 6 characters)")
def cli_adduser(email: str, password: str):
    """Create an account and print a bearer token for it."""
    init_db()
    try:
        user = create_user(email, password, db=get_db())
    except BorrdError as exc:
        raise click.ClickException(exc.message) from None

    app.logger.info("Created user %s", user["email"])
    click.secho(f"\n✅  Account {user['email']} created.", fg="green")
    click.echo(f"\nBearer token:\n\n{issue_token(user['id'])}\n")


@app.cli.command("token")
@click.option("--email", prompt=True, help="Email address of the account")
def cli_token(email: str):
    """Print a fresh bearer token for an existing account."""
    row = get_db().execute(
        "SELECT id FROM users WHERE email=?", (email.strip().lower(),)
    ).fetchone()
    if not row:
        raise click.ClickException(f"No account for {email}")

    click.secho("\n🔑  Fresh bearer token generated.\n", fg="yellow")
    click.echo(f"{issue_token(row['id'])}\n")


###############################################################################
# Input helpers
###############################################################################
def json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidInput("Request body must be a JSON object")
    return payload


def parse_id(value, *, message: str, allow_none: bool = True) -> int | None:
    """
    Coerce an id coming from JSON or a query string.

    ``None``/empty/``0`` mean "no id" when *allow_none* is set; bools,
    floats and non-numeric strings are rejected.
    """
    if isinstance(value, bool):
        raise InvalidInput(message)
    if value is None or value == "" or value == 0:
        if allow_none:
            return None
        raise InvalidInput(message)
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise InvalidInput(message)
    if parsed <= 0:
        if allow_none and parsed == 0:
            return None
        raise InvalidInput(message)
    return parsed


def validate_slug(slug) -> str:
    if not slug or not isinstance(slug, str):
        raise InvalidInput("slug field is required and must be a string")
    if not SLUG_RE.fullmatch(slug):
        raise InvalidInput(
            "slug must contain only letters, numbers, hyphens, and underscores"
        )
    return slug


def validate_folder_name(name) -> str:
    if not name or not isinstance(name, str) or not name.strip():
        raise InvalidInput("Folder name is required")
    name = name.strip()
    if len(name) > FOLDER_NAME_MAX:
        raise InvalidInput(f"Folder name must be at most {FOLDER_NAME_MAX} characters")
    if not FOLDER_NAME_RE.fullmatch(name):
        raise InvalidInput(
            "Folder name must contain only letters, numbers, spaces, hyphens, and underscores"
        )
    return name


###############################################################################
# Folder store
###############################################################################
def list_folders(owner: str, *, db) -> list[sqlite3.Row]:
    return db.execute(
        "SELECT * FROM folders WHERE owner_id=? ORDER BY name, id", (owner,)
    ).fetchall()


def get_folder(owner: str, folder_id: int, *, db) -> sqlite3.Row | None:
    return db.execute(
        "SELECT * FROM folders WHERE id=? AND owner_id=?", (folder_id, owner)
    ).fetchone()


def _sibling_named(
    owner: str, parent_id: int | None, name: str, *, db, exclude: int | None = None
) -> sqlite3.Row | None:
    return db.execute(
        """SELECT id FROM folders
            WHERE owner_id=? AND parent_id IS ? AND name=? AND id IS NOT ?""",
        (owner, parent_id, name, exclude),
    ).fetchone()


def create_folder(owner: str, name, parent_id: int | None = None, *, db) -> dict:
    name = validate_folder_name(name)
    if parent_id is not None and get_folder(owner, parent_id, db=db) is None:
        raise InvalidInput("Parent folder does not exist")
    if _sibling_named(owner, parent_id, name, db=db):
        raise ConflictError("Folder with this name already exists")

    now = utc_now().isoformat()
    with db:
        cur = db.execute(
            """INSERT INTO folders (name, parent_id, owner_id, created_at, updated_at)
               VALUES (?,?,?,?,?)""",
            (name, parent_id, owner, now, now),
        )
    return dict(get_folder(owner, cur.lastrowid, db=db))


def rename_folder(owner: str, folder_id: int, name, *, db) -> dict:
    folder = get_folder(owner, folder_id, db=db)
    if folder is None:
        raise NotFoundError("Folder not found")
    name = validate_folder_name(name)
    if _sibling_named(owner, folder["parent_id"], name, db=db, exclude=folder_id):
        raise ConflictError("A folder with this name already exists in this location")

    with db:
        db.execute(
            "UPDATE folders SET name=?, updated_at=? WHERE id=? AND owner_id=?",
            (name, utc_now().isoformat(), folder_id, owner),
        )
    return dict(get_folder(owner, folder_id, db=db))


def descendant_ids(folder_id: int, folders: Iterable) -> set[int]:
    """
    Every folder below *folder_id*, found with one pass over an adjacency map.

    Runs in time proportional to the number of folders and tolerates
    parent links that already loop.
    """
    children: DefaultDict[int, list[int]] = defaultdict(list)
    for f in folders:
        if f["parent_id"] is not None:
            children[f["parent_id"]].append(f["id"])

    found: set[int] = set()
    stack = list(children.get(folder_id, ()))
    while stack:
        current = stack.pop()
        if current in found:
            continue
        found.add(current)
        stack.extend(children.get(current, ()))
    found.discard(folder_id)
    return found


def move_folder(owner: str, folder_id: int, new_parent_id: int | None, *, db) -> dict:
    folders = list_folders(owner, db=db)
    by_id = {f["id"]: f for f in folders}

    folder = by_id.get(folder_id)
    if folder is None:
        raise NotFoundError("Folder not found")
    if new_parent_id == folder["parent_id"]:
        raise InvalidInput("Folder is already in that location")
    if new_parent_id is not None:
        if new_parent_id not in by_id:
            raise InvalidInput("Target parent folder does not exist")
        if new_parent_id == folder_id or new_parent_id in descendant_ids(
            folder_id, folders
        ):
            raise InvalidInput("Cannot move a folder into itself or its descendants")
    if any(
        f["name"] == folder["name"]
        and f["parent_id"] == new_parent_id
        and f["id"] != folder_id
        for f in folders
    ):
        raise ConflictError(
            "A folder with this name already exists in the target location"
        )

    with db:
        db.execute(
            "UPDATE folders SET parent_id=?, updated_at=? WHERE id=? AND owner_id=?",
            (new_parent_id, utc_now().isoformat(), folder_id, owner),
        )
    return dict(get_folder(owner, folder_id, db=db))


def delete_folder(owner: str, folder_id: int, *, db) -> None:
    """
    Remove a folder without losing anything inside it.

    Its pages become uncategorised and its subfolders move up to its
    parent. All three statements commit together or not at all.
    """
    folder = get_folder(owner, folder_id, db=db)
    if folder is None:
        raise NotFoundError("Folder not found")

    with db:
        db.execute(
            "UPDATE pages SET folder_id=NULL WHERE folder_id=? AND owner_id=?",
            (folder_id, owner),
        )
        db.execute(
            "UPDATE folders SET parent_id=?, updated_at=? WHERE parent_id=? AND owner_id=?",
            (folder["parent_id"], utc_now().isoformat(), folder_id, owner),
        )
        db.execute(
            "DELETE FROM folders WHERE id=? AND owner_id=?", (folder_id, owner)
        )
    app.logger.info("Deleted folder %s (%s) for %s", folder_id, folder["name"], owner)


def folder_contents(owner: str, folder_id: int | None = None, *, db) -> dict:
    if folder_id is None:
        uncategorized = db.execute(
            """SELECT id, slug, created_at, updated_at FROM pages
                WHERE owner_id=? AND folder_id IS NULL AND deleted_at IS NULL
                ORDER BY slug""",
            (owner,),
        ).fetchall()
        return {
            "folders": _rows(list_folders(owner, db=db)),
            "uncategorizedPages": _rows(uncategorized),
        }

    folder = get_folder(owner, folder_id, db=db)
    if folder is None:
        raise NotFoundError("Folder not found")
    subfolders = db.execute(
        "SELECT * FROM folders WHERE owner_id=? AND parent_id=? ORDER BY name, id",
        (owner, folder_id),
    ).fetchall()
    pages = db.execute(
        """SELECT id, slug, created_at, updated_at FROM pages
            WHERE owner_id=? AND folder_id=? AND deleted_at IS NULL
            ORDER BY slug""",
        (owner, folder_id),
    ).fetchall()
    return {
        "folder": dict(folder),
        "subfolders": _rows(subfolders),
        "pages": _rows(pages),
    }


###############################################################################
# Page store
###############################################################################
def list_active_pages(owner: str, *, db) -> list[sqlite3.Row]:
    return db.execute(
        """SELECT * FROM pages
            WHERE owner_id=? AND deleted_at IS NULL
            ORDER BY created_at DESC, id DESC""",
        (owner,),
    ).fetchall()


def list_deleted_pages(owner: str, *, db) -> list[sqlite3.Row]:
    return db.execute(
        """SELECT * FROM pages
            WHERE owner_id=? AND deleted_at IS NOT NULL
            ORDER BY deleted_at DESC, id DESC""",
        (owner,),
    ).fetchall()


def find_page(
    owner: str, *, page_id: int | None = None, slug: str | None = None, db
) -> sqlite3.Row:
    if page_id is not None:
        row = db.execute(
            "SELECT * FROM pages WHERE id=? AND owner_id=?", (page_id, owner)
        ).fetchone()
    elif slug:
        row = db.execute(
            "SELECT * FROM pages WHERE slug=? AND owner_id=?", (slug, owner)
        ).fetchone()
    else:
        raise InvalidInput("Page ID or slug is required")
    if row is None:
        raise NotFoundError("Page not found")
    return row


def publish(
    owner: str, slug, markdown_text, folder_id: int | None = None, *, db
) -> dict:
    """
    Create or update the owner's page at *slug*.

    The slug is matched against every page, trashed ones included, so a
    slug never exists twice for one owner. A concurrent insert that loses
    the race on the unique constraint is finished as an update.
    """
    if not markdown_text or not isinstance(markdown_text, str):
        raise InvalidInput("markdown field is required and must be a string")
    validate_slug(slug)
    if folder_id is not None and get_folder(owner, folder_id, db=db) is None:
        raise InvalidInput("Invalid folder ID")

    lookup = "SELECT id, deleted_at FROM pages WHERE owner_id=? AND slug=?"
    now = utc_now().isoformat()
    existing = db.execute(lookup, (owner, slug)).fetchone()
    if existing is None:
        try:
            with db:
                cur = db.execute(
                    """INSERT INTO pages
                           (slug, markdown, folder_id, owner_id, created_at, updated_at)
                       VALUES (?,?,?,?,?,?)""",
                    (slug, markdown_text, folder_id, owner, now, now),
                )
            return {"action": "created", "slug": slug, "id": cur.lastrowid, "trashed": False}
        except sqlite3.IntegrityError:
            existing = db.execute(lookup, (owner, slug)).fetchone()
            if existing is None:
                raise

    with db:
        db.execute(
            "UPDATE pages SET markdown=?, folder_id=?, updated_at=? WHERE id=?",
            (markdown_text, folder_id, now, existing["id"]),
        )
    trashed = existing["deleted_at"] is not None
    if trashed:
        app.logger.warning("Updated trashed page %r for %s; it stays in trash", slug, owner)
    return {"action": "updated", "slug": slug, "id": existing["id"], "trashed": trashed}


def soft_delete(
    owner: str, *, page_id: int | None = None, slug: str | None = None, db
) -> dict:
    page = find_page(owner, page_id=page_id, slug=slug, db=db)
    if page["deleted_at"] is None:
        now = utc_now().isoformat()
        with db:
            db.execute(
                "UPDATE pages SET deleted_at=?, updated_at=? WHERE id=?",
                (now, now, page["id"]),
            )
    return dict(find_page(owner, page_id=page["id"], db=db))


def restore(owner: str, page_id: int, *, db) -> dict:
    page = find_page(owner, page_id=page_id, db=db)
    if page["deleted_at"] is not None:
        with db:
            db.execute(
                "UPDATE pages SET deleted_at=NULL, updated_at=? WHERE id=?",
                (utc_now().isoformat(), page["id"]),
            )
    return dict(find_page(owner, page_id=page["id"], db=db))


def move_page(
    owner: str,
    folder_id: int | None,
    *,
    page_id: int | None = None,
    slug: str | None = None,
    db,
) -> dict:
    if folder_id is not None and get_folder(owner, folder_id, db=db) is None:
        raise InvalidInput("Target folder does not exist")
    page = find_page(owner, page_id=page_id, slug=slug, db=db)
    with db:
        db.execute(
            "UPDATE pages SET folder_id=?, updated_at=? WHERE id=?",
            (folder_id, utc_now().isoformat(), page["id"]),
        )
    return dict(find_page(owner, page_id=page["id"], db=db))


###############################################################################
# Sidebar
###############################################################################
def build_sidebar(folders: Iterable, pages: Iterable, deleted_pages: Iterable = ()) -> list[dict]:
    """
    Flatten folders and active pages into the dashboard's indented list.

    Top-level folders come first, each followed by its own pages and then
    its subfolders, depth-first. Pages not placed under a visited folder
    follow at level 0, and a Trash entry closes the list when anything is
    deleted. Input order is kept at every level.
    """
    folders, pages, deleted_pages = list(folders), list(pages), list(deleted_pages)
    children: DefaultDict[int | None, list] = defaultdict(list)
    for f in folders:
        children[f["parent_id"]].append(f)
    pages_in: DefaultDict[int | None, list] = defaultdict(list)
    for p in pages:
        pages_in[p["folder_id"]].append(p)

    items: list[dict] = []
    placed: set[int] = set()
    visited: set[int] = set()
    stack = [(f, 0) for f in reversed(children[None])]
    while stack:
        folder, level = stack.pop()
        if folder["id"] in visited:
            continue
        visited.add(folder["id"])

        own_pages = pages_in.get(folder["id"], [])
        items.append(
            {
                "id": f"folder-{folder['id']}",
                "type": "folder",
                "name": folder["name"],
                "page_count": len(own_pages),
                "level": level,
            }
        )
        for p in own_pages:
            placed.add(p["id"])
            items.append(_sidebar_page(p, level + 1))
        stack.extend((c, level + 1) for c in reversed(children.get(folder["id"], [])))

    items.extend(_sidebar_page(p, 0) for p in pages if p["id"] not in placed)

    if deleted_pages:
        items.append(
            {
                "id": "trash",
                "type": "folder",
                "name": "Trash",
                "page_count": len(deleted_pages),
                "level": 0,
            }
        )
    return items


def _sidebar_page(p, level: int) -> dict:
    return {
        "id": f"page-{p['id']}",
        "type": "page",
        "name": p["slug"],
        "folder_id": p["folder_id"],
        "level": level,
    }


###############################################################################
# Media
###############################################################################
def storage_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in STORAGE_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def storage_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or storage_config()
    return all(cfg.get(k) for k in STORAGE_REQUIRED_KEYS)


class MediaStore:
    """An S3-compatible object store holding the public media buckets."""

    def __init__(self, client, *, public_base: str = "", endpoint: str = "",
                 region: str = "auto", bucket_prefix: str = ""):
        self.client = client
        self.public_base = public_base.rstrip("/")
        self.endpoint = endpoint.rstrip("/")
        self.region = region
        self.bucket_prefix = bucket_prefix

    @classmethod
    def from_config(cls, cfg: dict[str, str]) -> "MediaStore":
        region = cfg.get("STORAGE_REGION", "auto")
        client = boto3.client(
            "s3",
            endpoint_url=cfg.get("STORAGE_ENDPOINT") or None,
            region_name=region,
            aws_access_key_id=cfg["STORAGE_ACCESS_KEY_ID"],
            aws_secret_access_key=cfg["STORAGE_SECRET_ACCESS_KEY"],
        )
        return cls(
            client,
            public_base=cfg.get("STORAGE_PUBLIC_BASE", ""),
            endpoint=cfg.get("STORAGE_ENDPOINT", ""),
            region=region,
            bucket_prefix=cfg.get("STORAGE_BUCKET_PREFIX", ""),
        )

    def bucket(self, name: str) -> str:
        return f"{self.bucket_prefix}{name}"

    def public_url(self, bucket: str, key: str) -> str:
        key = key.lstrip("/")
        if self.public_base:
            return f"{self.public_base}/{bucket}/{key}"
        if self.endpoint:
            return f"{self.endpoint}/{bucket}/{key}"
        return f"https://{bucket}.s3.{self.region}.amazonaws.com/{key}"

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        bucket = self.bucket(bucket)
        self.client.upload_fileobj(
            io.BytesIO(data),
            bucket,
            key,
            ExtraArgs={"ContentType": content_type},
        )
        return self.public_url(bucket, key)


def open_media_store() -> MediaStore:
    cfg = storage_config()
    if not storage_is_configured(cfg):
        raise StorageUnavailable("Media uploads are not configured.")
    return MediaStore.from_config(cfg)


def validate_media(kind: str, mime: str, size: int, duration=None) -> dict:
    """
    Check an upload against the limits for its kind and return the rule.

    Video length is measured by the client and sent along; it is
    required here so a client that skips the check cannot bypass it.
    """
    rule = MEDIA_RULES.get(kind)
    if rule is None:
        raise InvalidInput("kind must be one of: image, audio, video")

    mime = (mime or "").lower()
    allowed = mime.startswith("image/") if rule["mimes"] is None else mime in rule["mimes"]
    if not allowed:
        raise UnsupportedMedia(f"{rule['label']} uploads do not accept {mime or 'this file type'}.")

    if size <= 0:
        raise InvalidInput("The uploaded file is empty.")
    if size > rule["max_bytes"]:
        raise UploadTooLarge(
            f"{rule['label']} must be smaller than {rule['max_bytes'] // MIB}MB."
        )

    if kind == "video":
        try:
            seconds = float(duration)
        except (TypeError, ValueError):
            raise InvalidInput("Video duration (seconds) is required.") from None
        if not math.isfinite(seconds) or seconds < 0:
            raise InvalidInput("Video duration (seconds) is required.")
        if seconds > VIDEO_MAX_SECONDS:
            raise InvalidInput(f"Video must be {VIDEO_MAX_SECONDS} seconds or shorter.")
    return rule


def media_key(filename: str, mime: str) -> str:
    ext = Path(secure_filename(filename or "")).suffix.lower()
    if not ext:
        ext = mimetypes.guess_extension(mime or "") or ""
    stamp = int(utc_now().timestamp() * 1000)
    return f"{stamp}-{secrets.token_hex(6)}{ext}"


def media_markdown(kind: str, name: str, url: str) -> str:
    if kind == "image":
        return f"![{name}]({url})"
    return f"!{kind}({url})"


def store_media(kind: str, filename: str, mime: str, data: bytes, *, store: MediaStore) -> dict:
    rule = MEDIA_RULES[kind]
    key = media_key(filename, mime)
    try:
        url = store.put(rule["bucket"], key, data, mime)
    except (BotoCoreError, ClientError):
        app.logger.exception("Media upload failed")
        raise StorageFailed("Upload failed – check storage credentials.") from None
    return {
        "url": url,
        "key": key,
        "bucket": store.bucket(rule["bucket"]),
        "markdown": media_markdown(kind, filename, url),
    }


###############################################################################
# Export
###############################################################################
def export_snapshot(owner: str, *, include_deleted: bool = False, fmt: str = "json", db) -> dict:
    sql = """SELECT id, slug, markdown, folder_id, created_at, updated_at, deleted_at
               FROM pages WHERE owner_id=?"""
    if not include_deleted:
        sql += " AND deleted_at IS NULL"
    pages = _rows(db.execute(sql + " ORDER BY created_at DESC, id DESC", (owner,)))
    return {
        "metadata": {
            "exportedAt": utc_now().isoformat(),
            "totalPages": len(pages),
            "includesDeleted": include_deleted,
            "format": fmt,
        },
        "folders": _rows(list_folders(owner, db=db)),
        "pages": pages,
    }


def export_archive(snapshot: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("export.json", json.dumps(snapshot, indent=2))
        for p in snapshot["pages"]:
            zf.writestr(f"pages/{p['slug']}.md", p["markdown"])
    return buf.getvalue()


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'Borrd' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%}
body{font-size:1.8rem;line-height:1.618;max-width:42em;margin:auto;padding:3rem 1.5rem;color:#222;background:#fff;
     font-family:{{ (font or '-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif')|safe }}}
{% if background %}html,body{background:{{ background }}}{% endif %}
h1,h2,h3,h4,h5,h6{line-height:1.15;margin:2.5rem 0 1.25rem}
p{margin:0 0 2rem}
img,video{max-width:100%;height:auto}
figure.media{margin:0 0 2rem}
figure.media audio{width:100%}
pre{padding:1em;overflow-x:auto;background:#f4f4f4}
code{font-size:.9em}
blockquote{margin:0 0 2rem;padding:.5em 1em;border-left:4px solid #ccc}
a{color:inherit}
</style>
<body>
<main>
"""

TEMPL_EPILOG = """
</main>
</body>
</html>
"""

TEMPL_PAGE = wrap("""
<article class="page">{{ body|md }}</article>
""")

TEMPL_INDEX = wrap("""
<h1>Borrd</h1>
<p>Write Markdown, publish it under a slug, share the link.</p>
<p><small>v{{ version }}</small></p>
""")

TEMPL_404 = wrap("""
<h1>Page not found</h1>
<p>Nothing is published at this address.</p>
<p>Folders only organise the dashboard and don’t create public URLs.</p>
""")

TEMPL_500 = wrap("""
<h1>Internal Server Error</h1>
<p>Our fault, not yours. Please try again in a minute.</p>
""")


###############################################################################
# Error handlers
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(BorrdError)
def borrd_error(exc: BorrdError):
    return {"error": exc.message}, exc.status


@app.errorhandler(404)
def not_found(exc):
    if _wants_json():
        return {"error": "Not found"}, 404
    return render_template_string(TEMPL_404, title="Page not found"), 404


@app.errorhandler(405)
def method_not_allowed(exc):
    return {"error": "Method not allowed"}, 405


@app.errorhandler(413)
def too_large(exc):
    return {"error": f"File too large ({UPLOAD_MAX_BYTES // MIB}MB max)."}, 413


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 answer. Flask has already logged the traceback through
    ``app.logger`` before this handler runs.
    """
    if _wants_json():
        return {"error": "Internal server error"}, 500
    return render_template_string(TEMPL_500, title="Error"), 500


###############################################################################
# Auth API
###############################################################################
@app.route("/api/auth/signup", methods=["POST"])
@rate_limit(max_requests=10, window=60)
def signup():
    payload = json_body()
    user = create_user(payload.get("email"), payload.get("password"), db=get_db())
    return {"user": user, "token": issue_token(user["id"])}, 201


@app.route("/api/auth/login", methods=["POST"])
@rate_limit(max_requests=5, window=60)
def login():
    payload = json_body()
    user = authenticate(payload.get("email"), payload.get("password"), db=get_db())
    if user is None:
        raise AuthError("Invalid email or password")
    return {"user": user, "token": issue_token(user["id"])}


@app.route("/api/auth/me")
def me():
    owner = auth_required()
    row = get_db().execute(
        "SELECT id, email, created_at FROM users WHERE id=?", (owner,)
    ).fetchone()
    return {"user": dict(row)}


###############################################################################
# Pages API
###############################################################################
@app.route("/api/pages")
def pages_index():
    owner = auth_required()
    db = get_db()
    return {
        "pages": _rows(list_active_pages(owner, db=db)),
        "deletedPages": _rows(list_deleted_pages(owner, db=db)),
    }


@app.route("/api/publish", methods=["POST"])
def publish_page():
    owner = auth_required()
    payload = json_body()
    folder_id = parse_id(payload.get("folderId"), message="Invalid folder ID")
    result = publish(
        owner, payload.get("slug"), payload.get("markdown"), folder_id, db=get_db()
    )
    status = 201 if result["action"] == "created" else 200
    return {"success": True, **result}, status


@app.route("/api/delete-page", methods=["DELETE"])
def delete_page():
    owner = auth_required()
    page_id = parse_id(request.args.get("pageId"), message="Invalid page ID")
    soft_delete(owner, page_id=page_id, slug=request.args.get("slug"), db=get_db())
    return {"success": True}


@app.route("/api/restore-page", methods=["POST"])
def restore_page():
    owner = auth_required()
    page_id = parse_id(
        json_body().get("pageId"), message="Page ID is required", allow_none=False
    )
    page = restore(owner, page_id, db=get_db())
    return {"success": True, "page": page}


@app.route("/api/move-page", methods=["POST"])
def move_page_view():
    owner = auth_required()
    payload = json_body()
    folder_id = parse_id(payload.get("folderId"), message="Target folder does not exist")
    page_id = parse_id(payload.get("pageId"), message="Invalid page ID")
    move_page(owner, folder_id, page_id=page_id, slug=payload.get("slug"), db=get_db())
    return {"success": True}


###############################################################################
# Folders API
###############################################################################
@app.route("/api/folders", methods=["GET", "POST", "PATCH", "DELETE"])
def folders():
    owner = auth_required()
    db = get_db()

    if request.method == "POST":
        # the dashboard only ever creates top-level folders
        folder = create_folder(owner, json_body().get("name"), None, db=db)
        return {"success": True, "folder": folder}, 201

    if request.method == "PATCH":
        payload = json_body()
        folder_id = parse_id(
            payload.get("folderId"), message="Folder ID is required", allow_none=False
        )
        folder = rename_folder(owner, folder_id, payload.get("name"), db=db)
        return {"success": True, "folder": folder}

    if request.method == "DELETE":
        folder_id = parse_id(
            request.args.get("folderId"), message="Invalid folder ID", allow_none=False
        )
        delete_folder(owner, folder_id, db=db)
        return {"success": True}

    return {"folders": _rows(list_folders(owner, db=db))}


@app.route("/api/move-folder", methods=["POST"])
def move_folder_view():
    owner = auth_required()
    payload = json_body()
    folder_id = parse_id(
        payload.get("folderId"), message="Folder ID is required", allow_none=False
    )
    target = parse_id(
        payload.get("targetParentId"), message="Target parent folder does not exist"
    )
    move_folder(owner, folder_id, target, db=get_db())
    return {"success": True}


@app.route("/api/folder-contents")
def folder_contents_view():
    owner = auth_required()
    folder_id = parse_id(request.args.get("folderId"), message="Invalid folder ID")
    return folder_contents(owner, folder_id, db=get_db())


@app.route("/api/sidebar")
def sidebar():
    owner = auth_required()
    db = get_db()
    items = build_sidebar(
        list_folders(owner, db=db),
        list_active_pages(owner, db=db),
        list_deleted_pages(owner, db=db),
    )
    return {"items": items}


###############################################################################
# Media API
###############################################################################
@app.route("/api/upload", methods=["POST"])
def upload_media():
    auth_required()

    kind = (request.form.get("kind") or "").strip().lower()
    if "file" not in request.files:
        raise InvalidInput("No file received.")
    f = request.files["file"]
    if not f.filename:
        raise InvalidInput("No file selected.")

    data = f.read()
    mime = (f.mimetype or "").lower()
    validate_media(kind, mime, len(data), request.form.get("duration"))

    result = store_media(kind, f.filename, mime, data, store=open_media_store())
    return result, 201


###############################################################################
# Export API
###############################################################################
@app.route("/api/export")
def export():
    owner = auth_required()
    fmt = (request.args.get("format") or "json").lower()
    if fmt not in ("json", "zip"):
        raise InvalidInput("format must be json or zip")
    include_deleted = request.args.get("includeDeleted", "false").lower() == "true"

    snapshot = export_snapshot(
        owner, include_deleted=include_deleted, fmt=fmt, db=get_db()
    )
    day = utc_now().strftime("%Y-%m-%d")
    if fmt == "zip":
        return Response(
            export_archive(snapshot),
            mimetype="application/zip",
            headers={"Content-Disposition": f'attachment; filename="borrd-export-{day}.zip"'},
        )
    return Response(
        json.dumps(snapshot, indent=2),
        mimetype="application/json",
        headers={"Content-Disposition": f'attachment; filename="borrd-export-{day}.json"'},
    )


###############################################################################
# Public pages
###############################################################################
@app.route("/")
def index():
    return render_template_string(TEMPL_INDEX, title="Borrd", version=__version__)


@app.route("/<slug>")
def view_page(slug):
    if not SLUG_RE.fullmatch(slug):
        abort(404)
    # slugs are unique per owner only; the oldest page claims the public URL
    row = get_db().execute(
        """SELECT slug, markdown FROM pages
            WHERE slug=? AND deleted_at IS NULL
            ORDER BY created_at, id
            LIMIT 1""",
        (slug,),
    ).fetchone()
    if row is None:
        abort(404)

    front, body = split_frontmatter(row["markdown"])
    style = page_style(front)
    title = front.get("title") if isinstance(front.get("title"), str) else row["slug"]
    return render_template_string(
        TEMPL_PAGE,
        body=body,
        title=title,
        font=style["font"],
        background=style["background"],
    )


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
