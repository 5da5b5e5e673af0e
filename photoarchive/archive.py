#!/usr/bin/env python3
"""
A single-file photo archive: upload tagged images, browse them by year and tag.
"""

import hashlib
import json
import mimetypes
import os
import re
import secrets
import sqlite3
import threading
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict, NamedTuple
from urllib.parse import quote_plus

import boto3
import click
import markdown
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

SITE_NAME = "photoarchive"
ROLES = ("admin", "user")
LIMIT_CHOICES = (12, 24, 48)
LIMIT_DEFAULT = LIMIT_CHOICES[0]
INT_RE = re.compile(r"[+-]?[0-9]+")
# sqlite INTEGER range
INT_MIN, INT_MAX = -(2**63), 2**63 - 1
EMAIL_RE = re.compile(r"^[^@\s<>,;]+@[^@\s<>,;]+\.[^@\s<>,;]+$")

S3_ENV_KEYS = (
    "S3_ENDPOINT",
    "S3_ACCESS_KEY_ID",
    "S3_SECRET_ACCESS_KEY",
    "S3_BUCKET",
    "S3_REGION",
)
S3_REQUIRED_KEYS = (
    "S3_ENDPOINT",
    "S3_ACCESS_KEY_ID",
    "S3_SECRET_ACCESS_KEY",
)
S3_BUCKET_DEFAULT = "download"
S3_REGION_DEFAULT = "us-east-1"
UPLOAD_MAX_BYTES = 10 * 1000 * 1000
HASH_CHUNK = 64 * 1024
IMAGE_MIMES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
}


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
    """Process environment first, then the .env file next to the package."""
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


DB_FILE = Path(env_setting("PHOTOARCHIVE_DB", str(ROOT / "archive.sqlite3")))

try:
    __version__ = version("photoarchive")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# Errors
################################################################################
class ArchiveError(Exception):
    """Base class for failures that the views turn into an HTTP response."""

    status = 500
    heading = "Something went wrong"


class ParameterError(ArchiveError):
    """A query or form parameter was present but not an integer."""

    status = 403
    heading = "Invalid parameter"

    def __init__(self, name: str, value: str, page=None):
        super().__init__(f"invalid {name}: {value!r}")
        self.name = name
        self.value = value
        # whatever was parsed before the failing parameter
        self.page = page


class RetrievalError(ArchiveError):
    status = 500
    heading = "Could not load posts"


class StorageError(ArchiveError):
    status = 502
    heading = "Object storage failed"


class UploadError(ArchiveError):
    status = 415
    heading = "Upload rejected"


class DuplicateImageError(UploadError):
    status = 409


class RegistrationError(ArchiveError):
    status = 403
    heading = "Registration failed"


################################################################################
# Session store
################################################################################
class SessionStore:
    """Maps an opaque session token to a user id."""

    def get(self, token: str) -> int | None:
        raise NotImplementedError

    def set(self, token: str, user_id: int) -> None:
        raise NotImplementedError

    def delete(self, token: str) -> None:
        raise NotImplementedError


class MemorySessionStore(SessionStore):
    """Process-local store; every access goes through one lock."""

    def __init__(self):
        self._tokens: dict[str, int] = {}
        self._lock = threading.Lock()

    def get(self, token):
        with self._lock:
            return self._tokens.get(token)

    def set(self, token, user_id):
        with self._lock:
            self._tokens[token] = user_id

    def delete(self, token):
        with self._lock:
            self._tokens.pop(token, None)

    def __len__(self):
        with self._lock:
            return len(self._tokens)


################################################################################
# Object store
################################################################################
class ObjectStore:
    """Thin wrapper around an S3 client bound to one bucket."""

    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    def put(self, key: str, stream, content_type: str) -> None:
        try:
            self.client.upload_fileobj(
                stream,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"could not store {key}") from exc

    def open(self, key: str):
        """Return ``(body, length)`` for *key*, or ``None`` if it does not exist."""
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404", "NotFound"):
                return None
            raise StorageError(f"could not read {key}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"could not read {key}") from exc
        return obj["Body"], obj.get("ContentLength")

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"could not delete {key}") from exc


def s3_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in S3_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def s3_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or s3_config()
    return all(cfg.get(k) for k in S3_REQUIRED_KEYS)


def _s3_client(cfg: dict[str, str]):
    return boto3.client(
        "s3",
        endpoint_url=cfg["S3_ENDPOINT"],
        region_name=cfg.get("S3_REGION", S3_REGION_DEFAULT),
        aws_access_key_id=cfg["S3_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["S3_SECRET_ACCESS_KEY"],
    )


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    DATABASE_TIMEOUT=float(env_setting("PHOTOARCHIVE_DB_TIMEOUT", "5")),
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES,
    CONTACT_EMAIL=env_setting("PHOTOARCHIVE_CONTACT", ""),
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=env_setting("SESSION_COOKIE_SECURE", "0") == "1",
)
app.extensions["session_store"] = MemorySessionStore()
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def session_store() -> SessionStore:
    return app.extensions["session_store"]


def object_store() -> ObjectStore:
    """The configured object store, built on first use."""
    store = app.extensions.get("object_store")
    if store is None:
        cfg = s3_config()
        if not s3_is_configured(cfg):
            raise StorageError("Object storage is not configured.")
        store = ObjectStore(_s3_client(cfg), cfg.get("S3_BUCKET", S3_BUCKET_DEFAULT))
        app.extensions["object_store"] = store
    return store


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    """Render a post description; raw HTML in the source is escaped first."""
    return Markup(markdown.markdown(escape(text or "", quote=False)))


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        return datetime.fromisoformat(iso).strftime("%Y-%m-%d")
    except ValueError:
        return iso


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(
            app.config["DATABASE"], timeout=app.config["DATABASE_TIMEOUT"]
        )
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
            id            INTEGER PRIMARY KEY,
            name          TEXT NOT NULL,
            email         TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            role          TEXT NOT NULL CHECK (role IN ('admin', 'user'))
        );

        ------------------------------------------------------------
        -- 2.  Posts  (one row per stored image)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS post (
            id          INTEGER PRIMARY KEY,
            image_key   TEXT UNIQUE NOT NULL,
            year        INTEGER NOT NULL,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL,
            edited      INTEGER NOT NULL DEFAULT 0,
            user_id     INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE,
            title       TEXT NOT NULL DEFAULT '',
            description TEXT NOT NULL DEFAULT ''
        );
        CREATE INDEX IF NOT EXISTS post_updated_idx ON post(updated_at DESC);
        CREATE INDEX IF NOT EXISTS post_year_idx    ON post(year);

        ------------------------------------------------------------
        -- 3.  Tags
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS tag (
            id   INTEGER PRIMARY KEY,
            name TEXT UNIQUE NOT NULL
        );
        CREATE TABLE IF NOT EXISTS tagmap (
            post_id INTEGER NOT NULL REFERENCES post(id) ON DELETE CASCADE,
            tag_id  INTEGER NOT NULL REFERENCES tag(id)  ON DELETE CASCADE,
            PRIMARY KEY (post_id, tag_id)
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


###############################################################################
# Accounts
###############################################################################
def create_user(db, *, name: str, email: str, password: str, role: str) -> int:
    cur = db.execute(
        "INSERT INTO user (name, email, password_hash, role) VALUES (?,?,?,?)",
        (name, email, generate_password_hash(password), role),
    )
    db.commit()
    return cur.lastrowid


def verify_registration(form) -> tuple[str, str, str, str]:
    """
    Validate the registration form and return ``(name, email, password, role)``.
    Raises `RegistrationError` with a user-facing message.
    """
    name = form.get("name", "").strip()
    email = form.get("email", "").strip()
    role = form.get("role", "").strip()
    password = form.get("password", "")

    if not EMAIL_RE.match(email):
        raise RegistrationError("Email is not of correct format.")
    if role not in ROLES:
        raise RegistrationError("Role does not exist.")
    if not password:
        raise RegistrationError("Password is required.")
    if password != form.get("repassword", ""):
        raise RegistrationError("Entered passwords do not match.")
    return name, email, password, role


def authenticate(email: str, password: str, *, db) -> int | None:
    """Return the user id when *email* / *password* match, else ``None``."""
    row = db.execute(
        "SELECT id, password_hash FROM user WHERE email=?", (email,)
    ).fetchone()
    if row is None or not row["password_hash"]:
        return None
    if not check_password_hash(row["password_hash"], password):
        return None
    return row["id"]


def start_session(user_id: int) -> str:
    token = str(uuid.uuid4())
    session_store().set(token, user_id)
    session.clear()
    session["sid"] = token
    session["csrf"] = secrets.token_hex(16)
    return token


def end_session() -> None:
    token = session.get("sid")
    if token:
        session_store().delete(token)
    session.clear()


def current_user_id() -> int | None:
    token = session.get("sid")
    if not token:
        return None
    return session_store().get(token)


def _csrf_token() -> str:
    """One token per session (rotates on login)."""
    return session.get("csrf", "")


# Expose helpers to templates
app.jinja_env.globals.update(
    current_user_id=current_user_id,
    csrf_token=_csrf_token,
    version=__version__,
    limit_choices=LIMIT_CHOICES,
)


###############################################################################
# CLI – schema + accounts
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database tables (no-op if they exist)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"   {app.config['DATABASE']}\n")


@app.cli.command("create-user")
@click.option("--name", prompt=True, help="Display name")
@click.option("--email", prompt=True, help="Login e-mail address")
@click.option(
    "--role", type=click.Choice(ROLES), default="admin", show_default=True
)
@click.password_option()
def cli_create_user(name: str, email: str, role: str, password: str):
    """Create an account without going through /register."""
    init_db()
    try:
        user_id = create_user(
            get_db(), name=name.strip(), email=email.strip(), password=password, role=role
        )
    except sqlite3.IntegrityError:
        raise click.ClickException(f"{email} is already registered.") from None
    click.secho(f"\n✅  User #{user_id} created.", fg="green")


###############################################################################
# Posts + tags
###############################################################################
POST_SELECT = """
    SELECT  p.*,
            json_group_array(t.name) AS tag_names
    FROM post p
    LEFT JOIN tagmap tm ON tm.post_id = p.id
    LEFT JOIN tag    t  ON t.id       = tm.tag_id
"""


def parse_tags(raw: str | None) -> list[str]:
    """
    Split a comma-separated tag field into **lower-cased** names,
    dropping blanks and repeats (first occurrence wins).
    """
    out: list[str] = []
    for part in (raw or "").split(","):
        name = part.strip().lower()
        if name and name not in out:
            out.append(name)
    return out


def _post_from_row(row) -> dict:
    post = dict(row)
    names = json.loads(post.pop("tag_names", None) or "[]")
    post["tags"] = sorted(n for n in names if n is not None)
    post["edited"] = bool(post["edited"])
    return post


def create_post(
    image_key: str,
    year: int,
    user_id: int,
    *,
    title: str = "",
    description: str = "",
    db,
) -> int:
    now = utc_now().isoformat()
    cur = db.execute(
        """INSERT INTO post
                  (image_key, year, created_at, updated_at, user_id, title, description)
           VALUES (?,?,?,?,?,?,?)""",
        (image_key, year, now, now, user_id, title, description),
    )
    return cur.lastrowid


def create_tags(post_id: int, tags: list[str], *, db) -> None:
    for name in tags:
        db.execute("INSERT OR IGNORE INTO tag (name) VALUES (?)", (name,))
        tag_id = db.execute("SELECT id FROM tag WHERE name=?", (name,)).fetchone()["id"]
        db.execute(
            "INSERT OR IGNORE INTO tagmap (post_id, tag_id) VALUES (?,?)",
            (post_id, tag_id),
        )


def _drop_orphan_tags(db) -> None:
    db.execute("DELETE FROM tag WHERE id NOT IN (SELECT DISTINCT tag_id FROM tagmap)")


def update_tags(post_id: int, tags: list[str], *, db) -> None:
    """Replace the tag set of *post_id*."""
    db.execute("DELETE FROM tagmap WHERE post_id=?", (post_id,))
    create_tags(post_id, tags, db=db)
    _drop_orphan_tags(db)


def get_post(post_id: int, *, db) -> dict | None:
    row = db.execute(f"{POST_SELECT} WHERE p.id=? GROUP BY p.id", (post_id,)).fetchone()
    return _post_from_row(row) if row else None


def update_post(post: dict, *, db) -> None:
    db.execute(
        """UPDATE post
              SET updated_at=?, edited=1, title=?, description=?, year=?
            WHERE id=? AND user_id=?""",
        (
            utc_now().isoformat(),
            post["title"],
            post["description"],
            post["year"],
            post["id"],
            post["user_id"],
        ),
    )


def delete_post(post_id: int, user_id: int, *, db) -> str | None:
    """
    Delete a post owned by *user_id*, tag mappings first.
    Returns the image key of the deleted post, or ``None`` if nothing matched.
    """
    row = db.execute(
        "SELECT image_key FROM post WHERE id=? AND user_id=?", (post_id, user_id)
    ).fetchone()
    if row is None:
        return None
    db.execute("DELETE FROM tagmap WHERE post_id=?", (post_id,))
    db.execute("DELETE FROM post WHERE id=? AND user_id=?", (post_id, user_id))
    _drop_orphan_tags(db)
    return row["image_key"]


def list_tag_reps(*, db) -> list[dict]:
    """The most recent post (highest id) of every tag, ordered by tag name."""
    try:
        rows = db.execute(
            """
            SELECT  p.id        AS id,
                    p.image_key AS image_key,
                    t.name      AS tag
            FROM (
                SELECT tag_id, MAX(post_id) AS last_post_id
                  FROM tagmap
              GROUP BY tag_id
            ) AS latest
            JOIN tag  t ON t.id = latest.tag_id
            JOIN post p ON p.id = latest.last_post_id
            ORDER BY t.name
            """
        ).fetchall()
    except sqlite3.Error as exc:
        raise RetrievalError("could not list tags") from exc
    return [dict(r) for r in rows]


def list_years(tag: str, *, db) -> list[int]:
    """Distinct post years, newest first; restricted to *tag* when given."""
    try:
        rows = db.execute(
            """
            SELECT DISTINCT p.year
              FROM post p
             WHERE ? = ''
                OR EXISTS (SELECT 1
                             FROM tagmap tm
                             JOIN tag t ON t.id = tm.tag_id
                            WHERE tm.post_id = p.id AND t.name = ?)
          ORDER BY p.year DESC
            """,
            (tag, tag),
        ).fetchall()
    except sqlite3.Error as exc:
        raise RetrievalError("could not list years") from exc
    return [r["year"] for r in rows]


def content_hash(stream) -> str:
    h = hashlib.sha1()
    for chunk in iter(lambda: stream.read(HASH_CHUNK), b""):
        h.update(chunk)
    return h.hexdigest()


def store_image(
    fh,
    *,
    year: int,
    tags: list[str],
    user_id: int,
    title: str = "",
    description: str = "",
    store: ObjectStore,
    db,
) -> int:
    """
    Put one uploaded file into the object store under ``<year>/<sha1><ext>``
    and record it as a post.  The caller commits; a failure rolls the
    pending transaction back.
    """
    mime = (fh.mimetype or "").lower()
    if mime not in IMAGE_MIMES:
        raise UploadError("Only image uploads are allowed.")

    ext = Path(secure_filename(fh.filename or "")).suffix.lower()
    fh.stream.seek(0)
    key = f"{year}/{content_hash(fh.stream)}{ext}"
    fh.stream.seek(0)

    if db.execute("SELECT 1 FROM post WHERE image_key=?", (key,)).fetchone():
        raise DuplicateImageError(f"{fh.filename} is already in the archive.")

    # row first: a lost race on image_key must not leave an object behind
    try:
        post_id = create_post(
            key, year, user_id, title=title, description=description, db=db
        )
        create_tags(post_id, tags, db=db)
    except sqlite3.IntegrityError:
        db.rollback()
        raise DuplicateImageError(f"{fh.filename} is already in the archive.") from None

    try:
        store.put(key, fh.stream, mime)
    except StorageError:
        db.rollback()
        raise
    app.logger.info("stored %s as post %s", key, post_id)
    return post_id


###############################################################################
# Pagination
###############################################################################
class PageRequest(NamedTuple):
    limit: int = LIMIT_DEFAULT
    offset: int = 0
    year: int = 0  # 0 = every year
    tag: str = ""  # "" = every tag


def normalize_limit(n: int) -> int:
    """Nearest allowed page size; ties go to the smaller one."""
    result = LIMIT_CHOICES[0]
    for choice in LIMIT_CHOICES:
        if abs(choice - n) < abs(result - n):
            result = choice
    return result


def floor_clamp(offset: int, limit: int) -> int:
    """Clamp *offset* to >= 0 and round it down to a multiple of *limit*."""
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")
    return max(offset, 0) // limit * limit


def nav_offsets(limit: int, offset: int) -> tuple[int, int]:
    """Return the ``(prev, next)`` page offsets around *offset*."""
    offset = floor_clamp(offset, limit)
    return floor_clamp(offset - limit, limit), floor_clamp(offset + limit, limit)


def _parse_int(name: str, raw: str, page: PageRequest | None = None) -> int:
    """Parse a 64-bit integer parameter; anything else is a `ParameterError`."""
    if not INT_RE.fullmatch(raw):
        raise ParameterError(name, raw, page=page)
    value = int(raw)
    if not INT_MIN <= value <= INT_MAX:
        raise ParameterError(name, raw, page=page)
    return value


def interpret_query(args) -> PageRequest:
    """
    Turn ``request.args`` into a `PageRequest`.

    • ``limit`` snaps to one of `LIMIT_CHOICES` (default 12)
    • ``offset`` floors to a page boundary of the *snapped* limit
    • ``year`` is taken as-is, ``tag`` is the last value given

    A present but non-integer ``limit``/``offset``/``year`` raises
    `ParameterError`; its ``page`` holds whatever was parsed before.
    """
    page = PageRequest()

    raw = args.get("limit")
    if raw is not None:
        page = page._replace(limit=normalize_limit(_parse_int("limit", raw, page)))

    raw = args.get("offset")
    if raw is not None:
        page = page._replace(
            offset=floor_clamp(_parse_int("offset", raw, page), page.limit)
        )

    raw = args.get("year")
    if raw is not None:
        page = page._replace(year=_parse_int("year", raw, page))

    tags = args.getlist("tag")
    if tags:
        page = page._replace(tag=tags[-1])
    return page


def fetch_page(tag: str, year: int, limit: int, offset: int, *, db):
    """
    Fetch one archive page, newest update first.

    One extra row past *limit* is requested so the last page can be
    recognised without a COUNT query.  Returns ``(posts, is_first, is_last)``.
    """
    where, having, params = "", "", []
    if year:
        where = "WHERE p.year = ?"
        params.append(year)
    if tag:
        having = "HAVING COUNT(CASE WHEN t.name = ? THEN 1 END) >= 1"
        params.append(tag)
    sql = f"""
        {POST_SELECT}
        {where}
        GROUP BY p.id
        {having}
        ORDER BY p.updated_at DESC, p.id DESC
        LIMIT ? OFFSET ?
    """
    params += [limit + 1, offset]

    try:
        rows = db.execute(sql, params).fetchall()
    except sqlite3.Error as exc:
        raise RetrievalError("error retrieving posts from the database") from exc

    posts = [_post_from_row(r) for r in rows]
    is_last = len(posts) <= limit
    if not is_last:
        posts = posts[:limit]
    return posts, offset == 0, is_last


def build_nav_links(limit: int, offset: int, year: int, tag: str) -> tuple[str, str, str]:
    """
    Query strings for the current, previous and next page, e.g.
    ``limit=12&offset=24&year=2022&tag=kermis``.
    """
    offset = floor_clamp(offset, limit)
    prev_offset, next_offset = nav_offsets(limit, offset)

    filters = ""
    if year:
        filters += f"&year={year}"
    if tag:
        filters += f"&tag={quote_plus(tag)}"

    def link(o: int) -> str:
        return f"limit={limit}&offset={o}{filters}"

    return link(offset), link(prev_offset), link(next_offset)


###############################################################################
# Templates + Views
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'photoarchive' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}body{font-size:1.8rem;line-height:1.618;max-width:60em;margin:auto;color:#c9c9c9;background-color:#222222;padding:13px}
h1,h2,h3{line-height:1.1;font-weight:700;margin-top:3rem;margin-bottom:1.5rem}a{color:#ffffff;text-decoration:underline;text-decoration-color:transparent;text-underline-offset:.18em}a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}
img{height:auto;max-width:100%}
textarea,select,input{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background-color:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box}textarea{width:100%}
button,input[type=submit]{padding:5px 10px;background-color:#ffffff;color:#222222;border:1px solid #ffffff;border-radius:1px;cursor:pointer}
label{display:block;margin-bottom:.5rem;font-weight:600}
.nav-row{display:flex;gap:1.25rem;flex-wrap:wrap;font-size:.9em;margin-bottom:1rem}
nav a[aria-current=page]{color:#c9c9c9;text-decoration-color:currentColor}
.grid{display:grid;grid-template-columns:repeat(auto-fill,minmax(16rem,1fr));gap:1.5rem}
.card{background:#2a2a2a;border:1px solid #444;border-radius:6px;padding:.75rem}
.card small{color:#aaa}
.pill{display:inline-block;padding:.1em .6em;margin:0 .3em .3em 0;background:#444;color:#fff;border-radius:1em;font-size:.75em;text-decoration:none}
.pager{margin-top:2em;padding-top:1em;border-top:1px solid #444;display:flex;justify-content:space-between;font-size:.9em}
</style>
<body>
<div class="container" style="margin:3rem auto;">
    <h1 style="margin:0 0 1rem 0;">
        <a href="{{ url_for('index') }}" style="text-decoration:none;">{{ title or 'photoarchive' }}</a>
    </h1>
    <nav aria-label="Primary" class="nav-row">
        <a href="{{ url_for('index') }}"
        {% if request.endpoint=='index' %}aria-current="page"{% endif %}>Tags</a>
        <a href="{{ url_for('archive') }}"
        {% if request.endpoint=='archive' %}aria-current="page"{% endif %}>Archive</a>
        {% if current_user_id() %}
            <a href="{{ url_for('upload') }}"
            {% if request.endpoint=='upload' %}aria-current="page"{% endif %}>Upload</a>
            <a href="{{ url_for('logout') }}">Log&nbsp;out</a>
        {% else %}
            <a href="{{ url_for('login') }}"
            {% if request.endpoint=='login' %}aria-current="page"{% endif %}>Login</a>
            <a href="{{ url_for('register') }}"
            {% if request.endpoint=='register' %}aria-current="page"{% endif %}>Register</a>
        {% endif %}
    </nav>
    <main id="main-content" role="main">
"""

TEMPL_EPILOG = """
    </main>
    <footer style="margin-top:1.875em;padding-top:1.5em;font-size:.8em;color:#888;display:flex;justify-content:space-between;border-top:1px solid #444;">
        <span>photoarchive v{{ version }}</span>
        <a href="{{ url_for('contact') }}">Contact</a>
    </footer>
</div>
</body>
</html>
"""


###############################################################################
# Authentication
###############################################################################
def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            ip = client_ip()

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests. Try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def client_ip() -> str:
    """Return best-effort client IP after ProxyFix."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    if current_user_id() is not None:
        return redirect(url_for("index"))

    if request.method == "POST":
        email = request.form.get("email", "").strip()
        user_id = authenticate(email, request.form.get("password", ""), db=get_db())
        if user_id is None:
            app.logger.info("failed login for %s from %s", email, client_ip())
            return render_template_string(
                TEMPL_LOGIN,
                title=SITE_NAME,
                error="Login failed. Please try again.",
                email=email,
            ), 403
        start_session(user_id)
        app.logger.info("user %s logged in", user_id)
        return redirect(url_for("upload"))

    return render_template_string(TEMPL_LOGIN, title=SITE_NAME, error=None, email="")


TEMPL_LOGIN = wrap("""
{% block body %}
<hr>
{% if error %}<p role="alert">{{ error }}</p>{% endif %}
<form method="post">
  <label for="email">E-mail</label>
  <input id="email" name="email" type="email" autocomplete="username"
         value="{{ email }}" style="width:100%;">
  <label for="password">Password</label>
  <input id="password" name="password" type="password"
         autocomplete="current-password" style="width:100%;">
  <button type="submit">Sign&nbsp;in</button>
</form>
{% endblock %}
""")


@app.route("/register", methods=["GET", "POST"])
def register():
    if current_user_id() is not None:
        return redirect(url_for("index"))

    if request.method == "POST":
        name, email, password, role = verify_registration(request.form)
        try:
            user_id = create_user(
                get_db(), name=name, email=email, password=password, role=role
            )
        except sqlite3.IntegrityError:
            raise RegistrationError("User could not be created.") from None
        app.logger.info("registered user %s (%s)", user_id, role)
        return redirect(url_for("login"))

    return render_template_string(TEMPL_REGISTER, title=SITE_NAME, roles=ROLES)


TEMPL_REGISTER = wrap("""
{% block body %}
<hr>
<form method="post">
  <label for="name">Name</label>
  <input id="name" name="name" style="width:100%;">
  <label for="email">E-mail</label>
  <input id="email" name="email" type="email" style="width:100%;">
  <label for="role">Role</label>
  <select id="role" name="role">
    {% for r in roles %}<option value="{{ r }}">{{ r }}</option>{% endfor %}
  </select>
  <label for="password">Password</label>
  <input id="password" name="password" type="password" style="width:100%;">
  <label for="repassword">Repeat password</label>
  <input id="repassword" name="repassword" type="password" style="width:100%;">
  <button type="submit">Register</button>
</form>
{% endblock %}
""")


@app.route("/logout")
def logout():
    if current_user_id() is None:
        return redirect(url_for("login"))
    end_session()
    return redirect(url_for("login"))


###############################################################################
# Resources
###############################################################################
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ anonymous ⇒ allowed (login / register forms)
    if current_user_id() is None:
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


@app.route("/blob/<path:key>")
def blob(key):
    found = object_store().open(key)
    if found is None:
        abort(404)
    body, length = found

    def chunks():
        try:
            for chunk in iter(lambda: body.read(HASH_CHUNK), b""):
                yield chunk
        finally:
            body.close()

    headers = {"Cache-Control": "public, max-age=86400"}
    if length is not None:
        headers["Content-Length"] = str(length)
    mime = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(chunks(), mimetype=mime, headers=headers)


@app.route("/contact")
def contact():
    return render_template_string(
        TEMPL_CONTACT, title=SITE_NAME, email=app.config.get("CONTACT_EMAIL")
    )


TEMPL_CONTACT = wrap("""
{% block body %}
<hr>
<h2 style="margin-top:0">Contact</h2>
{% if email %}
  <p>Questions about a photo, or want one removed?
     Write to <a href="mailto:{{ email }}">{{ email }}</a>.</p>
{% else %}
  <p>Questions about a photo? Ask whoever runs this archive.</p>
{% endif %}
{% endblock %}
""")


###############################################################################
# Index + Archive
###############################################################################
@app.route("/")
def index():
    reps = list_tag_reps(db=get_db())
    return render_template_string(TEMPL_INDEX, reps=reps, title=SITE_NAME)


TEMPL_INDEX = wrap("""{% block body %}
<hr>
<div class="grid">
{% for r in reps %}
    <a class="card" href="{{ url_for('archive', tag=r.tag) }}" style="text-decoration:none;">
        <img src="{{ url_for('blob', key=r.image_key) }}" alt="{{ r.tag }}" loading="lazy">
        <div class="pill">{{ r.tag }}</div>
    </a>
{% else %}
    <p>No photos yet.</p>
{% endfor %}
</div>
{% endblock %}
""")


@app.route("/archive")
def archive():
    page = interpret_query(request.args)
    db = get_db()
    posts, first, last = fetch_page(
        page.tag, page.year, page.limit, page.offset, db=db
    )
    years = list_years(page.tag, db=db)
    current, prev_link, next_link = build_nav_links(
        page.limit, page.offset, page.year, page.tag
    )
    return render_template_string(
        TEMPL_ARCHIVE,
        posts=posts,
        page=page,
        first=first,
        last=last,
        current=current,
        prev_link=prev_link,
        next_link=next_link,
        years=years,
        user_id=current_user_id(),
        title=SITE_NAME,
    )


TEMPL_ARCHIVE = wrap("""{% block body %}
<hr>
<nav aria-label="Years" class="nav-row">
    <a href="{{ url_for('archive', limit=page.limit, tag=page.tag or None) }}"
    {% if not page.year %}aria-current="page"{% endif %}>All</a>
    {% for y in years %}
        <a href="{{ url_for('archive', limit=page.limit, year=y, tag=page.tag or None) }}"
        {% if y == page.year %}aria-current="page"{% endif %}>{{ y }}</a>
    {% endfor %}
</nav>
<nav aria-label="Page size" class="nav-row">
    {% for n in limit_choices %}
        <a href="{{ url_for('archive', limit=n, year=page.year or None, tag=page.tag or None) }}"
        {% if n == page.limit %}aria-current="page"{% endif %}>{{ n }}</a>
    {% endfor %}
    {% if page.tag %}<span class="pill">#{{ page.tag }}</span>{% endif %}
</nav>
<div class="grid">
{% for p in posts %}
    <article class="card">
        <a href="{{ url_for('blob', key=p.image_key) }}">
            <img src="{{ url_for('blob', key=p.image_key) }}" alt="{{ p.title or p.image_key }}" loading="lazy">
        </a>
        {% if p.title %}<h3 style="margin:.5rem 0;">{{ p.title }}</h3>{% endif %}
        {% if p.description %}{{ p.description|md }}{% endif %}
        <div>
        {% for t in p.tags %}
            <a class="pill" href="{{ url_for('archive', limit=page.limit, tag=t) }}">{{ t }}</a>
        {% endfor %}
        </div>
        <small>{{ p.year }} · {{ p.updated_at|ts }}{% if p.edited %} · edited{% endif %}</small>
        {% if user_id and user_id == p.user_id %}
        <div style="display:flex;gap:.6rem;margin-top:.5rem;">
            <a href="{{ url_for('update', post_id=p.id) }}">Edit</a>
            <form method="post" action="{{ url_for('delete', post_id=p.id) }}" style="margin:0;">
                <input type="hidden" name="csrf" value="{{ csrf_token() }}">
                <button type="submit">Delete</button>
            </form>
        </div>
        {% endif %}
    </article>
{% else %}
    <p>No photos match.</p>
{% endfor %}
</div>
<nav aria-label="Pages" class="pager">
    <span>{% if not first %}<a rel="prev" href="{{ url_for('archive') }}?{{ prev_link }}">← Newer</a>{% endif %}</span>
    <span>{% if not last %}<a rel="next" href="{{ url_for('archive') }}?{{ next_link }}">Older →</a>{% endif %}</span>
</nav>
{% endblock %}
""")


###############################################################################
# Upload / Update / Delete
###############################################################################
def _form_year() -> int:
    return _parse_int("year", request.form.get("year", "").strip())


@app.route("/upload", methods=["GET", "POST"])
def upload():
    user_id = current_user_id()
    if user_id is None:
        return redirect(url_for("login"))

    if request.method == "POST":
        year = _form_year()
        tags = parse_tags(request.form.get("tags"))
        files = [f for f in request.files.getlist("file") if f.filename]
        if not files:
            raise UploadError("No file selected.")

        store = object_store()
        db = get_db()
        for f in files:
            store_image(
                f,
                year=year,
                tags=tags,
                user_id=user_id,
                title=request.form.get("title", "").strip(),
                description=request.form.get("description", "").strip(),
                store=store,
                db=db,
            )
            db.commit()
        return redirect(url_for("archive", year=year))

    return render_template_string(
        TEMPL_UPLOAD, current_year=utc_now().year, title=SITE_NAME
    )


TEMPL_UPLOAD = wrap("""
{% block body %}
<hr>
<form method="post" enctype="multipart/form-data">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="file">Images</label>
  <input id="file" name="file" type="file" accept="image/*" multiple required>
  <label for="year">Year</label>
  <input id="year" name="year" type="number" value="{{ current_year }}" required>
  <label for="tags">Tags <small>(comma separated)</small></label>
  <input id="tags" name="tags" style="width:100%;">
  <label for="title">Title</label>
  <input id="title" name="title" style="width:100%;">
  <label for="description">Description</label>
  <textarea id="description" name="description" rows="4"></textarea>
  <button type="submit">Upload</button>
</form>
{% endblock %}
""")


@app.route("/update/<int:post_id>", methods=["GET", "POST"])
def update(post_id):
    user_id = current_user_id()
    if user_id is None:
        return redirect(url_for("login"))

    db = get_db()
    post = get_post(post_id, db=db)
    if post is None:
        abort(404)
    if post["user_id"] != user_id:
        abort(403)

    if request.method == "POST":
        post["year"] = _form_year()
        post["title"] = request.form.get("title", "").strip()
        post["description"] = request.form.get("description", "").strip()
        update_post(post, db=db)
        update_tags(post_id, parse_tags(request.form.get("tags")), db=db)
        db.commit()
        return redirect(url_for("archive", year=post["year"]))

    return render_template_string(
        TEMPL_UPDATE, post=post, current_year=utc_now().year, title=SITE_NAME
    )


TEMPL_UPDATE = wrap("""
{% block body %}
<hr>
<img src="{{ url_for('blob', key=post.image_key) }}" alt="{{ post.title or post.image_key }}"
     style="max-height:24rem;">
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="year">Year</label>
  <input id="year" name="year" type="number" value="{{ post.year }}" max="{{ current_year }}" required>
  <label for="tags">Tags <small>(comma separated)</small></label>
  <input id="tags" name="tags" value="{{ post.tags|join(', ') }}" style="width:100%;">
  <label for="title">Title</label>
  <input id="title" name="title" value="{{ post.title }}" style="width:100%;">
  <label for="description">Description</label>
  <textarea id="description" name="description" rows="4">{{ post.description }}</textarea>
  <button type="submit">Save</button>
</form>
{% endblock %}
""")


@app.route("/delete/<int:post_id>", methods=["POST"])
def delete(post_id):
    user_id = current_user_id()
    if user_id is None:
        return redirect(url_for("index"))

    db = get_db()
    key = delete_post(post_id, user_id, db=db)
    if key is None:
        abort(403)
    db.commit()
    object_store().delete(key)
    app.logger.info("deleted post %s (%s)", post_id, key)
    return redirect(url_for("index"))


###############################################################################
# Error pages
###############################################################################
TEMPL_ERROR = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">{{ heading }}</h2>
  <p>{{ message }}
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")


def _error_page(heading: str, message: str, status: int):
    return render_template_string(
        TEMPL_ERROR, heading=heading, message=message, title=SITE_NAME
    ), status


@app.errorhandler(ArchiveError)
def archive_error(exc):
    if exc.status >= 500:
        app.logger.error("%s on %s", exc, request.path, exc_info=exc)
    return _error_page(exc.heading, str(exc), exc.status)


@app.errorhandler(403)
def forbidden(exc):
    return _error_page("Permission denied", "You may not do that.", 403)


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return _error_page("Page not found", "The URL you asked for doesn’t exist.", 404)


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.
    • With debug on, Flask bypasses this handler and shows the traceback.
    """
    return _error_page(
        "Internal Server Error", "Our fault, not yours. Please try again.", 500
    )


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    with app.app_context():
        init_db()
    app.run(debug=True)
