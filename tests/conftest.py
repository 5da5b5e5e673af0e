"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import io
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from photoarchive.archive import MemorySessionStore, app, get_db, init_db

CSRF = "test-token"          # shared constant so the token matches the session


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
    )
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _fresh_state(monkeypatch: MonkeyPatch) -> None:
    """Empty tables and a new session store for every test."""
    with app.app_context():
        get_db().executescript(
            "DELETE FROM tagmap; DELETE FROM tag; DELETE FROM post; DELETE FROM user;"
        )
    monkeypatch.setitem(app.extensions, "session_store", MemorySessionStore())


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch photoarchive.archive.utc_now for the whole test session so every
    call returns an ever-increasing timestamp: later posts sort first.
    """
    from photoarchive import archive  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(archive, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


# ───────────────────────── object store ───────────────────────────────
class FakeObjectStore:
    """In-memory stand-in with the same surface as `ObjectStore`."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}

    def put(self, key, stream, content_type):
        self.objects[key] = (stream.read(), content_type)

    def open(self, key):
        if key not in self.objects:
            return None
        data, _ = self.objects[key]
        return io.BytesIO(data), len(data)

    def delete(self, key):
        self.objects.pop(key, None)


@pytest.fixture
def store(monkeypatch: MonkeyPatch) -> FakeObjectStore:
    fake = FakeObjectStore()
    monkeypatch.setitem(app.extensions, "object_store", fake)
    return fake


# ───────────────────────── accounts ───────────────────────────────────
@pytest.fixture
def make_user():
    """Factory: insert an account and return its id."""
    from photoarchive.archive import create_user

    counter = itertools.count(1)

    def _make(email: str | None = None, password: str = "Password123",
              role: str = "user") -> int:
        email = email or f"user{next(counter)}@example.com"
        with app.app_context():
            return create_user(
                get_db(), name="Test User", email=email, password=password, role=role
            )

    return _make


@pytest.fixture
def login_as(client):
    """Put a session token for *user_id* into the client's cookie."""
    def _login(user_id: int) -> str:
        token = f"test-session-{user_id}"
        app.extensions["session_store"].set(token, user_id)
        with client.session_transaction() as sess:
            sess["sid"] = token
            sess["csrf"] = CSRF
        return token

    return _login
