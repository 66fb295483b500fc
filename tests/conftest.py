"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import uuid
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from borrd.press import app, create_user, get_db, init_db, issue_token


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


@pytest.fixture
def db(client):
    """The connection of the test's own app context (always commit writes)."""
    return get_db()


def make_user(db) -> dict:
    """A fresh account with a random email so tests never share data."""
    user = create_user(f"{uuid.uuid4().hex}@example.com", "secret123", db=db)
    return {**user, "token": issue_token(user["id"])}


@pytest.fixture
def user(db) -> dict:
    return make_user(db)


@pytest.fixture
def user_factory(db):
    """Call it to get another independent account (for cross-owner checks)."""
    return lambda: make_user(db)


@pytest.fixture
def auth(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {user['token']}"}


@pytest.fixture(autouse=True, scope="session")
def _ticking_clock():
    """
    Patch borrd.press.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from borrd import press  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(press, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
