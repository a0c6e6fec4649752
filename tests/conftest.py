import copy
import re
import sys
import threading
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

import psycopg2  # noqa: E402
from psycopg2 import errors  # noqa: E402
from psycopg2.extras import Json  # noqa: E402

from config.settings import PipelineSettings  # noqa: E402
from db import episode_store as es  # noqa: E402
from db.models import EPISODE_COLUMNS  # noqa: E402
from engine.governor import ResourceGovernor  # noqa: E402

_UPDATE_RE = re.compile(r"SET (.*) WHERE", re.S)
_ASSIGNMENT_RE = re.compile(r'"(\w+)" = %s')


def _unwrap(value):
    if isinstance(value, Json):
        return copy.deepcopy(value.adapted)
    return value


class FakeDatabase:
    """In-memory stand-in for the Episodes/Guests tables.

    One transaction runs at a time (a global lock taken on first statement,
    released on commit/rollback), which is how the real tables behave for the
    conflicting writes these tests exercise.
    """

    def __init__(self):
        self.episodes = {}
        self.guests = {}
        self.lock = threading.RLock()
        self.ignored_update_columns = set()
        self.lock_conflicts = 0
        self.dropped_connections = 0
        self.connections_opened = 0
        self.statements = []

    def live(self):
        return [row for row in self.episodes.values() if row.get("deletedAt") is None]

    def _oldest(self, rows):
        rows = sorted(rows, key=lambda row: row["createdAt"])
        return dict(rows[0]) if rows else None

    def _maybe_conflict(self):
        if self.lock_conflicts > 0:
            self.lock_conflicts -= 1
            raise errors.LockNotAvailable("could not obtain lock on row in relation \"Episodes\"")

    def execute(self, sql, params):
        self.statements.append(sql)
        params = tuple(params or ())
        if sql == es._SET_LOCK_TIMEOUT:
            return {"set_config": params[0]}
        if sql in (es._SELECT_EPISODE, es._LOCK_EPISODE):
            if sql == es._LOCK_EPISODE:
                self._maybe_conflict()
            row = self.episodes.get(params[0])
            return dict(row) if row else None
        if sql in (es._LOCK_BY_TITLE_CHANNEL, es._FIND_BY_TITLE_CHANNEL):
            title, channel = params
            row = self._oldest(r for r in self.live() if r["episodeTitle"] == title and r["channelId"] == channel)
            if row and sql == es._LOCK_BY_TITLE_CHANNEL:
                return {"episodeId": row["episodeId"]}
            return row
        if sql in (es._LOCK_BY_SOURCE_ID, es._FIND_BY_SOURCE_ID):
            row = self._oldest(r for r in self.live() if r["sourceVideoId"] == params[0])
            if row and sql == es._LOCK_BY_SOURCE_ID:
                return {"episodeId": row["episodeId"]}
            return row
        if sql == es._INSERT_EPISODE:
            row = {column: _unwrap(value) for (_attr, column), value in zip(EPISODE_COLUMNS, params)}
            for other in self.live():
                if other["episodeTitle"] == row["episodeTitle"] and other["channelId"] == row["channelId"]:
                    raise errors.UniqueViolation("duplicate key value violates uq_episodes_title_channel_live")
                if row["sourceVideoId"] and other["sourceVideoId"] == row["sourceVideoId"]:
                    raise errors.UniqueViolation("duplicate key value violates uq_episodes_source_video_live")
            self.episodes[row["episodeId"]] = row
            return None
        if sql.startswith("UPDATE "):
            columns = _ASSIGNMENT_RE.findall(_UPDATE_RE.search(sql).group(1))
            episode_id = params[-1]
            row = self.episodes.get(episode_id)
            if row is None:
                return None
            for column, value in zip(columns, params[:-1]):
                if column in self.ignored_update_columns:
                    continue
                row[column] = _unwrap(value)
            return None
        if sql == es._SELECT_GUEST_BY_NAME:
            wanted = params[0].lower()
            for guest in self.guests.values():
                if guest["guestName"].lower() == wanted:
                    return dict(guest)
            return None
        if sql == es._INSERT_GUEST:
            guest_id, name, description, image, language, created, updated = params
            if any(g["guestName"] == name for g in self.guests.values()):
                return None
            self.guests[guest_id] = {
                "guestId": guest_id,
                "guestName": name,
                "guestDescription": description,
                "guestImage": image,
                "guestLanguage": language,
                "createdAt": created,
                "updatedAt": updated,
            }
            return None
        raise AssertionError(f"unexpected SQL: {sql}")


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self._result = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        if self.conn.closed:
            raise psycopg2.InterfaceError("connection already closed")
        if self.conn.db.dropped_connections > 0:
            self.conn.db.dropped_connections -= 1
            self.conn.drop()
            raise psycopg2.OperationalError("server closed the connection unexpectedly")
        self.conn.begin()
        self._result = self.conn.db.execute(sql, params)

    def fetchone(self):
        return self._result


class FakeConnection:
    def __init__(self, db):
        self.db = db
        db.connections_opened += 1
        self.closed = 0
        self.isolation_level = None
        self.commits = 0
        self.rollbacks = 0
        self._snapshot = None

    def set_isolation_level(self, level):
        self.isolation_level = level

    def cursor(self):
        return FakeCursor(self)

    def begin(self):
        if self._snapshot is None:
            self.db.lock.acquire()
            self._snapshot = (copy.deepcopy(self.db.episodes), copy.deepcopy(self.db.guests))

    def _end(self):
        if self._snapshot is not None:
            self._snapshot = None
            self.db.lock.release()

    def commit(self):
        if self.closed:
            raise psycopg2.InterfaceError("connection already closed")
        self.commits += 1
        self._end()

    def rollback(self):
        if self.closed:
            raise psycopg2.InterfaceError("connection already closed")
        self.rollbacks += 1
        if self._snapshot is not None:
            self.db.episodes, self.db.guests = self._snapshot
        self._end()

    def drop(self):
        """Server side went away: its open transaction is rolled back."""
        if self._snapshot is not None:
            self.db.episodes, self.db.guests = self._snapshot
        self._end()
        self.closed = 2

    def close(self):
        self.closed = 1


class FakePool:
    def __init__(self, db, minconn, maxconn):
        self.db = db
        self.minconn = minconn
        self.maxconn = maxconn
        self.checked_out = 0
        self.discarded = 0
        self.closed = False

    def getconn(self):
        self.checked_out += 1
        return FakeConnection(self.db)

    def putconn(self, conn, close=False):
        self.checked_out -= 1
        if close:
            self.discarded += 1

    def closeall(self):
        self.closed = True


def make_settings(tmp_path=None, **overrides):
    values = {
        "database_url": "postgresql://castforge@localhost/test",
        "retry_base_delay": 0,
        "s3_bucket": "episodes-bucket",
    }
    if tmp_path is not None:
        values["downloads_dir"] = str(tmp_path / "downloads")
        values["log_dir"] = str(tmp_path / "logs")
    values.update(overrides)
    return PipelineSettings(**values)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def governor():
    return ResourceGovernor(cpu_count=2, sleep=lambda seconds: None)


@pytest.fixture
def make_store(fake_db, governor):
    opened = []

    def _make(mode="pool", **overrides):
        settings = make_settings(db_connection_mode=mode, **overrides)
        store = es.EpisodeStore(
            settings,
            governor,
            connect=lambda **kwargs: FakeConnection(fake_db),
            pool_factory=lambda minconn, maxconn, **kwargs: FakePool(fake_db, minconn, maxconn),
            sleep=lambda seconds: None,
        )
        store.open()
        opened.append(store)
        return store

    yield _make
    for store in opened:
        store.close()


@pytest.fixture
def settings_factory(tmp_path):
    return lambda **overrides: make_settings(tmp_path, **overrides)
