"""In-memory stand-ins for a psycopg async pool.

The fake understands only the handful of statements the session store
issues and raises real ``psycopg.errors`` classes, so the recovery path
is exercised the same way a live server would trigger it.
"""

import json
import re
from contextlib import asynccontextmanager

import pytest
from psycopg import errors

_CREATE = re.compile(r"^CREATE TABLE IF NOT EXISTS (?P<table>[\w.$]+) \(")
_SELECT_ONE = re.compile(r"^SELECT data FROM (?P<table>[\w.$]+) WHERE sid = %s LIMIT 1$")
_SELECT_ALL = re.compile(r"^SELECT data FROM (?P<table>[\w.$]+)$")
_COUNT = re.compile(r"^SELECT COUNT\(\*\) FROM (?P<table>[\w.$]+)$")
_UPSERT = re.compile(r"^INSERT INTO (?P<table>[\w.$]+) \(sid, data, expires\) VALUES \(%s, %s, %s\) ON CONFLICT \(sid\)")
_TOUCH = re.compile(r"^UPDATE (?P<table>[\w.$]+) SET expires = %s WHERE sid = %s$")
_DELETE_ONE = re.compile(r"^DELETE FROM (?P<table>[\w.$]+) WHERE sid = %s$")
_DELETE_ALL = re.compile(r"^DELETE FROM (?P<table>[\w.$]+)$")


class FakeDatabase:
    def __init__(self, *, tables=(), create_errors=(), ignore_create=False):
        self.tables = {name: {} for name in tables}
        self.statements = []
        # exceptions raised by successive CREATE TABLE statements
        self.create_errors = list(create_errors)
        # when set, CREATE TABLE "succeeds" without creating anything
        self.ignore_create = ignore_create
        self.fail_next = []

    def rows(self, table):
        return self.tables[table]

    def run(self, query, params=()):
        query = " ".join(query.split())
        self.statements.append(query)

        match = _CREATE.match(query)
        if match:
            if self.create_errors:
                error = self.create_errors.pop(0)
                if isinstance(error, (errors.DuplicateTable, errors.UniqueViolation)):
                    # another session created the table first
                    self.tables.setdefault(match["table"], {})
                raise error
            if not self.ignore_create:
                self.tables.setdefault(match["table"], {})
            return []

        if self.fail_next:
            raise self.fail_next.pop(0)

        for pattern, handler in (
            (_SELECT_ONE, self._select_one),
            (_SELECT_ALL, self._select_all),
            (_COUNT, self._count),
            (_UPSERT, self._upsert),
            (_TOUCH, self._touch),
            (_DELETE_ONE, self._delete_one),
            (_DELETE_ALL, self._delete_all),
        ):
            match = pattern.match(query)
            if match:
                table = self.tables.get(match["table"])
                if table is None:
                    raise errors.UndefinedTable(f'relation "{match["table"]}" does not exist')
                return handler(table, params)
        raise errors.SyntaxError(f"unexpected statement: {query}")

    @staticmethod
    def _select_one(table, params):
        (sid,) = params
        return [(table[sid]["data"],)] if sid in table else []

    @staticmethod
    def _select_all(table, params):
        return [(row["data"],) for row in table.values()]

    @staticmethod
    def _count(table, params):
        return [(len(table),)]

    @staticmethod
    def _upsert(table, params):
        sid, data, expires = params
        try:
            json.loads(data)
        except (TypeError, ValueError):
            raise errors.CheckViolation("new row violates check constraint") from None
        table[sid] = {"data": data, "expires": expires}
        return []

    @staticmethod
    def _touch(table, params):
        expires, sid = params
        if sid in table:
            table[sid]["expires"] = expires
        return []

    @staticmethod
    def _delete_one(table, params):
        (sid,) = params
        table.pop(sid, None)
        return []

    @staticmethod
    def _delete_all(table, params):
        table.clear()
        return []


class FakeCursor:
    def __init__(self, database):
        self._database = database
        self._rows = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def execute(self, query, params=None):
        self._rows = self._database.run(query, params or ())
        return self

    async def fetchone(self):
        return self._rows[0] if self._rows else None

    async def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, database):
        self._database = database
        self.transactions = 0

    def cursor(self, row_factory=None):
        return FakeCursor(self._database)

    async def execute(self, query, params=None):
        cursor = FakeCursor(self._database)
        return await cursor.execute(query, params)

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, database=None, *, name="fake", closed=False, min_size=1, max_size=4):
        self.database = database if database is not None else FakeDatabase()
        self.name = name
        self.closed = closed
        self.opened = 0
        self.acquired = 0
        self.checked_out = 0
        self.min_size = min_size
        self.max_size = max_size
        self.resized = []

    @asynccontextmanager
    async def connection(self):
        if self.closed:
            raise errors.OperationalError("the pool is closed")
        self.acquired += 1
        self.checked_out += 1
        try:
            yield FakeConnection(self.database)
        finally:
            self.checked_out -= 1

    async def open(self, wait=False, timeout=30.0):
        self.opened += 1
        self.closed = False

    async def resize(self, min_size, max_size=None):
        self.resized.append((min_size, max_size))
        self.min_size = min_size
        self.max_size = max_size if max_size is not None else min_size

    async def close(self, timeout=5.0):
        self.closed = True


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def pool(database):
    return FakePool(database)


@pytest.fixture
def make_pool():
    def _make(**kwargs):
        database_kwargs = {key: kwargs.pop(key) for key in ("tables", "create_errors", "ignore_create") if key in kwargs}
        return FakePool(FakeDatabase(**database_kwargs), **kwargs)

    return _make
