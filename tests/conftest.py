"""Pytest configuration and shared fixtures"""
import logging
import threading

import pytest

from dbquery_exporter import (
    ConnectionPool,
    DatabaseConfig,
    DatabaseTarget,
    ExporterMetrics,
    QueryConfig,
)


class FakeOperationalError(Exception):
    """Stands in for a driver's OperationalError."""


class FakeQueryCanceled(Exception):
    pass


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.description = None
        self._rows = []
        self.closed = False

    def execute(self, sql):
        db = self.conn.db
        db.executed.append(sql)
        if self.conn.closed:
            raise FakeOperationalError("connection already closed")
        if db.down:
            raise FakeOperationalError("server closed the connection unexpectedly")
        if sql in db.errors:
            raise db.errors[sql]
        if sql in db.delays:
            if self.conn.cancelled.wait(db.delays[sql]):
                raise FakeQueryCanceled("canceling statement due to user request")
        if sql == "SELECT 1":
            columns, rows = ["?column?"], [(1,)]
        else:
            columns, rows = db.results.get(sql, ([], []))
        self.description = [(name, None, None, None, None, None, None) for name in columns] or None
        self._rows = list(rows)

    def fetchall(self):
        return list(self._rows)

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, db):
        self.db = db
        self.closed = False
        self.cancelled = threading.Event()

    def cursor(self):
        return FakeCursor(self)

    def cancel(self):
        self.cancelled.set()

    def close(self):
        self.closed = True


class FakeDatabase:
    """In-memory stand-in for a database server, handing out DB-API-like connections."""

    def __init__(self):
        self.down = False
        self.results = {}
        self.errors = {}
        self.delays = {}
        self.executed = []
        self.connections = []

    def connect(self):
        if self.down:
            raise FakeOperationalError("connection refused")
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    def queries_run(self):
        return [sql for sql in self.executed if sql != "SELECT 1"]


class CountingOpener:
    """Opens pools against a FakeDatabase and counts how often it was asked to."""

    def __init__(self, db):
        self.db = db
        self.calls = 0

    def __call__(self, config, query_timeout):
        self.calls += 1
        return ConnectionPool(
            self.db.connect,
            max_idle=config.max_idle_conns,
            max_open=config.max_open_conns,
            max_lifetime=config.max_conn_lifetime,
            acquire_timeout=query_timeout,
        )


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def opener(fake_db):
    return CountingOpener(fake_db)


@pytest.fixture
def db_config():
    return DatabaseConfig(
        name="app",
        user="u",
        password="p",
        database="d",
        host="h",
        queries=(
            QueryConfig(sql="SELECT count(*) AS total FROM orders", name="orders", interval=1),
            QueryConfig(sql="SELECT 42 AS answer", name="answer", interval=5),
        ),
    )


@pytest.fixture
def target(db_config, opener):
    target = DatabaseTarget(db_config, query_timeout=1.0, opener=opener)
    yield target
    target.close()


@pytest.fixture
def metrics():
    return ExporterMetrics()


@pytest.fixture
def restore_logging():
    """Undo root logger changes made by setup_logging"""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def sample(metrics, name, labels):
    return metrics.registry.get_sample_value(f"postgresdb_exporter_{name}", labels)
