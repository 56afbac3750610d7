import threading
import time

import psycopg2
import pytest

from db_truncator.pg import DeletionCancelled, PgClient, cancel_on
from db_truncator.sql_render import ErrorLoggingCursor


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = -1

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, vars=None):
        self.conn.executed.append((query, vars))
        step = self.conn.script.pop(0) if self.conn.script else 0
        if isinstance(step, BaseException):
            raise step
        self.rowcount = step

    def fetchone(self):
        return (self.conn.count,)


class FakeConnection:
    def __init__(self, script=None, count=0):
        self.script = list(script or [])
        self.count = count
        self.executed = []
        self.factories = []
        self.commits = 0
        self.rollbacks = 0
        self.cancels = 0
        self.closed = False

    def cursor(self, cursor_factory=None):
        self.factories.append(cursor_factory)
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def cancel(self):
        self.cancels += 1

    def close(self):
        self.closed = True


class FakeEngine:
    def __init__(self, conn):
        self.conn = conn

    def raw_connection(self):
        return self.conn


def test_partitioned_delete_commits_each_batch_until_empty():
    conn = FakeConnection(script=[100, 100, 40, 0])
    client = PgClient(FakeEngine(conn), batch_size=100, batch_pause=0)

    assert client.partitioned_delete("public.t", "TRUE") == 240
    assert conn.commits == 4
    assert len(conn.executed) == 4
    assert conn.closed
    assert all(f is ErrorLoggingCursor for f in conn.factories)


def test_partitioned_delete_sets_statement_timeout():
    conn = FakeConnection(script=[0, 0])
    client = PgClient(FakeEngine(conn), batch_pause=0, statement_timeout=30)
    client.partitioned_delete("public.t", "TRUE")
    assert conn.executed[0] == ("SET LOCAL statement_timeout = %s", ("30s",))


def test_partitioned_delete_rolls_back_and_raises():
    err = psycopg2.OperationalError("connection lost")
    conn = FakeConnection(script=[50, err])
    client = PgClient(FakeEngine(conn), batch_size=50, batch_pause=0)

    with pytest.raises(psycopg2.OperationalError):
        client.partitioned_delete("public.t", "TRUE")
    assert conn.commits == 1
    assert conn.rollbacks == 1
    assert conn.closed


def test_partitioned_delete_stops_when_cancelled():
    cancel = threading.Event()
    cancel.set()
    conn = FakeConnection(script=[10, 10, 0])
    client = PgClient(FakeEngine(conn), batch_pause=0)

    with pytest.raises(DeletionCancelled) as exc:
        client.partitioned_delete("public.t", "TRUE", cancel)
    assert exc.value.table == "public.t"
    assert conn.executed == []
    assert conn.closed


def test_cancelled_statement_becomes_deletion_cancelled():
    cancel = threading.Event()

    class CancellingConnection(FakeConnection):
        def cursor(self, cursor_factory=None):
            cancel.set()
            return super().cursor(cursor_factory)

    conn = CancellingConnection(script=[psycopg2.extensions.QueryCanceledError("canceling statement")])
    client = PgClient(FakeEngine(conn), batch_pause=0)
    with pytest.raises(DeletionCancelled):
        client.partitioned_delete("public.t", "TRUE", cancel)
    assert conn.rollbacks == 1


def test_count_rows_uses_read_engine_in_read_only_transaction():
    primary = FakeConnection()
    replica = FakeConnection(count=1234)
    client = PgClient(FakeEngine(primary), read_engine=FakeEngine(replica))

    assert client.count_rows("public.t", "id > 5") == 1234
    assert replica.executed[0] == ("SET TRANSACTION READ ONLY", None)
    assert replica.rollbacks == 1
    assert replica.closed
    assert primary.executed == []


def test_count_rows_error_propagates():
    conn = FakeConnection(script=[0, psycopg2.OperationalError("replica down")])
    client = PgClient(FakeEngine(conn))
    with pytest.raises(psycopg2.OperationalError):
        client.count_rows("public.t", "TRUE")
    assert conn.closed


def test_batch_size_must_be_positive():
    with pytest.raises(ValueError):
        PgClient(FakeEngine(FakeConnection()), batch_size=0)


def test_cancel_on_cancels_running_statement():
    conn = FakeConnection()
    cancel = threading.Event()
    with cancel_on(conn, cancel, poll=0.01):
        cancel.set()
        for _ in range(200):
            if conn.cancels:
                break
            threading.Event().wait(0.01)
    assert conn.cancels == 1


def test_count_rows_with_cancel_does_not_wait_for_watcher_poll():
    conn = FakeConnection(count=3)
    client = PgClient(FakeEngine(conn))
    cancel = threading.Event()

    begin = time.monotonic()
    for _ in range(5):
        assert client.count_rows("public.t", "TRUE", cancel) == 3
    per_call = (time.monotonic() - begin) / 5

    assert per_call < 0.05


def test_cancel_on_leaves_connection_alone_after_block_exits():
    conn = FakeConnection()
    cancel = threading.Event()
    with cancel_on(conn, cancel, poll=0.05):
        pass
    cancel.set()
    time.sleep(0.15)
    assert conn.cancels == 0
