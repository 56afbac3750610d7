import logging
import threading
import time
from contextlib import contextmanager
from typing import Optional

import psycopg2
from psycopg2 import sql
from sqlalchemy.engine import Engine

from .sql_render import ErrorLoggingCursor
from .utils import split_schema_table


class DeletionCancelled(Exception):
    """Raised when a running delete is aborted through its cancel event."""

    def __init__(self, table: str):
        super().__init__(f"deletion of '{table}' was cancelled")
        self.table = table


def build_count_sql(table: str, where: str) -> sql.Composed:
    schema, tbl = split_schema_table(table)
    return sql.SQL("SELECT COUNT(*) FROM {tbl} WHERE {pred}").format(
        tbl=sql.Identifier(schema, tbl),
        pred=sql.SQL(where),
    )


def build_batch_delete_sql(table: str, where: str, batch_size: int) -> sql.Composed:
    # ctid sub-select keeps each batch to one short transaction without needing a primary key.
    schema, tbl = split_schema_table(table)
    return sql.SQL(
        "DELETE FROM {tbl} WHERE ctid IN (SELECT ctid FROM {tbl} WHERE {pred} LIMIT {limit})"
    ).format(
        tbl=sql.Identifier(schema, tbl),
        pred=sql.SQL(where),
        limit=sql.Literal(int(batch_size)),
    )


@contextmanager
def cancel_on(conn, cancel: Optional[threading.Event], poll: float = 0.2):
    """
    Cancel the statement running on conn as soon as cancel is set.
    psycopg2 allows connection.cancel() from another thread.
    """
    if cancel is None:
        yield
        return

    done = threading.Event()
    lock = threading.Lock()

    def watch():
        while not done.is_set():
            if cancel.wait(poll):
                with lock:
                    if not done.is_set():
                        conn.cancel()
                return

    watcher = threading.Thread(target=watch, name="pg-cancel-watch", daemon=True)
    watcher.start()
    try:
        yield
    finally:
        # The watcher exits on its own; once done is set it never touches conn.
        with lock:
            done.set()


class PgClient:
    """
    The two database calls a TableDeleter needs: a stale row count and a batched delete.

    Writes go to engine. Counts go to read_engine, normally a hot-standby replica
    whose replication lag bounds how stale the count may be; without one the
    primary serves them in a read-only transaction.
    """

    def __init__(self,
                 engine: Engine,
                 read_engine: Optional[Engine] = None,
                 batch_size: int = 10000,
                 batch_pause: float = 0.2,
                 statement_timeout: int = 0):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive.")
        self.engine = engine
        self.read_engine = read_engine or engine
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.statement_timeout = statement_timeout

    def _set_timeout(self, cur) -> None:
        if self.statement_timeout:
            cur.execute("SET LOCAL statement_timeout = %s", (f"{self.statement_timeout}s",))

    def count_rows(self, table: str, where: str, cancel: Optional[threading.Event] = None) -> int:
        conn = self.read_engine.raw_connection()
        try:
            with cancel_on(conn, cancel):
                with conn.cursor(cursor_factory=ErrorLoggingCursor) as cur:
                    cur.execute("SET TRANSACTION READ ONLY")
                    self._set_timeout(cur)
                    cur.execute(build_count_sql(table, where))
                    count = cur.fetchone()[0]
            conn.rollback()
            return int(count)
        except psycopg2.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def partitioned_delete(self, table: str, where: str, cancel: Optional[threading.Event] = None) -> int:
        """
        Delete every row of table matching where, batch_size rows per committed
        transaction, until a batch deletes nothing. Returns the number of rows deleted.
        """
        q = build_batch_delete_sql(table, where, self.batch_size)
        total = 0
        batches = 0
        conn = self.engine.raw_connection()
        try:
            with cancel_on(conn, cancel):
                while True:
                    if cancel is not None and cancel.is_set():
                        raise DeletionCancelled(table)
                    try:
                        with conn.cursor(cursor_factory=ErrorLoggingCursor) as cur:
                            self._set_timeout(cur)
                            cur.execute(q)
                            deleted = cur.rowcount
                        conn.commit()
                    except psycopg2.extensions.QueryCanceledError:
                        conn.rollback()
                        if cancel is not None and cancel.is_set():
                            raise DeletionCancelled(table)
                        raise
                    except psycopg2.Error:
                        conn.rollback()
                        raise

                    if deleted <= 0:
                        break
                    total += deleted
                    batches += 1
                    logging.debug(f"[BATCH] {table}: deleted {deleted} rows (batch {batches}, total {total}).")

                    if cancel is not None:
                        cancel.wait(self.batch_pause)
                    else:
                        time.sleep(self.batch_pause)
        finally:
            conn.close()

        logging.info(f"[DELETE] {table}: Deleted {total} rows in {batches} batch(es).")
        return total
