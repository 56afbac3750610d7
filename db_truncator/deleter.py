import enum
import logging
import threading
import time
from typing import Callable, Optional


class Status(enum.Enum):
    ANALYZING = "analyzing"  # No successful row count yet.
    WAITING = "waiting"  # Rows counted, waiting for dependent tables or a parent.
    DELETING = "deleting"  # Own delete in flight.
    CASCADE_DELETING = "cascade-deleting"  # Parent delete started, rows go by cascade.
    COMPLETED = "completed"  # Last count saw zero rows.


SAMPLE_DELAY_FACTOR = 10
MAX_SAMPLE_DELAY = 30.0


def next_delay(latency: float) -> float:
    """
    Seconds to sleep after a row count that took `latency` seconds.
    Keeps COUNT(*) overhead to roughly a tenth of wall time, capped at 30s.
    """
    return min(max(latency, 0.0) * SAMPLE_DELAY_FACTOR, MAX_SAMPLE_DELAY)


def next_status(current: Status, count: int) -> Status:
    if count == 0:
        return Status.COMPLETED
    if current is Status.ANALYZING:
        return Status.WAITING
    return current


def _log_sample_error(deleter: "TableDeleter", exc: Exception) -> None:
    logging.debug(f"[SAMPLE] {deleter.table_name}: row count failed, will retry: {exc}")


class TableDeleter:
    """
    Deletes every row matching where_clause from one table and keeps a live
    estimate of how many are left.

    client must provide count_rows(table, where, cancel) and
    partitioned_delete(table, where, cancel); see pg.PgClient.
    """

    def __init__(self,
                 table_name: str,
                 where_clause: str,
                 client,
                 on_sample_error: Optional[Callable[["TableDeleter", Exception], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._table_name = table_name
        self._where_clause = where_clause
        self._client = client
        self._on_sample_error = on_sample_error or _log_sample_error
        self._clock = clock
        self._lock = threading.Lock()

        self.status = Status.ANALYZING
        # Set once from the first successful count; rows added later are not reflected.
        self.total_rows: Optional[int] = None
        self.remaining_rows: Optional[int] = None

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def where_clause(self) -> str:
        return self._where_clause

    @property
    def is_completed(self) -> bool:
        return self.status is Status.COMPLETED

    def progress(self) -> float:
        """Fraction of the initial rows already gone, in [0, 1]."""
        total, remaining = self.total_rows, self.remaining_rows
        if total is None or remaining is None:
            return 0.0
        if total == 0 or self.is_completed:
            return 1.0
        return min(max((total - remaining) / total, 0.0), 1.0)

    def delete_rows(self, cancel: Optional[threading.Event] = None) -> int:
        """
        Run the batched delete for this table. Blocks until it finishes and
        re-raises whatever the client raises; completion is left to the sampler.
        Safe to call again after a failure.
        """
        with self._lock:
            if self.status is not Status.COMPLETED:
                self.status = Status.DELETING
        return self._client.partitioned_delete(self._table_name, self._where_clause, cancel)

    def parent_deletion_started(self) -> None:
        with self._lock:
            if self.status is not Status.COMPLETED:
                self.status = Status.CASCADE_DELETING

    def update_row_count(self, cancel: Optional[threading.Event] = None) -> int:
        count = self._client.count_rows(self._table_name, self._where_clause, cancel)
        with self._lock:
            if self.total_rows is None:
                self.total_rows = count
            self.remaining_rows = count
            self.status = next_status(self.status, count)
        return count

    def start_row_count_updater(self, cancel: Optional[threading.Event] = None) -> threading.Thread:
        if cancel is None:
            cancel = threading.Event()
        t = threading.Thread(
            target=self._sample_until_completed,
            args=(cancel,),
            name=f"row-count-{self._table_name}",
            daemon=True,
        )
        t.start()
        return t

    def _sample_until_completed(self, cancel: threading.Event) -> None:
        while not cancel.is_set():
            begin = self._clock()
            try:
                self.update_row_count(cancel)
            except Exception as e:
                # Count failures are transient; the next round retries.
                try:
                    self._on_sample_error(self, e)
                except Exception:
                    logging.exception(f"[SAMPLE] {self._table_name}: on_sample_error hook failed")
            if self.is_completed:
                return
            if cancel.wait(next_delay(self._clock() - begin)):
                return
