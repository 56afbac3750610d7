import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

import psycopg2

from .deleter import TableDeleter
from .pg import DeletionCancelled
from .relations import TableNode, blocking_children, cascade_descendants, deletion_order
from .utils import format_duration, format_pg_error, format_progress


class DeletionError(Exception):
    """A table's delete failed after all retries."""

    def __init__(self, table: str, cause: BaseException):
        detail = format_pg_error(cause) if isinstance(cause, psycopg2.Error) else str(cause)
        super().__init__(f"deleting rows from '{table}' failed: {detail}")
        self.table = table
        self.cause = cause


class Coordinator:
    """
    Runs one TableDeleter per table and sequences them by their relations.

    A table starts deleting once every child it is blocked by (FKs without
    ON DELETE CASCADE, on itself or on any cascade descendant) is empty.
    Cascade children are told when their parent starts and run their own
    delete after the parent's returns, to sweep rows the cascade missed.
    """

    def __init__(self,
                 client,
                 graph: Dict[str, TableNode],
                 poll_interval: float = 1.0,
                 progress_interval: float = 10.0,
                 delete_retries: int = 0,
                 cancel: Optional[threading.Event] = None,
                 on_sample_error=None,
                 clock: Callable[[], float] = time.monotonic):
        self.graph = graph
        self.poll_interval = poll_interval
        self.progress_interval = progress_interval
        self.delete_retries = max(int(delete_retries), 0)
        self.cancel = cancel or threading.Event()
        self._clock = clock
        self.order = deletion_order(graph)
        self.deleters: Dict[str, TableDeleter] = {
            name: TableDeleter(name, graph[name].where, client, on_sample_error=on_sample_error, clock=clock)
            for name in self.order
        }
        self._delete_returned = {name: threading.Event() for name in self.order}
        self._completed_at: Dict[str, float] = {}

    def _can_start(self, name: str) -> bool:
        # Wait for the first count so empty tables are never deleted.
        if self.deleters[name].total_rows is None:
            return False
        node = self.graph[name]
        if node.cascade and not self._delete_returned[node.parent].is_set():
            return False
        for table in [name] + cascade_descendants(self.graph, name):
            for child in blocking_children(self.graph, table):
                if not self.deleters[child].is_completed:
                    return False
        return True

    def _delete_with_retries(self, name: str) -> None:
        deleter = self.deleters[name]
        attempts = self.delete_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                deleted = deleter.delete_rows(self.cancel)
                logging.info(f"[DELETE] {name}: delete statement finished ({deleted} rows).")
                return
            except DeletionCancelled:
                raise
            except Exception as e:
                if attempt >= attempts:
                    raise DeletionError(name, e) from e
                detail = format_pg_error(e) if isinstance(e, psycopg2.Error) else str(e)
                logging.warning(f"[RETRY] {name}: attempt {attempt}/{attempts} failed: {detail}")
                if self.cancel.wait(self.poll_interval):
                    raise DeletionCancelled(name)

    def _run_table(self, name: str) -> None:
        deleter = self.deleters[name]
        while not self._can_start(name):
            if self.cancel.wait(self.poll_interval):
                raise DeletionCancelled(name)

        if deleter.is_completed:
            logging.info(f"[SKIP] {name}: no matching rows left, delete not needed")
        else:
            for child in cascade_descendants(self.graph, name):
                self.deleters[child].parent_deletion_started()
            logging.info(f"[START] {name}: deleting rows WHERE {deleter.where_clause}")
            self._delete_with_retries(name)
        self._delete_returned[name].set()

    def report(self) -> List[str]:
        lines = []
        for name in self.order:
            d = self.deleters[name]
            total = "?" if d.total_rows is None else d.total_rows
            remaining = "?" if d.remaining_rows is None else d.remaining_rows
            lines.append(f"{name}: {d.status.value} {format_progress(d.progress())} "
                         f"({remaining}/{total} rows remaining)")
        return lines

    def log_report(self) -> None:
        for line in self.report():
            print(f"[PROGRESS] {line}")
            logging.info(f"[PROGRESS] {line}")

    def _note_completions(self, started: float) -> None:
        for name, d in self.deleters.items():
            if d.is_completed and name not in self._completed_at:
                self._completed_at[name] = self._clock()
                took = format_duration(self._completed_at[name] - started)
                print(f"[DONE] {name}: all matching rows deleted after {took}")
                logging.info(f"[DONE] {name}: all matching rows deleted after {took}")

    def run(self) -> Dict[str, float]:
        """
        Delete every table and block until all of them are empty.
        Returns seconds from start until each table was seen empty.
        """
        started = self._clock()
        for d in self.deleters.values():
            d.start_row_count_updater(self.cancel)

        with ThreadPoolExecutor(max_workers=max(len(self.order), 1), thread_name_prefix="table") as pool:
            futures = {pool.submit(self._run_table, name): name for name in self.order}
            try:
                last_report = self._clock()
                while True:
                    for f in futures:
                        if f.done() and f.exception() is not None:
                            raise f.exception()
                    self._note_completions(started)
                    if all(f.done() for f in futures) and len(self._completed_at) == len(self.deleters):
                        break
                    if self._clock() - last_report >= self.progress_interval:
                        self.log_report()
                        last_report = self._clock()
                    if self.cancel.wait(self.poll_interval):
                        pending = [n for n in self.order if n not in self._completed_at]
                        raise DeletionCancelled(", ".join(pending))
            except BaseException:
                self.cancel.set()
                raise

        return {name: at - started for name, at in self._completed_at.items()}

    def dry_run(self) -> Dict[str, int]:
        """Count matching rows once per table without deleting anything."""
        counts = {}
        for name in self.order:
            cnt = self.deleters[name].update_row_count(self.cancel)
            counts[name] = cnt
            print(f"[DRY-RUN] Would delete {cnt} rows from {name}.")
            logging.info(f"[DRY-RUN] Would delete {cnt} rows from {name}.")
        return counts
