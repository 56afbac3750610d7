import logging
import os
import sys
import time

import psycopg2
from sqlalchemy import create_engine

from .config import load_config
from .coordinator import Coordinator, DeletionError
from .pg import PgClient, DeletionCancelled
from .relations import normalize_tables, filter_tables, build_graph
from .utils import setup_logging, format_duration, format_pg_error


def confirm() -> bool:
    reply = input("Rows in these tables will be deleted. Do you want to continue? [Y/n]: ").strip().lower()
    return reply in {"", "y", "yes"}


def print_plan(coordinator: Coordinator) -> None:
    print("[PLAN] Tables in deletion order:")
    for name in coordinator.order:
        node = coordinator.graph[name]
        rel = ""
        if node.parent:
            rel = f" (child of {node.parent}, {'ON DELETE CASCADE' if node.cascade else 'NO ACTION'})"
        print(f"  - {name} WHERE {node.where}{rel}")


def main():
    cfg = load_config(os.environ.get("DB_TRUNCATOR_CONFIG", "./config/config.yaml"))

    setup_logging(cfg["log_file"], rotate=cfg["log_rotate"], console=bool(cfg["log_console"]))

    tables = normalize_tables(cfg["tables"])
    tables = filter_tables(tables, set(cfg["skip_tables"]))
    graph = build_graph(tables)
    dry_run = bool(cfg["dry_run"])

    # Samplers and deletes each hold a connection at the same time.
    pool_size = 2 * len(graph) + 1
    engine = create_engine(cfg["db_uri"], pool_size=pool_size, pool_pre_ping=True)
    read_engine = None
    if cfg["replica_uri"]:
        read_engine = create_engine(cfg["replica_uri"], pool_size=pool_size, pool_pre_ping=True)

    client = PgClient(
        engine,
        read_engine=read_engine,
        batch_size=int(cfg["batch_size"]),
        batch_pause=float(cfg["batch_pause"]),
        statement_timeout=int(cfg["statement_timeout"]),
    )
    coordinator = Coordinator(
        client,
        graph,
        poll_interval=float(cfg["poll_interval"]),
        progress_interval=float(cfg["progress_interval"]),
        delete_retries=int(cfg["delete_retries"]),
    )

    print_plan(coordinator)
    overall_start_time = time.time()
    exit_code = 0
    try:
        if dry_run:
            coordinator.dry_run()
        elif not cfg["assume_yes"] and not confirm():
            print("Aborted.")
        else:
            logging.info(f"[START] Deleting rows from {len(graph)} table(s).")
            durations = coordinator.run()
            coordinator.log_report()
            for name in coordinator.order:
                print(f"[TIMING] Table '{name}' emptied in {format_duration(durations.get(name, 0.0))}")
    except KeyboardInterrupt:
        coordinator.cancel.set()
        logging.warning("[ABORT] Interrupted, cancelling running deletes.")
        print("[ABORT] Interrupted, cancelling running deletes.")
        exit_code = 130
    except DeletionCancelled as e:
        logging.warning(f"[ABORT] {e}")
        print(f"[ABORT] {e}")
        exit_code = 130
    except DeletionError as e:
        logging.error(f"[ERROR] {e}")
        print(f"[ERROR] {e}")
        exit_code = 1
    except psycopg2.Error as e:
        detail = format_pg_error(e)
        logging.error(f"[ERROR] psycopg2.Error: {detail}")
        print(f"[ERROR] {detail}")
        exit_code = 1
    finally:
        engine.dispose()
        if read_engine is not None:
            read_engine.dispose()

    overall_duration = time.time() - overall_start_time
    print(f"[TIMING] Total run completed in {format_duration(overall_duration)}")
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
