import logging
import os
from typing import Tuple, Optional, Dict, Any

import psycopg2
from logging.handlers import TimedRotatingFileHandler, RotatingFileHandler


def setup_logging(log_file: str,
                  rotate: Optional[Dict[str, Any]] = None,
                  console: bool = True,
                  level: int = logging.INFO) -> None:
    """Root logging to a rotating file (log_rotate: type timed|size), plus stderr when console."""
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers.clear()

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    rotate = rotate or {}

    if rotate.get("type") == "size":
        handler = RotatingFileHandler(
            log_file,
            maxBytes=int(rotate.get("max_bytes", 10 * 1024 * 1024)),
            backupCount=int(rotate.get("backup_count", 10)),
            encoding="utf-8",
        )
    else:
        handler = TimedRotatingFileHandler(
            log_file,
            when=str(rotate.get("when", "D")),
            interval=int(rotate.get("interval", 1)),
            backupCount=int(rotate.get("backup_count", 7)),
            encoding="utf-8",
            utc=True,
        )

    handler.setFormatter(fmt)
    logger.addHandler(handler)

    if console:
        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        logger.addHandler(ch)


def shorten(text: str, max_len: int = 2000) -> str:
    return (text[:max_len] + "...") if len(text) > max_len else text


def qualify_table(name: str) -> str:
    if "." in name:
        return name
    return f"public.{name}"


def split_schema_table(qualified: str) -> Tuple[str, str]:
    if "." in qualified:
        s, t = qualified.split(".", 1)
        return s, t
    return "public", qualified


def format_pg_error(e: psycopg2.Error) -> str:
    diag = getattr(e, "diag", None)
    parts = []

    def add(label: str, value):
        if value:
            parts.append(f"{label}={value}")

    add("message", getattr(diag, "message_primary", None) or getattr(e, "pgerror", None) or str(e))
    add("detail", getattr(diag, "message_detail", None))
    add("hint", getattr(diag, "hint", None))
    add("table", getattr(diag, "table_name", None))
    add("constraint", getattr(diag, "constraint_name", None))
    add("sqlstate", getattr(e, "pgcode", None))

    return " | ".join(parts) if parts else str(e)


def format_duration(seconds: float) -> str:
    """Human-readable duration, e.g. 2.50s, 1m 30.0s, 1h 5m 30.5s."""
    if seconds < 60:
        return f"{seconds:.2f}s"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours >= 1:
        parts.append(f"{int(hours)}h")
    if minutes >= 1 or hours < 1:
        parts.append(f"{int(minutes)}m")
    if secs >= 1:
        parts.append(f"{secs:.1f}s")
    return " ".join(parts)


def format_progress(done: float) -> str:
    """Render a [0, 1] fraction as a percentage with one decimal."""
    done = min(max(done, 0.0), 1.0)
    return f"{done * 100:.1f}%"
