import logging

import psycopg2
from psycopg2.extensions import cursor as BaseCursor

from .utils import shorten


def render_sql(cur, query, vars=None) -> str:
    """
    Render SQL + params into a final string for logs.
    psycopg2.sql objects go through as_string; params are bound with mogrify.
    Falls back to the raw query text if either step fails.
    """
    try:
        text = query.as_string(cur.connection) if hasattr(query, "as_string") else str(query)
    except (psycopg2.Error, TypeError, ValueError):
        text = str(query)
    if vars is None:
        return text
    try:
        return cur.mogrify(text, vars).decode()
    except (psycopg2.Error, TypeError, ValueError):
        return text


class ErrorLoggingCursor(BaseCursor):
    """
    Cursor that logs the statement it was running when psycopg2 raises.
    A cancelled statement (QueryCanceled) is logged at warning level only.
    """

    def execute(self, query, vars=None):
        try:
            return super().execute(query, vars)
        except psycopg2.extensions.QueryCanceledError:
            logging.warning(f"[SQL-CANCELLED] {shorten(render_sql(self, query, vars))}")
            raise
        except psycopg2.Error:
            msg = shorten(render_sql(self, query, vars))
            print(f"[SQL-ERROR] {msg}")
            logging.error(f"[SQL-ERROR] {msg}")
            raise
