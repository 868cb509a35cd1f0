import psycopg
from contextlib import contextmanager

from config import get_config


@contextmanager
def get_conn(dsn: str | None = None):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(dsn or get_config().database_url) as conn:
        conn.autocommit = False
        yield conn
