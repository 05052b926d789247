"""
MxL PostgreSQL Access
Connection helper shared by the Postgres-backed log, analytical store and
relational store.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.extras import RealDictCursor

from mxl.errors import PipelineErrorCode, TransientInfrastructureError

logger = logging.getLogger(__name__)


def get_db(database_url: str):
    """Get database connection, or None when unavailable."""
    try:
        return psycopg2.connect(database_url, cursor_factory=RealDictCursor)
    except Exception as e:
        logger.error(f"Database connection error: {e}")
        return None


@contextmanager
def db_cursor(
    database_url: str,
    error_code: PipelineErrorCode = PipelineErrorCode.STORE_UNAVAILABLE,
) -> Iterator[RealDictCursor]:
    """
    Yield a cursor inside a transaction.
    Commits on success, rolls back on error. Driver errors surface as
    TransientInfrastructureError so callers retry instead of dropping data.
    """
    conn = get_db(database_url)
    if conn is None:
        raise TransientInfrastructureError(error_code, "Database connection failed")
    try:
        with conn:
            with conn.cursor() as cur:
                yield cur
    except psycopg2.Error as e:
        logger.error(f"Database operation failed: {e}")
        raise TransientInfrastructureError(error_code, str(e).strip() or "Database operation failed")
    finally:
        conn.close()


def ping(database_url: str) -> bool:
    """SELECT 1 against the database."""
    conn = get_db(database_url)
    if conn is None:
        return False
    try:
        cur = conn.cursor()
        cur.execute("SELECT 1")
        cur.close()
        return True
    except psycopg2.Error as e:
        logger.warning(f"Database ping failed: {e}")
        return False
    finally:
        conn.close()
